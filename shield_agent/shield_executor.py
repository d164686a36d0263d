from typing import Any, Dict

import structlog
from eth_abi import decode
from web3 import Web3

from .abis import EMERGENCY_WITHDRAW, PARTIAL_WITHDRAW, RISK_SCORE_UPDATED_EVENT
from .chain_client import OnchainWriter, encode_call
from .config import ShieldActionType, ScanStatus
from .error_handling import EventDecodeError
from .models import ShieldAction, ShieldConfig, ShieldResult, ThreatChangeEvent, ThreatLevel

logger = structlog.get_logger()

RISK_SCORE_UPDATED_TOPIC = Web3.keccak(text=RISK_SCORE_UPDATED_EVENT).hex()


def _strip_hex(value: str) -> str:
    value = value.lower()
    return value[2:] if value.startswith("0x") else value


def _parse_threat_event(log: Dict[str, Any]) -> ThreatChangeEvent:
    if not isinstance(log, dict):
        raise EventDecodeError("Event payload is not an object")

    topics = log.get("topics") or []
    if not isinstance(topics, list) or not all(isinstance(topic, str) for topic in topics):
        raise EventDecodeError("Event topics must be a list of hex strings")
    if len(topics) < 2:
        raise EventDecodeError("Event has no indexed protocol topic")
    if _strip_hex(topics[0]) != _strip_hex(RISK_SCORE_UPDATED_TOPIC):
        raise EventDecodeError(f"Unexpected event signature {topics[0]}")

    protocol_topic = _strip_hex(topics[1])
    if len(protocol_topic) < 40:
        raise EventDecodeError("Protocol topic too short")
    protocol = "0x" + protocol_topic[-40:]

    try:
        old_score, new_score, raw_level = decode(
            ["uint8", "uint8", "uint8"], bytes.fromhex(_strip_hex(log.get("data") or ""))
        )
    except Exception as e:
        raise EventDecodeError(f"Event data could not be decoded: {e}") from e

    threat_level = ThreatLevel.from_value(raw_level)
    if threat_level is None:
        raise EventDecodeError(f"Threat level {raw_level} out of range")

    return ThreatChangeEvent(
        protocol=protocol,
        old_score=old_score,
        new_score=new_score,
        threat_level=threat_level
    )


def decode_threat_event(log: Dict[str, Any]) -> ThreatChangeEvent:
    """Decode a RiskScoreUpdated log, falling back to a SAFE default on any failure"""
    try:
        event = _parse_threat_event(log)
    except EventDecodeError as e:
        logger.warning("Could not decode threat event, treating as SAFE", error=str(e))
        return ThreatChangeEvent.default()

    logger.info("Threat event decoded",
                protocol=event.protocol,
                old_score=event.old_score,
                new_score=event.new_score,
                threat_level=event.threat_level.name)
    return event


class ShieldExecutor:
    """Turns a threat-level change into a protective vault withdrawal.

    SAFE and WATCH are informational. WARNING withdraws the configured
    percentage from the adapter; CRITICAL withdraws everything. Writer
    failures come back as unsuccessful results and are never raised.
    """

    def __init__(self, writer: OnchainWriter, config: ShieldConfig):
        self.writer = writer
        self.config = config

    async def _submit(self, vault: str, calldata: bytes, label: str, action: ShieldAction,
                      success_message: str, chain: str = "") -> ShieldResult:
        try:
            write = await self.writer.submit(vault, calldata, label, chain)
        except Exception as e:
            write_failure = str(e)
        else:
            if write.success:
                logger.info("Shield action executed", action=action.type, adapter=action.adapter)
                return ShieldResult(
                    status=ScanStatus.SHIELD_ACTIVATED,
                    threat_level=action.threat_level,
                    protocol=action.adapter,
                    actions=[action],
                    success=True,
                    message=success_message
                )
            write_failure = write.message

        message = f"{action.threat_level.name} action failed: {write_failure}"
        logger.error("Shield action failed", action=action.type, adapter=action.adapter, error=write_failure)
        return ShieldResult(
            status=ScanStatus.SHIELD_ACTIVATED,
            threat_level=action.threat_level,
            protocol=action.adapter,
            actions=[action],
            success=False,
            message=message
        )

    async def execute_warning_protocol(self, vault: str, adapter: str, reason: str, chain: str = "") -> ShieldResult:
        percentage = self.config.warning_withdraw_percent
        signature, types = PARTIAL_WITHDRAW
        calldata = encode_call(signature, types, [adapter, percentage, reason])
        action = ShieldAction(
            type=ShieldActionType.PARTIAL_WITHDRAW,
            adapter=adapter,
            reason=reason,
            threat_level=ThreatLevel.WARNING
        )
        return await self._submit(
            vault, calldata, "partialWithdraw", action,
            f"Partial withdraw ({percentage / 100:g}%) executed from {adapter}",
            chain
        )

    async def execute_critical_protocol(self, vault: str, adapter: str, reason: str, chain: str = "") -> ShieldResult:
        signature, types = EMERGENCY_WITHDRAW
        calldata = encode_call(signature, types, [adapter, reason])
        action = ShieldAction(
            type=ShieldActionType.EMERGENCY_WITHDRAW,
            adapter=adapter,
            reason=reason,
            threat_level=ThreatLevel.CRITICAL
        )
        return await self._submit(
            vault, calldata, "emergencyWithdraw", action,
            f"Emergency withdraw executed from {adapter}. Funds moved to safe haven "
            f"({self.config.safe_haven_adapter}).",
            chain
        )

    async def dispatch(self, event: ThreatChangeEvent, vault: str, chain: str = "") -> ShieldResult:
        level = event.threat_level

        if level < ThreatLevel.WARNING:
            logger.info("Threat level below WARNING, no shield action", level=level.name,
                        protocol=event.protocol)
            return ShieldResult(
                status=ScanStatus.NO_ACTION,
                threat_level=level,
                protocol=event.protocol,
                message=f"Threat level {level.name} does not require shield activation"
            )

        if level == ThreatLevel.WARNING:
            reason = (f"Shield WARNING: Risk score {event.new_score}/100 detected. "
                      f"Partial withdrawal to protect funds.")
            return await self.execute_warning_protocol(vault, event.protocol, reason, chain)

        reason = (f"Shield CRITICAL: Risk score {event.new_score}/100. "
                  f"Emergency withdrawal to protect all funds.")
        return await self.execute_critical_protocol(vault, event.protocol, reason, chain)
