import pytest
from eth_abi import decode, encode
from web3 import Web3

from shield_agent.abis import EMERGENCY_WITHDRAW, PARTIAL_WITHDRAW
from shield_agent.chain_client import OnchainWriter
from shield_agent.config import ScanStatus, ShieldActionType
from shield_agent.error_handling import WriteError
from shield_agent.models import ShieldConfig, ThreatChangeEvent, ThreatLevel, ZERO_ADDRESS
from shield_agent.shield_executor import RISK_SCORE_UPDATED_TOPIC, ShieldExecutor, decode_threat_event

from conftest import AAVE_ADAPTER, VAULT

TOPIC0 = "0x" + RISK_SCORE_UPDATED_TOPIC.lower().replace("0x", "")


class RejectingWriter(OnchainWriter):
    def __init__(self):
        self.attempts = 0

    async def submit(self, address, calldata, label="", chain=""):
        self.attempts += 1
        raise WriteError("relay unavailable")


def selector(signature):
    return bytes(Web3.keccak(text=signature)[:4])


def event(level, new_score=50, old_score=10):
    return ThreatChangeEvent(protocol=AAVE_ADAPTER, old_score=old_score, new_score=new_score,
                             threat_level=level)


def raw_log(level=2, old_score=10, new_score=60, protocol=AAVE_ADAPTER, topic0=None):
    return {
        "topics": [
            topic0 or TOPIC0,
            "0x" + "0" * 24 + protocol[2:]
        ],
        "data": "0x" + encode(["uint8", "uint8", "uint8"], [old_score, new_score, level]).hex()
    }


class TestShieldDispatch:

    @pytest.fixture
    def executor(self, dry_run_writer, shield_config):
        return ShieldExecutor(dry_run_writer, shield_config)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("level", [ThreatLevel.SAFE, ThreatLevel.WATCH])
    async def test_low_levels_write_nothing(self, executor, dry_run_writer, level):
        result = await executor.dispatch(event(level), VAULT)

        assert len(dry_run_writer.submissions) == 0
        assert result.status == ScanStatus.NO_ACTION
        assert result.actions == []

    @pytest.mark.asyncio
    async def test_warning_partial_withdraw(self, executor, dry_run_writer):
        result = await executor.dispatch(event(ThreatLevel.WARNING, new_score=62), VAULT, "sepolia")

        assert len(dry_run_writer.submissions) == 1
        submission = dry_run_writer.submissions[0]
        assert submission["receiver"] == VAULT
        assert submission["chain"] == "sepolia"

        signature, types = PARTIAL_WITHDRAW
        assert submission["calldata"][:4] == selector(signature)
        adapter, percentage, reason = decode(types, submission["calldata"][4:])
        assert adapter.lower() == AAVE_ADAPTER
        assert percentage == 3000
        assert reason == "Shield WARNING: Risk score 62/100 detected. Partial withdrawal to protect funds."

        assert result.success is True
        assert result.status == ScanStatus.SHIELD_ACTIVATED
        assert [action.type for action in result.actions] == [ShieldActionType.PARTIAL_WITHDRAW]

    @pytest.mark.asyncio
    async def test_warning_uses_configured_percentage(self, dry_run_writer):
        executor = ShieldExecutor(dry_run_writer, ShieldConfig(warning_withdraw_percent=4500))
        await executor.dispatch(event(ThreatLevel.WARNING), VAULT)

        _, types = PARTIAL_WITHDRAW
        _, percentage, _ = decode(types, dry_run_writer.submissions[0]["calldata"][4:])
        assert percentage == 4500

    @pytest.mark.asyncio
    async def test_critical_full_withdraw(self, dry_run_writer):
        executor = ShieldExecutor(dry_run_writer, ShieldConfig(warning_withdraw_percent=1000))
        result = await executor.dispatch(event(ThreatLevel.CRITICAL, new_score=91), VAULT)

        assert len(dry_run_writer.submissions) == 1
        signature, types = EMERGENCY_WITHDRAW
        calldata = dry_run_writer.submissions[0]["calldata"]
        assert calldata[:4] == selector(signature)
        adapter, reason = decode(types, calldata[4:])
        assert adapter.lower() == AAVE_ADAPTER
        assert reason == "Shield CRITICAL: Risk score 91/100. Emergency withdrawal to protect all funds."
        assert [action.type for action in result.actions] == [ShieldActionType.EMERGENCY_WITHDRAW]
        assert "aaveAdapter" in result.message

    @pytest.mark.asyncio
    async def test_write_failure_is_reported(self, shield_config):
        writer = RejectingWriter()
        executor = ShieldExecutor(writer, shield_config)

        result = await executor.dispatch(event(ThreatLevel.CRITICAL), VAULT)

        assert writer.attempts == 1
        assert result.success is False
        assert result.message.startswith("CRITICAL action failed")
        assert len(result.actions) == 1


class TestThreatEventDecoding:

    def test_valid_event(self):
        decoded = decode_threat_event(raw_log(level=2, old_score=20, new_score=64))

        assert decoded.protocol == AAVE_ADAPTER
        assert decoded.old_score == 20
        assert decoded.new_score == 64
        assert decoded.threat_level == ThreatLevel.WARNING
        assert decoded.defaulted is False

    def test_topic_without_prefix(self):
        log = raw_log(level=3)
        log["topics"] = [topic[2:] for topic in log["topics"]]
        assert decode_threat_event(log).threat_level == ThreatLevel.CRITICAL

    @pytest.mark.parametrize("log", [
        {},
        {"topics": [], "data": "0x"},
        {"topics": [RISK_SCORE_UPDATED_TOPIC], "data": "0x"},
        {"topics": [RISK_SCORE_UPDATED_TOPIC, 12345], "data": "0x"},
        {"topics": "not-a-list", "data": "0x"},
        "not-an-object",
    ])
    def test_malformed_payloads_default_to_safe(self, log):
        decoded = decode_threat_event(log)
        assert decoded.defaulted is True
        assert decoded.threat_level == ThreatLevel.SAFE
        assert decoded.protocol == ZERO_ADDRESS

    def test_wrong_signature(self):
        decoded = decode_threat_event(raw_log(topic0="0x" + "ab" * 32))
        assert decoded.defaulted is True

    def test_truncated_data(self):
        log = raw_log()
        log["data"] = log["data"][:40]
        assert decode_threat_event(log).defaulted is True

    def test_level_out_of_range(self):
        assert decode_threat_event(raw_log(level=7)).defaulted is True
