from typing import List, Tuple

import structlog

from .abis import ADAPTER_ABI, AGGREGATOR_V3_ABI, PRICE_FEED_DECIMALS, RISK_REGISTRY_ABI, SHIELD_VAULT_ABI
from .chain_client import ChainReader
from .error_handling import ChainReadError
from .models import (
    AdapterConfig, AdapterSnapshot, ChainConfig, PoolAllocation, PriceFeedsConfig,
    PriceSignal, ProtocolRiskSnapshot, ThreatLevel
)

logger = structlog.get_logger()

# Reads issued per adapter snapshot: APY, health flag, balance breakdown
ADAPTER_READ_CALLS = 3
# Reads issued per configured price feed
PRICE_FEED_READ_CALLS = 1


async def read_adapter_snapshot(reader: ChainReader, adapter: AdapterConfig) -> AdapterSnapshot:
    apy = await reader.call(adapter.address, ADAPTER_ABI, "getCurrentAPY")
    is_healthy = await reader.call(adapter.address, ADAPTER_ABI, "isHealthy")
    breakdown = await reader.call(adapter.address, ADAPTER_ABI, "getBalanceBreakdown")

    try:
        principal, accrued_yield, balance = breakdown
    except (TypeError, ValueError) as e:
        raise ChainReadError(f"Unexpected balance breakdown from {adapter.name}: {breakdown!r}") from e

    return AdapterSnapshot(
        name=adapter.name,
        address=adapter.address,
        balance=int(balance),
        principal=int(principal),
        accrued_yield=int(accrued_yield),
        apy=int(apy),
        is_healthy=bool(is_healthy)
    )


async def read_all_adapters(reader: ChainReader, chain: ChainConfig) -> Tuple[List[AdapterSnapshot], List[str]]:
    """Read every configured adapter on a chain.

    Returns the snapshots that could be read and the names of adapters whose
    read failed. Budget errors are not caught here.
    """
    snapshots = []
    failed = []

    for adapter in chain.adapters:
        try:
            snapshot = await read_adapter_snapshot(reader, adapter)
        except ChainReadError as e:
            logger.warning("Adapter read failed, skipping",
                           chain=chain.chain_name, adapter=adapter.name, error=str(e))
            failed.append(adapter.name)
            continue

        logger.info("Adapter read",
                    chain=chain.chain_name,
                    adapter=snapshot.name,
                    balance=snapshot.balance,
                    apy=snapshot.apy,
                    healthy=snapshot.is_healthy)
        snapshots.append(snapshot)

    return snapshots, failed


async def read_protocol_risk(reader: ChainReader, registry: str, protocol: str) -> ProtocolRiskSnapshot:
    """Read a protocol's risk record; the threat level is re-derived from the score"""
    result = await reader.call(registry, RISK_REGISTRY_ABI, "getProtocolRisk", [protocol])

    try:
        risk_score, _threat_level, last_updated, is_active = result
    except (TypeError, ValueError) as e:
        raise ChainReadError(f"Unexpected protocol risk record for {protocol}: {result!r}") from e

    risk_score = max(0, min(100, int(risk_score)))
    return ProtocolRiskSnapshot(
        address=protocol,
        risk_score=risk_score,
        threat_level=ThreatLevel.from_score(risk_score),
        last_updated=int(last_updated),
        is_active=bool(is_active)
    )


async def read_adapter_apy(reader: ChainReader, adapter: str) -> int:
    return int(await reader.call(adapter, ADAPTER_ABI, "getCurrentAPY"))


async def read_pool_allocations(reader: ChainReader, vault: str) -> List[PoolAllocation]:
    result = await reader.call(vault, SHIELD_VAULT_ABI, "getPoolAllocations")

    pools = []
    try:
        for adapter, tier, target_weight, current_amount, is_active in result:
            pools.append(PoolAllocation(
                adapter=adapter,
                tier=int(tier),
                target_weight=int(target_weight),
                current_amount=int(current_amount),
                is_active=bool(is_active)
            ))
    except (TypeError, ValueError) as e:
        raise ChainReadError(f"Unexpected pool allocations from {vault}: {e}") from e

    return pools


async def read_price_feeds(reader: ChainReader, feeds: PriceFeedsConfig) -> PriceSignal:
    """Read USD reference prices from Chainlink-style aggregators.

    One call per configured feed. USDC falls back to 1.0 when no feed is
    configured; a failed feed yields the default for that pair.
    """
    prices = {"eth_usd": 0.0, "btc_usd": 0.0, "usdc_usd": 1.0}
    defaulted = False

    for pair, address in feeds.configured().items():
        try:
            round_data = await reader.call(address, AGGREGATOR_V3_ABI, "latestRoundData")
            answer = int(round_data[1])
        except (ChainReadError, TypeError, ValueError, IndexError) as e:
            logger.warning("Price feed read failed", pair=pair, feed=address, error=str(e))
            defaulted = True
            continue

        if answer <= 0:
            logger.warning("Price feed returned non-positive answer", pair=pair, answer=answer)
            defaulted = True
            continue

        prices[pair] = answer / 10 ** PRICE_FEED_DECIMALS

    logger.info("Price feeds read", **prices)
    return PriceSignal(defaulted=defaulted, **prices)
