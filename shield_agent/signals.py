"""
Typed parsers for off-chain payloads.

Every parser returns either a fully-populated signal or the signal's explicit
defaulted variant. Malformed payloads never raise; they log and default.
"""
import math
from datetime import datetime, timezone
from typing import Any, Optional

import structlog

from .models import (
    DefiMetricsSignal, GithubSignal, LendingMarketMetrics, SecuritySignal,
    TeamWalletSignal, TvlSignal
)

logger = structlog.get_logger()

WEI_PER_ETH = 10 ** 18


def _to_float(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _to_int(value: Any) -> Optional[int]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return int(str(value), 0) if isinstance(value, str) else int(value)
    except (TypeError, ValueError):
        return None


def _now(now: Optional[datetime]) -> datetime:
    return now or datetime.now(timezone.utc)


def parse_tvl_history(payload: Any) -> TvlSignal:
    """{"currentTvl": ..., "tvlChangePercent": ...} from the TVL history endpoint"""
    if not isinstance(payload, dict):
        logger.warning("TVL history payload malformed", payload_type=type(payload).__name__)
        return TvlSignal.default()

    current_tvl = _to_float(payload.get("currentTvl"))
    change = _to_float(payload.get("tvlChangePercent"))
    if change is None:
        logger.warning("TVL history payload missing change percent")
        return TvlSignal.default()

    return TvlSignal(current_tvl=current_tvl or 0.0, tvl_change_percent=change)


def parse_github_repo(payload: Any, now: Optional[datetime] = None) -> GithubSignal:
    """GitHub repository payload; staleness is measured from `pushed_at`"""
    if not isinstance(payload, dict):
        logger.warning("GitHub payload malformed", payload_type=type(payload).__name__)
        return GithubSignal.default()

    pushed_at = payload.get("pushed_at")
    try:
        last_push = datetime.fromisoformat(str(pushed_at).replace("Z", "+00:00"))
    except ValueError:
        logger.warning("GitHub payload has no usable pushed_at", pushed_at=pushed_at)
        return GithubSignal.default()

    if last_push.tzinfo is None:
        last_push = last_push.replace(tzinfo=timezone.utc)

    days_since_push = max(0, (_now(now) - last_push).days)
    open_issues = _to_int(payload.get("open_issues_count")) or 0

    return GithubSignal(
        recent_commits=0,
        open_issues=open_issues,
        last_push_days_ago=days_since_push
    )


def parse_goplus_security(payload: Any) -> SecuritySignal:
    """GoPlus token_security payload; flags are the strings "1"/"0" keyed by token"""
    if not isinstance(payload, dict):
        logger.warning("Security payload malformed", payload_type=type(payload).__name__)
        return SecuritySignal.default()

    if "code" in payload and _to_int(payload.get("code")) != 1:
        logger.warning("Security scanner returned error code", code=payload.get("code"),
                       message=payload.get("message"))
        return SecuritySignal.default()

    results = payload.get("result")
    if not isinstance(results, dict) or not results:
        logger.warning("Security payload has no token results")
        return SecuritySignal.default()

    flags = next(iter(results.values()))
    if not isinstance(flags, dict):
        return SecuritySignal.default()

    return SecuritySignal(
        is_honeypot=flags.get("is_honeypot") == "1",
        is_open_source=flags.get("is_open_source") == "1",
        is_proxy=flags.get("is_proxy") == "1",
        owner_can_change_balance=flags.get("owner_change_balance") == "1",
        is_mintable=flags.get("is_mintable") == "1"
    )


def parse_explorer_balance(payload: Any) -> Optional[float]:
    """Etherscan-style account balance in ETH, or None when unavailable"""
    if not isinstance(payload, dict) or str(payload.get("status", "1")) != "1":
        return None

    balance_wei = _to_int(payload.get("result"))
    if balance_wei is None or balance_wei < 0:
        return None
    return balance_wei / WEI_PER_ETH


def parse_explorer_outflows(
    payload: Any,
    wallet: str,
    threshold_eth: float,
    lookback_days: int,
    now: Optional[datetime] = None
) -> Optional[bool]:
    """Whether the wallet sent a transfer of at least `threshold_eth` inside the lookback window.

    None when the transaction list is unavailable.
    """
    if not isinstance(payload, dict):
        return None

    results = payload.get("result")
    if str(payload.get("status", "1")) != "1":
        # Explorers report an empty history as status 0 with an empty list
        return False if results == [] else None
    if not isinstance(results, list):
        return None

    wallet = wallet.lower()
    threshold_wei = int(threshold_eth * WEI_PER_ETH)
    cutoff = _now(now).timestamp() - lookback_days * 86400

    for tx in results:
        if not isinstance(tx, dict):
            continue
        if str(tx.get("from", "")).lower() != wallet:
            continue
        value = _to_int(tx.get("value"))
        timestamp = _to_int(tx.get("timeStamp"))
        if value is None or timestamp is None:
            continue
        if value >= threshold_wei and timestamp >= cutoff:
            return True

    return False


def build_team_wallet_signal(balance_eth: Optional[float], large_outflows: Optional[bool]) -> TeamWalletSignal:
    if balance_eth is None or large_outflows is None:
        logger.warning("Team wallet signal incomplete, using default",
                       balance_known=balance_eth is not None,
                       outflows_known=large_outflows is not None)
        return TeamWalletSignal.default()
    return TeamWalletSignal(balance_eth=balance_eth, recent_large_outflows=large_outflows)


def _parse_market(market: Any, supplied_key: str, borrowed_key: str,
                  supply_rate_key: str, borrow_rate_key: str) -> Optional[LendingMarketMetrics]:
    if not isinstance(market, dict):
        return None
    return LendingMarketMetrics(
        total_supplied=str(market.get(supplied_key) or "0"),
        total_borrowed=str(market.get(borrowed_key) or "0"),
        supply_rate=_to_float(market.get(supply_rate_key)) or 0.0,
        borrow_rate=_to_float(market.get(borrow_rate_key)) or 0.0,
        utilization=_to_float(market.get("utilization")) or 0.0
    )


def parse_defi_metrics(payload: Any) -> DefiMetricsSignal:
    """Lending-market metrics for the Aave and Compound markets backing adapters"""
    if not isinstance(payload, dict):
        logger.warning("DeFi metrics payload malformed", payload_type=type(payload).__name__)
        return DefiMetricsSignal.default()

    aave = _parse_market(payload.get("aave"), "totalSupplied", "totalBorrowed", "supplyApy", "borrowApy")
    compound = _parse_market(payload.get("compound"), "totalSupply", "totalBorrow", "supplyApr", "borrowApr")
    if aave is None and compound is None:
        return DefiMetricsSignal.default()

    return DefiMetricsSignal(aave=aave, compound=compound)
