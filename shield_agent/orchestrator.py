"""
Scan-cycle orchestration.

SentinelScanner runs one budgeted read -> score -> detect -> write cycle.
RebalanceWorkflow re-plans vault weights after a risk change. ShieldAgent ties
both to the shield executor and serialises cycles so that they never overlap.
"""
import asyncio
import time
from collections import deque
from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog

from .abis import BATCH_UPDATE_RISK_SCORES, REBALANCE, UPDATE_POOL_WEIGHT
from .anomaly_detector import AnomalyDetector, anomaly_detector
from .chain_client import (
    BudgetedReader, CallBudget, ChainReader, OnchainWriter, Web3ChainReader,
    build_writer, encode_call
)
from .config import settings, Collections, ScanStatus, load_deployment_config
from .database import db_manager
from .error_handling import ChainReadError, ConfigurationError, error_collector
from .external_apis import OffchainFetcher
from .models import (
    AdapterRiskInfo, AdapterScore, AdapterSnapshot, Anomaly, ChainConfig, ChainReadReport,
    DeploymentConfig, PriceSignal, RebalanceOutcome, RiskScoreUpdate,
    ScanSummary, ShieldResult, ThreatChangeEvent, ThreatLevel, TvlSignal, WriteResult
)
from .monitoring import metrics_collector
from .onchain import (
    ADAPTER_READ_CALLS, PRICE_FEED_READ_CALLS, read_adapter_apy, read_all_adapters,
    read_pool_allocations, read_price_feeds, read_protocol_risk
)
from .rebalancer import AllocationPlanner, allocation_planner
from .risk_engine import RiskScorer, risk_scorer
from .shield_executor import ShieldExecutor, decode_threat_event
from .telemetry import log_event

logger = structlog.get_logger()

ReaderFactory = Callable[[ChainConfig], ChainReader]
FetcherFactory = Callable[[CallBudget], OffchainFetcher]


def default_reader_factory(chain: ChainConfig) -> ChainReader:
    return Web3ChainReader(chain.rpc_url)


async def submit_write(writer: OnchainWriter, address: str, calldata: bytes, label: str, chain: str) -> WriteResult:
    """Submit one write; failures are reported, never raised or retried"""
    try:
        result = await writer.submit(address, calldata, label, chain)
    except Exception as e:
        logger.error("Write failed", label=label, chain=chain, receiver=address, error=str(e))
        error_collector.record_error(e, {"write": label, "chain": chain})
        result = WriteResult(success=False, message=f"{label} failed: {e}")

    metrics_collector.increment("writes_submitted" if result.success else "writes_failed",
                                tags={"label": label})
    return result


def build_risk_update(
    adapters: List[AdapterSnapshot],
    scores: Dict[str, AdapterScore],
    anomalies: List[Anomaly]
) -> RiskScoreUpdate:
    """Batch of (address, score, reason) for every scored adapter"""
    update = RiskScoreUpdate()
    for adapter in adapters:
        scored = scores.get(adapter.name)
        if scored is None:
            continue

        findings = [a for a in anomalies if a.adapter == adapter.name]
        if findings:
            reason = "; ".join(f"{a.type}: {a.message}" for a in findings)
        else:
            reason = f"Risk score: {scored.score}, Level: {scored.level.name}"

        update.protocols.append(adapter.address)
        update.scores.append(scored.score)
        update.reasons.append(reason)
    return update


def principal_tvl_change(adapters: List[AdapterSnapshot]) -> float:
    """Fallback TVL change: current balance against deposited principal"""
    principal = sum(adapter.principal for adapter in adapters)
    if principal <= 0:
        return 0.0
    balance = sum(adapter.balance for adapter in adapters)
    return (balance - principal) / principal * 100


class SentinelScanner:
    """One budgeted scan cycle over the configured chains"""

    def __init__(
        self,
        deployment: DeploymentConfig,
        writer: OnchainWriter,
        reader_factory: ReaderFactory = default_reader_factory,
        fetcher_factory: Optional[FetcherFactory] = None,
        scorer: RiskScorer = risk_scorer,
        detector: AnomalyDetector = anomaly_detector
    ):
        self.deployment = deployment
        self.writer = writer
        self.reader_factory = reader_factory
        self.fetcher_factory = fetcher_factory or (
            lambda budget: OffchainFetcher(deployment.offchain_apis, budget)
        )
        self.scorer = scorer
        self.detector = detector

    async def _read_chains(
        self, budget: CallBudget
    ) -> Tuple[List[Tuple[ChainConfig, List[AdapterSnapshot]]], Optional[PriceSignal], List[ChainReadReport]]:
        chain_data = []
        reports = []
        prices = None

        for chain in self.deployment.chains:
            report = ChainReadReport(chain=chain.chain_name)
            reports.append(report)

            adapter_cost = ADAPTER_READ_CALLS * len(chain.adapters)
            read_adapters = bool(chain.adapters) and budget.can_afford(adapter_cost)
            if not chain.adapters:
                report.skipped = True
                report.skip_reason = "no adapters configured"
            elif not read_adapters:
                report.skipped = True
                report.skip_reason = f"budget: needs {adapter_cost}, {budget.remaining} remaining"
                logger.warning("Skipping chain adapter reads, budget too low",
                               chain=chain.chain_name, cost=adapter_cost, remaining=budget.remaining)
                metrics_collector.increment("chains_skipped")

            feeds = chain.price_feeds.configured()
            feed_cost = PRICE_FEED_READ_CALLS * len(feeds)
            read_prices = prices is None and bool(feeds)

            if not read_adapters and not (read_prices and budget.can_afford(feed_cost)):
                continue

            reader = BudgetedReader(self.reader_factory(chain), budget)
            try:
                if read_adapters:
                    snapshots, failed = await read_all_adapters(reader, chain)
                    report.adapters_read = len(snapshots)
                    report.adapters_failed = failed
                    chain_data.append((chain, snapshots))

                if read_prices:
                    if budget.can_afford(feed_cost):
                        prices = await read_price_feeds(reader, chain.price_feeds)
                    else:
                        logger.warning("Skipping price feed reads, budget too low",
                                       chain=chain.chain_name, cost=feed_cost, remaining=budget.remaining)
            finally:
                await reader.close()

        return chain_data, prices, reports

    async def run_cycle(self) -> ScanSummary:
        start = time.perf_counter()
        budget = CallBudget(settings.CHAIN_READ_BUDGET, "chain_reads")
        http_budget = CallBudget(settings.HTTP_REQUEST_BUDGET, "http_requests")

        chain_data, prices, reports = await self._read_chains(budget)
        metrics_collector.set_gauge("chain_budget_used", budget.spent)

        primary = next(((chain, snapshots) for chain, snapshots in chain_data if snapshots), None)
        if primary is None:
            logger.warning("No adapter data from any chain, ending cycle early",
                           budget_used=budget.spent)
            return ScanSummary(
                status=ScanStatus.NO_DATA,
                budget_used=budget.spent,
                budget_limit=budget.limit,
                chains=reports,
                duration_seconds=round(time.perf_counter() - start, 3)
            )

        chain, adapters = primary
        prices = prices or PriceSignal.default()

        current_tvl = sum(a.balance for a in adapters) / 10 ** settings.ASSET_DECIMALS * prices.usdc_usd
        fetcher = self.fetcher_factory(http_budget)
        offchain = await fetcher.fetch_all(current_tvl, int(time.time()))
        offchain = offchain.model_copy(update={"prices": prices})
        defaulted = offchain.defaulted_sources

        tvl = offchain.tvl
        if tvl.defaulted:
            change = principal_tvl_change(adapters)
            logger.info("TVL history unavailable, using principal comparison",
                        tvl_change_percent=round(change, 4))
            tvl = TvlSignal(current_tvl=current_tvl, tvl_change_percent=change)
        elif not tvl.current_tvl:
            tvl = tvl.model_copy(update={"current_tvl": current_tvl})

        offchain = offchain.model_copy(update={"tvl": tvl})

        scores = self.scorer.compute_all_risk_scores(adapters, [], offchain)
        anomalies = self.detector.detect_all_anomalies(adapters, offchain)
        highest = self.detector.get_highest_severity(anomalies)

        write = None
        if any(s.level >= ThreatLevel.WARNING for s in scores.values()):
            update = build_risk_update(adapters, scores, anomalies)
            signature, types = BATCH_UPDATE_RISK_SCORES
            calldata = encode_call(signature, types, [update.protocols, update.scores, update.reasons])
            logger.warning("WARNING/CRITICAL detected, updating on-chain risk scores",
                           chain=chain.chain_name, adapters=len(update))
            write = await submit_write(self.writer, chain.risk_registry, calldata,
                                       "batchUpdateRiskScores", chain.chain_name)

        metrics_collector.increment("scan_cycles")
        metrics_collector.increment("anomalies_detected", len(anomalies))
        metrics_collector.set_gauge("http_requests_used", http_budget.spent)

        return ScanSummary(
            status=ScanStatus.COMPLETE,
            chain=chain.chain_name,
            budget_used=budget.spent,
            budget_limit=budget.limit,
            http_requests_used=http_budget.spent,
            adapters=[
                {
                    "name": a.name,
                    "address": a.address,
                    "balance": str(a.balance),
                    "apy": a.apy,
                    "is_healthy": a.is_healthy
                }
                for a in adapters
            ],
            risk_scores=scores,
            anomalies=anomalies,
            highest_severity=highest,
            defaulted_signals=defaulted,
            chains=reports,
            write=write,
            duration_seconds=round(time.perf_counter() - start, 3)
        )


class RebalanceWorkflow:
    """Re-plan vault weights from registry risk and push them when they move enough"""

    def __init__(
        self,
        deployment: DeploymentConfig,
        writer: OnchainWriter,
        reader_factory: ReaderFactory = default_reader_factory,
        planner: AllocationPlanner = allocation_planner
    ):
        self.deployment = deployment
        self.writer = writer
        self.reader_factory = reader_factory
        self.planner = planner

    async def _read_risk_info(self, reader: ChainReader, chain: ChainConfig, budget: CallBudget,
                              adapters: List[str]) -> List[AdapterRiskInfo]:
        risks = {}
        for adapter in adapters:
            if not budget.can_afford(1):
                logger.warning("Budget exhausted, skipping protocol risk read", adapter=adapter)
                break
            try:
                risks[adapter] = await read_protocol_risk(reader, chain.risk_registry, adapter)
            except ChainReadError as e:
                logger.warning("Protocol risk read failed", adapter=adapter, error=str(e))

        apys = {}
        for adapter in risks:
            if not budget.can_afford(1):
                logger.info("Budget exhausted, remaining adapters planned without APY")
                break
            try:
                apys[adapter] = await read_adapter_apy(reader, adapter)
            except ChainReadError as e:
                logger.warning("Adapter APY read failed", adapter=adapter, error=str(e))

        return [
            AdapterRiskInfo(
                address=adapter,
                risk_score=risk.risk_score,
                threat_level=risk.threat_level,
                apy=apys.get(adapter, 0)
            )
            for adapter, risk in risks.items()
        ]

    async def run(self, event: ThreatChangeEvent) -> RebalanceOutcome:
        if event.threat_level >= ThreatLevel.CRITICAL:
            logger.info("CRITICAL threat, skipping rebalance in favour of shield", protocol=event.protocol)
            return RebalanceOutcome(status=ScanStatus.SKIPPED,
                                    message="CRITICAL threat is handled by the shield executor")

        chain = self.deployment.chain_for_adapter(event.protocol) or self.deployment.chains[0]
        budget = CallBudget(settings.CHAIN_READ_BUDGET, "rebalance_reads")
        reader = BudgetedReader(self.reader_factory(chain), budget)

        try:
            pools = await read_pool_allocations(reader, chain.shield_vault)
            active = [pool.adapter for pool in pools if pool.is_active]
            risk_info = await self._read_risk_info(reader, chain, budget, active)
        except ChainReadError as e:
            error_collector.record_error(e, {"workflow": "rebalance", "chain": chain.chain_name})
            return RebalanceOutcome(status=ScanStatus.ERROR, message=str(e))
        finally:
            await reader.close()

        config = self.deployment.shield_config
        allocations = self.planner.calculate_optimal_allocations(pools, risk_info, config)
        if not allocations:
            return RebalanceOutcome(status=ScanStatus.NO_REBALANCE, message="No active pools")

        if not self.planner.should_rebalance(pools, allocations, config.rebalance_threshold_bps):
            return RebalanceOutcome(status=ScanStatus.NO_REBALANCE, allocations=allocations,
                                    message="Weight changes below threshold")

        writes = []
        signature, types = UPDATE_POOL_WEIGHT
        for allocation in allocations:
            calldata = encode_call(signature, types, [allocation.adapter, allocation.new_weight])
            result = await submit_write(self.writer, chain.shield_vault, calldata, "updatePoolWeight",
                                        chain.chain_name)
            writes.append(result)
            if not result.success:
                return RebalanceOutcome(status=ScanStatus.ERROR, allocations=allocations, writes=writes,
                                        message=f"Pool weight update failed: {result.message}")

        signature, types = REBALANCE
        result = await submit_write(self.writer, chain.shield_vault, encode_call(signature, types, []),
                                    "rebalance", chain.chain_name)
        writes.append(result)
        if not result.success:
            return RebalanceOutcome(status=ScanStatus.ERROR, allocations=allocations, writes=writes,
                                    message=f"Rebalance call failed: {result.message}")

        metrics_collector.increment("rebalances")
        return RebalanceOutcome(status=ScanStatus.REBALANCED, allocations=allocations, writes=writes,
                                message=f"Rebalanced {len(allocations)} pools")


class ShieldAgent:
    """Owns the deployment and serialises scan cycles and risk events"""

    def __init__(
        self,
        deployment: Optional[DeploymentConfig] = None,
        writer: Optional[OnchainWriter] = None,
        reader_factory: ReaderFactory = default_reader_factory,
        fetcher_factory: Optional[FetcherFactory] = None
    ):
        self.deployment = None
        self.writer = None
        self.reader_factory = reader_factory
        self.fetcher_factory = fetcher_factory
        self.last_scan: Optional[ScanSummary] = None
        self.actions: deque = deque(maxlen=settings.HISTORY_MAX_ENTRIES)
        self._lock = asyncio.Lock()

        if deployment is not None:
            self.configure(deployment, writer or build_writer())

    def configure(self, deployment: DeploymentConfig, writer: OnchainWriter):
        self.deployment = deployment
        self.writer = writer
        self.scanner = SentinelScanner(deployment, writer, self.reader_factory, self.fetcher_factory)
        self.rebalancer = RebalanceWorkflow(deployment, writer, self.reader_factory)
        self.shield = ShieldExecutor(writer, deployment.shield_config)

    def load(self, path: Optional[str] = None):
        """Load the deployment file and build the writer"""
        self.configure(load_deployment_config(path), build_writer())

    @property
    def is_configured(self) -> bool:
        return self.deployment is not None

    @property
    def scan_in_progress(self) -> bool:
        return self._lock.locked()

    def _require_configured(self):
        if not self.is_configured:
            raise ConfigurationError("Shield agent has no deployment configuration")

    async def run_scan_cycle(self) -> ScanSummary:
        """Run one scan cycle; waits for any cycle already in progress"""
        self._require_configured()

        async with self._lock:
            logger.info("Starting scan cycle")
            with metrics_collector.timer("scan_cycle_seconds"):
                summary = await self.scanner.run_cycle()
            self.last_scan = summary

        await db_manager.record(Collections.SCANS, summary.model_dump())
        await log_event("scan_cycle_completed", {
            "status": summary.status,
            "chain": summary.chain,
            "budget_used": summary.budget_used,
            "anomalies": len(summary.anomalies),
            "highest_severity": summary.highest_severity.name if summary.highest_severity else None,
            "risk_write": summary.write.success if summary.write else None,
            "duration_seconds": summary.duration_seconds
        })
        return summary

    async def handle_risk_event(self, log: Dict[str, Any]) -> Dict[str, Any]:
        """Route a RiskScoreUpdated log to the shield executor and the rebalancer"""
        self._require_configured()
        event = decode_threat_event(log)

        if event.defaulted:
            return {
                "event": event,
                "shield": ShieldResult(message="Event could not be decoded, no action taken"),
                "rebalance": None
            }

        chain = self.deployment.chain_for_adapter(event.protocol)
        if chain is None:
            logger.warning("Event protocol is not a configured adapter, using first chain vault",
                           protocol=event.protocol)
            chain = self.deployment.chains[0]

        async with self._lock:
            shield_result = await self.shield.dispatch(event, chain.shield_vault, chain.chain_name)
            rebalance = None
            if event.threat_level < ThreatLevel.CRITICAL:
                rebalance = await self.rebalancer.run(event)

        if shield_result.actions:
            self.actions.appendleft(shield_result)
            metrics_collector.increment("shield_actions", tags={"level": shield_result.threat_level.name})
            await db_manager.record(Collections.ACTIONS, shield_result.model_dump())
            await log_event("shield_action", {
                "protocol": shield_result.protocol,
                "threat_level": shield_result.threat_level.name,
                "success": shield_result.success,
                "message": shield_result.message
            }, "warning" if shield_result.success else "error")

        if rebalance is not None and rebalance.status != ScanStatus.SKIPPED:
            await db_manager.record(Collections.REBALANCES, rebalance.model_dump())

        return {"event": event, "shield": shield_result, "rebalance": rebalance}

    async def recent_actions(self, limit: int = 50) -> List[Dict[str, Any]]:
        if db_manager.enabled:
            return await db_manager.recent(Collections.ACTIONS, limit)
        return [action.model_dump(mode="json") for action in list(self.actions)[:limit]]

    async def close(self):
        if self.writer is not None:
            await self.writer.close()


# Global agent instance, configured at application startup
agent = ShieldAgent()
