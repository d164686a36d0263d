import math
from typing import Dict, List, Set

import structlog

from .config import BPS_DENOMINATOR
from .models import AdapterRiskInfo, AllocationResult, PoolAllocation, ShieldConfig, ThreatLevel

logger = structlog.get_logger()

# APY bonus is capped so yield never outweighs the risk ordering
MAX_APY_BONUS = 20

def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)

class AllocationPlanner:
    """Risk-weighted target allocation across the vault's adapters.

    Pools classified WARNING or CRITICAL are excluded outright. The rest are
    weighted by desirability = max(1, 100 - risk score) + min(APY bps / 100, 20),
    normalised to basis points, capped per adapter, and settled so that the
    weights sum to exactly 10,000.
    """

    def _desirability(self, info: AdapterRiskInfo = None) -> float:
        risk_score = info.risk_score if info else 0
        apy = info.apy if info else 0
        return max(1, 100 - risk_score) + min(apy / 100, MAX_APY_BONUS)

    def calculate_optimal_allocations(
        self,
        pools: List[PoolAllocation],
        risk_info: List[AdapterRiskInfo],
        config: ShieldConfig
    ) -> List[AllocationResult]:
        active = [pool.adapter for pool in pools if pool.is_active]
        if not active:
            return []

        risk_map = {info.address.lower(): info for info in risk_info}

        desirability: Dict[str, float] = {}
        excluded: Set[str] = set()
        for adapter in active:
            info = risk_map.get(adapter.lower())
            if info is not None and info.threat_level >= ThreatLevel.WARNING:
                desirability[adapter] = 0
                excluded.add(adapter)
            else:
                desirability[adapter] = self._desirability(info)

        total = sum(desirability.values())
        if total == 0:
            logger.warning("Every active pool is excluded, planning zero weights", pools=len(active))
            return [AllocationResult(adapter=adapter, new_weight=0) for adapter in active]

        weights = {
            adapter: _round_half_up(desirability[adapter] * BPS_DENOMINATOR / total)
            for adapter in active
        }

        cap = config.max_single_adapter_allocation
        self._apply_cap(weights, active, excluded, cap)
        self._settle_residual(weights, active, excluded, cap)

        results = [AllocationResult(adapter=adapter, new_weight=weights[adapter]) for adapter in active]
        logger.info("Allocation planned",
                    weights={result.adapter: result.new_weight for result in results},
                    excluded=sorted(excluded))
        return results

    @staticmethod
    def _by_weight(weights: Dict[str, int], adapters: List[str], order: List[str]) -> List[str]:
        return sorted(adapters, key=lambda adapter: (-weights[adapter], order.index(adapter)))

    def _apply_cap(self, weights: Dict[str, int], order: List[str], excluded: Set[str], cap: int):
        """Clip weights above the cap and spread the excess over pools still below it.

        Each pass either finishes or caps at least one more pool, so the loop
        is bounded by the number of pools.
        """
        for _ in range(len(order) + 1):
            excess = sum(weight - cap for weight in weights.values() if weight > cap)
            if excess == 0:
                return

            for adapter in order:
                if weights[adapter] > cap:
                    weights[adapter] = cap

            eligible = [a for a in order if a not in excluded and weights[a] < cap]
            if not eligible:
                logger.warning("No pool below cap to absorb excess", excess=excess, cap=cap)
                return

            share, remainder = divmod(excess, len(eligible))
            for i, adapter in enumerate(self._by_weight(weights, eligible, order)):
                weights[adapter] += share + (1 if i < remainder else 0)

    def _settle_residual(self, weights: Dict[str, int], order: List[str], excluded: Set[str], cap: int):
        """Put the difference from 10,000 onto the largest pool that can take it"""
        diff = BPS_DENOMINATOR - sum(weights.values())
        if diff == 0:
            return

        candidates = self._by_weight(weights, [a for a in order if a not in excluded], order)

        if diff < 0:
            weights[candidates[0]] += diff
            return

        for adapter in candidates:
            if weights[adapter] + diff <= cap:
                weights[adapter] += diff
                return

        for adapter in candidates:
            take = min(cap - weights[adapter], diff)
            if take > 0:
                weights[adapter] += take
                diff -= take
            if diff == 0:
                return

        # cap * eligible pools < 10,000: the exact total wins over the cap
        logger.warning("Allocation cap cannot be met, exceeding cap on largest pool",
                       cap=cap, eligible=len(candidates), residual=diff)
        weights[candidates[0]] += diff

    def should_rebalance(
        self,
        current_pools: List[PoolAllocation],
        planned: List[AllocationResult],
        threshold_bps: int = 500
    ) -> bool:
        """True when any pool's planned weight moves by at least the threshold.

        Pools absent from the plan are skipped.
        """
        planned_weights = {result.adapter.lower(): result.new_weight for result in planned}

        for pool in current_pools:
            new_weight = planned_weights.get(pool.adapter.lower())
            if new_weight is None:
                continue
            if abs(pool.target_weight - new_weight) >= threshold_bps:
                logger.info("Rebalance threshold met", adapter=pool.adapter,
                            current_weight=pool.target_weight, new_weight=new_weight,
                            threshold_bps=threshold_bps)
                return True

        return False


# Global allocation planner instance
allocation_planner = AllocationPlanner()
