from typing import Dict, List, Optional

import structlog

from .config import settings
from .models import AdapterScore, AdapterSnapshot, OffchainSignals, ProtocolRiskSnapshot, ThreatLevel

logger = structlog.get_logger()

class RiskScorer:
    """Deterministic weighted risk score for an adapter.

    Each sub-signal contributes independently; the sum is clamped to [0, 100]
    and mapped onto a threat level:

        health flag false                  +25
        APY exactly zero                   +10
        APY above the anomaly threshold     +7  (exclusive with zero APY)
        principal > 0 and balance == 0     +10
        TVL change < -20% / -10% / -5%     +15 / +10 / +5  (worst bracket only)
        honeypot                           +15
          otherwise owner can change balance +8, proxy without source +5,
          mintable +4 (stackable)
        days since last push > 60 / 30 / 14  +10 / +7 / +4  (worst bracket only)
        not open source                     +5
        recent large admin outflow          +5
    """

    def __init__(self, high_apy_threshold_bps: int = None):
        if high_apy_threshold_bps is None:
            high_apy_threshold_bps = settings.HIGH_APY_THRESHOLD_BPS
        self.high_apy_threshold_bps = high_apy_threshold_bps

    @staticmethod
    def classify(score: int) -> ThreatLevel:
        return ThreatLevel.from_score(score)

    def _apy_points(self, apy: int) -> int:
        if apy == 0:
            return 10
        if apy > self.high_apy_threshold_bps:
            return 7
        return 0

    @staticmethod
    def _tvl_points(tvl_change_percent: float) -> int:
        if tvl_change_percent < -20:
            return 15
        if tvl_change_percent < -10:
            return 10
        if tvl_change_percent < -5:
            return 5
        return 0

    @staticmethod
    def _security_points(offchain: OffchainSignals) -> int:
        security = offchain.security
        if security.is_honeypot:
            return 15

        points = 0
        if security.owner_can_change_balance:
            points += 8
        if security.is_proxy and not security.is_open_source:
            points += 5
        if security.is_mintable:
            points += 4
        return points

    @staticmethod
    def _staleness_points(days_since_push: int) -> int:
        if days_since_push > 60:
            return 10
        if days_since_push > 30:
            return 7
        if days_since_push > 14:
            return 4
        return 0

    def compute_risk_score(
        self,
        adapter: AdapterSnapshot,
        current_risk: Optional[ProtocolRiskSnapshot],
        offchain: OffchainSignals
    ) -> int:
        """Score one adapter.

        `current_risk` is the registry's prior record, or None when there is
        no prior data; it does not change the score.
        """
        score = 0

        if not adapter.is_healthy:
            score += 25

        score += self._apy_points(adapter.apy)

        if adapter.is_drained:
            score += 10

        score += self._tvl_points(offchain.tvl.tvl_change_percent)
        score += self._security_points(offchain)
        score += self._staleness_points(offchain.github.last_push_days_ago)

        if not offchain.security.is_open_source:
            score += 5

        if offchain.team_wallet.recent_large_outflows:
            score += 5

        return max(0, min(100, score))

    def compute_all_risk_scores(
        self,
        adapters: List[AdapterSnapshot],
        current_risks: List[ProtocolRiskSnapshot],
        offchain: OffchainSignals
    ) -> Dict[str, AdapterScore]:
        """Score every adapter, keyed by adapter name"""
        risks_by_address = {risk.address: risk for risk in current_risks}

        scores = {}
        for adapter in adapters:
            score = self.compute_risk_score(adapter, risks_by_address.get(adapter.address), offchain)
            scores[adapter.name] = AdapterScore(score=score, level=self.classify(score))
            logger.info("Adapter scored", adapter=adapter.name, score=score,
                        level=scores[adapter.name].level.name)

        return scores


# Global risk scorer instance
risk_scorer = RiskScorer()
