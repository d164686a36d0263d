from typing import List, Optional

import structlog

from .config import settings, AnomalyType
from .models import AdapterSnapshot, Anomaly, AnomalySeverity, OffchainSignals

logger = structlog.get_logger()

class AnomalyDetector:
    """Independent rules that flag specific attack or failure patterns.

    Rules never merge: one adapter can produce several findings in a cycle.
    """

    def __init__(self, high_apy_threshold_bps: int = None):
        if high_apy_threshold_bps is None:
            high_apy_threshold_bps = settings.HIGH_APY_THRESHOLD_BPS
        self.high_apy_threshold_bps = high_apy_threshold_bps

    def detect_anomalies(self, adapter: AdapterSnapshot, offchain: OffchainSignals) -> List[Anomaly]:
        anomalies = []

        def flag(anomaly_type: str, severity: AnomalySeverity, message: str):
            anomalies.append(Anomaly(type=anomaly_type, severity=severity,
                                     adapter=adapter.name, message=message))

        tvl_change = offchain.tvl.tvl_change_percent
        if tvl_change < -20:
            flag(AnomalyType.BANK_RUN, AnomalySeverity.CRITICAL,
                 f"TVL dropped {abs(tvl_change):.1f}% - possible bank run")
        elif tvl_change < -10:
            flag(AnomalyType.TVL_DROP, AnomalySeverity.WARNING,
                 f"TVL dropped {abs(tvl_change):.1f}%")

        if offchain.security.is_honeypot:
            flag(AnomalyType.HONEYPOT, AnomalySeverity.CRITICAL,
                 "Contract flagged as honeypot by security scanner")

        days_since_push = offchain.github.last_push_days_ago
        if days_since_push > 30 and offchain.team_wallet.recent_large_outflows:
            flag(AnomalyType.TEAM_EXIT, AnomalySeverity.CRITICAL,
                 f"No code push for {days_since_push} days and large admin wallet outflow")

        if adapter.is_drained:
            flag(AnomalyType.BALANCE_DRAIN, AnomalySeverity.CRITICAL,
                 f"Balance is 0 but principal is {adapter.principal} - possible exploit")

        if adapter.apy > self.high_apy_threshold_bps:
            flag(AnomalyType.APY_SPIKE, AnomalySeverity.WARNING,
                 f"APY {adapter.apy / 100:.2f}% exceeds {self.high_apy_threshold_bps / 100:.0f}% threshold")

        utilization = offchain.defi_metrics.utilization_for(adapter.name) if offchain.defi_metrics else None
        if utilization is not None:
            if utilization > 95:
                flag(AnomalyType.LIQUIDITY_CRUNCH, AnomalySeverity.CRITICAL,
                     f"Market utilization {utilization:.1f}% - withdrawals may fail")
            elif utilization > 85:
                flag(AnomalyType.HIGH_UTILIZATION, AnomalySeverity.WARNING,
                     f"Market utilization {utilization:.1f}%")

        return anomalies

    def detect_all_anomalies(self, adapters: List[AdapterSnapshot], offchain: OffchainSignals) -> List[Anomaly]:
        """Run every rule over every adapter, flattened in adapter order"""
        anomalies = []
        for adapter in adapters:
            anomalies.extend(self.detect_anomalies(adapter, offchain))

        for anomaly in anomalies:
            logger.warning("Anomaly detected", type=anomaly.type, severity=anomaly.severity.name,
                           adapter=anomaly.adapter, message=anomaly.message)
        return anomalies

    @staticmethod
    def get_highest_severity(anomalies: List[Anomaly]) -> Optional[AnomalySeverity]:
        if not anomalies:
            return None
        return max(anomaly.severity for anomaly in anomalies)


# Global anomaly detector instance
anomaly_detector = AnomalyDetector()
