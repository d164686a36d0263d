"""
In-process metrics for scan cycles, budgets, anomalies, writes and shield actions
"""
import threading
import time
from collections import defaultdict, deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List

import structlog

logger = structlog.get_logger()


@dataclass
class MetricPoint:
    """Single metric data point"""
    name: str
    value: float
    timestamp: datetime
    tags: Dict[str, str] = field(default_factory=dict)
    unit: str = "count"


class MetricsCollector:
    """Collects and stores application metrics"""

    def __init__(self, max_points_per_metric: int = 1000):
        self.metrics: Dict[str, deque] = defaultdict(lambda: deque(maxlen=max_points_per_metric))
        self.counters: Dict[str, float] = defaultdict(float)
        self.gauges: Dict[str, float] = defaultdict(float)
        self.histograms: Dict[str, List[float]] = defaultdict(list)
        self._lock = threading.Lock()

    def increment(self, name: str, value: float = 1.0, tags: Dict[str, str] = None):
        """Increment a counter metric"""
        with self._lock:
            self.counters[name] += value
            self._record_point(name, self.counters[name], tags or {}, "count")

    def set_gauge(self, name: str, value: float, tags: Dict[str, str] = None):
        """Set a gauge metric"""
        with self._lock:
            self.gauges[name] = value
            self._record_point(name, value, tags or {}, "gauge")

    def record_histogram(self, name: str, value: float, tags: Dict[str, str] = None):
        """Record a histogram value"""
        with self._lock:
            self.histograms[name].append(value)
            if len(self.histograms[name]) > 1000:
                self.histograms[name] = self.histograms[name][-1000:]
            self._record_point(name, value, tags or {}, "histogram")

    def _record_point(self, name: str, value: float, tags: Dict[str, str], unit: str):
        self.metrics[name].append(MetricPoint(
            name=name,
            value=value,
            timestamp=datetime.utcnow(),
            tags=tags,
            unit=unit
        ))

    @contextmanager
    def timer(self, name: str, tags: Dict[str, str] = None):
        """Record the duration of a block in seconds"""
        start = time.perf_counter()
        try:
            yield
        finally:
            self.record_histogram(name, time.perf_counter() - start, tags)

    def get_all_current_metrics(self) -> Dict[str, Any]:
        """Get current values for all metrics"""
        with self._lock:
            return {
                "counters": dict(self.counters),
                "gauges": dict(self.gauges),
                "histogram_counts": {name: len(values) for name, values in self.histograms.items()}
            }


# Global metrics collector
metrics_collector = MetricsCollector()
