"""
Metrics collection for the AEC perpetual engine.

Thread-safe counters, gauges and histograms with optional labels, exported as
JSON (``get_all``) or Prometheus text (``to_prometheus``). Metric names are
prefixed with ``aec_`` on export.

Metrics recorded by the protocol:
- cycles_processed_total / cycles_skipped_total
- soft_failures_total{step=...}
- cycle_duration_ms (histogram)
- engine_balance, endowment_balance, pool_reward_rate{pool=...} (gauges)
- http_requests_total / http_request_duration_ms (API middleware)
"""

import threading
import time
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

DEFAULT_BUCKETS_MS = (1, 5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000)


@dataclass
class HistogramBucket:
    """Cumulative bucket: observations less than or equal to ``le``."""

    le: float
    count: int = 0


@dataclass
class Histogram:
    name: str
    buckets: list[HistogramBucket] = field(default_factory=list)
    sum: float = 0.0
    count: int = 0

    def __post_init__(self):
        if not self.buckets:
            self.buckets = [HistogramBucket(le=b) for b in DEFAULT_BUCKETS_MS]
            self.buckets.append(HistogramBucket(le=float("inf")))

    def observe(self, value: float) -> None:
        self.sum += value
        self.count += 1
        for bucket in self.buckets:
            if value <= bucket.le:
                bucket.count += 1


class MetricsCollector:
    """
    Thread-safe metrics collector.

    Label sets are flattened into a sorted ``k="v"`` key so each unique label
    combination is tracked independently.
    """

    def __init__(self, prefix: str = "aec"):
        self.prefix = prefix
        self._lock = threading.RLock()
        self._counters: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._gauges: dict[str, dict[str, float]] = defaultdict(lambda: defaultdict(float))
        self._histograms: dict[str, dict[str, Histogram]] = defaultdict(dict)
        self._start_time = time.time()

    def _labels_key(self, labels: dict[str, str] | None) -> str:
        if not labels:
            return ""
        return ",".join(f'{k}="{v}"' for k, v in sorted(labels.items()))

    # Counters

    def increment(self, name: str, value: int = 1, labels: dict[str, str] | None = None) -> None:
        with self._lock:
            self._counters[name][self._labels_key(labels)] += value

    def get_counter(self, name: str, labels: dict[str, str] | None = None) -> int:
        with self._lock:
            return self._counters[name].get(self._labels_key(labels), 0)

    # Gauges

    def set_gauge(self, name: str, value: float, labels: dict[str, str] | None = None) -> None:
        with self._lock:
            self._gauges[name][self._labels_key(labels)] = value

    def get_gauge(self, name: str, labels: dict[str, str] | None = None) -> float:
        with self._lock:
            return self._gauges[name].get(self._labels_key(labels), 0.0)

    # Histograms

    def timing(self, name: str, value_ms: float, labels: dict[str, str] | None = None) -> None:
        """Record a timing observation in milliseconds."""
        with self._lock:
            key = self._labels_key(labels)
            if key not in self._histograms[name]:
                self._histograms[name][key] = Histogram(name=name)
            self._histograms[name][key].observe(value_ms)

    @contextmanager
    def timer(self, name: str, labels: dict[str, str] | None = None):
        """Time the enclosed block, recording even when it raises."""
        start = time.perf_counter()
        try:
            yield
        finally:
            self.timing(name, (time.perf_counter() - start) * 1000, labels)

    # Protocol snapshots

    def record_protocol_state(self, protocol) -> None:
        """Refresh balance and rate gauges from a live protocol instance."""
        engine = protocol.engine
        self.set_gauge("engine_balance", protocol.aec.balance_of(engine.address))
        self.set_gauge("endowment_balance", protocol.endowment.current_balance)
        for name, pool in protocol.pools.items():
            self.set_gauge("pool_reward_rate", pool.ledger.reward_rate, {"pool": name})
            self.set_gauge("pool_total_staked", pool.ledger.total_supply, {"pool": name})

    # Export

    def get_all(self) -> dict[str, Any]:
        with self._lock:
            result = {
                "uptime_seconds": time.time() - self._start_time,
                "counters": {},
                "gauges": {},
                "histograms": {},
            }
            for section, store in (("counters", self._counters), ("gauges", self._gauges)):
                for name, values in store.items():
                    if len(values) == 1 and "" in values:
                        result[section][name] = values[""]
                    else:
                        result[section][name] = dict(values)

            for name, histograms in self._histograms.items():
                result["histograms"][name] = {}
                for key, hist in histograms.items():
                    result["histograms"][name][key or "_total"] = {
                        "count": hist.count,
                        "sum": hist.sum,
                        "avg": hist.sum / hist.count if hist.count > 0 else 0,
                        "buckets": {str(b.le): b.count for b in hist.buckets},
                    }
            return result

    def to_prometheus(self) -> str:
        """Export metrics in Prometheus text format."""
        lines = []
        with self._lock:
            uptime_name = f"{self.prefix}_uptime_seconds"
            lines.append(f"# HELP {uptime_name} Time since process start")
            lines.append(f"# TYPE {uptime_name} gauge")
            lines.append(f"{uptime_name} {time.time() - self._start_time:.2f}")
            lines.append("")

            for kind, store in (("counter", self._counters), ("gauge", self._gauges)):
                for name, values in store.items():
                    metric_name = f"{self.prefix}_{name}"
                    lines.append(f"# TYPE {metric_name} {kind}")
                    for key, value in values.items():
                        lines.append(f"{metric_name}{{{key}}} {value}" if key
                                     else f"{metric_name} {value}")
                    lines.append("")

            for name, histograms in self._histograms.items():
                metric_name = f"{self.prefix}_{name}"
                lines.append(f"# TYPE {metric_name} histogram")
                for key, hist in histograms.items():
                    sep = f"{key}," if key else ""
                    for bucket in hist.buckets:
                        le_val = "+Inf" if bucket.le == float("inf") else bucket.le
                        lines.append(f'{metric_name}_bucket{{{sep}le="{le_val}"}} {bucket.count}')
                    suffix = f"{{{key}}}" if key else ""
                    lines.append(f"{metric_name}_sum{suffix} {hist.sum:.2f}")
                    lines.append(f"{metric_name}_count{suffix} {hist.count}")
                lines.append("")

        return "\n".join(lines)

    def reset(self) -> None:
        """Reset all metrics (useful for testing)."""
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()
            self._start_time = time.time()


# Global metrics instance
metrics = MetricsCollector()
