"""Prometheus-compatible metrics for call signaling.

Collects in-memory counters, gauges and a call-duration histogram and
renders them in the Prometheus text exposition format for the /metrics
endpoint. One collector is created per server instance.
"""

import logging
import threading
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass
class HistogramBucket:
    """Histogram bucket (cumulative count of observations <= le)."""

    le: float
    count: int = 0


@dataclass
class Histogram:
    """Histogram metric for tracking distributions."""

    name: str
    help: str
    labels: dict[str, str] = field(default_factory=dict)

    # Call durations span seconds to hours
    buckets: list[HistogramBucket] = field(
        default_factory=lambda: [
            HistogramBucket(le=10.0),
            HistogramBucket(le=30.0),
            HistogramBucket(le=60.0),
            HistogramBucket(le=300.0),  # 5m
            HistogramBucket(le=900.0),  # 15m
            HistogramBucket(le=1800.0),  # 30m
            HistogramBucket(le=3600.0),  # 1h
            HistogramBucket(le=7200.0),  # 2h
            HistogramBucket(le=float("inf")),
        ]
    )

    sum: float = 0.0
    count: int = 0

    def observe(self, value: float) -> None:
        """Record an observation (in seconds)."""
        self.sum += value
        self.count += 1
        for bucket in self.buckets:
            if value <= bucket.le:
                bucket.count += 1

    def quantile(self, q: float) -> float | None:
        """Approximate a quantile by linear interpolation inside buckets.

        Returns:
            Approximate value, or None if nothing was observed
        """
        if self.count == 0:
            return None

        target_rank = q * self.count
        prev_count = 0
        prev_le = 0.0
        for bucket in self.buckets:
            if bucket.count >= target_rank:
                in_bucket = bucket.count - prev_count
                if bucket.le == float("inf"):
                    return prev_le
                if in_bucket == 0:
                    return bucket.le
                fraction = (target_rank - prev_count) / in_bucket
                return prev_le + fraction * (bucket.le - prev_le)
            prev_count = bucket.count
            prev_le = bucket.le
        return prev_le


@dataclass
class Counter:
    """Counter metric (monotonically increasing)."""

    name: str
    help: str
    labels: dict[str, str] = field(default_factory=dict)
    value: float = 0.0

    def inc(self, amount: float = 1.0) -> None:
        self.value += amount


@dataclass
class Gauge:
    """Gauge metric (can go up or down)."""

    name: str
    help: str
    labels: dict[str, str] = field(default_factory=dict)
    value: float = 0.0

    def set(self, value: float) -> None:
        self.value = value

    def inc(self, amount: float = 1.0) -> None:
        self.value += amount

    def dec(self, amount: float = 1.0) -> None:
        self.value -= amount


class MetricsCollector:
    """Metrics collector with Prometheus-compatible output.

    Thread-safety: All public methods are guarded by a mutex so the health
    endpoint can read while the event loop writes.
    """

    def __init__(self, prefix: str = "teamcall_") -> None:
        self._lock = threading.RLock()
        self._prefix = prefix
        self._counters: dict[str, Counter] = {}
        self._gauges: dict[str, Gauge] = {}
        self._histograms: dict[str, Histogram] = {}

        for name, help_text in (
            ("connections_total", "Connections accepted"),
            ("events_total", "Inbound signaling events handled"),
            ("event_errors_total", "Inbound events answered with call_error"),
            ("calls_created_total", "Calls created"),
            ("calls_ended_total", "Calls ended because their roster emptied"),
            ("calls_expired_total", "Pending calls removed before anyone joined"),
            ("call_joins_total", "Accepted join_call events"),
            ("call_leaves_total", "Explicit leaves"),
            ("disconnect_cleanups_total", "Participants removed by disconnect cleanup"),
            ("dropped_sends_total", "Outbound events that could not be delivered"),
        ):
            self._counters[name] = Counter(name=prefix + name, help=help_text)

        for name, help_text in (
            ("connections_active", "Open client connections"),
            ("calls_active", "Calls currently held in the store"),
            ("participants_active", "Participants across all calls"),
        ):
            self._gauges[name] = Gauge(name=prefix + name, help=help_text)

        self._histograms["call_duration_seconds"] = Histogram(
            name=prefix + "call_duration_seconds",
            help="Call duration from creation to last participant leaving",
        )

    # === Recording ===

    def record_connection_opened(self) -> None:
        with self._lock:
            self._counters["connections_total"].inc()
            self._gauges["connections_active"].inc()

    def record_connection_closed(self) -> None:
        with self._lock:
            self._gauges["connections_active"].dec()

    def record_event(self, error: bool = False) -> None:
        with self._lock:
            self._counters["events_total"].inc()
            if error:
                self._counters["event_errors_total"].inc()

    def record_call_created(self) -> None:
        with self._lock:
            self._counters["calls_created_total"].inc()

    def record_join(self) -> None:
        with self._lock:
            self._counters["call_joins_total"].inc()

    def record_leave(self, disconnected: bool = False) -> None:
        with self._lock:
            if disconnected:
                self._counters["disconnect_cleanups_total"].inc()
            else:
                self._counters["call_leaves_total"].inc()

    def record_call_ended(self, duration_s: float | None) -> None:
        with self._lock:
            self._counters["calls_ended_total"].inc()
            if duration_s is not None:
                self._histograms["call_duration_seconds"].observe(max(duration_s, 0.0))

    def record_calls_expired(self, count: int) -> None:
        with self._lock:
            self._counters["calls_expired_total"].inc(count)

    def update_state(self, calls: int, participants: int, dropped_sends: int) -> None:
        """Refresh gauges from the current store/registry totals."""
        with self._lock:
            self._gauges["calls_active"].set(calls)
            self._gauges["participants_active"].set(participants)
            self._counters["dropped_sends_total"].value = float(dropped_sends)

    # === Export ===

    def export_prometheus(self) -> str:
        """Export all metrics in Prometheus exposition format."""
        with self._lock:
            lines: list[str] = []

            for counter in self._counters.values():
                lines.append(f"# HELP {counter.name} {counter.help}")
                lines.append(f"# TYPE {counter.name} counter")
                lines.append(f"{counter.name}{self._format_labels(counter.labels)} {counter.value}")

            for gauge in self._gauges.values():
                lines.append(f"# HELP {gauge.name} {gauge.help}")
                lines.append(f"# TYPE {gauge.name} gauge")
                lines.append(f"{gauge.name}{self._format_labels(gauge.labels)} {gauge.value}")

            for histogram in self._histograms.values():
                lines.append(f"# HELP {histogram.name} {histogram.help}")
                lines.append(f"# TYPE {histogram.name} histogram")
                labels_str = self._format_labels(histogram.labels)
                for bucket in histogram.buckets:
                    le = "+Inf" if bucket.le == float("inf") else str(bucket.le)
                    bucket_labels = self._format_labels({**histogram.labels, "le": le})
                    lines.append(f"{histogram.name}_bucket{bucket_labels} {bucket.count}")
                lines.append(f"{histogram.name}_sum{labels_str} {histogram.sum}")
                lines.append(f"{histogram.name}_count{labels_str} {histogram.count}")

            return "\n".join(lines) + "\n"

    def _format_labels(self, labels: dict[str, str]) -> str:
        if not labels:
            return ""
        label_pairs = [f'{k}="{v}"' for k, v in sorted(labels.items())]
        return "{" + ",".join(label_pairs) + "}"

    def get_summary(self) -> dict[str, float | None]:
        """Key metrics for dashboards and debugging."""
        with self._lock:
            duration = self._histograms["call_duration_seconds"]
            summary: dict[str, float | None] = {
                name: counter.value for name, counter in self._counters.items()
            }
            summary.update({name: gauge.value for name, gauge in self._gauges.items()})
            summary["call_duration_p50_s"] = duration.quantile(0.50)
            summary["call_duration_p95_s"] = duration.quantile(0.95)
            return summary
