"""
VaultDAO Metrics Collector

In-process metrics rendered in the Prometheus text exposition format
(version 0.0.4). The engine has no metrics server of its own; a host
application mounts ``VaultMetrics.expose()`` wherever it serves metrics.

Metric types:
    - Counter        — monotonically increasing
    - LabeledCounter — counter family keyed by label values
    - Gauge          — can go up and down
    - Histogram      — latencies with configurable buckets
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple


def _format_labels(names: Tuple[str, ...], values: Tuple[str, ...]) -> str:
    pairs = ",".join(f'{n}="{v}"' for n, v in zip(names, values))
    return "{" + pairs + "}"


@dataclass
class Counter:
    """Monotonically increasing counter."""
    name: str
    help: str = ""
    _value: float = 0.0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def inc(self, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("Counter can only be incremented")
        with self._lock:
            self._value += amount

    @property
    def value(self) -> float:
        return self._value

    def expose(self) -> str:
        lines = []
        if self.help:
            lines.append(f"# HELP {self.name} {self.help}")
        lines.append(f"# TYPE {self.name} counter")
        lines.append(f"{self.name} {self._value}")
        return "\n".join(lines)


@dataclass
class LabeledCounter:
    """Counter family, one series per combination of label values."""
    name: str
    help: str = ""
    labels: Tuple[str, ...] = ()
    _series: Dict[Tuple[str, ...], float] = field(default_factory=dict, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def inc(self, *label_values: str, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("Counter can only be incremented")
        if len(label_values) != len(self.labels):
            raise ValueError(
                f"{self.name} expects labels {self.labels}, got {label_values}"
            )
        key = tuple(str(v) for v in label_values)
        with self._lock:
            self._series[key] = self._series.get(key, 0.0) + amount

    def value(self, *label_values: str) -> float:
        return self._series.get(tuple(str(v) for v in label_values), 0.0)

    def expose(self) -> str:
        lines = []
        if self.help:
            lines.append(f"# HELP {self.name} {self.help}")
        lines.append(f"# TYPE {self.name} counter")
        with self._lock:
            for key, value in sorted(self._series.items()):
                lines.append(f"{self.name}{_format_labels(self.labels, key)} {value}")
        return "\n".join(lines)


@dataclass
class Gauge:
    """Gauge that can go up and down."""
    name: str
    help: str = ""
    _value: float = 0.0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def set(self, value: float) -> None:
        with self._lock:
            self._value = value

    def inc(self, amount: float = 1.0) -> None:
        with self._lock:
            self._value += amount

    def dec(self, amount: float = 1.0) -> None:
        with self._lock:
            self._value -= amount

    @property
    def value(self) -> float:
        return self._value

    def expose(self) -> str:
        lines = []
        if self.help:
            lines.append(f"# HELP {self.name} {self.help}")
        lines.append(f"# TYPE {self.name} gauge")
        lines.append(f"{self.name} {self._value}")
        return "\n".join(lines)


# Submission round-trips are seconds, not milliseconds
DEFAULT_BUCKETS: Tuple[float, ...] = (
    0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0,
)


@dataclass
class Histogram:
    """Histogram with configurable buckets."""
    name: str
    help: str = ""
    buckets: Tuple[float, ...] = DEFAULT_BUCKETS
    _bucket_counts: Dict[float, int] = field(default_factory=dict, repr=False)
    _sum: float = 0.0
    _count: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def __post_init__(self):
        if not self._bucket_counts:
            self._bucket_counts = {b: 0 for b in self.buckets}

    def observe(self, value: float) -> None:
        with self._lock:
            self._sum += value
            self._count += 1
            # Only the smallest matching bucket; expose() accumulates
            for b in sorted(self.buckets):
                if value <= b:
                    self._bucket_counts[b] += 1
                    break

    @property
    def count(self) -> int:
        return self._count

    @property
    def sum(self) -> float:
        return self._sum

    def expose(self) -> str:
        lines = []
        if self.help:
            lines.append(f"# HELP {self.name} {self.help}")
        lines.append(f"# TYPE {self.name} histogram")
        cumulative = 0
        for b in sorted(self.buckets):
            cumulative += self._bucket_counts.get(b, 0)
            lines.append(f'{self.name}_bucket{{le="{b}"}} {cumulative}')
        lines.append(f'{self.name}_bucket{{le="+Inf"}} {self._count}')
        lines.append(f"{self.name}_sum {self._sum}")
        lines.append(f"{self.name}_count {self._count}")
        return "\n".join(lines)


class MetricsRegistry:
    """Central registry rendering every metric in exposition format."""

    def __init__(self):
        self._metrics: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def register(self, metric: Any) -> None:
        with self._lock:
            if metric.name in self._metrics:
                raise ValueError(f"Metric already registered: {metric.name}")
            self._metrics[metric.name] = metric

    def get(self, name: str) -> Optional[Any]:
        return self._metrics.get(name)

    @property
    def metric_count(self) -> int:
        return len(self._metrics)

    def expose(self) -> str:
        parts: List[str] = []
        with self._lock:
            for metric in self._metrics.values():
                parts.append(metric.expose())
        return "\n\n".join(parts) + "\n"


class VaultMetrics:
    """
    Pre-configured metrics for one vault engine instance.

    Components accept an optional VaultMetrics and update it as events
    occur; ``expose()`` returns the exposition body.
    """

    def __init__(self):
        self.registry = MetricsRegistry()

        # --- Pipeline ---
        self.actions_total = LabeledCounter(
            "vault_pipeline_actions_total",
            "Pipeline actions by contract function and outcome",
            labels=("action", "outcome"),
        )
        self.stage_failures_total = LabeledCounter(
            "vault_pipeline_stage_failures_total",
            "Pipeline failures by stage",
            labels=("stage",),
        )
        self.submit_latency = Histogram(
            "vault_pipeline_submit_seconds",
            "Time from submission to terminal ledger result",
        )
        self.in_flight = Gauge(
            "vault_pipeline_in_flight",
            "Submitted transactions still being tracked",
        )

        # --- Store ---
        self.pending_reconciliation = Gauge(
            "vault_proposals_pending_reconciliation",
            "Proposals waiting for an ambiguous submission to resolve",
        )
        self.transitions_total = LabeledCounter(
            "vault_proposal_transitions_total",
            "Applied proposal status transitions",
            labels=("to",),
        )
        self.ledger_height = Gauge(
            "vault_ledger_height",
            "Last synced ledger height",
        )

        # --- Activity feed ---
        self.events_ingested = Counter(
            "vault_feed_events_total",
            "Activity records emitted by the aggregator",
        )
        self.events_deduplicated = Counter(
            "vault_feed_duplicates_total",
            "Redelivered events dropped by eventId",
        )
        self.feed_errors = Counter(
            "vault_feed_errors_total",
            "Event-log queries that failed",
        )

        for attr in vars(self).values():
            if isinstance(attr, (Counter, LabeledCounter, Gauge, Histogram)):
                self.registry.register(attr)

    def expose(self) -> str:
        return self.registry.expose()
