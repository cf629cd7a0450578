"""
VaultDAO Metrics Module

Prometheus-compatible metrics for monitoring the engine.
"""

from .collector import (
    Counter,
    Gauge,
    Histogram,
    LabeledCounter,
    MetricsRegistry,
    VaultMetrics,
)

__all__ = [
    "Counter",
    "Gauge",
    "Histogram",
    "LabeledCounter",
    "MetricsRegistry",
    "VaultMetrics",
]
