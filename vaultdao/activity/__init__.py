"""
VaultDAO Activity Feed

Typed vault events (types.py) and the cursor-paginated aggregator
(aggregator.py).
"""

from .types import (
    EventDetails,
    UnknownDetails,
    VaultActivity,
    VaultEventType,
    parse_event,
)
from .aggregator import ActivityAggregator, ActivityFilter, ActivityPage

__all__ = [
    "EventDetails",
    "UnknownDetails",
    "VaultActivity",
    "VaultEventType",
    "parse_event",
    "ActivityAggregator",
    "ActivityFilter",
    "ActivityPage",
]
