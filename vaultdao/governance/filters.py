"""
Proposal filtering and sorting.

FilterEngine is pure: it never mutates the proposals it is given and
always returns a new list drawn from its input.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, time as dt_time, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

from ..exceptions import ValidationError
from .proposals import Proposal, ProposalStatus, parse_decimal_bound


class SortKey(str, Enum):
    NEWEST = "newest"
    OLDEST = "oldest"
    HIGHEST = "highest"
    LOWEST = "lowest"


def _day_start(d: date) -> float:
    return datetime.combine(d, dt_time.min, tzinfo=timezone.utc).timestamp()


def _day_end(d: date) -> float:
    # `to` is inclusive of the whole day
    return datetime.combine(d, dt_time.max, tzinfo=timezone.utc).timestamp()


def _as_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        raise ValidationError(f"Invalid date {value!r}, expected YYYY-MM-DD")


@dataclass(frozen=True)
class FilterSpec:
    """
    Declarative proposal query.

    Attributes:
        search:     Case-insensitive substring over proposer/recipient/memo,
                    matched as given (whitespace is significant)
        statuses:   Accepted statuses (empty = all)
        date_from:  Inclusive lower bound on creation day (UTC)
        date_to:    Inclusive upper bound on creation day (UTC, end of day)
        amount_min: Inclusive lower bound (None = unbounded)
        amount_max: Inclusive upper bound (None = unbounded)
        sort_by:    Result ordering
    """
    search: str = ""
    statuses: FrozenSet[ProposalStatus] = field(default_factory=frozenset)
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    amount_min: Optional[Decimal] = None
    amount_max: Optional[Decimal] = None
    sort_by: SortKey = SortKey.NEWEST

    def __post_init__(self):
        # Normalize loose inputs; frozen dataclass so go through object.__setattr__
        object.__setattr__(self, "search", self.search or "")
        object.__setattr__(
            self, "statuses", frozenset(ProposalStatus.parse(s) for s in self.statuses)
        )
        object.__setattr__(self, "date_from", _as_date(self.date_from))
        object.__setattr__(self, "date_to", _as_date(self.date_to))
        object.__setattr__(self, "amount_min", parse_decimal_bound(self.amount_min))
        object.__setattr__(self, "amount_max", parse_decimal_bound(self.amount_max))
        object.__setattr__(self, "sort_by", SortKey(self.sort_by))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FilterSpec":
        """Accepts the dashboard filter shape (dateRange/amountRange/sortBy)."""
        date_range = data.get("dateRange") or {}
        amount_range = data.get("amountRange") or {}
        return cls(
            search=data.get("search", ""),
            statuses=frozenset(data.get("statuses", ())),
            date_from=date_range.get("from") or None,
            date_to=date_range.get("to") or None,
            amount_min=amount_range.get("min"),
            amount_max=amount_range.get("max"),
            sort_by=data.get("sortBy", SortKey.NEWEST),
        )


class FilterEngine:
    """Applies a FilterSpec to a proposal collection."""

    def matches(self, proposal: Proposal, spec: FilterSpec) -> bool:
        if spec.search:
            needle = spec.search.lower()
            haystacks = (proposal.proposer, proposal.recipient, proposal.memo)
            if not any(needle in (h or "").lower() for h in haystacks):
                return False

        if spec.statuses and proposal.status not in spec.statuses:
            return False

        if spec.amount_min is not None and proposal.amount < spec.amount_min:
            return False
        if spec.amount_max is not None and proposal.amount > spec.amount_max:
            return False

        if spec.date_from is not None and proposal.created_at < _day_start(spec.date_from):
            return False
        if spec.date_to is not None and proposal.created_at > _day_end(spec.date_to):
            return False

        return True

    def apply(self, proposals: Iterable[Proposal], spec: FilterSpec) -> List[Proposal]:
        selected = [p for p in proposals if self.matches(p, spec)]

        # sorted() is stable, including with reverse=True, so ties keep input order
        if spec.sort_by == SortKey.OLDEST:
            return sorted(selected, key=lambda p: p.created_at)
        if spec.sort_by == SortKey.HIGHEST:
            return sorted(selected, key=lambda p: p.amount, reverse=True)
        if spec.sort_by == SortKey.LOWEST:
            return sorted(selected, key=lambda p: p.amount)
        return sorted(selected, key=lambda p: p.created_at, reverse=True)
