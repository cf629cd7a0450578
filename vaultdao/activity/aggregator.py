"""
Activity Aggregator

Pages through the vault contract's event log and turns it into an ordered,
deduplicated VaultActivity feed.

    - filters (type / actor / date) are applied before dedup, so filtered-out
      events never occupy the seen-set
    - the seen-set is bounded (oldest ids are forgotten first); once an id
      is forgotten, anything at or below its ledger position counts as seen
    - a failed page raises FeedError carrying everything aggregated so far
      and the last fully consumed cursor
"""

import asyncio
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import date
from typing import Any, AsyncIterator, Dict, FrozenSet, List, Optional, Tuple

from ..constants import FEED_DEDUP_WINDOW, FEED_FETCH_TIMEOUT, FEED_MAX_PAGES, FEED_PAGE_SIZE
from ..exceptions import FeedError, LedgerRPCError, ValidationError
from ..logger import get_logger
from ..metrics import VaultMetrics
from .types import VaultActivity, VaultEventType, parse_event

logger = get_logger(__name__)


def _as_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        raise ValidationError(f"Invalid date {value!r}, expected YYYY-MM-DD")


@dataclass(frozen=True)
class ActivityFilter:
    """Event-type set (empty = all), actor, and inclusive UTC date range."""
    event_types: FrozenSet[VaultEventType] = field(default_factory=frozenset)
    actor: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None

    def __post_init__(self):
        object.__setattr__(
            self, "event_types", frozenset(VaultEventType.parse(t) for t in self.event_types)
        )
        object.__setattr__(self, "start_date", _as_date(self.start_date))
        object.__setattr__(self, "end_date", _as_date(self.end_date))

    def matches(self, activity: VaultActivity) -> bool:
        if self.event_types and activity.type not in self.event_types:
            return False
        if self.actor and activity.actor != self.actor:
            return False
        day = activity.timestamp.date()
        if self.start_date is not None and day < self.start_date:
            return False
        if self.end_date is not None and day > self.end_date:
            return False
        return True


@dataclass
class ActivityPage:
    activities: List[VaultActivity] = field(default_factory=list)
    latest_ledger: int = 0
    cursor: Optional[str] = None
    has_more: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "activities": [a.to_dict() for a in self.activities],
            "latestLedger": self.latest_ledger,
            "cursor": self.cursor,
            "hasMore": self.has_more,
        }


class ActivityAggregator:
    """
    Cursor-paginated, deduplicating reader of vault events.

    Args:
        rpc:           LedgerRPC providing get_events
        contract_id:   Vault contract to read
        page_size:     Events requested per query
        max_pages:     Upper bound of queries per fetch()
        fetch_timeout: Timeout of a single page query (seconds)
        metrics:       Optional metrics sink
    """

    def __init__(
        self,
        rpc,
        contract_id: str,
        page_size: int = FEED_PAGE_SIZE,
        max_pages: int = FEED_MAX_PAGES,
        fetch_timeout: float = FEED_FETCH_TIMEOUT,
        metrics: Optional[VaultMetrics] = None,
        dedup_window: int = FEED_DEDUP_WINDOW,
    ):
        self.rpc = rpc
        self.contract_id = contract_id
        self.page_size = page_size
        self.max_pages = max_pages
        self.fetch_timeout = fetch_timeout
        self.metrics = metrics
        self._dedup_window = dedup_window
        self._seen: "OrderedDict[str, Tuple[int, int]]" = OrderedDict()
        # Highest (ledger, index) forgotten from the window
        self._evicted_through: Optional[Tuple[int, int]] = None
        self._cursor: Optional[str] = None

    @property
    def cursor(self) -> Optional[str]:
        """Resume point after the last fully consumed page."""
        return self._cursor

    def seen(self, event_id: str) -> bool:
        return event_id in self._seen

    def _is_duplicate(self, activity: VaultActivity) -> bool:
        """
        Already emitted: the id is in the window, or the event sits at or
        below a position the window has since forgotten.
        """
        if activity.event_id in self._seen:
            return True
        return self._evicted_through is not None and activity.sort_key <= self._evicted_through

    def _remember(self, activity: VaultActivity) -> None:
        self._seen[activity.event_id] = activity.sort_key
        while len(self._seen) > self._dedup_window:
            _, position = self._seen.popitem(last=False)
            if self._evicted_through is None or position > self._evicted_through:
                self._evicted_through = position

    async def _query(self, cursor: Optional[str], start_ledger: Optional[int]) -> Dict[str, Any]:
        return await asyncio.wait_for(
            self.rpc.get_events(
                self.contract_id,
                cursor=cursor,
                start_ledger=start_ledger if cursor is None else None,
                limit=self.page_size,
            ),
            timeout=self.fetch_timeout,
        )

    async def fetch(
        self,
        filters: Optional[ActivityFilter] = None,
        cursor: Optional[str] = None,
        start_ledger: Optional[int] = None,
        max_pages: Optional[int] = None,
    ) -> ActivityPage:
        """
        Read up to *max_pages* pages starting at *cursor* (or the stored
        resume cursor, or *start_ledger* for a fresh feed).

        Raises:
            FeedError: a page query failed; `partial` holds the activities
                aggregated before it, `cursor` the last good cursor.
        """
        cursor = cursor if cursor is not None else self._cursor
        pages = max_pages or self.max_pages
        collected: List[VaultActivity] = []
        latest_ledger = 0
        has_more = False

        for _ in range(pages):
            try:
                response = await self._query(cursor, start_ledger)
            except (asyncio.TimeoutError, LedgerRPCError) as e:
                if self.metrics:
                    self.metrics.feed_errors.inc()
                logger.error(f"Event query for {self.contract_id[:8]}… failed at cursor {cursor}: {e}")
                collected.sort(key=lambda a: a.sort_key)
                partial = ActivityPage(collected, latest_ledger, cursor, has_more=True)
                raise FeedError(f"Event log query failed: {e}", partial=partial, cursor=cursor) from e

            events = response.get("events") or []
            latest_ledger = max(latest_ledger, int(response.get("latestLedger") or 0))

            for raw in events:
                try:
                    activity = parse_event(raw)
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning(f"Skipping malformed event envelope {raw!r}: {e}")
                    continue
                if filters is not None and not filters.matches(activity):
                    continue
                if self._is_duplicate(activity):
                    if self.metrics:
                        self.metrics.events_deduplicated.inc()
                    continue
                self._remember(activity)
                collected.append(activity)

            next_cursor = response.get("cursor")
            if not next_cursor and events:
                next_cursor = events[-1].get("pagingToken") or events[-1].get("id")
            if next_cursor:
                cursor = next_cursor
                self._cursor = cursor

            has_more = len(events) >= self.page_size
            if not has_more:
                break

        collected.sort(key=lambda a: a.sort_key)
        if self.metrics:
            self.metrics.events_ingested.inc(len(collected))
        logger.debug(
            f"Fetched {len(collected)} activities up to ledger {latest_ledger} (more={has_more})"
        )
        return ActivityPage(collected, latest_ledger, cursor, has_more)

    async def stream(
        self,
        filters: Optional[ActivityFilter] = None,
        start_ledger: Optional[int] = None,
    ) -> AsyncIterator[VaultActivity]:
        """Yield activities page by page until the log is exhausted."""
        page = await self.fetch(filters, start_ledger=start_ledger, max_pages=1)
        while True:
            for activity in page.activities:
                yield activity
            if not page.has_more:
                return
            page = await self.fetch(filters, max_pages=1)

    def reset(self, cursor: Optional[str] = None) -> None:
        """Forget the resume cursor (and the seen-set) to rescan the log."""
        self._cursor = cursor
        self._seen.clear()
        self._evicted_through = None
