"""
Ledger-Height Timelocks

Implements:
  - LedgerClock: last synced ledger height plus the ledger cadence
  - TimelockCalculator: remaining lock units and wait time for a proposal
  - TimelockCountdown: resync-based countdown for display layers

Heights are authoritative. Wall-clock time is used only to interpolate a
display value between two syncs and is discarded at every resync.
"""

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from ..constants import SECONDS_PER_LEDGER
from ..exceptions import ValidationError
from ..logger import get_logger

logger = get_logger(__name__)


def remaining_units(unlock_height: int, current_height: int) -> int:
    """Ledgers left before *unlock_height*; 0 when there is no timelock."""
    if unlock_height <= 0:
        return 0
    return max(0, unlock_height - current_height)


# ══════════════════════════════════════════════════════════════════════
#  LEDGER CLOCK
# ══════════════════════════════════════════════════════════════════════

class LedgerClock:
    """
    Tracks the last synced ledger height.

    Heights only move forward: a sync reporting a lower height than the one
    already held (a lagging RPC node) is ignored.
    """

    def __init__(
        self,
        seconds_per_ledger: int = SECONDS_PER_LEDGER,
        height: int = 0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if seconds_per_ledger < 1:
            raise ValidationError(f"seconds_per_ledger must be >= 1, got {seconds_per_ledger}")
        self.seconds_per_ledger = seconds_per_ledger
        self._clock = clock
        self._height = height
        self._synced_at = clock()
        self._listeners: List[Callable[[int], None]] = []
        self._lock = threading.Lock()

    @property
    def height(self) -> int:
        """Last synced (authoritative) ledger height."""
        return self._height

    @property
    def synced_at(self) -> float:
        return self._synced_at

    def subscribe(self, listener: Callable[[int], None]) -> None:
        """Call *listener(height)* after every accepted sync."""
        self._listeners.append(listener)

    def sync(self, height: int) -> int:
        """
        Record a height read from the ledger.

        Returns the height held after the sync.
        """
        with self._lock:
            if height < self._height:
                logger.warning(
                    f"Ignoring stale ledger {height} (already synced to ledger {self._height})"
                )
                return self._height
            self._height = height
            self._synced_at = self._clock()
        for listener in list(self._listeners):
            listener(height)
        return height

    def estimate_height(self, now: Optional[float] = None) -> int:
        """Interpolated height for display only. Never fed back into guards."""
        now = self._clock() if now is None else now
        elapsed = max(0.0, now - self._synced_at)
        return self._height + int(elapsed // self.seconds_per_ledger)

    def seconds_for(self, units: int) -> int:
        return units * self.seconds_per_ledger

    def __repr__(self) -> str:
        return f"<LedgerClock height={self._height} cadence={self.seconds_per_ledger}s>"


# ══════════════════════════════════════════════════════════════════════
#  CALCULATOR
# ══════════════════════════════════════════════════════════════════════

class TimelockCalculator:
    """Pure timelock arithmetic over a proposal's unlock height."""

    def __init__(self, seconds_per_unit: int = SECONDS_PER_LEDGER):
        self.seconds_per_unit = seconds_per_unit

    def remaining_units(self, proposal: Any, current_height: int) -> int:
        return remaining_units(proposal.unlock_height, current_height)

    def remaining_time(self, proposal: Any, current_height: int) -> int:
        """Estimated seconds until the timelock opens."""
        return self.remaining_units(proposal, current_height) * self.seconds_per_unit

    def is_satisfied(self, proposal: Any, current_height: int) -> bool:
        return self.remaining_units(proposal, current_height) == 0

    def unlock_height_for(
        self,
        amount: int,
        created_ledger: int,
        timelock_threshold: int,
        timelock_delay: int,
    ) -> int:
        """Unlock height the vault assigns at creation (0 = no timelock)."""
        if timelock_delay > 0 and amount > timelock_threshold:
            return created_ledger + timelock_delay
        return 0


# ══════════════════════════════════════════════════════════════════════
#  COUNTDOWN
# ══════════════════════════════════════════════════════════════════════

@dataclass
class TimelockCountdown:
    """
    Cached remaining-units value plus the height/time it was synced at.

    `remaining_units` is authoritative and only changes on `resync`.
    `display_seconds` interpolates between syncs for a smooth countdown.
    """
    proposal_id: int
    unlock_height: int
    seconds_per_unit: int
    synced_height: int
    synced_at: float
    remaining_units: int

    @classmethod
    def start(
        cls,
        proposal: Any,
        clock: LedgerClock,
        now: Optional[float] = None,
    ) -> "TimelockCountdown":
        return cls(
            proposal_id=proposal.id,
            unlock_height=proposal.unlock_height,
            seconds_per_unit=clock.seconds_per_ledger,
            synced_height=clock.height,
            synced_at=clock.synced_at if now is None else now,
            remaining_units=remaining_units(proposal.unlock_height, clock.height),
        )

    def resync(self, height: int, now: float) -> int:
        """Recompute from an authoritative height. Returns remaining units."""
        if height >= self.synced_height:
            self.synced_height = height
        self.synced_at = now
        self.remaining_units = remaining_units(self.unlock_height, self.synced_height)
        return self.remaining_units

    @property
    def remaining_time(self) -> int:
        return self.remaining_units * self.seconds_per_unit

    @property
    def is_satisfied(self) -> bool:
        return self.remaining_units == 0

    def display_seconds(self, now: float) -> float:
        """Smoothed seconds remaining; bounded by the last synced value."""
        elapsed = max(0.0, now - self.synced_at)
        return max(0.0, self.remaining_time - elapsed)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "proposalId": self.proposal_id,
            "unlockHeight": self.unlock_height,
            "syncedHeight": self.synced_height,
            "remainingUnits": self.remaining_units,
            "remainingTime": self.remaining_time,
            "isSatisfied": self.is_satisfied,
        }
