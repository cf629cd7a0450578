"""
Ledger-Height Timelock Test Suite

Coverage:
  - remaining_units arithmetic and monotonicity
  - LedgerClock sync semantics (stale heights, listeners, estimates)
  - TimelockCalculator policy unlock heights
  - TimelockCountdown resync protocol and display interpolation
"""

import pytest

from vaultdao.exceptions import ValidationError
from vaultdao.governance.timelock import (
    LedgerClock,
    TimelockCalculator,
    TimelockCountdown,
    remaining_units,
)

from vault_fakes import make_approved


class FakeTime:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


# ══════════════════════════════════════════════════════════════════════
#  REMAINING UNITS
# ══════════════════════════════════════════════════════════════════════

class TestRemainingUnits:

    def test_no_timelock(self):
        assert remaining_units(0, 5) == 0

    def test_before_unlock(self):
        assert remaining_units(1500, 1200) == 300

    def test_at_and_after_unlock(self):
        assert remaining_units(1500, 1500) == 0
        assert remaining_units(1500, 9999) == 0

    def test_monotonically_non_increasing(self):
        values = [remaining_units(1500, h) for h in range(1300, 1700)]
        assert all(a >= b for a, b in zip(values, values[1:]))
        assert values[-1] == 0


class TestCalculator:

    def test_remaining_time(self):
        calc = TimelockCalculator(seconds_per_unit=5)
        p = make_approved(unlock_height=1500)
        assert calc.remaining_units(p, 1200) == 300
        assert calc.remaining_time(p, 1200) == 1500
        assert not calc.is_satisfied(p, 1499)
        assert calc.is_satisfied(p, 1500)

    def test_unlock_height_above_threshold(self):
        calc = TimelockCalculator()
        assert calc.unlock_height_for(5_000, 100, 1_000, 200) == 300

    def test_unlock_height_at_threshold_has_no_lock(self):
        calc = TimelockCalculator()
        assert calc.unlock_height_for(1_000, 100, 1_000, 200) == 0

    def test_unlock_height_without_delay(self):
        calc = TimelockCalculator()
        assert calc.unlock_height_for(5_000, 100, 0, 0) == 0


# ══════════════════════════════════════════════════════════════════════
#  LEDGER CLOCK
# ══════════════════════════════════════════════════════════════════════

class TestLedgerClock:

    def test_sync_advances(self):
        t = FakeTime(10.0)
        clock = LedgerClock(5, height=1000, clock=t)
        t.now = 20.0
        assert clock.sync(1010) == 1010
        assert clock.height == 1010
        assert clock.synced_at == 20.0

    def test_stale_height_ignored(self):
        clock = LedgerClock(5, height=1000, clock=FakeTime())
        assert clock.sync(990) == 1000
        assert clock.height == 1000

    def test_listeners_called(self):
        clock = LedgerClock(5, clock=FakeTime())
        seen = []
        clock.subscribe(seen.append)
        clock.sync(7)
        clock.sync(3)
        assert seen == [7]

    def test_estimate_height_interpolates(self):
        t = FakeTime(100.0)
        clock = LedgerClock(5, height=1000, clock=t)
        assert clock.estimate_height(now=112.0) == 1002
        assert clock.height == 1000

    def test_invalid_cadence(self):
        with pytest.raises(ValidationError):
            LedgerClock(0)

    def test_seconds_for(self):
        assert LedgerClock(6, clock=FakeTime()).seconds_for(10) == 60


# ══════════════════════════════════════════════════════════════════════
#  COUNTDOWN
# ══════════════════════════════════════════════════════════════════════

class TestCountdown:

    def make_countdown(self):
        t = FakeTime(0.0)
        clock = LedgerClock(5, height=1200, clock=t)
        return TimelockCountdown.start(make_approved(unlock_height=1500), clock)

    def test_start(self):
        cd = self.make_countdown()
        assert cd.remaining_units == 300
        assert cd.remaining_time == 1500
        assert not cd.is_satisfied

    def test_display_interpolates_without_touching_state(self):
        cd = self.make_countdown()
        assert cd.display_seconds(10.0) == 1490.0
        assert cd.remaining_units == 300

    def test_display_never_negative(self):
        cd = self.make_countdown()
        assert cd.display_seconds(10_000.0) == 0.0

    def test_resync_corrects_drift(self):
        cd = self.make_countdown()
        # Ledger ran slower than the local estimate
        assert cd.resync(1300, now=1000.0) == 200
        assert cd.display_seconds(1000.0) == 1000.0

    def test_stale_resync_keeps_height(self):
        cd = self.make_countdown()
        cd.resync(1300, now=500.0)
        cd.resync(1250, now=600.0)
        assert cd.synced_height == 1300
        assert cd.remaining_units == 200

    def test_satisfied_after_unlock(self):
        cd = self.make_countdown()
        cd.resync(1500, now=1.0)
        assert cd.is_satisfied
        assert cd.to_dict()["remainingUnits"] == 0
