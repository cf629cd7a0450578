"""
VaultDAO Governance

Provides:
  - ProposalStatus / Role / Proposal                     (proposals.py)
  - ProposalStateMachine                                 (state_machine.py)
  - LedgerClock / TimelockCalculator / TimelockCountdown (timelock.py)
  - FilterSpec / SortKey / FilterEngine                  (filters.py)

The coordinating VaultStore lives in governance.store and is imported from
there directly, since it depends on the ledger pipeline.
"""

from .proposals import (
    InvalidProposalError,
    Proposal,
    ProposalStatus,
    Role,
    TERMINAL_STATUSES,
    parse_amount,
)
from .timelock import (
    LedgerClock,
    TimelockCalculator,
    TimelockCountdown,
    remaining_units,
)
from .state_machine import ProposalStateMachine
from .filters import FilterEngine, FilterSpec, SortKey

__all__ = [
    # Proposals
    "InvalidProposalError",
    "Proposal",
    "ProposalStatus",
    "Role",
    "TERMINAL_STATUSES",
    "parse_amount",
    # Timelock
    "LedgerClock",
    "TimelockCalculator",
    "TimelockCountdown",
    "remaining_units",
    # State machine
    "ProposalStateMachine",
    # Filters
    "FilterEngine",
    "FilterSpec",
    "SortKey",
]
