"""
Treasury Transfer Proposals

Defines proposal lifecycle states, vault roles, and the Proposal dataclass
that tracks a single transfer from creation to a terminal state.
"""

import copy
import time
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import IntEnum
from typing import Any, Dict, FrozenSet, List, Optional

from ..constants import MEMO_MAX_LENGTH, VALID_AMOUNT_PATTERN
from ..exceptions import StateConflict, ValidationError
from ..logger import get_logger

logger = get_logger(__name__)


class InvalidProposalError(ValidationError):
    """Raised when proposal data is invalid."""


# ══════════════════════════════════════════════════════════════════════
#  ENUMS
# ══════════════════════════════════════════════════════════════════════

class ProposalStatus(IntEnum):
    """Lifecycle stage. Values match the contract's on-ledger encoding."""
    PENDING = 0     # Awaiting approvals
    APPROVED = 1    # Threshold met, execution gated by timelock
    EXECUTED = 2    # Funds transferred
    REJECTED = 3    # Cancelled by proposer/admin or by the ledger
    EXPIRED = 4     # Expiry ledger reached without hitting threshold

    @property
    def label(self) -> str:
        return self.name.capitalize()

    @classmethod
    def parse(cls, value: Any) -> "ProposalStatus":
        """Accepts the enum, its integer code, its name or its label."""
        if isinstance(value, cls):
            return value
        if isinstance(value, int) and not isinstance(value, bool):
            try:
                return cls(value)
            except ValueError:
                raise InvalidProposalError(f"Unknown proposal status code {value}")
        if isinstance(value, str):
            try:
                return cls[value.strip().upper()]
            except KeyError:
                pass
        raise InvalidProposalError(f"Unknown proposal status {value!r}")


class Role(IntEnum):
    """Permissions of vault participants."""
    MEMBER = 0      # Read-only (default for unknown identities)
    TREASURER = 1   # May propose and approve transfers
    ADMIN = 2       # Manages roles and signers; may override rejections


TERMINAL_STATUSES: FrozenSet[ProposalStatus] = frozenset({
    ProposalStatus.EXECUTED,
    ProposalStatus.REJECTED,
    ProposalStatus.EXPIRED,
})

# Valid status changes. PENDING → PENDING is an approval below threshold.
_VALID_TRANSITIONS: Dict[ProposalStatus, FrozenSet[ProposalStatus]] = {
    ProposalStatus.PENDING:  frozenset({ProposalStatus.APPROVED, ProposalStatus.REJECTED,
                                        ProposalStatus.EXPIRED}),
    ProposalStatus.APPROVED: frozenset({ProposalStatus.EXECUTED, ProposalStatus.REJECTED}),
    # Terminal states — no further transitions
    ProposalStatus.EXECUTED: frozenset(),
    ProposalStatus.REJECTED: frozenset(),
    ProposalStatus.EXPIRED:  frozenset(),
}

# Fixed at creation; see Proposal.__setattr__
_IMMUTABLE_FIELDS = frozenset({"id", "threshold", "unlock_height"})


def parse_amount(value: Any) -> int:
    """
    Normalize an amount in smallest-denomination units to an int.

    Accepts ints, ASCII digit strings and integral Decimals. Floats are refused
    outright since they cannot carry i128 amounts without precision loss.
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise InvalidProposalError(f"Amount must be an integer, got {type(value).__name__}")
    if isinstance(value, int):
        amount = value
    elif isinstance(value, Decimal):
        if value != value.to_integral_value():
            raise InvalidProposalError(f"Amount {value} has a fractional part")
        amount = int(value)
    elif isinstance(value, str):
        text = value.strip().replace(",", "")
        if not VALID_AMOUNT_PATTERN.fullmatch(text):
            raise InvalidProposalError(f"Amount {value!r} is not a non-negative integer")
        amount = int(text)
    else:
        raise InvalidProposalError(f"Unsupported amount type {type(value).__name__}")
    if amount < 0:
        raise InvalidProposalError(f"Amount cannot be negative: {amount}")
    return amount


def _optional_float(value: Any) -> Optional[float]:
    return None if value is None else float(value)


def parse_decimal_bound(value: Any) -> Optional[Decimal]:
    """Parse an optional numeric filter bound. Empty values mean unbounded."""
    if value is None or value == "":
        return None
    if isinstance(value, float):
        value = repr(value)
    try:
        return Decimal(str(value).replace(",", ""))
    except InvalidOperation:
        raise ValidationError(f"Amount bound {value!r} is not numeric")


# ══════════════════════════════════════════════════════════════════════
#  PROPOSAL
# ══════════════════════════════════════════════════════════════════════

@dataclass
class Proposal:
    """
    A proposed treasury transfer.

    Fields:
        id:                   Ledger-assigned identifier
        proposer:             Signer that created the proposal
        recipient:            Destination of the transfer
        token:                Asset identifier (contract address or NATIVE)
        amount:               Smallest-denomination units, never a float
        memo:                 Short description (ledger symbol length)
        threshold:            Distinct approvals required, fixed at creation
        status:               Current lifecycle stage
        approvers:            Signers whose approval the ledger confirmed
        created_at:           Creation timestamp (epoch seconds)
        created_ledger:       Ledger height of creation
        unlock_height:        Earliest execution ledger (0 = no timelock)
        expires_at_height:    Ledger at which a pending proposal expires (0 = never)
        last_observed_height: Last synced ledger height for timelock display
    """
    id: int
    proposer: str
    recipient: str
    token: str
    amount: int
    memo: str = ""
    threshold: int = 1
    status: ProposalStatus = ProposalStatus.PENDING
    approvers: List[str] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    created_ledger: int = 0
    unlock_height: int = 0
    expires_at_height: int = 0
    last_observed_height: int = 0
    pending_reconciliation: bool = False
    pending_tx_hash: Optional[str] = None
    execution_tx_hash: Optional[str] = None
    rejection_reason: Optional[str] = None
    executed_at: Optional[float] = None
    rejected_at: Optional[float] = None
    _history: List[Dict[str, Any]] = field(default_factory=list, repr=False)

    def __post_init__(self):
        if isinstance(self.id, bool) or not isinstance(self.id, int) or self.id < 0:
            raise InvalidProposalError(f"Proposal id must be a non-negative integer: {self.id!r}")
        if not self.proposer:
            raise InvalidProposalError("Proposer address is required")
        if not self.recipient:
            raise InvalidProposalError("Recipient address is required")
        if not self.token:
            raise InvalidProposalError("Token is required")
        if len(self.memo) > MEMO_MAX_LENGTH:
            raise InvalidProposalError(
                f"Memo exceeds {MEMO_MAX_LENGTH} characters ({len(self.memo)})"
            )
        if self.threshold < 1:
            raise InvalidProposalError(f"Threshold must be >= 1, got {self.threshold}")
        if self.unlock_height < 0:
            raise InvalidProposalError("unlock_height cannot be negative")
        if len(set(self.approvers)) != len(self.approvers):
            raise InvalidProposalError("Duplicate approver in approval set")
        self.amount = parse_amount(self.amount)
        self.status = ProposalStatus.parse(self.status)
        if self.status == ProposalStatus.APPROVED and self.approvals < self.threshold:
            raise InvalidProposalError(
                f"Approved proposal #{self.id} has {self.approvals}/{self.threshold} approvals"
            )
        if not self._history:
            self._record_transition(self.status, "created")

    def __setattr__(self, name: str, value: Any) -> None:
        if name in _IMMUTABLE_FIELDS and name in self.__dict__ and self.__dict__[name] != value:
            raise StateConflict(f"Proposal field '{name}' is fixed at creation")
        super().__setattr__(name, value)

    # ── Properties ────────────────────────────────────────────────────

    @property
    def approvals(self) -> int:
        """Number of distinct confirmed approvals."""
        return len(self.approvers)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def has_timelock(self) -> bool:
        return self.unlock_height > 0

    @property
    def history(self) -> List[Dict[str, Any]]:
        return list(self._history)

    def has_approved(self, signer: str) -> bool:
        return signer in self.approvers

    # ── State transitions ─────────────────────────────────────────────

    def _record_transition(self, new_status: ProposalStatus, reason: str):
        self._history.append({
            "from": self.status.name if self._history else "INIT",
            "to": new_status.name,
            "reason": reason,
            "timestamp": time.time(),
        })

    def transition_to(self, new_status: ProposalStatus, reason: str = ""):
        """
        Move the proposal to *new_status*.

        Raises StateConflict on transitions outside the table.
        """
        allowed = _VALID_TRANSITIONS.get(self.status, frozenset())
        if new_status not in allowed:
            raise StateConflict(
                f"Cannot transition proposal #{self.id} from {self.status.name} → "
                f"{new_status.name}. Allowed: {sorted(s.name for s in allowed)}",
                proposal_id=self.id,
            )
        old = self.status
        self._record_transition(new_status, reason)
        self.status = new_status
        logger.info(f"Proposal #{self.id}: {old.name} → {new_status.name} | {reason}")

    def add_approver(self, signer: str) -> bool:
        """Record a confirmed approval. Returns False for a repeat signer."""
        if signer in self.approvers:
            return False
        self.approvers.append(signer)
        return True

    def snapshot(self) -> "Proposal":
        """Detached deep copy for read-only consumers."""
        return copy.deepcopy(self)

    # ── Serialization ─────────────────────────────────────────────────

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "proposer": self.proposer,
            "recipient": self.recipient,
            "token": self.token,
            "amount": str(self.amount),
            "memo": self.memo,
            "status": self.status.label,
            "approvals": self.approvals,
            "approvers": list(self.approvers),
            "threshold": self.threshold,
            "createdAt": self.created_at,
            "createdLedger": self.created_ledger,
            "unlockHeight": self.unlock_height,
            "expiresAtHeight": self.expires_at_height,
            "lastObservedHeight": self.last_observed_height,
            "pendingReconciliation": self.pending_reconciliation,
            "pendingTxHash": self.pending_tx_hash,
            "executionTxHash": self.execution_tx_hash,
            "rejectionReason": self.rejection_reason,
            "executedAt": self.executed_at,
            "rejectedAt": self.rejected_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Proposal":
        """
        Build a proposal from ledger or persisted data.

        This is the validation point for records crossing into the engine;
        any malformed field raises InvalidProposalError.
        """
        try:
            return cls(
                id=int(data["id"]),
                proposer=data["proposer"],
                recipient=data["recipient"],
                token=data["token"],
                amount=data["amount"],
                memo=data.get("memo", ""),
                threshold=int(data.get("threshold", 1)),
                status=data.get("status", ProposalStatus.PENDING),
                approvers=list(data.get("approvers", [])),
                created_at=float(data.get("createdAt", time.time())),
                created_ledger=int(data.get("createdLedger", 0)),
                unlock_height=int(data.get("unlockHeight", 0)),
                expires_at_height=int(data.get("expiresAtHeight", 0)),
                last_observed_height=int(data.get("lastObservedHeight", 0)),
                pending_reconciliation=bool(data.get("pendingReconciliation", False)),
                pending_tx_hash=data.get("pendingTxHash"),
                execution_tx_hash=data.get("executionTxHash"),
                rejection_reason=data.get("rejectionReason"),
                executed_at=_optional_float(data.get("executedAt")),
                rejected_at=_optional_float(data.get("rejectedAt")),
            )
        except KeyError as e:
            raise InvalidProposalError(f"Missing proposal field {e}") from e
        except (TypeError, ValueError) as e:
            raise InvalidProposalError(f"Malformed proposal data: {e}") from e

    def __repr__(self) -> str:
        return (
            f"<Proposal #{self.id} {self.amount} {self.token} → {self.recipient[:8]}… "
            f"status={self.status.name} approvals={self.approvals}/{self.threshold}>"
        )
