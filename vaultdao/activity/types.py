"""
Vault Activity Types

Typed records for the vault contract's event log. Each event type has its
own frozen details payload; anything unrecognized (including well-known
types whose payload does not have the expected shape) becomes an
UnknownDetails carrying the raw topics and value, so nothing is dropped.

Raw events are the decoded form of the ledger's getEvents response:

    {
        "id": "0000012345-0000000001",
        "pagingToken": "0000012345-0000000001",
        "ledger": 12345,
        "ledgerClosedAt": "2026-03-01T12:00:00Z",
        "txHash": "ab12…",
        "topic": ["proposal_approved", 7],
        "value": ["GABC…", 2, 3],
    }
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

from ..logger import get_logger

logger = get_logger(__name__)


class VaultEventType(str, Enum):
    PROPOSAL_CREATED = "proposal_created"
    PROPOSAL_APPROVED = "proposal_approved"
    PROPOSAL_READY = "proposal_ready"
    PROPOSAL_EXECUTED = "proposal_executed"
    PROPOSAL_REJECTED = "proposal_rejected"
    SIGNER_ADDED = "signer_added"
    SIGNER_REMOVED = "signer_removed"
    CONFIG_UPDATED = "config_updated"
    INITIALIZED = "initialized"
    ROLE_ASSIGNED = "role_assigned"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Any) -> "VaultEventType":
        try:
            return cls(str(value))
        except ValueError:
            return cls.UNKNOWN


# ══════════════════════════════════════════════════════════════════════
#  DETAIL PAYLOADS
# ══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class InitializedDetails:
    admin: str
    threshold: int


@dataclass(frozen=True)
class ProposalCreatedDetails:
    proposal_id: int
    proposer: str
    recipient: str
    amount: int


@dataclass(frozen=True)
class ProposalApprovedDetails:
    proposal_id: int
    approver: str
    approval_count: int
    threshold: int


@dataclass(frozen=True)
class ProposalReadyDetails:
    proposal_id: int


@dataclass(frozen=True)
class ProposalExecutedDetails:
    proposal_id: int
    executor: str
    recipient: str
    amount: int


@dataclass(frozen=True)
class ProposalRejectedDetails:
    proposal_id: int
    rejector: str


@dataclass(frozen=True)
class SignerAddedDetails:
    signer: str
    total_signers: int


@dataclass(frozen=True)
class SignerRemovedDetails:
    signer: str
    total_signers: int


@dataclass(frozen=True)
class ConfigUpdatedDetails:
    updater: str


@dataclass(frozen=True)
class RoleAssignedDetails:
    address: str
    role: int


@dataclass(frozen=True)
class UnknownDetails:
    event_name: str
    topics: Tuple[Any, ...] = ()
    raw: Any = None


EventDetails = Union[
    InitializedDetails,
    ProposalCreatedDetails,
    ProposalApprovedDetails,
    ProposalReadyDetails,
    ProposalExecutedDetails,
    ProposalRejectedDetails,
    SignerAddedDetails,
    SignerRemovedDetails,
    ConfigUpdatedDetails,
    RoleAssignedDetails,
    UnknownDetails,
]


def _values(value: Any) -> Tuple[Any, ...]:
    if value is None:
        return ()
    if isinstance(value, (list, tuple)):
        return tuple(value)
    return (value,)


def _details(kind: VaultEventType, topics: Tuple[Any, ...], value: Any) -> EventDetails:
    """Build the typed payload. Raises (ValueError, TypeError, IndexError) on bad shape."""
    v = _values(value)
    if kind == VaultEventType.INITIALIZED:
        return InitializedDetails(admin=str(v[0]), threshold=int(v[1]))
    if kind == VaultEventType.PROPOSAL_CREATED:
        return ProposalCreatedDetails(
            proposal_id=int(topics[1]), proposer=str(v[0]), recipient=str(v[1]), amount=int(v[2]),
        )
    if kind == VaultEventType.PROPOSAL_APPROVED:
        return ProposalApprovedDetails(
            proposal_id=int(topics[1]), approver=str(v[0]),
            approval_count=int(v[1]), threshold=int(v[2]),
        )
    if kind == VaultEventType.PROPOSAL_READY:
        return ProposalReadyDetails(proposal_id=int(topics[1]))
    if kind == VaultEventType.PROPOSAL_EXECUTED:
        return ProposalExecutedDetails(
            proposal_id=int(topics[1]), executor=str(v[0]), recipient=str(v[1]), amount=int(v[2]),
        )
    if kind == VaultEventType.PROPOSAL_REJECTED:
        return ProposalRejectedDetails(proposal_id=int(topics[1]), rejector=str(v[0]))
    if kind == VaultEventType.SIGNER_ADDED:
        return SignerAddedDetails(signer=str(v[0]), total_signers=int(v[1]))
    if kind == VaultEventType.SIGNER_REMOVED:
        return SignerRemovedDetails(signer=str(v[0]), total_signers=int(v[1]))
    if kind == VaultEventType.CONFIG_UPDATED:
        return ConfigUpdatedDetails(updater=str(v[0]))
    if kind == VaultEventType.ROLE_ASSIGNED:
        return RoleAssignedDetails(address=str(v[0]), role=int(v[1]))
    raise ValueError(f"no payload shape for {kind.value}")


def _actor(details: EventDetails) -> str:
    for attr in ("proposer", "approver", "executor", "rejector", "admin",
                 "updater", "signer", "address"):
        actor = getattr(details, attr, None)
        if actor:
            return actor
    return ""


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not value:
        return datetime.fromtimestamp(0, tz=timezone.utc)
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _event_index(event_id: str) -> int:
    # Event ids are "<toid>-<index>"
    _, _, suffix = event_id.rpartition("-")
    return int(suffix) if suffix.isdigit() else 0


# ══════════════════════════════════════════════════════════════════════
#  ACTIVITY
# ══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class VaultActivity:
    """
    One vault event. Never mutated once emitted.

    Ordered by (ledger, event_index).
    """
    id: str
    type: VaultEventType
    timestamp: datetime
    ledger: int
    event_index: int
    actor: str
    details: EventDetails
    event_id: str
    tx_hash: Optional[str] = None
    paging_token: Optional[str] = None

    @property
    def sort_key(self) -> Tuple[int, int]:
        return (self.ledger, self.event_index)

    @property
    def proposal_id(self) -> Optional[int]:
        return getattr(self.details, "proposal_id", None)

    def to_dict(self) -> Dict[str, Any]:
        details = {
            k: (str(v) if k == "amount" else v)
            for k, v in vars(self.details).items()
        }
        if isinstance(self.details, UnknownDetails):
            details["topics"] = list(self.details.topics)
        return {
            "id": self.id,
            "type": self.type.value,
            "timestamp": self.timestamp.isoformat(),
            "ledger": self.ledger,
            "actor": self.actor,
            "details": details,
            "txHash": self.tx_hash,
            "eventId": self.event_id,
            "pagingToken": self.paging_token,
        }


def parse_event(raw: Dict[str, Any]) -> VaultActivity:
    """
    Map a decoded ledger event to a VaultActivity.

    Raises KeyError / ValueError only when the envelope itself (id, ledger)
    is unusable; payload problems degrade to the unknown type.
    """
    event_id = str(raw["id"])
    topics = tuple(raw.get("topic") or ())
    name = str(topics[0]) if topics else ""
    kind = VaultEventType.parse(name)
    value = raw.get("value")

    details: EventDetails
    if kind == VaultEventType.UNKNOWN:
        details = UnknownDetails(event_name=name, topics=topics, raw=value)
    else:
        try:
            details = _details(kind, topics, value)
        except (ValueError, TypeError, IndexError) as e:
            logger.warning(f"Event {event_id} ({name}) has unexpected payload: {e}")
            kind = VaultEventType.UNKNOWN
            details = UnknownDetails(event_name=name, topics=topics, raw=value)

    return VaultActivity(
        id=event_id,
        type=kind,
        timestamp=_parse_timestamp(raw.get("ledgerClosedAt")),
        ledger=int(raw["ledger"]),
        event_index=_event_index(event_id),
        actor=_actor(details),
        details=details,
        event_id=event_id,
        tx_hash=raw.get("txHash"),
        paging_token=raw.get("pagingToken", event_id),
    )
