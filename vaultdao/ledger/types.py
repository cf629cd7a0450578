"""
Ledger transaction types.

Values flowing through the build → simulate → sign → submit pipeline.
Encoding is canonical JSON: the engine only needs a stable byte string to
hand to the signing agent and a stable hash to track a submission by; the
bit-exact network envelope is the RPC collaborator's concern.
"""

import hashlib
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from ..exceptions import PipelineStage
from ..logger import get_logger

logger = get_logger(__name__)


class ContractFunction(str, Enum):
    """Vault contract entry points invoked by the engine."""
    PROPOSE = "propose_transfer"
    APPROVE = "approve_proposal"
    REJECT = "reject_proposal"
    EXECUTE = "execute_proposal"


class Outcome(str, Enum):
    """Result of a pipeline run as far as the caller can know it."""
    CONFIRMED = "confirmed"
    FAILED = "failed"
    UNKNOWN = "unknown"


class TxStatus(str, Enum):
    """Statuses reported by sendTransaction / getTransaction."""
    PENDING = "PENDING"
    DUPLICATE = "DUPLICATE"
    TRY_AGAIN_LATER = "TRY_AGAIN_LATER"
    ERROR = "ERROR"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    NOT_FOUND = "NOT_FOUND"

    @property
    def is_final(self) -> bool:
        return self in (TxStatus.SUCCESS, TxStatus.FAILED)

    @property
    def was_refused(self) -> bool:
        """The network refused the transaction at admission; it never landed."""
        return self in (TxStatus.ERROR, TxStatus.TRY_AGAIN_LATER)

    @classmethod
    def parse(cls, value: Any) -> "TxStatus":
        """Map an RPC status string; statuses this client does not know read as PENDING."""
        if value is None:
            return cls.NOT_FOUND
        try:
            return cls(value)
        except ValueError:
            logger.warning(f"Unrecognised transaction status {value!r}, treating as PENDING")
            return cls.PENDING


def _canonical(payload: Dict[str, Any]) -> bytes:
    return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode()


def sc_address(value: str) -> Dict[str, Any]:
    return {"type": "address", "value": value}


def sc_i128(value: int) -> Dict[str, Any]:
    # i128 travels as a string so no JSON consumer can round it
    return {"type": "i128", "value": str(value)}


def sc_u64(value: int) -> Dict[str, Any]:
    return {"type": "u64", "value": value}


def sc_symbol(value: str) -> Dict[str, Any]:
    return {"type": "symbol", "value": value}


# ══════════════════════════════════════════════════════════════════════
#  OPERATIONS
# ══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class UnsignedOperation:
    """A contract invocation before simulation."""
    source: str
    contract_id: str
    function: ContractFunction
    args: Tuple[Dict[str, Any], ...]
    network_passphrase: str
    fee: int
    timeout_seconds: int
    proposal_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "contractId": self.contract_id,
            "function": self.function.value,
            "args": list(self.args),
            "fee": self.fee,
            "timeout": self.timeout_seconds,
        }

    def to_bytes(self) -> bytes:
        return _canonical(self.to_dict())


@dataclass(frozen=True)
class SimulationResult:
    """Dry-run outcome: resources and auth to attach, or an error payload."""
    success: bool
    result: Any = None
    error: Optional[str] = None
    min_resource_fee: int = 0
    transaction_data: Optional[str] = None
    auth: Tuple[Any, ...] = ()
    latest_ledger: int = 0

    @classmethod
    def from_rpc(cls, data: Dict[str, Any]) -> "SimulationResult":
        if data.get("error"):
            return cls(
                success=False,
                error=str(data["error"]),
                latest_ledger=int(data.get("latestLedger", 0)),
            )
        results = data.get("results") or [{}]
        first = results[0]
        return cls(
            success=True,
            result=first.get("retval"),
            min_resource_fee=int(data.get("minResourceFee", 0)),
            transaction_data=data.get("transactionData"),
            auth=tuple(first.get("auth", ())),
            latest_ledger=int(data.get("latestLedger", 0)),
        )


@dataclass(frozen=True)
class PreparedTransaction:
    """An operation with simulation output merged in, ready to sign."""
    operation: UnsignedOperation
    fee: int
    transaction_data: Optional[str]
    auth: Tuple[Any, ...]

    @classmethod
    def assemble(cls, operation: UnsignedOperation, simulation: SimulationResult) -> "PreparedTransaction":
        return cls(
            operation=operation,
            fee=operation.fee + simulation.min_resource_fee,
            transaction_data=simulation.transaction_data,
            auth=simulation.auth,
        )

    def to_bytes(self) -> bytes:
        payload = self.operation.to_dict()
        payload.update({
            "fee": self.fee,
            "sorobanData": self.transaction_data,
            "auth": list(self.auth),
        })
        return _canonical(payload)

    def hash(self) -> str:
        """Signature-independent transaction hash, bound to the network."""
        network_id = hashlib.sha256(self.operation.network_passphrase.encode()).digest()
        return hashlib.sha256(network_id + self.to_bytes()).hexdigest()


@dataclass(frozen=True)
class SignedTransaction:
    envelope: bytes
    hash: str
    operation: UnsignedOperation


@dataclass(frozen=True)
class SubmissionResult:
    """What the ledger reports about a submitted transaction."""
    hash: str
    status: TxStatus
    ledger: int = 0
    return_value: Any = None
    error: Optional[str] = None

    @classmethod
    def from_rpc(cls, tx_hash: str, data: Dict[str, Any]) -> "SubmissionResult":
        error = data.get("errorResult") or data.get("error") or data.get("errorResultXdr")
        return cls(
            hash=data.get("hash", tx_hash),
            status=TxStatus.parse(data.get("status")),
            ledger=int(data.get("ledger", 0) or 0),
            return_value=data.get("returnValue"),
            error=str(error) if error else None,
        )


# ══════════════════════════════════════════════════════════════════════
#  RESULTS
# ══════════════════════════════════════════════════════════════════════

@dataclass
class ActionResult:
    """Outcome value returned for every dispatched action."""
    action: Optional[ContractFunction]
    proposal_id: Optional[int]
    outcome: Outcome
    tx_hash: Optional[str] = None
    value: Any = None
    ledger: int = 0
    stage: Optional[PipelineStage] = None
    error: Optional[str] = None
    replayed: bool = False

    @property
    def confirmed(self) -> bool:
        return self.outcome == Outcome.CONFIRMED

    @property
    def is_unknown(self) -> bool:
        return self.outcome == Outcome.UNKNOWN

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action.value if self.action else None,
            "proposalId": self.proposal_id,
            "outcome": self.outcome.value,
            "txHash": self.tx_hash,
            "value": self.value,
            "ledger": self.ledger,
            "stage": self.stage.name if self.stage else None,
            "error": self.error,
            "replayed": self.replayed,
        }
