"""
Export Assembler

Projects one store snapshot into three aligned row sets:

    proposals     every proposal, terminal ones included
    activity      the ingested event feed, in ledger order
    transactions  one row per executed proposal

All three come from the same snapshot, so they always describe the same
point in time. Row sets serialize to CSV or JSON.
"""

import csv
import io
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..activity.types import VaultActivity
from ..governance.proposals import Proposal, ProposalStatus
from ..governance.store import StoreSnapshot
from ..logger import get_logger

logger = get_logger(__name__)


class ExportDataType(str, Enum):
    PROPOSALS = "proposals"
    ACTIVITY = "activity"
    TRANSACTIONS = "transactions"


class ExportFormat(str, Enum):
    CSV = "csv"
    JSON = "json"

    @property
    def mime_type(self) -> str:
        return "text/csv" if self is ExportFormat.CSV else "application/json"


PROPOSAL_COLUMNS = (
    "id", "proposer", "recipient", "token", "amount", "memo", "status",
    "approvals", "threshold", "createdAt", "createdLedger", "unlockHeight",
    "expiresAtHeight", "executionTxHash",
)
ACTIVITY_COLUMNS = (
    "id", "type", "timestamp", "ledger", "actor", "txHash", "eventId", "details",
)
TRANSACTION_COLUMNS = (
    "proposalId", "txHash", "recipient", "token", "amount", "executedAt",
)


def _iso(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def proposal_row(p: Proposal) -> Dict[str, Any]:
    return {
        "id": p.id,
        "proposer": p.proposer,
        "recipient": p.recipient,
        "token": p.token,
        "amount": str(p.amount),
        "memo": p.memo,
        "status": p.status.label,
        "approvals": p.approvals,
        "threshold": p.threshold,
        "createdAt": _iso(p.created_at),
        "createdLedger": p.created_ledger,
        "unlockHeight": p.unlock_height,
        "expiresAtHeight": p.expires_at_height,
        "executionTxHash": p.execution_tx_hash,
    }


def activity_row(a: VaultActivity) -> Dict[str, Any]:
    data = a.to_dict()
    return {column: data[column] for column in ACTIVITY_COLUMNS}


def transaction_row(p: Proposal) -> Dict[str, Any]:
    return {
        "proposalId": p.id,
        "txHash": p.execution_tx_hash,
        "recipient": p.recipient,
        "token": p.token,
        "amount": str(p.amount),
        "executedAt": _iso(p.executed_at),
    }


@dataclass(frozen=True)
class RowSets:
    proposals: Tuple[Dict[str, Any], ...]
    activity: Tuple[Dict[str, Any], ...]
    transactions: Tuple[Dict[str, Any], ...]
    height: int
    taken_at: float

    def rows(self, data_type: ExportDataType) -> Tuple[Dict[str, Any], ...]:
        return getattr(self, ExportDataType(data_type).value)


@dataclass(frozen=True)
class ExportFile:
    filename: str
    data_type: ExportDataType
    format: ExportFormat
    exported_at: datetime
    content: str

    @property
    def mime_type(self) -> str:
        return self.format.mime_type

    def metadata(self) -> Dict[str, str]:
        return {
            "filename": self.filename,
            "dataType": self.data_type.value,
            "format": self.format.value,
            "exportedAt": self.exported_at.isoformat(),
            "mimeType": self.mime_type,
        }


_COLUMNS = {
    ExportDataType.PROPOSALS: PROPOSAL_COLUMNS,
    ExportDataType.ACTIVITY: ACTIVITY_COLUMNS,
    ExportDataType.TRANSACTIONS: TRANSACTION_COLUMNS,
}


class ExportAssembler:
    """
    Builds exports from a store (anything with ``snapshot()``) or from an
    explicit StoreSnapshot.
    """

    def __init__(self, source=None, prefix: str = "vault"):
        self.source = source
        self.prefix = prefix

    def _take(self, snapshot: Optional[StoreSnapshot]) -> StoreSnapshot:
        if snapshot is not None:
            return snapshot
        if self.source is None:
            raise ValueError("ExportAssembler needs a source or an explicit snapshot")
        return self.source.snapshot()

    @staticmethod
    def from_collections(
        proposals: Iterable[Proposal],
        activity: Iterable[VaultActivity],
        height: int = 0,
    ) -> StoreSnapshot:
        """Freeze loose collections into a snapshot (copies the proposals)."""
        return StoreSnapshot(
            proposals=tuple(p.snapshot() for p in proposals),
            activity=tuple(sorted(activity, key=lambda a: a.sort_key)),
            height=height,
            taken_at=datetime.now(timezone.utc).timestamp(),
        )

    def row_sets(self, snapshot: Optional[StoreSnapshot] = None) -> RowSets:
        snap = self._take(snapshot)
        executed = [p for p in snap.proposals if p.status == ProposalStatus.EXECUTED]
        return RowSets(
            proposals=tuple(proposal_row(p) for p in snap.proposals),
            activity=tuple(activity_row(a) for a in snap.activity),
            transactions=tuple(transaction_row(p) for p in executed),
            height=snap.height,
            taken_at=snap.taken_at,
        )

    # ── Serialization ─────────────────────────────────────────────────

    @staticmethod
    def to_csv(rows: Iterable[Dict[str, Any]], columns: Tuple[str, ...]) -> str:
        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=list(columns), lineterminator="\n")
        writer.writeheader()
        for row in rows:
            writer.writerow({
                k: json.dumps(v, sort_keys=True, default=str) if isinstance(v, (dict, list)) else v
                for k, v in row.items()
            })
        return buffer.getvalue()

    @staticmethod
    def to_json(rows: Iterable[Dict[str, Any]]) -> str:
        return json.dumps(list(rows), indent=2, default=str)

    def _file(
        self,
        rows: RowSets,
        data_type: ExportDataType,
        fmt: ExportFormat,
        exported_at: datetime,
    ) -> ExportFile:
        data_type = ExportDataType(data_type)
        fmt = ExportFormat(fmt)
        selected = rows.rows(data_type)
        if fmt is ExportFormat.CSV:
            content = self.to_csv(selected, _COLUMNS[data_type])
        else:
            content = self.to_json(selected)
        filename = f"{self.prefix}-{data_type.value}-{exported_at:%Y%m%d-%H%M%S}.{fmt.value}"
        return ExportFile(filename, data_type, fmt, exported_at, content)

    def export(
        self,
        data_type: ExportDataType,
        fmt: ExportFormat = ExportFormat.CSV,
        snapshot: Optional[StoreSnapshot] = None,
    ) -> ExportFile:
        rows = self.row_sets(snapshot)
        export = self._file(rows, data_type, fmt, datetime.now(timezone.utc))
        logger.info(
            f"Exported {len(rows.rows(export.data_type))} {export.data_type.value} rows "
            f"as {export.filename}"
        )
        return export

    def export_all(
        self,
        fmt: ExportFormat = ExportFormat.CSV,
        snapshot: Optional[StoreSnapshot] = None,
    ) -> List[ExportFile]:
        """All three row sets from a single snapshot."""
        rows = self.row_sets(snapshot)
        exported_at = datetime.now(timezone.utc)
        return [self._file(rows, data_type, fmt, exported_at) for data_type in ExportDataType]
