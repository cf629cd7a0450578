"""
In-memory collaborators shared by the engine tests.

FakeLedger implements the LedgerRPC contract over plain dicts and lets a
test script every stage: simulation errors, submissions that hang (to
force an UNKNOWN outcome), transactions that land later, and event pages.
"""

import asyncio
from typing import Any, Dict, List, Optional, Tuple

from vaultdao.config import VaultConfig
from vaultdao.exceptions import SigningRejected
from vaultdao.governance.proposals import Proposal, ProposalStatus
from vaultdao.ledger.rpc import LedgerRPC
from vaultdao.ledger.signing import SigningAgent
from vaultdao.ledger.types import (
    SignedTransaction,
    SimulationResult,
    SubmissionResult,
    TxStatus,
    UnsignedOperation,
)

# ── Identities (ledger-style G… accounts and a C… contract) ──────────
ALICE = "G" + "A" * 55
BOB = "G" + "B" * 55
CAROL = "G" + "C" * 55
DAVE = "G" + "D" * 55
ADMIN = "G" + "Z" * 55
RECIPIENT = "G" + "R" * 55
CONTRACT = "C" + "V" * 55
TOKEN = "C" + "T" * 55


def make_config(**pipeline) -> VaultConfig:
    """Config with short timeouts so ambiguous submissions resolve quickly."""
    cfg = VaultConfig()
    cfg.contract.contract_id = CONTRACT
    cfg.pipeline.simulate_timeout = 1.0
    cfg.pipeline.sign_timeout = 1.0
    cfg.pipeline.submit_timeout = 0.2
    cfg.pipeline.poll_interval = 0.01
    for key, value in pipeline.items():
        setattr(cfg.pipeline, key, value)
    return cfg


def make_proposal(
    pid=1,
    proposer=ALICE,
    recipient=RECIPIENT,
    token=TOKEN,
    amount=1_000,
    **kwargs,
) -> Proposal:
    return Proposal(
        id=pid,
        proposer=proposer,
        recipient=recipient,
        token=token,
        amount=amount,
        **kwargs,
    )


def make_approved(pid=1, approvers=(ALICE, BOB), threshold=2, **kwargs) -> Proposal:
    return make_proposal(
        pid=pid,
        threshold=threshold,
        approvers=list(approvers),
        status=ProposalStatus.APPROVED,
        **kwargs,
    )


def make_event(
    name: str,
    ledger: int,
    index: int = 1,
    topic_id: Optional[int] = None,
    value: Any = None,
    tx_hash: Optional[str] = None,
    closed_at: str = "2026-03-01T12:00:00Z",
) -> Dict[str, Any]:
    """Raw event as returned (decoded) by getEvents."""
    event_id = f"{ledger:010d}-{index:010d}"
    topic: List[Any] = [name]
    if topic_id is not None:
        topic.append(topic_id)
    return {
        "id": event_id,
        "pagingToken": event_id,
        "ledger": ledger,
        "ledgerClosedAt": closed_at,
        "txHash": tx_hash,
        "topic": topic,
        "value": value,
    }


class FakeSigner(SigningAgent):
    def __init__(self, decline: bool = False, hang: bool = False):
        self.decline = decline
        self.hang = hang
        self.requests: List[Tuple[bytes, str]] = []

    async def sign(self, tx_bytes: bytes, network_id: str) -> bytes:
        self.requests.append((tx_bytes, network_id))
        if self.hang:
            await asyncio.Event().wait()
        if self.decline:
            raise SigningRejected("User declined")
        return b"signed:" + tx_bytes


class FakeLedger(LedgerRPC):
    def __init__(self, height: int = 1_000):
        self.height = height
        self.simulate_error: Optional[str] = None
        self.submit_status = TxStatus.PENDING
        self.submit_hang = False
        self.submit_raises: Optional[Exception] = None
        self.final_status = TxStatus.SUCCESS
        self.land_on_submit = True
        self.return_value: Any = None
        self.balances = [{"asset_type": "native", "balance": "1250.5000000"}]
        self.event_pages: List[Any] = []
        self.event_queries: List[Dict[str, Any]] = []
        self.transactions: Dict[str, SubmissionResult] = {}
        self.submitted: List[SignedTransaction] = []
        self.calls: List[str] = []

    def count(self, name: str) -> int:
        return self.calls.count(name)

    def land(self, tx_hash: str, status: TxStatus = TxStatus.SUCCESS, value: Any = None) -> None:
        self.transactions[tx_hash] = SubmissionResult(
            hash=tx_hash,
            status=status,
            ledger=self.height,
            return_value=value,
            error=None if status == TxStatus.SUCCESS else "txFailed",
        )

    async def simulate(self, operation: UnsignedOperation) -> SimulationResult:
        self.calls.append("simulate")
        if self.simulate_error:
            return SimulationResult(success=False, error=self.simulate_error)
        return SimulationResult(
            success=True,
            result=self.return_value,
            min_resource_fee=50,
            latest_ledger=self.height,
        )

    async def submit(self, signed: SignedTransaction) -> SubmissionResult:
        self.calls.append("submit")
        self.submitted.append(signed)
        if self.submit_hang:
            await asyncio.Event().wait()
        if self.submit_raises is not None:
            raise self.submit_raises
        if self.land_on_submit and not self.submit_status.was_refused:
            self.land(signed.hash, self.final_status, self.return_value)
        return SubmissionResult(hash=signed.hash, status=self.submit_status)

    async def get_transaction(self, tx_hash: str) -> SubmissionResult:
        self.calls.append("get_transaction")
        return self.transactions.get(
            tx_hash, SubmissionResult(hash=tx_hash, status=TxStatus.NOT_FOUND)
        )

    async def get_account(self, identity: str) -> Dict[str, Any]:
        self.calls.append("get_account")
        return {"balances": self.balances}

    async def get_events(self, contract_id, cursor=None, start_ledger=None, limit=100):
        self.calls.append("get_events")
        self.event_queries.append({"cursor": cursor, "start_ledger": start_ledger, "limit": limit})
        if not self.event_pages:
            return {"events": [], "latestLedger": self.height, "cursor": cursor}
        page = self.event_pages.pop(0)
        if isinstance(page, Exception):
            raise page
        return page

    async def get_latest_ledger(self) -> int:
        self.calls.append("get_latest_ledger")
        return self.height
