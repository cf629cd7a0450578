"""
Vault Store

The single writer for one vault's proposals and activity. Callers dispatch
command objects; the store runs local guards, drives the transaction
pipeline and applies only ledger-confirmed outcomes.

    Propose / Approve / Reject / Execute  →  dispatch()  →  ActionResult

Writes are serialized per proposal id (an asyncio.Lock per id), so two
actions on the same proposal are queued rather than interleaved. All state
mutation happens under one re-entrant lock, which is also taken for
snapshots: readers never see a half-applied transition.

A proposal is held "pending reconciliation" under the signed hash from the
moment its envelope is sent; a confirmed or failed outcome releases it, an
UNKNOWN one (or a cancelled caller) leaves it held. Until it is resolved,
approve/reject on that proposal are refused; execute resolves it first,
since re-executing an executed proposal is a no-op.
"""

import asyncio
import dataclasses
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from ..config import PolicyConfig
from ..exceptions import StateConflict, ValidationError
from ..ledger.pipeline import TransactionPipeline
from ..ledger.types import ActionResult, ContractFunction, Outcome, UnsignedOperation
from ..logger import get_logger
from ..metrics import VaultMetrics
from ..activity.types import (
    InitializedDetails,
    ProposalApprovedDetails,
    ProposalCreatedDetails,
    ProposalExecutedDetails,
    ProposalReadyDetails,
    ProposalRejectedDetails,
    RoleAssignedDetails,
    SignerAddedDetails,
    SignerRemovedDetails,
    VaultActivity,
)
from .filters import FilterEngine, FilterSpec
from .proposals import Proposal, ProposalStatus, Role, parse_amount
from .state_machine import ProposalStateMachine
from .timelock import LedgerClock, TimelockCalculator, TimelockCountdown

logger = get_logger(__name__)

# Token of a proposal known only from its creation event (the event omits it)
UNRESOLVED_TOKEN = "UNRESOLVED"


# ══════════════════════════════════════════════════════════════════════
#  COMMANDS
# ══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Propose:
    caller: str
    recipient: str
    token: str
    amount: Any
    memo: str = ""


@dataclass(frozen=True)
class Approve:
    proposal_id: int
    caller: str


@dataclass(frozen=True)
class Reject:
    proposal_id: int
    caller: str
    reason: str = ""


@dataclass(frozen=True)
class Execute:
    proposal_id: int
    caller: str


Command = Union[Propose, Approve, Reject, Execute]


@dataclass(frozen=True)
class StoreSnapshot:
    """One consistent read of the store."""
    proposals: Tuple[Proposal, ...]
    activity: Tuple[VaultActivity, ...]
    height: int
    taken_at: float

    def proposal(self, proposal_id: int) -> Optional[Proposal]:
        for p in self.proposals:
            if p.id == proposal_id:
                return p
        return None


@dataclass
class _PendingAction:
    command: Optional[Command]
    tx_hash: Optional[str]


# ══════════════════════════════════════════════════════════════════════
#  STORE
# ══════════════════════════════════════════════════════════════════════

class VaultStore:
    """
    Coordinating store for one vault.

    Args:
        pipeline:      Transaction pipeline bound to the vault contract
        state_machine: Guard/transition table (roles live here)
        clock:         Ledger clock; heights feed guards and expiry
        policy:        Vault policy (defaults to the pipeline's config)
        metrics:       Optional metrics sink
    """

    def __init__(
        self,
        pipeline: TransactionPipeline,
        state_machine: Optional[ProposalStateMachine] = None,
        clock: Optional[LedgerClock] = None,
        policy: Optional[PolicyConfig] = None,
        metrics: Optional[VaultMetrics] = None,
    ):
        self.pipeline = pipeline
        self.clock = clock or LedgerClock(pipeline.config.ledger.seconds_per_ledger)
        self.state_machine = state_machine or ProposalStateMachine(
            timelock=TimelockCalculator(self.clock.seconds_per_ledger)
        )
        self.policy = policy or pipeline.config.policy
        self.metrics = metrics
        self.filter_engine = FilterEngine()

        self._proposals: Dict[int, Proposal] = {}
        self._activity: List[VaultActivity] = []
        self._activity_ids: set = set()
        self._executions: Dict[int, ActionResult] = {}
        self._pending: Dict[int, _PendingAction] = {}
        self._pending_proposes: Dict[str, Propose] = {}
        self._signer_total: Optional[int] = None
        self._ledger_threshold: Optional[int] = None

        self._state_lock = threading.RLock()
        self._locks: Dict[int, asyncio.Lock] = {}

        self.clock.subscribe(self._on_height)

    # ── Access ────────────────────────────────────────────────────────

    def _lock_for(self, proposal_id: int) -> asyncio.Lock:
        return self._locks.setdefault(proposal_id, asyncio.Lock())

    def _require(self, proposal_id: int) -> Proposal:
        proposal = self._proposals.get(proposal_id)
        if proposal is None:
            raise ValidationError(f"Unknown proposal #{proposal_id}")
        return proposal

    def get(self, proposal_id: int) -> Proposal:
        """Detached copy of one proposal."""
        with self._state_lock:
            return self._require(proposal_id).snapshot()

    @property
    def threshold(self) -> int:
        """Approval threshold; the ledger's value once an initialized event was seen."""
        return self._ledger_threshold or self.policy.threshold

    def __len__(self) -> int:
        return len(self._proposals)

    def __contains__(self, proposal_id: int) -> bool:
        return proposal_id in self._proposals

    def load(self, records: Iterable[Union[Proposal, Dict[str, Any]]]) -> int:
        """Seed proposals read from the ledger or persisted state."""
        loaded = 0
        with self._state_lock:
            for record in records:
                proposal = record.snapshot() if isinstance(record, Proposal) else Proposal.from_dict(record)
                if proposal.id in self._proposals:
                    continue
                if not proposal.last_observed_height:
                    proposal.last_observed_height = self.clock.height
                self._proposals[proposal.id] = proposal
                if proposal.pending_reconciliation and proposal.pending_tx_hash:
                    # The originating command was not persisted; only the hash is
                    self._pending[proposal.id] = _PendingAction(None, proposal.pending_tx_hash)
                loaded += 1
            self._update_pending_gauge()
        return loaded

    def snapshot(self) -> StoreSnapshot:
        with self._state_lock:
            return StoreSnapshot(
                proposals=tuple(p.snapshot() for p in sorted(self._proposals.values(), key=lambda p: p.id)),
                activity=tuple(self._activity),
                height=self.clock.height,
                taken_at=time.time(),
            )

    def filter(self, spec: FilterSpec) -> List[Proposal]:
        return self.filter_engine.apply(self.snapshot().proposals, spec)

    def countdown(self, proposal_id: int) -> TimelockCountdown:
        return TimelockCountdown.start(self.get(proposal_id), self.clock)

    # ── Internal mutation helpers ─────────────────────────────────────

    def _observe(self, proposal: Proposal, before: ProposalStatus) -> None:
        if self.metrics and proposal.status != before:
            self.metrics.transitions_total.inc(proposal.status.name)

    def _update_pending_gauge(self) -> None:
        if self.metrics:
            self.metrics.pending_reconciliation.set(
                sum(1 for p in self._proposals.values() if p.pending_reconciliation)
            )

    def _mark_pending(self, proposal: Proposal, command: Command, tx_hash: Optional[str]) -> None:
        proposal.pending_reconciliation = True
        proposal.pending_tx_hash = tx_hash
        self._pending[proposal.id] = _PendingAction(command, tx_hash)
        self._update_pending_gauge()

    def _clear_pending(self, proposal: Proposal) -> None:
        proposal.pending_reconciliation = False
        proposal.pending_tx_hash = None
        self._pending.pop(proposal.id, None)
        self._update_pending_gauge()

    def _expire_if_due(self, proposal: Proposal) -> None:
        with self._state_lock:
            before = proposal.status
            if self.state_machine.apply_expire(proposal, self.clock.height):
                self._observe(proposal, before)

    def _refuse_if_pending(self, proposal: Proposal) -> None:
        if proposal.pending_reconciliation:
            raise StateConflict(
                f"Proposal #{proposal.id} awaits reconciliation of tx "
                f"{proposal.pending_tx_hash}; reconcile before retrying",
                proposal_id=proposal.id,
            )

    def _apply_confirmed(self, proposal: Proposal, command: Command, result: ActionResult) -> None:
        """Fold a ledger-confirmed action into the local record."""
        with self._state_lock:
            before = proposal.status
            self._clear_pending(proposal)
            if isinstance(command, Approve):
                self.state_machine.apply_approve(proposal, command.caller)
            elif isinstance(command, Reject) and proposal.status != ProposalStatus.REJECTED:
                if proposal.is_terminal:
                    logger.error(
                        f"Confirmed rejection of proposal #{proposal.id} but it is "
                        f"{proposal.status.name} locally"
                    )
                else:
                    self.state_machine.apply_reject(proposal, command.caller, command.reason)
            elif isinstance(command, Execute):
                self.state_machine.apply_execute(proposal, result.tx_hash)
                self._executions[proposal.id] = result
            self._observe(proposal, before)

    def _settle(self, proposal: Proposal, command: Command, result: ActionResult) -> ActionResult:
        if result.outcome == Outcome.CONFIRMED:
            self._apply_confirmed(proposal, command, result)
        elif result.outcome == Outcome.UNKNOWN:
            with self._state_lock:
                self._mark_pending(proposal, command, result.tx_hash)
            logger.warning(
                f"Proposal #{proposal.id} pending reconciliation of tx {result.tx_hash}"
            )
        else:
            with self._state_lock:
                self._clear_pending(proposal)
            logger.info(
                f"{result.action.value if result.action else 'action'} on proposal "
                f"#{proposal.id} failed on ledger: {result.error}"
            )
        return result

    async def _submit(
        self, proposal: Proposal, command: Command, operation: UnsignedOperation,
    ) -> ActionResult:
        """
        Prepare, record and send one proposal action.

        The proposal is held pending under the signed hash before the
        envelope goes out, so a cancelled caller leaves it reconcilable.
        """
        signed = await self.pipeline.prepare(operation)
        with self._state_lock:
            self._mark_pending(proposal, command, signed.hash)
        try:
            result = await self.pipeline.send(signed)
        except asyncio.CancelledError:
            logger.warning(
                f"Proposal #{proposal.id} pending reconciliation of tx {signed.hash} "
                f"(caller cancelled)"
            )
            raise
        return self._settle(proposal, command, result)

    # ── Commands ──────────────────────────────────────────────────────

    async def dispatch(self, command: Command) -> ActionResult:
        if isinstance(command, Propose):
            return await self._propose(command)
        if isinstance(command, Approve):
            return await self._approve(command)
        if isinstance(command, Reject):
            return await self._reject(command)
        if isinstance(command, Execute):
            return await self._execute(command)
        raise ValidationError(f"Unsupported command {type(command).__name__}")

    async def propose(self, caller: str, recipient: str, token: str, amount: Any, memo: str = "") -> ActionResult:
        return await self.dispatch(Propose(caller, recipient, token, amount, memo))

    async def approve(self, proposal_id: int, caller: str) -> ActionResult:
        return await self.dispatch(Approve(proposal_id, caller))

    async def reject(self, proposal_id: int, caller: str, reason: str = "") -> ActionResult:
        return await self.dispatch(Reject(proposal_id, caller, reason))

    async def execute(self, proposal_id: int, caller: str) -> ActionResult:
        return await self.dispatch(Execute(proposal_id, caller))

    async def _propose(self, command: Propose) -> ActionResult:
        operation = self.pipeline.build_propose(
            command.caller, command.recipient, command.token, command.amount, command.memo,
        )
        signed = await self.pipeline.prepare(operation)
        # Held by hash until the outcome is known
        self._pending_proposes[signed.hash] = command
        try:
            result = await self.pipeline.send(signed)
        except asyncio.CancelledError:
            logger.warning(
                f"Proposal creation pending reconciliation of tx {signed.hash} (caller cancelled)"
            )
            raise

        if result.outcome == Outcome.UNKNOWN:
            logger.warning(f"Proposal creation pending reconciliation of tx {result.tx_hash}")
            return result
        self._pending_proposes.pop(signed.hash, None)
        if result.outcome != Outcome.CONFIRMED:
            return result

        self._created_from_result(command, result)
        return result

    def _created_from_result(self, command: Propose, result: ActionResult) -> None:
        try:
            proposal_id = int(result.value)
        except (TypeError, ValueError):
            logger.warning(
                f"Proposal created in tx {result.tx_hash} returned no id ({result.value!r}); "
                f"waiting for its creation event"
            )
            self._pending_proposes[result.tx_hash] = command
            return
        result.proposal_id = proposal_id
        ledger = result.ledger or self.clock.height
        with self._state_lock:
            existing = self._proposals.get(proposal_id)
            if existing is not None:
                self._complete_from_command(existing, command)
                return
            self._create(
                proposal_id, command.caller, command.recipient, command.token,
                parse_amount(command.amount), command.memo, ledger, time.time(),
            )

    def _create(
        self,
        proposal_id: int,
        proposer: str,
        recipient: str,
        token: str,
        amount: int,
        memo: str,
        ledger: int,
        created_at: float,
    ) -> Proposal:
        policy = self.policy
        proposal = Proposal(
            id=proposal_id,
            proposer=proposer,
            recipient=recipient,
            token=token,
            amount=amount,
            memo=memo,
            threshold=self.threshold,
            created_at=created_at,
            created_ledger=ledger,
            unlock_height=self.state_machine.timelock.unlock_height_for(
                amount, ledger, policy.timelock_threshold, policy.timelock_delay,
            ),
            expires_at_height=ledger + policy.expiry_ledgers if policy.expiry_ledgers else 0,
            last_observed_height=self.clock.height,
        )
        if policy.proposer_auto_approves:
            self.state_machine.apply_approve(proposal, proposer)
        self._proposals[proposal_id] = proposal
        logger.info(f"Proposal #{proposal_id} created at ledger {ledger}: {proposal!r}")
        if self.metrics:
            self.metrics.transitions_total.inc(proposal.status.name)
        return proposal

    @staticmethod
    def _complete_from_command(proposal: Proposal, command: Propose) -> None:
        if proposal.token == UNRESOLVED_TOKEN:
            proposal.token = command.token
            proposal.memo = command.memo

    async def _approve(self, command: Approve) -> ActionResult:
        async with self._lock_for(command.proposal_id):
            proposal = self._require(command.proposal_id)
            self._refuse_if_pending(proposal)
            self._expire_if_due(proposal)
            self.state_machine.check_approve(proposal, command.caller)
            operation = self.pipeline.build_for_proposal(
                ContractFunction.APPROVE, command.caller, command.proposal_id,
            )
            return await self._submit(proposal, command, operation)

    async def _reject(self, command: Reject) -> ActionResult:
        async with self._lock_for(command.proposal_id):
            proposal = self._require(command.proposal_id)
            self._refuse_if_pending(proposal)
            self._expire_if_due(proposal)
            self.state_machine.check_reject(proposal, command.caller)
            operation = self.pipeline.build_for_proposal(
                ContractFunction.REJECT, command.caller, command.proposal_id,
            )
            return await self._submit(proposal, command, operation)

    async def _execute(self, command: Execute) -> ActionResult:
        async with self._lock_for(command.proposal_id):
            proposal = self._require(command.proposal_id)
            if proposal.pending_reconciliation:
                await self._reconcile_locked(proposal)
                self._refuse_if_pending(proposal)

            if self.state_machine.check_execute(proposal, self.clock.height):
                return self._replay_execution(proposal)

            operation = self.pipeline.build_for_proposal(
                ContractFunction.EXECUTE, command.caller, command.proposal_id,
            )
            return await self._submit(proposal, command, operation)

    def _replay_execution(self, proposal: Proposal) -> ActionResult:
        logger.info(f"Proposal #{proposal.id} already executed; returning original result")
        original = self._executions.get(proposal.id)
        if original is not None:
            return dataclasses.replace(original, replayed=True)
        return ActionResult(
            action=ContractFunction.EXECUTE,
            proposal_id=proposal.id,
            outcome=Outcome.CONFIRMED,
            tx_hash=proposal.execution_tx_hash,
            replayed=True,
        )

    # ── Reconciliation ────────────────────────────────────────────────

    async def reconcile(self, proposal_id: int) -> Optional[ActionResult]:
        """
        Resolve an ambiguous submission on *proposal_id*.

        Returns None when nothing is pending, otherwise the reconciled
        result (possibly still UNKNOWN).
        """
        async with self._lock_for(proposal_id):
            return await self._reconcile_locked(self._require(proposal_id))

    async def _reconcile_locked(self, proposal: Proposal) -> Optional[ActionResult]:
        pending = self._pending.get(proposal.id)
        if pending is None or pending.tx_hash is None:
            if proposal.pending_reconciliation:
                with self._state_lock:
                    self._clear_pending(proposal)
            return None

        result = await self.pipeline.reconcile(pending.tx_hash)
        if result.outcome == Outcome.CONFIRMED and pending.command is None:
            # Restored hold: the action is unknown; its ledger event releases it
            logger.info(
                f"Reconciled tx {pending.tx_hash} on proposal #{proposal.id}: CONFIRMED, "
                f"held until its ledger event is ingested"
            )
        elif result.outcome == Outcome.CONFIRMED:
            logger.info(f"Reconciled tx {pending.tx_hash} on proposal #{proposal.id}: CONFIRMED")
            self._apply_confirmed(proposal, pending.command, result)
        elif result.outcome == Outcome.FAILED:
            logger.info(f"Reconciled tx {pending.tx_hash} on proposal #{proposal.id}: FAILED")
            with self._state_lock:
                self._clear_pending(proposal)
        return result

    async def reconcile_proposes(self) -> List[ActionResult]:
        """Resolve proposal creations whose submission outcome was unknown."""
        results = []
        for tx_hash, command in list(self._pending_proposes.items()):
            result = await self.pipeline.reconcile(tx_hash)
            results.append(result)
            if result.outcome == Outcome.UNKNOWN:
                continue
            self._pending_proposes.pop(tx_hash, None)
            if result.outcome == Outcome.CONFIRMED:
                self._created_from_result(command, result)
        return results

    # ── Ledger synchronisation ────────────────────────────────────────

    def _on_height(self, height: int) -> None:
        with self._state_lock:
            for proposal in self._proposals.values():
                if not proposal.is_terminal:
                    proposal.last_observed_height = height
        if self.metrics:
            self.metrics.ledger_height.set(height)

    async def sync_height(self) -> int:
        """Read the latest ledger and advance the clock."""
        height = await self.pipeline.get_latest_ledger()
        return self.clock.sync(height)

    def expire_stale(self) -> List[int]:
        """Expire every pending proposal whose expiry ledger has passed."""
        expired = []
        with self._state_lock:
            for proposal in self._proposals.values():
                if proposal.pending_reconciliation:
                    continue
                before = proposal.status
                if self.state_machine.apply_expire(proposal, self.clock.height):
                    self._observe(proposal, before)
                    expired.append(proposal.id)
        return expired

    # ── Activity ingestion ────────────────────────────────────────────

    def apply_activity(self, activities: Iterable[VaultActivity]) -> int:
        """
        Fold ledger events into the store, in ledger order.

        Events already applied (by eventId) are skipped. Returns the number
        of newly recorded events.
        """
        applied = 0
        with self._state_lock:
            for activity in sorted(activities, key=lambda a: a.sort_key):
                if activity.event_id in self._activity_ids:
                    continue
                self._activity_ids.add(activity.event_id)
                self._activity.append(activity)
                applied += 1
                try:
                    self._fold(activity)
                except StateConflict as e:
                    logger.error(f"Event {activity.event_id} ({activity.type.value}) not applied: {e}")
            self._activity.sort(key=lambda a: a.sort_key)
        return applied

    def _fold(self, activity: VaultActivity) -> None:
        details = activity.details

        if isinstance(details, ProposalCreatedDetails):
            self._fold_created(activity, details)
            return
        if isinstance(details, RoleAssignedDetails):
            try:
                self.state_machine.set_role(details.address, Role(details.role))
            except ValueError:
                logger.warning(f"Unknown role code {details.role} for {details.address[:8]}…")
            return
        if isinstance(details, InitializedDetails):
            self.state_machine.set_role(details.admin, Role.ADMIN)
            if details.threshold and details.threshold != self.policy.threshold:
                logger.warning(
                    f"Vault initialized on ledger with threshold {details.threshold}, "
                    f"local policy says {self.policy.threshold}; using the ledger's"
                )
            self._ledger_threshold = details.threshold or None
            return
        if isinstance(details, (SignerAddedDetails, SignerRemovedDetails)):
            self._signer_total = details.total_signers
            return

        proposal_id = activity.proposal_id
        if proposal_id is None:
            return
        proposal = self._proposals.get(proposal_id)
        if proposal is None:
            logger.warning(
                f"Event {activity.event_id} refers to unknown proposal #{proposal_id}"
            )
            return

        before = proposal.status
        if isinstance(details, ProposalApprovedDetails):
            self.state_machine.apply_approve(proposal, details.approver, details.threshold)
        elif isinstance(details, ProposalReadyDetails):
            self.state_machine.apply_ready(proposal)
        elif isinstance(details, ProposalExecutedDetails):
            if self.state_machine.apply_execute(proposal, activity.tx_hash):
                self._executions.setdefault(proposal.id, ActionResult(
                    action=ContractFunction.EXECUTE,
                    proposal_id=proposal.id,
                    outcome=Outcome.CONFIRMED,
                    tx_hash=activity.tx_hash,
                    ledger=activity.ledger,
                ))
        elif isinstance(details, ProposalRejectedDetails):
            self.state_machine.apply_ledger_rejection(
                proposal, f"rejected on ledger by {details.rejector}",
            )

        # The event settles a matching ambiguous submission
        if proposal.pending_reconciliation and activity.tx_hash == proposal.pending_tx_hash:
            self._clear_pending(proposal)
        self._observe(proposal, before)

    def _fold_created(self, activity: VaultActivity, details: ProposalCreatedDetails) -> None:
        command = self._pending_proposes.pop(activity.tx_hash, None) if activity.tx_hash else None
        existing = self._proposals.get(details.proposal_id)
        if existing is not None:
            if command is not None:
                self._complete_from_command(existing, command)
            return
        self._create(
            details.proposal_id,
            details.proposer,
            details.recipient,
            command.token if command else UNRESOLVED_TOKEN,
            details.amount,
            command.memo if command else "",
            activity.ledger,
            activity.timestamp.timestamp(),
        )

    # ── Dashboard ─────────────────────────────────────────────────────

    def active_signers(self) -> int:
        if self._signer_total is not None:
            return self._signer_total
        return len(self.state_machine.signers)

    async def dashboard_stats(self) -> Dict[str, Any]:
        balance = await self.pipeline.get_vault_balance()
        snapshot = self.snapshot()
        timelock = self.state_machine.timelock
        signers = self.active_signers()
        return {
            "totalBalance": balance,
            "totalProposals": len(snapshot.proposals),
            "pendingApprovals": sum(
                1 for p in snapshot.proposals if p.status == ProposalStatus.PENDING
            ),
            "readyToExecute": sum(
                1 for p in snapshot.proposals
                if p.status == ProposalStatus.APPROVED and timelock.is_satisfied(p, snapshot.height)
            ),
            "activeSigners": signers,
            "threshold": f"{self.threshold}/{signers}",
        }
