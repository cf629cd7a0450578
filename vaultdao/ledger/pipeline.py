"""
Transaction Pipeline

Every mutating vault action follows the same protocol:

    1. build     local validation, unsigned contract invocation
    2. simulate  dry run on the ledger (short-circuits before signing)
    3. sign      external signing agent
    4. submit    send and await a terminal ledger result

Each network stage has its own timeout. A submission whose result cannot
be established in time is reported as Outcome.UNKNOWN, never as a failure:
the pipeline keeps tracking the transaction in the background (even if the
waiting caller is cancelled) so `reconcile()` can resolve it later.
"""

import asyncio
import time
from typing import Any, Callable, Dict, Optional, Tuple

from ..config import VaultConfig
from ..constants import MEMO_MAX_LENGTH, NATIVE_TOKEN, VALID_ADDRESS_PATTERN
from ..exceptions import (
    LedgerRPCError,
    PipelineError,
    PipelineStage,
    SigningRejected,
    SimulationError,
    SubmissionError,
    ValidationError,
)
from ..governance.proposals import parse_amount
from ..logger import get_logger
from ..metrics import VaultMetrics
from .rpc import LedgerRPC
from .signing import SigningAgent
from .types import (
    ActionResult,
    ContractFunction,
    Outcome,
    PreparedTransaction,
    SignedTransaction,
    SimulationResult,
    SubmissionResult,
    TxStatus,
    UnsignedOperation,
    sc_address,
    sc_i128,
    sc_symbol,
    sc_u64,
)

logger = get_logger(__name__)

# Slack past the validity window before a missing tx is treated as expired
_INCLUSION_GRACE_SECONDS = 30


def _require_address(value: Any, what: str) -> str:
    if not isinstance(value, str) or not value:
        raise ValidationError(f"{what} is required")
    if not VALID_ADDRESS_PATTERN.match(value):
        raise ValidationError(f"{what} {value!r} is not a valid account or contract address")
    return value


def _require_proposal_id(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError(f"Proposal id must be a non-negative integer, got {value!r}")
    return value


class TransactionPipeline:
    """
    Orchestrates build → simulate → sign → submit against the ledger.

    Args:
        rpc:     Ledger RPC implementation
        signer:  Signing agent for the caller
        config:  Engine configuration (contract, network, timeouts)
        metrics: Optional metrics sink
        clock:   Monotonic clock (injectable for tests)
        inclusion_grace: Seconds past the validity window before an unseen
                 transaction is treated as expired
    """

    def __init__(
        self,
        rpc: LedgerRPC,
        signer: SigningAgent,
        config: VaultConfig,
        metrics: Optional[VaultMetrics] = None,
        clock: Callable[[], float] = time.monotonic,
        inclusion_grace: float = _INCLUSION_GRACE_SECONDS,
    ):
        self.rpc = rpc
        self.signer = signer
        self.config = config
        self.metrics = metrics
        self._clock = clock
        self.inclusion_grace = inclusion_grace
        self._in_flight: Dict[str, asyncio.Task] = {}
        self._resolved: Dict[str, SubmissionResult] = {}
        self._context: Dict[str, Tuple[ContractFunction, Optional[int]]] = {}

    # ── Build ─────────────────────────────────────────────────────────

    def _operation(
        self,
        caller: str,
        function: ContractFunction,
        args: Tuple[Dict[str, Any], ...],
        proposal_id: Optional[int] = None,
    ) -> UnsignedOperation:
        if not self.config.contract.contract_id:
            raise ValidationError("No vault contract configured")
        return UnsignedOperation(
            source=caller,
            contract_id=self.config.contract.contract_id,
            function=function,
            args=args,
            network_passphrase=self.config.network.network_passphrase,
            fee=self.config.pipeline.fee,
            timeout_seconds=self.config.pipeline.tx_timeout_seconds,
            proposal_id=proposal_id,
        )

    def build_propose(
        self,
        caller: Optional[str],
        recipient: str,
        token: str,
        amount: Any,
        memo: str = "",
    ) -> UnsignedOperation:
        caller = _require_address(caller, "Caller (wallet not connected)")
        recipient = _require_address(recipient, "Recipient")
        if not token:
            raise ValidationError("Token is required")
        if token != NATIVE_TOKEN:
            _require_address(token, "Token")
        value = parse_amount(amount)
        if value <= 0:
            raise ValidationError("Amount must be positive")
        memo = memo or ""
        if len(memo) > MEMO_MAX_LENGTH:
            raise ValidationError(f"Memo exceeds {MEMO_MAX_LENGTH} characters ({len(memo)})")
        return self._operation(
            caller,
            ContractFunction.PROPOSE,
            (
                sc_address(caller),
                sc_address(recipient),
                sc_address(token) if token != NATIVE_TOKEN else sc_symbol(token),
                sc_i128(value),
                sc_symbol(memo),
            ),
        )

    def build_for_proposal(
        self,
        function: ContractFunction,
        caller: Optional[str],
        proposal_id: Any,
    ) -> UnsignedOperation:
        """approve / reject / execute share the (caller, proposal_id) shape."""
        if function == ContractFunction.PROPOSE:
            raise ValidationError("Use build_propose for propose_transfer")
        caller = _require_address(caller, "Caller (wallet not connected)")
        pid = _require_proposal_id(proposal_id)
        return self._operation(
            caller, function, (sc_address(caller), sc_u64(pid)), proposal_id=pid,
        )

    # ── Simulate ──────────────────────────────────────────────────────

    async def simulate(self, operation: UnsignedOperation) -> SimulationResult:
        try:
            simulation = await asyncio.wait_for(
                self.rpc.simulate(operation),
                timeout=self.config.pipeline.simulate_timeout,
            )
        except asyncio.TimeoutError:
            raise PipelineError(
                f"Simulation of {operation.function.value} timed out", PipelineStage.SIMULATE,
            )
        except LedgerRPCError as e:
            raise PipelineError(f"Simulation request failed: {e}", PipelineStage.SIMULATE) from e

        if not simulation.success:
            raise SimulationError(simulation.error or "unknown simulation error")
        return simulation

    # ── Sign ──────────────────────────────────────────────────────────

    async def sign(
        self,
        operation: UnsignedOperation,
        simulation: SimulationResult,
    ) -> SignedTransaction:
        prepared = PreparedTransaction.assemble(operation, simulation)
        try:
            envelope = await asyncio.wait_for(
                self.signer.sign(prepared.to_bytes(), self.config.network.network_id),
                timeout=self.config.pipeline.sign_timeout,
            )
        except asyncio.TimeoutError:
            raise SigningRejected("Signing agent did not respond in time")
        if not envelope:
            raise SigningRejected("Signing agent declined")
        return SignedTransaction(envelope=envelope, hash=prepared.hash(), operation=operation)

    # ── Submit ────────────────────────────────────────────────────────

    def _result(
        self,
        operation: UnsignedOperation,
        outcome: Outcome,
        tx_hash: Optional[str],
        submission: Optional[SubmissionResult] = None,
        error: Optional[str] = None,
    ) -> ActionResult:
        stage = None if outcome == Outcome.CONFIRMED else PipelineStage.SUBMIT
        if self.metrics:
            self.metrics.actions_total.inc(operation.function.value, outcome.value)
        return ActionResult(
            action=operation.function,
            proposal_id=operation.proposal_id,
            outcome=outcome,
            tx_hash=tx_hash,
            value=submission.return_value if submission else None,
            ledger=submission.ledger if submission else 0,
            stage=stage,
            error=error or (submission.error if submission else None),
        )

    def _outcome_of(self, submission: SubmissionResult) -> Outcome:
        if submission.status == TxStatus.SUCCESS:
            return Outcome.CONFIRMED
        if submission.status == TxStatus.FAILED or submission.status.was_refused:
            return Outcome.FAILED
        return Outcome.UNKNOWN

    async def _poll(self, tx_hash: str, deadline: float) -> SubmissionResult:
        """Poll until the transaction is final or can no longer land."""
        last = SubmissionResult(hash=tx_hash, status=TxStatus.PENDING)
        while True:
            try:
                last = await self.rpc.get_transaction(tx_hash)
            except LedgerRPCError as e:
                logger.debug(f"Status poll for {tx_hash} failed: {e}")
            if last.status.is_final:
                return last
            if self._clock() >= deadline:
                if last.status == TxStatus.NOT_FOUND:
                    # Past the validity window: it can never be included
                    return SubmissionResult(
                        hash=tx_hash,
                        status=TxStatus.FAILED,
                        error="expired without inclusion",
                    )
                return last
            await asyncio.sleep(self.config.pipeline.poll_interval)

    def _track(self, signed: SignedTransaction, started: float) -> asyncio.Task:
        existing = self._in_flight.get(signed.hash)
        if existing is not None:
            return existing
        deadline = started + signed.operation.timeout_seconds + self.inclusion_grace
        task = asyncio.get_running_loop().create_task(self._poll(signed.hash, deadline))
        self._in_flight[signed.hash] = task
        self._context[signed.hash] = (signed.operation.function, signed.operation.proposal_id)
        if self.metrics:
            self.metrics.in_flight.set(len(self._in_flight))

        def _done(t: asyncio.Task) -> None:
            self._in_flight.pop(signed.hash, None)
            if self.metrics:
                self.metrics.in_flight.set(len(self._in_flight))
                self.metrics.submit_latency.observe(self._clock() - started)
            if t.cancelled():
                return
            if t.exception() is not None:
                logger.error(f"Tracking of {signed.hash} failed: {t.exception()}")
                return
            result = t.result()
            if result.status.is_final:
                self._resolved[signed.hash] = result
                logger.info(f"Transaction {signed.hash} resolved: {result.status.value}")

        task.add_done_callback(_done)
        return task

    async def submit(self, signed: SignedTransaction) -> ActionResult:
        """
        Send the signed transaction and wait for its terminal result.

        Cancelling the caller cancels only the wait; tracking continues.
        """
        operation = signed.operation
        started = self._clock()
        budget = self.config.pipeline.submit_timeout
        self._context[signed.hash] = (operation.function, operation.proposal_id)

        try:
            admission = await asyncio.wait_for(self.rpc.submit(signed), timeout=budget)
        except asyncio.CancelledError:
            # The envelope may already be on the wire
            self._track(signed, started)
            raise
        except (asyncio.TimeoutError, LedgerRPCError) as e:
            # The request may have reached the network before failing
            logger.warning(
                f"Submission of {operation.function.value} ({signed.hash}) UNKNOWN: {e}"
            )
            self._track(signed, started)
            return self._result(operation, Outcome.UNKNOWN, signed.hash, error=str(e) or "timeout")

        if admission.status.was_refused:
            logger.info(f"Submission of {signed.hash} refused: {admission.error}")
            return self._result(operation, Outcome.FAILED, signed.hash, admission)
        if admission.status.is_final:
            return self._result(operation, self._outcome_of(admission), signed.hash, admission)

        task = self._track(signed, started)
        remaining = max(0.0, budget - (self._clock() - started))
        try:
            final = await asyncio.wait_for(asyncio.shield(task), timeout=remaining)
        except asyncio.TimeoutError:
            logger.warning(
                f"{operation.function.value} {signed.hash} not final after {budget}s, UNKNOWN"
            )
            return self._result(operation, Outcome.UNKNOWN, signed.hash, error="timeout")

        outcome = self._outcome_of(final)
        if outcome == Outcome.UNKNOWN:
            return self._result(operation, outcome, signed.hash, final, error="not final")
        return self._result(operation, outcome, signed.hash, final)

    # ── Run ───────────────────────────────────────────────────────────

    async def prepare(self, operation: UnsignedOperation) -> SignedTransaction:
        """
        Simulate and sign a built operation.

        The returned hash is final, so callers can record it before the
        envelope is sent. Raises SimulationError / SigningRejected /
        PipelineError; nothing has reached the ledger in that case.
        """
        try:
            simulation = await self.simulate(operation)
            return await self.sign(operation, simulation)
        except PipelineError as e:
            if self.metrics:
                self.metrics.stage_failures_total.inc(e.stage.name)
            logger.info(
                f"{operation.function.value} stopped at {e.stage.name}: {e}"
            )
            raise

    async def send(self, signed: SignedTransaction) -> ActionResult:
        """Submit a prepared transaction and count a non-confirmed outcome."""
        result = await self.submit(signed)
        if result.stage is not None and self.metrics:
            self.metrics.stage_failures_total.inc(result.stage.name)
        return result

    async def run(self, operation: UnsignedOperation) -> ActionResult:
        """
        Simulate, sign and submit a built operation.

        Submission outcomes are returned, including UNKNOWN.
        """
        return await self.send(await self.prepare(operation))

    # ── Reconcile ─────────────────────────────────────────────────────

    def is_tracking(self, tx_hash: str) -> bool:
        return tx_hash in self._in_flight

    async def reconcile(self, tx_hash: str) -> ActionResult:
        """
        Establish the true outcome of an earlier submission.

        Uses the background tracker's verdict when it has one, otherwise
        queries the ledger once. Still-undetermined transactions come back
        as UNKNOWN.
        """
        action, proposal_id = self._context.get(tx_hash, (None, None))
        submission = self._resolved.get(tx_hash)
        if submission is None:
            try:
                submission = await asyncio.wait_for(
                    self.rpc.get_transaction(tx_hash),
                    timeout=self.config.pipeline.simulate_timeout,
                )
            except (asyncio.TimeoutError, LedgerRPCError) as e:
                raise SubmissionError(e, tx_hash=tx_hash, stage=PipelineStage.RECONCILE) from e
            if submission.status.is_final:
                self._resolved[tx_hash] = submission

        outcome = self._outcome_of(submission)
        return ActionResult(
            action=action,
            proposal_id=proposal_id,
            outcome=outcome,
            tx_hash=tx_hash,
            value=submission.return_value,
            ledger=submission.ledger,
            stage=None if outcome == Outcome.CONFIRMED else PipelineStage.RECONCILE,
            error=submission.error,
        )

    async def aclose(self) -> None:
        """Stop background tracking (shutdown only; outcomes stay unresolved)."""
        tasks = list(self._in_flight.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ── Reads ─────────────────────────────────────────────────────────

    async def get_vault_balance(self, asset_type: str = "native") -> str:
        """Balance of the vault contract account, as the ledger's decimal string."""
        account = await asyncio.wait_for(
            self.rpc.get_account(self.config.contract.contract_id),
            timeout=self.config.pipeline.simulate_timeout,
        )
        for balance in account.get("balances", []):
            if balance.get("asset_type") == asset_type:
                return str(balance.get("balance", "0"))
        return "0"

    async def get_latest_ledger(self) -> int:
        return await asyncio.wait_for(
            self.rpc.get_latest_ledger(),
            timeout=self.config.pipeline.simulate_timeout,
        )
