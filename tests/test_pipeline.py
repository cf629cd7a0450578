"""
Transaction Pipeline Test Suite

Coverage:
  - build-stage validation (never reaches the ledger)
  - simulate / sign short-circuits with stage-tagged errors
  - submit outcomes: confirmed, refused, failed, UNKNOWN on timeout
  - background tracking survives caller cancellation
  - reconciliation of ambiguous submissions
"""

import asyncio
import re

import pytest

from vaultdao.exceptions import (
    LedgerRPCError,
    PipelineError,
    PipelineStage,
    SigningRejected,
    SimulationError,
    SubmissionError,
    ValidationError,
)
from vaultdao.ledger.pipeline import TransactionPipeline
from vaultdao.ledger.types import ContractFunction, Outcome, TxStatus
from vaultdao.metrics import VaultMetrics

from vault_fakes import (
    ALICE,
    BOB,
    RECIPIENT,
    TOKEN,
    FakeLedger,
    FakeSigner,
    make_config,
)

HASH_RE = re.compile(r"^[0-9a-f]{64}$")


def make_pipeline(ledger=None, signer=None, metrics=None, **pipeline):
    return TransactionPipeline(
        ledger or FakeLedger(),
        signer or FakeSigner(),
        make_config(**pipeline),
        metrics=metrics,
    )


# ══════════════════════════════════════════════════════════════════════
#  BUILD
# ══════════════════════════════════════════════════════════════════════

class TestBuild:

    def test_propose_operation(self):
        op = make_pipeline().build_propose(ALICE, RECIPIENT, TOKEN, "1,000", "rent")
        assert op.function == ContractFunction.PROPOSE
        assert op.source == ALICE
        assert op.args[3] == {"type": "i128", "value": "1000"}
        assert op.args[4] == {"type": "symbol", "value": "rent"}
        assert op.proposal_id is None

    def test_native_token_allowed(self):
        op = make_pipeline().build_propose(ALICE, RECIPIENT, "NATIVE", 5)
        assert op.args[2] == {"type": "symbol", "value": "NATIVE"}

    def test_not_connected(self):
        with pytest.raises(ValidationError, match="not connected"):
            make_pipeline().build_propose(None, RECIPIENT, TOKEN, 5)

    def test_bad_recipient(self):
        with pytest.raises(ValidationError, match="Recipient"):
            make_pipeline().build_propose(ALICE, "not-an-address", TOKEN, 5)

    def test_empty_recipient(self):
        with pytest.raises(ValidationError, match="Recipient"):
            make_pipeline().build_propose(ALICE, "", TOKEN, 5)

    def test_non_numeric_amount(self):
        with pytest.raises(ValidationError):
            make_pipeline().build_propose(ALICE, RECIPIENT, TOKEN, "ten")

    def test_zero_amount(self):
        with pytest.raises(ValidationError, match="positive"):
            make_pipeline().build_propose(ALICE, RECIPIENT, TOKEN, 0)

    def test_memo_too_long(self):
        with pytest.raises(ValidationError, match="Memo"):
            make_pipeline().build_propose(ALICE, RECIPIENT, TOKEN, 5, "m" * 33)

    def test_proposal_actions(self):
        pipeline = make_pipeline()
        op = pipeline.build_for_proposal(ContractFunction.EXECUTE, BOB, 4)
        assert op.proposal_id == 4
        assert op.args == ({"type": "address", "value": BOB}, {"type": "u64", "value": 4})

    def test_bad_proposal_id(self):
        with pytest.raises(ValidationError, match="non-negative"):
            make_pipeline().build_for_proposal(ContractFunction.APPROVE, BOB, -1)

    def test_missing_contract(self):
        pipeline = make_pipeline()
        pipeline.config.contract.contract_id = ""
        with pytest.raises(ValidationError, match="contract"):
            pipeline.build_for_proposal(ContractFunction.APPROVE, BOB, 1)


# ══════════════════════════════════════════════════════════════════════
#  SIMULATE / SIGN
# ══════════════════════════════════════════════════════════════════════

class TestPreSubmission:

    @pytest.mark.asyncio
    async def test_simulation_error_short_circuits(self):
        ledger, signer, metrics = FakeLedger(), FakeSigner(), VaultMetrics()
        ledger.simulate_error = "insufficient balance"
        pipeline = make_pipeline(ledger, signer, metrics)
        op = pipeline.build_for_proposal(ContractFunction.EXECUTE, ALICE, 1)

        with pytest.raises(SimulationError, match="insufficient balance") as info:
            await pipeline.run(op)

        assert info.value.stage == PipelineStage.SIMULATE
        assert info.value.reason == "insufficient balance"
        assert signer.requests == []
        assert ledger.count("submit") == 0
        assert metrics.stage_failures_total.value("SIMULATE") == 1

    @pytest.mark.asyncio
    async def test_simulation_transport_error_has_stage(self):
        class DownLedger(FakeLedger):
            async def simulate(self, operation):
                raise LedgerRPCError("connection refused")

        pipeline = make_pipeline(DownLedger())
        op = pipeline.build_for_proposal(ContractFunction.APPROVE, ALICE, 1)
        with pytest.raises(PipelineError) as info:
            await pipeline.run(op)
        assert info.value.stage == PipelineStage.SIMULATE

    @pytest.mark.asyncio
    async def test_signing_declined(self):
        ledger = FakeLedger()
        pipeline = make_pipeline(ledger, FakeSigner(decline=True))
        op = pipeline.build_for_proposal(ContractFunction.APPROVE, ALICE, 1)

        with pytest.raises(SigningRejected) as info:
            await pipeline.run(op)
        assert info.value.stage == PipelineStage.SIGN
        assert ledger.count("submit") == 0

    @pytest.mark.asyncio
    async def test_signing_timeout(self):
        pipeline = make_pipeline(signer=FakeSigner(hang=True), sign_timeout=0.05)
        op = pipeline.build_for_proposal(ContractFunction.APPROVE, ALICE, 1)
        with pytest.raises(SigningRejected, match="in time"):
            await pipeline.run(op)

    @pytest.mark.asyncio
    async def test_signer_receives_network_and_fee(self):
        signer = FakeSigner()
        pipeline = make_pipeline(signer=signer)
        op = pipeline.build_for_proposal(ContractFunction.APPROVE, ALICE, 1)
        await pipeline.run(op)
        tx_bytes, network = signer.requests[0]
        assert network == "TESTNET"
        assert b'"fee":150' in tx_bytes


# ══════════════════════════════════════════════════════════════════════
#  SUBMIT
# ══════════════════════════════════════════════════════════════════════

class TestSubmit:

    @pytest.mark.asyncio
    async def test_confirmed(self):
        ledger, metrics = FakeLedger(), VaultMetrics()
        ledger.return_value = 7
        pipeline = make_pipeline(ledger, metrics=metrics)
        op = pipeline.build_propose(ALICE, RECIPIENT, TOKEN, 1_000)

        result = await pipeline.run(op)

        assert result.outcome == Outcome.CONFIRMED
        assert result.confirmed
        assert result.value == 7
        assert result.stage is None
        assert HASH_RE.match(result.tx_hash)
        assert ledger.submitted[0].hash == result.tx_hash
        assert metrics.actions_total.value("propose_transfer", "confirmed") == 1

    @pytest.mark.asyncio
    async def test_refused_at_admission(self):
        ledger = FakeLedger()
        ledger.submit_status = TxStatus.ERROR
        pipeline = make_pipeline(ledger)
        op = pipeline.build_for_proposal(ContractFunction.APPROVE, ALICE, 1)

        result = await pipeline.run(op)

        assert result.outcome == Outcome.FAILED
        assert result.stage == PipelineStage.SUBMIT
        assert not pipeline.is_tracking(result.tx_hash)

    @pytest.mark.asyncio
    async def test_failed_on_ledger(self):
        ledger = FakeLedger()
        ledger.final_status = TxStatus.FAILED
        pipeline = make_pipeline(ledger)
        op = pipeline.build_for_proposal(ContractFunction.APPROVE, ALICE, 1)

        result = await pipeline.run(op)

        assert result.outcome == Outcome.FAILED
        assert result.error == "txFailed"

    @pytest.mark.asyncio
    async def test_timeout_is_unknown_not_failed(self):
        ledger = FakeLedger()
        ledger.submit_hang = True
        pipeline = make_pipeline(ledger)
        op = pipeline.build_for_proposal(ContractFunction.EXECUTE, ALICE, 3)

        result = await pipeline.run(op)

        assert result.outcome == Outcome.UNKNOWN
        assert result.is_unknown
        assert result.stage == PipelineStage.SUBMIT
        assert result.proposal_id == 3
        assert pipeline.is_tracking(result.tx_hash)
        await pipeline.aclose()

    @pytest.mark.asyncio
    async def test_transport_error_on_send_is_unknown(self):
        ledger = FakeLedger()
        ledger.submit_raises = LedgerRPCError("connection reset")
        pipeline = make_pipeline(ledger)
        op = pipeline.build_for_proposal(ContractFunction.APPROVE, ALICE, 1)

        result = await pipeline.run(op)

        assert result.outcome == Outcome.UNKNOWN
        assert "connection reset" in result.error
        await pipeline.aclose()

    @pytest.mark.asyncio
    async def test_not_final_within_budget_is_unknown(self):
        ledger = FakeLedger()
        ledger.land_on_submit = False
        pipeline = make_pipeline(ledger, submit_timeout=0.05)
        op = pipeline.build_for_proposal(ContractFunction.APPROVE, ALICE, 1)

        result = await pipeline.run(op)

        assert result.outcome == Outcome.UNKNOWN
        assert ledger.count("get_transaction") >= 1
        await pipeline.aclose()

    @pytest.mark.asyncio
    async def test_expired_without_inclusion(self):
        ledger = FakeLedger()
        ledger.land_on_submit = False
        pipeline = TransactionPipeline(
            ledger, FakeSigner(), make_config(tx_timeout_seconds=0), inclusion_grace=0,
        )
        op = pipeline.build_for_proposal(ContractFunction.APPROVE, ALICE, 1)

        result = await pipeline.run(op)

        assert result.outcome == Outcome.FAILED
        assert result.error == "expired without inclusion"


# ══════════════════════════════════════════════════════════════════════
#  TRACKING / RECONCILIATION
# ══════════════════════════════════════════════════════════════════════

class TestReconcile:

    @pytest.mark.asyncio
    async def test_reconcile_after_timeout(self):
        ledger = FakeLedger()
        ledger.submit_hang = True
        pipeline = make_pipeline(ledger)
        op = pipeline.build_for_proposal(ContractFunction.EXECUTE, ALICE, 3)

        result = await pipeline.run(op)
        assert result.is_unknown

        ledger.land(result.tx_hash)
        reconciled = await pipeline.reconcile(result.tx_hash)

        assert reconciled.outcome == Outcome.CONFIRMED
        assert reconciled.action == ContractFunction.EXECUTE
        assert reconciled.proposal_id == 3
        assert ledger.count("submit") == 1
        await pipeline.aclose()

    @pytest.mark.asyncio
    async def test_reconcile_still_unknown(self):
        ledger = FakeLedger()
        ledger.submit_hang = True
        pipeline = make_pipeline(ledger)
        op = pipeline.build_for_proposal(ContractFunction.APPROVE, ALICE, 1)

        result = await pipeline.run(op)
        reconciled = await pipeline.reconcile(result.tx_hash)

        assert reconciled.outcome == Outcome.UNKNOWN
        assert reconciled.stage == PipelineStage.RECONCILE
        await pipeline.aclose()

    @pytest.mark.asyncio
    async def test_reconcile_rpc_failure(self):
        class FlakyLedger(FakeLedger):
            async def get_transaction(self, tx_hash):
                raise LedgerRPCError("503")

        pipeline = make_pipeline(FlakyLedger())
        with pytest.raises(SubmissionError) as info:
            await pipeline.reconcile("ab" * 32)
        assert info.value.stage == PipelineStage.RECONCILE
        assert info.value.tx_hash == "ab" * 32

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_stop_tracking(self):
        ledger = FakeLedger()
        ledger.land_on_submit = False
        pipeline = make_pipeline(ledger, submit_timeout=5.0)
        op = pipeline.build_for_proposal(ContractFunction.EXECUTE, ALICE, 2)

        task = asyncio.ensure_future(pipeline.run(op))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        tx_hash = ledger.submitted[0].hash
        assert pipeline.is_tracking(tx_hash)

        ledger.land(tx_hash)
        await asyncio.sleep(0.1)
        assert not pipeline.is_tracking(tx_hash)

        reconciled = await pipeline.reconcile(tx_hash)
        assert reconciled.outcome == Outcome.CONFIRMED
        assert ledger.count("submit") == 1


# ══════════════════════════════════════════════════════════════════════
#  READS
# ══════════════════════════════════════════════════════════════════════

class TestReads:

    @pytest.mark.asyncio
    async def test_vault_balance(self):
        assert await make_pipeline().get_vault_balance() == "1250.5000000"

    @pytest.mark.asyncio
    async def test_vault_balance_missing_asset(self):
        ledger = FakeLedger()
        ledger.balances = []
        assert await make_pipeline(ledger).get_vault_balance() == "0"

    @pytest.mark.asyncio
    async def test_latest_ledger(self):
        assert await make_pipeline(FakeLedger(height=4321)).get_latest_ledger() == 4321
