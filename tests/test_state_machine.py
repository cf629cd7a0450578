"""
Proposal State Machine Test Suite

Coverage:
  - approval membership and threshold crossing
  - reject authorization matrix (proposer / admin / admin override)
  - execute guard: threshold, timelock, idempotence on EXECUTED
  - ledger-height expiry
  - ledger-reported rejection
"""

import pytest

from vaultdao.exceptions import StateConflict
from vaultdao.governance.proposals import ProposalStatus, Role
from vaultdao.governance.state_machine import ProposalStateMachine
from vaultdao.governance.timelock import TimelockCalculator

from vault_fakes import ADMIN, ALICE, BOB, CAROL, DAVE, make_approved, make_proposal


def make_machine() -> ProposalStateMachine:
    table = {ADMIN: Role.ADMIN, ALICE: Role.TREASURER, BOB: Role.TREASURER,
             CAROL: Role.TREASURER}
    return ProposalStateMachine(roles=table, timelock=TimelockCalculator(seconds_per_unit=5))


# ══════════════════════════════════════════════════════════════════════
#  APPROVE
# ══════════════════════════════════════════════════════════════════════

class TestApprove:

    def test_below_threshold_stays_pending(self):
        sm = make_machine()
        p = make_proposal(threshold=2)
        assert sm.apply_approve(p, ALICE)
        assert p.status == ProposalStatus.PENDING
        assert p.approvals == 1

    def test_threshold_crossing_approves(self):
        sm = make_machine()
        p = make_proposal(threshold=2)
        sm.apply_approve(p, ALICE)
        sm.apply_approve(p, BOB)
        assert p.status == ProposalStatus.APPROVED
        assert p.approvals == 2

    def test_threshold_three_scenario(self):
        """1 approval, two more distinct signers, then a repeat signer."""
        sm = make_machine()
        p = make_proposal(threshold=3, approvers=[ALICE])
        sm.check_approve(p, BOB)
        sm.apply_approve(p, BOB)
        sm.check_approve(p, CAROL)
        sm.apply_approve(p, CAROL)
        assert p.status == ProposalStatus.APPROVED
        assert p.approvals == 3

        with pytest.raises(StateConflict):
            sm.check_approve(p, BOB)
        assert not sm.apply_approve(p, BOB)
        assert p.approvals == 3

    def test_duplicate_signer_rejected_by_guard(self):
        sm = make_machine()
        p = make_proposal(threshold=3, approvers=[ALICE])
        with pytest.raises(StateConflict, match="already approved"):
            sm.check_approve(p, ALICE)

    def test_duplicate_apply_is_noop(self):
        sm = make_machine()
        p = make_proposal(threshold=3)
        assert sm.apply_approve(p, ALICE)
        assert not sm.apply_approve(p, ALICE)
        assert p.approvals == 1

    def test_approve_non_pending(self):
        sm = make_machine()
        p = make_approved()
        with pytest.raises(StateConflict, match="only PENDING"):
            sm.check_approve(p, CAROL)
        assert not sm.apply_approve(p, CAROL)
        assert p.approvals == 2

    def test_ready_requires_known_approvals(self):
        sm = make_machine()
        p = make_proposal(threshold=2, approvers=[ALICE])
        assert not sm.apply_ready(p)
        assert p.status == ProposalStatus.PENDING


# ══════════════════════════════════════════════════════════════════════
#  REJECT
# ══════════════════════════════════════════════════════════════════════

class TestReject:

    def test_proposer_rejects_pending(self):
        sm = make_machine()
        p = make_proposal(proposer=ALICE)
        sm.check_reject(p, ALICE)
        sm.apply_reject(p, ALICE, "changed my mind")
        assert p.status == ProposalStatus.REJECTED
        assert p.rejection_reason == "changed my mind"
        assert p.rejected_at is not None

    def test_admin_rejects_pending(self):
        sm = make_machine()
        p = make_proposal(proposer=ALICE)
        sm.check_reject(p, ADMIN)

    def test_other_signer_cannot_reject_pending(self):
        sm = make_machine()
        p = make_proposal(proposer=ALICE)
        with pytest.raises(StateConflict, match="proposer or an admin"):
            sm.check_reject(p, BOB)

    def test_admin_override_from_approved(self):
        sm = make_machine()
        p = make_approved()
        sm.check_reject(p, ADMIN)
        sm.apply_reject(p, ADMIN)
        assert p.status == ProposalStatus.REJECTED

    def test_proposer_cannot_override_approved(self):
        sm = make_machine()
        p = make_approved(proposer=ALICE)
        with pytest.raises(StateConflict, match="admin"):
            sm.check_reject(p, ALICE)

    def test_terminal_cannot_be_rejected(self):
        sm = make_machine()
        p = make_proposal()
        sm.apply_reject(p, ALICE)
        with pytest.raises(StateConflict):
            sm.check_reject(p, ADMIN)

    def test_unknown_identity_is_member(self):
        sm = make_machine()
        assert sm.role_of(DAVE) == Role.MEMBER
        assert DAVE not in sm.signers
        sm.set_role(DAVE, Role.TREASURER)
        assert DAVE in sm.signers


# ══════════════════════════════════════════════════════════════════════
#  EXECUTE
# ══════════════════════════════════════════════════════════════════════

class TestExecute:

    def test_pending_cannot_execute(self):
        sm = make_machine()
        with pytest.raises(StateConflict, match="only APPROVED"):
            sm.check_execute(make_proposal(), 1000)

    def test_no_timelock_executes(self):
        sm = make_machine()
        p = make_approved()
        assert sm.check_execute(p, 1) is False
        assert sm.apply_execute(p, "ab" * 32)
        assert p.status == ProposalStatus.EXECUTED
        assert p.execution_tx_hash == "ab" * 32

    def test_timelock_scenario(self):
        """unlock 1500: refused at 1200, allowed at 1500."""
        sm = make_machine()
        p = make_approved(unlock_height=1500)
        with pytest.raises(StateConflict, match="Timelock not satisfied"):
            sm.check_execute(p, 1200)
        assert p.status == ProposalStatus.APPROVED

        assert sm.check_execute(p, 1500) is False
        sm.apply_execute(p, "cd" * 32)
        assert p.status == ProposalStatus.EXECUTED

    def test_timelock_message_has_wait(self):
        sm = make_machine()
        p = make_approved(unlock_height=1500)
        with pytest.raises(StateConflict, match="300 ledgers, ~1500s"):
            sm.check_execute(p, 1200)

    def test_executed_is_idempotent(self):
        sm = make_machine()
        p = make_approved()
        sm.apply_execute(p, "ef" * 32)
        assert sm.check_execute(p, 1) is True
        assert not sm.apply_execute(p, "00" * 32)
        assert p.execution_tx_hash == "ef" * 32


# ══════════════════════════════════════════════════════════════════════
#  EXPIRY / LEDGER REJECTION
# ══════════════════════════════════════════════════════════════════════

class TestExpiry:

    def test_expires_at_height(self):
        sm = make_machine()
        p = make_proposal(expires_at_height=2000)
        assert not sm.apply_expire(p, 1999)
        assert sm.apply_expire(p, 2000)
        assert p.status == ProposalStatus.EXPIRED

    def test_no_expiry_when_zero(self):
        sm = make_machine()
        p = make_proposal(expires_at_height=0)
        assert not sm.apply_expire(p, 10 ** 9)

    def test_approved_does_not_expire(self):
        sm = make_machine()
        p = make_approved(expires_at_height=10)
        assert not sm.apply_expire(p, 100)
        assert p.status == ProposalStatus.APPROVED


class TestLedgerRejection:

    def test_pending_rejected_with_reason(self):
        sm = make_machine()
        p = make_proposal()
        assert sm.apply_ledger_rejection(p, "rejected on ledger")
        assert p.status == ProposalStatus.REJECTED
        assert p.rejection_reason == "rejected on ledger"

    def test_repeat_is_noop(self):
        sm = make_machine()
        p = make_proposal()
        sm.apply_ledger_rejection(p, "x")
        assert not sm.apply_ledger_rejection(p, "x")

    def test_executed_conflicts(self):
        sm = make_machine()
        p = make_approved()
        sm.apply_execute(p, "aa" * 32)
        with pytest.raises(StateConflict):
            sm.apply_ledger_rejection(p, "late")
