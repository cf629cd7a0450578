"""
Proposal State Machine

Guard conditions and transitions for the proposal lifecycle:

    Pending  --approve (below threshold)-->  Pending
    Pending  --approve (threshold crossed)-> Approved
    Pending  --reject (proposer | admin)-->  Rejected
    Pending  --expire (expiry ledger)----->  Expired
    Approved --execute (timelock open)---->  Executed
    Approved --reject (admin override)---->  Rejected
    non-terminal --ledger rejection------->  Rejected

`check_*` methods are pure guards that raise StateConflict before any
network call. `apply_*` methods mutate a proposal and are only called with
outcomes the ledger has confirmed.
"""

import time
from typing import Dict, Optional

from ..exceptions import StateConflict
from ..logger import get_logger
from .proposals import Proposal, ProposalStatus, Role
from .timelock import TimelockCalculator

logger = get_logger(__name__)


class ProposalStateMachine:
    """
    Authoritative transition table for proposal status.

    Args:
        roles:    Identity → Role table (missing identities are MEMBER)
        timelock: Calculator used by the execute guard
    """

    def __init__(
        self,
        roles: Optional[Dict[str, Role]] = None,
        timelock: Optional[TimelockCalculator] = None,
    ):
        self._roles: Dict[str, Role] = dict(roles or {})
        self.timelock = timelock or TimelockCalculator()

    # ── Roles ─────────────────────────────────────────────────────────

    def role_of(self, identity: str) -> Role:
        return self._roles.get(identity, Role.MEMBER)

    def set_role(self, identity: str, role: Role) -> None:
        old = self.role_of(identity)
        self._roles[identity] = Role(role)
        if old != role:
            logger.info(f"Role of {identity[:8]}… changed: {old.name} → {Role(role).name}")

    @property
    def signers(self):
        return [i for i, r in self._roles.items() if r >= Role.TREASURER]

    # ── Guards ────────────────────────────────────────────────────────

    def check_approve(self, proposal: Proposal, signer: str) -> None:
        if proposal.status != ProposalStatus.PENDING:
            raise StateConflict(
                f"Proposal #{proposal.id} is {proposal.status.name}; only PENDING "
                f"proposals accept approvals",
                proposal_id=proposal.id,
            )
        if proposal.has_approved(signer):
            raise StateConflict(
                f"Signer {signer[:8]}… already approved proposal #{proposal.id}",
                proposal_id=proposal.id,
            )

    def check_reject(self, proposal: Proposal, caller: str) -> None:
        role = self.role_of(caller)
        if proposal.status == ProposalStatus.PENDING:
            if caller != proposal.proposer and role != Role.ADMIN:
                raise StateConflict(
                    f"Only the proposer or an admin may reject pending proposal #{proposal.id}",
                    proposal_id=proposal.id,
                )
        elif proposal.status == ProposalStatus.APPROVED:
            if role != Role.ADMIN:
                raise StateConflict(
                    f"Rejecting approved proposal #{proposal.id} requires the admin role",
                    proposal_id=proposal.id,
                )
        else:
            raise StateConflict(
                f"Proposal #{proposal.id} is {proposal.status.name} and cannot be rejected",
                proposal_id=proposal.id,
            )

    def check_execute(self, proposal: Proposal, current_height: int) -> bool:
        """
        Guard for execute.

        Returns True when the proposal is already EXECUTED (idempotent
        success, nothing to submit) and False when execution may proceed.
        """
        if proposal.status == ProposalStatus.EXECUTED:
            return True
        if proposal.status != ProposalStatus.APPROVED:
            raise StateConflict(
                f"Proposal #{proposal.id} is {proposal.status.name}; only APPROVED "
                f"proposals can be executed",
                proposal_id=proposal.id,
            )
        if proposal.approvals < proposal.threshold:
            raise StateConflict(
                f"Proposal #{proposal.id} has {proposal.approvals}/{proposal.threshold} approvals",
                proposal_id=proposal.id,
            )
        remaining = self.timelock.remaining_units(proposal, current_height)
        if remaining > 0:
            raise StateConflict(
                f"Timelock not satisfied for proposal #{proposal.id}: unlocks at ledger "
                f"{proposal.unlock_height}, current ledger {current_height} "
                f"({remaining} ledgers, ~{self.timelock.remaining_time(proposal, current_height)}s)",
                proposal_id=proposal.id,
            )
        return False

    def is_expired(self, proposal: Proposal, current_height: int) -> bool:
        return (
            proposal.status == ProposalStatus.PENDING
            and proposal.expires_at_height > 0
            and current_height >= proposal.expires_at_height
        )

    # ── Transitions ───────────────────────────────────────────────────

    def apply_approve(
        self,
        proposal: Proposal,
        signer: str,
        ledger_threshold: Optional[int] = None,
    ) -> bool:
        """
        Record a ledger-confirmed approval.

        Returns False (and changes nothing) for a repeat signer or a
        proposal that no longer accepts approvals. When the ledger reports
        a threshold other than the local one, the approval is recorded but
        the Approved transition waits for the ledger's ready event.
        """
        if proposal.status != ProposalStatus.PENDING:
            logger.debug(
                f"Ignoring approval of proposal #{proposal.id} in {proposal.status.name}"
            )
            return False
        if not proposal.add_approver(signer):
            return False
        if ledger_threshold and ledger_threshold != proposal.threshold:
            logger.warning(
                f"Proposal #{proposal.id}: ledger threshold {ledger_threshold} differs from "
                f"local {proposal.threshold}; approval {proposal.approvals} recorded, "
                f"waiting for the ledger to report it ready"
            )
        elif proposal.approvals >= proposal.threshold:
            proposal.transition_to(
                ProposalStatus.APPROVED,
                f"Threshold reached ({proposal.approvals}/{proposal.threshold})",
            )
        else:
            logger.info(
                f"Proposal #{proposal.id}: approval {proposal.approvals}/{proposal.threshold}"
            )
        return True

    def apply_ready(self, proposal: Proposal) -> bool:
        """Ledger reports the threshold was met."""
        if proposal.status != ProposalStatus.PENDING:
            return False
        if proposal.approvals < proposal.threshold:
            # Approval events not yet folded in; wait for them
            logger.warning(
                f"Proposal #{proposal.id} reported ready with only "
                f"{proposal.approvals}/{proposal.threshold} known approvals"
            )
            return False
        proposal.transition_to(ProposalStatus.APPROVED, "Ledger reported ready")
        return True

    def apply_reject(self, proposal: Proposal, caller: str, reason: str = "") -> None:
        override = proposal.status == ProposalStatus.APPROVED
        proposal.transition_to(
            ProposalStatus.REJECTED,
            reason or f"Rejected by {caller[:8]}…",
        )
        proposal.rejection_reason = reason or None
        proposal.rejected_at = time.time()
        if override:
            logger.warning(f"Proposal #{proposal.id} approved → rejected by admin override")

    def apply_execute(self, proposal: Proposal, tx_hash: Optional[str]) -> bool:
        """Returns False when the proposal was already executed."""
        if proposal.status == ProposalStatus.EXECUTED:
            return False
        proposal.transition_to(ProposalStatus.EXECUTED, f"Executed in tx {tx_hash}")
        proposal.execution_tx_hash = tx_hash
        proposal.executed_at = time.time()
        return True

    def apply_expire(self, proposal: Proposal, current_height: int) -> bool:
        if not self.is_expired(proposal, current_height):
            return False
        proposal.transition_to(
            ProposalStatus.EXPIRED,
            f"Expiry ledger {proposal.expires_at_height} reached at ledger {current_height}",
        )
        return True

    def apply_ledger_rejection(self, proposal: Proposal, reason: str) -> bool:
        """Contract-level rejection reported by the ledger."""
        if proposal.status == ProposalStatus.REJECTED:
            return False
        if proposal.is_terminal:
            raise StateConflict(
                f"Ledger rejection for proposal #{proposal.id} already in {proposal.status.name}",
                proposal_id=proposal.id,
            )
        proposal.transition_to(ProposalStatus.REJECTED, f"Ledger: {reason}")
        proposal.rejection_reason = reason
        proposal.rejected_at = time.time()
        return True
