"""
VaultDAO Exceptions

Error taxonomy for the proposal lifecycle engine.

Local, pre-network errors (ValidationError, StateConflict) are raised
before anything is sent to the ledger. Network-stage errors derive from
PipelineError and carry the stage at which they occurred, since the
recovery action differs by stage.
"""

from enum import IntEnum
from typing import Any, Optional


class PipelineStage(IntEnum):
    """Stage of the build → simulate → sign → submit protocol."""
    BUILD = 1
    SIMULATE = 2
    SIGN = 3
    SUBMIT = 4
    RECONCILE = 5


class VaultError(Exception):
    """Base exception for the vault engine."""


class ConfigurationError(VaultError):
    """Invalid or incomplete configuration."""


class ValidationError(VaultError):
    """Malformed local input. Never reaches the network."""


class StateConflict(VaultError):
    """Attempted transition violates the proposal guard table."""

    def __init__(self, message: str, proposal_id: Optional[int] = None):
        super().__init__(message)
        self.proposal_id = proposal_id


class LedgerRPCError(VaultError):
    """Transport or JSON-RPC level failure talking to the ledger."""

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code


class PipelineError(VaultError):
    """Failure in one of the network stages of the transaction pipeline."""

    stage: PipelineStage = PipelineStage.BUILD

    def __init__(self, message: str, stage: Optional[PipelineStage] = None):
        super().__init__(message)
        if stage is not None:
            self.stage = stage


class SimulationError(PipelineError):
    """The ledger rejected the dry run. No state changed."""

    stage = PipelineStage.SIMULATE

    def __init__(self, reason: str):
        super().__init__(f"Simulation failed: {reason}")
        self.reason = reason


class SigningRejected(PipelineError):
    """The signing agent declined or could not be reached. Safe to retry."""

    stage = PipelineStage.SIGN


class SubmissionError(PipelineError):
    """
    Network failure or timeout during final submission.

    The effect on the ledger is unknown; callers must reconcile before
    retrying.
    """

    stage = PipelineStage.SUBMIT

    def __init__(
        self,
        cause: Any,
        tx_hash: Optional[str] = None,
        stage: Optional[PipelineStage] = None,
    ):
        super().__init__(f"Submission failed: {cause}", stage)
        self.cause = cause
        self.tx_hash = tx_hash


class FeedError(VaultError):
    """
    Event-log query failure.

    `partial` holds the page aggregated before the failure; `cursor` is the
    last cursor that was fully consumed, so a consumer can retry only the
    failed page.
    """

    def __init__(self, message: str, partial: Any = None, cursor: Optional[str] = None):
        super().__init__(message)
        self.partial = partial
        self.cursor = cursor
