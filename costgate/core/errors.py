"""
Error taxonomy for the cost-gated pipeline.

Stage-level errors are captured on the revision record; only
ReconciliationError is allowed to escape to the caller.
"""
from typing import Optional


class CostGateError(Exception):
    """Base class for all pipeline errors."""
    pass


class EstimationError(CostGateError):
    """Raised when an infrastructure definition or usage profile cannot be priced."""
    pass


class ReconciliationError(CostGateError):
    """Raised when a cost diff does not add up. Indicates an estimator bug."""
    pass


class ExecutorError(CostGateError):
    """Raised when a stage executor or its backing service fails."""

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class UnknownRevisionError(CostGateError):
    """Raised when an event references a revision with no live state machine."""

    def __init__(self, revision_id: str, reason: Optional[str] = None):
        detail = f"No live revision '{revision_id}'"
        if reason:
            detail = f"{detail} ({reason})"
        super().__init__(detail)
        self.revision_id = revision_id


class ApprovalTimeoutError(CostGateError):
    """Raised (and recorded) when no approval decision arrives in time."""
    pass
