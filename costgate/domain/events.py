"""
Inbound pipeline events.

Events arrive from the source-control host (new revision, closed, approval)
and from the build service (stage finished).
"""
from typing import Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator

from costgate.domain.pipeline_models import ApprovalDecision, OutcomeStatus


class NewRevisionEvent(BaseModel):
    """A new change was proposed (pull request opened or pushed to)."""
    kind: Literal["new_revision"] = "new_revision"
    revision_id: str = Field(..., min_length=1, description="Unique revision identifier")
    source_ref: str = Field(..., min_length=1, description="Branch or commit carrying the change")
    target_ref: str = Field(..., min_length=1, description="Baseline branch the change targets")


class RevisionClosedEvent(BaseModel):
    """The change was closed or its source reference deleted."""
    kind: Literal["revision_closed"] = "revision_closed"
    revision_id: str = Field(..., min_length=1)


class ApprovalReceivedEvent(BaseModel):
    """A human approved or rejected a revision awaiting approval."""
    kind: Literal["approval_received"] = "approval_received"
    revision_id: str = Field(..., min_length=1)
    decision: ApprovalDecision
    approver: Optional[str] = None

    @field_validator("decision")
    @classmethod
    def _external_decision(cls, value: ApprovalDecision) -> ApprovalDecision:
        if value not in (ApprovalDecision.APPROVED, ApprovalDecision.REJECTED):
            raise ValueError("decision must be 'approved' or 'rejected'")
        return value


class StageFinishedEvent(BaseModel):
    """The build service reports the outcome of a stage invocation."""
    kind: Literal["stage_finished"] = "stage_finished"
    revision_id: str = Field(..., min_length=1)
    stage_name: str = Field(..., min_length=1)
    invocation_id: Optional[str] = None
    status: OutcomeStatus
    retryable: bool = False
    message: str = ""

    @field_validator("status")
    @classmethod
    def _final_status(cls, value: OutcomeStatus) -> OutcomeStatus:
        if value == OutcomeStatus.PENDING:
            raise ValueError("stage_finished requires a final status")
        return value


PipelineEvent = Union[
    NewRevisionEvent,
    RevisionClosedEvent,
    ApprovalReceivedEvent,
    StageFinishedEvent,
]


class EventEnvelope(BaseModel):
    """Envelope accepted on the events endpoint."""
    event: PipelineEvent = Field(..., discriminator="kind")
