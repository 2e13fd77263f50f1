"""
Domain models for the delivery pipeline.
Defines revision states, stage definitions and the persisted revision record.
"""
from typing import List, Dict, Any, Optional, Tuple
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from costgate.domain.diff_models import CostDiff


class RevisionState(str, Enum):
    """States a revision moves through. Exactly one at a time."""
    QUEUED = "queued"
    PLANNING = "planning"
    AWAITING_APPROVAL = "awaiting_approval"
    BUILDING = "building"
    DEPLOYING = "deploying"
    COMPLETED = "completed"
    FAILED = "failed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({
    RevisionState.COMPLETED,
    RevisionState.FAILED,
    RevisionState.REJECTED,
    RevisionState.CANCELLED,
})

# Forward edges only; FAILED and CANCELLED are added for every non-terminal state below.
ALLOWED_TRANSITIONS: Dict[RevisionState, frozenset] = {
    RevisionState.QUEUED: frozenset({RevisionState.PLANNING}),
    RevisionState.PLANNING: frozenset({RevisionState.AWAITING_APPROVAL, RevisionState.BUILDING}),
    RevisionState.AWAITING_APPROVAL: frozenset({RevisionState.BUILDING, RevisionState.REJECTED}),
    RevisionState.BUILDING: frozenset({RevisionState.DEPLOYING}),
    RevisionState.DEPLOYING: frozenset({RevisionState.COMPLETED}),
}
for _state, _targets in list(ALLOWED_TRANSITIONS.items()):
    ALLOWED_TRANSITIONS[_state] = _targets | {RevisionState.FAILED, RevisionState.CANCELLED}


def is_allowed_transition(current: RevisionState, target: RevisionState) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


class ApprovalDecision(str, Enum):
    """Approval status attached to a revision."""
    NOT_REQUIRED = "not_required"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class StageKind(str, Enum):
    AUTOMATED = "automated"
    MANUAL_APPROVAL = "manual_approval"


@dataclass(frozen=True)
class PipelineStage:
    """Static stage definition, shared read-only by all revisions."""
    name: str
    kind: StageKind
    executor: str  # key into the executor registry
    state: RevisionState  # state a revision occupies while this stage runs


@dataclass(frozen=True)
class ApprovalPolicy:
    """Policy parameters for the approval gate and the pipeline."""
    threshold_monthly: Decimal = Decimal("0")
    max_retries: int = 3
    approval_timeout_seconds: int = 604800


class OutcomeStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    PENDING = "pending"  # accepted; result arrives later as a stage_finished event


@dataclass(frozen=True)
class StageOutcome:
    """Result of invoking a stage executor."""
    status: OutcomeStatus
    retryable: bool = False
    message: str = ""
    invocation_id: Optional[str] = None
    diff: Optional[CostDiff] = None
    decision: Optional[ApprovalDecision] = None

    @classmethod
    def succeeded(cls, **kwargs) -> "StageOutcome":
        return cls(status=OutcomeStatus.SUCCEEDED, **kwargs)

    @classmethod
    def failed(cls, message: str, retryable: bool = False, **kwargs) -> "StageOutcome":
        return cls(status=OutcomeStatus.FAILED, message=message, retryable=retryable, **kwargs)

    @classmethod
    def pending(cls, invocation_id: Optional[str] = None) -> "StageOutcome":
        return cls(status=OutcomeStatus.PENDING, invocation_id=invocation_id)

    @classmethod
    def cancelled(cls, message: str = "") -> "StageOutcome":
        return cls(status=OutcomeStatus.CANCELLED, message=message)


@dataclass(frozen=True)
class StageInput:
    """What a stage executor receives for one invocation."""
    revision_id: str
    stage_name: str
    source_ref: str
    target_ref: str
    attempt: int = 1
    diff: Optional[CostDiff] = None
    invocation_id: Optional[str] = None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class StageHistoryEntry:
    """One transition in a revision's life."""
    state: RevisionState
    entered_at: datetime
    note: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "entered_at": self.entered_at.isoformat(),
            "note": self.note,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StageHistoryEntry":
        return cls(
            state=RevisionState(data["state"]),
            entered_at=datetime.fromisoformat(data["entered_at"]),
            note=data.get("note", ""),
        )


@dataclass
class RevisionRecord:
    """
    Persisted state of one revision, keyed by revision id.

    Mutated only by the pipeline state machine.
    """
    revision_id: str
    source_ref: str
    target_ref: str
    state: RevisionState = RevisionState.QUEUED
    decision: Optional[ApprovalDecision] = None
    history: List[StageHistoryEntry] = field(default_factory=list)
    last_diff: Optional[CostDiff] = None
    last_error: Optional[str] = None
    retries: int = 0  # retries used in the current stage
    active_invocation_id: Optional[str] = None
    awaiting_result: bool = False  # an executor accepted the current stage and will report back
    notified: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    awaiting_since: Optional[datetime] = None
    archived_at: Optional[datetime] = None

    @property
    def is_live(self) -> bool:
        return not self.state.is_terminal

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "revision_id": self.revision_id,
            "source_ref": self.source_ref,
            "target_ref": self.target_ref,
            "state": self.state.value,
            "decision": self.decision.value if self.decision else None,
            "history": [entry.to_dict() for entry in self.history],
            "last_diff": self.last_diff.to_dict() if self.last_diff else None,
            "last_error": self.last_error,
            "retries": self.retries,
            "active_invocation_id": self.active_invocation_id,
            "awaiting_result": self.awaiting_result,
            "notified": self.notified,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "awaiting_since": self.awaiting_since.isoformat() if self.awaiting_since else None,
            "archived_at": self.archived_at.isoformat() if self.archived_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RevisionRecord":
        def _parse_time(value: Optional[str]) -> Optional[datetime]:
            return datetime.fromisoformat(value) if value else None

        return cls(
            revision_id=data["revision_id"],
            source_ref=data["source_ref"],
            target_ref=data["target_ref"],
            state=RevisionState(data["state"]),
            decision=ApprovalDecision(data["decision"]) if data.get("decision") else None,
            history=[StageHistoryEntry.from_dict(entry) for entry in data.get("history", [])],
            last_diff=CostDiff.from_dict(data["last_diff"]) if data.get("last_diff") else None,
            last_error=data.get("last_error"),
            retries=data.get("retries", 0),
            active_invocation_id=data.get("active_invocation_id"),
            awaiting_result=data.get("awaiting_result", False),
            notified=data.get("notified", False),
            created_at=_parse_time(data["created_at"]),
            updated_at=_parse_time(data["updated_at"]),
            awaiting_since=_parse_time(data.get("awaiting_since")),
            archived_at=_parse_time(data.get("archived_at")),
        )


def default_stages() -> Tuple[PipelineStage, ...]:
    """Plan, Approve, Build, Deploy; in that order."""
    return (
        PipelineStage("Plan", StageKind.AUTOMATED, "cost-plan", RevisionState.PLANNING),
        PipelineStage("Approve", StageKind.MANUAL_APPROVAL, "manual-approval", RevisionState.AWAITING_APPROVAL),
        PipelineStage("Build", StageKind.AUTOMATED, "terraform-build", RevisionState.BUILDING),
        PipelineStage("Deploy", StageKind.AUTOMATED, "terraform-deploy", RevisionState.DEPLOYING),
    )
