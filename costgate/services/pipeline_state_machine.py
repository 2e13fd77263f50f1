"""
Pipeline state machine.

Drives one revision through Plan -> (Approve) -> Build -> Deploy. A machine
is built around a persisted RevisionRecord for the duration of one event and
holds nothing in memory between events, so a revision waiting for approval
costs nothing but its stored record.
"""
from typing import Callable, Dict, Optional, Tuple
from dataclasses import dataclass, field
from datetime import datetime, timedelta
import logging

from costgate.core.errors import (
    ApprovalTimeoutError,
    EstimationError,
    ExecutorError,
    ReconciliationError,
)
from costgate.domain.pipeline_models import (
    ApprovalDecision,
    ApprovalPolicy,
    OutcomeStatus,
    PipelineStage,
    RevisionRecord,
    RevisionState,
    StageHistoryEntry,
    StageInput,
    StageKind,
    StageOutcome,
    default_stages,
    is_allowed_transition,
    utcnow,
)
from costgate.services.revision_store import RevisionStore
from costgate.services.stage_executors import StageExecutor


logger = logging.getLogger(__name__)


class InvalidTransitionError(Exception):
    """Raised when a transition would break the state ordering."""
    pass


@dataclass
class PipelineContext:
    """Process-wide collaborators shared by every revision's state machine."""
    store: RevisionStore
    executors: Dict[str, StageExecutor]
    policy: ApprovalPolicy = field(default_factory=ApprovalPolicy)
    stages: Tuple[PipelineStage, ...] = field(default_factory=default_stages)
    clock: Callable[[], datetime] = utcnow

    def __post_init__(self):
        for stage in self.stages:
            if stage.executor not in self.executors:
                raise ValueError(f"Stage {stage.name} references unknown executor '{stage.executor}'")
        if not any(stage.kind == StageKind.MANUAL_APPROVAL for stage in self.stages):
            raise ValueError("Pipeline needs a manual approval stage")

    def stage_for(self, state: RevisionState) -> Optional[PipelineStage]:
        for stage in self.stages:
            if stage.state == state:
                return stage
        return None


class PipelineStateMachine:
    """State machine for a single revision."""

    def __init__(self, record: RevisionRecord, context: PipelineContext):
        self.record = record
        self.context = context

    @property
    def state(self) -> RevisionState:
        return self.record.state

    # ------------------------------------------------------------------ transitions

    def _transition(self, target: RevisionState, note: str = "") -> None:
        current = self.record.state
        if not is_allowed_transition(current, target):
            raise InvalidTransitionError(
                f"Revision {self.record.revision_id}: {current.value} -> {target.value} is not allowed"
            )
        now = self.context.clock()
        self.record.state = target
        self.record.updated_at = now
        self.record.history.append(StageHistoryEntry(state=target, entered_at=now, note=note))
        self.record.active_invocation_id = None
        self.record.awaiting_result = False
        if target != current:
            self.record.retries = 0
        if target == RevisionState.AWAITING_APPROVAL:
            self.record.awaiting_since = now
        if target.is_terminal:
            self.record.archived_at = now
        self._save()
        logger.info(
            "Revision %s: %s -> %s%s",
            self.record.revision_id, current.value, target.value, f" ({note})" if note else "",
        )

    def _fail(self, message: str) -> None:
        self.record.last_error = message
        self._transition(RevisionState.FAILED, note=message)

    def fail(self, message: str) -> None:
        """Fail a live revision from outside a stage, e.g. when recovery breaks."""
        if self.record.is_live:
            self._fail(message)

    def _save(self) -> None:
        self.context.store.save(self.record)

    # ------------------------------------------------------------------ stage execution

    def _stage_input(self, stage: PipelineStage) -> StageInput:
        return StageInput(
            revision_id=self.record.revision_id,
            stage_name=stage.name,
            source_ref=self.record.source_ref,
            target_ref=self.record.target_ref,
            attempt=self.record.retries + 1,
            diff=self.record.last_diff,
            invocation_id=self.record.active_invocation_id,
        )

    async def _invoke(self, stage: PipelineStage) -> Optional[StageOutcome]:
        """Invoke a stage's executor; None means the revision already failed."""
        executor = self.context.executors[stage.executor]
        try:
            return await executor.invoke(self._stage_input(stage))
        except ReconciliationError as error:
            logger.critical(
                "Revision %s halted: cost reconciliation failed in %s: %s",
                self.record.revision_id, stage.name, error,
            )
            self._fail(f"ReconciliationError: {error}")
            raise
        except EstimationError as error:
            self._fail(f"EstimationError: {error}")
            return None
        except ExecutorError as error:
            return StageOutcome.failed(str(error), retryable=error.retryable)
        except Exception as error:
            logger.exception(
                "Revision %s: %s raised unexpectedly", self.record.revision_id, stage.name,
            )
            self._fail(f"{stage.name} failed unexpectedly: {type(error).__name__}: {error}")
            return None

    def _apply(self, stage: PipelineStage, outcome: StageOutcome) -> Optional[PipelineStage]:
        """
        Apply a stage outcome to the record.

        Returns:
            The stage to invoke next (the same stage on retry), or None when
            the revision must now wait for an event or has finished
        """
        if outcome.status == OutcomeStatus.PENDING:
            self.record.active_invocation_id = outcome.invocation_id
            self.record.awaiting_result = True
            self.record.updated_at = self.context.clock()
            self._save()
            return None

        if outcome.status == OutcomeStatus.CANCELLED:
            self.record.last_error = outcome.message or f"{stage.name} was cancelled by the executor"
            self._transition(RevisionState.CANCELLED, note=self.record.last_error)
            return None

        if outcome.status == OutcomeStatus.FAILED:
            if outcome.retryable and self.record.retries < self.context.policy.max_retries:
                self.record.retries += 1
                self.record.last_error = outcome.message
                self.record.active_invocation_id = None
                self.record.awaiting_result = False
                self.record.history.append(StageHistoryEntry(
                    state=self.record.state,
                    entered_at=self.context.clock(),
                    note=f"retry {self.record.retries}/{self.context.policy.max_retries}: {outcome.message}",
                ))
                self._save()
                logger.warning(
                    "Revision %s: %s failed (retryable), retry %d of %d",
                    self.record.revision_id, stage.name,
                    self.record.retries, self.context.policy.max_retries,
                )
                return stage
            suffix = " (retries exhausted)" if outcome.retryable else ""
            self._fail(f"{stage.name} failed{suffix}: {outcome.message}")
            return None

        return self._advance(stage, outcome)

    def _advance(self, stage: PipelineStage, outcome: StageOutcome) -> Optional[PipelineStage]:
        state = self.record.state
        self.record.last_error = None

        if state == RevisionState.PLANNING:
            self.record.last_diff = outcome.diff
            self.record.decision = outcome.decision or ApprovalDecision.NOT_REQUIRED
            if self.record.decision == ApprovalDecision.PENDING:
                self._transition(RevisionState.AWAITING_APPROVAL, note="cost increase needs approval")
                return self.context.stage_for(RevisionState.AWAITING_APPROVAL)
            self._transition(RevisionState.BUILDING, note="approval not required")
            return self.context.stage_for(RevisionState.BUILDING)

        if state == RevisionState.BUILDING:
            self._transition(RevisionState.DEPLOYING)
            return self.context.stage_for(RevisionState.DEPLOYING)

        if state == RevisionState.DEPLOYING:
            self._transition(RevisionState.COMPLETED)
            return None

        raise InvalidTransitionError(
            f"Revision {self.record.revision_id}: unexpected success of {stage.name} in {state.value}"
        )

    async def _drive(self, stage: Optional[PipelineStage]) -> None:
        while stage is not None:
            if stage.kind == StageKind.MANUAL_APPROVAL:
                await self._request_approval(stage)
                return
            outcome = await self._invoke(stage)
            if outcome is None:
                return
            stage = self._apply(stage, outcome)

    async def _request_approval(self, stage: PipelineStage) -> None:
        """Notify once per entry into awaiting_approval, then suspend."""
        if self.record.notified:
            return
        outcome = await self._invoke(stage)
        if outcome is None:
            return
        if outcome.status == OutcomeStatus.FAILED:
            self._fail(f"{stage.name} failed: {outcome.message}")
            return
        self.record.notified = True
        self._save()

    # ------------------------------------------------------------------ event handlers

    async def start(self) -> None:
        """Queued -> Planning, then run the pipeline until it has to wait."""
        if self.record.state != RevisionState.QUEUED:
            raise InvalidTransitionError(
                f"Revision {self.record.revision_id} already started ({self.record.state.value})"
            )
        self._transition(RevisionState.PLANNING)
        await self._drive(self.context.stage_for(RevisionState.PLANNING))

    async def resume(self) -> None:
        """Pick up work interrupted by a restart."""
        state = self.record.state
        if state == RevisionState.QUEUED:
            await self.start()
        elif state == RevisionState.PLANNING:
            logger.info("Revision %s: re-running interrupted plan", self.record.revision_id)
            await self._drive(self.context.stage_for(RevisionState.PLANNING))
        elif state == RevisionState.AWAITING_APPROVAL and not self.record.notified:
            await self._request_approval(self.context.stage_for(RevisionState.AWAITING_APPROVAL))

    async def on_approval(self, decision: ApprovalDecision, approver: Optional[str] = None) -> None:
        if self.record.state != RevisionState.AWAITING_APPROVAL:
            logger.warning(
                "Revision %s: ignoring %s decision in state %s",
                self.record.revision_id, decision.value, self.record.state.value,
            )
            return
        self.record.decision = decision
        by = f" by {approver}" if approver else ""
        if decision == ApprovalDecision.APPROVED:
            self._transition(RevisionState.BUILDING, note=f"approved{by}")
            await self._drive(self.context.stage_for(RevisionState.BUILDING))
        elif decision == ApprovalDecision.REJECTED:
            self._transition(RevisionState.REJECTED, note=f"rejected{by}")
        else:
            raise ValueError(f"Not an external approval decision: {decision.value}")

    async def on_stage_finished(
        self,
        stage_name: str,
        outcome: StageOutcome
    ) -> None:
        stage = self.context.stage_for(self.record.state)
        if stage is None or stage.name != stage_name or stage.kind != StageKind.AUTOMATED:
            logger.warning(
                "Revision %s: dropping stale result for %s in state %s",
                self.record.revision_id, stage_name, self.record.state.value,
            )
            return
        if not self.record.awaiting_result:
            logger.warning(
                "Revision %s: dropping result for %s, no invocation is outstanding",
                self.record.revision_id, stage_name,
            )
            return
        if (
            outcome.invocation_id
            and self.record.active_invocation_id
            and outcome.invocation_id != self.record.active_invocation_id
        ):
            logger.warning(
                "Revision %s: dropping result of superseded invocation %s",
                self.record.revision_id, outcome.invocation_id,
            )
            return
        await self._drive(self._apply(stage, outcome))

    async def cancel(self, reason: str = "revision closed") -> None:
        """Any non-terminal state -> Cancelled; in-flight work is cancelled best-effort."""
        stage = self.context.stage_for(self.record.state)
        if stage is not None and self.record.active_invocation_id:
            executor = self.context.executors[stage.executor]
            try:
                await executor.cancel(self._stage_input(stage))
            except ExecutorError as error:
                logger.warning(
                    "Revision %s: cancelling %s failed: %s",
                    self.record.revision_id, stage.name, error,
                )
        self._transition(RevisionState.CANCELLED, note=reason)

    def approval_expired(self, now: datetime) -> bool:
        if self.record.state != RevisionState.AWAITING_APPROVAL or self.record.awaiting_since is None:
            return False
        timeout = timedelta(seconds=self.context.policy.approval_timeout_seconds)
        return now - self.record.awaiting_since >= timeout

    async def expire_approval(self, now: datetime) -> bool:
        """Reject a revision whose approval window has passed. Returns True if it was rejected."""
        if not self.approval_expired(now):
            return False
        error = ApprovalTimeoutError(
            f"No approval decision within {self.context.policy.approval_timeout_seconds} seconds"
        )
        self.record.decision = ApprovalDecision.REJECTED
        self.record.last_error = str(error)
        self._transition(RevisionState.REJECTED, note="approval timed out")
        return True
