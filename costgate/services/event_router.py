"""
Event router.
Dispatches inbound events to the state machine of the revision they belong to.
"""
from typing import Optional
from datetime import datetime
import logging

from costgate.core.errors import ReconciliationError, UnknownRevisionError
from costgate.domain.events import (
    ApprovalReceivedEvent,
    NewRevisionEvent,
    PipelineEvent,
    RevisionClosedEvent,
    StageFinishedEvent,
)
from costgate.domain.pipeline_models import (
    RevisionRecord,
    RevisionState,
    StageHistoryEntry,
    StageOutcome,
)
from costgate.services.pipeline_state_machine import PipelineContext, PipelineStateMachine
from costgate.services.revision_locks import RevisionLocks


logger = logging.getLogger(__name__)


class EventRouter:
    """
    Routes events to per-revision state machines.

    Events for the same revision are serialized under that revision's lock;
    events for different revisions run concurrently.
    """

    def __init__(self, context: PipelineContext, locks: Optional[RevisionLocks] = None):
        self.context = context
        self.locks = locks or RevisionLocks()

    def _live_machine(self, revision_id: str) -> PipelineStateMachine:
        """
        Raises:
            UnknownRevisionError: If the revision never existed or is archived
        """
        record = self.context.store.get(revision_id)
        if record is None:
            raise UnknownRevisionError(revision_id, "never existed")
        if not record.is_live:
            raise UnknownRevisionError(revision_id, f"archived as {record.state.value}")
        return PipelineStateMachine(record, self.context)

    async def route(self, event: PipelineEvent) -> None:
        """
        Handle one event. Unknown-revision errors are logged and the event dropped;
        stage errors are recorded on the revision. Only a ReconciliationError
        propagates to the caller.
        """
        try:
            if isinstance(event, NewRevisionEvent):
                await self._on_new_revision(event)
            elif isinstance(event, RevisionClosedEvent):
                async with self.locks.hold(event.revision_id):
                    await self._live_machine(event.revision_id).cancel()
            elif isinstance(event, ApprovalReceivedEvent):
                async with self.locks.hold(event.revision_id):
                    machine = self._live_machine(event.revision_id)
                    await machine.on_approval(event.decision, approver=event.approver)
            elif isinstance(event, StageFinishedEvent):
                outcome = StageOutcome(
                    status=event.status,
                    retryable=event.retryable,
                    message=event.message,
                    invocation_id=event.invocation_id,
                )
                async with self.locks.hold(event.revision_id):
                    machine = self._live_machine(event.revision_id)
                    await machine.on_stage_finished(event.stage_name, outcome)
            else:
                raise TypeError(f"Unsupported event type: {type(event).__name__}")
        except UnknownRevisionError as error:
            logger.warning("Dropping %s event: %s", event.kind, error)

    async def _on_new_revision(self, event: NewRevisionEvent) -> None:
        async with self.locks.hold(event.revision_id):
            if self.context.store.get(event.revision_id) is not None:
                logger.info("Revision %s already known, ignoring duplicate", event.revision_id)
                return
            now = self.context.clock()
            record = RevisionRecord(
                revision_id=event.revision_id,
                source_ref=event.source_ref,
                target_ref=event.target_ref,
                created_at=now,
                updated_at=now,
                history=[StageHistoryEntry(state=RevisionState.QUEUED, entered_at=now)],
            )
            self.context.store.save(record)
            logger.info(
                "Revision %s queued (%s -> %s)",
                event.revision_id, event.source_ref, event.target_ref,
            )
            await PipelineStateMachine(record, self.context).start()

    async def expire_approvals(self, now: Optional[datetime] = None) -> int:
        """Reject every revision whose approval window has passed. Returns how many."""
        now = now or self.context.clock()
        expired = 0
        for candidate in self.context.store.list(RevisionState.AWAITING_APPROVAL):
            async with self.locks.hold(candidate.revision_id):
                try:
                    machine = self._live_machine(candidate.revision_id)
                except UnknownRevisionError:
                    continue
                if await machine.expire_approval(now):
                    expired += 1
        if expired:
            logger.info("Rejected %d revision(s) after approval timeout", expired)
        return expired

    async def recover(self) -> int:
        """
        Resume revisions left mid-flight by a restart.

        A revision that cannot be resumed is failed and logged; the others
        are still recovered.

        Returns:
            How many revisions were resumed without raising
        """
        resumed = 0
        failed = 0
        for state in (RevisionState.QUEUED, RevisionState.PLANNING, RevisionState.AWAITING_APPROVAL):
            for candidate in self.context.store.list(state):
                async with self.locks.hold(candidate.revision_id):
                    try:
                        machine = self._live_machine(candidate.revision_id)
                    except UnknownRevisionError:
                        continue
                    if machine.state != state:
                        continue
                    if state == RevisionState.AWAITING_APPROVAL and machine.record.notified:
                        continue
                    try:
                        await machine.resume()
                    except ReconciliationError:
                        # Already recorded as failed and logged at CRITICAL
                        failed += 1
                        continue
                    except Exception as error:
                        logger.exception("Revision %s could not be recovered", candidate.revision_id)
                        machine.fail(f"Recovery failed: {type(error).__name__}: {error}")
                        failed += 1
                        continue
                    resumed += 1
        if failed:
            logger.error("Failed %d revision(s) during recovery", failed)
        logger.info("Recovered %d in-flight revision(s)", resumed)
        return resumed
