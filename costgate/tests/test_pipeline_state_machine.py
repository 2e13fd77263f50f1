"""
Tests for the revision state machine: the approval path, retries,
cancellation and approval timeouts.
"""

import json
import logging
import pytest
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, Mock

from costgate.core.errors import ExecutorError, ReconciliationError
from costgate.domain.cost_models import CostBreakdown, CostLineItem
from costgate.domain.events import (
    ApprovalReceivedEvent,
    NewRevisionEvent,
    RevisionClosedEvent,
    StageFinishedEvent,
)
from costgate.domain.pipeline_models import (
    ALLOWED_TRANSITIONS,
    ApprovalDecision,
    OutcomeStatus,
    RevisionRecord,
    RevisionState,
    StageOutcome,
    is_allowed_transition,
)
from costgate.services.revision_store import InMemoryRevisionStore


def new_revision(revision_id="rev-1"):
    return NewRevisionEvent(revision_id=revision_id, source_ref="feature-sha", target_ref="main")


def approval(decision, revision_id="rev-1"):
    return ApprovalReceivedEvent(revision_id=revision_id, decision=decision, approver="alice")


def stored(router, revision_id="rev-1"):
    return router.context.store.get(revision_id)


@pytest.mark.asyncio
async def test_unchanged_cost_proceeds_to_build(make_repo, plans, build_router, recording_sink, fake_build_service):
    """A revision whose cost does not move skips approval."""
    router = build_router(make_repo(baseline=plans["baseline"], proposed=plans["baseline"]))

    await router.route(new_revision())

    record = stored(router)
    assert record.state == RevisionState.BUILDING
    assert record.decision == ApprovalDecision.NOT_REQUIRED
    assert record.last_diff.delta_total == Decimal("0.00")
    assert recording_sink.notifications == []
    assert [request.stage_name for request in fake_build_service.requests] == ["Build"]
    assert record.active_invocation_id == "inv-1"


@pytest.mark.asyncio
async def test_cost_increase_waits_for_approval(make_repo, build_router, recording_sink, fake_build_service):
    """$100.00 -> $142.37 with a zero threshold needs approval; one notification."""
    router = build_router(make_repo())

    await router.route(new_revision())

    record = stored(router)
    assert record.state == RevisionState.AWAITING_APPROVAL
    assert record.decision == ApprovalDecision.PENDING
    assert record.last_diff.baseline.total_monthly_cost == Decimal("100.00")
    assert record.last_diff.proposed.total_monthly_cost == Decimal("142.37")
    assert record.last_diff.delta_total == Decimal("42.37")
    assert record.notified is True
    assert len(recording_sink.notifications) == 1
    assert recording_sink.notifications[0][1].delta_total == Decimal("42.37")
    assert fake_build_service.requests == []

    # A restart must not notify again
    assert await router.recover() == 0
    assert len(recording_sink.notifications) == 1


@pytest.mark.asyncio
async def test_approval_moves_to_build(make_repo, build_router, fake_build_service):
    router = build_router(make_repo())
    await router.route(new_revision())

    await router.route(approval(ApprovalDecision.APPROVED))

    record = stored(router)
    assert record.state == RevisionState.BUILDING
    assert record.decision == ApprovalDecision.APPROVED
    assert "approved by alice" in record.history[-1].note
    assert len(fake_build_service.requests) == 1


@pytest.mark.asyncio
async def test_late_approval_after_rejection_is_dropped(make_repo, build_router, fake_build_service, caplog):
    router = build_router(make_repo())
    await router.route(new_revision())
    await router.route(approval(ApprovalDecision.REJECTED))

    record = stored(router)
    assert record.state == RevisionState.REJECTED
    assert record.archived_at is not None

    caplog.set_level(logging.WARNING)
    await router.route(approval(ApprovalDecision.APPROVED))

    assert stored(router).state == RevisionState.REJECTED
    assert fake_build_service.requests == []
    assert "Dropping approval_received event" in caplog.text
    assert "archived as rejected" in caplog.text


@pytest.mark.asyncio
async def test_retryable_failures_then_success(make_repo, plans, build_router, fake_build_service):
    """Two transient build failures are retried; the third attempt succeeds."""
    fake_build_service.outcomes = [
        StageOutcome.failed("runner lost", retryable=True),
        StageOutcome.failed("runner lost", retryable=True),
        StageOutcome.succeeded(),
    ]
    router = build_router(make_repo(proposed=plans["baseline"]))

    await router.route(new_revision())

    record = stored(router)
    assert record.state == RevisionState.DEPLOYING
    assert record.retries == 0
    assert [request.attempt for request in fake_build_service.requests] == [1, 2, 3, 1]
    assert [request.stage_name for request in fake_build_service.requests] == [
        "Build", "Build", "Build", "Deploy",
    ]
    retry_notes = [entry.note for entry in record.history if entry.note.startswith("retry")]
    assert retry_notes == ["retry 1/3: runner lost", "retry 2/3: runner lost"]


@pytest.mark.asyncio
async def test_retry_budget_exhausted_fails_revision(make_repo, plans, build_router, fake_build_service):
    fake_build_service.outcomes = [
        ExecutorError("build service returned 503", retryable=True) for _ in range(4)
    ]
    router = build_router(make_repo(proposed=plans["baseline"]))

    await router.route(new_revision())

    record = stored(router)
    assert record.state == RevisionState.FAILED
    assert len(fake_build_service.requests) == 4
    assert "retries exhausted" in record.last_error
    assert "503" in record.last_error


@pytest.mark.asyncio
async def test_non_retryable_failure_fails_immediately(make_repo, plans, build_router, fake_build_service):
    fake_build_service.outcomes = [StageOutcome.failed("terraform validate failed")]
    router = build_router(make_repo(proposed=plans["baseline"]))

    await router.route(new_revision())

    record = stored(router)
    assert record.state == RevisionState.FAILED
    assert len(fake_build_service.requests) == 1
    assert record.last_error == "Build failed: terraform validate failed"


@pytest.mark.asyncio
async def test_asynchronous_results_and_superseded_invocation(make_repo, plans, build_router, fake_build_service):
    router = build_router(make_repo(proposed=plans["baseline"]))
    await router.route(new_revision())
    assert stored(router).active_invocation_id == "inv-1"

    await router.route(StageFinishedEvent(
        revision_id="rev-1", stage_name="Build", invocation_id="inv-1",
        status=OutcomeStatus.FAILED, retryable=True, message="spot instance reclaimed",
    ))
    record = stored(router)
    assert record.state == RevisionState.BUILDING
    assert record.retries == 1
    assert record.active_invocation_id == "inv-2"

    # A late result for the first attempt changes nothing
    await router.route(StageFinishedEvent(
        revision_id="rev-1", stage_name="Build", invocation_id="inv-1",
        status=OutcomeStatus.SUCCEEDED,
    ))
    assert stored(router).state == RevisionState.BUILDING

    await router.route(StageFinishedEvent(
        revision_id="rev-1", stage_name="Build", invocation_id="inv-2",
        status=OutcomeStatus.SUCCEEDED,
    ))
    assert stored(router).state == RevisionState.DEPLOYING

    await router.route(StageFinishedEvent(
        revision_id="rev-1", stage_name="Deploy", invocation_id="inv-3",
        status=OutcomeStatus.SUCCEEDED,
    ))
    record = stored(router)
    assert record.state == RevisionState.COMPLETED
    assert [entry.state for entry in record.history] == [
        RevisionState.QUEUED,
        RevisionState.PLANNING,
        RevisionState.BUILDING,
        RevisionState.BUILDING,
        RevisionState.DEPLOYING,
        RevisionState.COMPLETED,
    ]


@pytest.mark.asyncio
async def test_result_for_another_stage_is_dropped(make_repo, plans, build_router):
    router = build_router(make_repo(proposed=plans["baseline"]))
    await router.route(new_revision())

    await router.route(StageFinishedEvent(
        revision_id="rev-1", stage_name="Deploy", status=OutcomeStatus.SUCCEEDED,
    ))

    assert stored(router).state == RevisionState.BUILDING


@pytest.mark.asyncio
async def test_approval_while_building_is_ignored(make_repo, plans, build_router):
    router = build_router(make_repo(proposed=plans["baseline"]))
    await router.route(new_revision())

    await router.route(approval(ApprovalDecision.REJECTED))

    record = stored(router)
    assert record.state == RevisionState.BUILDING
    assert record.decision == ApprovalDecision.NOT_REQUIRED


@pytest.mark.asyncio
async def test_closing_revision_cancels_inflight_build(make_repo, plans, build_router, fake_build_service):
    router = build_router(make_repo(proposed=plans["baseline"]))
    await router.route(new_revision())

    await router.route(RevisionClosedEvent(revision_id="rev-1"))

    record = stored(router)
    assert record.state == RevisionState.CANCELLED
    assert fake_build_service.cancelled == [("rev-1", "Build", "inv-1")]


@pytest.mark.asyncio
async def test_closing_revision_awaiting_approval(make_repo, build_router, fake_build_service):
    router = build_router(make_repo())
    await router.route(new_revision())

    await router.route(RevisionClosedEvent(revision_id="rev-1"))

    assert stored(router).state == RevisionState.CANCELLED
    assert fake_build_service.cancelled == []


@pytest.mark.asyncio
async def test_approval_timeout_rejects_revision(make_repo, build_router, fixed_clock):
    router = build_router(make_repo(), clock=fixed_clock)
    await router.route(new_revision())
    entered = fixed_clock.now

    assert await router.expire_approvals(entered + timedelta(seconds=3599)) == 0
    assert stored(router).state == RevisionState.AWAITING_APPROVAL

    fixed_clock.now = entered + timedelta(seconds=3600)
    assert await router.expire_approvals() == 1

    record = stored(router)
    assert record.state == RevisionState.REJECTED
    assert record.decision == ApprovalDecision.REJECTED
    assert "No approval decision within 3600 seconds" in record.last_error


@pytest.mark.asyncio
async def test_missing_usage_parameter_fails_plan(make_repo, build_router, fake_build_service):
    proposed = '{"resources": [{"type": "aws_s3_bucket", "name": "artifacts"}]}'
    router = build_router(make_repo(proposed=proposed, usage="{}"))

    await router.route(new_revision())

    record = stored(router)
    assert record.state == RevisionState.FAILED
    assert record.last_error.startswith("EstimationError:")
    assert "storage_gb" in record.last_error
    assert fake_build_service.requests == []


@pytest.mark.asyncio
@pytest.mark.parametrize("proposed, error", [
    (json.dumps({"planned_values": {"root_module": {"resources": ["aws_instance.app"]}}}),
     "Each resource in root_module must be a JSON object"),
    (json.dumps({"resources": [
        {"type": "aws_instance", "name": "app", "values": {"instance_type": ["test.base"]}},
    ]}), "'instance_type' for aws_instance.app must be a string"),
    (json.dumps({"resources": [
        {"type": "aws_codebuild_project", "name": "plan", "values": {"environment": {"compute_type": "x"}}},
    ]}), "'environment' for aws_codebuild_project.plan must be a list of blocks"),
])
async def test_malformed_definition_fails_plan(make_repo, build_router, fake_build_service, proposed, error):
    usage = json.dumps({"hours_per_month": 1, "build_minutes_per_month": 10})
    router = build_router(make_repo(proposed=proposed, usage=usage))

    await router.route(new_revision())

    record = stored(router)
    assert record.state == RevisionState.FAILED
    assert record.last_error.startswith("EstimationError:")
    assert error in record.last_error
    assert record.archived_at is not None
    assert fake_build_service.requests == []


@pytest.mark.asyncio
async def test_unexpected_executor_error_fails_revision(make_repo, build_router, caplog):
    estimator = Mock()
    estimator.pricing_source.snapshot_id = "test-snapshot"
    estimator.estimate = AsyncMock(side_effect=KeyError(0))
    router = build_router(make_repo(), estimator=estimator)

    caplog.set_level(logging.ERROR)
    await router.route(new_revision())

    record = stored(router)
    assert record.state == RevisionState.FAILED
    assert record.last_error == "Plan failed unexpectedly: KeyError: 0"
    assert "Plan raised unexpectedly" in caplog.text


@pytest.mark.asyncio
async def test_plan_result_from_outside_is_dropped(make_repo, build_router, fake_build_service):
    """Plan runs in-process; an external stage_finished cannot skip the gate."""
    store = InMemoryRevisionStore()
    store.save(RevisionRecord(
        revision_id="rev-1",
        source_ref="feature-sha",
        target_ref="main",
        state=RevisionState.PLANNING,
    ))
    router = build_router(make_repo(), store=store)

    await router.route(StageFinishedEvent(
        revision_id="rev-1", stage_name="Plan", status=OutcomeStatus.SUCCEEDED,
    ))

    record = stored(router)
    assert record.state == RevisionState.PLANNING
    assert record.decision is None
    assert fake_build_service.requests == []


@pytest.mark.asyncio
async def test_build_result_before_submission_is_dropped(make_repo, build_router):
    """Entered building but the run was never handed to the build service."""
    store = InMemoryRevisionStore()
    store.save(RevisionRecord(
        revision_id="rev-1",
        source_ref="feature-sha",
        target_ref="main",
        state=RevisionState.BUILDING,
        decision=ApprovalDecision.NOT_REQUIRED,
    ))
    router = build_router(make_repo(), store=store)

    await router.route(StageFinishedEvent(
        revision_id="rev-1", stage_name="Build", status=OutcomeStatus.SUCCEEDED,
    ))

    assert stored(router).state == RevisionState.BUILDING


@pytest.mark.asyncio
async def test_outstanding_build_is_marked_and_cleared(make_repo, plans, build_router):
    router = build_router(make_repo(proposed=plans["baseline"]))
    await router.route(new_revision())
    assert stored(router).awaiting_result is True

    await router.route(StageFinishedEvent(
        revision_id="rev-1", stage_name="Build", invocation_id="inv-1", status=OutcomeStatus.SUCCEEDED,
    ))

    record = stored(router)
    assert record.state == RevisionState.DEPLOYING
    assert record.active_invocation_id == "inv-2"
    assert record.awaiting_result is True


@pytest.mark.asyncio
async def test_missing_proposed_definition_fails_plan(make_repo, build_router):
    router = build_router(make_repo(proposed=None))

    await router.route(new_revision())

    record = stored(router)
    assert record.state == RevisionState.FAILED
    assert "plan.json not found at feature-sha" in record.last_error


@pytest.mark.asyncio
async def test_new_stack_is_priced_against_empty_baseline(make_repo, build_router):
    router = build_router(make_repo(baseline=None))

    await router.route(new_revision())

    record = stored(router)
    assert record.state == RevisionState.AWAITING_APPROVAL
    assert record.last_diff.delta_total == Decimal("142.37")
    assert {change.change_type.value for change in record.last_diff.changes} == {"added"}


@pytest.mark.asyncio
async def test_source_control_outage_is_retried(make_repo, build_router):
    repo = make_repo()
    repo.failures = 2
    router = build_router(repo)

    await router.route(new_revision())

    assert stored(router).state == RevisionState.AWAITING_APPROVAL
    assert repo.merge_base_calls == 3


@pytest.mark.asyncio
async def test_reconciliation_failure_halts_revision(make_repo, build_router, caplog):
    consistent = CostBreakdown(
        total_monthly_cost=Decimal("10.00"),
        line_items=(CostLineItem("aws_instance.app", "aws_instance", Decimal("10.00"), "hour"),),
    )
    # Total disagrees with its own line items
    inconsistent = CostBreakdown(
        total_monthly_cost=Decimal("25.00"),
        line_items=(CostLineItem("aws_instance.app", "aws_instance", Decimal("20.00"), "hour"),),
    )
    estimator = Mock()
    estimator.pricing_source.snapshot_id = "test-snapshot"
    estimator.estimate = AsyncMock(side_effect=[consistent, inconsistent])
    router = build_router(make_repo(), estimator=estimator)

    caplog.set_level(logging.CRITICAL)
    with pytest.raises(ReconciliationError):
        await router.route(new_revision())

    record = stored(router)
    assert record.state == RevisionState.FAILED
    assert record.last_error.startswith("ReconciliationError:")
    assert any(entry.levelno == logging.CRITICAL for entry in caplog.records)


def test_transition_table_never_moves_backward():
    order = [
        RevisionState.QUEUED,
        RevisionState.PLANNING,
        RevisionState.AWAITING_APPROVAL,
        RevisionState.BUILDING,
        RevisionState.DEPLOYING,
        RevisionState.COMPLETED,
    ]
    for current, targets in ALLOWED_TRANSITIONS.items():
        for target in targets:
            if target in order:
                assert order.index(target) > order.index(current)
    for terminal in (RevisionState.COMPLETED, RevisionState.FAILED,
                     RevisionState.REJECTED, RevisionState.CANCELLED):
        assert not any(is_allowed_transition(terminal, target) for target in RevisionState)
