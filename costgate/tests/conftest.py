"""
Shared pytest fixtures for costgate tests.
"""

import sys
import os
from pathlib import Path

# Add project root to Python path
project_root = Path(__file__).parent.parent.parent
sys.path.insert(0, str(project_root))

# Set minimal environment variables for testing
os.environ.setdefault('GITHUB_REPOSITORY', 'acme/infra')
os.environ.setdefault('BUILD_SERVICE_URL', 'http://build.test')
os.environ.setdefault('EVENTS_API_TOKEN', 'test-events-token')

import json
import pytest
from datetime import datetime, timezone
from decimal import Decimal

from costgate.domain.pipeline_models import ApprovalPolicy, StageOutcome, utcnow
from costgate.pricing.static_catalog import StaticPricingCatalog
from costgate.resilience import circuit_breaker
from costgate.services.cost_estimator import CostEstimator
from costgate.services.event_router import EventRouter
from costgate.services.github_client import SourceControlError
from costgate.services.pipeline_state_machine import PipelineContext
from costgate.services.revision_store import InMemoryRevisionStore
from costgate.services.stage_executors import (
    CommandSequenceExecutor,
    CostPlanExecutor,
    ManualApprovalExecutor,
)


# Unit prices chosen so that one hour of usage gives round monthly numbers
TEST_PRICES = {
    ("aws_instance", "hour", "test.base"): Decimal("100"),
    ("aws_eip", "hour", ""): Decimal("42.37"),
    ("aws_s3_bucket", "GB-month", ""): Decimal("0.023"),
}

BASELINE_PLAN = json.dumps({
    "resources": [
        {"type": "aws_instance", "name": "app", "values": {"instance_type": "test.base"}},
    ]
})

GROWTH_PLAN = json.dumps({
    "resources": [
        {"type": "aws_instance", "name": "app", "values": {"instance_type": "test.base"}},
        {"type": "aws_eip", "name": "app"},
    ]
})

USAGE_PROFILE = json.dumps({"hours_per_month": 1})

MERGE_BASE = "base-sha"
SOURCE_REF = "feature-sha"


class FakeSourceControl:
    """Serves files from a dict keyed by (ref, path)."""

    def __init__(self, files=None, merge_base_sha=MERGE_BASE):
        self.files = dict(files or {})
        self.merge_base_sha = merge_base_sha
        self.failures = 0
        self.merge_base_calls = 0

    async def merge_base(self, base_ref, head_ref):
        self.merge_base_calls += 1
        if self.failures:
            self.failures -= 1
            raise SourceControlError("GitHub unavailable")
        return self.merge_base_sha

    async def get_file(self, ref, path):
        return self.files.get((ref, path))


class FakeBuildService:
    """Returns scripted outcomes, then accepts runs as pending."""

    def __init__(self):
        self.outcomes = []
        self.requests = []
        self.cancelled = []

    async def submit(self, request):
        self.requests.append(request)
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return StageOutcome.pending(f"inv-{len(self.requests)}")

    async def cancel(self, revision_id, stage_name, invocation_id):
        self.cancelled.append((revision_id, stage_name, invocation_id))


class RecordingSink:
    def __init__(self):
        self.notifications = []

    async def notify(self, revision_id, diff):
        self.notifications.append((revision_id, diff))


@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    """Circuit breakers are process-wide; start every test closed."""
    circuit_breaker._circuit_breakers.clear()
    yield
    circuit_breaker._circuit_breakers.clear()


@pytest.fixture
def make_repo():
    """Factory for a fake repository with a baseline and a proposed plan."""
    def _make(baseline=BASELINE_PLAN, proposed=GROWTH_PLAN, usage=USAGE_PROFILE, source_ref=SOURCE_REF):
        files = {}
        if baseline is not None:
            files[(MERGE_BASE, "plan.json")] = baseline
        if proposed is not None:
            files[(source_ref, "plan.json")] = proposed
        if usage is not None:
            files[(source_ref, "usage.json")] = usage
        return FakeSourceControl(files)
    return _make


@pytest.fixture
def plans():
    """Plan documents: baseline costs $100.00/month, growth adds $42.37."""
    return {"baseline": BASELINE_PLAN, "growth": GROWTH_PLAN}


@pytest.fixture
def fake_build_service():
    return FakeBuildService()


@pytest.fixture
def recording_sink():
    return RecordingSink()


@pytest.fixture
def test_estimator():
    return CostEstimator(StaticPricingCatalog(TEST_PRICES, snapshot_id="test-snapshot"))


@pytest.fixture
def fixed_clock():
    """Mutable clock: set ``fixed_clock.now`` to move time."""
    class Clock:
        now = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

        def __call__(self):
            return self.now

    return Clock()


@pytest.fixture
def build_router(fake_build_service, recording_sink, test_estimator):
    """Factory for an EventRouter wired to fakes."""
    def _build(
        source_control,
        store=None,
        policy=None,
        estimator=None,
        clock=utcnow
    ):
        policy = policy or ApprovalPolicy(
            threshold_monthly=Decimal("0"),
            max_retries=3,
            approval_timeout_seconds=3600,
        )
        context = PipelineContext(
            store=store if store is not None else InMemoryRevisionStore(),
            executors={
                "cost-plan": CostPlanExecutor(
                    source_control,
                    policy,
                    estimator=estimator or test_estimator,
                    definition_path="plan.json",
                    usage_profile_path="usage.json",
                ),
                "manual-approval": ManualApprovalExecutor(recording_sink),
                "terraform-build": CommandSequenceExecutor(fake_build_service, ["terraform plan"]),
                "terraform-deploy": CommandSequenceExecutor(fake_build_service, ["terraform apply"]),
            },
            policy=policy,
            clock=clock,
        )
        return EventRouter(context)
    return _build
