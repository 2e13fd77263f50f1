"""
Stage executors.

Each pipeline stage names an executor. Automated stages either run the cost
plan in-process or hand a command sequence to the build service; the manual
approval stage notifies a human and waits.
"""
from typing import Any, Dict, List, Optional, Protocol
import json
import logging

from costgate.core.config import config
from costgate.core.errors import EstimationError, ExecutorError
from costgate.domain.cost_models import CostBreakdown
from costgate.domain.pipeline_models import ApprovalPolicy, StageInput, StageOutcome
from costgate.services.approval_gate import ApprovalGate
from costgate.services.build_service_client import BuildService, StageInvocationRequest
from costgate.services.cost_diff import CostDiffEngine
from costgate.services.cost_estimator import CostEstimator
from costgate.services.github_client import SourceControlClient, SourceControlError
from costgate.services.notifications import NotificationError, NotificationSink


logger = logging.getLogger(__name__)


class StageExecutor(Protocol):
    async def invoke(self, stage_input: StageInput) -> StageOutcome:
        ...

    async def cancel(self, stage_input: StageInput) -> None:
        ...


class CostPlanExecutor:
    """
    Plan stage: estimate baseline and proposed costs, diff them, and ask the
    approval gate whether the change can proceed on its own.

    The baseline is the definition at the merge base of source and target,
    so unrelated changes landed on the target branch do not show up in the
    delta. Both sides are priced with the usage profile from the source ref.
    """

    def __init__(
        self,
        source_control: SourceControlClient,
        policy: ApprovalPolicy,
        estimator: Optional[CostEstimator] = None,
        diff_engine: Optional[CostDiffEngine] = None,
        gate: Optional[ApprovalGate] = None,
        definition_path: Optional[str] = None,
        usage_profile_path: Optional[str] = None
    ):
        self.source_control = source_control
        self.policy = policy
        self.estimator = estimator or CostEstimator()
        self.diff_engine = diff_engine or CostDiffEngine()
        self.gate = gate or ApprovalGate()
        self.definition_path = definition_path or config.INFRA_DEFINITION_PATH
        self.usage_profile_path = usage_profile_path or config.USAGE_PROFILE_PATH

    async def _load_usage_profile(self, ref: str) -> Dict[str, Any]:
        content = await self.source_control.get_file(ref, self.usage_profile_path)
        if content is None:
            return {}
        try:
            return json.loads(content)
        except json.JSONDecodeError as error:
            raise EstimationError(
                f"Usage profile {self.usage_profile_path} is not valid JSON: {str(error)}"
            ) from error

    async def invoke(self, stage_input: StageInput) -> StageOutcome:
        """
        Raises:
            EstimationError: If a definition or the usage profile cannot be priced
            ExecutorError: If source control is unavailable (retryable)
            ReconciliationError: If the diff does not add up
        """
        try:
            merge_base = await self.source_control.merge_base(stage_input.target_ref, stage_input.source_ref)
            baseline_definition = await self.source_control.get_file(merge_base, self.definition_path)
            proposed_definition = await self.source_control.get_file(stage_input.source_ref, self.definition_path)
            usage_profile = await self._load_usage_profile(stage_input.source_ref)
        except SourceControlError as error:
            raise ExecutorError(str(error), retryable=True) from error

        if proposed_definition is None:
            raise EstimationError(
                f"{self.definition_path} not found at {stage_input.source_ref}"
            )

        if baseline_definition is None:
            logger.info(
                "No %s at merge base %s for %s, treating baseline as empty",
                self.definition_path, merge_base, stage_input.revision_id,
            )
            baseline = CostBreakdown.empty(self.estimator.pricing_source.snapshot_id)
        else:
            baseline = await self.estimator.estimate(baseline_definition, usage_profile)
        proposed = await self.estimator.estimate(proposed_definition, usage_profile)

        diff = self.diff_engine.diff(baseline, proposed)
        decision = self.gate.evaluate(diff, self.policy)
        logger.info(
            "Plan for %s: baseline %s, proposed %s, delta %s -> %s",
            stage_input.revision_id, baseline.total_monthly_cost,
            proposed.total_monthly_cost, diff.delta_total, decision.value,
        )
        return StageOutcome.succeeded(diff=diff, decision=decision)

    async def cancel(self, stage_input: StageInput) -> None:
        # Runs in-process; nothing outlives the invocation.
        return None


class ManualApprovalExecutor:
    """Approval stage: tell a human, then wait for the approval event."""

    def __init__(self, sink: NotificationSink):
        self.sink = sink

    async def invoke(self, stage_input: StageInput) -> StageOutcome:
        if stage_input.diff is None:
            raise ExecutorError(
                f"No cost diff to review for {stage_input.revision_id}", retryable=False
            )
        try:
            await self.sink.notify(stage_input.revision_id, stage_input.diff)
        except NotificationError as error:
            # The revision still waits; the diff stays queryable on the record.
            logger.error("Approval notification for %s failed: %s", stage_input.revision_id, error)
        return StageOutcome.pending()

    async def cancel(self, stage_input: StageInput) -> None:
        return None


class CommandSequenceExecutor:
    """Automated stage backed by the build service."""

    def __init__(self, build_service: BuildService, commands: List[str]):
        if not commands:
            raise ValueError("A command sequence needs at least one command")
        self.build_service = build_service
        self.commands = list(commands)

    async def invoke(self, stage_input: StageInput) -> StageOutcome:
        request = StageInvocationRequest(
            revision_id=stage_input.revision_id,
            stage_name=stage_input.stage_name,
            commands=self.commands,
            source_ref=stage_input.source_ref,
            attempt=stage_input.attempt,
        )
        return await self.build_service.submit(request)

    async def cancel(self, stage_input: StageInput) -> None:
        await self.build_service.cancel(
            stage_input.revision_id, stage_input.stage_name, stage_input.invocation_id
        )


def _init_command() -> str:
    if config.TERRAFORM_STATE_BUCKET:
        return f'terraform init -input=false -backend-config="bucket={config.TERRAFORM_STATE_BUCKET}"'
    return "terraform init -input=false"


def build_commands() -> List[str]:
    return [_init_command(), "terraform validate", "terraform plan -input=false -out=tfplan"]


def deploy_commands() -> List[str]:
    return [_init_command(), "terraform apply -input=false -auto-approve"]
