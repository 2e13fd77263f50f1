"""
Approval gate: decides whether a cost change needs human sign-off.
"""
from costgate.domain.diff_models import CostDiff
from costgate.domain.pipeline_models import ApprovalDecision, ApprovalPolicy


class ApprovalGate:
    """Pure policy object; notification is left to whoever consumes the decision."""

    def evaluate(self, diff: CostDiff, policy: ApprovalPolicy) -> ApprovalDecision:
        """
        A threshold of 0 means any cost increase requires approval.
        A delta exactly equal to the threshold does not.
        """
        if diff.delta_total > policy.threshold_monthly:
            return ApprovalDecision.PENDING
        return ApprovalDecision.NOT_REQUIRED
