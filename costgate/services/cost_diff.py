"""
Cost diff engine.
Compares a proposed cost breakdown against its baseline.
"""
from typing import List
from decimal import Decimal
import logging

from costgate.core.errors import ReconciliationError
from costgate.domain.cost_models import CostBreakdown
from costgate.domain.diff_models import ChangeType, CostDiff, ResourceCostChange


logger = logging.getLogger(__name__)


RECONCILIATION_EPSILON = Decimal("0.000001")


class CostDiffEngine:
    """Builds signed per-resource and total deltas between two breakdowns."""

    def __init__(self, epsilon: Decimal = RECONCILIATION_EPSILON):
        self.epsilon = epsilon

    def diff(self, baseline: CostBreakdown, proposed: CostBreakdown) -> CostDiff:
        """
        Compute proposed minus baseline.

        Resources are matched by address; a side where the address is
        absent counts as zero. The total delta is computed from the
        breakdown totals and must equal the sum of per-resource deltas.

        Raises:
            ReconciliationError: If the totals do not reconcile
        """
        baseline_costs = baseline.cost_by_address()
        proposed_costs = proposed.cost_by_address()

        changes: List[ResourceCostChange] = []
        for address in sorted(set(baseline_costs) | set(proposed_costs)):
            in_baseline = address in baseline_costs
            in_proposed = address in proposed_costs
            baseline_cost = baseline_costs.get(address, Decimal("0"))
            proposed_cost = proposed_costs.get(address, Decimal("0"))
            delta = proposed_cost - baseline_cost

            if not in_baseline:
                change_type = ChangeType.ADDED
            elif not in_proposed:
                change_type = ChangeType.REMOVED
            elif delta != 0:
                change_type = ChangeType.CHANGED
            else:
                change_type = ChangeType.UNCHANGED

            changes.append(ResourceCostChange(
                address=address,
                change_type=change_type,
                baseline_monthly_cost=baseline_cost,
                proposed_monthly_cost=proposed_cost,
                delta=delta,
            ))

        delta_total = proposed.total_monthly_cost - baseline.total_monthly_cost
        resource_delta_sum = sum((change.delta for change in changes), Decimal("0"))

        if abs(delta_total - resource_delta_sum) > self.epsilon:
            logger.critical(
                "Cost diff does not reconcile: total delta %s, sum of resource deltas %s",
                delta_total, resource_delta_sum,
            )
            raise ReconciliationError(
                f"Total delta {delta_total} does not match sum of resource deltas {resource_delta_sum}"
            )

        return CostDiff(
            baseline=baseline,
            proposed=proposed,
            delta_total=delta_total,
            changes=tuple(changes),
        )
