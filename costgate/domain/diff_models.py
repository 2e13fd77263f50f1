"""
Domain models for cost comparison between a baseline and a proposed change.
"""
from typing import List, Dict, Any, Optional, Tuple
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum

from costgate.domain.cost_models import CostBreakdown


class ChangeType(str, Enum):
    """How a resource's cost moved between baseline and proposed."""
    ADDED = "added"
    REMOVED = "removed"
    CHANGED = "changed"
    UNCHANGED = "unchanged"


@dataclass(frozen=True)
class ResourceCostChange:
    """Represents the delta for a single resource between baseline and proposed."""
    address: str
    change_type: ChangeType
    baseline_monthly_cost: Decimal
    proposed_monthly_cost: Decimal
    delta: Decimal

    @property
    def delta_percent(self) -> Optional[Decimal]:
        """None if the baseline cost is zero."""
        if self.baseline_monthly_cost == 0:
            return None
        return (self.delta / self.baseline_monthly_cost) * 100

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        percent = self.delta_percent
        return {
            "address": self.address,
            "change_type": self.change_type.value,
            "baseline_monthly_cost": str(self.baseline_monthly_cost),
            "proposed_monthly_cost": str(self.proposed_monthly_cost),
            "delta": str(self.delta),
            "delta_percent": None if percent is None else str(round(percent, 1)),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResourceCostChange":
        return cls(
            address=data["address"],
            change_type=ChangeType(data["change_type"]),
            baseline_monthly_cost=Decimal(data["baseline_monthly_cost"]),
            proposed_monthly_cost=Decimal(data["proposed_monthly_cost"]),
            delta=Decimal(data["delta"]),
        )


@dataclass(frozen=True)
class CostDiff:
    """Signed difference between two cost breakdowns, ordered by address."""
    baseline: CostBreakdown
    proposed: CostBreakdown
    delta_total: Decimal
    changes: Tuple[ResourceCostChange, ...]

    def _of_type(self, change_type: ChangeType) -> List[ResourceCostChange]:
        return [change for change in self.changes if change.change_type == change_type]

    @property
    def added(self) -> List[ResourceCostChange]:
        return self._of_type(ChangeType.ADDED)

    @property
    def removed(self) -> List[ResourceCostChange]:
        return self._of_type(ChangeType.REMOVED)

    @property
    def changed(self) -> List[ResourceCostChange]:
        return self._of_type(ChangeType.CHANGED)

    @property
    def percent_change(self) -> Optional[Decimal]:
        if self.baseline.total_monthly_cost == 0:
            return None
        return (self.delta_total / self.baseline.total_monthly_cost) * 100

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "delta_total": str(self.delta_total),
            "baseline": self.baseline.to_dict(),
            "proposed": self.proposed.to_dict(),
            "changes": [change.to_dict() for change in self.changes],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CostDiff":
        return cls(
            baseline=CostBreakdown.from_dict(data["baseline"]),
            proposed=CostBreakdown.from_dict(data["proposed"]),
            delta_total=Decimal(data["delta_total"]),
            changes=tuple(ResourceCostChange.from_dict(change) for change in data["changes"]),
        )
