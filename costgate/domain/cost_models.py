"""
Domain models for cost estimation.
Defines the structure of cost breakdowns and line items.
"""
from typing import List, Dict, Any, Tuple
from dataclasses import dataclass, field
from decimal import Decimal


CENTS = Decimal("0.01")


def to_money(value: Any) -> Decimal:
    """Quantize a numeric value to cents."""
    return Decimal(str(value)).quantize(CENTS)


@dataclass(frozen=True)
class CostLineItem:
    """Represents the monthly cost of a single resource."""
    address: str
    terraform_type: str
    monthly_cost: Decimal
    pricing_unit: str  # e.g., "hour", "GB-month", "request", "free"
    assumptions: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "address": self.address,
            "terraform_type": self.terraform_type,
            "monthly_cost": str(self.monthly_cost),
            "pricing_unit": self.pricing_unit,
            "assumptions": list(self.assumptions),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CostLineItem":
        return cls(
            address=data["address"],
            terraform_type=data["terraform_type"],
            monthly_cost=Decimal(data["monthly_cost"]),
            pricing_unit=data["pricing_unit"],
            assumptions=tuple(data.get("assumptions", [])),
        )


@dataclass(frozen=True)
class UnpricedResource:
    """Represents a resource that could not be priced."""
    address: str
    terraform_type: str
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "address": self.address,
            "terraform_type": self.terraform_type,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class CostBreakdown:
    """
    A complete monthly cost estimate for one infrastructure definition.

    Line items are ordered by address. Unpriced resources are listed
    but never contribute to the total.
    """
    total_monthly_cost: Decimal
    line_items: Tuple[CostLineItem, ...]
    unpriced_resources: Tuple[UnpricedResource, ...] = ()
    currency: str = "USD"
    pricing_snapshot: str = ""

    @classmethod
    def empty(cls, pricing_snapshot: str = "") -> "CostBreakdown":
        """Breakdown of a definition with no resources (e.g. a new stack)."""
        return cls(
            total_monthly_cost=Decimal("0.00"),
            line_items=(),
            pricing_snapshot=pricing_snapshot,
        )

    def cost_by_address(self) -> Dict[str, Decimal]:
        return {item.address: item.monthly_cost for item in self.line_items}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "currency": self.currency,
            "total_monthly_cost": str(self.total_monthly_cost),
            "pricing_snapshot": self.pricing_snapshot,
            "line_items": [item.to_dict() for item in self.line_items],
            "unpriced_resources": [resource.to_dict() for resource in self.unpriced_resources],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CostBreakdown":
        return cls(
            total_monthly_cost=Decimal(data["total_monthly_cost"]),
            line_items=tuple(CostLineItem.from_dict(item) for item in data.get("line_items", [])),
            unpriced_resources=tuple(
                UnpricedResource(**resource) for resource in data.get("unpriced_resources", [])
            ),
            currency=data.get("currency", "USD"),
            pricing_snapshot=data.get("pricing_snapshot", ""),
        )


@dataclass
class InfraResource:
    """A resource extracted from an infrastructure definition."""
    address: str
    terraform_type: str
    values: Dict[str, Any] = field(default_factory=dict)
