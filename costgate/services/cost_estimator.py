"""
Cost estimator service.
Converts an infrastructure definition plus a usage profile into a CostBreakdown.
"""
from typing import Dict, Any, List, Optional, Tuple, Union
from decimal import Decimal, InvalidOperation
import logging

from costgate.core.config import config
from costgate.core.errors import EstimationError
from costgate.domain.cost_models import (
    CostBreakdown,
    CostLineItem,
    InfraResource,
    UnpricedResource,
    to_money,
)
from costgate.pricing.static_catalog import PricingSource, StaticPricingCatalog
from costgate.services.terraform_plan import parse_infra_definition


logger = logging.getLogger(__name__)


# Resources with no base charge
FREE_RESOURCES: Dict[str, str] = {
    "aws_vpc": "Free - VPCs have no charge",
    "aws_subnet": "Free - Subnets have no charge",
    "aws_internet_gateway": "Free - Internet gateways have no charge",
    "aws_route_table": "Free - Route tables have no charge",
    "aws_route_table_association": "Free - Route table associations have no charge",
    "aws_route": "Free - Routes have no charge",
    "aws_security_group": "Free - Security groups have no charge",
    "aws_security_group_rule": "Free - Security group rules have no charge",
    "aws_iam_role": "Free - IAM roles have no charge",
    "aws_iam_role_policy": "Free - IAM role policies have no charge",
    "aws_iam_role_policy_attachment": "Free - IAM role policy attachments have no charge",
    "aws_iam_policy": "Free - IAM policies have no charge",
    "aws_s3_bucket_policy": "Free - Bucket policies have no charge",
    "aws_s3_bucket_versioning": "Free - Bucket versioning configuration has no charge",
    "aws_s3_bucket_public_access_block": "Free - Public access blocks have no charge",
    "aws_sns_topic": "Free - SNS topics have no charge (pay for messages)",
    "aws_sns_topic_subscription": "Free - SNS topic subscriptions have no charge",
    "aws_sqs_queue": "Free - SQS queues have no charge (pay for requests)",
    "aws_lambda_permission": "Free - Lambda permissions have no charge",
    "aws_cloudwatch_event_rule": "Free - Event rules have no charge",
    "aws_cloudwatch_event_target": "Free - Event targets have no charge",
    "aws_codecommit_repository": "Free - First five active users have no charge",
}

# Hourly resources whose price depends on a size attribute
SIZED_HOURLY_RESOURCES: Dict[str, str] = {
    "aws_instance": "instance_type",
    "aws_db_instance": "instance_class",
}

FLAT_HOURLY_RESOURCES = {"aws_nat_gateway", "aws_lb", "aws_alb", "aws_eip"}

# Usage-priced resource types and the usage parameters they require
REQUIRED_USAGE: Dict[str, Tuple[str, ...]] = {
    "aws_s3_bucket": ("storage_gb",),
    "aws_cloudwatch_log_group": ("ingested_gb",),
    "aws_lambda_function": ("requests_per_month", "gb_seconds_per_month"),
    "aws_codebuild_project": ("build_minutes_per_month",),
}


class CostEstimator:
    """Service for estimating monthly costs of an infrastructure definition."""

    def __init__(self, pricing_source: Optional[PricingSource] = None):
        """
        Initialize cost estimator.

        Args:
            pricing_source: Pricing data source (static catalog if None)
        """
        self.pricing_source = pricing_source or StaticPricingCatalog()

    def _usage_for(self, address: str, usage_profile: Dict[str, Any]) -> Dict[str, Any]:
        """Merge profile-wide defaults with the usage declared for one resource."""
        defaults = {
            key: value for key, value in usage_profile.items() if key != "resources"
        }
        per_resource = usage_profile.get("resources", {}).get(address, {})
        if not isinstance(per_resource, dict):
            raise EstimationError(f"Usage for {address} must be an object")
        return {**defaults, **per_resource}

    def _number(self, value: Any, key: str, address: str) -> Decimal:
        if isinstance(value, bool):
            raise EstimationError(f"Usage parameter '{key}' for {address} must be numeric")
        try:
            number = Decimal(str(value))
        except InvalidOperation as error:
            raise EstimationError(
                f"Usage parameter '{key}' for {address} must be numeric (got: {value!r})"
            ) from error
        if not number.is_finite() or number < 0:
            raise EstimationError(f"Usage parameter '{key}' for {address} must be a non-negative number")
        return number

    def _attribute(
        self,
        values: Dict[str, Any],
        key: str,
        address: str,
        default: Optional[str] = None
    ) -> Optional[str]:
        """Read a string attribute such as an instance size; unset falls back to default."""
        value = values.get(key)
        if value is None or value == "":
            return default
        if not isinstance(value, str):
            raise EstimationError(f"Attribute '{key}' for {address} must be a string (got: {value!r})")
        return value

    def _required_usage(self, usage: Dict[str, Any], key: str, address: str) -> Decimal:
        if usage.get(key) is None:
            raise EstimationError(f"Missing required usage parameter '{key}' for {address}")
        return self._number(usage[key], key, address)

    def _hours(self, usage: Dict[str, Any], address: str, assumptions: List[str]) -> Decimal:
        if usage.get("hours_per_month") is not None:
            hours = self._number(usage["hours_per_month"], "hours_per_month", address)
        else:
            hours = Decimal(config.HOURS_PER_MONTH)
        assumptions.append(f"{hours} hours/month")
        return hours

    async def _price(
        self,
        terraform_type: str,
        dimension: str,
        size: Optional[str] = None
    ) -> Optional[Decimal]:
        return await self.pricing_source.get_unit_price(terraform_type, dimension, size)

    async def _price_resource(
        self,
        resource: InfraResource,
        usage: Dict[str, Any]
    ) -> Union[CostLineItem, UnpricedResource]:
        """
        Price a single resource.

        Returns:
            CostLineItem if priced, UnpricedResource otherwise

        Raises:
            EstimationError: If a required usage parameter is missing or invalid
        """
        address = resource.address
        terraform_type = resource.terraform_type
        values = resource.values
        assumptions: List[str] = []

        def unpriced(reason: str) -> UnpricedResource:
            return UnpricedResource(address=address, terraform_type=terraform_type, reason=reason)

        if terraform_type in FREE_RESOURCES:
            return CostLineItem(
                address=address,
                terraform_type=terraform_type,
                monthly_cost=to_money(0),
                pricing_unit="free",
                assumptions=(FREE_RESOURCES[terraform_type],),
            )

        if terraform_type in SIZED_HOURLY_RESOURCES:
            size_attribute = SIZED_HOURLY_RESOURCES[terraform_type]
            size = self._attribute(values, size_attribute, address)
            if not size:
                return unpriced(f"No {size_attribute} set")
            hourly_price = await self._price(terraform_type, "hour", size)
            if hourly_price is None:
                return unpriced(f"No price for {size_attribute}={size}")
            hours = self._hours(usage, address, assumptions)
            monthly = hourly_price * hours
            assumptions.append(f"${hourly_price}/hour for {size}")

            allocated = values.get("allocated_storage")
            if terraform_type == "aws_db_instance" and allocated:
                storage_type = self._attribute(values, "storage_type", address, "gp2")
                storage_price = await self._price(terraform_type, "GB-month", storage_type)
                if storage_price is not None:
                    monthly += storage_price * self._number(allocated, "allocated_storage", address)
                    assumptions.append(f"{allocated} GB {storage_type} storage")

            return CostLineItem(address, terraform_type, to_money(monthly), "hour", tuple(assumptions))

        if terraform_type in FLAT_HOURLY_RESOURCES:
            hourly_price = await self._price(terraform_type, "hour")
            if hourly_price is None:
                return unpriced("Pricing not available for this resource type")
            hours = self._hours(usage, address, assumptions)
            return CostLineItem(address, terraform_type, to_money(hourly_price * hours), "hour", tuple(assumptions))

        if terraform_type == "aws_ebs_volume":
            volume_type = self._attribute(values, "type", address, "gp2")
            if values.get("size") is not None:
                size_gb = self._number(values["size"], "size", address)
            else:
                size_gb = self._required_usage(usage, "storage_gb", address)
            price = await self._price(terraform_type, "GB-month", volume_type)
            if price is None:
                return unpriced(f"No price for volume type {volume_type}")
            assumptions.append(f"{size_gb} GB {volume_type}")
            return CostLineItem(address, terraform_type, to_money(price * size_gb), "GB-month", tuple(assumptions))

        if terraform_type == "aws_codepipeline":
            price = await self._price(terraform_type, "pipeline-month")
            if price is None:
                return unpriced("Pricing not available for this resource type")
            assumptions.append("1 active pipeline")
            return CostLineItem(address, terraform_type, to_money(price), "pipeline-month", tuple(assumptions))

        if terraform_type in REQUIRED_USAGE:
            return await self._price_usage_resource(resource, usage, assumptions)

        return unpriced("Pricing not available for this resource type")

    async def _price_usage_resource(
        self,
        resource: InfraResource,
        usage: Dict[str, Any],
        assumptions: List[str]
    ) -> Union[CostLineItem, UnpricedResource]:
        address = resource.address
        terraform_type = resource.terraform_type
        quantities = {
            key: self._required_usage(usage, key, address)
            for key in REQUIRED_USAGE[terraform_type]
        }

        if terraform_type == "aws_s3_bucket":
            components = [("GB-month", None, quantities["storage_gb"])]
            unit = "GB-month"
        elif terraform_type == "aws_cloudwatch_log_group":
            components = [("GB", None, quantities["ingested_gb"])]
            unit = "GB"
        elif terraform_type == "aws_lambda_function":
            components = [
                ("request", None, quantities["requests_per_month"]),
                ("GB-second", None, quantities["gb_seconds_per_month"]),
            ]
            unit = "request"
        else:
            environment = resource.values.get("environment") or [{}]
            if not isinstance(environment, list) or not isinstance(environment[0] or {}, dict):
                raise EstimationError(f"'environment' for {address} must be a list of blocks")
            compute_type = self._attribute(
                environment[0] or {}, "compute_type", address, "BUILD_GENERAL1_SMALL"
            )
            components = [("build-minute", compute_type, quantities["build_minutes_per_month"])]
            unit = "build-minute"

        monthly = Decimal("0")
        for dimension, size, quantity in components:
            price = await self._price(terraform_type, dimension, size)
            if price is None:
                return UnpricedResource(
                    address=address,
                    terraform_type=terraform_type,
                    reason=f"No price for {dimension}" + (f" ({size})" if size else ""),
                )
            monthly += price * quantity
            assumptions.append(f"{quantity} {dimension} at ${price}")

        return CostLineItem(address, terraform_type, to_money(monthly), unit, tuple(assumptions))

    async def estimate(
        self,
        infra_definition: Union[str, bytes, Dict[str, Any]],
        usage_profile: Optional[Dict[str, Any]] = None
    ) -> CostBreakdown:
        """
        Estimate monthly costs of an infrastructure definition.

        Deterministic for a fixed pricing snapshot: line items are ordered
        by resource address and rounded to cents before totalling.

        Args:
            infra_definition: Terraform plan JSON or resource list
            usage_profile: Usage assumptions, defaults plus per-address overrides

        Returns:
            CostBreakdown with line items and unpriced resources

        Raises:
            EstimationError: If the definition cannot be parsed or a required
                             usage parameter is missing
        """
        usage_profile = usage_profile or {}
        if not isinstance(usage_profile, dict):
            raise EstimationError("Usage profile must be an object")
        if not isinstance(usage_profile.get("resources", {}), dict):
            raise EstimationError("Usage profile 'resources' must be an object keyed by address")

        resources = sorted(parse_infra_definition(infra_definition), key=lambda r: r.address)

        line_items: List[CostLineItem] = []
        unpriced_resources: List[UnpricedResource] = []

        for resource in resources:
            usage = self._usage_for(resource.address, usage_profile)
            priced = await self._price_resource(resource, usage)
            if isinstance(priced, CostLineItem):
                line_items.append(priced)
            else:
                logger.info("Unpriced resource %s: %s", priced.address, priced.reason)
                unpriced_resources.append(priced)

        total = sum((item.monthly_cost for item in line_items), Decimal("0.00"))

        return CostBreakdown(
            total_monthly_cost=to_money(total),
            line_items=tuple(line_items),
            unpriced_resources=tuple(unpriced_resources),
            currency="USD",
            pricing_snapshot=self.pricing_source.snapshot_id,
        )
