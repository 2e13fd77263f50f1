"""
Static pricing catalog.

Unit prices from a fixed, named snapshot so that estimates are reproducible.
Prices are us-east-1 on-demand list prices in USD.
"""
from typing import Dict, Optional, Protocol, Tuple
from decimal import Decimal
import logging

from costgate.core.config import config


logger = logging.getLogger(__name__)


class PricingSource(Protocol):
    """Supplies unit costs to the cost estimator."""

    snapshot_id: str

    async def get_unit_price(
        self,
        terraform_type: str,
        dimension: str,
        size: Optional[str] = None
    ) -> Optional[Decimal]:
        ...


# (terraform_type, dimension, size) -> USD per unit
STATIC_UNIT_PRICES: Dict[Tuple[str, str, str], Decimal] = {
    # EC2 on-demand, Linux, per hour
    ("aws_instance", "hour", "t3.nano"): Decimal("0.0052"),
    ("aws_instance", "hour", "t3.micro"): Decimal("0.0104"),
    ("aws_instance", "hour", "t3.small"): Decimal("0.0208"),
    ("aws_instance", "hour", "t3.medium"): Decimal("0.0416"),
    ("aws_instance", "hour", "t3.large"): Decimal("0.0832"),
    ("aws_instance", "hour", "m5.large"): Decimal("0.096"),
    ("aws_instance", "hour", "m5.xlarge"): Decimal("0.192"),
    ("aws_instance", "hour", "c5.large"): Decimal("0.085"),
    # RDS single-AZ, MySQL, per hour
    ("aws_db_instance", "hour", "db.t3.micro"): Decimal("0.017"),
    ("aws_db_instance", "hour", "db.t3.small"): Decimal("0.034"),
    ("aws_db_instance", "hour", "db.t3.medium"): Decimal("0.068"),
    ("aws_db_instance", "hour", "db.m5.large"): Decimal("0.171"),
    ("aws_db_instance", "GB-month", "gp2"): Decimal("0.115"),
    # Networking, per hour
    ("aws_nat_gateway", "hour", ""): Decimal("0.045"),
    ("aws_lb", "hour", ""): Decimal("0.0225"),
    ("aws_alb", "hour", ""): Decimal("0.0225"),
    ("aws_eip", "hour", ""): Decimal("0.005"),
    # Storage
    ("aws_ebs_volume", "GB-month", "gp2"): Decimal("0.10"),
    ("aws_ebs_volume", "GB-month", "gp3"): Decimal("0.08"),
    ("aws_ebs_volume", "GB-month", "io1"): Decimal("0.125"),
    ("aws_s3_bucket", "GB-month", ""): Decimal("0.023"),
    ("aws_cloudwatch_log_group", "GB", ""): Decimal("0.50"),
    # Serverless
    ("aws_lambda_function", "request", ""): Decimal("0.0000002"),
    ("aws_lambda_function", "GB-second", ""): Decimal("0.0000166667"),
    # Delivery tooling
    ("aws_codebuild_project", "build-minute", "BUILD_GENERAL1_SMALL"): Decimal("0.005"),
    ("aws_codebuild_project", "build-minute", "BUILD_GENERAL1_MEDIUM"): Decimal("0.01"),
    ("aws_codebuild_project", "build-minute", "BUILD_GENERAL1_LARGE"): Decimal("0.02"),
    ("aws_codepipeline", "pipeline-month", ""): Decimal("1.00"),
}


class StaticPricingCatalog:
    """Pricing source backed by an in-process price table."""

    def __init__(
        self,
        prices: Optional[Dict[Tuple[str, str, str], Decimal]] = None,
        snapshot_id: Optional[str] = None
    ):
        self._prices = dict(prices if prices is not None else STATIC_UNIT_PRICES)
        self.snapshot_id = snapshot_id or config.PRICING_SNAPSHOT

    async def get_unit_price(
        self,
        terraform_type: str,
        dimension: str,
        size: Optional[str] = None
    ) -> Optional[Decimal]:
        price = self._prices.get((terraform_type, dimension, size or ""))
        if price is None:
            logger.debug(
                "No catalog price for %s/%s/%s in snapshot %s",
                terraform_type, dimension, size, self.snapshot_id,
            )
        return price
