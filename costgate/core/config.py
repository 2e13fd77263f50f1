"""
Configuration module for loading environment variables.
All secrets and pipeline policy values are loaded from the environment.
"""
import os
from decimal import Decimal, InvalidOperation


class Config:
    """Application configuration loaded from environment variables."""

    # Source control (GitHub)
    GITHUB_TOKEN: str = os.getenv("GITHUB_TOKEN", "")
    GITHUB_REPOSITORY: str = os.getenv("GITHUB_REPOSITORY", "")  # "owner/repo"
    GITHUB_WEBHOOK_SECRET: str = os.getenv("GITHUB_WEBHOOK_SECRET", "")
    GITHUB_API_BASE_URL: str = os.getenv("GITHUB_API_BASE_URL", "https://api.github.com").rstrip("/")

    # Shared bearer token for callers of POST /api/events (build service, operators)
    EVENTS_API_TOKEN: str = os.getenv("EVENTS_API_TOKEN", "")

    # Where the Terraform plan JSON and usage profile live in the repository
    INFRA_DEFINITION_PATH: str = os.getenv("INFRA_DEFINITION_PATH", "plan.json")
    USAGE_PROFILE_PATH: str = os.getenv("USAGE_PROFILE_PATH", "usage.json")

    # Approval policy
    COST_THRESHOLD_MONTHLY: str = os.getenv("COST_THRESHOLD_MONTHLY", "0")
    EXECUTOR_MAX_RETRIES: int = int(os.getenv("EXECUTOR_MAX_RETRIES", "3"))
    APPROVAL_TIMEOUT_SECONDS: int = int(os.getenv("APPROVAL_TIMEOUT_SECONDS", "604800"))  # 7 days
    APPROVAL_SWEEP_INTERVAL_SECONDS: int = int(os.getenv("APPROVAL_SWEEP_INTERVAL_SECONDS", "60"))

    # Collaborators
    BUILD_SERVICE_URL: str = os.getenv("BUILD_SERVICE_URL", "").rstrip("/")
    BUILD_SERVICE_TIMEOUT: float = 30.0
    NOTIFICATION_WEBHOOK_URL: str = os.getenv("NOTIFICATION_WEBHOOK_URL", "")
    NOTIFICATION_TIMEOUT: float = 10.0

    # Persistence
    STATE_DB_PATH: str = os.getenv("STATE_DB_PATH", "costgate.db")

    # Terraform remote state
    TERRAFORM_STATE_BUCKET: str = os.getenv("TERRAFORM_STATE_BUCKET", "")

    # Pricing
    HOURS_PER_MONTH: int = 730  # Standard assumption: 24/7 operation
    PRICING_SNAPSHOT: str = os.getenv("PRICING_SNAPSHOT", "static-2024-06")

    @classmethod
    def threshold_monthly(cls) -> Decimal:
        """Return the approval threshold as a Decimal."""
        return Decimal(cls.COST_THRESHOLD_MONTHLY)

    @classmethod
    def validate(cls) -> None:
        """
        Validates that required configuration values are set.

        Raises:
            ValueError: If any required configuration is missing or invalid.
        """
        try:
            threshold = Decimal(cls.COST_THRESHOLD_MONTHLY)
        except InvalidOperation as error:
            raise ValueError(
                f"COST_THRESHOLD_MONTHLY must be a decimal number (got: {cls.COST_THRESHOLD_MONTHLY})"
            ) from error
        if threshold < 0:
            raise ValueError("COST_THRESHOLD_MONTHLY must not be negative")

        if cls.EXECUTOR_MAX_RETRIES < 0:
            raise ValueError("EXECUTOR_MAX_RETRIES must not be negative")
        if cls.APPROVAL_TIMEOUT_SECONDS <= 0:
            raise ValueError("APPROVAL_TIMEOUT_SECONDS must be positive")
        if cls.APPROVAL_SWEEP_INTERVAL_SECONDS <= 0:
            raise ValueError("APPROVAL_SWEEP_INTERVAL_SECONDS must be positive")

        if not cls.GITHUB_REPOSITORY:
            raise ValueError("GITHUB_REPOSITORY environment variable is required")
        if cls.GITHUB_REPOSITORY.count("/") != 1:
            raise ValueError(
                f"GITHUB_REPOSITORY must look like 'owner/repo' (got: {cls.GITHUB_REPOSITORY})"
            )

        if not cls.EVENTS_API_TOKEN:
            raise ValueError("EVENTS_API_TOKEN environment variable is required")

        if not cls.BUILD_SERVICE_URL:
            raise ValueError("BUILD_SERVICE_URL environment variable is required")
        if not cls.BUILD_SERVICE_URL.startswith(("http://", "https://")):
            raise ValueError(
                f"BUILD_SERVICE_URL must be a valid URL (got: {cls.BUILD_SERVICE_URL})"
            )
        if cls.NOTIFICATION_WEBHOOK_URL and not cls.NOTIFICATION_WEBHOOK_URL.startswith(("http://", "https://")):
            raise ValueError("NOTIFICATION_WEBHOOK_URL must be a valid URL")


config = Config()
