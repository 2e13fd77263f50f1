"""
Notification sinks.
Told once per revision when a cost change needs approval.
"""
from typing import Dict, Any, List, Optional, Protocol
import logging

import httpx

from costgate.core.config import config
from costgate.domain.diff_models import ChangeType, CostDiff
from costgate.resilience.circuit_breaker import CircuitBreakerError, get_circuit_breaker


logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    async def notify(self, revision_id: str, diff: CostDiff) -> None:
        ...


class NotificationError(Exception):
    """Raised when a notification could not be delivered."""
    pass


def _signed(amount) -> str:
    return f"+${amount}" if amount > 0 else f"-${abs(amount)}" if amount < 0 else "$0.00"


def render_diff_markdown(revision_id: str, diff: CostDiff) -> str:
    """Render a cost diff as a markdown summary with a per-resource table."""
    lines: List[str] = [
        f"### Cost estimate for `{revision_id}`",
        "",
        f"Monthly cost changes by **{_signed(diff.delta_total)}** "
        f"(${diff.baseline.total_monthly_cost} → ${diff.proposed.total_monthly_cost}).",
    ]
    percent = diff.percent_change
    if percent is not None:
        lines[-1] += f" That is {round(percent, 1)}%."

    moved = [change for change in diff.changes if change.change_type != ChangeType.UNCHANGED]
    if moved:
        lines += [
            "",
            "| Resource | Change | Baseline | Proposed | Delta |",
            "|---|---|---:|---:|---:|",
        ]
        for change in moved:
            lines.append(
                f"| `{change.address}` | {change.change_type.value} | "
                f"${change.baseline_monthly_cost} | ${change.proposed_monthly_cost} | "
                f"{_signed(change.delta)} |"
            )

    unpriced = diff.proposed.unpriced_resources
    if unpriced:
        lines += ["", f"{len(unpriced)} resource(s) could not be priced and are not included."]
    return "\n".join(lines)


class LoggingNotificationSink:
    """Used when no webhook is configured."""

    async def notify(self, revision_id: str, diff: CostDiff) -> None:
        logger.warning(
            "Revision %s needs approval: monthly cost delta %s",
            revision_id, diff.delta_total,
        )


class WebhookNotificationSink:
    """Posts the cost diff to a chat or incident webhook."""

    def __init__(
        self,
        url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.url = url or config.NOTIFICATION_WEBHOOK_URL
        if not self.url:
            raise ValueError("NOTIFICATION_WEBHOOK_URL is required for the webhook sink")
        self.timeout = timeout or config.NOTIFICATION_TIMEOUT
        self._transport = transport
        self.circuit_breaker = get_circuit_breaker("notification_webhook")

    def _payload(self, revision_id: str, diff: CostDiff) -> Dict[str, Any]:
        return {
            "revision_id": revision_id,
            "delta_total": str(diff.delta_total),
            "text": render_diff_markdown(revision_id, diff),
            "diff": diff.to_dict(),
        }

    async def notify(self, revision_id: str, diff: CostDiff) -> None:
        """
        Raises:
            NotificationError: If the webhook cannot be reached or rejects the payload
        """
        try:
            self.circuit_breaker.check()
        except CircuitBreakerError as error:
            raise NotificationError(str(error)) from error

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.url, json=self._payload(revision_id, diff))
                response.raise_for_status()
        except httpx.HTTPError as error:
            self.circuit_breaker.record_failure()
            raise NotificationError(f"Failed to notify for {revision_id}: {str(error)}") from error

        self.circuit_breaker.record_success()
        logger.info("Sent approval notification for %s", revision_id)
