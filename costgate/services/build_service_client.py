"""
Build service client.
Build/deploy executor collaborator: runs a command set for one revision stage
and reports the outcome, usually later through the stage_finished callback.
"""
from typing import Dict, Any, List, Optional, Protocol
from dataclasses import dataclass
import logging

import httpx

from costgate.core.config import config
from costgate.core.errors import ExecutorError
from costgate.domain.pipeline_models import OutcomeStatus, StageOutcome
from costgate.resilience.circuit_breaker import CircuitBreakerError, get_circuit_breaker


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StageInvocationRequest:
    """What the build service is asked to run."""
    revision_id: str
    stage_name: str
    commands: List[str]
    source_ref: str = ""
    attempt: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "revision_id": self.revision_id,
            "stage_name": self.stage_name,
            "commands": list(self.commands),
            "source_ref": self.source_ref,
            "attempt": self.attempt,
        }


class BuildService(Protocol):
    async def submit(self, request: StageInvocationRequest) -> StageOutcome:
        ...

    async def cancel(self, revision_id: str, stage_name: str, invocation_id: Optional[str]) -> None:
        ...


class HttpBuildServiceClient:
    """Talks to a build runner over HTTP."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.base_url = (base_url or config.BUILD_SERVICE_URL).rstrip("/")
        if not self.base_url:
            raise ValueError("BUILD_SERVICE_URL is required for the HTTP build service")
        self.timeout = timeout or config.BUILD_SERVICE_TIMEOUT
        self._transport = transport
        self.circuit_breaker = get_circuit_breaker("build_service")

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self._transport)

    async def submit(self, request: StageInvocationRequest) -> StageOutcome:
        """
        Submit a stage invocation.

        A 202 response means the run was accepted and will be reported
        later; a 200 response carries a final status.

        Raises:
            ExecutorError: retryable for transport errors, 429 and 5xx, and an open circuit
        """
        try:
            self.circuit_breaker.check()
        except CircuitBreakerError as error:
            raise ExecutorError(str(error), retryable=True) from error

        try:
            async with self._client() as client:
                response = await client.post("/invocations", json=request.to_dict())
        except httpx.RequestError as error:
            self.circuit_breaker.record_failure()
            raise ExecutorError(f"Build service unreachable: {str(error)}", retryable=True) from error

        if response.status_code == 429 or response.status_code >= 500:
            self.circuit_breaker.record_failure()
            raise ExecutorError(
                f"Build service returned {response.status_code} for {request.stage_name}",
                retryable=True,
            )
        self.circuit_breaker.record_success()
        if response.status_code >= 400:
            raise ExecutorError(
                f"Build service rejected {request.stage_name}: {response.status_code} {response.text}",
                retryable=False,
            )

        payload = response.json()
        invocation_id = payload.get("invocation_id")
        if response.status_code == 202:
            logger.info(
                "Build service accepted %s for %s (invocation %s)",
                request.stage_name, request.revision_id, invocation_id,
            )
            return StageOutcome.pending(invocation_id)

        try:
            status = OutcomeStatus(payload.get("status"))
        except ValueError as error:
            raise ExecutorError(
                f"Build service returned unknown status {payload.get('status')!r}", retryable=False
            ) from error
        return StageOutcome(
            status=status,
            retryable=bool(payload.get("retryable", False)),
            message=payload.get("message", ""),
            invocation_id=invocation_id,
        )

    async def cancel(self, revision_id: str, stage_name: str, invocation_id: Optional[str]) -> None:
        """Best-effort cancellation; failures are logged, not raised."""
        if not invocation_id:
            return
        try:
            async with self._client() as client:
                response = await client.post(f"/invocations/{invocation_id}/cancel")
                response.raise_for_status()
        except httpx.HTTPError as error:
            logger.warning(
                "Failed to cancel %s for %s (invocation %s): %s",
                stage_name, revision_id, invocation_id, error,
            )
