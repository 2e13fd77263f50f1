"""Background task that rejects revisions whose approval window has passed."""
import asyncio
import contextlib
import logging
from typing import Optional

from costgate.services.event_router import EventRouter

logger = logging.getLogger(__name__)


class ApprovalTimeoutSweeper:
    """Runs ``EventRouter.expire_approvals`` on a fixed interval within the app lifespan."""

    def __init__(self, router: EventRouter, interval_seconds: float):
        self._router = router
        self._interval = interval_seconds
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("Approval timeout sweeper started (every %ss)", self._interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        logger.info("Approval timeout sweeper stopped")

    async def _loop(self) -> None:
        while self._running:
            try:
                await self._router.expire_approvals()
            except Exception:
                logger.exception("Error while expiring approvals")
            await asyncio.sleep(self._interval)
