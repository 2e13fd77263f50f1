"""
Main FastAPI application bootstrap.
Wires the pipeline collaborators and includes routers.
"""
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional
import logging

from fastapi import FastAPI

from costgate.api.events import router as events_router
from costgate.api.webhooks import router as webhooks_router
from costgate.core.config import config
from costgate.domain.pipeline_models import ApprovalPolicy
from costgate.services.approval_sweeper import ApprovalTimeoutSweeper
from costgate.services.build_service_client import HttpBuildServiceClient
from costgate.services.event_router import EventRouter
from costgate.services.github_client import GitHubClient
from costgate.services.notifications import LoggingNotificationSink, WebhookNotificationSink
from costgate.services.pipeline_state_machine import PipelineContext
from costgate.services.revision_store import SQLiteRevisionStore
from costgate.services.stage_executors import (
    CommandSequenceExecutor,
    CostPlanExecutor,
    ManualApprovalExecutor,
    build_commands,
    deploy_commands,
)


logger = logging.getLogger(__name__)


def build_event_router() -> EventRouter:
    """Build the production pipeline from configuration."""
    try:
        config.validate()
    except ValueError as error:
        # Fail fast with a clear, non-secret-bearing message
        raise RuntimeError(f"Configuration error: {error}") from error

    policy = ApprovalPolicy(
        threshold_monthly=config.threshold_monthly(),
        max_retries=config.EXECUTOR_MAX_RETRIES,
        approval_timeout_seconds=config.APPROVAL_TIMEOUT_SECONDS,
    )
    build_service = HttpBuildServiceClient()
    if config.NOTIFICATION_WEBHOOK_URL:
        sink = WebhookNotificationSink()
    else:
        logger.warning("NOTIFICATION_WEBHOOK_URL not set, approval requests will only be logged")
        sink = LoggingNotificationSink()

    context = PipelineContext(
        store=SQLiteRevisionStore(Path(config.STATE_DB_PATH)),
        executors={
            "cost-plan": CostPlanExecutor(GitHubClient(), policy),
            "manual-approval": ManualApprovalExecutor(sink),
            "terraform-build": CommandSequenceExecutor(build_service, build_commands()),
            "terraform-deploy": CommandSequenceExecutor(build_service, deploy_commands()),
        },
        policy=policy,
    )
    logger.info(
        "Pipeline configured for %s: threshold $%s/month, %d retries, approval timeout %ss",
        config.GITHUB_REPOSITORY, policy.threshold_monthly,
        policy.max_retries, policy.approval_timeout_seconds,
    )
    return EventRouter(context)


def create_app(event_router: Optional[EventRouter] = None) -> FastAPI:
    """
    Create the application. When no router is given, one is built from
    configuration on startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.event_router is None:
            app.state.event_router = build_event_router()
        await app.state.event_router.recover()
        sweeper = ApprovalTimeoutSweeper(app.state.event_router, config.APPROVAL_SWEEP_INTERVAL_SECONDS)
        await sweeper.start()
        try:
            yield
        finally:
            await sweeper.stop()

    app = FastAPI(
        title="Cost Gate",
        description="Cost-gated delivery pipeline for Terraform changes",
        lifespan=lifespan,
    )
    app.state.event_router = event_router

    app.include_router(events_router)
    app.include_router(webhooks_router)

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    return app


app = create_app()
