"""
API routes for pipeline events and revision queries.
"""
from typing import Dict, Any, Optional
import hmac
import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request

from costgate.core.config import config
from costgate.core.errors import ReconciliationError
from costgate.domain.events import EventEnvelope, PipelineEvent
from costgate.domain.pipeline_models import RevisionState
from costgate.services.event_router import EventRouter


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api", tags=["pipeline"])


def get_event_router(request: Request) -> EventRouter:
    event_router = getattr(request.app.state, "event_router", None)
    if event_router is None:
        raise HTTPException(status_code=503, detail="Pipeline is not ready")
    return event_router


async def dispatch(request: Request, event: PipelineEvent) -> None:
    """
    Route an event; a reconciliation failure halts this request with a 500.

    Raises:
        HTTPException: 500 if the cost diff did not reconcile
    """
    try:
        await get_event_router(request).route(event)
    except ReconciliationError as error:
        logger.critical("Cost reconciliation failed for %s: %s", event.revision_id, error)
        raise HTTPException(
            status_code=500,
            detail="Cost estimate failed an internal consistency check"
        ) from error


def verify_events_token(authorization: Optional[str] = Header(None)) -> None:
    """
    Check the caller's bearer token against EVENTS_API_TOKEN.

    Raises:
        HTTPException: 401 if the token is missing or wrong, or none is configured
    """
    scheme, _, token = (authorization or "").partition(" ")
    if (
        not config.EVENTS_API_TOKEN
        or scheme.lower() != "bearer"
        or not hmac.compare_digest(token.strip().encode(), config.EVENTS_API_TOKEN.encode())
    ):
        raise HTTPException(
            status_code=401,
            detail="Missing or invalid events token",
            headers={"WWW-Authenticate": "Bearer"},
        )


@router.post("/events", status_code=202, dependencies=[Depends(verify_events_token)])
async def post_event(request: Request, envelope: EventEnvelope) -> Dict[str, Any]:
    """
    Accept one pipeline event from source control or the build service.

    Returns:
        The revision's state after the event was handled (if it exists)
    """
    event = envelope.event
    await dispatch(request, event)
    record = get_event_router(request).context.store.get(event.revision_id)
    return {
        "status": "accepted",
        "revision_id": event.revision_id,
        "state": record.state.value if record else None,
    }


@router.get("/revisions")
async def list_revisions(
    request: Request,
    state: Optional[RevisionState] = Query(None, description="Only revisions in this state")
) -> Dict[str, Any]:
    store = get_event_router(request).context.store
    records = store.list(state)
    return {
        "status": "ok",
        "revisions": [
            {
                "revision_id": record.revision_id,
                "state": record.state.value,
                "decision": record.decision.value if record.decision else None,
                "delta_total": str(record.last_diff.delta_total) if record.last_diff else None,
                "last_error": record.last_error,
                "updated_at": record.updated_at.isoformat(),
            }
            for record in records
        ],
    }


@router.get("/revisions/{revision_id}")
async def get_revision(request: Request, revision_id: str) -> Dict[str, Any]:
    """
    Return a revision's full record: state, stage history, last diff and last error.

    Raises:
        HTTPException: 404 if the revision is unknown
    """
    record = get_event_router(request).context.store.get(revision_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Revision {revision_id} not found")
    return {"status": "ok", "revision": record.to_dict()}
