"""
GitHub webhook endpoint.
Translates pull request and review deliveries into pipeline events.
"""
from typing import Dict, Any, List
import hashlib
import hmac
import json
import logging

from fastapi import APIRouter, HTTPException, Request

from costgate.api.events import dispatch
from costgate.core.config import config
from costgate.domain.events import (
    ApprovalReceivedEvent,
    NewRevisionEvent,
    PipelineEvent,
    RevisionClosedEvent,
)
from costgate.domain.pipeline_models import ApprovalDecision


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])

SHA_PREFIX_LENGTH = 12


def revision_id_for(pr_number: int, head_sha: str) -> str:
    """One revision per pushed head of a pull request."""
    return f"pr-{pr_number}-{head_sha[:SHA_PREFIX_LENGTH]}"


def verify_signature(secret: str, body: bytes, signature_header: str) -> bool:
    """Check GitHub's X-Hub-Signature-256 header against the raw body."""
    if not signature_header or not signature_header.startswith("sha256="):
        return False
    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(f"sha256={expected}", signature_header)


def pull_request_events(payload: Dict[str, Any]) -> List[PipelineEvent]:
    """Map a pull_request delivery to pipeline events."""
    action = payload.get("action")
    pull_request = payload.get("pull_request") or {}
    number = pull_request.get("number") or payload.get("number")
    head = pull_request.get("head") or {}
    base = pull_request.get("base") or {}
    head_sha = head.get("sha")
    if number is None or not head_sha:
        raise HTTPException(status_code=422, detail="pull_request payload missing number or head sha")

    revision_id = revision_id_for(number, head_sha)
    events: List[PipelineEvent] = []

    if action in ("opened", "reopened", "synchronize"):
        previous_sha = payload.get("before")
        if action == "synchronize" and previous_sha:
            # The old head is superseded by the push
            events.append(RevisionClosedEvent(revision_id=revision_id_for(number, previous_sha)))
        events.append(NewRevisionEvent(
            revision_id=revision_id,
            source_ref=head_sha,
            target_ref=base.get("ref") or "main",
        ))
    elif action == "closed":
        events.append(RevisionClosedEvent(revision_id=revision_id))
    return events


def review_events(payload: Dict[str, Any]) -> List[PipelineEvent]:
    """Map a pull_request_review delivery to an approval decision."""
    if payload.get("action") != "submitted":
        return []
    review = payload.get("review") or {}
    number = (payload.get("pull_request") or {}).get("number")
    commit_id = review.get("commit_id")
    if number is None or not commit_id:
        raise HTTPException(status_code=422, detail="pull_request_review payload missing number or commit")

    state = (review.get("state") or "").lower()
    if state == "approved":
        decision = ApprovalDecision.APPROVED
    elif state == "changes_requested":
        decision = ApprovalDecision.REJECTED
    else:
        return []
    return [ApprovalReceivedEvent(
        revision_id=revision_id_for(number, commit_id),
        decision=decision,
        approver=(review.get("user") or {}).get("login"),
    )]


@router.post("/github", status_code=202)
async def github_webhook(request: Request) -> Dict[str, Any]:
    """
    Receive a GitHub webhook delivery.

    Raises:
        HTTPException: 401 on a bad signature, 400 on a non-JSON body,
                       422 on a payload missing required fields
    """
    body = await request.body()
    if config.GITHUB_WEBHOOK_SECRET:
        signature = request.headers.get("X-Hub-Signature-256", "")
        if not verify_signature(config.GITHUB_WEBHOOK_SECRET, body, signature):
            logger.warning("Rejected webhook delivery with invalid signature")
            raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload = json.loads(body)
    except json.JSONDecodeError as error:
        raise HTTPException(status_code=400, detail="Body must be JSON") from error

    event_name = request.headers.get("X-GitHub-Event", "")
    if event_name == "pull_request":
        events = pull_request_events(payload)
    elif event_name == "pull_request_review":
        events = review_events(payload)
    else:
        logger.debug("Ignoring GitHub event %s", event_name)
        events = []

    for event in events:
        await dispatch(request, event)

    return {
        "status": "accepted",
        "events": [{"kind": event.kind, "revision_id": event.revision_id} for event in events],
    }
