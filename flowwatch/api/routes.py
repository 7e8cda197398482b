"""Webhook ingress routes.

Signed GitHub review events that request changes become remediation tasks
through the same deduplicating, expiring queue the supervision loop uses.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from flowwatch.logging_config import get_logger
from flowwatch.supervisor.models import drift_signature
from flowwatch.supervisor.task_queue import QueueTask, TaskPriority, TaskQueue

logger = get_logger(__name__)

router = APIRouter()

MAX_BODY_BYTES = 1024 * 1024
WEBHOOK_SOURCE = "webhook"
REVIEW_ANOMALY = "pr_changes_requested"


# ── Request / Response Models ────────────────────────────────────────

class ReviewUser(BaseModel):
    login: str = "unknown"


class Review(BaseModel):
    id: int
    state: str
    body: Optional[str] = None
    html_url: Optional[str] = None
    user: ReviewUser = Field(default_factory=ReviewUser)


class PullRequest(BaseModel):
    number: int
    title: str = ""
    html_url: Optional[str] = None


class Repository(BaseModel):
    full_name: str


class ReviewEvent(BaseModel):
    """Subset of the pull_request_review payload the ingress needs."""

    action: str = ""
    review: Review
    pull_request: PullRequest
    repository: Repository


class WebhookResponse(BaseModel):
    status: str
    task_id: Optional[str] = None


# ── Rate limiting & signatures ───────────────────────────────────────

class FixedWindowRateLimiter:
    """Allows ``limit`` requests per window; the counter resets at window boundaries."""

    def __init__(self, limit: int, window_seconds: float) -> None:
        self._limit = limit
        self._window = window_seconds
        self._window_start = time.monotonic()
        self._count = 0

    def allow(self, now: Optional[float] = None) -> bool:
        now = time.monotonic() if now is None else now
        if now - self._window_start >= self._window:
            self._window_start = now
            self._count = 0
        if self._count >= self._limit:
            return False
        self._count += 1
        return True


def verify_signature(secret: str, body: bytes, header: Optional[str]) -> bool:
    """Check an ``X-Hub-Signature-256`` header (``sha256=<hex>``) in constant time."""
    if not header or not header.startswith("sha256="):
        return False
    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, header[len("sha256="):])


# ── Dependencies (set from app.py) ───────────────────────────────────

_queue: Optional[TaskQueue] = None
_secret: str = ""
_limiter: Optional[FixedWindowRateLimiter] = None


def configure(queue: TaskQueue, secret: str, limiter: FixedWindowRateLimiter) -> None:
    """Inject the queue, webhook secret and rate limiter."""
    global _queue, _secret, _limiter
    _queue = queue
    _secret = secret
    _limiter = limiter


def get_queue() -> TaskQueue:
    if _queue is None:
        raise HTTPException(status_code=503, detail="Queue not initialized")
    return _queue


def review_task(event: ReviewEvent) -> QueueTask:
    """Build the remediation task for a changes-requested review."""
    pr = event.pull_request
    context = {
        "repository": event.repository.full_name,
        "pr_number": pr.number,
        "review_id": event.review.id,
    }
    prompt = "\n".join([
        f"## Review Requested Changes: {event.repository.full_name}#{pr.number}\n",
        f"### Pull Request\n{pr.title or '(untitled)'}"
        + (f"\n{pr.html_url}" if pr.html_url else "") + "\n",
        f"### Review by {event.review.user.login}\n{(event.review.body or '(no comment)').strip()}\n",
        "### Suggested Action\nAddress every review comment, push the fixes and re-request review.\n",
    ])
    return QueueTask(
        prompt=prompt,
        anomaly_type=REVIEW_ANOMALY,
        source=WEBHOOK_SOURCE,
        priority=TaskPriority.HIGH,
        suggested_agent="code-reviewer",
        context={**context, "reviewer": event.review.user.login},
        signature=drift_signature(WEBHOOK_SOURCE, REVIEW_ANOMALY, context),
    )


# ── Routes ───────────────────────────────────────────────────────────

@router.get("/health")
async def health_check() -> dict[str, Any]:
    """Ingress health and pending task count."""
    queue = get_queue()
    return {"status": "ok", "pending_tasks": queue.get_pending_count()}


@router.post("/webhook", response_model=WebhookResponse)
async def receive_webhook(request: Request) -> WebhookResponse:
    """Validate and ingest one GitHub webhook delivery."""
    if _limiter is not None and not _limiter.allow():
        raise HTTPException(status_code=429, detail="Rate limit exceeded")

    body = await request.body()
    if len(body) > MAX_BODY_BYTES:
        raise HTTPException(status_code=413, detail="Payload too large")
    if not verify_signature(_secret, body, request.headers.get("x-hub-signature-256")):
        logger.warning("webhook_invalid_signature", client=request.client.host if request.client else None)
        raise HTTPException(status_code=401, detail="Invalid signature")

    event_type = request.headers.get("x-github-event", "")
    if event_type != "pull_request_review":
        return WebhookResponse(status="ignored")

    try:
        event = ReviewEvent.model_validate(json.loads(body))
    except ValueError as exc:
        # Authenticated but unusable payloads are acknowledged, not retried
        logger.warning("webhook_payload_invalid", error=str(exc)[:200])
        return WebhookResponse(status="ignored")

    if event.review.state.lower() != "changes_requested":
        return WebhookResponse(status="received")

    task_id = get_queue().add_task(review_task(event))
    logger.info(
        "webhook_review_queued",
        task_id=task_id,
        repository=event.repository.full_name,
        pr=event.pull_request.number,
    )
    return WebhookResponse(status="queued", task_id=task_id)
