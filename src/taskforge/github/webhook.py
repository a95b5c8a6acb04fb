"""GitHub webhook endpoint for TaskForge.

Handles GitHub webhook events to keep the task board in sync:
- pull_request.closed (merged) → task done
- pull_request.closed (not merged) → task back to todo
- pull_request.reopened / ready_for_review → task in review
- ping → pong
"""

import json
import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from taskforge.config import settings
from taskforge.errors import SignatureInvalid
from taskforge.github.reconciler import WebhookEvent, WebhookReconciler, require_signature

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


def get_webhook_secret() -> Optional[str]:
    return settings.github_webhook_secret


def get_reconciler(request: Request) -> WebhookReconciler:
    return request.app.state.reconciler


@router.post("/github")
async def github_webhook(
    request: Request,
    x_github_event: str = Header(..., alias="X-GitHub-Event"),
    x_hub_signature_256: Optional[str] = Header(None, alias="X-Hub-Signature-256"),
    x_github_delivery: Optional[str] = Header(None, alias="X-GitHub-Delivery"),
    secret: Optional[str] = Depends(get_webhook_secret),
    reconciler: WebhookReconciler = Depends(get_reconciler),
):
    """Handle GitHub webhook events."""
    if not secret:
        logger.error("GITHUB_WEBHOOK_SECRET not configured")
        raise HTTPException(status_code=500, detail="Webhook secret not configured")

    payload = await request.body()
    try:
        require_signature(payload, x_hub_signature_256, secret)
    except SignatureInvalid as e:
        logger.warning(f"Invalid webhook signature (delivery {x_github_delivery})")
        raise HTTPException(status_code=401, detail=str(e))

    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail="Invalid JSON payload")

    event = WebhookEvent.from_payload(x_github_event, data, delivery_id=x_github_delivery)
    logger.info(f"Received GitHub webhook: {event.event_type} (delivery {event.delivery_id})")

    if event.event_type == "ping":
        return handle_ping_event(data)

    if event.event_type != "pull_request":
        logger.info(f"Unhandled GitHub event: {event.event_type}")
        return {"status": "ignored", "event": event.event_type}

    result = reconciler.handle_pull_request_event(
        event.action,
        data.get("pull_request") or {},
        data.get("repository") or {},
    )
    return {"status": "processed", "event": event.event_type, "result": result}


def handle_ping_event(data: dict[str, Any]) -> dict:
    """Handle ping event (webhook setup verification)."""
    return {
        "status": "pong",
        "zen": data.get("zen"),
        "hook_id": data.get("hook_id"),
    }


@router.get("/health")
async def webhook_health(secret: Optional[str] = Depends(get_webhook_secret)):
    return {"status": "ok", "webhook_secret_configured": bool(secret)}
