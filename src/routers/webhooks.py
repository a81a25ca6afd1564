from __future__ import annotations

import json
import logging
from typing import Any
from urllib.parse import parse_qsl

from fastapi import APIRouter, BackgroundTasks, Depends, Request, status
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from src.config import settings
from src.dependencies import get_dispatch_queue, get_dispatcher, get_retry_policy, get_webhook_store
from src.domain.errors import PersistenceError
from src.models.webhooks import WebhookIngestResponse
from src.observability import incr_metric, log_event
from src.stores.dispatch_jobs import DispatchJobQueue
from src.stores.webhooks import WebhookStore
from src.workers.dispatch import RetryPolicy, WebhookDispatcher, run_job_by_id


router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


def _request_id(request: Request | None) -> str | None:
    if not request:
        return None
    return getattr(getattr(request, "state", None), "request_id", None)


def _fold_items(items) -> dict[str, Any]:
    """Collapse form pairs into a dict, keeping every value of a repeated key as a list."""
    folded: dict[str, Any] = {}
    for key, value in items:
        if key not in folded:
            folded[key] = value
        elif isinstance(folded[key], list):
            folded[key].append(value)
        else:
            folded[key] = [folded[key], value]
    return folded


def _describe_upload(upload: Any) -> dict[str, Any]:
    return {
        "filename": getattr(upload, "filename", None),
        "content_type": getattr(upload, "content_type", None),
        "size": getattr(upload, "size", None),
    }


async def _read_payload(request: Request) -> dict[str, Any]:
    """Decode the inbound body into a JSON object without discarding anything the sender sent."""
    content_type = (request.headers.get("content-type") or "").lower()
    raw_body = await request.body()
    text = raw_body.decode("utf-8", errors="replace")
    if not text.strip():
        return {"raw_body": text, "empty_body": True}

    if content_type.startswith("multipart/form-data"):
        try:
            form = await request.form()
        except StarletteHTTPException:
            return {"raw_body": text, "malformed_form": True}
        folded = _fold_items(
            (key, value if isinstance(value, str) else _describe_upload(value))
            for key, value in form.multi_items()
        )
        return folded or {"raw_body": text, "empty_body": True}
    if content_type.startswith("application/x-www-form-urlencoded"):
        folded = _fold_items(parse_qsl(text, keep_blank_values=True))
        return folded or {"raw_body": text, "empty_body": True}
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        return {"raw_body": text, "malformed_json": True}
    if isinstance(parsed, dict):
        return parsed
    return {"raw_payload": parsed}


@router.post("/metform", response_model=WebhookIngestResponse)
async def ingest_metform_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    store: WebhookStore = Depends(get_webhook_store),
    queue: DispatchJobQueue = Depends(get_dispatch_queue),
    dispatcher: WebhookDispatcher = Depends(get_dispatcher),
    policy: RetryPolicy = Depends(get_retry_policy),
):
    req_id = _request_id(request)
    incr_metric("webhook.events.received", source="metform")
    payload = await _read_payload(request)

    try:
        webhook = store.create(payload)
        job = queue.enqueue(webhook.id, max_attempts=settings.dispatch_max_attempts)
    except PersistenceError as exc:
        incr_metric("webhook.events.failed", source="metform")
        log_event(
            "webhook_store_failed",
            level=logging.ERROR,
            request_id=req_id,
            source="metform",
            error=str(exc),
            payload=payload,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "message": "Failed to store webhook data"},
        )

    incr_metric("webhook.events.accepted", source="metform")
    log_event(
        "webhook_received",
        request_id=req_id,
        source="metform",
        webhook_id=webhook.id,
        job_id=job.id,
    )
    background_tasks.add_task(
        run_job_by_id,
        job.id,
        dispatcher=dispatcher,
        queue=queue,
        policy=policy,
        request_id=req_id,
    )
    return WebhookIngestResponse(
        success=True,
        message="Webhook received successfully",
        webhook_id=webhook.id,
    )
