from __future__ import annotations

import hmac

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from src.config import settings
from src.dependencies import get_dispatch_queue, get_dispatcher, get_retry_policy, get_webhook_store
from src.domain.errors import PersistenceError
from src.models.webhooks import DispatchRunRequest, DispatchRunResponse, WebhookListItem
from src.observability import incr_metric, log_event, metrics_snapshot, reset_metrics
from src.stores.dispatch_jobs import DispatchJobQueue
from src.stores.webhooks import WebhookStore
from src.workers.dispatch import RetryPolicy, WebhookDispatcher, run_due_jobs


router = APIRouter(prefix="/api/internal/dispatch", tags=["internal-dispatch"])


def _require_scheduler_secret(
    request: Request,
    x_internal_scheduler_secret: str | None = Header(default=None),
) -> None:
    configured_secret = settings.internal_scheduler_secret
    if not configured_secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="internal scheduler secret is not configured",
        )
    if not x_internal_scheduler_secret or not hmac.compare_digest(
        x_internal_scheduler_secret,
        configured_secret,
    ):
        incr_metric("dispatch.scheduled.auth_failed")
        log_event("dispatch_scheduled_auth_failed", request_id=getattr(request.state, "request_id", None))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid scheduler secret",
        )


@router.post(
    "/run-scheduled",
    response_model=DispatchRunResponse,
    dependencies=[Depends(_require_scheduler_secret)],
)
def run_dispatch_scheduled(
    data: DispatchRunRequest,
    request: Request,
    queue: DispatchJobQueue = Depends(get_dispatch_queue),
    dispatcher: WebhookDispatcher = Depends(get_dispatcher),
    policy: RetryPolicy = Depends(get_retry_policy),
):
    request_id = getattr(request.state, "request_id", None)
    incr_metric("dispatch.scheduled.runs")
    try:
        return run_due_jobs(
            dispatcher=dispatcher,
            queue=queue,
            policy=policy,
            limit=min(data.limit, max(1, settings.dispatch_batch_size)),
            workers=settings.dispatch_max_concurrent_workers,
            queue_size=settings.dispatch_queue_size,
            request_id=request_id,
        )
    except PersistenceError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"type": "dispatch_queue_unavailable", "message": str(exc)},
        ) from exc


@router.get(
    "/webhooks",
    response_model=list[WebhookListItem],
    dependencies=[Depends(_require_scheduler_secret)],
)
async def list_webhooks(
    processed: bool | None = None,
    with_errors: bool = False,
    limit: int = 50,
    offset: int = 0,
    store: WebhookStore = Depends(get_webhook_store),
):
    try:
        records = store.list_records(processed=processed, with_errors=with_errors, limit=limit, offset=offset)
    except PersistenceError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"type": "webhook_store_unavailable", "message": str(exc)},
        ) from exc
    return [
        WebhookListItem(
            id=record.id,
            processed=record.processed,
            processed_at=record.processed_at,
            error_message=record.error_message,
            summary=record.summary(),
            created_at=record.created_at,
            updated_at=record.updated_at,
        )
        for record in records
    ]


@router.get("/metrics", dependencies=[Depends(_require_scheduler_secret)])
async def get_dispatch_metrics(reset: bool = False):
    counters = metrics_snapshot()
    if reset:
        reset_metrics()
    return {"counters": counters, "reset": reset}
