from __future__ import annotations

import logging
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any

from src.domain.errors import MissingContactError, NotificationError, WebhookNotFoundError
from src.domain.extraction import (
    ALLOWED_REFERRER_URLS,
    Contact,
    extract_referrer_url,
    is_allowed_referrer,
    parse_entries,
    resolve_contact,
)
from src.models.webhooks import DispatchJob, DispatchOutcome, DispatchRunItem, DispatchRunResponse
from src.observability import incr_metric, log_event
from src.providers.brevo.client import BrevoClient, BrevoConfig
from src.providers.brevo.email import NotificationRequest
from src.stores.dispatch_jobs import DispatchJobQueue
from src.stores.webhooks import WebhookStore


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_seconds: float = 30.0
    max_delay_seconds: float = 600.0

    def delay_for(self, attempt: int) -> float:
        return min(self.base_delay_seconds * (2 ** max(0, attempt - 1)), self.max_delay_seconds)

    @classmethod
    def from_settings(cls, settings: Any) -> RetryPolicy:
        return cls(
            max_attempts=max(1, int(settings.dispatch_max_attempts or 1)),
            base_delay_seconds=max(0.0, float(settings.dispatch_retry_base_delay_seconds or 0.0)),
            max_delay_seconds=max(0.0, float(settings.dispatch_retry_max_delay_seconds or 0.0)),
        )


class WebhookDispatcher:
    """Turns one stored webhook into a Brevo template email.

    ``handle`` either returns an outcome after writing a terminal state to the
    record, or writes a failure and re-raises so the job runner can retry it.
    """

    def __init__(
        self,
        store: WebhookStore,
        config: BrevoConfig,
        client: BrevoClient | None = None,
        allowed_referrers: tuple[str, ...] = ALLOWED_REFERRER_URLS,
    ) -> None:
        self.store = store
        self.config = config
        self.allowed_referrers = allowed_referrers
        if client is None and config.is_configured:
            client = BrevoClient(config)
        self.client = client

    def handle(self, webhook_id: str, request_id: str | None = None) -> DispatchOutcome:
        webhook = self.store.get(webhook_id)
        if webhook is None:
            raise WebhookNotFoundError(f"Webhook {webhook_id} not found")
        if webhook.processed:
            # A requeued job must not send the same email twice.
            log_event("webhook_dispatch_already_processed", request_id=request_id, webhook_id=webhook_id)
            return "already_processed"

        payload = webhook.payload
        entries = parse_entries(payload) or {}

        referrer_url = extract_referrer_url(payload, entries)
        if referrer_url is not None and not is_allowed_referrer(referrer_url, self.allowed_referrers):
            self.store.mark_processed(webhook_id, f"Skipped - referrer not allowed: {referrer_url}")
            incr_metric("dispatch.outcome", outcome="skipped")
            log_event(
                "webhook_dispatch_skipped",
                request_id=request_id,
                webhook_id=webhook_id,
                referrer_url=referrer_url,
            )
            return "skipped"

        try:
            contact = resolve_contact(payload, entries)
        except MissingContactError as exc:
            self.store.mark_failed(webhook_id, str(exc))
            incr_metric("dispatch.outcome", outcome="missing_contact")
            log_event(
                "webhook_dispatch_missing_contact",
                level=logging.WARNING,
                request_id=request_id,
                webhook_id=webhook_id,
            )
            return "missing_contact"

        log_event(
            "webhook_dispatch_started",
            request_id=request_id,
            webhook_id=webhook_id,
            email=contact.email,
            first_name=contact.first_name,
        )

        if self.client is None or not self.config.is_configured:
            self.store.mark_processed(
                webhook_id,
                f"Simulated send - Brevo not configured. Would send to: {contact.email} "
                f"with FIRSTNAME={contact.first_name}, PRICEMP={contact.price}",
            )
            incr_metric("dispatch.outcome", outcome="simulated")
            log_event(
                "webhook_dispatch_simulated",
                level=logging.WARNING,
                request_id=request_id,
                webhook_id=webhook_id,
            )
            return "simulated"

        try:
            result = self.client.send_template_email(self.build_request(contact))
        except Exception as exc:
            self.store.mark_failed(webhook_id, f"Exception: {exc}")
            incr_metric("dispatch.attempts.failed", reason="exception")
            log_event(
                "webhook_dispatch_attempt_failed",
                level=logging.ERROR,
                request_id=request_id,
                webhook_id=webhook_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise

        if result.failed:
            self.store.mark_failed(webhook_id, f"Brevo API error: {result.error}")
            incr_metric("dispatch.attempts.failed", reason="provider_error", status_code=result.status_code)
            log_event(
                "webhook_dispatch_attempt_failed",
                level=logging.ERROR,
                request_id=request_id,
                webhook_id=webhook_id,
                error=result.error,
                status_code=result.status_code,
            )
            raise NotificationError(f"Brevo API error: {result.error}", status_code=result.status_code)

        self._add_to_list(webhook_id, contact, request_id=request_id)
        self.store.mark_processed(webhook_id, f"Email sent via Brevo. Message ID: {result.message_id}")
        incr_metric("dispatch.outcome", outcome="sent")
        log_event(
            "webhook_dispatch_sent",
            request_id=request_id,
            webhook_id=webhook_id,
            message_id=result.message_id,
        )
        return "sent"

    def handle_exhausted(self, webhook_id: str, exc: BaseException | str, request_id: str | None = None) -> None:
        self.store.mark_failed(webhook_id, f"Failed after retries: {exc}")
        incr_metric("dispatch.exhausted")
        log_event(
            "webhook_dispatch_exhausted",
            level=logging.ERROR,
            request_id=request_id,
            webhook_id=webhook_id,
            error=str(exc),
        )

    def build_request(self, contact: Contact) -> NotificationRequest:
        request = (
            NotificationRequest()
            .to(contact.email, contact.first_name)
            .template(self.config.default_template_id)
            .params(contact.template_params())
        )
        if self.config.sender_email:
            request.sender(self.config.sender_email, self.config.sender_name)
        return request

    def _add_to_list(self, webhook_id: str, contact: Contact, request_id: str | None = None) -> None:
        list_id = self.config.default_list_id
        if not list_id or self.client is None:
            return
        try:
            result = self.client.add_contact_to_list(
                contact.email,
                list_id,
                contact.template_params(),
                update_existing=True,
            )
        except Exception as exc:
            incr_metric("dispatch.list_add.failed", reason="exception")
            log_event(
                "webhook_list_add_failed",
                level=logging.WARNING,
                request_id=request_id,
                webhook_id=webhook_id,
                list_id=list_id,
                error=str(exc),
            )
            return
        if result.failed:
            incr_metric("dispatch.list_add.failed", reason="provider_error")
            log_event(
                "webhook_list_add_failed",
                level=logging.WARNING,
                request_id=request_id,
                webhook_id=webhook_id,
                list_id=list_id,
                error=result.error,
                status_code=result.status_code,
            )
            return
        incr_metric("dispatch.list_add.succeeded")
        log_event("webhook_list_add_succeeded", request_id=request_id, webhook_id=webhook_id, list_id=list_id)


def _item(
    job: DispatchJob,
    status: str,
    *,
    outcome: DispatchOutcome | None = None,
    error: str | None = None,
) -> DispatchRunItem:
    return DispatchRunItem(
        job_id=job.id,
        webhook_id=job.webhook_id,
        status=status,
        outcome=outcome,
        attempt_count=job.attempt_count,
        error=error,
    )


def _exhaust(
    claimed: DispatchJob,
    error: BaseException | str,
    *,
    dispatcher: WebhookDispatcher,
    queue: DispatchJobQueue,
    request_id: str | None,
) -> DispatchRunItem:
    dispatcher.handle_exhausted(claimed.webhook_id, error, request_id=request_id)
    queue.mark_exhausted(claimed, str(error))
    return _item(claimed, "exhausted", error=str(error))


def _settle(
    claimed: DispatchJob,
    *,
    dispatcher: WebhookDispatcher,
    queue: DispatchJobQueue,
    policy: RetryPolicy,
    request_id: str | None,
) -> DispatchRunItem:
    max_attempts = min(claimed.max_attempts, policy.max_attempts)
    if claimed.attempt_count > max_attempts:
        # Reclaimed after its final attempt; only the exhausted transition is left.
        error = claimed.last_error or "dispatch attempts exhausted"
        return _exhaust(claimed, error, dispatcher=dispatcher, queue=queue, request_id=request_id)

    try:
        outcome = dispatcher.handle(claimed.webhook_id, request_id=request_id)
    except WebhookNotFoundError as exc:
        queue.mark_failed(claimed, str(exc))
        log_event(
            "webhook_dispatch_orphaned",
            level=logging.ERROR,
            request_id=request_id,
            job_id=claimed.id,
            webhook_id=claimed.webhook_id,
        )
        return _item(claimed, "failed", error=str(exc))
    except NotificationError as exc:
        if not exc.retryable:
            queue.mark_failed(claimed, str(exc))
            incr_metric("dispatch.terminal_failures", category=exc.category)
            log_event(
                "webhook_dispatch_terminal_failure",
                level=logging.ERROR,
                request_id=request_id,
                job_id=claimed.id,
                webhook_id=claimed.webhook_id,
                status_code=exc.status_code,
                error=str(exc),
            )
            return _item(claimed, "failed", error=str(exc))
        return _retry_or_exhaust(
            claimed, exc, max_attempts, dispatcher=dispatcher, queue=queue, policy=policy, request_id=request_id
        )
    except Exception as exc:
        return _retry_or_exhaust(
            claimed, exc, max_attempts, dispatcher=dispatcher, queue=queue, policy=policy, request_id=request_id
        )

    queue.mark_succeeded(claimed)
    return _item(claimed, "succeeded", outcome=outcome)


def _retry_or_exhaust(
    claimed: DispatchJob,
    exc: Exception,
    max_attempts: int,
    *,
    dispatcher: WebhookDispatcher,
    queue: DispatchJobQueue,
    policy: RetryPolicy,
    request_id: str | None,
) -> DispatchRunItem:
    if claimed.attempt_count >= max_attempts:
        return _exhaust(claimed, exc, dispatcher=dispatcher, queue=queue, request_id=request_id)
    delay = policy.delay_for(claimed.attempt_count)
    queue.schedule_retry(claimed, str(exc), delay)
    incr_metric("dispatch.retries.scheduled")
    log_event(
        "webhook_dispatch_retry_scheduled",
        level=logging.WARNING,
        request_id=request_id,
        job_id=claimed.id,
        webhook_id=claimed.webhook_id,
        attempt_count=claimed.attempt_count,
        max_attempts=max_attempts,
        delay_seconds=delay,
    )
    return _item(claimed, "retry_scheduled", error=str(exc))


def _release(
    claimed: DispatchJob,
    exc: Exception,
    *,
    queue: DispatchJobQueue,
    policy: RetryPolicy,
    request_id: str | None,
) -> DispatchRunItem:
    """Requeue a claimed job whose state could not be recorded, so it is not stranded in ``running``."""
    incr_metric("dispatch.bookkeeping.failed")
    log_event(
        "webhook_dispatch_bookkeeping_failed",
        level=logging.ERROR,
        request_id=request_id,
        job_id=claimed.id,
        webhook_id=claimed.webhook_id,
        attempt_count=claimed.attempt_count,
        error=str(exc),
    )
    try:
        queue.schedule_retry(claimed, f"Bookkeeping failed: {exc}", policy.delay_for(claimed.attempt_count))
    except Exception as release_exc:
        # Left in running; due_jobs offers it again once the lease expires.
        log_event(
            "webhook_dispatch_release_failed",
            level=logging.ERROR,
            request_id=request_id,
            job_id=claimed.id,
            error=str(release_exc),
        )
    return _item(claimed, "failed", error=str(exc))


def run_job(
    job: DispatchJob,
    *,
    dispatcher: WebhookDispatcher,
    queue: DispatchJobQueue,
    policy: RetryPolicy,
    request_id: str | None = None,
) -> DispatchRunItem:
    """Claim one job, dispatch its webhook and record the result on the job.

    Non-retryable provider errors and orphaned jobs end as ``failed``. Anything
    else is retried with backoff until the attempt cap, then exhausted.
    """
    claimed = queue.claim(job)
    if claimed is None:
        return _item(job, "not_claimed")
    try:
        return _settle(claimed, dispatcher=dispatcher, queue=queue, policy=policy, request_id=request_id)
    except Exception as exc:
        return _release(claimed, exc, queue=queue, policy=policy, request_id=request_id)


def run_job_by_id(
    job_id: str,
    *,
    dispatcher: WebhookDispatcher,
    queue: DispatchJobQueue,
    policy: RetryPolicy,
    request_id: str | None = None,
) -> DispatchRunItem | None:
    """Background-task entry point: run a freshly enqueued job once, leaving retries to the scheduler."""
    try:
        job = queue.get(job_id)
        if job is None or job.status != "queued":
            return None
        return run_job(job, dispatcher=dispatcher, queue=queue, policy=policy, request_id=request_id)
    except Exception as exc:
        log_event(
            "webhook_dispatch_run_failed",
            level=logging.ERROR,
            request_id=request_id,
            job_id=job_id,
            error=str(exc),
        )
        return None


def run_due_jobs(
    *,
    dispatcher: WebhookDispatcher,
    queue: DispatchJobQueue,
    policy: RetryPolicy,
    limit: int = 25,
    workers: int = 4,
    queue_size: int = 8,
    request_id: str | None = None,
) -> DispatchRunResponse:
    jobs = queue.due_jobs(limit=limit)
    workers = max(1, min(workers, 32))
    queue_size = max(workers, queue_size)
    results: list[DispatchRunItem] = []

    def _work(job: DispatchJob) -> DispatchRunItem:
        try:
            return run_job(job, dispatcher=dispatcher, queue=queue, policy=policy, request_id=request_id)
        except Exception as exc:
            log_event(
                "webhook_dispatch_run_failed",
                level=logging.ERROR,
                request_id=request_id,
                job_id=job.id,
                error=str(exc),
            )
            return _item(job, "failed", error=str(exc))

    if jobs:
        with ThreadPoolExecutor(max_workers=workers) as executor:
            pending: set[Future[DispatchRunItem]] = set()
            idx = 0
            while idx < len(jobs) or pending:
                while idx < len(jobs) and len(pending) < queue_size:
                    pending.add(executor.submit(_work, jobs[idx]))
                    idx += 1
                done, pending = wait(pending, return_when=FIRST_COMPLETED)
                for future in done:
                    results.append(future.result())

    response = DispatchRunResponse(
        claimed=sum(1 for item in results if item.status != "not_claimed"),
        succeeded=sum(1 for item in results if item.status == "succeeded"),
        retried=sum(1 for item in results if item.status == "retry_scheduled"),
        exhausted=sum(1 for item in results if item.status == "exhausted"),
        failed=sum(1 for item in results if item.status == "failed"),
        results=results,
    )
    log_event(
        "webhook_dispatch_batch_completed",
        request_id=request_id,
        due=len(jobs),
        claimed=response.claimed,
        succeeded=response.succeeded,
        retried=response.retried,
        exhausted=response.exhausted,
        failed=response.failed,
    )
    return response
