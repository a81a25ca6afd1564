from src.config import settings
from src.db import get_supabase
from src.domain.extraction import parse_allowed_referrers
from src.providers.brevo.client import BrevoConfig
from src.stores.dispatch_jobs import DispatchJobQueue
from src.stores.webhooks import WebhookStore
from src.workers.dispatch import RetryPolicy, WebhookDispatcher


def get_webhook_store() -> WebhookStore:
    return WebhookStore(get_supabase())


def get_dispatch_queue() -> DispatchJobQueue:
    return DispatchJobQueue(get_supabase(), lease_seconds=settings.dispatch_job_lease_seconds)


def get_retry_policy() -> RetryPolicy:
    return RetryPolicy.from_settings(settings)


def get_dispatcher() -> WebhookDispatcher:
    return WebhookDispatcher(
        store=get_webhook_store(),
        config=BrevoConfig.from_settings(settings),
        allowed_referrers=parse_allowed_referrers(settings.metform_allowed_referrers),
    )
