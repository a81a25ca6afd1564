import pytest
from fastapi.testclient import TestClient

from src.dependencies import get_dispatch_queue, get_dispatcher, get_retry_policy, get_webhook_store
from src.main import app
from src.observability import incr_metric, metrics_snapshot, reset_metrics
from src.providers.brevo.client import BrevoConfig
from src.routers import internal_dispatch as internal_dispatch_router
from src.stores.dispatch_jobs import DispatchJobQueue
from src.stores.webhooks import WebhookStore
from src.workers.dispatch import RetryPolicy, WebhookDispatcher

_HEADERS = {"X-Internal-Scheduler-Secret": "scheduler-secret"}


def _set_overrides(fake_db):
    store = WebhookStore(fake_db)
    app.dependency_overrides[get_webhook_store] = lambda: store
    app.dependency_overrides[get_dispatch_queue] = lambda: DispatchJobQueue(fake_db)
    app.dependency_overrides[get_dispatcher] = lambda: WebhookDispatcher(store=store, config=BrevoConfig())
    app.dependency_overrides[get_retry_policy] = lambda: RetryPolicy()
    return store


@pytest.fixture(autouse=True)
def _clear_overrides():
    try:
        yield
    finally:
        app.dependency_overrides.clear()


def test_run_scheduled_requires_secret(fake_db, monkeypatch):
    monkeypatch.setattr(internal_dispatch_router.settings, "internal_scheduler_secret", "scheduler-secret")
    _set_overrides(fake_db)
    client = TestClient(app)

    missing = client.post("/api/internal/dispatch/run-scheduled", json={})
    wrong = client.post(
        "/api/internal/dispatch/run-scheduled",
        json={},
        headers={"X-Internal-Scheduler-Secret": "nope"},
    )

    assert missing.status_code == 401
    assert wrong.status_code == 401


def test_run_scheduled_unavailable_without_configured_secret(fake_db, monkeypatch):
    monkeypatch.setattr(internal_dispatch_router.settings, "internal_scheduler_secret", None)
    _set_overrides(fake_db)
    client = TestClient(app)

    response = client.post("/api/internal/dispatch/run-scheduled", json={}, headers=_HEADERS)

    assert response.status_code == 503


def test_run_scheduled_drains_due_jobs(fake_db, monkeypatch):
    monkeypatch.setattr(internal_dispatch_router.settings, "internal_scheduler_secret", "scheduler-secret")
    store = _set_overrides(fake_db)
    queue = DispatchJobQueue(fake_db)
    due = store.create({"email": "a@b.com"})
    later = store.create({"email": "b@b.com"})
    queue.enqueue(due.id)
    later_job = queue.enqueue(later.id)
    fake_db.tables["webhook_dispatch_jobs"][1]["next_attempt_at"] = "2999-01-01T00:00:00+00:00"
    client = TestClient(app)

    response = client.post("/api/internal/dispatch/run-scheduled", json={"limit": 10}, headers=_HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["claimed"] == 1
    assert body["succeeded"] == 1
    assert body["results"][0]["webhook_id"] == due.id
    assert body["results"][0]["outcome"] == "simulated"
    assert queue.get(later_job.id).status == "queued"


def test_list_webhooks_with_scopes(fake_db, monkeypatch):
    monkeypatch.setattr(internal_dispatch_router.settings, "internal_scheduler_secret", "scheduler-secret")
    store = _set_overrides(fake_db)
    ok = store.create({"email": "a@b.com", "name": "Ana"})
    bad = store.create({"phone": "0700"})
    store.mark_processed(ok.id, "Email sent via Brevo. Message ID: <m>")
    store.mark_failed(bad.id, "No email address found in webhook data")
    client = TestClient(app)

    failed = client.get("/api/internal/dispatch/webhooks?processed=false", headers=_HEADERS)
    errored = client.get("/api/internal/dispatch/webhooks?with_errors=true", headers=_HEADERS)

    assert failed.status_code == 200
    assert [item["id"] for item in failed.json()] == [bad.id]
    assert failed.json()[0]["summary"] == "No standard fields"
    assert {item["id"] for item in errored.json()} == {ok.id, bad.id}


def test_metrics_snapshot_and_reset(fake_db, monkeypatch):
    monkeypatch.setattr(internal_dispatch_router.settings, "internal_scheduler_secret", "scheduler-secret")
    _set_overrides(fake_db)
    reset_metrics()
    incr_metric("dispatch.outcome", outcome="sent")
    incr_metric("dispatch.outcome", outcome="sent")
    client = TestClient(app)

    unauthorized = client.get("/api/internal/dispatch/metrics")
    response = client.get("/api/internal/dispatch/metrics?reset=true", headers=_HEADERS)

    assert unauthorized.status_code == 401
    assert response.status_code == 200
    body = response.json()
    assert body["reset"] is True
    assert body["counters"]["dispatch.outcome|outcome=sent"] == 2
    assert body["counters"]["dispatch.scheduled.auth_failed"] == 1
    assert metrics_snapshot() == {}
