import pytest

from src.domain.errors import PersistenceError
from src.stores.webhooks import WebhookStore


def test_create_persists_payload_verbatim(fake_db):
    store = WebhookStore(fake_db)
    payload = {"email": "a@b.com", "entries": "{\"mf-email\":\"a@b.com\"}", "nested": {"x": [1, 2]}}

    record = store.create(payload)

    assert record.id == "metform_webhooks-1"
    assert record.payload == payload
    assert record.processed is False
    assert record.processed_at is None
    assert record.error_message is None
    assert len(fake_db.tables["metform_webhooks"]) == 1


def test_create_raises_persistence_error_when_store_unreachable(fake_db):
    fake_db.fail("metform_webhooks", "insert")
    store = WebhookStore(fake_db)

    with pytest.raises(PersistenceError):
        store.create({"email": "a@b.com"})


def test_mark_processed_is_idempotent(fake_db):
    store = WebhookStore(fake_db)
    record = store.create({"email": "a@b.com"})

    store.mark_processed(record.id, "Email sent via Brevo. Message ID: <m-1>")
    first = store.get(record.id)
    store.mark_processed(record.id, "Email sent via Brevo. Message ID: <m-1>")
    second = store.get(record.id)

    assert first.processed is True
    assert first.processed_at is not None
    assert first.error_message == "Email sent via Brevo. Message ID: <m-1>"
    assert second.model_dump(exclude={"updated_at"}) == first.model_dump(exclude={"updated_at"})
    assert second.processed_at == first.processed_at


def test_mark_processed_keeps_original_processed_at(fake_db):
    store = WebhookStore(fake_db)
    record = store.create({"email": "a@b.com"})
    fake_db.tables["metform_webhooks"][0]["processed_at"] = "2020-01-01T00:00:00+00:00"

    store.mark_processed(record.id, "Brevo not configured - simulated processing")

    row = fake_db.tables["metform_webhooks"][0]
    assert row["processed"] is True
    assert row["processed_at"] == "2020-01-01T00:00:00+00:00"
    assert row["error_message"] == "Brevo not configured - simulated processing"


def test_mark_failed_leaves_processed_at_untouched(fake_db):
    store = WebhookStore(fake_db)
    record = store.create({"email": "a@b.com"})

    store.mark_failed(record.id, "Brevo API error: bad request")
    failed = store.get(record.id)
    assert failed.processed is False
    assert failed.processed_at is None
    assert failed.error_message == "Brevo API error: bad request"

    store.mark_failed(record.id, "Brevo API error: bad request")
    assert store.get(record.id).model_dump(exclude={"updated_at"}) == failed.model_dump(exclude={"updated_at"})


def test_transitions_update_updated_at(fake_db):
    store = WebhookStore(fake_db)
    record = store.create({"email": "a@b.com"})
    fake_db.tables["metform_webhooks"][0]["updated_at"] = "2020-01-01T00:00:00+00:00"

    store.mark_failed(record.id, "boom")

    assert fake_db.tables["metform_webhooks"][0]["updated_at"] != "2020-01-01T00:00:00+00:00"


def test_transition_on_unknown_record_raises(fake_db):
    store = WebhookStore(fake_db)

    with pytest.raises(PersistenceError):
        store.mark_processed("missing", "note")


def test_list_records_scopes(fake_db):
    store = WebhookStore(fake_db)
    sent = store.create({"email": "a@b.com", "name": "Ana"})
    failed = store.create({"email": "b@b.com"})
    store.create({"phone": "123"})
    store.mark_processed(sent.id, None)
    store.mark_failed(failed.id, "boom")

    assert [r.id for r in store.list_records(processed=True)] == [sent.id]
    assert [r.id for r in store.list_records(with_errors=True)] == [failed.id]
    assert len(store.list_records(processed=False)) == 2
    assert len(store.list_records(limit=1)) == 1


def test_record_payload_accessors(fake_db):
    store = WebhookStore(fake_db)
    record = store.create(
        {
            "user_email": "ana@example.com",
            "first_name": "Ana",
            "last_name": "Pop",
            "telephone": "0700",
            "topic": "Offer",
            "meta": {"source": {"page": "home"}},
            "blank": "  ",
        }
    )

    assert record.email == "ana@example.com"
    assert record.name == "Ana Pop"
    assert record.phone == "0700"
    assert record.subject == "Offer"
    assert record.message is None
    assert record.payload_field("meta.source.page") == "home"
    assert record.payload_field("meta.missing", "n/a") == "n/a"
    assert record.has_payload_field("first_name") is True
    assert record.has_payload_field("blank") is False
    assert record.summary() == "Name: Ana Pop | Email: ana@example.com | Subject: Offer"
    assert record.to_contact_data()["raw_payload"] == record.payload
