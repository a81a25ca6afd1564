from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from src.domain.errors import PersistenceError
from src.models.webhooks import WebhookRecord


WEBHOOKS_TABLE = "metform_webhooks"
_RECORD_FIELDS = "id, payload, processed, processed_at, error_message, created_at, updated_at"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class WebhookStore:
    """Durable record of every Metform webhook received.

    Records are written once by ``create`` and afterwards only change through
    ``mark_processed`` and ``mark_failed``.
    """

    def __init__(self, client: Any, table: str = WEBHOOKS_TABLE) -> None:
        self.client = client
        self.table = table

    def create(self, payload: dict[str, Any]) -> WebhookRecord:
        now_iso = _now_iso()
        try:
            result = self.client.table(self.table).insert(
                {
                    "payload": payload,
                    "processed": False,
                    "processed_at": None,
                    "error_message": None,
                    "created_at": now_iso,
                    "updated_at": now_iso,
                }
            ).execute()
        except Exception as exc:
            raise PersistenceError(f"Failed to store webhook: {exc}") from exc
        if not result.data:
            raise PersistenceError("Webhook insert returned no row")
        return WebhookRecord.model_validate(result.data[0])

    def get(self, webhook_id: str) -> WebhookRecord | None:
        try:
            result = self.client.table(self.table).select(_RECORD_FIELDS).eq("id", webhook_id).execute()
        except Exception as exc:
            raise PersistenceError(f"Failed to load webhook {webhook_id}: {exc}") from exc
        if not result.data:
            return None
        return WebhookRecord.model_validate(result.data[0])

    def mark_processed(self, webhook_id: str, note: str | None = None) -> None:
        now_iso = _now_iso()
        try:
            # Only the first transition stamps processed_at.
            self.client.table(self.table).update({"processed_at": now_iso}).eq("id", webhook_id).is_(
                "processed_at", "null"
            ).execute()
        except Exception as exc:
            raise PersistenceError(f"Failed to update webhook {webhook_id}: {exc}") from exc
        self._update(
            webhook_id,
            {
                "processed": True,
                "error_message": note,
                "updated_at": now_iso,
            },
        )

    def mark_failed(self, webhook_id: str, error_message: str) -> None:
        self._update(
            webhook_id,
            {
                "processed": False,
                "error_message": error_message,
                "updated_at": _now_iso(),
            },
        )

    def list_records(
        self,
        *,
        processed: bool | None = None,
        with_errors: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> list[WebhookRecord]:
        query = self.client.table(self.table).select(_RECORD_FIELDS)
        if processed is not None:
            query = query.eq("processed", processed)
        try:
            rows = query.execute().data or []
        except Exception as exc:
            raise PersistenceError(f"Failed to list webhooks: {exc}") from exc
        if with_errors:
            rows = [row for row in rows if row.get("error_message") is not None]
        rows = sorted(rows, key=lambda row: row.get("created_at") or "", reverse=True)
        bounded_limit = max(1, min(limit, 200))
        bounded_offset = max(0, offset)
        return [WebhookRecord.model_validate(row) for row in rows[bounded_offset:bounded_offset + bounded_limit]]

    def _update(self, webhook_id: str, values: dict[str, Any]) -> None:
        try:
            result = self.client.table(self.table).update(values).eq("id", webhook_id).execute()
        except Exception as exc:
            raise PersistenceError(f"Failed to update webhook {webhook_id}: {exc}") from exc
        if not result.data:
            raise PersistenceError(f"Webhook {webhook_id} not found")
