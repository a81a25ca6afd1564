from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from src.domain.errors import PersistenceError
from src.models.webhooks import DispatchJob


DISPATCH_JOBS_TABLE = "webhook_dispatch_jobs"
_JOB_FIELDS = (
    "id, webhook_id, status, attempt_count, max_attempts, next_attempt_at, last_error, created_at, updated_at"
)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(ts: str | None) -> datetime | None:
    if not ts:
        return None
    try:
        return datetime.fromisoformat(ts.replace("Z", "+00:00"))
    except ValueError:
        return None


class DispatchJobQueue:
    """Durable queue of "webhook received" messages backed by a table.

    A job moves to ``running`` only through an update guarded on its status
    and attempt count, so a given job is run by at most one worker at a time.
    A ``running`` job whose ``updated_at`` is older than ``lease_seconds`` is
    treated as abandoned and offered again by ``due_jobs``.
    """

    def __init__(self, client: Any, table: str = DISPATCH_JOBS_TABLE, lease_seconds: float | None = 900.0) -> None:
        self.client = client
        self.table = table
        self.lease_seconds = lease_seconds

    def enqueue(self, webhook_id: str, max_attempts: int = 3) -> DispatchJob:
        now_iso = _now_utc().isoformat()
        try:
            result = self.client.table(self.table).insert(
                {
                    "webhook_id": webhook_id,
                    "status": "queued",
                    "attempt_count": 0,
                    "max_attempts": max(1, max_attempts),
                    "next_attempt_at": now_iso,
                    "last_error": None,
                    "created_at": now_iso,
                    "updated_at": now_iso,
                }
            ).execute()
        except Exception as exc:
            raise PersistenceError(f"Failed to enqueue dispatch for webhook {webhook_id}: {exc}") from exc
        if not result.data:
            raise PersistenceError("Dispatch job insert returned no row")
        return DispatchJob.model_validate(result.data[0])

    def get(self, job_id: str) -> DispatchJob | None:
        try:
            result = self.client.table(self.table).select(_JOB_FIELDS).eq("id", job_id).execute()
        except Exception as exc:
            raise PersistenceError(f"Failed to load dispatch job {job_id}: {exc}") from exc
        if not result.data:
            return None
        return DispatchJob.model_validate(result.data[0])

    def due_jobs(self, limit: int = 25, now: datetime | None = None) -> list[DispatchJob]:
        now = now or _now_utc()
        try:
            rows = self.client.table(self.table).select(_JOB_FIELDS).eq("status", "queued").execute().data or []
            stale_rows = []
            if self.lease_seconds is not None:
                stale_rows = (
                    self.client.table(self.table).select(_JOB_FIELDS).eq("status", "running").execute().data or []
                )
        except Exception as exc:
            raise PersistenceError(f"Failed to list dispatch jobs: {exc}") from exc
        due = []
        for row in rows:
            next_attempt_at = _parse_ts(row.get("next_attempt_at"))
            if next_attempt_at is None or next_attempt_at <= now:
                due.append(row)
        if stale_rows:
            lease_cutoff = now - timedelta(seconds=max(0.0, self.lease_seconds))
            for row in stale_rows:
                updated_at = _parse_ts(row.get("updated_at"))
                if updated_at is None or updated_at <= lease_cutoff:
                    due.append(row)
        due = sorted(due, key=lambda row: row.get("next_attempt_at") or "")
        return [DispatchJob.model_validate(row) for row in due[: max(1, limit)]]

    def claim(self, job: DispatchJob) -> DispatchJob | None:
        """Move a queued or abandoned job to ``running`` and count the attempt; ``None`` if another worker won."""
        if job.status not in {"queued", "running"}:
            return None
        try:
            result = self.client.table(self.table).update(
                {
                    "status": "running",
                    "attempt_count": job.attempt_count + 1,
                    "updated_at": _now_utc().isoformat(),
                }
            ).eq("id", job.id).eq("status", job.status).eq("attempt_count", job.attempt_count).execute()
        except Exception as exc:
            raise PersistenceError(f"Failed to claim dispatch job {job.id}: {exc}") from exc
        if not result.data:
            return None
        return DispatchJob.model_validate(result.data[0])

    def mark_succeeded(self, job: DispatchJob) -> None:
        self._update(job.id, {"status": "succeeded", "last_error": None})

    def schedule_retry(self, job: DispatchJob, error: str, delay_seconds: float) -> None:
        next_attempt_at = _now_utc() + timedelta(seconds=max(0.0, delay_seconds))
        self._update(
            job.id,
            {
                "status": "queued",
                "last_error": error,
                "next_attempt_at": next_attempt_at.isoformat(),
            },
        )

    def mark_exhausted(self, job: DispatchJob, error: str) -> None:
        self._update(job.id, {"status": "exhausted", "last_error": error})

    def mark_failed(self, job: DispatchJob, error: str) -> None:
        self._update(job.id, {"status": "failed", "last_error": error})

    def _update(self, job_id: str, values: dict[str, Any]) -> None:
        values = {**values, "updated_at": _now_utc().isoformat()}
        try:
            self.client.table(self.table).update(values).eq("id", job_id).execute()
        except Exception as exc:
            raise PersistenceError(f"Failed to update dispatch job {job_id}: {exc}") from exc
