from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


DispatchJobStatus = Literal["queued", "running", "succeeded", "failed", "exhausted"]
DispatchOutcome = Literal["skipped", "missing_contact", "simulated", "sent", "already_processed"]


class WebhookRecord(BaseModel):
    id: str
    payload: dict[str, Any] = Field(default_factory=dict)
    processed: bool = False
    processed_at: datetime | None = None
    error_message: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def payload_field(self, field: str, default: Any = None) -> Any:
        """Look up ``field`` in the payload; dotted paths descend into nested objects."""
        current: Any = self.payload
        for part in field.split("."):
            if not isinstance(current, dict) or part not in current:
                return default
            current = current[part]
        return default if current is None else current

    def has_payload_field(self, field: str) -> bool:
        value = self.payload.get(field)
        if value is None:
            return False
        if isinstance(value, str):
            return value.strip() != ""
        if isinstance(value, (list, dict)):
            return len(value) > 0
        return True

    @property
    def email(self) -> str | None:
        return self.payload_field("email") or self.payload_field("user_email")

    @property
    def name(self) -> str | None:
        explicit = self.payload_field("name") or self.payload_field("full_name")
        if explicit:
            return explicit
        joined = f"{self.payload_field('first_name', '')} {self.payload_field('last_name', '')}".strip()
        return joined or None

    @property
    def phone(self) -> str | None:
        return self.payload_field("phone") or self.payload_field("telephone")

    @property
    def message(self) -> str | None:
        return self.payload_field("message") or self.payload_field("comment")

    @property
    def subject(self) -> str | None:
        return self.payload_field("subject") or self.payload_field("topic")

    def to_contact_data(self) -> dict[str, Any]:
        return {
            "email": self.email,
            "name": self.name,
            "phone": self.phone,
            "message": self.message,
            "subject": self.subject,
            "raw_payload": self.payload,
        }

    def summary(self) -> str:
        parts: list[str] = []
        if self.name:
            parts.append(f"Name: {self.name}")
        if self.email:
            parts.append(f"Email: {self.email}")
        if self.subject:
            parts.append(f"Subject: {self.subject}")
        return " | ".join(parts) if parts else "No standard fields"


class WebhookIngestResponse(BaseModel):
    success: bool
    message: str
    webhook_id: str | None = None


class WebhookListItem(BaseModel):
    id: str
    processed: bool
    processed_at: datetime | None = None
    error_message: str | None = None
    summary: str
    created_at: datetime | None = None
    updated_at: datetime | None = None


class DispatchJob(BaseModel):
    id: str
    webhook_id: str
    status: DispatchJobStatus = "queued"
    attempt_count: int = 0
    max_attempts: int = 3
    next_attempt_at: datetime | None = None
    last_error: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class DispatchRunRequest(BaseModel):
    limit: int = Field(default=25, ge=1, le=500)


class DispatchRunItem(BaseModel):
    job_id: str
    webhook_id: str
    status: Literal["succeeded", "retry_scheduled", "exhausted", "failed", "not_claimed"]
    outcome: DispatchOutcome | None = None
    attempt_count: int
    error: str | None = None


class DispatchRunResponse(BaseModel):
    claimed: int
    succeeded: int
    retried: int
    exhausted: int
    failed: int = 0
    results: list[DispatchRunItem]
