from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any

import httpx

from src.domain.errors import NotificationError
from src.observability import incr_metric, log_event
from src.providers.brevo.email import NotificationRequest


BREVO_API_BASE = "https://api.brevo.com/v3"
PLACEHOLDER_API_KEY = "your-api-key-here"
_RETRYABLE_STATUS_CODES = {500, 502, 503, 504}
_MAX_RETRY_ATTEMPTS = 3
_RETRY_DELAY_SECONDS = 0.1
_DEFAULT_TIMEOUT_SECONDS = 30.0

_EP_SMTP_EMAIL = "/smtp/email"
_EP_SMTP_TEMPLATES = "/smtp/templates"
_EP_CONTACTS = "/contacts"
_EP_ACCOUNT = "/account"


@dataclass(frozen=True)
class BrevoConfig:
    api_key: str | None = None
    base_url: str = BREVO_API_BASE
    sender_email: str | None = None
    sender_name: str | None = None
    default_list_id: int | None = None
    default_template_id: int = 105
    timeout_seconds: float = _DEFAULT_TIMEOUT_SECONDS

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key) and self.api_key != PLACEHOLDER_API_KEY

    @classmethod
    def from_settings(cls, settings: Any) -> BrevoConfig:
        return cls(
            api_key=settings.brevo_api_key,
            base_url=settings.brevo_base_url or BREVO_API_BASE,
            sender_email=settings.brevo_sender_email,
            sender_name=settings.brevo_sender_name,
            default_list_id=settings.brevo_default_list_id,
            default_template_id=settings.brevo_default_template_id,
            timeout_seconds=settings.brevo_timeout_seconds,
        )


@dataclass
class NotificationResult:
    success: bool
    message_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    status_code: int | None = None

    @property
    def failed(self) -> bool:
        return not self.success

    def raise_for_failure(self) -> NotificationResult:
        if self.failed:
            raise NotificationError(self.error or "Unknown error", status_code=self.status_code)
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "message_id": self.message_id,
            "error": self.error,
            "status_code": self.status_code,
            "data": self.data,
        }


def _request_with_retry(
    *,
    method: str,
    url: str,
    headers: dict[str, str],
    timeout_seconds: float,
    json_payload: dict[str, Any] | None = None,
) -> httpx.Response:
    last_exc: httpx.TransportError | None = None
    for attempt in range(1, _MAX_RETRY_ATTEMPTS + 1):
        try:
            with httpx.Client(timeout=timeout_seconds) as client:
                response = client.request(
                    method=method,
                    url=url,
                    headers=headers,
                    json=json_payload,
                )
        except httpx.TransportError as exc:
            last_exc = exc
            if attempt >= _MAX_RETRY_ATTEMPTS:
                raise
            time.sleep(_RETRY_DELAY_SECONDS)
            continue

        if response.status_code in _RETRYABLE_STATUS_CODES and attempt < _MAX_RETRY_ATTEMPTS:
            time.sleep(_RETRY_DELAY_SECONDS)
            continue
        return response

    if last_exc:
        raise last_exc
    raise httpx.HTTPError(f"Brevo request to {url} produced no response")


def _json_body(response: httpx.Response) -> Any:
    if response.status_code == 204 or not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return None


def _to_result(response: httpx.Response) -> NotificationResult:
    body = _json_body(response)
    data = body if isinstance(body, dict) else {}
    if 200 <= response.status_code < 300:
        message_id = data.get("messageId")
        return NotificationResult(
            success=True,
            message_id=str(message_id) if message_id is not None else None,
            data=data,
            status_code=response.status_code,
        )

    error = data.get("message") or response.text
    log_event(
        "brevo_request_failed",
        level=logging.ERROR,
        status_code=response.status_code,
        error=error,
        body=response.text[:500],
    )
    return NotificationResult(
        success=False,
        message_id=None,
        data=data,
        error=error,
        status_code=response.status_code,
    )


class BrevoClient:
    """Authenticated client for the Brevo v3 transactional email and contacts API."""

    def __init__(self, config: BrevoConfig) -> None:
        if not config.api_key:
            raise ValueError("Brevo API key is required. Set BREVO_API_KEY in your environment.")
        self.config = config
        self.base_url = (config.base_url or BREVO_API_BASE).rstrip("/")

    def _headers(self) -> dict[str, str]:
        return {
            "api-key": self.config.api_key or "",
            "accept": "application/json",
            "content-type": "application/json",
        }

    def _request(self, method: str, path: str, json_payload: dict[str, Any] | None = None) -> httpx.Response:
        try:
            return _request_with_retry(
                method=method,
                url=f"{self.base_url}{path}",
                headers=self._headers(),
                timeout_seconds=self.config.timeout_seconds,
                json_payload=json_payload,
            )
        except httpx.HTTPError as exc:
            incr_metric("brevo.requests.connectivity_error", path=path)
            raise NotificationError(f"Brevo connectivity error: {exc}") from exc

    def _post(self, path: str, payload: dict[str, Any], operation: str) -> NotificationResult:
        response = self._request("POST", path, payload)
        result = _to_result(response)
        incr_metric("brevo.requests", operation=operation, success=result.success)
        return result

    def _get_json(self, path: str, operation: str) -> Any:
        response = self._request("GET", path)
        if not 200 <= response.status_code < 300:
            raise NotificationError(
                f"Failed to {operation}: {response.text[:200]}",
                status_code=response.status_code,
            )
        return _json_body(response)

    def send_template_email(self, request: NotificationRequest) -> NotificationResult:
        payload = request.to_payload()
        log_event(
            "brevo_template_email_sending",
            template_id=request.template_id,
            recipients=len(payload["to"]),
        )
        return self._post(_EP_SMTP_EMAIL, payload, "send_template_email")

    def send_email(self, request: NotificationRequest) -> NotificationResult:
        request.validate()
        payload = request.to_payload()
        log_event(
            "brevo_email_sending",
            has_template="templateId" in payload,
            recipients=len(payload["to"]),
        )
        return self._post(_EP_SMTP_EMAIL, payload, "send_email")

    def create_or_update_contact(self, contact_data: dict[str, Any]) -> NotificationResult:
        log_event(
            "brevo_contact_upserting",
            email=contact_data.get("email", "unknown"),
            list_ids=contact_data.get("listIds", []),
        )
        return self._post(_EP_CONTACTS, contact_data, "create_or_update_contact")

    def add_contact_to_list(
        self,
        email: str,
        list_id: int,
        attributes: dict[str, Any] | None = None,
        update_existing: bool = False,
    ) -> NotificationResult:
        payload: dict[str, Any] = {
            "email": email,
            "listIds": [list_id],
            "updateEnabled": update_existing,
        }
        if attributes:
            payload["attributes"] = attributes
        return self.create_or_update_contact(payload)

    def get_account(self) -> dict[str, Any]:
        data = self._get_json(_EP_ACCOUNT, "get account info")
        return data if isinstance(data, dict) else {}

    def get_templates(self) -> list[dict[str, Any]]:
        data = self._get_json(_EP_SMTP_TEMPLATES, "get templates")
        if isinstance(data, dict) and isinstance(data.get("templates"), list):
            return data["templates"]
        return []

    def get_template(self, template_id: int) -> dict[str, Any]:
        data = self._get_json(f"{_EP_SMTP_TEMPLATES}/{template_id}", f"get template {template_id}")
        return data if isinstance(data, dict) else {}

    def test_connection(self) -> bool:
        try:
            self.get_account()
        except NotificationError:
            return False
        return True
