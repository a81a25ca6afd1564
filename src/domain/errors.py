from __future__ import annotations


class PersistenceError(Exception):
    """The webhook record store or dispatch queue could not be reached."""


class EntriesParseError(ValueError):
    """The nested ``entries`` document is not a JSON object."""


class MissingContactError(Exception):
    """No recipient email could be resolved from a webhook payload."""


class NotificationError(Exception):
    """Brevo call failed at the transport level or returned a non-2xx status."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def category(self) -> str:
        if self.status_code is not None:
            if self.status_code == 429 or self.status_code >= 500:
                return "transient"
            if self.status_code in {401, 403}:
                return "terminal"
        message = str(self).lower()
        if "connectivity error" in message or "timed out" in message:
            return "transient"
        if "missing brevo api key" in message or "invalid brevo api key" in message:
            return "terminal"
        return "unknown"

    @property
    def retryable(self) -> bool:
        return self.category != "terminal"


class WebhookNotFoundError(PersistenceError):
    """A dispatch job references a webhook record that does not exist."""
