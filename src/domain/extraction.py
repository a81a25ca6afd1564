from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from src.domain.errors import EntriesParseError, MissingContactError
from src.observability import incr_metric, log_event


ALLOWED_REFERRER_URLS: tuple[str, ...] = ("https://proiectare.bucovinasip.ro/formular",)

ENTRIES_FIELD = "entries"
REFERRER_FIELD = "referrer_url"
DEFAULT_FIRST_NAME = "Guest"
DEFAULT_PRICE = ""

# Lookup order per logical field: nested entries keys first, then flat payload keys.
CONTACT_FIELD_KEYS: dict[str, dict[str, tuple[str, ...]]] = {
    "email": {
        "entries": ("mf-email",),
        "payload": ("email", "user_email"),
    },
    "first_name": {
        "entries": ("mf-listing-fname",),
        "payload": ("first_name", "name", "firstname"),
    },
    "price": {
        "entries": ("mf-price",),
        "payload": ("pricemp", "price", "PRICEMP"),
    },
}


@dataclass(frozen=True)
class Contact:
    email: str
    first_name: str = DEFAULT_FIRST_NAME
    price: str = DEFAULT_PRICE

    def template_params(self) -> dict[str, str]:
        return {"FIRSTNAME": self.first_name, "PRICEMP": self.price}


def decode_entries(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not isinstance(raw, (str, bytes)):
        raise EntriesParseError(f"entries must be a JSON string, got {type(raw).__name__}")
    try:
        decoded = json.loads(raw)
    except ValueError as exc:
        raise EntriesParseError(f"entries is not valid JSON: {exc}") from exc
    if not isinstance(decoded, dict):
        raise EntriesParseError(f"entries must decode to an object, got {type(decoded).__name__}")
    return decoded


def parse_entries(payload: dict[str, Any]) -> dict[str, Any] | None:
    raw = payload.get(ENTRIES_FIELD)
    if raw is None or raw == "":
        return None
    try:
        return decode_entries(raw)
    except EntriesParseError as exc:
        incr_metric("webhook.entries.parse_failed")
        log_event("webhook_entries_parse_failed", level=logging.WARNING, error=str(exc))
        return None


def _clean(value: Any) -> str | None:
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text or None


def _first_filled(source: dict[str, Any] | None, keys: tuple[str, ...]) -> str | None:
    if not source:
        return None
    for key in keys:
        value = _clean(source.get(key))
        if value is not None:
            return value
    return None


def lookup_field(
    payload: dict[str, Any],
    field: str,
    entries: dict[str, Any] | None = None,
) -> str | None:
    keys = CONTACT_FIELD_KEYS[field]
    return _first_filled(entries, keys["entries"]) or _first_filled(payload, keys["payload"])


def extract_referrer_url(payload: dict[str, Any], entries: dict[str, Any] | None = None) -> str | None:
    return _first_filled(entries, (REFERRER_FIELD,)) or _first_filled(payload, (REFERRER_FIELD,))


def parse_allowed_referrers(raw: str | None) -> tuple[str, ...]:
    """Split a comma separated setting into allow-list entries, falling back to the built-in list."""
    if not raw:
        return ALLOWED_REFERRER_URLS
    allowed = tuple(item.strip() for item in raw.split(",") if item.strip())
    return allowed or ALLOWED_REFERRER_URLS


def is_allowed_referrer(referrer_url: str, allowed_referrers: tuple[str, ...] = ALLOWED_REFERRER_URLS) -> bool:
    for allowed in allowed_referrers:
        if referrer_url == allowed or referrer_url.startswith(allowed):
            return True
    return False


def is_eligible(
    payload: dict[str, Any],
    allowed_referrers: tuple[str, ...] = ALLOWED_REFERRER_URLS,
    entries: dict[str, Any] | None = None,
) -> bool:
    if entries is None:
        entries = parse_entries(payload) or {}
    referrer_url = extract_referrer_url(payload, entries)
    if referrer_url is None:
        return True
    return is_allowed_referrer(referrer_url, allowed_referrers)


def resolve_contact(payload: dict[str, Any], entries: dict[str, Any] | None = None) -> Contact:
    if entries is None:
        entries = parse_entries(payload) or {}
    email = lookup_field(payload, "email", entries)
    if not email:
        raise MissingContactError("No email address found in webhook data")
    return Contact(
        email=email,
        first_name=lookup_field(payload, "first_name", entries) or DEFAULT_FIRST_NAME,
        price=lookup_field(payload, "price", entries) or DEFAULT_PRICE,
    )
