import json

import pytest

from src.domain.errors import MissingContactError
from src.domain.extraction import (
    ALLOWED_REFERRER_URLS,
    extract_referrer_url,
    is_eligible,
    parse_allowed_referrers,
    parse_entries,
    resolve_contact,
)


def test_missing_referrer_is_eligible_by_default():
    assert is_eligible({"email": "a@b.com"}) is True
    assert is_eligible({"referrer_url": ""}) is True


def test_referrer_prefix_match_is_eligible():
    assert is_eligible({"referrer_url": "https://proiectare.bucovinasip.ro/formular/extra"}) is True
    assert is_eligible({"referrer_url": ALLOWED_REFERRER_URLS[0]}) is True


def test_unknown_referrer_is_not_eligible():
    assert is_eligible({"referrer_url": "https://evil.example/"}) is False


def test_referrer_read_from_entries_before_flat_payload():
    payload = {
        "referrer_url": "https://proiectare.bucovinasip.ro/formular",
        "entries": json.dumps({"referrer_url": "https://evil.example/landing"}),
    }
    entries = parse_entries(payload)
    assert extract_referrer_url(payload, entries) == "https://evil.example/landing"
    assert is_eligible(payload) is False


def test_custom_allow_list_from_setting():
    allowed = parse_allowed_referrers(" https://a.example/form , https://b.example/ ,")
    assert allowed == ("https://a.example/form", "https://b.example/")
    assert is_eligible({"referrer_url": "https://b.example/page"}, allowed) is True
    assert is_eligible({"referrer_url": "https://proiectare.bucovinasip.ro/formular"}, allowed) is False
    assert parse_allowed_referrers(None) == ALLOWED_REFERRER_URLS
    assert parse_allowed_referrers(" , ") == ALLOWED_REFERRER_URLS


def test_nested_entries_take_priority_over_flat_fields():
    payload = {
        "email": "flat@example.com",
        "first_name": "Flat",
        "entries": "{\"mf-email\":\"a@b.com\",\"mf-listing-fname\":\"Ana\"}",
    }
    contact = resolve_contact(payload)
    assert contact.email == "a@b.com"
    assert contact.first_name == "Ana"
    assert contact.price == ""


def test_flat_fallback_chain_and_defaults():
    contact = resolve_contact({"user_email": " u@example.com ", "firstname": "Ion", "PRICEMP": 1200})
    assert contact.email == "u@example.com"
    assert contact.first_name == "Ion"
    assert contact.price == "1200"

    contact = resolve_contact({"email": "x@example.com", "name": "", "price": None})
    assert contact.first_name == "Guest"
    assert contact.price == ""


def test_empty_entries_values_fall_back_to_flat_payload():
    payload = {
        "email": "flat@example.com",
        "pricemp": "99",
        "entries": json.dumps({"mf-email": "", "mf-price": "  "}),
    }
    contact = resolve_contact(payload)
    assert contact.email == "flat@example.com"
    assert contact.price == "99"


def test_unparseable_entries_are_treated_as_absent():
    payload = {"email": "flat@example.com", "entries": "{not json"}
    assert parse_entries(payload) is None
    assert resolve_contact(payload).email == "flat@example.com"

    assert parse_entries({"entries": "[1, 2]"}) is None
    assert parse_entries({"entries": 42}) is None


def test_already_decoded_entries_object_is_accepted():
    payload = {"entries": {"mf-email": "obj@example.com", "mf-price": "10"}}
    contact = resolve_contact(payload)
    assert contact.email == "obj@example.com"
    assert contact.template_params() == {"FIRSTNAME": "Guest", "PRICEMP": "10"}


def test_no_email_raises_missing_contact():
    with pytest.raises(MissingContactError):
        resolve_contact({})
    with pytest.raises(MissingContactError):
        resolve_contact({"entries": json.dumps({"mf-listing-fname": "Ana"}), "email": "   "})
