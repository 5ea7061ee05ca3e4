from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone

import pytest

from musicscheduler.utils import (
    TEMPORARY_PASSWORD_ALPHABET,
    generate_temporary_password,
    generate_token,
    is_valid_email,
    normalize_email,
    to_naive_utc,
    utcnow,
)


def test_utcnow_is_naive():
    assert utcnow().tzinfo is None


def test_to_naive_utc_converts_aware_values():
    aware = datetime(2025, 1, 7, 19, 0, tzinfo=timezone(timedelta(hours=-6)))
    assert to_naive_utc(aware) == datetime(2025, 1, 8, 1, 0)
    assert to_naive_utc(datetime(2025, 1, 8, 1, 0)) == datetime(2025, 1, 8, 1, 0)
    assert to_naive_utc(None) is None
    assert to_naive_utc(datetime(2025, 1, 8, tzinfo=UTC)).tzinfo is None


def test_email_helpers():
    assert normalize_email("  Someone@Example.ORG ") == "someone@example.org"
    assert normalize_email(None) == ""
    assert is_valid_email("someone@example.org")
    assert not is_valid_email("someone@example")
    assert not is_valid_email("two words@example.org")


@pytest.mark.parametrize(
    "address",
    ["john@example..com", "john@-example.com", "john@example.com,", "Dana <dana@example.org>", ""],
)
def test_malformed_addresses_are_rejected(address):
    assert not is_valid_email(address)


def test_temporary_passwords_avoid_ambiguous_characters():
    password = generate_temporary_password(12)
    assert len(password) == 12
    assert set(password) <= set(TEMPORARY_PASSWORD_ALPHABET)
    assert not set("0O1lI") & set(TEMPORARY_PASSWORD_ALPHABET)
    assert len(generate_temporary_password(2)) == 6


def test_tokens_are_unique():
    assert generate_token() != generate_token()
