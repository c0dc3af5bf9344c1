from datetime import datetime

import pytest

from app.cms.ratelimit import RateLimiter
from app.cms.security import normalize_password, validate_password
from app.cms.tenancy import is_valid_schema_name
from app.cms.utils import parse_datetime


@pytest.mark.parametrize(
    "password,fragment",
    [
        ("short", "at least"),
        ("x" * 129, "at most"),
        ("Password1234", "too common"),
        ("someone@example.com", "email"),
    ],
)
def test_validate_password_rejects(password, fragment):
    err = validate_password(password, email="someone@example.com")
    assert err is not None
    assert fragment in err


def test_validate_password_accepts_passphrase():
    assert validate_password("correct-horse-battery", email="someone@example.com") is None


def test_normalize_password_strips_control_chars():
    assert normalize_password("ab\x00c\t") == "abc"
    assert normalize_password("\uff46ull") == "full"
    assert normalize_password(None) == ""  # type: ignore[arg-type]


def test_rate_limiter_fixed_window():
    rl = RateLimiter(max_requests=2, window_seconds=10)
    assert rl.hit("k", now=100).allowed
    second = rl.hit("k", now=101)
    assert second.allowed and second.remaining == 0
    blocked = rl.hit("k", now=105)
    assert not blocked.allowed
    assert blocked.reset_at == 110
    assert rl.hit("other", now=105).allowed
    assert rl.hit("k", now=111).allowed


def test_rate_limiter_reset():
    rl = RateLimiter(max_requests=1, window_seconds=60)
    rl.hit("k", now=0)
    assert not rl.hit("k", now=1).allowed
    rl.reset()
    assert rl.hit("k", now=2).allowed


@pytest.mark.parametrize("name,ok", [("client_acme", True), ("Acme2", True), ("drop table", False), ("a-b", False), ("x;y", False), ("", False), (None, False)])
def test_schema_name_validation(name, ok):
    assert is_valid_schema_name(name) is ok


def test_parse_datetime_normalizes_to_naive_utc():
    assert parse_datetime("2026-01-01T10:00:00Z") == datetime(2026, 1, 1, 10, 0)
    assert parse_datetime("2026-01-01T10:00:00+02:00") == datetime(2026, 1, 1, 8, 0)
    assert parse_datetime("  ") is None
    assert parse_datetime(None) is None


@pytest.mark.parametrize("value", [1767225600, 12.5, ["2026-01-01"], {"at": "now"}, True])
def test_parse_datetime_rejects_non_strings(value):
    with pytest.raises(ValueError):
        parse_datetime(value)
