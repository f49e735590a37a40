# secretlink/tests/test_schemas.py
from datetime import datetime, timedelta, timezone

import pytest

from secretlink.config import Settings
from secretlink.schemas import (
    EXPIRY_FUTURE,
    EXPIRY_MAX_LIMIT,
    USERNAME_ALPHANUMERIC,
    USERNAME_LENGTH,
    USERNAME_REQUIRED,
    CreateLinkRequest,
    validate_create_request,
)

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
SETTINGS = Settings(signing_key="k" * 32, max_uses=10, max_ttl_minutes=60)


def _check(**fields):
    return validate_create_request(CreateLinkRequest(**fields), SETTINGS, now=NOW)


def test_valid_request():
    assert _check(username="alice", max=3, expiresAt=NOW + timedelta(minutes=5)) == {}
    assert _check(username="Bob42") == {}


def test_alias_and_field_name_both_accepted():
    a = CreateLinkRequest.model_validate({"username": "a", "expiresAt": "2024-01-01T12:30:00Z"})
    b = CreateLinkRequest(username="a", expires_at=NOW + timedelta(minutes=30))
    assert a.expires_at == b.expires_at


def test_unknown_fields_ignored():
    req = CreateLinkRequest.model_validate({"username": "a", "color": "red"})
    assert req.username == "a"


@pytest.mark.parametrize(
    "username,message",
    [
        ("", USERNAME_REQUIRED),
        ("   ", USERNAME_REQUIRED),
        ("a" * 51, USERNAME_LENGTH),
        ("al ice", USERNAME_ALPHANUMERIC),
        ("alice!", USERNAME_ALPHANUMERIC),
        ("al_ice", USERNAME_ALPHANUMERIC),
    ],
)
def test_username_rules(username, message):
    assert _check(username=username)["username"] == [message]


def test_username_boundary_length():
    assert _check(username="a" * 50) == {}


@pytest.mark.parametrize("max_uses", [0, -1, 11])
def test_max_uses_range(max_uses):
    assert _check(username="alice", max=max_uses)["max"] == ["Max clicks must be between 1 and 10"]


def test_max_uses_bounds_inclusive():
    assert _check(username="alice", max=1) == {}
    assert _check(username="alice", max=10) == {}


def test_expiry_must_be_future():
    assert _check(username="alice", expiresAt=NOW)["expiresAt"] == [EXPIRY_FUTURE]
    assert _check(username="alice", expiresAt=NOW - timedelta(seconds=1))["expiresAt"] == [EXPIRY_FUTURE]


def test_expiry_max_lifetime():
    assert _check(username="alice", expiresAt=NOW + timedelta(minutes=60)) == {}
    errors = _check(username="alice", expiresAt=NOW + timedelta(minutes=60, seconds=1))
    assert errors["expiresAt"] == [EXPIRY_MAX_LIMIT]


def test_naive_expiry_read_as_utc():
    naive = (NOW + timedelta(minutes=5)).replace(tzinfo=None)
    assert _check(username="alice", expiresAt=naive) == {}


def test_errors_reported_per_field():
    errors = _check(username="", max=0, expiresAt=NOW)
    assert set(errors) == {"username", "max", "expiresAt"}
    assert all(len(v) == 1 for v in errors.values())
