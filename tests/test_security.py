"""Tests for session tokens, shared-secret checks and PII-safe log helpers."""

import jwt
import pytest

from ooo_forwarding.core.config import settings
from ooo_forwarding.core.security import (
    create_session_token,
    decode_session_token,
    verify_secret,
)
from ooo_forwarding.core.structured_logging import build_log_context, mask_email


def test_session_token_roundtrip_normalizes_email():
    token = create_session_token(" Pat.Lee@Example.com ", "Pat Lee")

    payload = decode_session_token(token)

    assert payload["sub"] == "pat.lee@example.com"
    assert payload["name"] == "Pat Lee"


def test_session_token_survives_secret_rotation(monkeypatch):
    token = create_session_token("pat.lee@example.com")
    old_secret = settings.JWT_SECRET

    monkeypatch.setattr(settings, "JWT_SECRET", "rotated-secret")
    monkeypatch.setattr(settings, "JWT_SECRET_PREVIOUS", old_secret)
    assert decode_session_token(token)["sub"] == "pat.lee@example.com"

    monkeypatch.setattr(settings, "JWT_SECRET_PREVIOUS", "")
    with pytest.raises(jwt.InvalidTokenError):
        decode_session_token(token)


@pytest.mark.parametrize(
    "provided,expected,ok",
    [
        ("s3cret", "s3cret", True),
        ("s3cret", "other", False),
        ("", "s3cret", False),
        (None, "s3cret", False),
        ("", "", False),
    ],
)
def test_verify_secret(provided, expected, ok):
    assert verify_secret(provided, expected) is ok


def test_mask_email():
    assert mask_email("pat.lee@example.com") == "pat...@example.com"
    assert mask_email("jo@example.com") == "jo...@example.com"
    assert mask_email("no-domain") == "no-..."
    assert mask_email(None) == ""


def test_build_log_context_masks_mailbox():
    context = build_log_context(
        schedule_id="abc", user_email="pat.lee@example.com", status="active"
    )

    assert context == {
        "schedule_id": "abc",
        "mailbox": "pat...@example.com",
        "schedule_status": "active",
    }
    assert build_log_context() == {}
