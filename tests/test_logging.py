import pytest

from lawmakers_auth.logging import (
    _redact_pii,
    get_correlation_id,
    mask_ip,
    redact_email,
    set_correlation_id,
)


@pytest.mark.parametrize(
    "ip,expected",
    [
        ("203.0.113.42", "203.0.***.***"),
        ("2001:db8::1", "2001:db8:****:****"),
        ("::1", "0:0:****:****"),
        ("not-an-ip", "unknown"),
        ("", "unknown"),
        (None, "unknown"),
    ],
)
def test_mask_ip(ip, expected):
    assert mask_ip(ip) == expected


def test_redact_email():
    assert redact_email("alice@example.com") == "al***@example.com"
    assert redact_email("nope") == "***"
    assert redact_email(None) == "***"


def test_redact_pii_masks_sensitive_keys():
    event = _redact_pii(
        None,
        "info",
        {
            "event": "login",
            "password": "Correct-Horse-1",
            "refresh_token": "abcdefghijkl",
            "email": "al***@example.com",
            "user_id": "user-1",
        },
    )
    assert event["password"] == "Co***-1"
    assert event["refresh_token"] == "ab***kl"
    # already redacted values are left alone
    assert event["email"] == "al***@example.com"
    assert event["user_id"] == "user-1"


def test_correlation_id_roundtrip():
    assert set_correlation_id("req-123") == "req-123"
    assert get_correlation_id() == "req-123"
    generated = set_correlation_id()
    assert generated and generated != "req-123"
