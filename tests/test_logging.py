"""Log redaction and correlation ids."""

import pytest

from iamcore.logging import (
    _add_correlation_id,
    _redact_sensitive,
    correlation_id_var,
    redact_contact,
    set_correlation_id,
)


class TestRedactContact:
    @pytest.mark.parametrize(
        "value,expected",
        [
            ("alice@example.com", "al***@example.com"),
            ("+1 555 123 4567", "***67"),
            ("no digits", "redacted"),
        ],
    )
    def test_redact_contact(self, value, expected):
        assert redact_contact(value) == expected


class TestRedactProcessor:
    def test_credentials_masked_entirely(self):
        event = _redact_sensitive(
            None,
            "info",
            {
                "event": "token_issued",
                "refresh_token": "eyJhbGciOi.payload.sig",
                "mfa_code": "123456",
                "password": "Secur3!Pass",
            },
        )
        assert event["refresh_token"] == "***"
        assert event["mfa_code"] == "***"
        assert event["password"] == "***"
        assert event["event"] == "token_issued"

    def test_contacts_shortened(self):
        event = _redact_sensitive(
            None, "info", {"event": "x", "email": "bob@example.com", "phone": "+15551234567"}
        )
        assert event["email"] == "bo***@example.com"
        assert event["phone"] == "***67"

    def test_non_strings_and_plain_keys_untouched(self):
        event = _redact_sensitive(
            None, "info", {"event": "x", "email_configured": True, "account_id": "acct-1"}
        )
        assert event["email_configured"] is True
        assert event["account_id"] == "acct-1"


class TestCorrelationId:
    def test_generated_and_attached(self):
        token = correlation_id_var.set(None)
        try:
            cid = set_correlation_id()
            assert _add_correlation_id(None, "info", {"event": "x"})["correlation_id"] == cid
        finally:
            correlation_id_var.reset(token)

    def test_absent_when_unset(self):
        token = correlation_id_var.set(None)
        try:
            assert "correlation_id" not in _add_correlation_id(None, "info", {"event": "x"})
        finally:
            correlation_id_var.reset(token)
