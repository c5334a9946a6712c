"""Tests for log redaction."""

from onboarding_auth.core.logging import redact_sensitive_data, redact_string


class TestRedaction:
    def test_sensitive_fields_are_removed(self):
        event = {
            "event": "login",
            "password": "Correct1!",
            "totp_secret": "JBSWY3DPEHPK3PXP",
            "backup_code": "ABCD-1234",
            "otp": "123456",
            "password_salt": "00ff",
            "Authorization": "Bearer abc",
        }
        redacted = redact_sensitive_data(None, "info", event)
        for key in ("password", "totp_secret", "backup_code", "otp", "password_salt", "Authorization"):
            assert redacted[key] == "***REDACTED***"
        assert redacted["event"] == "login"

    def test_original_event_is_not_mutated(self):
        event = {"password": "Correct1!"}
        redact_sensitive_data(None, "info", event)
        assert event["password"] == "Correct1!"

    def test_emails_are_masked_in_free_text(self):
        event = {"event": "Login failed for merchant@example.com"}
        redacted = redact_sensitive_data(None, "info", event)
        assert redacted["event"] == "Login failed for m***@example.com"

    def test_redact_string_leaves_plain_text(self):
        assert redact_string("nothing to see") == "nothing to see"
