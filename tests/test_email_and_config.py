"""Tests for email delivery and environment-driven settings."""

import smtplib

import pytest
from pydantic import ValidationError

from wayfarer import config
from wayfarer import logging as logging_module
from wayfarer.service import email as email_module
from wayfarer.service.email import EmailService
from wayfarer.storage.models import OTPPurpose


class RecordingSMTP:
    instances = []

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port
        self.messages = []
        self.logged_in = None
        RecordingSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        self.tls = True

    def login(self, user, password):
        self.logged_in = user

    def sendmail(self, sender, recipient, message):
        self.messages.append((sender, recipient, message))


class RefusingSMTP:
    def __init__(self, *args, **kwargs):
        raise ConnectionRefusedError("connection refused")


class RejectingSMTP(RecordingSMTP):
    def sendmail(self, sender, recipient, message):
        raise smtplib.SMTPRecipientsRefused({recipient: (550, b"no such user")})


def _configured(**overrides):
    kwargs = {
        "smtp_host": "smtp.example.com",
        "smtp_user": "mailer@example.com",
        "smtp_password": "pw",
        "from_name": "Wayfarer",
    }
    kwargs.update(overrides)
    return EmailService(**kwargs)


class TestEmailService:
    """Tests for SMTP delivery."""

    def test_unconfigured_logs_instead_of_sending(self, monkeypatch):
        """Without SMTP settings delivery succeeds without a connection."""
        monkeypatch.setattr(email_module.smtplib, "SMTP", RefusingSMTP)
        service = EmailService()

        assert service.is_configured is False
        assert service.send_otp("user@example.com", "123456", OTPPurpose.PASSWORD_RESET)

    @pytest.mark.parametrize(
        "purpose,subject",
        [
            (OTPPurpose.EMAIL_VERIFICATION, "Verify Your Email - Wayfarer"),
            (OTPPurpose.TWO_FACTOR_LOGIN, "Your Login Code - Wayfarer"),
            (OTPPurpose.PASSWORD_RESET, "Password Reset Code - Wayfarer"),
            (OTPPurpose.ACCOUNT_RECOVERY, "Account Recovery Code - Wayfarer"),
        ],
    )
    def test_subject_per_purpose(self, monkeypatch, purpose, subject):
        """Each challenge purpose has its own subject line and carries the code."""
        sent = []

        def fake_send(to_email, subject, html_body, text_body=None):
            sent.append((to_email, subject, html_body, text_body))
            return True

        service = EmailService()
        monkeypatch.setattr(service, "send", fake_send)

        assert service.send_otp("user@example.com", "654321", purpose)
        assert sent[0][1] == subject
        assert "654321" in sent[0][2]
        assert "654321" in sent[0][3]

    def test_smtp_delivery(self, monkeypatch):
        """Configured delivery logs in and sends from the configured address."""
        RecordingSMTP.instances = []
        monkeypatch.setattr(email_module.smtplib, "SMTP", RecordingSMTP)

        assert _configured().send_otp("user@example.com", "123456", OTPPurpose.TWO_FACTOR_LOGIN)

        server = RecordingSMTP.instances[0]
        assert server.host == "smtp.example.com"
        assert server.logged_in == "mailer@example.com"
        sender, recipient, _ = server.messages[0]
        assert sender == "mailer@example.com"
        assert recipient == "user@example.com"

    def test_transport_failure_returns_false(self, monkeypatch):
        """Connection errors are reported as an unsent message."""
        monkeypatch.setattr(email_module.smtplib, "SMTP", RefusingSMTP)

        assert _configured().send("user@example.com", "Subject", "<p>hi</p>") is False

    def test_recipient_refused_returns_false(self, monkeypatch):
        """SMTP protocol errors are reported as an unsent message."""
        monkeypatch.setattr(email_module.smtplib, "SMTP", RejectingSMTP)

        assert _configured().send("user@example.com", "Subject", "<p>hi</p>") is False

    def test_build_message_has_both_parts(self):
        """Plain text comes first and HTML last."""
        message = _configured()._build_message(
            "user@example.com", "Subject", "<p>hi</p>", "hi"
        )

        parts = [part.get_content_type() for part in message.get_payload()]
        assert parts == ["text/plain", "text/html"]
        assert message["From"] == "Wayfarer <mailer@example.com>"


class TestLogRedaction:
    """Tests for the structlog redaction processor."""

    def test_secrets_fully_redacted(self):
        """Codes, tokens and passwords never leak, even partially."""
        event = logging_module._redact_sensitive(
            None,
            "info",
            {"event": "x", "code": "123456", "refresh_token": "abcdef", "password": "pw"},
        )

        assert event["code"] == logging_module.REDACTED
        assert event["refresh_token"] == logging_module.REDACTED
        assert event["password"] == logging_module.REDACTED
        assert event["event"] == "x"

    def test_contact_details_masked(self):
        """Emails keep two characters of the local part and the domain."""
        event = logging_module._redact_sensitive(
            None, "info", {"to_email": "someone@example.com", "phone": "+351912345678"}
        )

        assert event["to_email"] == "so***@example.com"
        assert event["phone"] == "***78"

    def test_hashes_and_diagnostics_kept(self):
        """Digests and status fields pass through untouched."""
        event = logging_module._redact_sensitive(
            None, "info", {"email_hash": "abc123", "status_code": 401, "error_code": "locked"}
        )

        assert event == {"email_hash": "abc123", "status_code": 401, "error_code": "locked"}


class TestSettings:
    """Tests for settings parsing."""

    def test_blank_redis_url_disables_redis(self, monkeypatch):
        """An empty REDIS_URL means no Redis."""
        monkeypatch.setenv("REDIS_URL", "")

        assert config.Settings.from_env().redis_url is None

    def test_cors_origins_split(self, monkeypatch):
        """Comma-separated origins become a list."""
        monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example,")

        settings = config.Settings.from_env()

        assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]

    def test_trusted_proxies_split(self, monkeypatch):
        """Proxy addresses and ranges are read as a list; none by default."""
        assert config.Settings.from_env().trusted_proxies == []

        monkeypatch.setenv("TRUSTED_PROXIES", "10.0.0.0/8, 192.0.2.10")

        assert config.Settings.from_env().trusted_proxies == ["10.0.0.0/8", "192.0.2.10"]

    def test_invalid_trusted_proxy_rejected(self, monkeypatch):
        """Entries that are not addresses or networks fail validation."""
        monkeypatch.setenv("TRUSTED_PROXIES", "10.0.0.0/8,proxy.internal")

        with pytest.raises(ValidationError, match="invalid trusted proxy"):
            config.Settings.from_env()

    def test_numeric_overrides(self, monkeypatch):
        """Integer settings are coerced from the environment."""
        monkeypatch.setenv("MAX_FAILED_LOGINS", "3")
        monkeypatch.setenv("LOCKOUT_MINUTES", "10")

        settings = config.Settings.from_env()

        assert settings.max_failed_logins == 3
        assert settings.lockout_minutes == 10

    def test_generated_jwt_secret_is_persisted(self, monkeypatch, tmp_path):
        """Without JWT_SECRET a secret is generated once and reused."""
        monkeypatch.delenv("JWT_SECRET", raising=False)
        monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))

        first = config.Settings.from_env().jwt_secret
        second = config.Settings.from_env().jwt_secret

        assert first == second
        assert len(first) >= 32
        assert (tmp_path / ".jwt_secret").read_text() == first

    def test_get_settings_is_cached(self):
        """get_settings returns the same instance until reset."""
        config.reset_settings_cache()
        first = config.get_settings()

        assert config.get_settings() is first
        config.reset_settings_cache()
        assert config.get_settings() is not first
        config.reset_settings_cache()
