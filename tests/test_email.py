"""Tests for outgoing mail (iam/email.py)."""
import smtplib
from unittest.mock import MagicMock, patch

from iam.email import EmailService, _redact_email


def configured_service(**overrides):
    params = dict(
        smtp_host="smtp.example.com",
        smtp_port=587,
        smtp_user="mailer@example.com",
        smtp_password="pw",
        from_email="no-reply@example.com",
    )
    params.update(overrides)
    return EmailService(**params)


class TestDevMode:

    def test_unconfigured_service_logs_and_succeeds(self, caplog):
        service = EmailService()

        with patch("iam.email.smtplib.SMTP") as smtp, caplog.at_level("INFO", logger="iam.email"):
            assert service.send_otp_code("ada@example.com", "123456", 300)

        smtp.assert_not_called()
        assert "ad***@example.com" in caplog.text
        assert "123456" not in caplog.text

    def test_from_settings_without_host(self, settings):
        assert not EmailService.from_settings(settings).is_configured


class TestSmtpDelivery:

    def test_starttls_send(self):
        service = configured_service()

        with patch("iam.email.smtplib.SMTP") as smtp:
            server = smtp.return_value.__enter__.return_value
            assert service.send_password_reset("ada@example.com", "reset-token", 60)

        smtp.assert_called_once_with("smtp.example.com", 587, timeout=30)
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("mailer@example.com", "pw")
        from_addr, to_addr, body = server.sendmail.call_args[0]
        assert from_addr == "no-reply@example.com"
        assert to_addr == "ada@example.com"
        assert "reset-token" in body

    def test_implicit_tls_send(self):
        service = configured_service(smtp_port=465, smtp_use_tls=False)

        with patch("iam.email.smtplib.SMTP_SSL") as smtp_ssl:
            assert service.send_otp_code("ada@example.com", "654321", 300)

        smtp_ssl.return_value.__enter__.return_value.sendmail.assert_called_once()

    def test_authentication_failure_returns_false(self):
        service = configured_service()

        with patch("iam.email.smtplib.SMTP") as smtp:
            server = smtp.return_value.__enter__.return_value
            server.login.side_effect = smtplib.SMTPAuthenticationError(535, b"bad credentials")
            assert service.send_otp_code("ada@example.com", "123456", 300) is False

    def test_connection_failure_returns_false(self):
        service = configured_service()

        with patch("iam.email.smtplib.SMTP", side_effect=OSError("unreachable")):
            assert service.send_password_reset("ada@example.com", "t", 60) is False

    def test_from_email_defaults_to_user(self):
        service = EmailService(smtp_host="smtp.example.com", smtp_user="mailer@example.com")

        assert service.from_email == "mailer@example.com"
        assert service.is_configured


class TestRedactEmail:

    def test_redacts_local_part(self):
        assert _redact_email("ada.lovelace@example.com") == "ad***@example.com"

    def test_invalid_address(self):
        assert _redact_email("") == "redacted"
        assert _redact_email("no-at-sign") == "redacted"


def test_otp_body_mentions_expiry_minutes():
    service = configured_service()
    service._send_email = MagicMock(return_value=True)

    service.send_otp_code("ada@example.com", "123456", 600)

    text_body = service._send_email.call_args[0][2]
    assert "123456" in text_body
    assert "10 minutes" in text_body
