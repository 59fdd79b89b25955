"""Tests for verification code delivery."""

import smtplib

import pytest

from kalibro.service import email as email_module
from kalibro.service.email import EmailService


def _configured(**kwargs):
    return EmailService(
        smtp_host="smtp.library.example",
        smtp_user="mailer@library.example",
        smtp_password="secret",
        **kwargs,
    )


class _RecordingLogger:
    def __init__(self):
        self.events = []

    def _record(self, event, **fields):
        self.events.append((event, fields))

    info = warning = error = _record


class TestEmailService:
    def test_unconfigured_delivery_fails(self, monkeypatch):
        service = EmailService()
        recorded = _RecordingLogger()
        monkeypatch.setattr(email_module, "logger", recorded)

        assert service.is_configured is False
        assert service.send_otp("reader@library.example", "123456", "reset", 10) is False
        assert [event for event, _ in recorded.events] == ["email_not_configured"]

    def test_dev_mode_reports_success_without_sending(self, monkeypatch):
        service = EmailService(dev_mode=True)
        recorded = _RecordingLogger()
        monkeypatch.setattr(email_module, "logger", recorded)

        def _explode(*args, **kwargs):
            raise AssertionError("dev mode must not open SMTP connections")

        monkeypatch.setattr(service, "_deliver", _explode)
        assert service.send_otp("reader@library.example", "123456", "reset", 10) is True
        event, fields = recorded.events[0]
        assert event == "email_dev_mode"
        assert fields["recipient"] == "re***@library.example"
        assert not any("123456" in str(value) for value in fields.values())

    def test_from_address_defaults_to_smtp_user(self):
        assert _configured().from_email == "mailer@library.example"
        assert _configured(from_email="noreply@library.example").from_email == (
            "noreply@library.example"
        )

    def test_otp_message_carries_code_and_subject(self, monkeypatch):
        service = _configured()
        delivered = []
        monkeypatch.setattr(service, "_deliver", lambda to, msg: delivered.append((to, msg)))

        assert service.send_otp("reader@library.example", "654321", "register", 10) is True
        to_email, message = delivered[0]
        assert to_email == "reader@library.example"
        assert "Subject: Verify your email for Kalibro" in message
        assert "654321" in message
        assert "10 minutes" in message

    def test_reset_subject(self, monkeypatch):
        service = _configured()
        delivered = []
        monkeypatch.setattr(service, "_deliver", lambda to, msg: delivered.append(msg))
        service.send_otp("reader@library.example", "654321", "reset", 10)
        assert "Subject: Your Kalibro password reset code" in delivered[0]

    @pytest.mark.parametrize(
        "error",
        [
            smtplib.SMTPAuthenticationError(535, b"bad credentials"),
            smtplib.SMTPRecipientsRefused({"reader@library.example": (550, b"no such user")}),
            smtplib.SMTPServerDisconnected("gone"),
            ConnectionRefusedError("refused"),
            TimeoutError("timed out"),
        ],
    )
    def test_delivery_failures_return_false(self, monkeypatch, error):
        service = _configured()

        def _fail(to_email, message):
            raise error

        monkeypatch.setattr(service, "_deliver", _fail)
        assert service.send_otp("reader@library.example", "123456", "reset", 10) is False

    def test_redaction_keeps_domain(self):
        service = EmailService()
        assert service._redact_email("reader@library.example") == "re***@library.example"
        assert service._redact_email("no-at-sign") == "redacted"
