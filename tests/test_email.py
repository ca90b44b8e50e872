"""Tests for transactional email delivery."""

import smtplib
from datetime import datetime, timezone

from estate_auth.service.email import NotificationService


class TestDevMode:
    def test_unconfigured_service_logs_instead_of_sending(self, monkeypatch):
        def _no_smtp(*args, **kwargs):
            raise AssertionError("SMTP must not be used in dev mode")

        monkeypatch.setattr(smtplib, "SMTP", _no_smtp)
        service = NotificationService()

        assert not service.is_configured
        assert service.send_password_reset("owner@example.com", "tok")

    def test_from_settings(self, settings):
        service = NotificationService.from_settings(settings)

        assert service.base_url == "http://localhost:3000"
        assert service.from_name == "Estate Marketplace"


class TestSmtpDelivery:
    def test_connection_failure_returns_false(self, monkeypatch):
        def _refuse(*args, **kwargs):
            raise ConnectionRefusedError("no server")

        monkeypatch.setattr(smtplib, "SMTP", _refuse)
        service = NotificationService(smtp_host="smtp.invalid", from_email="noreply@example.com")

        sent = service.send_trial_expired("owner@example.com", "Owner", 3)

        assert sent is False

    def test_message_contains_trial_details(self, monkeypatch):
        captured = {}

        class FakeSMTP:
            def __init__(self, host, port, timeout):
                captured["host"] = host

            def __enter__(self):
                return self

            def __exit__(self, *exc):
                return False

            def starttls(self, context):
                pass

            def login(self, user, password):
                pass

            def sendmail(self, sender, recipient, message):
                captured["recipient"] = recipient
                captured["message"] = message

        monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
        service = NotificationService(smtp_host="smtp.example.com", from_email="noreply@example.com")
        end = datetime(2026, 1, 12, 9, 0, tzinfo=timezone.utc)

        assert service.send_trial_started("agent@example.com", "Ada", end, 10)
        assert captured["recipient"] == "agent@example.com"
        assert "2026-01-12 09:00" in captured["message"]


def test_redact_email():
    assert NotificationService._redact_email("owner@example.com") == "ow***@example.com"
    assert NotificationService._redact_email("broken") == "redacted"
