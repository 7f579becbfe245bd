"""Tests for transactional email rendering and delivery errors."""

import smtplib

import pytest

from stayhub.service import email as email_module
from stayhub.service.email import EmailKind, EmailService, render_email
from stayhub.service.errors import EmailDeliveryError


class TestRender:
    def test_registration_carries_link(self):
        rendered = render_email(
            EmailKind.REGISTRATION,
            {"name": "Lan", "verificationLink": "https://stay.example/verify/abc"},
        )

        assert "registration" in rendered.subject.lower()
        assert "Hi Lan," in rendered.text_body
        assert "https://stay.example/verify/abc" in rendered.text_body
        assert 'href="https://stay.example/verify/abc"' in rendered.html_body

    def test_reset_uses_reset_link(self):
        rendered = render_email(
            EmailKind.PASSWORD_RESET, {"name": "Lan", "resetLink": "https://r.example/?token=t"}
        )

        assert "https://r.example/?token=t" in rendered.text_body

    def test_html_escapes_names(self):
        rendered = render_email(EmailKind.WELCOME, {"name": "<script>"})

        assert "<script>" not in rendered.html_body
        assert "&lt;script&gt;" in rendered.html_body

    def test_test_kind_has_no_action(self):
        rendered = render_email(EmailKind.TEST, {"message": "ping"})

        assert "ping" in rendered.text_body
        assert "class=\"button\"" not in rendered.html_body


class TestDelivery:
    async def test_unconfigured_service_logs_instead_of_sending(self, monkeypatch):
        def _fail(*args, **kwargs):
            raise AssertionError("SMTP should not be used")

        monkeypatch.setattr(email_module.smtplib, "SMTP", _fail)
        service = EmailService()

        assert service.is_configured is False
        await service.send_templated("a@example.com", EmailKind.TEST, {})

    async def test_auth_failure_raises_delivery_error(self, monkeypatch):
        class RejectingSMTP:
            def __init__(self, *args, **kwargs):
                pass

            def __enter__(self):
                return self

            def __exit__(self, *exc):
                return False

            def starttls(self, context=None):
                pass

            def login(self, user, password):
                raise smtplib.SMTPAuthenticationError(535, b"bad credentials")

        monkeypatch.setattr(email_module.smtplib, "SMTP", RejectingSMTP)
        service = EmailService(
            smtp_host="smtp.example.com",
            smtp_user="mailer@example.com",
            smtp_password="secret",
        )

        with pytest.raises(EmailDeliveryError) as excinfo:
            await service.send_templated("a@example.com", EmailKind.TEST, {})
        assert excinfo.value.error_code == "email_delivery_failed"

    async def test_connection_error_raises_delivery_error(self, monkeypatch):
        def _refuse(*args, **kwargs):
            raise ConnectionRefusedError("no relay")

        monkeypatch.setattr(email_module.smtplib, "SMTP", _refuse)
        service = EmailService(smtp_host="smtp.example.com", from_email="noreply@example.com")

        with pytest.raises(EmailDeliveryError):
            await service.send_templated("a@example.com", EmailKind.TEST, {})
