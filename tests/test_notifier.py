"""Tests for OTP delivery over email (SMTP) and SMS (HTTP gateway)."""

import asyncio
import smtplib
from unittest.mock import MagicMock, patch

import httpx
import pytest

from otpgate.service.delivery import DeliveryResult
from otpgate.service.email import EmailService
from otpgate.service.errors import DeliveryError
from otpgate.service.notifier import OtpNotifier
from otpgate.service.sms import SmsService
from otpgate.storage.models import IdentifierKind


def _sms(handler, **kwargs):
    return SmsService(
        base_url="https://sms.example.test/index.php",
        access_token="secret-token",
        sender="TraVinhGo",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


class TestSmsService:
    async def test_posts_to_gateway(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"status": "success"})

        sms = _sms(handler)
        result = await sms.send_sms("0912345678", "Your OTP in TRAVINHGO is 123456")
        assert result.sent and result.error is None

        request = seen[0]
        assert request.method == "POST"
        assert request.url.path == "/index.php/sms/send"
        assert request.url.params["to"] == "84912345678"
        assert request.url.params["sender"] == "TraVinhGo"
        assert request.url.params["content"] == "Your OTP in TRAVINHGO is 123456"
        assert request.headers["authorization"].startswith("Basic ")

    def test_normalize_phone(self):
        sms = SmsService(base_url="https://x", country_prefix="84")
        assert sms.normalize_phone("0912345678") == "84912345678"
        assert sms.normalize_phone("+84 912-345-678") == "84912345678"
        assert sms.normalize_phone("84912345678") == "84912345678"

    async def test_gateway_error_status(self):
        sms = _sms(lambda request: httpx.Response(500))

        result = await sms.send_sms("0912345678", "body")
        assert not result
        assert "500" in result.error

    async def test_gateway_rejection(self):
        sms = _sms(lambda request: httpx.Response(200, json={"status": "error", "message": "bad sender"}))

        result = await sms.send_sms("0912345678", "body")
        assert not result.sent
        assert "bad sender" in result.error

    async def test_dev_mode_without_token(self):
        sms = SmsService(base_url="https://unused.invalid")
        assert await sms.send_sms("0912345678", "body") == DeliveryResult.ok()


class TestEmailService:
    def test_send_otp_code_over_smtp(self):
        service = EmailService(
            smtp_host="smtp.example.test",
            smtp_user="mailer@example.test",
            smtp_password="pw",
            app_name="TRAVINHGO",
        )
        with patch("otpgate.service.email.smtplib.SMTP") as smtp_cls:
            server = smtp_cls.return_value.__enter__.return_value
            assert service.send_otp_code("user@example.com", "123456")

        server.starttls.assert_called_once()
        server.login.assert_called_once_with("mailer@example.test", "pw")
        from_addr, to_addr, message = server.sendmail.call_args[0]
        assert to_addr == "user@example.com"
        assert "OTP Verification For TRAVINHGO" in message

    def test_body_states_configured_lifetime(self):
        service = EmailService(
            smtp_host="smtp.example.test",
            from_email="noreply@example.test",
            ttl_minutes=10,
        )
        with patch("otpgate.service.email.smtplib.SMTP") as smtp_cls:
            server = smtp_cls.return_value.__enter__.return_value
            assert service.send_otp_code("user@example.com", "123456")

        message = server.sendmail.call_args[0][2]
        assert "expire in 10 minutes" in message
        assert "5 minutes" not in message

    def test_smtp_failure_returns_false(self):
        service = EmailService(smtp_host="smtp.example.test", from_email="noreply@example.test")
        with patch("otpgate.service.email.smtplib.SMTP") as smtp_cls:
            server = smtp_cls.return_value.__enter__.return_value
            server.sendmail.side_effect = smtplib.SMTPException("boom")
            result = service.send_otp_code("user@example.com", "123456")
        assert not result.sent
        assert result.error.startswith("smtp error")

    def test_unconfigured_is_dev_mode(self):
        assert EmailService().send_otp_code("user@example.com", "123456").sent


class TestOtpNotifier:
    async def test_email_routing(self):
        email = MagicMock(spec=EmailService)
        email.send_otp_code.return_value = DeliveryResult.ok()
        sms = MagicMock(spec=SmsService)
        notifier = OtpNotifier(email, sms)

        await notifier.send_code("user@example.com", IdentifierKind.EMAIL, "123456")

        email.send_otp_code.assert_called_once_with("user@example.com", "123456")
        sms.send_sms.assert_not_called()

    async def test_sms_routing_and_body(self):
        seen = []

        def handler(request):
            seen.append(request.url.params["content"])
            return httpx.Response(200, json={"status": "success"})

        notifier = OtpNotifier(EmailService(), _sms(handler), app_name="TRAVINHGO")
        await notifier.send_code("+84912345678", IdentifierKind.PHONE, "654321")

        assert seen == ["Your OTP in TRAVINHGO is 654321"]

    async def test_failed_send_raises_delivery_error(self):
        notifier = OtpNotifier(EmailService(), _sms(lambda request: httpx.Response(503)))

        with pytest.raises(DeliveryError) as excinfo:
            await notifier.send_code("0912345678", IdentifierKind.PHONE, "111111")
        assert excinfo.value.status_code == 502
        assert excinfo.value.detail["kind"] == "phone"

    async def test_exception_becomes_delivery_error(self):
        email = MagicMock(spec=EmailService)
        email.send_otp_code.side_effect = RuntimeError("socket closed")
        notifier = OtpNotifier(email, MagicMock(spec=SmsService))

        with pytest.raises(DeliveryError):
            await notifier.send_code("user@example.com", IdentifierKind.EMAIL, "111111")

    async def test_rejection_reason_is_reported(self):
        email = MagicMock(spec=EmailService)
        email.send_otp_code.return_value = DeliveryResult.failed("recipient refused")
        notifier = OtpNotifier(email, MagicMock(spec=SmsService))

        with pytest.raises(DeliveryError) as excinfo:
            await notifier.send_code("user@example.com", IdentifierKind.EMAIL, "111111")
        assert excinfo.value.detail["reason"] == "recipient refused"

    async def test_concurrent_sends_keep_their_own_reason(self):
        def handler(request):
            if request.url.params["to"].endswith("1"):
                return httpx.Response(500)
            return httpx.Response(200, json={"status": "success"})

        sms = _sms(handler)
        failed, sent = await asyncio.gather(
            sms.send_sms("0912345671", "body"),
            sms.send_sms("0912345672", "body"),
        )
        assert failed.error == "gateway returned 500"
        assert sent.sent and sent.error is None
