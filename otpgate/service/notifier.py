from __future__ import annotations

import asyncio
from typing import Protocol

from otpgate.logging import get_logger, sanitize_error_message
from otpgate.service.delivery import DeliveryResult
from otpgate.service.email import EmailService
from otpgate.service.errors import DeliveryError
from otpgate.service.sms import SmsService
from otpgate.storage.models import IdentifierKind

logger = get_logger(__name__)


class Notifier(Protocol):
    async def send_code(self, identifier: str, kind: IdentifierKind, code: str) -> None:
        """Deliver ``code`` to ``identifier``; raise ``DeliveryError`` on failure."""
        ...


class OtpNotifier:
    """Routes one-time codes to email or SMS by identifier kind.

    Sends are attempted once; a failed send surfaces as ``DeliveryError``.
    """

    def __init__(self, email: EmailService, sms: SmsService, *, app_name: str = "TRAVINHGO") -> None:
        self.email = email
        self.sms = sms
        self.app_name = app_name

    async def send_code(self, identifier: str, kind: IdentifierKind, code: str) -> None:
        result: DeliveryResult
        try:
            if kind == IdentifierKind.EMAIL:
                result = await asyncio.to_thread(self.email.send_otp_code, identifier, code)
            else:
                body = f"Your OTP in {self.app_name} is {code}"
                result = await self.sms.send_sms(identifier, body)
        except Exception as exc:
            logger.error("otp_delivery_error", kind=kind.value, error_type=type(exc).__name__)
            raise DeliveryError(
                "failed to deliver otp code",
                detail={"kind": kind.value, "reason": sanitize_error_message(str(exc))},
            ) from exc
        if not result:
            reason = result.error or "delivery rejected"
            logger.error("otp_delivery_failed", kind=kind.value)
            raise DeliveryError(
                "failed to deliver otp code",
                detail={"kind": kind.value, "reason": sanitize_error_message(reason)},
            )
