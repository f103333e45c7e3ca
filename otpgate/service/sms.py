from __future__ import annotations

from typing import Optional

import httpx

from otpgate.logging import get_logger
from otpgate.service.delivery import DeliveryResult

logger = get_logger(__name__)


class SmsService:
    """HTTP SMS gateway client.

    Posts to ``{base_url}/sms/send`` with basic auth ``access_token:x``. Local
    numbers with a leading ``0`` are rewritten to the country prefix. Without
    an access token the service runs in dev mode and only logs.
    """

    def __init__(
        self,
        *,
        base_url: str,
        access_token: Optional[str] = None,
        sender: Optional[str] = None,
        country_prefix: str = "84",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.access_token = access_token
        self.sender = sender
        self.country_prefix = country_prefix
        self.timeout = timeout
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.access_token)

    def normalize_phone(self, phone: str) -> str:
        digits = "".join(ch for ch in phone if ch.isdigit() or ch == "+")
        if digits.startswith("+"):
            return digits[1:]
        if digits.startswith("0"):
            return f"{self.country_prefix}{digits[1:]}"
        return digits

    @staticmethod
    def _redact_phone(phone: str) -> str:
        return f"***{phone[-3:]}" if len(phone) > 3 else "***"

    async def send_sms(self, to: str, body: str) -> DeliveryResult:
        number = self.normalize_phone(to)
        if not self.is_configured:
            logger.info("sms_dev_mode", to=self._redact_phone(number))
            return DeliveryResult.ok()

        params = {"content": body, "to": number}
        if self.sender:
            params["sender"] = self.sender
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=False,
                transport=self._transport,
            ) as client:
                response = await client.post(
                    f"{self.base_url}/sms/send",
                    params=params,
                    auth=(self.access_token, "x"),
                    headers={"Accept": "application/json"},
                )
                response.raise_for_status()
                try:
                    payload = response.json()
                except ValueError:
                    payload = {}
        except httpx.HTTPStatusError as exc:
            logger.error(
                "sms_gateway_status",
                to=self._redact_phone(number),
                status=exc.response.status_code,
            )
            return DeliveryResult.failed(f"gateway returned {exc.response.status_code}")
        except httpx.HTTPError as exc:
            logger.error(
                "sms_gateway_unreachable",
                to=self._redact_phone(number),
                error=str(exc),
            )
            return DeliveryResult.failed(f"gateway unreachable: {type(exc).__name__}")

        if isinstance(payload, dict) and payload.get("status") not in (None, "success"):
            logger.error(
                "sms_gateway_rejected",
                to=self._redact_phone(number),
                gateway_status=payload.get("status"),
            )
            return DeliveryResult.failed(
                f"gateway rejected message: {payload.get('message') or payload.get('status')}"
            )

        logger.info("sms_sent", to=self._redact_phone(number))
        return DeliveryResult.ok()
