from __future__ import annotations

from typing import Optional

import httpx

from medguard.logging import get_logger
from medguard.service.errors import DeliveryFailure

logger = get_logger(__name__)


class SmsService:
    """Delivers one-time codes through an HTTP SMS provider.

    Without a provider URL the service runs in dev mode and only logs a
    redacted destination. The code itself is never logged.
    """

    def __init__(
        self,
        *,
        provider_url: Optional[str] = None,
        api_key: Optional[str] = None,
        sender_id: str = "RedSalud",
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.provider_url = provider_url
        self.api_key = api_key
        self.sender_id = sender_id
        self.timeout = timeout
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.provider_url)

    @staticmethod
    def _redact_phone(phone_number: str) -> str:
        if len(phone_number) <= 4:
            return "redacted"
        return f"***{phone_number[-4:]}"

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def send_message(self, phone_number: str, body: str) -> bool:
        if not self.is_configured:
            logger.info("sms_dev_mode", to=self._redact_phone(phone_number), length=len(body))
            return True

        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.post(
                    self.provider_url,
                    json={"to": phone_number, "from": self.sender_id, "body": body},
                    headers=self._headers(),
                )
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "sms_provider_rejected",
                to=self._redact_phone(phone_number),
                status_code=exc.response.status_code,
            )
            raise DeliveryFailure(
                "sms provider rejected the message",
                detail={"provider_status": exc.response.status_code},
            ) from exc
        except httpx.HTTPError as exc:
            logger.error(
                "sms_provider_unreachable",
                to=self._redact_phone(phone_number),
                error=type(exc).__name__,
            )
            raise DeliveryFailure("sms provider unreachable") from exc

        logger.info("sms_sent", to=self._redact_phone(phone_number))
        return True

    def send_verification_code(self, phone_number: str, code: str, ttl_minutes: int) -> bool:
        body = (
            f"Tu codigo de verificacion es {code}. "
            f"Expira en {ttl_minutes} minutos. No lo compartas con nadie."
        )
        return self.send_message(phone_number, body)


__all__ = ["SmsService"]
