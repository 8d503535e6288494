"""Outbound WhatsApp delivery through the channel's configured provider."""

import re
from typing import Optional

import httpx

from switchboard.logging_config import get_logger
from switchboard.services.result import Result

logger = get_logger("whatsapp_service")

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504, 520})
NON_RETRYABLE_STATUS_CODES = frozenset({400, 401, 403, 404})

ULTRAMSG_URL = "https://api.ultramsg.com/{instance_id}/messages/chat"
TWILIO_URL = "https://api.twilio.com/2010-04-01/Accounts/{account_sid}/Messages.json"
DIALOG360_URL = "https://waba-v2.360dialog.io/messages"


def is_retryable_status(status_code: int) -> bool:
    if status_code in RETRYABLE_STATUS_CODES:
        return True
    if status_code in NON_RETRYABLE_STATUS_CODES:
        return False
    return status_code >= 500


def _digits(phone: str) -> str:
    return re.sub(r"\s+", "", phone).lstrip("+").removesuffix("@c.us")


class WhatsAppService:
    """Sends text messages for one channel. ``config`` is the channel's JSON config."""

    def __init__(
        self,
        config: dict,
        timeout_seconds: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config or {}
        self.provider = (self.config.get("provider") or "ultramsg").lower()
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    def _token(self) -> Optional[str]:
        return self.config.get("token") or self.config.get("apiToken")

    def _build_request(self, to: str, text: str, reference_id: Optional[str]) -> Optional[dict]:
        """Provider-specific request kwargs, or None when credentials are missing."""
        if self.provider == "ultramsg":
            instance_id = self.config.get("instanceId")
            token = self._token()
            if not instance_id or not token:
                return None
            payload = {"to": to if "@c.us" in to else f"{to}@c.us", "body": text, "priority": 5}
            if reference_id:
                payload["referenceId"] = reference_id
            return {
                "url": ULTRAMSG_URL.format(instance_id=instance_id),
                "params": {"token": token},
                "json": payload,
            }

        if self.provider == "twilio":
            account_sid = self.config.get("accountSid")
            auth_token = self.config.get("authToken")
            phone_number = self.config.get("phoneNumber")
            if not account_sid or not auth_token or not phone_number:
                return None
            return {
                "url": TWILIO_URL.format(account_sid=account_sid),
                "auth": (account_sid, auth_token),
                "data": {"From": f"whatsapp:{phone_number}", "To": f"whatsapp:{to}", "Body": text},
            }

        if self.provider == "360dialog":
            token = self._token()
            if not token:
                return None
            return {
                "url": DIALOG360_URL,
                "headers": {"D360-API-KEY": token},
                "json": {
                    "recipient_type": "individual",
                    "messaging_product": "whatsapp",
                    "to": _digits(to),
                    "type": "text",
                    "text": {"body": text},
                },
            }

        return None

    async def send_text(self, to: str, text: str, reference_id: Optional[str] = None) -> Result[dict]:
        if not to or not text:
            return Result.failure("Recipient and text are required", code="invalid_message")

        request = self._build_request(to, text, reference_id)
        if request is None:
            logger.error(
                "WhatsApp provider not configured",
                extra={"context": {"provider": self.provider}},
            )
            return Result.failure(f"Provider {self.provider} is not configured", code="not_configured")

        url = request.pop("url")
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = await client.post(url, **request)
        except httpx.TimeoutException as exc:
            logger.warning(f"WhatsApp send timed out: {exc}", extra={"context": {"provider": self.provider}})
            return Result.failure(f"Timeout: {exc}", code="timeout", retryable=True)
        except httpx.TransportError as exc:
            logger.warning(f"WhatsApp network error: {exc}", extra={"context": {"provider": self.provider}})
            return Result.failure(f"Network error: {exc}", code="network", retryable=True)

        if response.status_code >= 400:
            retryable = is_retryable_status(response.status_code)
            logger.error(
                "WhatsApp provider error",
                extra={
                    "context": {
                        "provider": self.provider,
                        "status": response.status_code,
                        "retryable": retryable,
                        "body": response.text[:500],
                    }
                },
            )
            return Result.failure(
                f"HTTP {response.status_code}: {response.text[:200]}",
                code=f"http_{response.status_code}",
                retryable=retryable,
            )

        try:
            data = response.json()
        except ValueError:
            data = {"raw": response.text}

        # UltraMsg reports some failures with HTTP 200 and an ``error`` field.
        if isinstance(data, dict) and data.get("error"):
            logger.error(
                "WhatsApp provider rejected message",
                extra={"context": {"provider": self.provider, "error": data.get("error")}},
            )
            return Result.failure(str(data["error"]), code="provider_error")

        logger.info("WhatsApp message sent", extra={"context": {"provider": self.provider, "to": to}})
        return Result.success(data if isinstance(data, dict) else {"response": data})
