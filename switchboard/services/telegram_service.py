from typing import Optional

import httpx

from switchboard.logging_config import get_logger

logger = get_logger("telegram_service")


class TelegramService:
    """Service for sending messages to Telegram."""

    BASE_URL = "https://api.telegram.org/bot{token}"

    def __init__(
        self,
        bot_token: str,
        timeout_seconds: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.bot_token = bot_token
        self.base_url = self.BASE_URL.format(token=bot_token)
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def _make_request(self, method: str, data: Optional[dict] = None) -> dict:
        """Make request to Telegram API. Transport failures come back as ``ok: False``."""
        url = f"{self.base_url}/{method}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = await client.post(url, json=data or {})
        except httpx.HTTPError as e:
            logger.error(f"Telegram API error: {e}")
            return {"ok": False, "error": str(e), "retryable": True}

        try:
            body = response.json()
        except ValueError:
            body = {"ok": False, "description": response.text}
        if not body.get("ok"):
            body["retryable"] = response.status_code == 429 or response.status_code >= 500
            logger.error(
                "Telegram API rejected request",
                extra={"context": {"method": method, "status": response.status_code, "body": body}},
            )
        return body

    async def send_message(
        self,
        chat_id: str,
        text: str,
        parse_mode: Optional[str] = "HTML",
        reply_to_message_id: Optional[int] = None,
    ) -> dict:
        """Send message to Telegram chat."""
        data = {"chat_id": chat_id, "text": text}
        if parse_mode:
            data["parse_mode"] = parse_mode
        if reply_to_message_id:
            data["reply_to_message_id"] = reply_to_message_id

        return await self._make_request("sendMessage", data)
