"""Alert service for sending operator notifications to Telegram."""

from typing import Optional

from switchboard.config import settings
from switchboard.logging_config import get_logger
from switchboard.services.telegram_service import TelegramService

logger = get_logger("alert_service")

LEVEL_MARKERS = {"INFO": "ℹ️", "WARNING": "⚠️", "ERROR": "❌", "CRITICAL": "🔥"}


def format_alert(level: str, message: str, context: Optional[dict] = None) -> str:
    text = f"{LEVEL_MARKERS.get(level, '📢')} *{level}*\n\n{message}"
    if context:
        context_str = "\n".join(f"  {k}: {v}" for k, v in context.items())
        text += f"\n\n```\n{context_str}\n```"
    return text


async def send_alert(
    level: str,
    message: str,
    context: Optional[dict] = None,
    telegram: Optional[TelegramService] = None,
) -> dict:
    """Send alert to the operator chat.

    Returns the Telegram response; ``ok`` is False when alerts are not configured.
    """
    level = level.upper()
    if not settings.alert_chat_id or (telegram is None and not settings.alert_bot_token):
        logger.warning(f"Alert not configured: {level} - {message}")
        return {"ok": False, "error": "not_configured", "retryable": False}

    telegram = telegram or TelegramService(settings.alert_bot_token, timeout_seconds=10.0)
    return await telegram.send_message(
        settings.alert_chat_id,
        format_alert(level, message, context),
        parse_mode="Markdown",
    )
