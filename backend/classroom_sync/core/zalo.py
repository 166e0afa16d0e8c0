"""
Zalo Bot notification service.

Pushes high-severity security alerts to the operator via Zalo Bot API
(sendMessage). Docs: https://bot.zaloplatforms.com/docs/
"""

import logging
import httpx

from classroom_sync.config import get_settings
from classroom_sync.features.alerts.schemas import SecurityAlert

logger = logging.getLogger(__name__)

ZALO_API_BASE = "https://bot-api.zaloplatforms.com"
MAX_MESSAGE_CHARS = 2000


def format_alert(alert: SecurityAlert) -> str:
    where = " / ".join(p for p in (alert.location, alert.classroom) if p)
    header = f"🚨 [{alert.severity.value.upper()}] {alert.device_name or alert.device_id}"
    if where:
        header += f" ({where})"
    return f"{header}\n{alert.message}"


async def send_zalo_message(text: str, chat_id: str | None = None) -> bool:
    """Send a text message via Zalo Bot.

    Returns:
        True if sent successfully, False otherwise (never raises).
    """
    settings = get_settings()

    token = settings.ZALO_BOT_TOKEN
    recipient = chat_id or settings.ZALO_CHAT_ID

    if not token or not recipient:
        logger.debug("Zalo Bot not configured (missing ZALO_BOT_TOKEN or ZALO_CHAT_ID)")
        return False

    if len(text) > MAX_MESSAGE_CHARS:
        text = text[:MAX_MESSAGE_CHARS - 3] + "..."

    url = f"{ZALO_API_BASE}/bot{token}/sendMessage"
    try:
        async with httpx.AsyncClient(timeout=15) as client:
            response = await client.post(url, json={"chat_id": recipient, "text": text})
            data = response.json()

            if data.get("ok"):
                logger.info("✅ Zalo alert sent")
                return True
            logger.error(f"❌ Zalo API error: {data}")
            return False
    except Exception as e:
        logger.error(f"❌ Failed to send Zalo message: {e}")
        return False


async def send_alert_notification(alert: SecurityAlert) -> bool:
    return await send_zalo_message(format_alert(alert))
