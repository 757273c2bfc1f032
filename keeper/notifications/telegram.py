"""Telegram delivery of keeper action results and alerts."""
import asyncio
import html
import logging
import ssl
from typing import Any

import aiohttp
import certifi

from ..config import TelegramConfig

logger = logging.getLogger(__name__)

TELEGRAM_API_URL = "https://api.telegram.org"
SEND_TIMEOUT = 10


class TelegramNotifier:
    """Send notifications via Telegram bots.

    Alerts (fatal errors, failed actions) go through the alert bot unmuted;
    routine action results go through the log bot.
    """

    def __init__(self, config: TelegramConfig, api_url: str = TELEGRAM_API_URL) -> None:
        self.alert_bot_token = config.alert_bot_token
        self.log_bot_token = config.log_bot_token
        self.chat_id = config.chat_id
        self.api_url = api_url
        self._ssl_context = ssl.create_default_context(cafile=certifi.where())

    def _payload(self, message: str, silent: bool) -> dict[str, Any]:
        return {
            "chat_id": self.chat_id,
            "text": html.escape(message, quote=False),
            "parse_mode": "HTML",
            "disable_notification": silent,
        }

    async def _post(self, url: str, payload: dict[str, Any]) -> int:
        connector = aiohttp.TCPConnector(ssl=self._ssl_context)
        async with aiohttp.ClientSession(connector=connector) as session:
            async with session.post(
                url, json=payload, timeout=aiohttp.ClientTimeout(total=SEND_TIMEOUT)
            ) as response:
                return response.status

    async def _deliver(self, message: str, bot_token: str, silent: bool) -> bool:
        """POST ``message`` through ``bot_token``; any failure is logged and reported as False."""
        if not bot_token or not self.chat_id:
            logger.warning("Telegram credentials not configured")
            return False

        try:
            status = await self._post(
                f"{self.api_url}/bot{bot_token}/sendMessage", self._payload(message, silent)
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("Telegram delivery failed: %s", e)
            return False
        if status != 200:
            logger.error("Telegram rejected message: HTTP %s", status)
            return False
        return True

    async def send_alert(self, message: str, subject: str = "") -> bool:
        text = f"{subject}\n\n{message}" if subject else message
        delivered = await self._deliver(text, self.alert_bot_token, silent=False)
        if delivered:
            logger.debug("Telegram alert delivered")
        return delivered

    async def send_log(self, message: str, silent: bool = True) -> bool:
        delivered = await self._deliver(message, self.log_bot_token, silent=silent)
        if delivered:
            logger.debug("Telegram log delivered")
        return delivered
