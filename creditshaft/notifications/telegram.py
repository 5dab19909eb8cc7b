"""Telegram notification service."""
from __future__ import annotations

import asyncio
import html
import logging
import ssl

import aiohttp
import certifi

from ..config import TelegramConfig

logger = logging.getLogger(__name__)

_API_URL = "https://api.telegram.org/bot{token}/sendMessage"


class TelegramNotifier:
    """Send risk alerts and operator notices via Telegram bots.

    Alerts go through the (unmuted) alert bot, routine logs through the log
    bot. Delivery failures are logged and reported as False, never raised.
    """

    def __init__(self, config: TelegramConfig, timeout: int = 10) -> None:
        self.alert_bot_token = config.alert_bot_token
        self.log_bot_token = config.log_bot_token
        self.chat_id = config.chat_id
        self.timeout = timeout

    async def _send_message(self, text: str, bot_token: str, silent: bool) -> bool:
        if not bot_token or not self.chat_id:
            logger.warning("Telegram credentials not configured")
            return False

        payload = {
            "chat_id": self.chat_id,
            "text": text,
            "parse_mode": "HTML",
            "disable_notification": silent,
        }
        ssl_context = ssl.create_default_context(cafile=certifi.where())
        connector = aiohttp.TCPConnector(ssl=ssl_context)

        try:
            async with aiohttp.ClientSession(connector=connector) as session:
                async with session.post(
                    _API_URL.format(token=bot_token),
                    json=payload,
                    timeout=aiohttp.ClientTimeout(total=self.timeout),
                ) as response:
                    if response.status != 200:
                        logger.error("Failed to send Telegram message: %s", response.status)
                        return False
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("Failed to send Telegram message: %s", e)
            return False
        return True

    async def send_alert(self, message: str, subject: str = "") -> bool:
        text = html.escape(message)
        if subject:
            text = f"<b>{html.escape(subject)}</b>\n\n{text}"
        return await self._send_message(text, self.alert_bot_token, silent=False)

    async def send_log(self, message: str, silent: bool = True) -> bool:
        return await self._send_message(html.escape(message), self.log_bot_token, silent)
