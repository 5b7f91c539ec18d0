"""Telegram Bot API notification implementation."""

import logging
from typing import Any

import httpx

from src.config import Settings, get_settings
from src.notifications.base import Notifier

logger = logging.getLogger(__name__)


class TelegramNotifier(Notifier):
    """Send bargain alerts via Telegram Bot API."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._api_url = (
            f"https://api.telegram.org/bot{self._settings.telegram_bot_token}"
        )
        self._timeout = httpx.Timeout(10.0)
        self._client = client

    @property
    def configured(self) -> bool:
        return bool(self._settings.telegram_bot_token and self._settings.telegram_chat_id)

    async def send(
        self, message: str, *, title: str | None = None, **kwargs: Any
    ) -> bool:
        """Send message to configured Telegram chat."""

        if not self._settings.telegram_bot_token:
            logger.warning("Telegram bot token not configured, skipping notification")
            return False

        if not self._settings.telegram_chat_id:
            logger.warning("Telegram chat ID not configured, skipping notification")
            return False

        full_message = f"🔔 {title}\n\n{message}" if title else message
        payload = {
            "chat_id": self._settings.telegram_chat_id,
            "text": full_message,
            "disable_web_page_preview": True,
            **kwargs,
        }

        try:
            if self._client is not None:
                response = await self._client.post(
                    f"{self._api_url}/sendMessage", json=payload
                )
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(
                        f"{self._api_url}/sendMessage", json=payload
                    )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error("Telegram HTTP error: %s", e.response.status_code)
            return False
        except httpx.HTTPError as e:
            logger.error("Telegram notification failed: %s", e)
            return False

        result = response.json()
        if result.get("ok"):
            logger.info("Telegram notification sent: %s", title or "Notification")
            return True

        logger.error("Telegram API error: %s", result.get("description", "Unknown"))
        return False
