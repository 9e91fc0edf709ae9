"""
monitoring/notifier.py - Operator notifications.

Fire-and-forget: delivery failures are logged and swallowed so a flaky
chat API can never stall the control loop.
"""

from typing import Optional, Protocol

import httpx

from core.logging import get_logger

logger = get_logger("liqbot.notifier")

TELEGRAM_API = "https://api.telegram.org"


class Notifier(Protocol):
    async def send(self, message: str) -> bool: ...

    async def close(self) -> None: ...


class NullNotifier:
    """Used when no notification channel is configured."""

    async def send(self, message: str) -> bool:
        logger.debug("Notification (disabled)", extra={"context": {"message": message}})
        return False

    async def close(self) -> None:
        pass


class TelegramNotifier:
    """Telegram Bot API sendMessage over httpx."""

    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        timeout_seconds: float = 10.0,
        base_url: str = TELEGRAM_API,
    ):
        self.chat_id = chat_id
        self._url = f"{base_url}/bot{bot_token}/sendMessage"
        self._timeout = timeout_seconds
        self._client: Optional[httpx.AsyncClient] = None
        self.sent = 0
        self.failed = 0

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self._timeout))
        return self._client

    async def send(self, message: str) -> bool:
        client = await self._get_client()
        try:
            resp = await client.post(
                self._url,
                json={
                    "chat_id": self.chat_id,
                    "text": message,
                    "parse_mode": "HTML",
                    "disable_web_page_preview": True,
                },
            )
            resp.raise_for_status()
        except httpx.HTTPError as e:
            self.failed += 1
            logger.warning(f"Telegram delivery failed: {type(e).__name__}")
            return False

        self.sent += 1
        return True

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None


def build_notifier(bot_token: Optional[str], chat_id: Optional[str]) -> Notifier:
    if bot_token and chat_id:
        return TelegramNotifier(bot_token, chat_id)
    return NullNotifier()
