"""Operator alerts over the Telegram Bot API.

One POST per message to /bot<token>/sendMessage, parse_mode HTML, so the text
is HTML-escaped. Anything but HTTP 200 is a delivery failure; callers decide
what to do with it (the loop only logs).
"""

from __future__ import annotations

import asyncio
import html
from typing import Any, Dict

import aiohttp

from exitbot import config
from exitbot.errors import NotifyError


class TelegramNotifier:
    def __init__(
        self,
        bot_token: str,
        chat_id: int,
        *,
        api_url: str = config.TELEGRAM_API_URL,
        timeout_s: float = config.NOTIFY_TIMEOUT_S,
    ) -> None:
        self.bot_token = str(bot_token)
        self.chat_id = int(chat_id)
        self.api_url = str(api_url).rstrip("/")
        self.timeout_s = float(timeout_s)

    def _url(self) -> str:
        return f"{self.api_url}/bot{self.bot_token}/sendMessage"

    def build_payload(self, message: str) -> Dict[str, Any]:
        return {
            "chat_id": self.chat_id,
            "text": html.escape(str(message), quote=False),
            "parse_mode": "HTML",
        }

    async def _post(self, url: str, payload: Dict[str, Any]) -> int:
        timeout = aiohttp.ClientTimeout(total=self.timeout_s)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.post(url, json=payload) as resp:
                return int(resp.status)

    async def notify(self, message: str) -> None:
        try:
            status = await self._post(self._url(), self.build_payload(message))
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise NotifyError(f"telegram unreachable: {type(exc).__name__}: {exc}") from exc
        if status != 200:
            raise NotifyError(f"telegram http_{status}")
