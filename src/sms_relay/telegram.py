"""Telegram Bot API transport used to deliver forwarded SMS."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol

import aiohttp

from .models import DestinationConfig

API_BASE = "https://api.telegram.org"
_SEND_TIMEOUT = 10.0

logger = logging.getLogger(__name__)


class TransportProtocol(Protocol):
    async def send(self, text: str) -> bool: ...


class TelegramSender:
    """Post plain text messages to a single Telegram chat.

    Every failure (HTTP error status, ``ok: false`` payload, network error or
    timeout) is reported as ``False``; nothing is retried here.
    """

    def __init__(
        self,
        config: DestinationConfig,
        session: aiohttp.ClientSession,
        *,
        api_base: str = API_BASE,
        timeout: float = _SEND_TIMEOUT,
    ):
        self._config = config
        self._session = session
        self._api_base = api_base.rstrip("/")
        self._timeout = timeout

    async def send(self, text: str) -> bool:
        url = f"{self._api_base}/bot{self._config.bot_token}/sendMessage"
        data: dict[str, Any] = {"chat_id": self._config.chat_id, "text": text}
        try:
            timeout_cfg = aiohttp.ClientTimeout(total=self._timeout)
            async with self._session.post(url, data=data, timeout=timeout_cfg) as resp:
                status = resp.status
                payload = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.warning("Ошибка отправки в Telegram: %s", exc.__class__.__name__)
            return False
        except ValueError:
            logger.warning("Telegram вернул некорректный ответ")
            return False

        if status != 200 or not isinstance(payload, dict) or not payload.get("ok"):
            description = payload.get("description") if isinstance(payload, dict) else None
            logger.warning(
                "Telegram отклонил сообщение (HTTP %s): %s",
                status,
                description or "без описания",
            )
            return False
        logger.debug("Сообщение доставлено в Telegram (HTTP %s)", status)
        return True
