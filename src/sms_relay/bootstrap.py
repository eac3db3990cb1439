"""First-run seeding of the delivery ledger."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from datetime import datetime

from .config_store import ConfigStore
from .deduplication import DeliveryLedger
from .errors import StorageError
from .selector import query_recent
from .sources import MessageSourceProtocol

logger = logging.getLogger(__name__)


class BootstrapInitializer:
    """Mark existing history as forwarded the first time the relay starts.

    Without this the first run would replay every message still inside the
    age window.
    """

    def __init__(
        self,
        store: ConfigStore,
        ledger: DeliveryLedger,
        source: MessageSourceProtocol,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._source = source
        self._lock = asyncio.Lock()

    def is_initialized(self) -> bool:
        try:
            return self._store.is_bootstrapped()
        except sqlite3.Error as exc:
            raise StorageError(f"Не удалось прочитать флаг инициализации: {exc}") from exc

    async def ensure_initialized(
        self, max_age_hours: float, *, now: datetime | None = None
    ) -> int:
        """Seed the ledger once; return the number of ids recorded."""

        if self.is_initialized():
            return 0
        async with self._lock:
            if self.is_initialized():
                return 0
            messages = await query_recent(self._source, max_age_hours, now=now)
            seeded = self._ledger.add_all(message.id for message in messages)
            try:
                self._store.set_bootstrapped()
            except sqlite3.Error as exc:
                raise StorageError(
                    f"Не удалось сохранить флаг инициализации: {exc}"
                ) from exc
            logger.info(
                "Первый запуск: %d сообщений из истории помечены как отправленные",
                seeded,
            )
            return seeded
