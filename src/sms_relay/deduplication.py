"""Persistent record of SMS that were already forwarded."""

from __future__ import annotations

import logging
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Iterable

from .config_store import ConfigStore
from .errors import StorageError
from .models import datetime_to_millis
from .utils import KeyedLockGuard

logger = logging.getLogger(__name__)


class DeliveryLedger:
    """Set of forwarded message ids backed by the config store.

    Ids are only ever added; :meth:`prune` drops entries whose message is
    older than a cutoff, which callers keep beyond the selection window.
    """

    def __init__(self, store: ConfigStore) -> None:
        self._store = store
        self._guard = KeyedLockGuard()

    def contains(self, message_id: str) -> bool:
        try:
            return self._store.has_forwarded(message_id)
        except sqlite3.Error as exc:
            raise StorageError(f"Не удалось прочитать журнал отправки: {exc}") from exc

    def add(self, message_id: str, received_at: int | None = None) -> None:
        try:
            self._store.add_forwarded(message_id, received_at)
        except sqlite3.Error as exc:
            raise StorageError(
                f"Не удалось отметить сообщение {message_id} отправленным: {exc}"
            ) from exc

    def add_all(self, message_ids: Iterable[str]) -> int:
        try:
            return self._store.add_forwarded_many(message_ids)
        except sqlite3.Error as exc:
            raise StorageError(f"Не удалось заполнить журнал отправки: {exc}") from exc

    def prune(self, cutoff: datetime) -> int:
        """Drop entries older than ``cutoff`` and remember it as the horizon.

        Messages older than the horizon are no longer eligible for selection
        even if the age window is widened later.
        """

        received_before = datetime_to_millis(cutoff)
        try:
            self._store.advance_prune_horizon(received_before)
            removed = self._store.remove_forwarded_before(received_before)
        except sqlite3.Error as exc:
            raise StorageError(f"Не удалось очистить журнал отправки: {exc}") from exc
        if removed:
            logger.debug("Удалено %d устаревших записей журнала", removed)
        return removed

    def horizon(self) -> int | None:
        """Millisecond timestamp before which entries may have been pruned."""

        try:
            return self._store.load_prune_horizon()
        except sqlite3.Error as exc:
            raise StorageError(f"Не удалось прочитать журнал отправки: {exc}") from exc

    @asynccontextmanager
    async def claim(self, message_id: str) -> AsyncIterator[None]:
        """Serialise check-send-mark sequences for a single message id."""

        async with self._guard.lock(message_id):
            yield

    def __len__(self) -> int:
        try:
            return self._store.count_forwarded()
        except sqlite3.Error as exc:
            raise StorageError(f"Не удалось прочитать журнал отправки: {exc}") from exc
