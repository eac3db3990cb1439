"""Message sources the relay reads inbound SMS from."""

from __future__ import annotations

import logging
import sqlite3
from contextlib import closing
from datetime import datetime
from pathlib import Path
from typing import Iterable, Protocol, Sequence

from .errors import SourceQueryError
from .models import InboundMessage, datetime_to_millis, millis_to_datetime

logger = logging.getLogger(__name__)

_UNKNOWN_SENDER = "Unknown"
_INBOX_TYPE = 1


class MessageSourceProtocol(Protocol):
    def query(self, since: datetime) -> Sequence[InboundMessage]: ...


class AndroidSmsDatabase:
    """Read the inbox of an exported Android ``mmssms.db`` file."""

    def __init__(self, path: Path):
        self._path = path

    def query(self, since: datetime) -> Sequence[InboundMessage]:
        """Return inbox messages received strictly after ``since``, newest first."""

        if not self._path.exists():
            raise SourceQueryError(f"База SMS не найдена: {self._path}")
        uri = f"{self._path.resolve().as_uri()}?mode=ro"
        try:
            with closing(sqlite3.connect(uri, uri=True)) as conn:
                with closing(conn.cursor()) as cur:
                    cur.execute(
                        "SELECT address, body, date FROM sms "
                        "WHERE type=? AND date>? ORDER BY date DESC",
                        (_INBOX_TYPE, datetime_to_millis(since)),
                    )
                    rows = cur.fetchall()
        except sqlite3.Error as exc:
            raise SourceQueryError(f"Ошибка чтения базы SMS {self._path}: {exc}") from exc
        return [_row_to_message(address, body, date) for address, body, date in rows]


class InMemorySource:
    """List backed source for embedding code and tests."""

    def __init__(self, messages: Iterable[InboundMessage] = ()) -> None:
        self._messages: list[InboundMessage] = list(messages)

    def add(self, message: InboundMessage) -> None:
        self._messages.append(message)

    def query(self, since: datetime) -> Sequence[InboundMessage]:
        selected = [message for message in self._messages if message.received_at > since]
        selected.sort(key=lambda message: message.received_at, reverse=True)
        return selected


def _row_to_message(address: object, body: object, date: object) -> InboundMessage:
    sender = str(address) if address else _UNKNOWN_SENDER
    text = str(body) if body is not None else ""
    try:
        millis = int(date)  # type: ignore[call-overload]
    except (TypeError, ValueError):
        millis = 0
    return InboundMessage(sender=sender, body=text, received_at=millis_to_datetime(millis))
