from __future__ import annotations

import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from sms_relay.errors import SourceQueryError
from sms_relay.models import InboundMessage, datetime_to_millis
from sms_relay.sources import AndroidSmsDatabase, InMemorySource

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _create_inbox(path: Path, rows: list[tuple[str | None, str | None, int, int]]) -> None:
    conn = sqlite3.connect(path)
    conn.execute(
        "CREATE TABLE sms (_id INTEGER PRIMARY KEY, address TEXT, body TEXT, "
        "date INTEGER, type INTEGER)"
    )
    conn.executemany(
        "INSERT INTO sms(address, body, date, type) VALUES(?, ?, ?, ?)", rows
    )
    conn.commit()
    conn.close()


def test_android_database_returns_recent_inbox_newest_first(tmp_path: Path) -> None:
    db_path = tmp_path / "mmssms.db"
    _create_inbox(
        db_path,
        [
            ("+100", "older", datetime_to_millis(NOW - timedelta(hours=2)), 1),
            ("+200", "newer", datetime_to_millis(NOW - timedelta(hours=1)), 1),
            ("+300", "outgoing", datetime_to_millis(NOW - timedelta(minutes=5)), 2),
            ("+400", "stale", datetime_to_millis(NOW - timedelta(hours=50)), 1),
            (None, None, datetime_to_millis(NOW - timedelta(minutes=30)), 1),
        ],
    )

    messages = AndroidSmsDatabase(db_path).query(NOW - timedelta(hours=48))

    assert [message.body for message in messages] == ["", "newer", "older"]
    assert messages[0].sender == "Unknown"
    assert messages[1].id == f"+200_{datetime_to_millis(NOW - timedelta(hours=1))}"
    assert messages[1].received_at == NOW - timedelta(hours=1)


def test_android_database_missing_file(tmp_path: Path) -> None:
    with pytest.raises(SourceQueryError):
        AndroidSmsDatabase(tmp_path / "missing.db").query(NOW)


def test_android_database_without_sms_table(tmp_path: Path) -> None:
    db_path = tmp_path / "empty.db"
    sqlite3.connect(db_path).close()

    with pytest.raises(SourceQueryError):
        AndroidSmsDatabase(db_path).query(NOW)


def test_in_memory_source_filters_and_sorts() -> None:
    source = InMemorySource(
        [
            InboundMessage("+1", "a", NOW - timedelta(hours=3)),
            InboundMessage("+2", "b", NOW - timedelta(hours=1)),
        ]
    )
    source.add(InboundMessage("+3", "c", NOW - timedelta(hours=60)))

    messages = source.query(NOW - timedelta(hours=48))

    assert [message.sender for message in messages] == ["+2", "+1"]
