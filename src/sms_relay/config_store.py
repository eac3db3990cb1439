"""SQLite backed storage for relay settings and the delivery ledger."""

from __future__ import annotations

import json
import sqlite3
from contextlib import closing
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable

from .models import DestinationConfig, ForwardingOptions, RunSummary
from .utils import parse_bool, parse_delay_setting, parse_positive_float, parse_positive_int

_DB_PRAGMA = "PRAGMA journal_mode=WAL;" "PRAGMA synchronous=NORMAL;"

BOOTSTRAP_KEY = "state.bootstrap.completed"
LAST_RUN_KEY = "state.last_run"
PRUNE_HORIZON_KEY = "state.ledger.pruned_before"


@dataclass(slots=True)
class RunActivity:
    """Stored metadata about the latest forwarding run."""

    timestamp: datetime
    trigger: str
    sent: int
    total: int
    failed: int
    cancelled: bool
    reason: str
    error: str | None


class ConfigStore:
    """Persisted settings, bootstrap flag and forwarded message ids."""

    def __init__(self, path: Path):
        self._path = path
        self._conn = sqlite3.connect(self._path)
        self._conn.row_factory = sqlite3.Row
        self._setup()

    @property
    def path(self) -> Path:
        return self._path

    # ------------------------------------------------------------------
    # Schema initialisation
    # ------------------------------------------------------------------
    def _setup(self) -> None:
        with closing(self._conn.cursor()) as cur:
            for statement in _DB_PRAGMA.split(";"):
                if statement.strip():
                    cur.execute(statement)
            cur.executescript(
                """
                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS forwarded_messages (
                    message_id TEXT PRIMARY KEY,
                    received_at INTEGER,
                    forwarded_at TEXT NOT NULL
                );
                """
            )
            self._migrate_forwarded(cur)
            self._conn.commit()

    def _migrate_forwarded(self, cur: sqlite3.Cursor) -> None:
        cur.execute("PRAGMA table_info(forwarded_messages)")
        columns = {str(row[1]) for row in cur.fetchall()}
        if "received_at" not in columns:
            cur.execute("ALTER TABLE forwarded_messages ADD COLUMN received_at INTEGER")
        cur.execute(
            "SELECT message_id FROM forwarded_messages WHERE received_at IS NULL"
        )
        rows = cur.fetchall()
        backfill = [
            (received, str(row["message_id"]))
            for row in rows
            if (received := _received_from_message_id(str(row["message_id"]))) is not None
        ]
        if backfill:
            cur.executemany(
                "UPDATE forwarded_messages SET received_at=? WHERE message_id=?",
                backfill,
            )

    # ------------------------------------------------------------------
    # Basic settings
    # ------------------------------------------------------------------
    def set_setting(self, key: str, value: str) -> None:
        with closing(self._conn.cursor()) as cur:
            cur.execute(
                "INSERT INTO settings(key, value) VALUES(?, ?)"
                " ON CONFLICT(key) DO UPDATE SET value=excluded.value",
                (key, value),
            )
            self._conn.commit()

    def get_setting(self, key: str, default: str | None = None) -> str | None:
        with closing(self._conn.cursor()) as cur:
            cur.execute("SELECT value FROM settings WHERE key=?", (key,))
            row = cur.fetchone()
        return row["value"] if row else default

    # ------------------------------------------------------------------
    # Destination and runtime options
    # ------------------------------------------------------------------
    def load_destination(self) -> DestinationConfig:
        return DestinationConfig(
            bot_token=(self.get_setting("telegram.bot_token") or "").strip(),
            chat_id=(self.get_setting("telegram.chat_id") or "").strip(),
        )

    def save_destination(self, bot_token: str, chat_id: str) -> None:
        token = bot_token.strip()
        chat = chat_id.strip()
        if not token or not chat:
            raise ValueError("Both bot token and chat id must be provided")
        self.set_setting("telegram.bot_token", token)
        self.set_setting("telegram.chat_id", chat)

    def load_forwarding_options(self) -> ForwardingOptions:
        defaults = ForwardingOptions()
        return ForwardingOptions(
            max_batch_size=parse_positive_int(
                self.get_setting("forward.batch_size"), defaults.max_batch_size
            ),
            max_age_hours=parse_positive_float(
                self.get_setting("forward.max_age_hours"), defaults.max_age_hours
            ),
            send_delay=parse_delay_setting(
                self.get_setting("forward.delay"), defaults.send_delay
            ),
            check_interval=parse_positive_float(
                self.get_setting("forward.interval"), defaults.check_interval
            ),
            watch_interval=parse_delay_setting(
                self.get_setting("forward.watch_interval"), defaults.watch_interval
            ),
            retention_hours=parse_positive_float(
                self.get_setting("forward.retention_hours"), defaults.retention_hours
            ),
        )

    # ------------------------------------------------------------------
    # Bootstrap flag
    # ------------------------------------------------------------------
    def is_bootstrapped(self) -> bool:
        return parse_bool(self.get_setting(BOOTSTRAP_KEY), default=False)

    def set_bootstrapped(self) -> None:
        self.set_setting(BOOTSTRAP_KEY, "true")

    # ------------------------------------------------------------------
    # Forwarded messages
    # ------------------------------------------------------------------
    def has_forwarded(self, message_id: str) -> bool:
        with closing(self._conn.cursor()) as cur:
            cur.execute(
                "SELECT 1 FROM forwarded_messages WHERE message_id=?", (message_id,)
            )
            row = cur.fetchone()
        return row is not None

    def add_forwarded(self, message_id: str, received_at: int | None = None) -> bool:
        """Record ``message_id``; return False when it was already stored."""

        if received_at is None:
            received_at = _received_from_message_id(message_id)
        with closing(self._conn.cursor()) as cur:
            cur.execute(
                "INSERT OR IGNORE INTO forwarded_messages("
                "message_id, received_at, forwarded_at) VALUES(?, ?, ?)",
                (message_id, received_at, _utcnow().isoformat()),
            )
            inserted = cur.rowcount > 0
            self._conn.commit()
        return inserted

    def add_forwarded_many(self, message_ids: Iterable[str]) -> int:
        timestamp = _utcnow().isoformat()
        rows = [
            (message_id, _received_from_message_id(message_id), timestamp)
            for message_id in dict.fromkeys(message_ids)
        ]
        if not rows:
            return 0
        with closing(self._conn.cursor()) as cur:
            before = self._conn.total_changes
            cur.executemany(
                "INSERT OR IGNORE INTO forwarded_messages("
                "message_id, received_at, forwarded_at) VALUES(?, ?, ?)",
                rows,
            )
            inserted = self._conn.total_changes - before
            self._conn.commit()
        return inserted

    def remove_forwarded_before(self, received_before: int) -> int:
        with closing(self._conn.cursor()) as cur:
            cur.execute(
                "DELETE FROM forwarded_messages WHERE received_at IS NOT NULL "
                "AND received_at < ?",
                (int(received_before),),
            )
            removed = cur.rowcount
            self._conn.commit()
        return max(0, removed)

    def load_prune_horizon(self) -> int | None:
        """Millisecond timestamp below which ledger entries may have been dropped."""

        raw = self.get_setting(PRUNE_HORIZON_KEY)
        if raw is None or not raw.lstrip("-").isdigit():
            return None
        return int(raw)

    def advance_prune_horizon(self, received_before: int) -> int:
        current = self.load_prune_horizon()
        if current is not None and current >= received_before:
            return current
        self.set_setting(PRUNE_HORIZON_KEY, str(int(received_before)))
        return int(received_before)

    def count_forwarded(self) -> int:
        with closing(self._conn.cursor()) as cur:
            cur.execute("SELECT COUNT(*) FROM forwarded_messages")
            row = cur.fetchone()
        return int(row[0]) if row else 0

    # ------------------------------------------------------------------
    # Run activity
    # ------------------------------------------------------------------
    def record_run_activity(self, trigger: str, summary: RunSummary) -> None:
        payload = {
            "timestamp": _utcnow().isoformat(),
            "trigger": trigger,
            "sent": summary.sent_count,
            "total": summary.total_candidates,
            "failed": summary.failed_count,
            "cancelled": summary.cancelled,
            "reason": summary.reason,
            "error": summary.error,
        }
        self.set_setting(LAST_RUN_KEY, json.dumps(payload, ensure_ascii=False))

    def load_run_activity(self) -> RunActivity | None:
        raw = self.get_setting(LAST_RUN_KEY)
        if not raw:
            return None
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            return None
        if not isinstance(payload, dict):
            return None
        timestamp = _parse_timestamp(payload.get("timestamp"))
        if timestamp is None:
            return None
        try:
            return RunActivity(
                timestamp=timestamp,
                trigger=str(payload.get("trigger") or "unknown"),
                sent=int(payload.get("sent") or 0),
                total=int(payload.get("total") or 0),
                failed=int(payload.get("failed") or 0),
                cancelled=bool(payload.get("cancelled")),
                reason=str(payload.get("reason") or ""),
                error=str(payload["error"]) if payload.get("error") else None,
            )
        except (TypeError, ValueError):
            return None

    def close(self) -> None:
        self._conn.close()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _received_from_message_id(message_id: str) -> int | None:
    _, sep, tail = message_id.rpartition("_")
    if not sep or not tail.lstrip("-").isdigit():
        return None
    return int(tail)


def _parse_timestamp(value: object) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
