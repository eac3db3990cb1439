"""Data models used across the relay."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_MILLISECOND = timedelta(milliseconds=1)


def build_message_id(address: str, received_at_ms: int) -> str:
    """Return the ledger key for a message: ``"{address}_{millis}"``."""

    return f"{address}_{int(received_at_ms)}"


def datetime_to_millis(moment: datetime) -> int:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return (moment - _EPOCH) // _MILLISECOND


def millis_to_datetime(value: int) -> datetime:
    return _EPOCH + int(value) * _MILLISECOND


@dataclass(slots=True, frozen=True)
class InboundMessage:
    """Single received SMS as exposed by a message source."""

    sender: str
    body: str
    received_at: datetime

    @property
    def received_at_ms(self) -> int:
        return datetime_to_millis(self.received_at)

    @property
    def id(self) -> str:
        return build_message_id(self.sender, self.received_at_ms)


@dataclass(slots=True, frozen=True)
class DestinationConfig:
    """Telegram bot credentials and the chat receiving forwarded messages."""

    bot_token: str = ""
    chat_id: str = ""

    @property
    def is_configured(self) -> bool:
        return bool(self.bot_token.strip()) and bool(self.chat_id.strip())


@dataclass(slots=True)
class ForwardingOptions:
    """Tunable behaviour of a forwarding run."""

    max_batch_size: int = 20
    max_age_hours: float = 48.0
    send_delay: float = 2.0
    check_interval: float = 3600.0
    watch_interval: float = 15.0
    retention_hours: float = 168.0


@dataclass(slots=True)
class RunSummary:
    """Outcome of one forwarding run or push delivery."""

    sent_count: int = 0
    total_candidates: int = 0
    cancelled: bool = False
    failed_count: int = 0
    skipped_count: int = 0
    deferred_count: int = 0
    reason: str = "completed"
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def all_failed(self) -> bool:
        attempted = self.sent_count + self.failed_count
        return attempted > 0 and self.sent_count == 0
