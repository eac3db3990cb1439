"""Selection of messages that still have to be forwarded."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

from .deduplication import DeliveryLedger
from .errors import SourceQueryError
from .models import InboundMessage
from .sources import MessageSourceProtocol


def age_cutoff(max_age_hours: float, now: datetime | None = None) -> datetime:
    moment = now or datetime.now(timezone.utc)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment - timedelta(hours=max_age_hours)


async def query_recent(
    source: MessageSourceProtocol,
    max_age_hours: float,
    *,
    now: datetime | None = None,
) -> list[InboundMessage]:
    """Return every message inside the age window in source order."""

    since = age_cutoff(max_age_hours, now)
    try:
        messages = await asyncio.to_thread(source.query, since)
    except SourceQueryError:
        raise
    except Exception as exc:
        raise SourceQueryError(f"Ошибка запроса к источнику SMS: {exc}") from exc
    return [message for message in messages if message.received_at > since]


async def select_unforwarded(
    source: MessageSourceProtocol,
    ledger: DeliveryLedger,
    max_age_hours: float,
    *,
    now: datetime | None = None,
) -> list[InboundMessage]:
    """Return messages inside the age window that the ledger does not know.

    Messages older than the ledger's prune horizon are skipped as well, since
    their ids may have been dropped. Order follows the source (newest first);
    the caller caps the batch.
    """

    recent = await query_recent(source, max_age_hours, now=now)
    horizon = ledger.horizon()
    return [
        message
        for message in recent
        if (horizon is None or message.received_at_ms >= horizon)
        and not ledger.contains(message.id)
    ]
