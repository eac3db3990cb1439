from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from sms_relay.config_store import ConfigStore
from sms_relay.deduplication import DeliveryLedger
from sms_relay.errors import StorageError
from sms_relay.models import InboundMessage


def _message(sender: str, minutes_ago: int) -> InboundMessage:
    received = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc) - timedelta(minutes=minutes_ago)
    return InboundMessage(sender=sender, body="hello", received_at=received)


def test_add_is_idempotent(tmp_path: Path) -> None:
    ledger = DeliveryLedger(ConfigStore(tmp_path / "ledger.sqlite"))
    message = _message("+100", 1)

    assert ledger.contains(message.id) is False
    ledger.add(message.id)
    ledger.add(message.id)

    assert ledger.contains(message.id) is True
    assert len(ledger) == 1


def test_add_all_skips_known_and_repeated_ids(tmp_path: Path) -> None:
    ledger = DeliveryLedger(ConfigStore(tmp_path / "ledger.sqlite"))
    first = _message("+100", 1)
    second = _message("+200", 2)
    ledger.add(first.id)

    inserted = ledger.add_all([first.id, second.id, second.id])

    assert inserted == 1
    assert len(ledger) == 2


def test_ledger_survives_reopen(tmp_path: Path) -> None:
    db_path = tmp_path / "ledger.sqlite"
    store = ConfigStore(db_path)
    message = _message("+100", 1)
    DeliveryLedger(store).add(message.id)
    store.close()

    reopened = DeliveryLedger(ConfigStore(db_path))
    assert reopened.contains(message.id) is True


def test_same_sender_same_millisecond_collapses() -> None:
    moment = datetime(2024, 5, 1, 12, 0, 0, 123000, tzinfo=timezone.utc)
    first = InboundMessage(sender="+100", body="a", received_at=moment)
    second = InboundMessage(sender="+100", body="b", received_at=moment)

    assert first.id == second.id == "+100_1714564800123"


def test_prune_removes_only_old_entries(tmp_path: Path) -> None:
    ledger = DeliveryLedger(ConfigStore(tmp_path / "ledger.sqlite"))
    recent = _message("+100", 10)
    old = _message("+200", 60 * 24 * 10)
    ledger.add_all([recent.id, old.id])
    ledger.add("legacy-id-without-timestamp")

    cutoff = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc) - timedelta(days=7)
    removed = ledger.prune(cutoff)

    assert removed == 1
    assert ledger.contains(recent.id)
    assert not ledger.contains(old.id)
    assert ledger.contains("legacy-id-without-timestamp")


def test_prune_horizon_only_moves_forward(tmp_path: Path) -> None:
    ledger = DeliveryLedger(ConfigStore(tmp_path / "ledger.sqlite"))
    assert ledger.horizon() is None

    later = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    ledger.prune(later)
    ledger.prune(later - timedelta(days=3))

    assert ledger.horizon() == 1714564800000


def test_claim_serialises_same_id() -> None:
    store_events: list[str] = []

    class _Store:
        pass

    ledger = DeliveryLedger(_Store())  # type: ignore[arg-type]

    async def worker(name: str) -> None:
        async with ledger.claim("+100_1"):
            store_events.append(f"{name}-start")
            await asyncio.sleep(0.01)
            store_events.append(f"{name}-end")

    async def runner() -> None:
        await asyncio.gather(worker("a"), worker("b"))

    asyncio.run(runner())

    assert store_events in (
        ["a-start", "a-end", "b-start", "b-end"],
        ["b-start", "b-end", "a-start", "a-end"],
    )


def test_storage_failure_is_wrapped(tmp_path: Path) -> None:
    store = ConfigStore(tmp_path / "ledger.sqlite")
    ledger = DeliveryLedger(store)
    store.close()

    with pytest.raises(StorageError):
        ledger.add("+100_1")
    with pytest.raises(StorageError):
        ledger.contains("+100_1")
