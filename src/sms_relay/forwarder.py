"""Forwarding run: select unforwarded SMS and relay them to Telegram."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from datetime import datetime
from enum import Enum
from typing import Iterable, Protocol

from .bootstrap import BootstrapInitializer
from .config_store import ConfigStore
from .deduplication import DeliveryLedger
from .errors import SourceQueryError, StorageError
from .formatting import TEST_MESSAGE_TEXT, format_message
from .models import DestinationConfig, ForwardingOptions, InboundMessage, RunSummary
from .selector import age_cutoff, select_unforwarded
from .sources import MessageSourceProtocol
from .telegram import TransportProtocol
from .utils import CancellationToken

logger = logging.getLogger(__name__)


class RunPhase(str, Enum):
    IDLE = "idle"
    SELECTING = "selecting"
    SENDING = "sending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ProgressListener(Protocol):
    def on_progress(self, current: int, total: int) -> None: ...

    def on_complete(self, summary: RunSummary) -> None: ...


class Forwarder:
    """Run the forwarding algorithm with at most one run active at a time."""

    def __init__(
        self,
        *,
        store: ConfigStore,
        ledger: DeliveryLedger,
        source: MessageSourceProtocol,
        transport: TransportProtocol,
        destination: DestinationConfig,
        bootstrap: BootstrapInitializer | None = None,
    ):
        self._store = store
        self._ledger = ledger
        self._source = source
        self._transport = transport
        self._destination = destination
        self._bootstrap = bootstrap or BootstrapInitializer(store, ledger, source)
        self._gate = asyncio.Lock()
        self._active_token: CancellationToken | None = None
        self._phase = RunPhase.IDLE

    @property
    def phase(self) -> RunPhase:
        return self._phase

    @property
    def is_running(self) -> bool:
        return self._gate.locked()

    def update_destination(
        self, destination: DestinationConfig, transport: TransportProtocol
    ) -> None:
        self._destination = destination
        self._transport = transport

    def cancel(self) -> bool:
        """Ask the active run to stop at its next iteration boundary."""

        token = self._active_token
        if token is None:
            return False
        token.cancel()
        return True

    async def run_periodic(
        self, options: ForwardingOptions, *, now: datetime | None = None
    ) -> RunSummary:
        return await self.run(options, trigger="periodic", now=now)

    async def run_manual(
        self,
        options: ForwardingOptions,
        listener: ProgressListener | None = None,
        *,
        token: CancellationToken | None = None,
        now: datetime | None = None,
    ) -> RunSummary:
        return await self.run(
            options, token=token, listener=listener, trigger="manual", now=now
        )

    async def run(
        self,
        options: ForwardingOptions,
        *,
        token: CancellationToken | None = None,
        listener: ProgressListener | None = None,
        trigger: str = "manual",
        now: datetime | None = None,
    ) -> RunSummary:
        if not self._destination.is_configured:
            logger.info("Получатель Telegram не настроен, проверка SMS пропущена")
            summary = RunSummary(reason="not_configured")
            _notify_complete(listener, summary)
            return summary

        if self._gate.locked():
            logger.info("Пересылка уже выполняется, запуск (%s) отклонён", trigger)
            summary = RunSummary(reason="already_running")
            _notify_complete(listener, summary)
            return summary

        async with self._gate:
            run_token = token or CancellationToken()
            self._active_token = run_token
            try:
                summary = await self._execute(options, run_token, listener, now)
            finally:
                self._active_token = None

        self._record_activity(trigger, summary)
        _notify_complete(listener, summary)
        return summary

    async def _execute(
        self,
        options: ForwardingOptions,
        token: CancellationToken,
        listener: ProgressListener | None,
        now: datetime | None,
    ) -> RunSummary:
        self._phase = RunPhase.SELECTING
        try:
            await self._bootstrap.ensure_initialized(options.max_age_hours, now=now)
            candidates = await select_unforwarded(
                self._source, self._ledger, options.max_age_hours, now=now
            )
        except SourceQueryError as exc:
            logger.exception("Не удалось получить список SMS")
            self._phase = RunPhase.COMPLETED
            return RunSummary(reason="source_error", error=str(exc))
        except StorageError as exc:
            logger.exception("Ошибка хранилища при выборе SMS")
            self._phase = RunPhase.COMPLETED
            return RunSummary(reason="storage_error", error=str(exc))

        if not candidates:
            logger.debug("Новых SMS нет")
            self._prune_ledger(options, now)
            self._phase = RunPhase.COMPLETED
            return RunSummary(reason="no_candidates")

        batch = candidates[: max(1, options.max_batch_size)]
        summary = RunSummary(
            total_candidates=len(batch),
            deferred_count=len(candidates) - len(batch),
        )
        if summary.deferred_count:
            logger.info(
                "Найдено %d новых SMS, %d будут отправлены при следующей проверке",
                len(candidates),
                summary.deferred_count,
            )
        else:
            logger.info("Найдено %d новых SMS", len(candidates))

        self._phase = RunPhase.SENDING
        total = len(batch)
        try:
            for index, message in enumerate(batch, start=1):
                if token.cancelled:
                    summary.cancelled = True
                    break
                _notify_progress(listener, index, total)
                delivered = await self._deliver_one(message)
                if delivered is None:
                    summary.skipped_count += 1
                elif delivered:
                    summary.sent_count += 1
                else:
                    summary.failed_count += 1
                if index < total and await token.sleep(options.send_delay):
                    summary.cancelled = True
                    break
        except StorageError as exc:
            logger.exception("Ошибка хранилища во время пересылки")
            summary.reason = "storage_error"
            summary.error = str(exc)
            self._phase = RunPhase.COMPLETED
            return summary

        self._prune_ledger(options, now)
        if summary.cancelled:
            summary.reason = "cancelled"
            self._phase = RunPhase.CANCELLED
            logger.info(
                "Пересылка остановлена: отправлено %d из %d",
                summary.sent_count,
                total,
            )
        else:
            self._phase = RunPhase.COMPLETED
            logger.info(
                "Пересылка завершена: отправлено %d из %d, ошибок %d",
                summary.sent_count,
                total,
                summary.failed_count,
            )
        if summary.all_failed:
            logger.warning("Ни одно SMS из пакета не удалось отправить")
        return summary

    async def deliver(self, messages: Iterable[InboundMessage]) -> RunSummary:
        """Forward freshly received messages right away, bypassing batching."""

        if not self._destination.is_configured:
            logger.info("Получатель Telegram не настроен, входящее SMS не переслано")
            return RunSummary(reason="not_configured")

        pending = list(messages)
        summary = RunSummary(total_candidates=len(pending))
        try:
            for message in pending:
                delivered = await self._deliver_one(message)
                if delivered is None:
                    logger.debug("SMS %s уже было переслано", message.id)
                    summary.skipped_count += 1
                elif delivered:
                    summary.sent_count += 1
                else:
                    summary.failed_count += 1
        except StorageError as exc:
            logger.exception("Ошибка хранилища при пересылке входящего SMS")
            summary.reason = "storage_error"
            summary.error = str(exc)
        return summary

    async def send_test_message(self) -> bool:
        if not self._destination.is_configured:
            return False
        return await self._send(TEST_MESSAGE_TEXT)

    async def _deliver_one(self, message: InboundMessage) -> bool | None:
        """Send ``message`` unless already recorded; None means it was skipped."""

        async with self._ledger.claim(message.id):
            if self._ledger.contains(message.id):
                return None
            if not await self._send(format_message(message)):
                logger.warning("Не удалось переслать SMS %s", message.id)
                return False
            self._ledger.add(message.id, message.received_at_ms)
            logger.debug("SMS %s переслано", message.id)
            return True

    async def _send(self, text: str) -> bool:
        try:
            return bool(await self._transport.send(text))
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Транспорт завершился с ошибкой")
            return False

    def _prune_ledger(self, options: ForwardingOptions, now: datetime | None) -> None:
        keep_hours = max(options.retention_hours, options.max_age_hours)
        try:
            self._ledger.prune(age_cutoff(keep_hours, now))
        except StorageError:
            logger.exception("Не удалось очистить устаревшие записи журнала")

    def _record_activity(self, trigger: str, summary: RunSummary) -> None:
        try:
            self._store.record_run_activity(trigger, summary)
        except sqlite3.Error:
            logger.exception("Не удалось сохранить сведения о запуске")


def _notify_progress(listener: ProgressListener | None, current: int, total: int) -> None:
    if listener is None:
        return
    try:
        listener.on_progress(current, total)
    except Exception:
        logger.exception("Ошибка в обработчике прогресса")


def _notify_complete(listener: ProgressListener | None, summary: RunSummary) -> None:
    if listener is None:
        return
    try:
        listener.on_complete(summary)
    except Exception:
        logger.exception("Ошибка в обработчике завершения")
