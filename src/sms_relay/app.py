"""Application wiring for the SMS relay."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

import aiohttp

from .bootstrap import BootstrapInitializer
from .config_store import ConfigStore, RunActivity
from .deduplication import DeliveryLedger
from .forwarder import Forwarder, ProgressListener
from .models import DestinationConfig, ForwardingOptions, InboundMessage, RunSummary
from .sources import MessageSourceProtocol
from .telegram import API_BASE, TelegramSender
from .utils import CancellationToken

logger = logging.getLogger(__name__)

ENV_BOT_TOKEN = "SMS_RELAY_BOT_TOKEN"
ENV_CHAT_ID = "SMS_RELAY_CHAT_ID"


def read_config_file(path: Path) -> DestinationConfig:
    """Load ``bot_token``/``chat_id`` from a JSON file; missing file is empty."""

    if not path.exists():
        logger.warning("Файл конфигурации не найден: %s", path)
        return DestinationConfig()
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.error("Ошибка чтения файла конфигурации %s: %s", path, exc)
        return DestinationConfig()
    if not isinstance(payload, dict):
        logger.error("Файл конфигурации %s должен содержать объект JSON", path)
        return DestinationConfig()
    return DestinationConfig(
        bot_token=str(payload.get("bot_token") or "").strip(),
        chat_id=str(payload.get("chat_id") or "").strip(),
    )


def resolve_destination(
    store: ConfigStore,
    *,
    bot_token: str | None = None,
    chat_id: str | None = None,
    config_file: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> DestinationConfig:
    """Merge CLI values, environment, config file and stored settings."""

    env = os.environ if environ is None else environ
    file_config = read_config_file(config_file) if config_file else DestinationConfig()
    stored = store.load_destination()

    def pick(*candidates: str | None) -> str:
        for candidate in candidates:
            if candidate and candidate.strip():
                return candidate.strip()
        return ""

    return DestinationConfig(
        bot_token=pick(
            bot_token, env.get(ENV_BOT_TOKEN), file_config.bot_token, stored.bot_token
        ),
        chat_id=pick(chat_id, env.get(ENV_CHAT_ID), file_config.chat_id, stored.chat_id),
    )


@dataclass(slots=True)
class RelayStatus:
    configured: bool
    bot_token: str
    chat_id: str
    initialized: bool
    ledger_size: int
    last_run: RunActivity | None


class ForwarderApp:
    """High level coordinator tying together the SMS source, store and Telegram.

    A single :class:`Forwarder` serves the daemon loops and one-off commands,
    so its run gate and bootstrap lock are shared by every caller. HTTP
    sessions are opened on demand and shared while any caller still uses one.
    """

    def __init__(
        self,
        *,
        db_path: Path,
        source: MessageSourceProtocol,
        bot_token: str | None = None,
        chat_id: str | None = None,
        config_file: Path | None = None,
        api_base: str = API_BASE,
    ):
        self._store = ConfigStore(db_path)
        self._ledger = DeliveryLedger(self._store)
        self._source = source
        self._bot_token = bot_token
        self._chat_id = chat_id
        self._config_file = config_file
        self._api_base = api_base
        self._trigger_event = asyncio.Event()
        self._started_at = datetime.now(timezone.utc)
        self._bootstrap = BootstrapInitializer(self._store, self._ledger, self._source)
        self._forwarder: Forwarder | None = None
        self._session: aiohttp.ClientSession | None = None
        self._session_users = 0

    @property
    def store(self) -> ConfigStore:
        return self._store

    def destination(self) -> DestinationConfig:
        return resolve_destination(
            self._store,
            bot_token=self._bot_token,
            chat_id=self._chat_id,
            config_file=self._config_file,
        )

    def options(self) -> ForwardingOptions:
        return self._store.load_forwarding_options()

    def attach_forwarder(self, session: aiohttp.ClientSession) -> Forwarder:
        """Return the app's forwarder bound to ``session`` and the current destination.

        An active run keeps the destination it started with.
        """

        forwarder = self._forwarder
        if forwarder is None:
            destination = self.destination()
            forwarder = Forwarder(
                store=self._store,
                ledger=self._ledger,
                source=self._source,
                transport=self._sender(destination, session),
                destination=destination,
                bootstrap=self._bootstrap,
            )
            self._forwarder = forwarder
        else:
            self._refresh(forwarder, session)
        return forwarder

    def trigger(self) -> None:
        """Wake the periodic loop for an immediate check."""

        self._trigger_event.set()

    def cancel(self) -> bool:
        forwarder = self._forwarder
        return forwarder.cancel() if forwarder is not None else False

    async def run(self) -> None:
        async with self._session_scope() as session:
            forwarder = self.attach_forwarder(session)

            periodic_task = asyncio.create_task(
                self._supervise(
                    "sms-periodic-check",
                    lambda: self._periodic_loop(forwarder, session),
                ),
                name="sms-periodic-check-supervisor",
            )
            watch_task = asyncio.create_task(
                self._supervise("sms-watch", lambda: self._watch_loop(forwarder)),
                name="sms-watch-supervisor",
            )
            await asyncio.gather(periodic_task, watch_task)

    async def check_now(
        self,
        listener: ProgressListener | None = None,
        *,
        token: CancellationToken | None = None,
    ) -> RunSummary:
        async with self._session_scope() as session:
            forwarder = self.attach_forwarder(session)
            return await forwarder.run_manual(self.options(), listener, token=token)

    async def initialize(self) -> int:
        return await self._bootstrap.ensure_initialized(self.options().max_age_hours)

    async def send_test_message(self) -> bool:
        async with self._session_scope() as session:
            forwarder = self.attach_forwarder(session)
            return await forwarder.send_test_message()

    async def deliver(self, messages: list[InboundMessage]) -> RunSummary:
        async with self._session_scope() as session:
            forwarder = self.attach_forwarder(session)
            return await forwarder.deliver(messages)

    def status(self) -> RelayStatus:
        destination = self.destination()
        return RelayStatus(
            configured=destination.is_configured,
            bot_token=destination.bot_token,
            chat_id=destination.chat_id,
            initialized=self._store.is_bootstrapped(),
            ledger_size=len(self._ledger),
            last_run=self._store.load_run_activity(),
        )

    def close(self) -> None:
        self._store.close()

    def _sender(
        self, destination: DestinationConfig, session: aiohttp.ClientSession
    ) -> TelegramSender:
        return TelegramSender(destination, session, api_base=self._api_base)

    def _refresh(self, forwarder: Forwarder, session: aiohttp.ClientSession) -> None:
        if forwarder.is_running:
            return
        destination = self.destination()
        forwarder.update_destination(destination, self._sender(destination, session))

    @asynccontextmanager
    async def _session_scope(self) -> AsyncIterator[aiohttp.ClientSession]:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        session = self._session
        self._session_users += 1
        try:
            yield session
        finally:
            self._session_users -= 1
            if self._session_users == 0:
                self._session = None
                await session.close()

    async def _periodic_loop(
        self, forwarder: Forwarder, session: aiohttp.ClientSession
    ) -> None:
        while True:
            self._trigger_event.clear()
            self._refresh(forwarder, session)
            options = self.options()
            await forwarder.run_periodic(options)
            try:
                await asyncio.wait_for(
                    self._trigger_event.wait(), timeout=options.check_interval
                )
            except asyncio.TimeoutError:
                pass

    async def _watch_loop(self, forwarder: Forwarder) -> None:
        """Push newly arrived SMS without waiting for the next periodic check."""

        last_seen = self._started_at
        while True:
            options = self.options()
            if options.watch_interval <= 0:
                await asyncio.sleep(60.0)
                continue
            await asyncio.sleep(options.watch_interval)
            try:
                recent = await asyncio.to_thread(self._source.query, last_seen)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Ошибка при проверке новых SMS")
                continue
            fresh = [message for message in recent if message.received_at > last_seen]
            if not fresh:
                continue
            last_seen = max(message.received_at for message in fresh)
            fresh.reverse()
            summary = await forwarder.deliver(fresh)
            logger.info(
                "Входящие SMS: отправлено %d, ошибок %d",
                summary.sent_count,
                summary.failed_count,
            )

    async def _supervise(
        self,
        name: str,
        factory: Callable[[], Awaitable[None]],
        *,
        retry_delay: float = 5.0,
    ) -> None:
        while True:
            try:
                await factory()
            except asyncio.CancelledError:
                logger.info("Задача %s остановлена", name)
                raise
            except Exception:
                logger.exception("Задача %s завершилась с ошибкой", name)
            else:
                logger.warning("Задача %s завершилась неожиданно, будет перезапущена", name)
            await asyncio.sleep(retry_delay)
