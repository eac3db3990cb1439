"""Command line entry point."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal
import sys
from pathlib import Path

from .app import ForwarderApp
from .models import RunSummary
from .sources import AndroidSmsDatabase
from .utils import CancellationToken, mask_token

_REASON_LABELS = {
    "completed": "завершено",
    "cancelled": "остановлено пользователем",
    "no_candidates": "новых SMS нет",
    "not_configured": "получатель Telegram не настроен",
    "already_running": "пересылка уже выполняется",
    "source_error": "ошибка чтения SMS",
    "storage_error": "ошибка хранилища",
}


class ConsoleProgress:
    """Print progress of a manual check to the terminal."""

    def __init__(self, stream=None) -> None:
        self._stream = stream or sys.stdout

    def on_progress(self, current: int, total: int) -> None:
        print(f"Отправка {current}/{total}...", file=self._stream, flush=True)

    def on_complete(self, summary: RunSummary) -> None:
        print(describe_summary(summary), file=self._stream, flush=True)


def describe_summary(summary: RunSummary) -> str:
    reason = _REASON_LABELS.get(summary.reason, summary.reason)
    text = (
        f"Проверка SMS: {reason}. Отправлено {summary.sent_count} "
        f"из {summary.total_candidates}"
    )
    if summary.failed_count:
        text += f", ошибок {summary.failed_count}"
    if summary.deferred_count:
        text += f", отложено {summary.deferred_count}"
    if summary.error:
        text += f" ({summary.error})"
    return text


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Forward incoming SMS to Telegram")
    parser.add_argument("--db-path", default="sms-relay.db", help="Путь к файлу хранилища")
    parser.add_argument(
        "--sms-db",
        default="mmssms.db",
        help="Путь к экспортированной базе SMS Android (mmssms.db)",
    )
    parser.add_argument(
        "--config",
        help="JSON файл с полями bot_token и chat_id (sms-forwarder-config.json)",
    )
    parser.add_argument(
        "--bot-token",
        help="Токен Telegram бота. Можно передать через SMS_RELAY_BOT_TOKEN",
    )
    parser.add_argument(
        "--chat-id",
        help="ID чата Telegram. Можно передать через SMS_RELAY_CHAT_ID",
    )
    parser.add_argument("--log-level", default="INFO", help="Уровень логирования")

    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("run", help="Периодическая проверка и пересылка SMS")
    commands.add_parser("check", help="Однократная проверка SMS (Ctrl+C — остановить)")
    commands.add_parser("init", help="Пометить историю SMS как уже отправленную")
    commands.add_parser("test", help="Отправить тестовое сообщение в Telegram")
    commands.add_parser("status", help="Показать состояние пересылки")
    configure = commands.add_parser("configure", help="Сохранить получателя Telegram")
    configure.add_argument("--set-token", dest="set_token", required=True)
    configure.add_argument("--set-chat-id", dest="set_chat_id", required=True)
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    log_level = getattr(logging, args.log_level.upper(), logging.INFO)
    logging.basicConfig(level=log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    app = ForwarderApp(
        db_path=Path(args.db_path),
        source=AndroidSmsDatabase(Path(args.sms_db)),
        bot_token=args.bot_token,
        chat_id=args.chat_id,
        config_file=Path(args.config) if args.config else None,
    )
    try:
        return _dispatch(app, args)
    finally:
        app.close()


def _dispatch(app: ForwarderApp, args: argparse.Namespace) -> int:
    log = logging.getLogger(__name__)

    if args.command == "configure":
        try:
            app.store.save_destination(args.set_token, args.set_chat_id)
        except ValueError as exc:
            print(f"Ошибка: {exc}", file=sys.stderr)
            return 2
        print("Настройки сохранены")
        return 0

    if args.command == "status":
        status = app.status()
        print(f"Получатель настроен: {'да' if status.configured else 'нет'}")
        print(f"Токен бота: {mask_token(status.bot_token)}")
        print(f"Чат: {status.chat_id or '—'}")
        print(f"История инициализирована: {'да' if status.initialized else 'нет'}")
        print(f"Записей в журнале отправки: {status.ledger_size}")
        if status.last_run is not None:
            last = status.last_run
            reason = _REASON_LABELS.get(last.reason, last.reason)
            print(
                f"Последний запуск ({last.trigger}, {last.timestamp.isoformat()}): "
                f"{reason}, отправлено {last.sent} из {last.total}"
            )
        return 0

    if args.command == "init":
        seeded = asyncio.run(app.initialize())
        print(f"Помечено как отправленные: {seeded}")
        return 0

    if args.command == "test":
        if not app.destination().is_configured:
            print("Сначала настройте токен бота и ID чата", file=sys.stderr)
            return 2
        ok = asyncio.run(app.send_test_message())
        print("Тестовое сообщение отправлено" if ok else "Не удалось отправить тестовое сообщение")
        return 0 if ok else 1

    if args.command == "check":
        summary = asyncio.run(_check_with_interrupt(app))
        return 0 if summary.ok else 1

    try:
        asyncio.run(app.run())
    except KeyboardInterrupt:
        log.info("Остановка по запросу пользователя")
    return 0


async def _check_with_interrupt(app: ForwarderApp) -> RunSummary:
    token = CancellationToken()
    loop = asyncio.get_running_loop()
    installed = False
    with contextlib.suppress(NotImplementedError, RuntimeError):
        loop.add_signal_handler(signal.SIGINT, token.cancel)
        installed = True
    try:
        return await app.check_now(ConsoleProgress(), token=token)
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


if __name__ == "__main__":
    sys.exit(main())
