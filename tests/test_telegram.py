from __future__ import annotations

import asyncio
from typing import Any

import aiohttp
from aiohttp import test_utils, web

from sms_relay.models import DestinationConfig
from sms_relay.telegram import TelegramSender

DESTINATION = DestinationConfig(bot_token="123:abc", chat_id="-100500")


async def _send_with(
    handler: Any, text: str = "hello", *, timeout: float = 5.0
) -> tuple[bool, list[dict[str, str]]]:
    received: list[dict[str, str]] = []

    async def recording(request: web.Request) -> web.StreamResponse:
        payload = await request.post()
        received.append(
            {
                "token": request.match_info["token"],
                "chat_id": str(payload.get("chat_id")),
                "text": str(payload.get("text")),
            }
        )
        return await handler(request)

    app = web.Application()
    app.router.add_post("/bot{token}/sendMessage", recording)
    async with test_utils.TestServer(app) as server:
        async with aiohttp.ClientSession() as session:
            sender = TelegramSender(
                DESTINATION,
                session,
                api_base=str(server.make_url("/")),
                timeout=timeout,
            )
            ok = await sender.send(text)
    return ok, received


def test_send_posts_chat_and_text() -> None:
    async def handler(request: web.Request) -> web.StreamResponse:
        return web.json_response({"ok": True, "result": {"message_id": 1}})

    ok, received = asyncio.run(_send_with(handler, "📱 Sender: +1\n💬 Message: hi"))

    assert ok is True
    assert received == [
        {
            "token": "123:abc",
            "chat_id": "-100500",
            "text": "📱 Sender: +1\n💬 Message: hi",
        }
    ]


def test_send_reports_rejected_request() -> None:
    async def handler(request: web.Request) -> web.StreamResponse:
        return web.json_response(
            {"ok": False, "description": "Bad Request: chat not found"}, status=400
        )

    ok, received = asyncio.run(_send_with(handler))

    assert ok is False
    assert len(received) == 1


def test_send_reports_ok_false_payload() -> None:
    async def handler(request: web.Request) -> web.StreamResponse:
        return web.json_response({"ok": False})

    ok, _ = asyncio.run(_send_with(handler))

    assert ok is False


def test_send_reports_timeout() -> None:
    async def handler(request: web.Request) -> web.StreamResponse:
        await asyncio.sleep(1.0)
        return web.json_response({"ok": True})

    ok, _ = asyncio.run(_send_with(handler, timeout=0.1))

    assert ok is False


def test_send_reports_connection_error() -> None:
    async def runner() -> bool:
        async with aiohttp.ClientSession() as session:
            sender = TelegramSender(
                DESTINATION, session, api_base="http://127.0.0.1:9", timeout=2.0
            )
            return await sender.send("hello")

    assert asyncio.run(runner()) is False
