"""Telegram text for forwarded SMS."""

from __future__ import annotations

from .models import InboundMessage

TELEGRAM_MAX_LENGTH = 4096
TEST_MESSAGE_TEXT = "Test from SMS Forwarder"

_SENDER_ICON = "📱"
_MESSAGE_ICON = "💬"
_ELLIPSIS = "…"


def format_message(message: InboundMessage, *, max_length: int = TELEGRAM_MAX_LENGTH) -> str:
    """Render an SMS as the plain text sent to Telegram."""

    text = f"{_SENDER_ICON} Sender: {message.sender}\n{_MESSAGE_ICON} Message: {message.body}"
    return truncate(text, max_length)


def truncate(text: str, max_length: int, ellipsis: str = _ELLIPSIS) -> str:
    if max_length <= 0 or len(text) <= max_length:
        return text
    if max_length <= len(ellipsis):
        return ellipsis[:max_length]
    return text[: max_length - len(ellipsis)].rstrip() + ellipsis
