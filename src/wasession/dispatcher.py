"""
Inbound/outbound message shaping.

``format_recipient`` and ``normalize_inbound`` are pure transforms; the
MessageDispatcher only adds fan-out to application handlers.
"""

import inspect
import re
from typing import Any, Awaitable, Callable, Optional, Union

from wasession.logger import get_logger
from wasession.models import InboundMessage, MessageBatch

logger = get_logger(__name__)

USER_DOMAIN = "@s.whatsapp.net"
NON_TEXT_MARKER = "<non-text message>"

MessageHandler = Callable[[InboundMessage], Union[None, Awaitable[None]]]

_NON_DIGITS = re.compile(r"\D")


def format_recipient(raw: str) -> str:
    """
    Turn a phone number as typed by a human into a canonical address.

    >>> format_recipient("(11) 95677-3737")
    '11956773737@s.whatsapp.net'
    """
    cleaned = _NON_DIGITS.sub("", raw)
    return cleaned if cleaned.endswith(USER_DOMAIN) else f"{cleaned}{USER_DOMAIN}"


def _extract_text(content: Optional[dict[str, Any]]) -> str:
    if not content:
        return NON_TEXT_MARKER
    if content.get("conversation"):
        return content["conversation"]
    extended = content.get("extendedTextMessage") or {}
    if extended.get("text"):
        return extended["text"]
    return NON_TEXT_MARKER


def normalize_inbound(batch: MessageBatch) -> Optional[InboundMessage]:
    """Normalize the first message of a batch, or None if the batch is empty."""
    if not batch.messages:
        return None

    raw = batch.messages[0]
    key = raw.get("key") or {}
    return InboundMessage(
        sender=key.get("remoteJid") or "",
        text=_extract_text(raw.get("message")),
        is_from_self=bool(key.get("fromMe")),
        message_id=key.get("id"),
        push_name=raw.get("pushName"),
    )


class MessageDispatcher:
    """Fans normalized inbound messages out to application handlers."""

    def __init__(self):
        self._handlers: list[MessageHandler] = []

    def add_handler(self, handler: MessageHandler) -> None:
        self._handlers.append(handler)

    async def dispatch(self, batch: MessageBatch) -> Optional[InboundMessage]:
        """
        Deliver a batch to every handler.

        Returns:
            The delivered message, or None if it was empty or self-authored.
        """
        message = normalize_inbound(batch)
        if message is None:
            return None

        if message.is_from_self:
            logger.debug(f"Ignoring own message to {message.sender}")
            return None

        logger.info(f"New message from {message.sender}: {message.text[:50]}")

        for handler in self._handlers:
            try:
                result = handler(message)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Message handler {handler!r} failed: {e}")

        return message
