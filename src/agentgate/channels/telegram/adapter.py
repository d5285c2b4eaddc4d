"""Telegram channel adapter implementation using Bot API."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from agentgate.channels.base import InboundMessage
from agentgate.errors import ChannelError

logger = logging.getLogger(__name__)

TELEGRAM_MAX_MESSAGE = 4096


class TelegramAdapter:
    def __init__(
        self,
        bot_token: str,
        *,
        api_base: str = "https://api.telegram.org",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._token = bot_token
        self._api_base = api_base.rstrip("/")
        self._transport = transport

    @property
    def channel_type(self) -> str:
        return "telegram"

    async def send_text(self, recipient: str, text: str) -> int:
        """Send a text message via Telegram Bot API.

        ``recipient`` is the chat_id. Long messages are chunked to stay within
        the 4096 character limit imposed by the Bot API. Transport errors and
        error responses raise ``ChannelError``; 429 and 5xx are retryable.
        """
        if not self._token:
            raise ChannelError("telegram bot token is not configured", retryable=False)
        url = f"{self._api_base}/bot{self._token}/sendMessage"
        last_status = 200
        try:
            async with httpx.AsyncClient(timeout=20, transport=self._transport) as client:
                for chunk in _chunk_text(text, max_len=TELEGRAM_MAX_MESSAGE):
                    response = await client.post(url, json={"chat_id": recipient, "text": chunk})
                    last_status = response.status_code
                    if last_status >= 400:
                        raise ChannelError(
                            f"telegram sendMessage returned HTTP {last_status}",
                            retryable=last_status == 429 or last_status >= 500,
                        )
        except httpx.HTTPError as exc:
            raise ChannelError(f"telegram sendMessage failed: {exc}") from exc
        return last_status

    def parse_inbound(self, payload: dict[str, Any]) -> list[InboundMessage]:
        """Parse a Telegram Bot API Update payload into InboundMessages."""
        msg = payload.get("message") or payload.get("edited_message")
        if not isinstance(msg, dict):
            return []
        msg_id = str(msg.get("message_id", ""))
        if not msg_id:
            return []

        sender = msg.get("from", {}) if isinstance(msg.get("from"), dict) else {}
        sender_id = str(sender.get("id", "")).strip()
        if not sender_id:
            return []
        username = sender.get("username")
        aliases = (str(username),) if isinstance(username, str) and username else ()

        chat = msg.get("chat", {}) if isinstance(msg.get("chat"), dict) else {}
        chat_id = str(chat.get("id", "")) or sender_id
        text = str(msg.get("text") or msg.get("caption") or "")

        return [
            InboundMessage(
                channel_type="telegram",
                external_msg_id=f"tg_{msg_id}",
                sender_id=sender_id,
                text=text,
                recipient=chat_id,
                aliases=aliases,
                raw=payload,
            )
        ]


def _chunk_text(text: str, max_len: int = TELEGRAM_MAX_MESSAGE) -> list[str]:
    """Split text into chunks of at most ``max_len`` characters."""
    if len(text) <= max_len:
        return [text]
    chunks: list[str] = []
    while text:
        chunks.append(text[:max_len])
        text = text[max_len:]
    return chunks
