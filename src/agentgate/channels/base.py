"""Channel adapter protocol for multi-channel support."""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class ChannelAdapter(Protocol):
    """Protocol that all channel adapters must implement."""

    @property
    def channel_type(self) -> str:
        """Unique identifier for this channel (e.g. 'telegram', 'webhook', 'cli')."""
        ...

    async def send_text(self, recipient: str, text: str) -> int:
        """Send a text message to a recipient. Returns an HTTP-style status code."""
        ...

    def parse_inbound(self, payload: dict[str, Any]) -> list[InboundMessage]:
        """Extract messages from a raw inbound payload."""
        ...


class InboundMessage:
    """Normalized inbound message from any channel."""

    __slots__ = (
        "channel_type",
        "external_msg_id",
        "sender_id",
        "text",
        "recipient",
        "aliases",
        "credentials",
        "raw",
    )

    def __init__(
        self,
        *,
        channel_type: str,
        sender_id: str,
        text: str,
        external_msg_id: str = "",
        recipient: str | None = None,
        aliases: tuple[str, ...] = (),
        credentials: str | None = None,
        raw: dict[str, Any] | None = None,
    ) -> None:
        self.channel_type = channel_type
        self.external_msg_id = external_msg_id
        self.sender_id = sender_id
        self.text = text
        # where replies go; defaults to the sender (chat id for group-capable channels)
        self.recipient = recipient if recipient is not None else sender_id
        self.aliases = aliases
        self.credentials = credentials
        self.raw = raw or {}

    def __repr__(self) -> str:
        return (
            f"InboundMessage(channel_type={self.channel_type!r}, "
            f"sender_id={self.sender_id!r}, text_len={len(self.text)})"
        )
