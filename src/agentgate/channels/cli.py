"""Local terminal channel. Always trusted; replies are echoed to the terminal."""

from __future__ import annotations

from typing import Any

import click

from agentgate.channels.base import InboundMessage


class CliAdapter:
    def __init__(self, *, prefix: str = "assistant > ", quiet: bool = False) -> None:
        self._prefix = prefix
        self._quiet = quiet
        self.last_reply: str | None = None

    @property
    def channel_type(self) -> str:
        return "cli"

    async def send_text(self, recipient: str, text: str) -> int:
        self.last_reply = text
        if not self._quiet:
            click.echo(f"{self._prefix}{text}")
        return 200

    def parse_inbound(self, payload: dict[str, Any]) -> list[InboundMessage]:
        text = str(payload.get("text", ""))
        return [InboundMessage(channel_type="cli", sender_id="local", text=text, raw=payload)]
