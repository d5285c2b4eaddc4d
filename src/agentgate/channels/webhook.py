"""Generic shared-secret webhook channel.

The reply travels back in the HTTP response built by the route, so
``send_text`` has nothing to transmit. The optional ``sender`` field only
labels the caller in logs and replies; accounting keys on the secret.
"""

from __future__ import annotations

import logging
from typing import Any

from agentgate.channels.base import InboundMessage

logger = logging.getLogger(__name__)

SECRET_HEADER = "X-Webhook-Secret"


class WebhookAdapter:
    @property
    def channel_type(self) -> str:
        return "webhook"

    async def send_text(self, recipient: str, text: str) -> int:
        logger.debug("Webhook reply for %s returned inline (%d chars)", recipient, len(text))
        return 200

    def parse_inbound(
        self, payload: dict[str, Any], *, credentials: str | None = None
    ) -> list[InboundMessage]:
        message = payload.get("message")
        if not isinstance(message, str):
            return []
        sender = payload.get("sender")
        sender_id = sender.strip() if isinstance(sender, str) and sender.strip() else "default"
        return [
            InboundMessage(
                channel_type="webhook",
                sender_id=sender_id,
                text=message,
                external_msg_id=str(payload.get("id", "")),
                credentials=credentials,
                raw=payload,
            )
        ]
