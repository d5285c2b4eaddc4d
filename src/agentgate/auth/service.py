"""Channel-agnostic sender authentication.

Every inbound message is gated here before any rate accounting, model call
or tool work happens. Three channel families are supported:

* list channels (telegram, discord, slack, matrix, imessage, whatsapp), where
  the sender id must appear on a per-channel allow-list. An empty list or a
  ``*`` entry means the channel is open.
* shared-secret channels (webhook), where the presented credential must match
  the configured secret. Every holder of the secret is one identity; the
  sender field a client sends is not trusted for accounting.
* the local CLI transport, which is trusted.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from agentgate.config import LIST_CHANNEL_FIELDS, Settings, split_csv

logger = logging.getLogger(__name__)

WILDCARD = "*"
LOCAL_CHANNEL = "cli"
SHARED_SECRET_CHANNELS = frozenset({"webhook"})


@dataclass(frozen=True, slots=True)
class Identity:
    channel_type: str
    sender_id: str

    @property
    def key(self) -> str:
        return f"{self.channel_type}:{self.sender_id}"


LOCAL_IDENTITY = Identity(LOCAL_CHANNEL, "local")
SYSTEM_IDENTITY = Identity("system", "heartbeat")


@dataclass(frozen=True, slots=True)
class Denied:
    """Authentication failure. ``reason`` is for logs only, never the sender."""

    reason: str


@dataclass(frozen=True, slots=True)
class AuthConfig:
    allowlists: Mapping[str, tuple[str, ...]] = field(default_factory=dict)
    webhook_secret: str = ""

    @classmethod
    def from_settings(cls, settings: Settings) -> AuthConfig:
        allowlists = {
            channel: tuple(split_csv(getattr(settings, field_name)))
            for channel, field_name in LIST_CHANNEL_FIELDS.items()
        }
        return cls(allowlists=allowlists, webhook_secret=settings.webhook_secret)


def _normalize_sender(value: str) -> str:
    return value.strip().lstrip("@").lower()


def secret_fingerprint(secret: str) -> str:
    digest = hashlib.sha256(secret.encode("utf-8")).hexdigest()
    return f"key-{digest[:12]}"


class Authenticator:
    def __init__(self, config: AuthConfig) -> None:
        self._config = config
        self._allowlists: dict[str, frozenset[str]] = {
            channel: frozenset(_normalize_sender(item) for item in entries if item.strip())
            for channel, entries in config.allowlists.items()
        }
        for channel in self.open_channels():
            logger.warning(
                "Channel %s has an empty or wildcard allow-list; any sender is accepted",
                channel,
            )

    def open_channels(self) -> list[str]:
        return sorted(
            channel
            for channel, entries in self._allowlists.items()
            if not entries or WILDCARD in entries
        )

    def authenticate(
        self,
        channel_type: str,
        sender_id: str,
        credentials: str | None = None,
        *,
        aliases: Iterable[str] = (),
    ) -> Identity | Denied:
        channel = channel_type.strip().lower()
        if channel == LOCAL_CHANNEL:
            return LOCAL_IDENTITY
        if channel in SHARED_SECRET_CHANNELS:
            return self._check_secret(channel, credentials)
        allowed = self._allowlists.get(channel)
        if allowed is None:
            return Denied(f"unknown channel type: {channel_type!r}")
        sender = sender_id.strip()
        if not sender:
            return Denied(f"{channel}: missing sender id")
        if not allowed or WILDCARD in allowed:
            return Identity(channel, sender)
        candidates = {_normalize_sender(sender)}
        candidates.update(_normalize_sender(alias) for alias in aliases if alias)
        if candidates & allowed:
            return Identity(channel, sender)
        return Denied(f"{channel}: sender {sender!r} not on allow-list")

    def _check_secret(self, channel: str, credentials: str | None) -> Identity | Denied:
        expected = self._config.webhook_secret
        if not expected:
            return Denied(f"{channel}: no shared secret configured")
        if not credentials:
            return Denied(f"{channel}: missing credential")
        if not hmac.compare_digest(credentials.encode("utf-8"), expected.encode("utf-8")):
            return Denied(f"{channel}: credential mismatch")
        return Identity(channel, secret_fingerprint(expected))
