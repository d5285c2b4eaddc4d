"""Observability sink.

Events are fire-and-forget: ``emit_safe`` never raises into the dispatch
loop, and payloads are redacted before they reach any sink.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any, Protocol, cast

logger = logging.getLogger(__name__)

SENSITIVE_KEYS = {
    "access_token",
    "refresh_token",
    "password",
    "api_key",
    "authorization",
    "secret",
    "credentials",
    "token",
    "phone",
}


def now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _redact_value(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            key: "[REDACTED]" if str(key).lower() in SENSITIVE_KEYS else _redact_value(nested)
            for key, nested in value.items()
        }
    if isinstance(value, list):
        return [_redact_value(item) for item in value]
    return value


def redact_payload(payload: dict[str, Any]) -> dict[str, Any]:
    return cast(dict[str, Any], _redact_value(payload))


class EventSink(Protocol):
    def emit(self, event_type: str, payload: dict[str, Any]) -> None: ...


class LogEventSink:
    """Writes events to the ``agentgate.events`` logger."""

    def __init__(self) -> None:
        self._logger = logging.getLogger("agentgate.events")

    def emit(self, event_type: str, payload: dict[str, Any]) -> None:
        self._logger.info("%s %s", event_type, payload)


class MemoryEventSink:
    """Keeps events in a list; used by the CLI ``--trace`` flag and tests."""

    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = []

    def emit(self, event_type: str, payload: dict[str, Any]) -> None:
        self.events.append({"event_type": event_type, "created_at": now_iso(), **payload})


def emit_safe(sink: EventSink | None, event_type: str, payload: dict[str, Any]) -> None:
    if sink is None:
        return
    try:
        sink.emit(event_type, redact_payload(payload))
    except Exception:
        logger.exception("Event sink failed for %s", event_type)
