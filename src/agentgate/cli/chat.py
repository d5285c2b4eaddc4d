"""CLI helpers for talking to the agent from the local terminal."""

from __future__ import annotations

import json
from typing import Any

from agentgate.auth.service import LOCAL_IDENTITY
from agentgate.channels.base import InboundMessage
from agentgate.orchestrator.dispatch import DispatchOutcome
from agentgate.orchestrator.session import Turn, record_turn
from agentgate.runtime import Runtime


def local_message(text: str) -> InboundMessage:
    return InboundMessage(channel_type="cli", sender_id=LOCAL_IDENTITY.sender_id, text=text)


async def send_local(runtime: Runtime, text: str) -> DispatchOutcome:
    return await runtime.dispatcher.dispatch(local_message(text))


def reset_local(runtime: Runtime) -> None:
    runtime.sessions.reset(LOCAL_IDENTITY.key)


def pin_local(runtime: Runtime, text: str) -> None:
    """Record a pinned user turn that survives cache-expiry pruning."""
    session = runtime.sessions.get_or_create(LOCAL_IDENTITY.key)
    runtime.sessions.put(record_turn(session, Turn.make("user", text, pinned=True)))


def outcome_payload(outcome: DispatchOutcome) -> dict[str, Any]:
    return {
        "trace_id": outcome.trace_id,
        "state": outcome.state.value,
        "reply": outcome.reply,
        "reason": outcome.reason.value if outcome.reason else None,
        "detail": outcome.detail,
        "retry_after_seconds": (
            outcome.retry_after.total_seconds() if outcome.retry_after is not None else None
        ),
        "recoverable": outcome.recoverable,
        "model_calls": outcome.model_calls,
        "tool_calls": outcome.tool_calls,
    }


def format_outcome(outcome: DispatchOutcome, *, json_output: bool) -> str:
    if json_output:
        return json.dumps(outcome_payload(outcome), sort_keys=True)
    if outcome.reason is None:
        return f"[{outcome.state.value}]"
    return f"[{outcome.state.value}: {outcome.reason.value}] {outcome.detail}".rstrip()
