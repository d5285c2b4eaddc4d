"""Dispatch loop: one inbound message in, one terminal outcome out.

Every cycle walks the same states:

    Received -> Authenticated -> RateChecked -> ContextBuilt -> ModelInvoked
      -> {ToolRequested -> SandboxChecked -> ToolExecuted -> ModelInvoked}*
      -> Replied | Denied | Throttled | Rejected | Failed

Collaborators report failures as outcome values or as ``AgentGateError``
subclasses; this module is the only place those are turned into terminal
states and user-facing text. Cycles for the same identity never overlap.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any

from agentgate.auth.service import SYSTEM_IDENTITY, Authenticator, Denied, Identity
from agentgate.channels.base import InboundMessage
from agentgate.channels.registry import ChannelRegistry
from agentgate.config import Settings
from agentgate.errors import ChannelError, MemoryStoreError, ProviderError, ToolError
from agentgate.events.sink import EventSink, emit_safe
from agentgate.ids import new_id
from agentgate.logging import bind_context, clear_context
from agentgate.memory.interfaces import MemoryStore
from agentgate.orchestrator.prompt_builder import HEARTBEAT_OK, BudgetExceeded, ContextManager
from agentgate.orchestrator.session import SessionStore, Turn, record_turn, touch_cache
from agentgate.orchestrator.skills import SkillEntry
from agentgate.policy.limiter import ActionLimiter, Throttled
from agentgate.policy.sandbox import Rejected, SandboxPolicy, authorize
from agentgate.providers.base import ModelProvider, ModelResponse
from agentgate.tools.registry import ToolRegistry
from agentgate.tools.runtime import ToolExecutor

logger = logging.getLogger(__name__)

DENIED_MESSAGE = "Sorry, you are not authorized to use this agent."
THROTTLED_MESSAGE = "You are sending requests too quickly. Please try again in {wait}."
FAILURE_MESSAGE = (
    "Sorry, something went wrong while handling your message. Please try again later."
)
EMPTY_REPLY = "(no response)"
HEARTBEAT_PROMPT = "Heartbeat tick at {now}. Review HEARTBEAT.md and act on anything due."


class DispatchState(StrEnum):
    RECEIVED = "Received"
    AUTHENTICATED = "Authenticated"
    RATE_CHECKED = "RateChecked"
    CONTEXT_BUILT = "ContextBuilt"
    MODEL_INVOKED = "ModelInvoked"
    TOOL_REQUESTED = "ToolRequested"
    SANDBOX_CHECKED = "SandboxChecked"
    TOOL_EXECUTED = "ToolExecuted"
    REPLIED = "Replied"
    DENIED = "Denied"
    THROTTLED = "Throttled"
    REJECTED = "Rejected"
    FAILED = "Failed"


class FailureReason(StrEnum):
    AUTH_DENIED = "AuthDenied"
    RATE_THROTTLED = "RateThrottled"
    SANDBOX_REJECTED = "SandboxRejected"
    CONTEXT_BUDGET_EXCEEDED = "ContextBudgetExceeded"
    BACKEND_TRANSIENT = "BackendTransient"
    BACKEND_FATAL = "BackendFatal"
    TOOL_EXECUTION_ERROR = "ToolExecutionError"
    ITERATION_CAP_EXCEEDED = "IterationCapExceeded"
    MALFORMED_MESSAGE = "MalformedMessage"


TERMINAL_STATES = frozenset(
    {
        DispatchState.REPLIED,
        DispatchState.DENIED,
        DispatchState.THROTTLED,
        DispatchState.REJECTED,
        DispatchState.FAILED,
    }
)


@dataclass(slots=True)
class DispatchOutcome:
    state: DispatchState
    trace_id: str
    identity: Identity | None = None
    reply: str | None = None
    reason: FailureReason | None = None
    detail: str = ""
    retry_after: timedelta | None = None
    recoverable: bool = False
    delivered: bool = False
    model_calls: int = 0
    tool_calls: int = 0
    transitions: list[DispatchState] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class DispatchConfig:
    max_tool_iterations: int = 8
    model_timeout_seconds: float = 120.0
    model_retry_attempts: int = 3
    model_retry_backoff_seconds: float = 0.5
    model_retry_backoff_max_seconds: float = 8.0
    model_call_cost_cents: int = 1
    tool_call_cost_cents: int = 0
    memory_timeout_seconds: float = 10.0
    memory_auto_save: bool = True
    memory_recall_limit: int = 5
    temperature: float = 0.7
    max_tokens: int = 4096
    heartbeat_channel: str = ""
    heartbeat_recipient: str = ""

    @classmethod
    def from_settings(cls, settings: Settings) -> DispatchConfig:
        return cls(
            max_tool_iterations=settings.max_tool_iterations,
            model_timeout_seconds=settings.model_timeout_seconds,
            model_retry_attempts=settings.model_retry_attempts,
            model_retry_backoff_seconds=settings.model_retry_backoff_seconds,
            model_retry_backoff_max_seconds=settings.model_retry_backoff_max_seconds,
            model_call_cost_cents=settings.model_call_cost_cents,
            tool_call_cost_cents=settings.tool_call_cost_cents,
            memory_timeout_seconds=settings.memory_timeout_seconds,
            memory_auto_save=int(settings.memory_auto_save) == 1,
            memory_recall_limit=settings.memory_recall_limit,
            temperature=settings.model_temperature,
            max_tokens=settings.model_max_tokens,
            heartbeat_channel=settings.heartbeat_channel,
            heartbeat_recipient=settings.heartbeat_recipient,
        )


class IdentityLocks:
    """One ``asyncio.Lock`` per identity key."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def get(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()


class _CycleFailed(Exception):
    def __init__(self, reason: FailureReason, detail: str) -> None:
        super().__init__(detail)
        self.reason = reason
        self.detail = detail


def _normalize_tool_calls(tool_calls_raw: object) -> list[dict[str, Any]]:
    calls: list[dict[str, Any]] = []
    if not isinstance(tool_calls_raw, list):
        return calls
    for item in tool_calls_raw:
        if not isinstance(item, dict):
            continue
        name = item.get("name")
        arguments = item.get("arguments", {})
        if not isinstance(name, str) or not name.strip():
            continue
        calls.append(
            {
                "name": name.strip(),
                "arguments": arguments if isinstance(arguments, dict) else {},
            }
        )
    return calls


def format_wait(retry_after: timedelta) -> str:
    seconds = max(1, int(retry_after.total_seconds() + 0.999))
    if seconds < 120:
        return f"{seconds} seconds"
    minutes = (seconds + 59) // 60
    if minutes < 120:
        return f"{minutes} minutes"
    return f"{(minutes + 59) // 60} hours"


class Dispatcher:
    def __init__(
        self,
        *,
        authenticator: Authenticator,
        limiter: ActionLimiter,
        policy: SandboxPolicy,
        context: ContextManager,
        sessions: SessionStore,
        model: ModelProvider,
        tools: ToolRegistry,
        executor: ToolExecutor,
        channels: ChannelRegistry,
        memory: MemoryStore | None = None,
        sink: EventSink | None = None,
        config: DispatchConfig | None = None,
        skills: Callable[[], Sequence[SkillEntry]] = list,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
        sleep: Callable[[float], Any] = asyncio.sleep,
    ) -> None:
        self.authenticator = authenticator
        self.limiter = limiter
        self.policy = policy
        self.context = context
        self.sessions = sessions
        self.model = model
        self.tools = tools
        self.executor = executor
        self.channels = channels
        self.memory = memory
        self.sink = sink
        self.config = config or DispatchConfig()
        self._skills = skills
        self._clock = clock
        self._sleep = sleep
        self.locks = IdentityLocks()

    def is_busy(self, identity: Identity) -> bool:
        return self.locks.locked(identity.key)

    async def dispatch(self, message: InboundMessage) -> DispatchOutcome:
        trace_id = new_id("trc")
        outcome = DispatchOutcome(
            state=DispatchState.RECEIVED,
            trace_id=trace_id,
            transitions=[DispatchState.RECEIVED],
        )
        bind_context(trace_id=trace_id, channel=message.channel_type)
        try:
            emit_safe(
                self.sink,
                "dispatch.received",
                {"trace_id": trace_id, "channel": message.channel_type},
            )
            if not message.text.strip():
                return self._finish(
                    outcome,
                    DispatchState.REJECTED,
                    reason=FailureReason.MALFORMED_MESSAGE,
                    detail="empty message text",
                )

            result = self.authenticator.authenticate(
                message.channel_type,
                message.sender_id,
                message.credentials,
                aliases=message.aliases,
            )
            if isinstance(result, Denied):
                logger.warning("Denied inbound message: %s", result.reason)
                outcome.delivered = await self._send(
                    message.channel_type, message.recipient, DENIED_MESSAGE
                )
                return self._finish(
                    outcome,
                    DispatchState.DENIED,
                    reason=FailureReason.AUTH_DENIED,
                    detail=result.reason,
                    reply=DENIED_MESSAGE,
                )

            outcome.identity = result
            self._advance(outcome, DispatchState.AUTHENTICATED)
            bind_context(identity=result.key)
            async with self.locks.get(result.key):
                return await self._run_cycle(
                    outcome,
                    result,
                    message.text,
                    channel_type=message.channel_type,
                    recipient=message.recipient,
                    heartbeat=False,
                )
        finally:
            clear_context()

    async def dispatch_heartbeat(self) -> DispatchOutcome | None:
        """Run one heartbeat cycle, or return None if the previous one is still running."""
        lock = self.locks.get(SYSTEM_IDENTITY.key)
        if lock.locked():
            return None
        trace_id = new_id("trc")
        outcome = DispatchOutcome(
            state=DispatchState.RECEIVED,
            trace_id=trace_id,
            identity=SYSTEM_IDENTITY,
            transitions=[DispatchState.RECEIVED, DispatchState.AUTHENTICATED],
        )
        bind_context(trace_id=trace_id, channel="heartbeat", identity=SYSTEM_IDENTITY.key)
        try:
            async with lock:
                text = HEARTBEAT_PROMPT.format(now=self._clock().isoformat(timespec="seconds"))
                return await self._run_cycle(
                    outcome,
                    SYSTEM_IDENTITY,
                    text,
                    channel_type=self.config.heartbeat_channel,
                    recipient=self.config.heartbeat_recipient,
                    heartbeat=True,
                )
        finally:
            clear_context()

    def _advance(self, outcome: DispatchOutcome, state: DispatchState) -> None:
        outcome.state = state
        outcome.transitions.append(state)

    def _finish(
        self,
        outcome: DispatchOutcome,
        state: DispatchState,
        *,
        reason: FailureReason | None = None,
        detail: str = "",
        reply: str | None = None,
        recoverable: bool = False,
    ) -> DispatchOutcome:
        self._advance(outcome, state)
        outcome.reason = reason
        outcome.detail = detail
        outcome.reply = reply
        outcome.recoverable = recoverable
        emit_safe(
            self.sink,
            "dispatch.outcome",
            {
                "trace_id": outcome.trace_id,
                "identity": outcome.identity.key if outcome.identity else None,
                "state": state.value,
                "reason": reason.value if reason else None,
                "model_calls": outcome.model_calls,
                "tool_calls": outcome.tool_calls,
                "delivered": outcome.delivered,
            },
        )
        return outcome

    async def _run_cycle(
        self,
        outcome: DispatchOutcome,
        identity: Identity,
        text: str,
        *,
        channel_type: str,
        recipient: str,
        heartbeat: bool,
    ) -> DispatchOutcome:
        if not heartbeat:
            decision = self.limiter.check_and_record(identity, self.config.model_call_cost_cents)
            if isinstance(decision, Throttled):
                return await self._throttled(outcome, decision, channel_type, recipient)
        self._advance(outcome, DispatchState.RATE_CHECKED)

        session = self.sessions.get_or_create(identity.key)
        user_text = text if heartbeat else await self._with_recalled_memory(identity, text)
        working = record_turn(session, Turn.make("user", user_text))
        assembled = self.context.build_context(
            working,
            self.context.bootstrap_sections(heartbeat=heartbeat),
            tools=self.tools.schemas(),
            skills=self._skills(),
            heartbeat=heartbeat,
        )
        if isinstance(assembled, BudgetExceeded):
            outcome.delivered = await self._send(channel_type, recipient, FAILURE_MESSAGE)
            return self._finish(
                outcome,
                DispatchState.FAILED,
                reason=FailureReason.CONTEXT_BUDGET_EXCEEDED,
                detail=f"context needs {assembled.required} tokens, budget {assembled.budget}",
                reply=FAILURE_MESSAGE,
                recoverable=True,
            )
        working = assembled.session
        self.sessions.put(working)
        self._advance(outcome, DispatchState.CONTEXT_BUILT)
        if assembled.truncated_sections:
            logger.info(
                "Truncated bootstrap sections: %s", ", ".join(assembled.truncated_sections)
            )

        convo: list[dict[str, str]] = list(assembled.messages)
        tool_schemas = self.tools.schemas()
        reply: str | None = None
        iterations = max(1, self.config.max_tool_iterations)
        try:
            for iteration in range(1, iterations + 1):
                if iteration > 1 and not heartbeat:
                    decision = self.limiter.check_and_record(
                        identity, self.config.model_call_cost_cents
                    )
                    if isinstance(decision, Throttled):
                        logger.info("Follow-up model call throttled for %s", identity.key)
                        return await self._throttled(outcome, decision, channel_type, recipient)
                response = await self._invoke_model(convo, tool_schemas)
                outcome.model_calls += 1
                working = touch_cache(working, self._clock())
                self.sessions.put(working)
                self._advance(outcome, DispatchState.MODEL_INVOKED)

                calls = _normalize_tool_calls(response.tool_calls)
                if not calls:
                    reply = response.text.strip() or EMPTY_REPLY
                    break
                if iteration == iterations:
                    # no model call is left to read the results
                    break
                convo.append(
                    {
                        "role": "assistant",
                        "content": response.text.strip() or f"[tool_calls] {json.dumps(calls)}",
                    }
                )
                for call in calls:
                    payload = await self._run_tool(outcome, identity, call, heartbeat=heartbeat)
                    result_text = json.dumps(payload, default=str)
                    convo.append({"role": "user", "content": f"[tool_result] {result_text}"})
        except _CycleFailed as failure:
            logger.warning("Model invocation failed (%s): %s", failure.reason, failure.detail)
            outcome.delivered = await self._send(channel_type, recipient, FAILURE_MESSAGE)
            return self._finish(
                outcome,
                DispatchState.FAILED,
                reason=failure.reason,
                detail=failure.detail,
                reply=FAILURE_MESSAGE,
                recoverable=failure.reason is FailureReason.BACKEND_TRANSIENT,
            )

        if reply is None:
            logger.warning(
                "Model still requested tools after %d iterations", self.config.max_tool_iterations
            )
            outcome.delivered = await self._send(channel_type, recipient, FAILURE_MESSAGE)
            return self._finish(
                outcome,
                DispatchState.FAILED,
                reason=FailureReason.ITERATION_CAP_EXCEEDED,
                detail=f"tool loop exceeded {self.config.max_tool_iterations} model calls",
                reply=FAILURE_MESSAGE,
            )

        working = record_turn(working, Turn.make("assistant", reply))
        self.sessions.put(working)
        if not heartbeat:
            await self._auto_save(identity, text, reply)

        if heartbeat and reply.strip() == HEARTBEAT_OK:
            logger.debug("Heartbeat acknowledged with nothing to report")
        elif heartbeat and not (channel_type and recipient):
            logger.info("Heartbeat reply (no delivery channel configured): %s", reply)
        else:
            outcome.delivered = await self._send(channel_type, recipient, reply)
        return self._finish(outcome, DispatchState.REPLIED, reply=reply)

    async def _throttled(
        self,
        outcome: DispatchOutcome,
        decision: Throttled,
        channel_type: str,
        recipient: str,
    ) -> DispatchOutcome:
        notice = THROTTLED_MESSAGE.format(wait=format_wait(decision.retry_after))
        outcome.retry_after = decision.retry_after
        outcome.delivered = await self._send(channel_type, recipient, notice)
        return self._finish(
            outcome,
            DispatchState.THROTTLED,
            reason=FailureReason.RATE_THROTTLED,
            detail=decision.cap,
            reply=notice,
        )

    async def _invoke_model(
        self, convo: list[dict[str, str]], tools: list[dict[str, object]]
    ) -> ModelResponse:
        attempts = max(1, self.config.model_retry_attempts)
        delay = self.config.model_retry_backoff_seconds
        last_error = ""
        for attempt in range(1, attempts + 1):
            try:
                return await asyncio.wait_for(
                    self.model.generate(
                        convo, tools, self.config.temperature, self.config.max_tokens
                    ),
                    timeout=self.config.model_timeout_seconds,
                )
            except TimeoutError:
                last_error = f"model call timed out after {self.config.model_timeout_seconds:g}s"
            except ProviderError as exc:
                if not exc.retryable:
                    raise _CycleFailed(FailureReason.BACKEND_FATAL, str(exc)) from exc
                last_error = str(exc)
            except Exception as exc:
                logger.exception("Unexpected model backend error")
                raise _CycleFailed(
                    FailureReason.BACKEND_FATAL, f"{type(exc).__name__}: {exc}"
                ) from exc
            logger.warning("Model call failed (attempt %d/%d): %s", attempt, attempts, last_error)
            if attempt < attempts:
                await self._sleep(min(delay, self.config.model_retry_backoff_max_seconds))
                delay *= 2
        raise _CycleFailed(FailureReason.BACKEND_TRANSIENT, last_error)

    async def _run_tool(
        self,
        outcome: DispatchOutcome,
        identity: Identity,
        call: dict[str, Any],
        *,
        heartbeat: bool,
    ) -> dict[str, Any]:
        name = call["name"]
        self._advance(outcome, DispatchState.TOOL_REQUESTED)
        request = self.tools.build_request(name, call["arguments"], identity.key)
        if request is None:
            return {"tool": name, "error": f"unknown tool: {name}", "reason": "UnknownTool"}

        decision = authorize(request, self.policy)
        self._advance(outcome, DispatchState.SANDBOX_CHECKED)
        allowed = not isinstance(decision, Rejected)
        emit_safe(
            self.sink,
            "policy.decision",
            {
                "trace_id": outcome.trace_id,
                "tool": name,
                "allowed": allowed,
                "reason": None if allowed else decision.reason.value,
            },
        )
        if isinstance(decision, Rejected):
            logger.info("Sandbox rejected %s: %s (%s)", name, decision.reason, decision.detail)
            return {
                "tool": name,
                "error": f"{FailureReason.SANDBOX_REJECTED.value}: {decision.detail}",
                "reason": decision.reason.value,
            }

        if not heartbeat:
            budget = self.limiter.check_and_record(identity, self.config.tool_call_cost_cents)
            if isinstance(budget, Throttled):
                return {
                    "tool": name,
                    "error": "action limit reached; tool not executed",
                    "reason": FailureReason.RATE_THROTTLED.value,
                    "retry_after_seconds": budget.retry_after_seconds,
                }

        outcome.tool_calls += 1
        try:
            result = await self.executor.execute(decision)
        except ToolError as exc:
            logger.warning("Tool %s failed: %s", name, exc)
            payload: dict[str, Any] = {
                "tool": name,
                "error": str(exc),
                "reason": FailureReason.TOOL_EXECUTION_ERROR.value,
            }
        except Exception as exc:
            logger.exception("Tool execution failed for '%s'", name)
            payload = {
                "tool": name,
                "error": f"{type(exc).__name__}: {exc}",
                "reason": FailureReason.TOOL_EXECUTION_ERROR.value,
            }
        else:
            payload = {"tool": name, "result": result}
        self._advance(outcome, DispatchState.TOOL_EXECUTED)
        emit_safe(
            self.sink,
            "tool.call.end",
            {"trace_id": outcome.trace_id, "tool": name, "ok": "result" in payload},
        )
        return payload

    async def _with_recalled_memory(self, identity: Identity, text: str) -> str:
        if self.memory is None or self.config.memory_recall_limit <= 0:
            return text
        try:
            items = await asyncio.wait_for(
                self.memory.recall(text, self.config.memory_recall_limit, scope=identity.key),
                timeout=self.config.memory_timeout_seconds,
            )
        except (MemoryStoreError, TimeoutError) as exc:
            logger.warning("Memory recall failed for %s: %s", identity.key, exc)
            return text
        except Exception:
            logger.exception("Memory recall raised unexpectedly for %s", identity.key)
            return text
        if not items:
            return text
        block = "\n".join(f"- {item.content}" for item in items)
        return f"[Memory context]\n{block}\n\n{text}"

    async def _auto_save(self, identity: Identity, text: str, reply: str) -> None:
        if self.memory is None or not self.config.memory_auto_save:
            return
        try:
            await asyncio.wait_for(
                self._save_exchange(identity, text, reply),
                timeout=self.config.memory_timeout_seconds,
            )
        except (MemoryStoreError, TimeoutError) as exc:
            logger.warning("Memory auto-save failed for %s: %s", identity.key, exc)
        except Exception:
            logger.exception("Memory auto-save raised unexpectedly for %s", identity.key)

    async def _save_exchange(self, identity: Identity, text: str, reply: str) -> None:
        assert self.memory is not None
        await self.memory.save(identity.key, "user", text)
        await self.memory.save(identity.key, "assistant", reply)

    async def _send(self, channel_type: str, recipient: str, text: str) -> bool:
        adapter = self.channels.get(channel_type)
        if adapter is None:
            logger.warning("No channel adapter registered for %r; reply dropped", channel_type)
            return False
        try:
            status = await adapter.send_text(recipient, text)
        except ChannelError as exc:
            logger.warning(
                "Channel %s send failed (retryable=%s): %s", channel_type, exc.retryable, exc
            )
            return False
        except Exception:
            logger.exception("Channel %s send raised unexpectedly", channel_type)
            return False
        if status >= 400:
            logger.warning("Channel %s send returned status %s", channel_type, status)
            return False
        return True
