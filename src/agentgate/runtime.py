"""Runtime wiring: builds every component from settings and owns their lifecycle."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from agentgate.auth.service import AuthConfig, Authenticator
from agentgate.channels.cli import CliAdapter
from agentgate.channels.registry import ChannelRegistry
from agentgate.channels.telegram.adapter import TelegramAdapter
from agentgate.channels.webhook import WebhookAdapter
from agentgate.config import Settings
from agentgate.errors import ConfigError
from agentgate.events.sink import EventSink, LogEventSink
from agentgate.memory.interfaces import MemoryStore
from agentgate.memory.noop import NoopMemoryStore
from agentgate.memory.sqlite_store import SqliteMemoryStore
from agentgate.orchestrator.dispatch import DispatchConfig, Dispatcher
from agentgate.orchestrator.heartbeat import HeartbeatScheduler
from agentgate.orchestrator.prompt_builder import ContextConfig, ContextManager
from agentgate.orchestrator.session import SessionStore
from agentgate.orchestrator.skills import load_skill_catalog
from agentgate.policy.limiter import ActionLimiter, LimiterConfig, utc_now
from agentgate.policy.sandbox import SandboxPolicy
from agentgate.providers.base import ModelProvider
from agentgate.providers.factory import build_router
from agentgate.tools.builtin import register_builtin_tools
from agentgate.tools.registry import ToolRegistry
from agentgate.tools.runtime import ExecutorConfig, ToolExecutor

logger = logging.getLogger(__name__)

SESSIONS_FILENAME = "sessions.json"
MEMORY_DB_FILENAME = "memory.db"


def build_memory(settings: Settings) -> MemoryStore:
    backend = settings.memory_backend.strip().lower()
    if backend == "sqlite":
        return SqliteMemoryStore(settings.data_path / MEMORY_DB_FILENAME)
    if backend in {"none", "noop", "off"}:
        return NoopMemoryStore()
    raise ConfigError(f"unsupported MEMORY_BACKEND: {settings.memory_backend!r}")


@dataclass(slots=True)
class Runtime:
    settings: Settings
    dispatcher: Dispatcher
    sessions: SessionStore
    channels: ChannelRegistry
    model: ModelProvider
    sessions_path: Path
    heartbeat: HeartbeatScheduler | None = None
    _tasks: set[asyncio.Task[Any]] = field(default_factory=set)

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def spawn(
        self, coro: Coroutine[Any, Any, Any], *, name: str | None = None
    ) -> asyncio.Task[Any]:
        """Run a dispatch in the background; it is drained at shutdown."""
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background dispatch failed", exc_info=exc)

    async def startup(self, *, start_heartbeat: bool = True) -> None:
        loaded = self.sessions.load(self.sessions_path)
        if loaded:
            logger.info("Restored %d sessions from %s", loaded, self.sessions_path)
        if self.heartbeat is not None and start_heartbeat:
            self.heartbeat.start()
            logger.info("Heartbeat every %.0fs", self.heartbeat.interval_seconds)

    async def shutdown(self, timeout_s: float = 30.0) -> None:
        if self.heartbeat is not None:
            await self.heartbeat.shutdown()
        if self._tasks:
            pending = list(self._tasks)
            _, still_pending = await asyncio.wait(pending, timeout=max(1.0, timeout_s))
            for task in still_pending:
                task.cancel()
            if still_pending:
                await asyncio.gather(*still_pending, return_exceptions=True)
                logger.warning("Cancelled %d in-flight dispatches at shutdown", len(still_pending))
        self.sessions.save(self.sessions_path)


def build_runtime(
    settings: Settings,
    *,
    model: ModelProvider | None = None,
    memory: MemoryStore | None = None,
    sink: EventSink | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> Runtime:
    workspace = settings.workspace_path
    workspace.mkdir(parents=True, exist_ok=True)

    policy = SandboxPolicy.from_settings(settings)
    for forbidden in policy.canonical_forbidden:
        if policy.root == forbidden or policy.root.is_relative_to(forbidden):
            logger.warning(
                "Workspace %s lies under forbidden path %s; every path tool call will be rejected",
                policy.root,
                forbidden,
            )

    memory_store = memory if memory is not None else build_memory(settings)
    registry = ToolRegistry()
    register_builtin_tools(
        registry,
        workspace=policy.root,
        memory=memory_store,
        shell_timeout_seconds=settings.tool_timeout_seconds,
        ytdlp_binary=settings.ytdlp_binary,
        whisper_binary=settings.whisper_binary,
    )

    channels = ChannelRegistry()
    channels.register(CliAdapter())
    channels.register(WebhookAdapter())
    if settings.telegram_bot_token.strip():
        channels.register(TelegramAdapter(settings.telegram_bot_token))
        logger.info("Telegram channel adapter registered")

    sessions = SessionStore(token_budget=settings.context_token_budget)
    model_provider = model if model is not None else build_router(settings)
    dispatcher = Dispatcher(
        authenticator=Authenticator(AuthConfig.from_settings(settings)),
        limiter=ActionLimiter(LimiterConfig.from_settings(settings), clock=clock),
        policy=policy,
        context=ContextManager(
            ContextConfig.from_settings(settings), workspace=policy.root, clock=clock
        ),
        sessions=sessions,
        model=model_provider,
        tools=registry,
        executor=ToolExecutor(registry, ExecutorConfig.from_settings(settings)),
        channels=channels,
        memory=memory_store,
        sink=sink if sink is not None else LogEventSink(),
        config=DispatchConfig.from_settings(settings),
        skills=lambda: load_skill_catalog(policy.root),
        clock=clock,
    )
    heartbeat = None
    if int(settings.heartbeat_enabled) == 1:
        heartbeat = HeartbeatScheduler(dispatcher, settings.heartbeat_interval_seconds)
    return Runtime(
        settings=settings,
        dispatcher=dispatcher,
        sessions=sessions,
        channels=channels,
        model=model_provider,
        sessions_path=settings.data_path / SESSIONS_FILENAME,
        heartbeat=heartbeat,
    )
