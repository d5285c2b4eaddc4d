"""Tool executor: runs sandbox-authorized invocations with timeout and retries."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from agentgate.config import Settings
from agentgate.errors import PolicyError, ToolError
from agentgate.policy.sandbox import Authorized
from agentgate.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ExecutorConfig:
    timeout_seconds: float = 60.0
    retry_attempts: int = 2
    retry_backoff_seconds: float = 0.5

    @classmethod
    def from_settings(cls, settings: Settings) -> ExecutorConfig:
        return cls(
            timeout_seconds=settings.tool_timeout_seconds,
            retry_attempts=settings.tool_retry_attempts,
        )


class ToolExecutor:
    def __init__(self, registry: ToolRegistry, config: ExecutorConfig | None = None) -> None:
        self.registry = registry
        self.config = config or ExecutorConfig()

    async def execute(self, authorized: Authorized) -> dict[str, Any]:
        """Run an authorized invocation. Only an ``Authorized`` decision is accepted."""
        if not isinstance(authorized, Authorized):
            raise PolicyError("tool invocation was not authorized by the sandbox")
        request = authorized.request
        tool = self.registry.get(request.tool_name)
        if tool is None:
            raise ToolError(f"unknown tool: {request.tool_name}")

        attempts = max(1, self.config.retry_attempts)
        for attempt in range(1, attempts + 1):
            arguments = dict(request.arguments)
            call = (
                tool.handler(arguments, request.requested_by)  # type: ignore[call-arg]
                if tool.scoped
                else tool.handler(arguments)  # type: ignore[call-arg]
            )
            try:
                return await asyncio.wait_for(call, timeout=self.config.timeout_seconds)
            except TimeoutError as exc:
                raise ToolError(
                    f"{request.tool_name} timed out after {self.config.timeout_seconds:g}s"
                ) from exc
            except ToolError as exc:
                if not exc.retryable or attempt >= attempts:
                    raise
                logger.warning(
                    "Tool %s failed (attempt %d/%d): %s", request.tool_name, attempt, attempts, exc
                )
                await asyncio.sleep(self.config.retry_backoff_seconds * attempt)
        raise ToolError(f"{request.tool_name} exhausted retries")
