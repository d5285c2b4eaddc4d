"""Model backend contract.

Backends raise ``ProviderError``; ``retryable=True`` marks transient
failures (timeouts, 429, 5xx) that the dispatch loop may retry.
"""

from dataclasses import dataclass, field
from typing import Any, Protocol

ChatMessage = dict[str, str]
ToolSchema = dict[str, Any]


@dataclass(slots=True)
class ModelResponse:
    text: str
    tool_calls: list[dict[str, Any]] = field(default_factory=list)
    # prompt/completion token counts when the backend reports them
    usage: dict[str, int] = field(default_factory=dict)


class ModelProvider(Protocol):
    async def generate(
        self,
        messages: list[ChatMessage],
        tools: list[ToolSchema] | None = None,
        temperature: float = 0.7,
        max_tokens: int = 4096,
    ) -> ModelResponse: ...

    async def health_check(self) -> bool: ...
