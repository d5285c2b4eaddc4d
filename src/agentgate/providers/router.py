"""Provider router with fallback behavior."""

import logging

from agentgate.errors import ProviderError
from agentgate.providers.base import ChatMessage, ModelProvider, ModelResponse, ToolSchema

logger = logging.getLogger(__name__)


class ProviderRouter:
    def __init__(self, primary: ModelProvider, fallback: ModelProvider | None = None) -> None:
        self.primary = primary
        self.fallback = fallback

    async def generate(
        self,
        messages: list[ChatMessage],
        tools: list[ToolSchema] | None = None,
        temperature: float = 0.7,
        max_tokens: int = 4096,
    ) -> ModelResponse:
        try:
            return await self.primary.generate(messages, tools, temperature, max_tokens)
        except ProviderError as exc:
            if self.fallback is None:
                raise
            primary_error = f"{type(exc).__name__}: {exc}"
            logger.warning("Primary provider failed: %s", primary_error)
        try:
            return await self.fallback.generate(messages, tools, temperature, max_tokens)
        except ProviderError as fallback_exc:
            raise ProviderError(
                f"all providers failed: primary={primary_error}, "
                f"fallback={type(fallback_exc).__name__}: {fallback_exc}",
                retryable=fallback_exc.retryable,
            ) from fallback_exc

    async def health_check(self) -> bool:
        return all((await self.health()).values())

    async def health(self) -> dict[str, bool]:
        status = {"primary": await self.primary.health_check()}
        if self.fallback is not None:
            status["fallback"] = await self.fallback.health_check()
        return status
