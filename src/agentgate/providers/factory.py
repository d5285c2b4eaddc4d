"""Provider construction helpers."""

from agentgate.config import Settings
from agentgate.errors import ConfigError
from agentgate.providers.base import ModelProvider
from agentgate.providers.openai_compat import OpenAICompatProvider
from agentgate.providers.router import ProviderRouter

_ALLOWED_PRIMARY_PROVIDERS = {"openai"}


def resolve_primary_provider_name(settings: Settings) -> str:
    value = settings.primary_provider.strip().lower()
    if value not in _ALLOWED_PRIMARY_PROVIDERS:
        raise ConfigError(f"unsupported PRIMARY_PROVIDER: {settings.primary_provider!r}")
    return value


def build_primary_provider(settings: Settings) -> ModelProvider:
    resolve_primary_provider_name(settings)
    return OpenAICompatProvider(
        settings.model_base_url,
        settings.model_name,
        api_key=settings.model_api_key,
        timeout_seconds=settings.model_timeout_seconds,
    )


def build_fallback_provider(settings: Settings) -> ModelProvider | None:
    if not settings.fallback_base_url.strip():
        return None
    return OpenAICompatProvider(
        settings.fallback_base_url,
        settings.fallback_model_name or settings.model_name,
        api_key=settings.fallback_api_key,
        timeout_seconds=settings.model_timeout_seconds,
    )


def build_router(settings: Settings) -> ProviderRouter:
    return ProviderRouter(build_primary_provider(settings), build_fallback_provider(settings))
