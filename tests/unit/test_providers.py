import json

import httpx
import pytest

from agentgate.config import get_settings
from agentgate.errors import ConfigError, ProviderError
from agentgate.providers.factory import (
    build_fallback_provider,
    build_primary_provider,
    build_router,
)
from agentgate.providers.openai_compat import OpenAICompatProvider


def _provider(handler) -> OpenAICompatProvider:
    return OpenAICompatProvider("http://backend/v1", "m", transport=httpx.MockTransport(handler))


def _completion(message: dict[str, object], usage: dict[str, int] | None = None) -> dict:
    return {"choices": [{"message": message}], "usage": usage or {}}


@pytest.mark.asyncio
async def test_generate_posts_chat_completion_and_parses_tool_calls() -> None:
    seen: dict[str, object] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = json.loads(request.content.decode("utf-8"))
        return httpx.Response(
            200,
            json=_completion(
                {
                    "content": None,
                    "tool_calls": [
                        {
                            "id": "call_1",
                            "type": "function",
                            "function": {"name": "file_read", "arguments": '{"path": "a.md"}'},
                        }
                    ],
                },
                {"prompt_tokens": 12, "completion_tokens": 3},
            ),
        )

    provider = OpenAICompatProvider(
        "http://backend/v1/",
        "test-model",
        api_key="sk-test",
        transport=httpx.MockTransport(handler),
    )
    response = await provider.generate(
        [{"role": "user", "content": "hi"}],
        tools=[{"name": "file_read", "description": "Read.", "parameters": {"type": "object"}}],
        temperature=0.1,
        max_tokens=64,
    )

    assert seen["url"] == "http://backend/v1/chat/completions"
    assert seen["auth"] == "Bearer sk-test"
    body = seen["body"]
    assert isinstance(body, dict)
    assert body["model"] == "test-model"
    assert body["max_tokens"] == 64
    assert body["tools"] == [
        {
            "type": "function",
            "function": {
                "name": "file_read",
                "parameters": {"type": "object"},
                "description": "Read.",
            },
        }
    ]
    assert response.text == ""
    assert response.tool_calls == [{"name": "file_read", "arguments": {"path": "a.md"}}]
    assert response.usage == {"prompt_tokens": 12, "completion_tokens": 3}


@pytest.mark.asyncio
async def test_generate_omits_tools_and_auth_when_not_configured() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content.decode("utf-8"))
        assert "tools" not in body
        assert "Authorization" not in request.headers
        content = [{"text": "he"}, {"text": "llo"}]
        return httpx.Response(200, json=_completion({"content": content}))

    provider = _provider(handler)
    response = await provider.generate([{"role": "user", "content": "hi"}])
    assert response.text == "hello"
    assert response.tool_calls == []


@pytest.mark.asyncio
@pytest.mark.parametrize(("status", "retryable"), [(429, True), (503, True), (400, False)])
async def test_http_errors_map_to_provider_error(status: int, retryable: bool) -> None:
    provider = OpenAICompatProvider(
        "http://backend/v1",
        "m",
        transport=httpx.MockTransport(lambda request: httpx.Response(status, json={})),
    )
    with pytest.raises(ProviderError) as excinfo:
        await provider.generate([{"role": "user", "content": "hi"}])
    assert excinfo.value.retryable is retryable
    assert str(status) in str(excinfo.value)


@pytest.mark.asyncio
async def test_transport_error_is_retryable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    provider = _provider(handler)
    with pytest.raises(ProviderError) as excinfo:
        await provider.generate([{"role": "user", "content": "hi"}])
    assert excinfo.value.retryable is True


@pytest.mark.asyncio
@pytest.mark.parametrize("payload", [{"choices": []}, {"choices": [{"message": "nope"}]}])
async def test_malformed_response_is_fatal(payload: dict) -> None:
    provider = OpenAICompatProvider(
        "http://backend/v1",
        "m",
        transport=httpx.MockTransport(lambda request: httpx.Response(200, json=payload)),
    )
    with pytest.raises(ProviderError) as excinfo:
        await provider.generate([{"role": "user", "content": "hi"}])
    assert excinfo.value.retryable is False


@pytest.mark.asyncio
async def test_non_json_response_is_fatal() -> None:
    provider = OpenAICompatProvider(
        "http://backend/v1",
        "m",
        transport=httpx.MockTransport(lambda request: httpx.Response(200, text="<html>")),
    )
    with pytest.raises(ProviderError) as excinfo:
        await provider.generate([{"role": "user", "content": "hi"}])
    assert excinfo.value.retryable is False


@pytest.mark.asyncio
async def test_health_check_hits_models_endpoint() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200 if request.url.path == "/v1/models" else 404, json={})

    provider = _provider(handler)
    assert await provider.health_check() is True

    down = OpenAICompatProvider(
        "http://backend/v1",
        "m",
        transport=httpx.MockTransport(lambda request: httpx.Response(500)),
    )
    assert await down.health_check() is False


def test_unparseable_tool_arguments_become_empty() -> None:
    assert OpenAICompatProvider._parse_arguments("{broken") == {}
    assert OpenAICompatProvider._parse_arguments("[1, 2]") == {}
    assert OpenAICompatProvider._parse_arguments({"a": 1}) == {"a": 1}


def test_factory_builds_primary_and_optional_fallback(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MODEL_BASE_URL", "http://primary/v1")
    monkeypatch.setenv("MODEL_NAME", "big-model")
    get_settings.cache_clear()
    settings = get_settings()

    primary = build_primary_provider(settings)
    assert isinstance(primary, OpenAICompatProvider)
    assert primary.base_url == "http://primary/v1"
    assert primary.model == "big-model"
    assert build_fallback_provider(settings) is None
    assert build_router(settings).fallback is None

    monkeypatch.setenv("FALLBACK_BASE_URL", "http://fallback/v1")
    get_settings.cache_clear()
    fallback = build_fallback_provider(get_settings())
    assert isinstance(fallback, OpenAICompatProvider)
    assert fallback.model == "big-model"


def test_factory_rejects_unknown_primary(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PRIMARY_PROVIDER", "carrier-pigeon")
    get_settings.cache_clear()
    with pytest.raises(ConfigError):
        build_primary_provider(get_settings())
