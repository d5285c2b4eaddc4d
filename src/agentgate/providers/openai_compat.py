"""Model backend speaking the OpenAI-compatible chat completions API."""

import json
import logging
from typing import Any

import httpx

from agentgate.errors import ProviderError
from agentgate.providers.base import ChatMessage, ModelResponse, ToolSchema

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = {408, 409, 425, 429}


class OpenAICompatProvider:
    def __init__(
        self,
        base_url: str,
        model: str,
        *,
        api_key: str = "",
        timeout_seconds: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self._api_key = api_key
        self._timeout = timeout_seconds
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        if not self._api_key:
            return {}
        return {"Authorization": f"Bearer {self._api_key}"}

    @staticmethod
    def _coerce_text(value: object) -> str:
        if isinstance(value, str):
            return value
        if isinstance(value, list):
            chunks: list[str] = []
            for item in value:
                if isinstance(item, str):
                    chunks.append(item)
                elif isinstance(item, dict):
                    text = item.get("text")
                    if isinstance(text, str):
                        chunks.append(text)
            return "".join(chunks)
        return ""

    @staticmethod
    def _to_tools(tools: list[dict[str, Any]] | None) -> list[dict[str, object]] | None:
        if not tools:
            return None
        normalized: list[dict[str, object]] = []
        for tool in tools:
            name = tool.get("name")
            if not isinstance(name, str) or not name:
                continue
            params = tool.get("parameters")
            function: dict[str, object] = {
                "name": name,
                "parameters": (
                    params if isinstance(params, dict) else {"type": "object", "properties": {}}
                ),
            }
            description = tool.get("description")
            if isinstance(description, str) and description:
                function["description"] = description
            normalized.append({"type": "function", "function": function})
        return normalized or None

    @staticmethod
    def _parse_arguments(arguments: object) -> dict[str, Any]:
        if isinstance(arguments, dict):
            return arguments
        if isinstance(arguments, str) and arguments.strip():
            try:
                decoded = json.loads(arguments)
            except json.JSONDecodeError:
                return {}
            if isinstance(decoded, dict):
                return decoded
        return {}

    @classmethod
    def _parse_response(cls, payload: dict[str, Any]) -> ModelResponse:
        choices = payload.get("choices")
        if not isinstance(choices, list) or not choices:
            raise ProviderError("model response missing choices", retryable=False)
        first = choices[0]
        message = first.get("message") if isinstance(first, dict) else None
        if not isinstance(message, dict):
            raise ProviderError("model response message missing", retryable=False)
        tool_calls: list[dict[str, Any]] = []
        for call in message.get("tool_calls") or []:
            if not isinstance(call, dict):
                continue
            fn = call.get("function")
            if not isinstance(fn, dict):
                continue
            name = fn.get("name")
            if isinstance(name, str) and name:
                tool_calls.append(
                    {"name": name, "arguments": cls._parse_arguments(fn.get("arguments"))}
                )
        usage_raw = payload.get("usage")
        usage = (
            {key: int(value) for key, value in usage_raw.items() if isinstance(value, int)}
            if isinstance(usage_raw, dict)
            else {}
        )
        return ModelResponse(
            text=cls._coerce_text(message.get("content")), tool_calls=tool_calls, usage=usage
        )

    async def generate(
        self,
        messages: list[ChatMessage],
        tools: list[ToolSchema] | None = None,
        temperature: float = 0.7,
        max_tokens: int = 4096,
    ) -> ModelResponse:
        body: dict[str, object] = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        normalized_tools = self._to_tools(tools)
        if normalized_tools is not None:
            body["tools"] = normalized_tools
        endpoint = f"{self.base_url}/chat/completions"
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                response = await client.post(endpoint, json=body, headers=self._headers())
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            retryable = status in RETRYABLE_STATUS or status >= 500
            raise ProviderError(
                f"model backend returned HTTP {status}", retryable=retryable
            ) from exc
        except httpx.TransportError as exc:
            raise ProviderError(f"model backend unreachable: {exc}", retryable=True) from exc
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderError("model response is not JSON", retryable=False) from exc
        if not isinstance(payload, dict):
            raise ProviderError("model response is not an object", retryable=False)
        return self._parse_response(payload)

    async def health_check(self) -> bool:
        try:
            async with httpx.AsyncClient(timeout=10, transport=self._transport) as client:
                response = await client.get(f"{self.base_url}/models", headers=self._headers())
            return response.status_code < 400
        except httpx.HTTPError as exc:
            logger.debug("Model backend health check failed: %s", exc)
            return False
