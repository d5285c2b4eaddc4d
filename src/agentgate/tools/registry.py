"""Tool registration helpers."""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from agentgate.policy.sandbox import ToolEffect, ToolInvocationRequest

ToolCallable = Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]
# scoped handlers also receive the identity key of the caller
ScopedToolCallable = Callable[[dict[str, Any], str], Awaitable[dict[str, Any]]]


@dataclass(slots=True)
class ToolDef:
    name: str
    description: str
    handler: ToolCallable | ScopedToolCallable
    parameters: dict[str, object] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    effect: ToolEffect = ToolEffect.READ
    path_params: tuple[str, ...] = ()
    command_param: str | None = None
    scoped: bool = False


class ToolRegistry:
    def __init__(self) -> None:
        self._tools: dict[str, ToolDef] = {}

    def register(
        self,
        name: str,
        description: str,
        handler: ToolCallable | ScopedToolCallable,
        parameters: dict[str, object] | None = None,
        *,
        effect: ToolEffect = ToolEffect.READ,
        path_params: tuple[str, ...] = (),
        command_param: str | None = None,
        scoped: bool = False,
    ) -> None:
        self._tools[name] = ToolDef(
            name=name,
            description=description,
            handler=handler,
            parameters=parameters or {"type": "object", "properties": {}},
            effect=effect,
            path_params=path_params,
            command_param=command_param,
            scoped=scoped,
        )

    def get(self, name: str) -> ToolDef | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return sorted(self._tools)

    def build_request(
        self, name: str, arguments: dict[str, Any], requested_by: str
    ) -> ToolInvocationRequest | None:
        tool = self._tools.get(name)
        if tool is None:
            return None
        return ToolInvocationRequest(
            tool_name=name,
            arguments=arguments,
            requested_by=requested_by,
            effect=tool.effect,
            path_params=tool.path_params,
            command_param=tool.command_param,
        )

    def schemas(self) -> list[dict[str, object]]:
        return [
            {
                "name": tool.name,
                "description": tool.description,
                "parameters": tool.parameters,
            }
            for tool in self._tools.values()
        ]
