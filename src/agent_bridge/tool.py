from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable
from typing import Any, Protocol, runtime_checkable

from agent_bridge.errors import CapabilityExecutionError


@runtime_checkable
class Tool(Protocol):
    @property
    def name(self) -> str: ...

    @property
    def description(self) -> str: ...

    @property
    def input_schema(self) -> dict[str, Any] | None: ...

    async def execute(self, tool_input: dict[str, Any]) -> Any: ...


class FunctionTool:
    """Adapts a plain or async callable taking the tool input to the Tool protocol."""

    def __init__(
        self,
        name: str,
        description: str,
        input_schema: dict[str, Any] | None,
        fn: Callable[[dict[str, Any]], Any | Awaitable[Any]] | None,
    ):
        self._name = name
        self._description = description
        self._input_schema = input_schema
        self._fn = fn

    @property
    def name(self) -> str:
        return self._name

    @property
    def description(self) -> str:
        return self._description

    @property
    def input_schema(self) -> dict[str, Any] | None:
        return self._input_schema

    async def execute(self, tool_input: dict[str, Any]) -> Any:
        if self._fn is None:
            raise CapabilityExecutionError(self._name, "no function defined")
        result = self._fn(tool_input)
        if inspect.isawaitable(result):
            result = await result
        return result
