"""
Tool Registry

Declarative tool descriptions plus the callables behind them.

- A ``Tool`` knows its name, its parameters and how to render itself as an
  OpenAI function definition
- A ``ToolRegistry`` is an ordered, name-keyed set of tools. Names are unique
  and the registry is never mutated after construction, so one registry can
  be shared by every session without locking
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Iterator
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict

from cara.chat.models import ToolDefinition, ToolFunctionDefinition, ToolFunctionParameters

logger = logging.getLogger(__name__)

ParameterType = Literal["string", "number", "integer", "boolean", "object", "array"]

_PYTHON_TYPES: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "number": (int, float),
    "integer": (int,),
    "boolean": (bool,),
    "object": (dict,),
    "array": (list,),
}


class ToolError(Exception):
    """Raised by tool callbacks for expected failures (bad input, upstream errors)."""


class DuplicateToolError(ValueError):
    def __init__(self, name: str):
        super().__init__(f"Tool '{name}' is already registered")
        self.name = name


class ToolParameter(BaseModel):
    """One named argument of a tool."""

    model_config = ConfigDict(frozen=True)

    name: str
    type: ParameterType = "string"
    required: bool = False
    doc: str = ""

    def to_schema(self) -> dict[str, Any]:
        schema: dict[str, Any] = {"type": self.type}
        if self.doc:
            schema["description"] = self.doc
        return schema

    def accepts(self, value: Any) -> bool:
        # bool is an int subclass; only "boolean" takes it
        if isinstance(value, bool):
            return self.type == "boolean"
        return isinstance(value, _PYTHON_TYPES[self.type])


class Tool(BaseModel):
    """
    A named, schema-described capability the model may invoke.

    The callback receives the decoded arguments dict. Returning a value means
    success; raising means failure. Coroutine functions are awaited.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str
    description: str = ""
    parameters: tuple[ToolParameter, ...] = ()
    callback: Callable[[dict[str, Any]], Any]

    def to_definition(self) -> ToolDefinition:
        return ToolDefinition(
            function=ToolFunctionDefinition(
                name=self.name,
                description=self.description,
                parameters=ToolFunctionParameters(
                    properties={p.name: p.to_schema() for p in self.parameters},
                    required=[p.name for p in self.parameters if p.required],
                ),
            )
        )

    def validate_arguments(self, arguments: dict[str, Any]) -> None:
        """Check required arguments and JSON types.

        Raises:
            ToolError: If a required argument is missing or has the wrong type
        """
        for param in self.parameters:
            if param.name not in arguments or arguments[param.name] is None:
                if param.required:
                    raise ToolError(f"Missing '{param.name}' parameter")
                continue
            if not param.accepts(arguments[param.name]):
                raise ToolError(f"Parameter '{param.name}' must be of type {param.type}")


class ToolRegistry:
    """Ordered, read-only set of tools keyed by name."""

    def __init__(self, tools: Iterable[Tool] = ()) -> None:
        self._tools: dict[str, Tool] = {}
        for tool in tools:
            if tool.name in self._tools:
                raise DuplicateToolError(tool.name)
            self._tools[tool.name] = tool

        if self._tools:
            logger.debug("Tool registry created with %d tools: %s", len(self._tools), ", ".join(self._tools))

    def with_tools(self, *tools: Tool) -> ToolRegistry:
        """Return a new registry with ``tools`` added after the existing ones."""
        return ToolRegistry([*self._tools.values(), *tools])

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def to_definitions(self) -> list[ToolDefinition]:
        """Build the tool declarations offered to the model."""
        return [tool.to_definition() for tool in self._tools.values()]

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __iter__(self) -> Iterator[Tool]:
        return iter(self._tools.values())

    def __len__(self) -> int:
        return len(self._tools)

    def __bool__(self) -> bool:
        return bool(self._tools)
