"""
Tool registry and schema helpers.

A Tool pairs a name, description and JSON schema (what the model sees)
with an async resolver (what actually runs once the user approves the
call). Argument types are pydantic models; the schema the model sees is
their `model_json_schema()`:

    class LookupArgs(ToolArgs):
        username: str = Field(description="Username without '@'")

    Tool(
        name="LookupMattermostUser",
        description="...",
        schema=schema_from_model(LookupArgs),
        resolver=resolve_lookup,
    )

Resolvers receive the LLMContext and an argument getter; they call
`get_args(LookupArgs)` to validate the model's JSON into the model.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from pydantic import BaseModel, ConfigDict, ValidationError

from parley.errors import ToolResolveError

if TYPE_CHECKING:
    from parley.llm.context import LLMContext

logger = logging.getLogger(__name__)

ArgGetter = Callable[[type], Any]
Resolver = Callable[["LLMContext", ArgGetter], Awaitable[str]]


@dataclass
class Tool:
    name: str
    description: str
    schema: dict
    resolver: Resolver


class ToolArgs(BaseModel):
    """Base for tool argument models; unknown arguments are rejected."""

    model_config = ConfigDict(extra="forbid")


def schema_from_model(cls: type[BaseModel]) -> dict:
    """JSON schema (object) describing the model's fields."""
    return cls.model_json_schema()


def json_arg_getter(raw: str) -> ArgGetter:
    """Argument getter validating `raw` JSON into a requested model."""

    def get_args(cls: type):
        if cls is dict:
            try:
                data = json.loads(raw) if raw else {}
            except json.JSONDecodeError as e:
                raise ToolResolveError(f"invalid tool arguments: {e}") from e
            if not isinstance(data, dict):
                raise ToolResolveError("tool arguments must be a JSON object")
            return data
        try:
            return cls.model_validate_json(raw or "{}")
        except ValidationError as e:
            raise ToolResolveError(f"invalid tool arguments: {e}") from e

    return get_args


class ToolStore:
    """Tools available to one request, keyed by name."""

    def __init__(self, trace: bool = False):
        self._tools: dict[str, Tool] = {}
        self.trace = trace

    def add_tools(self, tools: list[Tool]) -> None:
        for tool in tools:
            self._tools[tool.name] = tool

    def get_tools(self) -> list[Tool]:
        return list(self._tools.values())

    def __len__(self) -> int:
        return len(self._tools)

    async def resolve_tool(self, name: str, arg_getter: ArgGetter, context: "LLMContext") -> str:
        tool = self._tools.get(name)
        if tool is None:
            if self.trace:
                logger.info("Unknown tool called: name=%s args=%s", name, _trace_args(arg_getter))
            raise ToolResolveError(f"unknown tool {name}")

        try:
            result = await tool.resolver(context, arg_getter)
        except Exception as e:
            if self.trace:
                logger.info("Tool failed: name=%s args=%s error=%s", name, _trace_args(arg_getter), e)
            raise
        if self.trace:
            logger.info("Tool resolved: name=%s args=%s result=%s", name, _trace_args(arg_getter), result)
        return result


def _trace_args(arg_getter: ArgGetter) -> str:
    try:
        return json.dumps(arg_getter(dict))
    except Exception as e:
        return f"failed to get tool args: {e}"
