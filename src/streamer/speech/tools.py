"""Tools the language model may call while narrating."""

from __future__ import annotations

import importlib
import inspect
import json
import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Iterable, Iterator, Mapping

from ..avatars import AvatarStore
from ..commands import Command, SetAvatar
from ..config import Settings
from ..llm import ToolCall

logger = logging.getLogger(__name__)


@dataclass
class ToolContext:
    """What a tool may touch while it runs."""

    emit: Callable[[Command], None]
    settings: Settings
    store: dict[str, Any] = field(default_factory=dict)


ToolExecutor = Callable[[dict[str, Any], ToolContext], Awaitable[Any]]


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: str
    input_schema: Mapping[str, Any]
    execute: ToolExecutor

    def to_openai_tool(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": dict(self.input_schema),
            },
        }


@dataclass(frozen=True)
class ToolCallStep:
    """One executed tool call and the text fed back to the model."""

    step: int
    call: ToolCall
    result: str
    failed: bool = False


def format_tool_result(result: Any) -> str:
    if isinstance(result, str):
        return result
    try:
        return json.dumps(result, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(result)


class ToolRegistry:
    """Immutable name -> tool mapping fixed at configuration time."""

    def __init__(self, tools: Iterable[ToolDefinition] = ()) -> None:
        registered: dict[str, ToolDefinition] = {}
        for tool in tools:
            if tool.name in registered:
                logger.info("Tool %s overrides an earlier definition", tool.name)
            registered[tool.name] = tool
        self._tools = MappingProxyType(registered)

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    def get(self, name: str) -> ToolDefinition | None:
        return self._tools.get(name)

    def to_openai_tools(self) -> list[dict[str, Any]]:
        return [tool.to_openai_tool() for tool in self._tools.values()]

    async def execute(self, call: ToolCall, context: ToolContext) -> tuple[str, bool]:
        """Run a tool call and return ``(result_text, failed)``.

        Failures become text for the model rather than exceptions.
        """
        tool = self._tools.get(call.name)
        if tool is None:
            logger.warning("Model requested unknown tool %s", call.name)
            return f"Tool {call.name} is not available.", True

        if call.arguments is None:
            return (
                f"Invalid JSON arguments for tool {call.name}: {call.raw_arguments!r}",
                True,
            )

        try:
            result = await tool.execute(dict(call.arguments), context)
        except Exception as exc:
            logger.exception("Tool '%s' raised an exception", call.name)
            return f"Tool error: {exc}", True
        return format_tool_result(result), False

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __iter__(self) -> Iterator[ToolDefinition]:
        return iter(self._tools.values())

    def __len__(self) -> int:
        return len(self._tools)


def build_set_avatar_tool(avatars: AvatarStore) -> ToolDefinition:
    names = avatars.list_available()
    name_schema: dict[str, Any] = {
        "type": "string",
        "description": "Avatar expression to show",
    }
    if names:
        name_schema["enum"] = names

    async def _set_avatar(args: dict[str, Any], context: ToolContext) -> str:
        name = args.get("name")
        if not isinstance(name, str) or not name.strip():
            raise ValueError("name must be a non-empty string")
        context.emit(SetAvatar(name=name.strip()))
        return f"アバターを{name.strip()}に変更しました"

    return ToolDefinition(
        name="setAvatar",
        description="Update current avatar for ai-streamer",
        input_schema={
            "type": "object",
            "properties": {"name": name_schema},
            "required": ["name"],
        },
        execute=_set_avatar,
    )


def build_default_tools(avatars: AvatarStore) -> list[ToolDefinition]:
    if not avatars.enabled:
        return []
    return [build_set_avatar_tool(avatars)]


def load_tool_modules(references: Iterable[str]) -> list[ToolDefinition]:
    """Import `module:attribute` references that yield tools.

    The attribute may be a `ToolDefinition`, an iterable of them, or a
    zero-argument callable returning either.
    """
    tools: list[ToolDefinition] = []
    for reference in references:
        module_name, _, attribute = reference.partition(":")
        if not module_name or not attribute:
            raise ValueError(
                f"Tool reference {reference!r} must look like 'module:attribute'"
            )
        module = importlib.import_module(module_name)
        value = getattr(module, attribute)
        if callable(value) and not isinstance(value, ToolDefinition):
            if inspect.iscoroutinefunction(value):
                raise TypeError(f"Tool factory {reference} must be synchronous")
            value = value()
        produced = [value] if isinstance(value, ToolDefinition) else list(value)
        for item in produced:
            if not isinstance(item, ToolDefinition):
                raise TypeError(
                    f"{reference} produced {type(item).__name__}, "
                    "expected ToolDefinition"
                )
        tools.extend(produced)
        logger.info("Loaded %d tool(s) from %s", len(produced), reference)
    return tools


def build_tool_registry(
    settings: Settings,
    avatars: AvatarStore,
    extra_tools: Iterable[ToolDefinition] = (),
) -> ToolRegistry:
    """Built-in tools first so that configured tools with the same name win."""

    tools = build_default_tools(avatars)
    tools.extend(load_tool_modules(settings.tool_modules))
    tools.extend(extra_tools)
    return ToolRegistry(tools)


__all__ = [
    "ToolCallStep",
    "ToolContext",
    "ToolDefinition",
    "ToolExecutor",
    "ToolRegistry",
    "build_default_tools",
    "build_set_avatar_tool",
    "build_tool_registry",
    "format_tool_result",
    "load_tool_modules",
]
