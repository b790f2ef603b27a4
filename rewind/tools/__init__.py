"""
REWIND Tool Registry

A tool is a thin async function over the Environment facade plus the
metadata the permission gate and the model need. The registry looks
tools up by id, describes them to the model, and runs them while
emitting tool.started / tool.completed / tool.error events.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from loguru import logger
from pydantic import BaseModel

from rewind.environment import Environment
from rewind.event_bus import EventBus, EventType

if TYPE_CHECKING:
    from rewind.router import ToolCall


class ToolNotFoundError(Exception):
    pass


class ToolCategory(str, Enum):
    FILE_OPERATION = "file_operation"
    SHELL_EXECUTION = "shell_execution"
    READONLY = "readonly"


class ToolResult(BaseModel):
    ok: bool
    data: Any = None
    error: str | None = None


@dataclass
class ToolContext:
    invocation_id: str
    environment: Environment
    session_id: str


ToolFn = Callable[[dict[str, Any], ToolContext], Awaitable[ToolResult]]


@dataclass
class Tool:
    id: str
    description: str
    execute: ToolFn
    parameters: dict[str, Any] = field(default_factory=dict)
    required: list[str] = field(default_factory=list)
    requires_permission: bool = True
    # Ask every time, regardless of danger or fast mode
    always_require_permission: bool = False
    categories: frozenset[ToolCategory] = frozenset()

    def describe(self) -> dict[str, Any]:
        """Function-calling schema for the model."""
        return {
            "type": "function",
            "function": {
                "name": self.id,
                "description": self.description,
                "parameters": {
                    "type": "object",
                    "properties": self.parameters,
                    "required": self.required,
                },
            },
        }


class ToolRegistry:

    def __init__(self, bus: EventBus | None = None):
        self.bus = bus
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        if tool.id in self._tools:
            logger.warning(f"[TOOLS] Replacing already registered tool: {tool.id}")
        self._tools[tool.id] = tool

    def get(self, tool_id: str) -> Tool | None:
        return self._tools.get(tool_id)

    def __contains__(self, tool_id: str) -> bool:
        return tool_id in self._tools

    def ids(self) -> list[str]:
        return list(self._tools)

    def descriptions(self) -> list[dict[str, Any]]:
        return [tool.describe() for tool in self._tools.values()]

    def in_category(self, tool_id: str, category: ToolCategory | str) -> bool:
        tool = self.get(tool_id)
        if tool is None:
            return False
        try:
            return ToolCategory(category) in tool.categories
        except ValueError:
            return False

    async def execute(self, call: "ToolCall", ctx: ToolContext) -> ToolResult:
        tool = self.get(call.tool_id)
        if tool is None:
            raise ToolNotFoundError(f"Unknown tool: {call.tool_id}")

        base = {
            "session_id": ctx.session_id,
            "invocation_id": call.invocation_id,
            "tool_id": call.tool_id,
            "args": call.args,
        }
        self._emit(EventType.TOOL_STARTED, ctx.session_id, base)
        started = time.monotonic()

        try:
            result = await tool.execute(call.args, ctx)
        except Exception as e:
            elapsed = int((time.monotonic() - started) * 1000)
            logger.warning(f"[TOOLS] {call.tool_id} failed after {elapsed}ms: {e}")
            self._emit(
                EventType.TOOL_ERROR,
                ctx.session_id,
                {**base, "error": str(e), "timing_ms": elapsed},
            )
            raise

        elapsed = int((time.monotonic() - started) * 1000)
        logger.debug(f"[TOOLS] {call.tool_id} finished in {elapsed}ms (ok={result.ok})")
        self._emit(
            EventType.TOOL_COMPLETED,
            ctx.session_id,
            {**base, "result": result.model_dump(mode="json"), "timing_ms": elapsed},
        )
        return result

    def _emit(self, event_type: EventType, session_id: str, payload: dict[str, Any]) -> None:
        if self.bus is not None:
            self.bus.emit(event_type, session_id, payload)


def build_default_registry(bus: EventBus | None = None) -> ToolRegistry:
    from rewind.tools.builtin import BUILTIN_TOOLS

    registry = ToolRegistry(bus=bus)
    for tool in BUILTIN_TOOLS:
        registry.register(tool)
    return registry


__all__ = [
    "Tool",
    "ToolCategory",
    "ToolContext",
    "ToolNotFoundError",
    "ToolRegistry",
    "ToolResult",
    "build_default_registry",
]
