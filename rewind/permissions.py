"""
REWIND Permission Gate

One decision per tool invocation. Rules, first match wins:

  1. danger mode            -> grant (sandbox-only use)
  2. unknown tool           -> ask
  3. always-ask tool        -> ask (config always_ask or the tool's own flag)
  4. fast mode + category   -> grant
  5. tool needs no consent  -> grant
  6. otherwise              -> ask

"Ask" means the interactive callback. Without one, the answer is no.
"""

from __future__ import annotations

import inspect
from typing import Any, Awaitable, Callable, Union

from loguru import logger

from rewind.config_loader import PermissionConfig
from rewind.event_bus import EventBus, EventType
from rewind.tools import ToolRegistry

PromptCallback = Callable[[str, dict[str, Any]], Union[bool, Awaitable[bool]]]


class PermissionGate:

    def __init__(
        self,
        registry: ToolRegistry,
        config: PermissionConfig | None = None,
        prompt: PromptCallback | None = None,
        bus: EventBus | None = None,
        session_id: str = "",
    ):
        self.registry = registry
        self.config = config or PermissionConfig()
        self.prompt = prompt
        self.bus = bus
        self.session_id = session_id

    def decide(self, tool_id: str) -> bool | None:
        """Policy-only verdict: True/False, or None when the user must be asked."""
        if self.config.danger_mode:
            return True

        tool = self.registry.get(tool_id)
        if tool is None:
            return None

        if tool.always_require_permission or tool_id in self.config.always_ask:
            return None

        if self.config.fast_edit_mode and self.registry.in_category(
            tool_id, self.config.fast_mode_category
        ):
            return True

        if not tool.requires_permission:
            return True

        return None

    async def request_permission(self, tool_id: str, args: dict[str, Any]) -> bool:
        verdict = self.decide(tool_id)
        if verdict is not None:
            logger.debug(f"[PERMISSION] {tool_id}: {'granted' if verdict else 'denied'} by policy")
            return verdict

        if self.bus is not None:
            self.bus.emit(
                EventType.PERMISSION_REQUESTED,
                self.session_id,
                {"session_id": self.session_id, "tool_id": tool_id, "args": args},
            )

        if self.prompt is None:
            logger.warning(f"[PERMISSION] No prompt configured; denying {tool_id}")
            return False

        answer = self.prompt(tool_id, args)
        if inspect.isawaitable(answer):
            answer = await answer

        logger.info(f"[PERMISSION] {tool_id}: {'granted' if answer else 'denied'} by user")
        return bool(answer)
