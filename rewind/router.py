"""
REWIND Router: Vendor-Agnostic Model Abstraction

Turns the transcript into a chat request through LiteLLM and turns the
reply into the Driver's next action: either one tool call or a final
answer. Transient upstream failures are retried with backoff.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from typing import Any, Protocol

import litellm
from loguru import logger
from pydantic import BaseModel, Field
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from rewind.config_loader import ModelConfig
from rewind.transcript import TextBlock, Transcript


SYSTEM_PROMPT = """You are a coding agent working inside a user's repository.

Use the provided tools to inspect and change files or run commands. Call one
tool at a time and wait for its result before deciding what to do next.
Every change you make is checkpointed, so the user can roll back any step.
When the task is done, reply with a short summary and no tool call."""


class ModelCallError(Exception):
    pass


# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------

class ToolCall(BaseModel):
    tool_id: str
    invocation_id: str
    args: dict[str, Any] = Field(default_factory=dict)


class ModelDecision(BaseModel):
    tool_call: ToolCall | None = None
    blocks: list[TextBlock] = Field(default_factory=list)
    model: str = ""
    tokens_used: int = 0


class ModelClient(Protocol):
    async def next_action(
        self,
        query: str,
        transcript: Transcript,
        tools: list[dict[str, Any]],
    ) -> ModelDecision: ...


# ---------------------------------------------------------------------------
# Usage Tracking
# ---------------------------------------------------------------------------

@dataclass
class UsageRecord:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    estimated_cost: float = 0.0
    call_count: int = 0

    def record(self, response: Any) -> None:
        usage = getattr(response, "usage", None)
        if usage:
            self.prompt_tokens += getattr(usage, "prompt_tokens", 0) or 0
            self.completion_tokens += getattr(usage, "completion_tokens", 0) or 0
            self.total_tokens += getattr(usage, "total_tokens", 0) or 0

        try:
            self.estimated_cost += litellm.completion_cost(completion_response=response)
        except Exception as e:
            logger.debug(f"[ROUTER] Cost unavailable: {e}")

        self.call_count += 1


# ---------------------------------------------------------------------------
# Wire translation
# ---------------------------------------------------------------------------

def _is_gpt5_model(model: str) -> bool:
    normalized = model.lower().replace("openai/", "")
    return normalized.startswith("gpt-5")


def _is_o_series_model(model: str) -> bool:
    normalized = model.lower().replace("openai/", "")
    return normalized.startswith("o1") or normalized.startswith("o3") or normalized.startswith("o4")


def to_chat_messages(transcript: Transcript, system_prompt: str = SYSTEM_PROMPT) -> list[dict[str, Any]]:
    """Translate transcript messages into the OpenAI-style chat format LiteLLM speaks."""
    messages: list[dict[str, Any]] = [{"role": "system", "content": system_prompt}]
    open_call: str | None = None

    for message in transcript:
        result = message.tool_result
        if result is not None:
            if result.tool_use_id == open_call:
                messages.append({
                    "role": "tool",
                    "tool_call_id": result.tool_use_id,
                    "content": result.content,
                })
            else:
                # Request was trimmed by a rollback; providers reject a bare tool message
                messages.append({"role": "user", "content": f"[earlier tool result] {result.content}"})
            open_call = None
            continue
        open_call = None

        if message.role == "user":
            messages.append({"role": "user", "content": message.text})
            continue

        entry: dict[str, Any] = {"role": "assistant", "content": message.text or None}
        request = message.tool_use
        if request is not None:
            entry["tool_calls"] = [{
                "id": request.id,
                "type": "function",
                "function": {"name": request.name, "arguments": json.dumps(request.input)},
            }]
            open_call = request.id
        messages.append(entry)

    return messages


def _build_kwargs(
    config: ModelConfig,
    messages: list[dict[str, Any]],
    tools: list[dict[str, Any]],
) -> dict[str, Any]:
    kwargs: dict[str, Any] = {
        "model": config.name,
        "messages": messages,
        "max_tokens": config.max_tokens,
    }
    if not _is_gpt5_model(config.name) and not _is_o_series_model(config.name):
        kwargs["temperature"] = config.temperature
    if tools:
        kwargs["tools"] = tools
    return kwargs


def _parse_decision(response: Any, model: str) -> ModelDecision:
    message = response.choices[0].message
    blocks = [TextBlock(text=message.content)] if message.content else []

    tool_call = None
    tool_calls = getattr(message, "tool_calls", None) or []
    if tool_calls:
        if len(tool_calls) > 1:
            logger.warning(f"[ROUTER] Model requested {len(tool_calls)} tools; running only the first")
        first = tool_calls[0]
        try:
            args = json.loads(first.function.arguments or "{}")
        except json.JSONDecodeError:
            logger.warning(f"[ROUTER] Invalid JSON arguments for {first.function.name}")
            args = {}
        tool_call = ToolCall(tool_id=first.function.name, invocation_id=first.id, args=args)

    usage = getattr(response, "usage", None)
    return ModelDecision(
        tool_call=tool_call,
        blocks=blocks,
        model=model,
        tokens_used=getattr(usage, "total_tokens", 0) or 0,
    )


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------

class Router:
    """
    LiteLLM-backed ModelClient.

    Retries only the upstream errors listed in `retryable_errors`; anything
    else, or exhaustion, surfaces as ModelCallError.
    """

    retryable_errors: tuple[type[Exception], ...] = (
        litellm.RateLimitError,
        litellm.APIConnectionError,
        litellm.Timeout,
        litellm.ServiceUnavailableError,
        litellm.InternalServerError,
    )

    def __init__(self, config: ModelConfig, system_prompt: str = SYSTEM_PROMPT):
        self.config = config
        self.system_prompt = system_prompt
        self.usage = UsageRecord()
        litellm.suppress_debug_info = True

    async def next_action(
        self,
        query: str,
        transcript: Transcript,
        tools: list[dict[str, Any]],
    ) -> ModelDecision:
        messages = to_chat_messages(transcript, self.system_prompt)
        kwargs = _build_kwargs(self.config, messages, tools)
        start = time.monotonic()

        logger.debug(f"[ROUTER] → {self.config.name} ({len(messages)} messages)")

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.config.max_attempts),
                wait=wait_exponential(min=self.config.backoff_min, max=self.config.backoff_max),
                retry=retry_if_exception_type(self.retryable_errors),
                reraise=True,
            ):
                with attempt:
                    response = await litellm.acompletion(**kwargs)
        except Exception as e:
            raise ModelCallError(f"Model call to {self.config.name} failed: {e}") from e

        self.usage.record(response)
        elapsed_ms = int((time.monotonic() - start) * 1000)
        logger.debug(
            f"[ROUTER] complete, {self.usage.total_tokens} tokens, "
            f"${self.usage.estimated_cost:.4f}, {elapsed_ms}ms"
        )
        return _parse_decision(response, self.config.name)
