"""
REWIND Transcript: the conversation the model sees.

An ordered sequence of wrapped messages. Each message remembers the
checkpoint that was current when it was recorded, which is what makes
rollback possible: pick a message, restore its checkpoint, trim.

Pairing invariant: a message carrying a tool_use block must be followed
immediately by a message whose only block is the matching tool_result.
The last message is exempt while the loop is still in flight.
"""

from __future__ import annotations

import json
import os
import uuid
from datetime import datetime, timezone
from typing import Annotated, Any, Iterable, Literal, Union

from pydantic import BaseModel, Field


class TranscriptInvariantError(Exception):
    """Raised when an append would break tool_use/tool_result pairing."""
    pass


# ---------------------------------------------------------------------------
# Content blocks (closed union)
# ---------------------------------------------------------------------------

class TextBlock(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ToolUseBlock(BaseModel):
    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


class ToolResultBlock(BaseModel):
    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: str


ContentBlock = Annotated[
    Union[TextBlock, ToolUseBlock, ToolResultBlock],
    Field(discriminator="type"),
]


def encode_tool_outcome(result: Any) -> str:
    """JSON-stringify a tool outcome the way the wire format expects."""
    return json.dumps(result, separators=(",", ":"), default=str)


# ---------------------------------------------------------------------------
# Message
# ---------------------------------------------------------------------------

class Message(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    role: Literal["user", "assistant"]
    content: list[ContentBlock]
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    checkpoint_id: str | None = None

    @property
    def tool_use(self) -> ToolUseBlock | None:
        for block in self.content:
            if isinstance(block, ToolUseBlock):
                return block
        return None

    @property
    def tool_result(self) -> ToolResultBlock | None:
        """The result block, but only when it is the message's sole content."""
        if len(self.content) == 1 and isinstance(self.content[0], ToolResultBlock):
            return self.content[0]
        return None

    @property
    def text(self) -> str:
        return "".join(b.text for b in self.content if isinstance(b, TextBlock))

    def to_wire(self) -> dict[str, Any]:
        return {
            "role": self.role,
            "content": [block.model_dump() for block in self.content],
        }


# ---------------------------------------------------------------------------
# Transcript
# ---------------------------------------------------------------------------

def _validation_default() -> bool:
    return os.environ.get("REWIND_ENV", "development") != "production"


class Transcript:
    """
    Owned by exactly one session. Mutated only through the append_*
    helpers and rollback_to; there is no index assignment.
    """

    def __init__(
        self,
        messages: Iterable[Message] | None = None,
        validate: bool | None = None,
    ):
        self._messages: list[Message] = list(messages or [])
        self._last_checkpoint_id: str | None = None
        self.validate = _validation_default() if validate is None else validate
        if self._messages:
            self._last_checkpoint_id = self._messages[-1].checkpoint_id
            if self.validate:
                check_pairing(self._messages)

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    @property
    def last_checkpoint_id(self) -> str | None:
        return self._last_checkpoint_id

    def set_last_checkpoint_id(self, checkpoint_id: str | None) -> None:
        """Every message appended from now on records this checkpoint."""
        self._last_checkpoint_id = checkpoint_id

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self):
        return iter(self._messages)

    def peek_last(self) -> Message | None:
        return self._messages[-1] if self._messages else None

    def find(self, message_id: str) -> Message | None:
        for message in self._messages:
            if message.id == message_id:
                return message
        return None

    def to_wire(self) -> list[dict[str, Any]]:
        return [m.to_wire() for m in self._messages]

    def awaiting_result_for(self, invocation_id: str) -> bool:
        """True when the last message is the still-unpaired request for this id."""
        last = self.peek_last()
        if last is None or last.tool_use is None:
            return False
        return last.tool_use.id == invocation_id

    def has_result_for(self, invocation_id: str) -> bool:
        last = self.peek_last()
        if last is None or last.tool_result is None:
            return False
        return last.tool_result.tool_use_id == invocation_id

    # ------------------------------------------------------------------
    # Appends
    # ------------------------------------------------------------------

    def append_user(self, text: str) -> Message:
        return self._append("user", [TextBlock(text=text)])

    def append_assistant(self, blocks: list[TextBlock | ToolUseBlock | ToolResultBlock]) -> Message:
        return self._append("assistant", list(blocks))

    def append_tool_request(self, invocation_id: str, name: str, args: dict[str, Any]) -> Message:
        return self._append(
            "assistant",
            [ToolUseBlock(id=invocation_id, name=name, input=dict(args))],
        )

    def append_tool_result(self, invocation_id: str, result: Any) -> Message:
        return self._append(
            "user",
            [ToolResultBlock(tool_use_id=invocation_id, content=encode_tool_outcome(result))],
        )

    def _append(self, role: str, blocks: list) -> Message:
        message = Message(role=role, content=blocks, checkpoint_id=self._last_checkpoint_id)
        if self.validate:
            # Checked before mutation so a violation leaves the transcript untouched
            check_pairing(self._messages + [message])
        self._messages.append(message)
        return message

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    def rollback_to(self, message_id: str) -> int:
        """
        Remove every message from the start up to and including message_id.

        Returns the number removed, or 0 when the id is unknown. The current
        checkpoint becomes whatever the new last message recorded.
        """
        index = next(
            (i for i, m in enumerate(self._messages) if m.id == message_id),
            -1,
        )
        if index == -1:
            return 0

        removed = self._messages[: index + 1]
        self._messages = self._messages[index + 1 :]

        latest = self.peek_last()
        self._last_checkpoint_id = latest.checkpoint_id if latest else None
        return len(removed)


def check_pairing(messages: list[Message]) -> None:
    """Fail fast on any tool_use not immediately answered by its tool_result."""
    for i, message in enumerate(messages):
        request = message.tool_use
        if request is None:
            continue

        if i + 1 == len(messages):
            # Still in flight
            continue

        result = messages[i + 1].tool_result
        if result is None or result.tool_use_id != request.id:
            raise TranscriptInvariantError(
                f"tool_use at index {i} (id={request.id}) must be immediately "
                f"followed by its matching tool_result"
            )
