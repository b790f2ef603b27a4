import asyncio
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field


class EventType(str, Enum):
    CHECKPOINT_READY = "checkpoint.ready"
    ROLLBACK_COMPLETED = "rollback.completed"
    PROCESSING_COMPLETED = "processing.completed"
    TOOL_STARTED = "tool.started"
    TOOL_COMPLETED = "tool.completed"
    TOOL_ERROR = "tool.error"
    PERMISSION_REQUESTED = "permission.requested"


class RewindEvent(BaseModel):
    model_config = ConfigDict(ser_json_bytes="base64")

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    event_type: EventType
    session_id: str
    payload: Dict[str, Any]


class EventBus:
    """A lightweight, synchronous event bus for REWIND notifications.

    One bus is created by the host application and handed to every
    component that emits. Delivery is fire-and-forget: nothing in the
    core waits on, or depends on, a subscriber.
    """

    def __init__(self):
        self._subscribers: List[Callable[[RewindEvent], None]] = []

    def subscribe(self, callback: Callable[[RewindEvent], None]) -> Callable[[], None]:
        """Register a callback; returns a function that removes it again."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def channel(self, maxsize: int = 256) -> "asyncio.Queue[RewindEvent]":
        """Subscribe a bounded queue. Events that do not fit are dropped."""
        queue: asyncio.Queue[RewindEvent] = asyncio.Queue(maxsize=maxsize)

        def enqueue(event: RewindEvent) -> None:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(f"[BUS] Channel full, dropping {event.event_type.value} event")

        self.subscribe(enqueue)
        return queue

    def emit(self, event_type: EventType, session_id: str, payload: Dict[str, Any]) -> RewindEvent:
        """Construct and broadcast a RewindEvent to all subscribers."""
        event = RewindEvent(
            event_type=event_type,
            session_id=session_id,
            payload=payload,
        )

        for subscriber in list(self._subscribers):
            try:
                subscriber(event)
            except Exception as e:
                # A failing subscriber (like a bad file write) must not crash the loop
                logger.warning(f"[BUS] Subscriber failed on {event_type.value}: {e}")

        return event
