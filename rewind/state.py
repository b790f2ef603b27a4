from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, TypeVar

from loguru import logger
from pydantic import BaseModel, Field

from rewind.event_bus import EventBus, EventType, RewindEvent
from rewind.transcript import Transcript

if TYPE_CHECKING:
    from rewind.environment import Environment

T = TypeVar("T")


class OperationAborted(Exception):
    """A cancellation token fired while a suspending call was in flight."""
    pass


class CancelToken:
    """
    Cooperative, one-shot cancellation signal for a single session.

    The flag is plain state; the asyncio.Event used for waiting is created
    in whichever loop is running, so a session can outlive an event loop
    (one `asyncio.run` per query) without tripping "bound to a different
    event loop".
    """

    def __init__(self):
        self._cancelled = False
        self._event: asyncio.Event | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True
        if self._event is not None:
            self._event.set()

    async def wait(self) -> None:
        loop = asyncio.get_running_loop()
        if self._event is None or self._loop is not loop:
            self._event = asyncio.Event()
            self._loop = loop
            if self._cancelled:
                self._event.set()
        await self._event.wait()


async def run_cancellable(awaitable: Awaitable[T], token: CancelToken) -> T:
    """
    Await `awaitable`, but give up as soon as `token` fires.

    The losing side of the race is cancelled. Raises OperationAborted when
    the token wins, so a collaborator that ignores cancellation can never
    hold the loop hostage.
    """
    if token.cancelled:
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise OperationAborted()

    work = asyncio.ensure_future(awaitable)
    watcher = asyncio.ensure_future(token.wait())
    try:
        done, _ = await asyncio.wait({work, watcher}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        work.cancel()
        raise
    finally:
        watcher.cancel()

    if work in done:
        return work.result()

    work.cancel()
    try:
        await work
    except asyncio.CancelledError:
        pass
    except Exception as e:
        logger.debug(f"[CANCEL] Abandoned call raised while unwinding: {e}")

    if not token.cancelled:
        # The watcher ended on its own; that is a failure, not a cancel
        error = watcher.exception()
        if error is not None:
            raise error
        raise RuntimeError("Cancellation watcher stopped without a cancel")
    raise OperationAborted()


class LastToolError(BaseModel):
    tool_id: str
    error: str
    args: dict[str, Any] = Field(default_factory=dict)


@dataclass
class SessionState:
    """
    Everything one conversation owns: transcript, cancellation token,
    the last tool failure, and the environment it acts on.

    The caller owns this object; a Driver never outlives it.
    """

    session_id: str
    environment: "Environment"
    transcript: Transcript = field(default_factory=Transcript)
    cancel_token: CancelToken = field(default_factory=CancelToken)
    last_tool_error: LastToolError | None = None
    # One-shot: suppress the generic "aborted" acknowledgement on the next abort
    skip_abort_ack: bool = False
    # Created per query, inside the loop running it; None until the first query
    _idle: asyncio.Event | None = field(default=None, init=False, repr=False)
    _checkpoint_sync: Callable[[], None] | None = field(default=None, init=False, repr=False)

    @property
    def busy(self) -> bool:
        return self._idle is not None and not self._idle.is_set()

    def cancel(self) -> None:
        self.cancel_token.cancel()

    def reset_cancellation(self) -> None:
        """Swap in a fresh token so the session can take new queries."""
        self.cancel_token = CancelToken()

    @asynccontextmanager
    async def processing(self):
        """Mark the session busy for the duration of one query."""
        if self.busy:
            raise RuntimeError(f"Session {self.session_id} is already processing a query")
        self._idle = asyncio.Event()
        try:
            yield self
        finally:
            self._idle.set()

    async def wait_idle(self) -> None:
        if self._idle is not None:
            await self._idle.wait()


def attach_checkpoint_sync(session: SessionState, bus: EventBus) -> None:
    """
    Keep the transcript's current checkpoint in step with checkpoint.ready
    notifications for this session. Safe to call repeatedly.
    """
    if session._checkpoint_sync is not None:
        return

    def on_event(event: RewindEvent) -> None:
        if event.event_type is not EventType.CHECKPOINT_READY:
            return
        if event.session_id != session.session_id:
            return
        session.transcript.set_last_checkpoint_id(event.payload["checkpoint_id"])

    session._checkpoint_sync = bus.subscribe(on_event)


def detach_checkpoint_sync(session: SessionState) -> None:
    if session._checkpoint_sync is not None:
        session._checkpoint_sync()
        session._checkpoint_sync = None
