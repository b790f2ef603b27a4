"""
Session-level wrapper around the Driver.

Handles what happens around a query rather than inside it: the
already-cancelled fast exit, busy tracking, the abort acknowledgement,
token reset, and the processing.completed notification.
"""

from __future__ import annotations

from loguru import logger
from pydantic import BaseModel, Field

from rewind.driver import Driver
from rewind.event_bus import EventBus, EventType
from rewind.permissions import PermissionGate
from rewind.router import ModelCallError, ModelClient
from rewind.state import SessionState, attach_checkpoint_sync
from rewind.tools import ToolRegistry, ToolResult
from rewind.transcript import TextBlock, TranscriptInvariantError

ABORT_ACK = "Operation aborted by user"


class QueryResult(BaseModel):
    response: str | None = None
    aborted: bool = False
    done: bool = True
    error: str | None = None
    tool_results: list[ToolResult] = Field(default_factory=list)
    iterations: int = 0


class AgentRunner:

    def __init__(
        self,
        model: ModelClient,
        registry: ToolRegistry,
        gate: PermissionGate,
        bus: EventBus,
    ):
        self.model = model
        self.registry = registry
        self.gate = gate
        self.bus = bus

    async def process_query(self, query: str, session: SessionState) -> QueryResult:
        if session.cancel_token.cancelled:
            logger.info(f"[RUNNER] Session {session.session_id} already cancelled; not starting")
            session.reset_cancellation()
            session.skip_abort_ack = False
            return QueryResult(aborted=True)

        async with session.processing():
            result = await self._run(query, session)

        self.bus.emit(
            EventType.PROCESSING_COMPLETED,
            session.session_id,
            {"session_id": session.session_id, "response": result.response},
        )
        return result

    async def _run(self, query: str, session: SessionState) -> QueryResult:
        attach_checkpoint_sync(session, self.bus)
        driver = Driver(session, self.model, self.registry, self.gate)

        try:
            outcome = await driver.run(query)
        except Exception as e:
            if isinstance(e, (ModelCallError, TranscriptInvariantError)):
                logger.error(f"[RUNNER] Query failed: {e}")
            else:
                logger.exception(f"[RUNNER] Unexpected failure: {e}")
            return QueryResult(
                error=str(e),
                tool_results=list(driver.tool_results),
                iterations=driver.iterations,
            )

        response = outcome.response
        if outcome.aborted:
            response = self._acknowledge_abort(session)
            session.reset_cancellation()
            session.skip_abort_ack = False

        return QueryResult(
            response=response,
            aborted=outcome.aborted,
            tool_results=outcome.tool_results,
            iterations=outcome.iterations,
        )

    def _acknowledge_abort(self, session: SessionState) -> str | None:
        if session.skip_abort_ack:
            return None
        last = session.transcript.peek_last()
        if last is not None and last.role == "assistant" and last.tool_use is None:
            return last.text or None
        session.transcript.append_assistant([TextBlock(text=ABORT_ACK)])
        return ABORT_ACK
