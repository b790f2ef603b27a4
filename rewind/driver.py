"""
REWIND Driver: The Loop

Sequences model calls and tool calls for one user query until the model
gives a final answer or the session's cancel token fires. It is NOT smart.
The state machine in fsm.py decides where each event leads; the Driver
only performs the work for the current state and feeds the outcome back.

Per iteration:
  - check cancellation first (repairing an unpaired tool request)
  - WAITING_FOR_MODEL / WAITING_FOR_MODEL_FINAL -> ask the model
  - WAITING_FOR_TOOL_RESULT -> permission, then the tool (checkpointing
    happens inside the environment facade), then record the result

Both suspending calls race the cancel token and are re-checked when they
return, so an abort is never missed between the two.
"""

from __future__ import annotations

from loguru import logger
from pydantic import BaseModel, Field

from rewind.fsm import AgentEvent, AgentState, is_terminal, transition
from rewind.permissions import PermissionGate
from rewind.router import ModelClient, ToolCall
from rewind.state import LastToolError, OperationAborted, SessionState, run_cancellable
from rewind.tools import ToolContext, ToolRegistry, ToolResult

ABORTED_RESULT = {"aborted": True}


class DriverResult(BaseModel):
    response: str | None = None
    state: AgentState
    aborted: bool = False
    iterations: int = 0
    tool_results: list[ToolResult] = Field(default_factory=list)


class Driver:
    """Runs one query for one session. Not re-entrant; build a new Driver per query."""

    def __init__(
        self,
        session: SessionState,
        model: ModelClient,
        registry: ToolRegistry,
        gate: PermissionGate,
    ):
        self.session = session
        self.model = model
        self.registry = registry
        self.gate = gate

        self.state = AgentState.IDLE
        self.states: list[AgentState] = [AgentState.IDLE]
        self.iterations = 0
        self.response: str | None = None
        self.tool_results: list[ToolResult] = []
        self._pending: ToolCall | None = None

    def _dispatch(self, event: AgentEvent) -> None:
        new_state = transition(self.state, event)
        logger.debug(f"[DRIVER] {self.state.value} --{event.value}--> {new_state.value}")
        self.state = new_state
        self.states.append(new_state)

    async def run(self, query: str) -> DriverResult:
        if self.state is not AgentState.IDLE:
            raise RuntimeError("Driver has already run; create a new one per query")

        transcript = self.session.transcript
        last = transcript.peek_last()
        already_sent = (
            last is not None
            and last.role == "user"
            and last.tool_result is None
            and last.text == query
        )
        if not already_sent:
            transcript.append_user(query)
        self._dispatch(AgentEvent.USER_MESSAGE)

        while not is_terminal(self.state):
            self.iterations += 1

            if self.session.cancel_token.cancelled:
                self._abort()
                break

            if self.state is AgentState.WAITING_FOR_TOOL_RESULT:
                await self._run_tool()
            else:
                await self._ask_model(query)

        logger.info(
            f"[DRIVER] Session {self.session.session_id} finished in state "
            f"{self.state.value} after {self.iterations} iterations"
        )
        return DriverResult(
            response=self.response,
            state=self.state,
            aborted=self.state is AgentState.ABORTED,
            iterations=self.iterations,
            tool_results=list(self.tool_results),
        )

    # ------------------------------------------------------------------
    # State actions
    # ------------------------------------------------------------------

    async def _ask_model(self, query: str) -> None:
        token = self.session.cancel_token
        transcript = self.session.transcript

        try:
            decision = await run_cancellable(
                self.model.next_action(query, transcript, self.registry.descriptions()),
                token,
            )
        except OperationAborted:
            self._abort()
            return
        if token.cancelled:
            self._abort()
            return

        call = decision.tool_call
        if call is not None:
            if decision.blocks:
                logger.debug(f"[DRIVER] Dropping text that accompanied tool call {call.invocation_id}")
            transcript.append_tool_request(call.invocation_id, call.tool_id, call.args)
            self._pending = call
            self._dispatch(AgentEvent.MODEL_TOOL_CALL)
            return

        if decision.blocks:
            message = transcript.append_assistant(decision.blocks)
            self.response = message.text
        self._dispatch(AgentEvent.MODEL_FINAL)

    async def _run_tool(self) -> None:
        call = self._pending
        if call is None:
            raise RuntimeError("No tool call pending while waiting for a tool result")

        token = self.session.cancel_token
        transcript = self.session.transcript

        try:
            granted = await run_cancellable(
                self.gate.request_permission(call.tool_id, call.args), token
            )
            if token.cancelled:
                self._abort()
                return
            if granted:
                result = await self._execute(call)
            else:
                logger.info(f"[DRIVER] Permission denied for {call.tool_id}")
                result = ToolResult(ok=False, error=f"Permission denied for tool: {call.tool_id}")
        except OperationAborted:
            self._abort()
            return
        if token.cancelled:
            self._abort()
            return

        if transcript.awaiting_result_for(call.invocation_id):
            transcript.append_tool_result(call.invocation_id, result.model_dump(mode="json"))
        else:
            logger.warning(
                f"[DRIVER] Request {call.invocation_id} is no longer open; result not recorded"
            )

        self.tool_results.append(result)
        if result.ok:
            self.session.last_tool_error = None
        else:
            self.session.last_tool_error = LastToolError(
                tool_id=call.tool_id, error=result.error or "", args=call.args
            )

        self._pending = None
        self._dispatch(AgentEvent.TOOL_FINISHED)

    async def _execute(self, call: ToolCall) -> ToolResult:
        """Run the tool; failures become results the model gets to see."""
        ctx = ToolContext(
            invocation_id=call.invocation_id,
            environment=self.session.environment,
            session_id=self.session.session_id,
        )
        try:
            return await run_cancellable(self.registry.execute(call, ctx), self.session.cancel_token)
        except OperationAborted:
            raise
        except Exception as e:
            return ToolResult(ok=False, error=f"{type(e).__name__}: {e}")

    def _abort(self) -> None:
        transcript = self.session.transcript
        last = transcript.peek_last()
        if last is not None and last.tool_use is not None:
            transcript.append_tool_result(last.tool_use.id, ABORTED_RESULT)
            logger.info(f"[DRIVER] Recorded aborted result for {last.tool_use.id}")
        self._pending = None
        self._dispatch(AgentEvent.ABORT_REQUESTED)
