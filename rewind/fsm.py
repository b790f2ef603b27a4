"""
Finite-state machine for one pass of the agent loop.

Pure reducer, no side effects. The Driver performs the work and feeds
events in; this module only decides where that leaves us.
"""

from __future__ import annotations

from enum import Enum


class AgentState(str, Enum):
    IDLE = "idle"
    WAITING_FOR_MODEL = "waiting_for_model"
    WAITING_FOR_TOOL_RESULT = "waiting_for_tool_result"
    WAITING_FOR_MODEL_FINAL = "waiting_for_model_final"
    COMPLETE = "complete"
    ABORTED = "aborted"


class AgentEvent(str, Enum):
    USER_MESSAGE = "user_message"
    MODEL_TOOL_CALL = "model_tool_call"
    MODEL_FINAL = "model_final"
    TOOL_FINISHED = "tool_finished"
    ABORT_REQUESTED = "abort_requested"


class InvalidTransitionError(Exception):
    pass


TERMINAL_STATES = frozenset({AgentState.COMPLETE, AgentState.ABORTED})

_TRANSITIONS: dict[tuple[AgentState, AgentEvent], AgentState] = {
    (AgentState.IDLE, AgentEvent.USER_MESSAGE): AgentState.WAITING_FOR_MODEL,
    (AgentState.WAITING_FOR_MODEL, AgentEvent.MODEL_TOOL_CALL): AgentState.WAITING_FOR_TOOL_RESULT,
    (AgentState.WAITING_FOR_MODEL, AgentEvent.MODEL_FINAL): AgentState.COMPLETE,
    (AgentState.WAITING_FOR_TOOL_RESULT, AgentEvent.TOOL_FINISHED): AgentState.WAITING_FOR_MODEL_FINAL,
    # Tool chaining loops back
    (AgentState.WAITING_FOR_MODEL_FINAL, AgentEvent.MODEL_TOOL_CALL): AgentState.WAITING_FOR_TOOL_RESULT,
    (AgentState.WAITING_FOR_MODEL_FINAL, AgentEvent.MODEL_FINAL): AgentState.COMPLETE,
}


def is_terminal(state: AgentState) -> bool:
    return state in TERMINAL_STATES


def transition(state: AgentState, event: AgentEvent) -> AgentState:
    """Return the state reached from `state` on `event`.

    Terminal states absorb every event. ABORT_REQUESTED is accepted from
    any non-terminal state.
    """
    if is_terminal(state):
        return state

    target = _TRANSITIONS.get((state, event))
    if target is not None:
        return target

    if event is AgentEvent.ABORT_REQUESTED:
        return AgentState.ABORTED

    raise InvalidTransitionError(f"Invalid transition: {state.value} + {event.value}")
