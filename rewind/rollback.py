"""
REWIND Rollback Coordinator

Undo back to a chosen message: stop whatever the session is doing,
restore the environment to the checkpoint that message recorded, trim
the transcript, and announce the result.
"""

from __future__ import annotations

from loguru import logger

from rewind.checkpoints import CheckpointError
from rewind.checkpoints.environment import CheckpointingEnvironment
from rewind.event_bus import EventBus, EventType
from rewind.state import SessionState


class RollbackCoordinator:

    def __init__(self, bus: EventBus):
        self.bus = bus

    async def rollback(self, session: SessionState, message_id: str) -> str | None:
        """
        Roll the session back to `message_id`.

        Returns the environment commit that was restored, or None when the
        target predates every checkpoint and only the transcript was trimmed.
        Raises KeyError for an unknown message id.
        """
        target = session.transcript.find(message_id)
        if target is None:
            raise KeyError(f"No message with id {message_id} in session {session.session_id}")

        # The coordinator reports its own outcome, so no generic "aborted" reply
        session.skip_abort_ack = True
        session.cancel()
        await session.wait_idle()

        if session.cancel_token.cancelled:
            # Nothing was running to consume the signal
            session.reset_cancellation()
        session.skip_abort_ack = False

        commit_id = None
        if target.checkpoint_id is not None:
            environment = session.environment
            if not isinstance(environment, CheckpointingEnvironment):
                raise CheckpointError(
                    f"Message {message_id} has checkpoint {target.checkpoint_id} "
                    "but the session environment cannot restore checkpoints"
                )
            commit_id = await environment.restore(target.checkpoint_id)
        else:
            logger.info(f"[ROLLBACK] {message_id} predates any checkpoint; trimming transcript only")

        removed = session.transcript.rollback_to(message_id)
        logger.info(
            f"[ROLLBACK] Session {session.session_id}: removed {removed} messages, "
            f"environment at {commit_id or 'unchanged'}"
        )

        self.bus.emit(
            EventType.ROLLBACK_COMPLETED,
            session.session_id,
            {"session_id": session.session_id, "commit_id": commit_id},
        )
        return commit_id
