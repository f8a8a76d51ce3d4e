"""Cooperative cancellation of edit sessions.

Write path: a cancel request moves a pending session to ``cancelling`` (its
handler will close it without running the agent), or raises the durable
``cancel_requested`` flag of a running session.

Read path: the agent loop polls ``predicate_for(session_id)`` at its
checkpoints and raises CancellationSignal once it reports True. Chunks written
before that moment stay in the log; only the terminal outcome changes.
"""

from collections.abc import Awaitable, Callable

import structlog

from clock import Clock
from errors import AuthorizationError, ConflictError, NotFoundError
from models.database import EditorStore
from models.schemas import SessionStatus
from session_state import is_terminal

logger = structlog.get_logger(__name__)


class CancellationCoordinator:
    """Records cancellation requests and answers "was I cancelled?"."""

    def __init__(self, store: EditorStore, clock: Clock) -> None:
        self.store = store
        self.clock = clock

    async def request_cancel(self, session_id: str, user_id: str) -> SessionStatus:
        """Cancel a session on behalf of its conversation's owner.

        Returns:
            The session status after the request (``cancelling`` for a pending
            session, ``running`` for a running one whose flag is now set).

        Raises:
            NotFoundError: Unknown session.
            AuthorizationError: The caller does not own the conversation.
            ConflictError: The session already finished.
        """
        session = await self.store.get_session(session_id)
        if session is None:
            raise NotFoundError("Session not found.")

        conversation = await self.store.get_conversation(session.conversation_id)
        if conversation is None or conversation.user_id != user_id:
            logger.warning(
                "cancel_session_not_authorized",
                session_id=session_id,
                user_id=user_id,
            )
            raise AuthorizationError("Not authorized to cancel this session.")

        return await self.cancel(session_id)

    async def cancel(self, session_id: str) -> SessionStatus:
        """Cancel without an ownership check (maintenance paths).

        Raises:
            NotFoundError: Unknown session.
            ConflictError: The session already finished.
        """
        # The handler may move pending -> running between our read and write;
        # the conditional updates tell us, and the second pass sees the new state.
        for _ in range(3):
            session = await self.store.get_session(session_id)
            if session is None:
                raise NotFoundError("Session not found.")

            status = session.status
            if is_terminal(status):
                raise ConflictError(f"Session is already {status.value}.")

            if status == SessionStatus.CANCELLING:
                return status

            if status == SessionStatus.PENDING:
                if await self.store.transition_session(
                    session_id,
                    SessionStatus.PENDING,
                    SessionStatus.CANCELLING,
                    self.clock.now(),
                ):
                    logger.info("edit_session_cancel_requested", session_id=session_id, status="cancelling")
                    return SessionStatus.CANCELLING
                continue

            if await self.store.set_cancel_requested(session_id, self.clock.now()):
                logger.info("edit_session_cancel_requested", session_id=session_id, status="running")
                return SessionStatus.RUNNING

        session = await self.store.get_session(session_id)
        assert session is not None
        if is_terminal(session.status):
            raise ConflictError(f"Session is already {session.status.value}.")
        return session.status

    def predicate_for(self, session_id: str) -> Callable[[], Awaitable[bool]]:
        """Build the ``is_cancelled()`` check handed to the agent loop."""

        async def is_cancelled() -> bool:
            return await self.store.is_cancel_requested(session_id)

        return is_cancelled
