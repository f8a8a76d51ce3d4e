"""Heartbeats, stale-conversation reaping and stuck-session recovery.

The owning client sends a heartbeat roughly every 10 seconds while a
conversation is open. A periodic sweep releases conversations whose client has
gone quiet, giving their workspaces back, and closes sessions that have been
running or cancelling for far too long (their worker is presumed dead).

Usage:
    >>> reaper = StaleSessionReaper(store, chunk_log, cancellation, clock)
    >>> released = await reaper.release_stale_conversations(timeout_minutes=5)
    >>> recovered = await reaper.recover_stuck_sessions()
    >>> task = reaper.start_reaper_loop(interval_seconds=60)
"""

import asyncio
from dataclasses import dataclass, field
from datetime import timedelta

import structlog

from cancellation import CancellationCoordinator
from chunk_log import ChunkLog
from clock import Clock
from config import settings
from errors import AuthorizationError, ConflictError, NotFoundError
from models.database import EditorStore
from models.schemas import ConversationStatus, SessionStatus, WorkspaceStatus

logger = structlog.get_logger(__name__)

STUCK_RUNNING_MESSAGE = "Session timed out."
STUCK_CANCELLING_MESSAGE = "Cancelled by user."


class HeartbeatService:
    """Records client presence on a conversation."""

    def __init__(self, store: EditorStore, clock: Clock) -> None:
        self.store = store
        self.clock = clock

    async def beat(self, conversation_id: str, user_id: str) -> None:
        """Bump ``last_activity_at`` of an ongoing conversation.

        Raises:
            NotFoundError: Unknown conversation.
            AuthorizationError: The caller does not own it.
            ConflictError: The conversation is no longer ongoing.
        """
        conversation = await self.store.get_conversation(conversation_id)
        if conversation is None:
            raise NotFoundError("Conversation not found.")
        if conversation.user_id != user_id:
            raise AuthorizationError("Not authorized.")
        if conversation.status != ConversationStatus.ONGOING:
            raise ConflictError("Conversation is not ongoing.")

        await self.store.touch_conversation(conversation_id, self.clock.now())


@dataclass
class SweepResult:
    """Outcome of one reaper sweep."""

    released_workspace_ids: list[str] = field(default_factory=list)
    recovered_sessions: int = 0


class StaleSessionReaper:
    """Releases abandoned conversations and closes stuck sessions.

    Attributes:
        store: Datastore of record.
        chunk_log: Used to write the Done chunk of recovered sessions.
        cancellation: Used to stop pending sessions of released conversations.
        clock: Time source; all cutoffs are computed from ``clock.now()``.
    """

    def __init__(
        self,
        store: EditorStore,
        chunk_log: ChunkLog,
        cancellation: CancellationCoordinator,
        clock: Clock,
    ) -> None:
        self.store = store
        self.chunk_log = chunk_log
        self.cancellation = cancellation
        self.clock = clock

    async def release_stale_conversations(
        self,
        timeout_minutes: int | None = None,
    ) -> list[str]:
        """Finish conversations without recent activity and free their workspaces.

        A conversation is stale when its last heartbeat, or its creation time
        if it never sent one, is older than ``now - timeout``. Conversations
        with a running session are left alone.

        Args:
            timeout_minutes: Silence tolerated before release (defaults to config).

        Returns:
            Ids of the released workspaces, each listed once.
        """
        if timeout_minutes is None:
            timeout_minutes = settings.stale_conversation_timeout_minutes
        cutoff = self.clock.now() - timedelta(minutes=timeout_minutes)

        stale = await self.store.find_stale_conversations(cutoff)
        released: list[str] = []

        for conversation in stale:
            if not await self.store.finish_conversation(conversation.id):
                # Finished concurrently (user clicked "finish")
                continue

            await self.store.set_workspace_status(
                conversation.workspace_id,
                WorkspaceStatus.AVAILABLE_FOR_CONVERSATION,
            )
            await self._cancel_pending_sessions(conversation.id)

            if conversation.workspace_id not in released:
                released.append(conversation.workspace_id)

            logger.info(
                "stale_conversation_released",
                conversation_id=conversation.id,
                workspace_id=conversation.workspace_id,
                last_activity_at=(
                    conversation.last_activity_at.isoformat()
                    if conversation.last_activity_at
                    else None
                ),
            )

        return released

    async def _cancel_pending_sessions(self, conversation_id: str) -> None:
        sessions = await self.store.list_sessions(conversation_id)
        for session in sessions:
            if session.status != SessionStatus.PENDING:
                continue
            try:
                await self.cancellation.cancel(session.id)
            except (ConflictError, NotFoundError, AuthorizationError) as e:
                logger.warning(
                    "stale_conversation_cancel_failed",
                    session_id=session.id,
                    error=e.message,
                )

    async def recover_stuck_sessions(
        self,
        running_timeout_minutes: int | None = None,
        cancelling_timeout_minutes: int | None = None,
    ) -> int:
        """Close sessions stuck in ``running`` or ``cancelling``.

        Age is measured from the session's creation time.

        Returns:
            Number of sessions moved to a terminal status.
        """
        if running_timeout_minutes is None:
            running_timeout_minutes = settings.stuck_running_timeout_minutes
        if cancelling_timeout_minutes is None:
            cancelling_timeout_minutes = settings.stuck_cancelling_timeout_minutes

        now = self.clock.now()
        recovered = 0

        running = await self.store.list_sessions_by_status(
            SessionStatus.RUNNING,
            created_before=now - timedelta(minutes=running_timeout_minutes),
        )
        for session in running:
            done = await self.chunk_log.append_done(
                session.id,
                expected=SessionStatus.RUNNING,
                target=SessionStatus.FAILED,
                success=False,
                error_message=STUCK_RUNNING_MESSAGE,
            )
            if done is not None:
                recovered += 1
                logger.warning("stuck_session_failed", session_id=session.id)

        cancelling = await self.store.list_sessions_by_status(
            SessionStatus.CANCELLING,
            created_before=now - timedelta(minutes=cancelling_timeout_minutes),
        )
        for session in cancelling:
            done = await self.chunk_log.append_done(
                session.id,
                expected=SessionStatus.CANCELLING,
                target=SessionStatus.CANCELLED,
                success=False,
                error_message=STUCK_CANCELLING_MESSAGE,
            )
            if done is not None:
                recovered += 1
                logger.warning("stuck_session_cancelled", session_id=session.id)

        return recovered

    async def sweep(self) -> SweepResult:
        """Run both passes once."""
        released = await self.release_stale_conversations()
        recovered = await self.recover_stuck_sessions()
        if released or recovered:
            logger.info(
                "reaper_sweep_complete",
                released_workspaces=len(released),
                recovered_sessions=recovered,
            )
        return SweepResult(released_workspace_ids=released, recovered_sessions=recovered)

    def start_reaper_loop(self, interval_seconds: float = 60.0) -> asyncio.Task[None]:
        """Start a background task that sweeps every ``interval_seconds``.

        The task runs until cancelled (typically at application shutdown).
        """

        async def _loop() -> None:
            logger.info(
                "reaper_loop_started",
                interval_seconds=interval_seconds,
            )
            while True:
                try:
                    await asyncio.sleep(interval_seconds)
                    await self.sweep()
                except asyncio.CancelledError:
                    logger.info("reaper_loop_stopped")
                    return
                except Exception as e:
                    logger.error(
                        "reaper_loop_error",
                        error=str(e),
                    )

        return asyncio.create_task(_loop(), name="stale_session_reaper")
