"""Background execution of edit sessions.

This module provides the SessionManager class that owns the asyncio tasks
running edit sessions. Each session gets exactly one task; the task calls the
ExecutionHandler, which does all the persistence.

Usage:
    >>> session_manager = SessionManager(handler, store)
    >>> await session_manager.submit(session_id)
    >>>
    >>> # On startup, pick up sessions a previous process never started
    >>> await session_manager.resume_unstarted()
    >>>
    >>> # Cleanup when done
    >>> await session_manager.cleanup_all()
"""

import asyncio
from typing import Any

import structlog

from execution_handler import ExecutionHandler
from models.database import EditorStore
from models.schemas import SessionStatus

logger = structlog.get_logger()


class SessionManager:
    """Schedules edit sessions onto background tasks.

    Thread Safety:
        The task registry is guarded by an asyncio.Lock.

    Attributes:
        handler: Drives a single session to a terminal state.
        store: Used to find sessions left unstarted by a previous process.
    """

    def __init__(self, handler: ExecutionHandler, store: EditorStore) -> None:
        self.handler = handler
        self.store = store
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._lock = asyncio.Lock()
        logger.info("session_manager_initialized")

    async def _schedule_session_task(
        self,
        *,
        session_id: str,
        coro: Any,
    ) -> None:
        """Create and register the background task for a session run."""
        async with self._lock:
            if session_id in self._tasks:
                coro.close()
                logger.warning("session_task_already_scheduled", session_id=session_id)
                return

            background_task = asyncio.create_task(
                coro, name=f"session_{session_id}"
            )
            self._tasks[session_id] = background_task

            # Clean up task reference when it completes
            def _remove_task(
                t: asyncio.Task[None], sid: str = session_id
            ) -> None:
                self._tasks.pop(sid, None)

            background_task.add_done_callback(_remove_task)

    async def _run_session(self, session_id: str) -> None:
        try:
            await self.handler.run(session_id)
        except asyncio.CancelledError:
            logger.info("session_task_cancelled", session_id=session_id)
            raise
        except Exception as e:
            # The handler already turns agent failures into Done chunks; this
            # only triggers when the store itself fails.
            logger.error(
                "session_task_crashed",
                session_id=session_id,
                error_type=type(e).__name__,
                error=str(e),
            )

    async def submit(self, session_id: str) -> None:
        """Start executing a session in the background."""
        await self._schedule_session_task(
            session_id=session_id,
            coro=self._run_session(session_id),
        )
        logger.info("session_submitted", session_id=session_id)

    async def resume_unstarted(self) -> int:
        """Schedule sessions left pending or cancelling by a previous process.

        Returns:
            Number of sessions scheduled.
        """
        sessions = [
            *await self.store.list_sessions_by_status(SessionStatus.PENDING),
            *await self.store.list_sessions_by_status(SessionStatus.CANCELLING),
        ]
        for session in sessions:
            await self.submit(session.id)
        if sessions:
            logger.info("unstarted_sessions_resumed", count=len(sessions))
        return len(sessions)

    def is_running(self, session_id: str) -> bool:
        task = self._tasks.get(session_id)
        return task is not None and not task.done()

    async def wait_for(self, session_id: str) -> None:
        """Wait until the session's task (if any) has finished."""
        task = self._tasks.get(session_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def cleanup_all(self) -> None:
        """Cancel all session tasks.

        Called during application shutdown. Sessions interrupted here stay
        ``running`` in the store until stuck-session recovery closes them.
        """
        # Collect all tasks under the lock, then cancel outside to avoid
        # deadlock with the done-callbacks.
        async with self._lock:
            tasks_to_cancel = list(self._tasks.items())
            self._tasks.clear()

        logger.info("cleanup_all_start", session_count=len(tasks_to_cancel))

        for session_id, task in tasks_to_cancel:
            if not task.done():
                task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error(
                    "cleanup_task_cancel_failed",
                    session_id=session_id,
                    error=str(e),
                )

        logger.info("cleanup_all_complete")
