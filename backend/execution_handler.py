"""Drives one edit session from pending to a terminal state.

The handler is the single writer of a session's chunk log. It streams items
from the agent loop and appends each one as a chunk the moment it arrives, so
a client polling mid-turn sees partial progress. Every path ends with exactly
one Done chunk written together with the terminal status:

    cancelled before start  -> Done(false, "Cancelled before execution started.")
    completed               -> Done(true)
    cancellation observed   -> Done(false, "Cancelled by user.")
    any other error         -> Done(false, <error message>)

Usage:
    >>> handler = ExecutionHandler(store, chunk_log, cancellation, create_agent_loop, clock)
    >>> await handler.run(session_id)
"""

import json
from collections.abc import Callable
from pathlib import Path

import structlog

from agents import AgentLoop
from agents.journal import TurnActivityJournal
from cancellation import CancellationCoordinator
from chunk_log import ChunkLog
from clock import Clock
from config import settings
from errors import CancellationSignal
from events.types import AgentEventItem, AgentStreamItem, ProgressItem, TextItem
from models.database import ChunkLogClosedError, EditorStore
from models.records import EditSessionRecord
from models.schemas import MessageRole, SessionStatus

logger = structlog.get_logger(__name__)

CANCELLED_BEFORE_START_MESSAGE = "Cancelled before execution started."
CANCELLED_BY_USER_MESSAGE = "Cancelled by user."
CANCELLED_TURN_PLACEHOLDER = "[Cancelled by the user - disregard this turn.]"
EMPTY_ACTIVITY_SUMMARY = "No tool activity in this turn."

AgentFactory = Callable[[str], AgentLoop]


def _message_json(content: str) -> str:
    return json.dumps({"content": content}, ensure_ascii=False)


class ExecutionHandler:
    """Runs edit sessions against an agent loop.

    Attributes:
        store: Datastore for sessions, messages and workspaces.
        chunk_log: Writer for the session chunk logs.
        cancellation: Source of the ``is_cancelled`` predicate.
        agent_factory: Builds the agent loop for a workspace folder.
        clock: Time source for message timestamps.
    """

    def __init__(
        self,
        store: EditorStore,
        chunk_log: ChunkLog,
        cancellation: CancellationCoordinator,
        agent_factory: AgentFactory,
        clock: Clock,
    ) -> None:
        self.store = store
        self.chunk_log = chunk_log
        self.cancellation = cancellation
        self.agent_factory = agent_factory
        self.clock = clock

    async def run(self, session_id: str) -> None:
        """Execute a session exactly once; no-op if it is not pending."""
        session = await self.store.get_session(session_id)
        if session is None:
            logger.warning("edit_session_not_found", session_id=session_id)
            return

        if session.status == SessionStatus.CANCELLING:
            await self._finish_cancelled_before_start(session_id)
            return

        if session.status != SessionStatus.PENDING:
            logger.warning(
                "edit_session_not_pending",
                session_id=session_id,
                status=session.status.value,
            )
            return

        started = await self.store.transition_session(
            session_id,
            SessionStatus.PENDING,
            SessionStatus.RUNNING,
            self.clock.now(),
        )
        if not started:
            # Lost the race: either a cancel moved it to cancelling or another
            # worker started it.
            current = await self.store.get_session(session_id)
            if current is not None and current.status == SessionStatus.CANCELLING:
                await self._finish_cancelled_before_start(session_id)
            else:
                logger.warning("edit_session_already_started", session_id=session_id)
            return

        logger.info(
            "edit_session_started",
            session_id=session_id,
            conversation_id=session.conversation_id,
        )
        await self._execute(session)

    async def _finish_cancelled_before_start(self, session_id: str) -> None:
        done = await self.chunk_log.append_done(
            session_id,
            expected=SessionStatus.CANCELLING,
            target=SessionStatus.CANCELLED,
            success=False,
            error_message=CANCELLED_BEFORE_START_MESSAGE,
        )
        if done is not None:
            logger.info("edit_session_cancelled_before_start", session_id=session_id)

    async def _workspace_path(self, conversation_id: str) -> str:
        conversation = await self.store.get_conversation(conversation_id)
        if conversation is None:
            return settings.workspace_root
        workspace = await self.store.get_workspace(conversation.workspace_id)
        if workspace is not None:
            return workspace.path
        return str(Path(settings.workspace_root) / conversation.workspace_id)

    async def _execute(self, session: EditSessionRecord) -> None:
        session_id = session.id
        conversation_id = session.conversation_id

        journal = TurnActivityJournal()
        reply_parts: list[str] = []
        chunk_count = 0

        try:
            previous_messages = await self.store.list_messages(conversation_id)
            await self.store.append_message(
                conversation_id,
                MessageRole.USER,
                _message_json(session.instruction),
                self.clock.now(),
            )

            agent = self.agent_factory(await self._workspace_path(conversation_id))
            async for item in agent.stream(
                session.instruction,
                previous_messages,
                self.cancellation.predicate_for(session_id),
            ):
                await self._persist_item(session_id, item, journal, reply_parts)
                chunk_count += 1

        except CancellationSignal:
            try:
                await self.store.append_message(
                    conversation_id,
                    MessageRole.ASSISTANT,
                    _message_json(CANCELLED_TURN_PLACEHOLDER),
                    self.clock.now(),
                )
            except Exception as e:
                # The turn still ends as cancelled; only the history note is lost.
                logger.error(
                    "edit_session_cancel_message_failed",
                    session_id=session_id,
                    error=str(e),
                )
            await self.chunk_log.append_done(
                session_id,
                expected=SessionStatus.RUNNING,
                target=SessionStatus.CANCELLED,
                success=False,
                error_message=CANCELLED_BY_USER_MESSAGE,
            )
            logger.info(
                "edit_session_cancelled",
                session_id=session_id,
                chunk_count=chunk_count,
            )
            return

        except ChunkLogClosedError:
            # Closed from outside (stuck-session recovery); nothing left to write.
            logger.warning("edit_session_log_closed_externally", session_id=session_id)
            return

        except Exception as e:
            await self._finish_failed(session_id, e, chunk_count)
            return

        try:
            await self.store.append_message(
                conversation_id,
                MessageRole.ASSISTANT,
                _message_json("".join(reply_parts)),
                self.clock.now(),
            )
            await self.store.append_message(
                conversation_id,
                MessageRole.TURN_ACTIVITY_SUMMARY,
                _message_json(journal.summary() or EMPTY_ACTIVITY_SUMMARY),
                self.clock.now(),
            )
        except Exception as e:
            await self._finish_failed(session_id, e, chunk_count)
            return

        await self.chunk_log.append_done(
            session_id,
            expected=SessionStatus.RUNNING,
            target=SessionStatus.COMPLETED,
            success=True,
        )
        logger.info(
            "edit_session_completed",
            session_id=session_id,
            chunk_count=chunk_count,
            tool_calls=len(journal),
        )

    async def _finish_failed(self, session_id: str, error: Exception, chunk_count: int) -> None:
        error_message = str(error) or type(error).__name__
        logger.error(
            "edit_session_failed",
            session_id=session_id,
            error_type=type(error).__name__,
            error=error_message,
            chunk_count=chunk_count,
        )
        await self.chunk_log.append_done(
            session_id,
            expected=SessionStatus.RUNNING,
            target=SessionStatus.FAILED,
            success=False,
            error_message=error_message,
        )

    async def _persist_item(
        self,
        session_id: str,
        item: AgentStreamItem,
        journal: TurnActivityJournal,
        reply_parts: list[str],
    ) -> None:
        if isinstance(item, AgentEventItem):
            await self.chunk_log.append_event(session_id, item)
            journal.observe(item)
        elif isinstance(item, TextItem):
            await self.chunk_log.append_text(session_id, item.content)
            reply_parts.append(item.content)
        elif isinstance(item, ProgressItem):
            await self.chunk_log.append_progress(session_id, item.message)
        else:
            logger.warning(
                "agent_stream_item_unknown",
                session_id=session_id,
                item_type=type(item).__name__,
            )
