"""Append-only chunk log and the cursor-based poll protocol.

Each edit session has its own log. The ExecutionHandler is the only writer for
a session; any number of clients read it by polling with a cursor.

Usage:
    >>> log = ChunkLog(store, clock)
    >>> await log.append_text(session_id, "Updated the headline.")
    >>> poller = PollService(store, log, context_usage)
    >>> response = await poller.poll(session_id, after=0)
    >>> response.last_id  # send back as `after` next time
"""

import json
from typing import Any

import structlog

from clock import Clock
from context_usage import ContextUsageService
from errors import NotFoundError
from events.types import AgentEventItem
from models.database import EditorStore
from models.records import ChunkRecord
from models.schemas import ChunkType, PollChunk, PollResponse, SessionStatus
from session_state import is_terminal

logger = structlog.get_logger(__name__)

DEFAULT_POLL_LIMIT = 100


def encode_payload(payload: dict[str, Any]) -> str:
    """Serialize a chunk payload the way it is stored and served."""
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))


def decode_payload(payload_json: str) -> dict[str, Any]:
    """Parse a stored payload; malformed rows decode to an empty dict."""
    try:
        decoded = json.loads(payload_json)
    except json.JSONDecodeError:
        return {}
    return decoded if isinstance(decoded, dict) else {}


def to_poll_chunk(record: ChunkRecord) -> PollChunk:
    return PollChunk(
        id=record.id,
        chunk_type=record.chunk_type,
        payload=record.payload_json,
    )


class ChunkLog:
    """Writer and reader for session chunk logs.

    Every append commits before returning, so a poll issued right after an
    append observes the chunk.
    """

    def __init__(self, store: EditorStore, clock: Clock) -> None:
        self.store = store
        self.clock = clock

    async def append_event(self, session_id: str, item: AgentEventItem) -> ChunkRecord:
        return await self.store.append_chunk(
            session_id=session_id,
            chunk_type=ChunkType.EVENT,
            payload_json=encode_payload(item.to_payload()),
            created_at=self.clock.now(),
            context_bytes=item.context_bytes,
        )

    async def append_text(self, session_id: str, content: str) -> ChunkRecord:
        return await self.store.append_chunk(
            session_id=session_id,
            chunk_type=ChunkType.TEXT,
            payload_json=encode_payload({"content": content}),
            created_at=self.clock.now(),
        )

    async def append_progress(self, session_id: str, message: str) -> ChunkRecord:
        return await self.store.append_chunk(
            session_id=session_id,
            chunk_type=ChunkType.PROGRESS,
            payload_json=encode_payload({"message": message}),
            created_at=self.clock.now(),
        )

    async def append_done(
        self,
        session_id: str,
        expected: SessionStatus,
        target: SessionStatus,
        success: bool,
        error_message: str | None = None,
    ) -> ChunkRecord | None:
        """Close the log and move the session to its terminal status.

        Args:
            session_id: Session whose log to close.
            expected: Status the session must currently be in.
            target: Terminal status to move to.
            success: Whether the turn succeeded.
            error_message: Reason shown to the user on failure or cancellation.

        Returns:
            The Done chunk, or None if another writer already finished the
            session (its status was no longer ``expected``).
        """
        done = await self.store.finish_session(
            session_id=session_id,
            expected=expected,
            target=target,
            done_payload_json=encode_payload(
                {"success": success, "errorMessage": error_message}
            ),
            at=self.clock.now(),
        )
        if done is None:
            logger.warning(
                "chunk_log_done_skipped",
                session_id=session_id,
                expected=expected.value,
                target=target.value,
            )
        return done

    async def read(
        self,
        session_id: str,
        after: int = 0,
        limit: int | None = DEFAULT_POLL_LIMIT,
    ) -> list[ChunkRecord]:
        """Chunks with ``id > after`` in id order, at most ``limit``."""
        return await self.store.read_chunks(session_id, after=max(after, 0), limit=limit)

    async def all(self, session_id: str) -> list[ChunkRecord]:
        """The full log of a session."""
        return await self.store.read_chunks(session_id, after=0, limit=None)


class PollService:
    """Serves ``poll(session_id, after)`` requests.

    Reads never hold anything back: whatever has been committed with an id
    above the cursor is returned, so repeating a poll with the same cursor is
    safe and a client that always advances to ``last_id`` sees every chunk
    exactly once.
    """

    def __init__(
        self,
        store: EditorStore,
        chunk_log: ChunkLog,
        context_usage: ContextUsageService,
        limit: int = DEFAULT_POLL_LIMIT,
    ) -> None:
        self.store = store
        self.chunk_log = chunk_log
        self.context_usage = context_usage
        self.limit = limit

    async def poll(self, session_id: str, after: int = 0) -> PollResponse:
        """Return chunks after the cursor plus the session status.

        Raises:
            NotFoundError: If the session does not exist.
        """
        session = await self.store.get_session(session_id)
        if session is None:
            raise NotFoundError("Session not found.")

        chunks = await self.chunk_log.read(session_id, after=after, limit=self.limit)
        last_id = max((chunk.id for chunk in chunks), default=after)

        # Status is read after the chunks: once terminal, every chunk up to
        # and including Done has been committed.
        session = await self.store.get_session(session_id)
        assert session is not None
        status = session.status

        usage = None
        if not is_terminal(status):
            usage = await self.context_usage.get_context_usage(
                session.conversation_id,
                active_session_id=session_id,
            )

        return PollResponse(
            chunks=[to_poll_chunk(chunk) for chunk in chunks],
            last_id=last_id,
            status=status,
            context_usage=usage,
        )
