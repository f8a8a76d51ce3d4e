"""SQLite persistence for conversations, edit sessions and chunk logs.

This module provides the EditorStore class, the single datastore of record for
the engine. All operations are async (aiosqlite) and every method opens its own
connection, so the store can be shared freely between the request handlers and
the background session workers.

Failures here propagate: the chunk log is the only thing a client can resume
from, so an append either commits before the method returns or raises.

Tables:
    workspaces: Workspace folders and their availability.
    conversations: One user's dialogue against one workspace.
    conversation_messages: Append-only turn content, ordered by sequence.
    edit_sessions: One instruction-to-completion execution each.
    edit_session_chunks: The chunk log; the AUTOINCREMENT id is the cursor.

Usage:
    >>> from models.database import EditorStore
    >>> store = EditorStore("./data/editor.db")
    >>> await store.init()
    >>> chunk = await store.append_chunk(
    ...     session_id="es_abc123",
    ...     chunk_type=ChunkType.TEXT,
    ...     payload_json='{"content": "Hello"}',
    ...     created_at=clock.now(),
    ... )
"""

from datetime import datetime
from pathlib import Path

import aiosqlite
import structlog

from clock import to_storage
from errors import ConflictError
from models.records import (
    ChunkRecord,
    ConversationRecord,
    EditSessionRecord,
    MessageRecord,
    WorkspaceRecord,
)
from models.schemas import (
    ChunkType,
    ConversationStatus,
    MessageRole,
    SessionStatus,
    WorkspaceStatus,
)
from session_state import TERMINAL_STATUSES, assert_transition

logger = structlog.get_logger(__name__)

_NON_TERMINAL_SQL = ", ".join(
    f"'{s.value}'" for s in SessionStatus if s not in TERMINAL_STATUSES
)

# Guard shared by every chunk insert: nothing may follow a Done chunk.
_INSERT_CHUNK_SQL = """
    INSERT INTO edit_session_chunks
        (session_id, chunk_type, payload_json, context_bytes, created_at)
    SELECT ?, ?, ?, ?, ?
    WHERE NOT EXISTS (
        SELECT 1 FROM edit_session_chunks
        WHERE session_id = ? AND chunk_type = 'done'
    )
"""


class ChunkLogClosedError(ConflictError):
    """Raised when appending to a session whose log already ends in Done."""


class EditorStore:
    """Async SQLite store for the edit-session engine.

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        """Initialize the store.

        Args:
            db_path: Filesystem path to the SQLite database file.
                     Parent directories are created automatically on init().
        """
        self.db_path = db_path

    async def init(self) -> None:
        """Create database tables if they do not exist."""
        db_dir = Path(self.db_path).parent
        db_dir.mkdir(parents=True, exist_ok=True)

        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("PRAGMA journal_mode=WAL")
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS workspaces (
                        id TEXT PRIMARY KEY,
                        path TEXT NOT NULL,
                        status TEXT NOT NULL
                    )
                """)
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS conversations (
                        id TEXT PRIMARY KEY,
                        workspace_id TEXT NOT NULL,
                        user_id TEXT NOT NULL,
                        status TEXT NOT NULL,
                        last_activity_at TEXT,
                        created_at TEXT NOT NULL,
                        FOREIGN KEY (workspace_id) REFERENCES workspaces(id)
                    )
                """)
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS conversation_messages (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        conversation_id TEXT NOT NULL,
                        sequence INTEGER NOT NULL,
                        role TEXT NOT NULL,
                        content_json TEXT NOT NULL,
                        created_at TEXT NOT NULL,
                        UNIQUE (conversation_id, sequence),
                        FOREIGN KEY (conversation_id) REFERENCES conversations(id)
                    )
                """)
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS edit_sessions (
                        id TEXT PRIMARY KEY,
                        conversation_id TEXT NOT NULL,
                        instruction TEXT NOT NULL,
                        status TEXT NOT NULL,
                        cancel_requested INTEGER NOT NULL DEFAULT 0,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL,
                        FOREIGN KEY (conversation_id) REFERENCES conversations(id)
                    )
                """)
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS edit_session_chunks (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        session_id TEXT NOT NULL,
                        chunk_type TEXT NOT NULL,
                        payload_json TEXT NOT NULL,
                        context_bytes INTEGER,
                        created_at TEXT NOT NULL,
                        FOREIGN KEY (session_id) REFERENCES edit_sessions(id)
                    )
                """)
                # Polling reads "chunks of a session after id N"
                await db.execute("""
                    CREATE INDEX IF NOT EXISTS idx_session_chunk_polling
                    ON edit_session_chunks(session_id, id)
                """)
                await db.execute("""
                    CREATE INDEX IF NOT EXISTS idx_edit_sessions_conversation
                    ON edit_sessions(conversation_id, created_at)
                """)
                await db.execute("""
                    CREATE INDEX IF NOT EXISTS idx_conversations_status
                    ON conversations(status)
                """)
                await db.commit()
            logger.info("editor_store_initialized", db_path=self.db_path)
        except Exception as e:
            logger.error(
                "editor_store_init_failed",
                db_path=self.db_path,
                error=str(e),
            )
            raise

    async def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("SELECT 1")
            return True
        except Exception as e:
            logger.warning("editor_store_ping_failed", error=str(e))
            return False

    # -----------------------------------------------------------------
    # Workspaces
    # -----------------------------------------------------------------

    async def add_workspace(
        self,
        workspace_id: str,
        path: str,
        status: WorkspaceStatus = WorkspaceStatus.AVAILABLE_FOR_CONVERSATION,
    ) -> WorkspaceRecord:
        """Register a workspace (idempotent on id)."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "INSERT OR IGNORE INTO workspaces (id, path, status) VALUES (?, ?, ?)",
                (workspace_id, path, status.value),
            )
            await db.commit()
        workspace = await self.get_workspace(workspace_id)
        assert workspace is not None
        return workspace

    async def get_workspace(self, workspace_id: str) -> WorkspaceRecord | None:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM workspaces WHERE id = ?",
                (workspace_id,),
            )
            row = await cursor.fetchone()
        if row is None:
            return None
        return WorkspaceRecord(
            id=row["id"],
            path=row["path"],
            status=WorkspaceStatus(row["status"]),
        )

    async def set_workspace_status(
        self,
        workspace_id: str,
        status: WorkspaceStatus,
    ) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "UPDATE workspaces SET status = ? WHERE id = ?",
                (status.value, workspace_id),
            )
            await db.commit()
        logger.debug(
            "workspace_status_updated",
            workspace_id=workspace_id,
            status=status.value,
        )

    # -----------------------------------------------------------------
    # Conversations
    # -----------------------------------------------------------------

    async def create_conversation(
        self,
        conversation_id: str,
        workspace_id: str,
        user_id: str,
        created_at: datetime,
    ) -> ConversationRecord:
        """Insert an ongoing conversation and mark its workspace as taken.

        Both writes happen in one transaction.

        Raises:
            ConflictError: If the workspace is not available.
        """
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "UPDATE workspaces SET status = ? WHERE id = ? AND status = ?",
                (
                    WorkspaceStatus.IN_CONVERSATION.value,
                    workspace_id,
                    WorkspaceStatus.AVAILABLE_FOR_CONVERSATION.value,
                ),
            )
            if cursor.rowcount != 1:
                await db.rollback()
                raise ConflictError("Workspace is not available for a conversation.")
            await db.execute(
                """
                INSERT INTO conversations
                    (id, workspace_id, user_id, status, last_activity_at, created_at)
                VALUES (?, ?, ?, ?, NULL, ?)
                """,
                (
                    conversation_id,
                    workspace_id,
                    user_id,
                    ConversationStatus.ONGOING.value,
                    to_storage(created_at),
                ),
            )
            await db.commit()
        logger.debug(
            "conversation_saved",
            conversation_id=conversation_id,
            workspace_id=workspace_id,
        )
        conversation = await self.get_conversation(conversation_id)
        assert conversation is not None
        return conversation

    async def get_conversation(self, conversation_id: str) -> ConversationRecord | None:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM conversations WHERE id = ?",
                (conversation_id,),
            )
            row = await cursor.fetchone()
        return ConversationRecord.from_row(row) if row is not None else None

    async def find_ongoing_conversation(
        self,
        workspace_id: str,
        user_id: str | None = None,
    ) -> ConversationRecord | None:
        """Return the ongoing conversation on a workspace, optionally for one user."""
        query = "SELECT * FROM conversations WHERE workspace_id = ? AND status = ?"
        params: list[str] = [workspace_id, ConversationStatus.ONGOING.value]
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        query += " ORDER BY created_at DESC LIMIT 1"

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            row = await cursor.fetchone()
        return ConversationRecord.from_row(row) if row is not None else None

    async def touch_conversation(self, conversation_id: str, at: datetime) -> None:
        """Record client activity (heartbeat) on a conversation."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "UPDATE conversations SET last_activity_at = ? WHERE id = ?",
                (to_storage(at), conversation_id),
            )
            await db.commit()

    async def finish_conversation(self, conversation_id: str) -> bool:
        """Mark an ongoing conversation as finished.

        Returns:
            True if the conversation was ongoing and is now finished.
        """
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "UPDATE conversations SET status = ? WHERE id = ? AND status = ?",
                (
                    ConversationStatus.FINISHED.value,
                    conversation_id,
                    ConversationStatus.ONGOING.value,
                ),
            )
            await db.commit()
            return cursor.rowcount == 1

    async def find_stale_conversations(self, cutoff: datetime) -> list[ConversationRecord]:
        """Ongoing conversations silent since before ``cutoff``.

        Activity falls back to the creation time when no heartbeat was ever
        recorded. Conversations with a running session are excluded because
        the agent is still working on their behalf.
        """
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                """
                SELECT c.* FROM conversations c
                WHERE c.status = ?
                  AND COALESCE(c.last_activity_at, c.created_at) < ?
                  AND NOT EXISTS (
                      SELECT 1 FROM edit_sessions s
                      WHERE s.conversation_id = c.id AND s.status = ?
                  )
                ORDER BY c.created_at
                """,
                (
                    ConversationStatus.ONGOING.value,
                    to_storage(cutoff),
                    SessionStatus.RUNNING.value,
                ),
            )
            rows = await cursor.fetchall()
        return [ConversationRecord.from_row(row) for row in rows]

    # -----------------------------------------------------------------
    # Conversation messages
    # -----------------------------------------------------------------

    async def append_message(
        self,
        conversation_id: str,
        role: MessageRole,
        content_json: str,
        created_at: datetime,
    ) -> MessageRecord:
        """Append a message with the next per-conversation sequence number."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                """
                INSERT INTO conversation_messages
                    (conversation_id, sequence, role, content_json, created_at)
                SELECT ?, COALESCE(MAX(sequence), 0) + 1, ?, ?, ?
                FROM conversation_messages WHERE conversation_id = ?
                """,
                (
                    conversation_id,
                    role.value,
                    content_json,
                    to_storage(created_at),
                    conversation_id,
                ),
            )
            message_id = cursor.lastrowid
            await db.commit()
            cursor = await db.execute(
                "SELECT * FROM conversation_messages WHERE id = ?",
                (message_id,),
            )
            row = await cursor.fetchone()
        assert row is not None
        return MessageRecord.from_row(row)

    async def list_messages(self, conversation_id: str) -> list[MessageRecord]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                """
                SELECT * FROM conversation_messages
                WHERE conversation_id = ?
                ORDER BY sequence
                """,
                (conversation_id,),
            )
            rows = await cursor.fetchall()
        return [MessageRecord.from_row(row) for row in rows]

    # -----------------------------------------------------------------
    # Edit sessions
    # -----------------------------------------------------------------

    async def create_session(
        self,
        session_id: str,
        conversation_id: str,
        instruction: str,
        created_at: datetime,
    ) -> EditSessionRecord:
        """Insert a pending session.

        Raises:
            ConflictError: If the conversation still has a non-terminal session.
        """
        stamp = to_storage(created_at)
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                f"""
                INSERT INTO edit_sessions
                    (id, conversation_id, instruction, status, cancel_requested,
                     created_at, updated_at)
                SELECT ?, ?, ?, ?, 0, ?, ?
                WHERE NOT EXISTS (
                    SELECT 1 FROM edit_sessions
                    WHERE conversation_id = ? AND status IN ({_NON_TERMINAL_SQL})
                )
                """,
                (
                    session_id,
                    conversation_id,
                    instruction,
                    SessionStatus.PENDING.value,
                    stamp,
                    stamp,
                    conversation_id,
                ),
            )
            if cursor.rowcount != 1:
                await db.rollback()
                raise ConflictError("An edit session is already in progress.")
            await db.commit()
        logger.debug(
            "edit_session_saved",
            session_id=session_id,
            conversation_id=conversation_id,
        )
        session = await self.get_session(session_id)
        assert session is not None
        return session

    async def get_session(self, session_id: str) -> EditSessionRecord | None:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM edit_sessions WHERE id = ?",
                (session_id,),
            )
            row = await cursor.fetchone()
        return EditSessionRecord.from_row(row) if row is not None else None

    async def list_sessions(self, conversation_id: str) -> list[EditSessionRecord]:
        """All sessions of a conversation, oldest first."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                """
                SELECT * FROM edit_sessions
                WHERE conversation_id = ?
                ORDER BY created_at, rowid
                """,
                (conversation_id,),
            )
            rows = await cursor.fetchall()
        return [EditSessionRecord.from_row(row) for row in rows]

    async def list_sessions_by_status(
        self,
        status: SessionStatus,
        created_before: datetime | None = None,
    ) -> list[EditSessionRecord]:
        """Sessions currently in ``status``, optionally created before a cutoff."""
        query = "SELECT * FROM edit_sessions WHERE status = ?"
        params: list[str] = [status.value]
        if created_before is not None:
            query += " AND created_at < ?"
            params.append(to_storage(created_before))
        query += " ORDER BY created_at, rowid"

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
        return [EditSessionRecord.from_row(row) for row in rows]

    async def transition_session(
        self,
        session_id: str,
        expected: SessionStatus,
        target: SessionStatus,
        at: datetime,
    ) -> bool:
        """Move a session from ``expected`` to ``target`` if it is still there.

        Returns:
            True if this call performed the transition, False if the session
            was no longer in ``expected``.

        Raises:
            InvalidTransitionError: If the state machine forbids the change.
        """
        assert_transition(expected, target)
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE edit_sessions SET status = ?, updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (target.value, to_storage(at), session_id, expected.value),
            )
            await db.commit()
            changed = cursor.rowcount == 1
        logger.debug(
            "edit_session_transition",
            session_id=session_id,
            expected=expected.value,
            target=target.value,
            applied=changed,
        )
        return changed

    async def set_cancel_requested(self, session_id: str, at: datetime) -> bool:
        """Raise the cancellation flag of a running session."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE edit_sessions SET cancel_requested = 1, updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (to_storage(at), session_id, SessionStatus.RUNNING.value),
            )
            await db.commit()
            return cursor.rowcount == 1

    async def is_cancel_requested(self, session_id: str) -> bool:
        """True if the flag is up or the session was moved to cancelling."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "SELECT status, cancel_requested FROM edit_sessions WHERE id = ?",
                (session_id,),
            )
            row = await cursor.fetchone()
        if row is None:
            return False
        status, flag = row
        return bool(flag) or status == SessionStatus.CANCELLING.value

    # -----------------------------------------------------------------
    # Chunk log
    # -----------------------------------------------------------------

    async def append_chunk(
        self,
        session_id: str,
        chunk_type: ChunkType,
        payload_json: str,
        created_at: datetime,
        context_bytes: int | None = None,
    ) -> ChunkRecord:
        """Append one non-terminal chunk and commit it.

        Raises:
            ChunkLogClosedError: If the session's log already ends in Done.
        """
        if chunk_type == ChunkType.DONE:
            raise ValueError("Done chunks are written by finish_session()")

        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                _INSERT_CHUNK_SQL,
                (
                    session_id,
                    chunk_type.value,
                    payload_json,
                    context_bytes,
                    to_storage(created_at),
                    session_id,
                ),
            )
            if cursor.rowcount != 1:
                await db.rollback()
                raise ChunkLogClosedError(
                    f"Chunk log of session {session_id} is already closed."
                )
            chunk_id = cursor.lastrowid
            await db.commit()

        assert chunk_id is not None
        return ChunkRecord(
            id=chunk_id,
            session_id=session_id,
            chunk_type=chunk_type,
            payload_json=payload_json,
            context_bytes=context_bytes,
        )

    async def finish_session(
        self,
        session_id: str,
        expected: SessionStatus,
        target: SessionStatus,
        done_payload_json: str,
        at: datetime,
    ) -> ChunkRecord | None:
        """Write the Done chunk and the terminal status in one transaction.

        Returns:
            The Done chunk, or None if the session had already left
            ``expected`` (someone else finished it).

        Raises:
            InvalidTransitionError: If ``target`` is not reachable.
        """
        assert_transition(expected, target)
        stamp = to_storage(at)
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE edit_sessions SET status = ?, updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (target.value, stamp, session_id, expected.value),
            )
            if cursor.rowcount != 1:
                await db.rollback()
                return None
            cursor = await db.execute(
                _INSERT_CHUNK_SQL,
                (
                    session_id,
                    ChunkType.DONE.value,
                    done_payload_json,
                    None,
                    stamp,
                    session_id,
                ),
            )
            if cursor.rowcount != 1:
                await db.rollback()
                return None
            chunk_id = cursor.lastrowid
            await db.commit()

        logger.debug(
            "edit_session_finished",
            session_id=session_id,
            status=target.value,
            done_chunk_id=chunk_id,
        )
        assert chunk_id is not None
        return ChunkRecord(
            id=chunk_id,
            session_id=session_id,
            chunk_type=ChunkType.DONE,
            payload_json=done_payload_json,
        )

    async def read_chunks(
        self,
        session_id: str,
        after: int = 0,
        limit: int | None = None,
    ) -> list[ChunkRecord]:
        """Chunks with ``id > after`` in id order, at most ``limit``."""
        query = """
            SELECT * FROM edit_session_chunks
            WHERE session_id = ? AND id > ?
            ORDER BY id
        """
        params: list[str | int] = [session_id, after]
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
        return [ChunkRecord.from_row(row) for row in rows]

    # -----------------------------------------------------------------
    # Context accounting aggregates (byte lengths, not characters)
    # -----------------------------------------------------------------

    async def messages_bytes(self, conversation_id: str) -> int:
        return await self._scalar(
            """
            SELECT COALESCE(SUM(LENGTH(CAST(content_json AS BLOB))), 0)
            FROM conversation_messages WHERE conversation_id = ?
            """,
            (conversation_id,),
        )

    async def session_event_bytes(self, session_id: str) -> int:
        return await self._scalar(
            """
            SELECT COALESCE(SUM(COALESCE(context_bytes, LENGTH(CAST(payload_json AS BLOB)))), 0)
            FROM edit_session_chunks
            WHERE session_id = ? AND chunk_type = 'event'
            """,
            (session_id,),
        )

    async def conversation_event_bytes(self, conversation_id: str) -> int:
        return await self._scalar(
            """
            SELECT COALESCE(SUM(COALESCE(ch.context_bytes, LENGTH(CAST(ch.payload_json AS BLOB)))), 0)
            FROM edit_session_chunks ch
            JOIN edit_sessions s ON s.id = ch.session_id
            WHERE s.conversation_id = ? AND ch.chunk_type = 'event'
            """,
            (conversation_id,),
        )

    async def conversation_text_bytes(self, conversation_id: str) -> int:
        return await self._scalar(
            """
            SELECT COALESCE(SUM(LENGTH(CAST(ch.payload_json AS BLOB))), 0)
            FROM edit_session_chunks ch
            JOIN edit_sessions s ON s.id = ch.session_id
            WHERE s.conversation_id = ? AND ch.chunk_type = 'text'
            """,
            (conversation_id,),
        )

    async def _scalar(self, query: str, params: tuple[str, ...]) -> int:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(query, params)
            row = await cursor.fetchone()
        return int(row[0]) if row and row[0] is not None else 0
