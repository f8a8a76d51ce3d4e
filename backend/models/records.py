"""Typed rows returned by the EditorStore.

These are plain dataclasses built from ``aiosqlite.Row`` objects; the services
work with them instead of raw dicts.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from clock import from_storage
from models.schemas import (
    ChunkType,
    ConversationStatus,
    MessageRole,
    SessionStatus,
    WorkspaceStatus,
)


@dataclass(frozen=True)
class WorkspaceRecord:
    id: str
    path: str
    status: WorkspaceStatus


@dataclass(frozen=True)
class ConversationRecord:
    """A user's dialogue against one workspace."""

    id: str
    workspace_id: str
    user_id: str
    status: ConversationStatus
    last_activity_at: datetime | None
    created_at: datetime

    @classmethod
    def from_row(cls, row: Any) -> "ConversationRecord":
        created_at = from_storage(row["created_at"])
        assert created_at is not None
        return cls(
            id=row["id"],
            workspace_id=row["workspace_id"],
            user_id=row["user_id"],
            status=ConversationStatus(row["status"]),
            last_activity_at=from_storage(row["last_activity_at"]),
            created_at=created_at,
        )


@dataclass(frozen=True)
class MessageRecord:
    id: int
    conversation_id: str
    sequence: int
    role: MessageRole
    content_json: str

    @classmethod
    def from_row(cls, row: Any) -> "MessageRecord":
        return cls(
            id=row["id"],
            conversation_id=row["conversation_id"],
            sequence=row["sequence"],
            role=MessageRole(row["role"]),
            content_json=row["content_json"],
        )


@dataclass(frozen=True)
class EditSessionRecord:
    """One instruction-to-completion execution.

    Attributes:
        cancel_requested: Durable flag set when cancellation is requested
            while the session is running.
    """

    id: str
    conversation_id: str
    instruction: str
    status: SessionStatus
    cancel_requested: bool
    created_at: datetime

    @classmethod
    def from_row(cls, row: Any) -> "EditSessionRecord":
        created_at = from_storage(row["created_at"])
        assert created_at is not None
        return cls(
            id=row["id"],
            conversation_id=row["conversation_id"],
            instruction=row["instruction"],
            status=SessionStatus(row["status"]),
            cancel_requested=bool(row["cancel_requested"]),
            created_at=created_at,
        )


@dataclass(frozen=True)
class ChunkRecord:
    """One immutable entry of a session's chunk log."""

    id: int
    session_id: str
    chunk_type: ChunkType
    payload_json: str
    context_bytes: int | None = None

    @classmethod
    def from_row(cls, row: Any) -> "ChunkRecord":
        return cls(
            id=row["id"],
            session_id=row["session_id"],
            chunk_type=ChunkType(row["chunk_type"]),
            payload_json=row["payload_json"],
            context_bytes=row["context_bytes"],
        )
