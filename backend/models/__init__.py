"""Models module for Pydantic schemas, store records and the SQLite store.

This module exposes the lifecycle enums and the request/response models used
by the API.
"""

from models.schemas import (
    ActiveSessionSnapshot,
    CancelResponse,
    ChunkType,
    ContextUsage,
    ConversationResponse,
    ConversationStatus,
    ConversationViewResponse,
    HealthResponse,
    MessageRole,
    PollChunk,
    PollResponse,
    RunRequest,
    RunResponse,
    SessionStatus,
    StartConversationRequest,
    SuccessResponse,
    TurnView,
    WorkspaceStatus,
)

__all__ = [
    "ActiveSessionSnapshot",
    "CancelResponse",
    "ChunkType",
    "ContextUsage",
    "ConversationResponse",
    "ConversationStatus",
    "ConversationViewResponse",
    "HealthResponse",
    "MessageRole",
    "PollChunk",
    "PollResponse",
    "RunRequest",
    "RunResponse",
    "SessionStatus",
    "StartConversationRequest",
    "SuccessResponse",
    "TurnView",
    "WorkspaceStatus",
]
