"""Pydantic schemas for API request/response models.

This module defines the lifecycle enums shared across the engine and all the
data models used by the HTTP API. Models use Pydantic v2; wire names are
camelCase (``lastId``, ``chunkType``) while Python attributes stay snake_case.
"""

from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class SessionStatus(StrEnum):
    """Edit session lifecycle status."""

    PENDING = "pending"
    RUNNING = "running"
    CANCELLING = "cancelling"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ConversationStatus(StrEnum):
    """Conversation lifecycle status."""

    ONGOING = "ongoing"
    FINISHED = "finished"


class WorkspaceStatus(StrEnum):
    """Workspace availability as seen by the conversation layer."""

    AVAILABLE_FOR_CONVERSATION = "available_for_conversation"
    IN_CONVERSATION = "in_conversation"


class MessageRole(StrEnum):
    """Role of a persisted conversation message."""

    USER = "user"
    ASSISTANT = "assistant"
    TURN_ACTIVITY_SUMMARY = "turn_activity_summary"


class ChunkType(StrEnum):
    """Type of a record in a session's chunk log."""

    EVENT = "event"
    TEXT = "text"
    PROGRESS = "progress"
    DONE = "done"


class WireModel(BaseModel):
    """Base for API models: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# -----------------------------------------------------------------------------
# Requests
# -----------------------------------------------------------------------------


class StartConversationRequest(WireModel):
    """Request body for starting (or resuming) a conversation on a workspace."""

    workspace_id: str = Field(
        min_length=1,
        description="Workspace to hold the conversation on",
        examples=["ws_5f2c1a7b9e01"],
    )


class RunRequest(WireModel):
    """Request body for submitting an instruction.

    Both fields default to empty strings so that a missing instruction is
    reported as "Instruction is required." (400) instead of a schema error.
    """

    instruction: str = Field(
        default="",
        max_length=20000,
        description="Natural-language instruction for the agent",
        examples=["Change the hero headline to 'Welcome back'"],
    )
    conversation_id: str = Field(
        default="",
        description="Conversation the instruction belongs to",
    )


# -----------------------------------------------------------------------------
# Responses
# -----------------------------------------------------------------------------


class RunResponse(WireModel):
    """Response for a submitted instruction."""

    session_id: str = Field(description="Identifier of the new edit session")


class PollChunk(WireModel):
    """One chunk as delivered to clients."""

    id: int = Field(description="Chunk id; also the polling cursor value")
    chunk_type: ChunkType = Field(description="event, text, progress or done")
    payload: str = Field(description="JSON-encoded payload; shape depends on chunk_type")


class ContextUsage(WireModel):
    """Live token and cost estimate for a conversation."""

    used_tokens: int = Field(ge=0, description="Tokens currently in flight")
    max_tokens: int = Field(ge=0, description="Context window of the model")
    model_name: str = Field(description="Model the estimate is priced against")
    input_tokens: int = Field(ge=0, description="Cumulative input tokens")
    output_tokens: int = Field(ge=0, description="Cumulative output tokens")
    input_cost: float = Field(ge=0.0, description="Cumulative input cost in USD")
    output_cost: float = Field(ge=0.0, description="Cumulative output cost in USD")
    total_cost: float = Field(ge=0.0, description="input_cost + output_cost")


class PollResponse(WireModel):
    """Response of the cursor-based poll endpoint."""

    chunks: list[PollChunk] = Field(default_factory=list)
    last_id: int = Field(description="Cursor to send as `after` on the next poll")
    status: SessionStatus = Field(description="Current session status")
    context_usage: ContextUsage | None = Field(
        default=None,
        description="Included only while the session is non-terminal",
    )


class ActiveSessionSnapshot(WireModel):
    """Everything a reloaded client needs to resume rendering a session."""

    id: str
    status: SessionStatus
    instruction: str
    chunks: list[PollChunk] = Field(default_factory=list)
    last_chunk_id: int = Field(default=0, description="Id of the last chunk, 0 if none")


class TurnView(WireModel):
    """One finished or in-flight turn of a conversation."""

    session_id: str
    instruction: str
    response: str = Field(description="Concatenated text chunks")
    status: SessionStatus
    events: list[PollChunk] = Field(default_factory=list)


class ConversationResponse(WireModel):
    """Conversation metadata."""

    id: str
    workspace_id: str
    user_id: str
    status: ConversationStatus
    last_activity_at: str | None = None
    created_at: str


class ConversationViewResponse(WireModel):
    """Conversation with its turns, resumable session and context usage."""

    conversation: ConversationResponse
    turns: list[TurnView] = Field(default_factory=list)
    active_session: ActiveSessionSnapshot | None = None
    context_usage: ContextUsage


class SuccessResponse(WireModel):
    """Generic acknowledgement."""

    success: bool = True


class CancelResponse(WireModel):
    """Result of a cancellation request."""

    session_id: str
    status: SessionStatus


class HealthResponse(WireModel):
    """Health check response."""

    status: Literal["healthy", "unhealthy"] = Field(
        description="Overall health status",
    )
    timestamp: float = Field(
        description="Current server timestamp",
    )
    version: str = Field(
        default="0.1.0",
        description="API version",
    )
    database_available: bool = Field(
        default=False,
        description="Whether the SQLite store answered a probe query",
    )
