"""HTTP API routes for the edit-session engine.

This module defines the conversation, run, poll, heartbeat, context-usage and
cancel endpoints plus the health check. Streaming is done by cursor-based
polling of ``/api/poll/{session_id}``; there is no push channel.

The caller is identified by the ``X-User-Id`` header. Services raise
``EngineError`` subclasses, translated here into HTTP status codes.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Annotated, NoReturn

import structlog
from fastapi import APIRouter, Header, HTTPException, Path, Query, status

from conversation_service import conversation_to_response
from errors import (
    AuthorizationError,
    ConflictError,
    EngineError,
    NotFoundError,
    RequestValidationError,
)
from models.schemas import (
    CancelResponse,
    ContextUsage,
    ConversationResponse,
    ConversationViewResponse,
    HealthResponse,
    PollResponse,
    RunRequest,
    RunResponse,
    StartConversationRequest,
    SuccessResponse,
)

if TYPE_CHECKING:
    from services import EngineServices

logger = structlog.get_logger(__name__)

router = APIRouter()

API_VERSION = "0.1.0"

_STATUS_BY_ERROR: dict[type[EngineError], int] = {
    RequestValidationError: status.HTTP_400_BAD_REQUEST,
    AuthorizationError: status.HTTP_403_FORBIDDEN,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    ConflictError: status.HTTP_400_BAD_REQUEST,
}

# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def _raise_http(error: EngineError, event: str, **context: object) -> NoReturn:
    """Translate a service error into an HTTPException."""
    status_code = status.HTTP_400_BAD_REQUEST
    for error_type, code in _STATUS_BY_ERROR.items():
        if isinstance(error, error_type):
            status_code = code
            break

    logger.warning(event, status_code=status_code, error=error.message, **context)
    raise HTTPException(status_code=status_code, detail=error.message) from error


def _require_user(user_id: str | None) -> str:
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-Id header.",
        )
    return user_id


UserIdHeader = Annotated[str | None, Header(alias="X-User-Id")]


# Engine services dependency (set during application startup)
_services: EngineServices | None = None


def set_services(services: EngineServices) -> None:
    """Set the service container used by all routes.

    This should be called during application startup.

    Args:
        services: The wired EngineServices instance.
    """
    global _services
    _services = services
    logger.info("engine_services_configured")


def get_services() -> EngineServices:
    """Get the service container.

    Raises:
        RuntimeError: If the services have not been configured.
    """
    if _services is None:
        logger.error("engine_services_not_configured")
        raise RuntimeError(
            "EngineServices not configured. Call set_services() during startup."
        )
    return _services


# -----------------------------------------------------------------------------
# Conversations
# -----------------------------------------------------------------------------


@router.post(
    "/api/conversations",
    response_model=ConversationResponse,
    summary="Start or resume a conversation",
    description="Return the caller's ongoing conversation on the workspace, or start one.",
)
async def start_conversation(
    request: StartConversationRequest,
    x_user_id: UserIdHeader = None,
) -> ConversationResponse:
    user_id = _require_user(x_user_id)
    services = get_services()

    try:
        conversation = await services.conversations.start_or_resume(
            request.workspace_id, user_id
        )
    except EngineError as e:
        _raise_http(e, "start_conversation_rejected", workspace_id=request.workspace_id)

    return conversation_to_response(conversation)


@router.get(
    "/api/conversations/{conversation_id}",
    response_model=ConversationViewResponse,
    summary="Get conversation view",
    description="Turn history, the resumable in-flight session and context usage.",
)
async def get_conversation(
    conversation_id: Annotated[str, Path(description="The conversation ID")],
    x_user_id: UserIdHeader = None,
) -> ConversationViewResponse:
    user_id = _require_user(x_user_id)
    services = get_services()

    try:
        return await services.conversations.get_conversation_view(conversation_id, user_id)
    except EngineError as e:
        _raise_http(e, "get_conversation_rejected", conversation_id=conversation_id)


@router.post(
    "/api/conversations/{conversation_id}/finish",
    response_model=SuccessResponse,
    summary="Finish a conversation",
    description="Finish an ongoing conversation and release its workspace.",
)
async def finish_conversation(
    conversation_id: Annotated[str, Path(description="The conversation ID")],
    x_user_id: UserIdHeader = None,
) -> SuccessResponse:
    user_id = _require_user(x_user_id)
    services = get_services()

    try:
        await services.conversations.finish(conversation_id, user_id)
    except EngineError as e:
        _raise_http(e, "finish_conversation_rejected", conversation_id=conversation_id)

    return SuccessResponse()


@router.post(
    "/api/conversations/{conversation_id}/heartbeat",
    response_model=SuccessResponse,
    summary="Conversation heartbeat",
    description="Mark the owning client as present; sent about every 10 seconds.",
)
async def heartbeat(
    conversation_id: Annotated[str, Path(description="The conversation ID")],
    x_user_id: UserIdHeader = None,
) -> SuccessResponse:
    user_id = _require_user(x_user_id)
    services = get_services()

    try:
        await services.heartbeat.beat(conversation_id, user_id)
    except EngineError as e:
        _raise_http(e, "heartbeat_rejected", conversation_id=conversation_id)

    return SuccessResponse()


@router.get(
    "/api/conversations/{conversation_id}/context-usage",
    response_model=ContextUsage,
    summary="Context usage",
    description="Token and cost estimate for the conversation.",
)
async def get_context_usage(
    conversation_id: Annotated[str, Path(description="The conversation ID")],
    session_id: Annotated[
        str | None,
        Query(description="In-flight session whose events should be counted"),
    ] = None,
    x_user_id: UserIdHeader = None,
) -> ContextUsage:
    user_id = _require_user(x_user_id)
    services = get_services()

    try:
        return await services.conversations.get_context_usage(
            conversation_id,
            user_id,
            session_id=session_id,
        )
    except EngineError as e:
        _raise_http(e, "context_usage_rejected", conversation_id=conversation_id)


# -----------------------------------------------------------------------------
# Edit sessions
# -----------------------------------------------------------------------------


@router.post(
    "/api/run",
    response_model=RunResponse,
    summary="Run an instruction",
    description="Create an edit session for the instruction and start it in the background.",
)
async def run_instruction(
    request: RunRequest,
    x_user_id: UserIdHeader = None,
) -> RunResponse:
    user_id = _require_user(x_user_id)
    services = get_services()

    try:
        session_id = await services.conversations.start_run(
            request.conversation_id,
            user_id,
            request.instruction,
        )
    except EngineError as e:
        _raise_http(e, "run_rejected", conversation_id=request.conversation_id)

    return RunResponse(session_id=session_id)


@router.get(
    "/api/poll/{session_id}",
    response_model=PollResponse,
    summary="Poll a session",
    description="Chunks with id greater than `after`, the session status and context usage.",
)
async def poll_session(
    session_id: Annotated[str, Path(description="The session ID")],
    after: Annotated[int, Query(description="Cursor: last chunk id seen", ge=0)] = 0,
) -> PollResponse:
    services = get_services()

    try:
        return await services.poll.poll(session_id, after=after)
    except EngineError as e:
        _raise_http(e, "poll_rejected", session_id=session_id)


@router.post(
    "/api/sessions/{session_id}/cancel",
    response_model=CancelResponse,
    summary="Cancel a session",
    description="Request cooperative cancellation of a pending or running session.",
)
async def cancel_session(
    session_id: Annotated[str, Path(description="The session ID")],
    x_user_id: UserIdHeader = None,
) -> CancelResponse:
    user_id = _require_user(x_user_id)
    services = get_services()

    try:
        session_status = await services.cancellation.request_cancel(session_id, user_id)
    except EngineError as e:
        _raise_http(e, "cancel_rejected", session_id=session_id)

    return CancelResponse(session_id=session_id, status=session_status)


# -----------------------------------------------------------------------------
# Health
# -----------------------------------------------------------------------------


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Health check endpoint with database status.",
)
async def health_check() -> HealthResponse:
    """Health check endpoint with store status."""
    database_available = False

    try:
        services = get_services()
        database_available = await services.store.ping()
    except RuntimeError:
        # Services not configured yet (e.g., during startup)
        pass
    except Exception as e:
        logger.warning("health_check_partial_failure", error=str(e))

    return HealthResponse(
        status="healthy" if database_available else "unhealthy",
        timestamp=time.time(),
        version=API_VERSION,
        database_available=database_available,
    )
