"""Conversation lifecycle and the request-level operations built on it.

A conversation is one user's dialogue against one workspace. While it is
ongoing the workspace is reserved; finishing it (explicitly, or through the
stale-conversation reaper) gives the workspace back.

This service owns the validation and authorization rules of the HTTP
operations; routes only translate its errors into status codes.
"""

import uuid

import structlog

from cancellation import CancellationCoordinator
from chunk_log import ChunkLog, decode_payload, to_poll_chunk
from clock import Clock, to_storage
from context_usage import ContextUsageService
from errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    RequestValidationError,
)
from models.database import EditorStore
from models.records import ConversationRecord, EditSessionRecord
from models.schemas import (
    ActiveSessionSnapshot,
    ChunkType,
    ContextUsage,
    ConversationResponse,
    ConversationStatus,
    ConversationViewResponse,
    TurnView,
    WorkspaceStatus,
)
from session_manager import SessionManager
from session_state import is_active, is_terminal

logger = structlog.get_logger(__name__)


def conversation_to_response(conversation: ConversationRecord) -> ConversationResponse:
    return ConversationResponse(
        id=conversation.id,
        workspace_id=conversation.workspace_id,
        user_id=conversation.user_id,
        status=conversation.status,
        last_activity_at=(
            to_storage(conversation.last_activity_at)
            if conversation.last_activity_at
            else None
        ),
        created_at=to_storage(conversation.created_at),
    )


class ConversationService:
    """Start, run, inspect and finish conversations.

    Attributes:
        store: Datastore of record.
        session_manager: Executes submitted sessions in the background.
        chunk_log: Reader for turn history and resumption snapshots.
        context_usage: Estimates context usage for views.
        cancellation: Used to stop sessions of a finished conversation.
        clock: Time source for created-at timestamps.
    """

    def __init__(
        self,
        store: EditorStore,
        session_manager: SessionManager,
        chunk_log: ChunkLog,
        context_usage: ContextUsageService,
        cancellation: CancellationCoordinator,
        clock: Clock,
    ) -> None:
        self.store = store
        self.session_manager = session_manager
        self.chunk_log = chunk_log
        self.context_usage = context_usage
        self.cancellation = cancellation
        self.clock = clock

    async def _owned_conversation(
        self,
        conversation_id: str,
        user_id: str,
        forbidden_message: str = "Not authorized.",
    ) -> ConversationRecord:
        conversation = await self.store.get_conversation(conversation_id) if conversation_id else None
        if conversation is None:
            raise NotFoundError("Conversation not found.")
        if conversation.user_id != user_id:
            logger.warning(
                "conversation_access_denied",
                conversation_id=conversation_id,
                user_id=user_id,
            )
            raise AuthorizationError(forbidden_message)
        return conversation

    async def start_or_resume(self, workspace_id: str, user_id: str) -> ConversationRecord:
        """Return the user's ongoing conversation on a workspace, or start one.

        Raises:
            NotFoundError: Unknown workspace.
            ConflictError: Another conversation holds the workspace.
        """
        workspace = await self.store.get_workspace(workspace_id)
        if workspace is None:
            raise NotFoundError("Workspace not found.")

        existing = await self.store.find_ongoing_conversation(workspace_id, user_id)
        if existing is not None:
            logger.info(
                "conversation_resumed",
                conversation_id=existing.id,
                workspace_id=workspace_id,
            )
            return existing

        if await self.store.find_ongoing_conversation(workspace_id) is not None:
            raise ConflictError("Workspace is in use by another conversation.")

        conversation = await self.store.create_conversation(
            conversation_id=str(uuid.uuid4()),
            workspace_id=workspace_id,
            user_id=user_id,
            created_at=self.clock.now(),
        )
        logger.info(
            "conversation_started",
            conversation_id=conversation.id,
            workspace_id=workspace_id,
        )
        return conversation

    async def finish(self, conversation_id: str, user_id: str) -> None:
        """Finish an ongoing conversation and release its workspace.

        Sessions still in flight are asked to cancel.

        Raises:
            NotFoundError / AuthorizationError / ConflictError
        """
        conversation = await self._owned_conversation(conversation_id, user_id)
        if conversation.status != ConversationStatus.ONGOING:
            raise ConflictError("Conversation is not ongoing.")

        if not await self.store.finish_conversation(conversation_id):
            raise ConflictError("Conversation is not ongoing.")
        await self.store.set_workspace_status(
            conversation.workspace_id,
            WorkspaceStatus.AVAILABLE_FOR_CONVERSATION,
        )

        for session in await self.store.list_sessions(conversation_id):
            if is_terminal(session.status):
                continue
            try:
                await self.cancellation.cancel(session.id)
            except (ConflictError, NotFoundError) as e:
                logger.warning(
                    "finish_conversation_cancel_failed",
                    session_id=session.id,
                    error=e.message,
                )

        logger.info(
            "conversation_finished",
            conversation_id=conversation_id,
            workspace_id=conversation.workspace_id,
        )

    async def start_run(self, conversation_id: str, user_id: str, instruction: str) -> str:
        """Create a pending session for an instruction and schedule it.

        Returns:
            The new session id.

        Raises:
            RequestValidationError: Empty instruction.
            NotFoundError: Unknown conversation.
            AuthorizationError: Not the conversation's owner.
            ConflictError: Conversation not ongoing, or a turn still in flight.
        """
        if not instruction.strip():
            raise RequestValidationError("Instruction is required.")

        conversation = await self._owned_conversation(
            conversation_id,
            user_id,
            forbidden_message="Not authorized to run edits in this conversation.",
        )
        if conversation.status != ConversationStatus.ONGOING:
            raise ConflictError("Conversation is no longer active.")

        session = await self.store.create_session(
            session_id=str(uuid.uuid4()),
            conversation_id=conversation_id,
            instruction=instruction,
            created_at=self.clock.now(),
        )
        await self.session_manager.submit(session.id)

        logger.info(
            "edit_session_created",
            session_id=session.id,
            conversation_id=conversation_id,
            instruction_length=len(instruction),
        )
        return session.id

    async def get_context_usage(
        self,
        conversation_id: str,
        user_id: str,
        session_id: str | None = None,
    ) -> ContextUsage:
        await self._owned_conversation(conversation_id, user_id)
        return await self.context_usage.get_context_usage(
            conversation_id,
            active_session_id=session_id,
        )

    async def _turn_view(self, session: EditSessionRecord) -> TurnView:
        chunks = await self.chunk_log.all(session.id)
        response = "".join(
            decode_payload(chunk.payload_json).get("content", "")
            for chunk in chunks
            if chunk.chunk_type == ChunkType.TEXT
        )
        return TurnView(
            session_id=session.id,
            instruction=session.instruction,
            response=response,
            status=session.status,
            events=[
                to_poll_chunk(chunk)
                for chunk in chunks
                if chunk.chunk_type == ChunkType.EVENT
            ],
        )

    async def get_active_session_snapshot(
        self,
        conversation_id: str,
    ) -> ActiveSessionSnapshot | None:
        """Everything a reloaded client needs to resume the in-flight turn."""
        sessions = await self.store.list_sessions(conversation_id)
        active = next((s for s in reversed(sessions) if is_active(s.status)), None)
        if active is None:
            return None

        chunks = await self.chunk_log.all(active.id)
        return ActiveSessionSnapshot(
            id=active.id,
            status=active.status,
            instruction=active.instruction,
            chunks=[to_poll_chunk(chunk) for chunk in chunks],
            last_chunk_id=chunks[-1].id if chunks else 0,
        )

    async def get_conversation_view(
        self,
        conversation_id: str,
        user_id: str,
    ) -> ConversationViewResponse:
        """Turn history, resumable session and context usage of a conversation."""
        conversation = await self._owned_conversation(conversation_id, user_id)
        sessions = await self.store.list_sessions(conversation_id)

        turns = [await self._turn_view(session) for session in sessions]
        snapshot = await self.get_active_session_snapshot(conversation_id)
        usage = await self.context_usage.get_context_usage(
            conversation_id,
            active_session_id=snapshot.id if snapshot else None,
        )

        return ConversationViewResponse(
            conversation=conversation_to_response(conversation),
            turns=turns,
            active_session=snapshot,
            context_usage=usage,
        )
