"""Tests for chunk_log.py and the chunk storage in models/database.py.

Covers ordered gap-free delivery, idempotent reads, the single terminal Done
chunk, poll responses (limit, cursor, status, context usage) and payload
encoding.
"""

import json

import pytest

from chunk_log import ChunkLog, PollService, decode_payload, encode_payload
from clock import FrozenClock
from context_usage import ContextUsageService
from errors import NotFoundError
from events.types import AgentEventItem, AgentEventKind, ToolInput
from models.database import ChunkLogClosedError, EditorStore
from models.records import ConversationRecord
from models.schemas import ChunkType, SessionStatus
from tests.conftest import TEST_PRICING

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def chunk_log(store: EditorStore, clock: FrozenClock) -> ChunkLog:
    return ChunkLog(store, clock)


@pytest.fixture()
def poll_service(store: EditorStore, chunk_log: ChunkLog) -> PollService:
    usage = ContextUsageService(store, pricing=TEST_PRICING, bytes_per_token=4, system_prompt_bytes=0)
    return PollService(store, chunk_log, usage, limit=100)


@pytest.fixture()
async def running_session_id(
    store: EditorStore,
    clock: FrozenClock,
    conversation: ConversationRecord,
) -> str:
    session = await store.create_session(
        session_id="es_1",
        conversation_id=conversation.id,
        instruction="Change the headline",
        created_at=clock.now(),
    )
    await store.transition_session(
        session.id, SessionStatus.PENDING, SessionStatus.RUNNING, clock.now()
    )
    return session.id


# =========================================================================
# Payload encoding
# =========================================================================


class TestPayloadEncoding:
    def test_encode_is_compact_and_keeps_unicode(self) -> None:
        encoded = encode_payload({"content": "Überschrift → neu"})
        assert encoded == '{"content":"Überschrift → neu"}'

    def test_decode_malformed_returns_empty_dict(self) -> None:
        assert decode_payload("not json") == {}
        assert decode_payload("[1, 2]") == {}

    def test_event_payload_uses_camel_case(self, chunk_log: ChunkLog) -> None:
        item = AgentEventItem(
            kind=AgentEventKind.TOOL_CALLING,
            tool_name="read_file",
            tool_inputs=[ToolInput(key="path", value="src/index.html")],
        )
        payload = item.to_payload()
        assert payload == {
            "kind": "tool_calling",
            "toolName": "read_file",
            "toolInputs": [{"key": "path", "value": "src/index.html"}],
        }


# =========================================================================
# Appending
# =========================================================================


class TestAppend:
    async def test_ids_strictly_increase(
        self, chunk_log: ChunkLog, running_session_id: str
    ) -> None:
        first = await chunk_log.append_progress(running_session_id, "Thinking…")
        second = await chunk_log.append_text(running_session_id, "Hello")
        third = await chunk_log.append_event(
            running_session_id, AgentEventItem(kind=AgentEventKind.INFERENCE_START)
        )
        assert first.id < second.id < third.id

    async def test_event_context_bytes_are_stored(
        self, chunk_log: ChunkLog, running_session_id: str
    ) -> None:
        chunk = await chunk_log.append_event(
            running_session_id,
            AgentEventItem(
                kind=AgentEventKind.TOOL_CALLED,
                tool_name="read_file",
                tool_result="<h1>Hi</h1>",
                result_bytes=11,
            ),
        )
        stored = await chunk_log.all(running_session_id)
        assert stored[0].id == chunk.id
        assert stored[0].context_bytes == 11

    async def test_done_cannot_be_appended_directly(
        self, store: EditorStore, clock: FrozenClock, running_session_id: str
    ) -> None:
        with pytest.raises(ValueError):
            await store.append_chunk(
                running_session_id, ChunkType.DONE, "{}", clock.now()
            )

    async def test_nothing_follows_done(
        self, chunk_log: ChunkLog, running_session_id: str
    ) -> None:
        await chunk_log.append_text(running_session_id, "Hello")
        done = await chunk_log.append_done(
            running_session_id,
            expected=SessionStatus.RUNNING,
            target=SessionStatus.COMPLETED,
            success=True,
        )
        assert done is not None

        with pytest.raises(ChunkLogClosedError):
            await chunk_log.append_text(running_session_id, "late")

        chunks = await chunk_log.all(running_session_id)
        assert chunks[-1].chunk_type == ChunkType.DONE
        assert [c.chunk_type for c in chunks].count(ChunkType.DONE) == 1

    async def test_second_done_is_skipped(
        self, store: EditorStore, chunk_log: ChunkLog, running_session_id: str
    ) -> None:
        first = await chunk_log.append_done(
            running_session_id,
            expected=SessionStatus.RUNNING,
            target=SessionStatus.FAILED,
            success=False,
            error_message="Session timed out.",
        )
        second = await chunk_log.append_done(
            running_session_id,
            expected=SessionStatus.RUNNING,
            target=SessionStatus.COMPLETED,
            success=True,
        )
        assert first is not None
        assert second is None

        session = await store.get_session(running_session_id)
        assert session is not None
        assert session.status == SessionStatus.FAILED
        assert len(await chunk_log.all(running_session_id)) == 1

    async def test_done_payload_shape(
        self, chunk_log: ChunkLog, running_session_id: str
    ) -> None:
        done = await chunk_log.append_done(
            running_session_id,
            expected=SessionStatus.RUNNING,
            target=SessionStatus.CANCELLED,
            success=False,
            error_message="Cancelled by user.",
        )
        assert done is not None
        assert json.loads(done.payload_json) == {
            "success": False,
            "errorMessage": "Cancelled by user.",
        }


# =========================================================================
# Polling
# =========================================================================


class TestPoll:
    async def test_unknown_session_raises_not_found(self, poll_service: PollService) -> None:
        with pytest.raises(NotFoundError, match="Session not found."):
            await poll_service.poll("es_missing")

    async def test_empty_log_keeps_cursor(
        self, poll_service: PollService, running_session_id: str
    ) -> None:
        response = await poll_service.poll(running_session_id, after=7)
        assert response.chunks == []
        assert response.last_id == 7
        assert response.status == SessionStatus.RUNNING

    async def test_cursor_advancing_client_sees_every_chunk_once(
        self, poll_service: PollService, chunk_log: ChunkLog, running_session_id: str
    ) -> None:
        seen: list[int] = []
        cursor = 0

        for i in range(3):
            await chunk_log.append_text(running_session_id, f"part {i}")
            response = await poll_service.poll(running_session_id, after=cursor)
            seen.extend(chunk.id for chunk in response.chunks)
            cursor = response.last_id

        await chunk_log.append_progress(running_session_id, "Editing index.html")
        await chunk_log.append_done(
            running_session_id,
            expected=SessionStatus.RUNNING,
            target=SessionStatus.COMPLETED,
            success=True,
        )
        response = await poll_service.poll(running_session_id, after=cursor)
        seen.extend(chunk.id for chunk in response.chunks)

        all_ids = [chunk.id for chunk in await chunk_log.all(running_session_id)]
        assert seen == all_ids
        assert len(set(seen)) == len(seen)

    async def test_repeated_poll_is_idempotent(
        self, poll_service: PollService, chunk_log: ChunkLog, running_session_id: str
    ) -> None:
        await chunk_log.append_text(running_session_id, "Hello")
        await chunk_log.append_text(running_session_id, " world")

        first = await poll_service.poll(running_session_id, after=0)
        second = await poll_service.poll(running_session_id, after=0)
        assert first.chunks == second.chunks
        assert first.last_id == second.last_id

    async def test_limit_caps_response_and_cursor(
        self,
        store: EditorStore,
        chunk_log: ChunkLog,
        running_session_id: str,
    ) -> None:
        usage = ContextUsageService(store, pricing=TEST_PRICING)
        small = PollService(store, chunk_log, usage, limit=2)
        for i in range(5):
            await chunk_log.append_text(running_session_id, str(i))

        first = await small.poll(running_session_id, after=0)
        assert len(first.chunks) == 2
        second = await small.poll(running_session_id, after=first.last_id)
        assert len(second.chunks) == 2
        assert second.chunks[0].id > first.chunks[-1].id

    async def test_terminal_status_means_done_was_delivered(
        self, poll_service: PollService, chunk_log: ChunkLog, running_session_id: str
    ) -> None:
        await chunk_log.append_text(running_session_id, "Hello")
        await chunk_log.append_done(
            running_session_id,
            expected=SessionStatus.RUNNING,
            target=SessionStatus.COMPLETED,
            success=True,
        )
        response = await poll_service.poll(running_session_id, after=0)
        assert response.status == SessionStatus.COMPLETED
        assert response.chunks[-1].chunk_type == ChunkType.DONE
        assert response.context_usage is None

    async def test_context_usage_included_while_running(
        self, poll_service: PollService, running_session_id: str
    ) -> None:
        response = await poll_service.poll(running_session_id)
        assert response.context_usage is not None
        assert response.context_usage.model_name == "test-model"

    async def test_wire_format_is_camel_case(
        self, poll_service: PollService, chunk_log: ChunkLog, running_session_id: str
    ) -> None:
        await chunk_log.append_text(running_session_id, "Hello")
        response = await poll_service.poll(running_session_id)
        wire = response.model_dump(by_alias=True, mode="json")
        assert set(wire) == {"chunks", "lastId", "status", "contextUsage"}
        assert wire["chunks"][0]["chunkType"] == "text"
        assert json.loads(wire["chunks"][0]["payload"]) == {"content": "Hello"}
