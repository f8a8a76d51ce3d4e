"""Tests for models/schemas.py -- wire names and request validation."""

import pytest
from pydantic import ValidationError

from models.schemas import (
    ChunkType,
    PollChunk,
    PollResponse,
    RunRequest,
    SessionStatus,
    StartConversationRequest,
)


class TestRequests:
    def test_run_request_accepts_camel_case(self) -> None:
        request = RunRequest.model_validate(
            {"conversationId": "conv_1", "instruction": "Change the headline"}
        )
        assert request.conversation_id == "conv_1"

    def test_run_request_defaults_to_empty_fields(self) -> None:
        request = RunRequest.model_validate({})
        assert request.instruction == ""
        assert request.conversation_id == ""

    def test_run_request_rejects_huge_instruction(self) -> None:
        with pytest.raises(ValidationError):
            RunRequest(instruction="x" * 20001, conversation_id="conv_1")

    def test_start_conversation_requires_workspace(self) -> None:
        with pytest.raises(ValidationError):
            StartConversationRequest.model_validate({"workspaceId": ""})


class TestResponses:
    def test_poll_response_wire_names(self) -> None:
        response = PollResponse(
            chunks=[PollChunk(id=3, chunk_type=ChunkType.PROGRESS, payload='{"message":"Hi"}')],
            last_id=3,
            status=SessionStatus.RUNNING,
        )
        assert response.model_dump(by_alias=True, mode="json") == {
            "chunks": [{"id": 3, "chunkType": "progress", "payload": '{"message":"Hi"}'}],
            "lastId": 3,
            "status": "running",
            "contextUsage": None,
        }

    def test_poll_response_parses_wire_format(self) -> None:
        response = PollResponse.model_validate(
            {"chunks": [], "lastId": 0, "status": "cancelling", "contextUsage": None}
        )
        assert response.status == SessionStatus.CANCELLING
