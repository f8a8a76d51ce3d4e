"""Item types streamed by an agent loop during one edit session.

Every item an agent yields becomes exactly one chunk in the session's chunk
log, in the order it was yielded:

    AgentEventItem  -> event chunk     (technical activity)
    TextItem        -> text chunk      (fragment of the assistant reply)
    ProgressItem    -> progress chunk  (user-facing status line)
"""

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class AgentEventKind(StrEnum):
    """Kinds of technical events an agent loop reports.

    - Inference: the model was called / answered
    - Tools: a tool call is about to run / has returned
    - Errors: the agent hit a failure it wants to surface
    """

    INFERENCE_START = "inference_start"
    INFERENCE_STOP = "inference_stop"
    TOOL_CALLING = "tool_calling"
    TOOL_CALLED = "tool_called"
    AGENT_ERROR = "agent_error"


class ToolInput(BaseModel):
    """One argument of a tool call, flattened to strings for display."""

    key: str
    value: str


class AgentEventItem(BaseModel):
    """A technical event emitted by the agent loop.

    Payload fields by kind:

    INFERENCE_START / INFERENCE_STOP:
        no extra fields

    TOOL_CALLING:
        - tool_name: str - Tool about to run
        - tool_inputs: list[ToolInput] - Its arguments
        - input_bytes: int - Size of the arguments as sent to the model

    TOOL_CALLED:
        - tool_name: str - Tool that ran
        - tool_result: str - Result text returned to the model
        - result_bytes: int - Size of the result as sent to the model

    AGENT_ERROR:
        - error_message: str - What went wrong
    """

    kind: AgentEventKind
    tool_name: str | None = None
    tool_inputs: list[ToolInput] | None = None
    tool_result: str | None = None
    error_message: str | None = None
    input_bytes: int = Field(default=0, ge=0)
    result_bytes: int = Field(default=0, ge=0)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "kind": "tool_calling",
                    "tool_name": "replace_in_file",
                    "tool_inputs": [
                        {"key": "path", "value": "index.html"},
                        {"key": "replacement", "value": "<h1>Hello</h1>"},
                    ],
                    "input_bytes": 48,
                }
            ]
        }
    }

    @property
    def context_bytes(self) -> int | None:
        """Bytes this event added to the model context, None when unknown."""
        total = self.input_bytes + self.result_bytes
        return total or None

    def to_payload(self) -> dict[str, Any]:
        """Wire payload of the event chunk; absent fields are omitted."""
        payload: dict[str, Any] = {"kind": self.kind.value}
        if self.tool_name is not None:
            payload["toolName"] = self.tool_name
        if self.tool_inputs is not None:
            payload["toolInputs"] = [
                {"key": item.key, "value": item.value} for item in self.tool_inputs
            ]
        if self.tool_result is not None:
            payload["toolResult"] = self.tool_result
        if self.error_message is not None:
            payload["errorMessage"] = self.error_message
        return payload


class TextItem(BaseModel):
    """A fragment of the assistant's natural-language reply."""

    content: str


class ProgressItem(BaseModel):
    """A short status line ("Reading index.html")."""

    message: str


AgentStreamItem = AgentEventItem | TextItem | ProgressItem
