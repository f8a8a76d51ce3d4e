"""Rebuilds the visible state of one turn from its chunks.

TurnRenderer is a pure state machine: it has no I/O and the same sequence of
chunks always renders to the same RenderedTurn. Feeding it a snapshot's chunks
and then the chunks of later polls gives the same result as feeding it every
poll response from the start, because chunks at or below the cursor are
ignored.
"""

from dataclasses import dataclass
from typing import Any

from chunk_log import decode_payload
from events.types import AgentEventKind
from models.schemas import ChunkType, PollChunk

TOOL_INPUT_DISPLAY_LIMIT = 50
TOOL_RESULT_DISPLAY_LIMIT = 100


def _clip(value: str, limit: int) -> str:
    return value[:limit] + "…" if len(value) > limit else value


def render_event_lines(payload: dict[str, Any]) -> list[str]:
    """Technical lines for one event payload."""
    kind = payload.get("kind") or "unknown"

    if kind == AgentEventKind.INFERENCE_START:
        return ["→ Sending to LLM…"]
    if kind == AgentEventKind.INFERENCE_STOP:
        return ["← LLM response received"]
    if kind == AgentEventKind.TOOL_CALLING:
        lines = [f"▶ {payload.get('toolName') or '?'}"]
        for tool_input in payload.get("toolInputs") or []:
            value = str(tool_input.get("value", ""))
            lines.append(
                f"    {tool_input.get('key', '')}: {_clip(value, TOOL_INPUT_DISPLAY_LIMIT)}"
            )
        return lines
    if kind == AgentEventKind.TOOL_CALLED:
        return [f"◀ {_clip(payload.get('toolResult') or '', TOOL_RESULT_DISPLAY_LIMIT)}"]
    if kind == AgentEventKind.AGENT_ERROR:
        return [f"✖ {payload.get('errorMessage') or 'Unknown error'}"]
    return [f"[{kind}]"]


@dataclass(frozen=True)
class RenderedTurn:
    """What the user sees for a turn at one moment."""

    reply: str = ""
    technical_lines: tuple[str, ...] = ()
    progress: str | None = None
    errors: tuple[str, ...] = ()
    done: bool = False
    success: bool | None = None
    last_chunk_id: int = 0


class TurnRenderer:
    """Applies chunks to the rendered state of a single turn."""

    def __init__(self) -> None:
        self.cursor = 0
        self._reply: list[str] = []
        self._technical_lines: list[str] = []
        self._errors: list[str] = []
        self._progress: str | None = None
        self._done = False
        self._success: bool | None = None

    @property
    def done(self) -> bool:
        return self._done

    def handle_chunk(self, chunk: PollChunk) -> bool:
        """Apply one chunk; returns True when it was the Done chunk.

        Chunks with an id at or below the cursor were already applied and are
        skipped.
        """
        if chunk.id <= self.cursor:
            return False
        self.cursor = chunk.id

        payload = decode_payload(chunk.payload)

        if chunk.chunk_type == ChunkType.TEXT:
            content = payload.get("content")
            if content:
                self._reply.append(content)
        elif chunk.chunk_type == ChunkType.EVENT:
            self._technical_lines.extend(render_event_lines(payload))
        elif chunk.chunk_type == ChunkType.PROGRESS:
            message = payload.get("message")
            if message:
                self._progress = message
        elif chunk.chunk_type == ChunkType.DONE:
            self._done = True
            self._progress = None
            if payload.get("success") is False:
                self._success = False
                if payload.get("errorMessage"):
                    self._errors.append(payload["errorMessage"])
            else:
                self._success = True
            return True

        return False

    def append_error(self, message: str) -> None:
        """Show an inline error that did not come from the chunk log."""
        self._errors.append(message)

    def snapshot(self) -> RenderedTurn:
        return RenderedTurn(
            reply="".join(self._reply),
            technical_lines=tuple(self._technical_lines),
            progress=self._progress,
            errors=tuple(self._errors),
            done=self._done,
            success=self._success,
            last_chunk_id=self.cursor,
        )
