"""Shared test fixtures for backend tests.

Provides a fresh SQLite store per test, a frozen clock, a seeded workspace
and conversation, and helpers for building scripted agent loops so tests
never touch a real LLM API.
"""

import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

# Ensure the backend package root is on sys.path so that absolute imports
# like ``from models.database import ...`` resolve correctly when running
# pytest from the repository root.
_backend_root = str(Path(__file__).resolve().parent.parent)
if _backend_root not in sys.path:
    sys.path.insert(0, _backend_root)

from agents import AgentLoop  # noqa: E402
from agents.simulated import ScriptedAgentLoop  # noqa: E402
from agents.utils import LLMResponse, LLMUsage, ToolCallData  # noqa: E402
from clock import FrozenClock  # noqa: E402
from context_usage import ModelPricing  # noqa: E402
from events.types import AgentEventItem, AgentEventKind, TextItem, ToolInput  # noqa: E402
from models.database import EditorStore  # noqa: E402
from models.records import ConversationRecord  # noqa: E402

WORKSPACE_ID = "ws_landing"
OWNER_ID = "user_owner"
OTHER_USER_ID = "user_other"

TEST_PRICING = ModelPricing(
    model_name="test-model",
    max_tokens=100_000,
    input_cost_per_million=2.0,
    output_cost_per_million=10.0,
)

# ---------------------------------------------------------------------------
# Store / Clock
# ---------------------------------------------------------------------------


@pytest.fixture()
async def store(tmp_path: Path) -> EditorStore:
    """Return an initialized store backed by a per-test database file."""
    editor_store = EditorStore(str(tmp_path / "editor.db"))
    await editor_store.init()
    return editor_store


@pytest.fixture()
def clock() -> FrozenClock:
    """Return a clock frozen at 2026-01-01 12:00 UTC."""
    return FrozenClock()


@pytest.fixture()
def workspace_dir(tmp_path: Path) -> Path:
    """Create a small workspace folder on disk."""
    root = tmp_path / "workspaces" / WORKSPACE_ID
    (root / "src").mkdir(parents=True)
    (root / "src" / "index.html").write_text(
        "<html><body><h1>Old headline</h1></body></html>\n"
    )
    (root / "src" / "app.css").write_text("h1 { color: navy; }\n")
    return root


@pytest.fixture()
async def conversation(
    store: EditorStore,
    clock: FrozenClock,
    workspace_dir: Path,
) -> ConversationRecord:
    """An ongoing conversation of OWNER_ID on the seeded workspace."""
    await store.add_workspace(WORKSPACE_ID, str(workspace_dir))
    return await store.create_conversation(
        conversation_id="conv_1",
        workspace_id=WORKSPACE_ID,
        user_id=OWNER_ID,
        created_at=clock.now(),
    )


# ---------------------------------------------------------------------------
# Agent loop helpers
# ---------------------------------------------------------------------------


def factory_for(loop: AgentLoop) -> Callable[[str], AgentLoop]:
    """Agent factory that always returns the given loop."""
    return lambda _workspace_path: loop


def tool_call_pair(
    tool_name: str = "replace_in_file",
    path: str = "src/index.html",
    result: str = "Successfully replaced text in src/index.html",
) -> list[AgentEventItem]:
    """A tool_calling / tool_called pair as an agent would emit it."""
    return [
        AgentEventItem(
            kind=AgentEventKind.TOOL_CALLING,
            tool_name=tool_name,
            tool_inputs=[ToolInput(key="path", value=path)],
            input_bytes=40,
        ),
        AgentEventItem(
            kind=AgentEventKind.TOOL_CALLED,
            tool_name=tool_name,
            tool_result=result,
            result_bytes=len(result),
        ),
    ]


def successful_script(reply: str = "Updated the headline.") -> ScriptedAgentLoop:
    """A full turn: inference, one tool call, reply text, inference stop."""
    return ScriptedAgentLoop([
        AgentEventItem(kind=AgentEventKind.INFERENCE_START),
        *tool_call_pair(),
        TextItem(content=reply),
        AgentEventItem(kind=AgentEventKind.INFERENCE_STOP),
    ])


# ---------------------------------------------------------------------------
# Response Factories
# ---------------------------------------------------------------------------


def make_llm_response(
    content: str = "",
    tool_calls: list[ToolCallData] | None = None,
    finish_reason: str = "stop",
) -> LLMResponse:
    """Create an LLMResponse with sensible defaults."""
    return LLMResponse(
        content=content,
        tool_calls=tool_calls or [],
        finish_reason="tool_calls" if tool_calls else finish_reason,
        usage=LLMUsage(model="mock", input_tokens=10, output_tokens=20, latency_ms=100),
    )


def make_tool_call(name: str, args: dict[str, Any], call_id: str = "tc_1") -> ToolCallData:
    """Create a ToolCallData."""
    return ToolCallData(id=call_id, name=name, args=args)
