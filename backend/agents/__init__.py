"""Agent loops, workspace tools, prompts and LLM integration.

This module exports the key components needed for agent execution:
- AgentLoop: The contract the ExecutionHandler drives
- EditAgent: LangGraph tool-calling loop over a workspace (default)
- SimulatedAgentLoop / ScriptedAgentLoop: Deterministic loops
- ToolExecutor and tool definitions for workspace operations
- TurnActivityJournal for per-turn tool summaries
- LLM client utilities with retry and fallback
"""

from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Protocol

from agents.edit_graph import EditAgent, EditState
from agents.journal import TurnActivityJournal
from agents.prompts import BASE_EDIT_AGENT_PROMPT, get_edit_system_prompt
from agents.simulated import ScriptedAgentLoop, SimulatedAgentLoop
from agents.tools import (
    TOOL_DEFINITIONS,
    ToolExecutor,
    ToolResult,
    get_tool_definitions_for_llm,
    progress_message_for,
)
from agents.utils import (
    LLMClient,
    LLMResponse,
    MockLLMClient,
    ToolCallData,
    format_assistant_message_with_tools,
    format_tool_result_for_llm,
    make_response,
)
from config import settings
from events.types import AgentStreamItem
from models.records import MessageRecord


class AgentLoop(Protocol):
    """Streams one turn of agent work.

    Implementations raise CancellationSignal when ``is_cancelled`` reports a
    request at one of their checkpoints, and any other exception on failure.
    """

    def stream(
        self,
        instruction: str,
        previous_messages: list[MessageRecord],
        is_cancelled: Callable[[], Awaitable[bool]],
    ) -> AsyncIterator[AgentStreamItem]: ...


def create_agent_loop(workspace_path: str) -> AgentLoop:
    """Agent loop for a workspace, honouring the USE_MOCK_LLM setting."""
    if settings.use_mock_llm:
        return SimulatedAgentLoop()
    return EditAgent(workspace_path=workspace_path)


__all__ = [
    # Contract
    "AgentLoop",
    "create_agent_loop",
    # Loops
    "EditAgent",
    "EditState",
    "ScriptedAgentLoop",
    "SimulatedAgentLoop",
    # Tools
    "TOOL_DEFINITIONS",
    "ToolExecutor",
    "ToolResult",
    "get_tool_definitions_for_llm",
    "progress_message_for",
    # Journal
    "TurnActivityJournal",
    # Prompts
    "BASE_EDIT_AGENT_PROMPT",
    "get_edit_system_prompt",
    # Utils
    "LLMClient",
    "LLMResponse",
    "MockLLMClient",
    "ToolCallData",
    "format_assistant_message_with_tools",
    "format_tool_result_for_llm",
    "make_response",
]
