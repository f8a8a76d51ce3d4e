"""Tool-calling edit agent as a LangGraph loop.

    START -> reason -> [tools requested -> execute -> reason | done -> END]

1. REASON: Call the model with the conversation history and tool schemas
2. EXECUTE: Run the requested tools against the workspace, feed results back

The graph runs in a background task and hands every stream item to the
consumer through an asyncio.Queue as soon as it is produced, so the
ExecutionHandler can persist it immediately.

Cancellation is cooperative. The ``is_cancelled`` predicate is checked before
each inference call and before and after each tool call, never while a tool
runs; when it fires the node raises CancellationSignal.

Items emitted:
- inference_start / inference_stop around each model call
- tool_calling / tool_called around each tool execution
- TextItem for assistant text
- ProgressItem for status lines ("Thinking…", "Editing index.html")
"""

import asyncio
import contextlib
import json
import operator
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Annotated, Any, Literal, TypedDict

import structlog
from langgraph.graph import END, START, StateGraph

from agents.prompts import get_edit_system_prompt
from agents.tools import ToolExecutor, get_tool_definitions_for_llm, progress_message_for
from agents.utils import (
    LLMClient,
    format_assistant_message_with_tools,
    format_tool_result_for_llm,
    history_to_llm_messages,
)
from config import settings
from errors import AgentExecutionError, CancellationSignal
from events.types import (
    AgentEventItem,
    AgentEventKind,
    AgentStreamItem,
    ProgressItem,
    TextItem,
    ToolInput,
)
from models.records import MessageRecord

logger = structlog.get_logger()

CancelPredicate = Callable[[], Awaitable[bool]]

_STREAM_END = object()


class EditState(TypedDict):
    """State flowing through the edit graph.

    Attributes:
        messages: LLM message history (system, prior turns, this turn)
        iteration: Completed reason steps
        max_iterations: Hard limit on reason steps
        status: Where the loop is
        pending_tool_calls: Tool calls requested by the last model response
    """

    messages: Annotated[list[dict[str, Any]], operator.add]
    iteration: int
    max_iterations: int
    status: Literal["reasoning", "executing", "complete"]
    pending_tool_calls: list[dict[str, Any]]


def _byte_length(value: str) -> int:
    return len(value.encode("utf-8"))


def _tool_inputs(args: dict[str, Any]) -> list[ToolInput]:
    return [
        ToolInput(key=key, value=value if isinstance(value, str) else json.dumps(value))
        for key, value in args.items()
    ]


class _EditRun:
    """One streaming run of the graph: its queue, predicate and tools."""

    def __init__(
        self,
        llm_client: LLMClient,
        tool_executor: ToolExecutor,
        is_cancelled: CancelPredicate,
        temperature: float,
    ) -> None:
        self.llm_client = llm_client
        self.tool_executor = tool_executor
        self.is_cancelled = is_cancelled
        self.temperature = temperature
        self.queue: asyncio.Queue[Any] = asyncio.Queue()
        self.compiled_graph = self._build_graph()

    def _build_graph(self) -> Any:
        graph = StateGraph(EditState)

        graph.add_node("reason", self._reason)
        graph.add_node("execute", self._execute_tools)

        graph.add_edge(START, "reason")
        graph.add_conditional_edges(
            "reason",
            self._after_reason,
            {
                "execute": "execute",
                "end": END,
            },
        )
        graph.add_edge("execute", "reason")

        return graph.compile()

    async def _emit(self, item: AgentStreamItem) -> None:
        await self.queue.put(item)
        if isinstance(item, AgentEventItem):
            message = progress_message_for(item)
            if message:
                await self.queue.put(ProgressItem(message=message))

    async def _check_cancelled(self, where: str) -> None:
        if await self.is_cancelled():
            logger.info("edit_agent_cancellation_observed", checkpoint=where)
            raise CancellationSignal(f"Cancellation observed {where}")

    async def _reason(self, state: EditState) -> dict[str, Any]:
        iteration = state["iteration"]
        if iteration >= state["max_iterations"]:
            logger.warning(
                "max_iterations_reached",
                iterations=iteration,
                max_iterations=state["max_iterations"],
            )
            raise AgentExecutionError(
                f"Agent stopped after {iteration} steps without finishing the edit."
            )

        await self._check_cancelled("before inference")
        await self._emit(AgentEventItem(kind=AgentEventKind.INFERENCE_START))

        response = await self.llm_client.call(
            messages=list(state["messages"]),
            tools=get_tool_definitions_for_llm(),
            temperature=self.temperature,
        )

        await self._emit(AgentEventItem(kind=AgentEventKind.INFERENCE_STOP))
        if response.content:
            await self._emit(TextItem(content=response.content))

        logger.info(
            "edit_agent_reason_complete",
            iteration=iteration + 1,
            tool_calls=len(response.tool_calls),
        )

        assistant_message = format_assistant_message_with_tools(
            response.content,
            response.tool_calls,
        )
        return {
            "messages": [assistant_message],
            "iteration": iteration + 1,
            "status": "executing" if response.tool_calls else "complete",
            "pending_tool_calls": [
                {"id": tc.id, "name": tc.name, "args": tc.args}
                for tc in response.tool_calls
            ],
        }

    def _after_reason(self, state: EditState) -> str:
        return "execute" if state["status"] == "executing" else "end"

    async def _execute_tools(self, state: EditState) -> dict[str, Any]:
        tool_messages: list[dict[str, Any]] = []

        for call in state["pending_tool_calls"]:
            args = call["args"]
            await self._check_cancelled("before tool call")
            await self._emit(
                AgentEventItem(
                    kind=AgentEventKind.TOOL_CALLING,
                    tool_name=call["name"],
                    tool_inputs=_tool_inputs(args),
                    input_bytes=_byte_length(json.dumps(args)),
                )
            )

            result = await self.tool_executor.execute(
                tool_name=call["name"],
                args=args,
                tool_call_id=call["id"],
            )

            await self._emit(
                AgentEventItem(
                    kind=AgentEventKind.TOOL_CALLED,
                    tool_name=call["name"],
                    tool_result=result.content,
                    result_bytes=_byte_length(result.content),
                )
            )
            tool_messages.append(format_tool_result_for_llm(result.tool_call_id, result.content))
            await self._check_cancelled("after tool call")

        return {
            "messages": tool_messages,
            "status": "reasoning",
            "pending_tool_calls": [],
        }

    async def _drive(self, initial_state: EditState) -> None:
        try:
            await self.compiled_graph.ainvoke(
                initial_state,
                {"recursion_limit": initial_state["max_iterations"] * 2 + 5},
            )
        finally:
            await self.queue.put(_STREAM_END)


class EditAgent:
    """Default agent loop: litellm-driven tool calling over a workspace.

    Usage:
        >>> agent = EditAgent(workspace_path="/srv/workspaces/ws_1")
        >>> async for item in agent.stream(instruction, history, is_cancelled):
        ...     persist(item)
    """

    def __init__(
        self,
        workspace_path: str,
        llm_client: LLMClient | None = None,
        max_iterations: int | None = None,
        temperature: float = 0.2,
    ) -> None:
        self.workspace_path = workspace_path
        self.llm_client = llm_client or LLMClient()
        self.max_iterations = max_iterations or settings.max_agent_iterations
        self.temperature = temperature

    def _initial_state(
        self,
        instruction: str,
        previous_messages: list[MessageRecord],
    ) -> EditState:
        return EditState(
            messages=[
                {"role": "system", "content": get_edit_system_prompt(instruction)},
                *history_to_llm_messages(previous_messages),
                {"role": "user", "content": instruction},
            ],
            iteration=0,
            max_iterations=self.max_iterations,
            status="reasoning",
            pending_tool_calls=[],
        )

    async def stream(
        self,
        instruction: str,
        previous_messages: list[MessageRecord],
        is_cancelled: CancelPredicate,
    ) -> AsyncIterator[AgentStreamItem]:
        """Run one turn, yielding items as the graph produces them.

        Raises:
            CancellationSignal: When the predicate fires at a checkpoint.
            Exception: Whatever the model client or graph raised.
        """
        run = _EditRun(
            llm_client=self.llm_client,
            tool_executor=ToolExecutor(self.workspace_path),
            is_cancelled=is_cancelled,
            temperature=self.temperature,
        )
        task = asyncio.create_task(
            run._drive(self._initial_state(instruction, previous_messages)),
            name="edit_agent_graph",
        )

        try:
            while True:
                item = await run.queue.get()
                if item is _STREAM_END:
                    break
                yield item
            # Surface the graph's exception, if any, after its items.
            await task
        finally:
            if not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
