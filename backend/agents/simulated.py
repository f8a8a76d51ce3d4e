"""Deterministic agent loops without a model provider.

SimulatedAgentLoop is used when ``USE_MOCK_LLM`` is set: it reacts to markers
in the instruction so the whole engine (chunks, cancellation, failure paths,
context usage) can be exercised end to end.

    [simulate_tool]   emit a replace_in_file call pair
    [simulate_error]  emit an agent_error event, then fail the turn
    [simulate_slow]   pause between steps (gives time to cancel)

ScriptedAgentLoop replays an explicit list of steps and is meant for tests.
"""

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

import structlog

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

TOOL_MARKER = "[simulate_tool]"
ERROR_MARKER = "[simulate_error]"
SLOW_MARKER = "[simulate_slow]"

SIMULATED_FAILURE_MESSAGE = "Simulated provider failure"


class SimulatedAgentLoop:
    """Marker-driven fake of the edit agent.

    Attributes:
        slow_delay_seconds: Pause between steps when the slow marker is present.
    """

    def __init__(self, slow_delay_seconds: float = 1.0) -> None:
        self.slow_delay_seconds = slow_delay_seconds

    async def stream(
        self,
        instruction: str,
        previous_messages: list[MessageRecord],
        is_cancelled: CancelPredicate,
    ) -> AsyncIterator[AgentStreamItem]:
        normalized = instruction.strip()
        slow = SLOW_MARKER in normalized

        async def checkpoint(where: str) -> None:
            if slow:
                await asyncio.sleep(self.slow_delay_seconds)
            if await is_cancelled():
                raise CancellationSignal(f"Cancellation observed {where}")

        logger.debug(
            "simulated_agent_turn_started",
            previous_messages=len(previous_messages),
            tool=TOOL_MARKER in normalized,
            error=ERROR_MARKER in normalized,
        )

        await checkpoint("before inference")
        yield AgentEventItem(kind=AgentEventKind.INFERENCE_START)
        yield ProgressItem(message="Analyzing instruction...")

        if TOOL_MARKER in normalized:
            await checkpoint("before tool call")
            yield AgentEventItem(
                kind=AgentEventKind.TOOL_CALLING,
                tool_name="replace_in_file",
                tool_inputs=[
                    ToolInput(key="path", value="src/index.html"),
                    ToolInput(key="replacement", value="Updated headline"),
                ],
                input_bytes=48,
            )
            yield ProgressItem(message="Applying tool changes...")
            yield AgentEventItem(
                kind=AgentEventKind.TOOL_CALLED,
                tool_name="replace_in_file",
                tool_result="Successfully replaced text in src/index.html",
                result_bytes=56,
            )
            await checkpoint("after tool call")

        if ERROR_MARKER in normalized:
            yield AgentEventItem(
                kind=AgentEventKind.AGENT_ERROR,
                error_message=SIMULATED_FAILURE_MESSAGE,
            )
            raise AgentExecutionError(SIMULATED_FAILURE_MESSAGE)

        yield TextItem(content=f"Simulated edit completed for instruction: {normalized}")
        yield AgentEventItem(kind=AgentEventKind.INFERENCE_STOP)


class ScriptedAgentLoop:
    """Agent loop that replays a fixed script.

    Each step is one of:
    - an AgentStreamItem, yielded as is
    - an Exception instance, raised at that point
    - a zero-argument async callable, awaited (e.g. to request cancellation
      mid-turn from inside the loop)

    The cancellation predicate is checked before every step, mirroring the
    checkpoints of the real agent.

    Attributes:
        calls: (instruction, previous_messages) of every stream() call.
    """

    def __init__(self, steps: list[Any]) -> None:
        self.steps = list(steps)
        self.calls: list[tuple[str, list[MessageRecord]]] = []

    async def stream(
        self,
        instruction: str,
        previous_messages: list[MessageRecord],
        is_cancelled: CancelPredicate,
    ) -> AsyncIterator[AgentStreamItem]:
        self.calls.append((instruction, list(previous_messages)))
        for step in self.steps:
            if await is_cancelled():
                raise CancellationSignal("Cancellation observed between steps")
            if isinstance(step, BaseException):
                raise step
            if callable(step):
                await step()
                continue
            yield step
