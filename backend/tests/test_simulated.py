"""Tests for agents/simulated.py -- the marker-driven and scripted agent loops."""

import pytest

from agents.simulated import (
    SIMULATED_FAILURE_MESSAGE,
    ScriptedAgentLoop,
    SimulatedAgentLoop,
)
from errors import AgentExecutionError, CancellationSignal
from events.types import (
    AgentEventItem,
    AgentEventKind,
    AgentStreamItem,
    ProgressItem,
    TextItem,
)


async def never_cancelled() -> bool:
    return False


async def always_cancelled() -> bool:
    return True


async def collect(
    loop: SimulatedAgentLoop | ScriptedAgentLoop,
    instruction: str,
    is_cancelled=never_cancelled,
) -> list[AgentStreamItem]:
    return [item async for item in loop.stream(instruction, [], is_cancelled)]


def kinds(items: list[AgentStreamItem]) -> list[str]:
    return [item.kind.value for item in items if isinstance(item, AgentEventItem)]


class TestSimulatedAgentLoop:
    async def test_plain_instruction(self) -> None:
        items = await collect(SimulatedAgentLoop(), "  Change the headline  ")

        assert kinds(items) == ["inference_start", "inference_stop"]
        texts = [item.content for item in items if isinstance(item, TextItem)]
        assert texts == ["Simulated edit completed for instruction: Change the headline"]
        assert any(isinstance(item, ProgressItem) for item in items)

    async def test_tool_marker(self) -> None:
        items = await collect(SimulatedAgentLoop(), "[simulate_tool] Change the headline")
        assert kinds(items) == [
            "inference_start",
            "tool_calling",
            "tool_called",
            "inference_stop",
        ]
        calling = next(
            item
            for item in items
            if isinstance(item, AgentEventItem) and item.kind == AgentEventKind.TOOL_CALLING
        )
        assert calling.tool_name == "replace_in_file"
        assert calling.input_bytes > 0

    async def test_error_marker(self) -> None:
        loop = SimulatedAgentLoop()
        items: list[AgentStreamItem] = []
        with pytest.raises(AgentExecutionError, match=SIMULATED_FAILURE_MESSAGE):
            async for item in loop.stream("[simulate_error] Change it", [], never_cancelled):
                items.append(item)
        assert kinds(items)[-1] == "agent_error"

    async def test_cancellation_before_inference(self) -> None:
        with pytest.raises(CancellationSignal):
            await collect(SimulatedAgentLoop(), "Change it", always_cancelled)

    async def test_slow_marker_waits_between_steps(self) -> None:
        items = await collect(
            SimulatedAgentLoop(slow_delay_seconds=0.001),
            "[simulate_slow] [simulate_tool] Change it",
        )
        assert kinds(items)[-1] == "inference_stop"


class TestScriptedAgentLoop:
    async def test_replays_and_records_calls(self) -> None:
        loop = ScriptedAgentLoop([TextItem(content="a"), TextItem(content="b")])
        items = await collect(loop, "Do it")
        assert [item.content for item in items if isinstance(item, TextItem)] == ["a", "b"]
        assert loop.calls == [("Do it", [])]

    async def test_raises_scripted_exception(self) -> None:
        loop = ScriptedAgentLoop([TextItem(content="a"), TimeoutError()])
        with pytest.raises(TimeoutError):
            await collect(loop, "Do it")

    async def test_awaits_callables(self) -> None:
        calls: list[str] = []

        async def step() -> None:
            calls.append("ran")

        loop = ScriptedAgentLoop([step, TextItem(content="after")])
        items = await collect(loop, "Do it")
        assert calls == ["ran"]
        assert len(items) == 1

    async def test_checks_cancellation_before_each_step(self) -> None:
        loop = ScriptedAgentLoop([TextItem(content="never")])
        with pytest.raises(CancellationSignal):
            await collect(loop, "Do it", always_cancelled)
