"""Tests for agents/journal.py -- per-turn tool activity summaries."""

from agents.journal import (
    MAX_RESULT_LENGTH,
    MAX_SUMMARY_LENGTH,
    TurnActivityJournal,
)
from events.types import AgentEventItem, AgentEventKind
from tests.conftest import tool_call_pair


class TestObserve:
    def test_empty_turn_has_no_summary(self) -> None:
        journal = TurnActivityJournal()
        journal.observe(AgentEventItem(kind=AgentEventKind.INFERENCE_START))
        assert journal.summary() == ""
        assert len(journal) == 0

    def test_calling_and_called_are_paired(self) -> None:
        journal = TurnActivityJournal()
        for item in tool_call_pair("read_file", "src/index.html", "<h1>Old headline</h1>"):
            journal.observe(item)
        for item in tool_call_pair("replace_in_file", "src/index.html", "Replaced 1 occurrence"):
            journal.observe(item)

        assert journal.summary() == (
            '1. [read_file] path="src/index.html" → <h1>Old headline</h1>\n'
            '2. [replace_in_file] path="src/index.html" → Replaced 1 occurrence'
        )

    def test_result_without_calling_event(self) -> None:
        journal = TurnActivityJournal()
        journal.observe(
            AgentEventItem(kind=AgentEventKind.TOOL_CALLED, tool_name="list_folder")
        )
        assert journal.summary() == "1. [list_folder] → (no output)"


class TestRecord:
    def test_dict_params_and_long_values_are_truncated(self) -> None:
        journal = TurnActivityJournal()
        journal.record(
            "write_file",
            {"path": "a.html", "content": "x" * 200, "overwrite": True},
            "r" * 300,
        )
        line = journal.summary()
        assert f'content="{"x" * 80}..."' in line
        assert 'overwrite="true"' in line
        assert line.endswith("r" * MAX_RESULT_LENGTH + "...")

    def test_long_turn_collapses_oldest_entries(self) -> None:
        journal = TurnActivityJournal()
        for i in range(200):
            journal.record("read_file", {"path": f"page_{i}.html"}, "y" * 100)

        summary = journal.summary()
        assert len(summary) <= MAX_SUMMARY_LENGTH
        first_line = summary.splitlines()[0]
        assert first_line.startswith("(... and ")
        assert first_line.endswith(" earlier actions)")
        assert summary.splitlines()[-1].startswith("200. [read_file]")
