"""Tests for agents/tools.py -- tool definitions, ToolExecutor and progress lines.

The executor runs against a real temporary workspace folder.
"""

from pathlib import Path

import pytest

from agents.tools import (
    MAX_READ_FILE_CHARS,
    TOOL_DEFINITIONS,
    ToolArgumentError,
    ToolExecutor,
    clip_output,
    coerce_tool_arguments,
    get_tool_definitions_for_llm,
    progress_message_for,
)
from events.types import AgentEventItem, AgentEventKind, ToolInput

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def executor(workspace_dir: Path) -> ToolExecutor:
    return ToolExecutor(str(workspace_dir))


def calling(tool_name: str, path: str | None = None) -> AgentEventItem:
    inputs = [ToolInput(key="path", value=path)] if path is not None else []
    return AgentEventItem(kind=AgentEventKind.TOOL_CALLING, tool_name=tool_name, tool_inputs=inputs)


# =========================================================================
# Tool Definitions
# =========================================================================


class TestToolDefinitions:
    """Ensure tool definitions are well-formed."""

    def test_tool_names(self) -> None:
        names = {t["name"] for t in TOOL_DEFINITIONS}
        assert names == {
            "list_folder",
            "read_file",
            "write_file",
            "replace_in_file",
            "search_in_files",
        }

    def test_llm_format(self) -> None:
        formatted = get_tool_definitions_for_llm()
        assert len(formatted) == len(TOOL_DEFINITIONS)
        for tool in formatted:
            assert tool["type"] == "function"
            assert set(tool["function"]) == {"name", "description", "parameters"}


# =========================================================================
# ToolExecutor
# =========================================================================


class TestReadAndList:
    async def test_read_file(self, executor: ToolExecutor) -> None:
        result = await executor.execute("read_file", {"path": "src/index.html"}, "tc_1")
        assert result.success is True
        assert result.tool_call_id == "tc_1"
        assert "<h1>Old headline</h1>" in result.content

    async def test_read_missing_file(self, executor: ToolExecutor) -> None:
        result = await executor.execute("read_file", {"path": "src/missing.html"})
        assert result.success is True
        assert result.content == "Error: File not found: src/missing.html"

    async def test_read_large_file_is_truncated(
        self, executor: ToolExecutor, workspace_dir: Path
    ) -> None:
        (workspace_dir / "big.txt").write_text("a" * (MAX_READ_FILE_CHARS + 10))
        result = await executor.execute("read_file", {"path": "big.txt"})
        assert result.content.endswith("[10 more characters not shown]")

    async def test_list_folder(self, executor: ToolExecutor) -> None:
        root = await executor.execute("list_folder", {})
        assert root.content == "src/"
        src = await executor.execute("list_folder", {"path": "src"})
        assert src.content == "app.css\nindex.html"


class TestWrite:
    async def test_write_creates_parents(
        self, executor: ToolExecutor, workspace_dir: Path
    ) -> None:
        result = await executor.execute(
            "write_file", {"path": "src/pages/about.html", "content": "<p>é</p>"}
        )
        assert result.success is True
        assert result.content == "Successfully wrote 9 bytes to src/pages/about.html"
        assert (workspace_dir / "src" / "pages" / "about.html").read_text() == "<p>é</p>"

    async def test_replace_single_occurrence(
        self, executor: ToolExecutor, workspace_dir: Path
    ) -> None:
        result = await executor.execute(
            "replace_in_file",
            {"path": "src/index.html", "search": "Old headline", "replacement": "New headline"},
        )
        assert result.content == "Replaced 1 occurrence in src/index.html"
        assert "New headline" in (workspace_dir / "src" / "index.html").read_text()

    async def test_replace_with_empty_text_deletes(
        self, executor: ToolExecutor, workspace_dir: Path
    ) -> None:
        result = await executor.execute(
            "replace_in_file",
            {"path": "src/index.html", "search": "Old ", "replacement": ""},
        )
        assert result.success is True
        assert "<h1>headline</h1>" in (workspace_dir / "src" / "index.html").read_text()

    async def test_replace_ambiguous_snippet(
        self, executor: ToolExecutor, workspace_dir: Path
    ) -> None:
        result = await executor.execute(
            "replace_in_file",
            {"path": "src/index.html", "search": "body", "replacement": "main"},
        )
        assert result.content.startswith("Error: Search text occurs 2 times")
        assert "<body>" in (workspace_dir / "src" / "index.html").read_text()

    async def test_replace_missing_snippet(self, executor: ToolExecutor) -> None:
        result = await executor.execute(
            "replace_in_file",
            {"path": "src/index.html", "search": "nope", "replacement": "x"},
        )
        assert result.content == "Error: Search text not found in src/index.html"


class TestSearch:
    async def test_search_reports_path_and_line(self, executor: ToolExecutor) -> None:
        result = await executor.execute("search_in_files", {"pattern": "headline"})
        assert result.content == "src/index.html:1: <html><body><h1>Old headline</h1></body></html>"

    async def test_search_with_glob(self, executor: ToolExecutor) -> None:
        result = await executor.execute(
            "search_in_files", {"pattern": "navy", "file_glob": "*.html"}
        )
        assert result.content == "No matches found for pattern: navy"

    async def test_invalid_regex(self, executor: ToolExecutor) -> None:
        result = await executor.execute("search_in_files", {"pattern": "("})
        assert result.content.startswith("Error: Invalid pattern")


class TestErrors:
    async def test_unknown_tool(self, executor: ToolExecutor) -> None:
        result = await executor.execute("execute_command", {"command": "ls"})
        assert result.success is False
        assert result.error == "Unknown tool: execute_command"

    async def test_missing_required_argument(self, executor: ToolExecutor) -> None:
        result = await executor.execute("write_file", {"path": "a.txt"})
        assert result.success is False
        assert result.content == "Error: Missing required arguments: content"

    async def test_wrong_argument_type(self, executor: ToolExecutor) -> None:
        result = await executor.execute("read_file", {"path": 42})
        assert result.success is False
        assert "expected string" in (result.error or "")

    async def test_non_object_arguments(self, executor: ToolExecutor) -> None:
        result = await executor.execute("read_file", ["src/index.html"])
        assert result.success is False

    async def test_path_escape_is_reported_to_model(self, executor: ToolExecutor) -> None:
        result = await executor.execute("read_file", {"path": "../outside.txt"})
        assert result.success is False
        assert result.content == "Error: Path traversal blocked: contains '..'"


class TestArgumentCoercion:
    def test_unknown_keys_dropped_and_locators_trimmed(self) -> None:
        args = coerce_tool_arguments(
            "write_file", {"path": " a.txt ", "content": "  keep  ", "mode": "w"}
        )
        assert args == {"path": "a.txt", "content": "  keep  "}

    def test_empty_replacement_is_a_deletion(self) -> None:
        args = coerce_tool_arguments(
            "replace_in_file", {"path": "a.txt", "search": "x", "replacement": ""}
        )
        assert args["replacement"] == ""

    def test_empty_path_is_missing(self) -> None:
        with pytest.raises(ToolArgumentError, match="Missing required arguments: path"):
            coerce_tool_arguments("read_file", {"path": "  "})

    def test_clip_output(self) -> None:
        assert clip_output("short", 10) == "short"
        assert clip_output("abcdef", 4) == "abcd\n... [2 more characters not shown]"


# =========================================================================
# Progress messages
# =========================================================================


class TestProgressMessages:
    @pytest.mark.parametrize(
        "tool_name, path, expected",
        [
            ("read_file", "src/index.html", "Reading index.html"),
            ("write_file", "src/pages/about.html", "Writing about.html"),
            ("replace_in_file", "src/app.css", "Editing app.css"),
            ("list_folder", "src/", "Listing folder src"),
            ("search_in_files", "src", "Searching in src"),
            ("read_file", None, "Reading file"),
            ("search_in_files", None, "Searching files"),
            ("deploy", "site", "Running deploy on site"),
        ],
    )
    def test_tool_calls(self, tool_name: str, path: str | None, expected: str) -> None:
        assert progress_message_for(calling(tool_name, path)) == expected

    def test_inference_start(self) -> None:
        item = AgentEventItem(kind=AgentEventKind.INFERENCE_START)
        assert progress_message_for(item) == "Thinking…"

    def test_silent_events(self) -> None:
        assert progress_message_for(calling("deploy")) is None
        assert progress_message_for(AgentEventItem(kind=AgentEventKind.TOOL_CALLED)) is None
