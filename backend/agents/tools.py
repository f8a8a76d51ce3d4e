"""Workspace tools for the edit agent.

This module defines the tools the model may call while editing a workspace and
the ToolExecutor that runs them against the workspace folder on disk. It also
maps tool activity to the short progress lines shown in the chat.
"""

import asyncio
import fnmatch
import os
import re
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog

from events.types import AgentEventItem, AgentEventKind
from workspace_security import resolve_in_workspace

logger = structlog.get_logger()


TOOL_DEFINITIONS: list[dict[str, Any]] = [
    {
        "name": "list_folder",
        "description": (
            "List files and folders at the given path relative to the workspace. "
            "Returns names with '/' suffix for folders."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "Relative folder path, default '.'",
                },
            },
            "required": [],
        },
    },
    {
        "name": "read_file",
        "description": "Read the contents of a file relative to the workspace.",
        "parameters": {
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "Relative file path, e.g. 'src/index.html'",
                },
            },
            "required": ["path"],
        },
    },
    {
        "name": "write_file",
        "description": (
            "Create or overwrite a file relative to the workspace. "
            "Creates parent folders automatically."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "Relative file path",
                },
                "content": {
                    "type": "string",
                    "description": "Complete file content",
                },
            },
            "required": ["path", "content"],
        },
    },
    {
        "name": "replace_in_file",
        "description": (
            "Replace one exact occurrence of a text snippet in a file. "
            "Fails if the snippet is missing or occurs more than once."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "Relative file path",
                },
                "search": {
                    "type": "string",
                    "description": "Exact text to replace",
                },
                "replacement": {
                    "type": "string",
                    "description": "Text to put in its place",
                },
            },
            "required": ["path", "search", "replacement"],
        },
    },
    {
        "name": "search_in_files",
        "description": (
            "Search for a regular expression across workspace files. "
            "Returns matching lines as path:line: text."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "pattern": {
                    "type": "string",
                    "description": "Search pattern (regex supported)",
                },
                "path": {
                    "type": "string",
                    "description": "Folder to search in, default '.'",
                },
                "file_glob": {
                    "type": "string",
                    "description": "File name glob, e.g. '*.css'",
                },
            },
            "required": ["pattern"],
        },
    },
]

_TOOLS_BY_NAME: dict[str, dict[str, Any]] = {tool["name"]: tool for tool in TOOL_DEFINITIONS}

# Output ceilings: a single tool result must not crowd out the conversation.
MAX_READ_FILE_CHARS = 60_000
MAX_SEARCH_OUTPUT_CHARS = 15_000
MAX_SEARCH_FILE_BYTES = 2_000_000

_SKIPPED_DIRS = frozenset({".git", "node_modules", "vendor", "__pycache__"})

# Locator-like arguments lose surrounding whitespace; file text is kept verbatim.
_TRIMMED_ARGS = frozenset({"path", "pattern", "file_glob"})
# An empty replacement deletes the searched text.
_MAY_BE_EMPTY = frozenset({"replacement"})


class ToolArgumentError(ValueError):
    """A tool call whose arguments do not fit the tool's schema."""


def get_tool_definitions_for_llm() -> list[dict[str, Any]]:
    """TOOL_DEFINITIONS wrapped in the OpenAI function-calling envelope litellm expects."""
    return [
        {
            "type": "function",
            "function": {
                "name": tool["name"],
                "description": tool["description"],
                "parameters": tool["parameters"],
            },
        }
        for tool in TOOL_DEFINITIONS
    ]


def clip_output(text: str, limit: int) -> str:
    """Cut ``text`` to ``limit`` characters, noting how much was dropped."""
    overflow = len(text) - limit
    if overflow <= 0:
        return text
    return f"{text[:limit]}\n... [{overflow} more characters not shown]"


def coerce_tool_arguments(tool_name: str, args: Any) -> dict[str, Any]:
    """Check model-supplied arguments against the tool schema.

    Unknown keys are dropped, string parameters must be strings, and required
    parameters must be present and non-empty.

    Raises:
        ToolArgumentError: The tool does not exist or the arguments do not fit.
    """
    definition = _TOOLS_BY_NAME.get(tool_name)
    if definition is None:
        raise ToolArgumentError(f"Unknown tool: {tool_name}")
    if not isinstance(args, dict):
        raise ToolArgumentError(f"Arguments for {tool_name} must be an object")

    schema = definition["parameters"]
    accepted: dict[str, Any] = {}
    for name, prop in schema["properties"].items():
        if name not in args:
            continue
        value = args[name]
        if prop.get("type") == "string" and not isinstance(value, str):
            raise ToolArgumentError(f"Argument '{name}' expected string, got {type(value).__name__}")
        accepted[name] = value.strip() if name in _TRIMMED_ARGS else value

    missing = sorted(
        name
        for name in schema["required"]
        if accepted.get(name) is None or (accepted[name] == "" and name not in _MAY_BE_EMPTY)
    )
    if missing:
        raise ToolArgumentError(f"Missing required arguments: {', '.join(missing)}")
    return accepted


@dataclass
class ToolResult:
    """What one tool call produced.

    ``content`` is always what the model sees next; on failure it carries the
    error text and ``error`` repeats it for logging.
    """

    tool_call_id: str
    content: str
    success: bool
    error: str | None = None


def _display_name(path: str) -> str:
    path = path.strip()
    if not path:
        return "…"
    return os.path.basename(path.rstrip("/")) or path


def progress_message_for(item: AgentEventItem) -> str | None:
    """Short human-readable status line for an agent event, if any."""
    if item.kind == AgentEventKind.INFERENCE_START:
        return "Thinking…"
    if item.kind != AgentEventKind.TOOL_CALLING:
        return None

    tool_name = item.tool_name or ""
    path = next(
        (entry.value for entry in item.tool_inputs or [] if entry.key == "path" and entry.value),
        None,
    )
    label = _display_name(path) if path is not None else None

    templates: dict[str, tuple[str, str]] = {
        "list_folder": ("Listing folder {}", "Listing folder"),
        "read_file": ("Reading {}", "Reading file"),
        "write_file": ("Writing {}", "Writing file"),
        "replace_in_file": ("Editing {}", "Editing file"),
        "search_in_files": ("Searching in {}", "Searching files"),
    }
    if tool_name in templates:
        with_label, without_label = templates[tool_name]
        return with_label.format(label) if label is not None else without_label
    return f"Running {tool_name} on {label}" if label is not None else None


class ToolExecutor:
    """Executes tool calls against one workspace folder.

    File operations are blocking, so each call runs in a worker thread. The
    executor never raises for a failed tool: the error text becomes the tool
    result the model sees.

    Attributes:
        workspace_path: Root folder of the workspace being edited.
    """

    def __init__(self, workspace_path: str) -> None:
        self.workspace_path = workspace_path
        self._handlers: dict[str, Callable[[dict[str, Any]], str]] = {
            "list_folder": self._list_folder,
            "read_file": self._read_file,
            "write_file": self._write_file,
            "replace_in_file": self._replace_in_file,
            "search_in_files": self._search_in_files,
        }

    async def execute(
        self,
        tool_name: str,
        args: Any,
        tool_call_id: str | None = None,
    ) -> ToolResult:
        """Run one tool call; failures come back as an unsuccessful ToolResult."""
        started = time.time()
        call_id = tool_call_id or f"tool_{int(started * 1000)}"

        try:
            accepted = coerce_tool_arguments(tool_name, args)
            content = await asyncio.to_thread(self._handlers[tool_name], accepted)
        except Exception as e:
            logger.error(
                "tool_execution_failed",
                tool_name=tool_name,
                workspace_path=self.workspace_path,
                error=str(e),
            )
            result = ToolResult(call_id, f"Error: {e}", success=False, error=str(e))
        else:
            result = ToolResult(call_id, content, success=True)

        logger.debug(
            "tool_executed",
            tool_name=tool_name,
            success=result.success,
            duration_ms=int((time.time() - started) * 1000),
        )
        return result

    def _list_folder(self, args: dict[str, Any]) -> str:
        path = args.get("path") or "."
        folder = resolve_in_workspace(self.workspace_path, path)
        if not folder.is_dir():
            return f"Error: Folder not found: {path}"

        lines = [
            f"{entry.name}/" if entry.is_dir() else entry.name
            for entry in folder.iterdir()
        ]
        if not lines:
            return f"No files found in {path}"
        return "\n".join(sorted(lines))

    def _read_file(self, args: dict[str, Any]) -> str:
        path = args["path"]
        target = resolve_in_workspace(self.workspace_path, path)
        if not target.is_file():
            return f"Error: File not found: {path}"
        content = target.read_text(encoding="utf-8", errors="replace")
        return clip_output(content, MAX_READ_FILE_CHARS)

    def _write_file(self, args: dict[str, Any]) -> str:
        path = args["path"]
        content = args["content"]
        target = resolve_in_workspace(self.workspace_path, path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        return f"Successfully wrote {len(content.encode('utf-8'))} bytes to {path}"

    def _replace_in_file(self, args: dict[str, Any]) -> str:
        path = args["path"]
        search = args["search"]
        target = resolve_in_workspace(self.workspace_path, path)
        if not target.is_file():
            return f"Error: File not found: {path}"

        content = target.read_text(encoding="utf-8")
        occurrences = content.count(search)
        if occurrences == 0:
            return f"Error: Search text not found in {path}"
        if occurrences > 1:
            return (
                f"Error: Search text occurs {occurrences} times in {path}; "
                "include more surrounding text to make it unique"
            )

        target.write_text(content.replace(search, args["replacement"], 1), encoding="utf-8")
        return f"Replaced 1 occurrence in {path}"

    def _search_in_files(self, args: dict[str, Any]) -> str:
        pattern = args["pattern"]
        path = args.get("path") or "."
        file_glob = args.get("file_glob", "")

        try:
            regex = re.compile(pattern)
        except re.error as e:
            return f"Error: Invalid pattern: {e}"

        root = Path(self.workspace_path).resolve()
        base = resolve_in_workspace(self.workspace_path, path)

        matches: list[str] = []
        for dirpath, dirnames, filenames in os.walk(base):
            dirnames[:] = sorted(d for d in dirnames if d not in _SKIPPED_DIRS)
            for filename in sorted(filenames):
                if file_glob and not fnmatch.fnmatch(filename, file_glob):
                    continue
                file_path = Path(dirpath) / filename
                if file_path.stat().st_size > MAX_SEARCH_FILE_BYTES:
                    continue
                try:
                    text = file_path.read_text(encoding="utf-8")
                except (UnicodeDecodeError, OSError):
                    continue
                relative = file_path.relative_to(root).as_posix()
                for line_number, line in enumerate(text.splitlines(), start=1):
                    if regex.search(line):
                        matches.append(f"{relative}:{line_number}: {line.strip()}")

        if not matches:
            return f"No matches found for pattern: {pattern}"
        return clip_output("\n".join(matches), MAX_SEARCH_OUTPUT_CHARS)
