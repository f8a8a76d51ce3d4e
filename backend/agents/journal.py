"""Per-turn record of tool activity.

The journal turns the tool calls of one turn into a compact numbered summary
that is stored as a ``turn_activity_summary`` message, so later turns know
which files were already read or changed even when the raw tool traffic is no
longer in the model context.

Summary format:
    1. [read_file] path="index.html" → <!DOCTYPE html>...
    2. [replace_in_file] path="index.html" search="Hello" replacement="Hi" → Replaced 1 occurrence in index.html
"""

import json
from dataclasses import dataclass
from typing import Any

from events.types import AgentEventItem, AgentEventKind

MAX_PARAM_VALUE_LENGTH = 80
MAX_RESULT_LENGTH = 150
MAX_SUMMARY_LENGTH = 4000


def _truncate(value: str, max_length: int) -> str:
    if len(value) <= max_length:
        return value
    return value[:max_length] + "..."


@dataclass(frozen=True)
class JournalEntry:
    name: str
    params: str
    result: str

    def format(self, number: int) -> str:
        line = f"{number}. [{self.name}]"
        if self.params:
            line += f" {self.params}"
        return f"{line} → {self.result or '(no output)'}"


class TurnActivityJournal:
    """Collects tool calls of a single turn.

    Feed it every AgentEventItem of the turn with ``observe``; a
    ``tool_calling`` event opens an entry and the following ``tool_called``
    event for the same tool closes it with the result.
    """

    def __init__(self) -> None:
        self._entries: list[JournalEntry] = []
        self._pending: dict[str, list[str]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def observe(self, item: AgentEventItem) -> None:
        name = item.tool_name or ""
        if item.kind == AgentEventKind.TOOL_CALLING:
            params = {entry.key: entry.value for entry in item.tool_inputs or []}
            self._pending.setdefault(name, []).append(self._format_params(params))
        elif item.kind == AgentEventKind.TOOL_CALLED:
            queued = self._pending.get(name)
            params = queued.pop(0) if queued else ""
            self.record(name, params, item.tool_result or "")

    def record(self, name: str, params: str | dict[str, Any], result: str) -> None:
        """Add one finished tool call."""
        if isinstance(params, dict):
            params = self._format_params(params)
        self._entries.append(
            JournalEntry(name=name, params=params, result=_truncate(result, MAX_RESULT_LENGTH))
        )

    def summary(self) -> str:
        """Numbered summary of the turn, "" when no tool ran.

        When the full text exceeds MAX_SUMMARY_LENGTH the oldest entries are
        collapsed into a single "(... and N earlier actions)" line.
        """
        if not self._entries:
            return ""

        full = "\n".join(entry.format(i + 1) for i, entry in enumerate(self._entries))
        if len(full) <= MAX_SUMMARY_LENGTH:
            return full

        recent: list[str] = []
        recent_length = 0
        collapsed = ""
        for i in range(len(self._entries) - 1, -1, -1):
            line = self._entries[i].format(i + 1)
            line_length = len(line) + 1
            header = f"(... and {i + 1} earlier actions)"
            if recent_length + line_length + len(header) + 1 > MAX_SUMMARY_LENGTH:
                collapsed = header
                break
            recent.insert(0, line)
            recent_length += line_length

        if collapsed:
            recent.insert(0, collapsed)
        return "\n".join(recent)

    @staticmethod
    def _format_params(params: dict[str, Any]) -> str:
        parts = []
        for key, value in params.items():
            text = value if isinstance(value, str) else json.dumps(value)
            parts.append(f'{key}="{_truncate(text, MAX_PARAM_VALUE_LENGTH)}"')
        return " ".join(parts)
