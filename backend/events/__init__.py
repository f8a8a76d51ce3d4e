"""Agent stream item types.

An agent loop communicates with the ExecutionHandler by yielding these items
from an async iterator; the handler persists each one as a chunk.

Key Components:
    - AgentEventKind: Enum of technical event kinds
    - AgentEventItem: Tool/inference/error event with optional byte accounting
    - TextItem: Fragment of the assistant reply
    - ProgressItem: User-facing status line

Usage:
    >>> from events import AgentEventItem, AgentEventKind, TextItem
    >>>
    >>> async def stream(instruction, previous_messages, is_cancelled):
    ...     yield AgentEventItem(kind=AgentEventKind.INFERENCE_START)
    ...     yield TextItem(content="Done.")
"""

from events.types import (
    AgentEventItem,
    AgentEventKind,
    AgentStreamItem,
    ProgressItem,
    TextItem,
    ToolInput,
)

__all__ = [
    "AgentEventKind",
    "AgentEventItem",
    "AgentStreamItem",
    "ProgressItem",
    "TextItem",
    "ToolInput",
]
