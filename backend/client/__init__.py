"""Client-side reconstruction of a turn from polled chunks."""

from client.poller import SessionPoller
from client.renderer import RenderedTurn, TurnRenderer, render_event_lines

__all__ = [
    "RenderedTurn",
    "SessionPoller",
    "TurnRenderer",
    "render_event_lines",
]
