"""Polling client that follows an edit session to its end.

Thin wrapper around an httpx.AsyncClient pointed at the engine. It keeps the
cursor, feeds every chunk into a TurnRenderer and stops once the Done chunk has
been applied. Pages are capped server-side, so a client far behind a finished
session keeps polling without delay until it has caught up. A failed poll
never touches the server-side session: the error is shown inline and raised
as TransportError, and a fresh poller can resume from the conversation
snapshot later.

Usage:
    >>> async with httpx.AsyncClient(base_url="http://127.0.0.1:8000") as http:
    ...     poller = SessionPoller(http, session_id)
    ...     turn = await poller.run()
"""

import asyncio

import httpx
import structlog

from client.renderer import RenderedTurn, TurnRenderer
from errors import TransportError
from models.schemas import ActiveSessionSnapshot, ContextUsage, PollResponse
from session_state import is_terminal

logger = structlog.get_logger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 0.5


class SessionPoller:
    """Cursor-tracking poll loop for one session.

    Attributes:
        session_id: Session being followed.
        renderer: Receives every chunk in id order.
        cursor: Last chunk id acknowledged by the server (``after`` for the next poll).
        context_usage: Latest usage reported by a poll, if any.
        finished: True once Done was applied, or a terminal status came back
            with no chunks left after the cursor.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        session_id: str,
        renderer: TurnRenderer | None = None,
        interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        after: int = 0,
    ) -> None:
        self._http = http
        self.session_id = session_id
        self.renderer = renderer or TurnRenderer()
        self.interval_seconds = interval_seconds
        self.cursor = after
        self.context_usage: ContextUsage | None = None
        self.finished = False
        self._backlog = False

    def resume(self, snapshot: ActiveSessionSnapshot) -> int:
        """Replay a resumption snapshot and position the cursor after it.

        Returns:
            The cursor to poll from (the snapshot's ``last_chunk_id``).
        """
        for chunk in snapshot.chunks:
            if self.renderer.handle_chunk(chunk):
                self.finished = True
                break

        self.cursor = max(self.cursor, snapshot.last_chunk_id)
        logger.debug(
            "session_poller_resumed",
            session_id=self.session_id,
            cursor=self.cursor,
            finished=self.finished,
        )
        return self.cursor

    async def poll_once(self) -> bool:
        """Fetch and apply one poll response.

        Returns:
            True when the session is finished.

        Raises:
            TransportError: On a non-2xx response or a network failure.
        """
        try:
            resp = await self._http.get(
                f"/api/poll/{self.session_id}",
                params={"after": self.cursor},
            )
        except httpx.HTTPError as e:
            message = str(e) or "Polling error."
            self.renderer.append_error(message)
            logger.warning("session_poll_failed", session_id=self.session_id, error=message)
            raise TransportError(message) from e

        if resp.status_code >= 400:
            message = f"Poll failed: {resp.status_code}"
            self.renderer.append_error(message)
            logger.warning(
                "session_poll_failed",
                session_id=self.session_id,
                status_code=resp.status_code,
            )
            raise TransportError(message, status_code=resp.status_code)

        data = PollResponse.model_validate(resp.json())

        for chunk in data.chunks:
            if self.renderer.handle_chunk(chunk):
                self.finished = True
                break

        self.cursor = max(self.cursor, data.last_id, self.renderer.cursor)
        if data.context_usage is not None:
            self.context_usage = data.context_usage
        # A terminal status can arrive on a full page that stops short of Done;
        # only an empty page proves nothing is left to fetch.
        self._backlog = is_terminal(data.status) and bool(data.chunks)
        if is_terminal(data.status) and not data.chunks:
            self.finished = True

        return self.finished

    async def run(self, max_polls: int | None = None) -> RenderedTurn:
        """Poll until the session finishes (or ``max_polls`` is reached)."""
        polls = 0
        while not self.finished:
            await self.poll_once()
            polls += 1
            if self.finished or (max_polls is not None and polls >= max_polls):
                break
            if not self._backlog:
                await asyncio.sleep(self.interval_seconds)
        return self.renderer.snapshot()
