"""Error taxonomy for the edit-session engine.

Request-level errors (validation, authorization, not found, conflict) are
raised by the services and translated to HTTP status codes in ``api/routes.py``.
Execution-time errors (``AgentExecutionError``, ``CancellationSignal``) never
leave the ExecutionHandler: they become a terminal Done chunk instead.
"""


class EngineError(Exception):
    """Base class for errors carrying a user-facing message."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class RequestValidationError(EngineError):
    """Missing or invalid request fields (HTTP 400)."""


class AuthorizationError(EngineError):
    """The caller does not own the conversation (HTTP 403)."""


class NotFoundError(EngineError):
    """Unknown conversation, session or workspace (HTTP 404)."""


class ConflictError(EngineError):
    """The target is in a state that does not allow the operation (HTTP 400)."""


class InvalidTransitionError(EngineError):
    """A session status change that the state machine does not allow."""

    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Invalid session transition: {current} -> {target}")
        self.current = current
        self.target = target


class AgentExecutionError(Exception):
    """The agent loop failed for a reason other than cancellation."""


class CancellationSignal(Exception):
    """Raised inside the agent loop once a cancellation request is observed.

    Deliberately not a subclass of ``AgentExecutionError`` so the handler can
    map it to the Cancelled outcome instead of Failed.
    """


class TransportError(Exception):
    """Client-side network or HTTP failure while polling a session."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
