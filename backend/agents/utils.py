"""Model access and message plumbing for the edit agent.

- LLMClient: litellm completion with backoff on transient provider errors and
  an optional single fallback model
- MockLLMClient / make_response: scripted responses for tests and local runs
- normalize_tool_args: Coerce model-emitted tool arguments into a dict
- format_tool_result_for_llm / format_assistant_message_with_tools: The two
  history entries of a tool-calling round
- history_to_llm_messages: Replay persisted conversation messages as LLM input
"""

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import Any

import structlog
from litellm import ModelResponse, acompletion
from litellm.exceptions import (
    AuthenticationError,
    BadRequestError,
    RateLimitError,
    ServiceUnavailableError,
    Timeout,
)

from config import settings
from models.records import MessageRecord
from models.schemas import MessageRole

logger = structlog.get_logger()

# Worth another attempt: throttling, provider outages, timeouts.
TRANSIENT_ERRORS: tuple[type[Exception], ...] = (
    RateLimitError,
    ServiceUnavailableError,
    Timeout,
)
# Retrying cannot help: bad credentials or a malformed request.
PERMANENT_ERRORS: tuple[type[Exception], ...] = (AuthenticationError, BadRequestError)

MAX_BACKOFF_SECONDS = 4.0


def normalize_tool_args(raw_args: Any) -> dict[str, Any]:
    """Coerce tool-call arguments into a dict.

    Providers normally send a JSON object string, but models sometimes emit a
    bare array, a primitive or broken JSON. Whatever arrives, the tool
    executor gets a dict and reports argument problems itself.
    """
    if isinstance(raw_args, dict):
        return raw_args
    if raw_args is None:
        return {}
    if not isinstance(raw_args, str):
        return {"value": raw_args}

    try:
        parsed = json.loads(raw_args)
    except json.JSONDecodeError:
        return {"raw": raw_args}
    return parsed if isinstance(parsed, dict) else {"value": parsed}


@dataclass
class ToolCallData:
    """A tool invocation requested by the model."""

    id: str
    name: str
    args: dict[str, Any]


@dataclass
class LLMUsage:
    """Token and latency figures for a single LLM call."""

    model: str
    input_tokens: int
    output_tokens: int
    latency_ms: int


@dataclass
class LLMResponse:
    """One completion, reduced to what the agent loop consumes.

    Attributes:
        content: Assistant text ("" when the model only called tools)
        tool_calls: Requested tool invocations, in order
        finish_reason: Provider stop reason (stop, tool_calls, length, ...)
        usage: Token counts and latency of the call that produced it
        raw_response: The litellm response, kept for debugging
    """

    content: str
    tool_calls: list[ToolCallData]
    finish_reason: str
    usage: LLMUsage
    raw_response: ModelResponse | None = field(default=None, repr=False)


class LLMClient:
    """litellm-backed chat completion client.

    A call first goes to the requested (or default) model, retried with
    exponential backoff while the provider reports transient errors. When
    those retries run out and a different fallback model is configured, the
    fallback gets exactly one attempt. Permanent errors are raised at once.

    Attributes:
        default_model: Model used when a call names none.
        fallback_model: Model tried once after the primary gives up.
        retry_attempts: Extra attempts on the primary after the first one.
        retry_delay: Backoff base in seconds; doubles per attempt.
    """

    def __init__(
        self,
        default_model: str | None = None,
        fallback_model: str | None = None,
        retry_attempts: int | None = None,
        retry_delay: float = 1.0,
    ) -> None:
        self.default_model = default_model or settings.default_model
        self.fallback_model = fallback_model or settings.llm_fallback_model
        self.retry_attempts = (
            settings.llm_max_retries if retry_attempts is None else retry_attempts
        )
        self.retry_delay = retry_delay

    async def call(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Complete a conversation, optionally with tool schemas.

        Raises:
            AuthenticationError / BadRequestError: Immediately, never retried.
            Exception: The primary model's last transient error when retries
                and the fallback are exhausted.
        """
        primary = model or self.default_model
        request = {
            "messages": messages,
            "tools": tools,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        started = time.time()

        try:
            return await self._call_with_backoff(primary, request, started)
        except TRANSIENT_ERRORS as primary_error:
            if not self.fallback_model or self.fallback_model == primary:
                raise
            return await self._call_fallback(primary, primary_error, request, started)

    async def _call_with_backoff(
        self,
        model: str,
        request: dict[str, Any],
        started: float,
    ) -> LLMResponse:
        attempt = 0
        while True:
            try:
                response = await self._make_request(model=model, **request)
            except PERMANENT_ERRORS as e:
                logger.error(
                    "llm_call_failed_no_retry",
                    model=model,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                raise
            except TRANSIENT_ERRORS as e:
                if attempt >= self.retry_attempts:
                    logger.error(
                        "llm_call_failed_all_retries",
                        model=model,
                        attempts=attempt + 1,
                        error_type=type(e).__name__,
                        error=str(e),
                    )
                    raise
                delay = min(self.retry_delay * (2 ** attempt), MAX_BACKOFF_SECONDS)
                logger.warning(
                    "llm_call_retry",
                    model=model,
                    attempt=attempt + 1,
                    max_retries=self.retry_attempts,
                    error_type=type(e).__name__,
                    retry_delay=delay,
                )
                await self._async_sleep(delay)
                attempt += 1
                continue

            result = self._parse_response(response, model, int((time.time() - started) * 1000))
            logger.info(
                "llm_call_complete",
                model=model,
                input_tokens=result.usage.input_tokens,
                output_tokens=result.usage.output_tokens,
                latency_ms=result.usage.latency_ms,
                tool_calls=len(result.tool_calls),
                attempt=attempt + 1,
            )
            return result

    async def _call_fallback(
        self,
        primary: str,
        primary_error: Exception,
        request: dict[str, Any],
        started: float,
    ) -> LLMResponse:
        fallback = self.fallback_model
        assert fallback is not None
        logger.warning(
            "llm_fallback_attempt",
            primary_model=primary,
            fallback_model=fallback,
            primary_error=str(primary_error),
        )
        try:
            response = await self._make_request(model=fallback, **request)
        except Exception as e:
            logger.error(
                "llm_fallback_failed",
                fallback_model=fallback,
                error_type=type(e).__name__,
                error=str(e),
            )
            # Report the primary model's failure, not the fallback's.
            raise primary_error from e

        result = self._parse_response(response, fallback, int((time.time() - started) * 1000))
        logger.info(
            "llm_fallback_success",
            fallback_model=fallback,
            latency_ms=result.usage.latency_ms,
        )
        return result

    async def _make_request(
        self,
        model: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
        temperature: float,
        max_tokens: int | None,
    ) -> ModelResponse:
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "timeout": settings.llm_request_timeout_seconds,
        }
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"
        if max_tokens:
            kwargs["max_tokens"] = max_tokens
        return await acompletion(**kwargs)

    def _parse_response(
        self,
        response: ModelResponse,
        model: str,
        latency_ms: int,
    ) -> LLMResponse:
        choice = response.choices[0]
        message = choice.message
        tool_calls = [
            ToolCallData(
                id=tc.id,
                name=tc.function.name,
                args=normalize_tool_args(tc.function.arguments),
            )
            for tc in message.tool_calls or []
        ]
        usage = response.usage
        return LLMResponse(
            content=message.content or "",
            tool_calls=tool_calls,
            finish_reason=choice.finish_reason or "unknown",
            usage=LLMUsage(
                model=model,
                input_tokens=usage.prompt_tokens if usage else 0,
                output_tokens=usage.completion_tokens if usage else 0,
                latency_ms=latency_ms,
            ),
            raw_response=response,
        )

    async def _async_sleep(self, seconds: float) -> None:
        # Separate method so tests can skip the backoff.
        await asyncio.sleep(seconds)


def format_tool_result_for_llm(tool_call_id: str, result: str) -> dict[str, Any]:
    """History entry carrying one tool result back to the model."""
    return {
        "role": "tool",
        "tool_call_id": tool_call_id,
        "content": result,
    }


def format_assistant_message_with_tools(
    content: str,
    tool_calls: list[ToolCallData],
) -> dict[str, Any]:
    """History entry for an assistant reply, with its tool calls if any."""
    message: dict[str, Any] = {"role": "assistant", "content": content}
    if tool_calls:
        message["tool_calls"] = [
            {
                "id": tc.id,
                "type": "function",
                "function": {"name": tc.name, "arguments": json.dumps(tc.args)},
            }
            for tc in tool_calls
        ]
    return message


def history_to_llm_messages(messages: list[MessageRecord]) -> list[dict[str, Any]]:
    """Convert persisted conversation messages into LLM chat messages.

    Turn activity summaries are replayed as assistant notes so the model
    remembers which files it touched in earlier turns.
    """
    converted: list[dict[str, Any]] = []
    for message in messages:
        try:
            content = json.loads(message.content_json).get("content", "")
        except (json.JSONDecodeError, AttributeError):
            logger.warning(
                "history_message_unreadable",
                message_id=message.id,
                role=message.role.value,
            )
            continue

        if message.role == MessageRole.USER:
            converted.append({"role": "user", "content": content})
        elif message.role == MessageRole.ASSISTANT:
            converted.append({"role": "assistant", "content": content})
        else:
            converted.append({
                "role": "assistant",
                "content": f"[Activity in that turn]\n{content}",
            })
    return converted


class MockLLMClient(LLMClient):
    """LLMClient that replays a fixed list of responses.

    Every call is recorded in ``call_history``; running past the end of the
    script raises IndexError, which the agent surfaces as a failed turn.

    Usage:
        >>> client = MockLLMClient(responses=[
        ...     make_response(tool_calls=[ToolCallData("tc_1", "read_file", {"path": "index.html"})]),
        ...     make_response(content="Done."),
        ... ])
    """

    def __init__(
        self,
        responses: list[LLMResponse] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.responses = list(responses or [])
        self.call_history: list[dict[str, Any]] = []

    async def call(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        self.call_history.append({
            "messages": list(messages),
            "tools": tools,
            "model": model or self.default_model,
        })
        index = len(self.call_history) - 1
        if index >= len(self.responses):
            raise IndexError("No more mock responses available")

        response = self.responses[index]
        logger.debug(
            "mock_llm_call",
            response_index=index,
            tool_calls=len(response.tool_calls),
        )
        return response


def make_response(
    content: str = "",
    tool_calls: list[ToolCallData] | None = None,
    model: str = "mock",
) -> LLMResponse:
    """Build an LLMResponse without a provider round trip (tests, mocks)."""
    calls = tool_calls or []
    return LLMResponse(
        content=content,
        tool_calls=calls,
        finish_reason="tool_calls" if calls else "stop",
        usage=LLMUsage(model=model, input_tokens=0, output_tokens=0, latency_ms=0),
    )
