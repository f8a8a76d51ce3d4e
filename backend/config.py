"""Settings and logging setup for the edit-session engine.

Every field of Settings can be set through an environment variable of the same
name (case-insensitive) or a .env file next to the backend or at the repo root.
"""

import json
import logging
from typing import Any

import structlog
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Attributes:
        default_model: Model used by the tool-calling edit agent.
        llm_fallback_model: Model tried once when the primary keeps failing.
        llm_max_retries: Retries on transient provider errors.
        llm_request_timeout_seconds: Timeout for a single completion request.
        use_mock_llm: If True, run the deterministic simulated agent loop.
        max_agent_iterations: Upper bound on reason/execute rounds per turn.
        context_model_name: Model the context bar is priced against.
        context_max_tokens: Context window size shown to the user.
        context_input_cost_per_million: USD per 1M input tokens.
        context_output_cost_per_million: USD per 1M output tokens.
        context_pricing_from_litellm: Look prices up in litellm's model table.
        bytes_per_token_estimate: Bytes assumed per token when estimating usage.
        system_prompt_bytes_estimate: Fixed bytes added for the system prompt.
        poll_chunk_limit: Maximum chunks returned by a single poll.
        stale_conversation_timeout_minutes: Heartbeat silence before release.
        stuck_running_timeout_minutes: Age after which a running session fails.
        stuck_cancelling_timeout_minutes: Age after which cancelling is forced.
        reaper_enabled: Whether the background reaper loop runs.
        reaper_interval_seconds: Seconds between reaper sweeps.
        workspace_root: Directory holding one folder per workspace.
        database_path: SQLite database file.
        backend_port: Port for the FastAPI server.
        cors_origins: Allowed origins for CORS.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """

    # Agent model; litellm needs the provider prefix (openai/, anthropic/, ...)
    default_model: str = "openai/gpt-5.2"
    llm_fallback_model: str | None = None
    llm_max_retries: int = 3
    llm_request_timeout_seconds: int = 120
    use_mock_llm: bool = False
    max_agent_iterations: int = 25

    # Context Usage Accounting
    context_model_name: str = "gpt-5.2"
    context_max_tokens: int = 128_000
    context_input_cost_per_million: float = 1.75
    context_output_cost_per_million: float = 14.00
    context_pricing_from_litellm: bool = False
    bytes_per_token_estimate: int = 4
    system_prompt_bytes_estimate: int = 12_000

    # Polling
    poll_chunk_limit: int = 100

    # Stale Conversations & Stuck Sessions
    stale_conversation_timeout_minutes: int = 5
    stuck_running_timeout_minutes: int = 30
    stuck_cancelling_timeout_minutes: int = 2
    reaper_enabled: bool = True
    reaper_interval_seconds: float = 60.0

    # Workspaces
    workspace_root: str = "./data/workspaces"

    # Storage
    database_path: str = "./data/editor.db"

    # HTTP server and logging
    backend_port: int = 8000
    cors_origins: str | list[str] = ["http://localhost:3000"]
    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: Any) -> list[str]:
        """Accept a list, a JSON array string or a comma-separated string."""
        if isinstance(v, list):
            return v
        if isinstance(v, str):
            v = v.strip()
            if v.startswith("["):
                try:
                    return json.loads(v)
                except json.JSONDecodeError:
                    pass
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return ["http://localhost:3000"]

    @field_validator("bytes_per_token_estimate")
    @classmethod
    def validate_bytes_per_token(cls, v: int) -> int:
        """Reject non-positive divisors for token estimation."""
        if v <= 0:
            raise ValueError("bytes_per_token_estimate must be positive")
        return v

    model_config = SettingsConfigDict(
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Set up structlog for the whole process.

    ``log_format="json"`` emits one JSON object per line; anything else uses the
    coloured console renderer. Events below ``log_level`` are dropped.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


settings = Settings()

configure_logging(settings.log_level, settings.log_format)
