"""Token and cost estimation for a conversation's context window.

All figures are byte-based estimates: persisted lengths are divided by a
configurable bytes-per-token ratio. Two numbers answer different questions:

- ``used_tokens``: what is in flight right now. It always counts the stored
  conversation messages and a fixed system-prompt overhead, plus the tool
  traffic of the active session while that session is still non-terminal.
- ``total_cost``: what the conversation has cost so far. It covers every
  session ever run, whatever its status, so it never goes down.
"""

from dataclasses import dataclass

import litellm
import structlog

from config import settings
from models.database import EditorStore
from models.schemas import ContextUsage
from session_state import is_terminal

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ModelPricing:
    """Context window and per-token prices of the model being estimated."""

    model_name: str
    max_tokens: int
    input_cost_per_million: float
    output_cost_per_million: float

    @classmethod
    def from_settings(cls) -> "ModelPricing":
        return cls(
            model_name=settings.context_model_name,
            max_tokens=settings.context_max_tokens,
            input_cost_per_million=settings.context_input_cost_per_million,
            output_cost_per_million=settings.context_output_cost_per_million,
        )

    @classmethod
    def from_litellm(cls, model_name: str) -> "ModelPricing":
        """Look a model up in litellm's bundled price table.

        Falls back to the configured values when the model is unknown.
        """
        fallback = cls.from_settings()
        entry = litellm.model_cost.get(model_name)
        if not entry:
            logger.warning("model_pricing_not_found", model=model_name)
            return fallback

        input_per_token = entry.get("input_cost_per_token")
        output_per_token = entry.get("output_cost_per_token")
        return cls(
            model_name=model_name,
            max_tokens=int(
                entry.get("max_input_tokens") or entry.get("max_tokens") or fallback.max_tokens
            ),
            input_cost_per_million=(
                float(input_per_token) * 1_000_000
                if input_per_token is not None
                else fallback.input_cost_per_million
            ),
            output_cost_per_million=(
                float(output_per_token) * 1_000_000
                if output_per_token is not None
                else fallback.output_cost_per_million
            ),
        )


def default_pricing() -> ModelPricing:
    if settings.context_pricing_from_litellm:
        return ModelPricing.from_litellm(settings.context_model_name)
    return ModelPricing.from_settings()


class ContextUsageService:
    """Computes ContextUsage snapshots from the store.

    Attributes:
        store: Datastore holding messages, sessions and chunks.
        pricing: Model the estimate is priced against.
        bytes_per_token: Divisor turning byte lengths into token estimates.
        system_prompt_bytes: Fixed overhead counted into ``used_tokens``.
    """

    def __init__(
        self,
        store: EditorStore,
        pricing: ModelPricing | None = None,
        bytes_per_token: int | None = None,
        system_prompt_bytes: int | None = None,
    ) -> None:
        self.store = store
        self.pricing = pricing or default_pricing()
        self.bytes_per_token = bytes_per_token or settings.bytes_per_token_estimate
        self.system_prompt_bytes = (
            system_prompt_bytes
            if system_prompt_bytes is not None
            else settings.system_prompt_bytes_estimate
        )

    def _tokens(self, byte_count: int) -> int:
        return round(byte_count / self.bytes_per_token)

    async def _active_event_bytes(
        self,
        conversation_id: str,
        active_session_id: str | None,
    ) -> int:
        if not active_session_id:
            return 0
        session = await self.store.get_session(active_session_id)
        if session is None or session.conversation_id != conversation_id:
            return 0
        if is_terminal(session.status):
            return 0
        return await self.store.session_event_bytes(active_session_id)

    async def get_context_usage(
        self,
        conversation_id: str,
        active_session_id: str | None = None,
    ) -> ContextUsage:
        """Estimate context usage and cumulative cost for a conversation.

        Args:
            conversation_id: Conversation to estimate.
            active_session_id: Session whose in-flight tool traffic counts
                towards ``used_tokens``; ignored once the session is terminal.

        Returns:
            ContextUsage snapshot.
        """
        messages_bytes = await self.store.messages_bytes(conversation_id)
        active_bytes = await self._active_event_bytes(conversation_id, active_session_id)
        used_bytes = messages_bytes + self.system_prompt_bytes + active_bytes

        all_event_bytes = await self.store.conversation_event_bytes(conversation_id)
        text_bytes = await self.store.conversation_text_bytes(conversation_id)

        input_tokens = self._tokens(messages_bytes + all_event_bytes)
        output_tokens = self._tokens(text_bytes)
        input_cost = input_tokens / 1_000_000 * self.pricing.input_cost_per_million
        output_cost = output_tokens / 1_000_000 * self.pricing.output_cost_per_million

        return ContextUsage(
            used_tokens=self._tokens(used_bytes),
            max_tokens=self.pricing.max_tokens,
            model_name=self.pricing.model_name,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            input_cost=input_cost,
            output_cost=output_cost,
            total_cost=input_cost + output_cost,
        )
