"""Context optimizer: reduces a conversation to the slice sent to the model.

Message-count heuristic rather than exact token counting. Strategies are
tried in order until one produces a slice:

1. passthrough   - small records that are already well-formed go as-is
2. recent_window - persona + the most recent half-cap of turns
3. minimal       - persona + the newest turn

Every result starts with exactly one system message and never exceeds the
configured conversation length.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

import structlog

from chimp.core.types import Message, Role

logger = structlog.get_logger()

# Heuristic: ~4 characters per token (works for most models)
_CHARS_PER_TOKEN = 4


@dataclass
class OptimizationResult:
    """A model-bound slice and the strategy that produced it."""

    messages: list[Message]
    strategy: str


Strategy = Callable[[list[Message]], "list[Message] | None"]


class ContextOptimizer:
    """Builds bounded message slices for single model calls."""

    def __init__(
        self,
        persona: str,
        max_length: int,
        threshold: int = 4,
        max_tokens: int | None = None,
    ) -> None:
        self.persona = persona
        self.max_length = max_length
        self.threshold = threshold
        self.max_tokens = max_tokens
        self.strategies: list[tuple[str, Strategy]] = [
            ("passthrough", self._passthrough),
            ("recent_window", self._recent_window),
            ("minimal", self._minimal),
        ]

    @property
    def recent_count(self) -> int:
        """Number of non-system messages kept by the recent-window strategy."""
        return max(1, self.max_length // 2)

    def estimate_tokens(self, messages: list[Message]) -> int:
        """Rough estimate of token count for messages.

        Uses ~4 chars per token as a simple heuristic.
        """
        total_chars = sum(len(m.content or "") for m in messages)
        return total_chars // _CHARS_PER_TOKEN

    def _system_message(self, record: list[Message]) -> Message:
        for msg in record:
            if msg.role == Role.SYSTEM:
                return msg
        return Message.system(self.persona)

    # --- strategies ---

    def _passthrough(self, record: list[Message]) -> list[Message] | None:
        if len(record) > self.threshold:
            return None
        if not record or record[0].role != Role.SYSTEM:
            return None
        if any(m.role == Role.SYSTEM for m in record[1:]):
            return None
        return list(record)

    def _recent_window(self, record: list[Message]) -> list[Message] | None:
        system = self._system_message(record)
        recent = [m for m in record if m.role != Role.SYSTEM][-self.recent_count :]
        return [system, *recent]

    def _minimal(self, record: list[Message]) -> list[Message] | None:
        rest = [m for m in record if m.role != Role.SYSTEM]
        return [Message.system(self.persona), *rest[-1:]]

    # --- public API ---

    def _fit_tokens(self, messages: list[Message], max_tokens: int) -> list[Message]:
        """Drop the oldest turns until the estimate fits, keeping the newest."""
        fitted = list(messages)
        while len(fitted) > 2 and self.estimate_tokens(fitted) > max_tokens:
            del fitted[1]
        return fitted

    def optimize_with_result(
        self, record: list[Message] | None, max_tokens: int | None = None
    ) -> OptimizationResult:
        """Run the strategy chain and report which strategy won."""
        if not record:
            return OptimizationResult([Message.system(self.persona)], "empty")

        budget = max_tokens if max_tokens is not None else self.max_tokens

        for name, strategy in self.strategies:
            try:
                messages = strategy(record)
            except Exception as e:
                logger.warning("optimizer_strategy_failed", strategy=name, error=str(e))
                continue
            if messages is None:
                continue
            if budget is not None:
                messages = self._fit_tokens(messages, budget)
            messages = messages[: self.max_length]
            logger.debug(
                "conversation_optimized",
                strategy=name,
                original_length=len(record),
                optimized_length=len(messages),
            )
            return OptimizationResult(messages, name)

        # Every strategy failed
        return OptimizationResult([Message.system(self.persona)], "persona_only")

    def optimize(
        self, record: list[Message] | None, max_tokens: int | None = None
    ) -> list[Message]:
        """Return the bounded slice of ``record`` for one model call."""
        return self.optimize_with_result(record, max_tokens).messages
