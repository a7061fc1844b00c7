"""Tests for the context optimizer strategy chain."""

from __future__ import annotations

import pytest

from chimp.core.memory.optimizer import ContextOptimizer
from chimp.core.types import Message, Role

PERSONA = "You are a test bot."


def turns(count: int, prefix: str = "m") -> list[Message]:
    return [
        Message(role=Role.USER if i % 2 == 0 else Role.ASSISTANT, content=f"{prefix}{i}")
        for i in range(count)
    ]


class TestContextOptimizer:
    def test_long_record_keeps_system_and_recent_half(self):
        optimizer = ContextOptimizer(PERSONA, max_length=20, threshold=4)
        record = [Message.system(PERSONA), *turns(19)]
        result = optimizer.optimize_with_result(record)

        assert result.strategy == "recent_window"
        assert len(result.messages) == 11
        assert result.messages[0].role == Role.SYSTEM
        assert [m.content for m in result.messages[1:]] == [f"m{i}" for i in range(9, 19)]

    def test_short_record_passes_through(self):
        optimizer = ContextOptimizer(PERSONA, max_length=12, threshold=4)
        record = [Message.system(PERSONA), *turns(2)]
        result = optimizer.optimize_with_result(record)
        assert result.strategy == "passthrough"
        assert result.messages == record
        assert result.messages is not record

    def test_short_record_without_system_gets_persona(self):
        optimizer = ContextOptimizer(PERSONA, max_length=12, threshold=4)
        messages = optimizer.optimize(turns(2))
        assert messages[0].role == Role.SYSTEM
        assert messages[0].content == PERSONA
        assert [m.content for m in messages[1:]] == ["m0", "m1"]

    def test_exactly_one_system_message(self):
        optimizer = ContextOptimizer(PERSONA, max_length=12, threshold=4)
        record = [Message.system(PERSONA), *turns(1), Message.system("stray")]
        messages = optimizer.optimize(record)
        assert [m.role for m in messages].count(Role.SYSTEM) == 1
        assert messages[0].content == PERSONA

    def test_empty_record(self):
        optimizer = ContextOptimizer(PERSONA, max_length=12)
        assert [m.content for m in optimizer.optimize([])] == [PERSONA]
        assert [m.content for m in optimizer.optimize(None)] == [PERSONA]

    @pytest.mark.parametrize("max_length", [2, 3, 5, 12])
    def test_never_exceeds_cap(self, max_length):
        optimizer = ContextOptimizer(PERSONA, max_length=max_length, threshold=1)
        messages = optimizer.optimize([Message.system(PERSONA), *turns(40)])
        assert len(messages) <= max_length
        assert messages[0].role == Role.SYSTEM

    def test_token_budget_drops_oldest(self):
        optimizer = ContextOptimizer("P", max_length=20, threshold=2)
        record = [Message.system("P"), *turns(5, prefix="x" * 38)]
        # 1 + 5 * 39 chars is ~49 tokens; 25 leaves room for two turns
        messages = optimizer.optimize(record, max_tokens=25)
        assert len(messages) == 3
        assert messages[0].role == Role.SYSTEM
        assert messages[-1].content == "x" * 38 + "4"

    def test_failing_strategy_falls_through(self):
        optimizer = ContextOptimizer(PERSONA, max_length=12, threshold=4)

        def broken(record):
            raise RuntimeError("boom")

        optimizer.strategies.insert(0, ("broken", broken))
        record = [Message.system(PERSONA), *turns(2)]
        result = optimizer.optimize_with_result(record)
        assert result.strategy == "passthrough"

    def test_minimal_is_last_resort(self):
        optimizer = ContextOptimizer(PERSONA, max_length=12, threshold=4)
        optimizer.strategies = [s for s in optimizer.strategies if s[0] == "minimal"]
        result = optimizer.optimize_with_result([Message.system(PERSONA), *turns(6)])
        assert result.strategy == "minimal"
        assert [m.content for m in result.messages] == [PERSONA, "m5"]

    def test_estimate_tokens(self):
        optimizer = ContextOptimizer(PERSONA, max_length=12)
        assert optimizer.estimate_tokens([Message(Role.USER, "x" * 40)]) == 10
