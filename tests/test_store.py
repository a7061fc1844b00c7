"""Tests for the conversation store and the pruning policy."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from chimp.core.memory.pruning import PruningPolicy
from chimp.core.memory.store import ConversationStore
from chimp.core.types import Message, Role

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


# === Shared fixtures ===

@pytest.fixture
def policy():
    return PruningPolicy(max_length=5, persona="You are a test bot.")


@pytest.fixture
def store(policy):
    return ConversationStore(policy, clock=lambda: NOW)


def user(content: str, **kwargs) -> Message:
    return Message(role=Role.USER, content=content, **kwargs)


def ref(content: str, **kwargs) -> Message:
    return Message(role=Role.USER, content=content, is_reference=True, **kwargs)


def contents(record: list[Message]) -> list[str]:
    return [m.content for m in record]


# =============================================================
# Conversation Store
# =============================================================

class TestConversationStore:
    """Create, append, read and clear."""

    def test_get_or_create_seeds_persona(self, store):
        record = store.get_or_create("u1")
        assert len(record) == 1
        assert record[0].role == Role.SYSTEM
        assert record[0].content == "You are a test bot."
        assert store.count() == 1
        assert store.dirty is True
        assert store.stamped_at("u1") == NOW

    def test_get_does_not_create(self, store):
        assert store.get("missing") is None
        assert store.count() == 0

    def test_append_sanitizes_and_stamps(self, store):
        record = store.append("u1", user("hi <script>x</script>there"))
        assert record[0].role == Role.SYSTEM
        assert record[-1].content == "hi there"
        assert record[-1].timestamp == NOW

    def test_append_keeps_existing_timestamp(self, store):
        earlier = NOW - timedelta(hours=1)
        record = store.append("u1", user("hi", timestamp=earlier))
        assert record[-1].timestamp == earlier

    def test_append_normalizes_naive_timestamp(self, store):
        record = store.append("u1", user("hi", timestamp=datetime(2024, 5, 1, 11, 0)))
        assert record[-1].timestamp == datetime(2024, 5, 1, 11, 0, tzinfo=timezone.utc)
        assert store.last_active("u1") == NOW

    def test_append_does_not_mutate_input(self, store):
        msg = user("  spaced  ")
        store.append("u1", msg)
        assert msg.content == "  spaced  "
        assert msg.timestamp is None

    def test_returned_record_is_a_copy(self, store):
        record = store.append("u1", user("hi"))
        record.clear()
        assert len(store.get("u1")) == 2

    def test_clear(self, store):
        store.append("u1", user("hi"))
        assert store.clear("u1") is True
        assert store.clear("u1") is False
        assert store.get("u1") is None
        # Recreated with the system message on next access
        assert store.get_or_create("u1")[0].role == Role.SYSTEM

    def test_clear_all(self, store):
        store.append("u1", user("a"))
        store.append("u2", user("b"))
        assert store.clear_all() == 2
        assert store.count() == 0

    def test_function_call_reply_keeps_empty_content(self, store):
        msg = Message(Role.ASSISTANT, "", function_call={"name": "lookup", "arguments": "{}"})
        record = store.append("u1", msg)
        assert record[-1].function_call == {"name": "lookup", "arguments": "{}"}
        assert record[-1].to_api()["content"] is None

    def test_image_context(self, store):
        store.append("u1", Message(Role.FUNCTION, "a cat in a hat", name="generate_image"))
        images = store.image_context("u1")
        assert images == [{"prompt": "a cat in a hat", "url": None, "timestamp": NOW}]

    def test_message_context(self, store):
        for i in range(4):
            store.append("u1", user(f"m{i}", external_id=f"id{i}"))
        window = store.message_context("u1", "id3", window=2)
        assert contents(window) == ["m1", "m2", "m3"]
        assert store.message_context("u1", "nope") == []


class TestDirtyTracking:
    def test_mark_clean(self, store):
        store.append("u1", user("a"))
        store.mark_clean()
        assert store.dirty is False

    def test_mutation_after_snapshot_stays_dirty(self, store):
        store.append("u1", user("a"))
        _, _, revision = store.snapshot()
        store.append("u1", user("b"))  # arrives while the save is in flight
        store.mark_clean(revision)
        assert store.dirty is True

    def test_snapshot_is_deep_copy(self, store):
        store.append("u1", user("a"))
        conversations, _, _ = store.snapshot()
        conversations["u1"][1].content = "changed"
        assert store.get("u1")[1].content == "a"

    def test_hydrate_is_clean(self, store):
        store.hydrate({"u1": [Message.system("You are a test bot."), user("a")]}, {"u1": NOW})
        assert store.loaded is True
        assert store.dirty is False
        assert contents(store.get("u1")) == ["You are a test bot.", "a"]

    def test_hydrate_repairs_and_marks_dirty(self, store):
        store.hydrate({"u1": [user("a"), user("b")]}, {})
        record = store.get("u1")
        assert record[0].role == Role.SYSTEM
        assert contents(record)[1:] == ["a", "b"]
        assert store.dirty is True


class TestEditReconciliation:
    def test_update_message_everywhere(self, store):
        store.append("u1", user("original", external_id="m1"))
        store.append("u2", ref("original", external_id="m1"))
        assert store.update_message("m1", "edited <script>x</script>") is True
        for identity in ("u1", "u2"):
            last = store.get(identity)[-1]
            assert last.content == "edited"
            assert last.edited is True

    def test_update_unknown(self, store):
        store.append("u1", user("a"))
        assert store.update_message("nope", "x") is False
        assert store.update_message("", "x") is False

    def test_remove_message(self, store):
        store.append("u1", user("a", external_id="m1"))
        store.append("u1", user("b", external_id="m2"))
        assert store.remove_message("m1") is True
        assert contents(store.get("u1"))[1:] == ["b"]
        assert store.remove_message("m1") is False


# =============================================================
# Pruning Policy
# =============================================================

class TestLengthEnforcement:
    def test_rejects_tiny_cap(self):
        with pytest.raises(ValueError):
            PruningPolicy(max_length=1, persona="P")

    def test_length_capped_oldest_first(self, store):
        for i in range(10):
            store.append("u1", user(f"m{i}"))
        record = store.get("u1")
        assert len(record) == 5
        assert record[0].role == Role.SYSTEM
        assert contents(record)[1:] == ["m6", "m7", "m8", "m9"]

    def test_system_first_and_capped_after_every_append(self, store):
        for i in range(30):
            role = Role.USER if i % 2 == 0 else Role.ASSISTANT
            record = store.append("u1", Message(role=role, content=f"turn {i}"))
            assert record[0].role == Role.SYSTEM
            assert len(record) <= 5

    def test_references_evicted_last(self, store):
        store.append("u1", ref("quoted"))
        for i in range(6):
            store.append("u1", user(f"u{i}"))
        record = store.get("u1")
        assert contents(record)[1:] == ["quoted", "u3", "u4", "u5"]
        assert record[1].is_reference is True

    def test_all_references_evicts_index_one(self, policy):
        record = [Message.system("P"), ref("r1"), ref("r2"), ref("r3"), ref("r4"), ref("r5")]
        removed = policy.enforce(record)
        assert removed == 1
        assert contents(record) == ["P", "r2", "r3", "r4", "r5"]

    def test_missing_system_reinserted_at_cost_of_newest(self, policy):
        record = [user("a"), user("b"), user("c"), user("d"), user("e")]
        policy.enforce(record)
        assert record[0].role == Role.SYSTEM
        assert record[0].content == "You are a test bot."
        assert contents(record)[1:] == ["a", "b", "c", "d"]

    def test_ensure_system_noop_when_present(self, policy):
        record = [Message.system("P"), user("a")]
        assert policy.ensure_system(record) is False


class TestAgePruning:
    def test_prune_expired(self, policy, store):
        store.hydrate(
            {
                "old": [Message.system("P"), user("x", timestamp=NOW - timedelta(days=10))],
                "new": [Message.system("P"), user("y", timestamp=NOW - timedelta(days=1))],
                "unknown": [Message.system("P"), user("z")],
            },
            {},
        )
        removed = policy.prune_expired(store, timedelta(days=7), NOW)
        assert sorted(removed) == ["old", "unknown"]
        assert store.identities() == ["new"]
        assert store.dirty is True

    def test_activity_stamp_keeps_record_alive(self, policy, store):
        store.hydrate(
            {"u1": [Message.system("P"), user("x", timestamp=NOW - timedelta(days=10))]},
            {"u1": NOW - timedelta(hours=2)},
        )
        assert policy.prune_expired(store, timedelta(days=7), NOW) == []
        assert store.last_active("u1") == NOW - timedelta(hours=2)

    def test_last_activity_prefers_latest(self):
        stamped = NOW - timedelta(days=3)
        record = [Message.system("P"), user("x", timestamp=NOW - timedelta(days=1))]
        assert PruningPolicy.last_activity(record, stamped) == NOW - timedelta(days=1)
        assert PruningPolicy.last_activity([Message.system("P")], None) is None

    def test_prune_with_naive_loaded_timestamps(self, policy, store):
        store.hydrate(
            {
                "old": [Message.system("P"), user("x", timestamp=datetime(2024, 4, 1))],
                "new": [Message.system("P"), user("y", timestamp=datetime(2024, 4, 30, 12))],
            },
            {"new": datetime(2024, 4, 30, 12)},
        )
        assert policy.prune_expired(store, timedelta(days=7), NOW) == ["old"]
        assert store.last_active("new") == NOW - timedelta(days=1)

    def test_hydrate_resanitizes_content(self, store):
        store.hydrate(
            {"u1": [Message.system("You are a test bot."), user("a\x00b <script>x</script>")]},
            {"u1": NOW},
        )
        assert store.get("u1")[-1].content == "ab"
        assert store.dirty is True
