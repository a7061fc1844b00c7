"""Pruning and eviction: per-conversation length caps and age-based expiry.

Two passes:
1. Inline length enforcement after every append. Plain chat turns are
   evicted oldest-first; reply-derived reference messages go last.
2. Out-of-band age expiry, triggered by the persistence manager, which
   drops whole conversations that have been idle longer than a max age.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING

import structlog

from chimp.core.types import ConversationRecord, Message, Role

if TYPE_CHECKING:
    from chimp.core.memory.store import ConversationStore

logger = structlog.get_logger()


class PruningPolicy:
    """Keeps conversation records within their length cap and age window."""

    def __init__(self, max_length: int, persona: str) -> None:
        if max_length < 2:
            raise ValueError("max_length must leave room for the system message and one turn")
        self.max_length = max_length
        self.persona = persona

    def _eviction_index(self, record: ConversationRecord) -> int:
        for i in range(1, len(record)):
            if not record[i].is_reference:
                return i
        # Everything after the system message is a reference
        return 1

    def ensure_system(self, record: ConversationRecord) -> bool:
        """Put a persona message at index 0 if it is missing.

        Pops the newest message when the insert pushes the record over the
        cap. Returns True if the record was repaired.
        """
        if record and record[0].role == Role.SYSTEM:
            return False

        record.insert(0, Message.system(self.persona))
        if len(record) > self.max_length:
            record.pop()
        logger.warning("system_message_restored", length=len(record))
        return True

    def enforce(self, record: ConversationRecord) -> int:
        """Apply the length cap in place. Returns the number of evicted messages."""
        removed = 0
        while len(record) > self.max_length and len(record) > 1:
            del record[self._eviction_index(record)]
            removed += 1

        self.ensure_system(record)

        if removed:
            logger.debug("conversation_trimmed", removed=removed, length=len(record))
        return removed

    @staticmethod
    def last_activity(
        record: ConversationRecord, stamped: datetime | None
    ) -> datetime | None:
        """Latest of the store's activity stamp and the newest message timestamp."""
        latest = stamped
        for msg in record:
            if msg.timestamp and (latest is None or msg.timestamp > latest):
                latest = msg.timestamp
        return latest

    def prune_expired(
        self,
        store: ConversationStore,
        max_age: timedelta,
        now: datetime,
    ) -> list[str]:
        """Remove conversations idle for longer than ``max_age``.

        Records with no activity information at all are treated as expired,
        as are empty records. Returns the removed identities.
        """
        cutoff = now - max_age
        expired: list[str] = []

        for identity in store.identities():
            record = store.peek(identity)
            if not record:
                expired.append(identity)
                continue
            last = self.last_activity(record, store.stamped_at(identity))
            if last is None or last < cutoff:
                expired.append(identity)

        for identity in expired:
            store.remove(identity)
            logger.debug("conversation_expired", identity=identity)

        logger.info(
            "conversations_pruned",
            pruned=len(expired),
            remaining=store.count(),
            max_age_days=round(max_age.total_seconds() / 86400, 2),
        )
        return expired
