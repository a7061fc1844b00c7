"""Conversation store: authoritative in-memory mapping from identity to messages.

Identities are user ids, or channel ids when the caller blends a channel.
Every mutating call bumps a revision counter that backs the dirty flag;
the persistence manager clears the flag only for the revision it saved.
No method performs I/O.
"""

from __future__ import annotations

import copy
from datetime import datetime
from typing import Any, Callable

import structlog

from chimp.core.memory.pruning import PruningPolicy
from chimp.core.security.sanitizer import MessageSanitizer
from chimp.core.types import ConversationRecord, Message, Role, as_utc, utc_now

logger = structlog.get_logger()


class ConversationStore:
    """In-memory conversation records with inline pruning."""

    def __init__(
        self,
        policy: PruningPolicy,
        sanitizer: MessageSanitizer | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.policy = policy
        self.sanitizer = sanitizer or MessageSanitizer()
        self._clock = clock
        self._records: dict[str, ConversationRecord] = {}
        self._timestamps: dict[str, datetime] = {}
        self._revision = 0
        self._saved_revision = 0
        self.loaded = False

    # --- flags ---

    @property
    def persona(self) -> str:
        return self.policy.persona

    @property
    def dirty(self) -> bool:
        return self._revision != self._saved_revision

    @property
    def revision(self) -> int:
        return self._revision

    def mark_dirty(self) -> None:
        self._revision += 1

    def mark_clean(self, revision: int | None = None) -> None:
        """Record that ``revision`` (default: current) has reached disk.

        A later mutation keeps the store dirty.
        """
        saved = self._revision if revision is None else revision
        self._saved_revision = max(self._saved_revision, saved)

    def _touch(self, identity: str) -> None:
        self._timestamps[identity] = self._clock()
        self.mark_dirty()

    # --- reads ---

    def count(self) -> int:
        """Number of active identities."""
        return len(self._records)

    def identities(self) -> list[str]:
        return list(self._records)

    def __contains__(self, identity: object) -> bool:
        return identity in self._records

    def peek(self, identity: str) -> ConversationRecord | None:
        """Internal record without repair or copy (pruning and persistence only)."""
        return self._records.get(identity)

    def stamped_at(self, identity: str) -> datetime | None:
        return self._timestamps.get(identity)

    def last_active(self, identity: str) -> datetime | None:
        record = self._records.get(identity)
        if record is None:
            return None
        return self.policy.last_activity(record, self._timestamps.get(identity))

    def get(self, identity: str) -> ConversationRecord | None:
        """Return a copy of the record, or None. Never creates one."""
        record = self._records.get(identity)
        if record is None:
            return None
        if self.policy.ensure_system(record):
            self.mark_dirty()
        return list(record)

    def get_or_create(self, identity: str) -> ConversationRecord:
        """Return the record for ``identity``, seeding a new one with the persona."""
        if identity not in self._records:
            self._records[identity] = [Message.system(self.persona)]
            self._touch(identity)
            logger.info("conversation_created", identity=identity)
        record = self._records[identity]
        if self.policy.ensure_system(record):
            self.mark_dirty()
        return list(record)

    def message_context(
        self, identity: str, external_id: str, window: int = 3
    ) -> list[Message]:
        """Messages leading up to (and including) the one with ``external_id``."""
        record = self._records.get(identity)
        if not record:
            return []
        for i, msg in enumerate(record):
            if msg.external_id == external_id:
                return list(record[max(0, i - window) : i + 1])
        return []

    def image_context(self, identity: str, max_images: int = 3) -> list[dict[str, Any]]:
        """Most recent image-generation entries recorded in a conversation."""
        record = self._records.get(identity)
        if not record:
            return []
        images = [
            m for m in record
            if m.metadata.get("type") == "image" and m.metadata.get("image", {}).get("prompt")
        ]
        return [
            {
                "prompt": m.metadata["image"]["prompt"],
                "url": m.metadata["image"].get("url"),
                "timestamp": m.timestamp,
            }
            for m in images[-max_images:]
        ]

    # --- writes ---

    def _prepare(self, identity: str, message: Message) -> Message:
        msg = copy.copy(message)
        msg.metadata = dict(message.metadata)
        if msg.content or not msg.function_call:
            msg.content = self.sanitizer.clean(
                msg.content, context={"identity": identity, "role": msg.role.value}
            )
        msg.timestamp = as_utc(msg.timestamp) or self._clock()
        if msg.role == Role.FUNCTION and msg.name == "generate_image":
            msg.metadata.setdefault("type", "image")
            msg.metadata.setdefault("image", {"prompt": msg.content, "url": None})
        return msg

    def append(self, identity: str, message: Message) -> ConversationRecord:
        """Sanitize and append a message, then apply the length cap."""
        if identity not in self._records:
            self.get_or_create(identity)
        record = self._records[identity]

        msg = self._prepare(identity, message)
        record.append(msg)
        self.policy.enforce(record)
        self._touch(identity)

        logger.debug(
            "message_appended",
            identity=identity,
            role=msg.role.value,
            external_id=msg.external_id,
            is_reference=msg.is_reference,
            length=len(record),
        )
        return list(record)

    def clear(self, identity: str) -> bool:
        """Remove a record entirely. Returns whether one existed."""
        existed = self.remove(identity)
        if existed:
            logger.info("conversation_cleared", identity=identity)
        return existed

    def clear_all(self) -> int:
        count = len(self._records)
        self._records.clear()
        self._timestamps.clear()
        self.mark_dirty()
        logger.info("conversations_cleared_all", count=count)
        return count

    def remove(self, identity: str) -> bool:
        if identity not in self._records:
            return False
        del self._records[identity]
        self._timestamps.pop(identity, None)
        self.mark_dirty()
        return True

    def update_message(self, external_id: str, content: str) -> bool:
        """Apply a platform edit to every stored copy of a message."""
        if not external_id:
            return False
        sanitized = self.sanitizer.sanitize(content)
        found = False
        for identity, record in self._records.items():
            for msg in record:
                if msg.external_id == external_id:
                    msg.content = sanitized
                    msg.edited = True
                    found = True
                    logger.info("message_updated", identity=identity, external_id=external_id)
        if found:
            self.mark_dirty()
        return found

    def remove_message(self, external_id: str) -> bool:
        """Apply a platform delete to every stored copy of a message."""
        if not external_id:
            return False
        found = False
        for identity, record in self._records.items():
            kept = [
                m for i, m in enumerate(record)
                if i == 0 or m.external_id != external_id
            ]
            if len(kept) != len(record):
                record[:] = kept
                found = True
                logger.info(
                    "message_removed",
                    identity=identity,
                    external_id=external_id,
                    remaining=len(record),
                )
        if found:
            self.mark_dirty()
        return found

    # --- persistence hooks ---

    def snapshot(self) -> tuple[dict[str, list[Message]], dict[str, datetime], int]:
        """Deep copy of the serializable state plus the revision it reflects."""
        conversations = {
            identity: [copy.deepcopy(m) for m in record]
            for identity, record in self._records.items()
        }
        return conversations, dict(self._timestamps), self._revision

    def _reclean(self, record: list[Message]) -> tuple[ConversationRecord, bool]:
        """Re-sanitize loaded messages; snapshot files can be edited by hand."""
        cleaned: ConversationRecord = []
        changed = False
        for msg in record:
            content = self.sanitizer.sanitize(msg.content) if msg.content else msg.content
            timestamp = as_utc(msg.timestamp)
            # A naive timestamp never compares equal to its aware form
            if content != msg.content or timestamp != msg.timestamp:
                msg = copy.copy(msg)
                msg.content = content
                msg.timestamp = timestamp
                changed = True
            cleaned.append(msg)
        return cleaned, changed

    def hydrate(
        self,
        conversations: dict[str, list[Message]],
        timestamps: dict[str, datetime],
    ) -> None:
        """Replace all state with loaded data, repairing each record."""
        self._records = {}
        self._timestamps = {}
        repaired = 0
        for identity, record in conversations.items():
            record, changed = self._reclean(record)
            before = [id(m) for m in record]
            self.policy.enforce(record)
            if changed or [id(m) for m in record] != before:
                repaired += 1
            self._records[identity] = record
            if identity in timestamps:
                self._timestamps[identity] = as_utc(timestamps[identity])
        self.loaded = True
        self._saved_revision = self._revision
        if repaired:
            # Rewrite the repaired records on the next save
            self.mark_dirty()
            logger.warning("loaded_conversations_repaired", count=repaired)
