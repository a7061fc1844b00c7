"""Blended mode: one shared conversation per channel.

Each channel keeps a small ring buffer per user. The model-bound record is
built on demand by merging the buffers chronologically behind a single
persona message, so a busy channel costs at most
``users * max_messages_per_user`` messages. DMs never come through here.

Channel state lives in memory only and is not part of the snapshot.
"""

from __future__ import annotations

import copy
import itertools
from collections import deque
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Callable

import structlog

from chimp.core.security.sanitizer import MessageSanitizer
from chimp.core.types import Message, Role, as_utc, utc_now

logger = structlog.get_logger()

# Buffer key for the bot's own replies in a channel
ASSISTANT_KEY = "__assistant__"


@dataclass
class _Entry:
    message: Message
    sequence: int  # Global insertion order, breaks timestamp ties


class BlendedConversations:
    """Per-channel, per-user ring buffers merged into one record."""

    def __init__(
        self,
        persona: str,
        max_messages_per_user: int = 5,
        context_window: int = 10,
        max_length: int = 50,
        sanitizer: MessageSanitizer | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.persona = persona
        self.max_messages_per_user = max_messages_per_user
        self.context_window = context_window
        self.max_length = max_length
        self.sanitizer = sanitizer or MessageSanitizer()
        self._clock = clock
        self._channels: dict[str, dict[str, deque[_Entry]]] = {}
        self._sequence = itertools.count()

    def add(self, channel_id: str, user_id: str, message: Message) -> list[Message]:
        """Buffer a message for ``user_id`` and return the merged channel record."""
        msg = copy.copy(message)
        msg.metadata = dict(message.metadata)
        if msg.content or not msg.function_call:
            msg.content = self.sanitizer.clean(
                msg.content, context={"channel_id": channel_id, "user_id": user_id}
            )
        msg.timestamp = as_utc(msg.timestamp) or self._clock()

        users = self._channels.setdefault(channel_id, {})
        if user_id not in users:
            users[user_id] = deque(maxlen=self.max_messages_per_user)
        users[user_id].append(_Entry(msg, next(self._sequence)))

        logger.debug(
            "blended_message_added",
            channel_id=channel_id,
            user_id=user_id,
            buffered=len(users[user_id]),
            users=len(users),
        )
        return self.build(channel_id)

    def _render(self, msg: Message) -> Message:
        if msg.role == Role.USER and msg.author:
            return replace(msg, content=f"{msg.author}: {msg.content}", metadata=dict(msg.metadata))
        return replace(msg, metadata=dict(msg.metadata))

    def build(self, channel_id: str) -> list[Message]:
        """Persona plus the most recent channel messages, oldest first."""
        users = self._channels.get(channel_id, {})
        entries = sorted(
            (entry for buffer in users.values() for entry in buffer),
            key=lambda e: (e.message.timestamp, e.sequence),
        )
        window = max(0, min(self.context_window, self.max_length - 1))
        recent = entries[-window:] if window else []
        return [Message.system(self.persona), *(self._render(e.message) for e in recent)]

    def clear(self, channel_id: str) -> bool:
        existed = self._channels.pop(channel_id, None) is not None
        if existed:
            logger.info("blended_channel_cleared", channel_id=channel_id)
        return existed

    def clear_all(self) -> int:
        count = len(self._channels)
        self._channels.clear()
        return count

    def count(self) -> int:
        """Number of channels with buffered messages."""
        return len(self._channels)

    def update_message(self, external_id: str, content: str) -> bool:
        if not external_id:
            return False
        sanitized = self.sanitizer.sanitize(content)
        found = False
        for users in self._channels.values():
            for buffer in users.values():
                for entry in buffer:
                    if entry.message.external_id == external_id:
                        entry.message.content = sanitized
                        entry.message.edited = True
                        found = True
        return found

    def remove_message(self, external_id: str) -> bool:
        if not external_id:
            return False
        found = False
        for users in self._channels.values():
            for user_id, buffer in users.items():
                kept = [e for e in buffer if e.message.external_id != external_id]
                if len(kept) != len(buffer):
                    users[user_id] = deque(kept, maxlen=self.max_messages_per_user)
                    found = True
        return found

    def status(self) -> dict[str, Any]:
        return {
            "channels": len(self._channels),
            "users": sum(len(users) for users in self._channels.values()),
            "messages": sum(
                len(buffer) for users in self._channels.values() for buffer in users.values()
            ),
            "max_messages_per_user": self.max_messages_per_user,
            "context_window": self.context_window,
        }
