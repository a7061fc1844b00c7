"""Shared data types for the conversation engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Normalize to aware UTC; naive datetimes are taken to be UTC already."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Role(str, Enum):
    """Message role in conversation."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    FUNCTION = "function"


@dataclass
class Message:
    """A single turn in a conversation."""

    role: Role
    content: str
    author: str | None = None  # Display name of the sender
    external_id: str | None = None  # Platform message id (edits, deletes, reply links)
    timestamp: datetime | None = None
    is_reference: bool = False  # Injected from a resolved reply chain
    name: str | None = None  # Function name for function messages
    function_call: dict[str, Any] | None = None  # For assistant messages requesting a function
    metadata: dict[str, Any] = field(default_factory=dict)
    edited: bool = False

    def to_api(self) -> dict[str, Any]:
        """Convert to the message dict sent to the model client."""
        msg: dict[str, Any] = {"role": self.role.value, "content": self.content}
        if self.name:
            msg["name"] = self.name
        if self.function_call:
            msg["function_call"] = self.function_call
            # When there is a function call, content may be None
            if not self.content:
                msg["content"] = None
        return msg

    @classmethod
    def system(cls, persona: str) -> Message:
        """Build the persona message that sits at index 0 of every record."""
        return cls(role=Role.SYSTEM, content=persona)


# An ordered message sequence for one identity. Index 0 is the system message.
ConversationRecord = list[Message]


@dataclass
class PlatformMessage:
    """Transport-neutral view of a chat platform message.

    The transport layer builds these; the reference resolver follows
    ``reply_to_id`` links between them.
    """

    id: str
    content: str
    author_name: str = "User"
    author_is_bot: bool = False
    created_at: datetime = field(default_factory=utc_now)
    reply_to_id: str | None = None
    channel_id: str | None = None

    @property
    def is_reply(self) -> bool:
        return self.reply_to_id is not None
