"""Storage codec: JSON snapshot encoding, schema validation and repair.

The on-disk snapshot looks like::

    {
      "conversations": {"<identity>": [<message>, ...]},
      "timestamps": {"<identity>": "<ISO-8601>"},
      "lastUpdated": "<ISO-8601>",
      "version": "1.0"
    }

Decoding validates the envelope with Pydantic and then each message on its
own, so one malformed message drops only itself. Anything that cannot be
parsed at all raises StorageCorruptionError; the persistence manager owns
the recovery path (repair, backup, empty store).
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from chimp.core.errors import StorageCorruptionError
from chimp.core.types import Message, Role, as_utc

logger = structlog.get_logger()

SNAPSHOT_VERSION = "1.0"


def parse_timestamp(value: Any) -> datetime | None:
    """Accept ISO-8601 strings, epoch milliseconds or datetimes; return aware UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, bool):
        raise ValueError("timestamp cannot be a boolean")
    try:
        if isinstance(value, (int, float)):
            dt = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        elif isinstance(value, str):
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        else:
            raise ValueError(f"unsupported timestamp type: {type(value).__name__}")
        return as_utc(dt)
    except (OverflowError, OSError) as e:
        # Out-of-range epochs; pydantic only converts ValueError
        raise ValueError(f"timestamp out of range: {value!r}") from e


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat()


# === Schema ===


class MessageModel(BaseModel):
    """Persisted form of a Message."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    role: Role
    content: str | None = ""
    author: str | None = None
    external_id: str | None = Field(default=None, alias="externalId")
    timestamp: datetime | None = None
    is_reference: bool = Field(default=False, alias="isReference")
    name: str | None = None
    function_call: dict[str, Any] | None = Field(default=None, alias="functionCall")
    metadata: dict[str, Any] = Field(default_factory=dict)
    edited: bool = False

    @field_validator("timestamp", mode="before")
    @classmethod
    def _coerce_timestamp(cls, value: Any) -> datetime | None:
        return parse_timestamp(value)

    @field_validator("external_id", mode="before")
    @classmethod
    def _coerce_external_id(cls, value: Any) -> str | None:
        # Platform snowflakes may have been written as numbers
        return None if value is None else str(value)

    def to_message(self) -> Message:
        return Message(
            role=self.role,
            content=self.content or "",
            author=self.author,
            external_id=self.external_id,
            timestamp=self.timestamp,
            is_reference=self.is_reference,
            name=self.name,
            function_call=self.function_call,
            metadata=dict(self.metadata),
            edited=self.edited,
        )


class SnapshotEnvelope(BaseModel):
    """Top-level snapshot shape. Conversations are validated message by message."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    conversations: dict[str, Any]
    timestamps: dict[str, Any] = Field(default_factory=dict)
    last_updated: Any = Field(default=None, alias="lastUpdated")
    version: str = SNAPSHOT_VERSION


@dataclass
class DecodedSnapshot:
    """Result of decoding a snapshot file."""

    conversations: dict[str, list[Message]] = field(default_factory=dict)
    timestamps: dict[str, datetime] = field(default_factory=dict)
    last_updated: datetime | None = None
    version: str = SNAPSHOT_VERSION
    dropped_messages: int = 0
    dropped_conversations: int = 0


# === Encoding ===


def message_to_dict(msg: Message) -> dict[str, Any]:
    """Serialize a message with camelCase keys, omitting empty optional fields."""
    data: dict[str, Any] = {
        "role": msg.role.value,
        "content": msg.content,
        "isReference": msg.is_reference,
    }
    if msg.author:
        data["author"] = msg.author
    if msg.external_id:
        data["externalId"] = msg.external_id
    if msg.timestamp:
        data["timestamp"] = format_timestamp(msg.timestamp)
    if msg.name:
        data["name"] = msg.name
    if msg.function_call:
        data["functionCall"] = msg.function_call
    if msg.metadata:
        data["metadata"] = msg.metadata
    if msg.edited:
        data["edited"] = True
    return data


def encode_snapshot(
    conversations: dict[str, list[Message]],
    timestamps: dict[str, datetime],
    last_updated: datetime,
    version: str = SNAPSHOT_VERSION,
) -> str:
    """Render the full snapshot as pretty-printed JSON."""
    data = {
        "conversations": {
            identity: [message_to_dict(m) for m in record]
            for identity, record in conversations.items()
        },
        "timestamps": {
            identity: format_timestamp(ts) for identity, ts in timestamps.items()
        },
        "lastUpdated": format_timestamp(last_updated),
        "version": version,
    }
    return json.dumps(data, ensure_ascii=False, indent=2)


def empty_snapshot(now: datetime, version: str = SNAPSHOT_VERSION) -> str:
    return encode_snapshot({}, {}, now, version)


# === Decoding ===


def decode_snapshot(text: str) -> DecodedSnapshot:
    """Parse and validate snapshot text.

    Raises:
        StorageCorruptionError: if the text is not JSON or the envelope is invalid.
    """
    try:
        raw = json.loads(text)
    except json.JSONDecodeError as e:
        raise StorageCorruptionError(
            "Snapshot is not valid JSON", line=e.lineno, column=e.colno
        ) from e

    try:
        envelope = SnapshotEnvelope.model_validate(raw)
    except ValidationError as e:
        raise StorageCorruptionError(
            "Snapshot does not match the expected structure", errors=e.error_count()
        ) from e

    result = DecodedSnapshot(version=envelope.version)

    try:
        result.last_updated = parse_timestamp(envelope.last_updated)
    except (ValueError, TypeError, OverflowError):
        result.last_updated = None

    for identity, entries in envelope.conversations.items():
        if not isinstance(entries, list):
            logger.warning("snapshot_conversation_invalid", identity=identity)
            result.dropped_conversations += 1
            continue

        record: list[Message] = []
        for entry in entries:
            try:
                record.append(MessageModel.model_validate(entry).to_message())
            except ValidationError as e:
                result.dropped_messages += 1
                logger.debug(
                    "snapshot_message_invalid",
                    identity=identity,
                    errors=e.error_count(),
                )
        if record:
            result.conversations[identity] = record
        else:
            result.dropped_conversations += 1

    for identity, value in envelope.timestamps.items():
        try:
            ts = parse_timestamp(value)
        except (ValueError, TypeError, OverflowError):
            logger.debug("snapshot_timestamp_invalid", identity=identity)
            continue
        if ts is not None:
            result.timestamps[identity] = ts

    if result.dropped_messages or result.dropped_conversations:
        logger.warning(
            "snapshot_entries_dropped",
            messages=result.dropped_messages,
            conversations=result.dropped_conversations,
        )

    return result


def braces_balanced(text: str) -> bool:
    """Check that ``{``/``}`` pairs balance outside of JSON string literals."""
    depth = 0
    in_string = False
    escaped = False
    for ch in text:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth < 0:
                return False
    return depth == 0 and not in_string


def repair_snapshot_text(text: str) -> str | None:
    """Trim text to its outermost ``{...}`` if the result is structurally balanced.

    Handles trailing garbage and leading noise (e.g. a partial write followed
    by stale bytes). Returns None when no balanced object can be recovered.
    """
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return None
    candidate = text[start : end + 1]
    if not braces_balanced(candidate):
        return None
    return candidate


def decode_with_repair(text: str) -> tuple[DecodedSnapshot, bool]:
    """Decode text, falling back to structural repair.

    Returns (snapshot, repaired).

    Raises:
        StorageCorruptionError: if neither the text nor its repair decodes.
    """
    try:
        return decode_snapshot(text), False
    except StorageCorruptionError as original:
        repaired = repair_snapshot_text(text)
        if repaired is None or repaired == text:
            raise
        logger.warning("snapshot_repair_attempted", **original.to_log())
        return decode_snapshot(repaired), True
