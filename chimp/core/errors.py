"""Error taxonomy for the conversation engine.

None of these cross the engine's public boundary: each one is caught at the
component that owns the recovery path and turned into a safe default.
"""

from __future__ import annotations

from typing import Any


class ChimpError(Exception):
    """Base class for expected conversation-engine failures."""

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.context = context

    def to_log(self) -> dict[str, Any]:
        """Flatten into structlog keyword arguments."""
        return {"error": str(self), "error_type": type(self).__name__, **self.context}


class StorageCorruptionError(ChimpError):
    """The persisted snapshot could not be parsed or failed schema validation."""


class ReferenceResolutionError(ChimpError):
    """A referenced message could not be fetched."""


class ValidationFailure(ChimpError):
    """Message content failed validation and was sanitized instead."""


class PersistenceError(ChimpError):
    """Reading or writing the snapshot file failed."""
