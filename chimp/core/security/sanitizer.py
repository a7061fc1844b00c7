"""Message sanitizer: content filtering before messages enter a conversation.

Provides defense against:
- Script tags and control / invisible formatting characters
- Oversized messages
- Prompt injection markers (detected and logged, never blocked)

Validation fails soft: the store sanitizes invalid content instead of
rejecting it.
"""

from __future__ import annotations

import re

import structlog

from chimp.core.errors import ValidationFailure

logger = structlog.get_logger()

# Maximum allowed message length (in characters)
MAX_MESSAGE_LENGTH = 2000

# Content removed outright. Tabs and newlines are kept.
DANGEROUS_PATTERNS = [
    r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>",  # Script tags
    r"[\x00-\x08\x0b-\x1f\x7f-\x9f\u2028\u2029]",  # Control characters
    r"[\u200b-\u200f\u202a-\u202e\u2060-\u206f\ufeff]",  # Invisible formatting characters
    r"[\ufff0-\uffff]",  # Specials
]

_DANGEROUS_RE = [re.compile(p, re.IGNORECASE) for p in DANGEROUS_PATTERNS]

# Patterns that might indicate prompt injection in user content
INJECTION_PATTERNS = [
    r"ignore\s+(all\s+)?previous\s+(instructions|commands)",
    r"disregard\s+(all\s+)?previous\s+prompt",
    r"forget\s+(all\s+)?previous",
    r"system\s*:\s*you\s+are",
    r"\[SYSTEM\]",
    r"\[INST\]",
    r"<<SYS>>",
]

_INJECTION_RE = [re.compile(p, re.IGNORECASE) for p in INJECTION_PATTERNS]


class MessageSanitizer:
    """Sanitization and validation for conversation message content."""

    def __init__(self, max_length: int = MAX_MESSAGE_LENGTH) -> None:
        self.max_length = max_length
        self.injection_detections: int = 0

    def sanitize(self, content: object, strip_newlines: bool = False, trim: bool = True) -> str:
        """Return a cleaned copy of ``content``.

        Non-string content becomes an empty string. Line endings are
        normalized, dangerous patterns removed and the result truncated to
        ``max_length``.
        """
        if not isinstance(content, str):
            logger.warning("sanitize_non_string", content_type=type(content).__name__)
            return ""

        text = content.replace("\r\n", "\n").replace("\r", "\n")
        for pattern in _DANGEROUS_RE:
            text = pattern.sub("", text)

        if strip_newlines:
            text = re.sub(r"\n+", " ", text)
        if trim:
            text = text.strip()

        if len(text) > self.max_length:
            logger.warning(
                "message_truncated",
                original_length=len(content),
                truncated_length=self.max_length,
            )
            text = text[: self.max_length]
        return text

    def validate(self, content: object) -> ValidationFailure | None:
        """Check content against the message rules.

        Returns None when the content is valid, otherwise the failure.
        """
        if not isinstance(content, str):
            return ValidationFailure("Message must be a string", content_type=type(content).__name__)
        if not content:
            return ValidationFailure("Message cannot be empty")
        if len(content) > self.max_length:
            return ValidationFailure(
                f"Message exceeds maximum length of {self.max_length} characters",
                length=len(content),
            )
        for pattern in _DANGEROUS_RE:
            if pattern.search(content):
                return ValidationFailure("Message contains potentially dangerous content")
        return None

    def check_injection(self, text: str) -> tuple[bool, str | None]:
        """Check if text contains potential prompt injection.

        Returns (is_suspicious, matched_pattern).
        Does NOT block - just detects and warns.
        """
        for i, pattern in enumerate(_INJECTION_RE):
            match = pattern.search(text)
            if match:
                self.injection_detections += 1
                matched = match.group(0)
                logger.warning(
                    "injection_detected",
                    pattern=INJECTION_PATTERNS[i],
                    matched=matched[:50],
                )
                return True, matched
        return False, None

    def clean(self, content: object, *, context: dict | None = None) -> str:
        """Validate then sanitize, logging (not raising) a validation failure."""
        failure = self.validate(content)
        if failure is not None:
            logger.warning("message_validation_failed", **failure.to_log(), **(context or {}))
        return self.sanitize(content)
