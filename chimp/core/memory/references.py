"""Reference resolver: turns reply chains into conversation context.

Given a platform message that replies to another, walks the reply links
back through the channel history (bounded depth, cycle-safe, cached) and
converts what it finds into reference messages for the store.

Resolution is best-effort: a link that cannot be fetched truncates the
chain instead of failing the call.
"""

from __future__ import annotations

from typing import Protocol

import structlog

from chimp.core.errors import ReferenceResolutionError
from chimp.core.types import Message, PlatformMessage, Role, as_utc

logger = structlog.get_logger()


class MessageFetcher(Protocol):
    """Transport-side lookup of a platform message by id."""

    async def fetch(self, message_id: str, origin: PlatformMessage) -> PlatformMessage | None:
        """Return the message, or None if it no longer exists. May raise."""
        ...


class ReferenceResolver:
    """Resolves reply chains with a bounded, insertion-ordered cache."""

    def __init__(
        self,
        fetcher: MessageFetcher | None,
        max_depth: int = 5,
        max_context: int = 5,
        enabled: bool = True,
        cache_size: int = 1000,
    ) -> None:
        self.fetcher = fetcher
        self.max_depth = max_depth
        self.max_context = max_context
        self.enabled = enabled
        self.max_cache_size = cache_size
        self._cache: dict[str, PlatformMessage] = {}

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    def clear_cache(self) -> None:
        size = len(self._cache)
        self._cache.clear()
        logger.debug("reference_cache_cleared", entries=size)

    def _remember(self, message: PlatformMessage) -> None:
        self._cache[message.id] = message
        if len(self._cache) > self.max_cache_size:
            # Drop the oldest 10%
            drop = max(1, self.max_cache_size // 10)
            for key in list(self._cache)[:drop]:
                del self._cache[key]
            logger.debug("reference_cache_trimmed", dropped=drop, entries=len(self._cache))

    async def resolve_reference(self, message: PlatformMessage) -> PlatformMessage | None:
        """Fetch the message ``message`` replies to. Never raises."""
        ref_id = message.reply_to_id
        if not ref_id:
            return None

        cached = self._cache.get(ref_id)
        if cached is not None:
            return cached

        if self.fetcher is None:
            return None

        try:
            referenced = await self.fetcher.fetch(ref_id, message)
        except Exception as e:
            err = ReferenceResolutionError(
                "Failed to fetch referenced message",
                message_id=ref_id,
                origin_id=message.id,
                cause=str(e),
            )
            logger.warning("reference_resolution_failed", **err.to_log())
            return None

        if referenced is None:
            logger.debug("reference_not_found", message_id=ref_id, origin_id=message.id)
            return None

        self._remember(referenced)
        return referenced

    async def resolve_chain(
        self, message: PlatformMessage, max_depth: int | None = None
    ) -> list[PlatformMessage]:
        """Walk reply links from ``message``. Returns the chain oldest first."""
        depth = self.max_depth if max_depth is None else max_depth
        chain: list[PlatformMessage] = []
        visited = {message.id}
        current = message

        while current.reply_to_id and len(chain) < depth:
            referenced = await self.resolve_reference(current)
            if referenced is None:
                break
            if referenced.id in visited:
                logger.warning(
                    "reference_cycle_detected",
                    message_id=referenced.id,
                    origin_id=message.id,
                    depth=len(chain),
                )
                break
            visited.add(referenced.id)
            chain.insert(0, referenced)
            current = referenced

        if chain:
            logger.debug("reference_chain_resolved", origin_id=message.id, length=len(chain))
        return chain

    @staticmethod
    def to_message(ref: PlatformMessage) -> Message:
        """Convert a resolved platform message into a reference entry."""
        return Message(
            role=Role.ASSISTANT if ref.author_is_bot else Role.USER,
            content=ref.content,
            author=ref.author_name,
            external_id=ref.id,
            timestamp=as_utc(ref.created_at),
            is_reference=True,
        )

    async def extract_reference_context(
        self,
        message: PlatformMessage,
        max_depth: int | None = None,
        bot_only: bool = False,
    ) -> list[Message]:
        """Reference messages for the chain behind ``message``.

        Capped at the ``max_context`` most recent entries. Empty when reply
        context is disabled or ``message`` is not a reply.
        """
        if not self.enabled or not message.is_reply:
            return []

        chain = await self.resolve_chain(message, max_depth)
        if bot_only:
            chain = [ref for ref in chain if ref.author_is_bot]

        if self.max_context <= 0:
            return []
        return [self.to_message(ref) for ref in chain[-self.max_context :]]
