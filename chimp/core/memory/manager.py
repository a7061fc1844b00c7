"""Conversation engine: wires the memory components into one lifecycle.

Coordinates:
- Conversation store (per-identity records with inline pruning)
- Reference resolver (reply-chain context)
- Context optimizer (bounded slice per model call)
- Persistence manager (JSON snapshot, periodic save, age pruning)
- Blended conversations (shared channel records, in memory)

Control flow for one inbound message:
reply chain -> append references + message -> optimize -> model call ->
append reply. Persistence runs on its own task and at shutdown.
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Union

import structlog

from chimp.config import ChimpConfig, ResilienceConfig
from chimp.core.memory.blended import ASSISTANT_KEY, BlendedConversations
from chimp.core.memory.optimizer import ContextOptimizer
from chimp.core.memory.persistence import PersistenceManager
from chimp.core.memory.pruning import PruningPolicy
from chimp.core.memory.references import MessageFetcher, ReferenceResolver
from chimp.core.memory.store import ConversationStore
from chimp.core.security.sanitizer import MessageSanitizer
from chimp.core.types import Message, PlatformMessage, Role, utc_now

logger = structlog.get_logger()

ModelReply = Union[str, dict[str, Any]]
ModelCall = Callable[[list[dict[str, Any]]], Awaitable[ModelReply]]
Resilience = Callable[[Callable[[], Awaitable[Any]], ResilienceConfig], Awaitable[Any]]


class ConversationEngine:
    """Owns every piece of conversation state for one bot process."""

    def __init__(
        self,
        config: ChimpConfig | None = None,
        fetcher: MessageFetcher | None = None,
        clock: Callable[[], datetime] | None = None,
        resilience: Resilience | None = None,
    ) -> None:
        self.config = config or ChimpConfig()
        self._clock = clock or utc_now
        self.resilience = resilience

        persona = self.config.bot_personality
        conv = self.config.conversation
        refs = self.config.references
        blended = self.config.blended

        self.sanitizer = MessageSanitizer(max_length=conv.max_message_length)
        self.policy = PruningPolicy(conv.max_length, persona)
        self.store = ConversationStore(self.policy, self.sanitizer, self._clock)
        self.optimizer = ContextOptimizer(
            persona, conv.max_length, conv.optimize_threshold, conv.max_tokens
        )
        self.references = ReferenceResolver(
            fetcher,
            max_depth=refs.max_depth,
            max_context=refs.max_context,
            enabled=refs.enabled,
            cache_size=refs.cache_size,
        )
        self.persistence = PersistenceManager(
            self.store, self.policy, self.config.persistence, self._clock
        )
        self.blended = BlendedConversations(
            persona,
            max_messages_per_user=blended.max_messages_per_user,
            context_window=blended.context_window,
            max_length=blended.max_length,
            sanitizer=self.sanitizer,
            clock=self._clock,
        )
        self._init_lock = asyncio.Lock()

    # --- lifecycle ---

    async def init(self, start_timer: bool = True) -> None:
        """Load the snapshot and start the periodic save. Idempotent."""
        async with self._init_lock:
            if self.persistence.ready:
                return
            await self.persistence.load()
            if start_timer:
                self.persistence.start_periodic_save()
            logger.info(
                "conversation_engine_ready",
                conversations=self.store.count(),
                blended=self.config.blended.enabled,
            )

    async def shutdown(self) -> None:
        """Stop background work and write the final snapshot."""
        if self.persistence.ready:
            await self.persistence.shutdown()
        self.references.clear_cache()
        logger.info("conversation_engine_shutdown")

    # --- routing ---

    def _is_blended(self, channel_id: str | None, is_dm: bool) -> bool:
        return self.config.blended.enabled and not is_dm and channel_id is not None

    @staticmethod
    def _from_source(message: Message, source: PlatformMessage | None) -> Message:
        if source is None:
            return message
        return replace(
            message,
            external_id=message.external_id or source.id,
            author=message.author or source.author_name,
            timestamp=message.timestamp or source.created_at,
        )

    # --- conversation flow ---

    async def add_message(
        self,
        message: Message | str,
        *,
        user_id: str,
        channel_id: str | None = None,
        is_dm: bool = True,
        source: PlatformMessage | None = None,
    ) -> list[Message]:
        """Record an inbound message and return the slice for the model call."""
        await self.init()

        if isinstance(message, str):
            message = Message(role=Role.USER, content=message)
        message = self._from_source(message, source)

        if message.role == Role.USER:
            self.sanitizer.check_injection(message.content or "")

        if self._is_blended(channel_id, is_dm):
            return self.blended.add(channel_id, user_id, message)

        record = self.store.get_or_create(user_id)
        if source is not None and source.is_reply:
            known = {m.external_id for m in record if m.external_id}
            for ref in await self.references.extract_reference_context(source):
                if ref.external_id not in known:
                    self.store.append(user_id, ref)
                    known.add(ref.external_id)

        record = self.store.append(user_id, message)
        return self.optimizer.optimize(record)

    async def add_reply(
        self,
        reply: ModelReply,
        *,
        user_id: str,
        channel_id: str | None = None,
        is_dm: bool = True,
        external_id: str | None = None,
    ) -> list[Message]:
        """Record the bot's reply (text or a function-call descriptor)."""
        await self.init()

        if isinstance(reply, dict):
            message = Message(role=Role.ASSISTANT, content="", function_call=reply)
        else:
            message = Message(role=Role.ASSISTANT, content=reply)
        message.author = self.config.bot_name
        message.external_id = external_id

        if self._is_blended(channel_id, is_dm):
            return self.blended.add(channel_id, ASSISTANT_KEY, message)

        record = self.store.append(user_id, message)
        return self.optimizer.optimize(record)

    async def respond(
        self,
        message: Message | str,
        model_call: ModelCall,
        *,
        user_id: str,
        channel_id: str | None = None,
        is_dm: bool = True,
        source: PlatformMessage | None = None,
    ) -> ModelReply:
        """Full turn: record the message, call the model, record the reply.

        Model-call failures are logged and re-raised to the caller; the user
        message stays in the conversation.
        """
        context = await self.add_message(
            message, user_id=user_id, channel_id=channel_id, is_dm=is_dm, source=source
        )
        api_messages = [m.to_api() for m in context]

        async def operation() -> ModelReply:
            return await model_call(api_messages)

        try:
            if self.resilience is not None:
                reply = await self.resilience(operation, self.config.resilience)
            else:
                reply = await operation()
        except Exception as e:
            logger.error("model_call_failed", user_id=user_id, channel_id=channel_id, error=str(e))
            raise

        await self.add_reply(reply, user_id=user_id, channel_id=channel_id, is_dm=is_dm)
        return reply

    # --- reads ---

    def get_conversation(self, user_id: str) -> list[Message] | None:
        return self.store.get(user_id)

    def get_channel_conversation(self, channel_id: str) -> list[Message]:
        return self.blended.build(channel_id)

    # --- maintenance ---

    async def clear(self, identity: str) -> bool:
        """Clear a user conversation and any blended channel with this id."""
        await self.init()
        cleared = self.store.clear(identity)
        cleared = self.blended.clear(identity) or cleared
        return cleared

    async def clear_all(self) -> bool:
        await self.init()
        self.blended.clear_all()
        return await self.persistence.clear_all()

    async def edit_message(self, external_id: str, content: str) -> bool:
        """Apply a platform edit wherever the message is stored."""
        await self.init()
        updated = self.store.update_message(external_id, content)
        updated = self.blended.update_message(external_id, content) or updated
        return updated

    async def delete_message(self, external_id: str) -> bool:
        """Apply a platform delete wherever the message is stored."""
        await self.init()
        removed = self.store.remove_message(external_id)
        removed = self.blended.remove_message(external_id) or removed
        return removed

    async def prune_old_conversations(self, max_age: timedelta | None = None) -> int:
        await self.init()
        return await self.persistence.prune_old_conversations(max_age)

    async def save(self, force: bool = False) -> bool:
        return await self.persistence.save(force=force)

    async def status(self) -> dict[str, Any]:
        status = await self.persistence.status()
        status.update(
            {
                "max_conversation_length": self.policy.max_length,
                "reference_cache_size": self.references.cache_size,
                "injection_detections": self.sanitizer.injection_detections,
                "blended": {"enabled": self.config.blended.enabled, **self.blended.status()},
            }
        )
        return status
