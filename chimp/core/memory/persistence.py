"""Persistence manager: JSON snapshots of the conversation store.

Lifecycle: UNINITIALIZED -> LOADING -> READY. Saves run while READY and
never block reads or appends; the store is snapshotted synchronously before
the first await, so anything appended during a write stays dirty and is
picked up by the next save.

Files (next to each other):
- ``conversations.json``      the live snapshot
- ``conversations.json.tmp``  written first, then atomically renamed over it
- ``conversations.json.bak``  last trusted snapshot, used when the live one
  cannot be parsed or repaired
"""

from __future__ import annotations

import asyncio
import shutil
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Callable

import aiofiles
import aiofiles.os
import structlog

from chimp.config import PersistenceConfig
from chimp.core.errors import PersistenceError, StorageCorruptionError
from chimp.core.memory.codec import (
    DecodedSnapshot,
    decode_with_repair,
    empty_snapshot,
    encode_snapshot,
    format_timestamp,
)
from chimp.core.memory.pruning import PruningPolicy
from chimp.core.memory.store import ConversationStore
from chimp.core.types import utc_now

logger = structlog.get_logger()

_BYTES_PER_MB = 1024 * 1024


class Phase(str, Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"


class PersistenceManager:
    """Loads, saves and prunes the on-disk conversation snapshot."""

    def __init__(
        self,
        store: ConversationStore,
        policy: PruningPolicy,
        config: PersistenceConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.policy = policy
        self.config = config or PersistenceConfig()
        self._clock = clock

        self.path: Path = self.config.get_path()
        self.tmp_path = self.path.with_name(self.path.name + ".tmp")
        self.backup_path = self.path.with_name(self.path.name + ".bak")

        self.phase = Phase.UNINITIALIZED
        self.saving = False
        self.version = self.config.version
        self.loaded_at: datetime | None = None
        self.last_saved_at: datetime | None = None
        self.last_updated: datetime | None = None

        self._lock = asyncio.Lock()
        self._save_task: asyncio.Task | None = None
        # Only a file that decoded cleanly (or that we wrote) may become the backup
        self._primary_trusted = False

    @property
    def ready(self) -> bool:
        return self.phase == Phase.READY

    # --- file helpers ---

    async def _read_text(self, path: Path) -> str:
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            return await f.read()

    async def _write_atomic(self, text: str) -> None:
        """Write to the temp file, back up the trusted snapshot, then rename."""
        await aiofiles.os.makedirs(self.path.parent, exist_ok=True)
        async with aiofiles.open(self.tmp_path, "w", encoding="utf-8") as f:
            await f.write(text)

        if self._primary_trusted and await aiofiles.os.path.exists(self.path):
            await asyncio.to_thread(shutil.copyfile, self.path, self.backup_path)

        await aiofiles.os.replace(self.tmp_path, self.path)
        self._primary_trusted = True

    async def file_size(self) -> int | None:
        """Size of the live snapshot in bytes, or None if it cannot be read."""
        try:
            stat = await aiofiles.os.stat(self.path)
        except OSError:
            return None
        return stat.st_size

    # --- load ---

    async def _decode_file(self, path: Path) -> tuple[DecodedSnapshot, bool]:
        try:
            text = await self._read_text(path)
        except UnicodeDecodeError as e:
            raise StorageCorruptionError(
                "Snapshot is not valid UTF-8", path=str(path), position=e.start
            ) from e
        return decode_with_repair(text)

    async def _read_snapshot(self) -> tuple[DecodedSnapshot | None, bool]:
        """Read the live snapshot with repair and backup fallback.

        Returns (snapshot, needs_rewrite). A None snapshot means nothing
        could be recovered.
        """
        if not await aiofiles.os.path.exists(self.path):
            await self._write_atomic(empty_snapshot(self._clock(), self.version))
            logger.info("snapshot_created", path=str(self.path))
            return DecodedSnapshot(version=self.version), False

        try:
            decoded, repaired = await self._decode_file(self.path)
        except StorageCorruptionError as e:
            logger.error("snapshot_corrupt", path=str(self.path), **e.to_log())
        else:
            if repaired:
                logger.warning("snapshot_repaired", path=str(self.path))
            else:
                self._primary_trusted = True
            return decoded, repaired

        if await aiofiles.os.path.exists(self.backup_path):
            try:
                decoded, _ = await self._decode_file(self.backup_path)
            except StorageCorruptionError as e:
                logger.error("snapshot_backup_corrupt", path=str(self.backup_path), **e.to_log())
            else:
                logger.warning(
                    "snapshot_restored_from_backup",
                    path=str(self.backup_path),
                    conversations=len(decoded.conversations),
                )
                return decoded, True

        logger.error("snapshot_unrecoverable", path=str(self.path))
        return None, True

    async def load(self) -> ConversationStore:
        """Hydrate the store from disk, then prune expired conversations.

        Never raises for corrupt or unreadable files; the store starts empty
        instead.
        """
        self.phase = Phase.LOADING
        try:
            decoded, needs_rewrite = await self._read_snapshot()
        except OSError as e:
            err = PersistenceError(
                "Failed to read conversation snapshot", path=str(self.path), cause=str(e)
            )
            logger.error("conversations_load_failed", **err.to_log())
            decoded, needs_rewrite = None, False

        if decoded is None:
            self.store.hydrate({}, {})
        else:
            self.store.hydrate(decoded.conversations, decoded.timestamps)
            self.last_updated = decoded.last_updated
            self.version = decoded.version or self.version
        if needs_rewrite:
            self.store.mark_dirty()

        self.loaded_at = self._clock()
        self.phase = Phase.READY
        logger.info(
            "conversations_loaded",
            count=self.store.count(),
            path=str(self.path),
            recovered=needs_rewrite,
        )

        await self.prune_old_conversations()
        return self.store

    # --- save ---

    async def save(self, force: bool = False) -> bool:
        """Write the store to disk if it is dirty (or ``force``).

        Returns True when a snapshot was written. Failures are logged and
        leave the store dirty so the next save retries.
        """
        if not self.ready:
            logger.debug("save_skipped_not_ready", phase=self.phase.value)
            return False
        if not self.store.dirty and not force:
            return False

        conversations, timestamps, revision = self.store.snapshot()
        now = self._clock()

        async with self._lock:
            self.saving = True
            try:
                text = encode_snapshot(conversations, timestamps, now, self.version)
                await self._write_atomic(text)
            except (OSError, TypeError, ValueError) as e:
                err = PersistenceError(
                    "Failed to save conversations", path=str(self.path), cause=str(e)
                )
                logger.error("conversations_save_failed", **err.to_log())
                return False
            finally:
                self.saving = False

        self.store.mark_clean(revision)
        self.last_saved_at = now
        self.last_updated = now
        logger.debug("conversations_saved", count=len(conversations), path=str(self.path))
        return True

    # --- periodic save ---

    def start_periodic_save(self, interval: float | None = None) -> None:
        """Start the background save task. No-op for a non-positive interval."""
        seconds = self.config.save_interval_seconds if interval is None else interval
        if seconds <= 0:
            return
        if self._save_task and not self._save_task.done():
            logger.warning("periodic_save_already_running")
            return
        self._save_task = asyncio.create_task(self._periodic_save_loop(seconds))
        logger.info("periodic_save_started", interval_seconds=seconds)

    async def stop_periodic_save(self) -> None:
        if self._save_task:
            self._save_task.cancel()
            try:
                await self._save_task
            except asyncio.CancelledError:
                pass
            self._save_task = None
            logger.info("periodic_save_stopped")

    @property
    def periodic_save_running(self) -> bool:
        return self._save_task is not None and not self._save_task.done()

    async def _periodic_save_loop(self, interval: float) -> None:
        while True:
            try:
                await asyncio.sleep(interval)
                await self.save()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("periodic_save_error", error=str(e))

    async def shutdown(self) -> bool:
        """Stop the background task and write one final snapshot."""
        await self.stop_periodic_save()
        saved = await self.save(force=True)
        logger.info("persistence_shutdown", saved=saved)
        return saved

    # --- maintenance ---

    async def prune_old_conversations(self, max_age: timedelta | None = None) -> int:
        """Drop conversations idle longer than ``max_age``.

        When the snapshot file is over the size limit the age is halved for
        this pass only. Returns the number of removed conversations.
        """
        age = max_age if max_age is not None else timedelta(days=self.config.max_age_days)

        size = await self.file_size()
        if size is not None and size > self.config.max_file_size_mb * _BYTES_PER_MB:
            age = age / 2
            logger.warning(
                "aggressive_pruning",
                file_size_bytes=size,
                max_age_days=round(age.total_seconds() / 86400, 2),
            )

        removed = self.policy.prune_expired(self.store, age, self._clock())
        return len(removed)

    async def clear_all(self) -> bool:
        """Remove every conversation and persist the empty store."""
        self.store.clear_all()
        return await self.save(force=True)

    async def status(self) -> dict[str, Any]:
        size = await self.file_size()

        def fmt(value: datetime | None) -> str | None:
            return format_timestamp(value) if value else None

        return {
            "phase": self.phase.value,
            "active_conversations": self.store.count(),
            "dirty": self.store.dirty,
            "saving": self.saving,
            "file_path": str(self.path),
            "file_size_bytes": size,
            "file_size_mb": round(size / _BYTES_PER_MB, 3) if size is not None else None,
            "last_updated": fmt(self.last_updated),
            "last_saved_at": fmt(self.last_saved_at),
            "loaded_at": fmt(self.loaded_at),
            "version": self.version,
            "periodic_save": self.periodic_save_running,
        }
