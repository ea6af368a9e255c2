from __future__ import annotations

import asyncio
import logging
from typing import Optional

import aiosqlite

from ..constants import DEFAULT_PROCESSED_EVENTS_CAP
from ..errors import PersistenceFailure
from ..interfaces import DurableKeyValue
from .base import BaseService, utc_now_iso

log = logging.getLogger("warden.processed_events")


class ProcessedEventStore(BaseService):
    """Durable, ordered list of processed audit-event keys.

    ``save`` replaces the whole list so the table never grows past what the
    registry chose to keep.
    """

    async def _create_tables(self, db: aiosqlite.Connection) -> None:
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS processed_audit_events (
              seq INTEGER PRIMARY KEY AUTOINCREMENT,
              event_key TEXT NOT NULL UNIQUE,
              saved_at_iso TEXT NOT NULL
            )
            """
        )

    async def load(self) -> list[str]:
        try:
            async with aiosqlite.connect(self._path) as db:
                async with db.execute("SELECT event_key FROM processed_audit_events ORDER BY seq") as cur:
                    rows = await cur.fetchall()
        except aiosqlite.Error as e:
            raise PersistenceFailure(f"Failed to load processed events: {e}") from e
        return [str(r[0]) for r in rows]

    async def save(self, keys: list[str]) -> None:
        now_iso = utc_now_iso()
        try:
            async with aiosqlite.connect(self._path) as db:
                await db.execute("DELETE FROM processed_audit_events")
                await db.executemany(
                    "INSERT OR IGNORE INTO processed_audit_events (event_key, saved_at_iso) VALUES (?, ?)",
                    [(k, now_iso) for k in keys],
                )
                await db.commit()
        except aiosqlite.Error as e:
            raise PersistenceFailure(f"Failed to save processed events: {e}") from e


class ProcessedEventRegistry:
    """Bounded, durable dedup set of ``group_id:event_id`` keys.

    Keys are kept in insertion order. When the size exceeds ``max_entries``
    the oldest ``max_entries // 2`` keys are dropped, and ``persist`` writes
    only the newest ``persist_limit`` keys.
    """

    def __init__(
        self,
        storage: DurableKeyValue,
        *,
        max_entries: int = DEFAULT_PROCESSED_EVENTS_CAP,
        persist_limit: Optional[int] = None,
    ) -> None:
        self._storage = storage
        self._max_entries = max(2, int(max_entries))
        self._persist_limit = max(1, int(persist_limit or self._max_entries))
        self._keys: dict[str, None] = {}
        self._loaded = False
        self._load_lock = asyncio.Lock()

    @staticmethod
    def make_key(group_id: str, event_id: str) -> str:
        return f"{group_id}:{event_id}"

    def __contains__(self, key: object) -> bool:
        return key in self._keys

    def __len__(self) -> int:
        return len(self._keys)

    @property
    def loaded(self) -> bool:
        return self._loaded

    def keys(self) -> list[str]:
        return list(self._keys)

    def add(self, key: str) -> bool:
        if key in self._keys:
            return False
        self._keys[key] = None
        self.prune()
        return True

    def prune(self) -> int:
        if len(self._keys) <= self._max_entries:
            return 0
        drop = self._max_entries // 2
        for key in list(self._keys)[:drop]:
            del self._keys[key]
        log.debug("Pruned %d processed event keys", drop)
        return drop

    async def load(self) -> bool:
        """Hydrate from durable storage. A failed load is retried on the next call."""
        if self._loaded:
            return True
        async with self._load_lock:
            if self._loaded:
                return True
            try:
                stored = await self._storage.load()
            except Exception as e:
                log.warning("Failed to load processed audit events, will retry: %s", e)
                return False
            merged = dict.fromkeys(stored)
            merged.update(self._keys)
            self._keys = merged
            self.prune()
            self._loaded = True
            log.info("Loaded %d processed audit event ids from storage", len(stored))
            return True

    async def persist(self) -> bool:
        # Saving replaces the stored list, so never write before the stored keys are merged in.
        if not await self.load():
            log.warning("Skipping persist of %d processed audit events; storage not loaded", len(self._keys))
            return False
        entries = list(self._keys)[-self._persist_limit:]
        try:
            await self._storage.save(entries)
        except Exception as e:
            log.warning("Failed to persist processed audit events: %s", e)
            return False
        return True
