from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Generic, TypeVar

import aiosqlite

from ..errors import PersistenceFailure
from .cache import TTLCache

T = TypeVar("T")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


class BaseService(ABC, Generic[T]):
    """SQLite-backed store with a per-key TTL cache in front.

    Every call opens its own connection. Subclasses create their tables in
    ``_create_tables`` and keep whatever they read by key in ``_cache``.
    """

    def __init__(self, sqlite_path: str, cache_ttl_seconds: int = 120) -> None:
        self._path = sqlite_path
        self._cache: TTLCache[str, T] = TTLCache(default_ttl_seconds=cache_ttl_seconds)
        self._logger = logging.getLogger(f"warden.{self.__class__.__name__.lower()}")

    async def init(self) -> None:
        try:
            async with aiosqlite.connect(self._path) as db:
                await self._create_tables(db)
                await db.commit()
        except aiosqlite.Error as e:
            raise PersistenceFailure(f"Failed to create tables for {self.__class__.__name__}: {e}") from e

    @abstractmethod
    async def _create_tables(self, db: aiosqlite.Connection) -> None:
        ...
