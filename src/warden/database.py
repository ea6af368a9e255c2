from __future__ import annotations

import logging
from typing import Iterable

import aiosqlite

from .services.base import BaseService

log = logging.getLogger("warden.database")


async def initialize_database(sqlite_path: str, stores: Iterable[BaseService]) -> None:
    """Apply connection pragmas and create every store's tables."""
    try:
        async with aiosqlite.connect(sqlite_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            await db.execute("PRAGMA synchronous=NORMAL")
            await db.execute("PRAGMA temp_store=MEMORY")
            await db.commit()
        log.info("Applied SQLite pragmas to %s", sqlite_path)

        for store in stores:
            await store.init()
            log.info("Initialized %s", store.__class__.__name__)
    except Exception as e:
        log.error("Failed to initialize database: %s", e)
        raise


async def table_row_counts(sqlite_path: str) -> dict[str, int]:
    """Row count per table, for startup diagnostics."""
    async with aiosqlite.connect(sqlite_path) as db:
        cur = await db.execute("SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%' ORDER BY name")
        names = [str(r[0]) for r in await cur.fetchall()]
        counts: dict[str, int] = {}
        for name in names:
            cur = await db.execute(f'SELECT COUNT(*) FROM "{name}"')
            row = await cur.fetchone()
            counts[name] = int(row[0]) if row else 0
    return counts
