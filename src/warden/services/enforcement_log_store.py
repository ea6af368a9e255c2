from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Optional

import aiosqlite

from .base import BaseService
from ..errors import PersistenceFailure
from ..moderation.models import EnforcementActionRecord


@dataclass(frozen=True)
class StoredEnforcementAction:
    id: int
    group_id: str
    action: str
    actor_id: str
    actor_display_name: str
    reason: str
    module: str
    created_at_iso: str
    details: dict[str, Any]


_COLUMNS = "id, group_id, action, actor_id, actor_display_name, reason, module, created_at_iso, details_json"


class EnforcementLogStore(BaseService):
    """Append-only trail of automated enforcement actions."""

    async def _create_tables(self, db: aiosqlite.Connection) -> None:
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS enforcement_log (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              group_id TEXT NOT NULL,
              action TEXT NOT NULL,
              actor_id TEXT NOT NULL,
              actor_display_name TEXT NOT NULL,
              reason TEXT NOT NULL,
              module TEXT NOT NULL,
              created_at_iso TEXT NOT NULL,
              details_json TEXT NOT NULL
            )
            """
        )
        await db.execute("CREATE INDEX IF NOT EXISTS idx_enforcement_group ON enforcement_log(group_id, id)")

    def _from_row(self, row: aiosqlite.Row) -> StoredEnforcementAction:
        return StoredEnforcementAction(
            id=int(row["id"]),
            group_id=str(row["group_id"]),
            action=str(row["action"]),
            actor_id=str(row["actor_id"]),
            actor_display_name=str(row["actor_display_name"]),
            reason=str(row["reason"]),
            module=str(row["module"]),
            created_at_iso=str(row["created_at_iso"]),
            details=json.loads(row["details_json"]),
        )

    async def create_audit_record(self, record: EnforcementActionRecord) -> int:
        details_json = json.dumps(record.details, separators=(",", ":"), ensure_ascii=False, default=str)
        try:
            async with aiosqlite.connect(self._path) as db:
                cur = await db.execute(
                    """
                    INSERT INTO enforcement_log (
                      group_id, action, actor_id, actor_display_name, reason, module, created_at_iso, details_json
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.group_id,
                        record.action,
                        record.actor_id,
                        record.actor_display_name,
                        record.reason,
                        record.module,
                        record.timestamp.isoformat(timespec="seconds"),
                        details_json,
                    ),
                )
                await db.commit()
                return int(cur.lastrowid)
        except aiosqlite.Error as e:
            raise PersistenceFailure(f"Failed to write enforcement record: {e}") from e

    async def recent(
        self,
        group_id: Optional[str] = None,
        limit: int = 50,
        *,
        action: Optional[str] = None,
    ) -> list[StoredEnforcementAction]:
        limit = max(1, min(500, int(limit)))
        clauses: list[str] = []
        params: list[Any] = []
        if group_id:
            clauses.append("group_id = ?")
            params.append(group_id)
        if action:
            clauses.append("action = ?")
            params.append(action)
        query = f"SELECT {_COLUMNS} FROM enforcement_log"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)

        async with aiosqlite.connect(self._path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(query, params) as cur:
                rows = await cur.fetchall()
        return [self._from_row(r) for r in rows]

    async def clear(self, group_id: Optional[str] = None) -> int:
        async with aiosqlite.connect(self._path) as db:
            if group_id:
                cur = await db.execute("DELETE FROM enforcement_log WHERE group_id = ?", (group_id,))
            else:
                cur = await db.execute("DELETE FROM enforcement_log")
            await db.commit()
            return int(cur.rowcount or 0)
