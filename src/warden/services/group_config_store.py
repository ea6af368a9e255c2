from __future__ import annotations

import json
import time
from typing import Any, Optional

import aiosqlite

from .base import BaseService, utc_now_iso
from ..errors import ConfigurationError, PersistenceFailure, RuleNotFoundError
from ..moderation.config_schema import default_config, validate_config
from ..moderation.models import GroupConfig, ModerationRule


class GroupConfigStore(BaseService[GroupConfig]):
    """Per-group moderation config, one JSON document per group.

    Documents are validated before they are written; a group that was never
    saved reads back as the default (no rules, automation off).
    """

    async def _create_tables(self, db: aiosqlite.Connection) -> None:
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS group_configs (
              group_id TEXT PRIMARY KEY,
              doc_json TEXT NOT NULL,
              updated_at_iso TEXT NOT NULL
            )
            """
        )

    async def get_group_config(self, group_id: str) -> GroupConfig:
        cached = self._cache.get(group_id)
        if cached is not None:
            return cached

        try:
            async with aiosqlite.connect(self._path) as db:
                db.row_factory = aiosqlite.Row
                cur = await db.execute("SELECT doc_json FROM group_configs WHERE group_id = ?", (group_id,))
                row = await cur.fetchone()
        except aiosqlite.Error as e:
            raise PersistenceFailure(f"Failed to read config for group {group_id}: {e}") from e

        doc: dict[str, Any] = json.loads(row["doc_json"]) if row else default_config()
        config = GroupConfig.from_dict(doc)
        self._cache.set(group_id, config)
        return config

    async def save_group_config(self, group_id: str, config: GroupConfig) -> None:
        doc = config.to_dict()
        issues = validate_config(doc)
        if issues:
            raise ConfigurationError("Config validation failed: " + "; ".join(f"{i.path}: {i.message}" for i in issues[:10]))

        doc_json = json.dumps(doc, separators=(",", ":"), ensure_ascii=False)
        try:
            async with aiosqlite.connect(self._path) as db:
                await db.execute(
                    """
                    INSERT INTO group_configs (group_id, doc_json, updated_at_iso) VALUES (?, ?, ?)
                    ON CONFLICT(group_id) DO UPDATE SET doc_json = excluded.doc_json, updated_at_iso = excluded.updated_at_iso
                    """,
                    (group_id, doc_json, utc_now_iso()),
                )
                await db.commit()
        except aiosqlite.Error as e:
            raise PersistenceFailure(f"Failed to save config for group {group_id}: {e}") from e

        self._cache.delete(group_id)
        self._logger.info("Saved config for group %s (%d rules)", group_id, len(config.rules))

    async def save_rule(self, group_id: str, rule: ModerationRule) -> ModerationRule:
        """Insert or replace a rule; a rule without an id gets a fresh one."""

        current = await self.get_group_config(group_id)
        config = GroupConfig.from_dict(current.to_dict())
        if not rule.id:
            rule.id = int(time.time() * 1000)
            while config.find_rule(rule.id) is not None:
                rule.id += 1
            rule.created_at = rule.created_at or utc_now_iso()
            config.rules.append(rule)
        else:
            for idx, existing in enumerate(config.rules):
                if existing.id == rule.id:
                    rule.created_at = rule.created_at or existing.created_at
                    config.rules[idx] = rule
                    break
            else:
                rule.created_at = rule.created_at or utc_now_iso()
                config.rules.append(rule)

        await self.save_group_config(group_id, config)
        return rule

    async def delete_rule(self, group_id: str, rule_id: int) -> None:
        current = await self.get_group_config(group_id)
        config = GroupConfig.from_dict(current.to_dict())
        if config.find_rule(rule_id) is None:
            raise RuleNotFoundError(group_id, rule_id)
        config.rules = [r for r in config.rules if r.id != rule_id]
        await self.save_group_config(group_id, config)

    async def set_automation(
        self,
        group_id: str,
        *,
        auto_process: Optional[bool] = None,
        auto_ban: Optional[bool] = None,
    ) -> GroupConfig:
        current = await self.get_group_config(group_id)
        config = GroupConfig.from_dict(current.to_dict())
        if auto_process is not None:
            config.enable_auto_process = auto_process
        if auto_ban is not None:
            config.enable_auto_ban = auto_ban
        await self.save_group_config(group_id, config)
        return config
