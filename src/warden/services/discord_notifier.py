from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

import aiohttp
import discord

from ..constants import COLORS, EVENT_AUTOMOD_VIOLATION, EVENT_INSTANCE_GUARD

log = logging.getLogger("warden.discord_notifier")


def _timestamp(payload: dict[str, Any]) -> datetime:
    ts = payload.get("timestamp")
    if isinstance(ts, (int, float)):
        # Guard events carry epoch milliseconds.
        return datetime.fromtimestamp(ts / 1000.0, tz=timezone.utc)
    return datetime.now(timezone.utc)


def build_instance_guard_embed(payload: dict[str, Any]) -> discord.Embed:
    e = discord.Embed(
        title="Instance Closed",
        description=str(payload.get("reason") or "")[:1000],
        color=COLORS["warning"],
        timestamp=_timestamp(payload),
    )
    e.add_field(name="Group", value=str(payload.get("group_id", "?")), inline=False)
    e.add_field(
        name="Instance",
        value=f"{payload.get('world_id', '?')}:{payload.get('instance_id', '?')}"[:1000],
        inline=False,
    )
    e.add_field(
        name="Opened by",
        value=f"{payload.get('owner_name') or 'Unknown'} ({payload.get('owner_id') or '?'})",
        inline=False,
    )
    e.set_footer(text=str(payload.get("closed_by") or "Permission Guard"))
    return e


def build_violation_embed(payload: dict[str, Any]) -> discord.Embed:
    action = str(payload.get("action") or "VIOLATION")
    e = discord.Embed(
        title=f"AutoMod: {action}",
        description=str(payload.get("reason") or "")[:1000],
        color=COLORS["error"] if action == "BANNED" else COLORS["info"],
        timestamp=datetime.now(timezone.utc),
    )
    e.add_field(
        name="User",
        value=f"{payload.get('display_name') or 'Unknown'} ({payload.get('user_id') or '?'})",
        inline=False,
    )
    if payload.get("rule_name"):
        e.add_field(name="Rule", value=str(payload["rule_name"])[:200], inline=False)
    e.add_field(name="Group", value=str(payload.get("group_id", "?")), inline=False)
    return e


class DiscordWebhookNotifier:
    """Posts enforcement events to a Discord channel through a webhook."""

    def __init__(self, webhook_url: str, *, username: str = "Group Warden") -> None:
        self._url = webhook_url
        self._username = username
        self._session: Optional[aiohttp.ClientSession] = None

    def _webhook(self) -> discord.Webhook:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return discord.Webhook.from_url(self._url, session=self._session)

    async def send_embed(self, embed: discord.Embed) -> bool:
        try:
            await self._webhook().send(embed=embed, username=self._username)
        except discord.HTTPException:
            log.exception("Failed to send webhook notification")
            return False
        return True

    async def handle(self, event_name: str, payload: dict[str, Any]) -> None:
        """Event bus handler; unknown events are ignored."""
        if event_name == EVENT_INSTANCE_GUARD:
            await self.send_embed(build_instance_guard_embed(payload))
        elif event_name == EVENT_AUTOMOD_VIOLATION:
            await self.send_embed(build_violation_embed(payload))

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
