from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Optional

import aiohttp

from ..errors import AlreadyInDesiredState, LookupFailure, NotFound, RateLimited
from ..moderation.models import AuditEvent, GroupMember, GroupRole, UserGroup, UserSnapshot

log = logging.getLogger("warden.vrchat_api")

DEFAULT_API_BASE = "https://api.vrchat.cloud/api/1"


def _parse_datetime(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _str_or_none(value: Any) -> Optional[str]:
    return str(value) if value is not None else None


def user_from_json(data: dict[str, Any]) -> UserSnapshot:
    tags = data.get("tags")
    return UserSnapshot(
        id=str(data.get("id") or ""),
        display_name=str(data.get("displayName") or ""),
        bio=_str_or_none(data.get("bio")),
        status=_str_or_none(data.get("status")),
        status_description=_str_or_none(data.get("statusDescription")),
        pronouns=_str_or_none(data.get("pronouns")),
        tags=tuple(str(t) for t in tags) if isinstance(tags, list) else None,
        age_verification_status=_str_or_none(data.get("ageVerificationStatus")),
        user_icon=data.get("userIcon") or data.get("currentAvatarThumbnailImageUrl") or None,
    )


def audit_event_from_json(data: dict[str, Any]) -> AuditEvent:
    return AuditEvent(
        id=str(data.get("id") or ""),
        event_type=str(data.get("eventType") or ""),
        actor_id=str(data.get("actorId") or ""),
        actor_display_name=str(data.get("actorDisplayName") or ""),
        target_id=str(data.get("targetId") or ""),
        created_at=_parse_datetime(data.get("created_at") or data.get("createdAt")),
    )


def role_from_json(data: dict[str, Any]) -> GroupRole:
    return GroupRole(
        id=str(data.get("id") or ""),
        name=str(data.get("name") or ""),
        permissions=tuple(str(p) for p in (data.get("permissions") or [])),
    )


def member_from_json(data: dict[str, Any]) -> GroupMember:
    user = data.get("user")
    return GroupMember(
        user_id=str(data.get("userId") or (user or {}).get("id") or data.get("id") or ""),
        role_ids=tuple(str(r) for r in (data.get("roleIds") or [])),
        m_role_ids=tuple(str(r) for r in (data.get("mRoleIds") or [])),
        user=user_from_json(user) if isinstance(user, dict) else None,
    )


def user_group_from_json(data: dict[str, Any]) -> UserGroup:
    return UserGroup(
        group_id=str(data.get("groupId") or data.get("id") or ""),
        name=str(data.get("name") or ""),
        short_code=str(data.get("shortCode") or ""),
    )


class VRChatApiClient:
    """Thin aiohttp adapter for the upstream group API.

    Maps HTTP outcomes onto the warden error taxonomy and never retries;
    retry policy belongs to the caller's next pass.
    """

    def __init__(
        self,
        *,
        auth_cookie: str,
        user_agent: str,
        api_base: str = DEFAULT_API_BASE,
        timeout_seconds: float = 30,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self._auth_cookie = auth_cookie
        self._user_agent = user_agent
        self._api_base = api_base.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict[str, Any]] = None,
        body: Optional[dict[str, Any]] = None,
        closing: bool = False,
    ) -> Any:
        url = f"{self._api_base}{path}"
        what = f"{method} {path}"
        try:
            async with self._get_session().request(
                method,
                url,
                params=params,
                json=body,
                headers={"User-Agent": self._user_agent, "Cookie": f"auth={self._auth_cookie}"},
            ) as resp:
                text = await resp.text()
                status = resp.status
                retry_after = resp.headers.get("Retry-After")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise LookupFailure(f"{what} failed: {e}") from e

        if status == 429:
            try:
                retry = float(retry_after) if retry_after else None
            except ValueError:
                retry = None
            raise RateLimited(f"{what} rate limited", retry_after=retry)
        if closing and status >= 400 and "already closed" in text.lower():
            raise AlreadyInDesiredState(f"{what}: instance already closed", status=status)
        if closing and status == 403:
            log.warning("%s refused with HTTP 403: %s", what, text[:200])
        if status == 404:
            raise NotFound(f"{what} not found", status=status)
        if status >= 400:
            raise LookupFailure(f"{what} returned HTTP {status}: {text[:200]}", status=status)

        if not text:
            return None
        try:
            return json.loads(text)
        except ValueError as e:
            raise LookupFailure(f"{what} returned invalid JSON") from e

    async def get_group_audit_logs(self, group_id: str, limit: int) -> list[AuditEvent]:
        data = await self._request("GET", f"/groups/{group_id}/auditLogs", params={"n": int(limit), "offset": 0})
        items = data.get("results", []) if isinstance(data, dict) else (data or [])
        return [audit_event_from_json(x) for x in items if isinstance(x, dict)]

    async def get_group_roles(self, group_id: str) -> list[GroupRole]:
        data = await self._request("GET", f"/groups/{group_id}/roles")
        return [role_from_json(x) for x in (data or []) if isinstance(x, dict)]

    async def get_group_member(self, group_id: str, user_id: str) -> GroupMember:
        data = await self._request("GET", f"/groups/{group_id}/members/{user_id}")
        if not isinstance(data, dict):
            # The upstream answers 200 with an empty body for non-members.
            raise NotFound(f"{user_id} is not a member of {group_id}", status=404)
        return member_from_json(data)

    async def list_group_members(self, group_id: str, limit: int, offset: int) -> list[GroupMember]:
        data = await self._request("GET", f"/groups/{group_id}/members", params={"n": int(limit), "offset": int(offset)})
        return [member_from_json(x) for x in (data or []) if isinstance(x, dict)]

    async def get_user(self, user_id: str) -> UserSnapshot:
        data = await self._request("GET", f"/users/{user_id}")
        if not isinstance(data, dict):
            raise NotFound(f"user {user_id} not found", status=404)
        return user_from_json(data)

    async def get_user_groups(self, user_id: str) -> list[UserGroup]:
        data = await self._request("GET", f"/users/{user_id}/groups")
        return [user_group_from_json(x) for x in (data or []) if isinstance(x, dict)]

    async def ban_group_member(self, group_id: str, user_id: str) -> None:
        await self._request("POST", f"/groups/{group_id}/bans", body={"userId": user_id})
        log.info("Banned %s from group %s", user_id, group_id)

    async def close_instance(self, world_id: str, instance_id: str) -> None:
        await self._request("DELETE", f"/instances/{world_id}:{instance_id}", closing=True)
        log.info("Closed instance %s:%s", world_id, instance_id)
