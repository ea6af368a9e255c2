from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Iterable, Optional

from ..constants import (
    ACTION_AUTO_BAN,
    BAN_ACTIONS,
    EVENT_AUTOMOD_VIOLATION,
    MAX_SCANNED_MEMBERS,
    MEMBER_PAGE_SIZE,
    SCAN_MODULE,
)
from ..errors import WardenError
from ..interfaces import (
    AuditTrailSink,
    AuthorizedGroupSource,
    GroupBanAction,
    GroupConfigSource,
    GroupMemberLister,
    NotificationSink,
    UserDetailSource,
)
from ..observability import ActionType, observability
from ..services.stats import RuntimeStats
from .models import EnforcementActionRecord, GroupMember, MemberScanResult, ScanResult, UserSnapshot
from .rule_engine import RuleEvaluationEngine

log = logging.getLogger("warden.scanner")


class UnauthorizedGroupError(WardenError, PermissionError):
    def __init__(self, group_id: str) -> None:
        super().__init__(f"Group {group_id} is not authorized for scanning")
        self.group_id = group_id


def _label(result: ScanResult, auto_ban: bool) -> str:
    if result.allowed:
        return "SAFE"
    if auto_ban and result.action in BAN_ACTIONS:
        return "BANNED"
    return "VIOLATION"


class MemberScanner:
    """Runs a group's rules over its existing members.

    Pages through the member list sequentially with a pause between pages.
    When the group has auto-ban enabled, REJECT/AUTO_BLOCK verdicts become
    bans and each ban is written to the enforcement trail.
    """

    def __init__(
        self,
        *,
        engine: RuleEvaluationEngine,
        config_source: GroupConfigSource,
        groups: AuthorizedGroupSource,
        members: GroupMemberLister,
        bans: GroupBanAction,
        audit_sink: AuditTrailSink,
        notifier: Optional[NotificationSink] = None,
        users: Optional[UserDetailSource] = None,
        stats: Optional[RuntimeStats] = None,
        page_size: int = MEMBER_PAGE_SIZE,
        page_delay: float = 1.0,
        max_members: int = MAX_SCANNED_MEMBERS,
    ) -> None:
        self.engine = engine
        self.config_source = config_source
        self.groups = groups
        self.members = members
        self.bans = bans
        self.audit_sink = audit_sink
        self.notifier = notifier
        self.users = users
        self.stats = stats or RuntimeStats()
        self.page_size = max(1, int(page_size))
        self.page_delay = max(0.0, float(page_delay))
        self.max_members = max(1, int(max_members))

    async def evaluate_member(self, group_id: str, member: GroupMember) -> MemberScanResult:
        user = member.user
        if user is None:
            return MemberScanResult(user_id=member.user_id or "unknown", display_name="Unknown", action="SAFE")

        result = await self.engine.evaluate(user, group_id)
        config = await self.config_source.get_group_config(group_id)
        return MemberScanResult(
            user_id=user.id,
            display_name=user.display_name,
            action=_label(result, config.enable_auto_ban),
            user_icon=user.user_icon,
            reason=result.reason,
            rule_name=result.rule_name,
            rule_id=result.rule_id,
        )

    async def scan_users(self, group_id: str, users: Iterable[UserSnapshot]) -> list[MemberScanResult]:
        """Evaluate ad-hoc users (e.g. pending join requests); only non-SAFE results are returned."""
        config = await self.config_source.get_group_config(group_id)
        out: list[MemberScanResult] = []
        for user in users:
            result = await self.engine.evaluate(user, group_id)
            if result.allowed:
                continue
            out.append(
                MemberScanResult(
                    user_id=user.id,
                    display_name=user.display_name,
                    action=_label(result, config.enable_auto_ban),
                    user_icon=user.user_icon,
                    reason=result.reason,
                    rule_name=result.rule_name,
                    rule_id=result.rule_id,
                )
            )
        return out

    async def _enrich(self, user: UserSnapshot) -> UserSnapshot:
        # Member listings carry a trimmed user; fetch the profile when it lacks bio and tags.
        if self.users is None or user.bio or user.tags:
            return user
        try:
            full = await self.users.get_user(user.id)
        except Exception as e:
            log.warning("Failed to fetch full details for %s during scan: %s", user.display_name, e)
            return user
        return replace(
            full,
            display_name=full.display_name or user.display_name,
            user_icon=full.user_icon or user.user_icon,
        )

    async def scan_group_members(self, group_id: str) -> list[MemberScanResult]:
        config = await self.config_source.get_group_config(group_id)
        if not config.enabled_rules():
            return []
        if not self.groups.is_group_allowed(group_id):
            raise UnauthorizedGroupError(group_id)

        auto_ban = config.enable_auto_ban
        results: list[MemberScanResult] = []
        offset = 0
        scanned = 0
        log.info("Starting full member scan for group %s", group_id)

        while True:
            try:
                page = await self.members.list_group_members(group_id, self.page_size, offset)
            except Exception as e:
                log.error("Error fetching members for %s at offset %d: %s", group_id, offset, e)
                break
            if not page:
                break

            log.info("Scanning batch of %d members (offset %d)", len(page), offset)
            for member in page:
                if member.user is None:
                    continue
                user = await self._enrich(member.user)
                result = await self.engine.evaluate(user, group_id)
                if result.allowed:
                    continue

                action = "VIOLATION"
                if auto_ban and result.action in BAN_ACTIONS and await self._ban(group_id, user, result):
                    action = "BANNED"
                scan_result = MemberScanResult(
                    user_id=user.id,
                    display_name=user.display_name,
                    action=action,
                    user_icon=user.user_icon,
                    reason=result.reason,
                    rule_name=result.rule_name,
                    rule_id=result.rule_id,
                )
                results.append(scan_result)
                await self._notify(group_id, scan_result)

            scanned += len(page)
            if len(page) < self.page_size or scanned >= self.max_members:
                break
            offset += self.page_size
            if self.page_delay:
                await asyncio.sleep(self.page_delay)

        log.info("Scan of %s complete. Found %d violations.", group_id, len(results))
        return results

    async def _ban(self, group_id: str, user: UserSnapshot, result: ScanResult) -> bool:
        try:
            await self.bans.ban_group_member(group_id, user.id)
        except Exception as e:
            log.error("Failed to auto-ban %s in %s: %s", user.display_name, group_id, e)
            return False

        self.stats.members_banned += 1
        observability.log_enforcement(
            ActionType.MEMBER_BANNED,
            group_id=group_id,
            user_id=user.id,
            reason=f"Auto-banned {user.display_name}: {result.reason}",
            details={"rule_name": result.rule_name, "rule_id": result.rule_id},
        )
        record = EnforcementActionRecord(
            timestamp=datetime.now(timezone.utc),
            actor_id=user.id,
            actor_display_name=user.display_name,
            group_id=group_id,
            action=ACTION_AUTO_BAN,
            reason=result.reason or "Failed AutoMod Scan",
            module=SCAN_MODULE,
            details={"rule_name": result.rule_name},
        )
        try:
            await self.audit_sink.create_audit_record(record)
        except Exception as e:
            log.error("Failed to persist auto-ban record: %s", e)
        return True

    async def _notify(self, group_id: str, result: MemberScanResult) -> None:
        if self.notifier is None:
            return
        payload = {
            "group_id": group_id,
            "user_id": result.user_id,
            "display_name": result.display_name,
            "action": result.action,
            "reason": result.reason,
            "rule_name": result.rule_name,
        }
        try:
            await self.notifier.publish(EVENT_AUTOMOD_VIOLATION, payload)
        except Exception as e:
            log.error("Failed to publish violation event: %s", e)
