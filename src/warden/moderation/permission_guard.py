from __future__ import annotations

import asyncio
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Iterable, Optional

from ..constants import (
    ACTION_INSTANCE_CLOSED,
    DEFAULT_AUDIT_PAGE_SIZE,
    DEFAULT_RATE_LIMIT_PAUSE_SECONDS,
    EVENT_INSTANCE_GUARD,
    INSTANCE_CREATE_EVENT,
    INSTANCE_CREATE_PERMISSIONS,
    PERMISSION_GUARD_MODULE,
    PERMISSION_GUARD_NAME,
    WILDCARD_PERMISSION,
)
from ..errors import AlreadyInDesiredState, NotFound, RateLimited
from ..interfaces import (
    AuditLogSource,
    AuditTrailSink,
    AuthorizedGroupSource,
    GroupConfigSource,
    GroupMemberSource,
    GroupRoleSource,
    InstanceCloser,
    InstanceGuardState,
    NotificationSink,
    validate_collaborator,
)
from ..observability import ActionType, LogLevel, observability
from ..services.cache import Clock, RoleCache
from ..services.processed_events import ProcessedEventRegistry
from ..services.stats import RuntimeStats
from .models import (
    AuditEvent,
    EnforcementActionRecord,
    GroupRole,
    InstanceGuardEvent,
    InstanceLocation,
    PassResult,
)

log = logging.getLogger("warden.permission_guard")


class RateLimitState:
    """Global pause window entered after an upstream throttling signal."""

    def __init__(self, clock: Clock = time.monotonic) -> None:
        self._clock = clock
        self.paused_until: float = 0.0

    def is_paused(self) -> bool:
        return self._clock() < self.paused_until

    def remaining_seconds(self) -> float:
        return max(0.0, self.paused_until - self._clock())

    def pause(self, seconds: float) -> None:
        self.paused_until = self._clock() + max(0.0, float(seconds))


def parse_instance_location(target_id: Optional[str]) -> Optional[InstanceLocation]:
    """Split ``wrld_x:12345~private`` at the first colon."""
    if not target_id:
        return None
    world_id, sep, instance_id = target_id.partition(":")
    if not sep or not world_id or not instance_id:
        return None
    return InstanceLocation(world_id=world_id, instance_id=instance_id)


def has_instance_create_permission(role_ids: Iterable[str], roles: Iterable[GroupRole]) -> bool:
    permissions_by_role = {r.id: r.permissions for r in roles if r.id}
    for role_id in role_ids:
        for perm in permissions_by_role.get(role_id, ()):
            if perm == WILDCARD_PERMISSION or perm in INSTANCE_CREATE_PERMISSIONS:
                return True
    return False


class _PassCounts:
    def __init__(self) -> None:
        self.closed = 0
        self.groups_checked = 0


class PermissionEnforcementLoop:
    """Closes group instances opened by members without instance-create rights.

    One ``run_pass`` walks the authorized groups in order and issues every
    upstream call sequentially, trading latency for staying inside upstream
    quotas. Passes never overlap. A rate-limit signal from any call pauses
    all enforcement for ``pause_seconds`` and ends the pass early; every
    other failure is contained to the event or group that produced it.
    """

    def __init__(
        self,
        *,
        groups: AuthorizedGroupSource,
        config_source: GroupConfigSource,
        audit_logs: AuditLogSource,
        roles: GroupRoleSource,
        members: GroupMemberSource,
        closer: InstanceCloser,
        guard_state: InstanceGuardState,
        audit_sink: AuditTrailSink,
        notifier: NotificationSink,
        registry: ProcessedEventRegistry,
        role_cache: Optional[RoleCache] = None,
        rate_limit: Optional[RateLimitState] = None,
        stats: Optional[RuntimeStats] = None,
        audit_page_size: int = DEFAULT_AUDIT_PAGE_SIZE,
        pause_seconds: float = DEFAULT_RATE_LIMIT_PAUSE_SECONDS,
        wall_clock: Clock = time.time,
    ) -> None:
        self.groups = validate_collaborator(groups, AuthorizedGroupSource, "groups")
        self.config_source = validate_collaborator(config_source, GroupConfigSource, "config_source")
        self.audit_logs = validate_collaborator(audit_logs, AuditLogSource, "audit_logs")
        self.roles = validate_collaborator(roles, GroupRoleSource, "roles")
        self.members = validate_collaborator(members, GroupMemberSource, "members")
        self.closer = validate_collaborator(closer, InstanceCloser, "closer")
        self.guard_state = validate_collaborator(guard_state, InstanceGuardState, "guard_state")
        self.audit_sink = validate_collaborator(audit_sink, AuditTrailSink, "audit_sink")
        self.notifier = validate_collaborator(notifier, NotificationSink, "notifier")
        self.registry = registry
        self.role_cache = role_cache or RoleCache()
        self.rate_limit = rate_limit or RateLimitState()
        self.stats = stats or RuntimeStats()
        self.audit_page_size = max(1, int(audit_page_size))
        self.pause_seconds = float(pause_seconds)
        self._wall_clock = wall_clock
        self._pass_lock = asyncio.Lock()

    async def run_pass(self) -> PassResult:
        if self._pass_lock.locked():
            log.debug("Enforcement pass already running; skipping overlapping invocation")
            return PassResult()

        async with self._pass_lock:
            await self.registry.load()

            if self.rate_limit.is_paused():
                self.stats.passes_skipped_paused += 1
                log.debug(
                    "Rate limit pause active. %d minutes remaining.",
                    int(-(-self.rate_limit.remaining_seconds() // 60)),
                )
                return PassResult()

            self.stats.passes_run += 1
            counts = _PassCounts()
            try:
                for group_id in self.groups.get_authorized_group_ids():
                    try:
                        await self._check_group(group_id, counts)
                    except RateLimited as e:
                        self._enter_pause(group_id, e)
                        break
                    except Exception:
                        log.exception("Error checking group %s", group_id)
            finally:
                await self.registry.persist()

            return PassResult(total_closed=counts.closed, groups_checked=counts.groups_checked)

    def _enter_pause(self, group_id: str, error: RateLimited) -> None:
        self.rate_limit.pause(self.pause_seconds)
        self.stats.rate_limit_pauses += 1
        observability.log_structured(
            LogLevel.WARNING,
            ActionType.RATE_LIMITED,
            f"Rate limit hit while checking group {group_id}. Pausing for {int(self.pause_seconds // 60)} minutes.",
            group_id=group_id,
            details={"error": str(error), "retry_after": error.retry_after},
        )

    async def _guard_enabled(self, group_id: str) -> bool:
        config = await self.config_source.get_group_config(group_id)
        return any(r.type == "INSTANCE_PERMISSION_GUARD" for r in config.enabled_rules())

    async def _check_group(self, group_id: str, counts: _PassCounts) -> None:
        if not await self._guard_enabled(group_id):
            return
        counts.groups_checked += 1
        self.stats.groups_checked += 1

        try:
            events = await self.audit_logs.get_group_audit_logs(group_id, self.audit_page_size)
        except RateLimited:
            raise
        except Exception as e:
            log.warning("Failed to fetch audit logs for %s: %s", group_id, e)
            return

        creation_events = [
            ev
            for ev in events
            if ev.event_type == INSTANCE_CREATE_EVENT
            and ProcessedEventRegistry.make_key(group_id, ev.id) not in self.registry
        ]
        if not creation_events:
            return
        log.info("Found %d new instance creation events for group %s", len(creation_events), group_id)

        roles = await self._group_roles(group_id)
        if roles is None:
            return

        for ev in creation_events:
            try:
                await self._handle_event(group_id, ev, roles, counts)
            except RateLimited:
                raise
            except Exception:
                log.exception("Error processing audit event %s in group %s", ev.id, group_id)

    async def _group_roles(self, group_id: str) -> Optional[list[GroupRole]]:
        cached = self.role_cache.get(group_id)
        if cached is not None:
            return cached
        try:
            roles = await self.roles.get_group_roles(group_id)
        except RateLimited:
            raise
        except Exception as e:
            log.warning("Failed to fetch roles for %s, skipping check: %s", group_id, e)
            return None
        self.role_cache.set(group_id, roles)
        return roles

    async def _handle_event(
        self,
        group_id: str,
        ev: AuditEvent,
        roles: list[GroupRole],
        counts: _PassCounts,
    ) -> None:
        # Marked before anything else so a crash mid-event never re-enforces it.
        self.registry.add(ProcessedEventRegistry.make_key(group_id, ev.id))
        self.stats.events_processed += 1

        if not ev.actor_id or not ev.target_id:
            return
        location = parse_instance_location(ev.target_id)
        if location is None:
            log.debug("Skipping audit event %s with malformed target %r", ev.id, ev.target_id)
            return

        instance_key = f"{group_id}:{location.world_id}:{location.instance_id}"
        if self.guard_state.is_closed(instance_key):
            return

        log.debug("Checking instance created by %s (%s)", ev.actor_display_name, ev.actor_id)
        try:
            member = await self.members.get_group_member(group_id, ev.actor_id)
        except NotFound:
            log.warning("Creator %s is no longer in group %s; treating as unauthorized", ev.actor_id, group_id)
            member = None
        except RateLimited:
            raise
        except Exception as e:
            log.error("Error fetching member %s in group %s: %s", ev.actor_id, group_id, e)
            return

        if member is not None and has_instance_create_permission(member.all_role_ids(), roles):
            log.debug("Instance allowed; creator %s has permission", ev.actor_id)
            return

        reason = (
            "User does not have instance creation permissions"
            if member is not None
            else "User is not a member of the group"
        )
        log.info(
            "Unauthorized instance detected, closing. Creator: %s (%s). Reason: %s",
            ev.actor_display_name,
            ev.actor_id,
            reason,
        )

        try:
            await self.closer.close_instance(location.world_id, location.instance_id)
        except AlreadyInDesiredState:
            log.info("Instance %s already closed (treating as success)", instance_key)
        except RateLimited:
            raise
        except Exception as e:
            self.stats.close_failures += 1
            log.error("Failed to close instance %s: %s", instance_key, e)
            return

        counts.closed += 1
        self.stats.instances_closed += 1
        self.guard_state.mark_closed(instance_key)
        await self._record_closure(group_id, ev, location, reason)

    async def _record_closure(
        self,
        group_id: str,
        ev: AuditEvent,
        location: InstanceLocation,
        reason: str,
    ) -> None:
        full_reason = f"[{PERMISSION_GUARD_NAME}] {reason}"
        record = EnforcementActionRecord(
            timestamp=datetime.now(timezone.utc),
            actor_id=ev.actor_id,
            actor_display_name=ev.actor_display_name or "Unknown",
            group_id=group_id,
            action=ACTION_INSTANCE_CLOSED,
            reason=full_reason,
            module=PERMISSION_GUARD_MODULE,
            details={
                "world_id": location.world_id,
                "instance_id": location.instance_id,
                "rule_name": PERMISSION_GUARD_NAME,
            },
        )
        try:
            await self.audit_sink.create_audit_record(record)
        except Exception as e:
            log.error("Failed to persist enforcement record for %s: %s", group_id, e)
        observability.log_enforcement(
            ActionType.INSTANCE_CLOSED,
            group_id=group_id,
            user_id=ev.actor_id,
            reason=full_reason,
            details=record.details,
        )

        now_ms = int(self._wall_clock() * 1000)
        event = InstanceGuardEvent(
            id=f"pg_{now_ms}_{uuid.uuid4().hex[:9]}",
            timestamp=now_ms,
            action="AUTO_CLOSED",
            world_id=location.world_id,
            instance_id=location.instance_id,
            group_id=group_id,
            reason=full_reason,
            closed_by=PERMISSION_GUARD_NAME,
            owner_id=ev.actor_id,
            owner_name=ev.actor_display_name,
        )
        try:
            await self.notifier.publish(EVENT_INSTANCE_GUARD, event.to_payload())
        except Exception as e:
            log.error("Failed to publish instance guard event: %s", e)
