from __future__ import annotations

import asyncio
import logging
from typing import Optional

from .config import Settings
from .constants import EVENT_AUTOMOD_VIOLATION, EVENT_INSTANCE_GUARD
from .database import initialize_database, table_row_counts
from .moderation.compiler import RuleConfigCache
from .moderation.models import PassResult
from .moderation.permission_guard import PermissionEnforcementLoop, RateLimitState
from .moderation.rule_engine import RuleEvaluationEngine
from .moderation.scanner import MemberScanner
from .observability import ActionType, LogLevel, observability
from .services.cache import RoleCache
from .services.discord_notifier import DiscordWebhookNotifier
from .services.enforcement_log_store import EnforcementLogStore
from .services.event_bus import EventBus
from .services.group_authorization import StaticGroupAuthorization
from .services.group_config_store import GroupConfigStore
from .services.instance_guard import InstanceGuardStore
from .services.processed_events import ProcessedEventRegistry, ProcessedEventStore
from .services.stats import RuntimeStats
from .services.vrchat_api import VRChatApiClient

log = logging.getLogger("warden.app")


class WardenApp:
    """Composition root: wires stores, caches and the upstream client, then runs the guard."""

    def __init__(self, settings: Settings, *, api: Optional[VRChatApiClient] = None) -> None:
        self.settings = settings
        self.stats = RuntimeStats()

        self.config_store = GroupConfigStore(settings.sqlite_path, cache_ttl_seconds=settings.rule_cache_ttl_seconds)
        self.enforcement_log = EnforcementLogStore(settings.sqlite_path)
        self.processed_store = ProcessedEventStore(settings.sqlite_path)

        self.api = api or VRChatApiClient(
            auth_cookie=settings.auth_cookie,
            user_agent=settings.user_agent,
            api_base=settings.api_base,
            timeout_seconds=settings.http_timeout_seconds,
        )
        self.groups = StaticGroupAuthorization(settings.group_ids)
        self.guard_state = InstanceGuardStore(closed_ttl_seconds=settings.closed_instance_ttl_seconds)

        self.event_bus = EventBus(stats=self.stats)
        self.event_bus.subscribe(EVENT_INSTANCE_GUARD, self.guard_state.on_guard_event)
        self.notifier: Optional[DiscordWebhookNotifier] = None
        if settings.discord_webhook_url:
            self.notifier = DiscordWebhookNotifier(settings.discord_webhook_url)
            self.event_bus.subscribe(EVENT_INSTANCE_GUARD, self.notifier.handle)
            self.event_bus.subscribe(EVENT_AUTOMOD_VIOLATION, self.notifier.handle)

        self.registry = ProcessedEventRegistry(self.processed_store, max_entries=settings.processed_events_cap)
        self.rule_cache = RuleConfigCache(ttl_seconds=settings.rule_cache_ttl_seconds, max_entries=settings.rule_cache_max)
        self.role_cache = RoleCache(ttl_seconds=settings.role_cache_ttl_seconds, max_entries=settings.role_cache_max)
        self.rate_limit = RateLimitState()

        self.engine = RuleEvaluationEngine(
            config_source=self.config_store,
            user_groups=self.api,
            rule_cache=self.rule_cache,
            stats=self.stats,
        )
        self.guard = PermissionEnforcementLoop(
            groups=self.groups,
            config_source=self.config_store,
            audit_logs=self.api,
            roles=self.api,
            members=self.api,
            closer=self.api,
            guard_state=self.guard_state,
            audit_sink=self.enforcement_log,
            notifier=self.event_bus,
            registry=self.registry,
            role_cache=self.role_cache,
            rate_limit=self.rate_limit,
            stats=self.stats,
            audit_page_size=settings.audit_page_size,
            pause_seconds=settings.rate_limit_pause_seconds,
        )
        self.scanner = MemberScanner(
            engine=self.engine,
            config_source=self.config_store,
            groups=self.groups,
            members=self.api,
            bans=self.api,
            audit_sink=self.enforcement_log,
            notifier=self.event_bus,
            users=self.api,
            stats=self.stats,
        )

    async def setup(self) -> None:
        await initialize_database(
            self.settings.sqlite_path,
            [self.config_store, self.enforcement_log, self.processed_store],
        )
        counts = await table_row_counts(self.settings.sqlite_path)
        observability.log_structured(
            LogLevel.INFO,
            ActionType.STARTUP,
            f"Warden ready for {len(self.groups.get_authorized_group_ids())} groups",
            details={"tables": counts},
        )
        self.event_bus.start()

    async def run_once(self) -> PassResult:
        result = await self.guard.run_pass()
        if result.total_closed:
            observability.log_structured(
                LogLevel.INFO,
                ActionType.PASS_COMPLETE,
                f"Closed {result.total_closed} instances across {result.groups_checked} groups",
                details={"total_closed": result.total_closed, "groups_checked": result.groups_checked},
            )
        return result

    async def _runner(self) -> None:
        while True:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                log.exception("Enforcement pass failed: %s", exc)
            await asyncio.sleep(self.settings.guard_interval_seconds)

    async def run(self) -> None:
        await self.setup()
        try:
            if self.settings.guard_enabled:
                log.info("Permission guard running every %ds", self.settings.guard_interval_seconds)
                await self._runner()
            else:
                log.info("Permission guard disabled; idling")
                await asyncio.Event().wait()
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        await self.event_bus.stop()
        if self.notifier is not None:
            await self.notifier.close()
        await self.api.close()
        log.info(
            "Shutdown after %ds: %d passes, %d instances closed, per group %s",
            self.stats.uptime_seconds(),
            self.stats.passes_run,
            self.stats.instances_closed,
            observability.get_summary()["enforcements_by_group"],
        )
