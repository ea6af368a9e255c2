from __future__ import annotations

import os
from dataclasses import dataclass

from .constants import (
    DEFAULT_AUDIT_PAGE_SIZE,
    DEFAULT_CLOSED_INSTANCE_TTL_SECONDS,
    DEFAULT_PROCESSED_EVENTS_CAP,
    DEFAULT_RATE_LIMIT_PAUSE_SECONDS,
    DEFAULT_ROLE_CACHE_MAX,
    DEFAULT_ROLE_CACHE_TTL_SECONDS,
    DEFAULT_RULE_CACHE_MAX,
    DEFAULT_RULE_CACHE_TTL_SECONDS,
)


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "y", "on"}


def _get_str(name: str, default: str) -> str:
    return os.getenv(name, default).strip() or default


def _get_list(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "")
    return tuple(part.strip() for part in raw.split(",") if part.strip())


@dataclass(frozen=True)
class Settings:
    auth_cookie: str
    group_ids: tuple[str, ...]
    api_base: str = "https://api.vrchat.cloud/api/1"
    user_agent: str = "group-warden/0.1"
    sqlite_path: str = "warden.sqlite3"
    log_level: str = "INFO"
    guard_enabled: bool = True
    guard_interval_seconds: int = 60
    audit_page_size: int = DEFAULT_AUDIT_PAGE_SIZE
    rate_limit_pause_seconds: int = DEFAULT_RATE_LIMIT_PAUSE_SECONDS
    role_cache_ttl_seconds: int = DEFAULT_ROLE_CACHE_TTL_SECONDS
    role_cache_max: int = DEFAULT_ROLE_CACHE_MAX
    rule_cache_ttl_seconds: int = DEFAULT_RULE_CACHE_TTL_SECONDS
    rule_cache_max: int = DEFAULT_RULE_CACHE_MAX
    processed_events_cap: int = DEFAULT_PROCESSED_EVENTS_CAP
    closed_instance_ttl_seconds: int = DEFAULT_CLOSED_INSTANCE_TTL_SECONDS
    http_timeout_seconds: int = 30
    # Optional mod-log webhook; notifications are off when blank.
    discord_webhook_url: str = ""


def load_settings() -> Settings:
    auth_cookie = os.getenv("VRCHAT_AUTH_COOKIE", "").strip()
    if not auth_cookie:
        raise RuntimeError("VRCHAT_AUTH_COOKIE is required")
    return Settings(
        auth_cookie=auth_cookie,
        group_ids=_get_list("WARDEN_GROUP_IDS"),
        api_base=_get_str("VRCHAT_API_BASE", "https://api.vrchat.cloud/api/1"),
        user_agent=_get_str("VRCHAT_USER_AGENT", "group-warden/0.1"),
        sqlite_path=_get_str("SQLITE_PATH", "warden.sqlite3"),
        log_level=_get_str("LOG_LEVEL", "INFO"),
        guard_enabled=_get_bool("GUARD_ENABLED", True),
        guard_interval_seconds=max(5, _get_int("GUARD_INTERVAL_SECONDS", 60)),
        audit_page_size=_get_int("AUDIT_PAGE_SIZE", DEFAULT_AUDIT_PAGE_SIZE),
        rate_limit_pause_seconds=_get_int("RATE_LIMIT_PAUSE_SECONDS", DEFAULT_RATE_LIMIT_PAUSE_SECONDS),
        role_cache_ttl_seconds=_get_int("ROLE_CACHE_TTL_SECONDS", DEFAULT_ROLE_CACHE_TTL_SECONDS),
        role_cache_max=_get_int("ROLE_CACHE_MAX", DEFAULT_ROLE_CACHE_MAX),
        rule_cache_ttl_seconds=_get_int("RULE_CACHE_TTL_SECONDS", DEFAULT_RULE_CACHE_TTL_SECONDS),
        rule_cache_max=_get_int("RULE_CACHE_MAX", DEFAULT_RULE_CACHE_MAX),
        processed_events_cap=_get_int("PROCESSED_EVENTS_CAP", DEFAULT_PROCESSED_EVENTS_CAP),
        closed_instance_ttl_seconds=_get_int("CLOSED_INSTANCE_TTL_SECONDS", DEFAULT_CLOSED_INSTANCE_TTL_SECONDS),
        http_timeout_seconds=_get_int("HTTP_TIMEOUT_SECONDS", 30),
        discord_webhook_url=os.getenv("DISCORD_WEBHOOK_URL", "").strip(),
    )
