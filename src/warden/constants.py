from __future__ import annotations

from typing import Final

# Rule / action vocabularies
RULE_TYPES: Final[frozenset[str]] = frozenset(
    {
        "KEYWORD_BLOCK",
        "TRUST_CHECK",
        "BLACKLISTED_GROUPS",
        "AGE_VERIFICATION",
        "INSTANCE_PERMISSION_GUARD",
    }
)
ACTION_TYPES: Final[frozenset[str]] = frozenset({"REJECT", "AUTO_BLOCK", "NOTIFY_ONLY", "ALLOW"})
BAN_ACTIONS: Final[frozenset[str]] = frozenset({"REJECT", "AUTO_BLOCK"})

# Trust ladder, lowest to highest
TRUST_LEVELS: Final[tuple[str, ...]] = (
    "system_trust_visitor",
    "system_trust_basic",
    "system_trust_known",
    "system_trust_trusted",
    "system_trust_veteran",
    "system_trust_legend",
)

# Age verification
AGE_VERIFIED_STATUS: Final[str] = "18+"
AGE_HIDDEN_STATUS: Final[str] = "hidden"

# Permission guard
INSTANCE_CREATE_EVENT: Final[str] = "group.instance.create"
WILDCARD_PERMISSION: Final[str] = "*"
INSTANCE_CREATE_PERMISSIONS: Final[frozenset[str]] = frozenset(
    {
        "group-instance-public-create",
        "group-instance-plus-create",
        "group-instance-open-create",
        "group-instance-restricted-create",
    }
)
PERMISSION_GUARD_MODULE: Final[str] = "PermissionGuard"
PERMISSION_GUARD_NAME: Final[str] = "Permission Guard"
ACTION_INSTANCE_CLOSED: Final[str] = "INSTANCE_CLOSED"
ACTION_AUTO_BAN: Final[str] = "AUTO_BAN"
SCAN_MODULE: Final[str] = "AutoMod Scan"

# UI / notification event names
EVENT_INSTANCE_GUARD: Final[str] = "instance-guard:event"
EVENT_AUTOMOD_VIOLATION: Final[str] = "automod:violation"

# Defaults
DEFAULT_AUDIT_PAGE_SIZE: Final[int] = 20
DEFAULT_RATE_LIMIT_PAUSE_SECONDS: Final[int] = 30 * 60
DEFAULT_ROLE_CACHE_TTL_SECONDS: Final[int] = 5 * 60
DEFAULT_ROLE_CACHE_MAX: Final[int] = 50
DEFAULT_RULE_CACHE_TTL_SECONDS: Final[int] = 5 * 60
DEFAULT_RULE_CACHE_MAX: Final[int] = 100
DEFAULT_PROCESSED_EVENTS_CAP: Final[int] = 1000
DEFAULT_CLOSED_INSTANCE_TTL_SECONDS: Final[int] = 6 * 60 * 60
MEMBER_PAGE_SIZE: Final[int] = 100
MAX_SCANNED_MEMBERS: Final[int] = 50_000

# Colors (hex values)
COLORS = {
    "default": 0x5865F2,
    "success": 0x57F287,
    "warning": 0xF1C40F,
    "error": 0xED4245,
    "info": 0x3498DB,
}
