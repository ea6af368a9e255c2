from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Literal, Optional


RuleType = Literal[
    "KEYWORD_BLOCK",
    "TRUST_CHECK",
    "BLACKLISTED_GROUPS",
    "AGE_VERIFICATION",
    "INSTANCE_PERMISSION_GUARD",
]

ActionType = Literal[
    "REJECT",
    "AUTO_BLOCK",
    "NOTIFY_ONLY",
    "ALLOW",
]

MemberScanAction = Literal["SAFE", "VIOLATION", "BANNED"]


@dataclass
class ModerationRule:
    """A single operator-defined rule owned by a group's configuration.

    ``config`` is the raw rule-type-specific blob (a JSON string or a dict);
    it is parsed into a typed config by ``config_schema.parse_rule_config``.
    The whitelist lists are the self-healing exemption sets appended to by
    ``RuleEvaluationEngine.add_to_whitelist``.
    """

    id: int
    name: str
    type: str
    enabled: bool = True
    action_type: str = "REJECT"
    config: Any = None
    whitelisted_user_ids: list[str] = field(default_factory=list)
    whitelisted_group_ids: list[str] = field(default_factory=list)
    created_at: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "enabled": self.enabled,
            "actionType": self.action_type,
            "config": self.config,
            "whitelistedUserIds": list(self.whitelisted_user_ids),
            "whitelistedGroupIds": list(self.whitelisted_group_ids),
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ModerationRule":
        return cls(
            id=int(data.get("id") or 0),
            name=str(data.get("name") or ""),
            type=str(data.get("type") or ""),
            enabled=bool(data.get("enabled", True)),
            action_type=str(data.get("actionType") or "REJECT"),
            config=data.get("config"),
            whitelisted_user_ids=[str(x) for x in (data.get("whitelistedUserIds") or []) if x],
            whitelisted_group_ids=[str(x) for x in (data.get("whitelistedGroupIds") or []) if x],
            created_at=data.get("createdAt"),
        )


@dataclass
class GroupConfig:
    rules: list[ModerationRule] = field(default_factory=list)
    enable_auto_process: bool = False
    enable_auto_ban: bool = False

    def enabled_rules(self) -> list[ModerationRule]:
        return [r for r in self.rules if r.enabled]

    def find_rule(self, rule_id: int) -> Optional[ModerationRule]:
        for rule in self.rules:
            if rule.id == rule_id:
                return rule
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "rules": [r.to_dict() for r in self.rules],
            "enableAutoProcess": self.enable_auto_process,
            "enableAutoBan": self.enable_auto_ban,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GroupConfig":
        # Older documents only carried enableAutoReject.
        auto_process = data.get("enableAutoProcess")
        if auto_process is None:
            auto_process = data.get("enableAutoReject", False)
        return cls(
            rules=[ModerationRule.from_dict(r) for r in (data.get("rules") or []) if isinstance(r, dict)],
            enable_auto_process=bool(auto_process),
            enable_auto_ban=bool(data.get("enableAutoBan", False)),
        )


@dataclass(frozen=True)
class UserSnapshot:
    """The user fields rule evaluation looks at.

    Optional fields left as ``None`` are treated as absent, never as violations.
    ``tags`` is ``None`` when trust data was not fetched at all.
    """

    id: str
    display_name: str
    bio: Optional[str] = None
    status: Optional[str] = None
    status_description: Optional[str] = None
    pronouns: Optional[str] = None
    tags: Optional[tuple[str, ...]] = None
    age_verification_status: Optional[str] = None
    user_icon: Optional[str] = None


@dataclass(frozen=True)
class UserGroup:
    group_id: str
    name: str = ""
    short_code: str = ""


@dataclass(frozen=True)
class GroupRole:
    id: str
    name: str = ""
    permissions: tuple[str, ...] = ()


@dataclass(frozen=True)
class GroupMember:
    user_id: str
    role_ids: tuple[str, ...] = ()
    m_role_ids: tuple[str, ...] = ()
    user: Optional[UserSnapshot] = None

    def all_role_ids(self) -> list[str]:
        return [*self.role_ids, *self.m_role_ids]


@dataclass(frozen=True)
class AuditEvent:
    id: str
    event_type: str
    actor_id: str
    actor_display_name: str = ""
    target_id: str = ""
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class InstanceLocation:
    world_id: str
    instance_id: str


@dataclass(frozen=True)
class ScanResult:
    """Outcome of evaluating one user against a group's rules."""

    action: str
    reason: Optional[str] = None
    rule_name: Optional[str] = None
    rule_id: Optional[int] = None

    @property
    def allowed(self) -> bool:
        return self.action == "ALLOW"


ALLOW = ScanResult(action="ALLOW")


@dataclass(frozen=True)
class MemberScanResult:
    user_id: str
    display_name: str
    action: MemberScanAction
    user_icon: Optional[str] = None
    reason: Optional[str] = None
    rule_name: Optional[str] = None
    rule_id: Optional[int] = None


@dataclass(frozen=True)
class EnforcementActionRecord:
    timestamp: datetime
    actor_id: str
    actor_display_name: str
    group_id: str
    action: str
    reason: str
    module: str
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class InstanceGuardEvent:
    id: str
    timestamp: float
    action: str
    world_id: str
    instance_id: str
    group_id: str
    reason: str
    closed_by: str
    owner_id: str
    owner_name: str
    world_name: str = "Unknown"
    was_age_gated: bool = False

    def to_payload(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class PassResult:
    total_closed: int = 0
    groups_checked: int = 0
