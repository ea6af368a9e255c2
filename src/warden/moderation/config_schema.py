from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Literal, Union

from ..constants import ACTION_TYPES
from ..errors import ConfigurationError


MatchMode = Literal["PARTIAL", "WHOLE_WORD"]


@dataclass(frozen=True)
class KeywordBlockConfig:
    keywords: tuple[str, ...] = ()
    whitelist: tuple[str, ...] = ()
    # Legacy exemption lists that older configs carried inside the blob.
    whitelisted_user_ids: tuple[str, ...] = ()
    whitelisted_group_ids: tuple[str, ...] = ()
    scan_bio: bool = True
    scan_status: bool = True
    scan_pronouns: bool = False
    scan_groups: bool = False
    match_mode: MatchMode = "PARTIAL"


@dataclass(frozen=True)
class TrustCheckConfig:
    min_trust_level: str = ""


@dataclass(frozen=True)
class BlacklistedGroupsConfig:
    group_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class AgeVerificationConfig:
    pass


@dataclass(frozen=True)
class PermissionGuardConfig:
    pass


@dataclass(frozen=True)
class UnknownRuleConfig:
    raw: Any = None


RuleConfig = Union[
    KeywordBlockConfig,
    TrustCheckConfig,
    BlacklistedGroupsConfig,
    AgeVerificationConfig,
    PermissionGuardConfig,
    UnknownRuleConfig,
]


def _decode(raw: Any) -> Any:
    """Decode a raw config blob.

    Dicts and lists pass through; strings are JSON-decoded, and a string that
    is not JSON is returned unchanged.
    """

    if raw is None or isinstance(raw, (dict, list)):
        return raw
    if isinstance(raw, str):
        try:
            return json.loads(raw)
        except ValueError:
            return raw
    raise ConfigurationError(f"Unsupported config type: {type(raw).__name__}")


def _str_tuple(value: Any) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    return tuple(str(x) for x in value if isinstance(x, (str, int)) and str(x))


def _parse_keyword_block(decoded: Any) -> KeywordBlockConfig:
    if isinstance(decoded, dict):
        return KeywordBlockConfig(
            keywords=_str_tuple(decoded.get("keywords")),
            whitelist=_str_tuple(decoded.get("whitelist")),
            whitelisted_user_ids=_str_tuple(decoded.get("whitelistedUserIds")),
            whitelisted_group_ids=_str_tuple(decoded.get("whitelistedGroupIds")),
            scan_bio=decoded.get("scanBio") is not False,
            scan_status=decoded.get("scanStatus") is not False,
            scan_pronouns=decoded.get("scanPronouns") is True,
            scan_groups=decoded.get("scanGroups") is True,
            match_mode="WHOLE_WORD" if decoded.get("matchMode") == "WHOLE_WORD" else "PARTIAL",
        )
    # Legacy: bare list of keywords, or a single keyword string.
    if isinstance(decoded, list):
        return KeywordBlockConfig(keywords=_str_tuple(decoded))
    if isinstance(decoded, str) and decoded:
        return KeywordBlockConfig(keywords=(decoded,))
    return KeywordBlockConfig()


def _parse_trust_check(decoded: Any) -> TrustCheckConfig:
    if isinstance(decoded, dict):
        level = decoded.get("minTrustLevel") or decoded.get("trustLevel") or ""
        return TrustCheckConfig(min_trust_level=str(level))
    if isinstance(decoded, str):
        return TrustCheckConfig(min_trust_level=decoded)
    return TrustCheckConfig()


def _parse_blacklisted_groups(decoded: Any) -> BlacklistedGroupsConfig:
    if isinstance(decoded, dict):
        return BlacklistedGroupsConfig(group_ids=_str_tuple(decoded.get("groupIds")))
    return BlacklistedGroupsConfig()


def parse_rule_config(rule_type: str, raw: Any) -> RuleConfig:
    """Parse a rule's raw config blob into its typed variant.

    Raises ConfigurationError only for blobs of an unsupported Python type;
    structurally odd JSON degrades to the variant's defaults.
    """

    decoded = _decode(raw)
    if rule_type == "KEYWORD_BLOCK":
        return _parse_keyword_block(decoded)
    if rule_type == "TRUST_CHECK":
        return _parse_trust_check(decoded)
    if rule_type == "BLACKLISTED_GROUPS":
        return _parse_blacklisted_groups(decoded)
    if rule_type == "AGE_VERIFICATION":
        return AgeVerificationConfig()
    if rule_type == "INSTANCE_PERMISSION_GUARD":
        return PermissionGuardConfig()
    return UnknownRuleConfig(raw=decoded)


def default_config() -> dict[str, Any]:
    """Default group config document.

    Document model:
    - rules: ordered rules; list position is priority, first match wins
    - enableAutoProcess / enableAutoBan: group-level switches
    """

    return {
        "rules": [],
        "enableAutoProcess": False,
        "enableAutoBan": False,
    }


@dataclass(frozen=True)
class ValidationIssue:
    path: str
    message: str


def validate_config(doc: dict[str, Any]) -> list[ValidationIssue]:
    """Validate a group config document. Returns list of issues; empty means valid."""

    issues: list[ValidationIssue] = []
    if not isinstance(doc, dict):
        return [ValidationIssue(path="$", message="Config must be an object")]

    for key in ("enableAutoProcess", "enableAutoBan"):
        if not isinstance(doc.get(key, False), bool):
            issues.append(ValidationIssue(path=f"$.{key}", message=f"{key} must be boolean"))

    rules = doc.get("rules")
    if not isinstance(rules, list):
        issues.append(ValidationIssue(path="$.rules", message="rules must be a list"))
        return issues

    seen_ids: set[int] = set()
    for i, r in enumerate(rules):
        pfx = f"$.rules[{i}]"
        if not isinstance(r, dict):
            issues.append(ValidationIssue(path=pfx, message="rule must be an object"))
            continue
        rid = r.get("id")
        if not isinstance(rid, int) or isinstance(rid, bool) or rid <= 0:
            issues.append(ValidationIssue(path=pfx + ".id", message="id must be a positive integer"))
        elif rid in seen_ids:
            issues.append(ValidationIssue(path=pfx + ".id", message="duplicate rule id"))
        else:
            seen_ids.add(rid)

        if not isinstance(r.get("name"), str) or not r.get("name"):
            issues.append(ValidationIssue(path=pfx + ".name", message="name must be non-empty string"))

        if not isinstance(r.get("type"), str) or not r.get("type"):
            issues.append(ValidationIssue(path=pfx + ".type", message="type must be non-empty string"))

        if not isinstance(r.get("enabled", True), bool):
            issues.append(ValidationIssue(path=pfx + ".enabled", message="enabled must be boolean"))

        if r.get("actionType", "REJECT") not in ACTION_TYPES:
            issues.append(ValidationIssue(path=pfx + ".actionType", message=f"actionType must be one of {sorted(ACTION_TYPES)}"))

        for key in ("whitelistedUserIds", "whitelistedGroupIds"):
            val = r.get(key, [])
            if not isinstance(val, list) or not all(isinstance(x, str) for x in val):
                issues.append(ValidationIssue(path=f"{pfx}.{key}", message=f"{key} must be list[str]"))

        cfg = r.get("config")
        if cfg is not None and not isinstance(cfg, (str, dict, list)):
            issues.append(ValidationIssue(path=pfx + ".config", message="config must be a JSON string or object"))

    try:
        json.dumps(doc)
    except (TypeError, ValueError):
        issues.append(ValidationIssue(path="$", message="config must be JSON serializable"))
    return issues
