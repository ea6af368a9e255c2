from __future__ import annotations

import asyncio
import logging
from typing import Any, Literal, Optional

from ..constants import AGE_HIDDEN_STATUS, AGE_VERIFIED_STATUS, TRUST_LEVELS
from ..errors import RuleNotFoundError
from ..interfaces import GroupConfigSource, UserGroupSource
from ..services.stats import RuntimeStats
from .compiler import CompiledRuleView, RuleConfigCache
from .config_schema import BlacklistedGroupsConfig, KeywordBlockConfig, TrustCheckConfig
from .models import ALLOW, GroupConfig, ModerationRule, ScanResult, UserGroup, UserSnapshot

log = logging.getLogger("warden.rule_engine")


def check_age_verification(user: UserSnapshot) -> Optional[str]:
    """Return a violation reason when the user's age status is present but not verified.

    Absent status passes; the explicit "hidden" sentinel passes.
    """

    status = user.age_verification_status
    if status is None:
        return None
    if status != AGE_VERIFIED_STATUS and status.lower() != AGE_HIDDEN_STATUS:
        return f"Age Verification Required (Found: {status})"
    return None


def trust_ladder_index(level: str) -> int:
    """Position of the first ladder entry containing ``level``, or -1."""

    needle = level.strip().lower()
    for idx, name in enumerate(TRUST_LEVELS):
        if needle in name:
            return idx
    return -1


def highest_trust_index(tags: tuple[str, ...] | list[str]) -> int:
    present = set(tags)
    best = -1
    for idx, name in enumerate(TRUST_LEVELS):
        if name in present:
            best = idx
    return best


class _UserGroupLookup:
    """Fetches a user's groups at most once per evaluation."""

    def __init__(self, source: UserGroupSource, user: UserSnapshot) -> None:
        self._source = source
        self._user = user
        self._fetched = False
        self._groups: Optional[list[UserGroup]] = None

    async def get(self) -> Optional[list[UserGroup]]:
        if not self._fetched:
            self._fetched = True
            try:
                self._groups = await self._source.get_user_groups(self._user.id)
            except Exception as e:
                log.warning("Failed to fetch groups for %s (%s): %s", self._user.display_name, self._user.id, e)
                self._groups = None
        return self._groups


class RuleEvaluationEngine:
    """Scores a user against a group's ordered rule list.

    The first enabled rule that matches wins. A rule that errors is treated
    as non-matching, and any failure outside a rule resolves to ALLOW so a
    bad deployment never locks every user out.
    """

    def __init__(
        self,
        *,
        config_source: GroupConfigSource,
        user_groups: UserGroupSource,
        rule_cache: Optional[RuleConfigCache] = None,
        stats: Optional[RuntimeStats] = None,
    ) -> None:
        self.config_source = config_source
        self.user_groups = user_groups
        self.rule_cache = rule_cache or RuleConfigCache()
        self.stats = stats
        self._write_lock = asyncio.Lock()

    async def evaluate(
        self,
        user: UserSnapshot,
        group_id: str,
        *,
        allow_missing_data: bool = False,
    ) -> ScanResult:
        if self.stats is not None:
            self.stats.evaluations += 1
        try:
            config = await self.config_source.get_group_config(group_id)
            rules = config.enabled_rules()
            if not rules:
                return ALLOW

            lookup = _UserGroupLookup(self.user_groups, user)
            for rule in rules:
                try:
                    reason = await self._evaluate_rule(rule, user, lookup, allow_missing_data)
                except Exception:
                    if self.stats is not None:
                        self.stats.rule_errors += 1
                    log.exception("Rule %s (%s) failed for %s; treating as no match", rule.name, rule.id, user.id)
                    continue
                if reason is not None:
                    log.info("User %s matched rule: %s (%s)", user.display_name, rule.name, rule.type)
                    return ScanResult(action=rule.action_type, reason=reason, rule_name=rule.name, rule_id=rule.id)
            return ALLOW
        except Exception:
            log.exception("Error checking user %s in group %s; failing open", user.id, group_id)
            return ALLOW

    async def _evaluate_rule(
        self,
        rule: ModerationRule,
        user: UserSnapshot,
        lookup: _UserGroupLookup,
        allow_missing_data: bool,
    ) -> Optional[str]:
        view = self.rule_cache.get_or_compile(rule)
        cfg = view.config

        if isinstance(cfg, KeywordBlockConfig):
            return await self._keyword_block(rule, view, cfg, user, lookup)
        if isinstance(cfg, TrustCheckConfig):
            return self._trust_check(cfg, user, allow_missing_data)
        if isinstance(cfg, BlacklistedGroupsConfig):
            return await self._blacklisted_groups(cfg, lookup)
        if rule.type == "AGE_VERIFICATION":
            if user.id in rule.whitelisted_user_ids:
                return None
            return check_age_verification(user)
        # INSTANCE_PERMISSION_GUARD and unknown types never match a user.
        return None

    async def _keyword_block(
        self,
        rule: ModerationRule,
        view: CompiledRuleView,
        cfg: KeywordBlockConfig,
        user: UserSnapshot,
        lookup: _UserGroupLookup,
    ) -> Optional[str]:
        exempt_users = set(rule.whitelisted_user_ids) | set(cfg.whitelisted_user_ids)
        if user.id in exempt_users:
            return None

        exempt_groups = set(rule.whitelisted_group_ids) | set(cfg.whitelisted_group_ids)
        user_groups: Optional[list[UserGroup]] = None
        if exempt_groups or cfg.scan_groups:
            user_groups = await lookup.get()
        if exempt_groups and user_groups:
            if any(g.group_id in exempt_groups for g in user_groups):
                return None

        reason = self._scan_fields(view, cfg, user, user_groups)

        # Age gate rides along with every keyword rule, whatever the keyword outcome.
        age_reason = check_age_verification(user)
        if age_reason is not None:
            reason = age_reason
        return reason

    def _scan_fields(
        self,
        view: CompiledRuleView,
        cfg: KeywordBlockConfig,
        user: UserSnapshot,
        user_groups: Optional[list[UserGroup]],
    ) -> Optional[str]:
        fields: list[tuple[Optional[str], str]] = [(user.display_name, "Display Name")]
        if cfg.scan_bio:
            fields.append((user.bio, "Bio"))
        if cfg.scan_status:
            fields.append((user.status, "Status"))
            fields.append((user.status_description, "Status Description"))
        if cfg.scan_pronouns:
            fields.append((user.pronouns, "Pronouns"))
        if cfg.scan_groups and user_groups:
            for g in user_groups:
                fields.append((g.name, f'Group: "{g.name}"'))
                fields.append((g.short_code, f'Group Shortcode: "{g.short_code}"'))

        for text, context in fields:
            reason = self._check_text(view, text, context)
            if reason is not None:
                return reason
        return None

    @staticmethod
    def _check_text(view: CompiledRuleView, text: Optional[str], context: str) -> Optional[str]:
        if not text:
            return None
        lowered = text.lower()
        for matcher in view.matchers:
            if not matcher.matches(text, lowered):
                continue
            if any(term in lowered for term in view.whitelist_terms):
                log.debug("Keyword %r matched %s but whitelisted", matcher.keyword, context)
                continue
            return f'Keyword "{matcher.keyword}" found in {context}'
        return None

    @staticmethod
    def _trust_check(cfg: TrustCheckConfig, user: UserSnapshot, allow_missing_data: bool) -> Optional[str]:
        tags = user.tags or ()
        if allow_missing_data and not tags:
            return None
        required = trust_ladder_index(cfg.min_trust_level)
        if required <= 0:
            return None
        if highest_trust_index(tags) < required:
            return f"Trust Level below {cfg.min_trust_level}"
        return None

    @staticmethod
    async def _blacklisted_groups(cfg: BlacklistedGroupsConfig, lookup: _UserGroupLookup) -> Optional[str]:
        if not cfg.group_ids:
            return None
        groups = await lookup.get()
        if not groups:
            return None
        blacklisted = set(cfg.group_ids)
        for g in groups:
            if g.group_id in blacklisted:
                return f"Member of blacklisted group: {g.name}"
        return None

    # -------------------- Exemption maintenance --------------------

    async def _load_for_update(self, group_id: str) -> GroupConfig:
        # Work on a copy so a failed save leaves the source's view untouched.
        current = await self.config_source.get_group_config(group_id)
        return GroupConfig.from_dict(current.to_dict())

    async def add_to_whitelist(
        self,
        group_id: str,
        rule_id: int,
        *,
        user_id: Optional[str] = None,
        target_group_id: Optional[str] = None,
    ) -> bool:
        """Append exemptions to one rule; returns True if anything changed."""

        async with self._write_lock:
            config = await self._load_for_update(group_id)
            rule = config.find_rule(rule_id)
            if rule is None:
                raise RuleNotFoundError(group_id, rule_id)

            updated = False
            if user_id and user_id not in rule.whitelisted_user_ids:
                rule.whitelisted_user_ids.append(user_id)
                updated = True
            if target_group_id and target_group_id not in rule.whitelisted_group_ids:
                rule.whitelisted_group_ids.append(target_group_id)
                updated = True

            if updated:
                await self.config_source.save_group_config(group_id, config)
                log.info("Whitelist updated for rule %s in group %s", rule.name, group_id)
            return updated

    async def remove_from_whitelist(self, group_id: str, entity_id: str, kind: Literal["user", "group"]) -> bool:
        """Remove a user or group exemption from every rule in the group."""

        async with self._write_lock:
            config = await self._load_for_update(group_id)
            updated = False
            for rule in config.rules:
                target = rule.whitelisted_user_ids if kind == "user" else rule.whitelisted_group_ids
                if entity_id in target:
                    target[:] = [x for x in target if x != entity_id]
                    updated = True
            if updated:
                await self.config_source.save_group_config(group_id, config)
                log.info("Removed %s %s from whitelists in group %s", kind, entity_id, group_id)
            return updated

    async def list_whitelisted_entities(self, group_id: str) -> dict[str, list[dict[str, Any]]]:
        config = await self.config_source.get_group_config(group_id)
        users: dict[str, list[str]] = {}
        groups: dict[str, list[str]] = {}
        for rule in config.rules:
            for uid in rule.whitelisted_user_ids:
                users.setdefault(uid, []).append(rule.name)
            for gid in rule.whitelisted_group_ids:
                groups.setdefault(gid, []).append(rule.name)
        return {
            "users": [{"id": k, "rules": v} for k, v in users.items()],
            "groups": [{"id": k, "rules": v} for k, v in groups.items()],
        }
