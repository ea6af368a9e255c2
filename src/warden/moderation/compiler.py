from __future__ import annotations

import hashlib
import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Optional

from ..constants import DEFAULT_RULE_CACHE_MAX, DEFAULT_RULE_CACHE_TTL_SECONDS
from ..services.cache import Clock, TTLCache
from .config_schema import KeywordBlockConfig, RuleConfig, parse_rule_config
from .models import ModerationRule

log = logging.getLogger("warden.compiler")


@dataclass(frozen=True)
class KeywordMatcher:
    keyword: str
    lowered: str
    # Only set in WHOLE_WORD mode; None means literal substring test.
    pattern: Optional[re.Pattern[str]] = None

    def matches(self, text: str, lowered_text: str) -> bool:
        if self.pattern is not None:
            return self.pattern.search(text) is not None
        return self.lowered in lowered_text


@dataclass(frozen=True)
class CompiledRuleView:
    """Derived, cache-only view of one rule's config."""

    rule_id: int
    rule_type: str
    fingerprint: str
    config: RuleConfig
    matchers: tuple[KeywordMatcher, ...] = ()
    whitelist_terms: tuple[str, ...] = ()


def config_fingerprint(raw: Any) -> str:
    """Content hash of a raw rule config; changes whenever the config is edited."""

    if isinstance(raw, (dict, list)):
        try:
            payload = json.dumps(raw, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
        except (TypeError, ValueError):
            payload = repr(raw)
    else:
        payload = "" if raw is None else str(raw)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]


def _compile_matchers(cfg: KeywordBlockConfig) -> tuple[KeywordMatcher, ...]:
    matchers: list[KeywordMatcher] = []
    for kw in cfg.keywords:
        safe = kw.strip()
        if not safe:
            continue
        pattern: Optional[re.Pattern[str]] = None
        if cfg.match_mode == "WHOLE_WORD":
            try:
                pattern = re.compile(rf"\b{re.escape(safe)}\b", re.IGNORECASE)
            except re.error:
                log.warning("Could not compile whole-word matcher for %r; using substring match", safe)
                pattern = None
        matchers.append(KeywordMatcher(keyword=safe, lowered=safe.lower(), pattern=pattern))
    return tuple(matchers)


def compile_rule(rule: ModerationRule, fingerprint: Optional[str] = None) -> CompiledRuleView:
    cfg = parse_rule_config(rule.type, rule.config)
    fp = fingerprint or config_fingerprint(rule.config)
    if isinstance(cfg, KeywordBlockConfig):
        terms = tuple(w.strip().lower() for w in cfg.whitelist if w.strip())
        return CompiledRuleView(
            rule_id=rule.id,
            rule_type=rule.type,
            fingerprint=fp,
            config=cfg,
            matchers=_compile_matchers(cfg),
            whitelist_terms=terms,
        )
    return CompiledRuleView(rule_id=rule.id, rule_type=rule.type, fingerprint=fp, config=cfg)


class RuleConfigCache(TTLCache[tuple[int, str, str], CompiledRuleView]):
    """Compiled rule views keyed by rule id, rule type and config fingerprint.

    An edited config gets a new fingerprint and therefore a fresh entry, so
    stale matchers are never served inside the TTL window.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_RULE_CACHE_TTL_SECONDS,
        max_entries: int = DEFAULT_RULE_CACHE_MAX,
        clock: Clock = time.monotonic,
    ) -> None:
        super().__init__(default_ttl_seconds=ttl_seconds, max_entries=max_entries, clock=clock)

    def get_or_compile(self, rule: ModerationRule) -> CompiledRuleView:
        fp = config_fingerprint(rule.config)
        key = (rule.id, rule.type, fp)
        cached = self.get(key)
        if cached is not None:
            return cached
        compiled = compile_rule(rule, fp)
        self.set(key, compiled)
        return compiled
