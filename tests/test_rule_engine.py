"""Unit tests: RuleEvaluationEngine."""

from __future__ import annotations

import asyncio

import pytest

from warden.errors import LookupFailure, RuleNotFoundError
from warden.moderation.compiler import RuleConfigCache
from warden.moderation.models import GroupConfig, ModerationRule, UserGroup, UserSnapshot
from warden.moderation.rule_engine import (
    RuleEvaluationEngine,
    check_age_verification,
    highest_trust_index,
    trust_ladder_index,
)
from warden.services.stats import RuntimeStats

from fakes import FakeClock, FakeUserGroups, InMemoryConfigSource, keyword_rule

GROUP = "grp_main"


def make_engine(
    rules: list[ModerationRule],
    *,
    user_groups: FakeUserGroups | None = None,
    stats: RuntimeStats | None = None,
    clock: FakeClock | None = None,
) -> tuple[RuleEvaluationEngine, InMemoryConfigSource]:
    source = InMemoryConfigSource({GROUP: GroupConfig(rules=rules)})
    cache = RuleConfigCache(clock=clock) if clock is not None else RuleConfigCache()
    engine = RuleEvaluationEngine(
        config_source=source,
        user_groups=user_groups or FakeUserGroups(),
        rule_cache=cache,
        stats=stats,
    )
    return engine, source


def trust_rule(level: str, rule_id: int = 5) -> ModerationRule:
    return ModerationRule(id=rule_id, name="Trust gate", type="TRUST_CHECK", config={"minTrustLevel": level})


class TestKeywordBlock:
    async def test_display_name_match_rejects(self) -> None:
        engine, _ = make_engine([keyword_rule(1, ("spam",))])
        result = await engine.evaluate(UserSnapshot(id="usr_1", display_name="spammer99"), GROUP)
        assert result.action == "REJECT"
        assert result.rule_name == "Keyword rule 1"
        assert result.rule_id == 1
        assert result.reason == 'Keyword "spam" found in Display Name'

    async def test_whitelisted_user_is_allowed_regardless_of_content(self) -> None:
        rule = keyword_rule(1, ("spam",))
        rule.whitelisted_user_ids.append("usr_1")
        engine, _ = make_engine([rule])
        result = await engine.evaluate(UserSnapshot(id="usr_1", display_name="spammer99", bio="spam"), GROUP)
        assert result.action == "ALLOW"

    async def test_legacy_config_level_user_whitelist(self) -> None:
        engine, _ = make_engine([keyword_rule(1, ("spam",), whitelistedUserIds=["usr_1"])])
        result = await engine.evaluate(UserSnapshot(id="usr_1", display_name="spammer"), GROUP)
        assert result.allowed

    async def test_whitelist_term_overrides_keyword_in_same_field(self) -> None:
        engine, _ = make_engine([keyword_rule(1, ("spam",), whitelist=["spamton"])])
        result = await engine.evaluate(UserSnapshot(id="usr_1", display_name="Spamton Fan"), GROUP)
        assert result.allowed

    async def test_whitelist_term_only_suppresses_its_own_field(self) -> None:
        engine, _ = make_engine([keyword_rule(1, ("spam",), whitelist=["spamton"])])
        user = UserSnapshot(id="usr_1", display_name="Spamton Fan", bio="buy spam here")
        result = await engine.evaluate(user, GROUP)
        assert result.reason == 'Keyword "spam" found in Bio'

    async def test_whole_word_does_not_match_inside_word(self) -> None:
        engine, _ = make_engine([keyword_rule(1, ("ban",), matchMode="WHOLE_WORD")])
        assert (await engine.evaluate(UserSnapshot(id="u", display_name="banana"), GROUP)).allowed
        hit = await engine.evaluate(UserSnapshot(id="u", display_name="I BAN people"), GROUP)
        assert hit.action == "REJECT"

    async def test_partial_mode_matches_inside_word(self) -> None:
        engine, _ = make_engine([keyword_rule(1, ("ban",))])
        result = await engine.evaluate(UserSnapshot(id="u", display_name="banana"), GROUP)
        assert result.reason == 'Keyword "ban" found in Display Name'

    async def test_field_order_and_toggles(self) -> None:
        user = UserSnapshot(
            id="u",
            display_name="clean",
            bio="clean",
            status="clean",
            status_description="spam status",
            pronouns="spam/spam",
        )
        engine, _ = make_engine([keyword_rule(1, ("spam",))])
        assert (await engine.evaluate(user, GROUP)).reason == 'Keyword "spam" found in Status Description'

        engine, _ = make_engine([keyword_rule(1, ("spam",), scanStatus=False)])
        assert (await engine.evaluate(user, GROUP)).allowed

        engine, _ = make_engine([keyword_rule(1, ("spam",), scanStatus=False, scanPronouns=True)])
        assert (await engine.evaluate(user, GROUP)).reason == 'Keyword "spam" found in Pronouns'

    async def test_bio_scan_can_be_disabled(self) -> None:
        engine, _ = make_engine([keyword_rule(1, ("spam",), scanBio=False)])
        assert (await engine.evaluate(UserSnapshot(id="u", display_name="ok", bio="spam"), GROUP)).allowed

    async def test_group_names_scanned_when_enabled(self) -> None:
        groups = FakeUserGroups({"u": [UserGroup("grp_x", "Spam Club", "SPAMC")]})
        engine, _ = make_engine([keyword_rule(1, ("spam",), scanGroups=True)], user_groups=groups)
        result = await engine.evaluate(UserSnapshot(id="u", display_name="ok"), GROUP)
        assert result.reason == 'Keyword "spam" found in Group: "Spam Club"'

    async def test_group_whitelist_exempts_user(self) -> None:
        rule = keyword_rule(1, ("spam",))
        rule.whitelisted_group_ids.append("grp_friends")
        groups = FakeUserGroups({"u": [UserGroup("grp_friends", "Friends", "FRND")]})
        engine, _ = make_engine([rule], user_groups=groups)
        assert (await engine.evaluate(UserSnapshot(id="u", display_name="spammer"), GROUP)).allowed

    async def test_legacy_string_config_is_single_keyword(self) -> None:
        rule = ModerationRule(id=1, name="Legacy", type="KEYWORD_BLOCK", config="scam")
        engine, _ = make_engine([rule])
        result = await engine.evaluate(UserSnapshot(id="u", display_name="scammer"), GROUP)
        assert result.reason == 'Keyword "scam" found in Display Name'

    async def test_unverified_age_status_matches_even_without_keyword_hit(self) -> None:
        engine, _ = make_engine([keyword_rule(1, ("spam",))])
        user = UserSnapshot(id="u", display_name="clean", age_verification_status="13+")
        result = await engine.evaluate(user, GROUP)
        assert result.action == "REJECT"
        assert result.reason == "Age Verification Required (Found: 13+)"

    async def test_hidden_age_status_passes(self) -> None:
        engine, _ = make_engine([keyword_rule(1, ("spam",))])
        user = UserSnapshot(id="u", display_name="clean", age_verification_status="Hidden")
        assert (await engine.evaluate(user, GROUP)).allowed


class TestTrustCheck:
    async def test_basic_user_below_trusted_is_violation(self) -> None:
        engine, _ = make_engine([trust_rule("trusted")])
        user = UserSnapshot(id="u", display_name="n", tags=("system_trust_basic",))
        result = await engine.evaluate(user, GROUP)
        assert result.action == "REJECT"
        assert result.reason == "Trust Level below trusted"

    async def test_veteran_user_passes(self) -> None:
        engine, _ = make_engine([trust_rule("trusted")])
        user = UserSnapshot(id="u", display_name="n", tags=("system_trust_basic", "system_trust_veteran"))
        assert (await engine.evaluate(user, GROUP)).allowed

    async def test_missing_tags_tolerated_only_when_allowed(self) -> None:
        engine, _ = make_engine([trust_rule("known")])
        user = UserSnapshot(id="u", display_name="n")
        assert (await engine.evaluate(user, GROUP, allow_missing_data=True)).allowed
        assert not (await engine.evaluate(user, GROUP)).allowed

    async def test_lowest_level_never_violates(self) -> None:
        engine, _ = make_engine([trust_rule("visitor")])
        user = UserSnapshot(id="u", display_name="n", tags=())
        assert (await engine.evaluate(user, GROUP)).allowed

    def test_ladder_helpers(self) -> None:
        assert trust_ladder_index("Trusted") == 3
        assert trust_ladder_index("nonsense") == -1
        assert highest_trust_index(("system_trust_known", "system_trust_basic")) == 2
        assert highest_trust_index(()) == -1


class TestBlacklistedGroups:
    async def test_member_of_blacklisted_group(self) -> None:
        rule = ModerationRule(id=3, name="Blacklist", type="BLACKLISTED_GROUPS", action_type="AUTO_BLOCK", config={"groupIds": ["grp_bad"]})
        groups = FakeUserGroups({"u": [UserGroup("grp_ok", "Fine"), UserGroup("grp_bad", "Bad Group")]})
        engine, _ = make_engine([rule], user_groups=groups)
        result = await engine.evaluate(UserSnapshot(id="u", display_name="n"), GROUP)
        assert result.action == "AUTO_BLOCK"
        assert result.reason == "Member of blacklisted group: Bad Group"

    async def test_group_lookup_failure_is_no_match(self) -> None:
        rule = ModerationRule(id=3, name="Blacklist", type="BLACKLISTED_GROUPS", config={"groupIds": ["grp_bad"]})
        engine, _ = make_engine([rule], user_groups=FakeUserGroups(error=LookupFailure("boom")))
        assert (await engine.evaluate(UserSnapshot(id="u", display_name="n"), GROUP)).allowed

    async def test_user_groups_fetched_once_per_evaluation(self) -> None:
        kw = keyword_rule(1, ("spam",))
        kw.whitelisted_group_ids.append("grp_friends")
        bl = ModerationRule(id=2, name="Blacklist", type="BLACKLISTED_GROUPS", config={"groupIds": ["grp_bad"]})
        groups = FakeUserGroups({"u": [UserGroup("grp_bad", "Bad")]})
        engine, _ = make_engine([kw, bl], user_groups=groups)
        result = await engine.evaluate(UserSnapshot(id="u", display_name="clean"), GROUP)
        assert result.rule_id == 2
        assert groups.calls == ["u"]


class TestAgeVerification:
    def test_check_age_verification(self) -> None:
        assert check_age_verification(UserSnapshot(id="u", display_name="n")) is None
        assert check_age_verification(UserSnapshot(id="u", display_name="n", age_verification_status="18+")) is None
        assert check_age_verification(UserSnapshot(id="u", display_name="n", age_verification_status="hidden")) is None
        assert (
            check_age_verification(UserSnapshot(id="u", display_name="n", age_verification_status="none"))
            == "Age Verification Required (Found: none)"
        )

    async def test_standalone_rule_type(self) -> None:
        rule = ModerationRule(id=7, name="Adults only", type="AGE_VERIFICATION", action_type="NOTIFY_ONLY")
        engine, _ = make_engine([rule])
        result = await engine.evaluate(UserSnapshot(id="u", display_name="n", age_verification_status="13+"), GROUP)
        assert result.action == "NOTIFY_ONLY"
        assert result.rule_id == 7


class TestEvaluationPipeline:
    async def test_no_rules_allows(self) -> None:
        engine, _ = make_engine([])
        assert (await engine.evaluate(UserSnapshot(id="u", display_name="spam"), GROUP)).allowed

    async def test_disabled_rule_is_skipped(self) -> None:
        rule = keyword_rule(1, ("spam",))
        rule.enabled = False
        engine, _ = make_engine([rule])
        assert (await engine.evaluate(UserSnapshot(id="u", display_name="spam"), GROUP)).allowed

    async def test_first_matching_rule_wins(self) -> None:
        a = keyword_rule(1, ("spam",))
        b = keyword_rule(2, ("spam",))
        b.action_type = "AUTO_BLOCK"
        engine, _ = make_engine([a, b])
        result = await engine.evaluate(UserSnapshot(id="u", display_name="spam"), GROUP)
        assert result.rule_id == 1
        assert result.action == "REJECT"

    async def test_erroring_rule_is_skipped_and_counted(self) -> None:
        broken = ModerationRule(id=1, name="Broken", type="KEYWORD_BLOCK", config=12345)
        stats = RuntimeStats()
        engine, _ = make_engine([broken, keyword_rule(2, ("spam",))], stats=stats)
        result = await engine.evaluate(UserSnapshot(id="u", display_name="spam"), GROUP)
        assert result.rule_id == 2
        assert stats.rule_errors == 1
        assert stats.evaluations == 1

    async def test_config_failure_fails_open(self) -> None:
        class ExplodingSource(InMemoryConfigSource):
            async def get_group_config(self, group_id: str) -> GroupConfig:
                raise RuntimeError("config store offline")

        engine = RuleEvaluationEngine(config_source=ExplodingSource(), user_groups=FakeUserGroups())
        assert (await engine.evaluate(UserSnapshot(id="u", display_name="spam"), GROUP)).allowed

    async def test_edited_config_is_recompiled(self, clock: FakeClock) -> None:
        rule = keyword_rule(1, ("spam",))
        engine, _ = make_engine([rule], clock=clock)
        user = UserSnapshot(id="u", display_name="spammer")
        assert not (await engine.evaluate(user, GROUP)).allowed

        rule.config = {"keywords": ["eggs"], "matchMode": "PARTIAL"}
        assert (await engine.evaluate(user, GROUP)).allowed

    async def test_concurrent_evaluations(self) -> None:
        engine, _ = make_engine([keyword_rule(1, ("spam",))])
        users = [UserSnapshot(id=f"u{i}", display_name="spam" if i % 2 else "fine") for i in range(10)]
        results = await asyncio.gather(*(engine.evaluate(u, GROUP) for u in users))
        assert [r.allowed for r in results] == [i % 2 == 0 for i in range(10)]


class TestWhitelistMaintenance:
    async def test_add_to_whitelist_persists_and_exempts(self) -> None:
        engine, source = make_engine([keyword_rule(1, ("spam",))])
        assert await engine.add_to_whitelist(GROUP, 1, user_id="usr_9") is True
        assert source.saves == 1
        assert await engine.add_to_whitelist(GROUP, 1, user_id="usr_9") is False
        assert source.saves == 1
        assert (await engine.evaluate(UserSnapshot(id="usr_9", display_name="spam"), GROUP)).allowed

    async def test_add_group_exemption(self) -> None:
        engine, source = make_engine([keyword_rule(1, ("spam",))])
        assert await engine.add_to_whitelist(GROUP, 1, target_group_id="grp_f") is True
        assert source.configs[GROUP].rules[0].whitelisted_group_ids == ["grp_f"]

    async def test_unknown_rule_raises(self) -> None:
        engine, _ = make_engine([keyword_rule(1, ("spam",))])
        with pytest.raises(RuleNotFoundError):
            await engine.add_to_whitelist(GROUP, 404, user_id="usr_9")

    async def test_remove_and_list(self) -> None:
        a = keyword_rule(1, ("spam",))
        b = keyword_rule(2, ("scam",))
        a.whitelisted_user_ids.append("usr_9")
        b.whitelisted_user_ids.append("usr_9")
        b.whitelisted_group_ids.append("grp_f")
        engine, source = make_engine([a, b])

        listing = await engine.list_whitelisted_entities(GROUP)
        assert listing["users"] == [{"id": "usr_9", "rules": ["Keyword rule 1", "Keyword rule 2"]}]
        assert listing["groups"] == [{"id": "grp_f", "rules": ["Keyword rule 2"]}]

        assert await engine.remove_from_whitelist(GROUP, "usr_9", "user") is True
        assert all(not r.whitelisted_user_ids for r in source.configs[GROUP].rules)
        assert await engine.remove_from_whitelist(GROUP, "usr_9", "user") is False
