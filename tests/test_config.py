"""Unit tests: environment-driven settings."""

from __future__ import annotations

import pytest

from warden.config import load_settings
from warden.constants import DEFAULT_AUDIT_PAGE_SIZE


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "VRCHAT_AUTH_COOKIE",
        "WARDEN_GROUP_IDS",
        "GUARD_ENABLED",
        "GUARD_INTERVAL_SECONDS",
        "AUDIT_PAGE_SIZE",
        "DISCORD_WEBHOOK_URL",
        "SQLITE_PATH",
    ):
        monkeypatch.delenv(name, raising=False)


def test_auth_cookie_required() -> None:
    with pytest.raises(RuntimeError):
        load_settings()


def test_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("VRCHAT_AUTH_COOKIE", "authcookie_x")
    s = load_settings()
    assert s.group_ids == ()
    assert s.guard_enabled is True
    assert s.audit_page_size == DEFAULT_AUDIT_PAGE_SIZE
    assert s.discord_webhook_url == ""
    assert s.sqlite_path == "warden.sqlite3"


def test_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("VRCHAT_AUTH_COOKIE", "authcookie_x")
    monkeypatch.setenv("WARDEN_GROUP_IDS", "grp_a, grp_b,,")
    monkeypatch.setenv("GUARD_ENABLED", "off")
    monkeypatch.setenv("GUARD_INTERVAL_SECONDS", "1")
    monkeypatch.setenv("AUDIT_PAGE_SIZE", "not-a-number")
    s = load_settings()
    assert s.group_ids == ("grp_a", "grp_b")
    assert s.guard_enabled is False
    assert s.guard_interval_seconds == 5
    assert s.audit_page_size == DEFAULT_AUDIT_PAGE_SIZE
