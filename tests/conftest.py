"""Shared pytest fixtures for the warden test suite."""

from __future__ import annotations

from pathlib import Path

import pytest

from fakes import FakeClock


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sqlite_path(tmp_path: Path) -> str:
    return str(tmp_path / "warden.sqlite3")
