"""Shared test fixtures for Warden."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator
    from pathlib import Path

from warden.config import EngineConfig
from warden.storage.db import Database


@pytest.fixture
def tmp_warden_home(tmp_path: Path) -> Path:
    """Create a temporary ~/.warden/ structure."""
    home = tmp_path / "warden"
    home.mkdir()
    (home / "db").mkdir()
    return home


@pytest.fixture
def engine_config(tmp_warden_home: Path) -> EngineConfig:
    """Default engine config rooted in the temporary home."""
    return EngineConfig(warden_home=tmp_warden_home)


@pytest.fixture
async def db(engine_config: EngineConfig) -> AsyncGenerator[Database, None]:
    """An initialized rule store, closed after the test."""
    database = Database(engine_config.database_path)
    await database.init()
    yield database
    await database.close()
