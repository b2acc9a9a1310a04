"""Shared test fixtures for pytest."""

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from treehouse.db import Registry
from treehouse.logging import reset_logging


class FakeClock:
    """Controllable UTC clock for registries."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    """Point settings at a per-test registry and clear the settings cache."""
    import treehouse.config

    monkeypatch.setenv("TREEHOUSE_REGISTRY_PATH", str(tmp_path / "registry.db"))
    monkeypatch.delenv("TREEHOUSE_PROJECT", raising=False)
    treehouse.config.get_settings.cache_clear()
    yield
    treehouse.config.get_settings.cache_clear()
    reset_logging()


@pytest.fixture
def clock():
    """A fake clock starting at 2025-01-01 12:00 UTC."""
    return FakeClock()


@pytest.fixture
def db_path(tmp_path):
    """Path of the per-test registry file."""
    return tmp_path / "registry.db"


@pytest_asyncio.fixture
async def registry(db_path, clock):
    """An initialized registry on a fresh file, driven by the fake clock."""
    registry = Registry.open(db_path, clock=clock)
    await registry.init_schema()
    yield registry
    await registry.close()
