"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
from helpers import FakeClock

from agent_tasks.config import Settings, TaskLifecycleSettings
from agent_tasks.storage.repository import SqliteResourceStore


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def store(tmp_path: Path, clock: FakeClock) -> Iterator[SqliteResourceStore]:
    resource_store = SqliteResourceStore(tmp_path / "agent-tasks.db", clock=clock)
    resource_store.init_schema()
    try:
        yield resource_store
    finally:
        resource_store.close()


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        db_path=tmp_path / "agent-tasks.db",
        lifecycle=TaskLifecycleSettings(ttl_seconds_after_finished=60),
    )
