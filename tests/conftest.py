"""Global pytest fixtures and configuration.

This module provides shared fixtures for all tests including:
- Isolated configuration rooted in a temporary directory
- File-backed and in-memory state stores
- A recording sleep so recovery backoff never waits for real
- A workflow engine wired to all of the above
"""
from __future__ import annotations

from pathlib import Path
from typing import List

import pytest

from ciflow.cache import WorkflowCache
from ciflow.config import Config, reset_config
from ciflow.orchestration import (
    InMemoryStateStorage,
    JsonFileStateStorage,
    PerformanceMonitor,
    RecoveryPlanner,
    StepRunner,
    WorkflowEngine,
    WorkflowStateStore,
)


class RecordingSleep:
    """Awaitable stand-in for ``asyncio.sleep`` that records requested delays."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture(autouse=True)
def clear_ciflow_env(monkeypatch):
    """Remove CIFLOW_* variables so tests see default configuration."""
    import os

    for key in list(os.environ):
        if key.startswith("CIFLOW_"):
            monkeypatch.delenv(key, raising=False)
    reset_config()
    yield
    reset_config()


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    return tmp_path / "state"


@pytest.fixture
def file_storage(state_dir: Path) -> JsonFileStateStorage:
    return JsonFileStateStorage(state_dir)


@pytest.fixture
def state_store(file_storage: JsonFileStateStorage) -> WorkflowStateStore:
    """State store persisting to a temporary directory."""
    return WorkflowStateStore(file_storage)


@pytest.fixture
def memory_store() -> WorkflowStateStore:
    return WorkflowStateStore(InMemoryStateStorage())


@pytest.fixture
def config(tmp_path: Path) -> Config:
    return Config(state_dir=tmp_path / "state", cache_dir=tmp_path / "cache")


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def make_engine(config: Config, recording_sleep: RecordingSleep):
    """Factory building an engine whose recovery sleeps are recorded, not awaited."""

    def _make(state: WorkflowStateStore = None) -> WorkflowEngine:
        state = state or WorkflowStateStore(JsonFileStateStorage(config.state_dir))
        monitor = PerformanceMonitor()
        runner = StepRunner(
            state, planner=RecoveryPlanner(state, sleep=recording_sleep), monitor=monitor
        )
        cache = WorkflowCache(config.cache_dir, ttl=config.cache_ttl)
        return WorkflowEngine(state=state, config=config, cache=cache, runner=runner, monitor=monitor)

    return _make


@pytest.fixture
def engine(make_engine) -> WorkflowEngine:
    return make_engine()
