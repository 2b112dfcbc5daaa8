"""Shared fixtures for taskarbor tests.

File handling in tests:
- Use tmp_path for any directory or file creation so tests are isolated and cleaned up.
- Use taskarbor.io_utils read_text/write_text for consistent UTF-8 I/O.
"""

from __future__ import annotations

from pathlib import Path
from typing import Callable

import pytest

from taskarbor.config import ManagerConfig, PersistenceConfig, ScoringWeights, SessionConfig
from taskarbor.executors.base import ExecutionOutcome, ExecutionRequest, Executor
from taskarbor.session.persistence import PersistenceManager
from taskarbor.session.state import SessionState
from taskarbor.tasks.tree import TaskTree


def pytest_addoption(parser: pytest.Parser) -> None:
    """Register opt-in switch for expensive end-to-end tests."""
    parser.addoption(
        "--run-e2e",
        action="store_true",
        default=False,
        help="Run end-to-end tests marked with 'e2e'.",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip e2e tests unless explicitly enabled."""
    if config.getoption("--run-e2e"):
        return

    skip_e2e = pytest.mark.skip(
        reason="E2E tests are skipped by default. Use --run-e2e to include them.",
    )
    for item in items:
        if "e2e" in item.keywords:
            item.add_marker(skip_e2e)


# ── Helpers ─────────────────────────────────────────────────────────


class ScriptedExecutor(Executor):
    """Executor that replays scripted outcomes per task title.

    ``script`` maps a title to a list of outcomes (consumed in order; the last
    one repeats) or to a callable taking the request. Unscripted titles
    complete.
    """

    name = "scripted"

    def __init__(
        self,
        script: dict[str, list[ExecutionOutcome] | Callable[[ExecutionRequest], ExecutionOutcome]] | None = None,
    ) -> None:
        self.script = dict(script or {})
        self.calls: list[ExecutionRequest] = []

    @property
    def titles(self) -> list[str]:
        return [r.title for r in self.calls]

    async def execute(self, request: ExecutionRequest) -> ExecutionOutcome:
        self.calls.append(request)
        entry = self.script.get(request.title)
        if entry is None:
            return ExecutionOutcome.completed(f"did {request.title}")
        if callable(entry):
            return entry(request)
        if len(entry) > 1:
            return entry.pop(0)
        return entry[0]


# ── Fixtures ────────────────────────────────────────────────────────


@pytest.fixture
def tree() -> TaskTree:
    return TaskTree()


@pytest.fixture
def manager_config() -> ManagerConfig:
    """Manager options tuned for tests: no real backoff waits, no timeout."""
    return ManagerConfig(
        max_attempts=3,
        retry_base_delay=0.0,
        retry_max_delay=0.0,
        dispatch_timeout=None,
        save_wait_seconds=1.0,
    )


@pytest.fixture
def session_config(manager_config: ManagerConfig) -> SessionConfig:
    return SessionConfig(
        manager=manager_config,
        weights=ScoringWeights(jitter=0.0),
        persistence=PersistenceConfig(write_retry_delay=0.0),
        auto_save_interval=0,
        auto_checkpoint_interval=0,
    )


@pytest.fixture
def persistence(tmp_path: Path) -> PersistenceManager:
    return PersistenceManager(tmp_path / "session", PersistenceConfig(write_retry_delay=0.0))


@pytest.fixture
def state() -> SessionState:
    return SessionState(session_id="test-session", name="test")


@pytest.fixture
def make_executor() -> type[ScriptedExecutor]:
    """The :class:`ScriptedExecutor` class, for tests that script outcomes."""
    return ScriptedExecutor
