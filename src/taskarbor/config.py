"""Configuration defaults, env vars, and runtime options for taskarbor."""

from __future__ import annotations

import os
import shlex
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from taskarbor.errors import ConfigError

STATE_DIR_NAME = ".taskarbor"

# Priority ordinals are 10, 8, 5, 3, 1; the closest pair differs by 2 on a 1..10 scale.
MIN_PRIORITY_STEP = 2 / 9


@dataclass
class ScoringWeights:
    """Weights for the scheduler's normalized (0-1) scoring factors."""

    priority: float = 10.0
    dependents: float = 0.8
    affinity: float = 0.5
    age: float = 0.3
    lightness: float = 0.3
    jitter: float = 0.05

    # Age at which the age factor saturates to 1.0
    age_horizon_seconds: float = 3600.0

    def secondary_total(self) -> float:
        return self.dependents + self.affinity + self.age + self.lightness + self.jitter

    def check(self) -> None:
        """Raise :class:`ConfigError` unless one priority step outweighs every other factor."""
        for name in ("priority", "dependents", "affinity", "age", "lightness", "jitter"):
            if getattr(self, name) < 0:
                raise ConfigError(f"scoring weight {name!r} must be >= 0")
        if self.age_horizon_seconds <= 0:
            raise ConfigError("age_horizon_seconds must be > 0")
        if self.priority * MIN_PRIORITY_STEP <= self.secondary_total():
            raise ConfigError(
                "priority weight too small: one priority step "
                f"({self.priority * MIN_PRIORITY_STEP:.3f}) must exceed the sum of the "
                f"other weights ({self.secondary_total():.3f})"
            )


@dataclass
class AggregationPolicy:
    """How a parent resolves once every child is terminal."""

    # "block": parent -> Blocked until resolved by hand; "fail": parent -> Failed;
    # "complete": failures are ignored and the parent completes.
    on_child_failure: str = "block"
    # When False a Skipped child is treated like a Failed one.
    skipped_counts_as_success: bool = True

    def __post_init__(self) -> None:
        if self.on_child_failure not in ("block", "fail", "complete"):
            raise ConfigError(
                f"on_child_failure must be block, fail or complete (got {self.on_child_failure!r})"
            )


@dataclass
class ManagerConfig:
    """Execution loop options: retries, backoff, timeouts, cleanup."""

    max_attempts: int = 3
    retry_base_delay: float = 5.0
    retry_max_delay: float = 300.0
    dispatch_timeout: float | None = 1800.0
    skipped_satisfies_dependencies: bool = True
    aggregation: AggregationPolicy = field(default_factory=AggregationPolicy)
    # Terminal tasks older than this are pruned by cleanup(); None disables it.
    retention_hours: float | None = None
    # Seconds the loop waits for the persistence lock before giving up on a save.
    save_wait_seconds: float = 10.0
    # Stop after N dispatches (0 = unlimited)
    max_dispatches: int = 0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ConfigError("max_attempts must be >= 1")
        if self.retry_base_delay < 0 or self.retry_max_delay < 0:
            raise ConfigError("retry delays must be >= 0")
        if self.dispatch_timeout is not None and self.dispatch_timeout <= 0:
            self.dispatch_timeout = None

    def backoff_delay(self, failures: int) -> float:
        """Delay before the retry that follows failure number *failures* (1-based).

        base * 2^(failures - 1), capped at ``retry_max_delay``.
        """
        return min(self.retry_max_delay, self.retry_base_delay * (2 ** max(failures - 1, 0)))


@dataclass
class PersistenceConfig:
    write_retries: int = 3
    write_retry_delay: float = 0.2
    max_checkpoints: int = 20
    max_checkpoint_age_hours: float | None = None
    # The newest N checkpoints are never pruned.
    keep_recent: int = 3
    verify_checksums: bool = True

    def __post_init__(self) -> None:
        if self.write_retries < 1:
            raise ConfigError("write_retries must be >= 1")
        if self.keep_recent < 1:
            raise ConfigError("keep_recent must be >= 1")
        if self.max_checkpoints < self.keep_recent:
            self.max_checkpoints = self.keep_recent


@dataclass
class RecoveryConfig:
    auto_correct: bool = True
    allow_rollback: bool = True
    checkpoint_before_recovery: bool = True


@dataclass
class SessionConfig:
    """Top-level session configuration, passed down to every component."""

    manager: ManagerConfig = field(default_factory=ManagerConfig)
    weights: ScoringWeights = field(default_factory=ScoringWeights)
    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)
    recovery: RecoveryConfig = field(default_factory=RecoveryConfig)

    auto_save_interval: float = 60.0
    auto_checkpoint_interval: float = 900.0
    # Create a task-boundary checkpoint after every N completed tasks (0 = off).
    checkpoint_every_n_tasks: int = 0
    checkpoint_on_shutdown: bool = True

    executor_command: list[str] = field(default_factory=list)
    verbose: bool = False

    def __post_init__(self) -> None:
        self.weights.check()
        if self.auto_save_interval < 0 or self.auto_checkpoint_interval < 0:
            raise ConfigError("timer intervals must be >= 0 (0 disables)")

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None, **overrides: Any) -> SessionConfig:
        """Build a config from ``TASKARBOR_*`` environment variables plus *overrides*."""
        env = os.environ if environ is None else environ
        cfg = cls(**overrides)

        def _num(name: str, cast: type = float) -> Any:
            raw = env.get(name, "").strip()
            if not raw:
                return None
            try:
                return cast(raw)
            except ValueError as e:
                raise ConfigError(f"{name} must be a {cast.__name__} (got {raw!r})") from e

        if (v := _num("TASKARBOR_MAX_ATTEMPTS", int)) is not None:
            cfg.manager.max_attempts = v
        if (v := _num("TASKARBOR_RETRY_DELAY")) is not None:
            cfg.manager.retry_base_delay = v
        if (v := _num("TASKARBOR_DISPATCH_TIMEOUT")) is not None:
            cfg.manager.dispatch_timeout = v if v > 0 else None
        if (v := _num("TASKARBOR_AUTOSAVE_INTERVAL")) is not None:
            cfg.auto_save_interval = v
        if (v := _num("TASKARBOR_CHECKPOINT_INTERVAL")) is not None:
            cfg.auto_checkpoint_interval = v
        if (v := _num("TASKARBOR_MAX_CHECKPOINTS", int)) is not None:
            cfg.persistence.max_checkpoints = v
        failure_policy = env.get("TASKARBOR_ON_CHILD_FAILURE", "").strip()
        if failure_policy:
            cfg.manager.aggregation = AggregationPolicy(
                on_child_failure=failure_policy,
                skipped_counts_as_success=cfg.manager.aggregation.skipped_counts_as_success,
            )
        command = env.get("TASKARBOR_EXECUTOR_CMD", "").strip()
        if command and not cfg.executor_command:
            cfg.executor_command = shlex.split(command)
        if env.get("TASKARBOR_VERBOSE", "").strip() in ("1", "true", "yes"):
            cfg.verbose = True

        cfg.manager.__post_init__()
        cfg.persistence.__post_init__()
        cfg.weights.check()
        return cfg

    def to_dict(self) -> dict[str, Any]:
        """Plain snapshot of the config, stored alongside session state."""
        return asdict(self)


def state_root(workspace: Path) -> Path:
    return Path(workspace) / STATE_DIR_NAME


def sessions_root(workspace: Path) -> Path:
    return state_root(workspace) / "sessions"
