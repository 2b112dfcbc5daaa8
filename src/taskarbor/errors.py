"""Exception hierarchy shared by the tree, manager, persistence and recovery layers."""

from __future__ import annotations

from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:
    from taskarbor.tasks.validate import Violation


class TaskArborError(Exception):
    """Base class for every error raised by taskarbor."""


class ConfigError(TaskArborError, ValueError):
    """Invalid configuration value."""


# ── structural (task tree) ───────────────────────────────────────────


class UnknownTaskError(TaskArborError, KeyError):
    def __init__(self, task_id: str) -> None:
        super().__init__(task_id)
        self.task_id = task_id

    def __str__(self) -> str:
        return f"unknown task: {self.task_id}"


class InvalidParentError(TaskArborError):
    def __init__(self, parent_id: str) -> None:
        super().__init__(f"parent task does not exist: {parent_id}")
        self.parent_id = parent_id


class CycleDetectedError(TaskArborError):
    """Adding an edge would close a cycle; *path* lists the ids along it."""

    def __init__(self, task_id: str, dep_id: str, path: Sequence[str] = ()) -> None:
        self.task_id = task_id
        self.dep_id = dep_id
        self.path = list(path)
        chain = " -> ".join(self.path) if self.path else f"{dep_id} -> {task_id}"
        super().__init__(f"dependency {task_id} -> {dep_id} would create a cycle ({chain})")


# ── persistence ──────────────────────────────────────────────────────


class PersistenceError(TaskArborError):
    """State could not be durably written or read."""


class WriteInProgressError(PersistenceError):
    def __init__(self, what: str = "save") -> None:
        super().__init__(f"another write is in progress ({what} rejected)")


class CorruptionError(PersistenceError):
    def __init__(self, detail: str, path: str = "") -> None:
        self.detail = detail
        self.path = path
        super().__init__(f"corrupt record {path}: {detail}" if path else f"corrupt record: {detail}")


class SessionNotFoundError(PersistenceError):
    def __init__(self, where: str) -> None:
        super().__init__(f"no saved session state in {where}")


class CheckpointNotFoundError(PersistenceError):
    def __init__(self, checkpoint_id: str) -> None:
        self.checkpoint_id = checkpoint_id
        super().__init__(f"checkpoint not found: {checkpoint_id}")


# ── recovery ─────────────────────────────────────────────────────────


class UnrecoverableStateError(TaskArborError):
    """Saved state has structural violations that cannot be corrected automatically."""

    def __init__(self, violations: Sequence["Violation"], detail: str = "") -> None:
        self.violations = list(violations)
        lines = [detail or "session state is unrecoverable; manual intervention required"]
        lines.extend(f"  - {v}" for v in self.violations)
        super().__init__("\n".join(lines))


# ── execution ────────────────────────────────────────────────────────


class ExecutorFailure(TaskArborError):
    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class ExecutorTimeout(ExecutorFailure):
    def __init__(self, seconds: float) -> None:
        self.seconds = seconds
        super().__init__("timeout")


class InvalidTransitionError(TaskArborError):
    """A manual status change that the task's current state does not allow."""

    def __init__(self, task_id: str, status: str, action: str) -> None:
        self.task_id = task_id
        self.status = status
        self.action = action
        super().__init__(f"cannot {action} task {task_id}: status is {status}")


class RetryBudgetExhaustedError(TaskArborError):
    def __init__(self, task_id: str, attempts: int, max_attempts: int) -> None:
        self.task_id = task_id
        self.attempts = attempts
        self.max_attempts = max_attempts
        super().__init__(
            f"task {task_id} has used {attempts}/{max_attempts} attempts; retry budget exhausted"
        )
