"""Executor collaborator contract: request in, structured outcome out."""

from __future__ import annotations

import inspect
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

from taskarbor.tasks.model import Complexity, Priority, TaskMetadata, TaskSpec


class OutcomeKind(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"
    CREATE_SUBTASKS = "subtasks"


@dataclass
class SubtaskSpec:
    """A child the executor wants created under the task it just ran.

    ``depends_on`` holds indices of earlier entries in the same subtask list.
    A ``priority`` of None inherits the parent's priority.
    """

    title: str
    description: str = ""
    priority: Priority | None = None
    complexity: Complexity | None = None
    tags: list[str] = field(default_factory=list)
    context: list[str] = field(default_factory=list)
    depends_on: list[int] = field(default_factory=list)

    def to_task_spec(self, parent_priority: Priority, dependencies: list[str]) -> TaskSpec:
        return TaskSpec(
            title=self.title,
            description=self.description,
            metadata=TaskMetadata(
                priority=self.priority if self.priority is not None else parent_priority,
                complexity=self.complexity,
                tags=list(self.tags),
                context=list(self.context),
            ),
            dependencies=dependencies,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SubtaskSpec:
        title = str(data.get("title", "")).strip()
        if not title:
            raise ValueError("subtask requires a non-empty title")
        priority = data.get("priority")
        return cls(
            title=title,
            description=str(data.get("description", "")),
            priority=Priority.parse(priority) if priority is not None else None,
            complexity=Complexity.parse(data.get("complexity")),
            tags=list(data.get("tags", [])),
            context=list(data.get("context", [])),
            depends_on=[int(i) for i in data.get("depends_on", [])],
        )


@dataclass
class ExecutionRequest:
    """Everything the executor needs to run one task."""

    task_id: str
    title: str
    description: str = ""
    context: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    attempt: int = 1
    parent_id: str | None = None
    # Opaque per-session handle (conversation id etc.) the executor may update.
    continuation: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "title": self.title,
            "description": self.description,
            "context": list(self.context),
            "tags": list(self.tags),
            "attempt": self.attempt,
            "parent_id": self.parent_id,
            "continuation": dict(self.continuation),
        }


@dataclass
class ExecutionOutcome:
    """Uniform result from any executor."""

    kind: OutcomeKind
    summary: str = ""
    reason: str = ""
    subtasks: list[SubtaskSpec] = field(default_factory=list)
    # Updated continuation handle, merged into the session when present.
    continuation: dict[str, Any] | None = None

    @classmethod
    def completed(cls, summary: str = "") -> ExecutionOutcome:
        return cls(OutcomeKind.COMPLETED, summary=summary)

    @classmethod
    def failed(cls, reason: str) -> ExecutionOutcome:
        return cls(OutcomeKind.FAILED, reason=reason or "failed")

    @classmethod
    def blocked(cls, reason: str) -> ExecutionOutcome:
        return cls(OutcomeKind.BLOCKED, reason=reason or "blocked")

    @classmethod
    def create_subtasks(cls, subtasks: list[SubtaskSpec], summary: str = "") -> ExecutionOutcome:
        return cls(OutcomeKind.CREATE_SUBTASKS, summary=summary, subtasks=list(subtasks))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExecutionOutcome:
        """Parse ``{"status": "completed"|"failed"|"blocked"|"subtasks", ...}``."""
        status = str(data.get("status", "")).strip().lower()
        aliases = {"success": "completed", "done": "completed", "error": "failed", "create_subtasks": "subtasks"}
        status = aliases.get(status, status)
        try:
            kind = OutcomeKind(status)
        except ValueError:
            raise ValueError(f"unknown outcome status: {data.get('status')!r}") from None
        continuation = data.get("continuation")
        if continuation is not None and not isinstance(continuation, dict):
            raise ValueError(f"continuation must be an object, got {type(continuation).__name__}")
        outcome = cls(
            kind=kind,
            summary=str(data.get("summary", "")),
            reason=str(data.get("reason", "") or data.get("error", "")),
            subtasks=[SubtaskSpec.from_dict(s) for s in data.get("subtasks", [])],
            continuation=continuation,
        )
        if kind in (OutcomeKind.FAILED, OutcomeKind.BLOCKED) and not outcome.reason:
            outcome.reason = kind.value
        return outcome


class Executor(ABC):
    """Abstract executor. Subclasses implement :meth:`execute`."""

    name: str = "base"

    @abstractmethod
    async def execute(self, request: ExecutionRequest) -> ExecutionOutcome:
        """Run the task described by *request* and report what happened.

        Raising is treated as a failed attempt with the exception text as reason.
        """
        ...

    def check_available(self) -> str | None:
        """Return an error message if the executor cannot run, else None."""
        return None


ExecuteFn = Callable[[ExecutionRequest], "ExecutionOutcome | Awaitable[ExecutionOutcome]"]


class CallableExecutor(Executor):
    """Adapter for a plain (sync or async) function."""

    name = "callable"

    def __init__(self, fn: ExecuteFn) -> None:
        self._fn = fn

    async def execute(self, request: ExecutionRequest) -> ExecutionOutcome:
        result = self._fn(request)
        if inspect.isawaitable(result):
            result = await result
        return result  # type: ignore[return-value]
