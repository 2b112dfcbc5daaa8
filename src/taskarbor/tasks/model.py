"""Task data model: status, metadata, specs and attempt history."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_task_id() -> str:
    return uuid.uuid4().hex[:12]


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.SKIPPED)


class Priority(int, Enum):
    CRITICAL = 10
    HIGH = 8
    NORMAL = 5
    LOW = 3
    BACKGROUND = 1

    @classmethod
    def parse(cls, value: Any) -> Priority:
        """Accept a member, its name (``"high"``) or its ordinal (``8``)."""
        if isinstance(value, Priority):
            return value
        if isinstance(value, str) and not value.strip().isdigit():
            try:
                return cls[value.strip().upper()]
            except KeyError:
                raise ValueError(f"unknown priority: {value!r}") from None
        return cls(int(value))


class Complexity(int, Enum):
    TRIVIAL = 0
    SIMPLE = 1
    MODERATE = 2
    COMPLEX = 3
    EPIC = 4

    @classmethod
    def parse(cls, value: Any) -> Complexity | None:
        if value is None or value == "":
            return None
        if isinstance(value, Complexity):
            return value
        if isinstance(value, str) and not value.strip().isdigit():
            try:
                return cls[value.strip().upper()]
            except KeyError:
                raise ValueError(f"unknown complexity: {value!r}") from None
        return cls(int(value))


# Reason recorded on a parent parked while its subtasks run.
AWAITING_SUBTASKS = "awaiting subtasks"


@dataclass
class TaskMetadata:
    priority: Priority = Priority.NORMAL
    complexity: Complexity | None = None
    tags: list[str] = field(default_factory=list)
    # File or repository references relevant to the task (scheduler affinity).
    context: list[str] = field(default_factory=list)
    timeout_seconds: float | None = None

    def merge(self, other: TaskMetadata) -> None:
        """Absorb *other*: union of tags/context, max of priority."""
        self.priority = max(self.priority, other.priority)
        for tag in other.tags:
            if tag not in self.tags:
                self.tags.append(tag)
        for ref in other.context:
            if ref not in self.context:
                self.context.append(ref)
        if self.complexity is None:
            self.complexity = other.complexity

    def to_dict(self) -> dict[str, Any]:
        return {
            "priority": int(self.priority),
            "complexity": int(self.complexity) if self.complexity is not None else None,
            "tags": list(self.tags),
            "context": list(self.context),
            "timeout_seconds": self.timeout_seconds,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskMetadata:
        return cls(
            priority=Priority.parse(data.get("priority", Priority.NORMAL)),
            complexity=Complexity.parse(data.get("complexity")),
            tags=list(data.get("tags", [])),
            context=list(data.get("context", [])),
            timeout_seconds=data.get("timeout_seconds"),
        )


@dataclass
class TaskSpec:
    """Input for creating a task."""

    title: str
    description: str = ""
    metadata: TaskMetadata = field(default_factory=TaskMetadata)
    dependencies: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskSpec:
        """Build a spec from a loose mapping (task files, executor output)."""
        if not str(data.get("title", "")).strip():
            raise ValueError("task spec requires a non-empty title")
        meta = data.get("metadata")
        if meta is None:
            meta = {k: data[k] for k in ("priority", "complexity", "tags", "context", "timeout_seconds") if k in data}
        return cls(
            title=str(data["title"]).strip(),
            description=str(data.get("description", "")),
            metadata=TaskMetadata.from_dict(meta),
            dependencies=[str(d) for d in data.get("dependencies", [])],
        )


@dataclass
class AttemptRecord:
    """One dispatch of a task to the executor."""

    task_id: str
    attempt: int
    dispatched_at: datetime
    finished_at: datetime | None = None
    outcome: str = ""
    reason: str = ""

    @property
    def duration_seconds(self) -> float | None:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.dispatched_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "attempt": self.attempt,
            "dispatched_at": _iso(self.dispatched_at),
            "finished_at": _iso(self.finished_at),
            "outcome": self.outcome,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AttemptRecord:
        return cls(
            task_id=data["task_id"],
            attempt=int(data.get("attempt", 0)),
            dispatched_at=_dt(data["dispatched_at"]),  # type: ignore[arg-type]
            finished_at=_dt(data.get("finished_at")),
            outcome=data.get("outcome", ""),
            reason=data.get("reason", ""),
        )


@dataclass
class Task:
    id: str
    title: str
    description: str = ""
    status: TaskStatus = TaskStatus.PENDING
    reason: str = ""
    parent_id: str | None = None
    children: list[str] = field(default_factory=list)
    dependencies: set[str] = field(default_factory=set)
    metadata: TaskMetadata = field(default_factory=TaskMetadata)
    attempts: int = 0
    next_eligible_at: datetime | None = None
    history: list[AttemptRecord] = field(default_factory=list)
    seq: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def touch(self, now: datetime | None = None) -> None:
        self.updated_at = now or utcnow()

    def set_status(self, status: TaskStatus, reason: str = "", now: datetime | None = None) -> None:
        self.status = status
        self.reason = reason if status in (TaskStatus.BLOCKED, TaskStatus.FAILED, TaskStatus.SKIPPED) else ""
        self.touch(now)

    def describe_status(self) -> str:
        return f"{self.status.value} ({self.reason})" if self.reason else self.status.value

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "status": self.status.value,
            "reason": self.reason,
            "parent_id": self.parent_id,
            "children": list(self.children),
            "dependencies": sorted(self.dependencies),
            "metadata": self.metadata.to_dict(),
            "attempts": self.attempts,
            "next_eligible_at": _iso(self.next_eligible_at),
            "history": [r.to_dict() for r in self.history],
            "seq": self.seq,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        return cls(
            id=data["id"],
            title=data.get("title", ""),
            description=data.get("description", ""),
            status=TaskStatus(data.get("status", "pending")),
            reason=data.get("reason", ""),
            parent_id=data.get("parent_id"),
            children=list(data.get("children", [])),
            dependencies=set(data.get("dependencies", [])),
            metadata=TaskMetadata.from_dict(data.get("metadata", {})),
            attempts=int(data.get("attempts", 0)),
            next_eligible_at=_dt(data.get("next_eligible_at")),
            history=[AttemptRecord.from_dict(r) for r in data.get("history", [])],
            seq=int(data.get("seq", 0)),
            created_at=_dt(data.get("created_at")) or utcnow(),
            updated_at=_dt(data.get("updated_at")) or utcnow(),
        )
