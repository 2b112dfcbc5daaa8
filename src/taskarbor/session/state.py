"""Session state: the persisted unit (task tree, counters, checkpoint metadata)."""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable

from taskarbor.errors import CorruptionError
from taskarbor.tasks.model import AttemptRecord, utcnow
from taskarbor.tasks.tree import TaskTree

SCHEMA_VERSION = 2


def new_session_id(now: datetime | None = None) -> str:
    """Sortable id: ``20261019-142501-3fa2b1``."""
    now = now or utcnow()
    return f"{now:%Y%m%d-%H%M%S}-{uuid.uuid4().hex[:6]}"


def new_checkpoint_id(now: datetime | None = None) -> str:
    now = now or utcnow()
    return f"cp-{now:%Y%m%d-%H%M%S%f}-{uuid.uuid4().hex[:6]}"


class CheckpointTrigger(str, Enum):
    MANUAL = "manual"
    INTERVAL = "interval"
    PRE_RECOVERY = "pre_recovery"
    TASK_BOUNDARY = "task_boundary"
    SHUTDOWN = "shutdown"


@dataclass
class CheckpointInfo:
    id: str
    session_id: str
    created_at: datetime
    trigger: CheckpointTrigger
    description: str = ""
    task_count: int = 0
    size_bytes: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "created_at": self.created_at.isoformat(),
            "trigger": self.trigger.value,
            "description": self.description,
            "task_count": self.task_count,
            "size_bytes": self.size_bytes,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CheckpointInfo:
        return cls(
            id=data["id"],
            session_id=data.get("session_id", ""),
            created_at=datetime.fromisoformat(data["created_at"]),
            trigger=CheckpointTrigger(data.get("trigger", "manual")),
            description=data.get("description", ""),
            task_count=int(data.get("task_count", 0)),
            size_bytes=int(data.get("size_bytes", 0)),
        )


@dataclass
class SessionCounters:
    dispatched: int = 0
    completed: int = 0
    failed: int = 0
    retries: int = 0
    blocked: int = 0
    subtasks_created: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionCounters:
        known = {k: int(v) for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass
class SessionState:
    session_id: str
    name: str = ""
    tree: TaskTree = field(default_factory=TaskTree)
    counters: SessionCounters = field(default_factory=SessionCounters)
    current_task_id: str | None = None
    last_executed_id: str | None = None
    config: dict[str, Any] = field(default_factory=dict)
    # Opaque executor handle (conversation id, working branch, ...).
    continuation: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    schema_version: int = SCHEMA_VERSION

    def touch(self, now: datetime | None = None) -> None:
        self.updated_at = now or utcnow()

    def history(self) -> list[AttemptRecord]:
        """Every attempt record in the tree, oldest dispatch first."""
        records = [r for t in self.tree.tasks.values() for r in t.history]
        records.sort(key=lambda r: r.dispatched_at)
        return records

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_version": SCHEMA_VERSION,
            "session_id": self.session_id,
            "name": self.name,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "current_task_id": self.current_task_id,
            "last_executed_id": self.last_executed_id,
            "counters": self.counters.to_dict(),
            "config": dict(self.config),
            "continuation": dict(self.continuation),
            "tree": self.tree.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionState:
        """Build a state from a payload of any known schema version."""
        data = migrate(data)
        return cls(
            session_id=data["session_id"],
            name=data.get("name", ""),
            tree=TaskTree.from_dict(data.get("tree", {})),
            counters=SessionCounters.from_dict(data.get("counters", {})),
            current_task_id=data.get("current_task_id"),
            last_executed_id=data.get("last_executed_id"),
            config=dict(data.get("config", {})),
            continuation=dict(data.get("continuation", {})),
            created_at=datetime.fromisoformat(data["created_at"]) if data.get("created_at") else utcnow(),
            updated_at=datetime.fromisoformat(data["updated_at"]) if data.get("updated_at") else utcnow(),
            schema_version=SCHEMA_VERSION,
        )

    def copy(self) -> SessionState:
        return SessionState.from_dict(self.to_dict())


# ── schema migrations ────────────────────────────────────────────────


def _migrate_v1(data: dict[str, Any]) -> dict[str, Any]:
    """v1 kept tasks in a flat ``{id: task}`` map with older field names."""
    tasks = []
    raw_tasks = data.get("tasks", {})
    items = raw_tasks.values() if isinstance(raw_tasks, dict) else raw_tasks
    for seq, raw in enumerate(items, start=1):
        task = dict(raw)
        if "depends_on" in task:
            task["dependencies"] = task.pop("depends_on")
        if "retry_count" in task:
            task["attempts"] = task.pop("retry_count")
        if "subtasks" in task:
            task["children"] = task.pop("subtasks")
        if "parent" in task:
            task["parent_id"] = task.pop("parent")
        task.setdefault("seq", seq)
        meta = task.setdefault("metadata", {})
        for key in ("priority", "complexity", "tags", "context"):
            if key in task:
                meta.setdefault(key, task.pop(key))
        tasks.append(task)

    stats = data.get("stats", {})
    return {
        "schema_version": 2,
        "session_id": data.get("session_id") or data["id"],
        "name": data.get("name", ""),
        "created_at": data.get("created_at"),
        "updated_at": data.get("updated_at"),
        "current_task_id": data.get("current_task"),
        "last_executed_id": data.get("last_task"),
        "counters": {
            "dispatched": stats.get("tasks_dispatched", 0),
            "completed": stats.get("tasks_completed", 0),
            "failed": stats.get("tasks_failed", 0),
        },
        "config": data.get("config", {}),
        "continuation": data.get("continuation", {}),
        "tree": {"tasks": tasks},
    }


MIGRATIONS: dict[int, Callable[[dict[str, Any]], dict[str, Any]]] = {
    1: _migrate_v1,
}


def migrate(data: dict[str, Any]) -> dict[str, Any]:
    """Upgrade a state payload to :data:`SCHEMA_VERSION`."""
    version = int(data.get("schema_version", data.get("version", 1)))
    if version > SCHEMA_VERSION:
        raise CorruptionError(f"schema version {version} is newer than supported ({SCHEMA_VERSION})")
    while version < SCHEMA_VERSION:
        step = MIGRATIONS.get(version)
        if step is None:
            raise CorruptionError(f"no migration from schema version {version}")
        try:
            data = step(data)
        except (KeyError, TypeError, ValueError) as e:
            raise CorruptionError(f"cannot migrate schema version {version}: {e}") from e
        version = int(data["schema_version"])
    return data
