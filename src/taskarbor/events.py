"""Lifecycle events published by the task manager."""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from taskarbor.tasks.model import utcnow


class EventKind(str, Enum):
    TASK_CREATED = "task_created"
    TASK_STARTED = "task_started"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"
    TASK_RETRY_SCHEDULED = "task_retry_scheduled"
    TASK_BLOCKED = "task_blocked"
    TASK_UNBLOCKED = "task_unblocked"
    TASK_SKIPPED = "task_skipped"
    SUBTASKS_CREATED = "subtasks_created"
    TASKS_DEDUPED = "tasks_deduped"
    TASKS_CLEANED_UP = "tasks_cleaned_up"


@dataclass(frozen=True)
class LifecycleEvent:
    kind: EventKind
    task_id: str | None = None
    detail: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "task_id": self.task_id,
            "detail": self.detail,
            "data": dict(self.data),
            "at": self.at.isoformat(),
        }


class EventChannel:
    """Fan-out of lifecycle events to subscribers.

    Each subscriber gets its own unbounded :class:`asyncio.Queue`; publishing
    never blocks. The last ``history_size`` events are kept for late readers.
    """

    def __init__(self, history_size: int = 256) -> None:
        self._subscribers: list[asyncio.Queue[LifecycleEvent]] = []
        self.history: deque[LifecycleEvent] = deque(maxlen=history_size)

    def subscribe(self) -> asyncio.Queue[LifecycleEvent]:
        queue: asyncio.Queue[LifecycleEvent] = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[LifecycleEvent]) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def publish(self, event: LifecycleEvent) -> None:
        self.history.append(event)
        for queue in self._subscribers:
            queue.put_nowait(event)

    def emit(self, kind: EventKind, task_id: str | None = None, detail: str = "", **data: Any) -> LifecycleEvent:
        event = LifecycleEvent(kind=kind, task_id=task_id, detail=detail, data=data)
        self.publish(event)
        return event

    def recent(self, kind: EventKind | None = None) -> list[LifecycleEvent]:
        if kind is None:
            return list(self.history)
        return [e for e in self.history if e.kind == kind]
