"""Task tree: an arena of tasks keyed by id with parent/child and dependency edges."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterator

from taskarbor import log
from taskarbor.errors import CycleDetectedError, InvalidParentError, UnknownTaskError
from taskarbor.tasks.model import Task, TaskMetadata, TaskSpec, TaskStatus, new_task_id, utcnow
from taskarbor.tasks.validate import Violation, validate

TITLE_SIMILARITY = 0.8
DESCRIPTION_SIMILARITY = 0.7

_TOKEN_RE = re.compile(r"[^a-z0-9]+")


def _tokens(text: str) -> set[str]:
    return {t for t in _TOKEN_RE.split(text.lower()) if t}


def similarity(a: str, b: str) -> float:
    """Token-overlap (Jaccard) ratio of two normalized strings."""
    ta, tb = _tokens(a), _tokens(b)
    union = ta | tb
    if not union:
        return 0.0
    return len(ta & tb) / len(union)


@dataclass
class TreeStatistics:
    total: int = 0
    by_status: dict[str, int] = field(default_factory=dict)
    success_rate: float = 0.0
    average_completion_seconds: float | None = None

    def count(self, status: TaskStatus) -> int:
        return self.by_status.get(status.value, 0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "by_status": dict(self.by_status),
            "success_rate": self.success_rate,
            "average_completion_seconds": self.average_completion_seconds,
        }


@dataclass
class TreeProgress:
    total: int
    completed: int
    in_progress: int
    blocked: int
    failed: int
    remaining: int
    completion_percentage: float
    throughput_per_hour: float
    estimated_seconds_remaining: float | None


class TaskTree:
    """Hierarchical task set with structural invariants and no scheduling logic.

    Tasks are stored flat in ``tasks``; ``parent_id``/``children`` and
    ``dependencies`` hold ids, never objects.
    """

    def __init__(self) -> None:
        self.tasks: dict[str, Task] = {}
        self.created_at: datetime = utcnow()
        self.updated_at: datetime = self.created_at
        self.version = 0
        self._next_seq = 1

    # ── basic access ─────────────────────────────────────────────

    def __contains__(self, task_id: object) -> bool:
        return task_id in self.tasks

    def __len__(self) -> int:
        return len(self.tasks)

    def __iter__(self) -> Iterator[Task]:
        return iter(sorted(self.tasks.values(), key=lambda t: t.seq))

    def get(self, task_id: str) -> Task:
        try:
            return self.tasks[task_id]
        except KeyError:
            raise UnknownTaskError(task_id) from None

    def roots(self) -> list[Task]:
        return [t for t in self if t.parent_id is None]

    def children_of(self, task_id: str) -> list[Task]:
        return [self.tasks[c] for c in self.get(task_id).children if c in self.tasks]

    def parent_of(self, task_id: str) -> Task | None:
        parent_id = self.get(task_id).parent_id
        return self.tasks.get(parent_id) if parent_id else None

    def descendants(self, task_id: str) -> list[str]:
        """All ids below *task_id*, depth-first in child order."""
        out: list[str] = []
        stack = list(reversed(self.get(task_id).children))
        while stack:
            cid = stack.pop()
            if cid in out or cid not in self.tasks:
                continue
            out.append(cid)
            stack.extend(reversed(self.tasks[cid].children))
        return out

    def ancestors(self, task_id: str) -> list[str]:
        out: list[str] = []
        cur = self.get(task_id).parent_id
        while cur is not None and cur in self.tasks and cur not in out:
            out.append(cur)
            cur = self.tasks[cur].parent_id
        return out

    def dependents_of(self, task_id: str, *, transitive: bool = True) -> set[str]:
        """Ids of tasks that (transitively) depend on *task_id*."""
        reverse: dict[str, set[str]] = {}
        for t in self.tasks.values():
            for dep in t.dependencies:
                reverse.setdefault(dep, set()).add(t.id)
        if not transitive:
            return set(reverse.get(task_id, set()))
        seen: set[str] = set()
        stack = [task_id]
        while stack:
            for nxt in reverse.get(stack.pop(), ()):
                if nxt not in seen:
                    seen.add(nxt)
                    stack.append(nxt)
        seen.discard(task_id)
        return seen

    def effective_context(self, task_id: str) -> list[str]:
        """Context references of the task merged with those of its ancestors."""
        refs = list(self.get(task_id).metadata.context)
        for anc in self.ancestors(task_id):
            for ref in self.tasks[anc].metadata.context:
                if ref not in refs:
                    refs.append(ref)
        return refs

    def _mark_changed(self, now: datetime | None = None) -> None:
        self.updated_at = now or utcnow()
        self.version += 1

    # ── insertion / deduplication ────────────────────────────────

    def find_duplicate(self, spec: TaskSpec, parent_id: str | None) -> Task | None:
        """Return a sibling under *parent_id* similar enough to absorb *spec*."""
        if parent_id is None:
            siblings = self.roots()
        else:
            siblings = self.children_of(parent_id)
        for sib in siblings:
            if sib.status in (TaskStatus.FAILED, TaskStatus.SKIPPED):
                continue
            if similarity(sib.title, spec.title) >= TITLE_SIMILARITY:
                return sib
            if (
                sib.description.strip()
                and spec.description.strip()
                and similarity(sib.description, spec.description) >= DESCRIPTION_SIMILARITY
            ):
                return sib
        return None

    def insert(
        self,
        spec: TaskSpec,
        parent_id: str | None = None,
        *,
        dedupe: bool = True,
        now: datetime | None = None,
    ) -> tuple[str, bool]:
        """Insert *spec*; return ``(task_id, created)``.

        ``created`` is False when the spec was merged into an existing sibling.
        Nothing is mutated if any check fails.
        """
        if parent_id is not None and parent_id not in self.tasks:
            raise InvalidParentError(parent_id)
        for dep in spec.dependencies:
            if dep not in self.tasks:
                raise UnknownTaskError(dep)

        now = now or utcnow()
        existing = self.find_duplicate(spec, parent_id) if dedupe else None
        if existing is not None:
            new_deps = [d for d in spec.dependencies if d != existing.id and d not in existing.dependencies]
            for dep in new_deps:
                path = self._dependency_path(dep, existing.id)
                if path is not None:
                    raise CycleDetectedError(existing.id, dep, path)
            existing.metadata.merge(spec.metadata)
            existing.dependencies.update(new_deps)
            existing.touch(now)
            self._mark_changed(now)
            log.debug(f"Merged duplicate spec {spec.title!r} into {existing.id}")
            return existing.id, False

        task = Task(
            id=new_task_id(),
            title=spec.title,
            description=spec.description,
            parent_id=parent_id,
            dependencies=set(spec.dependencies),
            metadata=TaskMetadata.from_dict(spec.metadata.to_dict()),
            seq=self._next_seq,
            created_at=now,
            updated_at=now,
        )
        while task.id in self.tasks:
            task.id = new_task_id()
        self._next_seq += 1
        self.tasks[task.id] = task
        if parent_id is not None:
            self.tasks[parent_id].children.append(task.id)
            self.tasks[parent_id].touch(now)
        self._mark_changed(now)
        log.debug(f"Added task {task.id} ({task.title!r}) under {parent_id or 'root'}")
        return task.id, True

    def add_task(self, spec: TaskSpec, parent_id: str | None = None, **kwargs: Any) -> str:
        return self.insert(spec, parent_id, **kwargs)[0]

    def adopt(self, task: Task) -> None:
        """Insert a fully formed task (used by recovery); links are the caller's job."""
        task.seq = self._next_seq
        self._next_seq += 1
        self.tasks[task.id] = task
        self._mark_changed()

    # ── mutation ─────────────────────────────────────────────────

    def update_status(
        self,
        task_id: str,
        status: TaskStatus,
        reason: str = "",
        *,
        now: datetime | None = None,
    ) -> Task:
        task = self.get(task_id)
        task.set_status(status, reason, now)
        self._mark_changed(now)
        return task

    def _dependency_path(self, start: str, target: str) -> list[str] | None:
        """DFS from *start* along dependency edges; return the path to *target* if reachable."""
        if start == target:
            return [start]
        parents: dict[str, str] = {}
        stack = [start]
        seen = {start}
        while stack:
            node = stack.pop()
            for dep in self.tasks[node].dependencies if node in self.tasks else ():
                if dep in seen:
                    continue
                parents[dep] = node
                if dep == target:
                    path = [dep]
                    while path[-1] != start:
                        path.append(parents[path[-1]])
                    return list(reversed(path))
                seen.add(dep)
                stack.append(dep)
        return None

    def add_dependency(self, task_id: str, dep_id: str) -> None:
        """Make *task_id* wait for *dep_id*; rejects edges that would close a cycle."""
        task = self.get(task_id)
        self.get(dep_id)
        if dep_id in task.dependencies:
            return
        path = self._dependency_path(dep_id, task_id)
        if path is not None:
            raise CycleDetectedError(task_id, dep_id, [task_id] + path)
        task.dependencies.add(dep_id)
        task.touch()
        self._mark_changed()

    def remove_dependency(self, task_id: str, dep_id: str) -> None:
        task = self.get(task_id)
        if dep_id in task.dependencies:
            task.dependencies.discard(dep_id)
            task.touch()
            self._mark_changed()

    def remove_subtree(self, task_id: str) -> list[str]:
        """Delete *task_id* and every descendant; return the removed ids."""
        task = self.get(task_id)
        removed = [task_id] + self.descendants(task_id)
        gone = set(removed)

        if task.parent_id is not None and task.parent_id in self.tasks:
            parent = self.tasks[task.parent_id]
            parent.children = [c for c in parent.children if c != task_id]
            parent.touch()
        for tid in removed:
            self.tasks.pop(tid, None)
        for other in self.tasks.values():
            stale = other.dependencies & gone
            if stale:
                other.dependencies -= stale
                other.touch()
                log.debug(f"Dropped dependencies {sorted(stale)} from {other.id}")
        self._mark_changed()
        return removed

    def reparent(self, task_id: str, new_parent_id: str | None) -> None:
        task = self.get(task_id)
        if new_parent_id is not None:
            if new_parent_id not in self.tasks:
                raise InvalidParentError(new_parent_id)
            if new_parent_id == task_id or new_parent_id in self.descendants(task_id):
                raise CycleDetectedError(task_id, new_parent_id, [new_parent_id, task_id])
        old = self.tasks.get(task.parent_id) if task.parent_id else None
        if old is not None:
            old.children = [c for c in old.children if c != task_id]
        task.parent_id = new_parent_id
        if new_parent_id is not None and task_id not in self.tasks[new_parent_id].children:
            self.tasks[new_parent_id].children.append(task_id)
        task.touch()
        self._mark_changed()

    # ── runnability ──────────────────────────────────────────────

    def dependencies_satisfied(self, task_id: str, *, skipped_ok: bool = True) -> bool:
        ok = {TaskStatus.COMPLETED, TaskStatus.SKIPPED} if skipped_ok else {TaskStatus.COMPLETED}
        for dep in self.get(task_id).dependencies:
            dep_task = self.tasks.get(dep)
            if dep_task is None or dep_task.status not in ok:
                return False
        return True

    def is_runnable(self, task_id: str, now: datetime | None = None, *, skipped_ok: bool = True) -> bool:
        task = self.get(task_id)
        if task.status != TaskStatus.PENDING:
            return False
        if task.next_eligible_at is not None and task.next_eligible_at > (now or utcnow()):
            return False
        return self.dependencies_satisfied(task_id, skipped_ok=skipped_ok)

    def runnable_tasks(self, now: datetime | None = None, *, skipped_ok: bool = True) -> set[str]:
        now = now or utcnow()
        return {t.id for t in self.tasks.values() if self.is_runnable(t.id, now, skipped_ok=skipped_ok)}

    def next_retry_at(self, *, skipped_ok: bool = True) -> datetime | None:
        """Earliest backoff expiry among Pending tasks that wait only on their backoff."""
        times = [
            t.next_eligible_at
            for t in self.tasks.values()
            if t.status == TaskStatus.PENDING
            and t.next_eligible_at is not None
            and self.dependencies_satisfied(t.id, skipped_ok=skipped_ok)
        ]
        return min(times) if times else None

    def explain_block(self, task_id: str, now: datetime | None = None) -> str:
        """Human-readable explanation of why *task_id* is not runnable."""
        task = self.get(task_id)
        if task.status != TaskStatus.PENDING:
            return f"status {task.describe_status()}"
        reasons: list[str] = []
        waiting = []
        for dep in sorted(task.dependencies):
            dep_task = self.tasks.get(dep)
            state = dep_task.status.value if dep_task else "missing"
            if state not in (TaskStatus.COMPLETED.value, TaskStatus.SKIPPED.value):
                waiting.append(f"{dep} ({state})")
        if waiting:
            reasons.append(f"dependsOn: {' '.join(waiting)}")
        if task.next_eligible_at is not None and task.next_eligible_at > (now or utcnow()):
            reasons.append(f"retry after {task.next_eligible_at.isoformat()}")
        return " ".join(reasons)

    # ── consistency ──────────────────────────────────────────────

    def validate(self, *, allow_in_progress: bool = True) -> list[Violation]:
        return validate(self, allow_in_progress=allow_in_progress)

    def is_consistent(self) -> bool:
        return not self.validate()

    # ── statistics ───────────────────────────────────────────────

    def statistics(self) -> TreeStatistics:
        by_status = {s.value: 0 for s in TaskStatus}
        durations: list[float] = []
        for t in self.tasks.values():
            by_status[t.status.value] += 1
            if t.status == TaskStatus.COMPLETED:
                durations.append((t.updated_at - t.created_at).total_seconds())
        finished = (
            by_status[TaskStatus.COMPLETED.value]
            + by_status[TaskStatus.FAILED.value]
            + by_status[TaskStatus.SKIPPED.value]
        )
        return TreeStatistics(
            total=len(self.tasks),
            by_status=by_status,
            success_rate=by_status[TaskStatus.COMPLETED.value] / finished if finished else 0.0,
            average_completion_seconds=sum(durations) / len(durations) if durations else None,
        )

    def progress(self, now: datetime | None = None) -> TreeProgress:
        now = now or utcnow()
        stats = self.statistics()
        completed = stats.count(TaskStatus.COMPLETED)
        terminal = completed + stats.count(TaskStatus.FAILED) + stats.count(TaskStatus.SKIPPED)
        remaining = stats.total - terminal

        # Throughput from finished attempts in the task histories
        finished_at = [
            r.finished_at
            for t in self.tasks.values()
            for r in t.history
            if r.finished_at is not None and r.outcome == TaskStatus.COMPLETED.value
        ]
        throughput = 0.0
        if finished_at:
            elapsed_h = max((now - min(t.created_at for t in self.tasks.values())) / timedelta(hours=1), 1e-6)
            throughput = len(finished_at) / elapsed_h

        eta: float | None
        if remaining == 0:
            eta = 0.0
        elif throughput > 0:
            eta = remaining / throughput * 3600.0
        else:
            eta = None

        return TreeProgress(
            total=stats.total,
            completed=completed,
            in_progress=stats.count(TaskStatus.IN_PROGRESS),
            blocked=stats.count(TaskStatus.BLOCKED),
            failed=stats.count(TaskStatus.FAILED),
            remaining=remaining,
            completion_percentage=(completed / stats.total * 100.0) if stats.total else 0.0,
            throughput_per_hour=throughput,
            estimated_seconds_remaining=eta,
        )

    # ── serialization ────────────────────────────────────────────

    def to_dict(self) -> dict[str, Any]:
        return {
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "version": self.version,
            "next_seq": self._next_seq,
            "tasks": [t.to_dict() for t in self],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskTree:
        """Rebuild a tree without validating it (recovery decides what to do)."""
        tree = cls()
        if data.get("created_at"):
            tree.created_at = datetime.fromisoformat(data["created_at"])
        if data.get("updated_at"):
            tree.updated_at = datetime.fromisoformat(data["updated_at"])
        tree.version = int(data.get("version", 0))
        for raw in data.get("tasks", []):
            task = Task.from_dict(raw)
            tree.tasks[task.id] = task
        max_seq = max((t.seq for t in tree.tasks.values()), default=0)
        tree._next_seq = max(int(data.get("next_seq", 1)), max_seq + 1)
        return tree

    def copy(self) -> TaskTree:
        return TaskTree.from_dict(self.to_dict())

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, TaskTree):
            return NotImplemented
        return self.tasks == other.tasks
