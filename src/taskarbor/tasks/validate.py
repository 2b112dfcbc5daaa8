"""Structural validation of a task tree: link consistency and cycle detection."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Iterable, Mapping

from taskarbor.tasks.model import Task, TaskStatus

if TYPE_CHECKING:
    from taskarbor.tasks.tree import TaskTree


class ViolationKind(str, Enum):
    # minor: fixed in place by the recovery manager
    ORPHANED_TASK = "orphaned_task"
    MISSING_CHILD_LINK = "missing_child_link"
    DANGLING_CHILD = "dangling_child"
    MISPARENTED_CHILD = "misparented_child"
    DUPLICATE_CHILD = "duplicate_child"
    STALE_IN_PROGRESS = "stale_in_progress"
    # structural: reported, never guessed at
    ID_MISMATCH = "id_mismatch"
    UNKNOWN_DEPENDENCY = "unknown_dependency"
    DEPENDENCY_CYCLE = "dependency_cycle"
    PARENT_CYCLE = "parent_cycle"


CORRECTABLE_KINDS = frozenset({
    ViolationKind.ORPHANED_TASK,
    ViolationKind.MISSING_CHILD_LINK,
    ViolationKind.DANGLING_CHILD,
    ViolationKind.MISPARENTED_CHILD,
    ViolationKind.DUPLICATE_CHILD,
    ViolationKind.STALE_IN_PROGRESS,
})


@dataclass(frozen=True)
class Violation:
    kind: ViolationKind
    task_id: str
    detail: str = ""
    # Other ids involved (the missing parent, the cycle path, ...)
    related: tuple[str, ...] = ()

    @property
    def correctable(self) -> bool:
        return self.kind in CORRECTABLE_KINDS

    def __str__(self) -> str:
        tag = "minor" if self.correctable else "structural"
        return f"[{tag}] {self.kind.value} {self.task_id}: {self.detail}"


def is_clean(violations: Iterable[Violation]) -> bool:
    return not any(True for _ in violations)


def all_correctable(violations: Iterable[Violation]) -> bool:
    return all(v.correctable for v in violations)


# ── cycle detection ─────────────────────────────────────────────────


def find_dependency_cycles(tasks: Mapping[str, Task]) -> list[list[str]]:
    """Return every dependency cycle found by DFS, each as ``[a, b, ..., a]``.

    Edges to unknown ids are ignored here (reported separately).
    """
    WHITE, GRAY, BLACK = 0, 1, 2
    color = {tid: WHITE for tid in tasks}
    cycles: list[list[str]] = []

    for start in sorted(tasks, key=lambda t: tasks[t].seq):
        if color[start] != WHITE:
            continue
        path: list[str] = []
        stack: list[tuple[str, list[str]]] = [(start, sorted(tasks[start].dependencies))]
        color[start] = GRAY
        path.append(start)
        while stack:
            node, pending = stack[-1]
            if not pending:
                stack.pop()
                path.pop()
                color[node] = BLACK
                continue
            dep = pending.pop(0)
            if dep not in tasks:
                continue
            if color[dep] == GRAY:
                idx = path.index(dep)
                cycles.append(path[idx:] + [dep])
            elif color[dep] == WHITE:
                color[dep] = GRAY
                path.append(dep)
                stack.append((dep, sorted(tasks[dep].dependencies)))
    return cycles


def detect_cycles(tree: TaskTree) -> str:
    """Return the first dependency cycle as ``"A -> B -> A"``, or ``""`` if none."""
    cycles = find_dependency_cycles(tree.tasks)
    return " -> ".join(cycles[0]) if cycles else ""


def _parent_cycles(tasks: Mapping[str, Task]) -> list[list[str]]:
    seen_in_cycle: set[str] = set()
    cycles: list[list[str]] = []
    for tid in tasks:
        chain: list[str] = []
        cur: str | None = tid
        while cur is not None and cur in tasks and cur not in chain:
            chain.append(cur)
            cur = tasks[cur].parent_id
        if cur is not None and cur in chain:
            cycle = chain[chain.index(cur):]
            key = min(cycle)
            if key not in seen_in_cycle:
                seen_in_cycle.add(key)
                cycles.append(cycle + [cur])
    return cycles


# ── validation ──────────────────────────────────────────────────────


def validate(tree: TaskTree, *, allow_in_progress: bool = True) -> list[Violation]:
    """Check bidirectional parent/child links, references and cycles.

    With ``allow_in_progress=False`` (used when loading saved state, where
    nothing can be in flight) every InProgress task is reported as stale.
    """
    tasks = tree.tasks
    violations: list[Violation] = []

    for key, task in tasks.items():
        if key != task.id:
            violations.append(Violation(ViolationKind.ID_MISMATCH, key, f"record holds id {task.id}"))

        if task.parent_id is not None:
            parent = tasks.get(task.parent_id)
            if parent is None:
                violations.append(Violation(
                    ViolationKind.ORPHANED_TASK, task.id,
                    f"parent {task.parent_id} does not exist", (task.parent_id,),
                ))
            elif task.id not in parent.children:
                violations.append(Violation(
                    ViolationKind.MISSING_CHILD_LINK, task.id,
                    f"parent {parent.id} does not list it as a child", (parent.id,),
                ))

        seen: set[str] = set()
        for child_id in task.children:
            if child_id in seen:
                violations.append(Violation(
                    ViolationKind.DUPLICATE_CHILD, task.id, f"child {child_id} listed twice", (child_id,),
                ))
                continue
            seen.add(child_id)
            child = tasks.get(child_id)
            if child is None:
                violations.append(Violation(
                    ViolationKind.DANGLING_CHILD, task.id, f"child {child_id} does not exist", (child_id,),
                ))
            elif child.parent_id != task.id:
                violations.append(Violation(
                    ViolationKind.MISPARENTED_CHILD, task.id,
                    f"child {child_id} names {child.parent_id} as its parent", (child_id,),
                ))

        for dep in sorted(task.dependencies):
            if dep not in tasks:
                violations.append(Violation(
                    ViolationKind.UNKNOWN_DEPENDENCY, task.id, f"depends on missing task {dep}", (dep,),
                ))

        if not allow_in_progress and task.status == TaskStatus.IN_PROGRESS:
            violations.append(Violation(
                ViolationKind.STALE_IN_PROGRESS, task.id, "in progress with no executor attached",
            ))

    for cycle in find_dependency_cycles(tasks):
        violations.append(Violation(
            ViolationKind.DEPENDENCY_CYCLE, cycle[0], " -> ".join(cycle), tuple(cycle),
        ))
    for cycle in _parent_cycles(tasks):
        violations.append(Violation(
            ViolationKind.PARENT_CYCLE, cycle[0], " -> ".join(cycle), tuple(cycle),
        ))

    return violations
