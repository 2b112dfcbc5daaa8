"""Task selection policy: weighted scoring over runnable tasks.

The scheduler holds only its weights. Every decision is a function of the
tree, the execution history and ``now``, so the same inputs always select
the same task.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from datetime import datetime
from typing import Sequence

from taskarbor import log
from taskarbor.config import ScoringWeights
from taskarbor.tasks.model import AttemptRecord, Priority, Task, utcnow
from taskarbor.tasks.tree import TaskTree


@dataclass(frozen=True)
class Selection:
    task_id: str
    score: float
    factors: dict[str, float] = field(default_factory=dict)
    reason: str = ""


def _jaccard(a: Sequence[str], b: Sequence[str]) -> float:
    sa, sb = set(a), set(b)
    if not sa or not sb:
        return 0.0
    return len(sa & sb) / len(sa | sb)


def _jitter(task_id: str, salt: int) -> float:
    # Seeded per (task, history length): stable until something executes.
    return random.Random(f"{task_id}:{salt}").random()


class Scheduler:
    """Select the single best runnable task.

    Usage::

        sched = Scheduler(ScoringWeights())
        task_id = sched.select_next(tree, history)   # None when nothing is runnable
        ranked = sched.rank(tree, history)           # scored candidates, best first
    """

    def __init__(
        self,
        weights: ScoringWeights | None = None,
        *,
        skipped_satisfies_dependencies: bool = True,
    ) -> None:
        self.weights = weights or ScoringWeights()
        self.weights.check()
        self.skipped_ok = skipped_satisfies_dependencies

    # ── factors ──────────────────────────────────────────────────

    @staticmethod
    def priority_factor(task: Task) -> float:
        return (int(task.metadata.priority) - int(Priority.BACKGROUND)) / (
            int(Priority.CRITICAL) - int(Priority.BACKGROUND)
        )

    @staticmethod
    def dependents_factor(task: Task, tree: TaskTree) -> float:
        if len(tree) <= 1:
            return 0.0
        return len(tree.dependents_of(task.id)) / (len(tree) - 1)

    @staticmethod
    def affinity_factor(task: Task, tree: TaskTree, recent_context: Sequence[str]) -> float:
        return _jaccard(tree.effective_context(task.id), recent_context)

    def age_factor(self, task: Task, now: datetime) -> float:
        age = (now - task.created_at).total_seconds()
        return min(max(age, 0.0) / self.weights.age_horizon_seconds, 1.0)

    @staticmethod
    def lightness_factor(task: Task) -> float:
        if task.metadata.complexity is None:
            return 0.5
        return 1.0 - int(task.metadata.complexity) / 4.0

    # ── ranking ──────────────────────────────────────────────────

    @staticmethod
    def recent_context(tree: TaskTree, history: Sequence[AttemptRecord]) -> list[str]:
        """Context of the most recently executed task still in the tree."""
        for record in reversed(history):
            if record.task_id in tree:
                return tree.effective_context(record.task_id)
        return []

    def score(
        self,
        task: Task,
        tree: TaskTree,
        *,
        now: datetime,
        recent_context: Sequence[str],
        salt: int,
    ) -> Selection:
        w = self.weights
        factors = {
            "priority": self.priority_factor(task),
            "dependents": self.dependents_factor(task, tree),
            "affinity": self.affinity_factor(task, tree, recent_context),
            "age": self.age_factor(task, now),
            "lightness": self.lightness_factor(task),
            "jitter": _jitter(task.id, salt),
        }
        total = (
            factors["priority"] * w.priority
            + factors["dependents"] * w.dependents
            + factors["affinity"] * w.affinity
            + factors["age"] * w.age
            + factors["lightness"] * w.lightness
            + factors["jitter"] * w.jitter
        )
        return Selection(
            task_id=task.id,
            score=total,
            factors=factors,
            reason=self._reason(task, tree, factors, total),
        )

    def rank(
        self,
        tree: TaskTree,
        history: Sequence[AttemptRecord] = (),
        now: datetime | None = None,
    ) -> list[Selection]:
        """Score every runnable task, best first (ties in creation order)."""
        now = now or utcnow()
        runnable = tree.runnable_tasks(now, skipped_ok=self.skipped_ok)
        if not runnable:
            return []
        context = self.recent_context(tree, history)
        scored = [
            self.score(tree.tasks[tid], tree, now=now, recent_context=context, salt=len(history))
            for tid in runnable
        ]
        scored.sort(key=lambda s: (-round(s.score, 9), tree.tasks[s.task_id].seq))
        return scored

    def select(
        self,
        tree: TaskTree,
        history: Sequence[AttemptRecord] = (),
        now: datetime | None = None,
    ) -> Selection | None:
        ranked = self.rank(tree, history, now)
        if not ranked:
            log.debug("No runnable tasks")
            return None
        best = ranked[0]
        log.debug(f"Selected {best.task_id} (score {best.score:.3f}): {best.reason}")
        return best

    def select_next(
        self,
        tree: TaskTree,
        history: Sequence[AttemptRecord] = (),
        now: datetime | None = None,
    ) -> str | None:
        selection = self.select(tree, history, now)
        return selection.task_id if selection else None

    # ── diagnostics ──────────────────────────────────────────────

    @staticmethod
    def _reason(task: Task, tree: TaskTree, factors: dict[str, float], total: float) -> str:
        reasons: list[str] = []
        if task.metadata.priority >= Priority.HIGH:
            reasons.append(f"{task.metadata.priority.name.lower()} priority")
        unblocks = len(tree.dependents_of(task.id))
        if unblocks:
            reasons.append(f"unblocks {unblocks} task(s)")
        if factors["affinity"] > 0:
            reasons.append(f"shares context ({factors['affinity']:.0%})")
        if factors["age"] >= 1.0:
            reasons.append("waiting long")
        if factors["lightness"] >= 0.75:
            reasons.append("quick win")
        return ", ".join(reasons) if reasons else f"score {total:.2f}"
