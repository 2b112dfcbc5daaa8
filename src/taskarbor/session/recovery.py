"""Startup recovery: validate saved state, correct it, roll back, or escalate.

Escalation order:

1. clean resume: the latest state has no violations;
2. auto-correction: only minor violations, fixed in place by fixed rules;
3. rollback: the latest state is unreadable or structurally broken, so the
   newest valid checkpoint is restored and the gap reported as lost work;
4. unrecoverable: nothing valid is left and the operator must step in.

Correction is tried before rollback on purpose: a state whose violations
are all minor is repaired in place and keeps every task recorded since the
last checkpoint. Rollback is reserved for states correction cannot fix.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from taskarbor import log
from taskarbor.config import RecoveryConfig
from taskarbor.errors import PersistenceError, SessionNotFoundError, UnrecoverableStateError
from taskarbor.session.persistence import PersistenceManager
from taskarbor.session.state import CheckpointInfo, CheckpointTrigger, SessionState
from taskarbor.tasks.model import AWAITING_SUBTASKS, AttemptRecord, Task, TaskStatus, utcnow
from taskarbor.tasks.validate import Violation, ViolationKind, all_correctable, validate

ORPHAN_ROOT_ID = "recovered-orphans"
INTERRUPTED = "interrupted"

# Corrections can expose follow-up violations (e.g. a reparented orphan).
_MAX_CORRECTION_ROUNDS = 5


class RecoveryOutcome(str, Enum):
    CLEAN = "clean"
    CORRECTED = "corrected"
    ROLLED_BACK = "rolled_back"


@dataclass(frozen=True)
class Correction:
    kind: ViolationKind
    task_id: str
    action: str

    def __str__(self) -> str:
        return f"{self.kind.value} {self.task_id}: {self.action}"


@dataclass
class LostWork:
    """Progress recorded after the restored checkpoint that is no longer in the state."""

    checkpoint_id: str
    since: datetime
    until: datetime
    task_ids: list[str] = field(default_factory=list)
    attempts: int = 0

    def __str__(self) -> str:
        return (
            f"{len(self.task_ids)} task(s), {self.attempts} attempt(s) between "
            f"{self.since.isoformat()} and {self.until.isoformat()}"
        )


@dataclass
class RecoveryReport:
    outcome: RecoveryOutcome
    state: SessionState
    violations: list[Violation] = field(default_factory=list)
    corrections: list[Correction] = field(default_factory=list)
    checkpoint_id: str | None = None
    pre_recovery_checkpoint_id: str | None = None
    lost_work: LostWork | None = None

    def summary(self) -> str:
        if self.outcome == RecoveryOutcome.CLEAN:
            return "state is consistent"
        if self.outcome == RecoveryOutcome.CORRECTED:
            return f"applied {len(self.corrections)} correction(s)"
        text = f"rolled back to checkpoint {self.checkpoint_id}"
        if self.lost_work is not None:
            text += f"; lost {self.lost_work}"
        return text


class RecoveryManager:
    def __init__(self, persistence: PersistenceManager, config: RecoveryConfig | None = None) -> None:
        self.persistence = persistence
        self.config = config or RecoveryConfig()

    @staticmethod
    def validate(state: SessionState) -> list[Violation]:
        """Violations in *state*; nothing can be in flight in a saved state."""
        return validate(state.tree, allow_in_progress=False)

    # ── corrections ──────────────────────────────────────────────

    def correct(self, state: SessionState, now: datetime | None = None) -> list[Correction]:
        """Fix every minor violation in place; structural ones are left alone."""
        now = now or utcnow()
        applied: list[Correction] = []
        for _ in range(_MAX_CORRECTION_ROUNDS):
            pending = [v for v in self.validate(state) if v.correctable]
            if not pending:
                break
            for violation in pending:
                correction = self._apply(state, violation, now)
                if correction is not None:
                    log.warn(f"Recovery: {correction}")
                    applied.append(correction)
        self._settle_orphan_root(state, now)
        return applied

    def _apply(self, state: SessionState, v: Violation, now: datetime) -> Correction | None:
        tasks = state.tree.tasks
        task = tasks.get(v.task_id)
        if task is None:
            return None

        if v.kind == ViolationKind.ORPHANED_TASK:
            if task.parent_id in tasks:
                return None
            root = self._orphan_root(state, now)
            missing = task.parent_id
            task.parent_id = root.id
            if task.id not in root.children:
                root.children.append(task.id)
            task.touch(now)
            return Correction(v.kind, task.id, f"reparented from missing {missing} to {root.id}")

        if v.kind == ViolationKind.MISSING_CHILD_LINK:
            parent = tasks.get(task.parent_id or "")
            if parent is None or task.id in parent.children:
                return None
            parent.children.append(task.id)
            parent.touch(now)
            return Correction(v.kind, task.id, f"relinked as child of {parent.id}")

        if v.kind in (ViolationKind.DANGLING_CHILD, ViolationKind.MISPARENTED_CHILD):
            child_id = v.related[0]
            if child_id not in task.children:
                return None
            task.children = [c for c in task.children if c != child_id]
            task.touch(now)
            return Correction(v.kind, task.id, f"dropped child entry {child_id}")

        if v.kind == ViolationKind.DUPLICATE_CHILD:
            deduped = list(dict.fromkeys(task.children))
            if deduped == task.children:
                return None
            task.children = deduped
            task.touch(now)
            return Correction(v.kind, task.id, "removed duplicate child entries")

        if v.kind == ViolationKind.STALE_IN_PROGRESS:
            self._reset_interrupted(task, now)
            if state.current_task_id == task.id:
                state.current_task_id = None
            return Correction(v.kind, task.id, f"reset to pending (attempts now {task.attempts})")

        return None

    @staticmethod
    def _reset_interrupted(task: Task, now: datetime) -> None:
        last = task.history[-1] if task.history else None
        if last is not None and last.finished_at is None:
            last.finished_at = now
            last.outcome = INTERRUPTED
            last.reason = INTERRUPTED
        else:
            task.history.append(AttemptRecord(
                task_id=task.id,
                attempt=len(task.history) + 1,
                dispatched_at=now,
                finished_at=now,
                outcome=INTERRUPTED,
                reason=INTERRUPTED,
            ))
        task.attempts += 1
        task.next_eligible_at = None
        task.set_status(TaskStatus.PENDING, now=now)

    @staticmethod
    def _orphan_root(state: SessionState, now: datetime) -> Task:
        tree = state.tree
        root = tree.tasks.get(ORPHAN_ROOT_ID)
        if root is None:
            root = Task(
                id=ORPHAN_ROOT_ID,
                title="Recovered orphaned tasks",
                description="Tasks whose parent was missing from saved state.",
                status=TaskStatus.BLOCKED,
                reason=AWAITING_SUBTASKS,
                created_at=now,
                updated_at=now,
            )
            tree.adopt(root)
        return root

    @staticmethod
    def _settle_orphan_root(state: SessionState, now: datetime) -> None:
        # A root whose adopted children are already finished would wait forever.
        root = state.tree.tasks.get(ORPHAN_ROOT_ID)
        if root is None or root.status != TaskStatus.BLOCKED or root.reason != AWAITING_SUBTASKS:
            return
        children = state.tree.children_of(ORPHAN_ROOT_ID)
        if children and all(c.is_terminal for c in children):
            root.set_status(TaskStatus.COMPLETED, now=now)

    # ── recovery ─────────────────────────────────────────────────

    def _pre_recovery_checkpoint(self, state: SessionState, why: str) -> str | None:
        if not self.config.checkpoint_before_recovery:
            return None
        try:
            info = self.persistence.create_checkpoint(
                state, CheckpointTrigger.PRE_RECOVERY, f"before recovery: {why}", wait=5.0
            )
        except PersistenceError as e:
            log.warn(f"Could not write pre-recovery checkpoint: {e}")
            return None
        return info.id

    def recover(self) -> RecoveryReport:
        """Load the session and return a valid state, or raise.

        Raises :class:`SessionNotFoundError` when nothing was ever saved and
        :class:`UnrecoverableStateError` when no valid state can be produced.
        """
        checkpoints = self.persistence.list_checkpoints()
        if not self.persistence.has_state() and not checkpoints:
            raise SessionNotFoundError(str(self.persistence.root))

        latest: SessionState | None = None
        load_error: PersistenceError | None = None
        try:
            latest = self.persistence.load_latest()
        except PersistenceError as e:
            load_error = e
            log.warn(f"Latest state is unusable: {e}")

        violations: list[Violation] = []
        pre_id: str | None = None
        if latest is not None:
            violations = self.validate(latest)
            if not violations:
                log.debug(f"Session {latest.session_id} state is consistent")
                return RecoveryReport(RecoveryOutcome.CLEAN, latest)

            log.warn(f"Saved state has {len(violations)} violation(s)")
            for v in violations:
                log.debug(f"  {v}")
            pre_id = self._pre_recovery_checkpoint(latest, f"{len(violations)} violation(s)")

            if self.config.auto_correct and all_correctable(violations):
                corrected = latest.copy()
                corrections = self.correct(corrected)
                if not self.validate(corrected):
                    corrected.touch()
                    self.persistence.save(corrected, wait=5.0)
                    log.success(f"Recovered session {corrected.session_id}: {len(corrections)} correction(s)")
                    return RecoveryReport(
                        RecoveryOutcome.CORRECTED,
                        corrected,
                        violations=violations,
                        corrections=corrections,
                        pre_recovery_checkpoint_id=pre_id,
                    )

        if self.config.allow_rollback:
            report = self._rollback(latest, checkpoints, violations, pre_id)
            if report is not None:
                return report

        if latest is None:
            raise UnrecoverableStateError(
                violations,
                f"latest state is unreadable ({load_error}) and no valid checkpoint exists",
            )
        raise UnrecoverableStateError(
            [v for v in violations if not v.correctable] or violations,
            "saved state has structural violations and no valid checkpoint exists; "
            "manual intervention required",
        )

    def _rollback(
        self,
        latest: SessionState | None,
        checkpoints: list[CheckpointInfo],
        violations: list[Violation],
        pre_id: str | None,
    ) -> RecoveryReport | None:
        for info in reversed(checkpoints):
            if info.trigger == CheckpointTrigger.PRE_RECOVERY:
                continue
            try:
                candidate = self.persistence.load_checkpoint(info.id)
            except PersistenceError as e:
                log.warn(f"Skipping checkpoint {info.id}: {e}")
                continue
            corrections: list[Correction] = []
            found = self.validate(candidate)
            if found:
                if not (self.config.auto_correct and all_correctable(found)):
                    log.debug(f"Checkpoint {info.id} has structural violations")
                    continue
                corrections = self.correct(candidate)
                if self.validate(candidate):
                    continue

            lost = self.lost_work(latest, candidate, info)
            candidate.touch()
            self.persistence.save(candidate, wait=5.0)
            log.warn(f"Rolled back session {candidate.session_id} to checkpoint {info.id}")
            if lost.task_ids or lost.attempts:
                log.warn(f"Lost work: {lost}")
            return RecoveryReport(
                RecoveryOutcome.ROLLED_BACK,
                candidate,
                violations=violations,
                corrections=corrections,
                checkpoint_id=info.id,
                pre_recovery_checkpoint_id=pre_id,
                lost_work=lost,
            )
        return None

    def lost_work(self, latest: SessionState | None, restored: SessionState, info: CheckpointInfo) -> LostWork:
        """Tasks and attempts recorded after *info* that *restored* does not contain."""
        since = info.created_at
        until = latest.updated_at if latest is not None else since
        ids: list[str] = []

        if latest is not None:
            for task in latest.tree:
                old = restored.tree.tasks.get(task.id)
                if old is None or (task.updated_at > since and task.to_dict() != old.to_dict()):
                    ids.append(task.id)

        entries = [
            e for e in self.persistence.read_execution_log()
            if e.get("dispatched_at") and datetime.fromisoformat(e["dispatched_at"]) > since
        ]
        for e in entries:
            if e.get("task_id") and e["task_id"] not in ids:
                ids.append(e["task_id"])
            stamp = e.get("finished_at") or e.get("dispatched_at")
            if stamp:
                until = max(until, datetime.fromisoformat(stamp))
        return LostWork(checkpoint_id=info.id, since=since, until=until, task_ids=ids, attempts=len(entries))

    def restore_checkpoint(self, checkpoint_id: str) -> RecoveryReport:
        """Make *checkpoint_id* the current state (operator-requested rollback)."""
        candidate = self.persistence.load_checkpoint(checkpoint_id)
        info = next((i for i in self.persistence.list_checkpoints() if i.id == checkpoint_id), None)

        corrections: list[Correction] = []
        violations = self.validate(candidate)
        if violations:
            if not (self.config.auto_correct and all_correctable(violations)):
                raise UnrecoverableStateError(violations, f"checkpoint {checkpoint_id} is not valid")
            corrections = self.correct(candidate)

        latest: SessionState | None = None
        pre_id: str | None = None
        if self.persistence.has_state():
            try:
                latest = self.persistence.load_latest()
            except PersistenceError as e:
                log.warn(f"Current state is unusable: {e}")
            if latest is not None:
                pre_id = self._pre_recovery_checkpoint(latest, f"restore {checkpoint_id}")

        lost = self.lost_work(latest, candidate, info) if info is not None else None
        candidate.touch()
        self.persistence.save(candidate, wait=5.0)
        log.info(f"Restored checkpoint {checkpoint_id}")
        return RecoveryReport(
            RecoveryOutcome.ROLLED_BACK,
            candidate,
            violations=violations,
            corrections=corrections,
            checkpoint_id=checkpoint_id,
            pre_recovery_checkpoint_id=pre_id,
            lost_work=lost,
        )
