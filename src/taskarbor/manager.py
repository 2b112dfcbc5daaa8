"""Task manager: the single execution loop that owns every tree mutation.

One task is dispatched at a time. Around each dispatch the manager marks the
task InProgress, persists, awaits the executor, applies the outcome (status,
subtasks, retry backoff, parent aggregation), persists again, appends an
execution-log record and publishes a lifecycle event.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from taskarbor import log
from taskarbor.config import ManagerConfig
from taskarbor.errors import (
    ExecutorFailure,
    InvalidTransitionError,
    PersistenceError,
    RetryBudgetExhaustedError,
    TaskArborError,
)
from taskarbor.events import EventChannel, EventKind
from taskarbor.executors.base import ExecutionOutcome, ExecutionRequest, Executor, OutcomeKind
from taskarbor.executors.errors import failure_class
from taskarbor.scheduler import Scheduler
from taskarbor.session.state import SessionState
from taskarbor.tasks.model import AWAITING_SUBTASKS, AttemptRecord, Task, TaskSpec, TaskStatus, utcnow
from taskarbor.tasks.tree import TaskTree

if TYPE_CHECKING:
    from taskarbor.session.persistence import PersistenceManager

CANCELLED = "cancelled"
TIMEOUT = "timeout"

TaskFinishedHook = Callable[[str, Task], Awaitable[None]]


@dataclass
class RunSummary:
    dispatched: int = 0
    completed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    blocked: list[str] = field(default_factory=list)
    stopped_early: bool = False


class TaskManager:
    """Drive a session's task tree to quiescence.

    The manager is handed its session context (state, executor, scheduler,
    persistence, events) at construction; nothing is looked up globally.
    """

    def __init__(
        self,
        state: SessionState,
        executor: Executor,
        *,
        config: ManagerConfig | None = None,
        scheduler: Scheduler | None = None,
        persistence: PersistenceManager | None = None,
        events: EventChannel | None = None,
        on_task_finished: TaskFinishedHook | None = None,
    ) -> None:
        self.state = state
        self.executor = executor
        self.config = config or ManagerConfig()
        self.scheduler = scheduler or Scheduler(
            skipped_satisfies_dependencies=self.config.skipped_satisfies_dependencies
        )
        self.persistence = persistence
        self.events = events or EventChannel()
        self.on_task_finished = on_task_finished
        self._stop_requested = False
        self._wake = asyncio.Event()
        self._halted: PersistenceError | None = None

    @property
    def tree(self) -> TaskTree:
        return self.state.tree

    @property
    def halted(self) -> bool:
        return self._halted is not None

    @property
    def skipped_ok(self) -> bool:
        return self.config.skipped_satisfies_dependencies

    # ── frontend operations ──────────────────────────────────────

    def create_task(self, spec: TaskSpec, parent_id: str | None = None) -> str:
        task_id, created = self.tree.insert(spec, parent_id)
        if created:
            self.events.emit(EventKind.TASK_CREATED, task_id, spec.title, parent_id=parent_id)
        else:
            self.events.emit(EventKind.TASKS_DEDUPED, task_id, spec.title, merged=[spec.title])
        self._persist_now()
        self._wake.set()
        return task_id

    def unblock(self, task_id: str) -> None:
        """Blocked -> Pending."""
        task = self.tree.get(task_id)
        if task.status != TaskStatus.BLOCKED:
            raise InvalidTransitionError(task_id, task.status.value, "unblock")
        if task.reason == AWAITING_SUBTASKS and any(
            not c.is_terminal for c in self.tree.children_of(task_id)
        ):
            raise InvalidTransitionError(task_id, task.describe_status(), "unblock")
        task.next_eligible_at = None
        self.tree.update_status(task_id, TaskStatus.PENDING)
        log.task_line("started", task.title, task_id, "unblocked")
        self.events.emit(EventKind.TASK_UNBLOCKED, task_id)
        self._persist_now()
        self._wake.set()

    def retry(self, task_id: str, *, reset: bool = False) -> None:
        """Terminal Failed -> Pending, if the attempt budget allows it."""
        task = self.tree.get(task_id)
        if task.status != TaskStatus.FAILED:
            raise InvalidTransitionError(task_id, task.status.value, "retry")
        if reset:
            task.attempts = 0
        if task.attempts >= self.config.max_attempts:
            raise RetryBudgetExhaustedError(task_id, task.attempts, self.config.max_attempts)
        task.next_eligible_at = None
        self.tree.update_status(task_id, TaskStatus.PENDING)
        self.state.counters.retries += 1
        self.events.emit(EventKind.TASK_RETRY_SCHEDULED, task_id, "manual retry", attempts=task.attempts)
        self._persist_now()
        self._wake.set()

    def skip(self, task_id: str, reason: str = "skipped") -> None:
        task = self.tree.get(task_id)
        if task.is_terminal or task.status == TaskStatus.IN_PROGRESS:
            raise InvalidTransitionError(task_id, task.status.value, "skip")
        self.tree.update_status(task_id, TaskStatus.SKIPPED, reason or "skipped")
        log.task_line("skipped", task.title, task_id, reason)
        self.events.emit(EventKind.TASK_SKIPPED, task_id, reason)
        self._aggregate(task.parent_id)
        self._persist_now()
        self._wake.set()

    def add_dependency(self, task_id: str, dep_id: str) -> None:
        """Make *task_id* wait for *dep_id* (raises CycleDetectedError)."""
        self.tree.add_dependency(task_id, dep_id)
        self._persist_now()

    def remove_dependency(self, task_id: str, dep_id: str) -> None:
        self.tree.remove_dependency(task_id, dep_id)
        self._persist_now()
        self._wake.set()

    def remove_subtree(self, task_id: str) -> list[str]:
        """Prune *task_id* with its descendants; the in-flight task cannot be pruned."""
        task = self.tree.get(task_id)
        doomed = [task_id] + self.tree.descendants(task_id)
        if self.state.current_task_id in doomed:
            raise InvalidTransitionError(task_id, TaskStatus.IN_PROGRESS.value, "remove")
        removed = self.tree.remove_subtree(task_id)
        log.info(f"Removed {task.title} ({task_id}) and {len(removed) - 1} descendant(s)")
        self.events.emit(EventKind.TASKS_CLEANED_UP, task_id, f"{len(removed)} removed", task_ids=removed)
        # A parked parent may now have only finished children left.
        self._aggregate(task.parent_id)
        self._persist_now()
        self._wake.set()
        return removed

    def cleanup(self, now: datetime | None = None) -> list[str]:
        """Prune terminal leaf tasks older than ``retention_hours``.

        A task is kept while any non-terminal task depends on it. Removal
        repeats until nothing else qualifies, so emptied parents go too.
        """
        hours = self.config.retention_hours
        if hours is None:
            return []
        now = now or utcnow()
        cutoff = now - timedelta(hours=hours)
        removed: list[str] = []
        while True:
            needed = {
                dep
                for t in self.tree.tasks.values()
                if not t.is_terminal
                for dep in t.dependencies
            }
            victims = [
                t.id
                for t in self.tree
                if t.is_terminal
                and not t.children
                and t.updated_at < cutoff
                and t.id not in needed
                and t.id != self.state.current_task_id
            ]
            if not victims:
                break
            for tid in victims:
                if tid in self.tree:
                    removed.extend(self.tree.remove_subtree(tid))
        if removed:
            log.info(f"Cleaned up {len(removed)} finished task(s) older than {hours:g}h")
            self.events.emit(EventKind.TASKS_CLEANED_UP, None, f"{len(removed)} removed", task_ids=removed)
            self._persist_now()
        return removed

    def snapshot(self) -> SessionState:
        """Consistent read-only copy of the session for status readers."""
        return self.state.copy()

    def stop(self) -> None:
        """Finish the in-flight task, then leave the loop."""
        self._stop_requested = True
        self._wake.set()

    # ── execution loop ───────────────────────────────────────────

    async def run(self, max_dispatches: int | None = None) -> RunSummary:
        """Dispatch until quiescence, :meth:`stop`, or the dispatch limit.

        Raises :class:`PersistenceError` if progress can no longer be saved.
        Cancellation parks the in-flight task as Blocked("cancelled").
        """
        if self._halted is not None:
            raise self._halted
        limit = self.config.max_dispatches if max_dispatches is None else max_dispatches
        summary = RunSummary()
        self._stop_requested = False
        self._wake = asyncio.Event()

        while True:
            if self._stop_requested:
                summary.stopped_early = True
                break
            if limit and summary.dispatched >= limit:
                summary.stopped_early = True
                log.info(f"Dispatch limit reached ({limit})")
                break

            now = utcnow()
            task_id = self.scheduler.select_next(self.tree, self.state.history(), now)
            if task_id is None:
                wake_at = self.tree.next_retry_at(skipped_ok=self.skipped_ok)
                if wake_at is None:
                    log.debug("Quiescent: nothing runnable and no retry pending")
                    break
                await self._sleep((wake_at - utcnow()).total_seconds())
                continue

            task = await self.run_one(task_id)
            summary.dispatched += 1
            if task.status == TaskStatus.COMPLETED:
                summary.completed.append(task_id)
            elif task.status == TaskStatus.FAILED:
                summary.failed.append(task_id)
            elif task.status == TaskStatus.BLOCKED and task.reason != AWAITING_SUBTASKS:
                summary.blocked.append(task_id)

        return summary

    async def _sleep(self, seconds: float) -> None:
        """Wait for a backoff to expire; woken early by any frontend mutation."""
        self._wake.clear()
        if seconds <= 0:
            return
        log.debug(f"Waiting {seconds:.1f}s for the next retry")
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def run_one(self, task_id: str) -> Task:
        """Dispatch one runnable task and apply its outcome."""
        if self._halted is not None:
            raise self._halted
        tree = self.tree
        task = tree.get(task_id)
        if not tree.is_runnable(task_id, skipped_ok=self.skipped_ok):
            raise InvalidTransitionError(task_id, task.describe_status(), "dispatch")

        record = AttemptRecord(task_id=task_id, attempt=len(task.history) + 1, dispatched_at=utcnow())
        task.history.append(record)
        task.next_eligible_at = None
        tree.update_status(task_id, TaskStatus.IN_PROGRESS)
        self.state.current_task_id = task_id
        self.state.counters.dispatched += 1

        try:
            await self._persist()
            log.task_line("started", task.title, task_id, f"attempt {record.attempt}")
            self.events.emit(EventKind.TASK_STARTED, task_id, task.title, attempt=record.attempt)
            outcome = await self._dispatch(task, record.attempt)
        except asyncio.CancelledError:
            self._park_cancelled(task, record)
            raise

        self._apply(task, record, outcome)
        # A rejected subtask batch restores the tree from a copy.
        task = self.tree.get(task_id)
        record = task.history[-1]
        await self._persist()
        await self._append_log(task, record)
        if self.on_task_finished is not None:
            await self.on_task_finished(task_id, task)
        return task

    def _park_cancelled(self, task: Task, record: AttemptRecord) -> None:
        """Mark the interrupted task Blocked("cancelled") and try a quick save.

        The save does not wait for the writer lock and never halts the
        manager; the session owner flushes the final state after the loop.
        """
        self._finish_attempt(task, record, CANCELLED, CANCELLED)
        self.tree.update_status(task.id, TaskStatus.BLOCKED, CANCELLED)
        self.state.counters.blocked += 1
        log.task_line("blocked", task.title, task.id, CANCELLED)
        self.events.emit(EventKind.TASK_BLOCKED, task.id, CANCELLED)
        if self.persistence is None:
            return
        try:
            self.persistence.save(self.state.copy(), wait=0.0)
        except PersistenceError as e:
            log.warn(f"Could not save cancelled task {task.id} now, left to the final flush: {e}")
        self._append_log_now(task, record)

    async def _dispatch(self, task: Task, attempt: int) -> ExecutionOutcome:
        request = ExecutionRequest(
            task_id=task.id,
            title=task.title,
            description=task.description,
            context=self.tree.effective_context(task.id),
            tags=list(task.metadata.tags),
            attempt=attempt,
            parent_id=task.parent_id,
            continuation=dict(self.state.continuation),
        )
        timeout = task.metadata.timeout_seconds or self.config.dispatch_timeout
        try:
            if timeout:
                return await asyncio.wait_for(self.executor.execute(request), timeout=timeout)
            return await self.executor.execute(request)
        except asyncio.TimeoutError:
            return ExecutionOutcome.failed(TIMEOUT)
        except ExecutorFailure as e:
            return ExecutionOutcome.failed(e.reason)
        except Exception as e:
            # Executor bugs count as a failed attempt, not a loop crash.
            log.debug(f"Executor raised {type(e).__name__}: {e}")
            return ExecutionOutcome.failed(str(e) or type(e).__name__)

    # ── outcome handling ─────────────────────────────────────────

    def _finish_attempt(self, task: Task, record: AttemptRecord, outcome: str, reason: str = "") -> None:
        record.finished_at = utcnow()
        record.outcome = outcome
        record.reason = reason
        self.state.current_task_id = None
        self.state.last_executed_id = task.id
        self.state.touch(record.finished_at)

    def _apply(self, task: Task, record: AttemptRecord, outcome: ExecutionOutcome) -> None:
        if isinstance(outcome.continuation, dict):
            self.state.continuation.update(outcome.continuation)
        elif outcome.continuation is not None:
            log.warn(f"Ignoring non-mapping continuation from executor for {task.id}")

        if outcome.kind == OutcomeKind.CREATE_SUBTASKS and not outcome.subtasks:
            outcome = ExecutionOutcome.completed(outcome.summary)

        if outcome.kind == OutcomeKind.COMPLETED:
            self._finish_attempt(task, record, TaskStatus.COMPLETED.value, outcome.summary)
            self.tree.update_status(task.id, TaskStatus.COMPLETED)
            self.state.counters.completed += 1
            log.task_line("completed", task.title, task.id, outcome.summary[:60])
            self.events.emit(EventKind.TASK_COMPLETED, task.id, outcome.summary)
            self._aggregate(task.parent_id)
        elif outcome.kind == OutcomeKind.FAILED:
            self._handle_failure(task, record, outcome.reason)
        elif outcome.kind == OutcomeKind.BLOCKED:
            self._finish_attempt(task, record, TaskStatus.BLOCKED.value, outcome.reason)
            self.tree.update_status(task.id, TaskStatus.BLOCKED, outcome.reason)
            self.state.counters.blocked += 1
            log.task_line("blocked", task.title, task.id, outcome.reason)
            self.events.emit(EventKind.TASK_BLOCKED, task.id, outcome.reason)
        else:
            self._insert_subtasks(task, record, outcome)

    def _handle_failure(self, task: Task, record: AttemptRecord, reason: str) -> None:
        self._finish_attempt(task, record, TaskStatus.FAILED.value, reason)
        task.attempts += 1
        if task.attempts < self.config.max_attempts:
            delay = self.config.backoff_delay(task.attempts)
            task.next_eligible_at = utcnow() + timedelta(seconds=delay)
            self.tree.update_status(task.id, TaskStatus.PENDING)
            self.state.counters.retries += 1
            log.task_line(
                "retry", task.title, task.id,
                f"{reason} (attempt {task.attempts}/{self.config.max_attempts}, in {delay:g}s)",
            )
            self.events.emit(
                EventKind.TASK_RETRY_SCHEDULED, task.id, reason,
                attempts=task.attempts, delay_seconds=delay,
            )
            return

        self.tree.update_status(task.id, TaskStatus.FAILED, reason)
        self.state.counters.failed += 1
        log.task_line("failed", task.title, task.id, f"{reason} (attempt {task.attempts}/{self.config.max_attempts})")
        self.events.emit(EventKind.TASK_FAILED, task.id, reason, attempts=task.attempts)
        self._aggregate(task.parent_id)

    def _insert_subtasks(self, task: Task, record: AttemptRecord, outcome: ExecutionOutcome) -> None:
        backup = self.tree.copy()
        ids: list[str] = []
        created: list[str] = []
        merged: list[str] = []
        try:
            for index, sub in enumerate(outcome.subtasks):
                deps: list[str] = []
                for ref in sub.depends_on:
                    if 0 <= ref < index:
                        if ids[ref] not in deps:
                            deps.append(ids[ref])
                    else:
                        log.warn(f"Subtask {sub.title!r} of {task.id}: ignoring dependency index {ref}")
                spec = sub.to_task_spec(task.metadata.priority, deps)
                tid, was_created = self.tree.insert(spec, task.id)
                ids.append(tid)
                (created if was_created else merged).append(tid)
        except TaskArborError as e:
            self.state.tree = backup
            task = self.tree.get(task.id)
            record = task.history[-1]
            self._handle_failure(task, record, f"invalid subtasks: {e}")
            return

        self._finish_attempt(task, record, "subtasks", f"{len(created)} created")
        self.tree.update_status(task.id, TaskStatus.BLOCKED, AWAITING_SUBTASKS)
        self.state.counters.subtasks_created += len(created)
        log.task_line("subtasks", task.title, task.id, f"{len(created)} new, {len(merged)} merged")
        self.events.emit(EventKind.SUBTASKS_CREATED, task.id, outcome.summary, task_ids=created)
        for tid in created:
            self.events.emit(EventKind.TASK_CREATED, tid, self.tree.tasks[tid].title, parent_id=task.id)
        if merged:
            self.events.emit(EventKind.TASKS_DEDUPED, task.id, f"{len(merged)} merged", task_ids=merged)
        self._aggregate(task.id)

    def _aggregate(self, parent_id: str | None) -> None:
        """Resolve parked parents whose children are all terminal, walking upward."""
        policy = self.config.aggregation
        while parent_id is not None:
            parent = self.tree.tasks.get(parent_id)
            if parent is None or parent.status != TaskStatus.BLOCKED or parent.reason != AWAITING_SUBTASKS:
                return
            children = self.tree.children_of(parent_id)
            if not children or not all(c.is_terminal for c in children):
                return

            bad = [
                c.id
                for c in children
                if c.status == TaskStatus.FAILED
                or (c.status == TaskStatus.SKIPPED and not policy.skipped_counts_as_success)
            ]
            if not bad or policy.on_child_failure == "complete":
                self.tree.update_status(parent_id, TaskStatus.COMPLETED)
                self.state.counters.completed += 1
                log.task_line("completed", parent.title, parent_id, "all subtasks finished")
                self.events.emit(EventKind.TASK_COMPLETED, parent_id, "all subtasks finished")
            elif policy.on_child_failure == "fail":
                reason = f"{len(bad)} subtask(s) failed: {', '.join(bad)}"
                self.tree.update_status(parent_id, TaskStatus.FAILED, reason)
                self.state.counters.failed += 1
                log.task_line("failed", parent.title, parent_id, reason)
                self.events.emit(EventKind.TASK_FAILED, parent_id, reason, attempts=parent.attempts)
            else:
                reason = f"{len(bad)} subtask(s) failed: {', '.join(bad)}"
                self.tree.update_status(parent_id, TaskStatus.BLOCKED, reason)
                self.state.counters.blocked += 1
                log.task_line("blocked", parent.title, parent_id, reason)
                self.events.emit(EventKind.TASK_BLOCKED, parent_id, reason)
                return
            parent_id = parent.parent_id

    # ── persistence ──────────────────────────────────────────────

    async def _persist(self) -> None:
        if self.persistence is None:
            return
        snapshot = self.state.copy()
        try:
            await asyncio.to_thread(self.persistence.save, snapshot, wait=self.config.save_wait_seconds)
        except PersistenceError as e:
            self._halt(e)

    def _persist_now(self) -> None:
        if self.persistence is None:
            return
        try:
            self.persistence.save(self.state.copy(), wait=self.config.save_wait_seconds)
        except PersistenceError as e:
            self._halt(e)

    def _halt(self, exc: PersistenceError) -> None:
        self._halted = exc
        log.error(f"Persistence failed, halting dispatch: {exc}")
        raise exc

    def _log_entry(self, task: Task, record: AttemptRecord) -> dict[str, Any]:
        entry = record.to_dict()
        entry["title"] = task.title
        entry["status"] = task.status.value
        entry["duration_seconds"] = record.duration_seconds
        if record.outcome == TaskStatus.FAILED.value:
            entry["failure_class"] = failure_class(record.reason)
        return entry

    async def _append_log(self, task: Task, record: AttemptRecord) -> None:
        if self.persistence is None:
            return
        try:
            await asyncio.to_thread(self.persistence.append_execution_log, self._log_entry(task, record))
        except PersistenceError as e:
            self._halt(e)

    def _append_log_now(self, task: Task, record: AttemptRecord) -> None:
        if self.persistence is None:
            return
        try:
            self.persistence.append_execution_log(self._log_entry(task, record))
        except PersistenceError as e:
            log.error(f"Could not record cancelled attempt of {task.id}: {e}")
