"""Session manager: wires recovery, the task manager and persistence together."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable

from taskarbor import log
from taskarbor.config import SessionConfig, sessions_root
from taskarbor.errors import ConfigError, PersistenceError, SessionNotFoundError, WriteInProgressError
from taskarbor.events import EventChannel
from taskarbor.executors.base import Executor
from taskarbor.manager import RunSummary, TaskManager
from taskarbor.scheduler import Scheduler
from taskarbor.session.persistence import PersistenceManager, latest_session_id, list_sessions
from taskarbor.session.recovery import RecoveryManager, RecoveryReport
from taskarbor.session.state import CheckpointInfo, CheckpointTrigger, SessionState, new_session_id
from taskarbor.tasks.model import Task, TaskSpec, TaskStatus

__all__ = ["SessionManager", "StatusSummary", "latest_session_id", "list_sessions"]


@dataclass
class StatusSummary:
    session_id: str
    name: str
    total: int
    counts: dict[str, int]
    completion_percentage: float
    estimated_seconds_remaining: float | None
    throughput_per_hour: float = 0.0
    running_task_id: str | None = None
    running_title: str = ""
    last_checkpoint: CheckpointInfo | None = None
    counters: dict[str, int] = field(default_factory=dict)
    # (id, title, reason) for tasks that need attention
    blocked: list[tuple[str, str, str]] = field(default_factory=list)
    failed: list[tuple[str, str, str]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "name": self.name,
            "total": self.total,
            "counts": dict(self.counts),
            "completion_percentage": self.completion_percentage,
            "estimated_seconds_remaining": self.estimated_seconds_remaining,
            "throughput_per_hour": self.throughput_per_hour,
            "running_task_id": self.running_task_id,
            "running_title": self.running_title,
            "last_checkpoint": self.last_checkpoint.to_dict() if self.last_checkpoint else None,
            "counters": dict(self.counters),
            "blocked": [list(b) for b in self.blocked],
            "failed": [list(f) for f in self.failed],
        }


class SessionManager:
    """Own one session: create or resume it, run it, checkpoint it, stop it.

    Usage::

        session = SessionManager(workspace, executor, SessionConfig())
        session.create([{"title": "Build parser"}], name="parser")
        # or: report = session.resume()
        summary = await session.run()
    """

    def __init__(
        self,
        workspace: Path,
        executor: Executor | None = None,
        config: SessionConfig | None = None,
        session_id: str | None = None,
    ) -> None:
        self.workspace = Path(workspace)
        self.executor = executor
        self.config = config or SessionConfig()
        self.session_id = session_id
        self.events = EventChannel()
        self.state: SessionState | None = None
        self.persistence: PersistenceManager | None = None
        self.manager: TaskManager | None = None
        self.last_report: RecoveryReport | None = None
        self._loop_task: asyncio.Task[RunSummary] | None = None
        self._shutting_down = False
        self._completed_since_checkpoint = 0

    # ── setup ────────────────────────────────────────────────────

    def _attach(self, state: SessionState, persistence: PersistenceManager) -> TaskManager:
        state.config = self.config.to_dict()
        self.session_id = state.session_id
        self.state = state
        self.persistence = persistence
        self.manager = TaskManager(
            state,
            self.executor,  # type: ignore[arg-type]
            config=self.config.manager,
            scheduler=Scheduler(
                self.config.weights,
                skipped_satisfies_dependencies=self.config.manager.skipped_satisfies_dependencies,
            ),
            persistence=persistence,
            events=self.events,
            on_task_finished=self._on_task_finished,
        )
        return self.manager

    def _require(self) -> TaskManager:
        if self.manager is None:
            raise SessionNotFoundError("this session manager (call create() or resume() first)")
        return self.manager

    def create(self, specs: Iterable[TaskSpec | dict[str, Any]] = (), name: str = "") -> SessionState:
        """Start a new session seeded with *specs*.

        Mapping specs may carry a local ``key``, list earlier keys in
        ``dependencies`` and nest ``children``. The tree is built in memory
        and saved once, so an invalid spec leaves nothing on disk.
        """
        session_id = self.session_id or new_session_id()
        persistence = PersistenceManager.for_session(self.workspace, session_id, self.config.persistence)
        if persistence.has_state():
            raise PersistenceError(f"session {session_id} already exists")
        state = SessionState(session_id=session_id, name=name)
        manager = self._attach(state, persistence)
        manager.persistence = None
        try:
            self._add_specs(manager, list(specs), None, {})
        except Exception:
            self.state = self.persistence = self.manager = None
            raise
        manager.persistence = persistence
        persistence.ensure_dirs()
        persistence.save(state, wait=self.config.manager.save_wait_seconds)
        log.success(f"Created session {session_id} with {len(state.tree)} task(s)")
        return state

    def _add_specs(
        self,
        manager: TaskManager,
        items: list[TaskSpec | dict[str, Any]],
        parent_id: str | None,
        keys: dict[str, str],
    ) -> None:
        for item in items:
            if isinstance(item, TaskSpec):
                manager.create_task(item, parent_id)
                continue
            deps = [keys.get(str(d), str(d)) for d in item.get("dependencies", [])]
            spec = TaskSpec.from_dict({**item, "dependencies": deps})
            task_id = manager.create_task(spec, parent_id)
            key = item.get("key") or item.get("id")
            if key:
                keys[str(key)] = task_id
            children = item.get("children") or []
            if children:
                self._add_specs(manager, children, task_id, keys)

    def resume(self, checkpoint_id: str | None = None) -> RecoveryReport:
        """Load the session (latest in the workspace by default) through recovery."""
        session_id = self.session_id or latest_session_id(self.workspace)
        if session_id is None:
            raise SessionNotFoundError(str(sessions_root(self.workspace)))
        persistence = PersistenceManager.for_session(self.workspace, session_id, self.config.persistence)
        recovery = RecoveryManager(persistence, self.config.recovery)
        if checkpoint_id:
            report = recovery.restore_checkpoint(checkpoint_id)
        else:
            report = recovery.recover()
        self._attach(report.state, persistence)
        self.last_report = report
        log.info(f"Resumed session {session_id}: {report.summary()}")
        return report

    def resume_readonly(self) -> SessionState:
        """Load the latest saved state as-is, without recovery or writes.

        Used by inspection commands (status, checkpoint listing).
        """
        session_id = self.session_id or latest_session_id(self.workspace)
        if session_id is None:
            raise SessionNotFoundError(str(sessions_root(self.workspace)))
        persistence = PersistenceManager.for_session(self.workspace, session_id, self.config.persistence)
        state = persistence.load_latest()
        self._attach(state, persistence)
        return state

    # ── running ──────────────────────────────────────────────────

    async def run(self) -> RunSummary:
        """Run the task loop with background save/checkpoint timers.

        On exit (quiescence, :meth:`shutdown` or error) the state is flushed
        and, unless persistence failed, a shutdown checkpoint is written.
        """
        manager = self._require()
        if self.executor is None:
            raise ConfigError("no executor configured for this session")
        manager.executor = self.executor

        self._shutting_down = False
        removed = manager.cleanup()
        if removed:
            log.debug(f"Retention cleanup removed {len(removed)} task(s)")

        timers: list[asyncio.Task[None]] = []
        if self.config.auto_save_interval > 0:
            timers.append(asyncio.create_task(self._timer(self.config.auto_save_interval, self._autosave)))
        if self.config.auto_checkpoint_interval > 0:
            timers.append(
                asyncio.create_task(self._timer(self.config.auto_checkpoint_interval, self._autocheckpoint))
            )

        self._loop_task = asyncio.create_task(manager.run())
        try:
            summary = await self._loop_task
        except asyncio.CancelledError:
            if not self._shutting_down:
                raise
            log.warn("Session interrupted; in-flight task parked as blocked")
            summary = RunSummary(stopped_early=True)
        finally:
            for timer in timers:
                timer.cancel()
            await asyncio.gather(*timers, return_exceptions=True)
            self._loop_task = None
            self._flush()

        self._report(summary)
        return summary

    def shutdown(self) -> None:
        """Cancel the in-flight dispatch; :meth:`run` flushes and returns."""
        self._shutting_down = True
        if self.manager is not None:
            self.manager.stop()
        if self._loop_task is not None and not self._loop_task.done():
            self._loop_task.cancel()

    def _flush(self) -> None:
        manager = self.manager
        if manager is None or self.persistence is None or manager.halted:
            return
        snapshot = manager.snapshot()
        try:
            self.persistence.save(snapshot, wait=self.config.manager.save_wait_seconds)
            if self.config.checkpoint_on_shutdown:
                self.persistence.create_checkpoint(
                    snapshot, CheckpointTrigger.SHUTDOWN, "session end",
                    wait=self.config.manager.save_wait_seconds,
                )
        except PersistenceError as e:
            log.error(f"Final save failed: {e}")

    def _report(self, summary: RunSummary) -> None:
        status = self.status()
        log.info(
            f"Dispatched {summary.dispatched}, completed {status.counts.get('completed', 0)}/{status.total} "
            f"({status.completion_percentage:.0f}%)"
        )
        for task_id, title, reason in status.blocked:
            log.warn(f"Blocked: {title} ({task_id}): {reason}")
        for task_id, title, reason in status.failed:
            log.error(f"Failed: {title} ({task_id}): {reason}")

    # ── timers ───────────────────────────────────────────────────

    @staticmethod
    async def _timer(interval: float, action: Callable[[], Awaitable[None]]) -> None:
        while True:
            await asyncio.sleep(interval)
            await action()

    async def _autosave(self) -> None:
        manager = self._require()
        assert self.persistence is not None
        snapshot = manager.snapshot()
        try:
            await asyncio.to_thread(self.persistence.save, snapshot, 0.0, if_newer=True)
        except WriteInProgressError:
            log.debug("Auto-save skipped: a write is in progress")
        except PersistenceError as e:
            log.warn(f"Auto-save failed: {e}")

    async def _autocheckpoint(self) -> None:
        manager = self._require()
        assert self.persistence is not None
        snapshot = manager.snapshot()
        try:
            await asyncio.to_thread(
                self.persistence.create_checkpoint, snapshot, CheckpointTrigger.INTERVAL, "periodic", 0.0
            )
        except WriteInProgressError:
            log.debug("Auto-checkpoint skipped: a write is in progress")
        except PersistenceError as e:
            log.warn(f"Auto-checkpoint failed: {e}")

    async def _on_task_finished(self, task_id: str, task: Task) -> None:
        every = self.config.checkpoint_every_n_tasks
        if every <= 0 or task.status != TaskStatus.COMPLETED:
            return
        self._completed_since_checkpoint += 1
        if self._completed_since_checkpoint < every:
            return
        self._completed_since_checkpoint = 0
        assert self.persistence is not None
        snapshot = self._require().snapshot()
        try:
            await asyncio.to_thread(
                self.persistence.create_checkpoint,
                snapshot,
                CheckpointTrigger.TASK_BOUNDARY,
                f"after {task_id}",
                self.config.manager.save_wait_seconds,
            )
        except PersistenceError as e:
            log.warn(f"Task-boundary checkpoint failed: {e}")

    # ── frontend ─────────────────────────────────────────────────

    def create_checkpoint(self, description: str = "") -> CheckpointInfo:
        manager = self._require()
        assert self.persistence is not None
        return self.persistence.create_checkpoint(
            manager.snapshot(),
            CheckpointTrigger.MANUAL,
            description,
            wait=self.config.manager.save_wait_seconds,
        )

    def list_checkpoints(self) -> list[CheckpointInfo]:
        self._require()
        assert self.persistence is not None
        return self.persistence.list_checkpoints()

    def status(self) -> StatusSummary:
        manager = self._require()
        snapshot = manager.snapshot()
        tree = snapshot.tree
        stats = tree.statistics()
        progress = tree.progress()
        running = tree.tasks.get(snapshot.current_task_id or "")
        checkpoints = self.persistence.list_checkpoints() if self.persistence else []
        return StatusSummary(
            session_id=snapshot.session_id,
            name=snapshot.name,
            total=stats.total,
            counts=dict(stats.by_status),
            completion_percentage=progress.completion_percentage,
            estimated_seconds_remaining=progress.estimated_seconds_remaining,
            throughput_per_hour=progress.throughput_per_hour,
            running_task_id=running.id if running else None,
            running_title=running.title if running else "",
            last_checkpoint=checkpoints[-1] if checkpoints else None,
            counters=snapshot.counters.to_dict(),
            blocked=[(t.id, t.title, t.reason) for t in tree if t.status == TaskStatus.BLOCKED],
            failed=[(t.id, t.title, t.reason) for t in tree if t.status == TaskStatus.FAILED],
        )
