"""Tests for taskarbor.manager — the dispatch loop, retries, subtasks and aggregation."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from taskarbor.config import AggregationPolicy, ManagerConfig, ScoringWeights
from taskarbor.errors import (
    CycleDetectedError,
    InvalidTransitionError,
    PersistenceError,
    RetryBudgetExhaustedError,
)
from taskarbor.events import EventKind
from taskarbor.executors.base import CallableExecutor, ExecutionOutcome, ExecutionRequest, OutcomeKind, SubtaskSpec
from taskarbor.manager import TaskManager
from taskarbor.scheduler import Scheduler
from taskarbor.session.persistence import PersistenceManager
from taskarbor.session.state import SessionState
from taskarbor.tasks.model import AWAITING_SUBTASKS, Priority, TaskMetadata, TaskSpec, TaskStatus, utcnow


# ── Helpers ─────────────────────────────────────────────────────────


def _spec(
    title: str,
    deps: list[str] | None = None,
    priority: Priority = Priority.NORMAL,
    timeout: float | None = None,
) -> TaskSpec:
    return TaskSpec(
        title=title,
        metadata=TaskMetadata(priority=priority, timeout_seconds=timeout),
        dependencies=deps or [],
    )


def _config(**overrides) -> ManagerConfig:
    values = dict(max_attempts=3, retry_base_delay=0.0, retry_max_delay=0.0, dispatch_timeout=None, save_wait_seconds=1.0)
    values.update(overrides)
    return ManagerConfig(**values)


def _manager(state: SessionState, executor, config: ManagerConfig, persistence=None, **kwargs) -> TaskManager:
    return TaskManager(
        state,
        executor,
        config=config,
        scheduler=Scheduler(ScoringWeights(jitter=0.0)),
        persistence=persistence,
        **kwargs,
    )


def _boom(request: ExecutionRequest) -> ExecutionOutcome:
    raise RuntimeError("kaboom")


def _park(state: SessionState, task_id: str) -> None:
    state.tree.update_status(task_id, TaskStatus.BLOCKED, AWAITING_SUBTASKS)


# ═══════════════════════════════════════════════════════════════════
#  Run loop
# ═══════════════════════════════════════════════════════════════════


class TestRunLoop:
    def test_runs_in_dependency_order(self, state, make_executor, manager_config):
        tree = state.tree
        a = tree.add_task(_spec("Alpha"))
        b = tree.add_task(_spec("Bravo", deps=[a]))
        c = tree.add_task(_spec("Charlie", deps=[a]))
        executor = make_executor()
        mgr = _manager(state, executor, manager_config)

        summary = asyncio.run(mgr.run())

        assert executor.titles == ["Alpha", "Bravo", "Charlie"]
        assert summary.dispatched == 3
        assert summary.completed == [a, b, c]
        assert not summary.stopped_early
        assert all(t.status == TaskStatus.COMPLETED for t in tree)
        assert state.counters.dispatched == 3
        assert state.counters.completed == 3
        assert state.current_task_id is None
        assert state.last_executed_id == c

    def test_empty_tree_is_quiescent(self, state, make_executor, manager_config):
        summary = asyncio.run(_manager(state, make_executor(), manager_config).run())
        assert summary.dispatched == 0

    def test_priority_picks_first(self, state, make_executor, manager_config):
        state.tree.add_task(_spec("Alpha", priority=Priority.LOW))
        state.tree.add_task(_spec("Bravo", priority=Priority.CRITICAL))
        executor = make_executor()
        asyncio.run(_manager(state, executor, manager_config).run())
        assert executor.titles == ["Bravo", "Alpha"]

    def test_dispatch_limit(self, state, make_executor, manager_config):
        for title in ("Alpha", "Bravo", "Charlie"):
            state.tree.add_task(_spec(title))
        summary = asyncio.run(_manager(state, make_executor(), manager_config).run(max_dispatches=2))
        assert summary.dispatched == 2
        assert summary.stopped_early

    def test_stop_from_hook_finishes_current_task(self, state, make_executor, manager_config):
        for title in ("Alpha", "Bravo"):
            state.tree.add_task(_spec(title))
        finished: list[str] = []

        async def hook(task_id, task):
            finished.append(task_id)
            mgr.stop()

        mgr = _manager(state, make_executor(), manager_config, on_task_finished=hook)
        summary = asyncio.run(mgr.run())
        assert summary.dispatched == 1
        assert summary.stopped_early
        assert len(finished) == 1

    def test_request_carries_context_and_attempt(self, state, make_executor, manager_config):
        parent = state.tree.add_task(TaskSpec("Backend", metadata=TaskMetadata(context=["src/api"])))
        _park(state, parent)
        state.tree.add_task(TaskSpec("Models", metadata=TaskMetadata(tags=["db"], context=["src/api/models.py"])), parent)
        executor = make_executor()
        asyncio.run(_manager(state, executor, manager_config).run())
        request = executor.calls[0]
        assert request.title == "Models"
        assert request.parent_id == parent
        assert request.context == ["src/api/models.py", "src/api"]
        assert request.tags == ["db"]
        assert request.attempt == 1

    def test_continuation_is_carried_between_dispatches(self, state, make_executor, manager_config):
        a = state.tree.add_task(_spec("Alpha"))
        state.tree.add_task(_spec("Bravo", deps=[a]))
        executor = make_executor({
            "Alpha": [ExecutionOutcome(OutcomeKind.COMPLETED, summary="ok", continuation={"conversation": "c1"})],
        })
        asyncio.run(_manager(state, executor, manager_config).run())
        assert executor.calls[0].continuation == {}
        assert executor.calls[1].continuation == {"conversation": "c1"}
        assert state.continuation == {"conversation": "c1"}

    def test_run_one_rejects_non_runnable(self, state, make_executor, manager_config):
        a = state.tree.add_task(_spec("Alpha"))
        state.tree.update_status(a, TaskStatus.BLOCKED, "waiting")
        mgr = _manager(state, make_executor(), manager_config)
        with pytest.raises(InvalidTransitionError):
            asyncio.run(mgr.run_one(a))


# ═══════════════════════════════════════════════════════════════════
#  Failures, retries, timeouts, cancellation
# ═══════════════════════════════════════════════════════════════════


class TestFailures:
    def test_retry_budget_then_terminal_failure(self, state, make_executor):
        """Budget 2: first failure backs off to Pending, second is terminal."""
        d = state.tree.add_task(_spec("Deploy"))
        executor = make_executor({"Deploy": [ExecutionOutcome.failed("boom")]})
        mgr = _manager(state, executor, _config(max_attempts=2, retry_base_delay=0.05, retry_max_delay=1.0))

        before = utcnow()
        asyncio.run(mgr.run(max_dispatches=1))
        task = state.tree.get(d)
        assert task.status == TaskStatus.PENDING
        assert task.attempts == 1
        assert task.next_eligible_at is not None
        assert task.next_eligible_at >= before + timedelta(seconds=0.05)

        summary = asyncio.run(mgr.run())
        task = state.tree.get(d)
        assert task.status == TaskStatus.FAILED
        assert task.reason == "boom"
        assert task.attempts == 2
        assert len(executor.calls) == 2
        assert summary.failed == [d]
        assert [r.outcome for r in task.history] == ["failed", "failed"]
        assert len(mgr.events.recent(EventKind.TASK_RETRY_SCHEDULED)) == 1
        assert len(mgr.events.recent(EventKind.TASK_FAILED)) == 1

        # Nothing left to dispatch
        asyncio.run(mgr.run())
        assert len(executor.calls) == 2

    def test_failure_then_success(self, state, make_executor, manager_config):
        a = state.tree.add_task(_spec("Flaky"))
        executor = make_executor({"Flaky": [ExecutionOutcome.failed("network down"), ExecutionOutcome.completed()]})
        asyncio.run(_manager(state, executor, manager_config).run())
        task = state.tree.get(a)
        assert task.status == TaskStatus.COMPLETED
        assert task.attempts == 1
        assert [r.attempt for r in task.history] == [1, 2]
        assert state.counters.retries == 1

    def test_executor_exception_counts_as_failure(self, state, make_executor, manager_config):
        a = state.tree.add_task(_spec("Crashy"))
        executor = make_executor({"Crashy": _boom})
        asyncio.run(_manager(state, executor, manager_config).run())
        task = state.tree.get(a)
        assert task.status == TaskStatus.FAILED
        assert task.reason == "kaboom"
        assert len(executor.calls) == manager_config.max_attempts

    def test_per_task_timeout(self, state):
        a = state.tree.add_task(_spec("Slow", timeout=0.05))

        async def slow(request):
            await asyncio.sleep(5)
            return ExecutionOutcome.completed()

        mgr = _manager(state, CallableExecutor(slow), _config(max_attempts=1))
        asyncio.run(mgr.run())
        task = state.tree.get(a)
        assert task.status == TaskStatus.FAILED
        assert task.reason == "timeout"
        assert task.history[-1].outcome == "failed"

    def test_global_dispatch_timeout(self, state):
        a = state.tree.add_task(_spec("Slow"))

        async def slow(request):
            await asyncio.sleep(5)
            return ExecutionOutcome.completed()

        mgr = _manager(state, CallableExecutor(slow), _config(max_attempts=1, dispatch_timeout=0.05))
        asyncio.run(mgr.run())
        assert state.tree.get(a).reason == "timeout"

    def test_cancellation_parks_task_as_blocked(self, state, persistence):
        a = state.tree.add_task(_spec("Long job"))

        async def scenario():
            started = asyncio.Event()

            async def slow(request):
                started.set()
                await asyncio.sleep(10)
                return ExecutionOutcome.completed()

            mgr = _manager(state, CallableExecutor(slow), _config(), persistence)
            runner = asyncio.create_task(mgr.run())
            await started.wait()
            runner.cancel()
            with pytest.raises(asyncio.CancelledError):
                await runner

        asyncio.run(scenario())
        task = state.tree.get(a)
        assert task.status == TaskStatus.BLOCKED
        assert task.reason == "cancelled"
        assert task.history[-1].outcome == "cancelled"
        assert state.counters.blocked == 1

        saved = persistence.load_latest()
        assert saved.tree.get(a).status == TaskStatus.BLOCKED
        assert [e["outcome"] for e in persistence.read_execution_log(a)] == ["cancelled"]

    def test_cancellation_with_writer_busy_does_not_halt(self, state, persistence):
        a = state.tree.add_task(_spec("Long job"))

        async def scenario():
            started = asyncio.Event()

            async def slow(request):
                started.set()
                await asyncio.sleep(10)
                return ExecutionOutcome.completed()

            mgr = _manager(state, CallableExecutor(slow), _config(), persistence)
            runner = asyncio.create_task(mgr.run())
            await started.wait()
            persistence._lock.acquire()
            try:
                runner.cancel()
                with pytest.raises(asyncio.CancelledError):
                    await runner
            finally:
                persistence._lock.release()
            return mgr

        mgr = asyncio.run(scenario())
        assert not mgr.halted
        assert state.tree.get(a).status == TaskStatus.BLOCKED
        assert state.tree.get(a).reason == "cancelled"
        # The busy writer kept the quick save out; the last saved record is the dispatch
        assert persistence.load_latest().tree.get(a).status == TaskStatus.IN_PROGRESS
        assert [e["outcome"] for e in persistence.read_execution_log(a)] == ["cancelled"]

    def test_non_mapping_continuation_ignored(self, state, manager_config):
        a = state.tree.add_task(_spec("Alpha"))

        def odd(request):
            return ExecutionOutcome(OutcomeKind.COMPLETED, continuation="abc")

        asyncio.run(_manager(state, CallableExecutor(odd), manager_config).run())
        assert state.tree.get(a).status == TaskStatus.COMPLETED
        assert state.continuation == {}

    def test_blocked_outcome_then_unblock(self, state, make_executor, manager_config):
        a = state.tree.add_task(_spec("Needs creds"))
        executor = make_executor({
            "Needs creds": [ExecutionOutcome.blocked("missing API key"), ExecutionOutcome.completed()],
        })
        mgr = _manager(state, executor, manager_config)
        summary = asyncio.run(mgr.run())
        assert summary.blocked == [a]
        assert state.tree.get(a).reason == "missing API key"

        mgr.unblock(a)
        assert state.tree.get(a).status == TaskStatus.PENDING
        asyncio.run(mgr.run())
        assert state.tree.get(a).status == TaskStatus.COMPLETED


# ═══════════════════════════════════════════════════════════════════
#  Dynamic subtasks & aggregation
# ═══════════════════════════════════════════════════════════════════


class TestSubtasks:
    def test_subtasks_run_then_parent_completes(self, state, make_executor, manager_config):
        parent = state.tree.add_task(_spec("Build API", priority=Priority.HIGH))
        executor = make_executor({
            "Build API": [ExecutionOutcome.create_subtasks([
                SubtaskSpec("Write models"),
                SubtaskSpec("Write views", depends_on=[0]),
                SubtaskSpec("Write tests", depends_on=[0, 1]),
            ], summary="split")],
        })
        mgr = _manager(state, executor, manager_config)
        asyncio.run(mgr.run())

        assert executor.titles == ["Build API", "Write models", "Write views", "Write tests"]
        task = state.tree.get(parent)
        assert task.status == TaskStatus.COMPLETED
        models, views, tests = task.children
        assert state.tree.get(views).dependencies == {models}
        assert state.tree.get(tests).dependencies == {models, views}
        assert state.tree.get(models).metadata.priority == Priority.HIGH
        assert state.counters.subtasks_created == 3
        assert task.history[0].outcome == "subtasks"
        [created] = mgr.events.recent(EventKind.SUBTASKS_CREATED)
        assert created.data["task_ids"] == [models, views, tests]

    def test_parent_is_parked_while_children_run(self, state, make_executor, manager_config):
        parent = state.tree.add_task(_spec("Build API"))
        executor = make_executor({"Build API": [ExecutionOutcome.create_subtasks([SubtaskSpec("Write models")])]})
        asyncio.run(_manager(state, executor, manager_config).run(max_dispatches=1))
        task = state.tree.get(parent)
        assert task.status == TaskStatus.BLOCKED
        assert task.reason == AWAITING_SUBTASKS

    def test_empty_subtask_list_completes(self, state, make_executor, manager_config):
        a = state.tree.add_task(_spec("Alpha"))
        executor = make_executor({"Alpha": [ExecutionOutcome.create_subtasks([])]})
        asyncio.run(_manager(state, executor, manager_config).run())
        assert state.tree.get(a).status == TaskStatus.COMPLETED

    def test_duplicate_subtasks_are_merged(self, state, make_executor, manager_config):
        parent = state.tree.add_task(_spec("Build API"))
        executor = make_executor({
            "Build API": [ExecutionOutcome.create_subtasks([SubtaskSpec("Write models"), SubtaskSpec("write models!")])],
        })
        mgr = _manager(state, executor, manager_config)
        asyncio.run(mgr.run())
        assert len(state.tree.get(parent).children) == 1
        assert state.counters.subtasks_created == 1
        assert mgr.events.recent(EventKind.TASKS_DEDUPED)

    def test_invalid_batch_is_rolled_back(self, state, make_executor):
        """A batch whose merge would close a cycle leaves the tree untouched."""
        parent = state.tree.add_task(_spec("Build API"))
        executor = make_executor({
            "Build API": [ExecutionOutcome.create_subtasks([
                SubtaskSpec("Write models"),
                SubtaskSpec("Write views", depends_on=[0]),
                SubtaskSpec("write models", depends_on=[1]),
            ])],
        })
        asyncio.run(_manager(state, executor, _config(max_attempts=1)).run())
        task = state.tree.get(parent)
        assert len(state.tree) == 1
        assert task.children == []
        assert task.status == TaskStatus.FAILED
        assert task.reason.startswith("invalid subtasks")
        assert state.tree.is_consistent()

    @pytest.mark.parametrize(
        ("policy", "expected"),
        [
            ("block", TaskStatus.BLOCKED),
            ("fail", TaskStatus.FAILED),
            ("complete", TaskStatus.COMPLETED),
        ],
    )
    def test_child_failure_policy(self, state, make_executor, policy, expected):
        parent = state.tree.add_task(_spec("Ship release"))
        executor = make_executor({
            "Ship release": [ExecutionOutcome.create_subtasks([SubtaskSpec("Build wheel"), SubtaskSpec("Upload docs")])],
            "Upload docs": [ExecutionOutcome.failed("403 forbidden")],
        })
        config = _config(max_attempts=1, aggregation=AggregationPolicy(on_child_failure=policy))
        asyncio.run(_manager(state, executor, config).run())
        task = state.tree.get(parent)
        assert task.status == expected
        if expected != TaskStatus.COMPLETED:
            assert task.reason.startswith("1 subtask(s) failed")


class TestAggregation:
    def _family(self, state: SessionState) -> tuple[str, str, str]:
        tree = state.tree
        parent = tree.add_task(_spec("Parent"))
        done = tree.add_task(_spec("Finished child"), parent)
        other = tree.add_task(_spec("Optional child"), parent)
        _park(state, parent)
        tree.update_status(done, TaskStatus.COMPLETED)
        return parent, done, other

    def test_skipped_child_counts_as_success(self, state, make_executor):
        parent, _, other = self._family(state)
        mgr = _manager(state, make_executor(), _config())
        mgr.skip(other, "not needed")
        assert state.tree.get(parent).status == TaskStatus.COMPLETED

    def test_skipped_child_counts_as_failure_when_configured(self, state, make_executor):
        parent, _, other = self._family(state)
        policy = AggregationPolicy(on_child_failure="fail", skipped_counts_as_success=False)
        mgr = _manager(state, make_executor(), _config(aggregation=policy))
        mgr.skip(other, "not needed")
        assert state.tree.get(parent).status == TaskStatus.FAILED

    def test_completion_cascades_upward(self, state, make_executor):
        tree = state.tree
        top = tree.add_task(_spec("Program"))
        mid = tree.add_task(_spec("Project"), top)
        leaf = tree.add_task(_spec("Step"), mid)
        _park(state, top)
        _park(state, mid)
        mgr = _manager(state, make_executor(), _config())
        asyncio.run(mgr.run())
        assert tree.get(leaf).status == TaskStatus.COMPLETED
        assert tree.get(mid).status == TaskStatus.COMPLETED
        assert tree.get(top).status == TaskStatus.COMPLETED

    def test_parent_waits_for_running_children(self, state, make_executor):
        parent, _, _ = self._family(state)
        mgr = _manager(state, make_executor(), _config())
        with pytest.raises(InvalidTransitionError):
            mgr.unblock(parent)
        assert state.tree.get(parent).reason == AWAITING_SUBTASKS


# ═══════════════════════════════════════════════════════════════════
#  Frontend operations
# ═══════════════════════════════════════════════════════════════════


class TestFrontendOperations:
    def test_create_task_emits_events(self, state, make_executor, manager_config):
        mgr = _manager(state, make_executor(), manager_config)
        first = mgr.create_task(_spec("Write docs"))
        second = mgr.create_task(_spec("write docs"))
        assert first == second
        kinds = [e.kind for e in mgr.events.recent()]
        assert kinds == [EventKind.TASK_CREATED, EventKind.TASKS_DEDUPED]

    def test_create_task_persists(self, state, make_executor, manager_config, persistence):
        mgr = _manager(state, make_executor(), manager_config, persistence)
        tid = mgr.create_task(_spec("Write docs"))
        assert tid in persistence.load_latest().tree

    def test_unblock_requires_blocked(self, state, make_executor, manager_config):
        a = state.tree.add_task(_spec("Alpha"))
        mgr = _manager(state, make_executor(), manager_config)
        with pytest.raises(InvalidTransitionError, match="cannot unblock"):
            mgr.unblock(a)

    def test_manual_retry(self, state, make_executor, manager_config):
        a = state.tree.add_task(_spec("Alpha"))
        task = state.tree.update_status(a, TaskStatus.FAILED, "boom")
        task.attempts = 1
        mgr = _manager(state, make_executor(), manager_config)
        mgr.retry(a)
        assert task.status == TaskStatus.PENDING
        assert task.reason == ""
        assert state.counters.retries == 1
        assert mgr.events.recent(EventKind.TASK_RETRY_SCHEDULED)

    def test_retry_budget_exhausted(self, state, make_executor, manager_config):
        a = state.tree.add_task(_spec("Alpha"))
        task = state.tree.update_status(a, TaskStatus.FAILED, "boom")
        task.attempts = manager_config.max_attempts
        mgr = _manager(state, make_executor(), manager_config)
        with pytest.raises(RetryBudgetExhaustedError):
            mgr.retry(a)
        mgr.retry(a, reset=True)
        assert task.status == TaskStatus.PENDING
        assert task.attempts == 0

    def test_retry_requires_failed(self, state, make_executor, manager_config):
        a = state.tree.add_task(_spec("Alpha"))
        with pytest.raises(InvalidTransitionError):
            _manager(state, make_executor(), manager_config).retry(a)

    def test_skip(self, state, make_executor, manager_config):
        a = state.tree.add_task(_spec("Alpha"))
        b = state.tree.add_task(_spec("Bravo", deps=[a]))
        executor = make_executor()
        mgr = _manager(state, executor, manager_config)
        mgr.skip(a, "covered elsewhere")
        assert state.tree.get(a).reason == "covered elsewhere"
        asyncio.run(mgr.run())
        assert executor.titles == ["Bravo"]
        assert state.tree.get(b).status == TaskStatus.COMPLETED

    def test_skip_terminal_rejected(self, state, make_executor, manager_config):
        a = state.tree.add_task(_spec("Alpha"))
        state.tree.update_status(a, TaskStatus.COMPLETED)
        with pytest.raises(InvalidTransitionError):
            _manager(state, make_executor(), manager_config).skip(a)

    def test_cleanup_keeps_needed_dependencies(self, state, make_executor):
        tree = state.tree
        a = tree.add_task(_spec("Alpha"))
        b = tree.add_task(_spec("Bravo"))
        c = tree.add_task(_spec("Charlie", deps=[b]))
        tree.update_status(a, TaskStatus.COMPLETED)
        tree.update_status(b, TaskStatus.COMPLETED)
        mgr = _manager(state, make_executor(), _config(retention_hours=1.0))

        assert mgr.cleanup() == []
        removed = mgr.cleanup(utcnow() + timedelta(hours=3))
        assert removed == [a]
        assert b in tree and c in tree
        assert mgr.events.recent(EventKind.TASKS_CLEANED_UP)

    def test_cleanup_disabled_by_default(self, state, make_executor, manager_config):
        a = state.tree.add_task(_spec("Alpha"))
        state.tree.update_status(a, TaskStatus.COMPLETED)
        mgr = _manager(state, make_executor(), manager_config)
        assert mgr.cleanup(utcnow() + timedelta(days=30)) == []

    def test_snapshot_is_independent(self, state, make_executor, manager_config):
        a = state.tree.add_task(_spec("Alpha"))
        mgr = _manager(state, make_executor(), manager_config)
        snap = mgr.snapshot()
        state.tree.update_status(a, TaskStatus.COMPLETED)
        assert snap.tree.get(a).status == TaskStatus.PENDING

    def test_add_dependency_persists_and_rejects_cycles(self, state, make_executor, manager_config, persistence):
        a = state.tree.add_task(_spec("Alpha"))
        b = state.tree.add_task(_spec("Bravo"))
        mgr = _manager(state, make_executor(), manager_config, persistence)
        mgr.add_dependency(b, a)
        assert persistence.load_latest().tree.get(b).dependencies == {a}
        with pytest.raises(CycleDetectedError):
            mgr.add_dependency(a, b)
        assert state.tree.get(a).dependencies == set()

    def test_remove_dependency(self, state, make_executor, manager_config):
        a = state.tree.add_task(_spec("Alpha"))
        b = state.tree.add_task(_spec("Bravo", deps=[a]))
        mgr = _manager(state, make_executor(), manager_config)
        mgr.remove_dependency(b, a)
        assert state.tree.get(b).dependencies == set()

    def test_remove_subtree_resolves_parked_parent(self, state, make_executor, manager_config):
        tree = state.tree
        p = tree.add_task(_spec("Parent"))
        done = tree.add_task(_spec("Write handlers"), p)
        pruned = tree.add_task(_spec("Write tests"), p)
        tree.update_status(done, TaskStatus.COMPLETED)
        _park(state, p)
        mgr = _manager(state, make_executor(), manager_config)

        assert mgr.remove_subtree(pruned) == [pruned]

        assert pruned not in tree
        assert tree.get(p).children == [done]
        assert tree.get(p).status == TaskStatus.COMPLETED
        assert mgr.events.recent(EventKind.TASKS_CLEANED_UP)

    def test_remove_subtree_refuses_in_flight_task(self, state, make_executor, manager_config):
        p = state.tree.add_task(_spec("Parent"))
        c = state.tree.add_task(_spec("Child"), p)
        state.tree.update_status(c, TaskStatus.IN_PROGRESS)
        state.current_task_id = c
        with pytest.raises(InvalidTransitionError, match="cannot remove"):
            _manager(state, make_executor(), manager_config).remove_subtree(p)
        assert c in state.tree


# ═══════════════════════════════════════════════════════════════════
#  Persistence & events
# ═══════════════════════════════════════════════════════════════════


class TestPersistenceIntegration:
    def test_state_and_log_written_per_attempt(self, state, make_executor, manager_config, persistence):
        a = state.tree.add_task(_spec("Flaky"))
        executor = make_executor({"Flaky": [ExecutionOutcome.failed("rate limit exceeded"), ExecutionOutcome.completed()]})
        asyncio.run(_manager(state, executor, manager_config, persistence).run())

        saved = persistence.load_latest()
        assert saved.tree.get(a).status == TaskStatus.COMPLETED
        entries = persistence.read_execution_log(a)
        assert [e["outcome"] for e in entries] == ["failed", "completed"]
        assert entries[0]["failure_class"] == "rate_limit"
        assert entries[1]["title"] == "Flaky"

    def test_persistence_failure_halts_dispatch(self, state, make_executor, manager_config, persistence, monkeypatch):
        state.tree.add_task(_spec("Alpha"))

        def broken_save(snapshot, wait=0.0, *, if_newer=False):
            raise PersistenceError("disk full")

        monkeypatch.setattr(persistence, "save", broken_save)
        executor = make_executor()
        mgr = _manager(state, executor, manager_config, persistence)
        with pytest.raises(PersistenceError, match="disk full"):
            asyncio.run(mgr.run())
        assert mgr.halted
        assert executor.calls == []
        with pytest.raises(PersistenceError):
            asyncio.run(mgr.run())

    def test_subscribers_receive_lifecycle_events(self, state, make_executor, manager_config):
        a = state.tree.add_task(_spec("Alpha"))
        mgr = _manager(state, make_executor(), manager_config)

        async def scenario():
            queue = mgr.events.subscribe()
            await mgr.run()
            received = []
            while not queue.empty():
                received.append(queue.get_nowait())
            return received

        received = asyncio.run(scenario())
        assert [(e.kind, e.task_id) for e in received] == [
            (EventKind.TASK_STARTED, a),
            (EventKind.TASK_COMPLETED, a),
        ]

    def test_unsubscribed_queue_stops_receiving(self, state, make_executor, manager_config):
        state.tree.add_task(_spec("Alpha"))
        mgr = _manager(state, make_executor(), manager_config)

        async def scenario():
            kept = mgr.events.subscribe()
            dropped = mgr.events.subscribe()
            mgr.events.unsubscribe(dropped)
            mgr.events.unsubscribe(dropped)
            await mgr.run()
            return kept.qsize(), dropped.qsize()

        assert asyncio.run(scenario()) == (2, 0)
        assert len(mgr.events.recent()) == 2
