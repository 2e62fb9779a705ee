"""
Tests for ExecutionOrchestrator.

Sessions, worktrees and merges are replaced by in-memory fakes so the tests
focus on scheduling: concurrency caps, wave ordering, settle-all, the
dependency-failure policy, stop/cancel and snapshot/restore.
"""

import asyncio
import sys
from datetime import datetime
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from parallel_runner.config import RunnerConfig
from parallel_runner.errors import ConfigError, OrchestratorError, SessionError, WorktreeError
from parallel_runner.execution_plan import ExecutionSnapshot, WorkItem, WorkItemStatus
from parallel_runner.parallel.events import (
    EventChannel,
    ExecutionComplete,
    WaveCompleted,
    WaveStarted,
)
from parallel_runner.parallel.merge_coordinator import MergeResult
from parallel_runner.parallel.orchestrator import ExecutionOrchestrator, RunState
from parallel_runner.parallel.session_supervisor import SessionInfo, SessionStatus
from parallel_runner.parallel.wave_scheduler import WaveScheduler
from parallel_runner.parallel.worktree_manager import WorktreeInfo, WorktreeState


class ConcurrencyTracker:
    """Track concurrent execution count."""

    def __init__(self):
        self.max_concurrent = 0
        self.current_concurrent = 0
        self.started = []
        self.finished = []

    def task_started(self, work_item_id):
        self.started.append(work_item_id)
        self.current_concurrent += 1
        self.max_concurrent = max(self.max_concurrent, self.current_concurrent)

    def task_finished(self, work_item_id):
        self.finished.append(work_item_id)
        self.current_concurrent -= 1


class FakeSession:
    """Stands in for SessionSupervisor with a scripted outcome."""

    def __init__(self, item, tracker, outcome="completed", delay=0.01):
        self.session_id = f"session-{item.id}"
        self.work_item_id = item.id
        self.tracker = tracker
        self.outcome = outcome
        self.delay = delay
        self.status = SessionStatus.IDLE
        self.error = None
        self._done = asyncio.Event()
        self._task = None

    @property
    def is_terminal(self):
        return self.status.is_terminal

    async def start(self):
        if self.is_terminal:
            return
        if self.outcome == "spawn_error":
            self._finish(SessionStatus.FAILED, "Failed to start session: not found")
            raise SessionError("spawn failed", session_id=self.session_id)
        self.status = SessionStatus.RUNNING
        self.tracker.task_started(self.work_item_id)
        self._task = asyncio.create_task(self._run())

    async def _run(self):
        try:
            await asyncio.sleep(3600 if self.outcome == "hang" else self.delay)
        except asyncio.CancelledError:
            return
        if self.outcome == "completed":
            self._finish(SessionStatus.COMPLETED)
        else:
            self._finish(SessionStatus.FAILED, "Process exited with code 1")

    def _finish(self, status, error=None):
        if self.is_terminal:
            return
        if self.status == SessionStatus.RUNNING:
            self.tracker.task_finished(self.work_item_id)
        self.status = status
        self.error = error
        self._done.set()

    def terminate(self):
        if self.is_terminal:
            return False
        self._finish(SessionStatus.CANCELLED, "cancelled")
        if self._task is not None:
            self._task.cancel()
        return True

    async def wait(self, timeout=None):
        await self._done.wait()
        return self.status

    async def close(self, timeout=10.0):
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    def snapshot(self):
        return SessionInfo(
            session_id=self.session_id,
            work_item_id=self.work_item_id,
            status=self.status,
            worktree_path=f"/tmp/{self.work_item_id}",
            error=self.error,
        )


class MockWorktreeManager:
    """In-memory worktree manager."""

    def __init__(self, fail_ids=()):
        self.project_path = Path("/tmp/project")
        self.fail_ids = set(fail_ids)
        self.worktrees = {}
        self.created = []
        self.cleaned = []
        self.initialized = 0
        self.on_cleanup = None

    async def initialize(self):
        self.initialized += 1

    async def create(self, work_item_id, title=""):
        if work_item_id in self.fail_ids:
            raise WorktreeError(f"Worktree for {work_item_id} is locked", kind="conflict", recoverable=False)
        info = WorktreeInfo(
            path=f"/tmp/project/.worktrees/{work_item_id}",
            branch=f"feature/{work_item_id}",
            work_item_id=work_item_id,
            state=WorktreeState.CREATED,
            created_at=datetime.now(),
        )
        self.worktrees[work_item_id] = info
        self.created.append(work_item_id)
        return info

    async def cleanup(self, work_item_id, delete_branch=True):
        if self.on_cleanup is not None:
            self.on_cleanup(work_item_id)
        self.cleaned.append((work_item_id, delete_branch))
        return self.worktrees.pop(work_item_id, None) is not None

    def mark_state(self, work_item_id, state):
        self.worktrees[work_item_id].state = state

    def has_worktree(self, work_item_id):
        return work_item_id in self.worktrees

    def get(self, work_item_id):
        return self.worktrees.get(work_item_id)


class MockMergeCoordinator:
    """Records merges; ids in conflict_ids conflict until retried."""

    def __init__(self, conflict_ids=()):
        self.conflict_ids = set(conflict_ids)
        self.batches = []

    def _result(self, work_item_id):
        if work_item_id in self.conflict_ids:
            return MergeResult(work_item_id=work_item_id, success=False, strategy="merge",
                               conflict_files=["shared.txt"], error="Merge conflict")
        return MergeResult(work_item_id=work_item_id, success=True, strategy="merge", commit="abc123")

    async def merge_batch(self, work_item_ids):
        self.batches.append(list(work_item_ids))
        return [self._result(i) for i in work_item_ids]

    async def retry_merge(self, work_item_id):
        self.conflict_ids.discard(work_item_id)
        return self._result(work_item_id)


def item(item_id, *deps):
    return WorkItem(id=item_id, title=item_id, dependencies=list(deps))


def build(items, max_parallel=10, outcomes=None, delay=0.01, merge=None, worktrees=None, **config_values):
    tracker = ConcurrencyTracker()
    outcomes = outcomes or {}

    def factory(work_item, worktree_path):
        return FakeSession(work_item, tracker, outcomes.get(work_item.id, "completed"), delay)

    orchestrator = ExecutionOrchestrator(
        config=RunnerConfig(max_parallel_sessions=max_parallel, **config_values),
        worktree_manager=worktrees or MockWorktreeManager(),
        merge_coordinator=merge if merge is not None else MockMergeCoordinator(),
        events=EventChannel(),
        session_factory=factory,
    )
    plan = WaveScheduler().build_plan(items)
    return orchestrator, plan, tracker


async def wait_until(condition, timeout=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


class TestConcurrency:

    async def test_cap_of_two_with_five_items(self):
        """max_parallel_sessions=2 and 5 independent items -> never more than 2 running"""
        print("\n=== Test: Concurrency Cap ===")

        items = [item(f"item-{i}") for i in range(5)]
        orchestrator, plan, tracker = build(items, max_parallel=2, delay=0.02)

        summary = await orchestrator.start_execution(plan)

        print(f"Max concurrent: {tracker.max_concurrent}")
        assert tracker.max_concurrent == 2
        assert summary.completed == 5
        assert summary.merged == 5
        assert summary.state == RunState.COMPLETED
        assert orchestrator.state == RunState.COMPLETED
        assert all(i.status == WorkItemStatus.COMPLETED for i in plan.all_items())
        # Merges follow wave member order, batch by batch
        assert orchestrator.merge_coordinator.batches == [
            ["item-0", "item-1"], ["item-2", "item-3"], ["item-4"]
        ]
        assert len(orchestrator.sessions) == 0

        print("[PASS]")

    async def test_waves_run_in_order(self):
        """No item of wave N+1 starts before wave N has settled."""
        items = [item("a"), item("b"), item("c", "a"), item("d", "c", "b")]
        orchestrator, plan, tracker = build(items, delay=0.01)

        await orchestrator.start_execution(plan)

        assert tracker.started.index("c") > max(tracker.finished.index("a"), tracker.finished.index("b"))
        assert tracker.started.index("d") > tracker.finished.index("c")

    async def test_lifecycle_events(self):
        items = [item("a"), item("b", "a")]
        orchestrator, plan, _ = build(items)

        await orchestrator.start_execution(plan)

        events = orchestrator.events.drain()
        kinds = [type(e) for e in events]
        assert kinds == [WaveStarted, WaveCompleted, WaveStarted, WaveCompleted, ExecutionComplete]
        assert [e.wave_number for e in events if isinstance(e, WaveStarted)] == [0, 1]
        assert events[1].completed == 1
        assert events[-1].summary['completed'] == 2


class TestFailureHandling:

    async def test_settle_all(self):
        """One failing item never aborts its batch."""
        print("\n=== Test: Settle All ===")

        items = [item("a"), item("b"), item("c")]
        orchestrator, plan, _ = build(items, outcomes={"a": "failed"})

        summary = await orchestrator.start_execution(plan)

        statuses = {r.work_item_id: r.status for r in summary.results}
        assert statuses == {"a": "failed", "b": "completed", "c": "completed"}
        assert summary.results[0].error == "Process exited with code 1"
        assert plan.get_item("a").status == WorkItemStatus.FAILED
        # Failed worktree removed but its branch kept
        assert ("a", False) in orchestrator.worktree_manager.cleaned

        print("[PASS]")

    async def test_dependents_of_failed_item_are_skipped(self):
        items = [item("a"), item("d"), item("b", "a"), item("c", "d")]
        orchestrator, plan, tracker = build(items, outcomes={"a": "failed"})

        summary = await orchestrator.start_execution(plan)

        statuses = {r.work_item_id: r.status for r in summary.results}
        assert statuses["b"] == "skipped"
        assert statuses["c"] == "completed"
        assert "b" not in tracker.started
        assert "Blocked by unsatisfied dependencies: a" in next(
            r.error for r in summary.results if r.work_item_id == "b"
        )
        assert summary.skipped == 1

    async def test_dispatch_policy_runs_dependents_anyway(self):
        items = [item("a"), item("b", "a")]
        orchestrator, plan, tracker = build(
            items, outcomes={"a": "failed"}, dependency_failure_policy="dispatch"
        )

        summary = await orchestrator.start_execution(plan)

        assert "b" in tracker.started
        assert {r.work_item_id: r.status for r in summary.results} == {"a": "failed", "b": "completed"}

    async def test_worktree_failure_fails_only_that_item(self):
        items = [item("a"), item("b")]
        orchestrator, plan, tracker = build(items, worktrees=MockWorktreeManager(fail_ids={"a"}))

        summary = await orchestrator.start_execution(plan)

        result = summary.results[0]
        assert result.status == "failed"
        assert result.session_id is None
        assert "[E0025]" in result.error
        assert tracker.started == ["b"]

    async def test_spawn_failure_fails_only_that_item(self):
        items = [item("a"), item("b")]
        orchestrator, plan, _ = build(items, outcomes={"a": "spawn_error"})

        summary = await orchestrator.start_execution(plan)

        assert [r.status for r in summary.results] == ["failed", "completed"]
        assert summary.results[0].error.startswith("Failed to start session")

    async def test_merge_conflict_blocks_dependents_until_retry(self):
        print("\n=== Test: Merge Conflict ===")

        items = [item("a"), item("b", "a")]
        merge = MockMergeCoordinator(conflict_ids={"a"})
        orchestrator, plan, tracker = build(items, merge=merge)

        summary = await orchestrator.start_execution(plan)

        results = {r.work_item_id: r for r in summary.results}
        assert results["a"].status == "failed"
        assert results["a"].merge.conflict_files == ["shared.txt"]
        assert "Merge conflict in: shared.txt" == results["a"].error
        assert results["b"].status == "skipped"
        assert summary.merge_conflicts == 1

        retry = await orchestrator.retry_merge("a")

        assert retry.success is True
        assert orchestrator.snapshot().completed_work_item_ids == ["a"]
        assert plan.get_item("a").status == WorkItemStatus.COMPLETED

        print("[PASS]")


class TestStopAndCancel:

    async def test_stop_mid_wave(self):
        """stop_execution cancels running sessions and no later wave starts."""
        print("\n=== Test: Stop Mid-Wave ===")

        items = [item("a"), item("b"), item("c", "a")]
        orchestrator, plan, tracker = build(items, outcomes={"a": "hang", "b": "hang"})

        run = asyncio.create_task(orchestrator.start_execution(plan))
        await wait_until(lambda: len(tracker.started) == 2)
        assert orchestrator.state == RunState.RUNNING
        assert orchestrator.get_status()['active_session_count'] == 2

        cancelled = await orchestrator.stop_execution()
        assert cancelled == 2
        assert orchestrator.state == RunState.CANCELLED

        summary = await run

        assert summary.state == RunState.CANCELLED
        assert "c" not in tracker.started
        assert {r.work_item_id: r.status for r in summary.results} == {"a": "cancelled", "b": "cancelled"}
        assert summary.not_started == 1
        assert plan.get_item("a").status == WorkItemStatus.PENDING
        assert orchestrator.merge_coordinator.batches == []
        assert orchestrator.snapshot().current_wave_index == 0

        print("[PASS]")

    async def test_stop_blocks_remaining_batches(self):
        items = [item("a"), item("b"), item("c")]
        orchestrator, plan, tracker = build(items, max_parallel=1, outcomes={"a": "hang"})

        run = asyncio.create_task(orchestrator.start_execution(plan))
        await wait_until(lambda: tracker.started == ["a"])
        await orchestrator.stop_execution()
        summary = await run

        assert tracker.started == ["a"]
        statuses = {r.work_item_id: r.status for r in summary.results}
        assert statuses == {"a": "cancelled", "b": "cancelled", "c": "cancelled"}
        assert summary.results[1].error == "Execution stopped before dispatch"

    async def test_stop_when_idle_is_noop(self):
        orchestrator, _, _ = build([item("a")])

        assert await orchestrator.stop_execution() == 0
        assert orchestrator.state == RunState.IDLE

    async def test_cancel_single_session(self):
        items = [item("a"), item("b")]
        orchestrator, plan, tracker = build(items, outcomes={"a": "hang"})

        run = asyncio.create_task(orchestrator.start_execution(plan))
        await wait_until(lambda: "session-a" in orchestrator.sessions)

        assert orchestrator.cancel_session("session-a") is True
        assert orchestrator.cancel_session("session-a") is False
        assert orchestrator.cancel_session("nope") is False

        summary = await run
        assert summary.state == RunState.COMPLETED
        assert {r.work_item_id: r.status for r in summary.results} == {"a": "cancelled", "b": "completed"}

    async def test_start_while_running_raises(self):
        orchestrator, plan, tracker = build([item("a")], outcomes={"a": "hang"})

        run = asyncio.create_task(orchestrator.start_execution(plan))
        await wait_until(lambda: tracker.started == ["a"])

        with pytest.raises(OrchestratorError):
            await orchestrator.start_execution(plan)
        with pytest.raises(OrchestratorError):
            orchestrator.restore(ExecutionSnapshot())

        await orchestrator.stop_execution()
        await run


class TestSnapshot:

    async def test_snapshot_after_run(self):
        items = [item("a"), item("b", "a")]
        orchestrator, plan, _ = build(items)

        await orchestrator.start_execution(plan)
        snapshot = orchestrator.snapshot()

        assert snapshot.completed_work_item_ids == ["a", "b"]
        assert snapshot.current_wave_index == 2

    async def test_restore_resumes_from_wave(self):
        """Restored items are not re-run; execution resumes at the saved wave."""
        items = [item("a"), item("b", "a"), item("c")]
        orchestrator, plan, tracker = build(items)

        orchestrator.restore(ExecutionSnapshot(completed_work_item_ids=["a", "c"], current_wave_index=1))
        summary = await orchestrator.start_execution(plan)

        assert tracker.started == ["b"]
        assert summary.completed == 1
        assert plan.get_item("a").status == WorkItemStatus.COMPLETED
        assert orchestrator.snapshot().completed_work_item_ids == ["a", "c", "b"]

    async def test_fresh_run_forgets_previous_progress(self):
        items = [item("a")]
        orchestrator, plan, tracker = build(items)

        await orchestrator.start_execution(plan)
        await orchestrator.start_execution(WaveScheduler().build_plan([item("a")]))

        assert tracker.started == ["a", "a"]


class TestConfiguration:

    def test_rejects_out_of_range_parallelism(self):
        config = RunnerConfig.model_construct(max_parallel_sessions=0)

        with pytest.raises(ConfigError):
            ExecutionOrchestrator(config=config, worktree_manager=MockWorktreeManager())

    def test_status_before_run(self):
        orchestrator, _, _ = build([item("a")], max_parallel=3)

        status = orchestrator.get_status()
        assert status['state'] == "idle"
        assert status['max_parallel_sessions'] == 3
        assert status['running_sessions'] == []


class TestUnexpectedErrors:

    def make(self, factory, worktrees=None, **config_values):
        return ExecutionOrchestrator(
            config=RunnerConfig(**config_values),
            worktree_manager=worktrees or MockWorktreeManager(),
            merge_coordinator=MockMergeCoordinator(),
            events=EventChannel(),
            session_factory=factory,
        )

    async def test_factory_error_releases_worktree(self):
        """A session factory that raises leaves no worktree behind."""
        print("\n=== Test: Factory Error ===")

        tracker = ConcurrencyTracker()
        broken = {"a"}

        def factory(work_item, worktree_path):
            if work_item.id in broken:
                raise ValueError("session_command is empty")
            return FakeSession(work_item, tracker)

        worktrees = MockWorktreeManager()
        orchestrator = self.make(factory, worktrees=worktrees, auto_cleanup=False)

        summary = await orchestrator.start_execution(WaveScheduler().build_plan([item("a"), item("b")]))

        statuses = {r.work_item_id: r.status for r in summary.results}
        assert statuses == {"a": "failed", "b": "completed"}
        assert "session_command is empty" in summary.results[0].error
        assert ("a", False) in worktrees.cleaned
        assert not worktrees.has_worktree("a")
        assert len(orchestrator.sessions) == 0

        # A rerun can create the worktree again
        broken.clear()
        summary = await orchestrator.start_execution(WaveScheduler().build_plan([item("a")]))
        assert summary.results[0].status == "completed"
        assert worktrees.created.count("a") == 2

        print("[PASS]")

    async def test_duplicate_session_id_keeps_other_session(self):
        tracker = ConcurrencyTracker()

        def factory(work_item, worktree_path):
            session = FakeSession(work_item, tracker, outcome="hang" if work_item.id == "a" else "completed")
            session.session_id = "shared"
            return session

        worktrees = MockWorktreeManager()
        orchestrator = self.make(factory, worktrees=worktrees)

        run = asyncio.create_task(orchestrator.start_execution(WaveScheduler().build_plan([item("a"), item("b")])))
        await wait_until(lambda: any(i == "b" for i, _ in worktrees.cleaned))

        assert orchestrator.sessions.get("shared").work_item_id == "a"
        assert not worktrees.has_worktree("b")

        await orchestrator.stop_execution()
        summary = await run

        statuses = {r.work_item_id: r.status for r in summary.results}
        assert statuses == {"a": "cancelled", "b": "failed"}
        assert "already registered" in summary.results[1].error

    async def test_worktree_cleaned_before_session_is_dropped(self):
        orchestrator, plan, _ = build([item("a")], outcomes={"a": "failed"})
        seen = []
        orchestrator.worktree_manager.on_cleanup = lambda work_item_id: seen.append(
            "session-a" in orchestrator.sessions
        )

        await orchestrator.start_execution(plan)

        assert seen == [True]
        assert "session-a" not in orchestrator.sessions


class TestRunLifecycle:

    async def test_start_initializes_worktree_directory(self):
        orchestrator, plan, _ = build([item("a")])

        await orchestrator.start_execution(plan)

        assert orchestrator.worktree_manager.initialized == 1

    async def test_reservation(self):
        print("\n=== Test: Reservation ===")

        orchestrator, plan, tracker = build([item("a")])

        orchestrator.reserve()
        assert orchestrator.is_running is True

        with pytest.raises(OrchestratorError):
            orchestrator.reserve()
        with pytest.raises(OrchestratorError):
            await orchestrator.start_execution(plan)
        with pytest.raises(OrchestratorError):
            orchestrator.restore(ExecutionSnapshot())

        summary = await orchestrator.start_execution(plan, reserved=True)

        assert summary.completed == 1
        assert orchestrator.is_running is False
        assert tracker.started == ["a"]

        print("[PASS]")

    async def test_release_drops_reservation(self):
        orchestrator, plan, _ = build([item("a")])

        orchestrator.reserve()
        orchestrator.release()

        assert orchestrator.is_running is False
        assert (await orchestrator.start_execution(plan)).completed == 1
