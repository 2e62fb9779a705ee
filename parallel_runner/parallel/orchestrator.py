"""
Execution Orchestrator
======================

Drives an execution plan wave by wave.

Key Features:
- Waves run strictly in order; wave N+1 starts only after wave N settles
- Each wave is split into batches of at most max_parallel_sessions items
- Settle-all: one item's failure never aborts its batch or wave
- Dependents of unsatisfied items are skipped (configurable)
- Global stop, per-session cancel and explicit merge retry
- Resumable through snapshot()/restore()
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
import asyncio
import logging
import time

from parallel_runner.config import RunnerConfig
from parallel_runner.errors import (
    EXECUTION_ALREADY_RUNNING,
    ConfigError,
    OrchestratorError,
    SessionError,
    WorktreeError,
)
from parallel_runner.execution_plan import (
    ExecutionPlan,
    ExecutionSnapshot,
    Wave,
    WorkItem,
    WorkItemStatus,
)
from parallel_runner.parallel.events import (
    EventChannel,
    ExecutionComplete,
    WaveCompleted,
    WaveStarted,
)
from parallel_runner.parallel.merge_coordinator import MergeCoordinator, MergeResult
from parallel_runner.parallel.registry import Registry
from parallel_runner.parallel.session_supervisor import (
    SessionStatus,
    SessionSupervisor,
    build_session_command,
    build_session_prompt,
)
from parallel_runner.parallel.worktree_manager import WorktreeManager, WorktreeState

logger = logging.getLogger(__name__)

# Builds a session for (work item, worktree path)
SessionFactory = Callable[[WorkItem, str], SessionSupervisor]


class RunState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


@dataclass
class ItemResult:
    """
    Outcome of one work item in a run.

    Attributes:
        work_item_id: Work item
        wave_number: Wave the item belongs to
        status: "completed", "failed", "skipped" or "cancelled"
        session_id: Session that ran the item (None if never dispatched)
        error: Error message for anything but "completed"
        merge: Merge result, if a merge was attempted
        duration: Seconds from dispatch to terminal status
    """
    work_item_id: str
    wave_number: int
    status: str
    session_id: Optional[str] = None
    error: Optional[str] = None
    merge: Optional[MergeResult] = None
    duration: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'work_item_id': self.work_item_id,
            'wave_number': self.wave_number,
            'status': self.status,
            'session_id': self.session_id,
            'error': self.error,
            'merge': self.merge.to_dict() if self.merge else None,
            'duration': round(self.duration, 3),
        }


@dataclass
class ExecutionSummary:
    """Aggregated outcome of a run."""
    state: RunState
    total_items: int
    total_waves: int
    waves_completed: int
    duration: float
    results: List[ItemResult] = field(default_factory=list)

    def _count(self, status: str) -> int:
        return sum(1 for r in self.results if r.status == status)

    @property
    def completed(self) -> int:
        return self._count("completed")

    @property
    def failed(self) -> int:
        return self._count("failed")

    @property
    def skipped(self) -> int:
        return self._count("skipped")

    @property
    def cancelled(self) -> int:
        return self._count("cancelled")

    @property
    def merged(self) -> int:
        return sum(1 for r in self.results if r.merge is not None and r.merge.success)

    @property
    def merge_conflicts(self) -> int:
        return sum(1 for r in self.results if r.merge is not None and r.merge.has_conflicts)

    @property
    def not_started(self) -> int:
        return self.total_items - len(self.results)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'state': self.state.value,
            'total_items': self.total_items,
            'total_waves': self.total_waves,
            'waves_completed': self.waves_completed,
            'completed': self.completed,
            'failed': self.failed,
            'skipped': self.skipped,
            'cancelled': self.cancelled,
            'not_started': self.not_started,
            'merged': self.merged,
            'merge_conflicts': self.merge_conflicts,
            'duration': round(self.duration, 3),
            'results': [r.to_dict() for r in self.results],
        }


class ExecutionOrchestrator:
    """
    Runs execution plans with bounded concurrency.

    Run state machine: idle -> running -> (completed | cancelled).
    """

    def __init__(
        self,
        config: RunnerConfig,
        worktree_manager: WorktreeManager,
        merge_coordinator: Optional[MergeCoordinator] = None,
        events: Optional[EventChannel] = None,
        sessions: Optional[Registry] = None,
        session_factory: Optional[SessionFactory] = None
    ):
        """
        Initialize orchestrator.

        Args:
            config: Runner configuration
            worktree_manager: Creates and removes per-item worktrees
            merge_coordinator: Integrates completed items (None disables merging)
            events: Channel lifecycle events are published on
            sessions: Registry of live sessions keyed by session id
            session_factory: Builds a session for an item; defaults to a
                SessionSupervisor running config.session_command
        """
        max_parallel = config.max_parallel_sessions
        if not isinstance(max_parallel, int) or not 1 <= max_parallel <= 10:
            raise ConfigError(
                f"max_parallel_sessions must be between 1 and 10, got {max_parallel}"
            )

        self.config = config
        self.max_parallel = max_parallel
        self.worktree_manager = worktree_manager
        self.merge_coordinator = merge_coordinator
        self.events = events if events is not None else EventChannel(config.event_queue_size)
        self.sessions: Registry = sessions if sessions is not None else Registry("sessions")
        self.session_factory: SessionFactory = session_factory or self._default_session_factory

        self.state = RunState.IDLE
        self.plan: Optional[ExecutionPlan] = None
        self.current_wave_index = 0

        self._stop_event = asyncio.Event()
        self._in_progress = False
        self._reserved = False
        self._restored = False
        self._completed_ids: List[str] = []
        self._results: Dict[str, ItemResult] = {}
        self._waves_completed = 0
        self._started_at: Optional[float] = None

        logger.info(f"ExecutionOrchestrator initialized (max_parallel_sessions={max_parallel})")

    @classmethod
    def create(
        cls,
        project_path: str,
        config: Optional[RunnerConfig] = None,
        events: Optional[EventChannel] = None,
        session_factory: Optional[SessionFactory] = None
    ) -> "ExecutionOrchestrator":
        """Wire up a worktree manager and merge coordinator for a repository."""
        config = config or RunnerConfig()
        events = events if events is not None else EventChannel(config.event_queue_size)
        worktree_manager = WorktreeManager(
            project_path=project_path,
            worktree_dir=config.worktree_dir,
            base_branch=config.target_branch,
            stale_lock_seconds=config.stale_lock_seconds,
        )
        merge_coordinator = MergeCoordinator.from_config(config, project_path, worktree_manager, events=events)
        return cls(
            config=config,
            worktree_manager=worktree_manager,
            merge_coordinator=merge_coordinator,
            events=events,
            session_factory=session_factory,
        )

    @property
    def is_running(self) -> bool:
        """True from reserve() or start_execution() until the run has fully settled."""
        return self._in_progress or self._reserved

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    def reserve(self) -> None:
        """
        Claim the orchestrator for a run that will be started later with
        start_execution(plan, reserved=True).

        Raises:
            OrchestratorError: If a run is in progress or already reserved
        """
        if self.is_running:
            raise OrchestratorError("Execution already in progress", code=EXECUTION_ALREADY_RUNNING)
        self._reserved = True

    def release(self) -> None:
        """Drop a reservation that will not be followed by start_execution()."""
        self._reserved = False

    async def start_execution(self, plan: ExecutionPlan, reserved: bool = False) -> ExecutionSummary:
        """
        Execute a plan to completion or until stopped.

        Args:
            plan: Plan from WaveScheduler.build_plan()
            reserved: Whether the caller holds the reservation from reserve()

        Returns:
            ExecutionSummary

        Raises:
            OrchestratorError: If a run is already in progress, or reserved
                by another caller
        """
        if self._in_progress or (self._reserved and not reserved):
            raise OrchestratorError("Execution already in progress", code=EXECUTION_ALREADY_RUNNING)

        self._reserved = False
        self._in_progress = True
        self.state = RunState.RUNNING
        self.plan = plan
        self._stop_event.clear()
        self._results = {}
        self._waves_completed = 0
        self._started_at = time.monotonic()

        if not self._restored:
            self._completed_ids = []
            self.current_wave_index = 0
        self._restored = False
        start_index = self.current_wave_index

        logger.info(f"Starting execution: {plan.total_items} items in {plan.wave_count} waves")
        if start_index:
            logger.info(f"Resuming at wave {start_index}")

        try:
            await self.worktree_manager.initialize()

            for index, wave in enumerate(plan.waves):
                if index < start_index:
                    self._mark_restored(wave)
                    continue
                if self._stop_event.is_set():
                    logger.info(f"Stop requested, not starting wave {wave.wave_number}")
                    break

                self.current_wave_index = index
                await self._run_wave(wave)

                if self._stop_event.is_set():
                    break
                self._waves_completed += 1
                self.current_wave_index = index + 1

        finally:
            self.state = RunState.CANCELLED if self._stop_event.is_set() else RunState.COMPLETED
            self._in_progress = False

        summary = self._build_summary()
        self.events.publish(ExecutionComplete(summary=summary.to_dict()))
        logger.info(
            f"Execution {summary.state.value}: {summary.completed} completed, {summary.failed} failed, "
            f"{summary.skipped} skipped, {summary.cancelled} cancelled, {summary.merged} merged"
        )
        return summary

    async def stop_execution(self) -> int:
        """
        Stop the run: cancel every live session and admit nothing new.

        Sessions that already reached a terminal status keep it.

        Returns:
            Number of sessions cancelled
        """
        if self.state != RunState.RUNNING:
            logger.info(f"stop_execution ignored, run is {self.state.value}")
            return 0

        logger.info("Stopping execution")
        self._stop_event.set()
        self.state = RunState.CANCELLED

        cancelled = 0
        for session in self.sessions.values():
            if session.terminate():
                cancelled += 1

        logger.info(f"Cancelled {cancelled} running sessions")
        return cancelled

    def cancel_session(self, session_id: str) -> bool:
        """
        Cancel one session without stopping the run.

        Returns:
            True if the session was cancelled, False if unknown or already terminal
        """
        session = self.sessions.get(session_id)
        if session is None:
            logger.warning(f"cancel_session: unknown session {session_id}")
            return False
        return session.terminate()

    async def retry_merge(self, work_item_id: str) -> MergeResult:
        """
        Retry the merge of a completed item after its conflict was resolved.

        Raises:
            OrchestratorError: If merging is disabled
        """
        if self.merge_coordinator is None:
            raise OrchestratorError("Merging is disabled for this orchestrator")

        result = await self.merge_coordinator.retry_merge(work_item_id)
        item_result = self._results.get(work_item_id)
        if item_result is not None:
            item_result.merge = result

        if result.success:
            self._mark_satisfied(work_item_id)
            if item_result is not None:
                item_result.status = "completed"
                item_result.error = None
            item = self.plan.get_item(work_item_id) if self.plan else None
            if item is not None:
                item.status = WorkItemStatus.COMPLETED
        return result

    def snapshot(self) -> ExecutionSnapshot:
        return ExecutionSnapshot(
            completed_work_item_ids=list(self._completed_ids),
            current_wave_index=self.current_wave_index,
        )

    def restore(self, snapshot: ExecutionSnapshot) -> None:
        """
        Load a snapshot so the next start_execution() resumes from it.

        Raises:
            OrchestratorError: If a run is in progress
        """
        if self.is_running:
            raise OrchestratorError("Cannot restore while execution is in progress")

        self._completed_ids = list(dict.fromkeys(snapshot.completed_work_item_ids))
        self.current_wave_index = max(0, snapshot.current_wave_index)
        self._restored = True
        self.state = RunState.IDLE
        logger.info(
            f"Restored snapshot: {len(self._completed_ids)} completed items, "
            f"wave {self.current_wave_index}"
        )

    def get_status(self) -> Dict[str, Any]:
        """
        Get current execution status.

        Returns:
            Dict with run state, wave progress, live sessions and duration
        """
        live = [s.snapshot() for s in self.sessions.values() if not s.is_terminal]
        return {
            'state': self.state.value,
            'current_wave': self.current_wave_index,
            'total_waves': self.plan.wave_count if self.plan else 0,
            'total_items': self.plan.total_items if self.plan else 0,
            'completed_items': list(self._completed_ids),
            'running_sessions': [info.to_dict() for info in live],
            'active_session_count': len(live),
            'max_parallel_sessions': self.max_parallel,
            'total_duration': time.monotonic() - self._started_at if self._started_at else 0.0,
        }

    # -------------------------------------------------------------------------
    # Wave execution
    # -------------------------------------------------------------------------

    async def _run_wave(self, wave: Wave) -> None:
        logger.info(f"Starting wave {wave.wave_number} with {len(wave)} items")
        self.events.publish(WaveStarted(wave_number=wave.wave_number, item_ids=wave.item_ids))

        runnable: List[WorkItem] = []
        for item in wave.items:
            if self._is_satisfied(item.id):
                item.status = WorkItemStatus.COMPLETED
                continue

            unsatisfied = [dep for dep in item.dependencies if not self._is_satisfied(dep)]
            if unsatisfied and self.config.dependency_failure_policy == "skip":
                message = f"Blocked by unsatisfied dependencies: {', '.join(unsatisfied)}"
                logger.warning(f"Skipping {item.id}: {message}")
                item.status = WorkItemStatus.FAILED
                self._results[item.id] = ItemResult(
                    work_item_id=item.id,
                    wave_number=wave.wave_number,
                    status="skipped",
                    error=message,
                )
                continue

            runnable.append(item)

        for start in range(0, len(runnable), self.max_parallel):
            if self._stop_event.is_set():
                break

            batch = runnable[start:start + self.max_parallel]
            logger.info(f"Wave {wave.wave_number}: dispatching {[item.id for item in batch]}")

            outcomes = await asyncio.gather(
                *(self._run_item(item, wave.wave_number) for item in batch),
                return_exceptions=True
            )
            for item, outcome in zip(batch, outcomes):
                if isinstance(outcome, BaseException):
                    logger.error(f"Unexpected error running {item.id}: {outcome!r}")
                    item.status = WorkItemStatus.FAILED
                    self._results[item.id] = ItemResult(
                        work_item_id=item.id,
                        wave_number=wave.wave_number,
                        status="failed",
                        error=f"Unexpected error: {outcome}",
                    )

            await self._integrate(batch)

        for item in runnable:
            if item.id not in self._results:
                self._results[item.id] = ItemResult(
                    work_item_id=item.id,
                    wave_number=wave.wave_number,
                    status="cancelled",
                    error="Execution stopped before dispatch",
                )

        wave_results = [self._results[item.id] for item in wave.items if item.id in self._results]
        self.events.publish(WaveCompleted(
            wave_number=wave.wave_number,
            completed=sum(1 for r in wave_results if r.status == "completed"),
            failed=sum(1 for r in wave_results if r.status == "failed"),
            skipped=sum(1 for r in wave_results if r.status == "skipped"),
        ))
        logger.info(f"Wave {wave.wave_number} settled")

    async def _run_item(self, item: WorkItem, wave_number: int) -> None:
        """Run one item to a terminal status. Never raises for item-level failures."""
        result = ItemResult(work_item_id=item.id, wave_number=wave_number, status="cancelled")
        self._results[item.id] = result

        if self._stop_event.is_set():
            result.error = "Execution stopped before dispatch"
            return

        item.status = WorkItemStatus.RUNNING
        started = time.monotonic()

        try:
            worktree = await self.worktree_manager.create(item.id, item.title)
        except WorktreeError as e:
            logger.error(f"Worktree creation failed for {item.id}: {e.format()}")
            item.status = WorkItemStatus.FAILED
            result.status = "failed"
            result.error = e.format()
            result.duration = time.monotonic() - started
            return

        session = None
        registered = False
        try:
            session = self.session_factory(item, worktree.path)
            result.session_id = session.session_id
            self.sessions.register(session.session_id, session)
            registered = True

            self.worktree_manager.mark_state(item.id, WorktreeState.ACTIVE)

            if self._stop_event.is_set():
                session.terminate()
            else:
                try:
                    await session.start()
                except SessionError as e:
                    logger.error(f"Session for {item.id} failed to start: {e.format()}")

            status = await session.wait()
            await session.close()
        except Exception as e:
            logger.error(f"Unexpected error running {item.id}: {e!r}", exc_info=True)
            if session is not None:
                session.terminate()
            # The worktree and its lock are released even without auto_cleanup
            await self._cleanup(item.id, delete_branch=False)
            if registered:
                self.sessions.remove(session.session_id)
            item.status = WorkItemStatus.FAILED
            result.status = "failed"
            result.error = f"Unexpected error: {e}"
            return
        finally:
            result.duration = time.monotonic() - started

        if status == SessionStatus.COMPLETED:
            item.status = WorkItemStatus.COMPLETED
            result.status = "completed"
        elif status == SessionStatus.CANCELLED:
            item.status = WorkItemStatus.PENDING
            result.status = "cancelled"
            result.error = session.error or "Session cancelled"
        else:
            item.status = WorkItemStatus.FAILED
            result.status = "failed"
            result.error = session.error or "Session failed"

        if status != SessionStatus.COMPLETED:
            if self.config.auto_cleanup:
                await self._cleanup(item.id, delete_branch=False)
            self.sessions.remove(session.session_id)

    async def _integrate(self, batch: List[WorkItem]) -> None:
        """Merge (or clean up) completed items of a batch in member order, then drop their sessions."""
        completed = [item for item in batch if self._results[item.id].status == "completed"]

        if self.merge_coordinator is None:
            for item in completed:
                self._mark_satisfied(item.id)
                if self.config.auto_cleanup:
                    await self._cleanup(item.id, delete_branch=False)
        elif completed:
            merges = await self.merge_coordinator.merge_batch([item.id for item in completed])
            for item, merge in zip(completed, merges):
                result = self._results[item.id]
                result.merge = merge
                if merge.success:
                    self._mark_satisfied(item.id)
                else:
                    item.status = WorkItemStatus.FAILED
                    result.status = "failed"
                    if merge.has_conflicts:
                        result.error = f"Merge conflict in: {', '.join(merge.conflict_files)}"
                    else:
                        result.error = merge.error or "Merge failed"

        for item in completed:
            session_id = self._results[item.id].session_id
            if session_id:
                self.sessions.remove(session_id)

    async def _cleanup(self, work_item_id: str, delete_branch: bool) -> None:
        try:
            await self.worktree_manager.cleanup(work_item_id, delete_branch=delete_branch)
        except WorktreeError as e:
            logger.warning(f"Cleanup failed for {work_item_id}: {e.format()}")

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _is_satisfied(self, work_item_id: str) -> bool:
        return work_item_id in self._completed_ids

    def _mark_satisfied(self, work_item_id: str) -> None:
        if work_item_id not in self._completed_ids:
            self._completed_ids.append(work_item_id)

    def _mark_restored(self, wave: Wave) -> None:
        for item in wave.items:
            if self._is_satisfied(item.id):
                item.status = WorkItemStatus.COMPLETED

    def _build_summary(self) -> ExecutionSummary:
        plan = self.plan
        ordered = []
        if plan is not None:
            ordered = [self._results[item.id] for item in plan.all_items() if item.id in self._results]
        return ExecutionSummary(
            state=self.state,
            total_items=plan.total_items if plan else 0,
            total_waves=plan.wave_count if plan else 0,
            waves_completed=self._waves_completed,
            duration=time.monotonic() - self._started_at if self._started_at else 0.0,
            results=ordered,
        )

    def _default_session_factory(self, item: WorkItem, worktree_path: str) -> SessionSupervisor:
        markers = self.config.completion_markers
        prompt = build_session_prompt(item, markers[0]) if markers else build_session_prompt(item)
        command = build_session_command(self.config.session_command, item, prompt)
        return SessionSupervisor(
            work_item_id=item.id,
            worktree_path=worktree_path,
            command=command,
            events=self.events,
            max_output_chars=self.config.output_buffer_chars,
            completion_markers=self.config.completion_markers,
            failure_markers=self.config.failure_markers,
        )
