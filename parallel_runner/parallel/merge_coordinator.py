"""
Merge Coordinator
=================

Integrates completed work item branches into the target (trunk) branch.

Key Features:
- One global lock serializes every trunk mutation
- squash, merge and rebase strategies
- Auto-commits pending worktree changes before merging
- Conflicts are isolated per work item: the merge is aborted, the worktree
  and branch are kept, and the conflict is recorded for an explicit retry
- Optional test gate with rollback, optional push
- Cleans up the worktree after a successful merge
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple
import asyncio
import logging
import time

from parallel_runner.errors import ConfigError, MergeConflictError, MergeError, WorktreeError
from parallel_runner.parallel.events import EventChannel, MergeConflictDetected
from parallel_runner.parallel.git import GitCommandError, run_git
from parallel_runner.parallel.worktree_manager import WorktreeInfo, WorktreeManager, WorktreeState

logger = logging.getLogger(__name__)

MERGE_STRATEGIES = ("squash", "merge", "rebase")


@dataclass
class MergeResult:
    """
    Outcome of one merge attempt.

    Attributes:
        work_item_id: Work item that was merged
        success: Whether the branch is now part of the target branch
        strategy: Strategy used
        conflict_files: Unmerged paths (only set on conflict)
        error: Error message for non-conflict failures
        commit: Target branch HEAD after a successful merge
        test_output: Output of the test gate, if it ran
        cleaned_up: Whether the worktree was removed afterwards
        duration: Seconds spent, including waiting for the trunk lock
    """
    work_item_id: str
    success: bool
    strategy: str
    conflict_files: List[str] = field(default_factory=list)
    error: Optional[str] = None
    commit: Optional[str] = None
    test_output: Optional[str] = None
    cleaned_up: bool = False
    duration: float = 0.0

    @property
    def has_conflicts(self) -> bool:
        return bool(self.conflict_files)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'work_item_id': self.work_item_id,
            'success': self.success,
            'strategy': self.strategy,
            'conflict_files': list(self.conflict_files),
            'error': self.error,
            'commit': self.commit,
            'cleaned_up': self.cleaned_up,
            'duration': round(self.duration, 3),
        }


class MergeCoordinator:
    """
    Merges work item branches into the target branch one at a time.
    """

    def __init__(
        self,
        project_path: str,
        worktree_manager: WorktreeManager,
        strategy: str = "merge",
        target_branch: str = "main",
        require_tests_pass: bool = False,
        test_command: Optional[Sequence[str]] = None,
        test_timeout: int = 300,
        auto_cleanup: bool = True,
        push_to_remote: bool = False,
        remote_name: str = "origin",
        events: Optional[EventChannel] = None
    ):
        """
        Initialize merge coordinator.

        Args:
            project_path: Path to the main repository checkout
            worktree_manager: Manager owning the work item worktrees
            strategy: "squash", "merge" or "rebase"
            target_branch: Branch receiving the work
            require_tests_pass: Run test_command after each merge, roll back on failure
            test_command: Test command (default: pytest -q)
            test_timeout: Seconds before the test run is killed
            auto_cleanup: Remove the worktree after a successful merge
            push_to_remote: Push the target branch after each merge
            remote_name: Remote used for pull and push
            events: Channel for conflict events (optional)
        """
        if strategy not in MERGE_STRATEGIES:
            raise ConfigError(
                f"Unknown merge strategy '{strategy}'",
                details=f"expected one of {', '.join(MERGE_STRATEGIES)}",
            )

        self.project_path = Path(project_path)
        self.worktree_manager = worktree_manager
        self.strategy = strategy
        self.target_branch = target_branch
        self.require_tests_pass = require_tests_pass
        self.test_command = list(test_command) if test_command else ["pytest", "-q"]
        self.test_timeout = test_timeout
        self.auto_cleanup = auto_cleanup
        self.push_to_remote = push_to_remote
        self.remote_name = remote_name
        self.events = events

        self.conflicts: Dict[str, List[str]] = {}
        self._trunk_lock = asyncio.Lock()

        logger.info(f"MergeCoordinator initialized for {project_path} (strategy={strategy}, target={target_branch})")

    @classmethod
    def from_config(cls, config, project_path: str, worktree_manager: WorktreeManager,
                    events: Optional[EventChannel] = None) -> "MergeCoordinator":
        return cls(
            project_path=project_path,
            worktree_manager=worktree_manager,
            strategy=config.merge_strategy,
            target_branch=config.target_branch,
            require_tests_pass=config.require_tests_pass,
            test_command=config.test_command,
            test_timeout=config.test_timeout,
            auto_cleanup=config.auto_cleanup,
            push_to_remote=config.push_to_remote,
            remote_name=config.remote_name,
            events=events,
        )

    async def merge(self, work_item_id: str) -> MergeResult:
        """
        Merge one work item's branch into the target branch.

        Never raises for merge problems; they are reported in the result.

        Returns:
            MergeResult
        """
        start = time.monotonic()

        async with self._trunk_lock:
            logger.info(f"Merging {work_item_id} into {self.target_branch} ({self.strategy})")
            try:
                result = await self._merge_locked(work_item_id)
            except MergeConflictError as e:
                logger.warning(f"Merge conflict for {work_item_id}: {e.conflict_files}")
                self.conflicts[work_item_id] = list(e.conflict_files)
                if self.events is not None:
                    self.events.publish(MergeConflictDetected(
                        work_item_id=work_item_id,
                        conflict_files=list(e.conflict_files),
                    ))
                result = MergeResult(
                    work_item_id=work_item_id,
                    success=False,
                    strategy=self.strategy,
                    conflict_files=list(e.conflict_files),
                    error=e.message,
                )
            except (MergeError, WorktreeError) as e:
                logger.error(f"Merge failed for {work_item_id}: {e.format()}")
                result = MergeResult(
                    work_item_id=work_item_id,
                    success=False,
                    strategy=self.strategy,
                    error=e.format(),
                )

        result.duration = time.monotonic() - start
        return result

    async def merge_batch(self, work_item_ids: Sequence[str]) -> List[MergeResult]:
        """
        Merge several work items in the given order.

        Each attempt starts from the then-current target branch; a conflict in
        one item does not stop the others.
        """
        results = []
        for work_item_id in work_item_ids:
            results.append(await self.merge(work_item_id))

        merged = sum(1 for r in results if r.success)
        logger.info(f"Batch merge finished: {merged}/{len(results)} merged")
        return results

    async def retry_merge(self, work_item_id: str) -> MergeResult:
        """Retry a merge after the conflict was resolved on the work branch."""
        logger.info(f"Retrying merge for {work_item_id}")
        return await self.merge(work_item_id)

    # -------------------------------------------------------------------------
    # Merge steps (called with the trunk lock held)
    # -------------------------------------------------------------------------

    async def _merge_locked(self, work_item_id: str) -> MergeResult:
        info = self.worktree_manager.get(work_item_id)
        if info is None:
            raise MergeError(f"No worktree found for {work_item_id}")

        self.worktree_manager.mark_state(work_item_id, WorktreeState.PENDING_MERGE)

        await self._commit_pending(info)
        await self._checkout_target()
        await self._pull_latest()

        before = await self._run_git(['rev-parse', 'HEAD'], timeout=10)

        if self.strategy == "rebase":
            await self._rebase_and_fast_forward(info)
        else:
            await self._merge_branch(info)

        commit = await self._run_git(['rev-parse', 'HEAD'], timeout=10)
        logger.info(f"Merged {info.branch} into {self.target_branch}: {commit}")

        test_output = None
        if self.require_tests_pass:
            passed, test_output = await self.run_test_suite()
            if not passed:
                await self._rollback(before)
                raise MergeError(
                    f"Tests failed after merging {work_item_id}, rolled back",
                    details=test_output[-2000:] if test_output else None,
                )

        if self.push_to_remote:
            try:
                await self._run_git(['push', self.remote_name, self.target_branch], timeout=120)
                logger.info(f"Pushed {self.target_branch} to {self.remote_name}")
            except GitCommandError as e:
                raise MergeError(f"Push to {self.remote_name} failed", details=str(e)) from e

        self.conflicts.pop(work_item_id, None)

        cleaned_up = False
        if self.auto_cleanup:
            try:
                cleaned_up = await self.worktree_manager.cleanup(work_item_id)
            except WorktreeError as e:
                logger.warning(f"Merged {work_item_id} but cleanup failed: {e.format()}")

        return MergeResult(
            work_item_id=work_item_id,
            success=True,
            strategy=self.strategy,
            commit=commit,
            test_output=test_output,
            cleaned_up=cleaned_up,
        )

    async def _commit_pending(self, info: WorktreeInfo) -> None:
        worktree_path = Path(info.path)
        if not worktree_path.exists():
            raise MergeError(f"Worktree directory does not exist: {worktree_path}")

        status = await self._run_git(['status', '--porcelain'], cwd=worktree_path, timeout=30)
        if not status:
            return

        logger.info(f"Committing uncommitted changes in {worktree_path}")
        try:
            await self._run_git(['add', '-A'], cwd=worktree_path, timeout=30)
            await self._run_git(
                ['commit', '-m', f"Auto-commit changes before merge ({info.work_item_id})"],
                cwd=worktree_path,
                timeout=30
            )
        except GitCommandError as e:
            logger.warning(f"Failed to auto-commit changes in {worktree_path}: {e}")

    async def _checkout_target(self) -> None:
        try:
            current = await self._run_git(['rev-parse', '--abbrev-ref', 'HEAD'], timeout=10)
            if current != self.target_branch:
                await self._run_git(['checkout', self.target_branch], timeout=30)
                logger.info(f"Switched to {self.target_branch}")
        except GitCommandError as e:
            raise MergeError(f"Could not check out {self.target_branch}", details=str(e)) from e

    async def _pull_latest(self) -> None:
        try:
            remotes = (await self._run_git(['remote'], timeout=10)).split()
        except GitCommandError as e:
            raise MergeError("Could not list remotes", details=str(e)) from e

        if self.remote_name not in remotes:
            logger.debug(f"No remote '{self.remote_name}', skipping pull")
            return

        try:
            await self._run_git(['pull', '--ff-only', self.remote_name, self.target_branch], timeout=120)
        except GitCommandError as e:
            raise MergeError(f"Could not pull {self.remote_name}/{self.target_branch}", details=str(e)) from e

    async def _merge_branch(self, info: WorktreeInfo) -> None:
        commit_msg = f"Merge {info.work_item_id}: {info.branch}"

        if self.strategy == "squash":
            args = ['merge', '--squash', info.branch]
        else:
            args = ['merge', '--no-ff', '-m', commit_msg, info.branch]

        try:
            await self._run_git(args, timeout=60)
        except GitCommandError as e:
            conflict_files = await self._conflicted_files()
            await self._abort_merge()
            if conflict_files:
                raise MergeConflictError(
                    f"Merge conflict for {info.work_item_id}",
                    conflict_files=conflict_files,
                    details=str(e),
                ) from e
            raise MergeError(f"Merge failed for {info.work_item_id}", details=str(e)) from e

        if self.strategy == "squash":
            try:
                await self._run_git(['commit', '-m', commit_msg], timeout=30)
            except GitCommandError as e:
                if 'nothing to commit' in e.stdout or 'nothing to commit' in str(e):
                    logger.info(f"{info.branch} has no changes to squash")
                    return
                await self._abort_merge()
                raise MergeError(f"Squash commit failed for {info.work_item_id}", details=str(e)) from e

    async def _rebase_and_fast_forward(self, info: WorktreeInfo) -> None:
        worktree_path = Path(info.path)
        try:
            await self._run_git(['rebase', self.target_branch], cwd=worktree_path, timeout=120)
        except GitCommandError as e:
            conflict_files = await self._conflicted_files(cwd=worktree_path)
            try:
                await self._run_git(['rebase', '--abort'], cwd=worktree_path, timeout=30)
            except GitCommandError as abort_error:
                logger.warning(f"git rebase --abort failed: {abort_error}")
            if conflict_files:
                raise MergeConflictError(
                    f"Rebase conflict for {info.work_item_id}",
                    conflict_files=conflict_files,
                    details=str(e),
                ) from e
            raise MergeError(f"Rebase failed for {info.work_item_id}", details=str(e)) from e

        try:
            await self._run_git(['merge', '--ff-only', info.branch], timeout=60)
        except GitCommandError as e:
            raise MergeError(f"Fast-forward failed for {info.work_item_id}", details=str(e)) from e

    async def _conflicted_files(self, cwd: Optional[Path] = None) -> List[str]:
        try:
            output = await self._run_git(['diff', '--name-only', '--diff-filter=U'], cwd=cwd, timeout=30)
        except GitCommandError as e:
            logger.warning(f"Could not list conflicted files: {e}")
            return []
        return [line.strip() for line in output.splitlines() if line.strip()]

    async def _abort_merge(self) -> None:
        """Abort the in-progress merge; squash merges have no MERGE_HEAD so fall back to reset."""
        try:
            await self._run_git(['merge', '--abort'], timeout=30)
            logger.debug("Merge aborted")
        except GitCommandError:
            try:
                await self._run_git(['reset', '--merge'], timeout=30)
                logger.debug("Merge reset")
            except GitCommandError as e:
                logger.error(f"Could not abort merge: {e}")

    async def _rollback(self, commit: str) -> None:
        try:
            await self._run_git(['reset', '--hard', commit], timeout=30)
            logger.info(f"Rolled back {self.target_branch} to {commit}")
        except GitCommandError as e:
            logger.error(f"Error rolling back merge: {e}")

    async def run_test_suite(self) -> Tuple[bool, str]:
        """
        Run the test command in the main checkout.

        Returns:
            Tuple of (success, output)
        """
        logger.info(f"Running test suite: {' '.join(self.test_command)}")

        try:
            proc = await asyncio.create_subprocess_exec(
                *self.test_command,
                cwd=str(self.project_path),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT
            )
        except OSError as e:
            logger.error(f"Test command could not be started: {e}")
            return False, f"Test command could not be started: {e}"

        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=self.test_timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return False, f"Test suite timed out after {self.test_timeout}s"

        output = stdout.decode('utf-8', errors='replace')
        success = proc.returncode == 0
        logger.info(f"Test suite {'passed' if success else 'failed'}")
        return success, output

    async def _run_git(
        self,
        args: List[str],
        cwd: Optional[Path] = None,
        timeout: int = 60
    ) -> str:
        return await run_git(args, cwd=cwd or self.project_path, timeout=timeout)
