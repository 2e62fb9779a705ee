"""
Worktree Manager
================

Manages git worktrees for isolated parallel work item execution.
Each work item gets its own worktree on its own branch.

Key Features:
- Creates and removes one worktree per work item
- Serializes create/cleanup per work item id
- Marks ownership with a lock file and reclaims stale leftovers by age
- Handles branch naming (Windows-safe)
- Idempotent cleanup
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
import asyncio
import hashlib
import logging
import os
import re
import shutil
import time

from parallel_runner.errors import WorktreeError
from parallel_runner.parallel.git import GitCommandError, run_git
from parallel_runner.parallel.registry import Registry

logger = logging.getLogger(__name__)

# Git messages that mean a previous run left worktree metadata behind
_LEFTOVER_MARKERS = (
    'already exists',
    'already checked out',
    'is already used by worktree',
    'missing but locked worktree',
    'is a missing but already registered worktree',
)


class WorktreeState(str, Enum):
    CREATED = "created"
    ACTIVE = "active"
    PENDING_MERGE = "pending_merge"
    CLEANED = "cleaned"


@dataclass
class WorktreeInfo:
    """
    Information about a worktree.

    Attributes:
        path: Filesystem path to worktree
        branch: Git branch name
        work_item_id: Work item this worktree belongs to
        state: Current lifecycle state
        created_at: When worktree was created
    """
    path: str
    branch: str
    work_item_id: str
    state: WorktreeState
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            'work_item_id': self.work_item_id,
            'path': self.path,
            'branch': self.branch,
            'state': self.state.value,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


class WorktreeManager:
    """
    Manages git worktrees for parallel execution isolation.

    The injected registry is the single source of truth for which worktrees
    exist. Each worktree is owned by exactly one session at a time.
    """

    def __init__(
        self,
        project_path: str,
        worktree_dir: str = ".worktrees",
        base_branch: Optional[str] = None,
        stale_lock_seconds: float = 3600.0,
        registry: Optional[Registry] = None,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize worktree manager.

        Args:
            project_path: Path to project repository
            worktree_dir: Directory for worktrees (relative to project root)
            base_branch: Branch new work branches start from (detected if None)
            stale_lock_seconds: Age after which leftover locks are reclaimed
            registry: Registry of live worktrees (a private one is created if None)
            clock: Wall clock used for lock ages
        """
        self.project_path = Path(project_path)
        self.worktree_dir = worktree_dir
        self.base_branch = base_branch
        self.stale_lock_seconds = stale_lock_seconds
        self.registry: Registry = registry if registry is not None else Registry("worktrees")
        self._clock = clock
        self._id_locks: Dict[str, asyncio.Lock] = {}
        logger.info(f"WorktreeManager initialized for {self.project_path}")

    @property
    def worktree_root(self) -> Path:
        return self.project_path / self.worktree_dir

    async def initialize(self) -> None:
        """
        Create the worktree directory and keep it out of the main checkout's status.
        """
        self.worktree_root.mkdir(parents=True, exist_ok=True)

        exclude_file = self.project_path / '.git' / 'info' / 'exclude'
        if exclude_file.parent.is_dir():
            entry = f"/{self.worktree_dir.strip('/')}/"
            existing = exclude_file.read_text(encoding='utf-8') if exclude_file.exists() else ""
            if entry not in existing.splitlines():
                with open(exclude_file, 'a', encoding='utf-8') as f:
                    if existing and not existing.endswith('\n'):
                        f.write('\n')
                    f.write(entry + '\n')

        logger.info(f"Worktree directory initialized at {self.worktree_root}")

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get(self, work_item_id: str) -> Optional[WorktreeInfo]:
        return self.registry.get(work_item_id)

    def has_worktree(self, work_item_id: str) -> bool:
        return work_item_id in self.registry

    def list_worktrees(self) -> List[WorktreeInfo]:
        return self.registry.values()

    def mark_state(self, work_item_id: str, state: WorktreeState) -> None:
        info = self.registry.get(work_item_id)
        if info is None:
            raise WorktreeError(
                f"No worktree found for {work_item_id}",
                kind="not_found",
                work_item_id=work_item_id,
            )
        info.state = state

    def get_worktree_status(self) -> Dict[str, Any]:
        """
        Get current worktree status.

        Returns:
            Dict with total count, per-state counts, oldest/newest creation
            time and a list of worktree dicts
        """
        worktrees = self.list_worktrees()
        by_state = {state.value: 0 for state in WorktreeState}
        for wt in worktrees:
            by_state[wt.state.value] += 1

        created = sorted(wt.created_at for wt in worktrees)
        return {
            'total_worktrees': len(worktrees),
            'by_state': by_state,
            'oldest': created[0].isoformat() if created else None,
            'newest': created[-1].isoformat() if created else None,
            'worktrees': [wt.to_dict() for wt in worktrees],
        }

    def worktree_name_for(self, work_item_id: str) -> str:
        """
        Directory and branch component for a work item.

        Ids that do not survive sanitizing unchanged get a digest of the raw
        id appended, so distinct ids never share a worktree or branch.
        """
        name = self._sanitize_branch_name(work_item_id)
        if name != work_item_id:
            digest = hashlib.sha1(work_item_id.encode("utf-8")).hexdigest()[:8]
            name = f"{name}-{digest}"
        return name

    def worktree_path_for(self, work_item_id: str) -> Path:
        return self.worktree_root / self.worktree_name_for(work_item_id)

    def lock_path_for(self, work_item_id: str) -> Path:
        return self.worktree_root / f"{self.worktree_name_for(work_item_id)}.lock"

    def branch_for(self, work_item_id: str) -> str:
        return f"feature/{self.worktree_name_for(work_item_id)}"

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def _lock_for(self, work_item_id: str) -> asyncio.Lock:
        lock = self._id_locks.get(work_item_id)
        if lock is None:
            lock = asyncio.Lock()
            self._id_locks[work_item_id] = lock
        return lock

    async def create(self, work_item_id: str, title: str = "") -> WorktreeInfo:
        """
        Create a new worktree for a work item.

        Args:
            work_item_id: Work item id
            title: Work item title (logged only)

        Returns:
            WorktreeInfo for the created worktree

        Raises:
            WorktreeError: already_exists if the id is live, conflict if a
                young leftover lock is present, create_failed on git errors
        """
        async with self._lock_for(work_item_id):
            logger.info(f"Creating worktree for {work_item_id}: {title}")

            if work_item_id in self.registry:
                raise WorktreeError(
                    f"Worktree already exists for {work_item_id}",
                    kind="already_exists",
                    work_item_id=work_item_id,
                )

            worktree_path = self.worktree_path_for(work_item_id)
            lock_path = self.lock_path_for(work_item_id)
            branch_name = self.branch_for(work_item_id)

            reclaimed = await self._reclaim_if_stale(work_item_id, worktree_path, lock_path)

            self.worktree_root.mkdir(parents=True, exist_ok=True)
            self._write_lock(lock_path, work_item_id)

            for attempt in (1, 2):
                try:
                    await self._add_worktree(worktree_path, branch_name)
                    break
                except GitCommandError as e:
                    self._discard_directory(worktree_path)
                    if attempt == 1 and not reclaimed and self._is_leftover_error(e):
                        logger.warning(f"Leftover git state for {work_item_id}, reclaiming and retrying once")
                        await self._remove_leftovers(worktree_path, branch_name, lock_path=None)
                        reclaimed = True
                        continue
                    self._remove_lock(lock_path)
                    logger.error(f"Failed to create worktree for {work_item_id}: {e}")
                    raise WorktreeError(
                        f"Failed to create worktree for {work_item_id}",
                        kind="create_failed",
                        work_item_id=work_item_id,
                        details=str(e),
                    ) from e

            worktree_info = WorktreeInfo(
                path=str(worktree_path),
                branch=branch_name,
                work_item_id=work_item_id,
                state=WorktreeState.CREATED,
                created_at=datetime.now()
            )
            self.registry.register(work_item_id, worktree_info)

            logger.info(f"Worktree creation complete: {worktree_info.path}")
            return worktree_info

    async def cleanup(self, work_item_id: str, delete_branch: bool = True) -> bool:
        """
        Remove a worktree, its branch and its lock file.

        Safe to call repeatedly; an absent worktree is a no-op.

        Args:
            work_item_id: Work item id
            delete_branch: Whether to delete the work branch as well

        Returns:
            True if anything was removed

        Raises:
            WorktreeError: remove_failed if the directory survives every attempt
        """
        async with self._lock_for(work_item_id):
            info: Optional[WorktreeInfo] = self.registry.get(work_item_id)
            worktree_path = Path(info.path) if info else self.worktree_path_for(work_item_id)
            branch_name = info.branch if info else self.branch_for(work_item_id)
            lock_path = self.lock_path_for(work_item_id)

            if info is None and not worktree_path.exists() and not lock_path.exists():
                logger.debug(f"No worktree found for {work_item_id}, nothing to clean up")
                return False

            logger.info(f"Cleaning up worktree for {work_item_id}")
            await self._remove_worktree_dir(worktree_path)

            if worktree_path.exists():
                raise WorktreeError(
                    f"Failed to remove worktree directory for {work_item_id}",
                    kind="remove_failed",
                    work_item_id=work_item_id,
                    details=str(worktree_path),
                )

            if delete_branch:
                await self._delete_branch(branch_name)

            self._remove_lock(lock_path)

            if info is not None:
                info.state = WorktreeState.CLEANED
                self.registry.remove(work_item_id)

            logger.info(f"Worktree cleanup complete for {work_item_id}")
            return True

    async def cleanup_all(self, delete_branch: bool = True) -> List[str]:
        """
        Clean up every registered worktree.

        Returns:
            Error messages for worktrees that could not be removed
        """
        errors = []
        for work_item_id in self.registry.keys():
            try:
                await self.cleanup(work_item_id, delete_branch=delete_branch)
            except WorktreeError as e:
                logger.warning(f"Cleanup failed for {work_item_id}: {e}")
                errors.append(f"{work_item_id}: {e.format()}")
        return errors

    # -------------------------------------------------------------------------
    # Stale resources
    # -------------------------------------------------------------------------

    def _leftover_age(self, worktree_path: Path, lock_path: Path) -> Optional[float]:
        """Age in seconds of the leftover lock (or directory), None if nothing is left."""
        for candidate in (lock_path, worktree_path):
            try:
                mtime = candidate.stat().st_mtime
            except FileNotFoundError:
                continue
            return max(0.0, self._clock() - mtime)
        return None

    async def _reclaim_if_stale(self, work_item_id: str, worktree_path: Path, lock_path: Path) -> bool:
        age = self._leftover_age(worktree_path, lock_path)
        if age is None:
            return False

        if age < self.stale_lock_seconds:
            logger.warning(
                f"Worktree for {work_item_id} is locked by another run "
                f"({age:.0f}s old, threshold {self.stale_lock_seconds:.0f}s)"
            )
            raise WorktreeError(
                f"Worktree for {work_item_id} is locked",
                kind="conflict",
                work_item_id=work_item_id,
                recoverable=False,
                details=f"lock age {age:.0f}s is below {self.stale_lock_seconds:.0f}s",
            )

        logger.warning(f"Reclaiming stale worktree for {work_item_id} ({age:.0f}s old)")
        await self._remove_leftovers(worktree_path, self.branch_for(work_item_id), lock_path)
        return True

    async def _remove_leftovers(self, worktree_path: Path, branch_name: str, lock_path: Optional[Path]) -> None:
        try:
            await self._run_git(['worktree', 'remove', '--force', str(worktree_path)], timeout=30)
        except GitCommandError as e:
            logger.debug(f"git worktree remove failed during reclaim: {e}")
        self._discard_directory(worktree_path)

        try:
            await self._run_git(['worktree', 'prune'], timeout=30)
        except GitCommandError as e:
            logger.warning(f"git worktree prune failed: {e}")

        await self._delete_branch(branch_name)

        if lock_path is not None:
            self._remove_lock(lock_path)

    def _is_leftover_error(self, error: GitCommandError) -> bool:
        message = str(error).lower()
        return any(marker in message for marker in _LEFTOVER_MARKERS)

    def _write_lock(self, lock_path: Path, work_item_id: str) -> None:
        lock_path.write_text(
            f"work_item_id={work_item_id}\npid={os.getpid()}\ncreated_at={datetime.now().isoformat()}\n",
            encoding='utf-8'
        )

    def _remove_lock(self, lock_path: Path) -> None:
        try:
            lock_path.unlink()
        except FileNotFoundError:
            pass

    def _discard_directory(self, path: Path) -> None:
        if path.exists():
            shutil.rmtree(path, ignore_errors=True)

    # -------------------------------------------------------------------------
    # Git operations
    # -------------------------------------------------------------------------

    async def _add_worktree(self, worktree_path: Path, branch_name: str) -> None:
        base_branch = self.base_branch or await self._get_main_branch()

        try:
            await self._run_git(['rev-parse', '--verify', f'refs/heads/{branch_name}'], timeout=10)
            logger.info(f"Branch {branch_name} already exists, reusing it")
        except GitCommandError:
            await self._run_git(['branch', branch_name, base_branch], timeout=30)
            logger.info(f"Created branch {branch_name} from {base_branch}")

        await self._run_git(['worktree', 'add', str(worktree_path), branch_name], timeout=60)
        logger.info(f"Created worktree at {worktree_path}")

    async def _remove_worktree_dir(self, worktree_path: Path) -> None:
        if worktree_path.exists():
            try:
                await self._run_git(['worktree', 'remove', str(worktree_path)], timeout=30)
                logger.info(f"Worktree removed: {worktree_path}")
            except GitCommandError as e:
                logger.warning(f"Worktree remove failed ({e}), forcing removal")
                try:
                    await self._run_git(['worktree', 'remove', '--force', str(worktree_path)], timeout=30)
                except GitCommandError as force_error:
                    logger.warning(f"Forced worktree remove failed: {force_error}")
                    self._discard_directory(worktree_path)
        else:
            logger.debug(f"Worktree directory already removed: {worktree_path}")

        try:
            await self._run_git(['worktree', 'prune'], timeout=30)
        except GitCommandError as e:
            logger.warning(f"git worktree prune failed: {e}")

    async def _delete_branch(self, branch_name: str) -> None:
        try:
            await self._run_git(['rev-parse', '--verify', f'refs/heads/{branch_name}'], timeout=10)
        except GitCommandError:
            logger.debug(f"Branch {branch_name} already deleted")
            return

        try:
            await self._run_git(['branch', '-D', branch_name], timeout=30)
            logger.info(f"Branch {branch_name} deleted")
        except GitCommandError as e:
            logger.warning(f"Could not delete branch {branch_name}: {e}")

    async def _run_git(
        self,
        args: List[str],
        cwd: Optional[Path] = None,
        timeout: int = 60
    ) -> str:
        return await run_git(args, cwd=cwd or self.project_path, timeout=timeout)

    async def _get_main_branch(self) -> str:
        """
        Detect the main branch name.

        Tries the remote default branch first, then local 'main' and 'master'.

        Raises:
            GitCommandError: If unable to determine main branch
        """
        try:
            output = await self._run_git(['symbolic-ref', 'refs/remotes/origin/HEAD'], timeout=10)
            return output.split('/')[-1]
        except GitCommandError:
            pass

        for candidate in ('main', 'master'):
            try:
                await self._run_git(['rev-parse', '--verify', candidate], timeout=10)
                return candidate
            except GitCommandError:
                continue

        raise GitCommandError("Could not determine main branch (neither 'main' nor 'master' found)")

    def _sanitize_branch_name(self, name: str) -> str:
        """
        Turn a work item id into a valid branch / directory component.
        Windows-safe: handles reserved names and special characters.
        """
        branch = name.lower()
        branch = branch.replace(' ', '-').replace('_', '-')
        branch = re.sub(r'[^a-z0-9\-.]', '', branch)
        branch = re.sub(r'-+', '-', branch)
        branch = re.sub(r'\.{2,}', '.', branch)
        branch = branch.strip('-.')

        reserved_names = ['con', 'prn', 'aux', 'nul']
        reserved_names += [f'com{i}' for i in range(1, 10)]
        reserved_names += [f'lpt{i}' for i in range(1, 10)]
        if branch in reserved_names:
            branch = f'item-{branch}'

        max_length = 100
        if len(branch) > max_length:
            branch = branch[:max_length].rstrip('-.')

        if branch.endswith('.lock'):
            branch = branch[:-len('.lock')] + '-lock'

        if not branch:
            branch = 'item'

        return branch
