"""
Git Helpers
===========

Async wrapper around the git CLI used by the worktree manager and the merge
coordinator.
"""

from pathlib import Path
from typing import List, Optional, Union
import asyncio
import logging

logger = logging.getLogger(__name__)


class GitCommandError(Exception):
    """
    Raised when a git command fails.

    Attributes:
        returncode: Exit code (None for timeouts or a missing git binary)
        stdout: Captured standard output
        stderr: Captured standard error
    """

    def __init__(self, message: str, returncode: Optional[int] = None, stdout: str = "", stderr: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


async def run_git(
    args: List[str],
    cwd: Union[str, Path],
    timeout: int = 60
) -> str:
    """
    Run a git command asynchronously.

    Args:
        args: Git command arguments (e.g., ['status', '--short'])
        cwd: Working directory for command
        timeout: Command timeout in seconds (default 60)

    Returns:
        Command stdout output, stripped

    Raises:
        GitCommandError: If command fails or times out
    """
    cmd = ['git'] + args
    logger.debug(f"Running git command: {' '.join(cmd)} in {cwd}")

    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=str(cwd),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE
        )
    except FileNotFoundError:
        raise GitCommandError("Git command not found. Is git installed?")
    except OSError as e:
        raise GitCommandError(f"Failed to run git command: {e}")

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise GitCommandError(f"Git command timed out after {timeout}s: {' '.join(cmd)}")

    stdout_str = stdout.decode('utf-8', errors='replace').strip()
    stderr_str = stderr.decode('utf-8', errors='replace').strip()

    if process.returncode != 0:
        raise GitCommandError(
            f"Git command failed (exit {process.returncode}): {' '.join(cmd)}\n{stderr_str or stdout_str}",
            returncode=process.returncode,
            stdout=stdout_str,
            stderr=stderr_str,
        )

    return stdout_str
