"""
Session Supervisor
==================

Spawns and supervises one external CLI process per work item, bound to that
item's worktree.

Key Features:
- Non-blocking start/terminate; IO runs in its own asyncio task
- Bounded ring buffer for combined stdout/stderr
- Status driven by output markers first, exit code second
- Monotonic status transitions published as events
"""

from collections import deque
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Sequence
import asyncio
import codecs
import logging
import signal
from uuid import uuid4

from parallel_runner.config import DEFAULT_COMPLETION_MARKERS, DEFAULT_FAILURE_MARKERS
from parallel_runner.errors import (
    SESSION_ALREADY_RUNNING,
    SESSION_CRASHED,
    SESSION_INPUT_FAILED,
    SESSION_START_FAILED,
    SessionError,
)
from parallel_runner.execution_plan import WorkItem
from parallel_runner.parallel.events import EventChannel, SessionStatusChanged

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "\n... [Output truncated due to size limit] ...\n"
DEFAULT_MAX_OUTPUT_CHARS = 10 * 1024 * 1024
READ_CHUNK_SIZE = 4096
# Characters of previous output re-scanned with each new chunk so markers
# split across reads are still found
SCAN_OVERLAP = 4096


class SessionStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.CANCELLED})

_ALLOWED_TRANSITIONS = {
    SessionStatus.IDLE: {SessionStatus.RUNNING, SessionStatus.FAILED, SessionStatus.CANCELLED},
    SessionStatus.RUNNING: set(TERMINAL_STATUSES),
}


def buffer_to_status(
    buffer: str,
    completion_markers: Sequence[str] = DEFAULT_COMPLETION_MARKERS,
    failure_markers: Sequence[str] = DEFAULT_FAILURE_MARKERS
) -> Optional[SessionStatus]:
    """
    Derive a terminal status from session output.

    Matching is case-insensitive. Completion markers win over failure
    markers. A line containing "error:" together with "fatal" or "critical"
    also counts as failure.

    Args:
        buffer: Output text to scan
        completion_markers: Substrings that mean the work finished
        failure_markers: Substrings that mean the work failed

    Returns:
        SessionStatus.COMPLETED, SessionStatus.FAILED, or None if undecided
    """
    if not buffer:
        return None

    text = buffer.lower()

    if any(marker.lower() in text for marker in completion_markers if marker):
        return SessionStatus.COMPLETED

    if any(marker.lower() in text for marker in failure_markers if marker):
        return SessionStatus.FAILED

    for line in text.splitlines():
        if 'error:' in line and ('fatal' in line or 'critical' in line):
            return SessionStatus.FAILED

    return None


class OutputBuffer:
    """
    Append-only ring buffer of text bounded by character count.

    When full, the oldest text is dropped and text() is prefixed with a
    truncation marker.
    """

    def __init__(self, max_chars: int = DEFAULT_MAX_OUTPUT_CHARS):
        if max_chars < 1:
            raise ValueError("max_chars must be at least 1")
        self.max_chars = max_chars
        self._chunks: deque = deque()
        self._size = 0
        self.truncated = False

    def append(self, text: str) -> None:
        if not text:
            return

        if len(text) > self.max_chars:
            text = text[-self.max_chars:]
            self.truncated = True

        self._chunks.append(text)
        self._size += len(text)

        while self._size > self.max_chars:
            excess = self._size - self.max_chars
            oldest = self._chunks[0]
            if len(oldest) <= excess:
                self._chunks.popleft()
                self._size -= len(oldest)
            else:
                self._chunks[0] = oldest[excess:]
                self._size -= excess
            self.truncated = True

    def text(self) -> str:
        body = ''.join(self._chunks)
        return TRUNCATION_MARKER + body if self.truncated else body

    def tail(self, chars: int) -> str:
        return ''.join(self._chunks)[-chars:] if chars > 0 else ""

    def __len__(self) -> int:
        return self._size


@dataclass
class SessionInfo:
    """Point-in-time view of a session."""
    session_id: str
    work_item_id: str
    status: SessionStatus
    worktree_path: str
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    output: str = ""
    error: Optional[str] = None
    pid: Optional[int] = None
    exit_code: Optional[int] = None

    def to_dict(self, include_output: bool = False) -> Dict:
        data = {
            'session_id': self.session_id,
            'work_item_id': self.work_item_id,
            'status': self.status.value,
            'worktree_path': self.worktree_path,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'error': self.error,
            'pid': self.pid,
            'exit_code': self.exit_code,
        }
        if include_output:
            data['output'] = self.output
        return data


def build_session_prompt(work_item: WorkItem, completion_marker: str = DEFAULT_COMPLETION_MARKERS[0]) -> str:
    """Render the instructions handed to the CLI for one work item."""
    lines = [
        f"Implement work item {work_item.id}: {work_item.title or work_item.id}",
        "",
        "You are working in an isolated git worktree dedicated to this work item.",
        "Only modify files inside the current directory and commit your changes when done.",
    ]
    if work_item.file_path:
        lines.append(f"The full description is in {work_item.file_path}.")
    if work_item.dependencies:
        lines.append(f"These work items are already merged: {', '.join(work_item.dependencies)}.")
    lines += [
        "",
        f"When the work is finished and verified, print exactly: {completion_marker.capitalize()}",
    ]
    return "\n".join(lines)


def build_session_command(template: Sequence[str], work_item: WorkItem, prompt: str) -> List[str]:
    """Substitute {work_item_id}, {title} and {prompt} into a command template."""
    values = {'work_item_id': work_item.id, 'title': work_item.title, 'prompt': prompt}
    command = []
    for part in template:
        for key, value in values.items():
            part = part.replace('{' + key + '}', value)
        command.append(part)
    return command


class SessionSupervisor:
    """
    Supervises a single external process for one work item.

    The supervisor is the only writer of its status. Consumers read
    snapshot() or listen for SessionStatusChanged events.
    """

    def __init__(
        self,
        work_item_id: str,
        worktree_path: str,
        command: List[str],
        events: Optional[EventChannel] = None,
        session_id: Optional[str] = None,
        max_output_chars: int = DEFAULT_MAX_OUTPUT_CHARS,
        completion_markers: Sequence[str] = DEFAULT_COMPLETION_MARKERS,
        failure_markers: Sequence[str] = DEFAULT_FAILURE_MARKERS,
        stop_on_marker: bool = True,
        env: Optional[Dict[str, str]] = None
    ):
        """
        Args:
            work_item_id: Work item this session runs
            worktree_path: Working directory for the process
            command: Executable and arguments
            events: Channel for status change events (optional)
            session_id: Fixed id (a uuid4 is generated if None)
            max_output_chars: Ring buffer capacity
            completion_markers: Output substrings meaning success
            failure_markers: Output substrings meaning failure
            stop_on_marker: Kill the process once a marker decides the status
            env: Environment for the process (inherits if None)
        """
        if not command:
            raise ValueError("command must not be empty")

        self.session_id = session_id or str(uuid4())
        self.work_item_id = work_item_id
        self.worktree_path = str(worktree_path)
        self.command = list(command)
        self.events = events
        self.completion_markers = list(completion_markers)
        self.failure_markers = list(failure_markers)
        self.stop_on_marker = stop_on_marker
        self.env = env

        self.output = OutputBuffer(max_output_chars)
        self.started_at: Optional[datetime] = None
        self.completed_at: Optional[datetime] = None
        self.error: Optional[str] = None
        self.exit_code: Optional[int] = None

        self._status = SessionStatus.IDLE
        self._process: Optional[asyncio.subprocess.Process] = None
        self._reader: Optional[asyncio.Task] = None
        self._scan_tail = ""
        self._done = asyncio.Event()

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def is_terminal(self) -> bool:
        return self._status.is_terminal

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    def snapshot(self) -> SessionInfo:
        return SessionInfo(
            session_id=self.session_id,
            work_item_id=self.work_item_id,
            status=self._status,
            worktree_path=self.worktree_path,
            started_at=self.started_at,
            completed_at=self.completed_at,
            output=self.output.text(),
            error=self.error,
            pid=self.pid,
            exit_code=self.exit_code,
        )

    async def start(self) -> None:
        """
        Spawn the process and begin streaming its output.

        Returns as soon as the process is spawned.

        Raises:
            SessionError: If the session was already started or the process
                cannot be spawned (the session is marked failed)
        """
        if self._status != SessionStatus.IDLE:
            raise SessionError(
                f"Session {self.session_id} cannot start from status {self._status.value}",
                session_id=self.session_id,
                code=SESSION_ALREADY_RUNNING,
            )

        logger.info(f"Starting session {self.session_id} for {self.work_item_id} in {self.worktree_path}")

        try:
            self._process = await asyncio.create_subprocess_exec(
                *self.command,
                cwd=self.worktree_path,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env=self.env
            )
        except OSError as e:
            self._set_status(SessionStatus.FAILED, error=f"Failed to start session: {e}")
            raise SessionError(
                f"Failed to start session for {self.work_item_id}",
                session_id=self.session_id,
                code=SESSION_START_FAILED,
                details=str(e),
            ) from e

        self.started_at = datetime.now()

        if self._status == SessionStatus.CANCELLED:
            # terminate() arrived while the process was being spawned
            self._kill_process()
        else:
            self._set_status(SessionStatus.RUNNING)

        self._reader = asyncio.create_task(self._read_output())

    def terminate(self) -> bool:
        """
        Cancel the session and kill its process.

        Returns:
            True if the session was cancelled, False if it was already terminal
        """
        if self.is_terminal:
            return False

        logger.info(f"Terminating session {self.session_id} ({self.work_item_id})")
        self._set_status(SessionStatus.CANCELLED)
        self._kill_process()
        return True

    async def send(self, text: str) -> None:
        """
        Write a line to the process stdin.

        Raises:
            SessionError: If the session is not running or the pipe is closed
        """
        if self._status != SessionStatus.RUNNING or self._process is None or self._process.stdin is None:
            raise SessionError(
                f"Session {self.session_id} is not running",
                session_id=self.session_id,
                code=SESSION_INPUT_FAILED,
            )
        try:
            self._process.stdin.write((text + "\n").encode('utf-8'))
            await self._process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise SessionError(
                f"Failed to send input to session {self.session_id}",
                session_id=self.session_id,
                code=SESSION_INPUT_FAILED,
                details=str(e),
            ) from e

    async def wait(self, timeout: Optional[float] = None) -> SessionStatus:
        """
        Wait until the session reaches a terminal status.

        Raises:
            asyncio.TimeoutError: If timeout elapses first
        """
        if timeout is None:
            await self._done.wait()
        else:
            await asyncio.wait_for(self._done.wait(), timeout=timeout)
        return self._status

    async def close(self, timeout: float = 10.0) -> None:
        """Make sure the process is gone and the reader task has finished."""
        if self._process is not None and self._process.returncode is None and self.is_terminal:
            self._kill_process()
        if self._reader is not None and not self._reader.done():
            try:
                await asyncio.wait_for(self._reader, timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Session {self.session_id} reader did not finish, cancelling it")
                self._reader.cancel()

    async def _read_output(self) -> None:
        process = self._process
        decoder = codecs.getincrementaldecoder('utf-8')(errors='replace')
        try:
            while True:
                chunk = await process.stdout.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                self._on_output(decoder.decode(chunk))

            self._on_output(decoder.decode(b'', final=True))
            returncode = await process.wait()
            self._on_exit(returncode)

        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Session {self.session_id} output reader crashed: {e}", exc_info=True)
            self._kill_process()
            self._set_status(SessionStatus.FAILED, error=f"[{SESSION_CRASHED}] Session crashed: {e}")

    def _on_output(self, text: str) -> None:
        if not text:
            return
        self.output.append(text)

        if self.is_terminal:
            return

        window = self._scan_tail + text
        self._scan_tail = window[-SCAN_OVERLAP:]

        status = buffer_to_status(window, self.completion_markers, self.failure_markers)
        if status is None:
            return

        logger.info(f"Session {self.session_id} output indicates {status.value}")
        error = "Failure marker detected in session output" if status == SessionStatus.FAILED else None
        self._set_status(status, error=error)
        if self.stop_on_marker:
            self._kill_process()

    def _on_exit(self, returncode: int) -> None:
        self.exit_code = returncode
        logger.info(f"Session {self.session_id} process exited with code {returncode}")

        if self.is_terminal:
            return

        if returncode == 0:
            self._set_status(SessionStatus.COMPLETED)
        elif returncode in (-signal.SIGTERM, -signal.SIGKILL):
            self._set_status(SessionStatus.CANCELLED, error=f"Process killed by signal {-returncode}")
        else:
            self._set_status(SessionStatus.FAILED, error=f"Process exited with code {returncode}")

    def _kill_process(self) -> None:
        process = self._process
        if process is None or process.returncode is not None:
            return
        try:
            process.kill()
        except ProcessLookupError:
            pass

    def _set_status(self, status: SessionStatus, error: Optional[str] = None) -> None:
        previous = self._status
        if status == previous:
            return
        if status not in _ALLOWED_TRANSITIONS.get(previous, set()):
            logger.debug(f"Session {self.session_id}: ignoring {previous.value} -> {status.value}")
            return

        self._status = status
        if error:
            self.error = error
        if status.is_terminal:
            self.completed_at = datetime.now()
            self._done.set()

        logger.info(f"Session {self.session_id} ({self.work_item_id}): {previous.value} -> {status.value}")

        if self.events is not None:
            self.events.publish(SessionStatusChanged(
                session_id=self.session_id,
                work_item_id=self.work_item_id,
                status=status.value,
                previous_status=previous.value,
                error=self.error if status == SessionStatus.FAILED else None,
            ))
