"""
Execution Events
================

Typed lifecycle events and the bounded channel they are published on.

The orchestrator, session supervisors and merge coordinator publish; external
layers (API, CLI, UI) consume. Events are advisory: when the channel is full
the oldest pending event is dropped rather than blocking a publisher.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional
import asyncio
import logging

logger = logging.getLogger(__name__)


@dataclass
class ExecutionEvent:
    """Base class for all events."""
    timestamp: datetime = field(default_factory=datetime.now, init=False)

    @property
    def type(self) -> str:
        return _EVENT_TYPES[type(self)]

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type
        data["timestamp"] = self.timestamp.isoformat()
        return data


@dataclass
class WaveStarted(ExecutionEvent):
    wave_number: int = 0
    item_ids: List[str] = field(default_factory=list)


@dataclass
class WaveCompleted(ExecutionEvent):
    wave_number: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0


@dataclass
class SessionStatusChanged(ExecutionEvent):
    session_id: str = ""
    work_item_id: str = ""
    status: str = ""
    previous_status: Optional[str] = None
    error: Optional[str] = None


@dataclass
class MergeConflictDetected(ExecutionEvent):
    work_item_id: str = ""
    conflict_files: List[str] = field(default_factory=list)


@dataclass
class ExecutionComplete(ExecutionEvent):
    summary: Dict[str, Any] = field(default_factory=dict)


_EVENT_TYPES = {
    WaveStarted: "wave_started",
    WaveCompleted: "wave_completed",
    SessionStatusChanged: "session_status_changed",
    MergeConflictDetected: "merge_conflict",
    ExecutionComplete: "execution_complete",
}


class EventChannel:
    """
    Bounded single-consumer event queue.

    publish() never blocks and never raises; consumers use get(), drain() or
    async iteration.
    """

    def __init__(self, maxsize: int = 1000):
        if maxsize < 1:
            raise ValueError("maxsize must be at least 1")
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def publish(self, event: ExecutionEvent) -> None:
        while True:
            try:
                self._queue.put_nowait(event)
                return
            except asyncio.QueueFull:
                try:
                    stale = self._queue.get_nowait()
                except asyncio.QueueEmpty:
                    continue
                self.dropped += 1
                logger.debug(f"Event channel full, dropped {stale.type}")

    async def get(self) -> ExecutionEvent:
        return await self._queue.get()

    def drain(self) -> List[ExecutionEvent]:
        """Return and remove every pending event without waiting."""
        events = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except asyncio.QueueEmpty:
                return events

    def qsize(self) -> int:
        return self._queue.qsize()

    async def __aiter__(self) -> AsyncIterator[ExecutionEvent]:
        while True:
            yield await self._queue.get()
