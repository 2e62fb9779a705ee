"""
Tests for execution events and the event channel.
"""

import asyncio
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from parallel_runner.parallel.events import (
    EventChannel,
    ExecutionComplete,
    MergeConflictDetected,
    SessionStatusChanged,
    WaveCompleted,
    WaveStarted,
)


class TestEvents:

    def test_to_dict_carries_type(self):
        event = MergeConflictDetected(work_item_id="a", conflict_files=["x.py"])

        data = event.to_dict()

        assert data['type'] == "merge_conflict"
        assert data['work_item_id'] == "a"
        assert data['conflict_files'] == ["x.py"]
        assert isinstance(data['timestamp'], str)

    def test_type_names(self):
        assert WaveStarted().type == "wave_started"
        assert WaveCompleted().type == "wave_completed"
        assert SessionStatusChanged().type == "session_status_changed"
        assert ExecutionComplete().type == "execution_complete"


class TestEventChannel:

    async def test_fifo(self):
        channel = EventChannel()
        channel.publish(WaveStarted(wave_number=0))
        channel.publish(WaveCompleted(wave_number=0))

        assert (await channel.get()).type == "wave_started"
        assert (await channel.get()).type == "wave_completed"
        assert channel.qsize() == 0

    async def test_full_channel_drops_oldest(self):
        print("\n=== Test: Drop Oldest ===")

        channel = EventChannel(maxsize=3)
        for n in range(5):
            channel.publish(WaveStarted(wave_number=n))

        events = channel.drain()

        assert [e.wave_number for e in events] == [2, 3, 4]
        assert channel.dropped == 2

        print("[PASS]")

    async def test_async_iteration(self):
        channel = EventChannel()
        for n in range(3):
            channel.publish(WaveStarted(wave_number=n))

        seen = []
        async for event in channel:
            seen.append(event.wave_number)
            if len(seen) == 3:
                break

        assert seen == [0, 1, 2]

    async def test_get_waits_for_publish(self):
        channel = EventChannel()

        waiter = asyncio.create_task(channel.get())
        await asyncio.sleep(0)
        channel.publish(ExecutionComplete(summary={'state': "completed"}))

        event = await asyncio.wait_for(waiter, timeout=1)
        assert event.summary == {'state': "completed"}

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            EventChannel(maxsize=0)
