"""
Quote Commander — Event Bus Tests

Tests:
  - partition assignment is stable and in range
  - inline bus keeps publish order per quote request
  - inline bus forgets a request's lock once its events are delivered
  - arq bus job ids and queue names
  - create_event_bus backend selection
"""

import asyncio
import os
import sys
import time
import unittest
from unittest.mock import AsyncMock

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from coordinator.queue import (
    TASK_NAME, ArqEventBus, InlineEventBus, create_event_bus, partition_for, queue_name,
)
from engine.config import Settings
from engine.events import EventType, OverseerEvent


def _event(qrid, n):
    return OverseerEvent(
        call_id=f"c{n}", quote_request_id=qrid, supplier_name="Acme",
        event_type=EventType.QUOTE_RECEIVED, timestamp=time.time(), event_id=f"e{n}",
    )


class RecordingCommander:
    def __init__(self):
        self.seen = []
        self.running = 0
        self.max_running = 0

    async def process_event(self, event):
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        await asyncio.sleep(0.01)
        self.seen.append(event.event_id)
        self.running -= 1


class TestPartitions(unittest.TestCase):

    def test_stable_and_in_range(self):
        for qrid in ("QR-1", "QR-2", "QR-2041", "quote-abc"):
            p = partition_for(qrid, 8)
            self.assertEqual(p, partition_for(qrid, 8))
            self.assertTrue(0 <= p < 8)

    def test_single_partition(self):
        self.assertEqual(partition_for("QR-1", 1), 0)
        self.assertEqual(partition_for("QR-1", 0), 0)

    def test_queue_name(self):
        self.assertEqual(queue_name(3), "quote_commander:events:3")


class TestInlineEventBus(unittest.IsolatedAsyncioTestCase):

    async def test_same_request_is_serialized_in_order(self):
        commander = RecordingCommander()
        bus = InlineEventBus(commander)
        await asyncio.gather(*(bus.publish(_event("QR-1", n)) for n in range(5)))
        self.assertEqual(commander.seen, ["e0", "e1", "e2", "e3", "e4"])
        self.assertEqual(commander.max_running, 1)

    async def test_different_requests_overlap(self):
        commander = RecordingCommander()
        bus = InlineEventBus(commander)
        await asyncio.gather(bus.publish(_event("QR-1", 1)), bus.publish(_event("QR-2", 2)))
        self.assertEqual(commander.max_running, 2)

    async def test_locks_released_after_delivery(self):
        commander = RecordingCommander()
        bus = InlineEventBus(commander)
        await asyncio.gather(*(bus.publish(_event(f"QR-{n % 3}", n)) for n in range(6)))
        self.assertEqual(len(commander.seen), 6)
        self.assertEqual(bus._locks, {})
        self.assertEqual(bus._users, {})

    async def test_lock_released_when_commander_raises(self):
        commander = RecordingCommander()
        commander.process_event = AsyncMock(side_effect=RuntimeError("boom"))
        bus = InlineEventBus(commander)
        with self.assertRaises(RuntimeError):
            await bus.publish(_event("QR-1", 1))
        self.assertEqual(bus._locks, {})


class TestArqEventBus(unittest.IsolatedAsyncioTestCase):

    async def test_enqueue(self):
        settings = Settings(event_backend="arq", commander_partitions=4)
        bus = ArqEventBus(settings)
        pool = AsyncMock()
        pool.incr.return_value = 7
        bus._pool = pool

        event = _event("QR-9", 1)
        await bus.publish(event)

        pool.incr.assert_awaited_once_with("quote_commander:events:seq:QR-9")
        args, kwargs = pool.enqueue_job.call_args
        self.assertEqual(args[0], TASK_NAME)
        self.assertEqual(args[1], event.to_dict())
        self.assertEqual(kwargs["_job_id"], "QR-9:000000000007")
        self.assertEqual(kwargs["_queue_name"], queue_name(partition_for("QR-9", 4)))

    async def test_close(self):
        bus = ArqEventBus(Settings())
        pool = AsyncMock()
        bus._pool = pool
        await bus.close()
        pool.aclose.assert_awaited_once()
        self.assertIsNone(bus._pool)


class TestCreateEventBus(unittest.TestCase):

    def test_arq(self):
        self.assertIsInstance(create_event_bus(Settings(event_backend="arq")), ArqEventBus)

    def test_inline(self):
        bus = create_event_bus(Settings(), commander=RecordingCommander())
        self.assertIsInstance(bus, InlineEventBus)

    def test_inline_needs_commander(self):
        with self.assertRaises(ValueError):
            create_event_bus(Settings())


class TestArqWorker(unittest.IsolatedAsyncioTestCase):

    async def test_task_hands_event_to_commander(self):
        from api.arq_worker import WorkerSettings, process_commander_event
        from coordinator.runtime import Commander
        from coordinator.store import InMemoryStateStore

        store = InMemoryStateStore(Settings(commander_init_retries=0))
        ctx = {"commander": Commander(store), "job_id": "QR-9:000000000001", "job_try": 1}
        event = _event("QR-9", 1)
        first = await process_commander_event(ctx, event.to_dict())
        again = await process_commander_event(ctx, event.to_dict())
        self.assertEqual(first["eventId"], "e1")
        self.assertFalse(first["duplicate"])
        self.assertTrue(again["duplicate"])
        self.assertEqual(WorkerSettings.max_jobs, 1)
        self.assertTrue(WorkerSettings.queue_name.startswith("quote_commander:events:"))


if __name__ == "__main__":
    unittest.main()
