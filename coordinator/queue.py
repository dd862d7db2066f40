"""
Quote Commander — Event Bus

Delivers OverseerEvents to the Commander with per-request ordering.
Every event of one quote request goes to the same partition, and each
partition has exactly one consumer, so a request's events are handled
one at a time in publish order. Different requests run in parallel.

Backends:
  inline — processes the event in-process under a per-request lock
           (development, tests)
  arq    — enqueues to quote_commander:events:{partition} in Redis;
           api/arq_worker.py consumes each partition with max_jobs=1

Usage:
    bus = create_event_bus(settings, commander=Commander(store, llm, settings))
    await bus.publish(event)
"""

from __future__ import annotations

import asyncio
import hashlib
import logging

from engine.config import Settings
from engine.events import OverseerEvent

logger = logging.getLogger("quote_commander.queue")

QUEUE_PREFIX = "quote_commander:events"
TASK_NAME = "process_commander_event"


def partition_for(quote_request_id: str, partitions: int) -> int:
    """Stable partition index for a quote request (same across processes)."""
    digest = hashlib.sha1(quote_request_id.encode("utf-8")).hexdigest()
    return int(digest[:8], 16) % max(1, partitions)


def queue_name(partition: int) -> str:
    return f"{QUEUE_PREFIX}:{partition}"


class EventBus:
    """Base event bus. Subclasses implement publish()."""

    async def publish(self, event: OverseerEvent) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class InlineEventBus(EventBus):
    """
    Runs the Commander in the publishing process.

    One asyncio.Lock per quote request serializes that request's events;
    asyncio locks wake waiters in FIFO order, so publish order is kept.
    A request's lock is dropped once no publish holds or awaits it.
    """

    def __init__(self, commander):
        self.commander = commander
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    async def publish(self, event: OverseerEvent) -> None:
        qrid = event.quote_request_id
        lock = self._locks.get(qrid)
        if lock is None:
            lock = self._locks[qrid] = asyncio.Lock()
        self._users[qrid] = self._users.get(qrid, 0) + 1
        try:
            async with lock:
                await self.commander.process_event(event)
        finally:
            self._users[qrid] -= 1
            if not self._users[qrid]:
                del self._users[qrid]
                del self._locks[qrid]


class ArqEventBus(EventBus):
    """
    Enqueue events as arq jobs.

    Job ids are {quoteRequestId}:{seq:012d} where seq comes from a
    per-request Redis counter, so ids sort in publish order and arq's
    job-id uniqueness never collapses two distinct events.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self._pool = None

    async def _ensure_pool(self):
        """Lazy-init arq Redis pool."""
        if self._pool is None:
            from arq import create_pool
            from arq.connections import RedisSettings
            self._pool = await create_pool(RedisSettings.from_dsn(self.settings.redis_url))
        return self._pool

    async def publish(self, event: OverseerEvent) -> None:
        pool = await self._ensure_pool()
        counter = f"{QUEUE_PREFIX}:seq:{event.quote_request_id}"
        seq = await pool.incr(counter)
        await pool.expire(counter, self.settings.commander_ttl_seconds)

        partition = partition_for(event.quote_request_id, self.settings.commander_partitions)
        job_id = f"{event.quote_request_id}:{seq:012d}"
        await pool.enqueue_job(
            TASK_NAME,
            event.to_dict(),
            _job_id=job_id,
            _queue_name=queue_name(partition),
        )
        logger.info("Enqueued %s for %s as %s on partition %d",
                    event.event_type.value, event.quote_request_id, job_id, partition)

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.aclose()
            self._pool = None


def create_event_bus(settings: Settings, commander=None) -> EventBus:
    """
    Create the event bus named by events.backend.

      - "arq": ArqEventBus (Redis)
      - "inline": InlineEventBus around the given Commander
    """
    if settings.event_backend == "arq":
        logger.info("Event bus: arq (%d partitions)", settings.commander_partitions)
        return ArqEventBus(settings)
    if commander is None:
        raise ValueError("inline event bus needs a Commander")
    logger.info("Event bus: inline")
    return InlineEventBus(commander)
