"""
Quote Commander — arq Worker Entry Point

This module is the CMD target for the Commander worker container.
Each worker process drains exactly one event partition with max_jobs=1,
so every quote request's events are handled one at a time, in order.
Run one process per partition (0 .. commander.partitions - 1).

Usage:
    QC_COMMANDER_PARTITION=0 python -m api.arq_worker

    # Or via arq CLI:
    QC_COMMANDER_PARTITION=0 arq api.arq_worker.WorkerSettings
"""

from __future__ import annotations

import logging
import os

from coordinator.queue import queue_name
from engine.config import Settings

logger = logging.getLogger("quote_commander.arq_worker")


async def process_commander_event(ctx: dict, event: dict):
    """
    arq task function. Hands one OverseerEvent to the Commander.

    Exceptions propagate so arq applies its retry policy; the Commander
    is idempotent for redelivered events.
    """
    from engine.events import OverseerEvent

    parsed = OverseerEvent.from_dict(event)
    result = await ctx["commander"].process_event(parsed)
    logger.info("Processed %s for %s (job %s, try %s)",
                parsed.event_type.value, parsed.quote_request_id,
                ctx.get("job_id"), ctx.get("job_try"))
    return {
        "eventId": parsed.event_id,
        "duplicate": result.duplicate,
        "staged": len(result.staged),
        "skipped": len(result.skipped),
    }


async def startup(ctx: dict):
    """arq startup hook: build store, LLM and Commander."""
    from coordinator.runtime import Commander
    from coordinator.store import RedisStateStore
    from engine.llm import try_create_llm
    from engine.logging import configure_logging

    configure_logging(level=os.environ.get("QC_LOG_LEVEL", "INFO"))
    settings = Settings.from_config()
    store = RedisStateStore(settings)
    llm = try_create_llm(settings.commander_model, temperature=0.2)
    ctx["store"] = store
    ctx["commander"] = Commander(store, llm=llm, settings=settings)
    logger.info("Commander worker started on %s", WorkerSettings.queue_name)


async def shutdown(ctx: dict):
    """arq shutdown hook: close the state store connection."""
    store = ctx.get("store")
    if store:
        await store.close()
    logger.info("Commander worker shutdown complete")


def _partition() -> int:
    return int(os.environ.get("QC_COMMANDER_PARTITION", "0"))


class WorkerSettings:
    """arq worker configuration."""
    functions = [process_commander_event]
    on_startup = startup
    on_shutdown = shutdown
    queue_name = queue_name(_partition())
    max_jobs = 1  # one consumer per partition keeps per-request order
    job_timeout = int(os.environ.get("QC_JOB_TIMEOUT", "60"))
    max_tries = int(os.environ.get("QC_JOB_MAX_TRIES", "3"))
    redis_settings = None  # Set from the configured Redis URL at import time

    @classmethod
    def _init_redis(cls):
        redis_url = Settings.from_config().redis_url
        try:
            from arq.connections import RedisSettings
            cls.redis_settings = RedisSettings.from_dsn(redis_url)
        except ImportError:
            logger.warning("arq not installed — worker cannot start")


# Initialize on import
WorkerSettings._init_redis()


if __name__ == "__main__":
    try:
        from arq import run_worker
        run_worker(WorkerSettings)
    except ImportError:
        print("arq not installed. Install with: pip install arq redis")
