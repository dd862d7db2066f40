"""
Quote Commander — Coordinator

The per-request Commander: watches the events of every call placed for
one quote request and stages directives that change how the other calls
negotiate.

Each request's events are consumed by exactly one ordered consumer, so
CommanderState has a single writer without any locking.

Usage:
    from coordinator.runtime import Commander
    from coordinator.store import create_store

    store = create_store(settings)
    commander = Commander(store, llm=create_llm("standard"), settings=settings)
    await commander.process_event(event)
"""

from coordinator.types import (
    BestQuote,
    Budget,
    CallPhase,
    CommanderState,
    Directive,
    DirectiveType,
    TrackedCall,
    TrackedCallStatus,
)
from coordinator.store import (
    InMemoryStateStore,
    RedisStateStore,
    StateStore,
    StoreError,
    create_store,
)
from coordinator.runtime import Commander, CommanderResult
from coordinator.queue import (
    ArqEventBus,
    EventBus,
    InlineEventBus,
    create_event_bus,
    partition_for,
)
