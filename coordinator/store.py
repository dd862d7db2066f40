"""
Quote Commander — Shared State Store

Key-value persistence shared by the call webhooks and the Commander:

  call:{callId}                 CallState JSON            (TTL call.ttl_seconds)
  call:{callId}:directives      staged Directive list     (TTL commander.directive_ttl_seconds)
  call:{callId}:lock            per-call turn lock        (PX call.lock_ttl_ms)
  request:{quoteRequestId}:calls  index of call ids for a request
  commander:{quoteRequestId}    CommanderState JSON       (TTL commander.ttl_seconds)

Two backends with the same async interface:
  InMemoryStateStore — single process, tests and local runs
  RedisStateStore    — redis.asyncio, shared by API replicas and arq workers

Usage:
    store = create_store(settings)
    await store.save_call(state)
    state = await store.get_call("call_123")
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from typing import Any

from coordinator.types import CommanderState
from engine.config import Settings
from engine.events import Directive
from engine.types import CallState

logger = logging.getLogger("quote_commander.store")


class StoreError(Exception):
    """The backing store could not be read or written."""


def call_key(call_id: str) -> str:
    return f"call:{call_id}"


def directives_key(call_id: str) -> str:
    return f"call:{call_id}:directives"


def lock_key(call_id: str) -> str:
    return f"call:{call_id}:lock"


def request_index_key(quote_request_id: str) -> str:
    return f"request:{quote_request_id}:calls"


def commander_key(quote_request_id: str) -> str:
    return f"commander:{quote_request_id}"


class StateStore:
    """Async interface both backends implement."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or Settings()

    # ─── Calls ──────────────────────────────────────────────────────

    async def get_call(self, call_id: str) -> CallState | None:
        raise NotImplementedError

    async def save_call(self, state: CallState, ttl_seconds: int | None = None) -> None:
        raise NotImplementedError

    async def active_calls_for_request(self, quote_request_id: str) -> list[CallState]:
        """In-progress calls for a request; expired and terminal calls are skipped."""
        raise NotImplementedError

    # ─── Commander ──────────────────────────────────────────────────

    async def get_commander(self, quote_request_id: str) -> CommanderState | None:
        raise NotImplementedError

    async def save_commander(self, state: CommanderState) -> None:
        raise NotImplementedError

    # ─── Directives ─────────────────────────────────────────────────

    async def stage_directive(self, directive: Directive) -> None:
        raise NotImplementedError

    async def consume_directives(self, call_id: str) -> list[Directive]:
        """Read and remove all staged directives for a call in one step."""
        raise NotImplementedError

    async def clear_directives(self, call_id: str) -> None:
        raise NotImplementedError

    # ─── Locks ──────────────────────────────────────────────────────

    async def acquire_call_lock(self, call_id: str) -> str | None:
        """Try to take the per-call lock; returns a token, or None if held."""
        raise NotImplementedError

    async def release_call_lock(self, call_id: str, token: str) -> None:
        raise NotImplementedError

    async def wait_for_call_lock(self, call_id: str) -> str | None:
        """Poll for the lock for up to call.lock_wait_seconds."""
        deadline = time.monotonic() + self.settings.call_lock_wait_seconds
        while True:
            token = await self.acquire_call_lock(call_id)
            if token is not None or time.monotonic() >= deadline:
                return token
            await asyncio.sleep(0.05)

    async def close(self) -> None:
        return None


# ═══════════════════════════════════════════════════════════════════
# In-Memory Backend
# ═══════════════════════════════════════════════════════════════════

class InMemoryStateStore(StateStore):
    """
    Dict-backed store with TTLs on a monotonic clock. Values are kept
    as JSON so callers never share mutable objects with the store.
    """

    def __init__(self, settings: Settings | None = None):
        super().__init__(settings)
        self._data: dict[str, tuple[Any, float | None]] = {}

    def _get(self, key: str) -> Any:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires = entry
        if expires is not None and time.monotonic() >= expires:
            del self._data[key]
            return None
        return value

    def _set(self, key: str, value: Any, ttl_seconds: float | None) -> None:
        expires = time.monotonic() + ttl_seconds if ttl_seconds else None
        self._data[key] = (value, expires)

    def _expire(self, key: str, ttl_seconds: float) -> None:
        entry = self._data.get(key)
        if entry is not None:
            self._data[key] = (entry[0], time.monotonic() + ttl_seconds)

    async def get_call(self, call_id: str) -> CallState | None:
        raw = self._get(call_key(call_id))
        return CallState.from_dict(json.loads(raw)) if raw else None

    async def save_call(self, state: CallState, ttl_seconds: int | None = None) -> None:
        ttl = ttl_seconds or self.settings.call_ttl_seconds
        self._set(call_key(state.call_id), json.dumps(state.to_dict()), ttl)
        index = request_index_key(state.quote_request_id)
        members = self._get(index) or set()
        members.add(state.call_id)
        self._set(index, members, self.settings.commander_ttl_seconds)

    async def active_calls_for_request(self, quote_request_id: str) -> list[CallState]:
        calls = []
        for call_id in sorted(self._get(request_index_key(quote_request_id)) or ()):
            state = await self.get_call(call_id)
            if state is not None and not state.is_terminal:
                calls.append(state)
        return calls

    async def get_commander(self, quote_request_id: str) -> CommanderState | None:
        raw = self._get(commander_key(quote_request_id))
        return CommanderState.from_dict(json.loads(raw)) if raw else None

    async def save_commander(self, state: CommanderState) -> None:
        self._set(
            commander_key(state.quote_request_id),
            json.dumps(state.to_dict()),
            self.settings.commander_ttl_seconds,
        )

    async def stage_directive(self, directive: Directive) -> None:
        key = directives_key(directive.target_call_id)
        staged = self._get(key) or []
        staged.append(json.dumps(directive.to_dict()))
        self._set(key, staged, self.settings.directive_ttl_seconds)

    async def consume_directives(self, call_id: str) -> list[Directive]:
        staged = self._get(directives_key(call_id)) or []
        self._data.pop(directives_key(call_id), None)
        return [Directive.from_dict(json.loads(raw)) for raw in staged]

    async def clear_directives(self, call_id: str) -> None:
        self._data.pop(directives_key(call_id), None)

    async def acquire_call_lock(self, call_id: str) -> str | None:
        key = lock_key(call_id)
        if self._get(key) is not None:
            return None
        token = uuid.uuid4().hex
        self._set(key, token, self.settings.call_lock_ttl_ms / 1000)
        return token

    async def release_call_lock(self, call_id: str, token: str) -> None:
        if self._get(lock_key(call_id)) == token:
            self._data.pop(lock_key(call_id), None)


# ═══════════════════════════════════════════════════════════════════
# Redis Backend
# ═══════════════════════════════════════════════════════════════════

# Delete the lock only if we still own it
_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


class RedisStateStore(StateStore):
    """redis.asyncio store; every Redis failure surfaces as StoreError."""

    def __init__(self, settings: Settings | None = None, client=None):
        super().__init__(settings)
        if client is None:
            import redis.asyncio as aioredis
            client = aioredis.from_url(self.settings.redis_url, decode_responses=True)
        self.redis = client

    async def _run(self, op: str, coro):
        from redis.exceptions import RedisError
        try:
            return await coro
        except RedisError as e:
            logger.error("Redis %s failed: %s", op, e)
            raise StoreError(f"{op}: {e}") from e

    async def get_call(self, call_id: str) -> CallState | None:
        raw = await self._run("get_call", self.redis.get(call_key(call_id)))
        return CallState.from_dict(json.loads(raw)) if raw else None

    async def save_call(self, state: CallState, ttl_seconds: int | None = None) -> None:
        ttl = ttl_seconds or self.settings.call_ttl_seconds
        index = request_index_key(state.quote_request_id)
        pipe = self.redis.pipeline(transaction=True)
        pipe.set(call_key(state.call_id), json.dumps(state.to_dict()), ex=ttl)
        pipe.sadd(index, state.call_id)
        pipe.expire(index, self.settings.commander_ttl_seconds)
        await self._run("save_call", pipe.execute())

    async def active_calls_for_request(self, quote_request_id: str) -> list[CallState]:
        index = request_index_key(quote_request_id)
        call_ids = sorted(await self._run("smembers", self.redis.smembers(index)))
        if not call_ids:
            return []
        raws = await self._run("mget", self.redis.mget([call_key(c) for c in call_ids]))
        calls, expired = [], []
        for call_id, raw in zip(call_ids, raws):
            if raw is None:
                expired.append(call_id)
                continue
            state = CallState.from_dict(json.loads(raw))
            if not state.is_terminal:
                calls.append(state)
        if expired:
            await self._run("srem", self.redis.srem(index, *expired))
        return calls

    async def get_commander(self, quote_request_id: str) -> CommanderState | None:
        raw = await self._run("get_commander", self.redis.get(commander_key(quote_request_id)))
        return CommanderState.from_dict(json.loads(raw)) if raw else None

    async def save_commander(self, state: CommanderState) -> None:
        await self._run("save_commander", self.redis.set(
            commander_key(state.quote_request_id),
            json.dumps(state.to_dict()),
            ex=self.settings.commander_ttl_seconds,
        ))

    async def stage_directive(self, directive: Directive) -> None:
        key = directives_key(directive.target_call_id)
        pipe = self.redis.pipeline(transaction=True)
        pipe.rpush(key, json.dumps(directive.to_dict()))
        pipe.expire(key, self.settings.directive_ttl_seconds)
        await self._run("stage_directive", pipe.execute())

    async def consume_directives(self, call_id: str) -> list[Directive]:
        key = directives_key(call_id)
        pipe = self.redis.pipeline(transaction=True)
        pipe.lrange(key, 0, -1)
        pipe.delete(key)
        staged, _ = await self._run("consume_directives", pipe.execute())
        return [Directive.from_dict(json.loads(raw)) for raw in staged or []]

    async def clear_directives(self, call_id: str) -> None:
        await self._run("clear_directives", self.redis.delete(directives_key(call_id)))

    async def acquire_call_lock(self, call_id: str) -> str | None:
        token = uuid.uuid4().hex
        ok = await self._run("acquire_lock", self.redis.set(
            lock_key(call_id), token, nx=True, px=self.settings.call_lock_ttl_ms,
        ))
        return token if ok else None

    async def release_call_lock(self, call_id: str, token: str) -> None:
        await self._run("release_lock", self.redis.eval(_RELEASE_SCRIPT, 1, lock_key(call_id), token))

    async def close(self) -> None:
        await self.redis.aclose()


def create_store(settings: Settings | None = None) -> StateStore:
    """Pick the backend from store.backend (memory | redis)."""
    settings = settings or Settings()
    if settings.store_backend == "redis":
        logger.info("State store: redis (%s)", settings.redis_url.split("@")[-1])
        return RedisStateStore(settings)
    logger.info("State store: memory")
    return InMemoryStateStore(settings)
