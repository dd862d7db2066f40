"""
Quote Commander — State Store Tests

Tests:
  - in-memory call / commander CRUD and the per-request call index
  - expired and terminal calls are not active
  - directives are consumed exactly once
  - per-call lock tokens
  - Redis backend: failures surface as StoreError, lock and index use
"""

import json
import os
import sys
import time
import unittest
from unittest.mock import AsyncMock, MagicMock

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from redis.exceptions import ConnectionError as RedisConnectionError

from coordinator.store import (
    InMemoryStateStore, RedisStateStore, StoreError,
    call_key, create_store, directives_key, lock_key, request_index_key,
)
from coordinator.types import CommanderState
from engine.config import Settings
from engine.events import Directive, DirectiveType
from engine.types import CallStatus, Part, initialize_call_state


def _call(call_id, qrid="QR-1", status=CallStatus.IN_PROGRESS):
    state = initialize_call_state(qrid, [Part("AHC-18598")], call_id=call_id, supplier_name="Acme")
    state.status = status
    return state


# ═══════════════════════════════════════════════════════════════════
# In-memory backend
# ═══════════════════════════════════════════════════════════════════

class TestInMemoryStore(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.store = InMemoryStateStore(Settings(call_lock_wait_seconds=0.1))

    async def test_call_round_trip(self):
        state = _call("c1")
        await self.store.save_call(state)
        loaded = await self.store.get_call("c1")
        self.assertEqual(loaded.to_dict(), state.to_dict())
        self.assertIsNot(loaded, state)
        self.assertIsNone(await self.store.get_call("missing"))

    async def test_active_calls_for_request(self):
        await self.store.save_call(_call("c1"))
        await self.store.save_call(_call("c2", status=CallStatus.COMPLETED))
        await self.store.save_call(_call("c3"))
        await self.store.save_call(_call("c4", qrid="QR-2"))
        active = await self.store.active_calls_for_request("QR-1")
        self.assertEqual([c.call_id for c in active], ["c1", "c3"])

    async def test_expired_call_is_gone(self):
        await self.store.save_call(_call("c1"))
        value, _ = self.store._data[call_key("c1")]
        self.store._data[call_key("c1")] = (value, time.monotonic() - 1)
        self.assertIsNone(await self.store.get_call("c1"))
        self.assertEqual(await self.store.active_calls_for_request("QR-1"), [])

    async def test_commander_round_trip(self):
        state = CommanderState.create("QR-1", "org-1")
        state.parts = ["AHC-18598"]
        await self.store.save_commander(state)
        loaded = await self.store.get_commander("QR-1")
        self.assertEqual(loaded.to_dict(), state.to_dict())
        self.assertIsNone(await self.store.get_commander("QR-404"))

    async def test_directives_consumed_once(self):
        await self.store.stage_directive(Directive("c1", DirectiveType.WRAP_UP, {"message": "a"}))
        await self.store.stage_directive(Directive("c1", DirectiveType.ESCALATE, {"message": "b"}))
        consumed = await self.store.consume_directives("c1")
        self.assertEqual([d.directive_type for d in consumed],
                         [DirectiveType.WRAP_UP, DirectiveType.ESCALATE])
        self.assertEqual(await self.store.consume_directives("c1"), [])

    async def test_clear_directives(self):
        await self.store.stage_directive(Directive("c1", DirectiveType.WRAP_UP))
        await self.store.clear_directives("c1")
        self.assertEqual(await self.store.consume_directives("c1"), [])

    async def test_lock_tokens(self):
        token = await self.store.acquire_call_lock("c1")
        self.assertIsNotNone(token)
        self.assertIsNone(await self.store.acquire_call_lock("c1"))
        await self.store.release_call_lock("c1", "not-the-owner")
        self.assertIsNone(await self.store.acquire_call_lock("c1"))
        await self.store.release_call_lock("c1", token)
        self.assertIsNotNone(await self.store.acquire_call_lock("c1"))

    async def test_wait_for_lock_gives_up(self):
        await self.store.acquire_call_lock("c1")
        started = time.monotonic()
        self.assertIsNone(await self.store.wait_for_call_lock("c1"))
        self.assertGreaterEqual(time.monotonic() - started, 0.1)

    def test_create_store(self):
        self.assertIsInstance(create_store(Settings()), InMemoryStateStore)


# ═══════════════════════════════════════════════════════════════════
# Redis backend
# ═══════════════════════════════════════════════════════════════════

class TestRedisStore(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.client = MagicMock()
        self.store = RedisStateStore(Settings(), client=self.client)

    async def test_redis_error_becomes_store_error(self):
        self.client.get = AsyncMock(side_effect=RedisConnectionError("refused"))
        with self.assertRaises(StoreError):
            await self.store.get_call("c1")

    async def test_get_call_decodes_json(self):
        state = _call("c1")
        self.client.get = AsyncMock(return_value=json.dumps(state.to_dict()))
        loaded = await self.store.get_call("c1")
        self.assertEqual(loaded.call_id, "c1")
        self.client.get.assert_awaited_once_with(call_key("c1"))

    async def test_lock_uses_set_nx(self):
        self.client.set = AsyncMock(return_value=True)
        token = await self.store.acquire_call_lock("c1")
        self.assertIsNotNone(token)
        args, kwargs = self.client.set.call_args
        self.assertEqual(args[0], lock_key("c1"))
        self.assertTrue(kwargs["nx"])
        self.assertEqual(kwargs["px"], Settings().call_lock_ttl_ms)

        self.client.set = AsyncMock(return_value=None)
        self.assertIsNone(await self.store.acquire_call_lock("c1"))

    async def test_release_checks_token(self):
        self.client.eval = AsyncMock(return_value=1)
        await self.store.release_call_lock("c1", "tok")
        args = self.client.eval.call_args.args
        self.assertEqual(args[1:], (1, lock_key("c1"), "tok"))

    async def test_active_calls_prunes_expired(self):
        live = _call("c1")
        done = _call("c2", status=CallStatus.FAILED)
        self.client.smembers = AsyncMock(return_value={"c1", "c2", "c3"})
        self.client.mget = AsyncMock(return_value=[
            json.dumps(live.to_dict()), json.dumps(done.to_dict()), None,
        ])
        self.client.srem = AsyncMock(return_value=1)
        active = await self.store.active_calls_for_request("QR-1")
        self.assertEqual([c.call_id for c in active], ["c1"])
        self.client.srem.assert_awaited_once_with(request_index_key("QR-1"), "c3")

    async def test_consume_reads_and_deletes(self):
        directive = Directive("c1", DirectiveType.AWARD, {"message": "yours"})
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[[json.dumps(directive.to_dict())], 1])
        self.client.pipeline = MagicMock(return_value=pipe)
        consumed = await self.store.consume_directives("c1")
        self.assertEqual(consumed[0].directive_id, directive.directive_id)
        pipe.lrange.assert_called_once_with(directives_key("c1"), 0, -1)
        pipe.delete.assert_called_once_with(directives_key("c1"))

    async def test_close(self):
        self.client.aclose = AsyncMock()
        await self.store.close()
        self.client.aclose.assert_awaited_once()


if __name__ == "__main__":
    unittest.main()
