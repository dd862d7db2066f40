"""
Quote Commander — Overseer Tests

Tests:
  - gating: early turns, holds and finished calls are skipped; pricing,
    email deflection and the negotiate phase fire
  - infoWeNeed tracking from the quotes
  - rule-based review: phase transitions, email deflection, eager
    acceptance over budget, price rises flagged
  - LLM review: nudge and tracking taken, phases never move back,
    a hanging or malformed LLM falls back to the rules
  - the next turn consumes the nudge: guidance reaches the reply prompt,
    phase transitions redirect only when the route allows, stale nudges
    are dropped
  - the turn handler stores nudges inline or from a background review,
    and drops a review whose turn was superseded
"""

import asyncio
import copy
import json
import os
import sys
import time
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from langchain_core.language_models.fake_chat_models import FakeListChatModel
from langchain_core.messages import AIMessage

from api.calls import CallTurnHandler
from coordinator.store import InMemoryStateStore
from engine.config import Settings
from engine.overseer import oversee, review_turn, rule_review, should_fire, track_info
from engine.turn import run_turn
from engine.types import (
    Availability, CallState, CallStatus, ExtractedQuote, OverseerNudge, OverseerPhase,
    Part, Speaker, initialize_call_state,
)

PART = "AHC-18598"


class HangingLLM:
    """Chat model stand-in whose answer never arrives."""

    async def ainvoke(self, messages, *args, **kwargs):
        await asyncio.Event().wait()


class PromptRecorder:
    """Chat model stand-in that keeps every prompt it is sent."""

    def __init__(self, reply="Sure. Could you check stock on the filter too?"):
        self.reply = reply
        self.prompts = []

    async def ainvoke(self, messages, *args, **kwargs):
        self.prompts.append(messages[-1].content)
        return AIMessage(content=self.reply)


class NullBus:
    async def publish(self, event):
        return None


def _call(node="quote_request", turn=2, supplier_said="", **overrides):
    state = initialize_call_state(
        "QR-1",
        [Part(PART, "Hydraulic filter", 2, budget_max=50.0)],
        call_id="call_7",
        supplier_name="Bolt Parts",
        caller_name="Sam",
        custom_context="Company: Ridge Farms",
    )
    state.current_node = node
    state.turn_number = turn
    state.requested_parts = [PART]
    if supplier_said:
        state.say(Speaker.SUPPLIER, supplier_said)
    for key, value in overrides.items():
        setattr(state, key, value)
    return state


def _analysis(**fields):
    body = {"analysis": "ok", "nudge": None, "phaseTransition": None,
            "updatedTracking": None, "flaggedIssue": None}
    body.update(fields)
    return json.dumps(body)


# ═══════════════════════════════════════════════════════════════════
# Gating
# ═══════════════════════════════════════════════════════════════════

class TestGating(unittest.TestCase):

    def test_early_turn_skipped(self):
        self.assertFalse(should_fire(_call(turn=1, supplier_said="It's $40.00 each.")))

    def test_hold_skipped(self):
        self.assertFalse(should_fire(_call("hold_acknowledgment", turn=3, supplier_said="$40, hang on.")))

    def test_finished_call_skipped(self):
        call = _call(turn=4, supplier_said="It's $40.00 each.", status=CallStatus.COMPLETED)
        self.assertFalse(should_fire(call))

    def test_routine_turn_skipped(self):
        self.assertFalse(should_fire(_call(supplier_said="Okay, go ahead.")))

    def test_pricing_fires(self):
        self.assertTrue(should_fire(_call(supplier_said="It's $40.00 each.")))

    def test_email_deflection_fires(self):
        self.assertTrue(should_fire(_call(supplier_said="I'll just email you a formal quote.")))

    def test_negotiate_phase_fires(self):
        call = _call("negotiate", supplier_said="Hmm, let me think.")
        call.overseer.phase = OverseerPhase.NEGOTIATE
        self.assertTrue(should_fire(call))


# ═══════════════════════════════════════════════════════════════════
# Rule-based review
# ═══════════════════════════════════════════════════════════════════

class TestTracking(unittest.TestCase):

    def test_single_part_in_stock(self):
        call = _call(quotes=[ExtractedQuote(PART, price=40.0, availability=Availability.IN_STOCK)])
        info = track_info(call)
        self.assertEqual(info.unit_prices, "collected")
        self.assertEqual(info.lead_time, "not_applicable")
        self.assertEqual(info.stock_status, "collected")
        self.assertTrue(info.all_parts_addressed)

    def test_partial(self):
        call = _call(quotes=[ExtractedQuote(PART, price=40.0, availability=Availability.BACKORDER,
                                            lead_time_days=5)])
        call.parts.append(Part("BX-2", "Drive belt", 1))
        info = track_info(call)
        self.assertEqual(info.unit_prices, "partial")
        self.assertEqual(info.lead_time, "collected")
        self.assertFalse(info.all_parts_addressed)


class TestRuleReview(unittest.TestCase):

    def test_within_budget_moves_to_finalize(self):
        call = _call("confirmation", supplier_said="It's $40.00 each.",
                     quotes=[ExtractedQuote(PART, price=40.0)])
        review = rule_review(call)
        self.assertTrue(review.used_fallback)
        self.assertEqual(review.state.phase, OverseerPhase.FINALIZE)
        self.assertEqual(review.state.last_analyzed_turn, 2)
        self.assertEqual(review.nudge.priority, "P0")
        self.assertEqual(review.nudge.phase_transition, OverseerPhase.FINALIZE)
        self.assertEqual(review.nudge.turn_number, 3)
        # The call's own state is left alone until the review is applied
        self.assertEqual(call.overseer.phase, OverseerPhase.GATHER)

    def test_over_budget_moves_to_negotiate(self):
        call = _call("negotiate", supplier_said="It's $75.00 each.",
                     quotes=[ExtractedQuote(PART, price=75.0)])
        review = rule_review(call)
        self.assertEqual(review.state.phase, OverseerPhase.NEGOTIATE)
        self.assertEqual(review.nudge.phase_transition, OverseerPhase.NEGOTIATE)

    def test_email_deflection_asks_for_ballpark(self):
        review = rule_review(_call(supplier_said="Let me email you a formal quote."))
        self.assertEqual(review.nudge.priority, "P1")
        self.assertIn("ballpark", review.nudge.text)
        self.assertIsNone(review.nudge.phase_transition)
        self.assertEqual(review.state.phase, OverseerPhase.GATHER)

    def test_eager_acceptance_over_budget_is_corrected(self):
        call = _call("negotiate", supplier_said="It's $75.00 each.",
                     quotes=[ExtractedQuote(PART, price=75.0)])
        call.overseer.phase = OverseerPhase.NEGOTIATE
        call.say(Speaker.AI, "That's a great price, we'll take it.")
        review = rule_review(call)
        self.assertEqual(review.nudge.priority, "P0")
        self.assertIn("Do not accept", review.nudge.text)
        self.assertIn("$50.00", review.nudge.text)

    def test_price_rise_flagged_once(self):
        call = _call(quotes=[ExtractedQuote(PART, price=40.0), ExtractedQuote(PART, price=45.0)])
        first = rule_review(call)
        self.assertEqual(first.state.flagged_issues, ["Price for AHC-18598 rose from $40.00 to $45.00"])
        call.overseer = first.state
        call.turn_number += 1
        self.assertEqual(len(rule_review(call).state.flagged_issues), 1)


# ═══════════════════════════════════════════════════════════════════
# LLM review
# ═══════════════════════════════════════════════════════════════════

class TestLLMReview(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.settings = Settings(overseer_llm_timeout_seconds=0.05)

    async def test_nudge_and_tracking_taken(self):
        llm = FakeListChatModel(responses=[_analysis(
            nudge={"priority": "P1", "text": "Ask for a ballpark before the email."},
            updatedTracking={"unitPrices": "pending", "leadTime": "pending",
                             "stockStatus": "collected", "allPartsAddressed": False},
            flaggedIssue="Supplier avoids a verbal quote",
        )])
        call = _call(supplier_said="I'll email it over.")
        review = await review_turn(llm, call, self.settings)
        self.assertFalse(review.used_fallback)
        self.assertEqual(review.nudge.priority, "P1")
        self.assertEqual(review.nudge.text, "Ask for a ballpark before the email.")
        self.assertEqual(review.state.info_we_need.stock_status, "collected")
        self.assertEqual(review.state.flagged_issues, ["Supplier avoids a verbal quote"])

    async def test_transition_without_text_gets_default_nudge(self):
        llm = FakeListChatModel(responses=[_analysis(phaseTransition="NEGOTIATE")])
        review = await review_turn(llm, _call(supplier_said="It's $75.00 each."), self.settings)
        self.assertEqual(review.state.phase, OverseerPhase.NEGOTIATE)
        self.assertEqual(review.nudge.priority, "P0")
        self.assertEqual(review.nudge.phase_transition, OverseerPhase.NEGOTIATE)

    async def test_phase_never_moves_back(self):
        call = _call("confirmation", supplier_said="Sure.")
        call.overseer.phase = OverseerPhase.FINALIZE
        llm = FakeListChatModel(responses=[_analysis(phaseTransition="NEGOTIATE")])
        review = await review_turn(llm, call, self.settings)
        self.assertEqual(review.state.phase, OverseerPhase.FINALIZE)
        self.assertIsNone(review.nudge)

    async def test_hanging_llm_falls_back_to_rules(self):
        call = _call("confirmation", supplier_said="It's $40.00 each.",
                     quotes=[ExtractedQuote(PART, price=40.0)])
        review = await asyncio.wait_for(review_turn(HangingLLM(), call, self.settings), timeout=2)
        self.assertTrue(review.used_fallback)
        self.assertEqual(review.nudge.phase_transition, OverseerPhase.FINALIZE)

    async def test_malformed_answer_falls_back_to_rules(self):
        llm = FakeListChatModel(responses=["I think the call is going fine."])
        review = await review_turn(llm, _call(supplier_said="Let me email you a formal quote."),
                                   self.settings)
        self.assertTrue(review.used_fallback)
        self.assertEqual(review.nudge.priority, "P1")

    async def test_turn_reviewed_once(self):
        call = _call(supplier_said="It's $40.00 each.")
        call.overseer.last_analyzed_turn = 2
        self.assertIsNone(await oversee(None, call, self.settings))

    async def test_gated_out_turn_only_refreshes_tracking(self):
        call = _call(supplier_said="Okay, go ahead.")
        review = await oversee(FakeListChatModel(responses=["unused"]), call, self.settings)
        self.assertFalse(review.fired)
        self.assertIsNone(review.nudge)
        self.assertEqual(review.state.last_analyzed_turn, 2)


# ═══════════════════════════════════════════════════════════════════
# Nudge consumption
# ═══════════════════════════════════════════════════════════════════

def _nudge(turn=3, transition=None, text="Ask whether the filter is in stock.", priority="P1"):
    return OverseerNudge(priority=priority, text=text, turn_number=turn,
                         phase=transition or OverseerPhase.GATHER, phase_transition=transition)


class TestNudgeConsumption(unittest.IsolatedAsyncioTestCase):

    async def test_guidance_reaches_reply_prompt(self):
        llm = PromptRecorder()
        call = _call(pending_nudge=_nudge())
        outcome = await run_turn(llm, call, "Who is calling?")
        self.assertEqual(outcome.state.current_node, "conversational_response")
        self.assertIsNone(outcome.state.pending_nudge)
        self.assertIn("SUPERVISOR GUIDANCE", llm.prompts[-1])
        self.assertIn("Ask whether the filter is in stock.", llm.prompts[-1])
        self.assertEqual(outcome.reply, llm.reply)

    async def test_finalize_redirects_to_confirmation(self):
        call = _call(quotes=[ExtractedQuote(PART, price=40.0)],
                     pending_nudge=_nudge(transition=OverseerPhase.FINALIZE, priority="P0"))
        outcome = await run_turn(None, call, "Who is calling?")
        self.assertEqual(outcome.state.current_node, "confirmation")
        self.assertIn("Just to confirm", outcome.reply)

    async def test_negotiate_needs_an_over_budget_part(self):
        call = _call(quotes=[ExtractedQuote(PART, price=40.0)],
                     pending_nudge=_nudge(transition=OverseerPhase.NEGOTIATE, priority="P0"))
        outcome = await run_turn(None, call, "Who is calling?")
        self.assertEqual(outcome.state.current_node, "conversational_response")

    async def test_closing_route_not_redirected(self):
        call = _call("confirmation", quotes=[ExtractedQuote(PART, price=40.0)],
                     pending_nudge=_nudge(transition=OverseerPhase.FINALIZE, priority="P0"))
        outcome = await run_turn(None, call, "Yes, that's right.")
        self.assertEqual(outcome.state.status, CallStatus.COMPLETED)

    async def test_nudge_for_another_turn_dropped(self):
        call = _call(quotes=[ExtractedQuote(PART, price=40.0)],
                     pending_nudge=_nudge(turn=9, transition=OverseerPhase.FINALIZE, priority="P0"))
        outcome = await run_turn(None, call, "Who is calling?")
        self.assertEqual(outcome.state.current_node, "conversational_response")
        self.assertIsNone(outcome.state.pending_nudge)

    async def test_expired_nudge_dropped(self):
        nudge = _nudge(transition=OverseerPhase.FINALIZE, priority="P0")
        nudge.created_at = time.time() - 600
        call = _call(quotes=[ExtractedQuote(PART, price=40.0)], pending_nudge=nudge)
        outcome = await run_turn(None, call, "Who is calling?")
        self.assertEqual(outcome.state.current_node, "conversational_response")

    def test_state_keeps_overseer_through_json(self):
        call = _call(pending_nudge=_nudge(transition=OverseerPhase.FINALIZE))
        call.overseer.phase = OverseerPhase.NEGOTIATE
        call.overseer.flagged_issues = ["Price for AHC-18598 rose"]
        restored = CallState.from_dict(json.loads(json.dumps(call.to_dict())))
        self.assertEqual(restored.to_dict(), call.to_dict())
        self.assertEqual(restored.pending_nudge.phase_transition, OverseerPhase.FINALIZE)


# ═══════════════════════════════════════════════════════════════════
# Turn handler
# ═══════════════════════════════════════════════════════════════════

class TestHandlerOverseer(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.settings = Settings(call_lock_wait_seconds=0.2, overseer_llm_timeout_seconds=1.0)
        self.store = InMemoryStateStore(self.settings)

    async def _start(self, handler):
        await handler.start_call("QR-1", [Part(PART, "Hydraulic filter", 2, budget_max=50.0)],
                                 call_id="call_7", supplier_name="Bolt Parts")

    async def test_rule_review_stored_with_turn(self):
        handler = CallTurnHandler(self.store, NullBus(), settings=self.settings)
        await self._start(handler)
        await handler.handle_turn("call_7", "Yes, this is parts, go ahead.")
        stored = await self.store.get_call("call_7")
        self.assertIsNone(stored.pending_nudge)
        self.assertEqual(stored.overseer.last_analyzed_turn, 1)

        await handler.handle_turn("call_7", "That's $42.50 each.")
        stored = await self.store.get_call("call_7")
        self.assertEqual(stored.overseer.phase, OverseerPhase.FINALIZE)
        self.assertEqual(stored.pending_nudge.phase_transition, OverseerPhase.FINALIZE)
        self.assertEqual(stored.pending_nudge.turn_number, 3)

    async def test_disabled_overseer_stages_nothing(self):
        settings = Settings(call_lock_wait_seconds=0.2, overseer_enabled=False)
        handler = CallTurnHandler(self.store, NullBus(), settings=settings)
        await self._start(handler)
        await handler.handle_turn("call_7", "Yes, this is parts, go ahead.")
        await handler.handle_turn("call_7", "That's $42.50 each.")
        stored = await self.store.get_call("call_7")
        self.assertIsNone(stored.pending_nudge)
        self.assertEqual(stored.overseer.last_analyzed_turn, -1)

    async def test_background_review_stores_nudge(self):
        llm = FakeListChatModel(responses=[_analysis(
            nudge={"priority": "P2", "text": "Ask about a quantity discount."},
        )])
        handler = CallTurnHandler(self.store, NullBus(), settings=self.settings, overseer_llm=llm)
        await self._start(handler)
        await handler.handle_turn("call_7", "Yes, this is parts, go ahead.")
        await handler.handle_turn("call_7", "That's $42.50 each.")
        await handler.drain_overseers()
        stored = await self.store.get_call("call_7")
        self.assertEqual(stored.pending_nudge.priority, "P2")
        self.assertEqual(stored.pending_nudge.text, "Ask about a quantity discount.")
        self.assertEqual(stored.overseer.last_analyzed_turn, 2)

    async def test_superseded_review_dropped(self):
        llm = FakeListChatModel(responses=[_analysis(
            nudge={"priority": "P1", "text": "Ask about lead time."},
        )])
        handler = CallTurnHandler(self.store, NullBus(), settings=self.settings, overseer_llm=llm)
        call = _call(supplier_said="It's $40.00 each.", quotes=[ExtractedQuote(PART, price=40.0)])
        await self.store.save_call(call)

        snapshot = copy.deepcopy(call)
        call.turn_number = 3
        await self.store.save_call(call)
        self.assertFalse(await handler.oversee_turn(snapshot))
        self.assertIsNone((await self.store.get_call("call_7")).pending_nudge)

        self.assertTrue(await handler.oversee_turn(call))
        stored = await self.store.get_call("call_7")
        self.assertEqual(stored.pending_nudge.text, "Ask about lead time.")
        self.assertEqual(stored.pending_nudge.turn_number, 4)


if __name__ == "__main__":
    unittest.main()
