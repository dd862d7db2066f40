"""
Quote Commander — Turn Processor Tests

Tests:
  - scripted happy path greeting → quote → confirmation → polite end
  - turnNumber strictly increasing, input state never mutated
  - terminal calls are not processed further
  - negotiatedParts never holds a part twice
  - a counter-offer heard without the LLM is credited to the negotiated part
  - a substitute quote covers the part it replaces
  - max negotiation attempts with nothing priced → failed / human_followup
  - an LLM that never answers (or raises) still advances via fallbacks
  - directives: leverage → final offer, escalate, deprioritize,
    discarded on a closing route or for an already negotiated part
"""

import asyncio
import json
import os
import sys
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from langchain_core.language_models.fake_chat_models import FakeListChatModel

from engine.config import Settings
from engine.events import Directive, DirectiveType
from engine.turn import process_turn, run_turn
from engine.types import (
    CallStatus, ExtractedQuote, NextAction, Part, Speaker, initialize_call_state,
)

PART = "AHC-18598"


class HangingLLM:
    """Chat model stand-in whose answer never arrives."""

    async def ainvoke(self, messages, *args, **kwargs):
        await asyncio.Event().wait()


class BrokenLLM:
    async def ainvoke(self, messages, *args, **kwargs):
        raise RuntimeError("provider unavailable")


def _state(node="greeting", **overrides):
    state = initialize_call_state(
        "QR-1",
        [Part(PART, "Hydraulic filter", 2, budget_max=50.0)],
        call_id="call_2",
        supplier_name="Bolt Parts",
        caller_name="Sam",
        custom_context="Company: Ridge Farms\nQuote Request: QR-2041",
    )
    state.current_node = node
    if node != "greeting":
        state.requested_parts = [PART]
    for key, value in overrides.items():
        setattr(state, key, value)
    return state


def _leverage(price=42.5, part=PART):
    return Directive(
        target_call_id="call_2",
        directive_type=DirectiveType.LEVERAGE_UPDATE,
        payload={"message": "Competitor quoted lower", "partNumber": part, "competitorPrice": price},
        quote_request_id="QR-1",
    )


# ═══════════════════════════════════════════════════════════════════
# Basic flow
# ═══════════════════════════════════════════════════════════════════

class TestHappyPath(unittest.IsolatedAsyncioTestCase):

    async def test_scripted_call(self):
        state = _state()
        s1 = await process_turn(None, state, "Yes, this is parts, go ahead.")
        self.assertEqual(s1.current_node, "quote_request")
        self.assertEqual(s1.requested_parts, [PART])

        s2 = await process_turn(None, s1, "That's $42.50 each.")
        self.assertEqual(s2.current_node, "confirmation")
        self.assertEqual(len(s2.priced_quotes()), 1)
        self.assertEqual(s2.priced_quotes()[0].price, 42.5)

        s3 = await process_turn(None, s2, "Yes, that's right.")
        self.assertEqual(s3.status, CallStatus.COMPLETED)
        self.assertEqual(s3.outcome, "QUOTE_RECEIVED")
        self.assertEqual(len(s3.conversation_history), 6)
        self.assertEqual(s3.conversation_history[-1].speaker, Speaker.AI)

    async def test_turn_number_strictly_increases(self):
        state = _state()
        seen = [state.turn_number]
        for utterance in ("Yes, this is parts, go ahead.", "Hold on, let me check.",
                          "That's $42.50 each.", "Yes, that's right."):
            state = await process_turn(None, state, utterance)
            seen.append(state.turn_number)
        self.assertEqual(seen, [0, 1, 2, 3, 4])

    async def test_input_state_not_mutated(self):
        state = _state()
        await process_turn(None, state, "Yes, this is parts, go ahead.")
        self.assertEqual(state.turn_number, 0)
        self.assertEqual(state.conversation_history, [])
        self.assertEqual(state.current_node, "greeting")

    async def test_terminal_call_is_not_processed(self):
        state = _state(status=CallStatus.COMPLETED)
        outcome = await run_turn(None, state, "Hello?")
        self.assertFalse(outcome.processed)
        self.assertIs(outcome.state, state)
        self.assertEqual(state.turn_number, 0)


# ═══════════════════════════════════════════════════════════════════
# Negotiation
# ═══════════════════════════════════════════════════════════════════

class TestNegotiation(unittest.IsolatedAsyncioTestCase):

    async def test_negotiated_parts_unique(self):
        state = _state("quote_request")
        state = await process_turn(None, state, "That's $75.00 each.")
        self.assertEqual(state.current_node, "negotiate")
        self.assertEqual(state.negotiation_attempts, 1)

        state = await process_turn(None, state, "No, I can't.")
        self.assertEqual(state.current_node, "confirmation")
        self.assertEqual(state.negotiated_parts, [PART])

        # Supplier revises the price; the part is over budget but never negotiated again
        state = await process_turn(None, state, "No, it's $70.00.")
        self.assertEqual(state.current_node, "confirmation")
        self.assertEqual(state.negotiated_parts, [PART])
        self.assertEqual(len(state.negotiated_parts), len(set(state.negotiated_parts)))

    async def test_attempts_exhausted_without_quote_fails(self):
        state = _state("negotiate", negotiation_attempts=2)
        new = await process_turn(None, state, "Hmm.")
        self.assertEqual(new.status, CallStatus.FAILED)
        self.assertEqual(new.next_action, NextAction.HUMAN_FOLLOWUP)

    async def test_attempts_exhausted_with_quote_completes(self):
        state = _state("negotiate", negotiation_attempts=2,
                       quotes=[ExtractedQuote(PART, price=75.0)])
        new = await process_turn(None, state, "Hmm.")
        self.assertEqual(new.status, CallStatus.COMPLETED)
        self.assertIn("$75.00", new.conversation_history[-1].text)

    async def test_counter_offer_without_llm_stays_on_negotiated_part(self):
        state = initialize_call_state(
            "QR-1",
            [Part("A-1", "Filter", 1, budget_max=100.0), Part("B-2", "Belt", 1, budget_max=50.0)],
            call_id="call_3",
        )
        state = await process_turn(None, state, "Yes, this is parts, go ahead.")
        self.assertEqual(state.requested_parts, ["A-1"])

        state = await process_turn(None, state, "That's $150.00 each.")
        self.assertEqual(state.current_node, "negotiate")
        self.assertEqual(state.negotiating_parts, ["A-1"])

        state = await process_turn(None, state, "I can do $120.00 each.")
        latest = state.latest_quotes()
        self.assertEqual(latest["A-1"].price, 120.0)
        self.assertNotIn("B-2", latest)
        self.assertEqual(state.negotiated_parts, ["A-1"])
        self.assertEqual(state.negotiating_parts, [])
        # B-2 is asked about next rather than negotiated
        self.assertEqual(state.current_node, "quote_request")
        self.assertEqual(state.requested_parts, ["A-1", "B-2"])

    async def test_price_before_any_request_is_not_credited(self):
        state = initialize_call_state(
            "QR-1", [Part("A-1", "Filter", 1), Part("B-2", "Belt", 1)], call_id="call_4",
        )
        state.current_node = "quote_request"
        outcome = await run_turn(None, state, "That's $20.00.")
        self.assertEqual(outcome.state.quotes, [])
        self.assertEqual(outcome.state.current_node, "conversational_response")


# ═══════════════════════════════════════════════════════════════════
# Substitutes
# ═══════════════════════════════════════════════════════════════════

def _substitute(price):
    return json.dumps({
        "quotes": [{"partNumber": "AHC-18598X", "price": price, "availability": "in_stock",
                    "isSubstitute": True, "originalPartNumber": PART}],
        "miscCosts": False,
    })


class TestSubstitutes(unittest.IsolatedAsyncioTestCase):

    async def test_substitute_within_budget_goes_to_confirmation(self):
        llm = FakeListChatModel(responses=[_substitute(45.0)])
        outcome = await run_turn(llm, _state("quote_request"),
                                 "We carry AHC-18598X instead, it's $45.00.")
        state = outcome.state
        self.assertEqual(state.current_node, "confirmation")
        self.assertEqual(state.unquoted_parts(), [])
        self.assertEqual(state.latest_quotes()[PART].part_number, "AHC-18598X")
        self.assertIn("Hydraulic filter at $45.00", outcome.reply)

        state = await process_turn(None, state, "Yes, that's right.")
        self.assertEqual(state.status, CallStatus.COMPLETED)
        self.assertEqual(state.outcome, "QUOTE_RECEIVED")

    async def test_substitute_over_budget_is_negotiated_as_original(self):
        llm = FakeListChatModel(responses=[_substitute(75.0)])
        outcome = await run_turn(llm, _state("quote_request"),
                                 "We carry AHC-18598X instead, it's $75.00.")
        self.assertEqual(outcome.state.current_node, "negotiate")
        self.assertEqual(outcome.state.negotiating_parts, [PART])


# ═══════════════════════════════════════════════════════════════════
# LLM failures
# ═══════════════════════════════════════════════════════════════════

class TestLLMFallback(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.settings = Settings(turn_llm_timeout_seconds=0.05)

    async def test_hanging_llm_pricing_uses_regex_fallback(self):
        outcome = await run_turn(HangingLLM(), _state("quote_request"), "That's $42.50 each.",
                                 settings=self.settings)
        self.assertTrue(outcome.used_fallback)
        self.assertEqual(outcome.state.current_node, "confirmation")
        self.assertEqual(outcome.state.status, CallStatus.IN_PROGRESS)
        self.assertEqual(outcome.state.priced_quotes()[0].price, 42.5)

    async def test_hanging_llm_at_greeting_uses_scripted_reply(self):
        outcome = await run_turn(HangingLLM(), _state(), "Hmm.", settings=self.settings)
        self.assertIsNotNone(outcome.state)
        self.assertEqual(outcome.state.current_node, "clarification")
        self.assertEqual(outcome.state.status, CallStatus.IN_PROGRESS)
        self.assertTrue(outcome.used_fallback)
        self.assertIn(PART, outcome.reply)

    async def test_raising_llm_uses_scripted_reply(self):
        outcome = await run_turn(BrokenLLM(), _state("quote_request"), "Who is calling?",
                                 settings=self.settings)
        self.assertEqual(outcome.state.current_node, "conversational_response")
        self.assertTrue(outcome.used_fallback)
        self.assertIn("Ridge Farms", outcome.reply)


# ═══════════════════════════════════════════════════════════════════
# Directives
# ═══════════════════════════════════════════════════════════════════

class TestDirectives(unittest.IsolatedAsyncioTestCase):

    async def test_leverage_update_forces_final_offer(self):
        outcome = await run_turn(None, _state("quote_request"), "It's $48.00 each.",
                                 directive=_leverage())
        state = outcome.state
        self.assertEqual(outcome.directive_applied, "leverage_update")
        self.assertEqual(state.current_node, "final_offer")
        self.assertIn("another quote at $42.50", outcome.reply)
        self.assertEqual(len(state.applied_directives), 1)
        self.assertEqual(state.applied_directives[0].node, "final_offer")

        # Supplier answers the final offer; the part is now negotiated, once
        state = await process_turn(None, state, "Okay, I can do $44.00.")
        self.assertEqual(state.current_node, "confirmation")
        self.assertEqual(state.negotiated_parts, [PART])
        self.assertEqual(state.latest_quotes()[PART].price, 44.0)

    async def test_directive_dropped_on_closing_route(self):
        state = _state("confirmation", quotes=[ExtractedQuote(PART, price=42.0)])
        outcome = await run_turn(None, state, "Yes, that's right.", directive=_leverage())
        self.assertEqual(outcome.directive_applied, "")
        self.assertEqual(outcome.state.status, CallStatus.COMPLETED)
        self.assertEqual(outcome.state.applied_directives, [])

    async def test_leverage_for_negotiated_part_dropped(self):
        state = _state("quote_request", negotiated_parts=[PART])
        outcome = await run_turn(None, state, "It's $48.00 each.", directive=_leverage())
        self.assertEqual(outcome.directive_applied, "")
        self.assertEqual(outcome.state.current_node, "confirmation")
        self.assertEqual(outcome.state.applied_directives, [])

    async def test_escalate(self):
        directive = Directive("call_2", DirectiveType.ESCALATE, {"message": "Deposit terms"})
        outcome = await run_turn(None, _state("quote_request"), "Hold on, let me check.",
                                 directive=directive)
        self.assertEqual(outcome.state.status, CallStatus.ESCALATED)
        self.assertTrue(outcome.state.needs_human_escalation)
        self.assertEqual(outcome.state.next_action, NextAction.HUMAN_FOLLOWUP)

    async def test_deprioritize_skips_part(self):
        state = _state("quote_request")
        state.parts.append(Part("BX-2", "Drive belt", 1))
        directive = Directive("call_2", DirectiveType.DEPRIORITIZE,
                              {"message": "Belt covered", "partNumbers": ["BX-2"]})
        outcome = await run_turn(None, state, "It's $42.00 each.", directive=directive)
        self.assertEqual(outcome.state.deprioritized_parts, ["BX-2"])
        self.assertEqual(outcome.directive_applied, "deprioritize")
        self.assertEqual(outcome.state.current_node, "confirmation")


if __name__ == "__main__":
    unittest.main()
