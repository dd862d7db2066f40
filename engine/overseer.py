"""
Quote Commander — Call Overseer

Per-call coaching that runs after a turn has been answered and stages a
nudge for the next one:

  should_fire()   rules-based gate; routine turns (greetings, holds,
                  chit-chat) never reach the LLM
  review_turn()   bounded LLM review → nudge, phase transition, tracking;
                  falls back to deterministic rules on any failure
  oversee()       gate + review for one saved turn

The overseer never edits quotes or routing directly. Its output is an
OverseerNudge on CallState.pending_nudge: the next turn consumes it, adds
it to reply prompts, and honours its phase transition (GATHER → NEGOTIATE
→ FINALIZE) when the route allows.

Usage:
    review = await oversee(llm, state, settings)
    if review is not None:
        apply_review(state, review)
"""

from __future__ import annotations

import copy
import logging
import re
import time
from dataclasses import dataclass
from typing import Literal, Optional

from pydantic import BaseModel, Field, ValidationError

from engine import signals
from engine.config import Settings
from engine.extraction import extract_json
from engine.llm import LLMTimeout, complete
from engine.logging import log_event
from engine.nodes import CallNode
from engine.types import (
    Availability, CallState, CallStatus, InfoWeNeed, OverseerNudge, OverseerPhase,
    OverseerState, Speaker,
)

logger = logging.getLogger("quote_commander.overseer")

MAX_FLAGGED_ISSUES = 20

_GATE_OUT_NODES = frozenset({CallNode.HOLD_ACKNOWLEDGMENT.value, CallNode.BOT_SCREENING.value})
_CLOSING_UP_NODES = frozenset({CallNode.CONFIRMATION.value, CallNode.POLITE_END.value})

_OVERSEER_PRICING_RE = re.compile(
    r"\$|\d+\.\d{2}|\b(price|cost|each|per unit|dollars|cents|bucks|per piece|apiece)\b",
    re.IGNORECASE,
)
_EAGER_ACCEPTANCE_RE = re.compile(
    r"\b(great price|good price|i'?ll take it|we'?ll take it|sounds great, we'?ll|deal)\b",
    re.IGNORECASE,
)

_TRANSITION_TEXT = {
    OverseerPhase.NEGOTIATE: (
        "All required information collected. Move to NEGOTIATE phase. "
        "Explore pricing flexibility before accepting."
    ),
    OverseerPhase.FINALIZE: (
        "Agreement reached within bounds. Move to FINALIZE phase. "
        "Read back all terms for confirmation."
    ),
}


@dataclass
class OverseerReview:
    state: OverseerState
    nudge: OverseerNudge | None = None
    fired: bool = False
    used_fallback: bool = False
    analysis: str = ""


# ═══════════════════════════════════════════════════════════════════
# Gating
# ═══════════════════════════════════════════════════════════════════

def _supplier_turns(call: CallState) -> int:
    return sum(1 for m in call.conversation_history if m.speaker is Speaker.SUPPLIER)


def should_fire(call: CallState, overseer: OverseerState | None = None) -> bool:
    """True when this turn is worth a review; False skips it."""
    overseer = overseer or call.overseer
    if call.status in (CallStatus.COMPLETED, CallStatus.ESCALATED):
        return False
    if call.turn_number <= 1:
        return False
    if call.current_node in _GATE_OUT_NODES:
        return False

    last = call.last_supplier_text()
    supplier_turns = _supplier_turns(call)

    if _OVERSEER_PRICING_RE.search(last):
        return True
    if not overseer.info_we_need.all_parts_addressed and supplier_turns > 4:
        return True
    if overseer.phase is OverseerPhase.NEGOTIATE:
        return True
    if signals.detect_substitute(last) or signals.detect_fitment_rejection(last):
        return True
    if signals.is_email_deflection(last):
        return True
    if call.current_node == CallNode.CONVERSATIONAL_RESPONSE.value and supplier_turns > 8:
        return True
    if call.current_node in _CLOSING_UP_NODES:
        return True
    if signals.is_negative(last):
        return True
    return False


# ═══════════════════════════════════════════════════════════════════
# Deterministic review
# ═══════════════════════════════════════════════════════════════════

def track_info(call: CallState) -> InfoWeNeed:
    """What has been learned so far, read straight from the quotes."""
    latest = call.latest_quotes()
    active = [p for p in call.parts if p.part_number not in call.deprioritized_parts]
    addressed = [latest[p.part_number] for p in active if p.part_number in latest]
    priced = [q for q in addressed if q.price is not None]

    if priced and len(priced) == len(active):
        unit_prices = "collected"
    elif priced:
        unit_prices = "partial"
    else:
        unit_prices = "pending"

    lead_time = "pending"
    if priced and all(q.lead_time_days is not None or q.availability is Availability.IN_STOCK
                      for q in priced):
        has_lead = any(q.lead_time_days is not None for q in priced)
        lead_time = "collected" if has_lead else "not_applicable"

    stock_status = "pending"
    if addressed and all(q.availability is not Availability.UNKNOWN for q in addressed):
        stock_status = "collected"

    return InfoWeNeed(
        unit_prices=unit_prices,
        lead_time=lead_time,
        stock_status=stock_status,
        all_parts_addressed=bool(active) and len(addressed) == len(active),
    )


def _rule_transition(call: CallState, overseer: OverseerState, info: InfoWeNeed,
                     settings: Settings) -> OverseerPhase | None:
    if not info.all_parts_addressed:
        return None
    over = call.over_budget_parts(settings.negotiation_threshold)
    if (over and overseer.phase is OverseerPhase.GATHER
            and call.negotiation_attempts < call.max_negotiation_attempts):
        return OverseerPhase.NEGOTIATE
    if not over and call.priced_quotes() and overseer.phase is not OverseerPhase.FINALIZE:
        return OverseerPhase.FINALIZE
    return None


def _rule_nudge(call: CallState, overseer: OverseerState, info: InfoWeNeed,
                settings: Settings) -> tuple[str, str] | None:
    """(priority, text) from the first rule that applies."""
    last = call.last_supplier_text()
    latest = call.latest_quotes()
    over = call.over_budget_parts(settings.negotiation_threshold)

    last_ai = ""
    for msg in reversed(call.conversation_history):
        if msg.speaker is Speaker.AI:
            last_ai = msg.text
            break
    if over and _EAGER_ACCEPTANCE_RE.search(last_ai):
        part = over[0]
        return "P0", (
            f"Do not accept {part.part_number} at ${latest[part.part_number].price:,.2f}; it is above "
            f"our budget of ${part.budget_max:,.2f}. Walk it back and ask about flexibility."
        )

    if signals.is_email_deflection(last) and info.unit_prices != "collected":
        return "P1", "The supplier wants to send a written quote. Ask for a ballpark unit price on the phone first."

    pending = [p for p in call.unquoted_parts() if p.part_number not in call.deprioritized_parts]
    if pending and _supplier_turns(call) > 4:
        part = pending[0]
        return "P1", f"Still no pricing on {part.part_number} ({part.description or 'no description'}). Ask about it."

    if overseer.phase is OverseerPhase.NEGOTIATE and over:
        part = over[0]
        return "P2", (
            f"Quoted ${latest[part.part_number].price:,.2f} for {part.part_number} against a budget of "
            f"${part.budget_max:,.2f}. Mention ordering today to find room on price."
        )
    return None


def _flag_price_rise(call: CallState) -> str | None:
    """A supplier raising a price they already gave is worth remembering."""
    by_part: dict[str, list[float]] = {}
    for q in call.quotes:
        if q.price is not None:
            by_part.setdefault(q.covers, []).append(q.price)
    for pn, prices in by_part.items():
        if len(prices) >= 2 and prices[-1] > prices[-2]:
            return f"Price for {pn} rose from ${prices[-2]:,.2f} to ${prices[-1]:,.2f}"
    return None


def _nudge(call: CallState, priority: str, text: str, phase: OverseerPhase,
           transition: OverseerPhase | None) -> OverseerNudge:
    return OverseerNudge(
        priority=priority,
        text=text,
        turn_number=call.turn_number + 1,
        phase=phase,
        phase_transition=transition,
    )


def _advance(current: OverseerPhase, proposed: OverseerPhase | None) -> OverseerPhase | None:
    """Phases only move forward."""
    if proposed is None or proposed.rank <= current.rank:
        return None
    return proposed


def _add_issue(overseer: OverseerState, issue: str | None) -> None:
    if issue and issue not in overseer.flagged_issues:
        overseer.flagged_issues = (overseer.flagged_issues + [issue])[-MAX_FLAGGED_ISSUES:]


def rule_review(call: CallState, settings: Settings | None = None) -> OverseerReview:
    """Deterministic review used without an LLM and whenever the LLM fails."""
    settings = settings or Settings()
    overseer = copy.deepcopy(call.overseer)
    info = track_info(call)
    transition = _advance(overseer.phase, _rule_transition(call, overseer, info, settings))

    nudge = None
    if transition is not None:
        nudge = _nudge(call, "P0", _TRANSITION_TEXT[transition], transition, transition)
    else:
        ruled = _rule_nudge(call, overseer, info, settings)
        if ruled is not None:
            nudge = _nudge(call, ruled[0], ruled[1], overseer.phase, None)

    overseer.info_we_need = info
    overseer.last_analyzed_turn = call.turn_number
    if transition is not None:
        overseer.phase = transition
    _add_issue(overseer, _flag_price_rise(call))
    return OverseerReview(state=overseer, nudge=nudge, fired=True, used_fallback=True,
                          analysis="rule-based review")


# ═══════════════════════════════════════════════════════════════════
# LLM review
# ═══════════════════════════════════════════════════════════════════

class NudgeOut(BaseModel):
    priority: Literal["P0", "P1", "P2"]
    text: str = Field(min_length=1)


class TrackingOut(BaseModel):
    unitPrices: Literal["pending", "partial", "collected"] = "pending"
    leadTime: Literal["pending", "collected", "not_applicable"] = "pending"
    stockStatus: Literal["pending", "collected", "not_applicable"] = "pending"
    allPartsAddressed: bool = False


class OverseerAnalysis(BaseModel):
    analysis: str = "No analysis provided"
    nudge: Optional[NudgeOut] = None
    phaseTransition: Optional[Literal["NEGOTIATE", "FINALIZE"]] = None
    updatedTracking: Optional[TrackingOut] = None
    flaggedIssue: Optional[str] = None


def build_overseer_prompt(call: CallState, overseer: OverseerState) -> str:
    history = "\n".join(
        f"{'Voice Agent' if m.speaker is Speaker.AI else m.speaker.value.capitalize()}: {m.text}"
        for m in call.conversation_history[-8:]
    )
    parts = "\n".join(
        f"- {p.part_number}: {p.description}, qty {p.quantity}"
        + (f" (budget ceiling: ${p.budget_max:,.2f})" if p.budget_max is not None else "")
        for p in call.parts
    )
    quotes = "\n".join(
        f"- {q.part_number}"
        + (f" (substitute for {q.original_part_number})" if q.is_substitute else "")
        + f": {f'${q.price:,.2f}' if q.price is not None else 'no price yet'}, {q.availability.value}"
        for q in call.quotes
    ) or "No quotes extracted yet."
    info = overseer.info_we_need
    issues = "\n".join(f"- {i}" for i in overseer.flagged_issues[-5:]) or "None"

    return f"""You are an overseer monitoring a procurement phone call. Analyze the latest turn and coach the voice agent.

## Current Phase: {overseer.phase.value}

## Parts Being Quoted:
{parts}

## Quotes Collected So Far:
{quotes}

## Information Tracking:
- Unit prices: {info.unit_prices}
- Lead time: {info.lead_time}
- Stock status: {info.stock_status}
- All parts addressed: {str(info.all_parts_addressed).lower()}

## Previous Issues Flagged:
{issues}

## Recent Conversation:
{history}

Decide:
1. nudge: P0 the agent MUST address (wrong price stated, premature acceptance, missing critical info),
   P1 the agent SHOULD address (uncovered parts, supplier deflecting to email), P2 a suggestion
   (negotiation angle); null when no guidance is needed.
2. phaseTransition: GATHER → NEGOTIATE once every part is priced or unavailable;
   NEGOTIATE → FINALIZE once prices are within budget and terms are ready to confirm; else null.
3. updatedTracking from what happened this turn.
4. flaggedIssue: a new concern (contradiction, agent error), or null.

If the agent accepted a price above budget, that is a P0 correction.

Respond with JSON only:
{{"analysis": "one or two sentences", "nudge": {{"priority": "P0|P1|P2", "text": "..."}} | null,
 "phaseTransition": "NEGOTIATE" | "FINALIZE" | null,
 "updatedTracking": {{"unitPrices": "pending|partial|collected", "leadTime": "pending|collected|not_applicable",
   "stockStatus": "pending|collected|not_applicable", "allPartsAddressed": true|false}},
 "flaggedIssue": "string" | null}}"""


async def review_turn(llm, call: CallState, settings: Settings | None = None) -> OverseerReview:
    """LLM review of the latest turn; rule_review() when there is no LLM or it fails."""
    settings = settings or Settings()
    if llm is None:
        return rule_review(call, settings)
    try:
        raw = await complete(llm, build_overseer_prompt(call, call.overseer),
                             settings.overseer_llm_timeout_seconds)
        analysis = OverseerAnalysis.model_validate(extract_json(raw))
    except LLMTimeout as e:
        logger.warning("Overseer review timed out for %s: %s", call.call_id, e)
        return rule_review(call, settings)
    except (ValueError, ValidationError) as e:
        logger.warning("Overseer review unparseable for %s: %s", call.call_id, e)
        return rule_review(call, settings)
    except Exception as e:
        logger.warning("Overseer review failed for %s: %s: %s", call.call_id, type(e).__name__, e)
        return rule_review(call, settings)

    overseer = copy.deepcopy(call.overseer)
    proposed = OverseerPhase(analysis.phaseTransition) if analysis.phaseTransition else None
    transition = _advance(overseer.phase, proposed)
    phase = transition or overseer.phase

    nudge = None
    if analysis.nudge is not None:
        nudge = _nudge(call, analysis.nudge.priority, analysis.nudge.text, phase, transition)
    elif transition is not None:
        nudge = _nudge(call, "P0", _TRANSITION_TEXT[transition], transition, transition)

    if analysis.updatedTracking is not None:
        t = analysis.updatedTracking
        overseer.info_we_need = InfoWeNeed(
            unit_prices=t.unitPrices,
            lead_time=t.leadTime,
            stock_status=t.stockStatus,
            all_parts_addressed=t.allPartsAddressed,
        )
    overseer.phase = phase
    overseer.last_analyzed_turn = call.turn_number
    _add_issue(overseer, analysis.flaggedIssue)
    return OverseerReview(state=overseer, nudge=nudge, fired=True, analysis=analysis.analysis)


# ═══════════════════════════════════════════════════════════════════
# Entry points
# ═══════════════════════════════════════════════════════════════════

async def oversee(llm, call: CallState, settings: Settings | None = None) -> OverseerReview | None:
    """
    Review one saved turn. None when that turn was already reviewed;
    a gated-out turn only refreshes the tracking.
    """
    if call.overseer.last_analyzed_turn >= call.turn_number:
        return None
    if not should_fire(call):
        overseer = copy.deepcopy(call.overseer)
        overseer.last_analyzed_turn = call.turn_number
        overseer.info_we_need = track_info(call)
        log_event(logger, logging.DEBUG, "overseer_gated_out",
                  call_id=call.call_id, turn_number=call.turn_number, node=call.current_node)
        return OverseerReview(state=overseer)

    started = time.monotonic()
    review = await review_turn(llm, call, settings)
    log_event(logger, logging.INFO, "overseer_reviewed",
              call_id=call.call_id, turn_number=call.turn_number,
              phase=review.state.phase.value,
              nudge=review.nudge.priority if review.nudge else None,
              phase_transition=(review.nudge.phase_transition.value
                                if review.nudge and review.nudge.phase_transition else None),
              used_fallback=review.used_fallback,
              latency_ms=round((time.monotonic() - started) * 1000, 1))
    return review


def apply_review(call: CallState, review: OverseerReview) -> None:
    """Store the review on the call; a new nudge replaces any unconsumed one."""
    call.overseer = review.state
    if review.nudge is not None:
        call.pending_nudge = review.nudge
