"""
Quote Commander — Negotiation Graph

The per-call conversational state machine as a closed set of nodes and
signals:

  CallNode     — every state a call can be in
  Signal       — what the supplier's last utterance amounts to
  TRANSITIONS  — (node, signal) → next node; DEFAULT_NEXT covers the rest

Routing is a table lookup, so every edge is enumerable. Node handlers
then produce the AI's next line and apply state-dependent guards (attempt
limits, exhausted negotiation, nothing left to ask). A handler may hand
off to a follow-up node in the same turn (price_extract always does).

Usage:
    signal = classify_utterance(CallNode.NEGOTIATE, "that's the best I can do")
    nxt = next_node(CallNode.NEGOTIATE, signal)          # CallNode.CONFIRMATION
    result = await NODE_HANDLERS[nxt](ctx, state)
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from engine import extraction, signals
from engine.config import Settings
from engine.events import Directive
from engine.types import (
    Availability, CallOutcome, CallState, CallStatus, NextAction, OverseerNudge, Part,
)

logger = logging.getLogger("quote_commander.nodes")


# ═══════════════════════════════════════════════════════════════════
# Nodes and Signals
# ═══════════════════════════════════════════════════════════════════

class CallNode(str, enum.Enum):
    GREETING = "greeting"
    BOT_SCREENING = "bot_screening"
    QUOTE_REQUEST = "quote_request"
    PRICE_EXTRACT = "price_extract"
    CLARIFICATION = "clarification"
    NEGOTIATE = "negotiate"
    FINAL_OFFER = "final_offer"
    MISC_COSTS_INQUIRY = "misc_costs_inquiry"
    CONFIRMATION = "confirmation"
    CONVERSATIONAL_RESPONSE = "conversational_response"
    HOLD_ACKNOWLEDGMENT = "hold_acknowledgment"
    TRANSFER = "transfer"
    CALLBACK = "callback"
    VOICEMAIL = "voicemail"
    HUMAN_ESCALATION = "human_escalation"
    POLITE_END = "polite_end"
    END = "end"

    @staticmethod
    def parse(value: str) -> CallNode:
        try:
            return CallNode(value)
        except ValueError:
            raise InvalidTransition(f"Unknown node '{value}'") from None


class Signal(str, enum.Enum):
    BOT_SCREEN = "bot_screen"
    VOICEMAIL = "voicemail"
    HOLD = "hold"
    TRANSFER = "transfer"
    CALLBACK = "callback"
    ENGAGED = "engaged"
    NOT_INTERESTED = "not_interested"
    PRICING = "pricing"
    SUBSTITUTE = "substitute"
    OUT_OF_STOCK = "out_of_stock"
    QUESTION = "question"
    REPEAT = "repeat"
    FIRM_PRICE = "firm_price"
    REFUSAL = "refusal"
    AGREEMENT = "agreement"
    CORRECTION = "correction"
    WRAP_UP = "wrap_up"
    UNCLEAR = "unclear"


class InvalidTransition(Exception):
    """Raised when routing is asked for a node with no outgoing edges."""
    pass


CLOSING_NODES = frozenset({
    CallNode.POLITE_END, CallNode.VOICEMAIL, CallNode.CALLBACK,
    CallNode.HUMAN_ESCALATION, CallNode.END,
})
PASS_THROUGH_NODES = frozenset({CallNode.PRICE_EXTRACT})
NEGOTIATION_NODES = frozenset({CallNode.NEGOTIATE, CallNode.FINAL_OFFER})

# Nodes where an unclear reply is worth one LLM intent classification
INTENT_CLASSIFIED_NODES = frozenset({CallNode.GREETING, CallNode.BOT_SCREENING})

INTENT_SIGNALS = {
    "yes_can_help": Signal.ENGAGED,
    "transfer_needed": Signal.TRANSFER,
    "not_interested": Signal.NOT_INTERESTED,
    "voicemail": Signal.VOICEMAIL,
    "unclear": Signal.UNCLEAR,
}


# ═══════════════════════════════════════════════════════════════════
# Transition Table
# ═══════════════════════════════════════════════════════════════════

# Edges shared by every in-conversation node
_COMMON_EDGES: dict[Signal, CallNode] = {
    Signal.BOT_SCREEN: CallNode.BOT_SCREENING,
    Signal.VOICEMAIL: CallNode.VOICEMAIL,
    Signal.CALLBACK: CallNode.CALLBACK,
    Signal.HOLD: CallNode.HOLD_ACKNOWLEDGMENT,
    Signal.TRANSFER: CallNode.TRANSFER,
    Signal.PRICING: CallNode.PRICE_EXTRACT,
    Signal.SUBSTITUTE: CallNode.PRICE_EXTRACT,
    Signal.OUT_OF_STOCK: CallNode.PRICE_EXTRACT,
    Signal.CORRECTION: CallNode.PRICE_EXTRACT,
    Signal.QUESTION: CallNode.CONVERSATIONAL_RESPONSE,
    Signal.REPEAT: CallNode.QUOTE_REQUEST,
    Signal.ENGAGED: CallNode.QUOTE_REQUEST,
    Signal.AGREEMENT: CallNode.QUOTE_REQUEST,
    Signal.FIRM_PRICE: CallNode.CONFIRMATION,
    Signal.REFUSAL: CallNode.CONVERSATIONAL_RESPONSE,
    Signal.NOT_INTERESTED: CallNode.POLITE_END,
    Signal.WRAP_UP: CallNode.POLITE_END,
    Signal.UNCLEAR: CallNode.CLARIFICATION,
}

_NODE_EDGES: dict[CallNode, dict[Signal, CallNode]] = {
    CallNode.GREETING: {},
    CallNode.BOT_SCREENING: {},
    CallNode.QUOTE_REQUEST: {},
    CallNode.PRICE_EXTRACT: {},
    CallNode.CLARIFICATION: {
        Signal.REFUSAL: CallNode.CLARIFICATION,
    },
    CallNode.NEGOTIATE: {
        Signal.REFUSAL: CallNode.CONFIRMATION,
        Signal.AGREEMENT: CallNode.PRICE_EXTRACT,
        Signal.OUT_OF_STOCK: CallNode.CONFIRMATION,
        Signal.UNCLEAR: CallNode.NEGOTIATE,
    },
    CallNode.FINAL_OFFER: {
        Signal.REFUSAL: CallNode.CONFIRMATION,
        Signal.AGREEMENT: CallNode.PRICE_EXTRACT,
        Signal.OUT_OF_STOCK: CallNode.CONFIRMATION,
        Signal.UNCLEAR: CallNode.CONFIRMATION,
    },
    CallNode.MISC_COSTS_INQUIRY: {
        Signal.PRICING: CallNode.CONFIRMATION,
        Signal.REFUSAL: CallNode.CONFIRMATION,
        Signal.AGREEMENT: CallNode.CONFIRMATION,
        Signal.UNCLEAR: CallNode.CONFIRMATION,
    },
    CallNode.CONFIRMATION: {
        Signal.AGREEMENT: CallNode.POLITE_END,
        Signal.REFUSAL: CallNode.PRICE_EXTRACT,
        Signal.ENGAGED: CallNode.POLITE_END,
        Signal.FIRM_PRICE: CallNode.POLITE_END,
        Signal.UNCLEAR: CallNode.POLITE_END,
    },
    CallNode.CONVERSATIONAL_RESPONSE: {
        Signal.UNCLEAR: CallNode.CONVERSATIONAL_RESPONSE,
    },
    CallNode.HOLD_ACKNOWLEDGMENT: {
        Signal.UNCLEAR: CallNode.CONVERSATIONAL_RESPONSE,
        Signal.REFUSAL: CallNode.CONVERSATIONAL_RESPONSE,
    },
    CallNode.TRANSFER: {
        Signal.UNCLEAR: CallNode.GREETING,
        Signal.QUESTION: CallNode.GREETING,
        Signal.REFUSAL: CallNode.GREETING,
    },
}

TRANSITIONS: dict[tuple[CallNode, Signal], CallNode] = {}
for _node, _overrides in _NODE_EDGES.items():
    for _signal, _target in {**_COMMON_EDGES, **_overrides}.items():
        TRANSITIONS[(_node, _signal)] = _target

DEFAULT_NEXT: dict[CallNode, CallNode] = {
    node: TRANSITIONS[(node, Signal.UNCLEAR)] for node in _NODE_EDGES
}


def next_node(node: CallNode, signal: Signal) -> CallNode:
    """Look up the edge for (node, signal); closing nodes have none."""
    target = TRANSITIONS.get((node, signal))
    if target is not None:
        return target
    if node in DEFAULT_NEXT:
        return DEFAULT_NEXT[node]
    raise InvalidTransition(f"No transition out of '{node.value}'")


# ═══════════════════════════════════════════════════════════════════
# Classification
# ═══════════════════════════════════════════════════════════════════

def classify_utterance(node: CallNode, text: str) -> Signal:
    """
    Deterministic reading of a supplier utterance in the context of `node`.

    Order matters: early checks catch phrases that would otherwise be
    mistaken for later ones ("let me check... $40" is a hold, not a price,
    only when no price is present).
    """
    if not text.strip():
        return Signal.UNCLEAR

    if node in INTENT_CLASSIFIED_NODES and signals.detect_bot_screening(text):
        return Signal.BOT_SCREEN
    if node in (CallNode.GREETING, CallNode.BOT_SCREENING, CallNode.TRANSFER,
                CallNode.HOLD_ACKNOWLEDGMENT) and signals.is_voicemail(text):
        return Signal.VOICEMAIL
    if signals.wants_callback(text):
        return Signal.CALLBACK

    if node in NEGOTIATION_NODES:
        if signals.is_firm_price(text):
            return Signal.FIRM_PRICE
        if signals.looks_like_pricing(text):
            return Signal.PRICING
        if signals.contains_refusal(text):
            return Signal.REFUSAL
        if signals.is_agreement(text):
            return Signal.AGREEMENT

    if node is CallNode.CONFIRMATION:
        if signals.starts_with_no(text):
            return Signal.REFUSAL
        if signals.is_agreement(text):
            if signals.is_hold(text):
                return Signal.HOLD
            if signals.detect_question(text):
                return Signal.QUESTION
            return Signal.AGREEMENT
        if signals.is_correction(text):
            return Signal.CORRECTION
        if signals.is_wrapping_up(text):
            return Signal.WRAP_UP
        if signals.detect_question(text):
            return Signal.QUESTION
        return Signal.AGREEMENT

    if signals.is_transfer(text):
        return Signal.TRANSFER
    if signals.looks_like_pricing(text):
        return Signal.PRICING
    if signals.is_hold(text):
        return Signal.HOLD
    if signals.detect_substitute(text) or signals.detect_fitment_rejection(text):
        return Signal.SUBSTITUTE
    if signals.is_out_of_stock(text):
        return Signal.OUT_OF_STOCK
    if node is CallNode.GREETING and signals.is_engaged(text):
        return Signal.ENGAGED
    if signals.is_verification_question(text) or signals.is_contact_info_request(text):
        return Signal.QUESTION
    if signals.is_asking_to_repeat(text):
        return Signal.REPEAT
    if signals.is_not_interested(text):
        return Signal.NOT_INTERESTED
    if signals.is_wrapping_up(text):
        return Signal.WRAP_UP
    if signals.is_engaged(text) or signals.is_ready_for_next(text):
        return Signal.ENGAGED
    if signals.detect_question(text):
        return Signal.QUESTION
    if signals.is_agreement(text):
        return Signal.AGREEMENT
    if signals.contains_refusal(text):
        return Signal.REFUSAL
    return Signal.UNCLEAR


# ═══════════════════════════════════════════════════════════════════
# Handler plumbing
# ═══════════════════════════════════════════════════════════════════

@dataclass
class NodeContext:
    """Per-turn inputs shared by every handler that runs in the turn."""
    llm: Any
    settings: Settings
    utterance: str
    signal: Signal
    directive: Directive | None = None
    # Parts whose negotiation ended on the way into this handler
    concluded_parts: list[str] = field(default_factory=list)
    nudge: OverseerNudge | None = None

    def instruction(self, text: str) -> str:
        """Reply instruction with any overseer guidance appended."""
        return text + self.nudge.prompt_text() if self.nudge is not None else text


@dataclass
class NodeResult:
    say: str | None = None
    then: CallNode | None = None
    used_fallback: bool = False


Handler = Callable[[NodeContext, CallState], Awaitable[NodeResult]]
NODE_HANDLERS: dict[CallNode, Handler] = {}


def _handles(node: CallNode):
    def register(fn: Handler) -> Handler:
        NODE_HANDLERS[node] = fn
        return fn
    return register


def _money(value: float) -> str:
    return f"${value:,.2f}"


def _spoken(part: Part) -> str:
    return f"{signals.format_part_number_for_speech(part.part_number)}, {part.description}".rstrip(", ")


def _close(state: CallState, status: CallStatus, next_action: NextAction | None = None,
           outcome: str = "") -> None:
    state.status = status
    if next_action is not None:
        state.next_action = next_action
    if outcome:
        state.outcome = outcome


def opening_line(state: CallState) -> str:
    """What the AI says when the supplier first picks up."""
    who = f"this is {state.caller_name}" if state.caller_name else "I'm calling"
    line = f"Hi, {who} from {state.organization_name}"
    if state.is_follow_up:
        line += f", following up on our earlier request {state.quote_reference}"
    return line + ". Is this the parts department?"


def after_pricing(state: CallState, settings: Settings) -> CallNode:
    """Where a call goes once quotes have been updated."""
    if (state.over_budget_parts(settings.negotiation_threshold)
            and state.negotiation_attempts < state.max_negotiation_attempts):
        return CallNode.NEGOTIATE
    pending = [p for p in state.unquoted_parts() if p.part_number not in state.deprioritized_parts]
    if pending:
        return CallNode.QUOTE_REQUEST
    if state.has_misc_costs and not state.misc_costs_asked:
        return CallNode.MISC_COSTS_INQUIRY
    return CallNode.CONFIRMATION


def conclude_negotiation(state: CallState) -> None:
    """The parts argued over in this episode are never argued over again."""
    if state.negotiating_parts:
        state.mark_negotiated(state.negotiating_parts)
        state.negotiating_parts = []


def _exhausted(state: CallState) -> NodeResult:
    """Negotiation budget spent: close the call with whatever was priced."""
    conclude_negotiation(state)
    priced = state.priced_quotes()
    if not priced:
        _close(state, CallStatus.FAILED, NextAction.HUMAN_FOLLOWUP)
        return NodeResult(say=(
            "I appreciate your time. I'll have someone from our team follow up "
            "with you directly. Thank you!"
        ))
    _close(state, CallStatus.COMPLETED)
    return NodeResult(say=f"Understood. {_read_back(state)} Thank you for your help, have a great day!")


def _read_back(state: CallState) -> str:
    lines = []
    for q in state.priced_quotes():
        part = state.part(q.part_number) or state.part(q.original_part_number or "")
        label = part.description if part and part.description else q.part_number
        detail = f"{label} at {_money(q.price)} each"
        if q.lead_time_days is not None:
            detail += f" with {q.lead_time_days} day lead time"
        elif q.availability is Availability.IN_STOCK:
            detail += ", in stock"
        lines.append(detail)
    return "So I have " + "; ".join(lines) + "."


# ═══════════════════════════════════════════════════════════════════
# Conversation nodes
# ═══════════════════════════════════════════════════════════════════

@_handles(CallNode.GREETING)
async def greeting(ctx: NodeContext, state: CallState) -> NodeResult:
    state.waiting_for_transfer = False
    return NodeResult(say=opening_line(state))


@_handles(CallNode.BOT_SCREENING)
async def bot_screening(ctx: NodeContext, state: CallState) -> NodeResult:
    state.bot_screening_attempts += 1
    kind = signals.detect_bot_screening(ctx.utterance)
    if kind == "spam_rejection":
        _close(state, CallStatus.COMPLETED, NextAction.EMAIL_FALLBACK, outcome="BOT_REJECTED")
        return NodeResult(say="Understood, sorry to bother you. Goodbye.")
    if state.bot_screening_attempts > state.bot_screening_max_attempts:
        return NodeResult(then=CallNode.POLITE_END)

    intro = f"Hi, this is {state.caller_name or 'a buyer'} from {state.organization_name}"
    if kind == "captcha":
        answer = signals.solve_captcha(ctx.utterance)
        if answer is not None:
            return NodeResult(say=answer)
    if kind == "urgency_check":
        return NodeResult(say="It's not urgent, just a parts inquiry for the parts department.")
    return NodeResult(say=f"{intro}, calling with a parts inquiry for the parts department.")


@_handles(CallNode.QUOTE_REQUEST)
async def quote_request(ctx: NodeContext, state: CallState) -> NodeResult:
    if ctx.signal is Signal.REPEAT and state.requested_parts:
        part = state.part(state.requested_parts[-1])
        if part is not None:
            return NodeResult(say=(
                f"Sure. The part number is {signals.format_part_number_for_speech(part.part_number)}. "
                f"That's {part.description}, quantity {part.quantity}."
            ))

    active = [p for p in state.parts if p.part_number not in state.deprioritized_parts]
    for part in active:
        if part.part_number in state.requested_parts:
            continue
        first = not state.requested_parts
        state.requested_parts.append(part.part_number)
        state.all_parts_requested = all(p.part_number in state.requested_parts for p in active)
        lead = "Great. The first part is" if first else "The next one is"
        return NodeResult(say=(
            f"{lead} {_spoken(part)}, quantity {part.quantity}. "
            "Could you check pricing and availability on that?"
        ))

    state.all_parts_requested = True
    waiting = [p for p in state.unquoted_parts() if p.part_number not in state.deprioritized_parts]
    if waiting:
        part = waiting[0]
        return NodeResult(say=(
            f"Were you able to find pricing on {_spoken(part)}?"
        ))
    return NodeResult(then=after_pricing(state, ctx.settings))


@_handles(CallNode.PRICE_EXTRACT)
async def price_extract(ctx: NodeContext, state: CallState) -> NodeResult:
    result = await extraction.extract_pricing(
        ctx.llm, state, ctx.utterance, ctx.settings.turn_llm_timeout_seconds,
        negotiated=ctx.concluded_parts,
    )
    if result.misc_costs or signals.mentions_misc_costs(ctx.utterance):
        state.has_misc_costs = True
    state.quotes.extend(result.quotes)

    if not result.quotes:
        # Nothing usable heard; answer conversationally instead of guessing
        return NodeResult(then=CallNode.CONVERSATIONAL_RESPONSE, used_fallback=result.used_fallback)
    return NodeResult(then=after_pricing(state, ctx.settings), used_fallback=result.used_fallback)


@_handles(CallNode.CLARIFICATION)
async def clarification(ctx: NodeContext, state: CallState) -> NodeResult:
    if state.all_parts_requested and state.quotes:
        return NodeResult(then=CallNode.CONVERSATIONAL_RESPONSE)
    if state.clarification_attempts >= ctx.settings.max_clarification_attempts:
        return NodeResult(then=CallNode.HUMAN_ESCALATION)
    state.clarification_attempts += 1

    part = (state.unquoted_parts() or state.parts or [None])[0]
    if part is None:
        fallback = "Sorry, let me clarify. We're looking for pricing on some parts."
    else:
        fallback = (
            f"Let me clarify - we need pricing for {part.part_number}, "
            f"{part.description}, quantity {part.quantity}."
        )
    reply = await extraction.generate_reply(
        ctx.llm, state, ctx.utterance,
        ctx.instruction("The supplier seems confused. Restate what we need clearly and politely."),
        fallback, ctx.settings.turn_llm_timeout_seconds,
    )
    return NodeResult(say=reply.content, used_fallback=reply.used_fallback)


@_handles(CallNode.CONVERSATIONAL_RESPONSE)
async def conversational_response(ctx: NodeContext, state: CallState) -> NodeResult:
    if signals.is_receptionist_question(ctx.utterance):
        fallback = (
            f"This is {state.caller_name or 'a buyer'} from {state.organization_name}, "
            "calling to get pricing on some parts."
        )
    else:
        fallback = "Could you repeat that?"
    reply = await extraction.generate_reply(
        ctx.llm, state, ctx.utterance,
        ctx.instruction("Answer the supplier naturally, then steer back toward pricing and availability."),
        fallback, ctx.settings.turn_llm_timeout_seconds,
    )
    return NodeResult(say=reply.content, used_fallback=reply.used_fallback)


@_handles(CallNode.HOLD_ACKNOWLEDGMENT)
async def hold_acknowledgment(ctx: NodeContext, state: CallState) -> NodeResult:
    return NodeResult(say="Sure, take your time.")


@_handles(CallNode.TRANSFER)
async def transfer(ctx: NodeContext, state: CallState) -> NodeResult:
    state.needs_transfer = True
    state.waiting_for_transfer = True
    return NodeResult(say="Sure, thank you.")


@_handles(CallNode.MISC_COSTS_INQUIRY)
async def misc_costs_inquiry(ctx: NodeContext, state: CallState) -> NodeResult:
    state.misc_costs_asked = True
    return NodeResult(say=(
        "Are there any additional charges I should know about, like shipping or core charges?"
    ))


# ═══════════════════════════════════════════════════════════════════
# Negotiation nodes
# ═══════════════════════════════════════════════════════════════════

@_handles(CallNode.NEGOTIATE)
async def negotiate(ctx: NodeContext, state: CallState) -> NodeResult:
    if state.negotiation_attempts >= state.max_negotiation_attempts:
        return _exhausted(state)

    if not state.negotiating_parts:
        state.negotiating_parts = [
            p.part_number for p in state.over_budget_parts(ctx.settings.negotiation_threshold)
        ]
    targets = [state.part(pn) for pn in state.negotiating_parts if state.part(pn) is not None]
    if not targets:
        state.negotiating_parts = []
        return NodeResult(then=after_pricing(state, ctx.settings))

    state.negotiation_attempts += 1
    latest = state.latest_quotes()

    if len(targets) >= 2 and state.negotiation_attempts == 1:
        budget = sum((p.budget_max or 0) * p.quantity for p in targets)
        return NodeResult(say=(
            f"Those {len(targets)} parts come in above what we budgeted. If we order them "
            f"together, is there any room on the price? We were hoping to be around "
            f"{_money(budget)} for the lot."
        ))

    part = targets[0]
    quoted = latest[part.part_number].price if part.part_number in latest else None
    target = part.budget_max if part.budget_max is not None else quoted
    if state.negotiation_attempts == 1:
        return NodeResult(say=(
            f"That's a bit above our budget for the {part.description or part.part_number}. "
            f"Is there any flexibility? We were hoping to be closer to {_money(target)}."
        ))
    return NodeResult(say=(
        f"I understand. Would {_money(target)} be something you could work with "
        "if we place the order today?"
    ))


@_handles(CallNode.FINAL_OFFER)
async def final_offer(ctx: NodeContext, state: CallState) -> NodeResult:
    if state.negotiation_attempts >= state.max_negotiation_attempts:
        return _exhausted(state)

    payload = ctx.directive.payload if ctx.directive is not None else {}
    part = state.part(str(payload.get("partNumber", "")))
    competitor = payload.get("competitorPrice")

    state.negotiation_attempts += 1
    if part is not None and part.part_number not in state.negotiating_parts:
        state.negotiating_parts.append(part.part_number)

    if part is not None and competitor is not None:
        return NodeResult(say=(
            f"I should mention we have another quote at {_money(float(competitor))} for the "
            f"{part.description or part.part_number}. Is there any way you could match or beat that?"
        ))
    return NodeResult(say=(
        "We've received a more competitive offer elsewhere. Is there any flexibility "
        "on your price before we decide?"
    ))


@_handles(CallNode.CONFIRMATION)
async def confirmation(ctx: NodeContext, state: CallState) -> NodeResult:
    if not state.priced_quotes():
        _close(state, CallStatus.COMPLETED, NextAction.EMAIL_FALLBACK)
        return NodeResult(say=(
            "Thanks for checking on that. We'll follow up by email with the details. "
            "Have a great day!"
        ))
    return NodeResult(say=f"Just to confirm. {_read_back(state)} Does that sound right?")


# ═══════════════════════════════════════════════════════════════════
# Closing nodes
# ═══════════════════════════════════════════════════════════════════

@_handles(CallNode.POLITE_END)
async def polite_end(ctx: NodeContext, state: CallState) -> NodeResult:
    next_action = None if state.priced_quotes() else NextAction.EMAIL_FALLBACK
    _close(state, CallStatus.COMPLETED, next_action)
    name = f", {state.contact_name}" if state.contact_name else ""
    return NodeResult(say=f"Thank you so much for your help{name}. Have a great day!")


@_handles(CallNode.VOICEMAIL)
async def voicemail(ctx: NodeContext, state: CallState) -> NodeResult:
    _close(state, CallStatus.COMPLETED, NextAction.EMAIL_FALLBACK, outcome=CallOutcome.VOICEMAIL_LEFT.value)
    return NodeResult(say=(
        f"Hi, this is {state.caller_name or 'a buyer'} from {state.organization_name} calling about "
        f"quote request {state.quote_reference}. We'll follow up by email. Thank you."
    ))


@_handles(CallNode.CALLBACK)
async def callback(ctx: NodeContext, state: CallState) -> NodeResult:
    _close(state, CallStatus.NEEDS_CALLBACK, NextAction.CALLBACK_SCHEDULED,
           outcome=CallOutcome.CALLBACK_REQUESTED.value)
    return NodeResult(say="No problem, we'll call back a bit later. Thanks!")


@_handles(CallNode.HUMAN_ESCALATION)
async def human_escalation(ctx: NodeContext, state: CallState) -> NodeResult:
    state.needs_human_escalation = True
    _close(state, CallStatus.ESCALATED, NextAction.HUMAN_FOLLOWUP)
    return NodeResult(say=(
        "I'm going to have one of our team members follow up with you directly. "
        "Thank you for your patience."
    ))


@_handles(CallNode.END)
async def end(ctx: NodeContext, state: CallState) -> NodeResult:
    if not state.is_terminal:
        _close(state, CallStatus.COMPLETED)
    return NodeResult()


# ═══════════════════════════════════════════════════════════════════
# Outcome
# ═══════════════════════════════════════════════════════════════════

def determine_outcome(state: CallState) -> str:
    """Summary label for a finished call."""
    if state.outcome:
        return state.outcome
    priced = state.priced_quotes()
    if priced:
        if all(p.part_number in {q.covers for q in priced} for p in state.parts):
            return CallOutcome.QUOTE_RECEIVED.value
        return CallOutcome.PARTIAL_QUOTE.value
    if state.quotes:
        return CallOutcome.PARTIAL_QUOTE.value
    if state.needs_human_escalation:
        return CallOutcome.TOO_COMPLEX.value
    if state.status is CallStatus.NEEDS_CALLBACK:
        return CallOutcome.CALLBACK_REQUESTED.value
    return CallOutcome.NO_ANSWER.value
