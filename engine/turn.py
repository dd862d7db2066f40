"""
Quote Commander — Call Turn Processor

Advances one call by exactly one supplier utterance:

  1. append the utterance, bump turnNumber
  2. classify it and look up the next node in the transition table
  3. consume the overseer nudge staged after the previous turn (its phase
     transition may redirect the node; its text reaches reply prompts)
  4. apply at most one Commander directive (it may redirect the node)
  5. run node handlers (following same-turn hand-offs) to get the AI line
  6. stamp the outcome if the call just became terminal

process_turn() never touches storage or the queue; the only I/O is the
bounded LLM calls made by handlers. A terminal state is returned as-is.

Usage:
    new_state = await process_turn(llm, state, "It's $42.50 each")

    outcome = await run_turn(llm, state, utterance, directive=staged)
    outcome.reply          # what the AI says next
"""

from __future__ import annotations

import copy
import logging
import time
from dataclasses import dataclass

from engine import extraction
from engine.config import Settings
from engine.events import Directive, DirectiveType
from engine.logging import log_event
from engine.nodes import (
    CLOSING_NODES, INTENT_CLASSIFIED_NODES, INTENT_SIGNALS, NEGOTIATION_NODES,
    NODE_HANDLERS, PASS_THROUGH_NODES, CallNode, NodeContext, Signal,
    classify_utterance, conclude_negotiation, determine_outcome, next_node,
)
from engine.types import AppliedDirective, CallState, OverseerNudge, OverseerPhase, Speaker

logger = logging.getLogger("quote_commander.turn")

MAX_HOPS = 4

_DIRECTIVE_NODES = {
    DirectiveType.ESCALATE: CallNode.HUMAN_ESCALATION,
    DirectiveType.WRAP_UP: CallNode.POLITE_END,
    DirectiveType.AWARD: CallNode.CONFIRMATION,
    DirectiveType.LEVERAGE_UPDATE: CallNode.FINAL_OFFER,
}

# A new voice after a transfer gets the introduction again
_PICKUP_SIGNALS = frozenset({Signal.UNCLEAR, Signal.QUESTION, Signal.AGREEMENT, Signal.REFUSAL})

_PHASE_NODES = {
    OverseerPhase.NEGOTIATE: CallNode.NEGOTIATE,
    OverseerPhase.FINALIZE: CallNode.CONFIRMATION,
}
# Routes an overseer phase transition may redirect
_PHASE_OVERRIDABLE = frozenset({
    CallNode.QUOTE_REQUEST, CallNode.CONVERSATIONAL_RESPONSE, CallNode.CLARIFICATION,
})


@dataclass
class TurnOutcome:
    state: CallState
    reply: str = ""
    used_fallback: bool = False
    directive_applied: str = ""
    processed: bool = True


def _directive_override(state: CallState, directive: Directive) -> CallNode | None:
    """Node a directive forces, or None when it only adjusts state (or is dropped)."""
    if directive.directive_type is DirectiveType.DEPRIORITIZE:
        parts = directive.payload.get("partNumbers") or []
        if isinstance(parts, str):
            parts = [parts]
        for pn in parts:
            if state.part(pn) is not None and pn not in state.deprioritized_parts:
                state.deprioritized_parts.append(pn)
        return None

    if directive.directive_type is DirectiveType.LEVERAGE_UPDATE:
        pn = str(directive.payload.get("partNumber", ""))
        if pn and state.part(pn) is None:
            log_event(logger, logging.WARNING, "directive_discarded",
                      call_id=state.call_id, directive_id=directive.directive_id,
                      reason=f"unknown part {pn}")
            return None
        if pn and (pn in state.negotiated_parts or pn in state.negotiating_parts):
            log_event(logger, logging.INFO, "directive_discarded",
                      call_id=state.call_id, directive_id=directive.directive_id,
                      reason=f"part {pn} already negotiated")
            return None

    return _DIRECTIVE_NODES.get(directive.directive_type)


def _take_nudge(state: CallState, settings: Settings) -> OverseerNudge | None:
    """Consume the staged nudge; one meant for another turn or gone stale is dropped."""
    nudge, state.pending_nudge = state.pending_nudge, None
    if nudge is None:
        return None
    if nudge.turn_number != state.turn_number or time.time() - nudge.created_at > settings.nudge_ttl_seconds:
        log_event(logger, logging.INFO, "nudge_discarded",
                  call_id=state.call_id, priority=nudge.priority,
                  nudge_turn=nudge.turn_number, turn_number=state.turn_number)
        return None
    return nudge


def _phase_override(state: CallState, target: CallNode, phase: OverseerPhase,
                    settings: Settings) -> CallNode:
    """Node an overseer phase transition moves the call to, when the route allows it."""
    node = _PHASE_NODES.get(phase)
    if node is None or target not in _PHASE_OVERRIDABLE:
        return target
    if node is CallNode.NEGOTIATE and not (
            state.over_budget_parts(settings.negotiation_threshold)
            and state.negotiation_attempts < state.max_negotiation_attempts):
        return target
    if node is CallNode.CONFIRMATION and not state.priced_quotes():
        return target
    return node


def _record_directive(state: CallState, directive: Directive, node: CallNode | None) -> None:
    state.applied_directives.append(AppliedDirective(
        directive_id=directive.directive_id,
        directive_type=directive.directive_type.value,
        turn_number=state.turn_number,
        node=node.value if node else state.current_node,
    ))


async def run_turn(
    llm,
    state: CallState,
    utterance: str,
    directive: Directive | None = None,
    settings: Settings | None = None,
) -> TurnOutcome:
    """Process one supplier utterance. The input state is not mutated."""
    settings = settings or Settings()
    if state.is_terminal:
        log_event(logger, logging.INFO, "turn_ignored",
                  call_id=state.call_id, status=state.status.value)
        return TurnOutcome(state=state, processed=False)

    new = copy.deepcopy(state)
    new.turn_number += 1
    new.say(Speaker.SUPPLIER, utterance)
    nudge = _take_nudge(new, settings)

    node = CallNode.parse(new.current_node)
    signal = classify_utterance(node, utterance)
    used_fallback = False
    if signal is Signal.UNCLEAR and node in INTENT_CLASSIFIED_NODES:
        intent = await extraction.classify_greeting_intent(
            llm, utterance, settings.turn_llm_timeout_seconds,
        )
        signal = INTENT_SIGNALS[intent]

    target = next_node(node, signal)
    if (new.waiting_for_transfer and node is CallNode.HOLD_ACKNOWLEDGMENT
            and signal in _PICKUP_SIGNALS):
        target = CallNode.GREETING
    if target not in (CallNode.HOLD_ACKNOWLEDGMENT, CallNode.TRANSFER):
        new.waiting_for_transfer = False
    if nudge is not None and nudge.phase_transition is not None:
        target = _phase_override(new, target, nudge.phase_transition, settings)

    ctx = NodeContext(llm=llm, settings=settings, utterance=utterance, signal=signal, nudge=nudge)

    pending: CallNode | None = None
    applied = ""
    if directive is not None:
        if target in CLOSING_NODES:
            log_event(logger, logging.INFO, "directive_discarded",
                      call_id=new.call_id, directive_id=directive.directive_id,
                      reason=f"call closing via {target.value}")
        else:
            pending = _directive_override(new, directive)
            if pending is None and directive.directive_type is DirectiveType.DEPRIORITIZE:
                _record_directive(new, directive, None)
                applied = directive.directive_type.value

    previous = node
    run = target
    spoken: list[str] = []
    for hop in range(MAX_HOPS):
        if pending is not None and run not in PASS_THROUGH_NODES and run not in CLOSING_NODES:
            run = pending
            pending = None
            ctx.directive = directive
            _record_directive(new, directive, run)
            applied = directive.directive_type.value

        if previous in NEGOTIATION_NODES and run not in NEGOTIATION_NODES:
            ctx.concluded_parts = list(new.negotiating_parts)
            conclude_negotiation(new)

        result = await NODE_HANDLERS[run](ctx, new)
        used_fallback = used_fallback or result.used_fallback
        if run not in PASS_THROUGH_NODES:
            new.current_node = run.value
        if result.say:
            spoken.append(result.say)
        if new.is_terminal or result.then is None:
            break
        previous, run = run, result.then
    else:
        logger.warning("Hop limit reached for %s at %s", new.call_id, run.value)

    if pending is not None:
        log_event(logger, logging.INFO, "directive_discarded",
                  call_id=new.call_id, directive_id=directive.directive_id,
                  reason="no eligible node this turn")

    if not spoken and not new.is_terminal:
        spoken.append("Sorry, could you say that again?")
        new.current_node = CallNode.CONVERSATIONAL_RESPONSE.value
        used_fallback = True

    reply = " ".join(spoken)
    if reply:
        new.say(Speaker.AI, reply)
    if new.is_terminal:
        new.outcome = determine_outcome(new)
    new.updated_at = time.time()

    log_event(logger, logging.INFO, "turn_processed",
              call_id=new.call_id, quote_request_id=new.quote_request_id,
              turn_number=new.turn_number, signal=signal.value,
              from_node=node.value, to_node=new.current_node,
              status=new.status.value, used_fallback=used_fallback,
              directive_applied=applied or None,
              nudge_applied=nudge.priority if nudge else None)

    return TurnOutcome(state=new, reply=reply, used_fallback=used_fallback, directive_applied=applied)


async def process_turn(
    llm,
    state: CallState,
    utterance: str,
    directive: Directive | None = None,
    settings: Settings | None = None,
) -> CallState:
    """processTurn(llmClient, currentState, incomingUtterance) → newState."""
    outcome = await run_turn(llm, state, utterance, directive=directive, settings=settings)
    return outcome.state
