"""
Quote Commander — Event Analyzer

Two halves, deliberately separate:

  apply_event()    deterministic bookkeeping from one event (call ended,
                   best price / lead time per part, phase). Always runs.
  analyze_event()  LLM review of a decision-worthy event that proposes
                   directives for the other calls. Best effort; errors
                   propagate to the caller, which keeps the bookkeeping.

The LLM never edits best quotes or call membership; it only proposes
directives, which are validated against CommanderDecision and against
the set of calls the Commander currently tracks.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Literal, Optional

from pydantic import BaseModel, Field

from coordinator.types import (
    BestQuote, CallPhase, CommanderState, TrackedCall, TrackedCallStatus,
)
from engine.events import Directive, DirectiveType, EventType, OverseerEvent
from engine.extraction import extract_json
from engine.llm import complete

logger = logging.getLogger("quote_commander.analyzer")

DECISION_WORTHY = frozenset({
    EventType.QUOTE_RECEIVED,
    EventType.QUOTE_REJECTED,
    EventType.NEGOTIATION_STALLED,
    EventType.SUPPLIER_WANTS_CALLBACK,
    EventType.ESCALATED,
    EventType.CALL_ENDED,
})


def should_analyze(event: OverseerEvent) -> bool:
    """Only decision-worthy events are worth an LLM round trip."""
    return event.event_type in DECISION_WORTHY


# ═══════════════════════════════════════════════════════════════════
# Deterministic update
# ═══════════════════════════════════════════════════════════════════

def _record_quote(state: CommanderState, event: OverseerEvent) -> None:
    data = event.data
    pn = str(data.get("partNumber") or "")
    if not pn:
        return
    # A quote can arrive before the part list was known (empty init)
    if pn not in state.parts:
        state.parts.append(pn)
    best = state.best_quotes.setdefault(pn, BestQuote())
    best.quotes_received += 1
    supplier = event.supplier_name or "unknown"

    price = data.get("price")
    if price is not None:
        price = float(price)
        if best.best_price is None or price < best.best_price:
            best.best_price = price
            best.best_supplier = supplier

    lead = data.get("leadTimeDays")
    if lead is not None:
        lead = int(lead)
        if best.best_lead_time_days is None or lead < best.best_lead_time_days:
            best.best_lead_time_days = lead
            best.best_lead_time_supplier = supplier


def apply_event(state: CommanderState, event: OverseerEvent) -> CommanderState:
    """
    Fold one event into the Commander state in place and return it.

    Registering an already-known call and re-ending an ended call are
    no-ops; an ended call is never made active again.
    """
    call = state.active_calls.get(event.call_id)
    if call is None:
        call = TrackedCall(supplier_name=event.supplier_name)
        state.active_calls[event.call_id] = call

    node = event.data.get("node")
    if node and call.is_active:
        call.phase = CallPhase.for_node(str(node))

    if event.event_type is EventType.QUOTE_RECEIVED:
        _record_quote(state, event)
    elif event.event_type is EventType.QUOTE_REJECTED:
        pn = str(event.data.get("partNumber") or "")
        if pn:
            state.best_quotes.setdefault(pn, BestQuote())
    elif event.event_type is EventType.CALL_ENDED and call.is_active:
        call.status = TrackedCallStatus.ENDED
        call.phase = CallPhase.FINALIZE
        call.ended_at = event.timestamp or time.time()

    state.events_processed += 1
    state.last_event_timestamp = event.timestamp
    return state


# ═══════════════════════════════════════════════════════════════════
# LLM analysis
# ═══════════════════════════════════════════════════════════════════

class ProposedDirective(BaseModel):
    directiveType: Literal["leverage_update", "deprioritize", "wrap_up", "escalate", "award"]
    targetCallId: str = Field(min_length=1)
    message: str = Field(min_length=1)
    partNumber: Optional[str] = None
    partNumbers: list[str] = Field(default_factory=list)
    competitorPrice: Optional[float] = Field(default=None, ge=0)


class CommanderDecision(BaseModel):
    analysis: str = "No analysis provided"
    directives: list[ProposedDirective] = Field(default_factory=list)


def _money(value: float | None) -> str:
    return f"${value:,.2f}" if value is not None else "none"


def build_analysis_prompt(state: CommanderState, event: OverseerEvent) -> str:
    quotes = []
    for pn in state.parts or sorted(state.best_quotes):
        q = state.best_quotes.get(pn, BestQuote())
        budget = state.budgets.get(pn)
        line = (
            f"- {pn}: best price {_money(q.best_price)}"
            f"{f' ({q.best_supplier})' if q.best_price is not None else ''}, "
            f"lead time {q.best_lead_time_days if q.best_lead_time_days is not None else 'unknown'}"
            f"{f' days ({q.best_lead_time_supplier})' if q.best_lead_time_days is not None else ''}, "
            f"{q.quotes_received} quote(s)"
        )
        if budget:
            line += f" | ceiling {_money(budget.budget_ceiling)}, target {_money(budget.target_price)}"
        quotes.append(line)

    calls = [
        f"- {c.supplier_name or 'unknown'} [{cid}]: {c.status.value}, phase {c.phase.value}"
        for cid, c in state.active_calls.items()
    ]
    data = "\n".join(f"  {k}: {json.dumps(v)}" for k, v in event.data.items())

    return f"""You are a procurement commander coordinating several supplier calls for the same quote request.
Compare quotes across suppliers and decide whether any OTHER active call should change course.

## Best quotes so far
{chr(10).join(quotes) or 'No quotes collected yet.'}

## Parts still needed
{', '.join(state.parts_needed()) or 'none'}

## Calls
{chr(10).join(calls) or 'No calls tracked.'}

## Triggering event
Type: {event.event_type.value}
From: {event.supplier_name} [{event.call_id}]
Data:
{data or '  (none)'}

## Directive types
- leverage_update: tell another call a competitor quoted lower (include partNumber and competitorPrice). Only when the gap is more than 5%.
- deprioritize: a part is well covered; tell a call to stop pursuing it (include partNumbers).
- wrap_up: the supplier is uncompetitive and inflexible; end politely. Give suppliers at least two chances first.
- escalate: terms deviate from policy (large deposits, unusual conditions); hand to a human.
- award: best overall package found; confirm terms with that supplier.

Consider the whole package: price, lead time and availability. Only target calls whose status is active,
using the full call id in brackets. Return an empty list when nothing should change.

Respond with JSON only:
{{"analysis": "one or two sentences", "directives": [{{"directiveType": "...", "targetCallId": "...", "message": "...", "partNumber": null, "partNumbers": [], "competitorPrice": null}}]}}"""


def _to_directive(state: CommanderState, proposed: ProposedDirective) -> Directive:
    directive_type = DirectiveType(proposed.directiveType)
    payload: dict = {"message": proposed.message}

    if directive_type is DirectiveType.LEVERAGE_UPDATE and proposed.partNumber:
        pn = proposed.partNumber
        payload["partNumber"] = pn
        competitor = proposed.competitorPrice
        if competitor is None and pn in state.best_quotes:
            competitor = state.best_quotes[pn].best_price
        if competitor is not None:
            payload["competitorPrice"] = competitor
        if pn in state.budgets:
            payload["targetPrice"] = state.budgets[pn].target_price
    elif directive_type is DirectiveType.DEPRIORITIZE:
        parts = list(proposed.partNumbers)
        if proposed.partNumber and proposed.partNumber not in parts:
            parts.append(proposed.partNumber)
        payload["partNumbers"] = parts

    return Directive(
        target_call_id=proposed.targetCallId,
        directive_type=directive_type,
        payload=payload,
        quote_request_id=state.quote_request_id,
    )


async def analyze_event(
    llm,
    state: CommanderState,
    event: OverseerEvent,
    timeout: float,
) -> list[Directive]:
    """
    Ask the LLM for directives. Raises LLMTimeout, ValueError (bad JSON),
    pydantic ValidationError or provider errors; the caller decides what
    a failure means.
    """
    raw = await complete(llm, build_analysis_prompt(state, event), timeout)
    decision = CommanderDecision.model_validate(extract_json(raw))

    directives = []
    for proposed in decision.directives:
        if proposed.targetCallId not in state.active_calls:
            logger.warning("Dropping directive for unknown call %s", proposed.targetCallId)
            continue
        directives.append(_to_directive(state, proposed))

    logger.info(
        "Commander analysis for %s (%s from %s): %s [%d directive(s)]",
        state.quote_request_id, event.event_type.value, event.supplier_name,
        decision.analysis, len(directives),
    )
    return directives
