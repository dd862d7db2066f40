"""
Quote Commander — Overseer Events and Directives

The two records that cross between a call and its Commander:

  OverseerEvent — call → Commander, published after the call's state write
  Directive     — Commander → call, staged under the call's directive key

derive_events() compares a call's state before and after one turn and
returns the notable transitions as events, so the turn processor itself
never touches the queue.
"""

from __future__ import annotations

import enum
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Protocol

from engine.types import Availability, CallState, CallStatus


# ─── Events ─────────────────────────────────────────────────────────

class EventType(str, enum.Enum):
    QUOTE_RECEIVED = "quote_received"            # a price was disclosed
    QUOTE_REJECTED = "quote_rejected"            # part unavailable from this supplier
    NEGOTIATION_STALLED = "negotiation_stalled"  # negotiation ended without a price drop
    TRANSFER_IN_PROGRESS = "transfer_in_progress"
    SUPPLIER_WANTS_CALLBACK = "supplier_wants_callback"
    ESCALATED = "escalated"
    CALL_ENDED = "call_ended"
    ERROR_DETECTED = "error_detected"


@dataclass(frozen=True)
class OverseerEvent:
    """Immutable notification about one call, ordered per quote request."""
    call_id: str
    quote_request_id: str
    supplier_name: str
    event_type: EventType
    timestamp: float
    data: dict[str, Any] = field(default_factory=dict)
    organization_id: str = ""
    event_id: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "eventId": self.event_id,
            "callId": self.call_id,
            "quoteRequestId": self.quote_request_id,
            "supplierName": self.supplier_name,
            "eventType": self.event_type.value,
            "timestamp": self.timestamp,
            "data": dict(self.data),
            "organizationId": self.organization_id,
        }

    @staticmethod
    def from_dict(d: dict[str, Any]) -> OverseerEvent:
        return OverseerEvent(
            call_id=d["callId"],
            quote_request_id=d["quoteRequestId"],
            supplier_name=d.get("supplierName", "") or "",
            event_type=EventType(d["eventType"]),
            timestamp=float(d.get("timestamp", 0.0)),
            data=dict(d.get("data") or {}),
            organization_id=d.get("organizationId", "") or "",
            event_id=d.get("eventId", "") or "",
        )


class EventPublisher(Protocol):
    """Anything that can hand an event to the Commander for its request."""

    async def publish(self, event: OverseerEvent) -> None: ...


# ─── Directives ─────────────────────────────────────────────────────

class DirectiveType(str, enum.Enum):
    LEVERAGE_UPDATE = "leverage_update"   # competitor price to push against
    DEPRIORITIZE = "deprioritize"         # stop pursuing some parts on this call
    WRAP_UP = "wrap_up"                   # end the call politely
    ESCALATE = "escalate"                 # hand off to a human
    AWARD = "award"                       # this supplier wins, confirm and close

    @property
    def priority(self) -> int:
        return _DIRECTIVE_PRIORITY[self]


_DIRECTIVE_PRIORITY = {
    DirectiveType.ESCALATE: 5,
    DirectiveType.WRAP_UP: 4,
    DirectiveType.AWARD: 3,
    DirectiveType.LEVERAGE_UPDATE: 2,
    DirectiveType.DEPRIORITIZE: 1,
}


@dataclass
class Directive:
    """
    An instruction for exactly one call, applied at most once by its next turn.

    payload keys by type:
      leverage_update — message, partNumber, competitorPrice, targetPrice
      deprioritize    — message, partNumbers
      others          — message
    """
    target_call_id: str
    directive_type: DirectiveType
    payload: dict[str, Any] = field(default_factory=dict)
    quote_request_id: str = ""
    directive_id: str = field(default_factory=lambda: f"dir_{uuid.uuid4().hex[:12]}")
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "directiveId": self.directive_id,
            "targetCallId": self.target_call_id,
            "directiveType": self.directive_type.value,
            "payload": dict(self.payload),
            "quoteRequestId": self.quote_request_id,
            "createdAt": self.created_at,
        }

    @staticmethod
    def from_dict(d: dict[str, Any]) -> Directive:
        return Directive(
            target_call_id=d["targetCallId"],
            directive_type=DirectiveType(d["directiveType"]),
            payload=dict(d.get("payload") or {}),
            quote_request_id=d.get("quoteRequestId", "") or "",
            directive_id=d.get("directiveId") or f"dir_{uuid.uuid4().hex[:12]}",
            created_at=float(d.get("createdAt", 0.0)),
        )


def select_directive(directives: list[Directive]) -> Directive | None:
    """Highest priority wins; among equals the most recently staged."""
    if not directives:
        return None
    return max(directives, key=lambda d: (d.directive_type.priority, d.created_at))


# ─── Event derivation ───────────────────────────────────────────────

def _event(after: CallState, event_type: EventType, index: int, data: dict[str, Any]) -> OverseerEvent:
    payload = {"node": after.current_node, "turnNumber": after.turn_number, **data}
    return OverseerEvent(
        call_id=after.call_id,
        quote_request_id=after.quote_request_id,
        supplier_name=after.supplier_name,
        event_type=event_type,
        timestamp=time.time(),
        data=payload,
        organization_id=after.organization_id,
        event_id=f"{after.call_id}:{after.turn_number}:{event_type.value}:{index}",
    )


def derive_events(before: CallState, after: CallState) -> list[OverseerEvent]:
    """Notable transitions between two consecutive states of the same call."""
    events: list[OverseerEvent] = []

    def add(event_type: EventType, data: dict[str, Any]) -> None:
        events.append(_event(after, event_type, len(events), data))

    for q in after.quotes[len(before.quotes):]:
        if q.price is not None:
            add(EventType.QUOTE_RECEIVED, {
                "partNumber": q.part_number,
                "price": q.price,
                "availability": q.availability.value,
                "leadTimeDays": q.lead_time_days,
                "isSubstitute": q.is_substitute,
                "originalPartNumber": q.original_part_number,
                "notes": q.notes,
            })
        elif q.availability is Availability.UNAVAILABLE:
            add(EventType.QUOTE_REJECTED, {"partNumber": q.part_number, "reason": q.notes})

    newly_negotiated = [pn for pn in after.negotiated_parts if pn not in before.negotiated_parts]
    stalled = []
    for pn in newly_negotiated:
        prices = [q.price for q in after.quotes if q.covers == pn and q.price is not None]
        if prices and prices[-1] >= prices[0]:
            stalled.append({"partNumber": pn, "price": prices[-1]})
    if stalled:
        add(EventType.NEGOTIATION_STALLED, {"parts": stalled})

    if after.waiting_for_transfer and not before.waiting_for_transfer:
        add(EventType.TRANSFER_IN_PROGRESS, {})

    if after.status is not before.status:
        if after.status is CallStatus.NEEDS_CALLBACK:
            add(EventType.SUPPLIER_WANTS_CALLBACK, {})
        elif after.status is CallStatus.ESCALATED:
            add(EventType.ESCALATED, {"reason": after.outcome})
        if after.is_terminal:
            add(EventType.CALL_ENDED, ended_data(after))

    return events


def ended_data(state: CallState) -> dict[str, Any]:
    return {
        "status": state.status.value,
        "outcome": state.outcome,
        "nextAction": state.next_action.value if state.next_action else None,
        "quotesExtracted": len(state.priced_quotes()),
    }


def call_ended_event(state: CallState) -> OverseerEvent:
    """call_ended for a call closed outside a turn (end-of-call report)."""
    return _event(state, EventType.CALL_ENDED, 0, ended_data(state))


def error_event(state: CallState, error: str) -> OverseerEvent:
    return _event(state, EventType.ERROR_DETECTED, 0, {"error": error[:500]})
