"""
Quote Commander — Call Type Definitions

Data structures for one supplier call: the parts being quoted, the
conversation transcript, extracted quotes, the per-call overseer coaching
state, and the CallState blob the turn processor reads and writes once per
supplier utterance.

Stored JSON uses camelCase keys (call:{callId}); attributes are snake_case.
"""

from __future__ import annotations

import enum
import re
import time
import uuid
from dataclasses import dataclass, field
from typing import Any


# ─── Enumerations ───────────────────────────────────────────────────

class CallStatus(str, enum.Enum):
    """Lifecycle of a call. Anything but IN_PROGRESS is terminal."""
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    NEEDS_CALLBACK = "needs_callback"
    ESCALATED = "escalated"

    @property
    def is_terminal(self) -> bool:
        return self is not CallStatus.IN_PROGRESS


class NextAction(str, enum.Enum):
    RETRY = "retry"
    EMAIL_FALLBACK = "email_fallback"
    HUMAN_FOLLOWUP = "human_followup"
    CALLBACK_SCHEDULED = "callback_scheduled"


class Speaker(str, enum.Enum):
    AI = "ai"
    SUPPLIER = "supplier"
    SYSTEM = "system"


class Availability(str, enum.Enum):
    IN_STOCK = "in_stock"
    BACKORDER = "backorder"
    UNAVAILABLE = "unavailable"
    UNKNOWN = "unknown"

    @staticmethod
    def parse(value: Any) -> Availability:
        try:
            return Availability(str(value).lower())
        except ValueError:
            return Availability.UNKNOWN


class CallOutcome(str, enum.Enum):
    QUOTE_RECEIVED = "QUOTE_RECEIVED"
    PARTIAL_QUOTE = "PARTIAL_QUOTE"
    CALLBACK_REQUESTED = "CALLBACK_REQUESTED"
    VOICEMAIL_LEFT = "VOICEMAIL_LEFT"
    TOO_COMPLEX = "TOO_COMPLEX"
    NO_ANSWER = "NO_ANSWER"


# ─── Payload ────────────────────────────────────────────────────────

@dataclass
class Part:
    """One line item the buyer wants quoted."""
    part_number: str
    description: str = ""
    quantity: int = 1
    budget_max: float | None = None
    source: str = "manual"

    def to_dict(self) -> dict[str, Any]:
        return {
            "partNumber": self.part_number,
            "description": self.description,
            "quantity": self.quantity,
            "budgetMax": self.budget_max,
            "source": self.source,
        }

    @staticmethod
    def from_dict(d: dict[str, Any]) -> Part:
        budget = d.get("budgetMax")
        return Part(
            part_number=str(d["partNumber"]),
            description=d.get("description", "") or "",
            quantity=int(d.get("quantity", 1) or 1),
            budget_max=float(budget) if budget is not None else None,
            source=d.get("source", "manual") or "manual",
        )


@dataclass
class ExtractedQuote:
    """A price (or a refusal) heard for one part. Later entries supersede earlier ones."""
    part_number: str
    price: float | None = None
    availability: Availability = Availability.UNKNOWN
    lead_time_days: int | None = None
    notes: str = ""
    is_substitute: bool = False
    original_part_number: str | None = None
    turn_number: int = 0

    @property
    def covers(self) -> str:
        """Part number this quote answers for; a substitute stands in for the original."""
        if self.is_substitute and self.original_part_number:
            return self.original_part_number
        return self.part_number

    def to_dict(self) -> dict[str, Any]:
        return {
            "partNumber": self.part_number,
            "price": self.price,
            "availability": self.availability.value,
            "leadTimeDays": self.lead_time_days,
            "notes": self.notes,
            "isSubstitute": self.is_substitute,
            "originalPartNumber": self.original_part_number,
            "turnNumber": self.turn_number,
        }

    @staticmethod
    def from_dict(d: dict[str, Any]) -> ExtractedQuote:
        price = d.get("price")
        lead = d.get("leadTimeDays")
        return ExtractedQuote(
            part_number=str(d["partNumber"]),
            price=float(price) if price is not None else None,
            availability=Availability.parse(d.get("availability", "unknown")),
            lead_time_days=int(lead) if lead is not None else None,
            notes=d.get("notes", "") or "",
            is_substitute=bool(d.get("isSubstitute", False)),
            original_part_number=d.get("originalPartNumber"),
            turn_number=int(d.get("turnNumber", 0)),
        )


@dataclass
class ConversationMessage:
    speaker: Speaker
    text: str
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {"speaker": self.speaker.value, "text": self.text, "timestamp": self.timestamp}

    @staticmethod
    def from_dict(d: dict[str, Any]) -> ConversationMessage:
        return ConversationMessage(
            speaker=Speaker(d["speaker"]),
            text=d.get("text", ""),
            timestamp=float(d.get("timestamp", 0.0)),
        )


@dataclass
class AppliedDirective:
    """Trace of a Commander directive that changed this call's behavior."""
    directive_id: str
    directive_type: str
    turn_number: int
    node: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "directiveId": self.directive_id,
            "directiveType": self.directive_type,
            "turnNumber": self.turn_number,
            "node": self.node,
        }

    @staticmethod
    def from_dict(d: dict[str, Any]) -> AppliedDirective:
        return AppliedDirective(
            directive_id=d.get("directiveId", ""),
            directive_type=d.get("directiveType", ""),
            turn_number=int(d.get("turnNumber", 0)),
            node=d.get("node", ""),
        )


# ─── Overseer ───────────────────────────────────────────────────────

class OverseerPhase(str, enum.Enum):
    """Coaching phase of one call; only ever moves forward."""
    GATHER = "GATHER"
    NEGOTIATE = "NEGOTIATE"
    FINALIZE = "FINALIZE"

    @property
    def rank(self) -> int:
        return _PHASE_ORDER.index(self)


_PHASE_ORDER = [OverseerPhase.GATHER, OverseerPhase.NEGOTIATE, OverseerPhase.FINALIZE]

_NUDGE_LABELS = {
    "P0": "CRITICAL, you MUST address this in your next response",
    "P1": "IMPORTANT, you SHOULD address this",
    "P2": "SUGGESTION, consider this if natural",
}


@dataclass
class OverseerNudge:
    """Coaching for the voice agent, staged after one turn and consumed by the next."""
    priority: str                          # P0 | P1 | P2
    text: str
    turn_number: int                       # the turn meant to consume it
    phase: OverseerPhase = OverseerPhase.GATHER
    phase_transition: OverseerPhase | None = None
    source: str = "overseer"
    created_at: float = field(default_factory=time.time)

    def prompt_text(self) -> str:
        """Guidance block appended to reply prompts."""
        label = _NUDGE_LABELS.get(self.priority, self.priority)
        text = f"\n\nSUPERVISOR GUIDANCE (follow these instructions):\n[{self.priority}] {label}: {self.text}"
        if self.phase_transition is not None:
            text += f"\nPHASE TRANSITION: Move to {self.phase_transition.value} phase."
        return text

    def to_dict(self) -> dict[str, Any]:
        return {
            "priority": self.priority,
            "text": self.text,
            "turnNumber": self.turn_number,
            "phase": self.phase.value,
            "phaseTransition": self.phase_transition.value if self.phase_transition else None,
            "source": self.source,
            "createdAt": self.created_at,
        }

    @staticmethod
    def from_dict(d: dict[str, Any]) -> OverseerNudge:
        transition = d.get("phaseTransition")
        return OverseerNudge(
            priority=d.get("priority", "P2"),
            text=d.get("text", ""),
            turn_number=int(d.get("turnNumber", 0)),
            phase=OverseerPhase(d.get("phase", "GATHER")),
            phase_transition=OverseerPhase(transition) if transition else None,
            source=d.get("source", "overseer"),
            created_at=float(d.get("createdAt", 0.0)),
        )


@dataclass
class InfoWeNeed:
    """What the buyer still has to learn on this call."""
    unit_prices: str = "pending"           # pending | partial | collected
    lead_time: str = "pending"             # pending | collected | not_applicable
    stock_status: str = "pending"          # pending | collected | not_applicable
    all_parts_addressed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "unitPrices": self.unit_prices,
            "leadTime": self.lead_time,
            "stockStatus": self.stock_status,
            "allPartsAddressed": self.all_parts_addressed,
        }

    @staticmethod
    def from_dict(d: dict[str, Any]) -> InfoWeNeed:
        return InfoWeNeed(
            unit_prices=d.get("unitPrices", "pending"),
            lead_time=d.get("leadTime", "pending"),
            stock_status=d.get("stockStatus", "pending"),
            all_parts_addressed=bool(d.get("allPartsAddressed", False)),
        )


@dataclass
class OverseerState:
    phase: OverseerPhase = OverseerPhase.GATHER
    last_analyzed_turn: int = -1
    info_we_need: InfoWeNeed = field(default_factory=InfoWeNeed)
    flagged_issues: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "lastAnalyzedTurn": self.last_analyzed_turn,
            "infoWeNeed": self.info_we_need.to_dict(),
            "flaggedIssues": list(self.flagged_issues),
        }

    @staticmethod
    def from_dict(d: dict[str, Any]) -> OverseerState:
        return OverseerState(
            phase=OverseerPhase(d.get("phase", "GATHER")),
            last_analyzed_turn=int(d.get("lastAnalyzedTurn", -1)),
            info_we_need=InfoWeNeed.from_dict(d.get("infoWeNeed") or {}),
            flagged_issues=list(d.get("flaggedIssues", [])),
        )


# ─── Call State ─────────────────────────────────────────────────────

@dataclass
class CallState:
    """
    Everything one call knows. Owned by that call's turn processor;
    the Commander only reads it to resolve supplier ids.
    """
    call_id: str
    quote_request_id: str
    supplier_id: str = ""
    supplier_name: str = ""
    supplier_phone: str = ""
    organization_id: str = ""
    organization_name: str = "our company"
    quote_reference: str = "QR-UNKNOWN"
    caller_name: str = ""
    parts: list[Part] = field(default_factory=list)
    custom_context: str = ""
    custom_instructions: str = ""

    current_node: str = "greeting"
    conversation_history: list[ConversationMessage] = field(default_factory=list)
    contact_name: str = ""
    contact_role: str = ""
    quotes: list[ExtractedQuote] = field(default_factory=list)

    negotiation_attempts: int = 0
    max_negotiation_attempts: int = 2
    negotiated_parts: list[str] = field(default_factory=list)
    negotiating_parts: list[str] = field(default_factory=list)
    clarification_attempts: int = 0
    bot_screening_attempts: int = 0
    bot_screening_max_attempts: int = 3
    requested_parts: list[str] = field(default_factory=list)
    deprioritized_parts: list[str] = field(default_factory=list)
    applied_directives: list[AppliedDirective] = field(default_factory=list)
    overseer: OverseerState = field(default_factory=OverseerState)
    pending_nudge: OverseerNudge | None = None

    needs_transfer: bool = False
    needs_human_escalation: bool = False
    all_parts_requested: bool = False
    has_misc_costs: bool = False
    misc_costs_asked: bool = False
    waiting_for_transfer: bool = False
    is_follow_up: bool = False

    turn_number: int = 0
    status: CallStatus = CallStatus.IN_PROGRESS
    outcome: str = ""
    next_action: NextAction | None = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    # ── Derived views ─────────────────────────────────────────────

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def part(self, part_number: str) -> Part | None:
        for p in self.parts:
            if p.part_number == part_number:
                return p
        return None

    def latest_quotes(self) -> dict[str, ExtractedQuote]:
        """
        Last quote per requested part wins; insertion order of first sighting
        is kept. Substitutes are filed under the part they replace, so their
        price is weighed against that part's budget.
        """
        latest: dict[str, ExtractedQuote] = {}
        for q in self.quotes:
            latest[q.covers] = q
        return latest

    def priced_quotes(self) -> list[ExtractedQuote]:
        return [q for q in self.latest_quotes().values() if q.price is not None]

    def unquoted_parts(self) -> list[Part]:
        latest = self.latest_quotes()
        return [p for p in self.parts if p.part_number not in latest]

    def over_budget_parts(self, threshold: float) -> list[Part]:
        """Parts whose latest price beats budgetMax by more than `threshold`, not yet negotiated."""
        latest = self.latest_quotes()
        result = []
        for p in self.parts:
            q = latest.get(p.part_number)
            if q is None or q.price is None or p.budget_max is None:
                continue
            if p.part_number in self.negotiated_parts:
                continue
            if q.price > p.budget_max * (1 + threshold):
                result.append(p)
        return result

    def mark_negotiated(self, part_numbers: list[str]) -> None:
        """Add to negotiated_parts with set semantics; never removes."""
        for pn in part_numbers:
            if pn not in self.negotiated_parts:
                self.negotiated_parts.append(pn)

    def last_supplier_text(self) -> str:
        for msg in reversed(self.conversation_history):
            if msg.speaker is Speaker.SUPPLIER:
                return msg.text
        return ""

    def say(self, speaker: Speaker, text: str) -> None:
        self.conversation_history.append(ConversationMessage(speaker=speaker, text=text))

    # ── Serialization ─────────────────────────────────────────────

    def to_dict(self) -> dict[str, Any]:
        return {
            "callId": self.call_id,
            "quoteRequestId": self.quote_request_id,
            "supplierId": self.supplier_id,
            "supplierName": self.supplier_name,
            "supplierPhone": self.supplier_phone,
            "organizationId": self.organization_id,
            "organizationName": self.organization_name,
            "quoteReference": self.quote_reference,
            "callerName": self.caller_name,
            "parts": [p.to_dict() for p in self.parts],
            "customContext": self.custom_context,
            "customInstructions": self.custom_instructions,
            "currentNode": self.current_node,
            "conversationHistory": [m.to_dict() for m in self.conversation_history],
            "contactName": self.contact_name,
            "contactRole": self.contact_role,
            "quotes": [q.to_dict() for q in self.quotes],
            "negotiationAttempts": self.negotiation_attempts,
            "maxNegotiationAttempts": self.max_negotiation_attempts,
            "negotiatedParts": list(self.negotiated_parts),
            "negotiatingParts": list(self.negotiating_parts),
            "clarificationAttempts": self.clarification_attempts,
            "botScreeningAttempts": self.bot_screening_attempts,
            "botScreeningMaxAttempts": self.bot_screening_max_attempts,
            "requestedParts": list(self.requested_parts),
            "deprioritizedParts": list(self.deprioritized_parts),
            "appliedDirectives": [d.to_dict() for d in self.applied_directives],
            "overseer": self.overseer.to_dict(),
            "pendingNudge": self.pending_nudge.to_dict() if self.pending_nudge else None,
            "needsTransfer": self.needs_transfer,
            "needsHumanEscalation": self.needs_human_escalation,
            "allPartsRequested": self.all_parts_requested,
            "hasMiscCosts": self.has_misc_costs,
            "miscCostsAsked": self.misc_costs_asked,
            "waitingForTransfer": self.waiting_for_transfer,
            "isFollowUp": self.is_follow_up,
            "turnNumber": self.turn_number,
            "status": self.status.value,
            "outcome": self.outcome,
            "nextAction": self.next_action.value if self.next_action else None,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @staticmethod
    def from_dict(d: dict[str, Any]) -> CallState:
        next_action = d.get("nextAction")
        nudge = d.get("pendingNudge")
        return CallState(
            call_id=d["callId"],
            quote_request_id=d.get("quoteRequestId", ""),
            supplier_id=d.get("supplierId", "") or "",
            supplier_name=d.get("supplierName", "") or "",
            supplier_phone=d.get("supplierPhone", "") or "",
            organization_id=d.get("organizationId", "") or "",
            organization_name=d.get("organizationName", "our company"),
            quote_reference=d.get("quoteReference", "QR-UNKNOWN"),
            caller_name=d.get("callerName", "") or "",
            parts=[Part.from_dict(p) for p in d.get("parts", [])],
            custom_context=d.get("customContext", "") or "",
            custom_instructions=d.get("customInstructions", "") or "",
            current_node=d.get("currentNode", "greeting"),
            conversation_history=[
                ConversationMessage.from_dict(m) for m in d.get("conversationHistory", [])
            ],
            contact_name=d.get("contactName", "") or "",
            contact_role=d.get("contactRole", "") or "",
            quotes=[ExtractedQuote.from_dict(q) for q in d.get("quotes", [])],
            negotiation_attempts=int(d.get("negotiationAttempts", 0)),
            max_negotiation_attempts=int(d.get("maxNegotiationAttempts", 2)),
            negotiated_parts=list(dict.fromkeys(d.get("negotiatedParts", []))),
            negotiating_parts=list(d.get("negotiatingParts", [])),
            clarification_attempts=int(d.get("clarificationAttempts", 0)),
            bot_screening_attempts=int(d.get("botScreeningAttempts", 0)),
            bot_screening_max_attempts=int(d.get("botScreeningMaxAttempts", 3)),
            requested_parts=list(d.get("requestedParts", [])),
            deprioritized_parts=list(d.get("deprioritizedParts", [])),
            applied_directives=[
                AppliedDirective.from_dict(x) for x in d.get("appliedDirectives", [])
            ],
            overseer=OverseerState.from_dict(d.get("overseer") or {}),
            pending_nudge=OverseerNudge.from_dict(nudge) if nudge else None,
            needs_transfer=bool(d.get("needsTransfer", False)),
            needs_human_escalation=bool(d.get("needsHumanEscalation", False)),
            all_parts_requested=bool(d.get("allPartsRequested", False)),
            has_misc_costs=bool(d.get("hasMiscCosts", False)),
            misc_costs_asked=bool(d.get("miscCostsAsked", False)),
            waiting_for_transfer=bool(d.get("waitingForTransfer", False)),
            is_follow_up=bool(d.get("isFollowUp", False)),
            turn_number=int(d.get("turnNumber", 0)),
            status=CallStatus(d.get("status", "in_progress")),
            outcome=d.get("outcome", "") or "",
            next_action=NextAction(next_action) if next_action else None,
            created_at=float(d.get("createdAt", 0.0)),
            updated_at=float(d.get("updatedAt", 0.0)),
        )


# ─── Initialization ─────────────────────────────────────────────────

_FOLLOW_UP_MARKERS = ("follow up", "follow-up", "previous quote", "previous call", "previous attempt")


def initialize_call_state(
    quote_request_id: str,
    parts: list[Part],
    call_id: str = "",
    supplier_id: str = "",
    supplier_name: str = "",
    supplier_phone: str = "",
    organization_id: str = "",
    caller_name: str = "",
    custom_context: str = "",
    custom_instructions: str = "",
    max_negotiation_attempts: int = 2,
    bot_screening_max_attempts: int = 3,
) -> CallState:
    """Seed a new call at the greeting node."""
    company = re.search(r"Company:\s*([^\n]+)", custom_context)
    reference = re.search(r"Quote Request:\s*([^\n]+)", custom_context)
    instructions = custom_instructions.lower()

    return CallState(
        call_id=call_id or f"call_{uuid.uuid4().hex[:12]}",
        quote_request_id=quote_request_id,
        supplier_id=supplier_id,
        supplier_name=supplier_name,
        supplier_phone=supplier_phone,
        organization_id=organization_id,
        organization_name=company.group(1).strip() if company else "our company",
        quote_reference=reference.group(1).strip() if reference else "QR-UNKNOWN",
        caller_name=caller_name,
        parts=list(parts),
        custom_context=custom_context,
        custom_instructions=custom_instructions,
        max_negotiation_attempts=max_negotiation_attempts,
        bot_screening_max_attempts=bot_screening_max_attempts,
        is_follow_up=any(m in instructions for m in _FOLLOW_UP_MARKERS),
    )
