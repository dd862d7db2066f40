"""
Quote Commander — Coordinator Type Definitions

State the Commander keeps for one quote request: which calls are live,
the best offer seen per part, per-part budgets, and bookkeeping for
ordered, at-least-once event processing.

Stored as one JSON blob under commander:{quoteRequestId}.
"""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from typing import Any

from engine.events import Directive, DirectiveType  # noqa: F401  (re-exported)


# ─── Tracked Calls ──────────────────────────────────────────────────

class TrackedCallStatus(str, enum.Enum):
    """active → ended; never the other way."""
    ACTIVE = "active"
    ENDED = "ended"


class CallPhase(str, enum.Enum):
    GATHER = "GATHER"
    NEGOTIATE = "NEGOTIATE"
    FINALIZE = "FINALIZE"

    @staticmethod
    def for_node(node: str) -> CallPhase:
        if node in ("negotiate", "final_offer"):
            return CallPhase.NEGOTIATE
        if node in ("confirmation", "misc_costs_inquiry", "polite_end", "end"):
            return CallPhase.FINALIZE
        return CallPhase.GATHER


@dataclass
class TrackedCall:
    supplier_id: str = ""
    supplier_name: str = ""
    status: TrackedCallStatus = TrackedCallStatus.ACTIVE
    phase: CallPhase = CallPhase.GATHER
    registered_at: float = field(default_factory=time.time)
    ended_at: float | None = None

    @property
    def is_active(self) -> bool:
        return self.status is TrackedCallStatus.ACTIVE

    def to_dict(self) -> dict[str, Any]:
        return {
            "supplierId": self.supplier_id,
            "supplierName": self.supplier_name,
            "status": self.status.value,
            "phase": self.phase.value,
            "registeredAt": self.registered_at,
            "endedAt": self.ended_at,
        }

    @staticmethod
    def from_dict(d: dict[str, Any]) -> TrackedCall:
        return TrackedCall(
            supplier_id=d.get("supplierId", "") or "",
            supplier_name=d.get("supplierName", "") or "",
            status=TrackedCallStatus(d.get("status", "active")),
            phase=CallPhase(d.get("phase", "GATHER")),
            registered_at=float(d.get("registeredAt", 0.0)),
            ended_at=d.get("endedAt"),
        )


# ─── Negotiation Context ────────────────────────────────────────────

@dataclass
class BestQuote:
    best_price: float | None = None
    best_supplier: str = ""
    best_lead_time_days: int | None = None
    best_lead_time_supplier: str = ""
    quotes_received: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "bestPrice": self.best_price,
            "bestSupplier": self.best_supplier,
            "bestLeadTimeDays": self.best_lead_time_days,
            "bestLeadTimeSupplier": self.best_lead_time_supplier,
            "quotesReceived": self.quotes_received,
        }

    @staticmethod
    def from_dict(d: dict[str, Any]) -> BestQuote:
        return BestQuote(
            best_price=d.get("bestPrice"),
            best_supplier=d.get("bestSupplier", "") or "",
            best_lead_time_days=d.get("bestLeadTimeDays"),
            best_lead_time_supplier=d.get("bestLeadTimeSupplier", "") or "",
            quotes_received=int(d.get("quotesReceived", 0)),
        )


@dataclass
class Budget:
    budget_ceiling: float
    target_price: float

    @staticmethod
    def create(budget_max: float, target_ratio: float = 0.85) -> Budget:
        return Budget(budget_ceiling=budget_max, target_price=round(budget_max * target_ratio, 2))

    def to_dict(self) -> dict[str, Any]:
        return {"budgetCeiling": self.budget_ceiling, "targetPrice": self.target_price}

    @staticmethod
    def from_dict(d: dict[str, Any]) -> Budget:
        return Budget(budget_ceiling=float(d["budgetCeiling"]), target_price=float(d["targetPrice"]))


# ─── Commander State ────────────────────────────────────────────────

SEEN_EVENT_LIMIT = 500


@dataclass
class CommanderState:
    """
    One per quote request. Written only by the single ordered consumer
    of that request's event partition.
    """
    quote_request_id: str
    organization_id: str = ""
    parts: list[str] = field(default_factory=list)
    active_calls: dict[str, TrackedCall] = field(default_factory=dict)
    best_quotes: dict[str, BestQuote] = field(default_factory=dict)
    budgets: dict[str, Budget] = field(default_factory=dict)
    events_processed: int = 0
    last_event_timestamp: float | None = None
    seen_event_ids: list[str] = field(default_factory=list)
    directives_staged: int = 0
    created_at: float = field(default_factory=time.time)

    @staticmethod
    def create(quote_request_id: str, organization_id: str = "") -> CommanderState:
        return CommanderState(quote_request_id=quote_request_id, organization_id=organization_id)

    def parts_needed(self) -> list[str]:
        """Parts nobody has priced yet."""
        return [
            pn for pn in self.parts
            if pn not in self.best_quotes or self.best_quotes[pn].best_price is None
        ]

    def active_call_ids(self) -> list[str]:
        return [cid for cid, c in self.active_calls.items() if c.is_active]

    def ended_call_ids(self) -> list[str]:
        return [cid for cid, c in self.active_calls.items() if not c.is_active]

    @property
    def all_calls_ended(self) -> bool:
        return bool(self.active_calls) and not self.active_call_ids()

    def remember_event(self, event_id: str) -> None:
        self.seen_event_ids.append(event_id)
        if len(self.seen_event_ids) > SEEN_EVENT_LIMIT:
            del self.seen_event_ids[: len(self.seen_event_ids) - SEEN_EVENT_LIMIT]

    def to_dict(self) -> dict[str, Any]:
        return {
            "quoteRequestId": self.quote_request_id,
            "organizationId": self.organization_id,
            "parts": list(self.parts),
            "activeCalls": {cid: c.to_dict() for cid, c in self.active_calls.items()},
            "bestQuotes": {pn: q.to_dict() for pn, q in self.best_quotes.items()},
            "budgets": {pn: b.to_dict() for pn, b in self.budgets.items()},
            "eventsProcessed": self.events_processed,
            "lastEventTimestamp": self.last_event_timestamp,
            "seenEventIds": list(self.seen_event_ids),
            "directivesStaged": self.directives_staged,
            "createdAt": self.created_at,
        }

    @staticmethod
    def from_dict(d: dict[str, Any]) -> CommanderState:
        return CommanderState(
            quote_request_id=d["quoteRequestId"],
            organization_id=d.get("organizationId", "") or "",
            parts=list(d.get("parts", [])),
            active_calls={
                cid: TrackedCall.from_dict(c) for cid, c in (d.get("activeCalls") or {}).items()
            },
            best_quotes={
                pn: BestQuote.from_dict(q) for pn, q in (d.get("bestQuotes") or {}).items()
            },
            budgets={pn: Budget.from_dict(b) for pn, b in (d.get("budgets") or {}).items()},
            events_processed=int(d.get("eventsProcessed", 0)),
            last_event_timestamp=d.get("lastEventTimestamp"),
            seen_event_ids=list(d.get("seenEventIds", [])),
            directives_staged=int(d.get("directivesStaged", 0)),
            created_at=float(d.get("createdAt", 0.0)),
        )
