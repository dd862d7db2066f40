"""
Quote Commander — API Models

Request/response dataclasses for the API server.
No FastAPI dependency; used by server, call handler, and tests.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field, asdict
from typing import Any

from engine.types import Part

APOLOGY = (
    "I apologize, I'm having technical difficulties. "
    "Let me transfer you to a team member who can help."
)


@dataclass
class TurnRequest:
    """POST /v1/calls/turn request body (voice platform webhook)."""
    call_id: str
    content: str
    role: str = "user"
    call_log_id: str = ""

    @staticmethod
    def from_body(body: dict[str, Any]) -> TurnRequest:
        message = body.get("message") or {}
        call = body.get("call") or {}
        metadata = call.get("metadata") or {}
        return TurnRequest(
            call_id=str(call.get("id") or metadata.get("callLogId") or ""),
            content=message.get("content", ""),
            role=message.get("role", "user") or "user",
            call_log_id=str(metadata.get("callLogId") or ""),
        )

    @property
    def state_id(self) -> str:
        """Key the call's state is stored under; callLogId when the platform sends one."""
        return self.call_log_id or self.call_id

    def validate(self) -> list[str]:
        """Return list of validation errors (empty = valid)."""
        errors = []
        if not self.call_id:
            errors.append("call.id is required")
        if not isinstance(self.content, str):
            errors.append("message.content must be a string")
        return errors


@dataclass
class TurnResponse:
    """POST /v1/calls/turn response."""
    content: str
    end_call: bool = False
    current_node: str = ""
    status: str = ""
    quotes_extracted: int = 0
    needs_escalation: bool = False

    @staticmethod
    def apology() -> TurnResponse:
        return TurnResponse(content=APOLOGY, end_call=True, status="error")

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": {"role": "assistant", "content": self.content},
            "endCall": self.end_call,
            "metadata": {
                "currentNode": self.current_node,
                "status": self.status,
                "quotesExtracted": self.quotes_extracted,
                "needsEscalation": self.needs_escalation,
            },
        }


@dataclass
class CallInit:
    """POST /v1/calls request body. Seeds a call before the supplier picks up."""
    quote_request_id: str
    parts: list[dict[str, Any]]
    call_id: str = ""
    supplier_id: str = ""
    supplier_name: str = ""
    supplier_phone: str = ""
    organization_id: str = ""
    caller_name: str = ""
    custom_context: str = ""
    custom_instructions: str = ""

    @staticmethod
    def from_body(body: dict[str, Any]) -> CallInit:
        return CallInit(
            quote_request_id=body.get("quoteRequestId", ""),
            parts=body.get("parts", []),
            call_id=body.get("callId", "") or "",
            supplier_id=body.get("supplierId", "") or "",
            supplier_name=body.get("supplierName", "") or "",
            supplier_phone=body.get("supplierPhone", "") or "",
            organization_id=body.get("organizationId", "") or "",
            caller_name=body.get("callerName", "") or "",
            custom_context=body.get("customContext", "") or "",
            custom_instructions=body.get("customInstructions", "") or "",
        )

    def validate(self) -> list[str]:
        errors = []
        if not self.quote_request_id or not isinstance(self.quote_request_id, str):
            errors.append("quoteRequestId is required and must be a string")
        if not isinstance(self.parts, list) or not self.parts:
            errors.append("parts must be a non-empty list")
            return errors
        for i, part in enumerate(self.parts):
            if not isinstance(part, dict) or not part.get("partNumber"):
                errors.append(f"parts[{i}].partNumber is required")
                continue
            budget = part.get("budgetMax")
            if budget is not None and (not isinstance(budget, (int, float)) or budget < 0):
                errors.append(f"parts[{i}].budgetMax must be a non-negative number")
            quantity = part.get("quantity", 1)
            if not isinstance(quantity, int) or quantity < 1:
                errors.append(f"parts[{i}].quantity must be a positive integer")
        return errors

    def to_parts(self) -> list[Part]:
        return [Part.from_dict(p) for p in self.parts]


@dataclass
class ChatCompletionRequest:
    """POST /v1/chat/completions: OpenAI-compatible variant of the turn webhook."""
    call_id: str
    messages: list[dict[str, Any]] = field(default_factory=list)
    stream: bool = False
    model: str = "quote-commander"

    @staticmethod
    def from_body(body: dict[str, Any]) -> ChatCompletionRequest:
        call = body.get("call") or {}
        metadata = body.get("metadata") or {}
        call_metadata = call.get("metadata") or {}
        return ChatCompletionRequest(
            call_id=str(
                call_metadata.get("callLogId") or call.get("id")
                or metadata.get("callId") or ""
            ),
            messages=body.get("messages") or [],
            stream=bool(body.get("stream", False)),
            model=body.get("model", "quote-commander") or "quote-commander",
        )

    @property
    def utterance(self) -> str:
        """Content of the last user message."""
        for message in reversed(self.messages):
            if isinstance(message, dict) and message.get("role") == "user":
                content = message.get("content", "")
                return content if isinstance(content, str) else ""
        return ""

    def validate(self) -> list[str]:
        errors = []
        if not self.call_id:
            errors.append("call.id or metadata.callId is required")
        if not isinstance(self.messages, list):
            errors.append("messages must be a list")
        return errors


@dataclass
class ChatCompletionResponse:
    """Non-streaming chat.completion body."""
    content: str
    model: str
    end_call: bool = False
    completion_id: str = field(default_factory=lambda: f"chatcmpl-{uuid.uuid4().hex[:24]}")
    created: int = field(default_factory=lambda: int(time.time()))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.completion_id,
            "object": "chat.completion",
            "created": self.created,
            "model": self.model,
            "choices": [{
                "index": 0,
                "message": {"role": "assistant", "content": self.content},
                "finish_reason": "stop",
            }],
            "endCall": self.end_call,
        }

    def chunks(self) -> list[dict[str, Any]]:
        """The same answer as chat.completion.chunk objects for SSE."""
        base = {
            "id": self.completion_id,
            "object": "chat.completion.chunk",
            "created": self.created,
            "model": self.model,
        }
        return [
            {**base, "choices": [{"index": 0, "delta": {"role": "assistant", "content": self.content},
                                  "finish_reason": None}]},
            {**base, "choices": [{"index": 0, "delta": {}, "finish_reason": "stop"}],
             "endCall": self.end_call},
        ]


@dataclass
class CallSummary:
    """GET /v1/calls/{id} and end-of-call responses."""
    call_id: str
    quote_request_id: str
    status: str
    current_node: str
    turn_number: int
    quotes_extracted: int
    outcome: str | None = None
    next_action: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
