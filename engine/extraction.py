"""
Quote Commander — Structured Extraction

LLM-backed readers for supplier utterances, each with a deterministic
fallback so a slow or broken model never stalls a call:

  extract_pricing          — quotes (price, availability, lead time, substitutes)
  classify_greeting_intent — who picked up and whether they can help
  generate_reply           — free-form answer with a scripted fallback

LLM output is parsed with extract_json and validated with pydantic;
parse or validation errors take the fallback path like timeouts do.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Optional

from pydantic import BaseModel, Field, ValidationError

from engine import signals
from engine.llm import LLMTimeout, LLMResult, complete, complete_or_fallback
from engine.types import Availability, CallState, ExtractedQuote, Speaker

logger = logging.getLogger("quote_commander.extraction")


# ═══════════════════════════════════════════════════════════════════
# Output Schemas
# ═══════════════════════════════════════════════════════════════════

class PricingItem(BaseModel):
    """One part's pricing as heard from the supplier."""
    partNumber: str = Field(description="Part number the price applies to")
    price: Optional[float] = Field(default=None, ge=0, description="Unit price in USD")
    availability: str = Field(default="unknown", description="in_stock | backorder | unavailable")
    leadTimeDays: Optional[int] = Field(default=None, ge=0)
    notes: str = ""
    isSubstitute: bool = False
    originalPartNumber: Optional[str] = None


class PricingExtraction(BaseModel):
    quotes: list[PricingItem] = Field(default_factory=list)
    miscCosts: bool = Field(default=False, description="Supplier mentioned shipping/core/handling charges")


# ═══════════════════════════════════════════════════════════════════
# JSON Extraction
# ═══════════════════════════════════════════════════════════════════

def extract_json(text: str) -> dict:
    """
    Pull the first JSON object out of an LLM response.

    Handles ```json fences and leading/trailing prose. Raises ValueError
    when no parseable object is present.
    """
    block = re.search(r'```(?:json)?\s*\n?(.*?)\n?```', text, re.DOTALL)
    if block:
        text = block.group(1).strip()

    start = text.find('{')
    if start == -1:
        raise ValueError(f"No JSON object found in response: {text[:200]}")

    depth = 0
    in_string = False
    escape_next = False
    end = None
    for i in range(start, len(text)):
        c = text[i]
        if escape_next:
            escape_next = False
            continue
        if c == '\\' and in_string:
            escape_next = True
            continue
        if c == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if c == '{':
            depth += 1
        elif c == '}':
            depth -= 1
            if depth == 0:
                end = i + 1
                break

    candidate = text[start:end] if end else text[start:]
    try:
        parsed = json.loads(candidate)
    except json.JSONDecodeError:
        # Unescaped backslashes are the usual culprit
        fixed = re.sub(r'\\(?!["\\/bfnrtu])', r'\\\\', candidate)
        try:
            parsed = json.loads(fixed)
        except json.JSONDecodeError as e:
            raise ValueError(f"Malformed JSON in response: {e}") from e
    if not isinstance(parsed, dict):
        raise ValueError("Top-level JSON value is not an object")
    return parsed


# ═══════════════════════════════════════════════════════════════════
# Pricing
# ═══════════════════════════════════════════════════════════════════

@dataclass
class PricingResult:
    quotes: list[ExtractedQuote] = field(default_factory=list)
    misc_costs: bool = False
    used_fallback: bool = False


def _recent_transcript(state: CallState, limit: int = 6) -> str:
    lines = []
    for msg in state.conversation_history[-limit:]:
        who = "AI" if msg.speaker is Speaker.AI else msg.speaker.value.capitalize()
        lines.append(f"{who}: {msg.text}")
    return "\n".join(lines)


def build_pricing_prompt(state: CallState, utterance: str) -> str:
    parts = "\n".join(
        f"- {p.part_number}: {p.description} (qty {p.quantity})" for p in state.parts
    )
    return f"""Extract pricing from this supplier phone conversation. Return only JSON.

Recent conversation:
{_recent_transcript(state)}

Supplier just said: "{utterance}"

Parts we asked about:
{parts}

Return:
{{"quotes": [{{"partNumber": "string", "price": number or null,
  "availability": "in_stock" | "backorder" | "unavailable",
  "leadTimeDays": number or null, "notes": "string",
  "isSubstitute": boolean, "originalPartNumber": "string or null"}}],
 "miscCosts": boolean}}

Use the part numbers listed above unless the supplier offered a substitute;
for a substitute, set isSubstitute true and originalPartNumber to ours.
If the supplier gave no pricing or availability, return {{"quotes": [], "miscCosts": false}}."""


def _target_part(state: CallState, negotiated: list[str] | None = None) -> str | None:
    """
    The part the supplier is most likely answering about. A counter-offer
    belongs to the part just negotiated; otherwise only parts we have
    actually asked about can be credited.
    """
    if negotiated:
        # One price for a bundle cannot be split between parts
        return negotiated[0] if len(negotiated) == 1 else None
    unquoted = {p.part_number for p in state.unquoted_parts()}
    for pn in reversed(state.requested_parts):
        if pn in unquoted:
            return pn
    if state.requested_parts:
        return state.requested_parts[-1]
    return None


def fallback_extract_pricing(
    state: CallState, utterance: str, negotiated: list[str] | None = None,
) -> PricingResult:
    """
    Regex reading used when the LLM is unavailable: a single dollar amount
    (or an out-of-stock statement) is attributed to the part under discussion.
    """
    result = PricingResult(misc_costs=signals.mentions_misc_costs(utterance), used_fallback=True)
    target = _target_part(state, negotiated)
    if target is None:
        return result

    prices = signals.find_prices(utterance)
    if len(prices) == 1:
        result.quotes.append(ExtractedQuote(
            part_number=target,
            price=prices[0],
            availability=Availability.IN_STOCK,
            lead_time_days=signals.find_lead_time_days(utterance),
            notes="parsed without LLM",
            turn_number=state.turn_number,
        ))
    elif not prices and signals.is_out_of_stock(utterance):
        result.quotes.append(ExtractedQuote(
            part_number=target,
            availability=Availability.UNAVAILABLE,
            notes="parsed without LLM",
            turn_number=state.turn_number,
        ))
    return result


async def extract_pricing(
    llm, state: CallState, utterance: str, timeout: float, negotiated: list[str] | None = None,
) -> PricingResult:
    """LLM pricing extraction; falls back to fallback_extract_pricing on any failure."""
    if llm is None:
        return fallback_extract_pricing(state, utterance, negotiated)
    try:
        raw = await complete(llm, build_pricing_prompt(state, utterance), timeout)
        parsed = PricingExtraction.model_validate(extract_json(raw))
    except LLMTimeout as e:
        logger.warning("Pricing extraction timed out for %s: %s", state.call_id, e)
        return fallback_extract_pricing(state, utterance, negotiated)
    except (ValueError, ValidationError) as e:
        logger.warning("Pricing extraction unparseable for %s: %s", state.call_id, e)
        return fallback_extract_pricing(state, utterance, negotiated)
    except Exception as e:
        logger.warning("Pricing extraction failed for %s: %s: %s", state.call_id, type(e).__name__, e)
        return fallback_extract_pricing(state, utterance, negotiated)

    known = {p.part_number for p in state.parts}
    quotes = []
    for item in parsed.quotes:
        if item.partNumber not in known and not item.isSubstitute:
            logger.debug("Dropping quote for unknown part %s", item.partNumber)
            continue
        quotes.append(ExtractedQuote(
            part_number=item.partNumber,
            price=item.price,
            availability=Availability.parse(item.availability),
            lead_time_days=item.leadTimeDays,
            notes=item.notes,
            is_substitute=item.isSubstitute,
            original_part_number=item.originalPartNumber,
            turn_number=state.turn_number,
        ))
    return PricingResult(quotes=quotes, misc_costs=parsed.miscCosts)


# ═══════════════════════════════════════════════════════════════════
# Intent
# ═══════════════════════════════════════════════════════════════════

GREETING_INTENTS = ("yes_can_help", "transfer_needed", "not_interested", "voicemail", "unclear")

_INTENT_DESCRIPTIONS = {
    "yes_can_help": 'confirms they can help or are ready to listen ("Yes", "Speaking", "Go ahead")',
    "transfer_needed": 'needs to transfer you or you reached the wrong person',
    "not_interested": 'clearly declines ("Not interested", "No thanks")',
    "voicemail": 'an answering machine or voicemail greeting',
    "unclear": 'none of the above',
}


async def classify_greeting_intent(llm, utterance: str, timeout: float) -> str:
    """One of GREETING_INTENTS; "unclear" when the LLM fails or answers off-list."""
    options = "\n".join(f"{k}: {v}" for k, v in _INTENT_DESCRIPTIONS.items())
    prompt = (
        "Classify this reply to a phone call into ONE intent:\n\n"
        f"{options}\n\nThey said: \"{utterance}\"\n\n"
        "Return ONLY the intent name."
    )
    result = await complete_or_fallback(llm, prompt, timeout, fallback="unclear")
    intent = re.sub(r"[^a-z_]", "", result.content.lower())
    if intent == "voicemail" and signals.is_engaged(utterance):
        return "yes_can_help"
    return intent if intent in GREETING_INTENTS else "unclear"


# ═══════════════════════════════════════════════════════════════════
# Free-form Replies
# ═══════════════════════════════════════════════════════════════════

def build_reply_prompt(state: CallState, utterance: str, instruction: str) -> str:
    parts = "\n".join(
        f"- {p.part_number}: {p.description}, qty {p.quantity}" for p in state.parts
    )
    quotes = "\n".join(
        f"- {q.part_number}: {'$%.2f' % q.price if q.price is not None else q.availability.value}"
        for q in state.latest_quotes().values()
    ) or "- none yet"
    return f"""You are {state.caller_name or 'a parts buyer'} calling {state.supplier_name or 'a supplier'} \
for {state.organization_name} about quote {state.quote_reference}.

Parts we need:
{parts}

Quotes so far:
{quotes}

Recent conversation:
{_recent_transcript(state)}

Supplier just said: "{utterance}"

{instruction}
Reply in one or two short spoken sentences. No lists, no markdown."""


async def generate_reply(
    llm,
    state: CallState,
    utterance: str,
    instruction: str,
    fallback: str,
    timeout: float,
) -> LLMResult:
    result = await complete_or_fallback(
        llm, build_reply_prompt(state, utterance, instruction), timeout, fallback=fallback,
    )
    if not result.used_fallback:
        result.content = _clean_spoken(result.content) or fallback
    return result


def _clean_spoken(text: str) -> str:
    text = re.sub(
        r"^(here'?s? my (response|answer):?|my (response|answer):?)\s*", "", text.strip(),
        flags=re.IGNORECASE,
    )
    return text.strip().strip('"').strip()
