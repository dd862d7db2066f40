"""
Quote Commander — Utterance Detectors

Deterministic phrase detectors over a single supplier utterance. These
run before (and instead of, when they match) any LLM classification, so
routing stays cheap and testable. Also home to the speech formatting of
part numbers.
"""

from __future__ import annotations

import re

# ─── Phrase tables ──────────────────────────────────────────────────

HOLD_PHRASES = (
    "one moment", "just a moment", "hold on", "hold please",
    "one second", "just a sec", "hang on", "one sec",
    "give me a moment", "give me a sec", "give me a minute",
    "let me check", "let me look", "let me pull", "let me see",
    "let me find", "let me grab", "bear with me", "hang tight",
    "just a minute", "looking that up", "checking on that", "pulling that up",
)

TRANSFER_PHRASES = (
    "let me transfer", "i'll transfer", "i will transfer", "transferring you",
    "putting you through", "connect you", "let me put you through",
    "wrong department", "different department",
)

ENGAGEMENT_PHRASES = (
    "speaking", "this is parts", "parts department", "how can i help",
    "what do you need", "go ahead", "what can i do for you",
    "yes this is", "yeah this is",
)

RECEPTIONIST_PHRASES = (
    "who's calling", "who is calling", "who am i speaking",
    "your name", "who are you", "what company", "calling from",
    "what is this regarding", "what's this about", "what is this about",
    "what are you calling about", "reason for your call",
    "may i ask who", "can i ask who",
)

CONTACT_INFO_PHRASES = (
    "your phone", "your number", "phone number", "who is this",
    "account number", "your account", "your email", "email address",
    "company name",
)

FIRM_PRICE_PHRASES = (
    "best price", "best i can do", "price is firm", "prices are firm",
    "can't go lower", "cannot go lower", "can't go any lower", "cannot go any lower",
    "that's the price", "that is the price", "lowest i can go", "lowest we can go",
    "already discounted", "already giving you", "best we can do", "non-negotiable",
    "set price", "can't budge", "cannot budge", "final price",
    "not negotiable", "price is what it is", "as low as i can go",
    "as low as we can go", "no wiggle room", "no room to move",
)

AGREEMENT_PHRASES = (
    "yes", "yeah", "yep", "correct", "that's right", "sounds good",
    "that's it", "perfect", "mhm", "uh-huh", "you got it",
)

CORRECTION_PHRASES = (
    "that's wrong", "that's not right", "incorrect", "actually",
    "i said", "they are available", "it is available", "in stock",
    "not unavailable", "we have them", "i have them", "they're available",
    "let me correct", "that's not correct",
)

OUT_OF_STOCK_PHRASES = (
    "don't have", "do not have", "out of stock", "unavailable",
    "discontinued", "no longer available", "can't get", "cannot get",
)

MISC_COST_PHRASES = (
    "shipping", "freight", "core charge", "core fee", "handling",
    "restocking", "delivery fee", "hazmat",
)

VOICEMAIL_PHRASES = (
    "leave a message", "leave your message", "after the tone", "after the beep",
    "you've reached", "you have reached", "not available to take your call",
    "mailbox",
)

NOT_INTERESTED_PHRASES = (
    "not interested", "no thanks", "no thank you", "don't call",
    "we don't do quotes", "we don't sell",
)

_PRICING_RE = re.compile(
    r"\$|\d+\.\d{2}|\b(each|per unit|per piece|apiece|a piece|price is|cost is|"
    r"that'?s? going to be|that'?ll be|runs? about|looking at|dollars|cents|bucks)\b",
    re.IGNORECASE,
)
_READY_FOR_NEXT_RE = re.compile(r"\b(next|go ahead|ready|okay|got it|next one|what else|another)\b", re.IGNORECASE)
_WRAP_UP_RE = re.compile(r"\b(bye|goodbye|have a (good|great|nice) day)\b", re.IGNORECASE)
_ANYTHING_ELSE_RE = re.compile(r"anything else|is that (all|it|everything)", re.IGNORECASE)
_REFUSAL_RE = re.compile(
    r"\b(no|cannot|can't|unable|impossible|not possible|won't|will not)\b", re.IGNORECASE
)
_REPEAT_RE = re.compile(
    r"\b(repeat|say that again|come again|one more time|spell|didn'?t (catch|hear|get) (that|it)|"
    r"what was (that|the part)|pardon|sorry\?)", re.IGNORECASE,
)
_VERIFICATION_RE = re.compile(
    r"\b(serial number|model number|what machine|which machine|what model|which model|"
    r"what year|vin\b|what (is it|does it) go on|going on|fit(s)? on)", re.IGNORECASE,
)
_FITMENT_RE = re.compile(
    r"\b(doesn'?t fit|does not fit|won'?t fit|wrong part|not the right part|"
    r"only (sold|comes) (as|in) (a )?(kit|assembly)|have to (buy|order) the (whole|entire))",
    re.IGNORECASE,
)
_SUBSTITUTE_RE = re.compile(
    r"\b(superseded|supersedes|substitute|replaced by|replacement part|alternate part|"
    r"alternative part|equivalent|updated part number|new part number|been changed to)",
    re.IGNORECASE,
)
_CALLBACK_RE = re.compile(r"\b(call (me |us )?back|call you back|callback|try again later)\b", re.IGNORECASE)
_EMAIL_DEFLECTION_RE = re.compile(
    r"\b(email|e-mail|send (you|it) over|formal quote|shoot .*over|fax|send .*quote)\b", re.IGNORECASE,
)
_NEGATIVE_RE = re.compile(
    r"\b(can't|cannot|don't have|won't|unavailable|out of stock|no longer|discontinued|"
    r"not available|not in stock)\b", re.IGNORECASE,
)
_QUESTION_WORDS = ("?", "which", "what", "how", "when", "where", "can you", "could you")
_PRICE_VALUE_RE = re.compile(r"\$\s*(\d{1,3}(?:,\d{3})*(?:\.\d{1,2})?|\d+(?:\.\d{1,2})?)")
_LEAD_TIME_RE = re.compile(r"\b(\d{1,3})\s*(business\s+)?(day|days|week|weeks)\b", re.IGNORECASE)


def _has_any(text: str, phrases: tuple[str, ...]) -> bool:
    lower = text.lower()
    return any(p in lower for p in phrases)


# ─── Detectors ──────────────────────────────────────────────────────

def is_hold(text: str) -> bool:
    return _has_any(text, HOLD_PHRASES)


def is_transfer(text: str) -> bool:
    return _has_any(text, TRANSFER_PHRASES)


def is_engaged(text: str) -> bool:
    return _has_any(text, ENGAGEMENT_PHRASES)


def is_receptionist_question(text: str) -> bool:
    return _has_any(text, RECEPTIONIST_PHRASES)


def is_contact_info_request(text: str) -> bool:
    return _has_any(text, CONTACT_INFO_PHRASES) or _has_any(text, RECEPTIONIST_PHRASES)


def is_firm_price(text: str) -> bool:
    return _has_any(text, FIRM_PRICE_PHRASES)


def contains_refusal(text: str) -> bool:
    return bool(_REFUSAL_RE.search(text))


def is_agreement(text: str) -> bool:
    lower = text.lower()
    return any(re.search(rf"\b{re.escape(p)}\b", lower) for p in AGREEMENT_PHRASES)


def is_correction(text: str) -> bool:
    return _has_any(text, CORRECTION_PHRASES)


def starts_with_no(text: str) -> bool:
    lower = text.strip().lower()
    return lower == "no" or bool(re.match(r"^no[\s,.!]", lower))


def is_out_of_stock(text: str) -> bool:
    return _has_any(text, OUT_OF_STOCK_PHRASES)


def mentions_misc_costs(text: str) -> bool:
    return _has_any(text, MISC_COST_PHRASES)


def is_voicemail(text: str) -> bool:
    return _has_any(text, VOICEMAIL_PHRASES)


def is_not_interested(text: str) -> bool:
    return _has_any(text, NOT_INTERESTED_PHRASES)


def looks_like_pricing(text: str) -> bool:
    return bool(_PRICING_RE.search(text))


def is_ready_for_next(text: str) -> bool:
    return bool(_READY_FOR_NEXT_RE.search(text))


def is_wrapping_up(text: str) -> bool:
    return bool(_WRAP_UP_RE.search(text)) or bool(_ANYTHING_ELSE_RE.search(text))


def is_asking_to_repeat(text: str) -> bool:
    return bool(_REPEAT_RE.search(text))


def is_verification_question(text: str) -> bool:
    return bool(_VERIFICATION_RE.search(text))


def detect_fitment_rejection(text: str) -> bool:
    return bool(_FITMENT_RE.search(text))


def detect_substitute(text: str) -> bool:
    return bool(_SUBSTITUTE_RE.search(text))


def wants_callback(text: str) -> bool:
    return bool(_CALLBACK_RE.search(text))


def is_email_deflection(text: str) -> bool:
    """Supplier offering a written quote instead of a price on the phone."""
    return bool(_EMAIL_DEFLECTION_RE.search(text))


def is_negative(text: str) -> bool:
    return bool(_NEGATIVE_RE.search(text))


def detect_question(text: str) -> bool:
    lower = text.lower()
    return any(w in lower for w in _QUESTION_WORDS)


def find_prices(text: str) -> list[float]:
    """Dollar amounts in order of appearance ("$1,240.50" → 1240.5)."""
    return [float(m.replace(",", "")) for m in _PRICE_VALUE_RE.findall(text)]


def find_lead_time_days(text: str) -> int | None:
    m = _LEAD_TIME_RE.search(text)
    if not m:
        return None
    n = int(m.group(1))
    return n * 7 if m.group(3).lower().startswith("week") else n


# ─── Bot screening ──────────────────────────────────────────────────

_SCREENING_PATTERNS: list[tuple[str, re.Pattern]] = [
    ("spam_rejection", re.compile(
        r"remove this number|mailing list|do not call|don'?t call this number|stop calling|"
        r"call has been rejected|does not wish to speak|not accepting calls", re.IGNORECASE)),
    ("captcha", re.compile(
        r"solve this puzzle|verify you are human|real person|not a robot|"
        r"what is \d+\s*(plus|minus|times|multiplied by|divided by|added to|\+|-|x|\*)\s*\d+",
        re.IGNORECASE)),
    ("call_screen", re.compile(
        r"screening (service|calls)|google assistant|say your name|state your name|"
        r"reason for (your call|calling)", re.IGNORECASE)),
    ("urgency_check", re.compile(
        r"is this urgent|urgently|is this an emergency|can this wait", re.IGNORECASE)),
]


def detect_bot_screening(text: str) -> str | None:
    """Return the screening kind (call_screen, captcha, urgency_check, spam_rejection) or None."""
    for kind, pattern in _SCREENING_PATTERNS:
        if pattern.search(text):
            return kind
    return None


_CAPTCHA_RE = re.compile(
    r"(\d+)\s*(plus|added to|\+|minus|-|times|multiplied by|x|\*|divided by|/)\s*(\d+)",
    re.IGNORECASE,
)


def solve_captcha(text: str) -> str | None:
    m = _CAPTCHA_RE.search(text)
    if not m:
        return None
    a, op, b = int(m.group(1)), m.group(2).lower(), int(m.group(3))
    if op in ("plus", "added to", "+"):
        return str(a + b)
    if op in ("minus", "-"):
        return str(a - b)
    if op in ("times", "multiplied by", "x", "*"):
        return str(a * b)
    if b == 0:
        return None
    return str(a // b) if a % b == 0 else f"{a / b:.1f}"


# ─── Speech formatting ──────────────────────────────────────────────

def format_part_number_for_speech(part_number: str) -> str:
    """
    Spell a part number for TTS: letters and digits one by one, hyphens as "dash".

    "AHC-18598" → "A H C, dash, 1 8 5 9 8"
    """
    spoken = []
    for segment in re.findall(r"[A-Za-z]+|\d+|-", part_number):
        if segment == "-":
            spoken.append("dash")
        else:
            spoken.append(" ".join(segment.upper()))
    return ", ".join(spoken)
