"""
returnguard/chat/intent.py
===========================
Chat Intent Detector — ReturnGuard

Responsibility:
    - Classify a customer chat message into a fixed intent vocabulary
    - Pull an order reference (e.g. "ORD12345") out of the message
    - Detect explicit escalation requests ("urgent", "manager", ...)

Classification is a case-insensitive substring match, first match wins,
in this priority order:
    return → exchange → size → refund → damaged → general_inquiry

No model is called; routing is reproducible from the message text alone.
"""

import re

from returnguard.models import Intent

_INTENT_KEYWORDS: tuple[tuple[Intent, str], ...] = (
    (Intent.RETURN, "return"),
    (Intent.EXCHANGE, "exchange"),
    (Intent.SIZE, "size"),
    (Intent.REFUND, "refund"),
    (Intent.DAMAGED, "damaged"),
)

ESCALATION_KEYWORDS: tuple[str, ...] = ("urgent", "manager", "human", "complaint")

_ORDER_REF_PATTERN = re.compile(r"\bORD[-\s]?(\d{4,})\b", re.IGNORECASE)


def detect_intent(text: str) -> Intent:
    """Return the first matching intent, or GENERAL_INQUIRY."""
    lowered = text.lower()
    for intent, keyword in _INTENT_KEYWORDS:
        if keyword in lowered:
            return intent
    return Intent.GENERAL_INQUIRY


def extract_order_ref(text: str) -> str | None:
    """Normalized order reference ("ORD12345") or None."""
    match = _ORDER_REF_PATTERN.search(text)
    return f"ORD{match.group(1)}" if match else None


def wants_escalation(text: str, intent: Intent) -> bool:
    """
    True for refund requests or explicit urgency / human-agent requests.

    A message that mentions a refund counts even when a higher-priority
    intent ("return") won detection.
    """
    lowered = text.lower()
    if intent is Intent.REFUND or "refund" in lowered:
        return True
    return any(keyword in lowered for keyword in ESCALATION_KEYWORDS)
