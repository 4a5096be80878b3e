"""
Escalation Detector -- emergency keyword scan over inbound patient text.

Any single case-insensitive substring match against the active keyword set
fires escalation.  The check is keyword-based on purpose: it is auditable,
reproducible, needs no external call, and therefore runs on every inbound
message *before* any reply generation.  It is never gated on verification
status, agent lock state, or conversation history.

Substring semantics are literal: "faint" also matches "fainting", and
"stroke" also matches "heatstroke".  Over-matching is accepted; paraphrases
that share no phrase with the list ("my heart hurts") do not match.

DISCLAIMER: A positive result routes the message to a physician as a
CRITICAL alert.  It is not a diagnosis.
"""

from __future__ import annotations

from signaltriage.config import DEFAULT_KEYWORD_SET, KeywordSet
from signaltriage.models import EscalationSignal


EMERGENCY_INSTRUCTION = (
    "If this is an emergency, call 911 or go to the nearest emergency room now. "
    "Your care team has been alerted."
)
"""Patient-facing text the gateway sends when a message escalates."""


def detect_escalation(
    text: str,
    keyword_set: KeywordSet = DEFAULT_KEYWORD_SET,
) -> EscalationSignal:
    """Scan ``text`` for emergency phrases.

    Args:
        text: Raw inbound patient text (already decrypted).
        keyword_set: The versioned keyword list to match against.

    Returns:
        An ``EscalationSignal``; ``matched_keywords`` follows the order of
        the keyword set.
    """
    lowered = text.lower()
    matched = [kw for kw in keyword_set.keywords if kw in lowered]
    return EscalationSignal(
        escalate=bool(matched),
        matched_keywords=matched,
        keyword_set_version=keyword_set.version,
    )
