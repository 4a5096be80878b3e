"""
Confidence Estimator -- lexical specificity of a medication claim.

Scores free text 0-3 by how specific the claim is, not by whether it is
true:

* 3 -- a recognized drug name plus a numeric dose, or plus a prescriber
  reference ("Took my Metformin 1000mg", "my cardiologist put me on Eliquis").
* 2 -- a recognized drug name alone.
* 1 -- a vague medication reference with no drug name ("a pill for my heart").
* 0 -- nothing medication-like.

The score is assigned once when a datum is created and never changes.  A
high score does not verify anything; patient text stays UNVERIFIED until a
physician acts.

Pure and deterministic given the lookup tables below, so it can be re-run
offline against a fixed corpus (see ``score_corpus``).
"""

from __future__ import annotations

import re
from typing import Iterable

DRUG_NAMES: tuple[str, ...] = (
    "metoprolol",
    "lisinopril",
    "amlodipine",
    "atorvastatin",
    "eliquis",
    "apixaban",
    "warfarin",
    "metformin",
    "furosemide",
    "losartan",
    "carvedilol",
    "spironolactone",
    "digoxin",
    "amiodarone",
    "clopidogrel",
    "entresto",
    "xarelto",
    "rivaroxaban",
    "pradaxa",
    "dabigatran",
)

_DRUG_RE = re.compile(r"\b(" + "|".join(DRUG_NAMES) + r")\b", re.IGNORECASE)
_DOSE_RE = re.compile(r"\b\d+(?:\.\d+)?\s*(mg|mcg|ml|units?)\b", re.IGNORECASE)
# "dr." ends in a non-word char, so it cannot take a trailing \b.
_PRESCRIBER_RE = re.compile(
    r"\b(?:doctor|physician|cardiologist|prescribed|started me on)\b|\bdr\.",
    re.IGNORECASE,
)
_VAGUE_RE = re.compile(
    r"\b(something for|a pill for|medicine for|medication for|blood thinner|"
    r"heart pill|cholesterol pill|blood pressure pill)\b",
    re.IGNORECASE,
)


def find_drug_names(text: str) -> list[str]:
    """Return recognized drug names in order of appearance, lowercase, deduplicated."""
    seen: list[str] = []
    for match in _DRUG_RE.finditer(text):
        name = match.group(1).lower()
        if name not in seen:
            seen.append(name)
    return seen


def estimate_confidence(text: str) -> int:
    """Score a free-text medication claim 0-3."""
    has_drug = _DRUG_RE.search(text) is not None
    if has_drug:
        if _DOSE_RE.search(text) or _PRESCRIBER_RE.search(text):
            return 3
        return 2
    if _VAGUE_RE.search(text):
        return 1
    return 0


_LABELS = {3: "High", 2: "Medium", 1: "Low"}


def confidence_label(score: int) -> str:
    return _LABELS.get(score, "Unknown")


def score_corpus(phrases: Iterable[str]) -> list[tuple[str, int]]:
    """Score a fixed corpus of phrases for offline regression comparison."""
    return [(phrase, estimate_confidence(phrase)) for phrase in phrases]
