"""
Threshold Rules -- mapping recorded vitals and medications to alert severities.

Evaluated against newly recorded vitals and medications.  Each vital rule
has two nested bands (see ``VitalThresholdRule``):

* outside the critical band          -> HIGH   ("threshold breach")
* outside the high band              -> MEDIUM ("abnormal value")
* inside, but near a high-band edge  -> LOW    ("routine deviation")

A sustained weight gain across readings within the configured window is a
fluid-retention indicator and raises a HIGH ``WEIGHT_GAIN`` result.

Emergency keywords, not vitals, are what produce CRITICAL alerts; vitals
therefore never count toward the auto-lock window.

A newly recorded medication is checked pairwise against the patient's
current medications (``evaluate_medication``).  Interaction levels map to
severities: critical -> HIGH, major -> MEDIUM, moderate -> LOW.

An unreadable value yields no result.  That is *not* "normal": callers get
``None`` and must surface the read failure themselves.

DISCLAIMER: These are routing thresholds for physician review, not
clinical cut-offs or diagnoses.
"""

from __future__ import annotations

import math
import re
from datetime import datetime, timedelta
from typing import Optional, Sequence

from signaltriage.config import EngineConfig, VitalThresholdRule
from signaltriage.models import AlertSeverity, VitalType


class ThresholdEvaluationResult:
    """A threshold rule that fired, with a PHI-free reason string."""

    def __init__(self, severity: AlertSeverity, category: str, reasons: list[str]) -> None:
        self.severity = severity
        self.category = category
        self.reasons = reasons

    @property
    def message(self) -> str:
        return " ".join(self.reasons)

    def __repr__(self) -> str:
        return (
            f"ThresholdEvaluationResult(severity={self.severity.value}, "
            f"category={self.category}, reasons={self.reasons})"
        )


_PLAIN_NUMBER_RE = re.compile(r"[+-]?\d+(?:\.\d+)?")


def parse_numeric(value: str, vital_type: Optional[VitalType] = None) -> Optional[float]:
    """Parse a vital value; ``None`` if it is not a plain finite number.

    A blood pressure pair like ``"150/95"`` yields the systolic component
    for systolic readings and the diastolic one for diastolic readings.
    Pairs are not accepted for any other vital.  Exponents, ``nan`` and
    ``inf`` are rejected.
    """
    parts = [p.strip() for p in value.strip().split("/")]
    if len(parts) == 2 and vital_type == VitalType.BLOOD_PRESSURE_SYSTOLIC:
        text = parts[0]
    elif len(parts) == 2 and vital_type == VitalType.BLOOD_PRESSURE_DIASTOLIC:
        text = parts[1]
    elif len(parts) == 1:
        text = parts[0]
    else:
        return None
    if not _PLAIN_NUMBER_RE.fullmatch(text):
        return None
    number = float(text)
    return number if math.isfinite(number) else None


def evaluate_vital(
    vital_type: VitalType,
    value: float,
    config: EngineConfig,
) -> Optional[ThresholdEvaluationResult]:
    """Evaluate one reading against the configured rule for its type.

    Returns:
        A result, or ``None`` when the value is unremarkable or the vital
        type has no rule.
    """
    rule = config.rule_for(vital_type)
    if rule is None:
        return None

    label = vital_type.value.replace("_", " ")
    crit, high = rule.critical, rule.high

    if not crit.contains(value):
        return ThresholdEvaluationResult(
            AlertSeverity.HIGH,
            "vital_threshold",
            [f"{label} outside critical band ({crit.low:g}-{crit.high:g}). Physician review required."],
        )
    if not high.contains(value):
        return ThresholdEvaluationResult(
            AlertSeverity.MEDIUM,
            "vital_abnormal",
            [f"{label} outside expected band ({high.low:g}-{high.high:g})."],
        )
    if _near_edge(rule, value, config.routine_deviation_margin):
        return ThresholdEvaluationResult(
            AlertSeverity.LOW,
            "vital_deviation",
            [f"{label} near edge of expected band ({high.low:g}-{high.high:g})."],
        )
    return None


def evaluate_weight_trend(
    readings: Sequence[tuple[datetime, float]],
    config: EngineConfig,
    now: datetime,
) -> Optional[ThresholdEvaluationResult]:
    """Check weight readings for a gain over the configured window.

    Args:
        readings: ``(recorded_at, pounds)`` pairs in any order.
        now: End of the window.
    """
    since = now - timedelta(hours=config.weight_gain_window_hours)
    in_window = sorted((r for r in readings if since <= r[0] <= now), key=lambda r: r[0])
    if len(in_window) < 2:
        return None

    gain = in_window[-1][1] - in_window[0][1]
    if gain >= config.weight_gain_lbs:
        return ThresholdEvaluationResult(
            AlertSeverity.HIGH,
            "WEIGHT_GAIN",
            [
                f"Weight gain of {gain:.1f} lbs in {config.weight_gain_window_hours} hours. "
                "Possible fluid retention; physician review required."
            ],
        )
    return None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _near_edge(rule: VitalThresholdRule, value: float, margin: float) -> bool:
    """Within ``margin`` (a fraction of the edge value) of a high-band edge.

    An upper edge equal to the critical upper edge is open-ended (e.g. SpO2)
    and never counts.
    """
    if margin <= 0:
        return False
    high = rule.high
    near_low = value < high.low * (1 + margin)
    near_high = high.high < rule.critical.high and value > high.high * (1 - margin)
    return near_low or near_high


# ---------------------------------------------------------------------------
# Medication interactions
# ---------------------------------------------------------------------------

class InteractionRule:
    """A known dangerous pairing: any name in ``first`` with any in ``second``."""

    def __init__(
        self,
        first: Sequence[str],
        second: Sequence[str],
        level: str,
        description: str,
        recommendation: str,
    ) -> None:
        self.first = _names_pattern(first)
        self.second = _names_pattern(second)
        self.level = level
        self.description = description
        self.recommendation = recommendation

    def matches(self, a: str, b: str) -> bool:
        return bool(
            (self.first.search(a) and self.second.search(b))
            or (self.second.search(a) and self.first.search(b))
        )


def _names_pattern(names: Sequence[str]) -> re.Pattern:
    return re.compile(r"\b(" + "|".join(re.escape(n) for n in names) + r")\b", re.IGNORECASE)


# Interaction level -> alert severity.  Interactions are routed for review,
# so even a contraindicated pair stays below CRITICAL and never locks.
INTERACTION_SEVERITY = {
    "critical": AlertSeverity.HIGH,
    "major": AlertSeverity.MEDIUM,
    "moderate": AlertSeverity.LOW,
}

_ACE_INHIBITORS = ("lisinopril", "enalapril", "ramipril", "captopril", "benazepril",
                   "fosinopril", "quinapril")
_DOACS = ("apixaban", "eliquis", "rivaroxaban", "xarelto", "edoxaban", "savaysa",
          "dabigatran", "pradaxa")
_NSAIDS = ("ibuprofen", "advil", "motrin", "naproxen", "aleve", "meloxicam", "diclofenac",
           "celecoxib", "indomethacin")
_MRAS = ("spironolactone", "aldactone", "eplerenone", "inspra")
_WARFARIN = ("warfarin", "coumadin")
_AMIODARONE = ("amiodarone", "cordarone")

INTERACTION_RULES: tuple[InteractionRule, ...] = (
    InteractionRule(
        ("entresto", "sacubitril"), _ACE_INHIBITORS, "critical",
        "ARNI with ACE inhibitor: angioedema risk; combination is contraindicated.",
        "Requires a 36-hour washout between the two.",
    ),
    InteractionRule(
        _WARFARIN, _DOACS, "critical",
        "Warfarin with a DOAC: dual anticoagulation, sharply raised bleeding risk.",
        "Only one anticoagulant should be active.",
    ),
    InteractionRule(
        ("methotrexate",), ("trimethoprim", "bactrim", "sulfamethoxazole"), "critical",
        "Methotrexate with TMP/SMX: risk of bone marrow suppression.",
        "Consider an alternative antibiotic.",
    ),
    InteractionRule(
        _AMIODARONE, _WARFARIN, "major",
        "Amiodarone potentiates warfarin; INR can rise sharply.",
        "Warfarin dose review and close INR monitoring.",
    ),
    InteractionRule(
        _AMIODARONE, ("digoxin", "lanoxin"), "major",
        "Amiodarone raises digoxin levels; toxicity risk.",
        "Digoxin dose review and level monitoring.",
    ),
    InteractionRule(
        _MRAS,
        _ACE_INHIBITORS[:3] + ("losartan", "valsartan", "irbesartan", "candesartan",
                               "olmesartan", "entresto", "sacubitril"),
        "major",
        "MRA with a RAAS inhibitor: hyperkalemia risk.",
        "Potassium and renal function monitoring.",
    ),
    InteractionRule(
        _NSAIDS,
        _WARFARIN + _DOACS[:4] + ("clopidogrel", "plavix", "ticagrelor", "brilinta", "prasugrel"),
        "major",
        "NSAID with an anticoagulant or antiplatelet: bleeding risk.",
        "Acetaminophen is usually preferred for pain.",
    ),
    InteractionRule(
        _NSAIDS,
        ("furosemide", "lasix", "torsemide", "bumetanide", "bumex", "hydrochlorothiazide",
         "hctz", "chlorthalidone", "metolazone"),
        "major",
        "NSAID with a diuretic: reduced diuretic effect and kidney injury risk.",
        "Avoid NSAIDs in heart failure patients on diuretics.",
    ),
    InteractionRule(
        ("diltiazem", "verapamil"),
        ("metoprolol", "carvedilol", "atenolol", "bisoprolol", "propranolol", "nadolol", "sotalol"),
        "major",
        "Non-dihydropyridine CCB with a beta-blocker: bradycardia or heart block.",
        "Combination needs specialist supervision.",
    ),
    InteractionRule(
        ("flecainide", "tambocor", "propafenone", "rythmol"),
        ("metoprolol", "carvedilol", "atenolol", "sotalol"),
        "major",
        "IC antiarrhythmic with a beta-blocker: proarrhythmic risk.",
        "Use only under electrophysiology guidance.",
    ),
    InteractionRule(
        ("atorvastatin", "lipitor", "simvastatin", "zocor", "lovastatin"), _AMIODARONE, "moderate",
        "Statin with amiodarone: myopathy risk.",
        "Statin dose review; watch for muscle pain.",
    ),
    InteractionRule(
        ("metformin", "glucophage"), ("furosemide", "lasix", "torsemide", "bumetanide"), "moderate",
        "Metformin with a loop diuretic: lactic acidosis risk if dehydrated.",
        "Renal function monitoring.",
    ),
    InteractionRule(
        ("potassium", "k-dur", "klor-con"), _MRAS + ("triamterene",), "moderate",
        "Potassium supplement with a potassium-sparing diuretic: hyperkalemia.",
        "Potassium monitoring.",
    ),
    InteractionRule(
        ("clopidogrel", "plavix"), ("omeprazole", "prilosec", "esomeprazole", "nexium"), "moderate",
        "Clopidogrel with omeprazole or esomeprazole: reduced antiplatelet effect.",
        "Pantoprazole is the preferred PPI.",
    ),
    InteractionRule(
        ("amlodipine", "norvasc"), ("simvastatin", "zocor"), "moderate",
        "Amlodipine raises simvastatin levels: myopathy risk.",
        "Simvastatin dose review.",
    ),
)


def evaluate_medication(
    new_medication: str,
    current_medications: Sequence[str],
    rules: Sequence[InteractionRule] = INTERACTION_RULES,
) -> list[ThresholdEvaluationResult]:
    """Check a newly recorded medication against the patient's current ones.

    Each argument is free text naming the medication (label and value).  A
    pair named inside the new text alone also counts.  Returns one result
    per rule that fired, most severe first.
    """
    results = []
    for rule in rules:
        if any(rule.matches(new_medication, other)
               for other in [new_medication, *current_medications]):
            results.append(ThresholdEvaluationResult(
                INTERACTION_SEVERITY[rule.level],
                "med_interaction",
                [f"Possible interaction: {rule.description}",
                 rule.recommendation,
                 "Physician review required."],
            ))
    order = list(INTERACTION_SEVERITY.values())
    return sorted(results, key=lambda r: order.index(r.severity))
