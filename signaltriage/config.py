"""
Engine configuration and the versioned emergency keyword contract.

The emergency keyword list is a wire-level contract: a consumer
re-implementing the escalation check must match the same literal phrases.
It is therefore treated as *versioned configuration data*.  Every
escalation Alert records the ``version`` of the keyword set it was matched
against, so a historical triage decision can be traced back to the exact
list that was in effect.

How a new keyword set version is rolled out (who approves it, whether old
versions stay selectable) is a deployment decision.  This module only
guarantees that a version string always denotes the same phrases: a
registered version can never be overwritten.

Other tunables live on ``EngineConfig``: the auto-lock window and
threshold, the escalation-alert retry policy, the pending-review page size,
and the vital threshold rules.
"""

from __future__ import annotations

import copy
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from signaltriage.models import VitalType


# ---------------------------------------------------------------------------
# Keyword set
# ---------------------------------------------------------------------------

class KeywordSet(BaseModel):
    """A versioned list of emergency phrases.

    Phrases are matched as case-insensitive substrings, so they are stored
    lowercase.  Order is preserved and determines the order of matched
    keywords in an ``EscalationSignal``.
    """

    version: str = Field(..., min_length=1)
    keywords: list[str] = Field(..., min_length=1)
    description: str = Field(default="")

    @field_validator("keywords")
    @classmethod
    def normalize_keywords(cls, v: list[str]) -> list[str]:
        normalized: list[str] = []
        for kw in v:
            kw = kw.strip().lower()
            if not kw:
                raise ValueError("keyword phrases must be non-empty")
            if kw not in normalized:
                normalized.append(kw)
        return normalized


DEFAULT_KEYWORD_SET = KeywordSet(
    version="2026.02.1",
    description=(
        "Chest pain/pressure, breathing difficulty, syncope, stroke and "
        "heart-attack terms, explicit emergency words, self-harm phrases."
    ),
    keywords=[
        "chest pain",
        "chest pressure",
        "cant breathe",
        "can't breathe",
        "shortness of breath",
        "passing out",
        "passed out",
        "syncope",
        "fainted",
        "faint",
        "severe pain",
        "emergency",
        "911",
        "heart attack",
        "stroke",
        "arm pain",
        "jaw pain",
        "sweating",
        "dizzy and chest",
        "kill myself",
        "suicide",
        "want to die",
        "end my life",
    ],
)


class KeywordSetRegistry:
    """In-memory registry of keyword set versions.

    A version, once registered, is immutable: registering the same version
    again is rejected.  ``get`` returns deep copies so callers cannot alter
    a registered list.
    """

    def __init__(self, active: KeywordSet = DEFAULT_KEYWORD_SET) -> None:
        self._sets: dict[str, KeywordSet] = {}
        self.register(active)
        self._active_version = active.version

    def register(self, keyword_set: KeywordSet) -> None:
        """Register a new keyword set version.

        Raises:
            ValueError: If the version is already registered.
        """
        if keyword_set.version in self._sets:
            raise ValueError(
                f"Keyword set version '{keyword_set.version}' already registered. "
                "Publish a new version instead of editing an existing one."
            )
        self._sets[keyword_set.version] = copy.deepcopy(keyword_set)

    def get(self, version: str) -> KeywordSet:
        if version not in self._sets:
            raise KeyError(f"No keyword set registered for version '{version}'")
        return copy.deepcopy(self._sets[version])

    def activate(self, version: str) -> None:
        if version not in self._sets:
            raise KeyError(f"Cannot activate unknown keyword set version '{version}'")
        self._active_version = version

    @property
    def active(self) -> KeywordSet:
        return self.get(self._active_version)

    def list_versions(self) -> list[str]:
        return sorted(self._sets.keys())

    def __len__(self) -> int:
        return len(self._sets)

    def __contains__(self, version: str) -> bool:
        return version in self._sets


# ---------------------------------------------------------------------------
# Vital threshold rules
# ---------------------------------------------------------------------------

class ThresholdBand(BaseModel):
    """Inclusive ``[low, high]`` band of acceptable values."""

    low: float
    high: float

    @model_validator(mode="after")
    def _ordered(self) -> "ThresholdBand":
        if self.low > self.high:
            raise ValueError(f"band low ({self.low}) must be <= high ({self.high})")
        return self

    def contains(self, value: float) -> bool:
        return self.low <= value <= self.high


class VitalThresholdRule(BaseModel):
    """Two nested bands for one vital type.

    A value outside ``critical`` is a threshold breach (HIGH alert); outside
    ``high`` but inside ``critical`` is an abnormal value (MEDIUM alert).
    """

    vital_type: VitalType
    critical: ThresholdBand
    high: ThresholdBand

    @model_validator(mode="after")
    def _high_inside_critical(self) -> "VitalThresholdRule":
        if self.high.low < self.critical.low or self.high.high > self.critical.high:
            raise ValueError(
                f"{self.vital_type.value}: high band must lie inside the critical band"
            )
        return self


def _rule(vital_type: VitalType, crit: tuple, high: tuple) -> VitalThresholdRule:
    return VitalThresholdRule(
        vital_type=vital_type,
        critical=ThresholdBand(low=crit[0], high=crit[1]),
        high=ThresholdBand(low=high[0], high=high[1]),
    )


DEFAULT_VITAL_RULES: list[VitalThresholdRule] = [
    _rule(VitalType.BLOOD_PRESSURE_SYSTOLIC, (80, 180), (90, 160)),
    _rule(VitalType.BLOOD_PRESSURE_DIASTOLIC, (50, 110), (60, 100)),
    _rule(VitalType.HEART_RATE, (40, 130), (45, 120)),
    _rule(VitalType.OXYGEN_SATURATION, (88, 999), (92, 999)),
    _rule(VitalType.GLUCOSE, (50, 400), (70, 300)),
]


# ---------------------------------------------------------------------------
# Engine configuration
# ---------------------------------------------------------------------------

class EngineConfig(BaseModel):
    """Tunables for one engine deployment."""

    lock_window_minutes: int = Field(
        default=30,
        gt=0,
        description="Trailing window over which unresolved CRITICAL alerts are counted.",
    )
    lock_threshold: int = Field(
        default=3,
        ge=1,
        description="Unresolved CRITICAL alerts within the window that trip the auto-lock.",
    )
    retry_attempts: int = Field(
        default=4,
        ge=1,
        description="Attempts to persist an escalation alert before failing loudly.",
    )
    retry_base_delay_seconds: float = Field(
        default=0.25,
        ge=0,
        description="Base delay for exponential backoff between persistence attempts.",
    )
    claim_lease_seconds: float = Field(
        default=300,
        gt=0,
        description=(
            "How long an unfinished dedupe-key claim blocks redelivery before "
            "another worker may take the event over."
        ),
    )
    pending_page_size: int = Field(default=50, ge=1, le=200)
    routine_deviation_margin: float = Field(
        default=0.05,
        ge=0,
        lt=1,
        description=(
            "Fraction of a high-band edge value; in-band values this close to "
            "the edge raise a LOW routine-deviation alert.  0 disables LOW alerts."
        ),
    )
    weight_gain_lbs: float = Field(default=3.0, gt=0)
    weight_gain_window_hours: int = Field(default=24, gt=0)
    vital_rules: list[VitalThresholdRule] = Field(
        default_factory=lambda: copy.deepcopy(DEFAULT_VITAL_RULES)
    )
    keyword_set: KeywordSet = Field(default_factory=lambda: copy.deepcopy(DEFAULT_KEYWORD_SET))

    def rule_for(self, vital_type: VitalType) -> Optional[VitalThresholdRule]:
        for rule in self.vital_rules:
            if rule.vital_type == vital_type:
                return rule
        return None


DEFAULT_CONFIG = EngineConfig()


# ---------------------------------------------------------------------------
# YAML loader
# ---------------------------------------------------------------------------

def load_config_from_yaml(path: str | Path) -> tuple[EngineConfig, list[KeywordSet]]:
    """Load engine configuration and extra keyword set versions from YAML.

    Example YAML structure::

        engine:
          lock_window_minutes: 30
          lock_threshold: 3
          keyword_set:
            version: "2026.02.1"
            keywords: ["chest pain", "911"]
        keyword_sets:
          - version: "2025.11.0"
            keywords: ["chest pain"]

    Returns:
        ``(config, keyword_sets)`` where ``keyword_sets`` holds any entries
        listed under ``keyword_sets`` (the active set lives on the config).

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the YAML structure is invalid.
        pydantic.ValidationError: If any entry fails validation.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path, "r") as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict) or "engine" not in raw:
        raise ValueError("YAML file must contain a top-level 'engine' mapping.")

    engine_data = raw["engine"] or {}
    if not isinstance(engine_data, dict):
        raise ValueError("'engine' must be a mapping.")

    config = EngineConfig(**engine_data)

    sets_data = raw.get("keyword_sets") or []
    if not isinstance(sets_data, list):
        raise ValueError("'keyword_sets' must be a list of keyword set objects.")

    keyword_sets: list[KeywordSet] = []
    for idx, entry in enumerate(sets_data):
        if not isinstance(entry, dict):
            raise ValueError(f"Keyword set entry at index {idx} must be a mapping.")
        keyword_sets.append(KeywordSet(**entry))

    return config, keyword_sets
