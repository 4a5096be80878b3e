"""
Core data models for the SignalTriage engine.

A ``ClinicalDatum`` is any patient-attributable fact (a medication claim, a
vital reading, a free-text report).  Its ``verification_status`` records
*whether* a physician has reviewed it, its ``source_type`` records *where*
it came from, and its ``confidence_score`` records *how* specific the
original report was.  The three are independent: a confidence-3 patient
text message is still UNVERIFIED self-report.

Statuses, severities, roles and sources are closed enums so an Alert with an
unrecognized severity, or a datum with an unknown status, cannot be built.

DISCLAIMER: These structures support signal routing for physician review.
They do not encode diagnoses or treatment decisions.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from typing import Optional, Union

from pydantic import BaseModel, Field, model_validator


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class SourceType(str, enum.Enum):
    """Where a datum came from."""

    PATIENT_SMS = "PATIENT_SMS"
    PATIENT_VOICE = "PATIENT_VOICE"
    PATIENT_PORTAL = "PATIENT_PORTAL"
    CLINICIAN = "CLINICIAN"
    DEVICE = "DEVICE"
    EMR_IMPORT = "EMR_IMPORT"
    AI_EXTRACTED = "AI_EXTRACTED"
    SYSTEM = "SYSTEM"


class VerificationStatus(str, enum.Enum):
    """Trust tier of a clinical datum.

    * ``UNVERIFIED``     -- unconfirmed provenance (not evidence of falsity).
    * ``PENDING_REVIEW`` -- flagged for a human check.
    * ``VERIFIED``       -- confirmed by a physician or a trusted origin.
    * ``DISPUTED``       -- a physician has marked it as incorrect.
    """

    UNVERIFIED = "UNVERIFIED"
    PENDING_REVIEW = "PENDING_REVIEW"
    VERIFIED = "VERIFIED"
    DISPUTED = "DISPUTED"


STAMPED_STATUSES = frozenset({VerificationStatus.VERIFIED, VerificationStatus.DISPUTED})
NEEDS_ATTENTION_STATUSES = frozenset(
    {VerificationStatus.UNVERIFIED, VerificationStatus.PENDING_REVIEW}
)


class AlertSeverity(str, enum.Enum):
    """Alert severity.  Emergency keywords always map to ``CRITICAL``."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class ResourceType(str, enum.Enum):
    """Kinds of clinical datum addressable by the verification endpoint."""

    MEDICATION = "medication"
    VITAL = "vital"
    REPORT = "report"


class VerificationAction(str, enum.Enum):
    """Physician actions accepted by the verification endpoint."""

    VERIFY = "verify"
    DISPUTE = "dispute"
    PENDING = "pending"


class VitalType(str, enum.Enum):
    BLOOD_PRESSURE_SYSTOLIC = "BLOOD_PRESSURE_SYSTOLIC"
    BLOOD_PRESSURE_DIASTOLIC = "BLOOD_PRESSURE_DIASTOLIC"
    HEART_RATE = "HEART_RATE"
    WEIGHT = "WEIGHT"
    GLUCOSE = "GLUCOSE"
    OXYGEN_SATURATION = "OXYGEN_SATURATION"
    TEMPERATURE = "TEMPERATURE"


class Role(str, enum.Enum):
    """Roles used for role-based access control (RBAC).

    ``SYSTEM`` is the engine itself (inbound processing, trusted-origin
    stamping).  Only ``PHYSICIAN`` may change trust state or unlock a
    patient's automated agent.
    """

    PATIENT = "PATIENT"
    PHYSICIAN = "PHYSICIAN"
    ADMIN = "ADMIN"
    AUDITOR = "AUDITOR"
    SYSTEM = "SYSTEM"


class Actor(BaseModel):
    """Who is performing an operation."""

    actor_id: str = Field(..., min_length=1)
    role: Role = Field(...)


SYSTEM_ACTOR = Actor(actor_id="SYSTEM", role=Role.SYSTEM)


# ---------------------------------------------------------------------------
# Read results (decrypt-or-redact)
# ---------------------------------------------------------------------------

UNREADABLE_PLACEHOLDER = "[unreadable]"


class Decrypted(BaseModel):
    """A clinical value the encrypted store was able to hand back."""

    value: str


class Unreadable(BaseModel):
    """A clinical value that could not be read.

    Display code substitutes ``UNREADABLE_PLACEHOLDER``; triage code must
    never treat an unreadable value as clear.
    """

    reason: str = Field(default="decryption failed")


ReadResult = Union[Decrypted, Unreadable]


def display_value(result: ReadResult | str) -> str:
    """Return a displayable string for a plain value or a ``ReadResult``."""
    if isinstance(result, Decrypted):
        return result.value
    if isinstance(result, Unreadable):
        return UNREADABLE_PLACEHOLDER
    return result


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ClinicalDatum(BaseModel):
    """A patient-attributable fact with its provenance and trust tier.

    ``verified_by``/``verified_at`` are set if and only if the status is
    VERIFIED or DISPUTED.  ``confidence_score`` is assigned once at creation.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    patient_id: str = Field(..., min_length=1)
    resource_type: ResourceType = Field(...)
    label: str = Field(
        ...,
        description="Display label, e.g. 'Metformin 1000mg daily' or 'HEART_RATE'.",
    )
    value: str = Field(
        ...,
        description="Already-decrypted value text. Never written to audit metadata.",
    )
    unit: str = Field(default="")
    vital_type: Optional[VitalType] = Field(default=None)
    source_type: SourceType = Field(...)
    verification_status: VerificationStatus = Field(...)
    confidence_score: int = Field(..., ge=0, le=3)
    recorded_at: datetime = Field(default_factory=_utcnow)
    verified_by: Optional[str] = Field(default=None)
    verified_at: Optional[datetime] = Field(default=None)
    source_ref: Optional[str] = Field(
        default=None,
        description="Opaque reference to the originating event (e.g. gateway message id).",
    )
    note: Optional[str] = Field(default=None)

    @model_validator(mode="after")
    def _stamp_matches_status(self) -> "ClinicalDatum":
        stamped = self.verified_by is not None or self.verified_at is not None
        complete = self.verified_by is not None and self.verified_at is not None
        if self.verification_status in STAMPED_STATUSES:
            if not complete:
                raise ValueError(
                    f"{self.verification_status.value} data must carry verified_by and verified_at"
                )
        elif stamped:
            raise ValueError(
                f"{self.verification_status.value} data must not carry verified_by/verified_at"
            )
        return self


class EscalationSignal(BaseModel):
    """Transient result of scanning one inbound text.  Not persisted."""

    escalate: bool
    matched_keywords: list[str] = Field(default_factory=list)
    keyword_set_version: str


class Alert(BaseModel):
    """A routed safety or threshold signal for physician review.

    Mutated only by an explicit resolve action; never deleted.  CRITICAL
    alerts are never auto-resolved.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    patient_id: str = Field(..., min_length=1)
    severity: AlertSeverity = Field(...)
    category: str = Field(..., min_length=1)
    message: str = Field(
        ...,
        description="Short, PHI-free summary (e.g. 'Emergency keyword detected in patient message').",
    )
    resolved: bool = Field(default=False)
    resolved_by: Optional[str] = Field(default=None)
    resolved_at: Optional[datetime] = Field(default=None)
    resolution_note: Optional[str] = Field(default=None)
    trigger_source: str = Field(..., min_length=1)
    created_at: datetime = Field(default_factory=_utcnow)
    dedupe_key: Optional[str] = Field(default=None)
    keyword_set_version: Optional[str] = Field(default=None)
    matched_keywords: list[str] = Field(default_factory=list)

    def to_record(self) -> dict:
        """The dashboard-facing alert shape."""
        return {
            "id": self.id,
            "patientId": self.patient_id,
            "severity": self.severity.value,
            "category": self.category,
            "message": self.message,
            "resolved": self.resolved,
            "resolvedBy": self.resolved_by,
            "triggerSource": self.trigger_source,
            "createdAt": self.created_at.isoformat(),
        }


class AgentLockState(BaseModel):
    """Derived per-patient circuit-breaker state.

    Reconstructable from the alert table.  ``locked`` only ever goes back to
    False through a physician unlock.
    """

    patient_id: str
    unresolved_critical_count: int = Field(default=0, ge=0)
    window_start: Optional[datetime] = Field(default=None)
    locked: bool = Field(default=False)
    reason: Optional[str] = Field(default=None)
    locked_at: Optional[datetime] = Field(default=None)
    unlocked_by: Optional[str] = Field(default=None)
    unlocked_at: Optional[datetime] = Field(default=None)

    @property
    def agent_enabled(self) -> bool:
        return not self.locked


class InboundEvent(BaseModel):
    """One inbound patient message as delivered by the messaging gateway."""

    dedupe_key: str = Field(
        ...,
        min_length=1,
        description="External message identifier; redelivery carries the same key.",
    )
    patient_id: str = Field(..., min_length=1)
    source_type: SourceType = Field(default=SourceType.PATIENT_SMS)
    body: ReadResult = Field(...)
    received_at: datetime = Field(default_factory=_utcnow)
    channel: str = Field(default="sms")
