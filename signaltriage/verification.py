"""
Verification State Machine -- trust tier lifecycle of clinical data.

**Initial state by source:**

    CLINICIAN, DEVICE, EMR_IMPORT          -> VERIFIED   (trusted origin)
    PATIENT_SMS, PATIENT_VOICE, PATIENT_PORTAL -> UNVERIFIED (self-report)
    AI_EXTRACTED                           -> PENDING_REVIEW (needs a human)
    SYSTEM                                 -> UNVERIFIED

**Physician actions** (any state may move to any state; corrections happen):

    verify  -> VERIFIED        stamps verified_by / verified_at
    dispute -> DISPUTED        stamps verified_by / verified_at
    pending -> PENDING_REVIEW  clears the stamp

There is no timeout transition.  Data may stay UNVERIFIED indefinitely;
absence of verification is not evidence of falsity, only of unconfirmed
provenance.

Every transition writes exactly one audit record carrying the prior and new
status.  If that audit write fails after the transition committed, the
result is reported as ``OperationStatus.DEGRADED`` rather than hidden.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from signaltriage.audit import AuditAction, AuditLogger, OperationStatus
from signaltriage.confidence import estimate_confidence
from signaltriage.config import DEFAULT_CONFIG, EngineConfig
from signaltriage.errors import MalformedRequestError
from signaltriage.models import (
    NEEDS_ATTENTION_STATUSES,
    SYSTEM_ACTOR,
    Actor,
    ClinicalDatum,
    ResourceType,
    SourceType,
    VerificationAction,
    VerificationStatus,
    VitalType,
)
from signaltriage.rbac import require_permission
from signaltriage.store import TriageStore, guarded_write

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Tables
# ---------------------------------------------------------------------------

TRUSTED_SOURCES = frozenset({SourceType.CLINICIAN, SourceType.DEVICE, SourceType.EMR_IMPORT})

_INITIAL_STATUS: dict[SourceType, VerificationStatus] = {
    SourceType.CLINICIAN: VerificationStatus.VERIFIED,
    SourceType.DEVICE: VerificationStatus.VERIFIED,
    SourceType.EMR_IMPORT: VerificationStatus.VERIFIED,
    SourceType.PATIENT_SMS: VerificationStatus.UNVERIFIED,
    SourceType.PATIENT_VOICE: VerificationStatus.UNVERIFIED,
    SourceType.PATIENT_PORTAL: VerificationStatus.UNVERIFIED,
    SourceType.AI_EXTRACTED: VerificationStatus.PENDING_REVIEW,
    SourceType.SYSTEM: VerificationStatus.UNVERIFIED,
}

_ACTION_STATUS: dict[VerificationAction, VerificationStatus] = {
    VerificationAction.VERIFY: VerificationStatus.VERIFIED,
    VerificationAction.DISPUTE: VerificationStatus.DISPUTED,
    VerificationAction.PENDING: VerificationStatus.PENDING_REVIEW,
}

_ACTION_AUDIT: dict[VerificationAction, AuditAction] = {
    VerificationAction.VERIFY: AuditAction.VERIFY,
    VerificationAction.DISPUTE: AuditAction.DISPUTE,
    VerificationAction.PENDING: AuditAction.REVIEW,
}


def initial_status_for(source_type: SourceType) -> VerificationStatus:
    return _INITIAL_STATUS[source_type]


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

class VerificationResult:
    """Outcome of recording or transitioning a datum."""

    def __init__(
        self,
        datum: ClinicalDatum,
        prior_status: Optional[VerificationStatus],
        operation_status: OperationStatus,
    ) -> None:
        self.datum = datum
        self.prior_status = prior_status
        self.operation_status = operation_status

    @property
    def status(self) -> VerificationStatus:
        return self.datum.verification_status

    @property
    def degraded(self) -> bool:
        return self.operation_status == OperationStatus.DEGRADED

    def __repr__(self) -> str:
        prior = self.prior_status.value if self.prior_status else None
        return (
            f"VerificationResult(datum={self.datum.id}, {prior} -> {self.status.value}, "
            f"operation={self.operation_status.value})"
        )


class PendingPage:
    """One page of data needing physician attention, newest first."""

    def __init__(
        self,
        items: list[ClinicalDatum],
        total: int,
        page: int,
        page_size: int,
        operation_status: OperationStatus,
    ) -> None:
        self.items = items
        self.total = total
        self.page = page
        self.page_size = page_size
        self.operation_status = operation_status

    @property
    def has_next(self) -> bool:
        return self.page * self.page_size < self.total

    def __repr__(self) -> str:
        return f"PendingPage(page={self.page}, items={len(self.items)}, total={self.total})"


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------

class VerificationStateMachine:
    """Owns creation and trust-tier transitions of ``ClinicalDatum`` records."""

    def __init__(
        self,
        store: TriageStore,
        audit: AuditLogger,
        config: EngineConfig = DEFAULT_CONFIG,
    ) -> None:
        self._store = store
        self._audit = audit
        self._config = config

    def record_datum(
        self,
        patient_id: str,
        resource_type: ResourceType,
        label: str,
        value: str,
        source_type: SourceType,
        unit: str = "",
        vital_type: Optional[VitalType] = None,
        recorded_at: Optional[datetime] = None,
        source_ref: Optional[str] = None,
        actor: Actor = SYSTEM_ACTOR,
        confidence: Optional[int] = None,
    ) -> VerificationResult:
        """Create a datum in its source-determined initial state.

        Confidence is fixed here: trusted origins score 3, everything else
        is scored from its text unless the caller has already scored it.
        Trusted-origin data is stamped with the recording actor.

        Raises:
            StorageWriteError: If the datum could not be persisted.
        """
        now = datetime.now(timezone.utc)
        status = initial_status_for(source_type)
        if confidence is None:
            confidence = 3 if source_type in TRUSTED_SOURCES else estimate_confidence(f"{label} {value}")

        stamped = status == VerificationStatus.VERIFIED
        datum = ClinicalDatum(
            patient_id=patient_id,
            resource_type=resource_type,
            label=label,
            value=value,
            unit=unit,
            vital_type=vital_type,
            source_type=source_type,
            verification_status=status,
            confidence_score=confidence,
            recorded_at=recorded_at or now,
            verified_by=actor.actor_id if stamped else None,
            verified_at=now if stamped else None,
            source_ref=source_ref,
        )

        guarded_write(f"create {resource_type.value} {datum.id}", self._store.add_datum, datum)

        op_status = self._audit.record_or_degrade(
            actor,
            AuditAction.CREATE,
            resource_type.value,
            datum.id,
            patient_id=patient_id,
            metadata={
                "source_type": source_type.value,
                "verification_status": status.value,
                "confidence_score": confidence,
            },
        )
        logger.info(
            "Recorded %s %s for patient %s as %s (confidence %d)",
            resource_type.value, datum.id, patient_id, status.value, confidence,
        )
        return VerificationResult(datum, None, op_status)

    def apply_action(
        self,
        resource_type: ResourceType,
        resource_id: str,
        action: VerificationAction,
        actor: Actor,
        note: Optional[str] = None,
    ) -> VerificationResult:
        """Apply a physician verification action.

        Raises:
            PermissionError: If the actor is not a physician.
            RecordNotFoundError: If ``resource_id`` does not exist.
            MalformedRequestError: If the datum is not of ``resource_type``.
            StorageWriteError: If the transition could not be persisted.
        """
        require_permission(actor, "verify_datum")

        with self._store.transaction():
            datum = self._store.get_datum(resource_id)
            if datum.resource_type != resource_type:
                raise MalformedRequestError(
                    f"Resource '{resource_id}' is a {datum.resource_type.value}, "
                    f"not a {resource_type.value}."
                )

            prior = datum.verification_status
            new_status = _ACTION_STATUS[action]
            update: dict = {"verification_status": new_status}
            if action == VerificationAction.PENDING:
                update["verified_by"] = None
                update["verified_at"] = None
            else:
                update["verified_by"] = actor.actor_id
                update["verified_at"] = datetime.now(timezone.utc)
            if note:
                update["note"] = note

            datum = ClinicalDatum.model_validate({**datum.model_dump(), **update})
            guarded_write(f"transition {resource_id}", self._store.update_datum, datum)

        op_status = self._audit.record_or_degrade(
            actor,
            _ACTION_AUDIT[action],
            resource_type.value,
            resource_id,
            patient_id=datum.patient_id,
            metadata={
                "action": action.value,
                "prior_status": prior.value,
                "new_status": new_status.value,
                "has_note": bool(note),
            },
        )
        logger.info(
            "Datum %s %s -> %s by %s", resource_id, prior.value, new_status.value, actor.actor_id
        )
        return VerificationResult(datum, prior, op_status)

    def get_datum(self, datum_id: str, actor: Actor) -> ClinicalDatum:
        """Audited read of a single datum."""
        datum = self._store.get_datum(datum_id)
        self._audit.record_or_degrade(
            actor,
            AuditAction.READ,
            datum.resource_type.value,
            datum.id,
            patient_id=datum.patient_id,
        )
        return datum

    def pending_for_physician(
        self,
        physician: Actor,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> PendingPage:
        """UNVERIFIED and PENDING_REVIEW data across a physician's panel.

        Raises:
            PermissionError: If the actor is not a physician.
            MalformedRequestError: If ``page`` or ``page_size`` is out of range.
        """
        require_permission(physician, "view_pending")
        page_size = page_size or self._config.pending_page_size
        if page < 1 or page_size < 1 or page_size > 200:
            raise MalformedRequestError(
                f"Invalid pagination: page={page}, page_size={page_size}"
            )

        patient_ids = self._store.patients_for_physician(physician.actor_id)
        matching = self._store.list_data(patient_ids, statuses=NEEDS_ATTENTION_STATUSES)
        start = (page - 1) * page_size
        items = matching[start:start + page_size]

        op_status = self._audit.record_or_degrade(
            physician,
            AuditAction.READ,
            "pending_review",
            physician.actor_id,
            metadata={
                "patient_count": len(patient_ids),
                "total": len(matching),
                "page": page,
                "returned": len(items),
            },
        )
        return PendingPage(items, len(matching), page, page_size, op_status)
