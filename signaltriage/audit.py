"""
Append-Only, Tamper-Evident Audit Log (Hash-Chained).

One ``AuditRecord`` is written for every operation that touches patient
data: reads, datum creation, verification transitions, alert creation and
resolution, agent lock/unlock, and inbound message processing.  Records are
linked via a SHA-256 hash chain: if any record is modified after the fact,
``verify_chain()`` detects the inconsistency.

**No clinical values in metadata.**  Records carry resource identifiers,
action names, statuses and counts only.  ``AuditLogger`` drops known
clinical-value keys and runs ``redact_phi_from_metadata`` before anything
is appended.

**Failure is never silent.**  If the sink cannot append a record,
``AuditLogger.record`` raises ``AuditWriteError``.  Components that have
already completed their primary write catch it, log a WARNING for
operators, and report the operation as ``OperationStatus.DEGRADED``.

**Honest scope note:**  The in-process hash chain demonstrates tamper
evidence.  A production deployment would back ``AuditSink`` with WORM
storage or an externally anchored commitment scheme.
"""

from __future__ import annotations

import enum
import hashlib
import json
import logging
import re
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

from pydantic import BaseModel, Field

from signaltriage.errors import AuditWriteError
from signaltriage.models import Actor

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Audit actions
# ---------------------------------------------------------------------------

class AuditAction(str, enum.Enum):
    """Every auditable action in the engine."""

    # Data access and lifecycle
    READ = "READ"
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    EXPORT = "EXPORT"

    # Verification transitions
    VERIFY = "VERIFY"
    DISPUTE = "DISPUTE"
    REVIEW = "REVIEW"
    VERIFICATION_REJECTED = "VERIFICATION_REJECTED"

    # Alerts and auto-lock
    ALERT_CREATED = "ALERT_CREATED"
    ALERT_RESOLVED = "ALERT_RESOLVED"
    AGENT_LOCKED = "AGENT_LOCKED"
    AGENT_UNLOCKED = "AGENT_UNLOCKED"

    # Inbound messaging
    INBOUND_PROCESSED = "INBOUND_PROCESSED"


class OperationStatus(str, enum.Enum):
    """Outcome of an operation whose audit write may have failed."""

    COMPLETED = "COMPLETED"
    DEGRADED = "DEGRADED"


# ---------------------------------------------------------------------------
# Audit record model
# ---------------------------------------------------------------------------

class AuditRecord(BaseModel):
    """A single audit record.

    Records who did what to which resource, when, for which patient, and
    links to the previous record's hash for tamper evidence.
    """

    record_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    actor_id: str = Field(..., description="Physician id, patient id, or SYSTEM.")
    actor_role: str = Field(..., description="Role of the actor.")
    action: AuditAction = Field(...)
    resource_type: str = Field(..., description="medication, vital, report, alert, agent_lock, conversation.")
    resource_id: str = Field(default="")
    patient_id: Optional[str] = Field(default=None)
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        description="Identifiers, statuses and counts only; never clinical values.",
    )
    previous_hash: str = Field(default="")

    def canonical_bytes(self) -> bytes:
        """Deterministic byte representation for hashing (sorted JSON)."""
        data = {
            "record_id": self.record_id,
            "timestamp": self.timestamp.isoformat(),
            "actor_id": self.actor_id,
            "actor_role": self.actor_role,
            "action": self.action.value,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "patient_id": self.patient_id,
            "metadata": self.metadata,
            "previous_hash": self.previous_hash,
        }
        return json.dumps(data, sort_keys=True, default=str).encode("utf-8")

    def compute_hash(self) -> str:
        return hashlib.sha256(self.canonical_bytes()).hexdigest()


# ---------------------------------------------------------------------------
# PHI redaction
# ---------------------------------------------------------------------------

_PHI_PATTERNS: dict[str, re.Pattern] = {
    "ssn": re.compile(r"\b\d{3}-\d{2}-\d{4}\b"),
    "phone": re.compile(r"\b\d{3}[-.]?\d{3}[-.]?\d{4}\b"),
    "email": re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Z|a-z]{2,}\b"),
}

_PHI_KEYS = {"name", "full_name", "first_name", "last_name", "dob", "date_of_birth",
             "ssn", "social_security", "email", "phone", "address", "zip_code"}

# Keys that would carry decrypted clinical content.  Dropped outright.
_CLINICAL_VALUE_KEYS = {"value", "body", "text", "message_body", "note", "resolution_note",
                        "label", "drug_name", "dose"}


def redact_phi_from_metadata(metadata: dict[str, Any]) -> dict[str, Any]:
    """Replace PHI-looking keys and patterns with ``[REDACTED]`` markers."""
    redacted = {}
    for key, value in metadata.items():
        if key.lower() in _PHI_KEYS:
            redacted[key] = "[REDACTED]"
        elif isinstance(value, str):
            redacted_value = value
            for pattern_name, pattern in _PHI_PATTERNS.items():
                redacted_value = pattern.sub(f"[REDACTED-{pattern_name.upper()}]", redacted_value)
            redacted[key] = redacted_value
        elif isinstance(value, dict):
            redacted[key] = redact_phi_from_metadata(value)
        else:
            redacted[key] = value
    return redacted


def strip_clinical_values(metadata: dict[str, Any]) -> dict[str, Any]:
    """Drop keys that would carry clinical values, recursively."""
    cleaned = {}
    for key, value in metadata.items():
        if key.lower() in _CLINICAL_VALUE_KEYS:
            continue
        if isinstance(value, dict):
            value = strip_clinical_values(value)
        cleaned[key] = value
    return cleaned


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------

class AuditSink(Protocol):
    def append(self, record: AuditRecord) -> AuditRecord: ...


class AuditLog:
    """Append-only, tamper-evident audit log with SHA-256 hash chaining.

    * There are no ``update()`` or ``delete()`` methods.
    * ``verify_chain()`` walks the log and detects tampering.
    * ``export_for_review()`` applies PHI redaction before export.
    """

    def __init__(self) -> None:
        self._records: list[AuditRecord] = []
        self._hashes: list[str] = []
        self._lock = threading.Lock()

    def append(self, record: AuditRecord) -> AuditRecord:
        """Append a record, linking it to the previous record's hash."""
        with self._lock:
            record.previous_hash = self._hashes[-1] if self._hashes else ""
            self._records.append(record)
            self._hashes.append(record.compute_hash())
        return record

    def verify_chain(self) -> tuple[bool, Optional[int]]:
        """Walk the log and validate every hash link.

        Returns:
            ``(valid, broken_at)``; ``broken_at`` is the index of the first
            broken link, or None.
        """
        for i, record in enumerate(self._records):
            if i == 0:
                if record.previous_hash != "":
                    return (False, 0)
            elif record.previous_hash != self._records[i - 1].compute_hash():
                return (False, i)

            if self._hashes[i] != record.compute_hash():
                return (False, i)

        return (True, None)

    def query(
        self,
        patient_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
        actor_id: Optional[str] = None,
        resource_id: Optional[str] = None,
        time_start: Optional[datetime] = None,
        time_end: Optional[datetime] = None,
    ) -> list[AuditRecord]:
        """Return copies of matching records in insertion order."""
        results = []
        for record in self._records:
            if patient_id is not None and record.patient_id != patient_id:
                continue
            if action is not None and record.action != action:
                continue
            if actor_id is not None and record.actor_id != actor_id:
                continue
            if resource_id is not None and record.resource_id != resource_id:
                continue
            if time_start is not None and record.timestamp < time_start:
                continue
            if time_end is not None and record.timestamp > time_end:
                continue
            results.append(record.model_copy(deep=True))
        return results

    def export_for_review(
        self,
        patient_id: Optional[str] = None,
        time_start: Optional[datetime] = None,
        time_end: Optional[datetime] = None,
    ) -> dict[str, Any]:
        """Produce a JSON-serializable, PHI-redacted export bundle."""
        records = self.query(patient_id=patient_id, time_start=time_start, time_end=time_end)

        exported = []
        for record in records:
            record_dict = record.model_dump()
            record_dict["action"] = record.action.value
            record_dict["metadata"] = redact_phi_from_metadata(record.metadata)
            record_dict["timestamp"] = record.timestamp.isoformat()
            exported.append(record_dict)

        chain_valid, broken_at = self.verify_chain()

        return {
            "export_metadata": {
                "patient_id": patient_id,
                "exported_at": datetime.now(timezone.utc).isoformat(),
                "record_count": len(exported),
                "chain_integrity": "VALID" if chain_valid else f"BROKEN_AT_INDEX_{broken_at}",
            },
            "records": exported,
        }

    def __len__(self) -> int:
        return len(self._records)


# ---------------------------------------------------------------------------
# Audit logger (component-facing)
# ---------------------------------------------------------------------------

class AuditLogger:
    """Builds PHI-free audit records and appends them to a sink.

    Raises ``AuditWriteError`` when the sink fails; see ``record_or_degrade``
    for callers whose primary write has already succeeded.
    """

    def __init__(self, sink: AuditSink | None = None) -> None:
        self.sink: AuditSink = sink if sink is not None else AuditLog()

    def record(
        self,
        actor: Actor,
        action: AuditAction,
        resource_type: str,
        resource_id: str = "",
        patient_id: Optional[str] = None,
        metadata: dict[str, Any] | None = None,
    ) -> AuditRecord:
        safe_metadata = redact_phi_from_metadata(strip_clinical_values(metadata or {}))
        record = AuditRecord(
            actor_id=actor.actor_id,
            actor_role=actor.role.value,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            patient_id=patient_id,
            metadata=safe_metadata,
        )
        try:
            return self.sink.append(record)
        except Exception as exc:
            raise AuditWriteError(
                f"Audit write failed: action={action.value} resource={resource_type} "
                f"id={resource_id} actor={actor.actor_id}"
            ) from exc

    def record_or_degrade(self, *args: Any, **kwargs: Any) -> OperationStatus:
        """Write an audit record after a completed primary write.

        An audit failure here does not undo the primary write; it is logged
        at WARNING for operators and reported back as ``DEGRADED``.
        """
        try:
            self.record(*args, **kwargs)
        except AuditWriteError as exc:
            logger.warning("[AUDIT_FAIL] %s", exc, exc_info=exc.__cause__)
            return OperationStatus.DEGRADED
        return OperationStatus.COMPLETED
