"""
Tests for signaltriage.verification -- Verification State Machine.

Covers: source-determined initial status, confidence fixing at creation,
physician transitions and stamping, role enforcement, audit records per
transition, degraded audit writes, fail-closed storage, and the pending
review query.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from signaltriage.audit import AuditAction, AuditLog, AuditLogger, OperationStatus
from signaltriage.errors import MalformedRequestError, RecordNotFoundError, StorageWriteError
from signaltriage.models import (
    Actor,
    ClinicalDatum,
    ResourceType,
    Role,
    SourceType,
    VerificationAction,
    VerificationStatus,
)
from signaltriage.store import InMemoryStore
from signaltriage.verification import VerificationStateMachine, initial_status_for


PHYSICIAN = Actor(actor_id="dr_bander", role=Role.PHYSICIAN)
PATIENT = Actor(actor_id="patient_1", role=Role.PATIENT)


class _FailingSink:
    def append(self, record):
        raise IOError("audit store unavailable")


class _FailingWriteStore(InMemoryStore):
    def add_datum(self, datum):
        raise IOError("disk full")


def _make_machine(store=None, sink=None):
    store = store or InMemoryStore()
    audit_log = sink if sink is not None else AuditLog()
    machine = VerificationStateMachine(store, AuditLogger(audit_log))
    return machine, store, audit_log


def _record(machine, source_type=SourceType.PATIENT_SMS, patient_id="patient_1",
            label="Metformin", value="1000mg daily", **kwargs):
    return machine.record_datum(
        patient_id=patient_id,
        resource_type=kwargs.pop("resource_type", ResourceType.MEDICATION),
        label=label,
        value=value,
        source_type=source_type,
        **kwargs,
    )


# ---------------------------------------------------------------------------
# 1. Initial status
# ---------------------------------------------------------------------------

class TestInitialStatus:
    @pytest.mark.parametrize("source,expected", [
        (SourceType.CLINICIAN, VerificationStatus.VERIFIED),
        (SourceType.DEVICE, VerificationStatus.VERIFIED),
        (SourceType.EMR_IMPORT, VerificationStatus.VERIFIED),
        (SourceType.PATIENT_SMS, VerificationStatus.UNVERIFIED),
        (SourceType.PATIENT_VOICE, VerificationStatus.UNVERIFIED),
        (SourceType.PATIENT_PORTAL, VerificationStatus.UNVERIFIED),
        (SourceType.AI_EXTRACTED, VerificationStatus.PENDING_REVIEW),
        (SourceType.SYSTEM, VerificationStatus.UNVERIFIED),
    ])
    def test_table(self, source, expected):
        assert initial_status_for(source) == expected

    def test_patient_sms_high_confidence_still_unverified(self):
        machine, _, _ = _make_machine()
        result = _record(machine, label="Metformin", value="Took my Metformin 1000mg")
        assert result.datum.confidence_score == 3
        assert result.status == VerificationStatus.UNVERIFIED
        assert result.datum.verified_by is None

    def test_trusted_origin_is_stamped_and_scored_high(self):
        machine, _, _ = _make_machine()
        result = _record(
            machine, source_type=SourceType.CLINICIAN, label="Note", value="stable",
            actor=PHYSICIAN,
        )
        assert result.status == VerificationStatus.VERIFIED
        assert result.datum.confidence_score == 3
        assert result.datum.verified_by == "dr_bander"
        assert result.datum.verified_at is not None

    def test_ai_extracted_is_pending_review(self):
        machine, _, _ = _make_machine()
        result = _record(machine, source_type=SourceType.AI_EXTRACTED,
                         resource_type=ResourceType.REPORT, label="New symptom",
                         value="ankle swelling")
        assert result.status == VerificationStatus.PENDING_REVIEW

    def test_create_is_audited(self):
        machine, _, log = _make_machine()
        result = _record(machine)
        records = log.query(action=AuditAction.CREATE)
        assert len(records) == 1
        assert records[0].resource_id == result.datum.id
        assert "value" not in records[0].metadata
        assert records[0].metadata["verification_status"] == "UNVERIFIED"


# ---------------------------------------------------------------------------
# 2. Transitions
# ---------------------------------------------------------------------------

class TestTransitions:
    def test_verify_stamps(self):
        machine, store, _ = _make_machine()
        datum = _record(machine).datum
        result = machine.apply_action(ResourceType.MEDICATION, datum.id,
                                      VerificationAction.VERIFY, PHYSICIAN)
        assert result.prior_status == VerificationStatus.UNVERIFIED
        assert result.status == VerificationStatus.VERIFIED
        stored = store.get_datum(datum.id)
        assert stored.verified_by == "dr_bander"
        assert stored.verified_at is not None

    def test_dispute_stamps(self):
        machine, store, _ = _make_machine()
        datum = _record(machine).datum
        machine.apply_action(ResourceType.MEDICATION, datum.id,
                             VerificationAction.DISPUTE, PHYSICIAN, note="Patient stopped it")
        stored = store.get_datum(datum.id)
        assert stored.verification_status == VerificationStatus.DISPUTED
        assert stored.verified_by == "dr_bander"
        assert stored.note == "Patient stopped it"

    def test_pending_clears_stamp(self):
        machine, store, _ = _make_machine()
        datum = _record(machine).datum
        machine.apply_action(ResourceType.MEDICATION, datum.id, VerificationAction.VERIFY, PHYSICIAN)
        machine.apply_action(ResourceType.MEDICATION, datum.id, VerificationAction.PENDING, PHYSICIAN)
        stored = store.get_datum(datum.id)
        assert stored.verification_status == VerificationStatus.PENDING_REVIEW
        assert stored.verified_by is None
        assert stored.verified_at is None

    def test_pending_review_vital_verified(self):
        machine, store, log = _make_machine()
        vital = _record(
            machine, source_type=SourceType.AI_EXTRACTED, resource_type=ResourceType.VITAL,
            label="HEART_RATE", value="88",
        ).datum
        assert vital.verification_status == VerificationStatus.PENDING_REVIEW
        machine.apply_action(ResourceType.VITAL, vital.id, VerificationAction.VERIFY, PHYSICIAN)
        stored = store.get_datum(vital.id)
        assert stored.verification_status == VerificationStatus.VERIFIED
        assert stored.verified_by == "dr_bander"
        assert stored.verified_at is not None
        assert len(log.query(action=AuditAction.VERIFY, resource_id=vital.id)) == 1

    def test_verified_can_be_disputed(self):
        machine, store, _ = _make_machine()
        datum = _record(machine, source_type=SourceType.EMR_IMPORT).datum
        result = machine.apply_action(ResourceType.MEDICATION, datum.id,
                                      VerificationAction.DISPUTE, PHYSICIAN)
        assert result.prior_status == VerificationStatus.VERIFIED
        assert store.get_datum(datum.id).verification_status == VerificationStatus.DISPUTED

    def test_confidence_never_changes(self):
        machine, store, _ = _make_machine()
        datum = _record(machine, label="Metoprolol", value="daily").datum
        assert datum.confidence_score == 2
        for action in VerificationAction:
            machine.apply_action(ResourceType.MEDICATION, datum.id, action, PHYSICIAN)
        assert store.get_datum(datum.id).confidence_score == 2

    def test_each_transition_writes_one_audit_record(self):
        machine, _, log = _make_machine()
        datum = _record(machine).datum
        machine.apply_action(ResourceType.MEDICATION, datum.id, VerificationAction.VERIFY, PHYSICIAN)
        machine.apply_action(ResourceType.MEDICATION, datum.id, VerificationAction.DISPUTE, PHYSICIAN)
        machine.apply_action(ResourceType.MEDICATION, datum.id, VerificationAction.PENDING, PHYSICIAN)

        verify = log.query(action=AuditAction.VERIFY)
        dispute = log.query(action=AuditAction.DISPUTE)
        review = log.query(action=AuditAction.REVIEW)
        assert len(verify) == len(dispute) == len(review) == 1
        assert verify[0].metadata["prior_status"] == "UNVERIFIED"
        assert verify[0].metadata["new_status"] == "VERIFIED"
        assert review[0].metadata["prior_status"] == "DISPUTED"
        assert verify[0].actor_id == "dr_bander"

    def test_note_not_written_to_audit(self):
        machine, _, log = _make_machine()
        datum = _record(machine).datum
        machine.apply_action(ResourceType.MEDICATION, datum.id,
                             VerificationAction.VERIFY, PHYSICIAN, note="confirmed at visit")
        record = log.query(action=AuditAction.VERIFY)[0]
        assert "note" not in record.metadata
        assert record.metadata["has_note"] is True


# ---------------------------------------------------------------------------
# 3. Rejections
# ---------------------------------------------------------------------------

class TestRejections:
    def test_patient_cannot_verify(self):
        machine, store, _ = _make_machine()
        datum = _record(machine).datum
        with pytest.raises(PermissionError):
            machine.apply_action(ResourceType.MEDICATION, datum.id, VerificationAction.VERIFY, PATIENT)
        assert store.get_datum(datum.id).verification_status == VerificationStatus.UNVERIFIED

    def test_unknown_id(self):
        machine, _, _ = _make_machine()
        with pytest.raises(RecordNotFoundError):
            machine.apply_action(ResourceType.MEDICATION, "missing", VerificationAction.VERIFY, PHYSICIAN)

    def test_resource_type_mismatch(self):
        machine, store, _ = _make_machine()
        datum = _record(machine).datum
        with pytest.raises(MalformedRequestError):
            machine.apply_action(ResourceType.VITAL, datum.id, VerificationAction.VERIFY, PHYSICIAN)
        assert store.get_datum(datum.id).verification_status == VerificationStatus.UNVERIFIED

    def test_stamp_invariant_enforced_by_model(self):
        with pytest.raises(Exception):
            ClinicalDatum(
                patient_id="p",
                resource_type=ResourceType.MEDICATION,
                label="x",
                value="y",
                source_type=SourceType.PATIENT_SMS,
                verification_status=VerificationStatus.VERIFIED,
                confidence_score=0,
            )
        with pytest.raises(Exception):
            ClinicalDatum(
                patient_id="p",
                resource_type=ResourceType.MEDICATION,
                label="x",
                value="y",
                source_type=SourceType.PATIENT_SMS,
                verification_status=VerificationStatus.UNVERIFIED,
                confidence_score=0,
                verified_by="dr_x",
                verified_at=datetime.now(timezone.utc),
            )


# ---------------------------------------------------------------------------
# 4. Failure handling
# ---------------------------------------------------------------------------

class TestFailureHandling:
    def test_audit_failure_is_degraded_not_silent(self, caplog):
        machine, store, _ = _make_machine(sink=_FailingSink())
        result = _record(machine)
        assert result.operation_status == OperationStatus.DEGRADED
        assert result.degraded is True
        assert store.get_datum(result.datum.id) is not None
        assert "[AUDIT_FAIL]" in caplog.text

    def test_transition_degraded_when_audit_fails(self):
        machine, store, _ = _make_machine(sink=_FailingSink())
        datum = _record(machine).datum
        result = machine.apply_action(ResourceType.MEDICATION, datum.id,
                                      VerificationAction.VERIFY, PHYSICIAN)
        assert result.degraded is True
        assert store.get_datum(datum.id).verification_status == VerificationStatus.VERIFIED

    def test_storage_failure_fails_closed(self):
        machine, _, log = _make_machine(store=_FailingWriteStore())
        with pytest.raises(StorageWriteError):
            _record(machine)
        assert len(log) == 0


# ---------------------------------------------------------------------------
# 5. Pending review
# ---------------------------------------------------------------------------

class TestPendingReview:
    def test_only_unverified_and_pending_for_panel(self):
        machine, store, _ = _make_machine()
        store.assign_patient("patient_1", "dr_bander")
        unverified = _record(machine).datum
        pending = _record(machine, source_type=SourceType.AI_EXTRACTED).datum
        _record(machine, source_type=SourceType.DEVICE)
        _record(machine, patient_id="other_patient")

        page = machine.pending_for_physician(PHYSICIAN)
        ids = {d.id for d in page.items}
        assert ids == {unverified.id, pending.id}
        assert page.total == 2
        assert page.has_next is False

    def test_newest_first_and_paginated(self):
        machine, store, _ = _make_machine()
        store.assign_patient("patient_1", "dr_bander")
        base = datetime(2026, 2, 20, tzinfo=timezone.utc)
        for i in range(5):
            _record(machine, recorded_at=base + timedelta(hours=i), value=f"reading {i}")

        first = machine.pending_for_physician(PHYSICIAN, page=1, page_size=2)
        assert [d.value for d in first.items] == ["reading 4", "reading 3"]
        assert first.has_next is True
        last = machine.pending_for_physician(PHYSICIAN, page=3, page_size=2)
        assert [d.value for d in last.items] == ["reading 0"]
        assert last.has_next is False

    def test_invalid_page(self):
        machine, _, _ = _make_machine()
        with pytest.raises(MalformedRequestError):
            machine.pending_for_physician(PHYSICIAN, page=0)
        with pytest.raises(MalformedRequestError):
            machine.pending_for_physician(PHYSICIAN, page_size=500)

    def test_patient_cannot_view_pending(self):
        machine, _, _ = _make_machine()
        with pytest.raises(PermissionError):
            machine.pending_for_physician(PATIENT)

    def test_get_datum_is_audited(self):
        machine, _, log = _make_machine()
        datum = _record(machine).datum
        machine.get_datum(datum.id, PHYSICIAN)
        reads = log.query(action=AuditAction.READ, resource_id=datum.id)
        assert len(reads) == 1
        assert reads[0].actor_id == "dr_bander"
