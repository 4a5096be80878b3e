"""
Tests for signaltriage.endpoints -- verification request handling,
pending-review query, and audit access.
"""

from __future__ import annotations

import pytest

from signaltriage.audit import AuditAction, AuditLog, AuditLogger
from signaltriage.endpoints import VerificationEndpoint, VerificationRequest
from signaltriage.errors import MalformedRequestError, RecordNotFoundError
from signaltriage.models import (
    Actor,
    ResourceType,
    Role,
    SourceType,
    VerificationStatus,
)
from signaltriage.store import InMemoryStore
from signaltriage.verification import VerificationStateMachine


PHYSICIAN = Actor(actor_id="dr_bander", role=Role.PHYSICIAN)
PATIENT = Actor(actor_id="patient_1", role=Role.PATIENT)
AUDITOR = Actor(actor_id="auditor_1", role=Role.AUDITOR)


def _make_endpoint():
    store = InMemoryStore()
    log = AuditLog()
    audit = AuditLogger(log)
    machine = VerificationStateMachine(store, audit)
    store.assign_patient("patient_1", "dr_bander")
    return VerificationEndpoint(machine, audit), machine, store, log


def _seed(machine, source_type=SourceType.PATIENT_SMS, resource_type=ResourceType.MEDICATION):
    return machine.record_datum(
        patient_id="patient_1",
        resource_type=resource_type,
        label="Metformin",
        value="1000mg daily",
        source_type=source_type,
    ).datum


def _payload(resource_id, action="verify", resource_type="medication", **extra):
    payload = {"resourceType": resource_type, "resourceId": resource_id, "action": action}
    payload.update(extra)
    return payload


# ---------------------------------------------------------------------------
# 1. Valid requests
# ---------------------------------------------------------------------------

class TestVerificationRequests:
    def test_verify(self):
        endpoint, machine, store, _ = _make_endpoint()
        datum = _seed(machine)
        response = endpoint.handle_verification_request(_payload(datum.id), PHYSICIAN)
        assert response.success is True
        assert response.status == VerificationStatus.VERIFIED
        assert response.prior_status == VerificationStatus.UNVERIFIED
        assert response.degraded is False
        assert store.get_datum(datum.id).verified_by == "dr_bander"

    def test_dispute_with_note(self):
        endpoint, machine, store, log = _make_endpoint()
        datum = _seed(machine)
        endpoint.handle_verification_request(
            _payload(datum.id, action="dispute", note="Not on med list"), PHYSICIAN
        )
        assert store.get_datum(datum.id).verification_status == VerificationStatus.DISPUTED
        assert len(log.query(action=AuditAction.DISPUTE)) == 1

    def test_snake_case_accepted(self):
        request = VerificationRequest.model_validate(
            {"resource_type": "vital", "resource_id": "v1", "action": "pending"}
        )
        assert request.resource_type == ResourceType.VITAL


# ---------------------------------------------------------------------------
# 2. Rejections
# ---------------------------------------------------------------------------

class TestRejections:
    @pytest.mark.parametrize("payload", [
        {"resourceType": "labs", "resourceId": "x", "action": "verify"},
        {"resourceType": "medication", "resourceId": "x", "action": "approve"},
        {"resourceType": "medication", "action": "verify"},
        {"resourceType": "medication", "resourceId": "", "action": "verify"},
        "not a dict",
    ])
    def test_malformed_payload(self, payload):
        endpoint, _, _, log = _make_endpoint()
        with pytest.raises(MalformedRequestError):
            endpoint.handle_verification_request(payload, PHYSICIAN)
        rejected = log.query(action=AuditAction.VERIFICATION_REJECTED)
        assert len(rejected) == 1
        assert rejected[0].metadata["reason"] == "malformed"

    def test_malformed_leaves_state_unchanged(self):
        endpoint, machine, store, log = _make_endpoint()
        datum = _seed(machine)
        with pytest.raises(MalformedRequestError) as excinfo:
            endpoint.handle_verification_request(_payload(datum.id, action="approve"), PHYSICIAN)
        assert "action" in excinfo.value.details
        assert store.get_datum(datum.id).verification_status == VerificationStatus.UNVERIFIED
        assert log.query(action=AuditAction.VERIFY) == []

    def test_type_mismatch(self):
        endpoint, machine, _, log = _make_endpoint()
        datum = _seed(machine)
        with pytest.raises(MalformedRequestError):
            endpoint.handle_verification_request(_payload(datum.id, resource_type="vital"), PHYSICIAN)
        assert len(log.query(action=AuditAction.VERIFICATION_REJECTED)) == 1

    def test_unknown_id(self):
        endpoint, _, _, log = _make_endpoint()
        with pytest.raises(RecordNotFoundError):
            endpoint.handle_verification_request(_payload("missing"), PHYSICIAN)
        rejected = log.query(action=AuditAction.VERIFICATION_REJECTED)
        assert rejected[0].metadata["reason"] == "not_found"
        assert rejected[0].resource_id == "missing"

    def test_patient_forbidden(self):
        endpoint, machine, store, log = _make_endpoint()
        datum = _seed(machine)
        with pytest.raises(PermissionError):
            endpoint.handle_verification_request(_payload(datum.id), PATIENT)
        assert store.get_datum(datum.id).verification_status == VerificationStatus.UNVERIFIED
        rejected = log.query(action=AuditAction.VERIFICATION_REJECTED)
        assert rejected[0].metadata["reason"] == "forbidden"
        assert rejected[0].actor_id == "patient_1"


# ---------------------------------------------------------------------------
# 3. Pending query
# ---------------------------------------------------------------------------

class TestPendingQuery:
    def test_items_are_attributed(self):
        endpoint, machine, _, _ = _make_endpoint()
        datum = _seed(machine)
        _seed(machine, source_type=SourceType.CLINICIAN)
        response = endpoint.handle_pending_query(PHYSICIAN)
        assert response.total == 1
        assert response.items[0].id == datum.id
        assert response.items[0].attribution.startswith("[UNVERIFIED - patient reported via SMS")
        assert response.page_size == 50

    def test_verified_item_leaves_queue(self):
        endpoint, machine, _, _ = _make_endpoint()
        datum = _seed(machine)
        endpoint.handle_verification_request(_payload(datum.id), PHYSICIAN)
        assert endpoint.handle_pending_query(PHYSICIAN).total == 0

    def test_pagination(self):
        endpoint, machine, _, _ = _make_endpoint()
        for _ in range(3):
            _seed(machine)
        response = endpoint.handle_pending_query(PHYSICIAN, page=1, page_size=2)
        assert len(response.items) == 2
        assert response.has_next is True

    def test_patient_cannot_query(self):
        endpoint, _, _, _ = _make_endpoint()
        with pytest.raises(PermissionError):
            endpoint.handle_pending_query(PATIENT)


# ---------------------------------------------------------------------------
# 4. Audit access
# ---------------------------------------------------------------------------

class TestAuditAccess:
    def test_auditor_export(self):
        endpoint, machine, _, log = _make_endpoint()
        _seed(machine)
        bundle = endpoint.export_audit(AUDITOR, patient_id="patient_1")
        assert bundle["export_metadata"]["chain_integrity"] == "VALID"
        assert bundle["export_metadata"]["record_count"] == 1
        assert len(log.query(action=AuditAction.EXPORT)) == 1

    def test_physician_cannot_export(self):
        endpoint, _, _, _ = _make_endpoint()
        with pytest.raises(PermissionError):
            endpoint.export_audit(PHYSICIAN)

    def test_physician_query(self):
        endpoint, machine, _, _ = _make_endpoint()
        _seed(machine)
        records = endpoint.query_audit(PHYSICIAN, patient_id="patient_1", action=AuditAction.CREATE)
        assert len(records) == 1

    def test_patient_cannot_query(self):
        endpoint, _, _, _ = _make_endpoint()
        with pytest.raises(PermissionError):
            endpoint.query_audit(PATIENT)
