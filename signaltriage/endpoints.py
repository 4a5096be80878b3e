"""
Physician-facing request handlers.

``VerificationEndpoint`` sits between the dashboard's HTTP layer and the
engine.  It validates the wire payload, enforces roles, and renders every
value it returns through the attribution formatter.

**Verification request wire shape** (camelCase, as sent by the dashboard)::

    {"resourceType": "medication" | "vital" | "report",
     "resourceId":   "<datum id>",
     "action":       "verify" | "dispute" | "pending",
     "note":         "<optional free text>"}

A request that fails validation, names an unknown record, or comes from a
non-physician leaves no state change and exactly one
``VERIFICATION_REJECTED`` audit record.  The caller maps
``MalformedRequestError`` and ``RecordNotFoundError`` to a client error and
``PermissionError`` to a forbidden response.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from signaltriage.attribution import format_datum
from signaltriage.audit import AuditAction, AuditLog, AuditLogger, AuditRecord, OperationStatus
from signaltriage.errors import MalformedRequestError, RecordNotFoundError, TriageError
from signaltriage.models import (
    Actor,
    ResourceType,
    VerificationAction,
    VerificationStatus,
)
from signaltriage.rbac import require_permission
from signaltriage.verification import VerificationStateMachine

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Wire models
# ---------------------------------------------------------------------------

class VerificationRequest(BaseModel):
    """Validated verification payload."""

    model_config = ConfigDict(populate_by_name=True)

    resource_type: ResourceType = Field(..., alias="resourceType")
    resource_id: str = Field(..., alias="resourceId", min_length=1)
    action: VerificationAction = Field(...)
    note: Optional[str] = Field(default=None, max_length=2000)


class VerificationResponse(BaseModel):
    success: bool = Field(default=True)
    resource_id: str
    status: VerificationStatus
    prior_status: Optional[VerificationStatus] = Field(default=None)
    degraded: bool = Field(
        default=False,
        description="True when the transition committed but its audit record did not.",
    )


class PendingItem(BaseModel):
    """One row of the physician review queue."""

    id: str
    patient_id: str
    resource_type: ResourceType
    verification_status: VerificationStatus
    confidence_score: int
    recorded_at: datetime
    attribution: str = Field(..., description="Value rendered with its trust marker.")


class PendingQueryResponse(BaseModel):
    items: list[PendingItem] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    page_size: int = 50
    has_next: bool = False
    degraded: bool = False


# ---------------------------------------------------------------------------
# Endpoint
# ---------------------------------------------------------------------------

def _error_fields(exc: ValidationError) -> list[str]:
    return [".".join(str(part) for part in err["loc"]) for err in exc.errors()]


class VerificationEndpoint:
    """Physician review queue, verification actions, and audit access."""

    def __init__(self, machine: VerificationStateMachine, audit: AuditLogger) -> None:
        self._machine = machine
        self._audit = audit

    def handle_verification_request(self, payload: Any, actor: Actor) -> VerificationResponse:
        """Validate and apply one verification action.

        Raises:
            MalformedRequestError: Bad payload shape, unknown resource type or
                action, or a resource id of a different type.
            RecordNotFoundError: If ``resourceId`` does not exist.
            PermissionError: If the actor is not a physician.
        """
        resource_id = ""
        if isinstance(payload, dict) and isinstance(payload.get("resourceId"), str):
            resource_id = payload["resourceId"]

        try:
            if not isinstance(payload, dict):
                raise MalformedRequestError("Verification payload must be a JSON object")
            try:
                request = VerificationRequest.model_validate(payload)
            except ValidationError as exc:
                fields = _error_fields(exc)
                raise MalformedRequestError(
                    f"Invalid verification request: {', '.join(fields)}", details=fields
                ) from exc

            result = self._machine.apply_action(
                request.resource_type,
                request.resource_id,
                request.action,
                actor,
                note=request.note,
            )
        except MalformedRequestError as exc:
            self._reject(actor, resource_id, "malformed", exc.details)
            raise
        except RecordNotFoundError:
            self._reject(actor, resource_id, "not_found")
            raise
        except PermissionError:
            self._reject(actor, resource_id, "forbidden")
            raise

        return VerificationResponse(
            resource_id=result.datum.id,
            status=result.status,
            prior_status=result.prior_status,
            degraded=result.degraded,
        )

    def _reject(self, actor: Actor, resource_id: str, reason: str, fields: list | None = None) -> None:
        logger.info("Verification request from %s rejected (%s)", actor.actor_id, reason)
        self._audit.record_or_degrade(
            actor,
            AuditAction.VERIFICATION_REJECTED,
            "verification_request",
            resource_id,
            metadata={"reason": reason, "invalid_fields": list(fields or [])},
        )

    def handle_pending_query(
        self,
        physician: Actor,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> PendingQueryResponse:
        """UNVERIFIED and PENDING_REVIEW data for the physician's panel.

        Raises:
            PermissionError: If the actor is not a physician.
            MalformedRequestError: If pagination is out of range.
        """
        result = self._machine.pending_for_physician(physician, page=page, page_size=page_size)
        items = [
            PendingItem(
                id=d.id,
                patient_id=d.patient_id,
                resource_type=d.resource_type,
                verification_status=d.verification_status,
                confidence_score=d.confidence_score,
                recorded_at=d.recorded_at,
                attribution=format_datum(d),
            )
            for d in result.items
        ]
        return PendingQueryResponse(
            items=items,
            total=result.total,
            page=result.page,
            page_size=result.page_size,
            has_next=result.has_next,
            degraded=result.operation_status == OperationStatus.DEGRADED,
        )

    # -- audit access --

    def _audit_log(self) -> AuditLog:
        sink = self._audit.sink
        if not isinstance(sink, AuditLog):
            raise TriageError("Configured audit sink does not support queries")
        return sink

    def query_audit(
        self,
        actor: Actor,
        patient_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
        time_start: Optional[datetime] = None,
        time_end: Optional[datetime] = None,
    ) -> list[AuditRecord]:
        """Filtered audit records.  Requires ``query_audit``."""
        require_permission(actor, "query_audit")
        records = self._audit_log().query(
            patient_id=patient_id, action=action, time_start=time_start, time_end=time_end
        )
        self._audit.record_or_degrade(
            actor,
            AuditAction.READ,
            "audit_log",
            patient_id or "*",
            patient_id=patient_id,
            metadata={"count": len(records)},
        )
        return records

    def export_audit(
        self,
        actor: Actor,
        patient_id: Optional[str] = None,
        time_start: Optional[datetime] = None,
        time_end: Optional[datetime] = None,
    ) -> dict[str, Any]:
        """PHI-redacted export bundle.  Requires ``export_audit``."""
        require_permission(actor, "export_audit")
        bundle = self._audit_log().export_for_review(
            patient_id=patient_id, time_start=time_start, time_end=time_end
        )
        self._audit.record_or_degrade(
            actor,
            AuditAction.EXPORT,
            "audit_log",
            patient_id or "*",
            patient_id=patient_id,
            metadata={
                "record_count": bundle["export_metadata"]["record_count"],
                "chain_integrity": bundle["export_metadata"]["chain_integrity"],
            },
        )
        return bundle
