"""
Role-Based Access Control (RBAC) for SignalTriage.

Gates the physician-only operations: changing a datum's trust tier,
resolving alerts, and unlocking a patient's automated agent.  Escalation
detection, alert creation and datum recording are never permission-gated,
so inbound messages cannot be blocked by a role check.

**Roles:**

* PATIENT   -- submits messages; never sees classification results.
* PHYSICIAN -- verifies/disputes data, resolves alerts, unlocks agents.
* ADMIN     -- audit query and export.
* AUDITOR   -- read-only audit query and export.
* SYSTEM    -- the engine itself.

Production deployments map identity-provider claims onto these roles;
session management is out of scope here.
"""

from __future__ import annotations

from signaltriage.models import Actor, Role


# Maps (role, action) -> allowed.  Missing pairs are denied.
_PERMISSIONS: dict[tuple[Role, str], bool] = {
    # Patient
    (Role.PATIENT, "verify_datum"): False,
    (Role.PATIENT, "resolve_alert"): False,
    (Role.PATIENT, "unlock_agent"): False,
    (Role.PATIENT, "view_pending"): False,
    (Role.PATIENT, "query_audit"): False,
    # Physician
    (Role.PHYSICIAN, "verify_datum"): True,
    (Role.PHYSICIAN, "resolve_alert"): True,
    (Role.PHYSICIAN, "unlock_agent"): True,
    (Role.PHYSICIAN, "view_pending"): True,
    (Role.PHYSICIAN, "query_audit"): True,
    # Admin
    (Role.ADMIN, "verify_datum"): False,
    (Role.ADMIN, "resolve_alert"): False,
    (Role.ADMIN, "unlock_agent"): False,
    (Role.ADMIN, "query_audit"): True,
    (Role.ADMIN, "export_audit"): True,
    # Auditor
    (Role.AUDITOR, "verify_datum"): False,
    (Role.AUDITOR, "resolve_alert"): False,
    (Role.AUDITOR, "unlock_agent"): False,
    (Role.AUDITOR, "query_audit"): True,
    (Role.AUDITOR, "export_audit"): True,
    # System
    (Role.SYSTEM, "verify_datum"): False,
    (Role.SYSTEM, "resolve_alert"): False,
    (Role.SYSTEM, "unlock_agent"): False,
}


def check_permission(role: Role, action: str) -> bool:
    return _PERMISSIONS.get((role, action), False)


def require_permission(actor: Actor, action: str) -> None:
    """Enforce a permission check for an actor; raise if denied.

    Raises:
        PermissionError: If the actor's role is not permitted.
    """
    if not check_permission(actor.role, action):
        raise PermissionError(
            f"Role '{actor.role.value}' (actor '{actor.actor_id}') is not "
            f"permitted to perform action '{action}'."
        )


def get_permissions_for_role(role: Role) -> dict[str, bool]:
    return {
        action: allowed
        for (r, action), allowed in _PERMISSIONS.items()
        if r == role
    }
