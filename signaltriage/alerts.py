"""
Alert Aggregator and Auto-Lock Circuit Breaker.

Creates ``Alert`` records from escalation signals and threshold rules, and
maintains the per-patient ``AgentLockState``.

**Severity mapping:**

    emergency keyword          -> CRITICAL  (category "symptom")
    unreadable inbound message -> MEDIUM    (category "unreadable_message")
    threshold rule             -> HIGH / MEDIUM / LOW per rule

**Auto-lock.**  Lock evaluation runs in the same store transaction as the
alert insert: count unresolved CRITICAL alerts for the patient with
``created_at`` in ``[now - window, now]`` (the new alert included) and, when
the count reaches the threshold, set ``locked`` with a persisted reason.
The count is always read from committed alert history, never from an
in-memory counter, so it survives restarts and concurrent workers.

Locking only disables automated conversational replies.  It never disables
escalation detection or alert creation, and the triggering alert is
persisted before the lock is decided.

**Human gates enforced in code:**

* ``resolve_alert()`` requires a physician actor; CRITICAL alerts are never
  auto-resolved.  Resolution changes future window counts only.
* ``unlock_agent()`` is physician-only, audited, and keeps alert history.

**Escalation persistence is retried.**  A CRITICAL alert that fails to
persist is retried with exponential backoff; after the last attempt the
failure is raised as ``EscalationPersistenceError``, never dropped.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from signaltriage.audit import AuditAction, AuditLogger, OperationStatus
from signaltriage.config import DEFAULT_CONFIG, EngineConfig
from signaltriage.errors import (
    EscalationPersistenceError,
    InvalidTransitionError,
    StorageWriteError,
)
from signaltriage.models import (
    SYSTEM_ACTOR,
    Actor,
    AgentLockState,
    Alert,
    AlertSeverity,
    EscalationSignal,
)
from signaltriage.rbac import require_permission
from signaltriage.store import TriageStore, guarded_write
from signaltriage.threshold_rules import ThresholdEvaluationResult

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _worst(a: OperationStatus, b: OperationStatus) -> OperationStatus:
    if OperationStatus.DEGRADED in (a, b):
        return OperationStatus.DEGRADED
    return OperationStatus.COMPLETED


class AlertResult:
    """Outcome of creating or resolving an alert."""

    def __init__(
        self,
        alert: Alert,
        lock_state: Optional[AgentLockState],
        newly_locked: bool,
        operation_status: OperationStatus,
    ) -> None:
        self.alert = alert
        self.lock_state = lock_state
        self.newly_locked = newly_locked
        self.operation_status = operation_status

    def __repr__(self) -> str:
        return (
            f"AlertResult(alert={self.alert.id}, severity={self.alert.severity.value}, "
            f"newly_locked={self.newly_locked}, operation={self.operation_status.value})"
        )


class AlertAggregator:
    """Creates alerts and owns the auto-lock breaker.

    Args:
        store: Durable store; lock decisions run in ``store.transaction()``.
        audit: Audit logger for every create/resolve/lock/unlock.
        config: Window, threshold and retry settings.
        clock: Source of "now" (UTC).  Alert ``created_at`` comes from it.
        sleep: Used between persistence retries.
    """

    def __init__(
        self,
        store: TriageStore,
        audit: AuditLogger,
        config: EngineConfig = DEFAULT_CONFIG,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._audit = audit
        self._config = config
        self._clock = clock
        self._sleep = sleep

    @property
    def window(self) -> timedelta:
        return timedelta(minutes=self._config.lock_window_minutes)

    # -- creation --

    def raise_escalation(
        self,
        patient_id: str,
        signal: EscalationSignal,
        trigger_source: str,
        dedupe_key: Optional[str] = None,
    ) -> AlertResult:
        """Persist a CRITICAL alert for a positive escalation signal.

        Raises:
            ValueError: If the signal did not escalate.
            EscalationPersistenceError: If every persistence attempt failed.
        """
        if not signal.escalate:
            raise ValueError("Only a positive escalation signal can raise an escalation alert.")

        alert = Alert(
            patient_id=patient_id,
            severity=AlertSeverity.CRITICAL,
            category="symptom",
            message="Emergency keyword detected in patient message",
            trigger_source=trigger_source,
            created_at=self._clock(),
            dedupe_key=dedupe_key,
            keyword_set_version=signal.keyword_set_version,
            matched_keywords=list(signal.matched_keywords),
        )
        return self._create_with_retry(alert)

    def raise_unreadable(
        self,
        patient_id: str,
        trigger_source: str,
        dedupe_key: Optional[str] = None,
        subject: str = "message",
    ) -> AlertResult:
        """Patient input could not be read, so it could not be cleared.

        Routed to a physician and retried like an escalation.
        """
        alert = Alert(
            patient_id=patient_id,
            severity=AlertSeverity.MEDIUM,
            category=f"unreadable_{subject}",
            message=f"Patient {subject} could not be read; automated checks not performed",
            trigger_source=trigger_source,
            created_at=self._clock(),
            dedupe_key=dedupe_key,
        )
        return self._create_with_retry(alert)

    def raise_threshold_alert(
        self,
        patient_id: str,
        result: ThresholdEvaluationResult,
        trigger_source: str,
    ) -> AlertResult:
        """Persist an alert for a threshold rule that fired.

        Raises:
            StorageWriteError: If the alert could not be persisted.
        """
        alert = Alert(
            patient_id=patient_id,
            severity=result.severity,
            category=result.category,
            message=result.message,
            trigger_source=trigger_source,
            created_at=self._clock(),
        )
        return self.create_alert(alert)

    def create_alert(self, alert: Alert) -> AlertResult:
        """Insert an alert and evaluate the auto-lock in one transaction.

        An alert carrying a ``dedupe_key`` already stored under the same
        category is not inserted again; the stored alert is returned, so a
        redelivered event can never count twice toward the lock window.

        Raises:
            StorageWriteError: If any store call in the transaction failed,
                reads included (nothing is committed in that case).
        """
        existing, lock_state, newly_locked = guarded_write(
            f"create alert {alert.id}", self._insert_and_evaluate, alert
        )
        if existing is not None:
            logger.info("Alert for event %s already recorded as %s", alert.dedupe_key, existing.id)
            return AlertResult(existing, lock_state, False, OperationStatus.COMPLETED)

        op_status = self._audit.record_or_degrade(
            SYSTEM_ACTOR,
            AuditAction.ALERT_CREATED,
            "alert",
            alert.id,
            patient_id=alert.patient_id,
            metadata={
                "severity": alert.severity.value,
                "category": alert.category,
                "trigger_source": alert.trigger_source,
                "keyword_set_version": alert.keyword_set_version,
                "matched_keyword_count": len(alert.matched_keywords),
            },
        )
        logger.info(
            "Alert %s (%s/%s) created for patient %s",
            alert.id, alert.severity.value, alert.category, alert.patient_id,
        )

        if newly_locked:
            lock_audit = self._audit.record_or_degrade(
                SYSTEM_ACTOR,
                AuditAction.AGENT_LOCKED,
                "agent_lock",
                alert.patient_id,
                patient_id=alert.patient_id,
                metadata={
                    "unresolved_critical_count": lock_state.unresolved_critical_count,
                    "window_minutes": self._config.lock_window_minutes,
                    "triggering_alert_id": alert.id,
                },
            )
            op_status = _worst(op_status, lock_audit)
            logger.warning(
                "Automated agent locked for patient %s: %d unresolved CRITICAL alerts in %d minutes",
                alert.patient_id, lock_state.unresolved_critical_count,
                self._config.lock_window_minutes,
            )

        return AlertResult(alert, lock_state, newly_locked, op_status)

    def _insert_and_evaluate(
        self, alert: Alert
    ) -> tuple[Optional[Alert], Optional[AgentLockState], bool]:
        with self._store.transaction():
            if alert.dedupe_key is not None:
                existing = self._store.find_alert_by_dedupe_key(alert.dedupe_key, alert.category)
                if existing is not None:
                    return existing, self.lock_state(existing.patient_id), False
            self._store.add_alert(alert)
            if alert.severity != AlertSeverity.CRITICAL:
                return None, None, False
            lock_state, newly_locked = self._evaluate_lock(alert.patient_id, alert.created_at)
        return None, lock_state, newly_locked

    def _create_with_retry(self, alert: Alert) -> AlertResult:
        attempts = self._config.retry_attempts
        for attempt in range(attempts):
            try:
                return self.create_alert(alert)
            except StorageWriteError as exc:
                if attempt + 1 >= attempts:
                    logger.error(
                        "Escalation alert %s for patient %s NOT persisted after %d attempts",
                        alert.id, alert.patient_id, attempts,
                    )
                    raise EscalationPersistenceError(
                        f"Escalation alert for patient '{alert.patient_id}' could not be "
                        f"persisted after {attempts} attempts."
                    ) from exc
                delay = self._config.retry_base_delay_seconds * (2 ** attempt)
                logger.warning(
                    "Escalation alert %s persist failed (attempt %d/%d), retrying in %.2fs",
                    alert.id, attempt + 1, attempts, delay,
                )
                self._sleep(delay)
        raise AssertionError("unreachable")

    # -- lock evaluation --

    def _evaluate_lock(
        self, patient_id: str, now: datetime
    ) -> tuple[AgentLockState, bool]:
        """Count-and-decide.  Must run inside ``store.transaction()``."""
        window_start = now - self.window
        count = self._store.count_alerts(
            patient_id,
            AlertSeverity.CRITICAL,
            resolved=False,
            since=window_start,
            until=now,
        )
        state = self._store.get_lock_state(patient_id) or AgentLockState(patient_id=patient_id)
        state.unresolved_critical_count = count
        state.window_start = window_start

        newly_locked = False
        if count >= self._config.lock_threshold and not state.locked:
            state.locked = True
            state.locked_at = now
            state.reason = (
                f"{count} unresolved CRITICAL alerts within "
                f"{self._config.lock_window_minutes} minutes"
            )
            newly_locked = True

        guarded_write(f"save lock state {patient_id}", self._store.save_lock_state, state)
        return state, newly_locked

    def recompute_lock_state(self, patient_id: str) -> AgentLockState:
        """Rebuild the cached count from the alert table.

        Restores a lost lock (count at threshold and no physician unlock
        since the newest in-window CRITICAL alert) but never clears one.
        """
        now = self._clock()
        with self._store.transaction():
            window_start = now - self.window
            in_window = [
                a for a in self._store.list_alerts(patient_id, unresolved_only=True)
                if a.severity == AlertSeverity.CRITICAL and window_start <= a.created_at <= now
            ]
            state = self._store.get_lock_state(patient_id) or AgentLockState(patient_id=patient_id)
            state.unresolved_critical_count = len(in_window)
            state.window_start = window_start

            if len(in_window) >= self._config.lock_threshold and not state.locked:
                newest = max(a.created_at for a in in_window)
                if state.unlocked_at is None or newest > state.unlocked_at:
                    state.locked = True
                    state.locked_at = newest
                    state.reason = (
                        f"{len(in_window)} unresolved CRITICAL alerts within "
                        f"{self._config.lock_window_minutes} minutes (recomputed)"
                    )
            guarded_write(f"save lock state {patient_id}", self._store.save_lock_state, state)
        return state

    # -- gate --

    def lock_state(self, patient_id: str) -> AgentLockState:
        return self._store.get_lock_state(patient_id) or AgentLockState(patient_id=patient_id)

    def agent_enabled(self, patient_id: str) -> bool:
        """Gate checked by the conversational-AI consumer before any automated reply."""
        return self.lock_state(patient_id).agent_enabled

    # -- physician actions --

    def resolve_alert(
        self,
        alert_id: str,
        actor: Actor,
        note: Optional[str] = None,
    ) -> AlertResult:
        """Resolve an alert.  Requires a physician; does not touch the lock.

        Raises:
            PermissionError: If the actor is not a physician.
            RecordNotFoundError: If the alert does not exist.
            InvalidTransitionError: If the alert is already resolved.
        """
        require_permission(actor, "resolve_alert")

        with self._store.transaction():
            alert = self._store.get_alert(alert_id)
            if alert.resolved:
                raise InvalidTransitionError(
                    f"Alert '{alert_id}' was already resolved by '{alert.resolved_by}'."
                )
            alert.resolved = True
            alert.resolved_by = actor.actor_id
            alert.resolved_at = self._clock()
            alert.resolution_note = note
            guarded_write(f"resolve alert {alert_id}", self._store.update_alert, alert)

        op_status = self._audit.record_or_degrade(
            actor,
            AuditAction.ALERT_RESOLVED,
            "alert",
            alert.id,
            patient_id=alert.patient_id,
            metadata={"severity": alert.severity.value, "has_note": bool(note)},
        )
        return AlertResult(alert, self.lock_state(alert.patient_id), False, op_status)

    def unlock_agent(self, patient_id: str, actor: Actor) -> tuple[AgentLockState, OperationStatus]:
        """Re-enable automated replies for a patient.

        Alert history and the cached count are left as they are; a further
        CRITICAL alert while the window still holds enough unresolved alerts
        locks again.

        Raises:
            PermissionError: If the actor is not a physician.
        """
        require_permission(actor, "unlock_agent")

        with self._store.transaction():
            state = self.lock_state(patient_id)
            was_locked = state.locked
            state.locked = False
            state.unlocked_by = actor.actor_id
            state.unlocked_at = self._clock()
            guarded_write(f"unlock {patient_id}", self._store.save_lock_state, state)

        op_status = self._audit.record_or_degrade(
            actor,
            AuditAction.AGENT_UNLOCKED,
            "agent_lock",
            patient_id,
            patient_id=patient_id,
            metadata={
                "was_locked": was_locked,
                "unresolved_critical_count": state.unresolved_critical_count,
            },
        )
        logger.info("Automated agent unlocked for patient %s by %s", patient_id, actor.actor_id)
        return state, op_status

    # -- reads --

    def list_alerts(
        self,
        actor: Actor,
        patient_id: Optional[str] = None,
        unresolved_only: bool = False,
    ) -> list[Alert]:
        """Audited alert listing, newest first."""
        alerts = self._store.list_alerts(patient_id, unresolved_only=unresolved_only)
        self._audit.record_or_degrade(
            actor,
            AuditAction.READ,
            "alert",
            patient_id or "*",
            patient_id=patient_id,
            metadata={"count": len(alerts), "unresolved_only": unresolved_only},
        )
        return alerts
