"""
Durable-store boundary.

The engine does not own persistence; the encrypted relational store does.
``TriageStore`` is the contract the engine needs from it, and
``InMemoryStore`` is the reference implementation used by tests and the
example walkthrough.

The one operation that *must* be atomic is the auto-lock count-and-decide
step: insert an alert, count committed unresolved CRITICAL alerts in the
window, write the lock state.  Callers wrap it in ``store.transaction()``.
``InMemoryStore`` serialises transactions with a re-entrant lock and rolls
every table back if the block raises.
"""

from __future__ import annotations

import copy
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Iterator, Optional, Protocol, TypeVar

from signaltriage.errors import RecordNotFoundError, StorageWriteError, TriageError
from signaltriage.models import (
    AgentLockState,
    Alert,
    AlertSeverity,
    ClinicalDatum,
    ResourceType,
    VerificationStatus,
)


T = TypeVar("T")


def guarded_write(description: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run a store write, converting driver failures into ``StorageWriteError``.

    Engine errors (e.g. ``RecordNotFoundError``) pass through unchanged.
    """
    try:
        return fn(*args, **kwargs)
    except TriageError:
        raise
    except Exception as exc:
        raise StorageWriteError(f"Storage write failed: {description}") from exc


class TriageStore(Protocol):
    """What the engine requires from the durable store."""

    def transaction(self) -> Any: ...

    # clinical data
    def add_datum(self, datum: ClinicalDatum) -> ClinicalDatum: ...
    def get_datum(self, datum_id: str) -> ClinicalDatum: ...
    def update_datum(self, datum: ClinicalDatum) -> ClinicalDatum: ...
    def find_datum_by_source_ref(self, source_ref: str) -> Optional[ClinicalDatum]: ...
    def list_data(
        self,
        patient_ids: Iterable[str],
        statuses: Optional[Iterable[VerificationStatus]] = None,
        resource_type: Optional[ResourceType] = None,
    ) -> list[ClinicalDatum]: ...

    # alerts
    def add_alert(self, alert: Alert) -> Alert: ...
    def get_alert(self, alert_id: str) -> Alert: ...
    def update_alert(self, alert: Alert) -> Alert: ...
    def find_alert_by_dedupe_key(self, dedupe_key: str, category: str) -> Optional[Alert]: ...
    def list_alerts(
        self, patient_id: Optional[str] = None, unresolved_only: bool = False
    ) -> list[Alert]: ...
    def count_alerts(
        self,
        patient_id: str,
        severity: AlertSeverity,
        resolved: Optional[bool] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> int: ...

    # lock state
    def get_lock_state(self, patient_id: str) -> Optional[AgentLockState]: ...
    def save_lock_state(self, state: AgentLockState) -> AgentLockState: ...

    # idempotency
    def claim_processed(
        self, dedupe_key: str, now: Optional[datetime] = None, lease: Optional[timedelta] = None
    ) -> bool: ...
    def release_processed(self, dedupe_key: str) -> None: ...
    def get_processed(self, dedupe_key: str) -> Optional[dict[str, Any]]: ...
    def save_processed(self, dedupe_key: str, outcome: dict[str, Any]) -> None: ...

    # panels
    def patients_for_physician(self, physician_id: str) -> list[str]: ...


class InMemoryStore:
    """Thread-safe in-process ``TriageStore``.

    Returned records are copies; mutating them has no effect until passed
    back through an ``update_*`` call.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._depth = 0
        self._data: dict[str, ClinicalDatum] = {}
        self._alerts: dict[str, Alert] = {}
        self._locks: dict[str, AgentLockState] = {}
        self._processed: dict[str, dict[str, Any]] = {}
        self._panels: dict[str, set[str]] = {}

    # -- transactions --

    def _tables(self) -> tuple:
        return (self._data, self._alerts, self._locks, self._processed, self._panels)

    @contextmanager
    def transaction(self) -> Iterator["InMemoryStore"]:
        """Serialise a block of reads and writes; roll back on exception.

        The outermost block snapshots every table, so each write costs time
        proportional to the whole store.  Fine for tests and walkthroughs;
        a relational store gets atomicity from its own transactions.
        """
        with self._lock:
            snapshot = copy.deepcopy(self._tables()) if self._depth == 0 else None
            self._depth += 1
            try:
                yield self
            except BaseException:
                if snapshot is not None:
                    (self._data, self._alerts, self._locks,
                     self._processed, self._panels) = snapshot
                raise
            finally:
                self._depth -= 1

    # -- clinical data --

    def add_datum(self, datum: ClinicalDatum) -> ClinicalDatum:
        with self.transaction():
            self._data[datum.id] = datum.model_copy(deep=True)
        return datum

    def get_datum(self, datum_id: str) -> ClinicalDatum:
        with self._lock:
            if datum_id not in self._data:
                raise RecordNotFoundError(f"No clinical datum with id '{datum_id}'")
            return self._data[datum_id].model_copy(deep=True)

    def update_datum(self, datum: ClinicalDatum) -> ClinicalDatum:
        with self.transaction():
            if datum.id not in self._data:
                raise RecordNotFoundError(f"No clinical datum with id '{datum.id}'")
            self._data[datum.id] = datum.model_copy(deep=True)
        return datum

    def find_datum_by_source_ref(self, source_ref: str) -> Optional[ClinicalDatum]:
        with self._lock:
            for d in self._data.values():
                if d.source_ref == source_ref:
                    return d.model_copy(deep=True)
        return None

    def list_data(
        self,
        patient_ids: Iterable[str],
        statuses: Optional[Iterable[VerificationStatus]] = None,
        resource_type: Optional[ResourceType] = None,
    ) -> list[ClinicalDatum]:
        wanted_patients = set(patient_ids)
        wanted_statuses = set(statuses) if statuses is not None else None
        with self._lock:
            results = [
                d.model_copy(deep=True)
                for d in self._data.values()
                if d.patient_id in wanted_patients
                and (wanted_statuses is None or d.verification_status in wanted_statuses)
                and (resource_type is None or d.resource_type == resource_type)
            ]
        results.sort(key=lambda d: d.recorded_at, reverse=True)
        return results

    # -- alerts --

    def add_alert(self, alert: Alert) -> Alert:
        with self.transaction():
            self._alerts[alert.id] = alert.model_copy(deep=True)
        return alert

    def get_alert(self, alert_id: str) -> Alert:
        with self._lock:
            if alert_id not in self._alerts:
                raise RecordNotFoundError(f"No alert with id '{alert_id}'")
            return self._alerts[alert_id].model_copy(deep=True)

    def update_alert(self, alert: Alert) -> Alert:
        with self.transaction():
            if alert.id not in self._alerts:
                raise RecordNotFoundError(f"No alert with id '{alert.id}'")
            self._alerts[alert.id] = alert.model_copy(deep=True)
        return alert

    def find_alert_by_dedupe_key(self, dedupe_key: str, category: str) -> Optional[Alert]:
        with self._lock:
            for a in self._alerts.values():
                if a.dedupe_key == dedupe_key and a.category == category:
                    return a.model_copy(deep=True)
        return None

    def list_alerts(
        self, patient_id: Optional[str] = None, unresolved_only: bool = False
    ) -> list[Alert]:
        with self._lock:
            results = [
                a.model_copy(deep=True)
                for a in self._alerts.values()
                if (patient_id is None or a.patient_id == patient_id)
                and (not unresolved_only or not a.resolved)
            ]
        results.sort(key=lambda a: a.created_at, reverse=True)
        return results

    def count_alerts(
        self,
        patient_id: str,
        severity: AlertSeverity,
        resolved: Optional[bool] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> int:
        with self._lock:
            return sum(
                1
                for a in self._alerts.values()
                if a.patient_id == patient_id
                and a.severity == severity
                and (resolved is None or a.resolved == resolved)
                and (since is None or a.created_at >= since)
                and (until is None or a.created_at <= until)
            )

    # -- lock state --

    def get_lock_state(self, patient_id: str) -> Optional[AgentLockState]:
        with self._lock:
            state = self._locks.get(patient_id)
            return state.model_copy(deep=True) if state is not None else None

    def save_lock_state(self, state: AgentLockState) -> AgentLockState:
        with self.transaction():
            self._locks[state.patient_id] = state.model_copy(deep=True)
        return state

    # -- idempotency --

    def claim_processed(
        self, dedupe_key: str, now: Optional[datetime] = None, lease: Optional[timedelta] = None
    ) -> bool:
        """Atomically reserve a dedupe key.  False if already claimed or done.

        An unfinished claim older than ``lease`` is taken over, so a worker
        that died mid-event cannot strand it.  Without ``now`` and ``lease``
        claims never expire.
        """
        with self.transaction():
            current = self._processed.get(dedupe_key)
            if current is not None:
                claimed_at = current.get("claimed_at")
                expired = (
                    current.get("in_progress")
                    and now is not None and lease is not None
                    and claimed_at is not None and claimed_at + lease <= now
                )
                if not expired:
                    return False
            self._processed[dedupe_key] = {"in_progress": True, "claimed_at": now}
            return True

    def release_processed(self, dedupe_key: str) -> None:
        """Drop an unfinished claim so a redelivery can retry."""
        with self.transaction():
            outcome = self._processed.get(dedupe_key)
            if outcome is not None and outcome.get("in_progress"):
                del self._processed[dedupe_key]

    def get_processed(self, dedupe_key: str) -> Optional[dict[str, Any]]:
        with self._lock:
            outcome = self._processed.get(dedupe_key)
            return copy.deepcopy(outcome) if outcome is not None else None

    def save_processed(self, dedupe_key: str, outcome: dict[str, Any]) -> None:
        with self.transaction():
            self._processed[dedupe_key] = copy.deepcopy(outcome)

    # -- panels --

    def assign_patient(self, patient_id: str, physician_id: str) -> None:
        with self.transaction():
            self._panels.setdefault(physician_id, set()).add(patient_id)

    def patients_for_physician(self, physician_id: str) -> list[str]:
        with self._lock:
            return sorted(self._panels.get(physician_id, set()))
