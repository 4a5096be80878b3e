"""
Triage Pipeline -- one inbound event, end to end.

**Ordering for an inbound patient message:**

    1. claim dedupe key        (finished -> recorded outcome, no writes;
                               claimed elsewhere -> steps 2-3 only)
    2. escalation detection    (always; never gated on lock or verification)
    3. CRITICAL alert persisted, with retry   -- BEFORE any reply step
    4. confidence + ClinicalDatum for medication claims, interaction check
    5. agent gate              (locked -> no automated reply)
    6. reply attempt           (failure is logged; alerts stand)
    7. INBOUND_PROCESSED audit record, outcome stored under the dedupe key

If step 3 cannot persist the alert, the claim is released and the error is
raised to the gateway, which redelivers.  Alert creation and datum creation
are idempotent per dedupe key, so a retry never double-counts toward the
auto-lock window.

A message body that could not be read raises a MEDIUM alert instead of
being treated as clear.

Vitals go through ``record_vital``: datum in its source-determined trust
tier, then threshold rules, then the weight-gain trend.  Medications, whether
claimed in a message or recorded through ``record_medication``, are checked
for interactions with the patient's other current medications.

DISCLAIMER: The pipeline classifies and routes.  It does not diagnose and
does not deliver messages; the gateway sends ``patient_instruction`` and
``reply`` itself.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta
from typing import Callable, Optional

from pydantic import BaseModel, Field

from signaltriage.alerts import AlertAggregator, AlertResult, _utcnow
from signaltriage.audit import AuditAction, AuditLogger, OperationStatus
from signaltriage.confidence import estimate_confidence, find_drug_names
from signaltriage.config import DEFAULT_CONFIG, EngineConfig
from signaltriage.errors import MalformedRequestError
from signaltriage.escalation import EMERGENCY_INSTRUCTION, detect_escalation
from signaltriage.models import (
    SYSTEM_ACTOR,
    Actor,
    ClinicalDatum,
    Decrypted,
    InboundEvent,
    ReadResult,
    ResourceType,
    SourceType,
    Unreadable,
    VerificationStatus,
    VitalType,
)
from signaltriage.store import TriageStore
from signaltriage.threshold_rules import (
    evaluate_medication,
    evaluate_vital,
    evaluate_weight_trend,
    parse_numeric,
)
from signaltriage.verification import VerificationStateMachine

logger = logging.getLogger(__name__)

ReplyGenerator = Callable[[str, str], str]
"""``(patient_id, message_text) -> reply_text``; supplied by the conversational service."""


class TriageOutcome(BaseModel):
    """What happened to one inbound event.  Stored under its dedupe key."""

    dedupe_key: str
    patient_id: str
    escalated: bool = False
    matched_keywords: list[str] = Field(default_factory=list)
    keyword_set_version: str = ""
    unreadable: bool = False
    alert_ids: list[str] = Field(default_factory=list)
    agent_locked_now: bool = False
    datum_id: Optional[str] = None
    confidence_score: Optional[int] = None
    agent_enabled: bool = True
    reply: Optional[str] = None
    reply_error: Optional[str] = None
    patient_instruction: Optional[str] = None
    degraded: bool = False
    duplicate: bool = False


class RecordOutcome:
    """Result of ``record_vital`` or ``record_medication``."""

    def __init__(
        self,
        datum: Optional[ClinicalDatum],
        alerts: list[AlertResult],
        degraded: bool,
    ) -> None:
        self.datum = datum
        self.alerts = alerts
        self.degraded = degraded

    def __repr__(self) -> str:
        datum_id = self.datum.id if self.datum else None
        return f"RecordOutcome(datum={datum_id}, alerts={len(self.alerts)}, degraded={self.degraded})"


class TriagePipeline:
    """Wires detector, estimator, state machine and aggregator together."""

    def __init__(
        self,
        store: TriageStore,
        audit: AuditLogger | None = None,
        config: EngineConfig = DEFAULT_CONFIG,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.audit = audit if audit is not None else AuditLogger()
        self.config = config
        self._clock = clock
        self.verification = VerificationStateMachine(store, self.audit, config)
        self.alerts = AlertAggregator(store, self.audit, config, clock=clock, sleep=sleep)

    # -- inbound messages --

    def process(
        self,
        event: InboundEvent,
        reply_generator: Optional[ReplyGenerator] = None,
    ) -> TriageOutcome:
        """Triage one inbound patient message.

        Raises:
            EscalationPersistenceError: If a safety alert could not be
                persisted; nothing is marked processed, so redelivery retries.
            StorageWriteError: If the medication datum could not be persisted.
        """
        lease = timedelta(seconds=self.config.claim_lease_seconds)
        if not self.store.claim_processed(event.dedupe_key, now=self._clock(), lease=lease):
            return self._duplicate(event)

        try:
            outcome = self._process_claimed(event, reply_generator)
        except BaseException:
            self.store.release_processed(event.dedupe_key)
            raise

        self.store.save_processed(event.dedupe_key, outcome.model_dump(mode="json"))
        return outcome

    def _duplicate(self, event: InboundEvent) -> TriageOutcome:
        recorded = self.store.get_processed(event.dedupe_key) or {}
        if recorded and not recorded.get("in_progress"):
            logger.info("Duplicate delivery of event %s ignored", event.dedupe_key)
            outcome = TriageOutcome.model_validate(recorded)
            outcome.duplicate = True
            return outcome

        # Another worker holds the claim and may never finish.  Safety checks
        # are idempotent per dedupe key, so run them here too.
        logger.info("Event %s is claimed by another worker; running safety checks only",
                    event.dedupe_key)
        outcome = TriageOutcome(
            dedupe_key=event.dedupe_key, patient_id=event.patient_id, duplicate=True
        )
        statuses = self._run_safety_checks(event, outcome)
        outcome.agent_enabled = self.alerts.agent_enabled(event.patient_id)
        outcome.degraded = OperationStatus.DEGRADED in statuses
        return outcome

    def _run_safety_checks(
        self, event: InboundEvent, outcome: TriageOutcome
    ) -> list[OperationStatus]:
        """Escalation detection, or an unreadable-input alert.  Fills ``outcome``."""
        trigger = f"{event.channel}://{event.dedupe_key}"
        statuses: list[OperationStatus] = []

        if not isinstance(event.body, Decrypted):
            outcome.unreadable = True
            result = self.alerts.raise_unreadable(
                event.patient_id, trigger, dedupe_key=event.dedupe_key
            )
            outcome.alert_ids.append(result.alert.id)
            statuses.append(result.operation_status)
            return statuses

        signal = detect_escalation(event.body.value, self.config.keyword_set)
        outcome.keyword_set_version = signal.keyword_set_version
        if signal.escalate:
            outcome.escalated = True
            outcome.matched_keywords = signal.matched_keywords
            outcome.patient_instruction = EMERGENCY_INSTRUCTION
            result = self.alerts.raise_escalation(
                event.patient_id, signal, trigger, dedupe_key=event.dedupe_key
            )
            outcome.alert_ids.append(result.alert.id)
            outcome.agent_locked_now = result.newly_locked
            statuses.append(result.operation_status)
        return statuses

    def _process_claimed(
        self,
        event: InboundEvent,
        reply_generator: Optional[ReplyGenerator],
    ) -> TriageOutcome:
        outcome = TriageOutcome(dedupe_key=event.dedupe_key, patient_id=event.patient_id)
        trigger = f"{event.channel}://{event.dedupe_key}"

        # Escalation first, before anything that could fail or stall.
        statuses = self._run_safety_checks(event, outcome)
        text = event.body.value if isinstance(event.body, Decrypted) else None

        # Medication claims become unverified self-report.
        if text is not None:
            score = estimate_confidence(text)
            outcome.confidence_score = score
            if score >= 1:
                datum, claim_statuses, interaction_ids = self._record_claim(
                    event, text, score, trigger
                )
                outcome.datum_id = datum.id
                outcome.alert_ids.extend(interaction_ids)
                statuses.extend(claim_statuses)

        outcome.agent_enabled = self.alerts.agent_enabled(event.patient_id)
        if reply_generator is not None and outcome.agent_enabled and text is not None:
            try:
                outcome.reply = reply_generator(event.patient_id, text)
            except Exception as exc:
                # The reply is best-effort; recorded alerts stand regardless.
                outcome.reply_error = type(exc).__name__
                logger.warning(
                    "Reply generation failed for event %s (%s); escalation state unaffected",
                    event.dedupe_key, outcome.reply_error,
                )

        statuses.append(self.audit.record_or_degrade(
            SYSTEM_ACTOR,
            AuditAction.INBOUND_PROCESSED,
            "conversation",
            event.dedupe_key,
            patient_id=event.patient_id,
            metadata={
                "channel": event.channel,
                "source_type": event.source_type.value,
                "escalated": outcome.escalated,
                "matched_keyword_count": len(outcome.matched_keywords),
                "keyword_set_version": outcome.keyword_set_version,
                "unreadable": outcome.unreadable,
                "agent_enabled": outcome.agent_enabled,
                "reply_attempted": reply_generator is not None and outcome.agent_enabled,
                "reply_failed": outcome.reply_error is not None,
                "message_length": len(text) if text is not None else 0,
            },
        ))
        outcome.degraded = OperationStatus.DEGRADED in statuses
        return outcome

    def _record_claim(
        self, event: InboundEvent, text: str, score: int, trigger: str
    ) -> tuple[ClinicalDatum, list[OperationStatus], list[str]]:
        datum = self.store.find_datum_by_source_ref(trigger)
        statuses: list[OperationStatus] = []
        if datum is None:
            drugs = find_drug_names(text)
            label = ", ".join(d.capitalize() for d in drugs) if drugs else "Medication reference"
            result = self.verification.record_datum(
                patient_id=event.patient_id,
                resource_type=ResourceType.MEDICATION,
                label=label,
                value=text,
                source_type=event.source_type,
                recorded_at=event.received_at,
                source_ref=trigger,
                confidence=score,
            )
            datum = result.datum
            statuses.append(result.operation_status)

        alerts = self._check_interactions(datum, trigger)
        statuses.extend(a.operation_status for a in alerts)
        return datum, statuses, [a.alert.id for a in alerts]

    # -- medications --

    def record_medication(
        self,
        patient_id: str,
        label: str,
        value: str,
        source_type: SourceType,
        recorded_at: Optional[datetime] = None,
        actor: Actor = SYSTEM_ACTOR,
        trigger_source: str = "medications",
    ) -> RecordOutcome:
        """Record a medication and check it against the patient's current ones.

        Raises:
            StorageWriteError: If the datum or an alert could not be persisted.
        """
        recorded = self.verification.record_datum(
            patient_id=patient_id,
            resource_type=ResourceType.MEDICATION,
            label=label,
            value=value,
            source_type=source_type,
            recorded_at=recorded_at,
            actor=actor,
        )
        alerts = self._check_interactions(recorded.datum, trigger_source)
        statuses = [recorded.operation_status, *(a.operation_status for a in alerts)]
        return RecordOutcome(recorded.datum, alerts, OperationStatus.DEGRADED in statuses)

    def _check_interactions(self, datum: ClinicalDatum, trigger_source: str) -> list[AlertResult]:
        # Disputed entries are ones a physician says the patient is not taking.
        current = [
            f"{d.label} {d.value}"
            for d in self.store.list_data([datum.patient_id], resource_type=ResourceType.MEDICATION)
            if d.id != datum.id and d.verification_status != VerificationStatus.DISPUTED
        ]
        alerts = []
        for result in evaluate_medication(f"{datum.label} {datum.value}", current):
            if self._has_open_alert(datum.patient_id, result.category, result.message):
                continue
            alerts.append(self.alerts.raise_threshold_alert(datum.patient_id, result, trigger_source))
        return alerts

    # -- vitals --

    def record_vital(
        self,
        patient_id: str,
        vital_type: VitalType,
        value: ReadResult | str,
        unit: str,
        source_type: SourceType,
        recorded_at: Optional[datetime] = None,
        actor: Actor = SYSTEM_ACTOR,
        trigger_source: str = "vitals",
    ) -> RecordOutcome:
        """Record a vital reading and evaluate threshold rules against it.

        Raises:
            MalformedRequestError: If a readable value is not numeric.
            StorageWriteError: If the datum or an alert could not be persisted.
        """
        if isinstance(value, Unreadable):
            result = self.alerts.raise_unreadable(patient_id, trigger_source, subject="vital")
            return RecordOutcome(None, [result], result.operation_status == OperationStatus.DEGRADED)

        text = value.value if isinstance(value, Decrypted) else value
        numeric = parse_numeric(text, vital_type)
        if numeric is None:
            raise MalformedRequestError(f"{vital_type.value} value is not numeric")

        recorded = self.verification.record_datum(
            patient_id=patient_id,
            resource_type=ResourceType.VITAL,
            label=vital_type.value,
            value=text,
            unit=unit,
            vital_type=vital_type,
            source_type=source_type,
            recorded_at=recorded_at,
            actor=actor,
        )
        statuses = [recorded.operation_status]
        alerts: list[AlertResult] = []

        rule_result = evaluate_vital(vital_type, numeric, self.config)
        if rule_result is not None:
            alerts.append(self.alerts.raise_threshold_alert(patient_id, rule_result, trigger_source))

        if vital_type == VitalType.WEIGHT:
            trend = self._weight_trend(patient_id, recorded.datum.recorded_at)
            if trend is not None and not self._has_open_alert(patient_id, trend.category):
                alerts.append(self.alerts.raise_threshold_alert(patient_id, trend, trigger_source))

        statuses.extend(a.operation_status for a in alerts)
        return RecordOutcome(recorded.datum, alerts, OperationStatus.DEGRADED in statuses)

    def _weight_trend(self, patient_id: str, now: datetime):
        readings = []
        for datum in self.store.list_data([patient_id], resource_type=ResourceType.VITAL):
            if datum.vital_type != VitalType.WEIGHT:
                continue
            pounds = parse_numeric(datum.value, VitalType.WEIGHT)
            if pounds is not None:
                readings.append((datum.recorded_at, pounds))
        return evaluate_weight_trend(readings, self.config, now)

    def _has_open_alert(
        self, patient_id: str, category: str, message: Optional[str] = None
    ) -> bool:
        return any(
            a.category == category and (message is None or a.message == message)
            for a in self.store.list_alerts(patient_id, unresolved_only=True)
        )
