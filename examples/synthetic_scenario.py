"""
Synthetic Scenario: Inbound Message Triage Walkthrough
======================================================

This script runs the SignalTriage engine end to end on entirely synthetic
data.  No real patient data, PHI, or PII is used.

The scenario simulates a cardiology practice whose patients text a care
line between visits.

Steps demonstrated:
  1. Load engine configuration and keyword set versions from YAML
  2. Record trusted-origin and self-reported data
  3. Triage a routine medication message
  4. Triage an emergency message (CRITICAL alert before any reply)
  5. Repeated emergencies trip the auto-lock
  6. Physician verifies a datum and unlocks the agent
  7. Render attributed context and export the audit log

DISCLAIMER: This is a synthetic demonstration.  This software is not a
medical device, does not diagnose or treat any condition, and all outputs
require review by licensed physicians.

Usage:
    python -m examples.synthetic_scenario
    # or: python examples/synthetic_scenario.py
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Ensure the project root is on the path
sys.path.insert(0, str(Path(__file__).parent.parent))

from signaltriage.attribution import format_medications_for_context, format_vitals_for_context
from signaltriage.audit import AuditLogger
from signaltriage.config import EngineConfig, KeywordSetRegistry, load_config_from_yaml
from signaltriage.endpoints import VerificationEndpoint
from signaltriage.models import (
    Actor,
    Decrypted,
    InboundEvent,
    ResourceType,
    Role,
    SourceType,
    VitalType,
)
from signaltriage.store import InMemoryStore
from signaltriage.triage import TriagePipeline


def _banner(text: str) -> None:
    print(f"\n{'=' * 60}")
    print(f"  {text}")
    print(f"{'=' * 60}\n")


class _Clock:
    """Synthetic clock so the lock window can be walked deterministically."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, minutes: int) -> None:
        self.now += timedelta(minutes=minutes)


def _reply(patient_id: str, text: str) -> str:
    return "(Synthetic reply) Thanks for the update. Your care team will follow up."


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    _banner("SignalTriage Synthetic Scenario: Care-Line Triage")
    print("DISCLAIMER: All data in this demo is entirely synthetic.")
    print("This software is not a medical device.\n")

    # ------------------------------------------------------------------
    # Step 1: Load configuration
    # ------------------------------------------------------------------
    _banner("Step 1: Load Engine Configuration")

    sample_yaml = Path(__file__).parent / "engine_config.yaml"
    if sample_yaml.exists():
        config, older_sets = load_config_from_yaml(sample_yaml)
        print(f"Loaded config from {sample_yaml.name}")
    else:
        config, older_sets = EngineConfig(), []
        print("Using built-in defaults")

    registry = KeywordSetRegistry(config.keyword_set)
    for keyword_set in older_sets:
        registry.register(keyword_set)
    print(f"Active keyword set: {config.keyword_set.version}")
    print(f"Registered versions: {registry.list_versions()}")

    store = InMemoryStore()
    audit = AuditLogger()
    clock = _Clock(datetime(2026, 2, 20, 9, 0, tzinfo=timezone.utc))
    pipeline = TriagePipeline(store, audit, config, clock=clock, sleep=lambda _: None)
    endpoint = VerificationEndpoint(pipeline.verification, audit)

    patient_id = "patient_synthetic_001"
    physician = Actor(actor_id="dr_synthetic", role=Role.PHYSICIAN)
    store.assign_patient(patient_id, physician.actor_id)

    # ------------------------------------------------------------------
    # Step 2: Trusted-origin and self-reported data
    # ------------------------------------------------------------------
    _banner("Step 2: Record Clinical Data")

    clinician = Actor(actor_id="dr_synthetic", role=Role.PHYSICIAN)
    pipeline.record_medication(
        patient_id, "Metoprolol", "100mg daily", SourceType.CLINICIAN, actor=clinician
    )
    added = pipeline.record_medication(
        patient_id, "Diltiazem", "120mg daily", SourceType.EMR_IMPORT, actor=clinician
    )
    for result in added.alerts:
        print(f"  Interaction alert: {result.alert.severity.value} {result.alert.message}")
    vital = pipeline.record_vital(
        patient_id, VitalType.HEART_RATE, "128", "bpm", SourceType.DEVICE
    )
    print(f"Device heart rate recorded: {vital}")
    for result in vital.alerts:
        print(f"  Threshold alert: {result.alert.severity.value} {result.alert.category}")

    # ------------------------------------------------------------------
    # Step 3: Routine medication message
    # ------------------------------------------------------------------
    _banner("Step 3: Routine Medication Message")

    outcome = pipeline.process(
        InboundEvent(
            dedupe_key="sms-0001",
            patient_id=patient_id,
            body=Decrypted(value="Took my Metformin 1000mg this morning, doctor started it last month"),
            received_at=clock(),
        ),
        reply_generator=_reply,
    )
    print(f"Escalated: {outcome.escalated}")
    print(f"Confidence: {outcome.confidence_score}")
    print(f"Reply: {outcome.reply}")

    # ------------------------------------------------------------------
    # Step 4: Emergency message
    # ------------------------------------------------------------------
    _banner("Step 4: Emergency Message")

    clock.advance(5)
    outcome = pipeline.process(
        InboundEvent(
            dedupe_key="sms-0002",
            patient_id=patient_id,
            body=Decrypted(value="I have chest pain and my left arm hurts"),
            received_at=clock(),
        ),
        reply_generator=_reply,
    )
    print(f"Escalated: {outcome.escalated}, matched: {outcome.matched_keywords}")
    print(f"Keyword set version: {outcome.keyword_set_version}")
    print(f"Patient instruction: {outcome.patient_instruction}")

    # ------------------------------------------------------------------
    # Step 5: Auto-lock
    # ------------------------------------------------------------------
    _banner("Step 5: Repeated Emergencies Trip the Auto-Lock")

    for n, text in enumerate(["still chest pressure", "I feel faint"], start=3):
        clock.advance(10)
        outcome = pipeline.process(
            InboundEvent(
                dedupe_key=f"sms-000{n}",
                patient_id=patient_id,
                body=Decrypted(value=text),
                received_at=clock(),
            ),
            reply_generator=_reply,
        )
        print(f"sms-000{n}: locked_now={outcome.agent_locked_now} agent_enabled={outcome.agent_enabled}")

    state = pipeline.alerts.lock_state(patient_id)
    print(f"Lock state: locked={state.locked} reason={state.reason!r}")

    # ------------------------------------------------------------------
    # Step 6: Physician review
    # ------------------------------------------------------------------
    _banner("Step 6: Physician Review")

    pending = endpoint.handle_pending_query(physician)
    print(f"Pending items: {pending.total}")
    for item in pending.items:
        print(f"  {item.attribution}")

    if pending.items:
        response = endpoint.handle_verification_request(
            {"resourceType": "medication", "resourceId": pending.items[0].id, "action": "verify"},
            physician,
        )
        print(f"\nVerification response: {response.model_dump(mode='json')}")

    for alert in pipeline.alerts.list_alerts(physician, patient_id, unresolved_only=True):
        pipeline.alerts.resolve_alert(alert.id, physician, note="Called patient; synthetic follow-up")
    state, _ = pipeline.alerts.unlock_agent(patient_id, physician)
    print(f"Agent enabled after unlock: {state.agent_enabled}")

    # ------------------------------------------------------------------
    # Step 7: Context and audit
    # ------------------------------------------------------------------
    _banner("Step 7: Attributed Context and Audit Export")

    print(format_medications_for_context(store.list_data([patient_id], resource_type=ResourceType.MEDICATION)))
    print()
    print(format_vitals_for_context(store.list_data([patient_id], resource_type=ResourceType.VITAL)))

    auditor = Actor(actor_id="auditor_synthetic", role=Role.AUDITOR)
    export = endpoint.export_audit(auditor, patient_id=patient_id)
    print("\nExport metadata:")
    print(json.dumps(export["export_metadata"], indent=2))

    _banner("Scenario Complete")
    print("All data was synthetic. No real patients, PHI, or PII.")
    print("This software is not a medical device.")


if __name__ == "__main__":
    main()
