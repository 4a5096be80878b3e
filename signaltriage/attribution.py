"""
Attribution Formatter -- trust state rendered into every displayed value.

Any consumer that shows a ``ClinicalDatum`` value (decision-support context
builder, dashboard) must route it through this module; showing a bare value
would present unverified self-report as confirmed fact.

Canonical renderings::

    [VERIFIED by dr_bander 2026-02-21] Metoprolol: 100mg daily
    [DISPUTED by dr_bander] Allergy: lisinopril
    [PENDING REVIEW - AI extracted 2026-02-22] New symptom: ankle swelling
    [UNVERIFIED - patient reported via SMS 2026-02-20] Metoprolol: 100mg

The ``by`` and date parts of VERIFIED/DISPUTED markers are omitted when
absent.  Values that could not be read render as ``[unreadable]``; the
marker is always present.

Pure functions; nothing here mutates state.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Optional, Sequence

from signaltriage.models import (
    ClinicalDatum,
    ReadResult,
    SourceType,
    VerificationStatus,
    display_value,
)


_SOURCE_LABELS: dict[SourceType, str] = {
    SourceType.PATIENT_SMS: "patient reported via SMS",
    SourceType.PATIENT_VOICE: "patient reported via call",
    SourceType.PATIENT_PORTAL: "patient entered via portal",
    SourceType.CLINICIAN: "clinician entered",
    SourceType.DEVICE: "device reported",
    SourceType.EMR_IMPORT: "imported from EMR",
    SourceType.AI_EXTRACTED: "AI extracted",
    SourceType.SYSTEM: "system generated",
}

_MARKER_RE = re.compile(r"^\[(VERIFIED|DISPUTED|PENDING REVIEW|UNVERIFIED)[\] ]")

_MARKER_STATUS = {
    "VERIFIED": VerificationStatus.VERIFIED,
    "DISPUTED": VerificationStatus.DISPUTED,
    "PENDING REVIEW": VerificationStatus.PENDING_REVIEW,
    "UNVERIFIED": VerificationStatus.UNVERIFIED,
}


def source_type_label(source_type: SourceType) -> str:
    return _SOURCE_LABELS.get(source_type, "unknown source")


def _day(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).date().isoformat() if ts.tzinfo else ts.date().isoformat()


def format_attribution(
    label: str,
    value: ReadResult | str,
    status: VerificationStatus,
    source_type: SourceType,
    recorded_at: Optional[datetime] = None,
    verified_by: Optional[str] = None,
    verified_at: Optional[datetime] = None,
) -> str:
    """Render one datum with its trust marker.

    ``recorded_at`` defaults to today (UTC) when missing.
    """
    shown = display_value(value)
    date = _day(recorded_at or datetime.now(timezone.utc))

    if status == VerificationStatus.VERIFIED:
        by = f" by {verified_by}" if verified_by else ""
        at = f" {_day(verified_at)}" if verified_at else ""
        return f"[VERIFIED{by}{at}] {label}: {shown}"
    if status == VerificationStatus.DISPUTED:
        by = f" by {verified_by}" if verified_by else ""
        return f"[DISPUTED{by}] {label}: {shown}"
    if status == VerificationStatus.PENDING_REVIEW:
        return f"[PENDING REVIEW - {source_type_label(source_type)} {date}] {label}: {shown}"
    return f"[UNVERIFIED - {source_type_label(source_type)} {date}] {label}: {shown}"


def format_datum(datum: ClinicalDatum, value: ReadResult | str | None = None) -> str:
    """Render a stored datum.

    Args:
        value: Overrides ``datum.value`` (e.g. a ``ReadResult`` handed back
            by the encrypted store).
    """
    shown = datum.value if value is None else value
    if datum.unit and isinstance(shown, str):
        shown = f"{shown} {datum.unit}"
    return format_attribution(
        label=datum.label,
        value=shown,
        status=datum.verification_status,
        source_type=datum.source_type,
        recorded_at=datum.recorded_at,
        verified_by=datum.verified_by,
        verified_at=datum.verified_at,
    )


def parse_status_marker(line: str) -> VerificationStatus:
    """Recover the verification status from a rendered attribution string.

    Raises:
        ValueError: If the line does not start with a trust marker.
    """
    match = _MARKER_RE.match(line)
    if match is None:
        raise ValueError("Line does not start with a verification marker")
    return _MARKER_STATUS[match.group(1)]


def format_medications_for_context(medications: Sequence[ClinicalDatum]) -> str:
    """Medication section for the decision-support context window."""
    if not medications:
        return "No active medications on record."
    lines = [format_datum(med) for med in medications]
    return "=== CURRENT MEDICATIONS ===\n" + "\n".join(lines)


def format_vitals_for_context(vitals: Sequence[ClinicalDatum]) -> str:
    """Vitals section for the decision-support context window."""
    if not vitals:
        return "No recent vitals on record."
    lines = []
    for vital in vitals:
        label = vital.label.replace("_", " ")
        lines.append(format_datum(vital.model_copy(update={"label": label})))
    return "=== RECENT VITALS ===\n" + "\n".join(lines)
