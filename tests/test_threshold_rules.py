"""
Tests for signaltriage.threshold_rules -- vital threshold evaluation.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from signaltriage.config import DEFAULT_CONFIG, EngineConfig
from signaltriage.models import AlertSeverity, VitalType
from signaltriage.threshold_rules import (
    evaluate_medication,
    evaluate_vital,
    evaluate_weight_trend,
    parse_numeric,
)


NOW = datetime(2026, 2, 21, 8, 0, tzinfo=timezone.utc)


class TestParseNumeric:
    def test_plain_and_pair(self):
        assert parse_numeric("72") == 72.0
        assert parse_numeric(" 98.6 ") == 98.6
    def test_blood_pressure_pairs(self):
        assert parse_numeric("150/95", VitalType.BLOOD_PRESSURE_SYSTOLIC) == 150.0
        assert parse_numeric("150 / 95", VitalType.BLOOD_PRESSURE_DIASTOLIC) == 95.0
        assert parse_numeric("150/95", VitalType.HEART_RATE) is None
        assert parse_numeric("150/95") is None

    def test_not_numeric(self):
        assert parse_numeric("high") is None
        assert parse_numeric("") is None

    @pytest.mark.parametrize("raw", ["nan", "inf", "-inf", "1e9", "0x1f", "1" * 400])
    def test_non_finite_and_exotic_forms_rejected(self, raw):
        assert parse_numeric(raw) is None


class TestEvaluateVital:
    @pytest.mark.parametrize("vital,value,severity,category", [
        (VitalType.BLOOD_PRESSURE_SYSTOLIC, 190, AlertSeverity.HIGH, "vital_threshold"),
        (VitalType.BLOOD_PRESSURE_SYSTOLIC, 75, AlertSeverity.HIGH, "vital_threshold"),
        (VitalType.BLOOD_PRESSURE_SYSTOLIC, 170, AlertSeverity.MEDIUM, "vital_abnormal"),
        (VitalType.HEART_RATE, 135, AlertSeverity.HIGH, "vital_threshold"),
        (VitalType.HEART_RATE, 125, AlertSeverity.MEDIUM, "vital_abnormal"),
        (VitalType.OXYGEN_SATURATION, 85, AlertSeverity.HIGH, "vital_threshold"),
        (VitalType.OXYGEN_SATURATION, 90, AlertSeverity.MEDIUM, "vital_abnormal"),
        (VitalType.GLUCOSE, 45, AlertSeverity.HIGH, "vital_threshold"),
        (VitalType.BLOOD_PRESSURE_SYSTOLIC, 155, AlertSeverity.LOW, "vital_deviation"),
        (VitalType.HEART_RATE, 46, AlertSeverity.LOW, "vital_deviation"),
    ])
    def test_bands(self, vital, value, severity, category):
        result = evaluate_vital(vital, value, DEFAULT_CONFIG)
        assert result is not None
        assert result.severity == severity
        assert result.category == category

    @pytest.mark.parametrize("vital,value", [
        (VitalType.BLOOD_PRESSURE_SYSTOLIC, 120),
        (VitalType.HEART_RATE, 72),
        (VitalType.OXYGEN_SATURATION, 97),
        (VitalType.OXYGEN_SATURATION, 100),
        (VitalType.GLUCOSE, 110),
    ])
    def test_unremarkable(self, vital, value):
        assert evaluate_vital(vital, value, DEFAULT_CONFIG) is None

    def test_band_edges_inclusive(self):
        assert evaluate_vital(VitalType.BLOOD_PRESSURE_SYSTOLIC, 180, DEFAULT_CONFIG).severity == AlertSeverity.MEDIUM
        assert evaluate_vital(VitalType.BLOOD_PRESSURE_SYSTOLIC, 160, DEFAULT_CONFIG).severity == AlertSeverity.LOW

    def test_no_rule(self):
        assert evaluate_vital(VitalType.TEMPERATURE, 104, DEFAULT_CONFIG) is None

    def test_zero_margin_disables_low(self):
        config = EngineConfig(routine_deviation_margin=0)
        assert evaluate_vital(VitalType.BLOOD_PRESSURE_SYSTOLIC, 155, config) is None

    def test_message_has_no_value(self):
        result = evaluate_vital(VitalType.HEART_RATE, 137, DEFAULT_CONFIG)
        assert "137" not in result.message
        assert "HEART RATE" in result.message


class TestWeightTrend:
    def test_gain_within_window(self):
        readings = [(NOW - timedelta(hours=20), 180.0), (NOW, 183.5)]
        result = evaluate_weight_trend(readings, DEFAULT_CONFIG, NOW)
        assert result.severity == AlertSeverity.HIGH
        assert result.category == "WEIGHT_GAIN"
        assert "3.5 lbs" in result.message

    def test_gain_below_threshold(self):
        readings = [(NOW - timedelta(hours=20), 180.0), (NOW, 182.0)]
        assert evaluate_weight_trend(readings, DEFAULT_CONFIG, NOW) is None

    def test_old_readings_ignored(self):
        readings = [(NOW - timedelta(hours=30), 175.0), (NOW, 180.0)]
        assert evaluate_weight_trend(readings, DEFAULT_CONFIG, NOW) is None

    def test_single_reading(self):
        assert evaluate_weight_trend([(NOW, 180.0)], DEFAULT_CONFIG, NOW) is None

    def test_order_independent(self):
        readings = [(NOW, 184.0), (NOW - timedelta(hours=2), 180.0)]
        assert evaluate_weight_trend(readings, DEFAULT_CONFIG, NOW) is not None


class TestEvaluateMedication:
    def test_dual_anticoagulation_is_high(self):
        results = evaluate_medication("Eliquis 5mg twice daily", ["Warfarin 5mg nightly"])
        assert [r.severity for r in results] == [AlertSeverity.HIGH]
        assert results[0].category == "med_interaction"
        assert "Physician review required." in results[0].message

    def test_levels_map_to_severities_most_severe_first(self):
        results = evaluate_medication(
            "amiodarone 200mg", ["warfarin", "digoxin", "atorvastatin", "eliquis"]
        )
        assert [r.severity for r in results] == [
            AlertSeverity.MEDIUM, AlertSeverity.MEDIUM, AlertSeverity.LOW,
        ]

    def test_order_of_pair_does_not_matter(self):
        assert evaluate_medication("lisinopril", ["Entresto 49/51mg"])
        assert evaluate_medication("Entresto 49/51mg", ["lisinopril"])

    def test_pair_within_new_text(self):
        assert len(evaluate_medication("metformin and lasix", [])) == 1

    def test_unrelated_current_pair_is_not_reported(self):
        assert evaluate_medication("amlodipine", ["warfarin", "eliquis"]) == []

    def test_word_boundaries(self):
        assert evaluate_medication("warfarinx", ["eliquis"]) == []
