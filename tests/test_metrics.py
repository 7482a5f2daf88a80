"""
Tests for health-metric analysis.
"""

from datetime import timedelta
from uuid import uuid4

import pytest

from conftest import NOW, make_metric
from mamacare.errors import BadRequest
from mamacare.schemas import AlertLevel, TrendType
from mamacare.services.metric_service import MetricAnalyzer, classify_trend, max_alert


@pytest.fixture
def analyzer(clock):
    return MetricAnalyzer(clock)


def days(n):
    return NOW - timedelta(days=30) + timedelta(days=n)


def series(mother_id, channel_values, step_days=7, **fixed):
    """One metric per value, ``step_days`` apart."""
    return [make_metric(mother_id, days(i * step_days), **{**fixed, **v}) for i, v in enumerate(channel_values)]


class TestSingleReading:
    """Test MetricAnalyzer.analyze."""

    def test_normal_reading(self, analyzer):
        metric = make_metric(uuid4(), NOW, systolic=115, diastolic=75, fetal_heart_rate=140, hemoglobin=12.5)
        analysis = analyzer.analyze(metric, 30)
        assert analysis.abnormalities == {}
        assert analysis.severity == "normal"

    def test_severe_hypertension_is_urgent(self, analyzer):
        analysis = analyzer.analyze(make_metric(uuid4(), NOW, systolic=165, diastolic=100))
        assert analysis.abnormalities["blood_pressure"] == "severe hypertension"
        assert analysis.severity == "urgent"

    def test_hypertension_is_concerning(self, analyzer):
        analysis = analyzer.analyze(make_metric(uuid4(), NOW, systolic=142, diastolic=85))
        assert analysis.abnormalities["blood_pressure"] == "hypertension"
        assert analysis.severity == "concerning"

    def test_hypotension(self, analyzer):
        analysis = analyzer.analyze(make_metric(uuid4(), NOW, systolic=85, diastolic=55))
        assert analysis.abnormalities["blood_pressure_low"] == "hypotension"
        assert "blood_pressure" not in analysis.abnormalities
        assert analysis.severity == "normal"

    def test_high_systolic_with_low_diastolic_keeps_both_findings(self, analyzer):
        analysis = analyzer.analyze(make_metric(uuid4(), NOW, systolic=170, diastolic=55), 30)
        assert analysis.abnormalities == {"blood_pressure": "severe hypertension",
                                          "blood_pressure_low": "hypotension"}
        assert analysis.severity == "urgent"

    def test_fetal_bradycardia(self, analyzer):
        analysis = analyzer.analyze(make_metric(uuid4(), NOW, fetal_heart_rate=100))
        assert analysis.abnormalities["fetal_heart_rate"] == "bradycardia"
        assert analysis.severity == "urgent"

    def test_fetal_movement_ignored_before_week_24(self, analyzer):
        metric = make_metric(uuid4(), NOW, fetal_movement=1)
        assert "fetal_movement" not in analyzer.analyze(metric, 20).abnormalities
        assert analyzer.analyze(metric, 28).abnormalities["fetal_movement"] == "severely reduced"

    def test_blood_sugar_and_hemoglobin(self, analyzer):
        analysis = analyzer.analyze(make_metric(uuid4(), NOW, blood_sugar=120, hemoglobin=9.5))
        assert analysis.abnormalities["blood_sugar"] == "elevated"
        assert analysis.abnormalities["hemoglobin"] == "anemia"
        assert len(analysis.recommended_actions) == 2

    def test_underweight(self, analyzer):
        analysis = analyzer.analyze(make_metric(uuid4(), NOW, weight=42))
        assert analysis.abnormalities["weight"] == "underweight"


class TestHistory:
    """Test MetricAnalyzer.analyze_history."""

    def test_empty_history_rejected(self, analyzer):
        with pytest.raises(BadRequest):
            analyzer.analyze_history([])

    def test_consistently_rising_blood_pressure(self, analyzer):
        mother_id = uuid4()
        metrics = series(mother_id, [
            {"systolic": 110, "diastolic": 70},
            {"systolic": 118, "diastolic": 75},
            {"systolic": 125, "diastolic": 80},
        ])
        analysis = analyzer.analyze_history(list(reversed(metrics)))
        assert analysis.trends["blood_pressure"] == "consistently rising"
        assert analysis.severity == "monitor"

    def test_falling_weight_raises_severity(self, analyzer):
        metrics = series(uuid4(), [{"weight": 66}, {"weight": 64}, {"weight": 62}])
        analysis = analyzer.analyze_history(metrics)
        assert analysis.trends["weight"] == "decreasing"
        assert analysis.severity == "monitor"

    def test_two_readings_are_not_a_trend(self, analyzer):
        metrics = series(uuid4(), [{"fetal_heart_rate": 150}, {"fetal_heart_rate": 140}])
        assert analyzer.analyze_history(metrics).trends == {}


class TestClassifyTrend:
    """Test the trend classifier."""

    def test_too_few_values(self):
        assert classify_trend([1, 2], [days(0), days(1)])[0] == TrendType.INSUFFICIENT

    def test_constant_series_is_stable(self):
        trend, percent, per_day = classify_trend([70, 70, 70], [days(0), days(7), days(14)])
        assert trend == TrendType.STABLE
        assert percent == 0
        assert per_day == 0

    def test_high_variation_is_fluctuating(self):
        trend, _, _ = classify_trend([100, 40, 100, 40], [days(0), days(1), days(2), days(3)])
        assert trend == TrendType.FLUCTUATING

    def test_fluctuating_takes_precedence_over_drift(self):
        # cv above 0.2 even though the series ends far above where it started
        trend, percent, _ = classify_trend([50, 150, 60, 160], [days(0), days(1), days(2), days(3)])
        assert percent > 0
        assert trend == TrendType.FLUCTUATING

    def test_short_span_uses_one_day(self):
        _, _, per_day = classify_trend([60, 61, 62], [NOW, NOW + timedelta(hours=1), NOW + timedelta(hours=2)])
        assert per_day == pytest.approx(2.0)

    def test_max_alert(self):
        assert max_alert([AlertLevel.MONITOR, AlertLevel.URGENT, AlertLevel.NONE]) == AlertLevel.URGENT
        assert max_alert([]) == AlertLevel.NONE


class TestTrendAnalysis:
    """Test MetricAnalyzer.analyze_trends."""

    def test_rising_systolic_is_urgent(self, analyzer):
        mother_id = uuid4()
        metrics = series(mother_id, [{"systolic": s} for s in (120, 130, 140, 150)], diastolic=80)
        analysis = analyzer.analyze_trends(mother_id, metrics)

        systolic = next(t for t in analysis.trends if t.metric_name == "systolic_blood_pressure")
        assert systolic.first_value == 120
        assert systolic.last_value == 150
        assert systolic.percent_change == pytest.approx(25.0)
        assert systolic.trend_type == TrendType.INCREASING
        assert systolic.alert_level == AlertLevel.URGENT
        assert analysis.highest_alert == AlertLevel.URGENT
        assert analysis.data_points == 4
        assert analysis.data_start_date == metrics[0].recorded_at

    def test_needs_three_metrics(self, analyzer):
        mother_id = uuid4()
        with pytest.raises(BadRequest, match="insufficient data points"):
            analyzer.analyze_trends(mother_id, series(mother_id, [{"weight": 60}, {"weight": 61}]))

    def test_channels_without_enough_readings_are_skipped(self, analyzer):
        mother_id = uuid4()
        metrics = series(mother_id, [{"weight": 60}, {"weight": 61}, {"fetal_heart_rate": 140}])
        assert analyzer.analyze_trends(mother_id, metrics).trends == []

    def test_stable_weight_has_no_alert(self, analyzer):
        mother_id = uuid4()
        metrics = series(mother_id, [{"weight": 64}, {"weight": 64}, {"weight": 64}])
        weight = analyzer.analyze_trends(mother_id, metrics).trends[0]
        assert weight.trend_type == TrendType.STABLE
        assert weight.percent_change == 0
        assert weight.alert_level == AlertLevel.NONE

    def test_constant_high_systolic_has_no_alert(self, analyzer):
        mother_id = uuid4()
        metrics = series(mother_id, [{"systolic": 150}] * 3, diastolic=80)
        systolic = analyzer.analyze_trends(mother_id, metrics).trends[0]
        assert systolic.trend_type == TrendType.STABLE
        assert systolic.percent_change == 0
        assert systolic.alert_level == AlertLevel.NONE
        assert systolic.recommended_action == "Follow up with healthcare provider about hypertension"

    def test_fluctuating_high_systolic_is_concern(self, analyzer):
        mother_id = uuid4()
        metrics = series(mother_id, [{"systolic": s} for s in (150, 90, 160, 100, 155)], diastolic=80)
        systolic = analyzer.analyze_trends(mother_id, metrics).trends[0]
        assert systolic.trend_type == TrendType.FLUCTUATING
        assert systolic.alert_level == AlertLevel.CONCERN

    def test_constant_fetal_tachycardia_has_no_alert(self, analyzer):
        mother_id = uuid4()
        metrics = series(mother_id, [{"fetal_heart_rate": 170}] * 3)
        rate = analyzer.analyze_trends(mother_id, metrics).trends[0]
        assert rate.trend_type == TrendType.STABLE
        assert rate.alert_level == AlertLevel.NONE

    def test_rapid_weight_gain(self, analyzer):
        mother_id = uuid4()
        metrics = series(mother_id, [{"weight": 60}, {"weight": 64}, {"weight": 68}])
        weight = analyzer.analyze_trends(mother_id, metrics).trends[0]
        assert weight.trend_type == TrendType.INCREASING
        assert weight.change_per_day == pytest.approx(8 / 14)
        assert weight.alert_level == AlertLevel.CONCERN

    def test_falling_fetal_heart_rate_below_range(self, analyzer):
        mother_id = uuid4()
        metrics = series(mother_id, [{"fetal_heart_rate": r} for r in (135, 120, 105)])
        fhr = analyzer.analyze_trends(mother_id, metrics).trends[0]
        assert fhr.trend_type == TrendType.DECREASING
        assert fhr.alert_level == AlertLevel.URGENT

    def test_increasing_implies_last_above_first(self, analyzer):
        mother_id = uuid4()
        metrics = series(mother_id, [{"systolic": s, "diastolic": d} for s, d in ((110, 60), (118, 66), (126, 72))])
        for trend in analyzer.analyze_trends(mother_id, metrics).trends:
            if trend.trend_type == TrendType.INCREASING:
                assert trend.last_value > trend.first_value
