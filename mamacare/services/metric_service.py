"""
Health-metric analysis: single-reading abnormality checks, history
trends and multi-channel trend classification with alert levels.
"""

import logging
from datetime import datetime
from typing import List, Optional, Sequence, Tuple
from uuid import UUID

import numpy as np

from mamacare.errors import BadRequest
from mamacare.runtime import Deadline, check_deadline
from mamacare.schemas import (
    ALERT_ORDER, AlertLevel, HealthMetric, MetricAnalysis, TrendAnalysis,
    TrendResult, TrendType,
)

logger = logging.getLogger(__name__)

MIN_DATA_POINTS = 3

# Findings that drive the overall severity of an analysis
URGENT_FINDINGS = {"severe hypertension", "severely reduced", "severe anemia", "bradycardia"}
CONCERNING_FINDINGS = {"hypertension", "reduced", "anemia", "tachycardia"}
CONCERNING_TRENDS = {"consistently rising", "decreasing", "declining"}


def classify_trend(values: Sequence[float], dates: Sequence[datetime]) -> Tuple[TrendType, float, float]:
    """
    Classify a time series as stable, fluctuating, increasing or decreasing.

    Returns the trend type, the percentage change between the first and last
    values, and the absolute change per day.
    """
    if len(values) < MIN_DATA_POINTS:
        return TrendType.INSUFFICIENT, 0.0, 0.0

    first, last = values[0], values[-1]
    total_days = (dates[-1] - dates[0]).total_seconds() / 86400
    total_days = max(1.0, total_days)

    change = last - first
    change_per_day = change / total_days
    percent_change = change / first * 100 if first != 0 else 0.0

    series = np.asarray(values, dtype=float)
    mean = float(series.mean())
    std = float(series.std())
    cv = std / mean if mean != 0 else 0.0

    if abs(percent_change) < 10 and cv < 0.1:
        trend = TrendType.STABLE
    elif cv > 0.2:
        trend = TrendType.FLUCTUATING
    elif percent_change > 0:
        trend = TrendType.INCREASING
    else:
        trend = TrendType.DECREASING
    return trend, percent_change, change_per_day


def max_alert(levels) -> AlertLevel:
    highest = AlertLevel.NONE
    for level in levels:
        if ALERT_ORDER.index(level) > ALERT_ORDER.index(highest):
            highest = level
    return highest


def _blood_pressure_rules(label: str, high: float, approaching: float, low: float):
    """Escalation rules shared by the systolic and diastolic channels."""

    def rules(trend: TrendType, last: float, percent_change: float, change_per_day: float):
        if trend == TrendType.INCREASING:
            if last >= high:
                return (AlertLevel.URGENT,
                        f"{label} blood pressure increasing and has reached hypertensive levels",
                        "Seek immediate medical attention for hypertension")
            if last >= approaching:
                return (AlertLevel.CONCERN,
                        f"{label} blood pressure increasing and approaching hypertensive levels",
                        "Consult healthcare provider about rising blood pressure")
            if percent_change > 5:
                return (AlertLevel.MONITOR,
                        f"{label} blood pressure showing significant upward trend",
                        "Monitor blood pressure closely and report continued increases")
            return (AlertLevel.NONE,
                    f"Mild increase in {label.lower()} blood pressure, still within normal range", None)

        if trend == TrendType.DECREASING:
            if last < low:
                return (AlertLevel.CONCERN,
                        f"{label} blood pressure decreasing and has reached hypotensive levels",
                        "Consult healthcare provider about low blood pressure")
            return (AlertLevel.NONE,
                    f"Decreasing {label.lower()} blood pressure, trending toward normal range", None)

        if trend == TrendType.STABLE:
            # Flat series never alert; out-of-range levels keep their advice
            if last >= high:
                return (AlertLevel.NONE, f"Stable but high {label.lower()} blood pressure",
                        "Follow up with healthcare provider about hypertension")
            if last < low:
                return (AlertLevel.NONE, f"Stable but low {label.lower()} blood pressure",
                        "Monitor for symptoms of hypotension")
        elif last >= high:
            return (AlertLevel.CONCERN, f"Fluctuating and high {label.lower()} blood pressure",
                    "Follow up with healthcare provider about hypertension")
        elif last < low:
            return (AlertLevel.MONITOR, f"Fluctuating and low {label.lower()} blood pressure",
                    "Monitor for symptoms of hypotension")
        return (AlertLevel.NONE, f"{label} blood pressure within normal range", None)

    return rules


def _weight_rules(trend: TrendType, last: float, percent_change: float, change_per_day: float):
    if trend == TrendType.DECREASING:
        return (AlertLevel.CONCERN, "Weight decreasing during pregnancy",
                "Consult healthcare provider about weight loss during pregnancy")
    if trend == TrendType.INCREASING:
        if change_per_day > 0.2:
            return (AlertLevel.CONCERN, "Rapid weight gain",
                    "Consult healthcare provider about rapid weight gain")
        if change_per_day > 0.1:
            return (AlertLevel.MONITOR, "Accelerated weight gain",
                    "Monitor weight gain and discuss with healthcare provider at next visit")
        return AlertLevel.NONE, "Steady weight gain", None
    if trend == TrendType.STABLE:
        return (AlertLevel.NONE, "Weight stable (minimal change)",
                "Discuss weight progression with healthcare provider")
    return (AlertLevel.MONITOR, "Weight fluctuating between readings",
            "Discuss weight progression with healthcare provider")


def _fetal_heart_rate_rules(trend: TrendType, last: float, percent_change: float, change_per_day: float):
    change = abs(percent_change)
    if trend == TrendType.DECREASING:
        if last < 110:
            return (AlertLevel.URGENT, "Fetal heart rate decreasing and below normal range",
                    "Seek immediate medical attention")
        if last < 120 and change > 5:
            return (AlertLevel.CONCERN,
                    "Fetal heart rate decreasing and approaching lower limit of normal range",
                    "Consult healthcare provider promptly")
        if change > 10:
            return (AlertLevel.MONITOR,
                    "Significant decrease in fetal heart rate, still within normal range",
                    "Monitor fetal movement and heart rate closely")
        return AlertLevel.NONE, "Mild decrease in fetal heart rate, within normal variation", None

    if trend == TrendType.INCREASING:
        if last > 160:
            return (AlertLevel.CONCERN, "Fetal heart rate increasing and above normal range",
                    "Consult healthcare provider promptly")
        if last > 150 and percent_change > 5:
            return (AlertLevel.MONITOR,
                    "Fetal heart rate increasing and approaching upper limit of normal range",
                    "Monitor fetal heart rate closely")
        return AlertLevel.NONE, "Mild increase in fetal heart rate, within normal variation", None

    if last < 110 or last > 160:
        if trend == TrendType.STABLE:
            return (AlertLevel.NONE, "Fetal heart rate stable but outside normal range",
                    "Consult healthcare provider promptly")
        return (AlertLevel.CONCERN, "Fetal heart rate fluctuating and outside normal range",
                "Consult healthcare provider promptly")
    return AlertLevel.NONE, "Fetal heart rate within normal range", None


def _systolic(metric: HealthMetric) -> Optional[float]:
    bp = metric.vital_signs.blood_pressure
    return bp.systolic if bp else None


def _diastolic(metric: HealthMetric) -> Optional[float]:
    bp = metric.vital_signs.blood_pressure
    return bp.diastolic if bp else None


# (metric name, value extractor, escalation rules)
TREND_CHANNELS = [
    ("systolic_blood_pressure", _systolic, _blood_pressure_rules("Systolic", 140, 130, 90)),
    ("diastolic_blood_pressure", _diastolic, _blood_pressure_rules("Diastolic", 90, 85, 60)),
    ("weight", lambda m: m.vital_signs.weight, _weight_rules),
    ("fetal_heart_rate", lambda m: m.vital_signs.fetal_heart_rate, _fetal_heart_rate_rules),
]


class MetricAnalyzer:
    """Analyses vital-sign readings against fixed clinical thresholds."""

    def __init__(self, clock):
        self.clock = clock

    # Single-reading analysis

    def analyze(self, metric: HealthMetric, gestational_age_weeks: int = 0) -> MetricAnalysis:
        """Check each recorded vital of ``metric`` against its reference range."""
        analysis = MetricAnalysis(
            metric_id=metric.id,
            mother_id=metric.mother_id,
            analysis_date=self.clock.now(),
        )
        self._check_blood_pressure(metric, analysis)
        self._check_fetal_heart_rate(metric, analysis)
        self._check_fetal_movement(metric, analysis, gestational_age_weeks)
        self._check_blood_sugar(metric, analysis)
        self._check_hemoglobin(metric, analysis)
        self._check_weight(metric, analysis)

        analysis.severity = self.severity(analysis)
        return analysis

    def _flag(self, analysis: MetricAnalysis, name: str, finding: str, action: str):
        analysis.abnormalities[name] = finding
        analysis.recommended_actions.append(action)

    def _check_blood_pressure(self, metric, analysis):
        bp = metric.vital_signs.blood_pressure
        if bp is None:
            return
        if bp.systolic >= 140 or bp.diastolic >= 90:
            if bp.systolic >= 160 or bp.diastolic >= 110:
                self._flag(analysis, "blood_pressure", "severe hypertension",
                           "Seek immediate medical attention for severe high blood pressure")
            else:
                self._flag(analysis, "blood_pressure", "hypertension",
                           "Schedule follow-up appointment to monitor blood pressure")
        if bp.systolic < 90 or bp.diastolic < 60:
            self._flag(analysis, "blood_pressure_low", "hypotension",
                       "Monitor for dizziness and ensure adequate hydration")

    def _check_fetal_heart_rate(self, metric, analysis):
        rate = metric.vital_signs.fetal_heart_rate
        if rate is None:
            return
        if rate < 110:
            self._flag(analysis, "fetal_heart_rate", "bradycardia",
                       "Seek immediate medical attention for low fetal heart rate")
        elif rate > 160:
            self._flag(analysis, "fetal_heart_rate", "tachycardia",
                       "Seek medical attention for high fetal heart rate")

    def _check_fetal_movement(self, metric, analysis, gestational_age_weeks):
        movement = metric.vital_signs.fetal_movement
        # Movement counts are only meaningful from week 24
        if movement is None or gestational_age_weeks < 24:
            return
        if movement < 3:
            self._flag(analysis, "fetal_movement", "severely reduced",
                       "Seek immediate medical attention for severely reduced fetal movement")
        elif movement < 10:
            self._flag(analysis, "fetal_movement", "reduced",
                       "Continue monitoring fetal movement; seek medical attention if consistently decreased")

    def _check_blood_sugar(self, metric, analysis):
        sugar = metric.vital_signs.blood_sugar
        if sugar is None:
            return
        if sugar > 180:
            self._flag(analysis, "blood_sugar", "severely elevated",
                       "Seek medical attention for very high blood sugar")
        elif sugar > 95:
            self._flag(analysis, "blood_sugar", "elevated",
                       "Follow up with healthcare provider to discuss blood sugar management")

    def _check_hemoglobin(self, metric, analysis):
        hemoglobin = metric.vital_signs.hemoglobin
        if hemoglobin is None:
            return
        if hemoglobin < 7:
            self._flag(analysis, "hemoglobin", "severe anemia", "Seek medical attention for severe anemia")
        elif hemoglobin < 11:
            self._flag(analysis, "hemoglobin", "anemia", "Discuss iron supplementation with healthcare provider")

    def _check_weight(self, metric, analysis):
        weight = metric.vital_signs.weight
        if weight is not None and weight < 45:
            self._flag(analysis, "weight", "underweight",
                       "Discuss nutrition and weight gain with healthcare provider")

    @staticmethod
    def severity(analysis: MetricAnalysis) -> str:
        findings = set(analysis.abnormalities.values())
        if findings & URGENT_FINDINGS:
            return "urgent"
        if findings & CONCERNING_FINDINGS:
            return "concerning"
        if set(analysis.trends.values()) & CONCERNING_TRENDS:
            return "monitor"
        return "normal"

    # History analysis

    def analyze_history(self, metrics: Sequence[HealthMetric], gestational_age_weeks: int = 0) -> MetricAnalysis:
        """Analyse the latest reading, then flag monotone trends across the history."""
        if not metrics:
            raise BadRequest("metric history required for trend analysis")

        ordered = sorted(metrics, key=lambda m: m.recorded_at)
        analysis = self.analyze(ordered[-1], gestational_age_weeks)

        readings = [m.vital_signs.blood_pressure for m in ordered if m.vital_signs.blood_pressure]
        if len(readings) >= MIN_DATA_POINTS and all(
            later.systolic > earlier.systolic and later.diastolic > earlier.diastolic
            for earlier, later in zip(readings, readings[1:])
        ):
            analysis.trends["blood_pressure"] = "consistently rising"
            analysis.recommended_actions.append("Monitor increasing blood pressure trend closely")

        weights = [m.vital_signs.weight for m in ordered if m.vital_signs.weight is not None]
        if self._strictly_falling(weights):
            analysis.trends["weight"] = "decreasing"
            analysis.recommended_actions.append("Consult healthcare provider about weight loss during pregnancy")

        rates = [m.vital_signs.fetal_heart_rate for m in ordered if m.vital_signs.fetal_heart_rate is not None]
        if self._strictly_falling(rates):
            analysis.trends["fetal_heart_rate"] = "declining"
            analysis.recommended_actions.append("Consult healthcare provider about decreasing fetal heart rate")

        analysis.severity = self.severity(analysis)
        return analysis

    @staticmethod
    def _strictly_falling(values: List[float]) -> bool:
        if len(values) < MIN_DATA_POINTS:
            return False
        return all(later < earlier for earlier, later in zip(values, values[1:]))

    # Trend analysis

    def analyze_trends(
        self,
        mother_id: UUID,
        metrics: Sequence[HealthMetric],
        deadline: Optional[Deadline] = None,
    ) -> TrendAnalysis:
        """Classify each vital-sign channel and escalate to an alert level."""
        if len(metrics) < MIN_DATA_POINTS:
            raise BadRequest("insufficient data points for trend analysis",
                             {"data_points": len(metrics), "required": MIN_DATA_POINTS})
        check_deadline(deadline, "analyze_trends")

        ordered = sorted(metrics, key=lambda m: m.recorded_at)
        analysis = TrendAnalysis(
            mother_id=mother_id,
            analysis_date=self.clock.now(),
            data_start_date=ordered[0].recorded_at,
            data_end_date=ordered[-1].recorded_at,
            data_points=len(ordered),
        )

        for name, extract, rules in TREND_CHANNELS:
            series = [(m.recorded_at, extract(m)) for m in ordered if extract(m) is not None]
            if len(series) < MIN_DATA_POINTS:
                continue
            dates = [d for d, _ in series]
            values = [v for _, v in series]
            analysis.trends.append(self._channel_result(name, values, dates, rules))

        analysis.highest_alert = max_alert(t.alert_level for t in analysis.trends)
        logger.info("Trend analysis for mother %s: %d channels, highest alert %s",
                    mother_id, len(analysis.trends), analysis.highest_alert.value)
        return analysis

    def _channel_result(self, name, values, dates, rules) -> TrendResult:
        trend, percent_change, change_per_day = classify_trend(values, dates)
        alert, description, action = rules(trend, values[-1], percent_change, change_per_day)
        return TrendResult(
            metric_name=name,
            trend_type=trend,
            alert_level=alert,
            first_value=values[0],
            last_value=values[-1],
            percent_change=percent_change,
            change_per_day=change_per_day,
            description=description,
            recommended_action=action,
        )
