"""
Composite maternal risk scoring.
"""

import logging
from typing import List, Optional, Sequence, Tuple
from uuid import UUID

from mamacare.errors import BadRequest
from mamacare.runtime import Deadline, check_deadline
from mamacare.schemas import HealthMetric, Mother, RiskAssessment, RiskFactors, RiskLevel

logger = logging.getLogger(__name__)

# A condition matches every key it contains; the longest key wins
CONDITION_WEIGHTS: List[Tuple[str, int]] = [
    ("diabetes", 3),
    ("hypertension", 3),
    ("heart disease", 4),
    ("kidney disease", 3),
    ("thyroid", 2),
    ("autoimmune", 2),
    ("hiv", 3),
    ("hepatitis", 2),
    ("malaria", 2),
    ("anemia", 2),
    ("sickle cell", 3),
]

COMPLICATION_WEIGHTS: List[Tuple[str, int]] = [
    ("preeclampsia", 3),
    ("eclampsia", 4),
    ("gestational diabetes", 3),
    ("preterm birth", 3),
    ("placenta previa", 3),
    ("placental abruption", 4),
    ("postpartum hemorrhage", 3),
    ("stillbirth", 4),
    ("miscarriage", 2),
]

HIGH_RISK_SCORE = 10
MEDIUM_RISK_SCORE = 5


def _match(value: str, table: List[Tuple[str, int]]) -> Optional[Tuple[str, int]]:
    text = value.strip().lower()
    matches = [(key, weight) for key, weight in table if key in text]
    if not matches:
        return None
    return max(matches, key=lambda match: len(match[0]))


def risk_level_for(score: int) -> RiskLevel:
    if score >= HIGH_RISK_SCORE:
        return RiskLevel.HIGH
    if score >= MEDIUM_RISK_SCORE:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


class RiskScorer:
    """Scores age, medical history, obstetric history and latest vitals."""

    def __init__(self, clock, store=None):
        self.clock = clock
        self.store = store

    def calculate(self, mother: Mother, metrics: Sequence[HealthMetric] = ()) -> RiskAssessment:
        if mother is None:
            raise BadRequest("mother data required for risk assessment")

        now = self.clock.now()
        factors = RiskFactors()
        score = 0
        score += self._age_risk(mother, factors, now.date())
        score += self._medical_history_risk(mother, factors)
        score += self._obstetric_risk(mother, factors)
        score += self._current_vitals_risk(metrics, factors)

        return RiskAssessment(
            mother_id=mother.id,
            risk_score=score,
            risk_level=risk_level_for(score),
            risk_factors=factors,
            assessed_at=now,
        )

    def _age_risk(self, mother: Mother, factors: RiskFactors, today) -> int:
        age = mother.age_on(today)
        if age is None:
            return 0
        if age < 18:
            factors.age_related.append("teenage pregnancy")
            return 2
        if age > 35:
            factors.age_related.append("advanced maternal age")
            return 2
        return 0

    def _medical_history_risk(self, mother: Mother, factors: RiskFactors) -> int:
        score = 0
        for condition in mother.health_conditions:
            matched = _match(condition, CONDITION_WEIGHTS)
            if matched:
                key, weight = matched
                score += weight
                factors.medical_history.append(key)

        if mother.is_rh_negative:
            score += 2
            factors.medical_history.append("rh negative blood type")
        return score

    def _obstetric_risk(self, mother: Mother, factors: RiskFactors) -> int:
        history = mother.pregnancy_history
        score = 0

        if history.previous_caesareans > 0:
            score += history.previous_caesareans
            factors.obstetric_history.append("previous cesarean delivery")

        if history.previous_deliveries >= 5:
            score += 2
            factors.obstetric_history.append("grand multiparity")

        if history.previous_pregnancies == 0:
            score += 1
            factors.obstetric_history.append("first pregnancy")

        for complication in history.previous_complications:
            matched = _match(complication, COMPLICATION_WEIGHTS)
            if matched:
                key, weight = matched
                score += weight
                factors.obstetric_history.append(f"history of {key}")
        return score

    def _current_vitals_risk(self, metrics: Sequence[HealthMetric], factors: RiskFactors) -> int:
        if not metrics:
            return 0
        vitals = max(metrics, key=lambda m: m.recorded_at).vital_signs
        score = 0

        bp = vitals.blood_pressure
        if bp is not None:
            if bp.systolic >= 140 or bp.diastolic >= 90:
                score += 3
                factors.current_vitals.append("elevated blood pressure")
            if bp.systolic < 90 or bp.diastolic < 60:
                score += 2
                factors.current_vitals.append("low blood pressure")

        if vitals.fetal_heart_rate is not None:
            if vitals.fetal_heart_rate < 110 or vitals.fetal_heart_rate > 160:
                score += 3
                factors.current_vitals.append("abnormal fetal heart rate")

        if vitals.hemoglobin is not None:
            if vitals.hemoglobin < 11:
                score += 2
                factors.current_vitals.append("anemia")
            if vitals.hemoglobin < 7:
                score += 3

        if vitals.blood_sugar is not None and vitals.blood_sugar > 95:
            score += 2
            factors.current_vitals.append("elevated blood sugar")
        return score

    def assess_and_cache(self, mother_id: UUID, deadline: Optional[Deadline] = None) -> RiskAssessment:
        """Score a stored mother and write the resulting level back to her record."""
        check_deadline(deadline, "assess_risk")
        mother = self.store.get_mother(mother_id)
        check_deadline(deadline, "assess_risk")
        metrics = self.store.list_metrics(mother_id, limit=10)

        assessment = self.calculate(mother, metrics)
        check_deadline(deadline, "assess_risk")
        self.store.update_mother_risk(mother_id, assessment.risk_level)
        logger.info("Risk for mother %s: score %d (%s)",
                    mother_id, assessment.risk_score, assessment.risk_level.value)
        return assessment
