"""
Pregnancy date and growth calculators.
"""

from datetime import date, timedelta
from typing import Optional

from mamacare.errors import BadRequest
from mamacare.schemas import BMIInfo, GrowthEstimate, PregnancyDateInfo

CONCEPTION_OFFSET_DAYS = 14
PREGNANCY_DAYS = 280
FULL_TERM_DAYS = 39 * 7

# (upper BMI bound, category, lower bound of recommended gain in kg)
BMI_CATEGORIES = [
    (18.5, "underweight", 12.5),
    (25.0, "normal", 11.5),
    (30.0, "overweight", 7.0),
    (float("inf"), "obese", 5.0),
]

# Fetal weight gain in grams for each week after week 28
THIRD_TRIMESTER_GAIN = [200, 200, 200, 225, 225, 225, 250, 250, 250, 225, 225, 200, 200, 175]


def expected_delivery_date(lmp: date) -> date:
    return lmp + timedelta(days=PREGNANCY_DAYS)


def trimester_for(weeks: int) -> int:
    if weeks < 13:
        return 1
    if weeks < 27:
        return 2
    return 3


class PregnancyCalculator:
    """Gestational dates, BMI and growth estimates."""

    def __init__(self, clock):
        self.clock = clock

    def gestational_age_days(self, lmp: date, reference: Optional[date] = None) -> int:
        reference = reference or self.clock.now().date()
        if lmp > reference:
            raise BadRequest("last menstrual period cannot be after reference date")
        return (reference - lmp).days

    def pregnancy_dates(self, lmp: date, reference: Optional[date] = None) -> PregnancyDateInfo:
        """All date milestones for a pregnancy, as of ``reference`` (default today)."""
        if lmp is None:
            raise BadRequest("invalid last menstrual period date")

        days = self.gestational_age_days(lmp, reference)
        weeks, remainder = divmod(days, 7)

        weeks_remaining = 40 - weeks
        if remainder > 0:
            weeks_remaining -= 1

        return PregnancyDateInfo(
            lmp=lmp,
            conception_date=lmp + timedelta(days=CONCEPTION_OFFSET_DAYS),
            expected_delivery_date=expected_delivery_date(lmp),
            gestational_age_days=days,
            gestational_age_weeks=weeks,
            gestational_age_remainder_days=remainder,
            trimester=trimester_for(weeks),
            weeks_remaining=weeks_remaining,
            is_pre_term=weeks < 37,
            is_full_term=39 <= weeks <= 40,
            days_until_full_term=max(0, FULL_TERM_DAYS - days),
            percentage_complete=min(100.0, days / PREGNANCY_DAYS * 100.0),
        )

    @staticmethod
    def bmi(height_cm: float, weight_kg: float, is_pregnant: bool = True) -> BMIInfo:
        if height_cm <= 0 or weight_kg <= 0:
            raise BadRequest("height and weight must be positive values")

        height_m = height_cm / 100.0
        value = weight_kg / (height_m * height_m)
        for upper, category, gain in BMI_CATEGORIES:
            if value < upper:
                break

        return BMIInfo(
            height_m=height_m,
            weight_kg=weight_kg,
            bmi=value,
            category=category,
            recommended_gain_kg=gain if is_pregnant else 0.0,
        )

    @staticmethod
    def fundal_height(weeks: int) -> GrowthEstimate:
        """Expected fundal height in cm, valid from week 16 to 40."""
        if weeks < 16 or weeks > 40:
            raise BadRequest("gestational age must be between 16 and 40 weeks")
        expected = float(weeks - 6) if weeks < 20 else float(weeks - 4)
        return GrowthEstimate(expected=expected, minimum=max(0.0, expected - 2.0), maximum=expected + 2.0)

    @staticmethod
    def fetal_weight(weeks: int) -> GrowthEstimate:
        """Expected fetal weight in grams with a +/-15% range, valid from week 10 to 42."""
        if weeks < 10 or weeks > 42:
            raise BadRequest("gestational age must be between 10 and 42 weeks")

        if weeks <= 12:
            expected = float((weeks - 8) * 10)
        elif weeks <= 28:
            expected = 100.0 + (weeks - 12) * 100
        else:
            expected = 1700.0 + sum(THIRD_TRIMESTER_GAIN[:weeks - 28])
        return GrowthEstimate(expected=expected, minimum=expected * 0.85, maximum=expected * 1.15)
