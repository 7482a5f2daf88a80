"""
Visit reports: a detailed report for one visit and visit summaries per
facility, CHW and district over a date range.
"""

import logging
from collections import Counter
from datetime import datetime
from typing import Iterable, Optional
from uuid import UUID

from mamacare.errors import BadRequest, NotFound
from mamacare.runtime import Deadline, check_deadline
from mamacare.schemas import (
    CHWSummary, DistrictSummary, FacilitySummary, User, Visit, VisitReport, VisitStatus,
)
from mamacare.services.pregnancy_service import expected_delivery_date

logger = logging.getLogger(__name__)


def visit_minutes(visit: Visit) -> Optional[float]:
    """Time between check-in and check-out, when both were recorded."""
    if visit.check_in_time is None or visit.check_out_time is None:
        return None
    return (visit.check_out_time - visit.check_in_time).total_seconds() / 60


def average_completed_minutes(visits: Iterable[Visit]) -> float:
    durations = [visit_minutes(v) for v in visits if v.status == VisitStatus.COMPLETED]
    durations = [d for d in durations if d is not None]
    return sum(durations) / len(durations) if durations else 0.0


def completion_rate(completed: int, total: int) -> float:
    return completed / total * 100 if total else 0.0


class VisitReporter:
    """Builds visit reports from the store."""

    def __init__(self, store, clock):
        self.store = store
        self.clock = clock

    def _day(self, visit: Visit) -> str:
        return visit.scheduled_time.astimezone(self.clock.tz).date().isoformat()

    def _optional_user(self, user_id: Optional[UUID]) -> Optional[User]:
        if user_id is None:
            return None
        try:
            return self.store.get_user(user_id)
        except NotFound:
            logger.warning("User %s referenced by a visit no longer exists", user_id)
            return None

    def _range(self, start: datetime, end: datetime):
        if start.tzinfo is None:
            start = start.replace(tzinfo=self.clock.tz)
        if end.tzinfo is None:
            end = end.replace(tzinfo=self.clock.tz)
        if end <= start:
            raise BadRequest("end must be after start", {"start": start.isoformat(), "end": end.isoformat()})
        return start, end

    def visit_report(self, visit_id: UUID, deadline: Optional[Deadline] = None) -> VisitReport:
        check_deadline(deadline, "visit_report")
        visit = self.store.get_visit(visit_id)
        mother = self.store.get_mother(visit.mother_id)
        facility = self.store.get_facility(visit.facility_id)
        now = self.clock.now()

        report = VisitReport(
            visit=visit,
            mother_age=mother.age_on(now.date()),
            facility_name=facility.name,
            facility_type=facility.facility_type,
            visit_duration_minutes=visit_minutes(visit),
            generated_at=now,
        )

        mother_user = self._optional_user(mother.user_id)
        if mother_user is not None:
            report.mother_name = mother_user.name
            report.mother_contact = mother_user.phone_number

        chw = self._optional_user(visit.chw_id)
        if chw is not None:
            report.chw_name = chw.name
            report.chw_contact = chw.phone_number

        clinician = self._optional_user(visit.clinician_id)
        if clinician is not None:
            report.clinician_name = clinician.name
            report.clinician_role = clinician.role

        if mother.lmp is not None:
            report.lmp = mother.lmp
            report.expected_delivery_date = expected_delivery_date(mother.lmp)
            report.gestational_age_weeks = (now.date() - mother.lmp).days // 7

        logger.info("Generated visit report for visit %s (status %s)", visit_id, visit.status.value)
        return report

    def facility_summary(self, facility_id: UUID, start: datetime, end: datetime,
                         deadline: Optional[Deadline] = None) -> FacilitySummary:
        check_deadline(deadline, "facility_summary")
        start, end = self._range(start, end)
        facility = self.store.get_facility(facility_id)
        visits = self.store.list_visits(facility_id=facility_id, start=start, end=end)

        by_status = Counter(v.status.value for v in visits)
        summary = FacilitySummary(
            facility_id=facility_id,
            facility_name=facility.name,
            start=start,
            end=end,
            generated_at=self.clock.now(),
            total_visits=len(visits),
            visits_by_type=dict(Counter(v.visit_type.value for v in visits)),
            visits_by_status=dict(by_status),
            visits_by_day=dict(Counter(self._day(v) for v in visits)),
            average_visit_minutes=average_completed_minutes(visits),
            completion_rate=completion_rate(by_status[VisitStatus.COMPLETED.value], len(visits)),
        )
        logger.info("Generated facility summary for %s: %d visits", facility_id, summary.total_visits)
        return summary

    def chw_summary(self, chw_id: UUID, start: datetime, end: datetime,
                    deadline: Optional[Deadline] = None) -> CHWSummary:
        """Visit counts for a CHW; past visits never checked in count as missed."""
        check_deadline(deadline, "chw_summary")
        start, end = self._range(start, end)
        chw = self.store.get_user(chw_id)
        visits = self.store.list_visits(chw_id=chw_id, start=start, end=end)
        now = self.clock.now()

        completed = sum(1 for v in visits if v.status == VisitStatus.COMPLETED)
        missed = sum(
            1 for v in visits
            if v.status == VisitStatus.NO_SHOW
            or (v.status == VisitStatus.SCHEDULED and v.scheduled_time < now)
        )
        summary = CHWSummary(
            chw_id=chw_id,
            chw_name=chw.name,
            start=start,
            end=end,
            generated_at=now,
            total_visits=len(visits),
            completed_visits=completed,
            cancelled_visits=sum(1 for v in visits if v.status == VisitStatus.CANCELLED),
            missed_visits=missed,
            visits_by_day=dict(Counter(self._day(v) for v in visits)),
            average_visit_minutes=average_completed_minutes(visits),
            completion_rate=completion_rate(completed, len(visits)),
        )
        logger.info("Generated CHW summary for %s: %d visits, %d completed", chw_id, len(visits), completed)
        return summary

    def district_summary(self, district: str, start: datetime, end: datetime,
                         deadline: Optional[Deadline] = None) -> DistrictSummary:
        check_deadline(deadline, "district_summary")
        start, end = self._range(start, end)
        summary = DistrictSummary(
            district=district,
            start=start,
            end=end,
            generated_at=self.clock.now(),
        )

        by_type, by_status = Counter(), Counter()
        mothers = set()
        for facility in self.store.list_facilities(district=district):
            check_deadline(deadline, "district_summary")
            visits = self.store.list_visits(facility_id=facility.id, start=start, end=end)
            key = str(facility.id)
            completed = sum(1 for v in visits if v.status == VisitStatus.COMPLETED)

            summary.facility_names[key] = facility.name
            summary.visits_by_facility[key] = len(visits)
            summary.completion_rates[key] = completion_rate(completed, len(visits))
            summary.total_visits += len(visits)
            by_type.update(v.visit_type.value for v in visits)
            by_status.update(v.status.value for v in visits)
            mothers.update(v.mother_id for v in visits)

        summary.visits_by_type = dict(by_type)
        summary.visits_by_status = dict(by_status)
        summary.total_mothers = len(mothers)
        logger.info("Generated district summary for %s: %d facilities, %d visits",
                    district, len(summary.facility_names), summary.total_visits)
        return summary
