"""
Visit scheduling: lifecycle operations, pregnancy-week schedule
generation, slot finding and the reminder pass.
"""

import logging
import math
from datetime import date, datetime, time, timedelta
from typing import List, Optional
from uuid import UUID

from mamacare.config import Settings
from mamacare.errors import BadRequest, MamaCareError, PartialFailure
from mamacare.runtime import Deadline, check_deadline
from mamacare.schemas import BatchResult, ItemFailure, Visit, VisitStatus, VisitType
from mamacare.services.pregnancy_service import expected_delivery_date

logger = logging.getLogger(__name__)

DEFAULT_OPENING_HOUR = 8
DEFAULT_CLOSING_HOUR = 17
DEFAULT_SLOT_MINUTES = 30
SCHEDULED_VISIT_HOUR = 10
MIN_SCHEDULE_WEEK = 8
OVERDUE_WINDOW_DAYS = 30

# Standard antenatal visit plan: gestational week -> visit notes
VISIT_TEMPLATE = [
    (12, "First trimester checkup and basic tests"),
    (20, "Second trimester checkup with ultrasound scan"),
    (26, "Routine antenatal check"),
    (30, "Third trimester follow-up"),
    (34, "Pre-delivery preparation check"),
    (36, "Late pregnancy follow-up"),
    (38, "Pre-birth final check"),
    (40, "Expected delivery week check"),
]


class VisitScheduler:
    """Creates and moves visits through their lifecycle."""

    def __init__(self, store, clock, notifier=None, settings: Optional[Settings] = None):
        self.store = store
        self.clock = clock
        self.notifier = notifier
        self.settings = settings or Settings()

    def _aware(self, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=self.clock.tz)
        return value

    def _day_bounds(self, day: date):
        start = datetime.combine(day, time(0), tzinfo=self.clock.tz)
        return start, start + timedelta(days=1)

    # Lifecycle

    def schedule(
        self,
        mother_id: UUID,
        facility_id: UUID,
        scheduled_time: datetime,
        visit_type: VisitType = VisitType.ROUTINE,
        notes: str = "",
        deadline: Optional[Deadline] = None,
    ) -> Visit:
        check_deadline(deadline, "schedule_visit")
        self.store.get_mother(mother_id)
        self.store.get_facility(facility_id)

        now = self.clock.now()
        scheduled_time = self._aware(scheduled_time)
        if scheduled_time <= now:
            raise BadRequest("scheduled time must be in the future",
                             {"scheduled_time": scheduled_time.isoformat()})

        visit = Visit(
            mother_id=mother_id,
            facility_id=facility_id,
            scheduled_time=scheduled_time,
            visit_type=VisitType(visit_type),
            notes=notes,
            status=VisitStatus.SCHEDULED,
            created_at=now,
            updated_at=now,
        )
        check_deadline(deadline, "schedule_visit")
        created = self.store.create_visit(visit)
        logger.info("Scheduled visit %s for mother %s at %s", created.id, mother_id, scheduled_time.isoformat())
        return created

    def reschedule(self, visit_id: UUID, new_time: datetime, deadline: Optional[Deadline] = None) -> Visit:
        """Move a scheduled or cancelled visit to ``new_time``; ids are preserved."""
        check_deadline(deadline, "reschedule_visit")
        new_time = self._aware(new_time)

        def apply():
            visit = self.store.get_visit(visit_id)
            if visit.status not in (VisitStatus.SCHEDULED, VisitStatus.CANCELLED):
                raise BadRequest(f"cannot reschedule visit with status {visit.status.value}",
                                 {"visit_id": str(visit_id)})
            now = self.clock.now()
            if new_time <= now:
                raise BadRequest("new scheduled time must be in the future",
                                 {"scheduled_time": new_time.isoformat()})
            visit.scheduled_time = new_time
            visit.transition_to(VisitStatus.SCHEDULED, now)
            return self.store.update_visit(visit)

        visit = self.store.within_transaction(apply)
        logger.info("Rescheduled visit %s to %s", visit_id, new_time.isoformat())
        return visit

    def cancel(self, visit_id: UUID, reason: str = "", deadline: Optional[Deadline] = None) -> Visit:
        check_deadline(deadline, "cancel_visit")

        def apply():
            visit = self.store.get_visit(visit_id)
            if visit.status != VisitStatus.SCHEDULED:
                raise BadRequest(f"cannot cancel visit with status {visit.status.value}",
                                 {"visit_id": str(visit_id)})
            if reason:
                visit.notes = f"{visit.notes}\nCancelled: {reason}".strip()
            visit.transition_to(VisitStatus.CANCELLED, self.clock.now())
            return self.store.update_visit(visit)

        visit = self.store.within_transaction(apply)
        logger.info("Cancelled visit %s", visit_id)
        return visit

    def check_in(self, visit_id: UUID, deadline: Optional[Deadline] = None) -> Visit:
        check_deadline(deadline, "check_in")

        def apply():
            visit = self.store.get_visit(visit_id)
            if visit.status != VisitStatus.SCHEDULED:
                raise BadRequest(f"cannot check in visit with status {visit.status.value}",
                                 {"visit_id": str(visit_id)})
            now = self.clock.now()
            visit.check_in_time = now
            visit.transition_to(VisitStatus.IN_PROGRESS, now)
            return self.store.update_visit(visit)

        return self.store.within_transaction(apply)

    def check_out(self, visit_id: UUID, notes: str = "", deadline: Optional[Deadline] = None) -> Visit:
        """Complete a checked-in visit."""
        check_deadline(deadline, "check_out")

        def apply():
            visit = self.store.get_visit(visit_id)
            if visit.status != VisitStatus.IN_PROGRESS:
                raise BadRequest(
                    f"cannot complete visit with status {visit.status.value}, must be checked in first",
                    {"visit_id": str(visit_id)},
                )
            now = self.clock.now()
            visit.check_out_time = now
            if notes:
                visit.notes = f"{visit.notes}\n{notes}".strip()
            visit.transition_to(VisitStatus.COMPLETED, now)
            return self.store.update_visit(visit)

        return self.store.within_transaction(apply)

    complete = check_out

    def mark_no_shows(self, window_days: int = 7, deadline: Optional[Deadline] = None) -> BatchResult:
        """Mark scheduled visits from the last ``window_days`` days (before today) as no-shows."""
        check_deadline(deadline, "mark_no_shows")
        today_start, _ = self._day_bounds(self.clock.now().date())
        missed = self.store.list_visits(
            status=VisitStatus.SCHEDULED,
            start=today_start - timedelta(days=window_days),
            end=today_start,
        )

        result = BatchResult()
        now = self.clock.now()
        for visit in missed:
            check_deadline(deadline, "mark_no_shows")
            try:
                visit.transition_to(VisitStatus.NO_SHOW, now)
                self.store.update_visit(visit)
                result.succeeded.append(str(visit.id))
            except MamaCareError as e:
                logger.error("Failed to mark visit %s as no-show: %s", visit.id, e)
                result.failed.append(ItemFailure(item_id=str(visit.id), reason=e.message))

        logger.info("Marked %d visits as no-show", len(result.succeeded))
        if result.failed:
            raise PartialFailure(f"{len(result.failed)} visits could not be marked as no-show", result)
        return result

    def schedule_follow_up(self, visit_id: UUID, scheduled_time: datetime, notes: str = "",
                           deadline: Optional[Deadline] = None) -> Visit:
        """Book a follow-up to ``visit_id``, keeping its mother, facility, CHW and clinician."""
        check_deadline(deadline, "schedule_follow_up")
        original = self.store.get_visit(visit_id)

        now = self.clock.now()
        scheduled_time = self._aware(scheduled_time)
        if scheduled_time <= now:
            raise BadRequest("scheduled time must be in the future",
                             {"scheduled_time": scheduled_time.isoformat()})

        on = original.scheduled_time.astimezone(self.clock.tz).date().isoformat()
        visit = Visit(
            mother_id=original.mother_id,
            facility_id=original.facility_id,
            chw_id=original.chw_id,
            clinician_id=original.clinician_id,
            scheduled_time=scheduled_time,
            visit_type=VisitType.FOLLOW_UP,
            notes=f"Follow-up to visit on {on}. {notes}".strip(),
            status=VisitStatus.SCHEDULED,
            created_at=now,
            updated_at=now,
        )
        check_deadline(deadline, "schedule_follow_up")
        created = self.store.create_visit(visit)
        logger.info("Scheduled follow-up visit %s to visit %s at %s", created.id, visit_id,
                    scheduled_time.isoformat())
        return created

    def update_notes(self, visit_id: UUID, notes: str, deadline: Optional[Deadline] = None) -> Visit:
        check_deadline(deadline, "update_visit_notes")

        def apply():
            visit = self.store.get_visit(visit_id)
            visit.notes = notes
            visit.updated_at = self.clock.now()
            return self.store.update_visit(visit)

        visit = self.store.within_transaction(apply)
        logger.info("Updated notes for visit %s", visit_id)
        return visit

    # Queries

    def get_visit(self, visit_id: UUID, deadline: Optional[Deadline] = None) -> Visit:
        check_deadline(deadline, "get_visit")
        return self.store.get_visit(visit_id)

    def overdue_visits(self, limit: int = 50, offset: int = 0, window_days: int = OVERDUE_WINDOW_DAYS,
                       deadline: Optional[Deadline] = None) -> List[Visit]:
        """Scheduled visits whose time passed within the last ``window_days`` days, oldest first."""
        check_deadline(deadline, "overdue_visits")
        now = self.clock.now()
        return self.store.list_visits(
            status=VisitStatus.SCHEDULED,
            start=now - timedelta(days=window_days),
            end=now,
            limit=limit,
            offset=offset,
        )

    def completed_visits(
        self,
        start: datetime,
        end: datetime,
        facility_id: Optional[UUID] = None,
        limit: int = 50,
        offset: int = 0,
        deadline: Optional[Deadline] = None,
    ) -> List[Visit]:
        """Completed visits scheduled in ``[start, end)``, most recent first."""
        check_deadline(deadline, "completed_visits")
        return self.store.list_visits(
            facility_id=facility_id,
            status=VisitStatus.COMPLETED,
            start=self._aware(start),
            end=self._aware(end),
            descending=True,
            limit=limit,
            offset=offset,
        )

    def upcoming(self, mother_id: UUID, limit: int = 10, deadline: Optional[Deadline] = None) -> List[Visit]:
        check_deadline(deadline, "upcoming_visits")
        return self.store.list_visits(
            mother_id=mother_id, status=VisitStatus.SCHEDULED, start=self.clock.now(), limit=limit
        )

    def history(self, mother_id: UUID, limit: int = 20, offset: int = 0,
                deadline: Optional[Deadline] = None) -> List[Visit]:
        check_deadline(deadline, "visit_history")
        return self.store.list_visits(
            mother_id=mother_id, end=self.clock.now(), descending=True, limit=limit, offset=offset
        )

    def visits_by_date(self, day: date, facility_id: Optional[UUID] = None,
                       status: Optional[VisitStatus] = None, deadline: Optional[Deadline] = None) -> List[Visit]:
        check_deadline(deadline, "visits_by_date")
        start, end = self._day_bounds(day)
        return self.store.list_visits(facility_id=facility_id, status=status, start=start, end=end)

    def visits_by_facility(
        self,
        facility_id: UUID,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        status: Optional[VisitStatus] = None,
        limit: int = 100,
        offset: int = 0,
        deadline: Optional[Deadline] = None,
    ) -> List[Visit]:
        check_deadline(deadline, "visits_by_facility")
        return self.store.list_visits(
            facility_id=facility_id,
            status=status,
            start=self._aware(start) if start else None,
            end=self._aware(end) if end else None,
            limit=limit,
            offset=offset,
        )

    def find_available_slots(
        self,
        facility_id: UUID,
        day: date,
        duration_minutes: int = DEFAULT_SLOT_MINUTES,
        deadline: Optional[Deadline] = None,
    ) -> List[datetime]:
        """Free appointment start times on ``day`` within the facility's hours."""
        now = self.clock.now()
        if day < now.date():
            raise BadRequest("cannot find slots for past dates", {"date": day.isoformat()})
        if duration_minutes <= 0:
            duration_minutes = DEFAULT_SLOT_MINUTES

        check_deadline(deadline, "find_available_slots")
        facility = self.store.get_facility(facility_id)
        opening = facility.opening_hour if facility.opening_hour is not None else DEFAULT_OPENING_HOUR
        closing = facility.closing_hour if facility.closing_hour is not None else DEFAULT_CLOSING_HOUR

        day_start, day_end = self._day_bounds(day)
        start = day_start + timedelta(hours=opening)
        end = day_start + timedelta(hours=closing)
        step = timedelta(minutes=duration_minutes)
        if day == now.date():
            # At least an hour of notice, rounded up onto the slot grid
            earliest = now + timedelta(hours=1)
            if earliest > start:
                start += math.ceil((earliest - start) / step) * step

        check_deadline(deadline, "find_available_slots")
        existing = self.store.list_visits(facility_id=facility_id, start=day_start, end=day_end)
        busy = {v.scheduled_time for v in existing if v.status != VisitStatus.CANCELLED}

        slots = []
        slot = start
        while slot < end:
            if slot not in busy:
                slots.append(slot)
            slot += step
        return slots

    # Automatic schedule

    def generate_automatic(self, mother_id: UUID, facility_id: UUID,
                           deadline: Optional[Deadline] = None) -> List[Visit]:
        """Create the standard antenatal visits that are still ahead of the mother."""
        check_deadline(deadline, "generate_visits")
        mother = self.store.get_mother(mother_id)
        if mother.lmp is None:
            raise BadRequest("mother does not have a recorded LMP (Last Menstrual Period)",
                             {"mother_id": str(mother_id)})
        self.store.get_facility(facility_id)

        now = self.clock.now()
        today = now.date()
        lmp = mother.lmp
        if expected_delivery_date(lmp) < today:
            raise BadRequest("expected delivery date has passed", {"mother_id": str(mother_id)})

        current_week = (today - lmp).days // 7
        if current_week < MIN_SCHEDULE_WEEK:
            raise BadRequest("too early in pregnancy to generate standard visit schedule",
                             {"current_week": current_week})

        check_deadline(deadline, "generate_visits")
        existing = self.store.list_visits(mother_id=mother_id)
        booked_weeks = {
            (v.scheduled_time.astimezone(self.clock.tz).date() - lmp).days // 7
            for v in existing
            if v.status != VisitStatus.CANCELLED
        }

        planned = []
        for week, notes in VISIT_TEMPLATE:
            if week < current_week or week in booked_weeks:
                continue
            target = datetime.combine(lmp + timedelta(weeks=week), time(SCHEDULED_VISIT_HOUR),
                                      tzinfo=self.clock.tz)
            if target <= now:
                continue
            planned.append(Visit(
                mother_id=mother_id,
                facility_id=facility_id,
                scheduled_time=target,
                visit_type=VisitType.ROUTINE,
                notes=notes,
                status=VisitStatus.SCHEDULED,
                created_at=now,
                updated_at=now,
            ))

        check_deadline(deadline, "generate_visits")
        created = self.store.within_transaction(lambda: [self.store.create_visit(v) for v in planned])
        logger.info("Generated %d visits for mother %s (week %d)", len(created), mother_id, current_week)
        return created

    # Reminders

    def process_reminders(
        self,
        batch_size: Optional[int] = None,
        window_hours: Optional[int] = None,
        deadline: Optional[Deadline] = None,
    ) -> BatchResult:
        """
        Send reminders for scheduled visits in the look-ahead window.

        Raises ``PartialFailure`` carrying the per-visit results when any
        reminder could not be sent.
        """
        batch_size = batch_size or self.settings.reminder_batch_size
        window_hours = window_hours or self.settings.reminder_window_hours

        check_deadline(deadline, "process_reminders")
        now = self.clock.now()
        visits = self.store.list_visits(
            status=VisitStatus.SCHEDULED,
            start=now,
            end=now + timedelta(hours=window_hours),
            limit=batch_size,
        )

        result = BatchResult()
        for visit in visits:
            check_deadline(deadline, "process_reminders")
            hours = (visit.scheduled_time - now).total_seconds() / 3600
            days_until = math.floor(hours / 24)
            try:
                self.notifier.send_visit_reminder(visit, visit.mother_id, days_until)
                result.succeeded.append(str(visit.id))
            except MamaCareError as e:
                logger.error("Failed to send visit reminder for visit %s (mother %s, %d days): %s",
                             visit.id, visit.mother_id, days_until, e)
                result.failed.append(ItemFailure(item_id=str(visit.id), reason=e.message))

        logger.info("Processed visit reminders: %d sent, %d failed", len(result.succeeded), len(result.failed))
        if result.failed:
            raise PartialFailure(f"encountered {len(result.failed)} errors while sending reminders", result)
        return result
