"""
Tests for visit scheduling, schedule generation and reminders.
"""

from datetime import datetime, time, timedelta

import pytest

from conftest import NOW, make_mother, make_visit
from mamacare.errors import BadRequest, Cancelled, NotFound, PartialFailure
from mamacare.runtime import Deadline
from mamacare.schemas import VisitStatus, VisitType
from mamacare.services.scheduler_service import VisitScheduler


@pytest.fixture
def scheduler(store, clock, notifier, settings):
    return VisitScheduler(store, clock, notifier, settings)


@pytest.fixture
def scheduled(scheduler, mother, facility):
    return scheduler.schedule(mother.id, facility.id, NOW + timedelta(days=3), VisitType.ROUTINE, "ANC check")


class TestLifecycle:
    """Test schedule, cancel, reschedule, check-in and check-out."""

    def test_schedule(self, scheduled, store):
        assert scheduled.status == VisitStatus.SCHEDULED
        assert scheduled.created_at == NOW
        assert store.visits[scheduled.id].notes == "ANC check"

    def test_schedule_in_the_past_rejected(self, scheduler, mother, facility):
        with pytest.raises(BadRequest, match="must be in the future"):
            scheduler.schedule(mother.id, facility.id, NOW - timedelta(hours=1))

    def test_schedule_naive_time_uses_local_zone(self, scheduler, mother, facility, clock):
        visit = scheduler.schedule(mother.id, facility.id, datetime(2024, 3, 20, 10, 0))
        assert visit.scheduled_time.tzinfo == clock.tz

    def test_schedule_unknown_mother(self, scheduler, facility):
        with pytest.raises(NotFound):
            scheduler.schedule(make_mother().id, facility.id, NOW + timedelta(days=1))

    def test_cancel_then_reschedule(self, scheduler, scheduled):
        cancelled = scheduler.cancel(scheduled.id, "mother travelling")
        assert cancelled.status == VisitStatus.CANCELLED
        assert "Cancelled: mother travelling" in cancelled.notes

        new_time = NOW + timedelta(days=10)
        moved = scheduler.reschedule(scheduled.id, new_time)
        assert moved.status == VisitStatus.SCHEDULED
        assert moved.scheduled_time == new_time
        assert (moved.id, moved.mother_id, moved.facility_id) == (
            scheduled.id, scheduled.mother_id, scheduled.facility_id)

    def test_reschedule_to_past_rolls_back(self, scheduler, scheduled, store):
        with pytest.raises(BadRequest):
            scheduler.reschedule(scheduled.id, NOW - timedelta(days=1))
        assert store.visits[scheduled.id].scheduled_time == scheduled.scheduled_time

    def test_check_in_and_out(self, scheduler, scheduled, clock):
        started = scheduler.check_in(scheduled.id)
        assert started.status == VisitStatus.IN_PROGRESS
        assert started.check_in_time == NOW

        clock.advance(minutes=40)
        done = scheduler.check_out(scheduled.id, "BP normal")
        assert done.status == VisitStatus.COMPLETED
        assert done.check_out_time == NOW + timedelta(minutes=40)
        assert done.notes.endswith("BP normal")

    def test_check_out_requires_check_in(self, scheduler, scheduled):
        with pytest.raises(BadRequest, match="must be checked in first"):
            scheduler.check_out(scheduled.id)

    def test_completed_visit_cannot_be_rescheduled(self, scheduler, scheduled):
        scheduler.check_in(scheduled.id)
        scheduler.complete(scheduled.id)
        with pytest.raises(BadRequest):
            scheduler.reschedule(scheduled.id, NOW + timedelta(days=5))
        with pytest.raises(BadRequest):
            scheduler.cancel(scheduled.id)

    def test_expired_deadline(self, scheduler, mother, facility, clock):
        deadline = Deadline.after(clock, 0)
        with pytest.raises(Cancelled):
            scheduler.schedule(mother.id, facility.id, NOW + timedelta(days=1), deadline=deadline)


class TestTransitions:
    """Test the visit status machine."""

    @pytest.mark.parametrize("start,target", [
        (VisitStatus.COMPLETED, VisitStatus.SCHEDULED),
        (VisitStatus.COMPLETED, VisitStatus.CANCELLED),
        (VisitStatus.NO_SHOW, VisitStatus.SCHEDULED),
        (VisitStatus.IN_PROGRESS, VisitStatus.CANCELLED),
        (VisitStatus.CANCELLED, VisitStatus.COMPLETED),
    ])
    def test_disallowed_moves(self, mother, facility, start, target):
        visit = make_visit(mother.id, facility.id, NOW, status=start)
        with pytest.raises(BadRequest, match="cannot move visit"):
            visit.transition_to(target, NOW)
        assert visit.status == start


class TestNoShows:
    """Test marking missed visits."""

    def test_marks_last_week_only(self, scheduler, store, mother, facility):
        missed = store.create_visit(make_visit(mother.id, facility.id, NOW - timedelta(days=2)))
        old = store.create_visit(make_visit(mother.id, facility.id, NOW - timedelta(days=10)))
        today = store.create_visit(make_visit(mother.id, facility.id, NOW - timedelta(hours=1)))

        result = scheduler.mark_no_shows()

        assert result.succeeded == [str(missed.id)]
        assert store.visits[missed.id].status == VisitStatus.NO_SHOW
        assert store.visits[old.id].status == VisitStatus.SCHEDULED
        assert store.visits[today.id].status == VisitStatus.SCHEDULED

    def test_failures_reported(self, scheduler, store, mother, facility):
        first = store.create_visit(make_visit(mother.id, facility.id, NOW - timedelta(days=2)))
        second = store.create_visit(make_visit(mother.id, facility.id, NOW - timedelta(days=3)))
        store.failing_visit_updates.add(second.id)

        with pytest.raises(PartialFailure) as exc:
            scheduler.mark_no_shows()
        assert exc.value.result.succeeded == [str(first.id)]
        assert exc.value.failed == [str(second.id)]


class TestQueries:
    """Test visit listings and slot finding."""

    def test_upcoming_and_history(self, scheduler, store, mother, facility):
        past = store.create_visit(make_visit(mother.id, facility.id, NOW - timedelta(days=5),
                                             status=VisitStatus.COMPLETED))
        soon = store.create_visit(make_visit(mother.id, facility.id, NOW + timedelta(days=1)))
        later = store.create_visit(make_visit(mother.id, facility.id, NOW + timedelta(days=8)))

        assert [v.id for v in scheduler.upcoming(mother.id)] == [soon.id, later.id]
        assert [v.id for v in scheduler.history(mother.id)] == [past.id]

    def test_visits_by_date(self, scheduler, store, mother, facility):
        day = (NOW + timedelta(days=1)).date()
        on_day = store.create_visit(make_visit(mother.id, facility.id, datetime.combine(day, time(9), NOW.tzinfo)))
        store.create_visit(make_visit(mother.id, facility.id, datetime.combine(day, time(0), NOW.tzinfo)
                                      + timedelta(days=1)))
        assert [v.id for v in scheduler.visits_by_date(day, facility.id)] == [on_day.id]

    def test_slots_skip_booked_times(self, scheduler, store, mother, facility):
        day = (NOW + timedelta(days=3)).date()
        booked = datetime.combine(day, time(9, 0), NOW.tzinfo)
        store.create_visit(make_visit(mother.id, facility.id, booked))
        store.create_visit(make_visit(mother.id, facility.id, booked + timedelta(minutes=30),
                                      status=VisitStatus.CANCELLED))

        slots = scheduler.find_available_slots(facility.id, day)

        assert len(slots) == 17
        assert slots[0] == datetime.combine(day, time(8, 0), NOW.tzinfo)
        assert booked not in slots
        assert booked + timedelta(minutes=30) in slots
        assert slots[-1] == datetime.combine(day, time(16, 30), NOW.tzinfo)

    def test_slots_today_start_next_hour(self, scheduler, facility):
        slots = scheduler.find_available_slots(facility.id, NOW.date(), 60)
        assert slots[0] == NOW.replace(hour=10, minute=0)
        assert len(slots) == 7

    def test_slots_today_give_an_hour_of_notice(self, scheduler, facility, clock):
        clock.advance(hours=1, minutes=45)
        slots = scheduler.find_available_slots(facility.id, NOW.date(), 30)
        assert slots[0] == NOW.replace(hour=12, minute=0)
        assert len(slots) == 10

    def test_slots_for_past_day_rejected(self, scheduler, facility):
        with pytest.raises(BadRequest):
            scheduler.find_available_slots(facility.id, NOW.date() - timedelta(days=1))


class TestFollowUpsAndNotes:
    """Test follow-up booking, notes and the overdue and completed listings."""

    def test_follow_up_copies_assignments(self, scheduler, store, mother, facility, chw):
        original = store.create_visit(make_visit(mother.id, facility.id, NOW - timedelta(days=2),
                                                 status=VisitStatus.COMPLETED, chw_id=chw.id))

        follow_up = scheduler.schedule_follow_up(original.id, NOW + timedelta(days=14), "Recheck BP")

        assert follow_up.id != original.id
        assert follow_up.visit_type == VisitType.FOLLOW_UP
        assert follow_up.chw_id == chw.id
        assert follow_up.status == VisitStatus.SCHEDULED
        assert follow_up.notes == "Follow-up to visit on 2024-03-13. Recheck BP"
        assert follow_up.id in store.visits

    def test_follow_up_in_the_past_rejected(self, scheduler, scheduled):
        with pytest.raises(BadRequest, match="must be in the future"):
            scheduler.schedule_follow_up(scheduled.id, NOW - timedelta(hours=1))

    def test_follow_up_to_unknown_visit(self, scheduler, mother, facility):
        with pytest.raises(NotFound):
            scheduler.schedule_follow_up(make_visit(mother.id, facility.id, NOW).id, NOW + timedelta(days=1))

    def test_update_notes(self, scheduler, scheduled, store, clock):
        clock.advance(minutes=5)
        updated = scheduler.update_notes(scheduled.id, "Bring ANC card")
        assert updated.notes == "Bring ANC card"
        assert store.visits[scheduled.id].updated_at == NOW + timedelta(minutes=5)

    def test_overdue_visits(self, scheduler, store, mother, facility):
        overdue = store.create_visit(make_visit(mother.id, facility.id, NOW - timedelta(days=3)))
        store.create_visit(make_visit(mother.id, facility.id, NOW - timedelta(days=40)))
        store.create_visit(make_visit(mother.id, facility.id, NOW - timedelta(days=1),
                                      status=VisitStatus.COMPLETED))
        store.create_visit(make_visit(mother.id, facility.id, NOW + timedelta(days=1)))

        assert [v.id for v in scheduler.overdue_visits()] == [overdue.id]

    def test_completed_visits_newest_first(self, scheduler, store, mother, facility):
        older = store.create_visit(make_visit(mother.id, facility.id, NOW - timedelta(days=6),
                                              status=VisitStatus.COMPLETED))
        newer = store.create_visit(make_visit(mother.id, facility.id, NOW - timedelta(days=2),
                                              status=VisitStatus.COMPLETED))
        store.create_visit(make_visit(mother.id, facility.id, NOW - timedelta(days=4),
                                      status=VisitStatus.CANCELLED))

        visits = scheduler.completed_visits(NOW - timedelta(days=7), NOW, facility_id=facility.id)
        assert [v.id for v in visits] == [newer.id, older.id]


class TestAutomaticSchedule:
    """Test generate_automatic."""

    def test_skips_booked_week(self, scheduler, store, facility):
        lmp = NOW.date() - timedelta(days=70)
        mother = store.add_mother(make_mother(lmp=lmp))
        week_12 = datetime.combine(lmp + timedelta(weeks=12), time(10), NOW.tzinfo)
        store.create_visit(make_visit(mother.id, facility.id, week_12))

        created = scheduler.generate_automatic(mother.id, facility.id)

        weeks = [(v.scheduled_time.date() - lmp).days // 7 for v in created]
        assert weeks == [20, 26, 30, 34, 36, 38, 40]
        assert all(v.scheduled_time.time() == time(10) for v in created)
        assert len(store.visits) == 8

    def test_cancelled_week_is_rebooked(self, scheduler, store, facility):
        lmp = NOW.date() - timedelta(days=70)
        mother = store.add_mother(make_mother(lmp=lmp))
        week_12 = datetime.combine(lmp + timedelta(weeks=12), time(10), NOW.tzinfo)
        store.create_visit(make_visit(mother.id, facility.id, week_12, status=VisitStatus.CANCELLED))

        created = scheduler.generate_automatic(mother.id, facility.id)
        assert len(created) == 8

    def test_too_early(self, scheduler, store, facility):
        mother = store.add_mother(make_mother(lmp=NOW.date() - timedelta(days=30)))
        with pytest.raises(BadRequest, match="too early"):
            scheduler.generate_automatic(mother.id, facility.id)

    def test_missing_lmp(self, scheduler, store, facility):
        mother = store.add_mother(make_mother(lmp=None))
        with pytest.raises(BadRequest, match="LMP"):
            scheduler.generate_automatic(mother.id, facility.id)

    def test_delivery_date_passed(self, scheduler, store, facility):
        mother = store.add_mother(make_mother(lmp=NOW.date() - timedelta(days=300)))
        with pytest.raises(BadRequest, match="expected delivery date has passed"):
            scheduler.generate_automatic(mother.id, facility.id)


class TestReminders:
    """Test the reminder pass."""

    def test_partial_failure_reports_each_visit(self, scheduler, store, notifier, mother, facility):
        visits = [store.create_visit(make_visit(mother.id, facility.id, NOW + timedelta(days=d)))
                  for d in (1, 2, 5)]
        notifier.failing.add(visits[2].id)

        with pytest.raises(PartialFailure) as exc:
            scheduler.process_reminders(window_hours=168)

        assert exc.value.succeeded == 2
        assert exc.value.failed == [str(visits[2].id)]
        assert [days for _, _, days in notifier.sent] == [1, 2]

    def test_default_window_is_three_days(self, scheduler, store, notifier, mother, facility):
        store.create_visit(make_visit(mother.id, facility.id, NOW + timedelta(hours=20)))
        store.create_visit(make_visit(mother.id, facility.id, NOW + timedelta(days=4)))

        result = scheduler.process_reminders()

        assert len(result.succeeded) == 1
        assert notifier.sent[0][2] == 0

    def test_only_scheduled_visits(self, scheduler, store, notifier, mother, facility):
        store.create_visit(make_visit(mother.id, facility.id, NOW + timedelta(days=1),
                                      status=VisitStatus.CANCELLED))
        assert scheduler.process_reminders().total == 0
