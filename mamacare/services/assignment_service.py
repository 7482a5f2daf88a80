"""
CHW assignment: manual and catchment-based assignment, workload
balancing and daily route planning.
"""

import logging
import math
from datetime import date, datetime, time, timedelta
from typing import Dict, List, Optional, Sequence
from uuid import UUID

from mamacare.config import Settings
from mamacare.errors import BadRequest, NotFound
from mamacare.runtime import Deadline, check_deadline
from mamacare.schemas import (
    BatchResult, CHWProfile, OptimizedRoute, Role, TransportMode, Visit,
    VisitStatus, VisitWithLocation,
)

logger = logging.getLogger(__name__)

ROUTE_START_HOUR = 8
DWELL_MINUTES = 30


class VisitAssigner:
    """Assigns community health workers to visits."""

    def __init__(self, store, route_builder, clock, settings: Optional[Settings] = None):
        self.store = store
        self.route_builder = route_builder
        self.clock = clock
        self.settings = settings or Settings()

    def _day_bounds(self, day: date):
        start = datetime.combine(day, time(0), tzinfo=self.clock.tz)
        return start, start + timedelta(days=1)

    def _capacity(self, profile: CHWProfile) -> int:
        if profile.capacity is None:
            return self.settings.default_chw_capacity
        return profile.capacity

    def assign_chw(self, visit_id: UUID, chw_id: UUID, deadline: Optional[Deadline] = None) -> Visit:
        check_deadline(deadline, "assign_chw")

        def apply():
            visit = self.store.get_visit(visit_id)
            if visit.status in (VisitStatus.COMPLETED, VisitStatus.CANCELLED):
                raise BadRequest(f"cannot assign CHW to a {visit.status.value} visit",
                                 {"visit_id": str(visit_id)})
            user = self.store.get_user(chw_id)
            if user.role != Role.CHW:
                raise BadRequest("user is not a CHW", {"user_id": str(chw_id)})
            visit.chw_id = chw_id
            visit.updated_at = self.clock.now()
            return self.store.update_visit(visit)

        visit = self.store.within_transaction(apply)
        logger.info("Assigned CHW %s to visit %s", chw_id, visit_id)
        return visit

    def unassign_chw(self, visit_id: UUID, deadline: Optional[Deadline] = None) -> Visit:
        check_deadline(deadline, "unassign_chw")

        def apply():
            visit = self.store.get_visit(visit_id)
            if visit.is_terminal:
                raise BadRequest(f"cannot unassign CHW from a {visit.status.value} visit",
                                 {"visit_id": str(visit_id)})
            if visit.chw_id is None:
                raise BadRequest("visit does not have a CHW assigned", {"visit_id": str(visit_id)})
            visit.chw_id = None
            visit.updated_at = self.clock.now()
            return self.store.update_visit(visit)

        visit = self.store.within_transaction(apply)
        logger.info("Unassigned CHW from visit %s", visit_id)
        return visit

    def workload(self, chw_id: UUID, start: datetime, end: datetime,
                 deadline: Optional[Deadline] = None) -> List[Visit]:
        """Visits assigned to the CHW in ``[start, end)``, earliest first."""
        check_deadline(deadline, "chw_workload")
        return self.store.list_visits(chw_id=chw_id, start=start, end=end)

    def assign_by_catchment(self, facility_id: UUID, start: datetime, end: datetime,
                            deadline: Optional[Deadline] = None) -> int:
        """Give each unassigned scheduled visit to the first CHW covering the mother's area."""
        check_deadline(deadline, "assign_by_catchment")
        visits = self.store.list_visits(
            facility_id=facility_id, status=VisitStatus.SCHEDULED, start=start, end=end, unassigned=True
        )
        if not visits:
            return 0

        check_deadline(deadline, "assign_by_catchment")
        chws = self.store.list_chws(facility_id)

        assigned = 0
        now = self.clock.now()
        for visit in visits:
            check_deadline(deadline, "assign_by_catchment")
            try:
                mother = self.store.get_mother(visit.mother_id)
            except NotFound:
                logger.error("Mother %s for visit %s not found", visit.mother_id, visit.id)
                continue
            if not mother.catchment_area:
                continue

            area = mother.catchment_area.strip().lower()
            match = next((c for c in chws if c.catchment_area and c.catchment_area.strip().lower() == area), None)
            if match is None:
                continue

            visit.chw_id = match.user_id
            visit.updated_at = now
            self.store.update_visit(visit)
            assigned += 1

        logger.info("Assigned %d of %d visits by catchment area for facility %s",
                    assigned, len(visits), facility_id)
        return assigned

    def balance(self, facility_id: UUID, day: date, deadline: Optional[Deadline] = None) -> BatchResult:
        """
        Move late visits from CHWs over capacity to the least loaded CHWs.

        The whole plan is computed first and applied in one transaction, so
        a cancelled call leaves every visit untouched.
        """
        check_deadline(deadline, "balance_workload")
        start, end = self._day_bounds(day)
        visits = self.store.list_visits(facility_id=facility_id, status=VisitStatus.SCHEDULED,
                                        start=start, end=end)
        check_deadline(deadline, "balance_workload")
        chws = self.store.list_chws(facility_id)

        capacity = {c.user_id: self._capacity(c) for c in chws}
        load: Dict[UUID, int] = {c.user_id: 0 for c in chws}
        by_chw: Dict[UUID, List[Visit]] = {c.user_id: [] for c in chws}
        for visit in visits:
            if visit.chw_id in load:
                load[visit.chw_id] += 1
                by_chw[visit.chw_id].append(visit)

        overloaded = [c.user_id for c in chws if load[c.user_id] > capacity[c.user_id]]
        underloaded = [c.user_id for c in chws if load[c.user_id] < capacity[c.user_id]]

        result = BatchResult()
        if not overloaded:
            logger.info("No CHWs are overloaded for facility %s on %s", facility_id, day)
            return result

        plan = []
        for over in overloaded:
            late_first = sorted(by_chw[over], key=lambda v: v.scheduled_time, reverse=True)
            excess = load[over] - capacity[over]
            for visit in late_first[:excess]:
                if not underloaded:
                    break
                target = underloaded[0]
                for candidate in underloaded[1:]:
                    if load[candidate] < load[target]:
                        target = candidate

                plan.append((visit, target))
                load[over] -= 1
                load[target] += 1
                if load[target] >= capacity[target]:
                    underloaded.remove(target)

        check_deadline(deadline, "balance_workload")
        now = self.clock.now()

        def apply():
            for visit, target in plan:
                visit.chw_id = target
                visit.updated_at = now
                self.store.update_visit(visit)

        self.store.within_transaction(apply)
        result.succeeded.extend(str(visit.id) for visit, _ in plan)
        logger.info("Balanced CHW workload for facility %s on %s: %d visits reassigned",
                    facility_id, day, len(plan))
        return result

    def _home_for(self, chw_id: UUID, visits: Sequence[Visit]):
        profile = self.store.get_chw_profile(chw_id)
        if profile is not None and profile.home_location is not None:
            return profile.home_location
        facility_id = profile.facility_id if profile is not None and profile.facility_id else visits[0].facility_id
        return self.store.get_facility(facility_id).location

    def optimize_daily_route(
        self,
        chw_id: UUID,
        day: date,
        mode: TransportMode = TransportMode.DRIVING,
        deadline: Optional[Deadline] = None,
    ) -> OptimizedRoute:
        """Order the CHW's visits for ``day`` into a round trip from home starting at 08:00."""
        check_deadline(deadline, "optimize_daily_route")
        start, end = self._day_bounds(day)
        visits = self.store.list_visits(chw_id=chw_id, status=VisitStatus.SCHEDULED, start=start, end=end)
        if not visits:
            logger.info("No visits found for CHW %s on %s", chw_id, day)
            return OptimizedRoute(chw_id=chw_id, date=day)

        check_deadline(deadline, "optimize_daily_route")
        self.store.get_user(chw_id)
        home = self._home_for(chw_id, visits)

        located = []
        for visit in visits:
            check_deadline(deadline, "optimize_daily_route")
            try:
                mother = self.store.get_mother(visit.mother_id)
            except NotFound:
                logger.error("Mother %s for visit %s not found", visit.mother_id, visit.id)
                continue
            if mother.location is None:
                continue
            located.append((visit, mother.location))

        if not located:
            raise BadRequest("no visits with valid locations found", {"chw_id": str(chw_id)})

        departure = start + timedelta(hours=ROUTE_START_HOUR)
        route = self.route_builder.build_visit_route(
            home, [loc for _, loc in located], mode, departure, deadline=deadline
        )

        # Match the reordered stops back to their visits
        pending = list(located)
        ordered = []
        for index, point in enumerate(route.points[1:-1]):
            for i, (visit, location) in enumerate(pending):
                if location == point.location:
                    pending.pop(i)
                    arrival = datetime.fromisoformat(point.arrival_time) + timedelta(minutes=DWELL_MINUTES * index)
                    ordered.append(VisitWithLocation(visit=visit, location=location, estimated_arrival=arrival))
                    break

        total_minutes = math.ceil(route.total_duration_seconds / 60) + DWELL_MINUTES * len(ordered)
        logger.info("Optimized route for CHW %s on %s: %d visits, %.2f km",
                    chw_id, day, len(ordered), route.total_distance_km)
        return OptimizedRoute(
            chw_id=chw_id,
            date=day,
            visits=ordered,
            total_time_minutes=total_minutes,
            distance_km=route.total_distance_km,
        )

    def update_visit_order(self, chw_id: UUID, visit_ids: Sequence[UUID],
                           deadline: Optional[Deadline] = None) -> List[Visit]:
        """Check that every visit belongs to the CHW and return them in the requested order."""
        visits = []
        for visit_id in visit_ids:
            check_deadline(deadline, "update_visit_order")
            visit = self.store.get_visit(visit_id)
            if visit.chw_id != chw_id:
                raise BadRequest(f"visit {visit_id} is not assigned to the specified CHW",
                                 {"chw_id": str(chw_id)})
            visits.append(visit)
        logger.info("Updated visit order for CHW %s (%d visits)", chw_id, len(visits))
        return visits
