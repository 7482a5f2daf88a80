"""
Healthcare facility search over the spatial index.
"""

import logging
from datetime import datetime
from typing import List, Optional
from uuid import UUID

from mamacare import models
from mamacare.runtime import Deadline, check_deadline
from mamacare.schemas import FacilityFilter, FacilityWithDistance, HealthcareFacility, Location
from mamacare.services import geo_service as geo

logger = logging.getLogger(__name__)

DEFAULT_RADIUS_KM = 10.0

# Minutes per km at an average driving speed of 30 km/h
MINUTES_PER_KM = 2


class FacilitySearch:
    """Radius, nearest-K and text search with a shared post-filter."""

    def __init__(self, store, spatial, clock):
        self.store = store
        self.spatial = spatial
        self.clock = clock

    def _local(self, at: Optional[datetime]) -> datetime:
        if at is None:
            return self.clock.now()
        if at.tzinfo is not None:
            return at.astimezone(self.clock.tz)
        return at

    def matches(
        self,
        facility: HealthcareFacility,
        facility_filter: FacilityFilter,
        at: datetime,
        distance_km: Optional[float] = None,
    ) -> bool:
        """Whether ``facility`` passes every predicate set on the filter."""
        f = facility_filter
        if f.types and facility.facility_type not in f.types:
            return False
        if f.services and not all(facility.offers_service(s) for s in f.services):
            return False
        if f.min_capacity is not None and facility.capacity < f.min_capacity:
            return False
        if f.district and facility.district.lower() != f.district.lower():
            return False
        if f.max_distance_km is not None and distance_km is not None and distance_km > f.max_distance_km:
            return False
        if f.open_now and not facility.is_open(at):
            return False
        return True

    def _with_distance(self, facility: HealthcareFacility, distance_km: float, at: datetime) -> FacilityWithDistance:
        return FacilityWithDistance(
            facility_id=facility.id,
            name=facility.name,
            district=facility.district,
            facility_type=facility.facility_type,
            location=facility.location,
            distance_km=distance_km,
            distance_formatted=geo.format_distance(distance_km),
            travel_time_minutes=round(distance_km * MINUTES_PER_KM),
            is_open=facility.is_open(at),
        )

    def _project(self, center, facilities, facility_filter, at) -> List[FacilityWithDistance]:
        results = []
        for facility in facilities:
            distance = geo.distance_km(center, facility.location)
            if self.matches(facility, facility_filter, at, distance):
                results.append(self._with_distance(facility, distance, at))
        results.sort(key=lambda r: r.distance_km)
        return results

    def find_nearby(
        self,
        center: Location,
        radius_km: float = DEFAULT_RADIUS_KM,
        facility_filter: Optional[FacilityFilter] = None,
        at: Optional[datetime] = None,
        deadline: Optional[Deadline] = None,
    ) -> List[FacilityWithDistance]:
        """Facilities within ``radius_km`` of ``center``, nearest first."""
        facility_filter = facility_filter or FacilityFilter()
        if radius_km is None or radius_km <= 0:
            radius_km = DEFAULT_RADIUS_KM
        if facility_filter.max_distance_km is not None:
            radius_km = min(radius_km, facility_filter.max_distance_km)

        check_deadline(deadline, "find_nearby")
        rows = self.spatial.within_radius(models.HealthcareFacility, "geometry", center, radius_km * 1000)

        results = self._project(center, rows, facility_filter, self._local(at))
        logger.info("Found %d facilities within %.1f km of %s", len(results), radius_km, geo.format_point(center))
        return results

    def find_nearest(
        self,
        center: Location,
        k: int = 5,
        facility_filter: Optional[FacilityFilter] = None,
        at: Optional[datetime] = None,
        deadline: Optional[Deadline] = None,
    ) -> List[FacilityWithDistance]:
        """The ``k`` closest facilities that pass the filter."""
        facility_filter = facility_filter or FacilityFilter()
        check_deadline(deadline, "find_nearest")
        rows = self.spatial.nearest_k(models.HealthcareFacility, "geometry", center, k)
        return self._project(center, rows, facility_filter, self._local(at))

    def search(
        self,
        query: str,
        facility_filter: Optional[FacilityFilter] = None,
        at: Optional[datetime] = None,
        deadline: Optional[Deadline] = None,
    ) -> List[HealthcareFacility]:
        """Text search on name and address; distance predicates are ignored."""
        facility_filter = facility_filter or FacilityFilter()
        check_deadline(deadline, "search_facilities")
        local = self._local(at)
        return [f for f in self.store.search_facilities(query) if self.matches(f, facility_filter, local)]

    def get_facility(self, facility_id: UUID, deadline: Optional[Deadline] = None) -> HealthcareFacility:
        check_deadline(deadline, "get_facility")
        return self.store.get_facility(facility_id)
