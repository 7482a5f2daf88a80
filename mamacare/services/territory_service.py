"""
CHW territories: polygon CRUD, assignment and spatial lookups.
"""

import logging
from typing import List, Optional, Sequence, Tuple
from uuid import UUID

from mamacare import models
from mamacare.errors import BadRequest, MamaCareError, NotFound
from mamacare.runtime import Deadline, check_deadline
from mamacare.schemas import AssignmentResult, Location, MotherInTerritory, Role, Territory, User
from mamacare.services import geo_service as geo

logger = logging.getLogger(__name__)

DEFAULT_MAX_CHW_DISTANCE_KM = 50.0


class TerritoryService:
    """Service for managing CHW territories."""

    def __init__(self, store, spatial, clock):
        self.store = store
        self.spatial = spatial
        self.clock = clock

    def _require_chw(self, chw_id: UUID) -> User:
        try:
            user = self.store.get_user(chw_id)
        except NotFound:
            raise NotFound("CHW not found", {"chw_id": str(chw_id)})
        if user.role != Role.CHW:
            raise BadRequest("Only CHWs can be assigned territories", {"user_id": str(chw_id)})
        return user

    @staticmethod
    def _normalize_boundary(boundary: Sequence[Location]) -> List[Location]:
        if len(boundary) < 3:
            raise BadRequest("Territory must have at least 3 boundary points")
        return [geo.to_location(p.latitude, p.longitude) for p in boundary]

    def create(
        self,
        chw_id: UUID,
        name: str,
        district: str,
        description: str,
        boundary: Sequence[Location],
        deadline: Optional[Deadline] = None,
    ) -> Territory:
        check_deadline(deadline, "create_territory")
        self._require_chw(chw_id)
        points = self._normalize_boundary(boundary)

        now = self.clock.now()
        territory = Territory(
            chw_id=chw_id,
            name=name,
            district=district,
            description=description,
            boundary=points,
            center_point=geo.centroid(points),
            created_at=now,
            updated_at=now,
        )
        check_deadline(deadline, "create_territory")
        created = self.store.create_territory(territory)
        logger.info("Created territory %s (%s) for CHW %s", created.id, name, chw_id)
        return created

    def get(self, territory_id: UUID, deadline: Optional[Deadline] = None) -> Territory:
        check_deadline(deadline, "get_territory")
        return self.store.get_territory(territory_id)

    def get_for_chw(self, chw_id: UUID, deadline: Optional[Deadline] = None) -> Territory:
        check_deadline(deadline, "get_territory_for_chw")
        territory = self.store.get_territory_for_chw(chw_id)
        if territory is None:
            raise NotFound("No territory found for this CHW", {"chw_id": str(chw_id)})
        return territory

    def update(
        self,
        territory_id: UUID,
        name: Optional[str] = None,
        district: Optional[str] = None,
        description: Optional[str] = None,
        boundary: Optional[Sequence[Location]] = None,
        deadline: Optional[Deadline] = None,
    ) -> Territory:
        """Update the given fields; a new boundary also moves the center point."""
        check_deadline(deadline, "update_territory")
        territory = self.store.get_territory(territory_id)

        if name is not None:
            territory.name = name
        if district is not None:
            territory.district = district
        if description is not None:
            territory.description = description
        if boundary is not None:
            territory.boundary = self._normalize_boundary(boundary)
            territory.center_point = geo.centroid(territory.boundary)
        territory.updated_at = self.clock.now()

        check_deadline(deadline, "update_territory")
        return self.store.update_territory(territory)

    def assign(self, chw_id: UUID, territory_id: UUID, deadline: Optional[Deadline] = None) -> AssignmentResult:
        """Hand a territory to a CHW and report how many mothers live in it."""
        check_deadline(deadline, "assign_territory")
        chw = self._require_chw(chw_id)
        territory = self.store.get_territory(territory_id)

        now = self.clock.now()
        territory.chw_id = chw.id
        territory.updated_at = now
        check_deadline(deadline, "assign_territory")
        territory = self.store.update_territory(territory)

        try:
            mother_count = len(self.store.mothers_in_territory(territory.id))
        except MamaCareError as e:
            logger.error("Error counting mothers in territory %s: %s", territory.id, e)
            mother_count = 0

        logger.info("Assigned territory %s to CHW %s (%d mothers)", territory.id, chw.id, mother_count)
        return AssignmentResult(territory=territory, chw=chw, mother_count=mother_count, assigned_at=now)

    def find_for_location(self, latitude: float, longitude: float, deadline: Optional[Deadline] = None) -> Territory:
        point = geo.to_location(latitude, longitude)
        check_deadline(deadline, "find_territory")
        territory = self.spatial.contains_point(models.Territory, "geometry", point)
        if territory is None:
            raise NotFound("No territory found for this location", {"latitude": latitude, "longitude": longitude})
        return territory

    def find_nearest_chw(
        self,
        latitude: float,
        longitude: float,
        max_km: float = DEFAULT_MAX_CHW_DISTANCE_KM,
        deadline: Optional[Deadline] = None,
    ) -> Tuple[User, float]:
        """The CHW whose territory center is closest to the point, with the distance in km."""
        point = geo.to_location(latitude, longitude)
        if max_km is None or max_km <= 0:
            max_km = DEFAULT_MAX_CHW_DISTANCE_KM

        check_deadline(deadline, "find_nearest_chw")
        best: Optional[Territory] = None
        best_distance = None
        for territory in self.store.list_territories_with_chw():
            distance = geo.distance_km(point, territory.center_point)
            if best_distance is None or distance < best_distance:
                best, best_distance = territory, distance
                if distance == 0:
                    break

        if best is None or best_distance > max_km:
            raise NotFound("No CHW found within the specified distance", {"max_km": max_km})

        check_deadline(deadline, "find_nearest_chw")
        return self.store.get_user(best.chw_id), best_distance

    def mothers_in_territory(self, territory_id: UUID, deadline: Optional[Deadline] = None) -> List[MotherInTerritory]:
        check_deadline(deadline, "mothers_in_territory")
        territory = self.store.get_territory(territory_id)
        mothers = self.store.mothers_in_territory(territory.id)

        chw_name = None
        if territory.chw_id is not None:
            try:
                chw_name = self.store.get_user(territory.chw_id).name
            except NotFound:
                logger.warning("Territory %s references missing CHW %s", territory.id, territory.chw_id)

        return [
            MotherInTerritory(
                mother_id=mother.id,
                user_id=mother.user_id,
                location=mother.location,
                territory_id=territory.id,
                territory_name=territory.name,
                chw_id=territory.chw_id,
                chw_name=chw_name,
                distance_km=(geo.distance_km(mother.location, territory.center_point)
                             if mother.location is not None else None),
            )
            for mother in mothers
        ]

    @staticmethod
    def is_point_in(point: Location, territory: Territory) -> bool:
        return geo.point_in_polygon(point, territory.boundary)
