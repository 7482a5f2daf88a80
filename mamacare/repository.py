"""
Persistence store over a SQLAlchemy session.

Rows are converted to the pydantic records in ``mamacare.schemas`` on the
way out so services never hold ORM instances.
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, List, Optional, TypeVar
from uuid import UUID

from sqlalchemy import func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from mamacare import models
from mamacare.errors import NotFound, StorageError
from mamacare.schemas import (
    CHWProfile, DeviceToken, HealthcareFacility, HealthMetric, Location, Mother,
    OperatingHours, PregnancyHistory, RiskLevel, Territory, User, Visit, VisitStatus,
    VitalSigns,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _location(latitude, longitude) -> Optional[Location]:
    if latitude is None or longitude is None:
        return None
    return Location(latitude=latitude, longitude=longitude)


# Row -> record converters

def to_user(row: models.User) -> User:
    return User.model_validate(row)


def to_chw_profile(row: models.CHWProfile) -> CHWProfile:
    return CHWProfile(
        user_id=row.user_id,
        name=row.user.name if row.user is not None else "",
        catchment_area=row.catchment_area,
        capacity=row.capacity,
        home_location=_location(row.home_latitude, row.home_longitude),
        facility_id=row.facility_id,
    )


def to_mother(row: models.Mother) -> Mother:
    return Mother(
        id=row.id,
        user_id=row.user_id,
        lmp=row.lmp,
        date_of_birth=row.date_of_birth,
        blood_type=row.blood_type or "unknown",
        health_conditions=row.health_conditions or [],
        pregnancy_history=PregnancyHistory(
            previous_pregnancies=row.previous_pregnancies or 0,
            previous_deliveries=row.previous_deliveries or 0,
            previous_caesareans=row.previous_caesareans or 0,
            previous_complications=row.previous_complications or [],
        ),
        location=_location(row.latitude, row.longitude),
        catchment_area=row.catchment_area,
        risk_level=row.risk_level or "low",
    )


def to_facility(row: models.HealthcareFacility) -> HealthcareFacility:
    return HealthcareFacility(
        id=row.id,
        name=row.name,
        district=row.district or "",
        address=row.address or "",
        location=Location(latitude=row.latitude, longitude=row.longitude),
        facility_type=row.facility_type or "health_center",
        capacity=row.capacity or 0,
        opening_hour=row.opening_hour,
        closing_hour=row.closing_hour,
        services_offered=row.services_offered or [],
        operating_hours=OperatingHours(**row.operating_hours) if row.operating_hours else OperatingHours(),
    )


def to_territory(row: models.Territory) -> Territory:
    return Territory(
        id=row.id,
        chw_id=row.chw_id,
        name=row.name,
        district=row.district or "",
        description=row.description or "",
        boundary=[Location(latitude=lat, longitude=lng) for lat, lng in row.boundary_points],
        center_point=Location(latitude=row.center_latitude, longitude=row.center_longitude),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def to_visit(row: models.Visit) -> Visit:
    return Visit.model_validate(row)


def to_metric(row: models.HealthMetric) -> HealthMetric:
    return HealthMetric(
        id=row.id,
        mother_id=row.mother_id,
        visit_id=row.visit_id,
        recorded_by=row.recorded_by,
        recorded_at=row.recorded_at,
        vital_signs=VitalSigns(**row.vital_signs),
        notes=row.notes or "",
    )


# Converters used by the spatial index, keyed by table
CONVERTERS = {
    models.HealthcareFacility: to_facility,
    models.Territory: to_territory,
    models.Mother: to_mother,
}


def _apply_territory(row: models.Territory, territory: Territory) -> None:
    row.chw_id = territory.chw_id
    row.name = territory.name
    row.district = territory.district
    row.description = territory.description
    pairs = [(p.latitude, p.longitude) for p in territory.boundary]
    row.boundary_points = [list(p) for p in pairs]
    row.center_latitude = territory.center_point.latitude
    row.center_longitude = territory.center_point.longitude
    row.geometry = models.polygon_wkt(pairs)
    row.updated_at = territory.updated_at


def _apply_visit(row: models.Visit, visit: Visit) -> None:
    row.mother_id = visit.mother_id
    row.facility_id = visit.facility_id
    row.chw_id = visit.chw_id
    row.clinician_id = visit.clinician_id
    row.scheduled_time = visit.scheduled_time
    row.check_in_time = visit.check_in_time
    row.check_out_time = visit.check_out_time
    row.visit_type = visit.visit_type.value
    row.notes = visit.notes
    row.status = visit.status.value
    row.updated_at = visit.updated_at


class Repository:
    """Persistence store backed by PostgreSQL/PostGIS."""

    def __init__(self, db: Session):
        self.db = db
        self._depth = 0

    @contextmanager
    def _guard(self, operation: str):
        try:
            yield
        except SQLAlchemyError as e:
            logger.error("Storage failure during %s: %s", operation, e)
            if self._depth == 0:
                self.db.rollback()
            raise StorageError(f"storage failure during {operation}") from e

    def _commit(self) -> None:
        if self._depth == 0:
            self.db.commit()
        else:
            self.db.flush()

    def within_transaction(self, fn: Callable[[], T]) -> T:
        """Run ``fn`` so that all of its writes commit or roll back together."""
        self._depth += 1
        try:
            result = fn()
        except Exception:
            self._depth -= 1
            if self._depth == 0:
                self.db.rollback()
            raise
        self._depth -= 1
        if self._depth == 0:
            with self._guard("commit"):
                self.db.commit()
        return result

    def _get(self, model, entity_id, label: str):
        with self._guard(f"get {label}"):
            row = self.db.get(model, entity_id)
        if row is None:
            raise NotFound(f"{label} not found", {"id": str(entity_id)})
        return row

    # Users and CHWs

    def get_user(self, user_id: UUID) -> User:
        return to_user(self._get(models.User, user_id, "user"))

    def get_chw_profile(self, user_id: UUID) -> Optional[CHWProfile]:
        with self._guard("get chw profile"):
            row = self.db.get(models.CHWProfile, user_id)
        return to_chw_profile(row) if row is not None else None

    def list_chws(self, facility_id: UUID) -> List[CHWProfile]:
        with self._guard("list chws"):
            rows = (
                self.db.query(models.CHWProfile)
                .join(models.User)
                .filter(models.CHWProfile.facility_id == facility_id, models.User.role == "chw")
                .order_by(models.User.name)
                .all()
            )
        return [to_chw_profile(r) for r in rows]

    def device_tokens(self, user_id: UUID) -> List[DeviceToken]:
        with self._guard("list device tokens"):
            rows = self.db.query(models.DeviceToken).filter(models.DeviceToken.user_id == user_id).all()
        return [DeviceToken.model_validate(r) for r in rows]

    # Mothers and metrics

    def get_mother(self, mother_id: UUID) -> Mother:
        return to_mother(self._get(models.Mother, mother_id, "mother"))

    def update_mother_risk(self, mother_id: UUID, risk_level: RiskLevel) -> None:
        row = self._get(models.Mother, mother_id, "mother")
        with self._guard("update mother risk"):
            row.risk_level = RiskLevel(risk_level).value
            self._commit()

    def list_metrics(self, mother_id: UUID, limit: int = 10) -> List[HealthMetric]:
        """Most recent metrics first."""
        with self._guard("list metrics"):
            rows = (
                self.db.query(models.HealthMetric)
                .filter(models.HealthMetric.mother_id == mother_id)
                .order_by(models.HealthMetric.recorded_at.desc())
                .limit(limit)
                .all()
            )
        return [to_metric(r) for r in rows]

    # Facilities

    def get_facility(self, facility_id: UUID) -> HealthcareFacility:
        return to_facility(self._get(models.HealthcareFacility, facility_id, "facility"))

    def list_facilities(self, district: Optional[str] = None) -> List[HealthcareFacility]:
        """Facilities ordered by name, optionally limited to one district (case-insensitive)."""
        query = self.db.query(models.HealthcareFacility)
        if district:
            query = query.filter(func.lower(models.HealthcareFacility.district) == district.strip().lower())
        with self._guard("list facilities"):
            rows = query.order_by(models.HealthcareFacility.name).all()
        return [to_facility(r) for r in rows]

    def search_facilities(
self, query: str, limit: int = 100) -> List[HealthcareFacility]:
        pattern = f"%{query.strip()}%"
        with self._guard("search facilities"):
            rows = (
                self.db.query(models.HealthcareFacility)
                .filter(or_(
                    models.HealthcareFacility.name.ilike(pattern),
                    models.HealthcareFacility.address.ilike(pattern),
                    models.HealthcareFacility.district.ilike(pattern),
                ))
                .limit(limit)
                .all()
            )
        return [to_facility(r) for r in rows]

    # Territories

    def create_territory(self, territory: Territory) -> Territory:
        row = models.Territory(id=territory.id, created_at=territory.created_at)
        _apply_territory(row, territory)
        with self._guard("create territory"):
            self.db.add(row)
            self._commit()
            self.db.refresh(row)
        return to_territory(row)

    def get_territory(self, territory_id: UUID) -> Territory:
        return to_territory(self._get(models.Territory, territory_id, "territory"))

    def get_territory_for_chw(self, chw_id: UUID) -> Optional[Territory]:
        with self._guard("get territory for chw"):
            row = self.db.query(models.Territory).filter(models.Territory.chw_id == chw_id).first()
        return to_territory(row) if row is not None else None

    def update_territory(self, territory: Territory) -> Territory:
        row = self._get(models.Territory, territory.id, "territory")
        _apply_territory(row, territory)
        with self._guard("update territory"):
            self._commit()
            self.db.refresh(row)
        return to_territory(row)

    def list_territories_with_chw(self) -> List[Territory]:
        with self._guard("list territories"):
            rows = (
                self.db.query(models.Territory)
                .filter(models.Territory.chw_id.isnot(None))
                .order_by(models.Territory.created_at)
                .all()
            )
        return [to_territory(r) for r in rows]

    def mothers_in_territory(self, territory_id: UUID) -> List[Mother]:
        """Mothers whose location lies inside or on the territory boundary."""
        with self._guard("mothers in territory"):
            rows = (
                self.db.query(models.Mother)
                .join(models.Territory, func.ST_Intersects(models.Territory.geometry, models.Mother.geometry))
                .filter(models.Territory.id == territory_id)
                .all()
            )
        return [to_mother(r) for r in rows]

    # Visits

    def create_visit(self, visit: Visit) -> Visit:
        row = models.Visit(id=visit.id, created_at=visit.created_at)
        _apply_visit(row, visit)
        with self._guard("create visit"):
            self.db.add(row)
            self._commit()
            self.db.refresh(row)
        return to_visit(row)

    def get_visit(self, visit_id: UUID) -> Visit:
        return to_visit(self._get(models.Visit, visit_id, "visit"))

    def update_visit(self, visit: Visit) -> Visit:
        row = self._get(models.Visit, visit.id, "visit")
        _apply_visit(row, visit)
        with self._guard("update visit"):
            self._commit()
            self.db.refresh(row)
        return to_visit(row)

    def list_visits(
        self,
        mother_id: Optional[UUID] = None,
        facility_id: Optional[UUID] = None,
        chw_id: Optional[UUID] = None,
        status: Optional[VisitStatus] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        unassigned: bool = False,
        descending: bool = False,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Visit]:
        """Visits matching every given filter; ``start`` inclusive, ``end`` exclusive."""
        query = self.db.query(models.Visit)
        if mother_id:
            query = query.filter(models.Visit.mother_id == mother_id)
        if facility_id:
            query = query.filter(models.Visit.facility_id == facility_id)
        if chw_id:
            query = query.filter(models.Visit.chw_id == chw_id)
        if status:
            query = query.filter(models.Visit.status == VisitStatus(status).value)
        if start:
            query = query.filter(models.Visit.scheduled_time >= start)
        if end:
            query = query.filter(models.Visit.scheduled_time < end)
        if unassigned:
            query = query.filter(models.Visit.chw_id.is_(None))

        order = models.Visit.scheduled_time.desc() if descending else models.Visit.scheduled_time.asc()
        query = query.order_by(order).offset(offset)
        if limit:
            query = query.limit(limit)

        with self._guard("list visits"):
            rows = query.all()
        return [to_visit(r) for r in rows]
