"""
Pytest configuration and shared fixtures.

Services are exercised against in-memory stand-ins for the store, the
spatial index and the notifier so the tests need no database.
"""

import copy
from datetime import date, datetime, timedelta, timezone
from uuid import uuid4

import pytest

from mamacare import models
from mamacare.config import Settings
from mamacare.errors import NotFound, StorageError, TransientSend
from mamacare.runtime import FixedClock
from mamacare.schemas import (
    BloodPressure, CHWProfile, DeviceToken, HealthcareFacility, HealthMetric, Location,
    Mother, PregnancyHistory, Role, User, Visit, VisitStatus, VitalSigns,
)
from mamacare.services import geo_service as geo

# Friday 15 March 2024, 09:00 local (Freetown is on UTC)
NOW = datetime(2024, 3, 15, 9, 0, tzinfo=timezone.utc)


class FakeStore:
    """In-memory store with the same contract as ``mamacare.repository.Repository``."""

    def __init__(self):
        self.users = {}
        self.chw_profiles = {}
        self.mothers = {}
        self.facilities = {}
        self.territories = {}
        self.visits = {}
        self.metrics = []
        self.tokens = []
        self.failing_visit_updates = set()
        self.transactions = 0
        self.risk_updates = []

    def _require(self, table, entity_id, label):
        if entity_id not in table:
            raise NotFound(f"{label} not found", {"id": str(entity_id)})
        return table[entity_id].model_copy(deep=True)

    def within_transaction(self, fn):
        self.transactions += 1
        snapshot = copy.deepcopy((self.visits, self.territories, self.mothers))
        try:
            return fn()
        except Exception:
            self.visits, self.territories, self.mothers = snapshot
            raise

    # Users and CHWs

    def add_user(self, user):
        self.users[user.id] = user
        return user

    def get_user(self, user_id):
        return self._require(self.users, user_id, "user")

    def get_chw_profile(self, user_id):
        profile = self.chw_profiles.get(user_id)
        return profile.model_copy(deep=True) if profile else None

    def list_chws(self, facility_id):
        return [p.model_copy(deep=True) for p in self.chw_profiles.values()
                if p.facility_id == facility_id and self.users[p.user_id].role == Role.CHW]

    def device_tokens(self, user_id):
        return [t for t in self.tokens if t.user_id == user_id]

    # Mothers and metrics

    def add_mother(self, mother):
        self.mothers[mother.id] = mother
        return mother

    def get_mother(self, mother_id):
        return self._require(self.mothers, mother_id, "mother")

    def update_mother_risk(self, mother_id, risk_level):
        self.mothers[mother_id].risk_level = risk_level
        self.risk_updates.append((mother_id, risk_level))

    def list_metrics(self, mother_id, limit=10):
        rows = sorted((m for m in self.metrics if m.mother_id == mother_id),
                      key=lambda m: m.recorded_at, reverse=True)
        return rows[:limit]

    # Facilities

    def add_facility(self, facility):
        self.facilities[facility.id] = facility
        return facility

    def get_facility(self, facility_id):
        return self._require(self.facilities, facility_id, "facility")

    def list_facilities(self, district=None):
        rows = [f for f in self.facilities.values()
                if not district or f.district.lower() == district.strip().lower()]
        return [f.model_copy(deep=True) for f in sorted(rows, key=lambda f: f.name)]

    def search_facilities(self, query, limit=100):
        needle = query.strip().lower()
        return [f for f in self.facilities.values()
                if needle in f.name.lower() or needle in f.address.lower() or needle in f.district.lower()][:limit]

    # Territories

    def create_territory(self, territory):
        self.territories[territory.id] = territory.model_copy(deep=True)
        return territory

    def get_territory(self, territory_id):
        return self._require(self.territories, territory_id, "territory")

    def get_territory_for_chw(self, chw_id):
        for territory in self.territories.values():
            if territory.chw_id == chw_id:
                return territory.model_copy(deep=True)
        return None

    def update_territory(self, territory):
        self._require(self.territories, territory.id, "territory")
        self.territories[territory.id] = territory.model_copy(deep=True)
        return territory

    def list_territories_with_chw(self):
        return [t.model_copy(deep=True) for t in self.territories.values() if t.chw_id is not None]

    def mothers_in_territory(self, territory_id):
        territory = self.get_territory(territory_id)
        return [m for m in self.mothers.values()
                if m.location is not None and geo.point_in_polygon(m.location, territory.boundary)]

    # Visits

    def create_visit(self, visit):
        self.visits[visit.id] = visit.model_copy(deep=True)
        return visit

    def get_visit(self, visit_id):
        return self._require(self.visits, visit_id, "visit")

    def update_visit(self, visit):
        self._require(self.visits, visit.id, "visit")
        if visit.id in self.failing_visit_updates:
            raise StorageError("storage failure during update visit", {"id": str(visit.id)})
        self.visits[visit.id] = visit.model_copy(deep=True)
        return visit

    def list_visits(self, mother_id=None, facility_id=None, chw_id=None, status=None, start=None, end=None,
                    unassigned=False, descending=False, limit=None, offset=0):
        rows = []
        for visit in self.visits.values():
            if mother_id and visit.mother_id != mother_id:
                continue
            if facility_id and visit.facility_id != facility_id:
                continue
            if chw_id and visit.chw_id != chw_id:
                continue
            if status and visit.status != status:
                continue
            if start and visit.scheduled_time < start:
                continue
            if end and visit.scheduled_time >= end:
                continue
            if unassigned and visit.chw_id is not None:
                continue
            rows.append(visit.model_copy(deep=True))
        rows.sort(key=lambda v: v.scheduled_time, reverse=descending)
        rows = rows[offset:]
        return rows[:limit] if limit else rows


class FakeSpatialIndex:
    """Brute-force spatial queries over a ``FakeStore``."""

    def __init__(self, store):
        self.store = store
        self.calls = []

    def _records(self, table):
        if table is models.HealthcareFacility:
            return [(f, f.location) for f in self.store.facilities.values()]
        if table is models.Territory:
            return [(t, t.center_point) for t in self.store.territories.values()]
        raise AssertionError(f"unexpected table {table}")

    def within_radius(self, table, geom_col, center, radius_m, extra_predicate=None, args=None):
        self.calls.append(("within_radius", table, geom_col, radius_m))
        hits = [(geo.distance_km(center, loc), r) for r, loc in self._records(table)]
        hits = [(d, r) for d, r in hits if d * 1000 <= radius_m]
        return [r for _, r in sorted(hits, key=lambda h: h[0])]

    def nearest_k(self, table, geom_col, center, k, extra_predicate=None, args=None):
        self.calls.append(("nearest_k", table, geom_col, k))
        hits = sorted(((geo.distance_km(center, loc), r) for r, loc in self._records(table)), key=lambda h: h[0])
        return [r for _, r in hits[:k]]

    def contains_point(self, table, geom_col, point):
        self.calls.append(("contains_point", table, geom_col))
        for territory in self.store.territories.values():
            if geo.point_in_polygon(point, territory.boundary):
                return territory.model_copy(deep=True)
        return None


class FakeNotifier:
    """Records reminders; visits in ``failing`` raise a retryable send error."""

    def __init__(self):
        self.sent = []
        self.failing = set()

    def send_visit_reminder(self, visit, mother_id, days_until):
        if visit.id in self.failing:
            raise TransientSend(f"reminder for visit {visit.id} not delivered")
        self.sent.append((visit.id, mother_id, days_until))


# Record factories

def make_user(role=Role.CHW, name="Aminata Kamara", phone_number=None):
    return User(id=uuid4(), name=name, role=role, phone_number=phone_number)


def make_mother(**overrides):
    values = dict(
        id=uuid4(),
        user_id=uuid4(),
        lmp=NOW.date() - timedelta(days=70),
        date_of_birth=date(1995, 6, 1),
        pregnancy_history=PregnancyHistory(previous_pregnancies=1, previous_deliveries=1),
        location=Location(latitude=8.4844, longitude=-13.2344),
        catchment_area="Kissy",
    )
    values.update(overrides)
    return Mother(**values)


def make_facility(**overrides):
    values = dict(
        id=uuid4(),
        name="Connaught Hospital",
        district="Western Area Urban",
        address="Percival Street, Freetown",
        location=Location(latitude=8.4897, longitude=-13.2364),
        facility_type="hospital",
        capacity=300,
        opening_hour=8,
        closing_hour=17,
        services_offered=["antenatal", "delivery"],
    )
    values.update(overrides)
    return HealthcareFacility(**values)


def make_visit(mother_id, facility_id, scheduled_time, **overrides):
    values = dict(mother_id=mother_id, facility_id=facility_id, scheduled_time=scheduled_time,
                  status=VisitStatus.SCHEDULED, created_at=NOW, updated_at=NOW)
    values.update(overrides)
    return Visit(**values)


def make_metric(mother_id, recorded_at, systolic=None, diastolic=None, **vitals):
    if systolic is not None:
        vitals["blood_pressure"] = BloodPressure(systolic=systolic, diastolic=diastolic or 80)
    return HealthMetric(mother_id=mother_id, recorded_at=recorded_at, vital_signs=VitalSigns(**vitals))


def square(lat, lng, size):
    """Boundary of an axis-aligned square with its south-west corner at (lat, lng)."""
    return [
        Location(latitude=lat, longitude=lng),
        Location(latitude=lat, longitude=lng + size),
        Location(latitude=lat + size, longitude=lng + size),
        Location(latitude=lat + size, longitude=lng),
    ]


@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def settings():
    return Settings(default_chw_capacity=2, sms_api_url="https://sms.example.org/send", sms_api_key="sms-key")


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def spatial(store):
    return FakeSpatialIndex(store)


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def facility(store):
    return store.add_facility(make_facility())


@pytest.fixture
def mother(store):
    return store.add_mother(make_mother())


@pytest.fixture
def chw(store, facility):
    user = store.add_user(make_user(Role.CHW, name="Fatmata Sesay"))
    store.chw_profiles[user.id] = CHWProfile(
        user_id=user.id,
        name=user.name,
        catchment_area="Kissy",
        home_location=Location(latitude=8.4700, longitude=-13.2200),
        facility_id=facility.id,
    )
    return user


@pytest.fixture
def device_token():
    def factory(user_id, token="ExponentPushToken[abc123]", provider="expo"):
        return DeviceToken(user_id=user_id, token=token, provider=provider)
    return factory


# Pytest configuration
def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests"
    )


def pytest_collection_modifyitems(config, items):
    """Modify test collection to add markers based on module names."""
    for item in items:
        if "test_api" in item.nodeid:
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)
