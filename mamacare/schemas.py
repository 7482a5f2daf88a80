"""
Pydantic schemas for domain records, derived results and API payloads.
"""

from datetime import date, datetime
from enum import Enum
from typing import Dict, List, Optional, Set
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from mamacare.errors import BadRequest


# Enumerations
class Role(str, Enum):
    ADMIN = "admin"
    CHW = "chw"
    CLINICIAN = "clinician"
    MOTHER = "mother"
    GUEST = "guest"


class BloodType(str, Enum):
    A_POS = "A+"
    A_NEG = "A-"
    B_POS = "B+"
    B_NEG = "B-"
    AB_POS = "AB+"
    AB_NEG = "AB-"
    O_POS = "O+"
    O_NEG = "O-"
    UNKNOWN = "unknown"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class FacilityType(str, Enum):
    HOSPITAL = "hospital"
    CLINIC = "clinic"
    HEALTH_CENTER = "health_center"
    HEALTH_POST = "health_post"


class VisitType(str, Enum):
    ROUTINE = "routine"
    EMERGENCY = "emergency"
    FOLLOW_UP = "follow_up"


class VisitStatus(str, Enum):
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


class TrendType(str, Enum):
    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"
    FLUCTUATING = "fluctuating"
    INSUFFICIENT = "insufficient"


class AlertLevel(str, Enum):
    NONE = "none"
    MONITOR = "monitor"
    CONCERN = "concern"
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        return ALERT_ORDER.index(self)


ALERT_ORDER = [AlertLevel.NONE, AlertLevel.MONITOR, AlertLevel.CONCERN, AlertLevel.URGENT]


class TransportMode(str, Enum):
    DRIVING = "driving"
    WALKING = "walking"
    BICYCLING = "bicycling"


class PushProvider(str, Enum):
    EXPO = "expo"
    FIREBASE = "firebase"


# Visit status machine: current status -> statuses it may move to
VISIT_TRANSITIONS: Dict[VisitStatus, Set[VisitStatus]] = {
    VisitStatus.SCHEDULED: {
        VisitStatus.IN_PROGRESS,
        VisitStatus.CANCELLED,
        VisitStatus.SCHEDULED,
        VisitStatus.NO_SHOW,
    },
    VisitStatus.IN_PROGRESS: {VisitStatus.COMPLETED},
    VisitStatus.CANCELLED: {VisitStatus.SCHEDULED},
    VisitStatus.COMPLETED: set(),
    VisitStatus.NO_SHOW: set(),
}

TERMINAL_STATUSES = {VisitStatus.COMPLETED, VisitStatus.NO_SHOW}


# Geography
class Location(BaseModel):
    latitude: float = Field(..., ge=-90, le=90, description="WGS84 latitude")
    longitude: float = Field(..., ge=-180, le=180, description="WGS84 longitude")

    class Config:
        frozen = True
        from_attributes = True


# People
class User(BaseModel):
    id: UUID
    name: str
    role: Role
    phone_number: Optional[str] = None

    class Config:
        from_attributes = True


class CHWProfile(BaseModel):
    """Roster entry for a community health worker."""
    user_id: UUID
    name: str = ""
    catchment_area: Optional[str] = Field(None, description="Area the CHW covers")
    capacity: Optional[int] = Field(None, ge=0, description="Maximum visits per day, default from settings")
    home_location: Optional[Location] = None
    facility_id: Optional[UUID] = None

    class Config:
        from_attributes = True


class PregnancyHistory(BaseModel):
    previous_pregnancies: int = Field(0, ge=0)
    previous_deliveries: int = Field(0, ge=0)
    previous_caesareans: int = Field(0, ge=0)
    previous_complications: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_deliveries(self):
        if self.previous_deliveries > self.previous_pregnancies:
            raise ValueError("previous_deliveries cannot exceed previous_pregnancies")
        return self


class Mother(BaseModel):
    id: UUID
    user_id: UUID
    lmp: Optional[date] = Field(None, description="Last menstrual period")
    date_of_birth: Optional[date] = None
    blood_type: BloodType = BloodType.UNKNOWN
    health_conditions: List[str] = Field(default_factory=list)
    pregnancy_history: PregnancyHistory = Field(default_factory=PregnancyHistory)
    location: Optional[Location] = None
    catchment_area: Optional[str] = None
    risk_level: RiskLevel = RiskLevel.LOW

    class Config:
        from_attributes = True

    @property
    def is_rh_negative(self) -> bool:
        return self.blood_type in (BloodType.A_NEG, BloodType.B_NEG, BloodType.AB_NEG, BloodType.O_NEG)

    def age_on(self, reference: date) -> Optional[int]:
        if self.date_of_birth is None:
            return None
        dob = self.date_of_birth
        years = reference.year - dob.year
        if (reference.month, reference.day) < (dob.month, dob.day):
            years -= 1
        return years


# Facilities
class DayHours(BaseModel):
    open: str = Field("08:00", description="Opening time, HH:MM")
    close: str = Field("17:00", description="Closing time, HH:MM; 24:00 is midnight at day end")
    is_closed: bool = False

    @field_validator("open", "close")
    @classmethod
    def check_clock_time(cls, value: str) -> str:
        try:
            hours, minutes = (int(part) for part in value.split(":"))
        except ValueError:
            raise ValueError(f"invalid time {value!r}, expected HH:MM")
        if not (0 <= hours <= 24 and 0 <= minutes < 60) or (hours == 24 and minutes):
            raise ValueError(f"invalid time {value!r}, expected HH:MM")
        return value

    @staticmethod
    def _minutes(value: str) -> int:
        hours, minutes = value.split(":")
        return int(hours) * 60 + int(minutes)

    @property
    def opens_at(self) -> int:
        """Opening time in minutes after midnight."""
        return self._minutes(self.open)

    @property
    def closes_at(self) -> int:
        return self._minutes(self.close)

    @property
    def overnight(self) -> bool:
        """Closing falls on the following day (close earlier than open)."""
        return self.closes_at < self.opens_at

    def covers(self, minute: int) -> bool:
        """Whether ``minute`` of this day falls inside the opening range."""
        if self.is_closed:
            return False
        if self.opens_at == self.closes_at:
            return True
        if self.overnight:
            return minute >= self.opens_at
        return self.opens_at <= minute < self.closes_at


class OperatingHours(BaseModel):
    monday: DayHours = Field(default_factory=DayHours)
    tuesday: DayHours = Field(default_factory=DayHours)
    wednesday: DayHours = Field(default_factory=DayHours)
    thursday: DayHours = Field(default_factory=DayHours)
    friday: DayHours = Field(default_factory=DayHours)
    saturday: DayHours = Field(default_factory=lambda: DayHours(is_closed=True))
    sunday: DayHours = Field(default_factory=lambda: DayHours(is_closed=True))

    def for_weekday(self, weekday: int) -> DayHours:
        days = [self.monday, self.tuesday, self.wednesday, self.thursday,
                self.friday, self.saturday, self.sunday]
        return days[weekday]


class HealthcareFacility(BaseModel):
    id: UUID
    name: str
    district: str = ""
    address: str = ""
    location: Location
    facility_type: FacilityType = FacilityType.HEALTH_CENTER
    capacity: int = 0
    opening_hour: Optional[int] = Field(None, ge=0, le=23)
    closing_hour: Optional[int] = Field(None, ge=1, le=24)
    services_offered: List[str] = Field(default_factory=list)
    operating_hours: OperatingHours = Field(default_factory=OperatingHours)

    class Config:
        from_attributes = True

    def is_open(self, at: datetime) -> bool:
        """
        Whether the facility is open at the wall-clock time ``at``.

        Equal open and close times mean open around the clock. An overnight
        range (close before open) stays open into the next morning.
        """
        minute = at.hour * 60 + at.minute
        if self.operating_hours.for_weekday(at.weekday()).covers(minute):
            return True
        previous = self.operating_hours.for_weekday((at.weekday() - 1) % 7)
        return not previous.is_closed and previous.overnight and minute < previous.closes_at

    def offers_service(self, service: str) -> bool:
        return service in self.services_offered


class Territory(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    chw_id: Optional[UUID] = None
    name: str
    district: str = ""
    description: str = ""
    boundary: List[Location]
    center_point: Location
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# Visits
class Visit(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    mother_id: UUID
    facility_id: UUID
    chw_id: Optional[UUID] = None
    clinician_id: Optional[UUID] = None
    scheduled_time: datetime
    check_in_time: Optional[datetime] = None
    check_out_time: Optional[datetime] = None
    visit_type: VisitType = VisitType.ROUTINE
    notes: str = ""
    status: VisitStatus = VisitStatus.SCHEDULED
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition_to(self, status: VisitStatus, at: datetime) -> None:
        """Move to ``status`` or raise ``BadRequest`` if the move is not allowed."""
        if status not in VISIT_TRANSITIONS[self.status]:
            raise BadRequest(
                f"cannot move visit from {self.status.value} to {status.value}",
                {"visit_id": str(self.id)},
            )
        self.status = status
        self.updated_at = at


# Health metrics
class BloodPressure(BaseModel):
    systolic: float = Field(..., gt=0)
    diastolic: float = Field(..., gt=0)


class Contractions(BaseModel):
    duration: int = Field(..., description="Seconds")
    interval: int = Field(..., description="Seconds between contractions")
    intensity: int = Field(..., ge=1, le=10)
    frequency_hour: int = Field(..., description="Contractions per hour")


class VitalSigns(BaseModel):
    blood_pressure: Optional[BloodPressure] = None
    fetal_heart_rate: Optional[float] = None
    fetal_movement: Optional[float] = None
    blood_sugar: Optional[float] = None
    hemoglobin: Optional[float] = None
    weight: Optional[float] = None
    contractions: Optional[Contractions] = None

    def has_any(self) -> bool:
        return any(value is not None for value in self.__dict__.values())


class HealthMetric(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    mother_id: UUID
    visit_id: Optional[UUID] = None
    recorded_by: Optional[UUID] = None
    recorded_at: datetime
    vital_signs: VitalSigns
    notes: str = ""

    class Config:
        from_attributes = True

    @model_validator(mode="after")
    def check_vitals(self):
        if not self.vital_signs.has_any():
            raise ValueError("at least one vital sign is required")
        return self


class DeviceToken(BaseModel):
    user_id: UUID
    token: str
    provider: PushProvider = PushProvider.EXPO

    class Config:
        from_attributes = True


# Analysis results
class TrendResult(BaseModel):
    metric_name: str
    trend_type: TrendType
    alert_level: AlertLevel = AlertLevel.NONE
    first_value: float
    last_value: float
    percent_change: float
    change_per_day: float
    description: str = ""
    recommended_action: Optional[str] = None


class TrendAnalysis(BaseModel):
    mother_id: UUID
    analysis_date: datetime
    data_start_date: datetime
    data_end_date: datetime
    data_points: int
    trends: List[TrendResult] = Field(default_factory=list)
    highest_alert: AlertLevel = AlertLevel.NONE


class MetricAnalysis(BaseModel):
    metric_id: UUID
    mother_id: UUID
    analysis_date: datetime
    abnormalities: Dict[str, str] = Field(default_factory=dict)
    trends: Dict[str, str] = Field(default_factory=dict)
    recommended_actions: List[str] = Field(default_factory=list)
    severity: str = "normal"


class RiskFactors(BaseModel):
    age_related: List[str] = Field(default_factory=list)
    medical_history: List[str] = Field(default_factory=list)
    obstetric_history: List[str] = Field(default_factory=list)
    current_vitals: List[str] = Field(default_factory=list)
    lifestyle: List[str] = Field(default_factory=list)


class RiskAssessment(BaseModel):
    mother_id: UUID
    risk_score: int = Field(..., ge=0)
    risk_level: RiskLevel
    risk_factors: RiskFactors
    assessed_at: datetime


class PregnancyDateInfo(BaseModel):
    lmp: date
    conception_date: date
    expected_delivery_date: date
    gestational_age_days: int
    gestational_age_weeks: int
    gestational_age_remainder_days: int
    trimester: int
    weeks_remaining: int
    is_pre_term: bool
    is_full_term: bool
    days_until_full_term: int
    percentage_complete: float


class BMIInfo(BaseModel):
    height_m: float
    weight_kg: float
    bmi: float
    category: str
    recommended_gain_kg: float


class GrowthEstimate(BaseModel):
    """Expected value with an acceptable range."""
    expected: float
    minimum: float
    maximum: float


# Facility search
class FacilityFilter(BaseModel):
    types: Set[FacilityType] = Field(default_factory=set)
    services: Set[str] = Field(default_factory=set, description="All of these must be offered")
    max_distance_km: Optional[float] = None
    open_now: bool = False
    min_capacity: Optional[int] = None
    district: Optional[str] = None


class FacilityWithDistance(BaseModel):
    facility_id: UUID
    name: str
    district: str
    facility_type: FacilityType
    location: Location
    distance_km: float
    distance_formatted: str
    travel_time_minutes: int
    is_open: bool


# Routing
class RoutePoint(BaseModel):
    location: Location
    name: Optional[str] = None
    distance_to_next_km: float = 0.0
    duration_seconds: int = 0
    arrival_time: str


class Route(BaseModel):
    points: List[RoutePoint]
    mode: TransportMode
    total_distance_km: float
    total_duration_seconds: int
    start_time: str
    end_time: str


class VisitWithLocation(BaseModel):
    visit: Visit
    location: Location
    estimated_arrival: datetime


class OptimizedRoute(BaseModel):
    chw_id: UUID
    date: date
    visits: List[VisitWithLocation] = Field(default_factory=list)
    total_time_minutes: int = 0
    distance_km: float = 0.0


# Territories
class AssignmentResult(BaseModel):
    territory: Territory
    chw: User
    mother_count: int
    assigned_at: datetime


class MotherInTerritory(BaseModel):
    mother_id: UUID
    user_id: UUID
    location: Optional[Location] = None
    territory_id: UUID
    territory_name: str
    chw_id: Optional[UUID] = None
    chw_name: Optional[str] = None
    distance_km: Optional[float] = Field(None, description="None when the mother has no location")


# Visit reports
class VisitReport(BaseModel):
    visit: Visit
    mother_name: str = ""
    mother_age: Optional[int] = None
    mother_contact: Optional[str] = None
    facility_name: str
    facility_type: FacilityType
    chw_name: Optional[str] = None
    chw_contact: Optional[str] = None
    clinician_name: Optional[str] = None
    clinician_role: Optional[Role] = None
    lmp: Optional[date] = None
    expected_delivery_date: Optional[date] = None
    gestational_age_weeks: Optional[int] = None
    visit_duration_minutes: Optional[float] = None
    generated_at: datetime


class FacilitySummary(BaseModel):
    facility_id: UUID
    facility_name: str
    start: datetime
    end: datetime
    generated_at: datetime
    total_visits: int = 0
    visits_by_type: Dict[str, int] = Field(default_factory=dict)
    visits_by_status: Dict[str, int] = Field(default_factory=dict)
    visits_by_day: Dict[str, int] = Field(default_factory=dict)
    average_visit_minutes: float = 0.0
    completion_rate: float = Field(0.0, description="Percentage of visits completed")


class CHWSummary(BaseModel):
    chw_id: UUID
    chw_name: str
    start: datetime
    end: datetime
    generated_at: datetime
    total_visits: int = 0
    completed_visits: int = 0
    cancelled_visits: int = 0
    missed_visits: int = 0
    visits_by_day: Dict[str, int] = Field(default_factory=dict)
    average_visit_minutes: float = 0.0
    completion_rate: float = 0.0


class DistrictSummary(BaseModel):
    district: str
    start: datetime
    end: datetime
    generated_at: datetime
    total_visits: int = 0
    total_mothers: int = 0
    visits_by_facility: Dict[str, int] = Field(default_factory=dict)
    facility_names: Dict[str, str] = Field(default_factory=dict)
    visits_by_type: Dict[str, int] = Field(default_factory=dict)
    visits_by_status: Dict[str, int] = Field(default_factory=dict)
    completion_rates: Dict[str, float] = Field(default_factory=dict)


# Bulk operations
class ItemFailure(BaseModel):
    item_id: str
    reason: str


class BatchResult(BaseModel):
    succeeded: List[str] = Field(default_factory=list)
    failed: List[ItemFailure] = Field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.succeeded) + len(self.failed)

    @property
    def ok(self) -> bool:
        return not self.failed


# API request schemas
class CoordinatesRequest(BaseModel):
    latitude: float = Field(..., description="Latitude")
    longitude: float = Field(..., description="Longitude")


class NearbyFacilitiesRequest(CoordinatesRequest):
    radius_km: float = Field(10.0, description="Search radius in km")
    filter: FacilityFilter = Field(default_factory=FacilityFilter)


class RouteRequest(BaseModel):
    points: List[Location]
    mode: TransportMode = TransportMode.DRIVING
    departure_time: Optional[datetime] = None
    optimize: bool = False


class ScheduleVisitRequest(BaseModel):
    mother_id: UUID
    facility_id: UUID
    scheduled_time: datetime
    visit_type: VisitType = VisitType.ROUTINE
    notes: str = ""


class RescheduleVisitRequest(BaseModel):
    scheduled_time: datetime


class FollowUpRequest(BaseModel):
    scheduled_time: datetime
    notes: str = ""


class CreateTerritoryRequest(BaseModel):
    chw_id: UUID
    name: str
    district: str
    description: str = ""
    boundary: List[Location]


class TrendRequest(BaseModel):
    metrics: List[HealthMetric]


class MetricAnalysisRequest(BaseModel):
    metric: HealthMetric
    gestational_age_weeks: int = Field(0, ge=0, le=45)
