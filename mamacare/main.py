"""
FastAPI application for the MamaCare clinical planner.
"""

import logging
from datetime import date, datetime, time, timedelta
from typing import List, Optional
from uuid import UUID

import uvicorn
from fastapi import Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from mamacare.config import Settings, get_settings
from mamacare.database import create_tables, get_db
from mamacare.errors import MamaCareError
from mamacare.repository import Repository
from mamacare.runtime import Deadline, SystemClock
from mamacare.schemas import (
    AssignmentResult, BatchResult, BMIInfo, CHWSummary, CreateTerritoryRequest, DistrictSummary,
    FacilityFilter, FacilitySummary, FacilityType, FacilityWithDistance, FollowUpRequest,
    HealthcareFacility, MetricAnalysis, MetricAnalysisRequest, MotherInTerritory, OptimizedRoute,
    PregnancyDateInfo, RescheduleVisitRequest, RiskAssessment, Route, RouteRequest,
    ScheduleVisitRequest, Territory, TrendAnalysis, TrendRequest, Visit, VisitReport,
)
from mamacare.services import geo_service as geo
from mamacare.services.assignment_service import VisitAssigner
from mamacare.services.facility_service import FacilitySearch
from mamacare.services.metric_service import MetricAnalyzer
from mamacare.services.notification_service import NotificationService
from mamacare.services.pregnancy_service import PregnancyCalculator
from mamacare.services.report_service import VisitReporter
from mamacare.services.risk_service import RiskScorer
from mamacare.services.routing_service import RouteBuilder
from mamacare.services.scheduler_service import VisitScheduler
from mamacare.services.territory_service import TerritoryService
from mamacare.spatial import PostGISSpatialIndex

REQUEST_TIMEOUT_SECONDS = 30

logging.basicConfig(
    level=get_settings().log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="MamaCare Clinical Planner",
    description="Visit scheduling, health-metric analysis and geo services for maternal care",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(MamaCareError)
async def mamacare_error_handler(request: Request, exc: MamaCareError):
    """Map categorised service errors onto HTTP responses."""
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.on_event("startup")
async def startup_event():
    """Initialize database tables on startup."""
    create_tables()


# Dependencies
def get_clock(settings: Settings = Depends(get_settings)):
    return SystemClock(settings.timezone)


def get_store(db: Session = Depends(get_db)):
    return Repository(db)


def get_spatial(db: Session = Depends(get_db)):
    return PostGISSpatialIndex(db)


def get_deadline(clock=Depends(get_clock)) -> Deadline:
    return Deadline.after(clock, REQUEST_TIMEOUT_SECONDS)


def get_notifier(store=Depends(get_store), settings: Settings = Depends(get_settings)):
    return NotificationService(store, settings)


def get_route_builder(clock=Depends(get_clock)):
    return RouteBuilder(clock)


def get_facility_search(store=Depends(get_store), spatial=Depends(get_spatial), clock=Depends(get_clock)):
    return FacilitySearch(store, spatial, clock)


def get_territory_service(store=Depends(get_store), spatial=Depends(get_spatial), clock=Depends(get_clock)):
    return TerritoryService(store, spatial, clock)


def get_scheduler(store=Depends(get_store), clock=Depends(get_clock), notifier=Depends(get_notifier),
                  settings: Settings = Depends(get_settings)):
    return VisitScheduler(store, clock, notifier, settings)


def get_assigner(store=Depends(get_store), routes=Depends(get_route_builder), clock=Depends(get_clock),
                 settings: Settings = Depends(get_settings)):
    return VisitAssigner(store, routes, clock, settings)


def get_reporter(store=Depends(get_store), clock=Depends(get_clock)):
    return VisitReporter(store, clock)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "MamaCare Clinical Planner API",
        "version": "1.0.0",
        "docs": "/docs"
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}


# Facility endpoints
@app.get("/facilities/nearby", response_model=List[FacilityWithDistance])
def find_nearby_facilities(
    latitude: float,
    longitude: float,
    radius_km: float = 10.0,
    types: List[FacilityType] = Query(default=[]),
    services: List[str] = Query(default=[]),
    open_now: bool = False,
    min_capacity: Optional[int] = None,
    district: Optional[str] = None,
    max_distance_km: Optional[float] = None,
    search: FacilitySearch = Depends(get_facility_search),
    deadline: Deadline = Depends(get_deadline),
):
    """Find facilities near a point, nearest first."""
    center = geo.to_location(latitude, longitude)
    facility_filter = FacilityFilter(
        types=set(types),
        services=set(services),
        open_now=open_now,
        min_capacity=min_capacity,
        district=district,
        max_distance_km=max_distance_km,
    )
    return search.find_nearby(center, radius_km, facility_filter, deadline=deadline)


@app.get("/facilities/search", response_model=List[HealthcareFacility])
def search_facilities(
    q: str,
    types: List[FacilityType] = Query(default=[]),
    district: Optional[str] = None,
    search: FacilitySearch = Depends(get_facility_search),
    deadline: Deadline = Depends(get_deadline),
):
    """Search facilities by name, address or district."""
    return search.search(q, FacilityFilter(types=set(types), district=district), deadline=deadline)


@app.get("/facilities/{facility_id}", response_model=HealthcareFacility)
def get_facility(facility_id: UUID, search: FacilitySearch = Depends(get_facility_search)):
    """Get a specific facility."""
    return search.get_facility(facility_id)


@app.get("/facilities/{facility_id}/slots")
def get_available_slots(
    facility_id: UUID,
    day: date,
    duration_minutes: int = 30,
    scheduler: VisitScheduler = Depends(get_scheduler),
    deadline: Deadline = Depends(get_deadline),
):
    """Free appointment slots at a facility on a given day."""
    slots = scheduler.find_available_slots(facility_id, day, duration_minutes, deadline=deadline)
    return {"facility_id": str(facility_id), "date": day.isoformat(), "slots": [s.isoformat() for s in slots]}


@app.post("/facilities/{facility_id}/balance", response_model=BatchResult)
def balance_workload(
    facility_id: UUID,
    day: date,
    assigner: VisitAssigner = Depends(get_assigner),
    deadline: Deadline = Depends(get_deadline),
):
    """Redistribute visits from overloaded CHWs."""
    return assigner.balance(facility_id, day, deadline=deadline)


@app.post("/facilities/{facility_id}/assign-by-catchment")
def assign_by_catchment(
    facility_id: UUID,
    day: date,
    assigner: VisitAssigner = Depends(get_assigner),
    clock=Depends(get_clock),
    deadline: Deadline = Depends(get_deadline),
):
    """Assign a day's unassigned visits to CHWs covering each mother's area."""
    start = datetime.combine(day, time(0), tzinfo=clock.tz)
    assigned = assigner.assign_by_catchment(facility_id, start, start + timedelta(days=1), deadline=deadline)
    return {"assigned": assigned}


# Territory endpoints
@app.post("/territories/", response_model=Territory)
def create_territory(
    request: CreateTerritoryRequest,
    service: TerritoryService = Depends(get_territory_service),
    deadline: Deadline = Depends(get_deadline),
):
    """Create a territory for a CHW."""
    return service.create(request.chw_id, request.name, request.district, request.description,
                          request.boundary, deadline=deadline)


@app.get("/territories/lookup", response_model=Territory)
def find_territory_for_location(
    latitude: float,
    longitude: float,
    service: TerritoryService = Depends(get_territory_service),
    deadline: Deadline = Depends(get_deadline),
):
    """Find the territory containing a point."""
    return service.find_for_location(latitude, longitude, deadline=deadline)


@app.get("/territories/nearest-chw")
def find_nearest_chw(
    latitude: float,
    longitude: float,
    max_km: float = 50.0,
    service: TerritoryService = Depends(get_territory_service),
    deadline: Deadline = Depends(get_deadline),
):
    """Find the CHW whose territory center is closest to a point."""
    chw, distance = service.find_nearest_chw(latitude, longitude, max_km, deadline=deadline)
    return {"chw": chw.model_dump(mode="json"), "distance_km": distance,
            "distance_formatted": geo.format_distance(distance)}


@app.get("/territories/{territory_id}", response_model=Territory)
def get_territory(territory_id: UUID, service: TerritoryService = Depends(get_territory_service)):
    """Get a specific territory."""
    return service.get(territory_id)


@app.post("/territories/{territory_id}/assign", response_model=AssignmentResult)
def assign_territory(
    territory_id: UUID,
    chw_id: UUID,
    service: TerritoryService = Depends(get_territory_service),
    deadline: Deadline = Depends(get_deadline),
):
    """Assign a territory to a CHW."""
    return service.assign(chw_id, territory_id, deadline=deadline)


@app.get("/territories/{territory_id}/mothers", response_model=List[MotherInTerritory])
def get_mothers_in_territory(
    territory_id: UUID,
    service: TerritoryService = Depends(get_territory_service),
    deadline: Deadline = Depends(get_deadline),
):
    """List mothers living inside a territory."""
    return service.mothers_in_territory(territory_id, deadline=deadline)


# Routing endpoints
@app.post("/routes/", response_model=Route)
def build_route(request: RouteRequest, routes: RouteBuilder = Depends(get_route_builder)):
    """Estimate a route through the given points."""
    return routes.build_route(request.points, request.mode, request.departure_time, request.optimize)


@app.post("/routes/describe")
def describe_route(route: Route):
    """Human-readable legs of a route."""
    return {"legs": RouteBuilder.describe_route(route)}


# Health endpoints
@app.post("/health/metrics/analyze", response_model=MetricAnalysis)
def analyze_metric(request: MetricAnalysisRequest, clock=Depends(get_clock)):
    """Check a single reading against reference ranges."""
    return MetricAnalyzer(clock).analyze(request.metric, request.gestational_age_weeks)


@app.post("/health/mothers/{mother_id}/trends", response_model=TrendAnalysis)
def analyze_trends(
    mother_id: UUID,
    request: TrendRequest,
    clock=Depends(get_clock),
    deadline: Deadline = Depends(get_deadline),
):
    """Classify vital-sign trends across a series of readings."""
    return MetricAnalyzer(clock).analyze_trends(mother_id, request.metrics, deadline=deadline)


@app.post("/health/mothers/{mother_id}/risk", response_model=RiskAssessment)
def assess_risk(
    mother_id: UUID,
    store=Depends(get_store),
    clock=Depends(get_clock),
    deadline: Deadline = Depends(get_deadline),
):
    """Score a mother's risk and cache the level on her record."""
    return RiskScorer(clock, store).assess_and_cache(mother_id, deadline=deadline)


@app.get("/health/pregnancy-dates", response_model=PregnancyDateInfo)
def pregnancy_dates(lmp: date, reference: Optional[date] = None, clock=Depends(get_clock)):
    """Gestational age and milestone dates from the last menstrual period."""
    return PregnancyCalculator(clock).pregnancy_dates(lmp, reference)


@app.get("/health/bmi", response_model=BMIInfo)
def body_mass_index(height_cm: float, weight_kg: float, is_pregnant: bool = True):
    """BMI category and recommended pregnancy weight gain."""
    return PregnancyCalculator.bmi(height_cm, weight_kg, is_pregnant)


# Visit endpoints
@app.post("/visits/", response_model=Visit)
def schedule_visit(
    request: ScheduleVisitRequest,
    scheduler: VisitScheduler = Depends(get_scheduler),
    deadline: Deadline = Depends(get_deadline),
):
    """Schedule a new visit."""
    return scheduler.schedule(request.mother_id, request.facility_id, request.scheduled_time,
                              request.visit_type, request.notes, deadline=deadline)


@app.get("/visits/overdue", response_model=List[Visit])
def get_overdue_visits(skip: int = 0, limit: int = 50, scheduler: VisitScheduler = Depends(get_scheduler)):
    """Scheduled visits from the last 30 days that were never checked in."""
    return scheduler.overdue_visits(limit, skip)


@app.get("/visits/completed", response_model=List[Visit])
def get_completed_visits(
    start: datetime,
    end: datetime,
    facility_id: Optional[UUID] = None,
    skip: int = 0,
    limit: int = 50,
    scheduler: VisitScheduler = Depends(get_scheduler),
):
    """Completed visits in a date range, most recent first."""
    return scheduler.completed_visits(start, end, facility_id, limit, skip)


@app.get("/visits/{visit_id}", response_model=Visit)
def get_visit(visit_id: UUID, scheduler: VisitScheduler = Depends(get_scheduler)):
    """Get a specific visit."""
    return scheduler.get_visit(visit_id)


@app.post("/visits/{visit_id}/reschedule", response_model=Visit)
def reschedule_visit(
    visit_id: UUID,
    request: RescheduleVisitRequest,
    scheduler: VisitScheduler = Depends(get_scheduler),
    deadline: Deadline = Depends(get_deadline),
):
    """Move a visit to a new time."""
    return scheduler.reschedule(visit_id, request.scheduled_time, deadline=deadline)


@app.post("/visits/{visit_id}/cancel", response_model=Visit)
def cancel_visit(visit_id: UUID, reason: str = "", scheduler: VisitScheduler = Depends(get_scheduler)):
    """Cancel a scheduled visit."""
    return scheduler.cancel(visit_id, reason)


@app.post("/visits/{visit_id}/check-in", response_model=Visit)
def check_in_visit(visit_id: UUID, scheduler: VisitScheduler = Depends(get_scheduler)):
    """Start a visit."""
    return scheduler.check_in(visit_id)


@app.post("/visits/{visit_id}/check-out", response_model=Visit)
def check_out_visit(visit_id: UUID, notes: str = "", scheduler: VisitScheduler = Depends(get_scheduler)):
    """Complete a visit."""
    return scheduler.check_out(visit_id, notes)


@app.post("/visits/{visit_id}/follow-up", response_model=Visit)
def schedule_follow_up(
    visit_id: UUID,
    request: FollowUpRequest,
    scheduler: VisitScheduler = Depends(get_scheduler),
    deadline: Deadline = Depends(get_deadline),
):
    """Book a follow-up to an existing visit."""
    return scheduler.schedule_follow_up(visit_id, request.scheduled_time, request.notes, deadline=deadline)


@app.put("/visits/{visit_id}/notes", response_model=Visit)
def update_visit_notes(visit_id: UUID, notes: str, scheduler: VisitScheduler = Depends(get_scheduler)):
    """Replace the notes on a visit."""
    return scheduler.update_notes(visit_id, notes)


@app.get("/visits/{visit_id}/report", response_model=VisitReport)
def get_visit_report(visit_id: UUID, reporter: VisitReporter = Depends(get_reporter)):
    """Detailed report for one visit."""
    return reporter.visit_report(visit_id)


@app.post("/visits/{visit_id}/chw", response_model=Visit)
def assign_visit_chw(
    visit_id: UUID,
    chw_id: UUID,
    assigner: VisitAssigner = Depends(get_assigner),
    deadline: Deadline = Depends(get_deadline),
):
    """Assign a CHW to a visit."""
    return assigner.assign_chw(visit_id, chw_id, deadline=deadline)


@app.delete("/visits/{visit_id}/chw", response_model=Visit)
def unassign_visit_chw(visit_id: UUID, assigner: VisitAssigner = Depends(get_assigner)):
    """Remove the CHW from a visit."""
    return assigner.unassign_chw(visit_id)


@app.get("/mothers/{mother_id}/visits/upcoming", response_model=List[Visit])
def get_upcoming_visits(mother_id: UUID, limit: int = 10, scheduler: VisitScheduler = Depends(get_scheduler)):
    """Scheduled visits from now on."""
    return scheduler.upcoming(mother_id, limit)


@app.get("/mothers/{mother_id}/visits/history", response_model=List[Visit])
def get_visit_history(mother_id: UUID, skip: int = 0, limit: int = 20,
                      scheduler: VisitScheduler = Depends(get_scheduler)):
    """Past visits, most recent first."""
    return scheduler.history(mother_id, limit, skip)


@app.post("/mothers/{mother_id}/visits/generate", response_model=List[Visit])
def generate_visits(
    mother_id: UUID,
    facility_id: UUID,
    scheduler: VisitScheduler = Depends(get_scheduler),
    deadline: Deadline = Depends(get_deadline),
):
    """Create the standard antenatal visit plan for a mother."""
    return scheduler.generate_automatic(mother_id, facility_id, deadline=deadline)


@app.get("/chws/{chw_id}/route", response_model=OptimizedRoute)
def get_chw_route(
    chw_id: UUID,
    day: date,
    assigner: VisitAssigner = Depends(get_assigner),
    deadline: Deadline = Depends(get_deadline),
):
    """Plan a CHW's visits for the day."""
    return assigner.optimize_daily_route(chw_id, day, deadline=deadline)


@app.post("/reminders/process", response_model=BatchResult)
def process_reminders(scheduler: VisitScheduler = Depends(get_scheduler), deadline: Deadline = Depends(get_deadline)):
    """Send reminders for visits in the next few days."""
    return scheduler.process_reminders(deadline=deadline)


# Report endpoints
@app.get("/reports/facilities/{facility_id}", response_model=FacilitySummary)
def get_facility_summary(facility_id: UUID, start: datetime, end: datetime,
                         reporter: VisitReporter = Depends(get_reporter)):
    """Visit summary for a facility."""
    return reporter.facility_summary(facility_id, start, end)


@app.get("/reports/chws/{chw_id}", response_model=CHWSummary)
def get_chw_summary(chw_id: UUID, start: datetime, end: datetime, reporter: VisitReporter = Depends(get_reporter)):
    """Visit summary for a CHW."""
    return reporter.chw_summary(chw_id, start, end)


@app.get("/reports/districts/{district}", response_model=DistrictSummary)
def get_district_summary(
    district: str,
    start: datetime,
    end: datetime,
    reporter: VisitReporter = Depends(get_reporter),
    deadline: Deadline = Depends(get_deadline),
):
    """Visit summary across the facilities of a district."""
    return reporter.district_summary(district, start, end, deadline=deadline)


if __name__ == "__main__":
    uvicorn.run(
        "mamacare.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True
    )
