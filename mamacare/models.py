"""
SQLAlchemy models for the MamaCare clinical planner.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, Date, DateTime, Float, Text, ForeignKey, JSON, Uuid
from sqlalchemy.orm import relationship
from geoalchemy2 import Geometry

from mamacare.config import SRID
from mamacare.database import Base

SCHEMA = 'mamacare'


def utcnow():
    return datetime.now(timezone.utc)


def point_wkt(latitude, longitude):
    """EWKT for a WGS84 point; PostGIS expects longitude first."""
    if latitude is None or longitude is None:
        return None
    return f"SRID={SRID};POINT({longitude} {latitude})"


def polygon_wkt(points):
    """EWKT for a closed polygon from (latitude, longitude) pairs."""
    ring = list(points)
    if ring[0] != ring[-1]:
        ring.append(ring[0])
    coords = ", ".join(f"{lng} {lat}" for lat, lng in ring)
    return f"SRID={SRID};POLYGON(({coords}))"


class User(Base):
    __tablename__ = "users"
    __table_args__ = {'schema': SCHEMA}

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(200), nullable=False)
    role = Column(String(20), nullable=False, index=True)
    phone_number = Column(String(30))
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # Relationships
    chw_profile = relationship("CHWProfile", back_populates="user", uselist=False)
    device_tokens = relationship("DeviceToken", back_populates="user")


class CHWProfile(Base):
    __tablename__ = "chw_profiles"
    __table_args__ = {'schema': SCHEMA}

    user_id = Column(Uuid, ForeignKey(f'{SCHEMA}.users.id'), primary_key=True)
    facility_id = Column(Uuid, ForeignKey(f'{SCHEMA}.healthcare_facilities.id'), index=True)
    catchment_area = Column(String(100), index=True)
    capacity = Column(Integer)
    home_latitude = Column(Float)
    home_longitude = Column(Float)
    home_geometry = Column(Geometry('POINT', srid=SRID, spatial_index=True))
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # Relationships
    user = relationship("User", back_populates="chw_profile")


class Mother(Base):
    __tablename__ = "mothers"
    __table_args__ = {'schema': SCHEMA}

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey(f'{SCHEMA}.users.id'), nullable=False, index=True)
    lmp = Column(Date)
    date_of_birth = Column(Date)
    blood_type = Column(String(10), default='unknown')
    health_conditions = Column(JSON, default=list)
    previous_pregnancies = Column(Integer, default=0)
    previous_deliveries = Column(Integer, default=0)
    previous_caesareans = Column(Integer, default=0)
    previous_complications = Column(JSON, default=list)
    latitude = Column(Float)
    longitude = Column(Float)
    geometry = Column(Geometry('POINT', srid=SRID, spatial_index=True))
    catchment_area = Column(String(100), index=True)
    risk_level = Column(String(10), default='low')
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # Relationships
    visits = relationship("Visit", back_populates="mother", cascade="all, delete-orphan")
    health_metrics = relationship("HealthMetric", back_populates="mother", cascade="all, delete-orphan")


class HealthcareFacility(Base):
    __tablename__ = "healthcare_facilities"
    __table_args__ = {'schema': SCHEMA}

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(200), nullable=False, index=True)
    district = Column(String(100), index=True)
    address = Column(Text, default='')
    facility_type = Column(String(30))
    capacity = Column(Integer, default=0)
    opening_hour = Column(Integer)
    closing_hour = Column(Integer)
    services_offered = Column(JSON, default=list)
    operating_hours = Column(JSON)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    geometry = Column(Geometry('POINT', srid=SRID, spatial_index=True))
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # Relationships
    visits = relationship("Visit", back_populates="facility")


class Territory(Base):
    __tablename__ = "territories"
    __table_args__ = {'schema': SCHEMA}

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    chw_id = Column(Uuid, ForeignKey(f'{SCHEMA}.users.id'), index=True)
    name = Column(String(200), nullable=False)
    district = Column(String(100), index=True)
    description = Column(Text, default='')
    boundary_points = Column(JSON, nullable=False)
    center_latitude = Column(Float, nullable=False)
    center_longitude = Column(Float, nullable=False)
    geometry = Column(Geometry('POLYGON', srid=SRID, spatial_index=True))
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class Visit(Base):
    __tablename__ = "visits"
    __table_args__ = {'schema': SCHEMA}

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    mother_id = Column(Uuid, ForeignKey(f'{SCHEMA}.mothers.id'), nullable=False, index=True)
    facility_id = Column(Uuid, ForeignKey(f'{SCHEMA}.healthcare_facilities.id'), nullable=False, index=True)
    chw_id = Column(Uuid, ForeignKey(f'{SCHEMA}.users.id'), index=True)
    clinician_id = Column(Uuid, ForeignKey(f'{SCHEMA}.users.id'))
    scheduled_time = Column(DateTime(timezone=True), nullable=False, index=True)
    check_in_time = Column(DateTime(timezone=True))
    check_out_time = Column(DateTime(timezone=True))
    visit_type = Column(String(20), default='routine')
    notes = Column(Text, default='')
    status = Column(String(20), default='scheduled', index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # Relationships
    mother = relationship("Mother", back_populates="visits")
    facility = relationship("HealthcareFacility", back_populates="visits")


class HealthMetric(Base):
    __tablename__ = "health_metrics"
    __table_args__ = {'schema': SCHEMA}

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    mother_id = Column(Uuid, ForeignKey(f'{SCHEMA}.mothers.id'), nullable=False, index=True)
    visit_id = Column(Uuid, ForeignKey(f'{SCHEMA}.visits.id'))
    recorded_by = Column(Uuid, ForeignKey(f'{SCHEMA}.users.id'))
    recorded_at = Column(DateTime(timezone=True), nullable=False, index=True)
    vital_signs = Column(JSON, nullable=False)
    notes = Column(Text, default='')
    created_at = Column(DateTime(timezone=True), default=utcnow)

    # Relationships
    mother = relationship("Mother", back_populates="health_metrics")


class DeviceToken(Base):
    __tablename__ = "device_tokens"
    __table_args__ = {'schema': SCHEMA}

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Uuid, ForeignKey(f'{SCHEMA}.users.id'), nullable=False, index=True)
    token = Column(String(300), unique=True, nullable=False)
    provider = Column(String(20), default='expo')
    created_at = Column(DateTime(timezone=True), default=utcnow)

    # Relationships
    user = relationship("User", back_populates="device_tokens")
