"""
Shared fixtures: a file-backed SQLite database per test plus seed helpers.
"""

import os
import sys
from datetime import date, datetime
from pathlib import Path

# Keep test runs from writing log files into the project
os.environ.setdefault("LOG_TO_FILE", "false")

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

import pytest
from sqlalchemy.orm import sessionmaker

from correlation.database import build_engine, init_db
from correlation.matching.normalize import normalize_registration
from correlation.models import (
    AssignmentType,
    DeliveryRecord,
    Driver,
    TelemetryEvent,
    Terminal,
    Trip,
    Vehicle,
    VehicleAssignment,
)

# Kewdale terminal, Perth
KEWDALE = (-31.98, 115.96)


class Factory:
    """Seed helpers. Every helper commits so worker sessions can see the rows."""

    def __init__(self, db):
        self.db = db
        self._counter = 0

    def _save(self, obj):
        self.db.add(obj)
        self.db.commit()
        return obj

    def vehicle(self, registration="1ABC234", fleet="Stevemacs"):
        return self._save(Vehicle(
            registration=registration,
            registration_key=normalize_registration(registration),
            fleet=fleet,
        ))

    def driver(self, full_name, aliases=None):
        return self._save(Driver(full_name=full_name, name_aliases=aliases or {}))

    def assignment(self, vehicle, driver, valid_from, valid_until=None,
                   assignment_type=AssignmentType.PRIMARY, confidence=None):
        return self._save(VehicleAssignment(
            vehicle_id=vehicle.id,
            driver_id=driver.id,
            valid_from=valid_from,
            valid_until=valid_until,
            assignment_type=assignment_type,
            confidence_score=confidence,
            source="test",
        ))

    def event(self, occurred_at, vehicle=None, source="guardian", driver_name=None,
              driver_id=None, device_id=None, registration=None, fleet="Stevemacs"):
        return self._save(TelemetryEvent(
            source=source,
            device_id=device_id,
            vehicle_id=vehicle.id if vehicle else None,
            vehicle_registration=registration or (vehicle.registration if vehicle else None),
            fleet=fleet,
            occurred_at=occurred_at,
            driver_name=driver_name,
            driver_id=driver_id,
            event_type="fatigue",
        ))

    def trip(self, start_time, end_time, vehicle=None, start_location=None, end_location=None,
             start_point=None, end_point=None, driver_name=None, fleet="Stevemacs", registration=None):
        return self._save(Trip(
            vehicle_id=vehicle.id if vehicle else None,
            vehicle_registration=registration or (vehicle.registration if vehicle else None),
            fleet=fleet,
            start_time=start_time,
            end_time=end_time,
            start_location=start_location,
            end_location=end_location,
            start_latitude=start_point[0] if start_point else None,
            start_longitude=start_point[1] if start_point else None,
            end_latitude=end_point[0] if end_point else None,
            end_longitude=end_point[1] if end_point else None,
            driver_name=driver_name,
        ))

    def delivery(self, delivery_date: date, customer=None, terminal="Kewdale", vehicle=None, key=None):
        self._counter += 1
        return self._save(DeliveryRecord(
            delivery_key=key or f"BOL-{self._counter:05d}",
            delivery_date=delivery_date,
            customer=customer,
            terminal=terminal,
            carrier="SMB",
            vehicle_id=vehicle.id if vehicle else None,
        ))

    def terminal(self, name="Kewdale", point=KEWDALE, radius_km=50.0, aliases=None):
        return self._save(Terminal(
            name=name,
            latitude=point[0],
            longitude=point[1],
            service_radius_km=radius_km,
            aliases=aliases or [],
        ))


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'correlation_test.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def factory(db):
    return Factory(db)


@pytest.fixture
def at():
    """Build datetimes on a fixed test day: at(14, 25) -> 2025-03-10 14:25."""
    def build(hour, minute=0, day=10):
        return datetime(2025, 3, day, hour, minute)
    return build
