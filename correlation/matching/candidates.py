"""
Candidate lookup for the matchers.

Every query here is bounded by a time window and/or spatial radius and
capped at max_candidates; an empty list is a normal result. Driver and
terminal reference data is loaded once per index, so an index should
live no longer than the session it was built with.
"""

import bisect
import math
from datetime import datetime, timedelta
from typing import Iterator, Optional

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from config.logging import logger
from correlation.errors import InvalidCoordinate
from correlation.matching.normalize import (
    driver_name_variants,
    normalize_driver_name,
    normalize_location_name,
    normalize_registration,
)
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

EARTH_RADIUS_KM = 6371.0088


def validate_coordinate(latitude: Optional[float], longitude: Optional[float]) -> bool:
    """
    True when both values are present and in range, False when either is
    missing. Raises InvalidCoordinate for out-of-range or non-numeric values.
    """
    if latitude is None or longitude is None:
        return False
    try:
        lat = float(latitude)
        lon = float(longitude)
    except (TypeError, ValueError):
        raise InvalidCoordinate(latitude, longitude)
    if math.isnan(lat) or math.isnan(lon) or not (-90 <= lat <= 90) or not (-180 <= lon <= 180):
        raise InvalidCoordinate(latitude, longitude)
    return True


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in kilometres."""
    for lat, lon in ((lat1, lon1), (lat2, lon2)):
        validate_coordinate(lat, lon)

    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)

    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(min(1.0, a)))


def nearest_in_time(records: list, moment: datetime, key=lambda r: r.occurred_at) -> Iterator:
    """
    Yield time-sorted records in order of increasing |record time - moment|.

    Walks outward from the insertion point using the prior/next neighbours.
    On an exact tie the earlier record is yielded first.
    """
    times = [key(r) for r in records]
    after = bisect.bisect_left(times, moment)
    before = after - 1

    while before >= 0 or after < len(records):
        if after >= len(records):
            yield records[before]
            before -= 1
        elif before < 0:
            yield records[after]
            after += 1
        elif moment - times[before] <= times[after] - moment:
            yield records[before]
            before -= 1
        else:
            yield records[after]
            after += 1


class DriverDirectory:
    """
    Resolves free-text driver names to driver ids.

    A name resolves only when it identifies exactly one driver: first by
    exact canonical name or alias, then by normalized name, then by
    nickname/middle-name variants.
    """

    def __init__(self, db: Session):
        self.db = db
        self._exact: dict[str, set[str]] = {}
        self._normalized: dict[str, set[str]] = {}
        self._variants: dict[str, set[str]] = {}
        self._load()

    def _load(self):
        drivers = self.db.scalars(select(Driver).where(Driver.active.is_(True))).all()
        for driver in drivers:
            for name in driver.all_names():
                if not name:
                    continue
                self._exact.setdefault(name.strip().lower(), set()).add(driver.id)
                normalized = normalize_driver_name(name)
                self._normalized.setdefault(normalized, set()).add(driver.id)
                for variant in driver_name_variants(name):
                    self._variants.setdefault(variant, set()).add(driver.id)
        logger.debug(f"Driver directory loaded: {len(drivers)} drivers")

    def resolve(self, name: Optional[str]) -> tuple[Optional[str], Optional[str]]:
        """
        Resolve a name.

        Returns:
            (driver_id, how) where how is "exact", "normalized" or "variant";
            (None, None) when the name is empty, unknown or ambiguous.
        """
        if not name or not name.strip():
            return None, None

        ids = self._exact.get(name.strip().lower(), set())
        if len(ids) == 1:
            return next(iter(ids)), "exact"

        ids = self._normalized.get(normalize_driver_name(name), set())
        if len(ids) == 1:
            return next(iter(ids)), "normalized"

        matches: set[str] = set()
        for variant in driver_name_variants(name):
            matches |= self._variants.get(variant, set())
        if len(matches) == 1:
            return next(iter(matches)), "variant"

        return None, None

    def resolve_strict(self, name: Optional[str]) -> Optional[str]:
        """Exact or normalized resolution only."""
        driver_id, how = self.resolve(name)
        return driver_id if how in ("exact", "normalized") else None


class CandidateIndex:
    """
    Bounded candidate retrieval per subject record.

    Usage:
        index = CandidateIndex(db, max_candidates=50)
        neighbours = index.events_near(event, timedelta(hours=1))
    """

    def __init__(self, db: Session, max_candidates: int = 50):
        self.db = db
        self.max_candidates = max_candidates
        self.drivers = DriverDirectory(db)
        self._vehicle_by_key: Optional[dict[str, str]] = None
        self._terminals: Optional[list[Terminal]] = None
        self._terminal_by_name: Optional[dict[str, Terminal]] = None

    # Vehicles

    def vehicle_id_for(self, record) -> Optional[str]:
        """Vehicle id of a source record, falling back to its registration."""
        if record.vehicle_id:
            return record.vehicle_id

        key = normalize_registration(getattr(record, "vehicle_registration", None))
        if not key:
            return None

        if self._vehicle_by_key is None:
            self._vehicle_by_key = {}
            for vehicle in self.db.scalars(select(Vehicle)).all():
                vehicle_key = vehicle.registration_key or normalize_registration(vehicle.registration)
                if vehicle_key:
                    self._vehicle_by_key.setdefault(vehicle_key, vehicle.id)

        return self._vehicle_by_key.get(key)

    # Driver attribution candidates

    def events_near(self, event: TelemetryEvent, window: timedelta) -> list[TelemetryEvent]:
        """
        Other telemetry events on the same vehicle within +/- window,
        sorted by time. Events carrying only a registration are included
        when it normalizes to the same vehicle.
        """
        vehicle_id = self.vehicle_id_for(event)
        if not vehicle_id or not event.occurred_at:
            return []

        in_window = (
            TelemetryEvent.id != event.id,
            TelemetryEvent.occurred_at >= event.occurred_at - window,
            TelemetryEvent.occurred_at <= event.occurred_at + window,
        )
        stmt = select(TelemetryEvent).where(TelemetryEvent.vehicle_id == vehicle_id, *in_window)
        events = list(self.db.scalars(stmt).all())
        events += self._registration_only(TelemetryEvent, vehicle_id, *in_window)
        events.sort(key=lambda e: (e.occurred_at, e.id))
        return self._closest(events, event.occurred_at)

    def active_assignments(self, vehicle_id: str, moment: datetime) -> list[VehicleAssignment]:
        """
        Assignments for the vehicle active at moment, most authoritative
        first: primary before temporary, then confidence, then recency.
        """
        stmt = select(VehicleAssignment).where(
            VehicleAssignment.vehicle_id == vehicle_id,
            VehicleAssignment.valid_from <= moment,
            or_(
                VehicleAssignment.valid_until.is_(None),
                VehicleAssignment.valid_until >= moment,
            ),
        )
        assignments = list(self.db.scalars(stmt).all())
        assignments.sort(
            key=lambda a: (
                0 if a.assignment_type == AssignmentType.PRIMARY else 1,
                -(a.confidence_score if a.confidence_score is not None else 0.0),
                -a.valid_from.timestamp(),
                a.id,
            )
        )
        return assignments[: self.max_candidates]

    def trips_containing(self, vehicle_id: str, moment: datetime) -> list[Trip]:
        """
        Trips on the vehicle whose [start, end] contains moment, latest
        start first. Registration-only trips are matched like events.
        """
        spans = (Trip.start_time <= moment, Trip.end_time >= moment)
        stmt = select(Trip).where(Trip.vehicle_id == vehicle_id, *spans)
        trips = list(self.db.scalars(stmt).all())
        trips += self._registration_only(Trip, vehicle_id, *spans)
        trips.sort(key=lambda t: (-t.start_time.timestamp(), t.id))
        return trips[: self.max_candidates]

    # Trip-delivery candidates

    def deliveries_for_trip(self, trip: Trip, max_days: int) -> list[DeliveryRecord]:
        """
        Deliveries within +/- max_days of the trip date, nearest date first.

        A delivery carrying a different vehicle than the trip is never a
        candidate; deliveries without a vehicle are.
        """
        trip_date = trip.trip_date
        if trip_date is None:
            return []

        vehicle_id = self.vehicle_id_for(trip)
        stmt = select(DeliveryRecord).where(
            DeliveryRecord.delivery_date >= trip_date - timedelta(days=max_days),
            DeliveryRecord.delivery_date <= trip_date + timedelta(days=max_days),
        )
        if vehicle_id:
            stmt = stmt.where(
                or_(
                    DeliveryRecord.vehicle_id.is_(None),
                    DeliveryRecord.vehicle_id == vehicle_id,
                )
            )

        deliveries = list(self.db.scalars(stmt).all())
        deliveries.sort(
            key=lambda d: (abs((d.delivery_date - trip_date).days), d.delivery_key)
        )
        return deliveries[: self.max_candidates]

    def terminal_for(self, delivery: DeliveryRecord) -> Optional[Terminal]:
        """Terminal named on the delivery, by canonical name or alias."""
        if not delivery.terminal:
            return None
        self._load_terminals()
        return self._terminal_by_name.get(normalize_location_name(delivery.terminal))

    def terminals_within(self, latitude: float, longitude: float, radius_km: float) -> list[tuple[Terminal, float]]:
        """Active terminals within radius_km of a point, nearest first."""
        if not validate_coordinate(latitude, longitude):
            return []
        self._load_terminals()

        hits = []
        for terminal in self._terminals:
            distance = haversine_km(latitude, longitude, terminal.latitude, terminal.longitude)
            if distance <= radius_km:
                hits.append((terminal, distance))
        hits.sort(key=lambda hit: (hit[1], hit[0].name))
        return hits[: self.max_candidates]

    # Internals

    def _load_terminals(self):
        if self._terminals is not None:
            return
        self._terminals = list(
            self.db.scalars(select(Terminal).where(Terminal.active.is_(True))).all()
        )
        self._terminal_by_name = {}
        for terminal in self._terminals:
            for name in [terminal.name] + list(terminal.aliases or []):
                # "Kewdale" should also answer to "Kewdale Terminal" / "AU TERM KEWDALE"
                for key in (normalize_location_name(name), normalize_location_name(f"TERMINAL {name}")):
                    self._terminal_by_name.setdefault(key, terminal)

    def _registration_only(self, model, vehicle_id: str, *criteria) -> list:
        """Rows with no vehicle id whose registration resolves to vehicle_id."""
        stmt = select(model).where(
            model.vehicle_id.is_(None),
            model.vehicle_registration.is_not(None),
            *criteria,
        )
        return [row for row in self.db.scalars(stmt).all() if self.vehicle_id_for(row) == vehicle_id]

    def _closest(self, events: list[TelemetryEvent], moment: datetime) -> list[TelemetryEvent]:
        if len(events) <= self.max_candidates:
            return events
        kept = []
        for event in nearest_in_time(events, moment):
            kept.append(event)
            if len(kept) == self.max_candidates:
                break
        kept.sort(key=lambda e: (e.occurred_at, e.id))
        return kept
