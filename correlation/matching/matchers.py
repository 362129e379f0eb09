"""
Matching strategies for correlation.

Each matcher takes a subject record plus pre-fetched candidates and
returns a MatchResult. A result is either not applicable (required input
missing), applicable without a match (confidence 0) or a match.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Optional

from rapidfuzz import fuzz

from correlation.errors import InputUnavailable
from correlation.matching import scoring
from correlation.matching.candidates import (
    DriverDirectory,
    haversine_km,
    nearest_in_time,
    validate_coordinate,
)
from correlation.matching.normalize import (
    extract_business_identifier,
    extract_location_reference,
    normalize_location_name,
)
from correlation.models import (
    CorrelationKind,
    DeliveryRecord,
    QualityTier,
    TelemetryEvent,
    Terminal,
    Trip,
    VehicleAssignment,
)


class MatchMethod(Enum):
    """Matcher that produced a signal."""
    # Driver attribution, in cascade priority order
    DIRECT_SOURCE = "direct_source"
    VEHICLE_ASSIGNMENT = "vehicle_assignment"
    TIME_WINDOW_TIGHT = "time_window_tight"
    TRIP_CONTAINMENT = "trip_containment"
    TIME_WINDOW_LOOSE = "time_window_loose"
    UNRESOLVED = "unresolved"

    # Trip-delivery, blended
    TEXT = "text"
    GEO = "geo"
    TEMPORAL = "temporal"


@dataclass
class MatchResult:
    """Result of a single matcher."""
    method: MatchMethod
    applicable: bool = True
    confidence: int = 0
    entity_id: Optional[str] = None
    signal: Optional[float] = None
    details: dict = field(default_factory=dict)

    @property
    def is_match(self) -> bool:
        return self.applicable and self.confidence > 0

    @classmethod
    def not_applicable(cls, method: MatchMethod, reason: str) -> "MatchResult":
        return cls(method=method, applicable=False, details={"reason": reason})

    @classmethod
    def no_match(cls, method: MatchMethod, **details) -> "MatchResult":
        return cls(method=method, applicable=True, confidence=0, details=details)

    def __repr__(self) -> str:
        if not self.applicable:
            return f"<MatchResult({self.method.value}, not applicable)>"
        return f"<MatchResult({self.method.value}, entity={self.entity_id}, conf={self.confidence})>"


@dataclass
class CorrelationOutcome:
    """Resolved correlation for one subject, ready for the store."""
    kind: CorrelationKind
    subject_id: str
    matched_entity_id: Optional[str]
    confidence: int
    quality_tier: QualityTier
    match_methods: list[str] = field(default_factory=list)
    breakdown: dict = field(default_factory=dict)
    quality_flags: list[str] = field(default_factory=list)
    requires_review: bool = False
    details: dict = field(default_factory=dict)

    @property
    def match_key(self) -> str:
        if self.kind == CorrelationKind.DRIVER_ATTRIBUTION:
            return self.subject_id
        return f"{self.subject_id}:{self.matched_entity_id}"

    @property
    def is_resolved(self) -> bool:
        return self.matched_entity_id is not None


def combined_similarity(s1: str, s2: str) -> float:
    """
    Combined fuzzy similarity (0-100).

    Weights:
    - Token sort ratio: 40% (handles word reordering)
    - Token set ratio: 40% (handles partial matches)
    - Ratio: 20% (standard similarity)
    """
    token_sort = fuzz.token_sort_ratio(s1, s2)
    token_set = fuzz.token_set_ratio(s1, s2)
    ratio = fuzz.ratio(s1, s2)

    return (token_sort * 0.4) + (token_set * 0.4) + (ratio * 0.2)


def _require(value, field_name: str):
    if value is None or (isinstance(value, str) and not value.strip()):
        raise InputUnavailable(field_name)
    return value


# Driver attribution matchers


def match_direct_source(event: TelemetryEvent, drivers: DriverDirectory) -> MatchResult:
    """
    Driver identified by the source system itself.

    An embedded driver id is authoritative. An embedded name counts only
    when it resolves exactly (or after normalization) to a single driver.
    """
    method = MatchMethod.DIRECT_SOURCE
    if event.driver_id:
        return MatchResult(
            method=method,
            confidence=scoring.DIRECT_SOURCE_CONFIDENCE,
            entity_id=event.driver_id,
            details={"via": "embedded_driver_id"},
        )

    try:
        name = _require(event.driver_name, "driver_name")
    except InputUnavailable as e:
        return MatchResult.not_applicable(method, str(e))

    driver_id = drivers.resolve_strict(name)
    if not driver_id:
        return MatchResult.no_match(method, driver_name=name)

    return MatchResult(
        method=method,
        confidence=scoring.DIRECT_SOURCE_CONFIDENCE,
        entity_id=driver_id,
        details={"via": "embedded_driver_name", "driver_name": name},
    )


def match_vehicle_assignment(
    event: TelemetryEvent,
    vehicle_id: Optional[str],
    assignments: list[VehicleAssignment],
    config: scoring.ScoringConfig,
) -> MatchResult:
    """
    Driver assigned to the vehicle at the event time.

    Assignments arrive most authoritative first; overlapping assignments
    are resolved by taking the head of the list.
    """
    method = MatchMethod.VEHICLE_ASSIGNMENT
    try:
        _require(vehicle_id, "vehicle_id")
        _require(event.occurred_at, "occurred_at")
    except InputUnavailable as e:
        return MatchResult.not_applicable(method, str(e))

    if not assignments:
        return MatchResult.no_match(method)

    chosen = assignments[0]
    return MatchResult(
        method=method,
        confidence=scoring.score_assignment(
            chosen.confidence_score, config.assignment_default_confidence
        ),
        entity_id=chosen.driver_id,
        signal=chosen.confidence_score,
        details={
            "assignment_id": chosen.id,
            "assignment_type": chosen.assignment_type.value,
            "overlapping_assignments": len(assignments),
        },
    )


def match_time_window(
    event: TelemetryEvent,
    neighbours: list[TelemetryEvent],
    drivers: DriverDirectory,
    window: timedelta,
    tight: bool,
    config: Optional[scoring.ScoringConfig] = None,
) -> MatchResult:
    """
    Driver named by the nearest-in-time event on the same vehicle.

    Neighbours must be sorted by time. The smallest |delta t| inside the
    window wins; on an exact tie the earlier neighbour wins.
    """
    method = MatchMethod.TIME_WINDOW_TIGHT if tight else MatchMethod.TIME_WINDOW_LOOSE
    try:
        moment = _require(event.occurred_at, "occurred_at")
    except InputUnavailable as e:
        return MatchResult.not_applicable(method, str(e))

    examined = 0
    for neighbour in nearest_in_time(neighbours, moment):
        delta = abs(neighbour.occurred_at - moment)
        if delta > window:
            break
        examined += 1

        driver_id = neighbour.driver_id
        if not driver_id:
            driver_id, _ = drivers.resolve(neighbour.driver_name)
        if not driver_id:
            continue

        minutes = delta.total_seconds() / 60
        return MatchResult(
            method=method,
            confidence=scoring.score_time_window(minutes, tight, config),
            entity_id=driver_id,
            signal=round(minutes, 2),
            details={
                "neighbour_event_id": neighbour.id,
                "neighbour_source": neighbour.source,
                "delta_minutes": round(minutes, 2),
            },
        )

    return MatchResult.no_match(method, neighbours_examined=examined)


def match_trip_containment(
    event: TelemetryEvent,
    trips: list[Trip],
    drivers: DriverDirectory,
    confidence: int,
) -> MatchResult:
    """Driver of the trip (latest start first) whose span contains the event."""
    method = MatchMethod.TRIP_CONTAINMENT
    try:
        moment = _require(event.occurred_at, "occurred_at")
    except InputUnavailable as e:
        return MatchResult.not_applicable(method, str(e))

    for trip in trips:
        if not (trip.start_time and trip.end_time and trip.start_time <= moment <= trip.end_time):
            continue
        driver_id = trip.driver_id
        if not driver_id:
            driver_id, _ = drivers.resolve(trip.driver_name)
        if driver_id:
            return MatchResult(
                method=method,
                confidence=confidence,
                entity_id=driver_id,
                details={"trip_id": trip.id, "trip_driver_name": trip.driver_name},
            )

    return MatchResult.no_match(method, trips_examined=len(trips))


# Trip-delivery matchers


def compare_location_text(text1: str, text2: str, threshold: float) -> tuple[str, int, float]:
    """
    Compare two location/customer names.

    Returns (method tag, confidence, similarity ratio 0-1).
    """
    if text1.strip().upper() == text2.strip().upper():
        return "exact", scoring.TEXT_EXACT, 1.0

    norm1 = normalize_location_name(text1)
    norm2 = normalize_location_name(text2)
    if norm1 and norm1 == norm2:
        return "normalized_exact", scoring.TEXT_NORMALIZED_EXACT, 1.0

    ratio = combined_similarity(norm1, norm2) / 100.0

    business1 = extract_business_identifier(text1)
    if business1 and business1 == extract_business_identifier(text2):
        return "business_identifier", scoring.TEXT_BUSINESS_IDENTIFIER, ratio

    location1 = extract_location_reference(text1)
    if location1 and location1 == extract_location_reference(text2):
        return "location_reference", scoring.TEXT_LOCATION_REFERENCE, ratio

    if ratio >= threshold:
        return "fuzzy", scoring.score_fuzzy_text(ratio), ratio

    return "none", 0, ratio


def match_text(trip: Trip, delivery: DeliveryRecord, threshold: float) -> MatchResult:
    """Best text match of trip start/end locations against customer and terminal."""
    method = MatchMethod.TEXT
    trip_texts = [t for t in (trip.end_location, trip.start_location) if t and t.strip()]
    delivery_texts = [t for t in (delivery.customer, delivery.terminal) if t and t.strip()]
    if not trip_texts:
        return MatchResult.not_applicable(method, "trip has no location text")
    if not delivery_texts:
        return MatchResult.not_applicable(method, "delivery has no customer or terminal")

    best = None
    for trip_text in trip_texts:
        for delivery_text in delivery_texts:
            tag, confidence, ratio = compare_location_text(trip_text, delivery_text, threshold)
            if best is None or (confidence, ratio) > (best[1], best[2]):
                best = (tag, confidence, ratio, trip_text, delivery_text)

    tag, confidence, ratio, trip_text, delivery_text = best
    return MatchResult(
        method=method,
        confidence=confidence,
        entity_id=delivery.id,
        signal=round(ratio, 4),
        details={
            "text_method": tag,
            "trip_text": trip_text,
            "delivery_text": delivery_text,
        },
    )


def match_geo(
    trip: Trip,
    delivery: DeliveryRecord,
    terminal: Optional[Terminal],
    search_radius_km: float,
    config: Optional[scoring.ScoringConfig] = None,
) -> MatchResult:
    """
    Distance from the nearer trip endpoint to the delivery's terminal.

    Raises InvalidCoordinate for malformed coordinates on either side.
    """
    method = MatchMethod.GEO
    if terminal is None:
        return MatchResult.not_applicable(method, "delivery terminal unknown")
    if not validate_coordinate(terminal.latitude, terminal.longitude):
        return MatchResult.not_applicable(method, "terminal has no coordinates")

    distances = []
    for label, lat, lon in (
        ("end", trip.end_latitude, trip.end_longitude),
        ("start", trip.start_latitude, trip.start_longitude),
    ):
        if validate_coordinate(lat, lon):
            distances.append(
                (haversine_km(lat, lon, terminal.latitude, terminal.longitude), label)
            )
    if not distances:
        return MatchResult.not_applicable(method, "trip has no coordinates")

    distance_km, endpoint = min(distances)
    return MatchResult(
        method=method,
        confidence=scoring.score_geo(distance_km, search_radius_km, config),
        entity_id=delivery.id,
        signal=round(distance_km, 3),
        details={
            "terminal": terminal.name,
            "trip_endpoint": endpoint,
            "distance_km": round(distance_km, 3),
            "within_service_area": distance_km <= (terminal.service_radius_km or 0),
        },
    )


def match_temporal(
    trip: Trip,
    delivery: DeliveryRecord,
    max_days: int,
    config: Optional[scoring.ScoringConfig] = None,
) -> MatchResult:
    """
    Calendar-day gap between trip and delivery.

    A gap beyond max_days is a hard reject, reported via details["rejected"].
    """
    method = MatchMethod.TEMPORAL
    if trip.trip_date is None:
        return MatchResult.not_applicable(method, "trip has no start time")
    if delivery.delivery_date is None:
        return MatchResult.not_applicable(method, "delivery has no date")

    days = abs((delivery.delivery_date - trip.trip_date).days)
    if days > max_days:
        return MatchResult.no_match(method, date_gap_days=days, rejected=True)

    return MatchResult(
        method=method,
        confidence=scoring.score_temporal(days, config),
        entity_id=delivery.id,
        signal=days,
        details={"date_gap_days": days},
    )
