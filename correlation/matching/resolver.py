"""
Cascading Driver Attribution Resolver

Attributes a driver to a telemetry event by trying matchers in fixed
priority order and stopping at the first one that fires.
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Optional

from sqlalchemy.orm import Session

from config.logging import logger
from config.settings import settings
from correlation.matching import scoring
from correlation.matching.candidates import CandidateIndex
from correlation.matching.matchers import (
    CorrelationOutcome,
    MatchMethod,
    MatchResult,
    match_direct_source,
    match_time_window,
    match_trip_containment,
    match_vehicle_assignment,
)
from correlation.models import CorrelationKind, QualityTier, TelemetryEvent


@dataclass
class ResolverConfig:
    """Configuration for driver attribution."""
    # Skip the vehicle-assignment tier when no assignment data is maintained
    enable_vehicle_assignments: bool = True

    # Time windows around the event
    tight_window: timedelta = timedelta(minutes=60)
    loose_window: timedelta = timedelta(hours=24)

    # Cap on candidates fetched per lookup
    max_candidates: int = 50

    @classmethod
    def from_settings(cls) -> "ResolverConfig":
        return cls(
            enable_vehicle_assignments=settings.ENABLE_VEHICLE_ASSIGNMENTS,
            tight_window=timedelta(minutes=settings.TIGHT_WINDOW_MINUTES),
            loose_window=timedelta(hours=settings.LOOSE_WINDOW_HOURS),
            max_candidates=settings.MAX_CANDIDATES_PER_SOURCE,
        )


class DriverAttributionResolver:
    """
    Cascading driver resolver.

    Resolution order (first match wins, tiers are never blended):
    1. Direct source - driver id or exact name embedded in the event
    2. Vehicle assignment active at the event time
    3. Tight time window - nearest same-vehicle event within 1h naming a driver
    4. Trip containment - trip on the vehicle spanning the event
    5. Loose time window - nearest same-vehicle event within 1 day

    If nothing fires the result is an unresolved outcome (confidence 0)
    that is persisted like any other.

    Usage:
        resolver = DriverAttributionResolver(db)
        outcome = resolver.resolve(event)
        if outcome.is_resolved:
            driver_id = outcome.matched_entity_id
    """

    def __init__(
        self,
        db: Session,
        config: Optional[ResolverConfig] = None,
        scoring_config: Optional[scoring.ScoringConfig] = None,
        index: Optional[CandidateIndex] = None,
    ):
        self.db = db
        self.config = config or ResolverConfig.from_settings()
        self.scoring = scoring_config or scoring.ScoringConfig.from_settings()
        self.index = index or CandidateIndex(db, self.config.max_candidates)

        self.cascade: list[tuple[MatchMethod, Callable[[TelemetryEvent, Optional[str]], MatchResult]]] = [
            (MatchMethod.DIRECT_SOURCE, self._direct_source),
        ]
        if self.config.enable_vehicle_assignments:
            self.cascade.append((MatchMethod.VEHICLE_ASSIGNMENT, self._vehicle_assignment))
        self.cascade.extend([
            (MatchMethod.TIME_WINDOW_TIGHT, self._tight_window),
            (MatchMethod.TRIP_CONTAINMENT, self._trip_containment),
            (MatchMethod.TIME_WINDOW_LOOSE, self._loose_window),
        ])

    def resolve(self, event: TelemetryEvent) -> CorrelationOutcome:
        """
        Resolve the driver for one event.

        Returns:
            CorrelationOutcome for the event (resolved or unresolved)
        """
        vehicle_id = self.index.vehicle_id_for(event)
        breakdown: dict[str, int] = {}
        not_applicable: dict[str, str] = {}

        for method, matcher in self.cascade:
            result = matcher(event, vehicle_id)
            if not result.applicable:
                not_applicable[method.value] = result.details.get("reason", "")
                continue

            breakdown[method.value] = result.confidence
            if result.is_match:
                logger.debug(f"Event {event.id} attributed via {method.value}: {result}")
                return self._outcome(event, result, breakdown, not_applicable, vehicle_id)

        logger.debug(f"No driver found for event {event.id}")
        return self._unresolved(event, breakdown, not_applicable, vehicle_id)

    def evaluate_all(self, event: TelemetryEvent) -> list[MatchResult]:
        """Run every tier without early exit, for near-miss tracing."""
        vehicle_id = self.index.vehicle_id_for(event)
        return [matcher(event, vehicle_id) for _, matcher in self.cascade]

    # Cascade tiers

    def _direct_source(self, event, vehicle_id):
        return match_direct_source(event, self.index.drivers)

    def _vehicle_assignment(self, event, vehicle_id):
        assignments = []
        if vehicle_id and event.occurred_at:
            assignments = self.index.active_assignments(vehicle_id, event.occurred_at)
        return match_vehicle_assignment(event, vehicle_id, assignments, self.scoring)

    def _tight_window(self, event, vehicle_id):
        return self._time_window(event, vehicle_id, self.config.tight_window, tight=True)

    def _loose_window(self, event, vehicle_id):
        return self._time_window(event, vehicle_id, self.config.loose_window, tight=False)

    def _time_window(self, event, vehicle_id, window, tight):
        method = MatchMethod.TIME_WINDOW_TIGHT if tight else MatchMethod.TIME_WINDOW_LOOSE
        if not vehicle_id:
            return MatchResult.not_applicable(method, "Required input unavailable: vehicle_id")
        neighbours = self.index.events_near(event, window)
        return match_time_window(event, neighbours, self.index.drivers, window, tight, self.scoring)

    def _trip_containment(self, event, vehicle_id):
        if not vehicle_id:
            return MatchResult.not_applicable(
                MatchMethod.TRIP_CONTAINMENT, "Required input unavailable: vehicle_id"
            )
        trips = []
        if event.occurred_at:
            trips = self.index.trips_containing(vehicle_id, event.occurred_at)
        return match_trip_containment(
            event, trips, self.index.drivers, self.scoring.trip_containment_confidence
        )

    # Outcomes

    def _outcome(self, event, result, breakdown, not_applicable, vehicle_id) -> CorrelationOutcome:
        confidence = scoring.clamp_confidence(result.confidence)
        flags = scoring.review_flags(confidence, self.scoring)
        return CorrelationOutcome(
            kind=CorrelationKind.DRIVER_ATTRIBUTION,
            subject_id=event.id,
            matched_entity_id=result.entity_id,
            confidence=confidence,
            quality_tier=scoring.quality_tier(confidence),
            match_methods=[result.method.value],
            breakdown=breakdown,
            quality_flags=flags,
            requires_review=bool(flags),
            details={
                "vehicle_id": vehicle_id,
                "matched_by": result.details,
                "not_applicable": not_applicable,
            },
        )

    def _unresolved(self, event, breakdown, not_applicable, vehicle_id) -> CorrelationOutcome:
        return CorrelationOutcome(
            kind=CorrelationKind.DRIVER_ATTRIBUTION,
            subject_id=event.id,
            matched_entity_id=None,
            confidence=0,
            quality_tier=QualityTier.POOR,
            match_methods=[MatchMethod.UNRESOLVED.value],
            breakdown=breakdown,
            quality_flags=[scoring.FLAG_UNRESOLVED, scoring.FLAG_LOW_CONFIDENCE],
            requires_review=True,
            details={
                "vehicle_id": vehicle_id,
                "source": event.source,
                "device_id": event.device_id,
                "vehicle_registration": event.vehicle_registration,
                "not_applicable": not_applicable,
            },
        )
