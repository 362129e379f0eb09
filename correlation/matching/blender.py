"""
Weighted Trip-Delivery Blender

Runs every applicable trip-delivery matcher and combines them into one
overall confidence. Weights of matchers that do not apply are
redistributed proportionally over the ones that do.
"""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from config.logging import logger
from config.settings import settings
from correlation.matching import scoring
from correlation.matching.candidates import CandidateIndex
from correlation.matching.matchers import (
    CorrelationOutcome,
    MatchMethod,
    MatchResult,
    match_geo,
    match_temporal,
    match_text,
)
from correlation.models import CorrelationKind, DeliveryRecord, QualityTier, Trip


@dataclass
class BlenderConfig:
    """Configuration for trip-delivery blending."""
    text_weight: float = 0.4
    geo_weight: float = 0.4
    temporal_weight: float = 0.2

    # Matchers switched off here are treated as not applicable
    enable_text: bool = True
    enable_geo: bool = True
    enable_temporal: bool = True

    max_candidates: int = 50

    def __post_init__(self):
        weights = [self.text_weight, self.geo_weight, self.temporal_weight]
        if any(w < 0 for w in weights):
            raise ValueError(f"Blend weights must be non-negative: {weights}")
        if sum(weights) <= 0:
            raise ValueError("Blend weights must have a positive sum")

    @property
    def weights(self) -> dict[MatchMethod, float]:
        return {
            MatchMethod.TEXT: self.text_weight,
            MatchMethod.GEO: self.geo_weight,
            MatchMethod.TEMPORAL: self.temporal_weight,
        }

    @classmethod
    def from_settings(cls) -> "BlenderConfig":
        return cls(
            text_weight=settings.TEXT_WEIGHT,
            geo_weight=settings.GEO_WEIGHT,
            temporal_weight=settings.TEMPORAL_WEIGHT,
            enable_text=settings.ENABLE_TEXT_MATCHING,
            enable_geo=settings.ENABLE_GEO_MATCHING,
            enable_temporal=settings.ENABLE_TEMPORAL_MATCHING,
            max_candidates=settings.MAX_CANDIDATES_PER_SOURCE,
        )


def blend_scores(results: list[MatchResult], weights: dict[MatchMethod, float]) -> tuple[int, dict[str, float]]:
    """
    Weighted average of applicable results.

    Returns:
        (overall confidence, effective weight per applicable method).
        Overall is 0 when nothing applies.
    """
    applicable = [r for r in results if r.applicable and weights.get(r.method, 0) > 0]
    total_weight = sum(weights[r.method] for r in applicable)
    if not applicable or total_weight <= 0:
        return 0, {}

    effective = {r.method.value: weights[r.method] / total_weight for r in applicable}
    overall = sum(r.confidence * effective[r.method.value] for r in applicable)
    return scoring.clamp_confidence(overall), {k: round(v, 4) for k, v in effective.items()}


class TripDeliveryBlender:
    """
    Blends text, geo and temporal signals for trip -> delivery pairs.

    Usage:
        blender = TripDeliveryBlender(db)
        for outcome in blender.correlate(trip):
            ...
    """

    def __init__(
        self,
        db: Session,
        config: Optional[BlenderConfig] = None,
        scoring_config: Optional[scoring.ScoringConfig] = None,
        index: Optional[CandidateIndex] = None,
    ):
        self.db = db
        self.config = config or BlenderConfig.from_settings()
        self.scoring = scoring_config or scoring.ScoringConfig.from_settings()
        self.index = index or CandidateIndex(db, self.config.max_candidates)

    def correlate(self, trip: Trip) -> list[CorrelationOutcome]:
        """Blend the trip against every candidate delivery."""
        deliveries = self.index.deliveries_for_trip(trip, self.scoring.temporal_max_days)
        logger.debug(f"Trip {trip.id}: {len(deliveries)} candidate deliveries")

        outcomes = []
        for delivery in deliveries:
            outcome = self.blend(trip, delivery)
            if outcome is not None:
                outcomes.append(outcome)
        return outcomes

    def evaluate(self, trip: Trip, delivery: DeliveryRecord) -> list[MatchResult]:
        """Run all three matchers for one pair."""
        results = []

        if self.config.enable_text:
            results.append(match_text(trip, delivery, self.scoring.fuzzy_threshold))
        else:
            results.append(MatchResult.not_applicable(MatchMethod.TEXT, "text matching disabled"))

        if self.config.enable_geo:
            results.append(
                match_geo(
                    trip,
                    delivery,
                    self.index.terminal_for(delivery),
                    self.scoring.geo_search_radius_km,
                    self.scoring,
                )
            )
        else:
            results.append(MatchResult.not_applicable(MatchMethod.GEO, "geo matching disabled"))

        if self.config.enable_temporal:
            results.append(match_temporal(trip, delivery, self.scoring.temporal_max_days, self.scoring))
        else:
            results.append(MatchResult.not_applicable(MatchMethod.TEMPORAL, "temporal matching disabled"))

        return results

    def blend(self, trip: Trip, delivery: DeliveryRecord) -> Optional[CorrelationOutcome]:
        """
        Blend one trip/delivery pair.

        Returns None when the pair is rejected outright (date gap beyond
        the temporal cutoff).
        """
        results = self.evaluate(trip, delivery)
        by_method = {r.method: r for r in results}

        temporal = by_method[MatchMethod.TEMPORAL]
        date_gap = temporal.details.get("date_gap_days")
        if temporal.details.get("rejected"):
            logger.debug(f"Trip {trip.id} / delivery {delivery.id} rejected: {date_gap} days apart")
            return None

        overall, effective_weights = blend_scores(results, self.config.weights)
        fired = [r for r in results if r.is_match]

        geo = by_method[MatchMethod.GEO]
        distance_km = geo.details.get("distance_km") if geo.applicable else None

        if not effective_weights:
            flags = [scoring.FLAG_NO_APPLICABLE_MATCHERS, scoring.FLAG_LOW_CONFIDENCE]
            tier = QualityTier.POOR
        else:
            flags = scoring.review_flags(
                overall, self.scoring, date_gap_days=date_gap, distance_km=distance_km
            )
            tier = scoring.quality_tier(overall)

        breakdown = {r.method.value: r.confidence for r in results if r.applicable}
        breakdown["weights"] = effective_weights
        breakdown["agreement"] = len(fired)

        details = {
            "trip_date": trip.trip_date.isoformat() if trip.trip_date else None,
            "delivery_date": delivery.delivery_date.isoformat() if delivery.delivery_date else None,
            "delivery_key": delivery.delivery_key,
            "multi_matcher_agreement": len(fired) > 1,
        }
        for result in results:
            details[result.method.value] = result.details if result.applicable else {
                "not_applicable": result.details.get("reason", "")
            }
        if geo.applicable:
            details["within_service_area"] = geo.details.get("within_service_area", False)

        return CorrelationOutcome(
            kind=CorrelationKind.TRIP_DELIVERY,
            subject_id=trip.id,
            matched_entity_id=delivery.id,
            confidence=overall,
            quality_tier=tier,
            match_methods=[r.method.value for r in fired],
            breakdown=breakdown,
            quality_flags=flags,
            requires_review=bool(flags),
            details=details,
        )
