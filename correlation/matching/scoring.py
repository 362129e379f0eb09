"""
Confidence scoring.

Maps raw matcher signals (minutes, days, kilometres, text similarity) to
0-100 confidence scores, and confidence to quality tier and review flags.
"""

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Sequence

from config.settings import settings
from correlation.models import QualityTier

# Quality flags
FLAG_LOW_CONFIDENCE = "low_confidence"
FLAG_LARGE_DATE_GAP = "large_date_gap"
FLAG_LONG_DISTANCE = "long_distance"
FLAG_NO_APPLICABLE_MATCHERS = "no_applicable_matchers"
FLAG_UNRESOLVED = "unresolved"

# (upper bound in minutes, confidence)
TIGHT_WINDOW_BUCKETS = [(30, 80), (60, 70)]
LOOSE_WINDOW_BUCKETS = [(120, 55), (240, 50), (1440, 45)]

# (upper bound in days, confidence); anything beyond scores 20
TEMPORAL_BUCKETS = [(1, 80), (2, 60), (3, 40)]
TEMPORAL_FLOOR = 20

# (upper bound in km, confidence); beyond 50 km scores 30 up to the search radius
GEO_BUCKETS = [(5, 95), (10, 85), (20, 70), (50, 55)]
GEO_FLOOR = 30

TEXT_EXACT = 100
TEXT_NORMALIZED_EXACT = 100
TEXT_BUSINESS_IDENTIFIER = 95
TEXT_LOCATION_REFERENCE = 85
TEXT_FUZZY_CEILING = 89

DIRECT_SOURCE_CONFIDENCE = 100


@dataclass
class ScoringConfig:
    """Thresholds used when turning raw signals into scores and flags."""
    # Fuzzy text ratio (0-1) needed for a fuzzy text match
    fuzzy_threshold: float = 0.65

    # Review rules
    review_confidence_threshold: int = 60
    review_max_date_gap_days: int = 3
    review_max_distance_km: float = 100.0
    high_confidence_threshold: int = 80

    # Hard cutoffs
    temporal_max_days: int = 30
    geo_search_radius_km: float = 100.0

    # Driver attribution
    assignment_default_confidence: int = 80
    trip_containment_confidence: int = 70

    # Bucket tables, (upper bound, confidence) in ascending bound order
    tight_window_buckets: list = field(default_factory=lambda: list(TIGHT_WINDOW_BUCKETS))
    loose_window_buckets: list = field(default_factory=lambda: list(LOOSE_WINDOW_BUCKETS))
    temporal_buckets: list = field(default_factory=lambda: list(TEMPORAL_BUCKETS))
    temporal_floor: int = TEMPORAL_FLOOR
    geo_buckets: list = field(default_factory=lambda: list(GEO_BUCKETS))
    geo_floor: int = GEO_FLOOR

    def __post_init__(self):
        for name in ("tight_window_buckets", "loose_window_buckets", "temporal_buckets", "geo_buckets"):
            setattr(self, name, _bucket_table(getattr(self, name), name))

    @classmethod
    def from_settings(cls) -> "ScoringConfig":
        return cls(
            tight_window_buckets=settings.TIGHT_WINDOW_BUCKETS,
            loose_window_buckets=settings.LOOSE_WINDOW_BUCKETS,
            temporal_buckets=settings.TEMPORAL_BUCKETS,
            temporal_floor=settings.TEMPORAL_FLOOR_CONFIDENCE,
            geo_buckets=settings.GEO_BUCKETS,
            geo_floor=settings.GEO_FLOOR_CONFIDENCE,
            fuzzy_threshold=settings.FUZZY_MATCH_THRESHOLD,
            review_confidence_threshold=settings.REVIEW_CONFIDENCE_THRESHOLD,
            review_max_date_gap_days=settings.REVIEW_MAX_DATE_GAP_DAYS,
            review_max_distance_km=settings.REVIEW_MAX_DISTANCE_KM,
            high_confidence_threshold=settings.HIGH_CONFIDENCE_THRESHOLD,
            temporal_max_days=settings.TEMPORAL_MAX_DAYS,
            geo_search_radius_km=settings.GEO_SEARCH_RADIUS_KM,
            assignment_default_confidence=settings.ASSIGNMENT_DEFAULT_CONFIDENCE,
            trip_containment_confidence=settings.TRIP_CONTAINMENT_CONFIDENCE,
        )


def _bucket_table(buckets: Sequence, name: str) -> list[tuple[float, int]]:
    table = sorted((float(limit), int(confidence)) for limit, confidence in buckets)
    if not table:
        raise ValueError(f"{name} needs at least one bucket")
    for limit, confidence in table:
        if limit < 0 or not 0 <= confidence <= 100:
            raise ValueError(f"{name} has an invalid bucket: ({limit}, {confidence})")
    return table


def clamp_confidence(value: float) -> int:
    """Round half-up to an integer and clamp to [0, 100]."""
    rounded = int(Decimal(str(round(value, 6))).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return max(0, min(100, rounded))


def score_time_window(minutes: float, tight: bool, config: Optional[ScoringConfig] = None) -> int:
    """Score a |delta t| in minutes for the tight (1h) or loose (1 day) window."""
    if config is not None:
        buckets = config.tight_window_buckets if tight else config.loose_window_buckets
    else:
        buckets = TIGHT_WINDOW_BUCKETS if tight else LOOSE_WINDOW_BUCKETS
    for limit, confidence in buckets:
        if minutes <= limit:
            return confidence
    return 0


def score_assignment(confidence: Optional[float], default: int = 80) -> int:
    """
    Assignment confidence to a score. Stored values are fractions (0-1);
    values above 1 are taken as already on the 0-100 scale.
    """
    if confidence is None:
        return default
    value = confidence * 100 if confidence <= 1 else confidence
    return clamp_confidence(value)


def score_temporal(days: int, config: Optional[ScoringConfig] = None) -> int:
    buckets = config.temporal_buckets if config else TEMPORAL_BUCKETS
    for limit, confidence in buckets:
        if days <= limit:
            return confidence
    return config.temporal_floor if config else TEMPORAL_FLOOR


def score_geo(distance_km: float, search_radius_km: float = 100.0,
              config: Optional[ScoringConfig] = None) -> int:
    """Distance to score; beyond the search radius scores 0."""
    buckets = config.geo_buckets if config else GEO_BUCKETS
    for limit, confidence in buckets:
        if distance_km <= limit:
            return confidence
    if distance_km <= search_radius_km:
        return config.geo_floor if config else GEO_FLOOR
    return 0


def score_fuzzy_text(ratio: float) -> int:
    """Fuzzy similarity never outranks a location reference or exact match."""
    return min(TEXT_FUZZY_CEILING, clamp_confidence(ratio * 100))


def quality_tier(confidence: int) -> QualityTier:
    if confidence >= 90:
        return QualityTier.EXCELLENT
    if confidence >= 75:
        return QualityTier.GOOD
    if confidence >= 60:
        return QualityTier.FAIR
    return QualityTier.POOR


def review_flags(
    confidence: int,
    config: ScoringConfig,
    date_gap_days: Optional[int] = None,
    distance_km: Optional[float] = None,
) -> list[str]:
    """Quality flags that put a record on the review queue, in fixed order."""
    flags = []
    if confidence < config.review_confidence_threshold:
        flags.append(FLAG_LOW_CONFIDENCE)
    if date_gap_days is not None and date_gap_days > config.review_max_date_gap_days:
        flags.append(FLAG_LARGE_DATE_GAP)
    if distance_km is not None and distance_km > config.review_max_distance_km:
        flags.append(FLAG_LONG_DISTANCE)
    return flags
