"""
Correlation Matching Module

Candidate lookup, matching strategies and scoring:
- Cascading driver attribution (direct source, assignment, time windows, trips)
- Weighted trip-delivery blending (text, geospatial, temporal)
"""

from correlation.matching.blender import BlenderConfig, TripDeliveryBlender
from correlation.matching.candidates import CandidateIndex, DriverDirectory
from correlation.matching.matchers import CorrelationOutcome, MatchMethod, MatchResult
from correlation.matching.resolver import DriverAttributionResolver, ResolverConfig
from correlation.matching.scoring import ScoringConfig

__all__ = [
    "BlenderConfig",
    "CandidateIndex",
    "CorrelationOutcome",
    "DriverAttributionResolver",
    "DriverDirectory",
    "MatchMethod",
    "MatchResult",
    "ResolverConfig",
    "ScoringConfig",
    "TripDeliveryBlender",
]
