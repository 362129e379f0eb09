"""
Write-path hooks for ingestion collaborators.

Call these after committing a new or changed telemetry event or trip to
recompute that one subject through the same path batch runs use.
"""

from typing import Optional

from sqlalchemy.orm import Session

from config.logging import logger
from correlation.models import CorrelationKind, TelemetryEvent, Trip
from correlation.orchestrator import SubjectProcessor, SubjectResult


def after_telemetry_event_saved(
    db: Session,
    event: TelemetryEvent,
    min_confidence: int = 0,
    processor: Optional[SubjectProcessor] = None,
) -> SubjectResult:
    """Re-attribute the driver of a saved telemetry event."""
    processor = processor or SubjectProcessor(db)
    result = processor.process(CorrelationKind.DRIVER_ATTRIBUTION, event.id, min_confidence)
    logger.debug(f"Hook: telemetry event {event.id} -> {result}")
    return result


def after_trip_saved(
    db: Session,
    trip: Trip,
    min_confidence: int = 0,
    processor: Optional[SubjectProcessor] = None,
) -> SubjectResult:
    """Re-correlate a saved trip against candidate deliveries."""
    processor = processor or SubjectProcessor(db)
    result = processor.process(CorrelationKind.TRIP_DELIVERY, trip.id, min_confidence)
    logger.debug(f"Hook: trip {trip.id} -> {result}")
    return result
