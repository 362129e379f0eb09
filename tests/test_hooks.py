#!/usr/bin/env python3
"""
Tests for the ingestion write-path hooks.
"""

import sys
from datetime import date
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from correlation.hooks import after_telemetry_event_saved, after_trip_saved
from correlation.matching.blender import BlenderConfig
from correlation.matching.resolver import ResolverConfig
from correlation.matching.scoring import ScoringConfig
from correlation.models import CorrelationKind
from correlation.orchestrator import SubjectProcessor
from correlation.store import CorrelationStore


def test_event_hook_matches_batch_path(db, factory, at):
    vehicle = factory.vehicle()
    driver = factory.driver("Dan Green")
    factory.assignment(vehicle, driver, at(0, day=1), confidence=0.85)
    event = factory.event(at(10), vehicle)

    result = after_telemetry_event_saved(db, event)

    assert result.inserted == 1
    assert result.matched is True
    record = CorrelationStore(db).get_by_key(CorrelationKind.DRIVER_ATTRIBUTION, event.id)
    assert record.matched_entity_id == driver.id
    assert record.confidence_score == 85
    assert record.analysis_run_id is None

    # Saving the same event again leaves the record alone
    again = after_telemetry_event_saved(db, event)
    assert again.unchanged == 1


def test_event_hook_updates_after_edit(db, factory, at):
    vehicle = factory.vehicle()
    named = factory.driver("Alice Brown")
    event = factory.event(at(10), vehicle)
    processor = SubjectProcessor(db, ResolverConfig(), BlenderConfig(), ScoringConfig())

    first = after_telemetry_event_saved(db, event, processor=processor)
    assert first.matched is False

    event.driver_name = "Alice Brown"
    db.commit()
    second = after_telemetry_event_saved(db, event, processor=processor)

    assert second.updated == 1
    record = processor.store.get_by_key(CorrelationKind.DRIVER_ATTRIBUTION, event.id)
    assert record.matched_entity_id == named.id
    assert record.match_methods == ["direct_source"]


def test_trip_hook_respects_min_confidence(db, factory, at):
    factory.terminal()
    trip = factory.trip(at(8), at(11), factory.vehicle(), end_location="AU TERM KEWDALE",
                        end_point=(-31.98 + 0.0207, 115.96))
    factory.delivery(date(2025, 3, 10), terminal="Kewdale Terminal")
    factory.delivery(date(2025, 3, 25), terminal="Esperance")

    result = after_trip_saved(db, trip, min_confidence=60)

    assert result.inserted == 1
    assert result.below_threshold == 1
    records = CorrelationStore(db).for_subject(CorrelationKind.TRIP_DELIVERY, trip.id)
    assert [r.confidence_score for r in records] == [94]
