#!/usr/bin/env python3
"""
Tests for inferring vehicle assignments from trusted attributions.
"""

import sys
from datetime import datetime
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

import pytest
from sqlalchemy import func, select

from correlation.assignments import INFERRED_SOURCE, infer_vehicle_assignments
from correlation.matching.blender import BlenderConfig
from correlation.matching.resolver import ResolverConfig
from correlation.matching.scoring import ScoringConfig
from correlation.models import AssignmentType, CorrelationKind, VehicleAssignment
from correlation.orchestrator import SubjectProcessor

NOW = datetime(2025, 3, 20, 12, 0)


@pytest.fixture
def attributed(db, factory, at):
    """Driver seen by source systems 4 times on one truck and twice on another."""
    driver = factory.driver("Dan Green")
    main = factory.vehicle(registration="1ABC234")
    spare = factory.vehicle(registration="1XYZ999")
    events = [factory.event(at(9, day=day), main, driver_name="Dan Green") for day in (1, 2, 4, 5)]
    events += [factory.event(at(15, day=day), spare, driver_name="Dan Green") for day in (3, 6)]

    processor = SubjectProcessor(db, ResolverConfig(), BlenderConfig(), ScoringConfig())
    for event in events:
        processor.process(CorrelationKind.DRIVER_ATTRIBUTION, event.id)
    return driver, main, spare


def assignments(db):
    return list(db.scalars(select(VehicleAssignment).order_by(VehicleAssignment.valid_from)).all())


def test_primary_and_temporary_inferred(db, attributed, at):
    driver, main, spare = attributed

    result = infer_vehicle_assignments(db, now=NOW)

    assert result.pairs_examined == 2
    assert result.primary_created == 1
    assert result.temporary_created == 1

    primary, temporary = assignments(db)
    assert primary.vehicle_id == main.id
    assert primary.driver_id == driver.id
    assert primary.assignment_type == AssignmentType.PRIMARY
    assert primary.valid_from == at(9, day=1)
    assert primary.valid_until is None
    assert primary.confidence_score == 0.04
    assert primary.source == INFERRED_SOURCE

    assert temporary.vehicle_id == spare.id
    assert temporary.assignment_type == AssignmentType.TEMPORARY
    assert temporary.valid_from == at(15, day=3)
    assert temporary.valid_until == at(15, day=6)


def test_primary_closed_when_activity_is_old(db, attributed, at):
    infer_vehicle_assignments(db, now=datetime(2025, 6, 1))

    primary = assignments(db)[0]
    assert primary.valid_until == at(9, day=5)


def test_rerun_does_not_duplicate(db, attributed):
    infer_vehicle_assignments(db, now=NOW)
    result = infer_vehicle_assignments(db, now=NOW)

    assert result.primary_created == 0
    assert result.temporary_created == 0
    assert result.skipped_existing == 2
    assert db.scalar(select(func.count(VehicleAssignment.id))) == 2


def test_dry_run_writes_nothing(db, attributed):
    result = infer_vehicle_assignments(db, dry_run=True, now=NOW)

    assert len(result.created) == 2
    assert db.scalar(select(func.count(VehicleAssignment.id))) == 0


def test_untrusted_attributions_are_ignored(db, factory, at):
    """Attributions from time windows do not feed assignment inference."""
    factory.driver("Dan Green")
    vehicle = factory.vehicle()
    processor = SubjectProcessor(db, ResolverConfig(), BlenderConfig(), ScoringConfig())
    factory.event(at(8), vehicle, driver_name="Dan Green")
    for hour in (9, 10, 11):
        event = factory.event(at(hour, 30), vehicle)
        processor.process(CorrelationKind.DRIVER_ATTRIBUTION, event.id)

    result = infer_vehicle_assignments(db, now=NOW)

    assert result.pairs_examined == 0
    assert result.created == []
