#!/usr/bin/env python3
"""
Tests for individual matchers and scoring thresholds.
"""

import sys
from datetime import date, datetime, timedelta
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

import pytest

from correlation.errors import InvalidCoordinate
from correlation.matching import scoring
from correlation.matching.candidates import DriverDirectory
from correlation.matching.matchers import (
    MatchMethod,
    compare_location_text,
    match_direct_source,
    match_geo,
    match_temporal,
    match_text,
    match_time_window,
)
from correlation.models import DeliveryRecord, QualityTier, TelemetryEvent, Terminal, Trip

KEWDALE = (-31.98, 115.96)


def make_trip(end_location=None, start_location=None, end_point=None, start_point=None,
              start=datetime(2025, 3, 10, 8, 0)):
    return Trip(
        id="trip-1",
        start_time=start,
        end_time=start + timedelta(hours=3) if start else None,
        start_location=start_location,
        end_location=end_location,
        start_latitude=start_point[0] if start_point else None,
        start_longitude=start_point[1] if start_point else None,
        end_latitude=end_point[0] if end_point else None,
        end_longitude=end_point[1] if end_point else None,
    )


def make_delivery(customer=None, terminal="Kewdale", delivery_date=date(2025, 3, 10)):
    return DeliveryRecord(
        id="delivery-1",
        delivery_key="BOL-1",
        customer=customer,
        terminal=terminal,
        delivery_date=delivery_date,
    )


def make_terminal(point=KEWDALE, radius=50.0):
    return Terminal(name="Kewdale", latitude=point[0], longitude=point[1], service_radius_km=radius)


# Scoring thresholds


@pytest.mark.parametrize("minutes,tight,expected", [
    (0, True, 80), (30, True, 80), (30.5, True, 70), (60, True, 70), (61, True, 0),
    (90, False, 55), (120, False, 55), (121, False, 50), (240, False, 50),
    (241, False, 45), (1440, False, 45), (1441, False, 0),
])
def test_time_window_buckets(minutes, tight, expected):
    assert scoring.score_time_window(minutes, tight) == expected


@pytest.mark.parametrize("days,expected", [(0, 80), (1, 80), (2, 60), (3, 40), (4, 20), (30, 20)])
def test_temporal_buckets(days, expected):
    assert scoring.score_temporal(days) == expected


@pytest.mark.parametrize("km,expected", [
    (0, 95), (5, 95), (5.01, 85), (10, 85), (20, 70), (50, 55), (50.1, 30), (100, 30), (100.1, 0),
])
def test_geo_buckets(km, expected):
    assert scoring.score_geo(km, 100.0) == expected


def test_custom_buckets_change_scores():
    config = scoring.ScoringConfig(
        tight_window_buckets=[(60, 75), (15, 90)],
        temporal_buckets=[(0, 95)],
        geo_buckets=[(2, 99)],
        geo_floor=10,
    )
    assert config.tight_window_buckets == [(15.0, 90), (60.0, 75)]
    assert scoring.score_time_window(10, True, config) == 90
    assert scoring.score_time_window(30, True, config) == 75
    assert scoring.score_time_window(30, True) == 80
    assert scoring.score_temporal(0, config) == 95
    assert scoring.score_temporal(1, config) == 20
    assert scoring.score_geo(2.3, 100.0, config) == 10
    assert scoring.score_geo(2.3, 100.0) == 95


def test_bucket_settings_are_loaded(monkeypatch):
    monkeypatch.setattr(scoring.settings, "TEMPORAL_BUCKETS", [(5, 70)])
    monkeypatch.setattr(scoring.settings, "TEMPORAL_FLOOR_CONFIDENCE", 5)
    config = scoring.ScoringConfig.from_settings()
    assert scoring.score_temporal(4, config) == 70
    assert scoring.score_temporal(6, config) == 5


def test_invalid_bucket_table_rejected():
    with pytest.raises(ValueError):
        scoring.ScoringConfig(geo_buckets=[])
    with pytest.raises(ValueError):
        scoring.ScoringConfig(temporal_buckets=[(1, 120)])


@pytest.mark.parametrize("confidence,tier", [
    (100, QualityTier.EXCELLENT), (90, QualityTier.EXCELLENT), (89, QualityTier.GOOD),
    (75, QualityTier.GOOD), (74, QualityTier.FAIR), (60, QualityTier.FAIR),
    (59, QualityTier.POOR), (0, QualityTier.POOR),
])
def test_quality_tier_is_function_of_confidence(confidence, tier):
    assert scoring.quality_tier(confidence) == tier


def test_clamp_confidence_rounds_half_up():
    assert scoring.clamp_confidence(94.5) == 95
    assert scoring.clamp_confidence(94.49) == 94
    assert scoring.clamp_confidence(-3) == 0
    assert scoring.clamp_confidence(140) == 100


def test_assignment_score():
    assert scoring.score_assignment(0.85) == 85
    assert scoring.score_assignment(None, default=80) == 80
    assert scoring.score_assignment(92) == 92


def test_review_flags_order():
    config = scoring.ScoringConfig()
    flags = scoring.review_flags(40, config, date_gap_days=10, distance_km=120.0)
    assert flags == ["low_confidence", "large_date_gap", "long_distance"]
    assert scoring.review_flags(80, config, date_gap_days=3, distance_km=100.0) == []


# Text


def test_text_exact_and_normalized():
    assert compare_location_text("Kewdale", "KEWDALE", 0.65)[:2] == ("exact", 100)
    assert compare_location_text("AU TERM KEWDALE", "Kewdale Terminal", 0.65)[:2] == ("normalized_exact", 100)


def test_text_business_and_location_reference():
    assert compare_location_text("KCGM Fimiston", "Kalgoorlie Consolidated Gold Mines", 0.65)[:2] == (
        "business_identifier", 95
    )
    assert compare_location_text("Port Hedland Depot", "Port Hedland Yard 4", 0.65)[:2] == (
        "location_reference", 85
    )


def test_text_fuzzy_is_capped_below_reference_matches():
    tag, confidence, ratio = compare_location_text("Roberts Transport Yard", "Robert Transport Yards", 0.65)
    assert tag == "fuzzy"
    assert ratio >= 0.65
    assert confidence <= 89


def test_text_no_match_is_applicable_zero():
    result = match_text(make_trip(end_location="Meekatharra Roadhouse"),
                        make_delivery(customer="Esperance Port Services"), 0.65)
    assert result.applicable
    assert result.confidence == 0
    assert not result.is_match


def test_text_not_applicable_without_location():
    result = match_text(make_trip(), make_delivery(customer="BGC"), 0.65)
    assert not result.applicable
    assert result.method == MatchMethod.TEXT


def test_text_best_of_start_and_end():
    trip = make_trip(start_location="Meekatharra Roadhouse", end_location="AU TERM KEWDALE")
    result = match_text(trip, make_delivery(customer="Some Mine", terminal="Kewdale Terminal"), 0.65)
    assert result.confidence == 100
    assert result.details["trip_text"] == "AU TERM KEWDALE"


# Geo


def test_geo_near_terminal():
    trip = make_trip(end_point=(KEWDALE[0] + 0.0207, KEWDALE[1]))
    result = match_geo(trip, make_delivery(), make_terminal(), 100.0)
    assert result.confidence == 95
    assert 2.0 < result.details["distance_km"] < 2.6
    assert result.details["within_service_area"] is True


def test_geo_uses_nearer_endpoint():
    trip = make_trip(start_point=(KEWDALE[0] - 0.3, KEWDALE[1]), end_point=(KEWDALE[0] + 0.05, KEWDALE[1]))
    result = match_geo(trip, make_delivery(), make_terminal(), 100.0)
    assert result.details["trip_endpoint"] == "end"
    assert result.confidence == 85


def test_geo_beyond_radius_scores_zero_but_reports_distance():
    trip = make_trip(end_point=(KEWDALE[0] - 1.0792, KEWDALE[1]))
    result = match_geo(trip, make_delivery(), make_terminal(), 100.0)
    assert result.applicable
    assert result.confidence == 0
    assert result.details["distance_km"] > 100
    assert result.details["within_service_area"] is False


def test_geo_not_applicable_without_terminal_or_coordinates():
    assert not match_geo(make_trip(end_point=KEWDALE), make_delivery(), None, 100.0).applicable
    assert not match_geo(make_trip(), make_delivery(), make_terminal(), 100.0).applicable


def test_geo_invalid_coordinate_raises():
    with pytest.raises(InvalidCoordinate):
        match_geo(make_trip(end_point=(200.0, 115.0)), make_delivery(), make_terminal(), 100.0)


# Temporal


def test_temporal_same_day():
    result = match_temporal(make_trip(), make_delivery(), 30)
    assert result.confidence == 80
    assert result.details["date_gap_days"] == 0


def test_temporal_beyond_cutoff_is_rejected():
    result = match_temporal(make_trip(), make_delivery(delivery_date=date(2025, 4, 10)), 30)
    assert result.details["rejected"] is True
    assert result.details["date_gap_days"] == 31
    assert not result.is_match


def test_temporal_at_cutoff_scores_floor():
    result = match_temporal(make_trip(), make_delivery(delivery_date=date(2025, 4, 9)), 30)
    assert result.is_match
    assert result.confidence == 20
    assert result.details["date_gap_days"] == 30


def test_temporal_not_applicable_without_dates():
    assert not match_temporal(make_trip(start=None), make_delivery(), 30).applicable
    assert not match_temporal(make_trip(), make_delivery(delivery_date=None), 30).applicable


# Driver matchers


def test_direct_source_embedded_id(db):
    event = TelemetryEvent(id="e1", source="lytx", driver_id="driver-9")
    result = match_direct_source(event, DriverDirectory(db))
    assert result.confidence == 100
    assert result.entity_id == "driver-9"


def test_direct_source_name_resolution(db, factory):
    driver = factory.driver("John Smith", aliases={"lytx": ["SMITH, JOHNNY"]})
    directory = DriverDirectory(db)

    exact = match_direct_source(TelemetryEvent(id="e1", source="lytx", driver_name="John Smith"), directory)
    assert exact.entity_id == driver.id
    assert exact.confidence == 100

    alias = match_direct_source(TelemetryEvent(id="e2", source="lytx", driver_name="Smith, Johnny"), directory)
    assert alias.entity_id == driver.id

    # Nickname-only matches are not authoritative enough for direct source
    nickname = match_direct_source(TelemetryEvent(id="e3", source="lytx", driver_name="Jack Smith"), directory)
    assert nickname.applicable
    assert not nickname.is_match

    missing = match_direct_source(TelemetryEvent(id="e4", source="lytx"), directory)
    assert not missing.applicable


def test_directory_refuses_ambiguous_names(db, factory):
    factory.driver("John Smith")
    factory.driver("John Smith")
    driver_id, how = DriverDirectory(db).resolve("John Smith")
    assert driver_id is None
    assert how is None


def test_time_window_tie_picks_earlier(db, factory, at):
    early = factory.driver("Alice Brown")
    late = factory.driver("Carol White")
    vehicle = factory.vehicle()
    subject = factory.event(at(14, 0), vehicle)
    neighbours = [
        factory.event(at(13, 40), vehicle, driver_name="Alice Brown"),
        factory.event(at(14, 20), vehicle, driver_name="Carol White"),
    ]
    result = match_time_window(subject, neighbours, DriverDirectory(db), timedelta(hours=1), tight=True)
    assert result.entity_id == early.id
    assert result.entity_id != late.id
    assert result.confidence == 80
    assert result.details["delta_minutes"] == 20


def test_time_window_tie_at_bucket_edge(db, factory, at):
    """Neighbours exactly 30 minutes either side: earlier wins at 80."""
    early = factory.driver("Alice Brown")
    factory.driver("Carol White")
    vehicle = factory.vehicle()
    subject = factory.event(at(14, 0), vehicle)
    neighbours = [
        factory.event(at(13, 30), vehicle, driver_name="Alice Brown"),
        factory.event(at(14, 30), vehicle, driver_name="Carol White"),
    ]
    result = match_time_window(subject, neighbours, DriverDirectory(db), timedelta(hours=1), tight=True)
    assert result.entity_id == early.id
    assert result.confidence == 80
    assert result.details["delta_minutes"] == 30


def test_time_window_skips_neighbours_without_driver(db, factory, at):
    driver = factory.driver("Alice Brown")
    vehicle = factory.vehicle()
    subject = factory.event(at(14, 0), vehicle)
    neighbours = [
        factory.event(at(14, 5), vehicle),
        factory.event(at(14, 50), vehicle, driver_name="Alice Brown"),
    ]
    result = match_time_window(subject, neighbours, DriverDirectory(db), timedelta(hours=1), tight=True)
    assert result.entity_id == driver.id
    assert result.confidence == 70
