#!/usr/bin/env python3
"""
Tests for the correlation store: keyed upsert, verification and clearing.
"""

import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

import pytest
from sqlalchemy.orm.exc import StaleDataError

from correlation.errors import PersistenceConflict, VerificationError
from correlation.matching.matchers import CorrelationOutcome
from correlation.models import (
    AnalysisRun,
    CorrelationKind,
    CorrelationRecord,
    QualityTier,
    RunStatus,
    VerificationDecision,
)
from correlation.store import CorrelationQuery, CorrelationStore, UpsertStatus, parse_decision


def driver_outcome(subject_id="event-1", driver_id="driver-1", confidence=85, **overrides):
    values = dict(
        kind=CorrelationKind.DRIVER_ATTRIBUTION,
        subject_id=subject_id,
        matched_entity_id=driver_id,
        confidence=confidence,
        quality_tier=QualityTier.GOOD if confidence >= 75 else QualityTier.POOR,
        match_methods=["vehicle_assignment"],
        breakdown={"vehicle_assignment": confidence},
        quality_flags=[] if confidence >= 60 else ["low_confidence"],
        requires_review=confidence < 60,
        details={"vehicle_id": "vehicle-1"},
    )
    values.update(overrides)
    return CorrelationOutcome(**values)


def trip_outcome(trip_id="trip-1", delivery_id="delivery-1", confidence=94):
    return CorrelationOutcome(
        kind=CorrelationKind.TRIP_DELIVERY,
        subject_id=trip_id,
        matched_entity_id=delivery_id,
        confidence=confidence,
        quality_tier=QualityTier.EXCELLENT,
        match_methods=["text", "geo", "temporal"],
        breakdown={"text": 100, "geo": 95, "temporal": 80, "weights": {"text": 0.4}, "agreement": 3},
        details={"delivery_key": "BOL-1"},
    )


def snapshot(record: CorrelationRecord) -> dict:
    return {column.key: getattr(record, column.key) for column in CorrelationRecord.__table__.columns}


@pytest.fixture
def store(db):
    return CorrelationStore(db, max_retries=2, base_delay=0)


@pytest.fixture
def make_run(db):
    def build(kind=CorrelationKind.DRIVER_ATTRIBUTION):
        run = AnalysisRun(kind=kind, status=RunStatus.RUNNING)
        db.add(run)
        db.commit()
        return run.id
    return build


def test_insert_then_unchanged(store, db, make_run):
    first_run, second_run = make_run(), make_run()

    assert store.upsert(driver_outcome(), first_run) == UpsertStatus.INSERTED
    record = store.get_by_key(CorrelationKind.DRIVER_ATTRIBUTION, "event-1")
    before = snapshot(record)

    assert store.upsert(driver_outcome(), second_run) == UpsertStatus.UNCHANGED

    db.expire_all()
    after = snapshot(store.get_by_key(CorrelationKind.DRIVER_ATTRIBUTION, "event-1"))
    assert after == before
    assert after["analysis_run_id"] == first_run
    assert after["version"] == 1
    assert store.count() == 1


def test_changed_outcome_updates_in_place(store, db, make_run):
    run_id = make_run()
    store.upsert(driver_outcome(confidence=85))
    record_id = store.get_by_key(CorrelationKind.DRIVER_ATTRIBUTION, "event-1").id

    assert store.upsert(driver_outcome(driver_id="driver-2", confidence=70), run_id) == UpsertStatus.UPDATED

    db.expire_all()
    record = store.get(record_id)
    assert record.matched_entity_id == "driver-2"
    assert record.confidence_score == 70
    assert record.analysis_run_id == run_id
    assert record.version == 2
    assert store.count(CorrelationKind.DRIVER_ATTRIBUTION) == 1


def test_trip_pairs_are_keyed_per_delivery(store):
    store.upsert(trip_outcome(delivery_id="delivery-1"))
    store.upsert(trip_outcome(delivery_id="delivery-2", confidence=60))

    records = store.for_subject(CorrelationKind.TRIP_DELIVERY, "trip-1")
    assert [r.match_key for r in records] == ["trip-1:delivery-1", "trip-1:delivery-2"]
    assert store.upsert(trip_outcome(delivery_id="delivery-1")) == UpsertStatus.UNCHANGED


def test_verified_record_is_never_modified(store, db):
    store.upsert(driver_outcome())
    record = store.get_by_key(CorrelationKind.DRIVER_ATTRIBUTION, "event-1")
    store.verify(record.id, verifier="ops", decision="confirm", notes="checked roster")
    before = snapshot(store.get(record.id))

    status = store.upsert(driver_outcome(driver_id="driver-9", confidence=100))

    db.expire_all()
    assert status == UpsertStatus.SKIPPED_VERIFIED
    assert snapshot(store.get(record.id)) == before


def test_retry_after_stale_read(store, monkeypatch):
    real_apply = store._apply
    calls = []

    def flaky(outcome, run_id):
        calls.append(outcome.match_key)
        if len(calls) == 1:
            raise StaleDataError("row version changed")
        return real_apply(outcome, run_id)

    monkeypatch.setattr(store, "_apply", flaky)

    assert store.upsert(driver_outcome()) == UpsertStatus.INSERTED
    assert len(calls) == 2


def test_conflict_exhaustion_raises(store, monkeypatch):
    def always_stale(outcome, run_id):
        raise StaleDataError("row version changed")

    monkeypatch.setattr(store, "_apply", always_stale)

    with pytest.raises(PersistenceConflict) as exc_info:
        store.upsert(driver_outcome())
    assert exc_info.value.attempts == 3
    assert exc_info.value.match_key == "event-1"


def test_concurrent_update_is_detected(store, session_factory):
    """A write based on an outdated version fails instead of overwriting."""
    store.upsert(driver_outcome(confidence=85))
    record_id = store.get_by_key(CorrelationKind.DRIVER_ATTRIBUTION, "event-1").id

    other = session_factory()
    try:
        stale = other.get(CorrelationRecord, record_id)
        store.upsert(driver_outcome(confidence=90))

        stale.confidence_score = 10
        with pytest.raises(StaleDataError):
            other.commit()
    finally:
        other.rollback()
        other.close()


def test_verify_confirm_and_reject(store):
    store.upsert(trip_outcome(delivery_id="delivery-1"))
    store.upsert(trip_outcome(delivery_id="delivery-2", confidence=40))
    first = store.get_by_key(CorrelationKind.TRIP_DELIVERY, "trip-1:delivery-1")
    second = store.get_by_key(CorrelationKind.TRIP_DELIVERY, "trip-1:delivery-2")

    confirmed = store.verify(first.id, verifier="ops", decision="confirmed")
    assert confirmed.verified is True
    assert confirmed.verification_decision == VerificationDecision.CONFIRMED
    assert confirmed.verified_by == "ops"
    assert confirmed.verified_at is not None
    assert confirmed.requires_review is False

    # Only one confirmed record per subject
    with pytest.raises(VerificationError):
        store.verify(second.id, verifier="ops", decision="confirm")

    rejected = store.verify(second.id, verifier="ops", decision="reject", notes="wrong site")
    assert rejected.verification_decision == VerificationDecision.REJECTED
    assert rejected.verification_notes == "wrong site"


def test_concurrent_confirmations_keep_one_per_subject(store, db, session_factory, monkeypatch):
    """A rival confirmation landing between the check and the write wins; ours fails."""
    store.upsert(trip_outcome(delivery_id="delivery-1"))
    store.upsert(trip_outcome(delivery_id="delivery-2", confidence=40))
    first_id = store.get_by_key(CorrelationKind.TRIP_DELIVERY, "trip-1:delivery-1").id
    second_id = store.get_by_key(CorrelationKind.TRIP_DELIVERY, "trip-1:delivery-2").id

    other = session_factory()
    rival = CorrelationStore(other, max_retries=2, base_delay=0)
    real_flush = db.flush
    raced = []

    def flush_after_rival(*args, **kwargs):
        if not raced:
            raced.append(rival.verify(second_id, verifier="dispatch", decision="confirm"))
        return real_flush(*args, **kwargs)

    monkeypatch.setattr(db, "flush", flush_after_rival)
    try:
        with pytest.raises(VerificationError):
            store.verify(first_id, verifier="ops", decision="confirm")
    finally:
        other.close()

    assert len(raced) == 1
    confirmed = [
        r for r in store.for_subject(CorrelationKind.TRIP_DELIVERY, "trip-1")
        if r.verification_decision == VerificationDecision.CONFIRMED
    ]
    assert [r.id for r in confirmed] == [second_id]


def test_verify_rejects_bad_requests(store):
    store.upsert(driver_outcome(driver_id=None, confidence=0, match_methods=["unresolved"]))
    unresolved = store.get_by_key(CorrelationKind.DRIVER_ATTRIBUTION, "event-1")

    with pytest.raises(VerificationError):
        store.verify(unresolved.id, verifier="ops", decision="confirm")
    with pytest.raises(VerificationError):
        store.verify("no-such-id", verifier="ops", decision="reject")
    with pytest.raises(VerificationError):
        store.verify(unresolved.id, verifier="  ", decision="reject")
    with pytest.raises(VerificationError):
        parse_decision("maybe")

    # Unresolved records can still be rejected
    assert store.verify(unresolved.id, verifier="ops", decision="reject").verified is True


def test_clear_keeps_verified_records(store):
    for n in range(3):
        store.upsert(driver_outcome(subject_id=f"event-{n}"))
    keep = store.get_by_key(CorrelationKind.DRIVER_ATTRIBUTION, "event-0")
    store.verify(keep.id, verifier="ops", decision="confirm")

    deleted = store.clear(CorrelationKind.DRIVER_ATTRIBUTION, ["event-0", "event-1", "event-2"])

    assert deleted == 2
    assert [r.subject_id for r in store.query()] == ["event-0"]


def test_query_filters(store):
    store.upsert(driver_outcome(subject_id="event-1", confidence=95))
    store.upsert(driver_outcome(subject_id="event-2", confidence=50))
    store.upsert(trip_outcome())

    high = store.query(CorrelationQuery(kind=CorrelationKind.DRIVER_ATTRIBUTION, min_confidence=80))
    assert [r.subject_id for r in high] == ["event-1"]

    review = store.query(CorrelationQuery(requires_review=True))
    assert [r.subject_id for r in review] == ["event-2"]

    everything = store.query()
    assert [r.confidence_score for r in everything] == [95, 94, 50]
    assert len(store.query(CorrelationQuery(limit=1))) == 1
