"""
Vehicle assignment inference.

Derives driver/vehicle assignments from trusted attributions (confirmed
by a reviewer, or identified by the source system itself):
- Primary: a driver's most-used vehicle, at least 3 events over at least
  1 day; confidence min(1.0, events / 100)
- Temporary: any other pair with at least 2 events; confidence
  min(0.75, events / 50)

Existing assignments are never duplicated.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from config.logging import logger
from correlation.models import (
    AssignmentType,
    CorrelationKind,
    CorrelationRecord,
    TelemetryEvent,
    VehicleAssignment,
    VerificationDecision,
)

INFERRED_SOURCE = "inferred_from_events"

PRIMARY_MIN_EVENTS = 3
PRIMARY_MIN_SPAN_DAYS = 1
TEMPORARY_MIN_EVENTS = 2


@dataclass
class PairUsage:
    driver_id: str
    vehicle_id: str
    event_count: int
    first_seen: datetime
    last_seen: datetime

    @property
    def span_days(self) -> int:
        return (self.last_seen - self.first_seen).days


@dataclass
class InferenceResult:
    """Counts from an inference pass."""
    pairs_examined: int = 0
    primary_created: int = 0
    temporary_created: int = 0
    extended_to_ongoing: int = 0
    skipped_existing: int = 0
    created: list[VehicleAssignment] = field(default_factory=list)


def _pair_usage(db: Session) -> list[PairUsage]:
    """Event counts and first/last seen per (driver, vehicle) from trusted attributions."""
    stmt = (
        select(
            CorrelationRecord.matched_entity_id,
            CorrelationRecord.match_methods,
            CorrelationRecord.verification_decision,
            TelemetryEvent.vehicle_id,
            TelemetryEvent.occurred_at,
        )
        .join(TelemetryEvent, TelemetryEvent.id == CorrelationRecord.subject_id)
        .where(
            CorrelationRecord.kind == CorrelationKind.DRIVER_ATTRIBUTION,
            CorrelationRecord.matched_entity_id.is_not(None),
            or_(
                CorrelationRecord.verification_decision.is_(None),
                CorrelationRecord.verification_decision != VerificationDecision.REJECTED,
            ),
            TelemetryEvent.vehicle_id.is_not(None),
            TelemetryEvent.occurred_at.is_not(None),
        )
    )

    usage: dict[tuple[str, str], PairUsage] = {}
    for driver_id, methods, decision, vehicle_id, occurred_at in db.execute(stmt).all():
        trusted = decision == VerificationDecision.CONFIRMED or "direct_source" in (methods or [])
        if not trusted:
            continue
        pair = usage.get((driver_id, vehicle_id))
        if pair is None:
            usage[(driver_id, vehicle_id)] = PairUsage(driver_id, vehicle_id, 1, occurred_at, occurred_at)
        else:
            pair.event_count += 1
            pair.first_seen = min(pair.first_seen, occurred_at)
            pair.last_seen = max(pair.last_seen, occurred_at)

    return sorted(usage.values(), key=lambda p: (p.driver_id, -p.event_count, -p.span_days, p.vehicle_id))


def _existing(db: Session, pair: PairUsage) -> list[VehicleAssignment]:
    return list(db.scalars(
        select(VehicleAssignment).where(
            VehicleAssignment.driver_id == pair.driver_id,
            VehicleAssignment.vehicle_id == pair.vehicle_id,
        )
    ).all())


def infer_vehicle_assignments(
    db: Session,
    dry_run: bool = False,
    now: Optional[datetime] = None,
    ongoing_days: int = 30,
) -> InferenceResult:
    """
    Create primary and temporary assignments from trusted attributions.

    Primary assignments with activity inside the last ongoing_days are
    left open-ended (valid_until NULL).

    Args:
        db: Database session
        dry_run: Compute and log without committing
        now: Reference time for the ongoing check (defaults to now)
        ongoing_days: Recency window for open-ended primaries
    """
    now = now or datetime.now()
    result = InferenceResult()
    pairs = _pair_usage(db)
    result.pairs_examined = len(pairs)

    primaries: dict[str, PairUsage] = {}
    for pair in pairs:
        if pair.event_count >= PRIMARY_MIN_EVENTS and pair.span_days >= PRIMARY_MIN_SPAN_DAYS:
            primaries.setdefault(pair.driver_id, pair)

    for pair in pairs:
        existing = _existing(db, pair)
        is_primary = primaries.get(pair.driver_id) is pair
        ongoing = pair.last_seen >= now - timedelta(days=ongoing_days)

        if is_primary:
            match = next(
                (a for a in existing
                 if a.assignment_type == AssignmentType.PRIMARY and a.valid_from == pair.first_seen),
                None,
            )
            if match is not None:
                result.skipped_existing += 1
                if ongoing and match.valid_until is not None and match.source == INFERRED_SOURCE:
                    match.valid_until = None
                    match.notes = f"{match.notes or ''} [Extended to ongoing based on recent activity]".strip()
                    result.extended_to_ongoing += 1
                continue

            assignment = VehicleAssignment(
                driver_id=pair.driver_id,
                vehicle_id=pair.vehicle_id,
                valid_from=pair.first_seen,
                valid_until=None if ongoing else pair.last_seen,
                assignment_type=AssignmentType.PRIMARY,
                confidence_score=round(min(1.0, pair.event_count / 100), 2),
                source=INFERRED_SOURCE,
                notes=f"Inferred from {pair.event_count} events over {pair.span_days} days",
            )
            result.primary_created += 1

        elif pair.event_count >= TEMPORARY_MIN_EVENTS:
            covered = any(
                a.assignment_type == AssignmentType.PRIMARY and a.is_active_at(pair.first_seen)
                for a in existing
            )
            duplicate = any(
                a.valid_from == pair.first_seen and a.valid_until == pair.last_seen
                for a in existing
            )
            if covered or duplicate:
                result.skipped_existing += 1
                continue

            assignment = VehicleAssignment(
                driver_id=pair.driver_id,
                vehicle_id=pair.vehicle_id,
                valid_from=pair.first_seen,
                valid_until=pair.last_seen,
                assignment_type=AssignmentType.TEMPORARY,
                confidence_score=round(min(0.75, pair.event_count / 50), 2),
                source=INFERRED_SOURCE,
                notes=f"Inferred from {pair.event_count} events over {pair.span_days} days",
            )
            result.temporary_created += 1
        else:
            continue

        db.add(assignment)
        result.created.append(assignment)
        logger.debug(f"Inferred assignment: {assignment}")

    if dry_run:
        db.rollback()
        logger.info(f"[DRY RUN] Would create {len(result.created)} assignments")
    else:
        db.commit()
        logger.info(
            f"Assignment inference: {result.primary_created} primary, "
            f"{result.temporary_created} temporary, {result.skipped_existing} existing skipped"
        )

    return result
