"""
Quality Auditor

Read-side reporting over correlation records:
- Near-miss traces (every candidate and matcher score for one subject)
- Orphan report (unresolved telemetry grouped by source identifier)
- Coverage report (method breakdown, tiers, review/verification rates)
- Review queue export to CSV and application of reviewer decisions
- Per-record quality assessment
"""

import csv
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

from sqlalchemy import and_, func, select
from sqlalchemy.orm import Session

from config.logging import logger
from config.settings import settings
from correlation.errors import CorrelationError
from correlation.matching.matchers import MatchResult
from correlation.models import (
    CorrelationKind,
    CorrelationRecord,
    QualityTier,
    TelemetryEvent,
    Trip,
)
from correlation.orchestrator import SubjectProcessor
from correlation.store import CorrelationQuery, CorrelationStore

REVIEW_QUEUE_COLUMNS = [
    "correlation_id", "kind", "subject_id", "matched_entity_id",
    "confidence_score", "quality_tier", "match_methods", "quality_flags",
    "suggested_action", "decision", "verifier", "notes",
]


@dataclass
class OrphanGroup:
    """Unresolved telemetry from one source identifier."""
    source: str
    identifier: str
    vehicle_registration: Optional[str]
    event_count: int
    first_seen: Optional[datetime]
    last_seen: Optional[datetime]


@dataclass
class OrphanReport:
    groups: list[OrphanGroup] = field(default_factory=list)
    uncorrelated_trips: int = 0
    uncorrelated_trip_ids: list[str] = field(default_factory=list)

    @property
    def total_orphan_events(self) -> int:
        return sum(g.event_count for g in self.groups)


@dataclass
class QualityAssessment:
    """Why a correlation is (or is not) trustworthy."""
    confidence: int
    quality_tier: QualityTier
    factors: list[str] = field(default_factory=list)
    risks: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)


def _result_row(result: MatchResult) -> dict:
    return {
        "method": result.method.value,
        "applicable": result.applicable,
        "confidence": result.confidence,
        "entity_id": result.entity_id,
        "signal": result.signal,
        "details": result.details,
    }


class QualityAuditor:
    """
    Audit and review tooling for stored correlations.

    Usage:
        auditor = QualityAuditor(db)
        report = auditor.orphan_report()
        auditor.export_review_queue()
    """

    def __init__(self, db: Session, processor: Optional[SubjectProcessor] = None):
        self.db = db
        self.store = CorrelationStore(db)
        self._processor = processor

    @property
    def processor(self) -> SubjectProcessor:
        if self._processor is None:
            self._processor = SubjectProcessor(self.db, store=self.store)
        return self._processor

    def near_miss_trace(self, kind: CorrelationKind, subject_id: str) -> dict:
        """
        Every candidate considered for a subject with its per-matcher
        scores, including candidates that did not win or were not stored.
        """
        trace = {
            "kind": kind.value,
            "subject_id": subject_id,
            "stored": [
                {
                    "correlation_id": r.id,
                    "matched_entity_id": r.matched_entity_id,
                    "confidence_score": r.confidence_score,
                    "verified": r.verified,
                }
                for r in self.store.for_subject(kind, subject_id)
            ],
            "candidates": [],
        }

        if kind == CorrelationKind.DRIVER_ATTRIBUTION:
            event = self.db.get(TelemetryEvent, subject_id)
            if event is None:
                raise CorrelationError(f"Telemetry event {subject_id} not found")
            results = self.processor.resolver.evaluate_all(event)
            trace["candidates"] = [_result_row(r) for r in results]
            winner = next((r for r in results if r.is_match), None)
            trace["winner"] = winner.method.value if winner else None
            return trace

        trip = self.db.get(Trip, subject_id)
        if trip is None:
            raise CorrelationError(f"Trip {subject_id} not found")
        blender = self.processor.blender
        for delivery in blender.index.deliveries_for_trip(trip, blender.scoring.temporal_max_days):
            outcome = blender.blend(trip, delivery)
            trace["candidates"].append({
                "delivery_id": delivery.id,
                "delivery_key": delivery.delivery_key,
                "confidence": outcome.confidence if outcome else None,
                "quality_flags": outcome.quality_flags if outcome else [],
                "matchers": [_result_row(r) for r in blender.evaluate(trip, delivery)],
            })
        trace["candidates"].sort(key=lambda c: -(c["confidence"] or 0))
        return trace

    def orphan_report(
        self,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
    ) -> OrphanReport:
        """
        Unresolved driver attributions grouped by (source, device or
        registration), plus trips that have no delivery correlation.
        """
        identifier = func.coalesce(
            TelemetryEvent.device_id, TelemetryEvent.vehicle_registration, "unknown"
        )
        stmt = (
            select(
                TelemetryEvent.source,
                identifier.label("identifier"),
                func.max(TelemetryEvent.vehicle_registration),
                func.count(TelemetryEvent.id),
                func.min(TelemetryEvent.occurred_at),
                func.max(TelemetryEvent.occurred_at),
            )
            .join(
                CorrelationRecord,
                and_(
                    CorrelationRecord.subject_id == TelemetryEvent.id,
                    CorrelationRecord.kind == CorrelationKind.DRIVER_ATTRIBUTION,
                ),
            )
            .where(CorrelationRecord.matched_entity_id.is_(None))
        )
        if date_from:
            stmt = stmt.where(TelemetryEvent.occurred_at >= date_from)
        if date_to:
            stmt = stmt.where(TelemetryEvent.occurred_at <= date_to)
        stmt = stmt.group_by(TelemetryEvent.source, identifier)

        report = OrphanReport()
        for source, ident, registration, count, first_seen, last_seen in self.db.execute(stmt).all():
            report.groups.append(OrphanGroup(
                source=source,
                identifier=ident,
                vehicle_registration=registration,
                event_count=count,
                first_seen=first_seen,
                last_seen=last_seen,
            ))
        report.groups.sort(key=lambda g: (-g.event_count, g.source, g.identifier))

        correlated = select(CorrelationRecord.subject_id).where(
            CorrelationRecord.kind == CorrelationKind.TRIP_DELIVERY
        )
        trip_stmt = select(Trip.id).where(Trip.id.not_in(correlated))
        if date_from:
            trip_stmt = trip_stmt.where(Trip.start_time >= date_from)
        if date_to:
            trip_stmt = trip_stmt.where(Trip.start_time <= date_to)
        report.uncorrelated_trip_ids = list(self.db.scalars(trip_stmt.order_by(Trip.start_time, Trip.id)).all())
        report.uncorrelated_trips = len(report.uncorrelated_trip_ids)

        logger.info(
            f"Orphan report: {len(report.groups)} unresolved sources "
            f"({report.total_orphan_events} events), {report.uncorrelated_trips} uncorrelated trips"
        )
        return report

    def coverage_report(self, kind: Optional[CorrelationKind] = None) -> dict:
        """Method breakdown, tier distribution and review/verification rates."""
        records = self.store.query(CorrelationQuery(kind=kind))
        total = len(records)

        methods = Counter()
        tiers = Counter()
        matcher_scores = defaultdict(list)
        resolved = review = verified = 0
        confidence_sum = 0

        for record in records:
            methods.update(record.match_methods or [])
            tiers[record.quality_tier.value] += 1
            confidence_sum += record.confidence_score
            resolved += int(record.matched_entity_id is not None)
            review += int(bool(record.requires_review))
            verified += int(bool(record.verified))
            for method, score in (record.confidence_breakdown or {}).items():
                if isinstance(score, (int, float)) and not isinstance(score, bool) and method != "agreement":
                    matcher_scores[method].append(score)

        def rate(count: int) -> float:
            return round(count / total, 4) if total else 0.0

        return {
            "kind": kind.value if kind else "all",
            "total_records": total,
            "resolved": resolved,
            "unresolved": total - resolved,
            "coverage_rate": rate(resolved),
            "review_rate": rate(review),
            "verification_rate": rate(verified),
            "average_confidence": round(confidence_sum / total, 2) if total else None,
            "method_breakdown": dict(sorted(methods.items())),
            "tier_distribution": {t.value: tiers.get(t.value, 0) for t in QualityTier},
            "average_matcher_confidence": {
                method: round(sum(scores) / len(scores), 2)
                for method, scores in sorted(matcher_scores.items())
            },
        }

    def review_queue(self, kind: Optional[CorrelationKind] = None, limit: Optional[int] = None) -> list[CorrelationRecord]:
        """Unverified records flagged for review, highest confidence first."""
        return self.store.query(
            CorrelationQuery(kind=kind, requires_review=True, verified=False, limit=limit)
        )

    def export_review_queue(
        self,
        path: Optional[Path] = None,
        kind: Optional[CorrelationKind] = None,
    ) -> Path:
        """
        Export the review queue to CSV.

        Reviewers fill the decision column with "confirm" or "reject"
        (verifier and notes optional) and feed the file back through
        apply_review_decisions.

        Returns:
            Path to the created CSV file
        """
        if path is None:
            path = settings.project_root / "data" / "correlation_review_queue.csv"
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        queue = self.review_queue(kind)
        with open(path, "w", newline="", encoding="utf-8") as f:
            writer = csv.writer(f)
            writer.writerow(REVIEW_QUEUE_COLUMNS)
            for record in queue:
                writer.writerow([
                    record.id,
                    record.kind.value,
                    record.subject_id,
                    record.matched_entity_id or "",
                    record.confidence_score,
                    record.quality_tier.value,
                    ";".join(record.match_methods or []),
                    ";".join(record.quality_flags or []),
                    self._suggested_action(record),
                    "",  # Decision column for manual input
                    "",
                    "",
                ])

        logger.info(f"Exported {len(queue)} review items to {path}")
        return path

    def apply_review_decisions(self, csv_path: Path, default_verifier: str = "csv_review") -> dict:
        """
        Apply reviewer decisions from an exported review CSV.

        Returns:
            Dict with counts of actions taken
        """
        results = {"confirmed": 0, "rejected": 0, "skipped": 0, "errors": 0}

        with open(csv_path, "r", newline="", encoding="utf-8") as f:
            reader = csv.DictReader(f)

            for row in reader:
                decision = (row.get("decision") or "").strip().lower()
                if not decision:
                    results["skipped"] += 1
                    continue

                correlation_id = row.get("correlation_id", "").strip()
                verifier = (row.get("verifier") or "").strip() or default_verifier
                try:
                    record = self.store.verify(
                        correlation_id, verifier, decision, notes=(row.get("notes") or None)
                    )
                except CorrelationError as e:
                    logger.warning(f"Review decision for {correlation_id} not applied: {e}")
                    results["errors"] += 1
                    continue

                key = "confirmed" if record.verification_decision.value == "confirmed" else "rejected"
                results[key] += 1

        logger.info(f"Review decisions applied: {results}")
        return results

    def assess_quality(self, record: CorrelationRecord) -> QualityAssessment:
        """Confidence factors, risk factors and recommendations for a record."""
        breakdown = record.confidence_breakdown or {}
        details = record.details or {}
        flags = set(record.quality_flags or [])
        assessment = QualityAssessment(
            confidence=record.confidence_score, quality_tier=record.quality_tier
        )

        if record.kind == CorrelationKind.TRIP_DELIVERY:
            text_conf = breakdown.get("text")
            geo_conf = breakdown.get("geo")
            if (text_conf or 0) >= 85:
                assessment.factors.append("High text match confidence")
            if (geo_conf or 0) >= 85:
                assessment.factors.append("High geospatial match confidence")
            if (breakdown.get("temporal") or 0) >= 80:
                assessment.factors.append("Excellent temporal correlation")
            if (details.get("text") or {}).get("text_method") == "business_identifier":
                assessment.factors.append("Business identifier match found")
            if details.get("within_service_area"):
                assessment.factors.append("Trip within terminal service area")

            if "large_date_gap" in flags:
                assessment.risks.append("Large date difference between trip and delivery")
            if "long_distance" in flags:
                assessment.risks.append("Long distance between trip and terminal")
            if (text_conf or 0) < 50 and (geo_conf or 0) < 50:
                assessment.risks.append("Low confidence in both text and location matching")
        else:
            methods = record.match_methods or []
            if "direct_source" in methods:
                assessment.factors.append("Driver identified by the source system")
            elif "vehicle_assignment" in methods:
                assessment.factors.append("Active vehicle assignment at event time")
            if record.matched_entity_id is None:
                assessment.risks.append("No driver could be attributed")
            elif "time_window_loose" in methods:
                assessment.risks.append("Attribution relies on a distant reading")

        if record.confidence_score >= 90:
            assessment.recommendations.append(
                "High confidence correlation - suitable for automatic verification"
            )
        elif record.confidence_score >= 75:
            assessment.recommendations.append("Good correlation - minimal manual review needed")
        elif record.confidence_score >= 60:
            assessment.recommendations.append("Moderate correlation - recommend manual verification")
        else:
            assessment.recommendations.append(
                "Low confidence correlation - requires careful manual review"
            )
        if len(assessment.risks) > 1:
            assessment.recommendations.append("Multiple risk factors present - investigate thoroughly")

        return assessment

    @staticmethod
    def _suggested_action(record: CorrelationRecord) -> str:
        if record.matched_entity_id is None:
            return "investigate"
        if record.confidence_score >= 75:
            return "confirm"
        if record.confidence_score < 40:
            return "reject"
        return "review"
