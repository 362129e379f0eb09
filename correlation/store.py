"""
Correlation Store

Keyed upsert of correlation records with manual-verification protection.

The upsert key is (kind, match_key). Every UPDATE goes through the
mapper's version_id_col, so a concurrent write or verification between
read and write surfaces as StaleDataError and the upsert is retried from
a fresh read. A verified record is never modified by the engine.
"""

import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Iterable, Optional, Union

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from config.logging import logger
from config.settings import settings
from correlation.errors import PersistenceConflict, VerificationError
from correlation.matching.matchers import CorrelationOutcome
from correlation.models import (
    CorrelationKind,
    CorrelationRecord,
    QualityTier,
    VerificationDecision,
)

# Subject ids per DELETE statement when clearing a scope
CLEAR_CHUNK_SIZE = 500


class UpsertStatus(Enum):
    INSERTED = "inserted"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    SKIPPED_VERIFIED = "skipped_verified"


@dataclass
class CorrelationQuery:
    """Filters for querying correlation records. None means no filter."""
    kind: Optional[CorrelationKind] = None
    subject_id: Optional[str] = None
    matched_entity_id: Optional[str] = None
    min_confidence: Optional[int] = None
    max_confidence: Optional[int] = None
    quality_tier: Optional[QualityTier] = None
    requires_review: Optional[bool] = None
    verified: Optional[bool] = None
    analysis_run_id: Optional[str] = None
    limit: Optional[int] = None


def parse_decision(decision: Union[str, VerificationDecision]) -> VerificationDecision:
    """Accept "confirm"/"confirmed"/"reject"/"rejected" or the enum itself."""
    if isinstance(decision, VerificationDecision):
        return decision
    value = (decision or "").strip().lower()
    if value in ("confirm", "confirmed", "accept", "yes"):
        return VerificationDecision.CONFIRMED
    if value in ("reject", "rejected", "no"):
        return VerificationDecision.REJECTED
    raise VerificationError(f"Unknown verification decision: {decision!r}")


def _is_conflict(error: Exception) -> bool:
    if isinstance(error, (StaleDataError, IntegrityError)):
        return True
    return isinstance(error, OperationalError) and "locked" in str(error).lower()


class CorrelationStore:
    """
    Persistence for correlation records.

    Usage:
        store = CorrelationStore(db)
        status = store.upsert(outcome, analysis_run_id=run.id)
        store.verify(record.id, verifier="ops", decision="confirm")
    """

    def __init__(
        self,
        db: Session,
        max_retries: Optional[int] = None,
        base_delay: Optional[float] = None,
    ):
        self.db = db
        self.max_retries = settings.UPSERT_MAX_RETRIES if max_retries is None else max_retries
        self.base_delay = settings.UPSERT_RETRY_BASE_DELAY if base_delay is None else base_delay

    # Writes

    def upsert(self, outcome: CorrelationOutcome, analysis_run_id: Optional[str] = None) -> UpsertStatus:
        """
        Insert or update the record for an outcome and commit.

        An identical outcome is a no-op: the stored row (including its
        analysis_run_id and timestamps) is left untouched.

        Raises:
            PersistenceConflict: if the write still conflicts after all retries
        """
        return self._with_retries(
            lambda: self._apply(outcome, analysis_run_id),
            outcome.kind.value,
            outcome.match_key,
        )

    def verify(
        self,
        correlation_id: str,
        verifier: str,
        decision: Union[str, VerificationDecision],
        notes: Optional[str] = None,
    ) -> CorrelationRecord:
        """
        Record a manual decision on a correlation and lock it.

        Confirming requires a resolved record and no other confirmed record
        for the same subject. Rejected records are locked too, so a rerun
        does not resurrect them.

        Two confirmations racing on one subject collide on the confirmed-
        subject unique index at flush; the retry re-reads and the loser
        gets a VerificationError.
        """
        decision = parse_decision(decision)
        if not verifier or not verifier.strip():
            raise VerificationError("Verifier is required")

        def apply():
            record = self._fresh(
                select(CorrelationRecord).where(CorrelationRecord.id == correlation_id)
            )
            if record is None:
                raise VerificationError(f"Correlation {correlation_id} not found")

            if decision == VerificationDecision.CONFIRMED:
                if record.matched_entity_id is None:
                    raise VerificationError(
                        f"Correlation {correlation_id} is unresolved and cannot be confirmed"
                    )
                other = self.db.scalars(
                    select(CorrelationRecord.id).where(
                        CorrelationRecord.kind == record.kind,
                        CorrelationRecord.subject_id == record.subject_id,
                        CorrelationRecord.id != record.id,
                        CorrelationRecord.verification_decision == VerificationDecision.CONFIRMED,
                    )
                ).first()
                if other:
                    raise VerificationError(
                        f"Subject {record.subject_id} already has confirmed correlation {other}"
                    )

            record.verified = True
            record.verification_decision = decision
            record.verified_by = verifier.strip()
            record.verified_at = datetime.now()
            record.verification_notes = notes
            record.requires_review = False
            self.db.flush()
            return record

        try:
            record = self._with_retries(apply, "verify", correlation_id)
        except VerificationError:
            self.db.rollback()
            raise

        logger.info(
            f"Correlation {correlation_id} {decision.value} by {verifier} "
            f"(subject {record.subject_id} -> {record.matched_entity_id})"
        )
        return record

    def clear(self, kind: CorrelationKind, subject_ids: Iterable[str]) -> int:
        """
        Delete unverified records of a kind for the given subjects.

        Returns:
            Number of records deleted
        """
        subject_ids = list(subject_ids)
        deleted = 0
        for start in range(0, len(subject_ids), CLEAR_CHUNK_SIZE):
            chunk = subject_ids[start:start + CLEAR_CHUNK_SIZE]
            result = self.db.execute(
                delete(CorrelationRecord).where(
                    CorrelationRecord.kind == kind,
                    CorrelationRecord.subject_id.in_(chunk),
                    CorrelationRecord.verified.is_(False),
                )
            )
            deleted += result.rowcount or 0
        self.db.commit()
        logger.info(f"Cleared {deleted} unverified {kind.value} records for {len(subject_ids)} subjects")
        return deleted

    # Reads

    def get(self, correlation_id: str) -> Optional[CorrelationRecord]:
        return self.db.get(CorrelationRecord, correlation_id)

    def get_by_key(self, kind: CorrelationKind, match_key: str) -> Optional[CorrelationRecord]:
        return self.db.scalars(
            select(CorrelationRecord).where(
                CorrelationRecord.kind == kind,
                CorrelationRecord.match_key == match_key,
            )
        ).first()

    def for_subject(self, kind: CorrelationKind, subject_id: str) -> list[CorrelationRecord]:
        """Records for a subject, highest confidence first."""
        return self.query(CorrelationQuery(kind=kind, subject_id=subject_id))

    def query(self, filters: Optional[CorrelationQuery] = None) -> list[CorrelationRecord]:
        """Records matching the filters, highest confidence first."""
        filters = filters or CorrelationQuery()
        stmt = select(CorrelationRecord)

        if filters.kind is not None:
            stmt = stmt.where(CorrelationRecord.kind == filters.kind)
        if filters.subject_id is not None:
            stmt = stmt.where(CorrelationRecord.subject_id == filters.subject_id)
        if filters.matched_entity_id is not None:
            stmt = stmt.where(CorrelationRecord.matched_entity_id == filters.matched_entity_id)
        if filters.min_confidence is not None:
            stmt = stmt.where(CorrelationRecord.confidence_score >= filters.min_confidence)
        if filters.max_confidence is not None:
            stmt = stmt.where(CorrelationRecord.confidence_score <= filters.max_confidence)
        if filters.quality_tier is not None:
            stmt = stmt.where(CorrelationRecord.quality_tier == filters.quality_tier)
        if filters.requires_review is not None:
            stmt = stmt.where(CorrelationRecord.requires_review.is_(filters.requires_review))
        if filters.verified is not None:
            stmt = stmt.where(CorrelationRecord.verified.is_(filters.verified))
        if filters.analysis_run_id is not None:
            stmt = stmt.where(CorrelationRecord.analysis_run_id == filters.analysis_run_id)

        stmt = stmt.order_by(
            CorrelationRecord.confidence_score.desc(),
            CorrelationRecord.subject_id,
            CorrelationRecord.match_key,
        )
        if filters.limit:
            stmt = stmt.limit(filters.limit)

        return list(self.db.scalars(stmt).all())

    def count(self, kind: Optional[CorrelationKind] = None) -> int:
        stmt = select(func.count(CorrelationRecord.id))
        if kind is not None:
            stmt = stmt.where(CorrelationRecord.kind == kind)
        return self.db.scalar(stmt) or 0

    # Internals

    def _apply(self, outcome: CorrelationOutcome, analysis_run_id: Optional[str]) -> UpsertStatus:
        existing = self._fresh(
            select(CorrelationRecord).where(
                CorrelationRecord.kind == outcome.kind,
                CorrelationRecord.match_key == outcome.match_key,
            )
        )

        if existing is None:
            record = CorrelationRecord(kind=outcome.kind, match_key=outcome.match_key)
            self._copy(outcome, record)
            record.analysis_run_id = analysis_run_id
            self.db.add(record)
            self.db.flush()
            return UpsertStatus.INSERTED

        if existing.verified:
            logger.warning(
                f"Skipping verified correlation {existing.id} "
                f"({outcome.kind.value}:{outcome.match_key})"
            )
            return UpsertStatus.SKIPPED_VERIFIED

        if self._same(existing, outcome):
            return UpsertStatus.UNCHANGED

        self._copy(outcome, existing)
        existing.analysis_run_id = analysis_run_id
        self.db.flush()
        return UpsertStatus.UPDATED

    def _with_retries(self, operation, kind: str, key: str):
        delay = self.base_delay
        for attempt in range(self.max_retries + 1):
            try:
                result = operation()
                self.db.commit()
                return result
            except (StaleDataError, IntegrityError, OperationalError) as e:
                self.db.rollback()
                if not _is_conflict(e):
                    raise
                if attempt < self.max_retries:
                    logger.warning(
                        f"Write conflict on {kind}:{key} (attempt {attempt + 1}), "
                        f"retrying in {delay:.2f}s: {e.__class__.__name__}"
                    )
                    time.sleep(delay)
                    delay *= 2
                else:
                    raise PersistenceConflict(kind, key, attempt + 1) from e

    def _fresh(self, stmt) -> Optional[CorrelationRecord]:
        return self.db.scalars(stmt.execution_options(populate_existing=True)).first()

    @staticmethod
    def _copy(outcome: CorrelationOutcome, record: CorrelationRecord):
        record.subject_id = outcome.subject_id
        record.matched_entity_id = outcome.matched_entity_id
        record.confidence_score = outcome.confidence
        record.confidence_breakdown = outcome.breakdown
        record.match_methods = list(outcome.match_methods)
        record.quality_tier = outcome.quality_tier
        record.quality_flags = list(outcome.quality_flags)
        record.requires_review = outcome.requires_review
        record.details = outcome.details

    @staticmethod
    def _same(record: CorrelationRecord, outcome: CorrelationOutcome) -> bool:
        return (
            record.subject_id == outcome.subject_id
            and record.matched_entity_id == outcome.matched_entity_id
            and record.confidence_score == outcome.confidence
            and (record.confidence_breakdown or {}) == outcome.breakdown
            and list(record.match_methods or []) == list(outcome.match_methods)
            and record.quality_tier == outcome.quality_tier
            and list(record.quality_flags or []) == list(outcome.quality_flags)
            and record.requires_review == outcome.requires_review
            and (record.details or {}) == outcome.details
        )
