"""
Batch Orchestrator

Runs bulk (re)correlation over a scope of subjects and records run-level
statistics on an AnalysisRun row.

Subjects are dispatched over a bounded thread pool; each worker thread
owns its own session, candidate index and store. Per-subject failures are
logged and counted without stopping the run. Setup failures (invalid
scope, unreachable store) and the overall run timeout move the run to
FAILED; records committed before that point are kept.
"""

import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time as dt_time
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from config.logging import logger, run_logger
from config.settings import settings
from correlation.database import SessionLocal
from correlation.errors import CorrelationError, RunFailure
from correlation.matching import scoring
from correlation.matching.blender import BlenderConfig, TripDeliveryBlender
from correlation.matching.candidates import CandidateIndex
from correlation.matching.resolver import DriverAttributionResolver, ResolverConfig
from correlation.models import AnalysisRun, CorrelationKind, RunStatus, TelemetryEvent, Trip
from correlation.store import CorrelationStore, UpsertStatus

KIND_ALIASES = {
    "driver": CorrelationKind.DRIVER_ATTRIBUTION,
    "driver_attribution": CorrelationKind.DRIVER_ATTRIBUTION,
    "trip": CorrelationKind.TRIP_DELIVERY,
    "trip_delivery": CorrelationKind.TRIP_DELIVERY,
}


def parse_kind(value) -> CorrelationKind:
    if isinstance(value, CorrelationKind):
        return value
    try:
        return KIND_ALIASES[str(value).strip().lower()]
    except KeyError:
        raise RunFailure(f"Unknown correlation kind: {value!r}")


def _as_datetime(value, end_of_day: bool = False) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, dt_time.max if end_of_day else dt_time.min)
    try:
        parsed = datetime.fromisoformat(str(value))
    except ValueError:
        raise RunFailure(f"Invalid date in scope: {value!r}")
    if end_of_day and len(str(value)) == 10:
        parsed = datetime.combine(parsed.date(), dt_time.max)
    return parsed


@dataclass
class RunScope:
    """Subjects covered by a run. Empty filters mean no restriction."""
    kind: CorrelationKind
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    fleet: Optional[str] = None
    vehicle_ids: list[str] = field(default_factory=list)
    subject_ids: list[str] = field(default_factory=list)
    limit: Optional[int] = None

    @classmethod
    def build(cls, kind, date_from=None, date_to=None, **filters) -> "RunScope":
        """Build a scope from loosely typed input (CLI strings, dates)."""
        return cls(
            kind=parse_kind(kind),
            date_from=_as_datetime(date_from),
            date_to=_as_datetime(date_to, end_of_day=True),
            **filters,
        )

    def validate(self):
        if self.date_from and self.date_to and self.date_from > self.date_to:
            raise RunFailure(f"Invalid scope: date_from {self.date_from} is after date_to {self.date_to}")
        if self.limit is not None and self.limit <= 0:
            raise RunFailure(f"Invalid scope: limit must be positive, got {self.limit}")

    def to_dict(self) -> dict:
        data = asdict(self)
        data["kind"] = self.kind.value
        data["date_from"] = self.date_from.isoformat() if self.date_from else None
        data["date_to"] = self.date_to.isoformat() if self.date_to else None
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "RunScope":
        data = dict(data)
        return cls.build(data.pop("kind"), data.pop("date_from", None), data.pop("date_to", None), **data)


@dataclass
class SubjectResult:
    """Outcome of correlating one subject."""
    subject_id: str
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped_verified: int = 0
    below_threshold: int = 0
    matched: bool = False
    confidences: list[int] = field(default_factory=list)
    high_confidence: int = 0
    needs_review: int = 0


@dataclass
class RunStats:
    """Statistics from an analysis run."""
    subjects_total: int = 0
    subjects_processed: int = 0
    subjects_matched: int = 0
    records_written: int = 0
    records_unchanged: int = 0
    records_cleared: int = 0
    high_confidence: int = 0
    needs_review: int = 0
    skipped_verified: int = 0
    failed: int = 0
    confidence_sum: int = 0
    confidence_count: int = 0

    @property
    def avg_confidence(self) -> Optional[float]:
        if not self.confidence_count:
            return None
        return round(self.confidence_sum / self.confidence_count, 2)

    def add(self, result: SubjectResult):
        self.subjects_processed += 1
        self.subjects_matched += int(result.matched)
        self.records_written += result.inserted + result.updated
        self.records_unchanged += result.unchanged
        self.skipped_verified += result.skipped_verified
        self.high_confidence += result.high_confidence
        self.needs_review += result.needs_review
        self.confidence_sum += sum(result.confidences)
        self.confidence_count += len(result.confidences)

    def add_failure(self):
        self.subjects_processed += 1
        self.failed += 1


class SubjectProcessor:
    """
    Correlates single subjects through the store, on one session.

    Shared by batch workers and the ingestion write-path hooks so both
    produce identical records.
    """

    def __init__(
        self,
        db: Session,
        resolver_config: Optional[ResolverConfig] = None,
        blender_config: Optional[BlenderConfig] = None,
        scoring_config: Optional[scoring.ScoringConfig] = None,
        store: Optional[CorrelationStore] = None,
    ):
        self.db = db
        self.resolver_config = resolver_config or ResolverConfig.from_settings()
        self.blender_config = blender_config or BlenderConfig.from_settings()
        self.scoring = scoring_config or scoring.ScoringConfig.from_settings()
        self.store = store or CorrelationStore(db)
        self._index: Optional[CandidateIndex] = None
        self._resolver: Optional[DriverAttributionResolver] = None
        self._blender: Optional[TripDeliveryBlender] = None

    @property
    def index(self) -> CandidateIndex:
        if self._index is None:
            self._index = CandidateIndex(self.db, self.resolver_config.max_candidates)
        return self._index

    @property
    def resolver(self) -> DriverAttributionResolver:
        if self._resolver is None:
            self._resolver = DriverAttributionResolver(
                self.db, self.resolver_config, self.scoring, self.index
            )
        return self._resolver

    @property
    def blender(self) -> TripDeliveryBlender:
        if self._blender is None:
            self._blender = TripDeliveryBlender(
                self.db, self.blender_config, self.scoring, self.index
            )
        return self._blender

    def outcomes(self, kind: CorrelationKind, subject_id: str):
        """Compute outcomes for a subject without persisting them."""
        if kind == CorrelationKind.DRIVER_ATTRIBUTION:
            event = self.db.get(TelemetryEvent, subject_id)
            if event is None:
                raise CorrelationError(f"Telemetry event {subject_id} not found")
            return [self.resolver.resolve(event)]

        trip = self.db.get(Trip, subject_id)
        if trip is None:
            raise CorrelationError(f"Trip {subject_id} not found")
        return self.blender.correlate(trip)

    def process(
        self,
        kind: CorrelationKind,
        subject_id: str,
        min_confidence: int = 0,
        analysis_run_id: Optional[str] = None,
    ) -> SubjectResult:
        """
        Correlate one subject and upsert its records.

        Resolved outcomes below min_confidence are not stored. Unresolved
        driver attributions are always stored so they show up in orphan
        and coverage reports.
        """
        result = SubjectResult(subject_id=subject_id)
        try:
            for outcome in self.outcomes(kind, subject_id):
                if outcome.is_resolved and outcome.confidence < min_confidence:
                    result.below_threshold += 1
                    continue

                status = self.store.upsert(outcome, analysis_run_id)
                if status == UpsertStatus.SKIPPED_VERIFIED:
                    result.skipped_verified += 1
                    continue

                if status == UpsertStatus.INSERTED:
                    result.inserted += 1
                elif status == UpsertStatus.UPDATED:
                    result.updated += 1
                else:
                    result.unchanged += 1

                result.confidences.append(outcome.confidence)
                if outcome.is_resolved:
                    result.matched = True
                if outcome.confidence >= self.scoring.high_confidence_threshold:
                    result.high_confidence += 1
                if outcome.requires_review:
                    result.needs_review += 1
        except Exception:
            self.db.rollback()
            raise

        return result


class _RunContext:
    """Per-run worker state: one SubjectProcessor (and session) per thread."""

    def __init__(self, session_factory: sessionmaker, make_processor: Callable[[Session], SubjectProcessor]):
        self.session_factory = session_factory
        self.make_processor = make_processor
        self._local = threading.local()
        self._lock = threading.Lock()
        self._sessions: list[Session] = []

    def processor(self) -> SubjectProcessor:
        processor = getattr(self._local, "processor", None)
        if processor is None:
            db = self.session_factory()
            with self._lock:
                self._sessions.append(db)
            processor = self.make_processor(db)
            self._local.processor = processor
        return processor

    def close(self):
        with self._lock:
            for db in self._sessions:
                db.close()
            self._sessions.clear()


class BatchOrchestrator:
    """
    Bulk correlation runner.

    Usage:
        orchestrator = BatchOrchestrator()
        run_id = orchestrator.start_run(
            RunScope.build("driver", "2025-01-01", "2025-01-31"),
            min_confidence=60,
        )
        run = orchestrator.get_run(run_id)
    """

    def __init__(
        self,
        session_factory: sessionmaker = SessionLocal,
        worker_count: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
        resolver_config: Optional[ResolverConfig] = None,
        blender_config: Optional[BlenderConfig] = None,
        scoring_config: Optional[scoring.ScoringConfig] = None,
    ):
        self.session_factory = session_factory
        self.worker_count = max(1, worker_count or settings.WORKER_COUNT)
        self.timeout_seconds = settings.RUN_TIMEOUT_SECONDS if timeout_seconds is None else timeout_seconds
        self.resolver_config = resolver_config or ResolverConfig.from_settings()
        self.blender_config = blender_config or BlenderConfig.from_settings()
        self.scoring = scoring_config or scoring.ScoringConfig.from_settings()

        self._cancel_events: dict[str, threading.Event] = {}
        self._threads: dict[str, threading.Thread] = {}
        self._lock = threading.Lock()

    # Public API

    def start_run(
        self,
        scope: RunScope,
        min_confidence: int = 0,
        clear_existing: bool = False,
        background: bool = False,
    ) -> str:
        """
        Create and execute a run.

        With background=True the run executes on its own thread and the
        caller polls get_run() / wait().

        Returns:
            The analysis run id
        """
        run_id = self.create_run(scope, min_confidence, clear_existing)

        if background:
            thread = threading.Thread(
                target=self.execute, args=(run_id,), name=f"run-{run_id[:8]}", daemon=True
            )
            with self._lock:
                self._threads[run_id] = thread
            thread.start()
        else:
            self.execute(run_id)

        return run_id

    def create_run(self, scope: RunScope, min_confidence: int = 0, clear_existing: bool = False) -> str:
        """Persist a CREATED run without executing it."""
        if not 0 <= min_confidence <= 100:
            raise RunFailure(f"min_confidence must be within 0-100, got {min_confidence}")

        with self.session_factory() as db:
            run = AnalysisRun(
                kind=scope.kind,
                status=RunStatus.CREATED,
                scope=scope.to_dict(),
                min_confidence=min_confidence,
                clear_existing=clear_existing,
            )
            db.add(run)
            db.commit()
            run_id = run.id

        with self._lock:
            self._cancel_events[run_id] = threading.Event()
        return run_id

    def cancel(self, run_id: str) -> bool:
        """Stop dispatching new subjects; in-flight subjects finish."""
        with self._lock:
            event = self._cancel_events.get(run_id)
        if event is None:
            return False
        event.set()
        logger.info(f"Cancellation requested for run {run_id}")
        return True

    def wait(self, run_id: str, timeout: Optional[float] = None) -> Optional[AnalysisRun]:
        """Block until a background run finishes, then return it."""
        with self._lock:
            thread = self._threads.get(run_id)
        if thread is not None:
            thread.join(timeout)
        return self.get_run(run_id)

    def get_run(self, run_id: str) -> Optional[AnalysisRun]:
        with self.session_factory() as db:
            run = db.get(AnalysisRun, run_id)
            if run is not None:
                db.expunge(run)
            return run

    def execute(self, run_id: str) -> RunStats:
        """Execute a CREATED run to completion (or failure)."""
        log = run_logger(run_id)
        stats = RunStats()
        started = time.monotonic()

        with self._lock:
            cancel_event = self._cancel_events.setdefault(run_id, threading.Event())

        with self.session_factory() as db:
            run = db.get(AnalysisRun, run_id)
            if run is None:
                raise RunFailure(f"Analysis run {run_id} not found")
            if run.status != RunStatus.CREATED:
                raise RunFailure(f"Analysis run {run_id} is {run.status.value}, expected created")

            run.status = RunStatus.RUNNING
            run.started_at = datetime.now()
            db.commit()
            log.info(f"Run started: kind={run.kind.value} scope={run.scope}")

            try:
                scope = RunScope.from_dict(run.scope or {"kind": run.kind.value})
                scope.validate()
                subject_ids = self.select_subjects(db, scope)
                stats.subjects_total = len(subject_ids)
                if run.clear_existing:
                    stats.records_cleared = CorrelationStore(db).clear(scope.kind, subject_ids)
            except (RunFailure, SQLAlchemyError) as e:
                db.rollback()
                log.error(f"Run failed during setup: {e}")
                self._finish(db, run_id, stats, started, RunStatus.FAILED, error=str(e))
                return stats

            min_confidence = run.min_confidence
            kind = scope.kind

        log.info(f"Dispatching {len(subject_ids)} subjects over {self.worker_count} workers")
        status, error = self._dispatch(
            run_id, kind, subject_ids, min_confidence, stats, cancel_event, started, log
        )

        with self.session_factory() as db:
            self._finish(
                db, run_id, stats, started, status,
                error=error, cancelled=cancel_event.is_set() and status == RunStatus.COMPLETED,
            )

        log.info(
            f"Run {status.value}: processed={stats.subjects_processed}/{stats.subjects_total} "
            f"matched={stats.subjects_matched} written={stats.records_written} "
            f"high_confidence={stats.high_confidence} needs_review={stats.needs_review} "
            f"failed={stats.failed} avg_confidence={stats.avg_confidence}"
        )
        with self._lock:
            self._cancel_events.pop(run_id, None)
        return stats

    def select_subjects(self, db: Session, scope: RunScope) -> list[str]:
        """Subject ids in scope, oldest first."""
        if scope.kind == CorrelationKind.DRIVER_ATTRIBUTION:
            model, time_column = TelemetryEvent, TelemetryEvent.occurred_at
        else:
            model, time_column = Trip, Trip.start_time

        stmt = select(model.id)
        if scope.date_from:
            stmt = stmt.where(time_column >= scope.date_from)
        if scope.date_to:
            stmt = stmt.where(time_column <= scope.date_to)
        if scope.fleet:
            stmt = stmt.where(model.fleet == scope.fleet)
        if scope.vehicle_ids:
            stmt = stmt.where(model.vehicle_id.in_(scope.vehicle_ids))
        if scope.subject_ids:
            stmt = stmt.where(model.id.in_(scope.subject_ids))
        stmt = stmt.order_by(time_column, model.id)
        if scope.limit:
            stmt = stmt.limit(scope.limit)

        return list(db.scalars(stmt).all())

    # Internals

    def _make_processor(self, db: Session) -> SubjectProcessor:
        return SubjectProcessor(db, self.resolver_config, self.blender_config, self.scoring)

    def _process(self, context: _RunContext, kind, subject_id, min_confidence, run_id) -> SubjectResult:
        return context.processor().process(kind, subject_id, min_confidence, run_id)

    def _dispatch(self, run_id, kind, subject_ids, min_confidence, stats, cancel_event, started, log):
        """
        Feed subjects to the pool, keeping at most 2x workers in flight.

        Returns:
            (final status, error message)
        """
        context = _RunContext(self.session_factory, self._make_processor)
        executor = ThreadPoolExecutor(max_workers=self.worker_count, thread_name_prefix=f"run-{run_id[:8]}")
        max_in_flight = self.worker_count * 2
        in_flight: dict[Future, str] = {}
        pending = iter(subject_ids)
        exhausted = False
        timed_out = False

        try:
            while True:
                while not exhausted and not cancel_event.is_set() and len(in_flight) < max_in_flight:
                    subject_id = next(pending, None)
                    if subject_id is None:
                        exhausted = True
                        break
                    future = executor.submit(self._process, context, kind, subject_id, min_confidence, run_id)
                    in_flight[future] = subject_id

                if not in_flight:
                    break

                remaining = self.timeout_seconds - (time.monotonic() - started)
                if remaining <= 0:
                    timed_out = True
                    break

                done, _ = wait(list(in_flight), timeout=remaining, return_when=FIRST_COMPLETED)
                for future in done:
                    subject_id = in_flight.pop(future)
                    if future.cancelled():
                        continue
                    try:
                        stats.add(future.result())
                    except Exception as e:
                        stats.add_failure()
                        log.error(f"Subject {subject_id} failed: {e.__class__.__name__}: {e}")

                if cancel_event.is_set():
                    for future in [f for f in in_flight if f.cancel()]:
                        in_flight.pop(future)
        finally:
            if timed_out:
                executor.shutdown(wait=False, cancel_futures=True)
            else:
                executor.shutdown(wait=True)
                context.close()

        if timed_out:
            message = (
                f"Run timed out after {self.timeout_seconds}s with "
                f"{stats.subjects_processed}/{len(subject_ids)} subjects processed"
            )
            log.error(message)
            return RunStatus.FAILED, message

        if cancel_event.is_set():
            log.warning(f"Run cancelled after {stats.subjects_processed}/{len(subject_ids)} subjects")
        return RunStatus.COMPLETED, None

    def _finish(self, db, run_id, stats: RunStats, started: float, status: RunStatus,
                error: Optional[str] = None, cancelled: bool = False):
        run = db.get(AnalysisRun, run_id)
        run.status = status
        run.completed_at = datetime.now()
        run.elapsed_seconds = round(time.monotonic() - started, 3)
        run.subjects_total = stats.subjects_total
        run.subjects_processed = stats.subjects_processed
        run.subjects_matched = stats.subjects_matched
        run.records_written = stats.records_written
        run.records_unchanged = stats.records_unchanged
        run.records_cleared = stats.records_cleared
        run.high_confidence_count = stats.high_confidence
        run.needs_review_count = stats.needs_review
        run.skipped_verified_count = stats.skipped_verified
        run.failed_count = stats.failed
        run.avg_confidence = stats.avg_confidence
        run.cancelled = cancelled
        run.error_message = error
        db.commit()
