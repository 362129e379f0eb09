"""
Fleet Correlation Engine - Database Models

SQLAlchemy ORM models. Vehicles, drivers, assignments and the source
records (telemetry events, trips, deliveries, terminals) are written by
ingestion collaborators and only read here. Correlation records and
analysis runs are owned by the engine.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum as PyEnum
from typing import Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.sqlite import JSON
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


# Enums
class AssignmentType(PyEnum):
    PRIMARY = "primary"
    TEMPORARY = "temporary"


class CorrelationKind(PyEnum):
    DRIVER_ATTRIBUTION = "driver_attribution"  # telemetry event -> driver (1:1)
    TRIP_DELIVERY = "trip_delivery"            # trip -> delivery record (1:n)


class QualityTier(PyEnum):
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"


class VerificationDecision(PyEnum):
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


class RunStatus(PyEnum):
    CREATED = "created"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


def generate_uuid() -> str:
    return str(uuid.uuid4())


class Vehicle(Base):
    """Fleet vehicle keyed by its canonical registration."""

    __tablename__ = "vehicles"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    registration: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    registration_key: Mapped[Optional[str]] = mapped_column(String(20), index=True)
    fleet: Mapped[Optional[str]] = mapped_column(Text, index=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=func.now(), nullable=False
    )

    assignments: Mapped[list["VehicleAssignment"]] = relationship(
        back_populates="vehicle"
    )

    def __repr__(self) -> str:
        return f"<Vehicle(id={self.id}, registration={self.registration})>"


class Driver(Base):
    """
    Driver with a canonical name plus the names other systems use for them.

    name_aliases maps a source tag to the list of names that source emits,
    e.g. {"lytx": ["SMITH, JOHN"], "mtdata": ["Johnny Smith"]}.
    """

    __tablename__ = "drivers"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    full_name: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    name_aliases: Mapped[Optional[dict]] = mapped_column(JSON, default=dict)
    employee_id: Mapped[Optional[str]] = mapped_column(String(50), index=True)
    fleet: Mapped[Optional[str]] = mapped_column(Text)
    active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=func.now(), nullable=False
    )

    def all_names(self, source: Optional[str] = None) -> list[str]:
        """Canonical name followed by aliases (one source, or all sources)."""
        names = [self.full_name]
        aliases = self.name_aliases or {}
        if source is not None:
            names.extend(aliases.get(source, []))
        else:
            for source_names in aliases.values():
                names.extend(source_names)
        return names

    def __repr__(self) -> str:
        return f"<Driver(id={self.id}, name={self.full_name})>"


class VehicleAssignment(Base):
    """
    Time-bounded driver/vehicle assignment.

    valid_until NULL means the assignment is still open.
    """

    __tablename__ = "vehicle_assignments"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    vehicle_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("vehicles.id"), nullable=False, index=True
    )
    driver_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("drivers.id"), nullable=False, index=True
    )
    valid_from: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    valid_until: Mapped[Optional[datetime]] = mapped_column(DateTime)
    assignment_type: Mapped[AssignmentType] = mapped_column(
        Enum(AssignmentType), default=AssignmentType.PRIMARY, nullable=False
    )
    confidence_score: Mapped[Optional[float]] = mapped_column(Float)
    source: Mapped[Optional[str]] = mapped_column(String(50))
    notes: Mapped[Optional[str]] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=func.now(), nullable=False
    )

    vehicle: Mapped["Vehicle"] = relationship(back_populates="assignments")
    driver: Mapped["Driver"] = relationship()

    __table_args__ = (
        Index("ix_assignments_vehicle_window", "vehicle_id", "valid_from", "valid_until"),
    )

    def is_active_at(self, moment: datetime) -> bool:
        if moment < self.valid_from:
            return False
        return self.valid_until is None or moment <= self.valid_until

    def __repr__(self) -> str:
        return (
            f"<VehicleAssignment(vehicle={self.vehicle_id}, driver={self.driver_id}, "
            f"type={self.assignment_type.value}, conf={self.confidence_score})>"
        )


class TelemetryEvent(Base):
    """
    Safety/telemetry event from an in-cab system (Guardian, LYTX, ...).

    driver_id is only set when the source system itself identified the
    driver; driver_name is whatever free text the source exported.
    """

    __tablename__ = "telemetry_events"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    source: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    external_id: Mapped[Optional[str]] = mapped_column(Text)
    device_id: Mapped[Optional[str]] = mapped_column(String(100), index=True)

    vehicle_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("vehicles.id"), index=True
    )
    vehicle_registration: Mapped[Optional[str]] = mapped_column(Text)
    fleet: Mapped[Optional[str]] = mapped_column(Text)

    occurred_at: Mapped[Optional[datetime]] = mapped_column(DateTime, index=True)
    latitude: Mapped[Optional[float]] = mapped_column(Float)
    longitude: Mapped[Optional[float]] = mapped_column(Float)

    event_type: Mapped[Optional[str]] = mapped_column(Text)
    driver_name: Mapped[Optional[str]] = mapped_column(Text)
    driver_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("drivers.id")
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("ix_telemetry_vehicle_time", "vehicle_id", "occurred_at"),
    )

    def __repr__(self) -> str:
        return f"<TelemetryEvent(id={self.id}, source={self.source}, at={self.occurred_at})>"


class Trip(Base):
    """GPS trip with start/end instants, locations and coordinates."""

    __tablename__ = "trips"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    source: Mapped[str] = mapped_column(String(50), default="mtdata", nullable=False)
    external_id: Mapped[Optional[str]] = mapped_column(Text)

    vehicle_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("vehicles.id"), index=True
    )
    vehicle_registration: Mapped[Optional[str]] = mapped_column(Text)
    fleet: Mapped[Optional[str]] = mapped_column(Text, index=True)

    driver_name: Mapped[Optional[str]] = mapped_column(Text)
    driver_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("drivers.id")
    )

    start_time: Mapped[Optional[datetime]] = mapped_column(DateTime, index=True)
    end_time: Mapped[Optional[datetime]] = mapped_column(DateTime)
    start_location: Mapped[Optional[str]] = mapped_column(Text)
    end_location: Mapped[Optional[str]] = mapped_column(Text)
    start_latitude: Mapped[Optional[float]] = mapped_column(Float)
    start_longitude: Mapped[Optional[float]] = mapped_column(Float)
    end_latitude: Mapped[Optional[float]] = mapped_column(Float)
    end_longitude: Mapped[Optional[float]] = mapped_column(Float)
    distance_km: Mapped[Optional[float]] = mapped_column(Float)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("ix_trips_vehicle_span", "vehicle_id", "start_time", "end_time"),
    )

    @property
    def trip_date(self) -> Optional[date]:
        return self.start_time.date() if self.start_time else None

    def __repr__(self) -> str:
        return f"<Trip(id={self.id}, vehicle={self.vehicle_registration}, start={self.start_time})>"


class DeliveryRecord(Base):
    """Commercial delivery (bill of lading) loaded at a terminal."""

    __tablename__ = "delivery_records"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    delivery_key: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    bill_of_lading: Mapped[Optional[str]] = mapped_column(Text)
    delivery_date: Mapped[Optional[date]] = mapped_column(Date, index=True)
    customer: Mapped[Optional[str]] = mapped_column(Text)
    terminal: Mapped[Optional[str]] = mapped_column(Text, index=True)
    carrier: Mapped[Optional[str]] = mapped_column(Text)
    vehicle_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("vehicles.id"), index=True
    )
    volume_litres: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2))

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return f"<DeliveryRecord(key={self.delivery_key}, date={self.delivery_date})>"


class Terminal(Base):
    """Loading terminal with a declared service radius."""

    __tablename__ = "terminals"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    name: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    aliases: Mapped[Optional[dict]] = mapped_column(JSON, default=list)
    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)
    service_radius_km: Mapped[float] = mapped_column(Float, default=50.0)
    carrier: Mapped[Optional[str]] = mapped_column(Text)
    active: Mapped[bool] = mapped_column(Boolean, default=True)

    def __repr__(self) -> str:
        return f"<Terminal(name={self.name}, radius={self.service_radius_km}km)>"


class AnalysisRun(Base):
    """
    One batch (re)correlation pass over a scope.

    Status moves CREATED -> RUNNING -> COMPLETED | FAILED. Counts stay
    readable for failed and cancelled runs.
    """

    __tablename__ = "analysis_runs"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    kind: Mapped[CorrelationKind] = mapped_column(
        Enum(CorrelationKind), nullable=False, index=True
    )
    status: Mapped[RunStatus] = mapped_column(
        Enum(RunStatus), default=RunStatus.CREATED, nullable=False, index=True
    )
    scope: Mapped[Optional[dict]] = mapped_column(JSON)
    min_confidence: Mapped[int] = mapped_column(Integer, default=0)
    clear_existing: Mapped[bool] = mapped_column(Boolean, default=False)

    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    subjects_total: Mapped[int] = mapped_column(Integer, default=0)
    subjects_processed: Mapped[int] = mapped_column(Integer, default=0)
    subjects_matched: Mapped[int] = mapped_column(Integer, default=0)
    records_written: Mapped[int] = mapped_column(Integer, default=0)
    records_unchanged: Mapped[int] = mapped_column(Integer, default=0)
    records_cleared: Mapped[int] = mapped_column(Integer, default=0)
    high_confidence_count: Mapped[int] = mapped_column(Integer, default=0)
    needs_review_count: Mapped[int] = mapped_column(Integer, default=0)
    skipped_verified_count: Mapped[int] = mapped_column(Integer, default=0)
    failed_count: Mapped[int] = mapped_column(Integer, default=0)
    avg_confidence: Mapped[Optional[float]] = mapped_column(Float)
    elapsed_seconds: Mapped[Optional[float]] = mapped_column(Float)
    cancelled: Mapped[bool] = mapped_column(Boolean, default=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return f"<AnalysisRun(id={self.id}, kind={self.kind.value}, status={self.status.value})>"


class CorrelationRecord(Base):
    """
    Engine output linking a subject record to a matched entity.

    match_key is the upsert key within a kind: the subject id for driver
    attribution, "<trip_id>:<delivery_id>" for trip-delivery pairs. The
    version column is the mapper's version_id_col, so every UPDATE is a
    compare-and-replace against the version that was read.
    """

    __tablename__ = "correlation_records"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    kind: Mapped[CorrelationKind] = mapped_column(
        Enum(CorrelationKind), nullable=False
    )
    match_key: Mapped[str] = mapped_column(String(80), nullable=False)
    subject_id: Mapped[str] = mapped_column(String(36), nullable=False)
    matched_entity_id: Mapped[Optional[str]] = mapped_column(String(36), index=True)

    confidence_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    confidence_breakdown: Mapped[Optional[dict]] = mapped_column(JSON, default=dict)
    match_methods: Mapped[Optional[list]] = mapped_column(JSON, default=list)
    quality_tier: Mapped[QualityTier] = mapped_column(
        Enum(QualityTier), nullable=False, default=QualityTier.POOR
    )
    quality_flags: Mapped[Optional[list]] = mapped_column(JSON, default=list)
    requires_review: Mapped[bool] = mapped_column(Boolean, default=False)
    details: Mapped[Optional[dict]] = mapped_column(JSON, default=dict)

    # Manual verification locks the record against reruns
    verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    verification_decision: Mapped[Optional[VerificationDecision]] = mapped_column(
        Enum(VerificationDecision)
    )
    verified_by: Mapped[Optional[str]] = mapped_column(Text)
    verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    verification_notes: Mapped[Optional[str]] = mapped_column(Text)

    analysis_run_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("analysis_runs.id"), index=True
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=func.now(), onupdate=func.now(), nullable=False
    )

    __table_args__ = (
        UniqueConstraint("kind", "match_key", name="uq_correlation_kind_key"),
        Index("ix_correlation_kind_subject", "kind", "subject_id"),
        # At most one confirmed record per subject
        Index(
            "uq_correlation_confirmed_subject",
            "kind",
            "subject_id",
            unique=True,
            sqlite_where=text("verification_decision = 'CONFIRMED'"),
            postgresql_where=text("verification_decision = 'CONFIRMED'"),
        ),
        Index("ix_correlation_review", "requires_review", "verified"),
        Index("ix_correlation_tier", "quality_tier"),
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def is_unresolved(self) -> bool:
        return self.matched_entity_id is None

    def __repr__(self) -> str:
        return (
            f"<CorrelationRecord(kind={self.kind.value}, subject={self.subject_id}, "
            f"entity={self.matched_entity_id}, conf={self.confidence_score})>"
        )
