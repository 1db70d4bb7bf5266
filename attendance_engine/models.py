from __future__ import annotations

import enum
from datetime import date, datetime, time, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Time,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from attendance_engine.db import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")


class PunchState(str, enum.Enum):
    IN = "IN"
    OUT = "OUT"
    UNKNOWN = "UNKNOWN"


class ArrivalStatus(str, enum.Enum):
    EARLY = "early"
    ON_TIME = "on_time"
    GRACE = "grace"
    LATE = "late"


class DepartureStatus(str, enum.Enum):
    EARLY = "early"
    ON_TIME = "on_time"
    LATE = "late"
    INCOMPLETE = "incomplete"


class OvertimeApprovalState(str, enum.Enum):
    NONE = "none"
    AUTO_APPROVED = "auto_approved"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"


class OvertimeConfidence(str, enum.Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class PunchOutSource(str, enum.Enum):
    TERMINAL = "terminal"
    SYSTEM_AUTO = "system_auto"
    MOBILE_SELF = "mobile_self"
    ADMIN_MANUAL = "admin_manual"

    @property
    def is_conventional(self) -> bool:
        return self is PunchOutSource.TERMINAL


class PunchType(str, enum.Enum):
    STANDARD_CHECKIN = "standard_checkin"
    EARLY_CHECKIN = "early_checkin"
    INTERIM_CHECKIN = "interim_checkin"
    STANDARD_CHECKOUT = "standard_checkout"
    EARLY_CHECKOUT = "early_checkout"
    LATE_CHECKOUT = "late_checkout"
    INTERIM_CHECKOUT = "interim_checkout"


class SyncStatus(str, enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    HALTED = "halted"
    FAILED = "failed"


class AuditActorType(str, enum.Enum):
    ADMIN = "ADMIN"
    SYSTEM = "SYSTEM"


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class Shift(Base):
    __tablename__ = "shifts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    start_time_local: Mapped[time] = mapped_column(Time, nullable=False)
    end_time_local: Mapped[time] = mapped_column(Time, nullable=False)
    grace_period_minutes: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=30,
        server_default=text("30"),
    )
    departure_tolerance_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_auto_overtime_hours: Mapped[float | None] = mapped_column(Float, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))

    employees: Mapped[list[Employee]] = relationship(back_populates="shift")


class Employee(Base):
    __tablename__ = "employees"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_code: Mapped[str] = mapped_column(String(50), nullable=False, unique=True, index=True)
    full_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    department: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_field_department: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=text("false"),
    )
    shift_id: Mapped[int | None] = mapped_column(
        ForeignKey("shifts.id", ondelete="SET NULL"),
        nullable=True,
    )
    timezone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))

    shift: Mapped[Shift | None] = relationship(back_populates="employees")


class RawPunch(Base):
    __tablename__ = "raw_punches"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    external_id: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    employee_code: Mapped[str] = mapped_column(String(50), nullable=False)
    punch_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    terminal_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    punch_state: Mapped[PunchState] = mapped_column(
        Enum(PunchState, name="punch_state"),
        nullable=False,
    )
    source: Mapped[PunchOutSource] = mapped_column(
        Enum(PunchOutSource, name="punch_out_source", values_callable=_enum_values),
        nullable=False,
        default=PunchOutSource.TERMINAL,
    )
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    pulled_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (Index("ix_raw_punches_employee_time", "employee_code", "punch_time"),)


class AttendanceSession(Base):
    __tablename__ = "attendance_sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_code: Mapped[str] = mapped_column(String(50), nullable=False)
    work_date: Mapped[date] = mapped_column(Date, nullable=False)
    session_sequence: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    processing_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_current: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))

    check_in: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    check_out: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    punch_out_source: Mapped[PunchOutSource] = mapped_column(
        Enum(PunchOutSource, name="punch_out_source", values_callable=_enum_values),
        nullable=False,
        default=PunchOutSource.TERMINAL,
    )

    arrival_status: Mapped[ArrivalStatus] = mapped_column(
        Enum(ArrivalStatus, name="arrival_status", values_callable=_enum_values),
        nullable=False,
    )
    departure_status: Mapped[DepartureStatus] = mapped_column(
        Enum(DepartureStatus, name="departure_status", values_callable=_enum_values),
        nullable=False,
    )
    early_minutes: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    late_minutes: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    grace_minutes: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    early_departure_minutes: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    late_departure_minutes: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    credited_hours: Mapped[float] = mapped_column(Float, nullable=False)
    overtime_hours: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    overtime_approval_state: Mapped[OvertimeApprovalState] = mapped_column(
        Enum(OvertimeApprovalState, name="overtime_approval_state", values_callable=_enum_values),
        nullable=False,
        default=OvertimeApprovalState.NONE,
    )
    suggested_hours: Mapped[float | None] = mapped_column(Float, nullable=True)
    overtime_confidence: Mapped[OvertimeConfidence | None] = mapped_column(
        Enum(OvertimeConfidence, name="overtime_confidence", values_callable=_enum_values),
        nullable=True,
    )
    score_deduction: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    mobile_activity_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    interim_punches: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, nullable=False, default=list)
    notes: Mapped[str] = mapped_column(Text, nullable=False, default="")
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        UniqueConstraint(
            "employee_code",
            "work_date",
            "session_sequence",
            "processing_version",
            name="uq_attendance_sessions_key_version",
        ),
        Index("ix_attendance_sessions_current", "employee_code", "work_date", "is_current"),
    )


class SyncCheckpoint(Base):
    __tablename__ = "sync_checkpoints"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    feed_name: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    status: Mapped[SyncStatus] = mapped_column(
        Enum(SyncStatus, name="sync_status", values_callable=_enum_values),
        nullable=False,
        default=SyncStatus.IDLE,
    )
    window_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    window_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    current_page: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    last_external_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    records_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    records_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ts_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    actor_type: Mapped[AuditActorType] = mapped_column(
        Enum(AuditActorType, name="audit_actor_type"),
        nullable=False,
    )
    actor_id: Mapped[str] = mapped_column(String(255), nullable=False)
    action: Mapped[str] = mapped_column(String(255), nullable=False)
    entity_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    details: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
