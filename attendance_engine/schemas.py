from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from attendance_engine.models import (
    ArrivalStatus,
    DepartureStatus,
    OvertimeApprovalState,
    OvertimeConfidence,
    PunchOutSource,
    SyncStatus,
)


class FeedPunch(BaseModel):
    id: int | str | None = None
    emp_code: str = Field(min_length=1)
    punch_time: datetime
    punch_state: int | str | None = None
    terminal_sn: str | None = None
    terminal_alias: str | None = None
    punch_source: str | None = None

    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    @property
    def terminal_id(self) -> str | None:
        return self.terminal_alias or self.terminal_sn


class FeedPage(BaseModel):
    count: int | None = None
    next: str | None = None
    data: list[FeedPunch] = Field(default_factory=list)

    model_config = ConfigDict(extra="ignore")


class PunchSyncRequest(BaseModel):
    window_start: datetime
    window_end: datetime
    feed_name: str | None = Field(default=None, min_length=1, max_length=64)

    @model_validator(mode="after")
    def validate_window(self) -> "PunchSyncRequest":
        if self.window_end <= self.window_start:
            raise ValueError("window_end must be after window_start")
        return self


class PunchSyncResultRead(BaseModel):
    feed_name: str
    status: SyncStatus
    pages: int
    fetched: int
    inserted: int
    skipped_duplicates: int
    skipped_excluded: int


class SyncCheckpointRead(BaseModel):
    feed_name: str
    status: SyncStatus
    window_start: datetime | None = None
    window_end: datetime | None = None
    current_page: int
    last_external_id: str | None = None
    records_processed: int
    records_total: int
    retry_count: int
    last_error: str | None = None
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ReconcileRequest(BaseModel):
    date_from: date
    date_to: date
    workers: int | None = Field(default=None, ge=1, le=32)
    chunk_size: int | None = Field(default=None, ge=1, le=5000)

    @model_validator(mode="after")
    def validate_range(self) -> "ReconcileRequest":
        if self.date_to < self.date_from:
            raise ValueError("date_to must be on or after date_from")
        return self


class FailedKeyRead(BaseModel):
    employee_code: str
    work_date: date
    error: str


class ReconcileResultRead(BaseModel):
    processed: int
    saved: int
    skipped: int
    auto_approved: int
    pending_approval: int
    overbilling_prevented_hours: float
    failed: list[FailedKeyRead] = Field(default_factory=list)


class AttendanceSessionRead(BaseModel):
    id: int
    employee_code: str
    work_date: date
    session_sequence: int
    processing_version: int
    is_current: bool
    check_in: datetime
    check_out: datetime | None = None
    punch_out_source: PunchOutSource
    arrival_status: ArrivalStatus
    departure_status: DepartureStatus
    late_minutes: float
    early_departure_minutes: float
    credited_hours: float
    overtime_hours: float
    overtime_approval_state: OvertimeApprovalState
    suggested_hours: float | None = None
    overtime_confidence: OvertimeConfidence | None = None
    score_deduction: int
    mobile_activity_score: int
    interim_punches: list[dict[str, Any]] = Field(default_factory=list)
    notes: str
    processed_at: datetime

    model_config = ConfigDict(from_attributes=True)


class OvertimeDecisionRequest(BaseModel):
    decision: Literal["approve", "reject"]
    approved_hours: float | None = Field(default=None, ge=0, le=24)
    reason: str | None = Field(default=None, max_length=500)

    @model_validator(mode="after")
    def validate_hours(self) -> "OvertimeDecisionRequest":
        if self.decision == "reject" and self.approved_hours is not None:
            raise ValueError("approved_hours is only valid when approving")
        return self
