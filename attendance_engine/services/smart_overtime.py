from __future__ import annotations

import logging
from calendar import monthrange
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from attendance_engine.models import AttendanceSession, OvertimeApprovalState, OvertimeConfidence
from attendance_engine.services.policy_config import EmployeeConfig, PolicyConfig
from attendance_engine.services.timing import normalize_ts

logger = logging.getLogger("attendance_engine.smart_overtime")


class OvertimeHistory(Protocol):
    def credited_hours(self, employee_code: str, *, before: date, lookback_days: int) -> list[float]: ...


@dataclass(frozen=True)
class HistoricalPattern:
    has_overtime_pattern: bool
    average_hours: float
    overtime_days: int


@dataclass(frozen=True)
class OvertimeDecision:
    suggested_hours: float
    justification: list[str] = field(default_factory=list)
    confidence: OvertimeConfidence = OvertimeConfidence.MEDIUM
    approval_required: bool = False

    @property
    def approval_state(self) -> OvertimeApprovalState:
        if self.approval_required:
            return OvertimeApprovalState.PENDING_APPROVAL
        return OvertimeApprovalState.AUTO_APPROVED

    def describe(self) -> str:
        return (
            f"suggested {self.suggested_hours:g}h, confidence {self.confidence.value}, "
            f"{'approval required' if self.approval_required else 'auto-approved'}: "
            + "; ".join(self.justification)
        )


class SqlOvertimeHistory:
    """Read-only view over completed, current session versions."""

    def __init__(self, db: Session):
        self.db = db

    def credited_hours(self, employee_code: str, *, before: date, lookback_days: int) -> list[float]:
        start = before - timedelta(days=lookback_days)
        stmt = (
            select(AttendanceSession.credited_hours)
            .where(
                AttendanceSession.employee_code == employee_code,
                AttendanceSession.is_current.is_(True),
                AttendanceSession.check_out.is_not(None),
                AttendanceSession.work_date >= start,
                AttendanceSession.work_date < before,
            )
            .order_by(AttendanceSession.work_date.desc())
            .limit(lookback_days)
        )
        return [float(value) for value in self.db.scalars(stmt).all() if value is not None]


class HistorySnapshot:
    """History answers read up front, so worker threads never touch the database session."""

    def __init__(self, values: dict[tuple[str, date, int], list[float] | Exception]):
        self._values = values

    @classmethod
    def prefetch(
        cls,
        history: OvertimeHistory,
        keys: Iterable[tuple[str, date]],
        *,
        lookback_days: int,
    ) -> HistorySnapshot:
        values: dict[tuple[str, date, int], list[float] | Exception] = {}
        for employee_code, work_date in keys:
            try:
                values[(employee_code, work_date, lookback_days)] = history.credited_hours(
                    employee_code,
                    before=work_date,
                    lookback_days=lookback_days,
                )
            except Exception as exc:
                # Re-raised at lookup so the analyzer logs it against the right session.
                values[(employee_code, work_date, lookback_days)] = exc
        return cls(values)

    def credited_hours(self, employee_code: str, *, before: date, lookback_days: int) -> list[float]:
        value = self._values.get((employee_code, before, lookback_days))
        if value is None:
            raise LookupError(f"No prefetched history for {employee_code} before {before.isoformat()}")
        if isinstance(value, Exception):
            raise value
        return list(value)


def should_analyze(overtime_hours: float, policy: PolicyConfig) -> bool:
    return overtime_hours > policy.auto_approval_threshold_hours


def open_session_overtime_hours(check_in: datetime, shift_hours: float, now: datetime) -> float:
    """Hours an unclosed session has run past its scheduled length."""
    elapsed = (normalize_ts(now) - normalize_ts(check_in)).total_seconds() / 3600
    return max(0.0, elapsed - shift_hours)


def analyze_history(hours: list[float], policy: PolicyConfig) -> HistoricalPattern:
    overtime_records = [value for value in hours if value > policy.overtime_threshold_hours]
    if overtime_records:
        average = sum(overtime_records) / len(overtime_records)
    else:
        average = policy.standard_shift_hours
    return HistoricalPattern(
        has_overtime_pattern=len(overtime_records) >= policy.history_min_overtime_days,
        average_hours=float(round(average)),
        overtime_days=len(overtime_records),
    )


def is_busy_period(day: date, policy: PolicyConfig) -> bool:
    last_day = monthrange(day.year, day.month)[1]
    return day.day <= policy.busy_period_days or day.day > last_day - policy.busy_period_days


def is_weekend_or_holiday(day: date, policy: PolicyConfig) -> bool:
    return day.weekday() >= 5 or day in policy.holidays


def analyze_overtime(
    *,
    check_in: datetime,
    check_out: datetime | None = None,
    work_date: date,
    employee: EmployeeConfig,
    history: OvertimeHistory | None,
    policy: PolicyConfig,
    now: datetime | None = None,
) -> OvertimeDecision:
    now_utc = normalize_ts(now) if now is not None else datetime.now(timezone.utc)
    suggested = policy.standard_shift_hours
    justification: list[str] = [f"Standard {policy.standard_shift_hours:g}h base"]
    confidence = OvertimeConfidence.MEDIUM
    approval_required = False

    shift = employee.shift
    if shift.is_assigned:
        shift_hours = min(shift.duration_hours(policy), policy.history_cap_hours)
        suggested = max(suggested, shift_hours)
        justification.append(f"Shift: {shift.name} ({shift_hours:g}h)")
        confidence = OvertimeConfidence.HIGH

    if employee.is_field_staff(policy):
        suggested = max(suggested, policy.field_department_baseline_hours)
        justification.append(f"Field staff allowance ({policy.field_department_baseline_hours:g}h)")
        confidence = OvertimeConfidence.HIGH

    if history is not None:
        try:
            hours = history.credited_hours(
                employee.employee_code,
                before=work_date,
                lookback_days=policy.history_lookback_days,
            )
        except Exception:
            logger.exception(
                "smart_overtime_history_failed",
                extra={"employee_code": employee.employee_code, "work_date": work_date},
            )
            hours = []
        pattern = analyze_history(hours, policy)
        if pattern.has_overtime_pattern:
            pattern_hours = min(pattern.average_hours, policy.history_cap_hours)
            suggested = max(suggested, pattern_hours)
            justification.append(
                f"Historical pattern ({pattern.overtime_days} overtime days, {pattern_hours:g}h avg)"
            )
            confidence = OvertimeConfidence.HIGH

    if is_busy_period(work_date, policy):
        suggested = min(suggested + policy.busy_period_bonus_hours, policy.history_cap_hours)
        justification.append(f"Busy period (+{policy.busy_period_bonus_hours:g}h)")

    elapsed_end = normalize_ts(check_out) if check_out is not None else now_utc
    elapsed_hours = (elapsed_end - normalize_ts(check_in)).total_seconds() / 3600
    if elapsed_hours > policy.forgotten_punch_out_hours:
        suggested = min(suggested, policy.forgotten_punch_out_cap_hours)
        justification.append(
            f"Likely forgotten punch-out (capped at {policy.forgotten_punch_out_cap_hours:g}h)"
        )
        confidence = OvertimeConfidence.LOW

    if requires_approval(suggested, policy):
        approval_required = True
        overtime = suggested - policy.overtime_threshold_hours
        justification.append(f"Requires approval ({overtime:g}h overtime)")

    if is_weekend_or_holiday(work_date, policy):
        suggested = min(suggested, policy.standard_shift_hours)
        justification.append("Weekend/holiday standard hours")
        approval_required = True

    return OvertimeDecision(
        suggested_hours=min(suggested, policy.max_working_hours),
        justification=justification,
        confidence=confidence,
        approval_required=approval_required,
    )


def requires_approval(suggested_hours: float, policy: PolicyConfig) -> bool:
    return (suggested_hours - policy.overtime_threshold_hours) > policy.auto_approval_threshold_hours
