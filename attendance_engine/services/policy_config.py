from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, time

from attendance_engine.models import Employee, Shift
from attendance_engine.settings import Settings, get_holidays, split_csv


def parse_clock(raw: str) -> time:
    hour_text, _, minute_text = raw.strip().partition(":")
    return time(int(hour_text), int(minute_text or 0))


@dataclass(frozen=True)
class PolicyConfig:
    default_shift_start: time = time(9, 0)
    default_shift_end: time = time(17, 0)
    default_grace_minutes: int = 30
    departure_tolerance_minutes: int = 30
    standard_shift_hours: float = 8.0
    max_auto_overtime_hours: float = 3.0
    max_session_hours: float = 12.0
    auto_approval_threshold_hours: float = 4.0
    overtime_threshold_hours: float = 8.0
    max_working_hours: float = 16.0
    field_department_baseline_hours: float = 10.0
    field_departments: tuple[str, ...] = (
        "PSCA",
        "LHE-Safecity",
        "LHE-Safecity-Drivers",
        "Tech",
        "LHE-Datacom",
        "Field Operations",
    )
    history_lookback_days: int = 30
    history_min_overtime_days: int = 5
    history_cap_hours: float = 12.0
    busy_period_days: int = 3
    busy_period_bonus_hours: float = 2.0
    forgotten_punch_out_hours: float = 16.0
    forgotten_punch_out_cap_hours: float = 12.0
    score_deduction_per_hour: float = 2.0
    mobile_activity_rate_per_hour: float = 0.33
    max_mobile_activity_score: float = 240.0
    holidays: frozenset[date] = field(default_factory=frozenset)

    @classmethod
    def from_settings(cls, settings: Settings) -> PolicyConfig:
        return cls(
            default_shift_start=parse_clock(settings.default_shift_start),
            default_shift_end=parse_clock(settings.default_shift_end),
            default_grace_minutes=settings.default_grace_minutes,
            departure_tolerance_minutes=settings.departure_tolerance_minutes,
            standard_shift_hours=settings.standard_shift_hours,
            max_auto_overtime_hours=settings.max_auto_overtime_hours,
            max_session_hours=settings.max_session_hours,
            auto_approval_threshold_hours=settings.auto_approval_threshold_hours,
            overtime_threshold_hours=settings.overtime_threshold_hours,
            max_working_hours=settings.max_working_hours,
            field_department_baseline_hours=settings.field_department_baseline_hours,
            field_departments=tuple(split_csv(settings.field_departments)),
            history_lookback_days=settings.history_lookback_days,
            history_min_overtime_days=settings.history_min_overtime_days,
            history_cap_hours=settings.history_cap_hours,
            busy_period_days=settings.busy_period_days,
            busy_period_bonus_hours=settings.busy_period_bonus_hours,
            forgotten_punch_out_hours=settings.forgotten_punch_out_hours,
            forgotten_punch_out_cap_hours=settings.forgotten_punch_out_cap_hours,
            score_deduction_per_hour=settings.score_deduction_per_hour,
            mobile_activity_rate_per_hour=settings.mobile_activity_rate_per_hour,
            max_mobile_activity_score=settings.max_mobile_activity_score,
            holidays=get_holidays(),
        )


@dataclass(frozen=True)
class ShiftConfig:
    name: str
    start_time: time
    end_time: time
    grace_period_minutes: int
    departure_tolerance_minutes: int
    max_auto_overtime_hours: float
    is_assigned: bool = True

    @classmethod
    def default(cls, policy: PolicyConfig) -> ShiftConfig:
        return cls(
            name="Default",
            start_time=policy.default_shift_start,
            end_time=policy.default_shift_end,
            grace_period_minutes=policy.default_grace_minutes,
            departure_tolerance_minutes=policy.departure_tolerance_minutes,
            max_auto_overtime_hours=policy.max_auto_overtime_hours,
            is_assigned=False,
        )

    @classmethod
    def from_model(cls, shift: Shift, policy: PolicyConfig) -> ShiftConfig:
        return cls(
            name=shift.name,
            start_time=shift.start_time_local,
            end_time=shift.end_time_local,
            grace_period_minutes=(
                shift.grace_period_minutes
                if shift.grace_period_minutes is not None
                else policy.default_grace_minutes
            ),
            departure_tolerance_minutes=(
                shift.departure_tolerance_minutes
                if shift.departure_tolerance_minutes is not None
                else policy.departure_tolerance_minutes
            ),
            max_auto_overtime_hours=(
                shift.max_auto_overtime_hours
                if shift.max_auto_overtime_hours is not None
                else policy.max_auto_overtime_hours
            ),
        )

    @property
    def crosses_midnight(self) -> bool:
        return self.end_time <= self.start_time

    def duration_hours(self, policy: PolicyConfig) -> float:
        """Scheduled length; 8h policy default when no shift is assigned."""
        if not self.is_assigned:
            return policy.standard_shift_hours
        start_minutes = self.start_time.hour * 60 + self.start_time.minute
        end_minutes = self.end_time.hour * 60 + self.end_time.minute
        if end_minutes <= start_minutes:
            end_minutes += 24 * 60
        return min((end_minutes - start_minutes) / 60, policy.max_working_hours)


@dataclass(frozen=True)
class EmployeeConfig:
    employee_code: str
    department: str | None
    is_field_department: bool
    shift: ShiftConfig
    timezone_name: str | None = None
    is_known: bool = True

    @classmethod
    def from_model(cls, employee: Employee, policy: PolicyConfig) -> EmployeeConfig:
        shift = employee.shift
        if shift is None or not shift.is_active:
            shift_config = ShiftConfig.default(policy)
        else:
            shift_config = ShiftConfig.from_model(shift, policy)
        return cls(
            employee_code=employee.employee_code,
            department=employee.department,
            is_field_department=bool(employee.is_field_department),
            shift=shift_config,
            timezone_name=employee.timezone,
        )

    @classmethod
    def unknown(cls, employee_code: str, policy: PolicyConfig) -> EmployeeConfig:
        return cls(
            employee_code=employee_code,
            department=None,
            is_field_department=False,
            shift=ShiftConfig.default(policy),
            is_known=False,
        )

    def is_field_staff(self, policy: PolicyConfig) -> bool:
        if self.is_field_department:
            return True
        if not self.department:
            return False
        department = self.department.lower()
        return any(item.lower() in department for item in policy.field_departments)
