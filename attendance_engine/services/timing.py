from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from attendance_engine.models import ArrivalStatus, DepartureStatus
from attendance_engine.services.policy_config import PolicyConfig, ShiftConfig
from attendance_engine.settings import get_settings

DEFAULT_TIMEZONE = "Asia/Karachi"


@dataclass(frozen=True)
class TimingDecision:
    arrival_status: ArrivalStatus
    departure_status: DepartureStatus
    expected_arrival: datetime
    expected_departure: datetime
    early_minutes: float = 0.0
    late_minutes: float = 0.0
    grace_minutes: float = 0.0
    early_departure_minutes: float = 0.0
    late_departure_minutes: float = 0.0

    def describe(self) -> str:
        parts = [f"arrival={self.arrival_status.value}"]
        if self.early_minutes:
            parts.append(f"early {self.early_minutes:g} min")
        if self.grace_minutes:
            parts.append(f"grace {self.grace_minutes:g} min")
        if self.late_minutes:
            parts.append(f"late {self.late_minutes:g} min")
        parts.append(f"departure={self.departure_status.value}")
        if self.early_departure_minutes:
            parts.append(f"left {self.early_departure_minutes:g} min early")
        if self.late_departure_minutes:
            parts.append(f"left {self.late_departure_minutes:g} min late")
        return ", ".join(parts)


@lru_cache
def attendance_timezone() -> ZoneInfo:
    raw_name = (get_settings().attendance_timezone or "").strip() or DEFAULT_TIMEZONE
    try:
        return ZoneInfo(raw_name)
    except ZoneInfoNotFoundError:
        return ZoneInfo(DEFAULT_TIMEZONE)


@lru_cache(maxsize=64)
def resolve_timezone(name: str | None) -> ZoneInfo:
    normalized = (name or "").strip()
    if not normalized:
        return attendance_timezone()
    try:
        return ZoneInfo(normalized)
    except ZoneInfoNotFoundError:
        return attendance_timezone()


def normalize_ts(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def local_work_date(ts: datetime, tz: ZoneInfo) -> date:
    return normalize_ts(ts).astimezone(tz).date()


def expected_window(work_date: date, shift: ShiftConfig, tz: ZoneInfo) -> tuple[datetime, datetime]:
    expected_arrival = datetime.combine(work_date, shift.start_time, tzinfo=tz)
    departure_date = work_date + timedelta(days=1) if shift.crosses_midnight else work_date
    expected_departure = datetime.combine(departure_date, shift.end_time, tzinfo=tz)
    return expected_arrival.astimezone(timezone.utc), expected_departure.astimezone(timezone.utc)


def shift_work_date(ts: datetime, shift: ShiftConfig, tz: ZoneInfo) -> date:
    """Work day a punch belongs to.

    For shifts that cross midnight, a punch on the following morning up to the
    previous shift's end plus its overtime allowance belongs to the previous day.
    The cutoff never reaches past the start of the same day's shift.
    """
    punch_utc = normalize_ts(ts)
    local_date = punch_utc.astimezone(tz).date()
    if not shift.crosses_midnight:
        return local_date

    previous_date = local_date - timedelta(days=1)
    _, previous_end = expected_window(previous_date, shift, tz)
    todays_start, _ = expected_window(local_date, shift, tz)
    cutoff = min(previous_end + timedelta(hours=shift.max_auto_overtime_hours), todays_start)
    if punch_utc < cutoff:
        return previous_date
    return local_date


def _minutes_between(later: datetime, earlier: datetime) -> float:
    return (normalize_ts(later) - normalize_ts(earlier)).total_seconds() / 60


def classify_arrival(diff_minutes: float, grace_minutes: int) -> ArrivalStatus:
    if diff_minutes < 0:
        return ArrivalStatus.EARLY
    if diff_minutes == 0:
        return ArrivalStatus.ON_TIME
    if diff_minutes <= grace_minutes:
        return ArrivalStatus.GRACE
    return ArrivalStatus.LATE


def classify_departure(diff_minutes: float | None, tolerance_minutes: int) -> DepartureStatus:
    if diff_minutes is None:
        return DepartureStatus.INCOMPLETE
    if diff_minutes < 0:
        return DepartureStatus.EARLY
    if diff_minutes <= tolerance_minutes:
        return DepartureStatus.ON_TIME
    return DepartureStatus.LATE


def classify_timing(
    *,
    check_in: datetime,
    check_out: datetime | None,
    shift: ShiftConfig,
    work_date: date,
    tz: ZoneInfo,
    policy: PolicyConfig,
) -> TimingDecision:
    expected_arrival, expected_departure = expected_window(work_date, shift, tz)
    grace = shift.grace_period_minutes if shift.grace_period_minutes is not None else policy.default_grace_minutes
    tolerance = (
        shift.departure_tolerance_minutes
        if shift.departure_tolerance_minutes is not None
        else policy.departure_tolerance_minutes
    )

    arrival_diff = _minutes_between(check_in, expected_arrival)
    arrival_status = classify_arrival(arrival_diff, grace)

    departure_diff = _minutes_between(check_out, expected_departure) if check_out is not None else None
    departure_status = classify_departure(departure_diff, tolerance)

    return TimingDecision(
        arrival_status=arrival_status,
        departure_status=departure_status,
        expected_arrival=expected_arrival,
        expected_departure=expected_departure,
        early_minutes=round(-arrival_diff, 2) if arrival_status is ArrivalStatus.EARLY else 0.0,
        late_minutes=round(arrival_diff, 2) if arrival_status is ArrivalStatus.LATE else 0.0,
        grace_minutes=round(arrival_diff, 2) if arrival_status is ArrivalStatus.GRACE else 0.0,
        early_departure_minutes=(
            round(-departure_diff, 2) if departure_status is DepartureStatus.EARLY and departure_diff is not None else 0.0
        ),
        late_departure_minutes=(
            round(departure_diff, 2) if departure_status is DepartureStatus.LATE and departure_diff is not None else 0.0
        ),
    )
