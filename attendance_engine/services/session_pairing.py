from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any
from zoneinfo import ZoneInfo

from attendance_engine.models import PunchOutSource, PunchState, PunchType, RawPunch
from attendance_engine.services.policy_config import ShiftConfig
from attendance_engine.services.timing import expected_window, local_work_date, normalize_ts, shift_work_date

STANDARD_CHECKIN_WINDOW_MINUTES = 30
EARLY_CHECKOUT_MINUTES = 30
LATE_CHECKOUT_MINUTES = 60

DayKey = tuple[str, date]


@dataclass(frozen=True)
class PunchRecord:
    external_id: str
    employee_code: str
    punch_time: datetime
    terminal_id: str | None
    punch_state: PunchState
    source: PunchOutSource = PunchOutSource.TERMINAL

    @classmethod
    def from_model(cls, row: RawPunch) -> PunchRecord:
        return cls(
            external_id=row.external_id,
            employee_code=row.employee_code,
            punch_time=normalize_ts(row.punch_time),
            terminal_id=row.terminal_id,
            punch_state=row.punch_state,
            source=row.source or PunchOutSource.TERMINAL,
        )


@dataclass(frozen=True)
class InterimPunch:
    punch: PunchRecord
    punch_type: PunchType

    def to_dict(self) -> dict[str, Any]:
        return {
            "ts": self.punch.punch_time.isoformat(),
            "punch_type": self.punch_type.value,
            "terminal_id": self.punch.terminal_id,
            "external_id": self.punch.external_id,
        }


@dataclass
class PairedDay:
    employee_code: str
    work_date: date
    check_in: PunchRecord
    check_out: PunchRecord | None
    session_sequence: int = 1
    interim: list[InterimPunch] = field(default_factory=list)
    folded: list[PunchRecord] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)

    @property
    def punch_out_source(self) -> PunchOutSource:
        if self.check_out is None:
            return PunchOutSource.TERMINAL
        return self.check_out.source


@dataclass(frozen=True)
class PunchClassification:
    punch: PunchRecord
    punch_type: PunchType
    reason: str


def terminal_rank(terminal_id: str | None, terminal_priority: Sequence[str]) -> int:
    if terminal_id is not None and terminal_id in terminal_priority:
        return terminal_priority.index(terminal_id)
    return len(terminal_priority)


def group_punches_by_day(
    punches: Iterable[PunchRecord],
    tz_for: Callable[[str], ZoneInfo],
    shift_for: Callable[[str], ShiftConfig] | None = None,
) -> dict[DayKey, list[PunchRecord]]:
    """Bucket punches per (employee, work day).

    Without ``shift_for`` the local calendar day is used. With it, the morning
    tail of an overnight shift stays on the day the shift started.
    """
    grouped: dict[DayKey, list[PunchRecord]] = defaultdict(list)
    for punch in punches:
        tz = tz_for(punch.employee_code)
        if shift_for is None:
            work_date = local_work_date(punch.punch_time, tz)
        else:
            work_date = shift_work_date(punch.punch_time, shift_for(punch.employee_code), tz)
        grouped[(punch.employee_code, work_date)].append(punch)
    return dict(grouped)


def fold_duplicate_punches(
    punches: Iterable[PunchRecord],
    terminal_priority: Sequence[str],
) -> tuple[list[PunchRecord], list[PunchRecord]]:
    ordered = sorted(
        punches,
        key=lambda item: (
            item.punch_time,
            terminal_rank(item.terminal_id, terminal_priority),
            item.terminal_id or "",
            item.external_id,
        ),
    )
    kept: list[PunchRecord] = []
    folded: list[PunchRecord] = []
    for punch in ordered:
        if kept and kept[-1].punch_time == punch.punch_time:
            folded.append(punch)
            continue
        kept.append(punch)
    return kept, folded


def _interim_type(punch: PunchRecord, position: int) -> PunchType:
    if punch.punch_state is PunchState.IN:
        return PunchType.INTERIM_CHECKIN
    if punch.punch_state is PunchState.OUT:
        return PunchType.INTERIM_CHECKOUT
    # Unknown state: alternate out/in after the opening check-in.
    return PunchType.INTERIM_CHECKOUT if position % 2 == 0 else PunchType.INTERIM_CHECKIN


def pair_day(
    employee_code: str,
    work_date: date,
    punches: Sequence[PunchRecord],
    *,
    terminal_priority: Sequence[str] = (),
) -> PairedDay | None:
    """Collapse one employee's punches for one local day into a session.

    Returns None when there is no punch at all; a session always has a check-in.
    """
    kept, folded = fold_duplicate_punches(punches, terminal_priority)
    if not kept:
        return None

    check_in = kept[0]
    remainder = kept[1:]
    notes: list[str] = []
    if folded:
        notes.append(
            f"Folded {len(folded)} duplicate punch(es) sharing a timestamp: "
            + ", ".join(f"{item.external_id}@{item.terminal_id or '-'}" for item in folded)
        )

    check_out: PunchRecord | None = None
    between: list[PunchRecord] = remainder
    if remainder:
        last = remainder[-1]
        has_out = any(item.punch_state is PunchState.OUT for item in remainder)
        if last.punch_state is PunchState.IN and not has_out:
            notes.append(
                f"Last punch at {last.punch_time.isoformat()} is a check-in with no check-out after "
                "arrival; treated as missing punch-out"
            )
        else:
            check_out = last
            between = remainder[:-1]

    interim = [InterimPunch(punch=item, punch_type=_interim_type(item, index)) for index, item in enumerate(between)]
    if interim:
        notes.append(f"Recorded {len(interim)} interim punch(es) between check-in and check-out")

    return PairedDay(
        employee_code=employee_code,
        work_date=work_date,
        check_in=check_in,
        check_out=check_out,
        interim=interim,
        folded=folded,
        notes=notes,
    )


def classify_punch_types(paired: PairedDay, shift: ShiftConfig, tz: ZoneInfo) -> list[PunchClassification]:
    shift_start, shift_end = expected_window(paired.work_date, shift, tz)
    result: list[PunchClassification] = []

    diff_from_start = (paired.check_in.punch_time - shift_start).total_seconds() / 60
    if diff_from_start < -STANDARD_CHECKIN_WINDOW_MINUTES:
        result.append(
            PunchClassification(
                paired.check_in,
                PunchType.EARLY_CHECKIN,
                f"Check-in {round(abs(diff_from_start))} min before shift start",
            )
        )
    elif diff_from_start <= STANDARD_CHECKIN_WINDOW_MINUTES:
        result.append(
            PunchClassification(
                paired.check_in,
                PunchType.STANDARD_CHECKIN,
                f"Check-in within ±{STANDARD_CHECKIN_WINDOW_MINUTES} min of shift start ({round(diff_from_start)} min)",
            )
        )
    else:
        result.append(
            PunchClassification(
                paired.check_in,
                PunchType.STANDARD_CHECKIN,
                f"Late check-in treated as standard ({round(diff_from_start)} min late)",
            )
        )

    for item in paired.interim:
        result.append(PunchClassification(item.punch, item.punch_type, "Punch between first check-in and last check-out"))

    if paired.check_out is not None:
        diff_from_end = (paired.check_out.punch_time - shift_end).total_seconds() / 60
        if diff_from_end < -EARLY_CHECKOUT_MINUTES:
            punch_type = PunchType.EARLY_CHECKOUT
            reason = f"Check-out {round(abs(diff_from_end))} min before shift end"
        elif diff_from_end > LATE_CHECKOUT_MINUTES:
            punch_type = PunchType.LATE_CHECKOUT
            reason = f"Check-out {round(diff_from_end)} min after shift end"
        else:
            punch_type = PunchType.STANDARD_CHECKOUT
            reason = f"Standard check-out ({round(diff_from_end)} min from shift end)"
        result.append(PunchClassification(paired.check_out, punch_type, reason))

    return result
