from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Protocol
from zoneinfo import ZoneInfo

from attendance_engine.models import AttendanceSession, OvertimeApprovalState, PunchOutSource
from attendance_engine.services.overtime_cap import HOURS_PRECISION, CapDecision, apply_overtime_cap, clamp_credited_hours
from attendance_engine.services.policy_config import EmployeeConfig, PolicyConfig
from attendance_engine.services.scoring import AuditTrail, ScoreDecision, score_punch_out
from attendance_engine.services.session_pairing import (
    DayKey,
    PunchRecord,
    classify_punch_types,
    group_punches_by_day,
    pair_day,
)
from attendance_engine.services.smart_overtime import (
    HistorySnapshot,
    OvertimeDecision,
    OvertimeHistory,
    analyze_overtime,
    open_session_overtime_hours,
    should_analyze,
)
from attendance_engine.services.timing import TimingDecision, classify_timing, normalize_ts, resolve_timezone

logger = logging.getLogger("attendance_engine.reconcile")

HUMAN_DECISIONS = frozenset({OvertimeApprovalState.APPROVED, OvertimeApprovalState.REJECTED})


class SessionStore(Protocol):
    def load_punches(self, date_from: date, date_to: date) -> list[PunchRecord]: ...

    def load_employee_configs(self, employee_codes: Sequence[str], policy: PolicyConfig) -> dict[str, EmployeeConfig]: ...

    def current_session(self, key: DayKey, session_sequence: int = 1) -> AttendanceSession | None: ...

    def save_draft(self, draft: SessionDraft, *, processed_at: datetime) -> AttendanceSession: ...


@dataclass
class SessionDraft:
    employee_code: str
    work_date: date
    session_sequence: int
    check_in: datetime
    check_out: datetime | None
    punch_out_source: PunchOutSource
    timing: TimingDecision
    cap: CapDecision
    credited_hours: float
    overtime_hours: float
    approval_state: OvertimeApprovalState
    overtime: OvertimeDecision | None = None
    score: ScoreDecision | None = None
    interim_punches: list[dict[str, Any]] = field(default_factory=list)
    trail: AuditTrail = field(default_factory=AuditTrail)

    @property
    def key(self) -> DayKey:
        return (self.employee_code, self.work_date)

    def decision_fields(self) -> dict[str, Any]:
        return {
            "check_in": self.check_in,
            "check_out": self.check_out,
            "punch_out_source": self.punch_out_source,
            "arrival_status": self.timing.arrival_status,
            "departure_status": self.timing.departure_status,
            "early_minutes": self.timing.early_minutes,
            "late_minutes": self.timing.late_minutes,
            "grace_minutes": self.timing.grace_minutes,
            "early_departure_minutes": self.timing.early_departure_minutes,
            "late_departure_minutes": self.timing.late_departure_minutes,
            "credited_hours": self.credited_hours,
            "overtime_hours": self.overtime_hours,
            "overtime_approval_state": self.approval_state,
            "suggested_hours": self.overtime.suggested_hours if self.overtime else None,
            "overtime_confidence": self.overtime.confidence if self.overtime else None,
            "score_deduction": self.score.score_deduction if self.score else 0,
            "mobile_activity_score": self.score.mobile_activity_score if self.score else 0,
            "interim_punches": list(self.interim_punches),
        }


@dataclass(frozen=True)
class FailedKey:
    employee_code: str
    work_date: date
    error: str


@dataclass
class ReconcileResult:
    processed: int = 0
    saved: int = 0
    skipped: int = 0
    auto_approved: int = 0
    pending_approval: int = 0
    overbilling_prevented_hours: float = 0.0
    failed: list[FailedKey] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "saved": self.saved,
            "skipped": self.skipped,
            "auto_approved": self.auto_approved,
            "pending_approval": self.pending_approval,
            "overbilling_prevented_hours": round(self.overbilling_prevented_hours, 2),
            "failed": [
                {"employee_code": item.employee_code, "work_date": item.work_date.isoformat(), "error": item.error}
                for item in self.failed
            ],
        }


def reconcile_day(
    key: DayKey,
    punches: Sequence[PunchRecord],
    *,
    employee: EmployeeConfig,
    policy: PolicyConfig,
    history: OvertimeHistory | None = None,
    terminal_priority: Sequence[str] = (),
    tz: ZoneInfo | None = None,
    now: datetime | None = None,
) -> SessionDraft | None:
    employee_code, work_date = key
    zone = tz or resolve_timezone(employee.timezone_name)
    paired = pair_day(employee_code, work_date, punches, terminal_priority=terminal_priority)
    if paired is None:
        return None

    shift = employee.shift
    trail = AuditTrail()
    for note in paired.notes:
        trail.add("PAIRING", note)
    if not employee.is_known:
        trail.add(
            "DEFAULT",
            f"Employee {employee_code} not found in configuration; default shift "
            f"{shift.start_time:%H:%M}-{shift.end_time:%H:%M} applied",
        )
    elif not shift.is_assigned:
        trail.add(
            "DEFAULT",
            f"No shift assigned; default {shift.start_time:%H:%M}-{shift.end_time:%H:%M}, "
            f"{shift.grace_period_minutes} min grace, {shift.duration_hours(policy):g}h credit basis",
        )

    check_in = paired.check_in.punch_time
    check_out = paired.check_out.punch_time if paired.check_out is not None else None

    timing = classify_timing(
        check_in=check_in,
        check_out=check_out,
        shift=shift,
        work_date=work_date,
        tz=zone,
        policy=policy,
    )
    trail.add("TIMING", timing.describe())
    punch_types = classify_punch_types(paired, shift, zone)
    trail.add("TIMING", "Punch types: " + ", ".join(f"{item.punch_type.value} ({item.reason})" for item in punch_types))

    cap = apply_overtime_cap(check_in=check_in, check_out=check_out, shift=shift, policy=policy)
    trail.add("CAP", f"{cap.reason}; credited {cap.credited_hours:g}h")

    now_utc = normalize_ts(now) if now is not None else datetime.now(timezone.utc)
    credited_hours = cap.credited_hours
    overtime_hours = cap.overtime_hours
    approval_state = OvertimeApprovalState.NONE
    overtime: OvertimeDecision | None = None
    if cap.measured:
        analyze = should_analyze(overtime_hours, policy)
    else:
        open_overtime = open_session_overtime_hours(check_in, cap.shift_duration_hours, now_utc)
        analyze = should_analyze(open_overtime, policy)
        if analyze:
            trail.add(
                "OVERTIME",
                f"Session still open {open_overtime:.2f}h past shift length as of {now_utc.isoformat()}",
            )
    if analyze:
        overtime = analyze_overtime(
            check_in=check_in,
            check_out=check_out if cap.measured else None,
            work_date=work_date,
            employee=employee,
            history=history,
            policy=policy,
            now=now_utc,
        )
        trail.add("OVERTIME", overtime.describe())
        if overtime.approval_required:
            approval_state = OvertimeApprovalState.PENDING_APPROVAL
            held = round(min(cap.credited_hours, cap.shift_duration_hours), HOURS_PRECISION)
            trail.add(
                "OVERTIME",
                f"Credit held at {held:g}h pending human approval "
                f"(cap allows {cap.credited_hours:g}h, suggested {overtime.suggested_hours:g}h)",
            )
            credited_hours = held
            overtime_hours = 0.0
        else:
            approval_state = OvertimeApprovalState.AUTO_APPROVED
            suggested = clamp_credited_hours(overtime.suggested_hours, shift=shift, policy=policy)
            # A measured session is never credited past its capped length.
            adjusted = min(credited_hours, suggested) if cap.measured else suggested
            if adjusted != credited_hours:
                trail.add("OVERTIME", f"Credit adjusted {credited_hours:g}h -> {adjusted:g}h")
            credited_hours = adjusted
            overtime_hours = round(max(0.0, credited_hours - cap.shift_duration_hours), HOURS_PRECISION)

    if check_out is None:
        source = PunchOutSource.SYSTEM_AUTO
        scored_checkout = check_in + timedelta(hours=credited_hours)
    else:
        source = paired.punch_out_source
        scored_checkout = check_out
    score = score_punch_out(
        check_in=check_in,
        check_out=scored_checkout,
        shift_end=cap.shift_end,
        source=source,
        policy=policy,
    )
    if score is not None:
        trail.add("SCORE", score.details)

    return SessionDraft(
        employee_code=employee_code,
        work_date=work_date,
        session_sequence=paired.session_sequence,
        check_in=check_in,
        check_out=check_out,
        punch_out_source=source,
        timing=timing,
        cap=cap,
        credited_hours=credited_hours,
        overtime_hours=overtime_hours,
        approval_state=approval_state,
        overtime=overtime,
        score=score,
        interim_punches=[item.to_dict() for item in paired.interim],
        trail=trail,
    )


def carry_forward_decision(draft: SessionDraft, previous: AttendanceSession | None) -> SessionDraft:
    """Keep an approver's decision when reprocessing lands on the same punches again."""
    if previous is None or previous.overtime_approval_state not in HUMAN_DECISIONS:
        return draft
    if draft.approval_state is not OvertimeApprovalState.PENDING_APPROVAL:
        return draft
    previous_out = normalize_ts(previous.check_out) if previous.check_out is not None else None
    if normalize_ts(previous.check_in) != normalize_ts(draft.check_in) or previous_out != draft.check_out:
        return draft

    draft.credited_hours = previous.credited_hours
    draft.overtime_hours = previous.overtime_hours
    draft.approval_state = previous.overtime_approval_state
    draft.trail.add(
        "APPROVAL",
        f"Carried forward {previous.overtime_approval_state.value} decision from version "
        f"{previous.processing_version}: credited {previous.credited_hours:g}h",
    )
    return draft


def _chunks(items: Sequence[DayKey], size: int) -> list[Sequence[DayKey]]:
    step = max(1, size)
    return [items[index : index + step] for index in range(0, len(items), step)]


def run_reconciliation(
    store: SessionStore,
    *,
    date_from: date,
    date_to: date,
    policy: PolicyConfig,
    history: OvertimeHistory | None = None,
    terminal_priority: Sequence[str] = (),
    chunk_size: int = 100,
    workers: int = 1,
    now: datetime | None = None,
    progress: Callable[[int, int], None] | None = None,
) -> ReconcileResult:
    processed_at = now or datetime.now(timezone.utc)
    result = ReconcileResult()

    punches = store.load_punches(date_from, date_to)
    employee_codes = sorted({punch.employee_code for punch in punches})
    employees = store.load_employee_configs(employee_codes, policy)

    def _employee(code: str) -> EmployeeConfig:
        return employees.get(code) or EmployeeConfig.unknown(code, policy)

    grouped = group_punches_by_day(
        punches,
        lambda code: resolve_timezone(_employee(code).timezone_name),
        lambda code: _employee(code).shift,
    )
    keys = sorted(key for key in grouped if date_from <= key[1] <= date_to)
    total = len(keys)
    logger.info(
        "reconcile_started",
        extra={
            "date_from": date_from,
            "date_to": date_to,
            "punches": len(punches),
            "keys": total,
            "chunk_size": chunk_size,
            "workers": workers,
        },
    )

    def _build(
        key: DayKey,
        chunk_history: OvertimeHistory | None,
    ) -> tuple[DayKey, SessionDraft | None, Exception | None]:
        try:
            draft = reconcile_day(
                key,
                grouped[key],
                employee=_employee(key[0]),
                policy=policy,
                history=chunk_history,
                terminal_priority=terminal_priority,
                now=processed_at,
            )
        except Exception as exc:
            return key, None, exc
        return key, draft, None

    executor = ThreadPoolExecutor(max_workers=workers) if workers > 1 else None
    try:
        for chunk in _chunks(keys, chunk_size):
            if executor is None:
                outcomes = [_build(key, history) for key in chunk]
            else:
                # The database session stays on this thread; workers only see the snapshot.
                snapshot = (
                    HistorySnapshot.prefetch(history, chunk, lookback_days=policy.history_lookback_days)
                    if history is not None
                    else None
                )
                outcomes = list(executor.map(lambda key: _build(key, snapshot), chunk))
            for key, draft, error in outcomes:
                result.processed += 1
                if error is None and draft is not None:
                    try:
                        draft = carry_forward_decision(draft, store.current_session(key, draft.session_sequence))
                        store.save_draft(draft, processed_at=processed_at)
                    except Exception as exc:
                        error = exc
                if error is not None:
                    logger.error(
                        "reconcile_record_failed",
                        exc_info=(type(error), error, error.__traceback__),
                        extra={"employee_code": key[0], "work_date": key[1]},
                    )
                    result.failed.append(FailedKey(employee_code=key[0], work_date=key[1], error=str(error)))
                    continue
                if draft is None:
                    result.skipped += 1
                    continue
                result.saved += 1
                if draft.approval_state is OvertimeApprovalState.AUTO_APPROVED:
                    result.auto_approved += 1
                elif draft.approval_state is OvertimeApprovalState.PENDING_APPROVAL:
                    result.pending_approval += 1
                if draft.check_out is not None:
                    raw_hours = (draft.check_out - draft.check_in).total_seconds() / 3600
                    result.overbilling_prevented_hours += max(0.0, raw_hours - draft.credited_hours)

            logger.info(
                "reconcile_chunk_completed",
                extra={"processed": result.processed, "total": total, "failed": len(result.failed)},
            )
            if progress is not None:
                progress(result.processed, total)
    finally:
        if executor is not None:
            executor.shutdown(wait=True)

    logger.info("reconcile_completed", extra=result.to_dict())
    return result
