from __future__ import annotations

import logging
from datetime import datetime, timezone

from attendance_engine.errors import InvalidApprovalStateError, SessionNotFoundError
from attendance_engine.models import AttendanceSession, OvertimeApprovalState
from attendance_engine.services.overtime_cap import clamp_credited_hours
from attendance_engine.services.policy_config import EmployeeConfig, PolicyConfig
from attendance_engine.services.scoring import AuditTrail
from attendance_engine.services.session_store import SqlSessionStore
from attendance_engine.services.timing import normalize_ts

logger = logging.getLogger("attendance_engine.approvals")


def decide_pending_overtime(
    store: SqlSessionStore,
    session_id: int,
    *,
    approve: bool,
    actor_id: str,
    policy: PolicyConfig,
    approved_hours: float | None = None,
    reason: str | None = None,
    now: datetime | None = None,
) -> AttendanceSession:
    """Record a human decision on a pending session as a new version.

    Approved credit never exceeds the measured session or the shift's credit
    ceiling; a rejection falls back to the scheduled shift length.
    """
    current = store.get_session(session_id)
    if current is None:
        raise SessionNotFoundError(session_id)
    if not current.is_current:
        raise InvalidApprovalStateError(session_id, "superseded")
    if current.overtime_approval_state is not OvertimeApprovalState.PENDING_APPROVAL:
        raise InvalidApprovalStateError(session_id, current.overtime_approval_state.value)

    employee = store.load_employee_configs([current.employee_code], policy).get(
        current.employee_code
    ) or EmployeeConfig.unknown(current.employee_code, policy)
    shift = employee.shift
    shift_hours = shift.duration_hours(policy)

    measured_hours: float | None = None
    if current.check_out is not None:
        measured_hours = (normalize_ts(current.check_out) - normalize_ts(current.check_in)).total_seconds() / 3600

    trail = AuditTrail()
    if approve:
        requested = approved_hours
        if requested is None:
            requested = current.suggested_hours if current.suggested_hours is not None else current.credited_hours
        credited = clamp_credited_hours(requested, shift=shift, policy=policy)
        if measured_hours is not None:
            credited = min(credited, round(measured_hours, 2))
        state = OvertimeApprovalState.APPROVED
        trail.add("APPROVAL", f"Approved by {actor_id}: credited {credited:g}h (requested {requested:g}h)")
    else:
        credited = round(min(current.credited_hours, shift_hours), 2)
        state = OvertimeApprovalState.REJECTED
        trail.add("APPROVAL", f"Overtime rejected by {actor_id}: credited {credited:g}h")
    if reason:
        trail.add("APPROVAL", f"Reason: {reason.strip()}")

    row = store.save_revision(
        current,
        updates={
            "credited_hours": credited,
            "overtime_hours": round(max(0.0, credited - shift_hours), 2),
            "overtime_approval_state": state,
        },
        trail=trail,
        processed_at=normalize_ts(now) if now is not None else datetime.now(timezone.utc),
    )
    logger.info(
        "overtime_decision_recorded",
        extra={
            "session_id": session_id,
            "new_session_id": row.id,
            "employee_code": row.employee_code,
            "work_date": row.work_date,
            "decision": state,
            "credited_hours": credited,
            "actor_id": actor_id,
        },
    )
    return row
