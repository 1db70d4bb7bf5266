from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import date, datetime, time, timedelta, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from attendance_engine.models import AttendanceSession, Employee, OvertimeApprovalState, RawPunch
from attendance_engine.services.policy_config import EmployeeConfig, PolicyConfig
from attendance_engine.services.reconciliation import SessionDraft
from attendance_engine.services.scoring import AuditTrail
from attendance_engine.services.session_pairing import DayKey, PunchRecord
from attendance_engine.services.timing import attendance_timezone

logger = logging.getLogger("attendance_engine.session_store")

_SESSION_COPY_FIELDS = (
    "employee_code",
    "work_date",
    "session_sequence",
    "check_in",
    "check_out",
    "punch_out_source",
    "arrival_status",
    "departure_status",
    "early_minutes",
    "late_minutes",
    "grace_minutes",
    "early_departure_minutes",
    "late_departure_minutes",
    "credited_hours",
    "overtime_hours",
    "overtime_approval_state",
    "suggested_hours",
    "overtime_confidence",
    "score_deduction",
    "mobile_activity_score",
    "interim_punches",
)


def punch_window_bounds(date_from: date, date_to: date) -> tuple[datetime, datetime]:
    # One extra day on each side so employees in other zones still land on their local day.
    tz = attendance_timezone()
    start = datetime.combine(date_from - timedelta(days=1), time.min, tzinfo=tz).astimezone(timezone.utc)
    end = datetime.combine(date_to + timedelta(days=2), time.min, tzinfo=tz).astimezone(timezone.utc)
    return start, end


class SqlSessionStore:
    def __init__(self, db: Session):
        self.db = db

    def load_punches(self, date_from: date, date_to: date) -> list[PunchRecord]:
        start, end = punch_window_bounds(date_from, date_to)
        rows = self.db.scalars(
            select(RawPunch)
            .where(RawPunch.punch_time >= start, RawPunch.punch_time < end)
            .order_by(RawPunch.punch_time.asc(), RawPunch.id.asc())
        ).all()
        return [PunchRecord.from_model(row) for row in rows]

    def load_employee_configs(self, employee_codes: Sequence[str], policy: PolicyConfig) -> dict[str, EmployeeConfig]:
        if not employee_codes:
            return {}
        rows = self.db.scalars(
            select(Employee)
            .options(selectinload(Employee.shift))
            .where(Employee.employee_code.in_(list(employee_codes)))
        ).all()
        return {row.employee_code: EmployeeConfig.from_model(row, policy) for row in rows}

    def current_session(self, key: DayKey, session_sequence: int = 1) -> AttendanceSession | None:
        employee_code, work_date = key
        return self.db.scalar(
            select(AttendanceSession).where(
                AttendanceSession.employee_code == employee_code,
                AttendanceSession.work_date == work_date,
                AttendanceSession.session_sequence == session_sequence,
                AttendanceSession.is_current.is_(True),
            )
        )

    def get_session(self, session_id: int) -> AttendanceSession | None:
        return self.db.get(AttendanceSession, session_id)

    def list_pending_approvals(self, *, limit: int = 200) -> list[AttendanceSession]:
        return list(
            self.db.scalars(
                select(AttendanceSession)
                .where(
                    AttendanceSession.is_current.is_(True),
                    AttendanceSession.overtime_approval_state == OvertimeApprovalState.PENDING_APPROVAL,
                )
                .order_by(AttendanceSession.work_date.asc(), AttendanceSession.employee_code.asc())
                .limit(max(1, limit))
            ).all()
        )

    def _insert_version(
        self,
        previous: AttendanceSession | None,
        fields: dict[str, Any],
        trail: AuditTrail,
        processed_at: datetime,
    ) -> AttendanceSession:
        version = 1
        if previous is not None:
            version = previous.processing_version + 1
            trail = AuditTrail(previous=previous.notes or "", lines=list(trail.lines))
            previous.is_current = False
            self.db.flush()

        row = AttendanceSession(
            **fields,
            processing_version=version,
            is_current=True,
            notes=trail.render(version=version, processed_at=processed_at),
            processed_at=processed_at,
        )
        self.db.add(row)
        self.db.commit()
        self.db.refresh(row)
        return row

    def save_draft(self, draft: SessionDraft, *, processed_at: datetime) -> AttendanceSession:
        try:
            previous = self.current_session(draft.key, draft.session_sequence)
            fields = {
                "employee_code": draft.employee_code,
                "work_date": draft.work_date,
                "session_sequence": draft.session_sequence,
                **draft.decision_fields(),
            }
            row = self._insert_version(previous, fields, draft.trail, processed_at)
        except Exception:
            self.db.rollback()
            raise
        logger.info(
            "attendance_session_saved",
            extra={
                "employee_code": row.employee_code,
                "work_date": row.work_date,
                "processing_version": row.processing_version,
                "credited_hours": row.credited_hours,
                "overtime_approval_state": row.overtime_approval_state,
            },
        )
        return row

    def save_revision(
        self,
        current: AttendanceSession,
        *,
        updates: dict[str, Any],
        trail: AuditTrail,
        processed_at: datetime,
    ) -> AttendanceSession:
        """Supersede `current` with a copy that carries `updates`."""
        try:
            fields = {name: getattr(current, name) for name in _SESSION_COPY_FIELDS}
            fields["interim_punches"] = list(fields["interim_punches"] or [])
            fields.update(updates)
            row = self._insert_version(current, fields, trail, processed_at)
        except Exception:
            self.db.rollback()
            raise
        return row
