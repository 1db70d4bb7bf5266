from __future__ import annotations

import enum
import logging
from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy.orm import Session

from attendance_engine.errors import IngestionHaltedError
from attendance_engine.models import AttendanceSession, AuditActorType, AuditLog

logger = logging.getLogger("attendance_engine.audit")

ENTITY_SYNC_CHECKPOINT = "sync_checkpoint"
ENTITY_RECONCILE_WINDOW = "reconcile_window"
ENTITY_ATTENDANCE_SESSION = "attendance_session"


class AuditAction(str, enum.Enum):
    PUNCH_SYNC_COMPLETED = "PUNCH_SYNC_COMPLETED"
    PUNCH_SYNC_HALTED = "PUNCH_SYNC_HALTED"
    RECONCILE_RUN = "RECONCILE_RUN"
    OVERTIME_DECISION = "OVERTIME_DECISION"


def session_entity_id(employee_code: str, work_date: date, session_sequence: int = 1) -> str:
    """Stable id for a session across versions: ``E100:2026-03-10:1``."""
    return f"{employee_code}:{work_date.isoformat()}:{session_sequence}"


def window_entity_id(date_from: date, date_to: date) -> str:
    return f"{date_from.isoformat()}..{date_to.isoformat()}"


def log_audit(
    db: Session,
    *,
    actor_type: AuditActorType,
    actor_id: str,
    action: AuditAction | str,
    success: bool,
    entity_type: str | None = None,
    entity_id: str | None = None,
    details: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> None:
    action_name = action.value if isinstance(action, AuditAction) else action
    payload = dict(details or {})
    if request_id:
        payload["request_id"] = request_id
    audit = AuditLog(
        ts_utc=datetime.now(timezone.utc),
        actor_type=actor_type,
        actor_id=actor_id,
        action=action_name,
        entity_type=entity_type,
        entity_id=entity_id,
        success=success,
        details=payload,
    )
    db.add(audit)
    try:
        db.commit()
    except Exception:
        db.rollback()
        logger.exception(
            "audit_log_write_failed",
            extra={
                "request_id": request_id,
                "action": action_name,
                "actor_type": actor_type.value,
                "actor_id": actor_id,
                "success": success,
            },
        )
        return

    logger.info(
        "audit_event",
        extra={
            "request_id": request_id,
            "action": action_name,
            "actor_type": actor_type.value,
            "actor_id": actor_id,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "success": success,
            "details": payload,
        },
    )


def audit_sync_halted(
    db: Session,
    exc: IngestionHaltedError,
    *,
    actor_type: AuditActorType,
    actor_id: str,
    request_id: str | None = None,
) -> None:
    log_audit(
        db,
        actor_type=actor_type,
        actor_id=actor_id,
        action=AuditAction.PUNCH_SYNC_HALTED,
        success=False,
        entity_type=ENTITY_SYNC_CHECKPOINT,
        entity_id=exc.feed_name,
        details={"page": exc.page, "error": exc.message},
        request_id=request_id,
    )


def audit_sync_completed(
    db: Session,
    summary: dict[str, Any],
    *,
    actor_type: AuditActorType,
    actor_id: str,
    request_id: str | None = None,
) -> None:
    log_audit(
        db,
        actor_type=actor_type,
        actor_id=actor_id,
        action=AuditAction.PUNCH_SYNC_COMPLETED,
        success=True,
        entity_type=ENTITY_SYNC_CHECKPOINT,
        entity_id=str(summary.get("feed_name")),
        details=summary,
        request_id=request_id,
    )


def audit_reconcile_run(
    db: Session,
    summary: dict[str, Any],
    *,
    date_from: date,
    date_to: date,
    actor_type: AuditActorType,
    actor_id: str,
    request_id: str | None = None,
) -> None:
    """One row per run; failed keys make the run unsuccessful but are listed, not raised."""
    log_audit(
        db,
        actor_type=actor_type,
        actor_id=actor_id,
        action=AuditAction.RECONCILE_RUN,
        success=not summary.get("failed"),
        entity_type=ENTITY_RECONCILE_WINDOW,
        entity_id=window_entity_id(date_from, date_to),
        details={"date_from": date_from.isoformat(), "date_to": date_to.isoformat(), **summary},
        request_id=request_id,
    )


def audit_overtime_decision(
    db: Session,
    row: AttendanceSession,
    *,
    previous_session_id: int,
    decision: str,
    actor_id: str,
    request_id: str | None = None,
) -> None:
    log_audit(
        db,
        actor_type=AuditActorType.ADMIN,
        actor_id=actor_id,
        action=AuditAction.OVERTIME_DECISION,
        success=True,
        entity_type=ENTITY_ATTENDANCE_SESSION,
        entity_id=session_entity_id(row.employee_code, row.work_date, row.session_sequence or 1),
        details={
            "session_id": row.id,
            "previous_session_id": previous_session_id,
            "processing_version": row.processing_version,
            "decision": decision,
            "approval_state": row.overtime_approval_state.value,
            "credited_hours": row.credited_hours,
            "overtime_hours": row.overtime_hours,
        },
        request_id=request_id,
    )
