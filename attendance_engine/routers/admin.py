from dataclasses import replace
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from attendance_engine.audit import (
    audit_overtime_decision,
    audit_reconcile_run,
    audit_sync_completed,
    audit_sync_halted,
)
from attendance_engine.db import get_db
from attendance_engine.errors import ApiError, IngestionHaltedError, InvalidApprovalStateError, SessionNotFoundError
from attendance_engine.models import AuditActorType
from attendance_engine.schemas import (
    AttendanceSessionRead,
    OvertimeDecisionRequest,
    PunchSyncRequest,
    PunchSyncResultRead,
    ReconcileRequest,
    ReconcileResultRead,
    SyncCheckpointRead,
)
from attendance_engine.security import require_admin
from attendance_engine.services.overtime_approvals import decide_pending_overtime
from attendance_engine.services.policy_config import PolicyConfig
from attendance_engine.services.punch_sync import FeedClient, HttpFeedClient, SqlPunchStagingStore, SyncConfig, sync_punches
from attendance_engine.services.reconciliation import run_reconciliation
from attendance_engine.services.session_store import SqlSessionStore
from attendance_engine.services.smart_overtime import SqlOvertimeHistory
from attendance_engine.settings import get_settings, get_terminal_priority, is_feed_configured

router = APIRouter(tags=["admin"])


def get_policy() -> PolicyConfig:
    return PolicyConfig.from_settings(get_settings())


def get_feed_client() -> FeedClient:
    if not is_feed_configured():
        raise ApiError(status_code=503, code="FEED_NOT_CONFIGURED", message="Punch feed base URL is not configured.")
    return HttpFeedClient.from_settings(get_settings())


def _actor_id(claims: dict[str, Any]) -> str:
    return str(claims.get("username") or claims.get("sub") or "admin")


@router.post("/api/admin/punch-sync", response_model=PunchSyncResultRead)
def trigger_punch_sync(
    payload: PunchSyncRequest,
    request: Request,
    claims: dict[str, Any] = Depends(require_admin),
    client: FeedClient = Depends(get_feed_client),
    db: Session = Depends(get_db),
) -> PunchSyncResultRead:
    settings = get_settings()
    config = SyncConfig.from_settings(settings)
    if payload.feed_name:
        config = replace(config, feed_name=payload.feed_name)

    try:
        result = sync_punches(
            SqlPunchStagingStore(db),
            client,
            window_start=payload.window_start,
            window_end=payload.window_end,
            config=config,
        )
    except IngestionHaltedError as exc:
        audit_sync_halted(
            db,
            exc,
            actor_type=AuditActorType.ADMIN,
            actor_id=_actor_id(claims),
            request_id=getattr(request.state, "request_id", None),
        )
        raise ApiError(status_code=502, code="PUNCH_SYNC_HALTED", message=str(exc)) from exc

    summary = result.to_dict()
    audit_sync_completed(
        db,
        summary,
        actor_type=AuditActorType.ADMIN,
        actor_id=_actor_id(claims),
        request_id=getattr(request.state, "request_id", None),
    )
    return PunchSyncResultRead(**summary)


@router.get(
    "/api/admin/punch-sync/{feed_name}",
    response_model=SyncCheckpointRead,
    dependencies=[Depends(require_admin)],
)
def get_punch_sync_status(feed_name: str, db: Session = Depends(get_db)) -> SyncCheckpointRead:
    row = SqlPunchStagingStore(db).get_checkpoint_row(feed_name)
    if row is None:
        raise ApiError(status_code=404, code="CHECKPOINT_NOT_FOUND", message="No sync checkpoint for this feed.")
    return SyncCheckpointRead.model_validate(row)


@router.post("/api/admin/reconcile", response_model=ReconcileResultRead)
def trigger_reconciliation(
    payload: ReconcileRequest,
    request: Request,
    claims: dict[str, Any] = Depends(require_admin),
    policy: PolicyConfig = Depends(get_policy),
    db: Session = Depends(get_db),
) -> ReconcileResultRead:
    settings = get_settings()
    result = run_reconciliation(
        SqlSessionStore(db),
        date_from=payload.date_from,
        date_to=payload.date_to,
        policy=policy,
        history=SqlOvertimeHistory(db),
        terminal_priority=get_terminal_priority(),
        chunk_size=payload.chunk_size or settings.batch_chunk_size,
        workers=payload.workers or settings.batch_workers,
    )
    summary = result.to_dict()
    audit_reconcile_run(
        db,
        summary,
        date_from=payload.date_from,
        date_to=payload.date_to,
        actor_type=AuditActorType.ADMIN,
        actor_id=_actor_id(claims),
        request_id=getattr(request.state, "request_id", None),
    )
    return ReconcileResultRead(**summary)


@router.get(
    "/api/admin/sessions/pending-approval",
    response_model=list[AttendanceSessionRead],
    dependencies=[Depends(require_admin)],
)
def list_pending_sessions(
    limit: int = Query(default=200, ge=1, le=1000),
    db: Session = Depends(get_db),
) -> list[AttendanceSessionRead]:
    return [AttendanceSessionRead.model_validate(row) for row in SqlSessionStore(db).list_pending_approvals(limit=limit)]


@router.post(
    "/api/admin/sessions/{session_id}/overtime-decision",
    response_model=AttendanceSessionRead,
)
def decide_overtime(
    session_id: int,
    payload: OvertimeDecisionRequest,
    request: Request,
    claims: dict[str, Any] = Depends(require_admin),
    policy: PolicyConfig = Depends(get_policy),
    db: Session = Depends(get_db),
) -> AttendanceSessionRead:
    actor_id = _actor_id(claims)
    try:
        row = decide_pending_overtime(
            SqlSessionStore(db),
            session_id,
            approve=payload.decision == "approve",
            actor_id=actor_id,
            policy=policy,
            approved_hours=payload.approved_hours,
            reason=payload.reason,
        )
    except SessionNotFoundError as exc:
        raise ApiError(status_code=404, code="SESSION_NOT_FOUND", message=str(exc)) from exc
    except InvalidApprovalStateError as exc:
        raise ApiError(status_code=409, code="INVALID_APPROVAL_STATE", message=str(exc)) from exc

    audit_overtime_decision(
        db,
        row,
        previous_session_id=session_id,
        decision=payload.decision,
        actor_id=actor_id,
        request_id=getattr(request.state, "request_id", None),
    )
    return AttendanceSessionRead.model_validate(row)
