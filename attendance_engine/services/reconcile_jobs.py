from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Any

from attendance_engine.audit import audit_reconcile_run, audit_sync_halted
from attendance_engine.db import SessionLocal
from attendance_engine.errors import IngestionHaltedError
from attendance_engine.models import AuditActorType
from attendance_engine.services.policy_config import PolicyConfig
from attendance_engine.services.punch_sync import FeedClient, HttpFeedClient, SqlPunchStagingStore, SyncConfig, sync_punches
from attendance_engine.services.reconciliation import ReconcileResult, run_reconciliation
from attendance_engine.services.session_store import SqlSessionStore
from attendance_engine.services.smart_overtime import SqlOvertimeHistory
from attendance_engine.services.timing import attendance_timezone
from attendance_engine.settings import get_settings, get_terminal_priority, is_feed_configured

logger = logging.getLogger("attendance_engine.reconcile_worker")

WORKER_ACTOR_ID = "reconcile_worker"


def lookback_dates(now_utc: datetime, lookback_days: int) -> tuple[date, date]:
    today = now_utc.astimezone(attendance_timezone()).date()
    return today - timedelta(days=max(0, lookback_days)), today


def feed_window(date_from: date, date_to: date) -> tuple[datetime, datetime]:
    tz = attendance_timezone()
    start = datetime.combine(date_from, time.min, tzinfo=tz).astimezone(timezone.utc)
    end = datetime.combine(date_to + timedelta(days=1), time.min, tzinfo=tz).astimezone(timezone.utc)
    return start, end


def run_cycle(
    *,
    date_from: date,
    date_to: date,
    sync: bool = True,
    workers: int | None = None,
    client: FeedClient | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Optionally pull the feed for the window, then reconcile it."""
    settings = get_settings()
    policy = PolicyConfig.from_settings(settings)
    summary: dict[str, Any] = {
        "date_from": date_from.isoformat(),
        "date_to": date_to.isoformat(),
        "sync": None,
        "reconcile": None,
    }

    db = SessionLocal()
    try:
        if sync and (client is not None or is_feed_configured()):
            window_start, window_end = feed_window(date_from, date_to)
            try:
                sync_result = sync_punches(
                    SqlPunchStagingStore(db),
                    client or HttpFeedClient.from_settings(settings),
                    window_start=window_start,
                    window_end=window_end,
                    config=SyncConfig.from_settings(settings),
                )
                summary["sync"] = sync_result.to_dict()
            except IngestionHaltedError as exc:
                summary["sync"] = {"status": "halted", "page": exc.page, "error": exc.message}
                audit_sync_halted(db, exc, actor_type=AuditActorType.SYSTEM, actor_id=WORKER_ACTOR_ID)
        elif sync:
            logger.warning("punch_sync_skipped_not_configured")

        result: ReconcileResult = run_reconciliation(
            SqlSessionStore(db),
            date_from=date_from,
            date_to=date_to,
            policy=policy,
            history=SqlOvertimeHistory(db),
            terminal_priority=get_terminal_priority(),
            chunk_size=settings.batch_chunk_size,
            workers=workers or settings.batch_workers,
            now=now,
        )
        summary["reconcile"] = result.to_dict()
        audit_reconcile_run(
            db,
            summary["reconcile"],
            date_from=date_from,
            date_to=date_to,
            actor_type=AuditActorType.SYSTEM,
            actor_id=WORKER_ACTOR_ID,
        )
    finally:
        db.close()
    return summary


def run_scheduled_cycle(now_utc: datetime) -> dict[str, Any]:
    settings = get_settings()
    date_from, date_to = lookback_dates(now_utc, settings.reconcile_lookback_days)
    return run_cycle(date_from=date_from, date_to=date_to, sync=True, now=now_utc)
