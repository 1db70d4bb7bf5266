from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol
from urllib import error as urllib_error
from urllib import parse as urllib_parse
from urllib import request as urllib_request
from zoneinfo import ZoneInfo

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from attendance_engine.errors import FeedError, FeedRateLimitedError, FeedRejectedError, IngestionHaltedError
from attendance_engine.models import PunchOutSource, PunchState, RawPunch, SyncCheckpoint, SyncStatus
from attendance_engine.schemas import FeedPage, FeedPunch
from attendance_engine.services.timing import attendance_timezone, normalize_ts
from attendance_engine.settings import Settings, get_excluded_terminal_keywords, get_settings

logger = logging.getLogger("attendance_engine.ingest")

FEED_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"
TRANSACTIONS_PATH = "/iclock/api/transactions/"

_IN_STATES = {"0", "in", "check_in", "checkin"}
_OUT_STATES = {"1", "out", "check_out", "checkout"}
_SOURCE_ALIASES = {
    "mobile": PunchOutSource.MOBILE_SELF,
    "mobile_app": PunchOutSource.MOBILE_SELF,
    "mobile_self": PunchOutSource.MOBILE_SELF,
    "admin": PunchOutSource.ADMIN_MANUAL,
    "admin_dashboard": PunchOutSource.ADMIN_MANUAL,
    "admin_manual": PunchOutSource.ADMIN_MANUAL,
    "manual": PunchOutSource.ADMIN_MANUAL,
    "system": PunchOutSource.SYSTEM_AUTO,
    "system_auto": PunchOutSource.SYSTEM_AUTO,
}


class FeedClient(Protocol):
    def fetch_page(self, *, window_start: datetime, window_end: datetime, page: int, page_size: int) -> FeedPage: ...


@dataclass(frozen=True)
class SyncConfig:
    feed_name: str = "biotime"
    page_size: int = 500
    max_retries: int = 5
    backoff_base_seconds: float = 5.0
    backoff_max_seconds: float = 60.0
    rate_limit_wait_seconds: float = 30.0
    max_rate_limit_waits: int = 20
    excluded_terminal_keywords: tuple[str, ...] = ("lock",)

    @classmethod
    def from_settings(cls, settings: Settings) -> SyncConfig:
        return cls(
            feed_name=settings.feed_name,
            page_size=max(1, settings.feed_page_size),
            max_retries=max(0, settings.feed_max_retries),
            backoff_base_seconds=settings.feed_backoff_base_seconds,
            backoff_max_seconds=settings.feed_backoff_max_seconds,
            rate_limit_wait_seconds=settings.feed_rate_limit_wait_seconds,
            max_rate_limit_waits=max(1, settings.feed_max_rate_limit_waits),
            excluded_terminal_keywords=tuple(get_excluded_terminal_keywords()),
        )


@dataclass(frozen=True)
class StagedPunch:
    external_id: str
    employee_code: str
    punch_time: datetime
    terminal_id: str | None
    punch_state: PunchState
    source: PunchOutSource = PunchOutSource.TERMINAL
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class CheckpointState:
    feed_name: str
    window_start: datetime
    window_end: datetime
    status: SyncStatus = SyncStatus.IDLE
    current_page: int = 1
    last_external_id: str | None = None
    records_processed: int = 0
    records_total: int = 0
    retry_count: int = 0
    last_error: str | None = None

    @classmethod
    def from_model(cls, row: SyncCheckpoint) -> CheckpointState | None:
        if row.window_start is None or row.window_end is None:
            return None
        return cls(
            feed_name=row.feed_name,
            window_start=normalize_ts(row.window_start),
            window_end=normalize_ts(row.window_end),
            status=row.status,
            current_page=row.current_page,
            last_external_id=row.last_external_id,
            records_processed=row.records_processed,
            records_total=row.records_total,
            retry_count=row.retry_count,
            last_error=row.last_error,
        )

    def covers(self, window_start: datetime, window_end: datetime) -> bool:
        return self.window_start == normalize_ts(window_start) and self.window_end == normalize_ts(window_end)

    def apply_to(self, row: SyncCheckpoint) -> None:
        row.status = self.status
        row.window_start = self.window_start
        row.window_end = self.window_end
        row.current_page = self.current_page
        row.last_external_id = self.last_external_id
        row.records_processed = self.records_processed
        row.records_total = self.records_total
        row.retry_count = self.retry_count
        row.last_error = self.last_error
        row.updated_at = datetime.now(timezone.utc)


@dataclass
class SyncResult:
    feed_name: str
    status: SyncStatus = SyncStatus.RUNNING
    pages: int = 0
    fetched: int = 0
    inserted: int = 0
    skipped_duplicates: int = 0
    skipped_excluded: int = 0
    resumed_from_page: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "feed_name": self.feed_name,
            "status": self.status,
            "pages": self.pages,
            "fetched": self.fetched,
            "inserted": self.inserted,
            "skipped_duplicates": self.skipped_duplicates,
            "skipped_excluded": self.skipped_excluded,
        }


class PunchStagingStore(Protocol):
    def load_checkpoint(self, feed_name: str) -> CheckpointState | None: ...

    def save_checkpoint(self, checkpoint: CheckpointState) -> None: ...

    def commit_page(self, checkpoint: CheckpointState, punches: Sequence[StagedPunch]) -> int: ...


class HttpFeedClient:
    def __init__(
        self,
        *,
        base_url: str,
        api_token: str = "",
        timeout_seconds: int = 30,
        tz: ZoneInfo | None = None,
        path: str = TRANSACTIONS_PATH,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_token = api_token.strip()
        self.timeout_seconds = max(1, timeout_seconds)
        self.tz = tz or attendance_timezone()
        self.path = path

    @classmethod
    def from_settings(cls, settings: Settings) -> HttpFeedClient:
        return cls(
            base_url=settings.feed_base_url,
            api_token=settings.feed_api_token,
            timeout_seconds=settings.feed_timeout_seconds,
        )

    def _format(self, value: datetime) -> str:
        return normalize_ts(value).astimezone(self.tz).strftime(FEED_TIME_FORMAT)

    def build_url(self, *, window_start: datetime, window_end: datetime, page: int, page_size: int) -> str:
        query = urllib_parse.urlencode(
            {
                "start_time": self._format(window_start),
                "end_time": self._format(window_end),
                "page": page,
                "page_size": page_size,
            }
        )
        return f"{self.base_url}{self.path}?{query}"

    def fetch_page(self, *, window_start: datetime, window_end: datetime, page: int, page_size: int) -> FeedPage:
        url = self.build_url(window_start=window_start, window_end=window_end, page=page, page_size=page_size)
        request = urllib_request.Request(url=url, method="GET", headers={"Accept": "application/json"})
        if self.api_token:
            request.add_header("Authorization", f"Token {self.api_token}")

        try:
            with urllib_request.urlopen(request, timeout=self.timeout_seconds) as response:
                body = response.read()
        except urllib_error.HTTPError as exc:
            status_code = int(exc.code)
            detail = exc.read(512).decode("utf-8", errors="ignore") or str(exc)
            if status_code == 429:
                raise FeedRateLimitedError(f"Feed rate limited: {detail}", status_code=status_code) from exc
            if status_code >= 500:
                raise FeedError(f"Feed server error {status_code}: {detail}", status_code=status_code) from exc
            raise FeedRejectedError(f"Feed rejected request {status_code}: {detail}", status_code=status_code) from exc
        except (urllib_error.URLError, TimeoutError, ConnectionError) as exc:
            raise FeedError(f"Feed unreachable: {exc}") from exc

        try:
            return FeedPage.model_validate(json.loads(body.decode("utf-8")))
        except (ValueError, ValidationError) as exc:
            raise FeedRejectedError(f"Feed returned an unreadable page: {exc}") from exc


def normalize_punch_state(raw: Any) -> PunchState:
    value = str(raw if raw is not None else "").strip().lower().replace(" ", "_").replace("-", "_")
    if value in _IN_STATES:
        return PunchState.IN
    if value in _OUT_STATES:
        return PunchState.OUT
    return PunchState.UNKNOWN


def normalize_punch_source(raw: Any) -> PunchOutSource:
    """Map the feed's punch origin onto a source; biometric and unknown origins are terminal punches."""
    value = str(raw if raw is not None else "").strip().lower().replace(" ", "_").replace("-", "_")
    return _SOURCE_ALIASES.get(value, PunchOutSource.TERMINAL)


def normalize_feed_punch(item: FeedPunch, tz: ZoneInfo) -> StagedPunch:
    punch_time = item.punch_time
    if punch_time.tzinfo is None:
        punch_time = punch_time.replace(tzinfo=tz)
    punch_time = normalize_ts(punch_time)
    state = normalize_punch_state(item.punch_state)
    employee_code = item.emp_code.strip()
    if item.id is not None and str(item.id).strip():
        external_id = str(item.id).strip()
    else:
        external_id = f"{employee_code}:{punch_time.isoformat()}:{state.value}"
    return StagedPunch(
        external_id=external_id,
        employee_code=employee_code,
        punch_time=punch_time,
        terminal_id=item.terminal_id,
        punch_state=state,
        source=normalize_punch_source(item.punch_source),
        payload=item.model_dump(mode="json"),
    )


def is_excluded_terminal(terminal_id: str | None, keywords: Sequence[str]) -> bool:
    if not terminal_id:
        return False
    lowered = terminal_id.lower()
    return any(keyword and keyword in lowered for keyword in keywords)


def backoff_delay(attempt: int, config: SyncConfig) -> float:
    return min(config.backoff_base_seconds * (2**attempt), config.backoff_max_seconds)


def _halt(
    store: PunchStagingStore,
    checkpoint: CheckpointState,
    result: SyncResult,
    message: str,
) -> IngestionHaltedError:
    checkpoint.status = SyncStatus.HALTED
    checkpoint.last_error = message
    store.save_checkpoint(checkpoint)
    result.status = SyncStatus.HALTED
    logger.error(
        "punch_sync_halted",
        extra={
            "feed_name": checkpoint.feed_name,
            "page": checkpoint.current_page,
            "retry_count": checkpoint.retry_count,
            "error": message,
        },
    )
    return IngestionHaltedError(checkpoint.feed_name, checkpoint.current_page, message)


def sync_punches(
    store: PunchStagingStore,
    client: FeedClient,
    *,
    window_start: datetime,
    window_end: datetime,
    config: SyncConfig | None = None,
    tz: ZoneInfo | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> SyncResult:
    """Pull every punch in the window into staging, resuming from the stored cursor.

    Raises IngestionHaltedError when a page cannot be fetched within the retry
    budget or stays rate limited past ``max_rate_limit_waits``; the cursor stays
    at the failing page so the next run picks up there.
    """
    config = config or SyncConfig.from_settings(get_settings())
    zone = tz or attendance_timezone()
    result = SyncResult(feed_name=config.feed_name)

    checkpoint = store.load_checkpoint(config.feed_name)
    if (
        checkpoint is not None
        and checkpoint.status is not SyncStatus.COMPLETED
        and checkpoint.covers(window_start, window_end)
    ):
        result.resumed_from_page = checkpoint.current_page
        logger.info(
            "punch_sync_resumed",
            extra={
                "feed_name": config.feed_name,
                "page": checkpoint.current_page,
                "records_processed": checkpoint.records_processed,
                "previous_status": checkpoint.status,
            },
        )
    else:
        checkpoint = CheckpointState(
            feed_name=config.feed_name,
            window_start=normalize_ts(window_start),
            window_end=normalize_ts(window_end),
        )
    checkpoint.status = SyncStatus.RUNNING
    checkpoint.retry_count = 0
    checkpoint.last_error = None
    store.save_checkpoint(checkpoint)

    attempts = 0
    rate_limit_waits = 0
    while True:
        try:
            page = client.fetch_page(
                window_start=checkpoint.window_start,
                window_end=checkpoint.window_end,
                page=checkpoint.current_page,
                page_size=config.page_size,
            )
        except FeedRateLimitedError as exc:
            if rate_limit_waits >= config.max_rate_limit_waits:
                raise _halt(
                    store,
                    checkpoint,
                    result,
                    f"Still rate limited after {rate_limit_waits} wait(s) on page {checkpoint.current_page}: "
                    f"{exc.message}",
                ) from exc
            rate_limit_waits += 1
            logger.warning(
                "punch_sync_rate_limited",
                extra={
                    "feed_name": config.feed_name,
                    "page": checkpoint.current_page,
                    "wait_seconds": config.rate_limit_wait_seconds,
                    "rate_limit_waits": rate_limit_waits,
                    "error": exc.message,
                },
            )
            attempts = 0
            checkpoint.retry_count = 0
            sleep(config.rate_limit_wait_seconds)
            continue
        except FeedError as exc:
            if not exc.retryable:
                raise _halt(store, checkpoint, result, exc.message) from exc
            if attempts >= config.max_retries:
                raise _halt(
                    store,
                    checkpoint,
                    result,
                    f"Retries exhausted after {attempts} attempt(s): {exc.message}",
                ) from exc
            delay = backoff_delay(attempts, config)
            attempts += 1
            checkpoint.retry_count = attempts
            logger.warning(
                "punch_sync_page_retry",
                extra={
                    "feed_name": config.feed_name,
                    "page": checkpoint.current_page,
                    "attempt": attempts,
                    "max_retries": config.max_retries,
                    "delay_seconds": delay,
                    "error": exc.message,
                },
            )
            sleep(delay)
            continue

        attempts = 0
        rate_limit_waits = 0
        result.pages += 1
        result.fetched += len(page.data)

        staged: list[StagedPunch] = []
        for item in page.data:
            punch = normalize_feed_punch(item, zone)
            if is_excluded_terminal(punch.terminal_id, config.excluded_terminal_keywords):
                result.skipped_excluded += 1
                continue
            staged.append(punch)

        checkpoint.current_page += 1
        if page.data:
            checkpoint.last_external_id = normalize_feed_punch(page.data[-1], zone).external_id
        checkpoint.records_processed += len(page.data)
        if page.count is not None:
            checkpoint.records_total = page.count
        checkpoint.retry_count = 0

        inserted = store.commit_page(checkpoint, staged)
        result.inserted += inserted
        result.skipped_duplicates += len(staged) - inserted
        logger.info(
            "punch_sync_page_committed",
            extra={
                "feed_name": config.feed_name,
                "page": checkpoint.current_page - 1,
                "fetched": len(page.data),
                "inserted": inserted,
                "records_processed": checkpoint.records_processed,
                "records_total": checkpoint.records_total,
            },
        )

        if not page.data or len(page.data) < config.page_size or not page.next:
            break

    checkpoint.status = SyncStatus.COMPLETED
    store.save_checkpoint(checkpoint)
    result.status = SyncStatus.COMPLETED
    logger.info("punch_sync_completed", extra=result.to_dict())
    return result


class SqlPunchStagingStore:
    def __init__(self, db: Session):
        self.db = db

    def _row(self, feed_name: str) -> SyncCheckpoint | None:
        return self.db.scalar(select(SyncCheckpoint).where(SyncCheckpoint.feed_name == feed_name))

    def load_checkpoint(self, feed_name: str) -> CheckpointState | None:
        row = self._row(feed_name)
        if row is None:
            return None
        return CheckpointState.from_model(row)

    def _stage_checkpoint(self, checkpoint: CheckpointState) -> None:
        row = self._row(checkpoint.feed_name)
        if row is None:
            row = SyncCheckpoint(feed_name=checkpoint.feed_name)
            self.db.add(row)
        checkpoint.apply_to(row)

    def save_checkpoint(self, checkpoint: CheckpointState) -> None:
        try:
            self._stage_checkpoint(checkpoint)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    def commit_page(self, checkpoint: CheckpointState, punches: Sequence[StagedPunch]) -> int:
        unique: dict[str, StagedPunch] = {}
        for punch in punches:
            unique.setdefault(punch.external_id, punch)

        try:
            existing: set[str] = set()
            if unique:
                existing = set(
                    self.db.scalars(
                        select(RawPunch.external_id).where(RawPunch.external_id.in_(list(unique)))
                    ).all()
                )
            inserted = 0
            for external_id, punch in unique.items():
                if external_id in existing:
                    continue
                self.db.add(
                    RawPunch(
                        external_id=external_id,
                        employee_code=punch.employee_code,
                        punch_time=punch.punch_time,
                        terminal_id=punch.terminal_id,
                        punch_state=punch.punch_state,
                        source=punch.source,
                        payload=punch.payload,
                    )
                )
                inserted += 1
            self._stage_checkpoint(checkpoint)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return inserted

    def get_checkpoint_row(self, feed_name: str) -> SyncCheckpoint | None:
        return self._row(feed_name)
