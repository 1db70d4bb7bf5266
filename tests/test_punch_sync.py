from __future__ import annotations

import io
import json
import unittest
from dataclasses import replace
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch
from urllib import error as urllib_error
from zoneinfo import ZoneInfo

from attendance_engine.errors import (
    FeedError,
    FeedRateLimitedError,
    FeedRejectedError,
    IngestionHaltedError,
)
from attendance_engine.models import PunchOutSource, PunchState, SyncStatus
from attendance_engine.schemas import FeedPage, FeedPunch
from attendance_engine.services.punch_sync import (
    CheckpointState,
    HttpFeedClient,
    StagedPunch,
    SyncConfig,
    backoff_delay,
    is_excluded_terminal,
    normalize_feed_punch,
    normalize_punch_source,
    normalize_punch_state,
    sync_punches,
)

KHI = ZoneInfo("Asia/Karachi")
WINDOW_START = datetime(2026, 3, 9, 19, 0, tzinfo=timezone.utc)
WINDOW_END = datetime(2026, 3, 10, 19, 0, tzinfo=timezone.utc)
CONFIG = SyncConfig(
    feed_name="biotime",
    page_size=2,
    max_retries=2,
    backoff_base_seconds=5.0,
    backoff_max_seconds=60.0,
    rate_limit_wait_seconds=30.0,
    excluded_terminal_keywords=("lock",),
)


def _record(record_id: int, hour: int, *, state: int = 0, terminal: str = "Gate-A") -> FeedPunch:
    return FeedPunch(
        id=record_id,
        emp_code=f"E{100 + record_id % 2}",
        punch_time=datetime(2026, 3, 10, hour, 0),
        punch_state=state,
        terminal_alias=terminal,
    )


FIVE_RECORDS = [_record(1, 8), _record(2, 9), _record(3, 13, state=1), _record(4, 17, state=1), _record(5, 18, state=1)]


class _FakeFeedClient:
    def __init__(self, records: list[FeedPunch], *, failures: dict[int, list[Exception]] | None = None):
        self.records = records
        self.failures = failures or {}
        self.requested: list[int] = []

    def fetch_page(self, *, window_start: datetime, window_end: datetime, page: int, page_size: int) -> FeedPage:
        self.requested.append(page)
        queue = self.failures.get(page)
        if queue:
            raise queue.pop(0)
        start = (page - 1) * page_size
        chunk = self.records[start : start + page_size]
        has_next = start + page_size < len(self.records)
        return FeedPage(count=len(self.records), next=f"?page={page + 1}" if has_next else None, data=chunk)


class _FakeStagingStore:
    def __init__(self, *, fail_on_commit: int | None = None):
        self.rows: dict[str, StagedPunch] = {}
        self.checkpoint: CheckpointState | None = None
        self.commits = 0
        self.fail_on_commit = fail_on_commit

    def load_checkpoint(self, feed_name: str) -> CheckpointState | None:
        if self.checkpoint is None or self.checkpoint.feed_name != feed_name:
            return None
        return replace(self.checkpoint)

    def save_checkpoint(self, checkpoint: CheckpointState) -> None:
        self.checkpoint = replace(checkpoint)

    def commit_page(self, checkpoint: CheckpointState, punches: list[StagedPunch]) -> int:
        self.commits += 1
        if self.fail_on_commit == self.commits:
            raise RuntimeError("connection lost")
        inserted = 0
        for punch in punches:
            if punch.external_id in self.rows:
                continue
            self.rows[punch.external_id] = punch
            inserted += 1
        self.checkpoint = replace(checkpoint)
        return inserted


def _run(store: _FakeStagingStore, client: _FakeFeedClient, sleeps: list[float] | None = None, config: SyncConfig = CONFIG):
    return sync_punches(
        store,
        client,
        window_start=WINDOW_START,
        window_end=WINDOW_END,
        config=config,
        tz=KHI,
        sleep=(sleeps.append if sleeps is not None else lambda _seconds: None),
    )


class PunchSyncTests(unittest.TestCase):
    def test_pulls_every_page_once(self) -> None:
        store = _FakeStagingStore()
        client = _FakeFeedClient(FIVE_RECORDS)

        result = _run(store, client)

        self.assertEqual(result.status, SyncStatus.COMPLETED)
        self.assertEqual(result.pages, 3)
        self.assertEqual(result.inserted, 5)
        self.assertEqual(client.requested, [1, 2, 3])
        self.assertEqual(sorted(store.rows), ["1", "2", "3", "4", "5"])
        self.assertEqual(store.checkpoint.status, SyncStatus.COMPLETED)
        self.assertEqual(store.checkpoint.records_processed, 5)
        self.assertEqual(store.checkpoint.records_total, 5)
        self.assertEqual(store.checkpoint.last_external_id, "5")

    def test_resume_after_retry_exhaustion_has_no_duplicates_or_gaps(self) -> None:
        store = _FakeStagingStore()
        failing = _FakeFeedClient(FIVE_RECORDS, failures={2: [FeedError("timeout") for _ in range(3)]})
        sleeps: list[float] = []

        with self.assertRaises(IngestionHaltedError) as ctx:
            _run(store, failing, sleeps)

        self.assertEqual(ctx.exception.page, 2)
        self.assertEqual(sleeps, [5.0, 10.0])
        self.assertEqual(store.checkpoint.status, SyncStatus.HALTED)
        self.assertEqual(store.checkpoint.current_page, 2)
        self.assertIn("timeout", store.checkpoint.last_error)
        self.assertEqual(sorted(store.rows), ["1", "2"])

        healthy = _FakeFeedClient(FIVE_RECORDS)
        result = _run(store, healthy)

        self.assertEqual(result.resumed_from_page, 2)
        self.assertEqual(healthy.requested, [2, 3])
        self.assertEqual(result.inserted, 3)
        self.assertEqual(result.skipped_duplicates, 0)
        self.assertEqual(sorted(store.rows), ["1", "2", "3", "4", "5"])
        self.assertEqual(store.checkpoint.status, SyncStatus.COMPLETED)

    def test_crash_during_page_commit_resumes_from_last_committed_page(self) -> None:
        store = _FakeStagingStore(fail_on_commit=2)

        with self.assertRaises(RuntimeError):
            _run(store, _FakeFeedClient(FIVE_RECORDS))

        self.assertEqual(store.checkpoint.current_page, 2)
        self.assertEqual(store.checkpoint.status, SyncStatus.RUNNING)

        client = _FakeFeedClient(FIVE_RECORDS)
        result = _run(store, client)

        self.assertEqual(client.requested, [2, 3])
        self.assertEqual(result.inserted, 3)
        self.assertEqual(len(store.rows), 5)

    def test_rate_limit_resets_retry_budget(self) -> None:
        store = _FakeStagingStore()
        client = _FakeFeedClient(
            FIVE_RECORDS,
            failures={
                1: [
                    FeedError("reset"),
                    FeedError("reset"),
                    FeedRateLimitedError("slow down", status_code=429),
                    FeedError("reset"),
                    FeedError("reset"),
                ]
            },
        )
        sleeps: list[float] = []

        result = _run(store, client, sleeps)

        self.assertEqual(result.status, SyncStatus.COMPLETED)
        self.assertEqual(sleeps, [5.0, 10.0, 30.0, 5.0, 10.0])

    def test_endless_rate_limiting_halts_after_wait_ceiling(self) -> None:
        store = _FakeStagingStore()
        client = _FakeFeedClient(
            FIVE_RECORDS,
            failures={1: [FeedRateLimitedError("slow down", status_code=429) for _ in range(10)]},
        )
        sleeps: list[float] = []

        with self.assertRaises(IngestionHaltedError) as ctx:
            _run(store, client, sleeps, config=replace(CONFIG, max_rate_limit_waits=3))

        self.assertEqual(sleeps, [30.0, 30.0, 30.0])
        self.assertEqual(client.requested, [1, 1, 1, 1])
        self.assertEqual(ctx.exception.page, 1)
        self.assertEqual(store.checkpoint.status, SyncStatus.HALTED)
        self.assertIn("Still rate limited after 3 wait(s) on page 1", store.checkpoint.last_error)

    def test_rate_limit_wait_ceiling_is_per_page(self) -> None:
        store = _FakeStagingStore()
        client = _FakeFeedClient(
            FIVE_RECORDS,
            failures={
                1: [FeedRateLimitedError("slow down", status_code=429) for _ in range(2)],
                2: [FeedRateLimitedError("slow down", status_code=429) for _ in range(2)],
            },
        )
        sleeps: list[float] = []

        result = _run(store, client, sleeps, config=replace(CONFIG, max_rate_limit_waits=2))

        self.assertEqual(result.status, SyncStatus.COMPLETED)
        self.assertEqual(sleeps, [30.0, 30.0, 30.0, 30.0])

    def test_rejected_request_halts_without_retry(self) -> None:
        store = _FakeStagingStore()
        client = _FakeFeedClient(FIVE_RECORDS, failures={1: [FeedRejectedError("bad token", status_code=401)]})
        sleeps: list[float] = []

        with self.assertRaises(IngestionHaltedError):
            _run(store, client, sleeps)

        self.assertEqual(sleeps, [])
        self.assertEqual(client.requested, [1])
        self.assertEqual(store.checkpoint.status, SyncStatus.HALTED)

    def test_completed_window_is_pulled_again_without_duplicates(self) -> None:
        store = _FakeStagingStore()
        _run(store, _FakeFeedClient(FIVE_RECORDS))

        client = _FakeFeedClient(FIVE_RECORDS)
        result = _run(store, client)

        self.assertIsNone(result.resumed_from_page)
        self.assertEqual(client.requested, [1, 2, 3])
        self.assertEqual(result.inserted, 0)
        self.assertEqual(result.skipped_duplicates, 5)

    def test_halted_checkpoint_for_other_window_is_replaced(self) -> None:
        store = _FakeStagingStore()
        store.checkpoint = CheckpointState(
            feed_name="biotime",
            window_start=datetime(2026, 3, 1, tzinfo=timezone.utc),
            window_end=datetime(2026, 3, 2, tzinfo=timezone.utc),
            status=SyncStatus.HALTED,
            current_page=7,
        )
        client = _FakeFeedClient(FIVE_RECORDS)

        _run(store, client)

        self.assertEqual(client.requested[0], 1)
        self.assertEqual(store.checkpoint.window_start, WINDOW_START)

    def test_lock_terminals_are_dropped(self) -> None:
        records = [_record(1, 8), _record(2, 9, terminal="Server Room Lock")]
        store = _FakeStagingStore()

        result = _run(store, _FakeFeedClient(records), config=replace(CONFIG, page_size=10))

        self.assertEqual(result.skipped_excluded, 1)
        self.assertEqual(sorted(store.rows), ["1"])
        self.assertTrue(is_excluded_terminal("MAIN-LOCK-02", ["lock"]))
        self.assertFalse(is_excluded_terminal(None, ["lock"]))

    def test_backoff_is_capped(self) -> None:
        self.assertEqual(backoff_delay(0, CONFIG), 5.0)
        self.assertEqual(backoff_delay(3, CONFIG), 40.0)
        self.assertEqual(backoff_delay(10, CONFIG), 60.0)


class PunchNormalizationTests(unittest.TestCase):
    def test_punch_state_aliases(self) -> None:
        self.assertEqual(normalize_punch_state(0), PunchState.IN)
        self.assertEqual(normalize_punch_state("Check In"), PunchState.IN)
        self.assertEqual(normalize_punch_state("1"), PunchState.OUT)
        self.assertEqual(normalize_punch_state("check-out"), PunchState.OUT)
        self.assertEqual(normalize_punch_state("4"), PunchState.UNKNOWN)
        self.assertEqual(normalize_punch_state(None), PunchState.UNKNOWN)

    def test_naive_feed_time_is_local(self) -> None:
        staged = normalize_feed_punch(_record(7, 9), KHI)

        self.assertEqual(staged.punch_time, datetime(2026, 3, 10, 4, 0, tzinfo=timezone.utc))
        self.assertEqual(staged.external_id, "7")
        self.assertEqual(staged.terminal_id, "Gate-A")

    def test_missing_id_falls_back_to_composite_key(self) -> None:
        item = FeedPunch(emp_code="E100", punch_time=datetime(2026, 3, 10, 9, 0), punch_state="1")

        staged = normalize_feed_punch(item, KHI)

        self.assertEqual(staged.external_id, "E100:2026-03-10T04:00:00+00:00:OUT")

    def test_punch_source_aliases(self) -> None:
        mobile = FeedPunch(id=8, emp_code="E100", punch_time=datetime(2026, 3, 10, 18, 0), punch_source="Mobile App")

        self.assertEqual(normalize_feed_punch(mobile, KHI).source, PunchOutSource.MOBILE_SELF)
        self.assertEqual(normalize_feed_punch(_record(9, 18), KHI).source, PunchOutSource.TERMINAL)
        self.assertEqual(normalize_punch_source("admin_dashboard"), PunchOutSource.ADMIN_MANUAL)
        self.assertEqual(normalize_punch_source("system-auto"), PunchOutSource.SYSTEM_AUTO)
        self.assertEqual(normalize_punch_source("fingerprint"), PunchOutSource.TERMINAL)


def _http_error(code: int, body: bytes = b"") -> urllib_error.HTTPError:
    return urllib_error.HTTPError("http://feed.local", code, "error", {}, io.BytesIO(body))  # type: ignore[arg-type]


class HttpFeedClientTests(unittest.TestCase):
    def setUp(self) -> None:
        self.client = HttpFeedClient(base_url="http://feed.local/", api_token="secret", tz=KHI)

    def _fetch(self) -> FeedPage:
        return self.client.fetch_page(window_start=WINDOW_START, window_end=WINDOW_END, page=3, page_size=500)

    @patch("attendance_engine.services.punch_sync.urllib_request.urlopen")
    def test_fetch_page_parses_payload_and_sends_token(self, mock_urlopen) -> None:
        response = MagicMock()
        response.read.return_value = json.dumps(
            {
                "count": 1,
                "next": None,
                "data": [{"id": 11, "emp_code": "E100", "punch_time": "2026-03-10 09:00:00", "punch_state": "0"}],
            }
        ).encode("utf-8")
        mock_urlopen.return_value.__enter__.return_value = response

        page = self._fetch()

        self.assertEqual(page.count, 1)
        self.assertEqual(page.data[0].emp_code, "E100")
        request = mock_urlopen.call_args[0][0]
        self.assertEqual(request.get_header("Authorization"), "Token secret")
        self.assertIn("page=3", request.full_url)
        self.assertIn("start_time=2026-03-10+00%3A00%3A00", request.full_url)

    @patch("attendance_engine.services.punch_sync.urllib_request.urlopen")
    def test_status_codes_map_to_feed_errors(self, mock_urlopen) -> None:
        mock_urlopen.side_effect = _http_error(429, b"slow down")
        with self.assertRaises(FeedRateLimitedError):
            self._fetch()

        mock_urlopen.side_effect = _http_error(503)
        with self.assertRaises(FeedError) as ctx:
            self._fetch()
        self.assertTrue(ctx.exception.retryable)

        mock_urlopen.side_effect = _http_error(403)
        with self.assertRaises(FeedRejectedError) as rejected:
            self._fetch()
        self.assertFalse(rejected.exception.retryable)

        mock_urlopen.side_effect = urllib_error.URLError("connection refused")
        with self.assertRaises(FeedError):
            self._fetch()

    @patch("attendance_engine.services.punch_sync.urllib_request.urlopen")
    def test_unreadable_payload_is_rejected(self, mock_urlopen) -> None:
        response = MagicMock()
        response.read.return_value = b"<html>maintenance</html>"
        mock_urlopen.return_value.__enter__.return_value = response

        with self.assertRaises(FeedRejectedError):
            self._fetch()


if __name__ == "__main__":
    unittest.main()
