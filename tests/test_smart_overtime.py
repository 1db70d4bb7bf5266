from __future__ import annotations

import unittest
from dataclasses import replace
from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo

from attendance_engine.models import OvertimeApprovalState, OvertimeConfidence
from attendance_engine.services.policy_config import EmployeeConfig, PolicyConfig, ShiftConfig
from attendance_engine.services.smart_overtime import (
    HistorySnapshot,
    analyze_history,
    analyze_overtime,
    is_busy_period,
    is_weekend_or_holiday,
    open_session_overtime_hours,
    requires_approval,
    should_analyze,
)

KHI = ZoneInfo("Asia/Karachi")
POLICY = PolicyConfig()
TUESDAY = date(2026, 3, 10)
SATURDAY = date(2026, 3, 14)


class _FakeHistory:
    def __init__(self, hours: list[float] | None = None, *, error: Exception | None = None):
        self.hours = hours or []
        self.error = error
        self.calls: list[tuple[str, date, int]] = []

    def credited_hours(self, employee_code: str, *, before: date, lookback_days: int) -> list[float]:
        self.calls.append((employee_code, before, lookback_days))
        if self.error is not None:
            raise self.error
        return list(self.hours)


def _employee(*, department: str | None = None, shift: ShiftConfig | None = None, policy: PolicyConfig = POLICY):
    return EmployeeConfig(
        employee_code="E100",
        department=department,
        is_field_department=False,
        shift=shift or ShiftConfig.default(policy),
    )


def _analyze(work_date: date = TUESDAY, *, employee=None, history=None, check_out_hours=14.0, now=None, policy=POLICY):
    check_in = datetime.combine(work_date, time(9, 0), tzinfo=KHI)
    check_out = check_in + timedelta(hours=check_out_hours) if check_out_hours is not None else None
    return analyze_overtime(
        check_in=check_in,
        check_out=check_out,
        work_date=work_date,
        employee=employee or _employee(policy=policy),
        history=history,
        policy=policy,
        now=now,
    )


class ApprovalRuleTests(unittest.TestCase):
    def test_auto_approve_threshold(self) -> None:
        self.assertFalse(requires_approval(11.0, POLICY))
        self.assertFalse(requires_approval(12.0, POLICY))
        self.assertTrue(requires_approval(13.5, POLICY))

    def test_analyzer_only_runs_above_threshold(self) -> None:
        self.assertFalse(should_analyze(3.0, POLICY))
        self.assertFalse(should_analyze(4.0, POLICY))
        self.assertTrue(should_analyze(4.5, POLICY))


class SmartOvertimeAnalyzerTests(unittest.TestCase):
    def test_unassigned_office_employee_gets_standard_hours(self) -> None:
        decision = _analyze()

        self.assertEqual(decision.suggested_hours, 8.0)
        self.assertFalse(decision.approval_required)
        self.assertEqual(decision.confidence, OvertimeConfidence.MEDIUM)
        self.assertEqual(decision.approval_state, OvertimeApprovalState.AUTO_APPROVED)

    def test_assigned_shift_raises_confidence(self) -> None:
        long_shift = ShiftConfig(
            name="Long",
            start_time=time(8, 0),
            end_time=time(18, 0),
            grace_period_minutes=15,
            departure_tolerance_minutes=30,
            max_auto_overtime_hours=6.0,
        )

        decision = _analyze(employee=_employee(shift=long_shift))

        self.assertEqual(decision.suggested_hours, 10.0)
        self.assertEqual(decision.confidence, OvertimeConfidence.HIGH)
        self.assertIn("Shift: Long (10h)", decision.justification)

    def test_field_department_matches_substring(self) -> None:
        decision = _analyze(employee=_employee(department="lhe-safecity drivers north"))

        self.assertEqual(decision.suggested_hours, 10.0)
        self.assertEqual(decision.confidence, OvertimeConfidence.HIGH)

    def test_history_pattern_uses_rounded_average(self) -> None:
        history = _FakeHistory([11.0, 11.0, 12.0, 10.0, 9.0, 8.0, 7.5])

        decision = _analyze(history=history)

        self.assertEqual(decision.suggested_hours, 11.0)
        self.assertFalse(decision.approval_required)
        self.assertEqual(history.calls, [("E100", TUESDAY, 30)])

    def test_history_needs_minimum_overtime_days(self) -> None:
        pattern = analyze_history([11.0, 11.0, 12.0, 10.0, 8.0], POLICY)

        self.assertFalse(pattern.has_overtime_pattern)
        self.assertEqual(pattern.overtime_days, 4)

    def test_history_failure_is_logged_and_ignored(self) -> None:
        history = _FakeHistory(error=RuntimeError("db down"))

        with self.assertLogs("attendance_engine.smart_overtime", level="ERROR"):
            decision = _analyze(history=history)

        self.assertEqual(decision.suggested_hours, 8.0)

    def test_busy_period_adds_bonus(self) -> None:
        decision = _analyze(date(2026, 3, 30))

        self.assertEqual(decision.suggested_hours, 10.0)
        self.assertTrue(any("Busy period" in item for item in decision.justification))

    def test_busy_period_window(self) -> None:
        self.assertTrue(is_busy_period(date(2026, 3, 3), POLICY))
        self.assertFalse(is_busy_period(date(2026, 3, 4), POLICY))
        self.assertFalse(is_busy_period(date(2026, 3, 28), POLICY))
        self.assertTrue(is_busy_period(date(2026, 3, 29), POLICY))
        self.assertTrue(is_busy_period(date(2026, 2, 26), POLICY))

    def test_busy_period_bonus_stays_under_history_cap(self) -> None:
        history = _FakeHistory([12.0] * 6)

        decision = _analyze(date(2026, 3, 2), history=history)

        self.assertEqual(decision.suggested_hours, 12.0)
        self.assertFalse(decision.approval_required)

    def test_forgotten_punch_out_forces_low_confidence(self) -> None:
        check_in = datetime.combine(TUESDAY, time(9, 0), tzinfo=KHI)

        decision = _analyze(
            employee=_employee(department="PSCA"),
            check_out_hours=None,
            now=check_in + timedelta(hours=18),
        )

        self.assertEqual(decision.confidence, OvertimeConfidence.LOW)
        self.assertLessEqual(decision.suggested_hours, 12.0)

    def test_weekend_is_capped_and_needs_approval(self) -> None:
        decision = _analyze(SATURDAY, employee=_employee(department="Field Operations"))

        self.assertTrue(is_weekend_or_holiday(SATURDAY, POLICY))
        self.assertEqual(decision.suggested_hours, 8.0)
        self.assertTrue(decision.approval_required)

    def test_configured_holiday_needs_approval(self) -> None:
        policy = replace(POLICY, holidays=frozenset({TUESDAY}))

        decision = _analyze(policy=policy)

        self.assertTrue(decision.approval_required)

    def test_large_suggestion_requires_approval(self) -> None:
        policy = replace(POLICY, field_department_baseline_hours=13.5)

        decision = _analyze(employee=_employee(department="Tech", policy=policy), policy=policy)

        self.assertEqual(decision.suggested_hours, 13.5)
        self.assertTrue(decision.approval_required)
        self.assertEqual(decision.approval_state, OvertimeApprovalState.PENDING_APPROVAL)

    def test_suggestion_never_exceeds_hard_stop(self) -> None:
        policy = replace(POLICY, field_department_baseline_hours=20.0)

        decision = _analyze(employee=_employee(department="Tech", policy=policy), policy=policy)

        self.assertEqual(decision.suggested_hours, 16.0)


class HistorySnapshotTests(unittest.TestCase):
    def test_snapshot_answers_without_calling_history_again(self) -> None:
        history = _FakeHistory([12.0] * 6)

        snapshot = HistorySnapshot.prefetch(history, [("E100", TUESDAY)], lookback_days=POLICY.history_lookback_days)
        decision = _analyze(history=snapshot)

        self.assertEqual(history.calls, [("E100", TUESDAY, 30)])
        self.assertEqual(decision.suggested_hours, 12.0)

    def test_prefetch_failure_surfaces_at_lookup(self) -> None:
        snapshot = HistorySnapshot.prefetch(
            _FakeHistory(error=RuntimeError("db down")), [("E100", TUESDAY)], lookback_days=30
        )

        with self.assertRaises(RuntimeError):
            snapshot.credited_hours("E100", before=TUESDAY, lookback_days=30)
        with self.assertRaises(LookupError):
            snapshot.credited_hours("E200", before=TUESDAY, lookback_days=30)

    def test_open_session_overtime_counts_from_check_in(self) -> None:
        check_in = datetime.combine(TUESDAY, time(9, 0), tzinfo=KHI)

        self.assertEqual(open_session_overtime_hours(check_in, 8.0, check_in + timedelta(hours=22)), 14.0)
        self.assertEqual(open_session_overtime_hours(check_in, 8.0, check_in + timedelta(hours=5)), 0.0)


if __name__ == "__main__":
    unittest.main()
