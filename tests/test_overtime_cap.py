from __future__ import annotations

import random
import unittest
from dataclasses import replace
from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo

from attendance_engine.services.overtime_cap import (
    apply_overtime_cap,
    clamp_credited_hours,
    credit_ceiling_hours,
)
from attendance_engine.services.policy_config import PolicyConfig, ShiftConfig

KHI = ZoneInfo("Asia/Karachi")
POLICY = PolicyConfig()
WORK_DATE = date(2026, 3, 10)
DAY_SHIFT = ShiftConfig(
    name="Day",
    start_time=time(9, 0),
    end_time=time(17, 0),
    grace_period_minutes=30,
    departure_tolerance_minutes=30,
    max_auto_overtime_hours=3.0,
)


def _local(hour: int, minute: int = 0) -> datetime:
    return datetime.combine(WORK_DATE, time(hour, minute), tzinfo=KHI)


class OvertimeCapTests(unittest.TestCase):
    def test_late_checkout_is_capped_at_allowance(self) -> None:
        decision = apply_overtime_cap(check_in=_local(9), check_out=_local(23), shift=DAY_SHIFT, policy=POLICY)

        self.assertEqual(decision.credited_hours, 11.0)
        self.assertEqual(decision.overtime_hours, 3.0)
        self.assertTrue(decision.capped)
        self.assertTrue(decision.measured)
        self.assertEqual(decision.effective_checkout, _local(20))
        self.assertIn("capped at 11.00h", decision.reason)
        self.assertIn("14.00h", decision.reason)

    def test_checkout_within_allowance_credits_actual_duration(self) -> None:
        decision = apply_overtime_cap(check_in=_local(9), check_out=_local(19, 30), shift=DAY_SHIFT, policy=POLICY)

        self.assertEqual(decision.credited_hours, 10.5)
        self.assertEqual(decision.overtime_hours, 2.5)
        self.assertFalse(decision.capped)
        self.assertIn("within overtime allowance", decision.reason)

    def test_checkout_exactly_on_allowance_is_not_capped(self) -> None:
        decision = apply_overtime_cap(check_in=_local(9), check_out=_local(20), shift=DAY_SHIFT, policy=POLICY)

        self.assertEqual(decision.credited_hours, 11.0)
        self.assertFalse(decision.capped)

    def test_missing_checkout_credits_shift_duration(self) -> None:
        decision = apply_overtime_cap(check_in=_local(9), check_out=None, shift=DAY_SHIFT, policy=POLICY)

        self.assertEqual(decision.credited_hours, 8.0)
        self.assertEqual(decision.overtime_hours, 0.0)
        self.assertFalse(decision.measured)
        self.assertEqual(decision.effective_checkout, _local(17))
        self.assertIn("Day", decision.reason)

    def test_missing_checkout_without_shift_uses_policy_default(self) -> None:
        decision = apply_overtime_cap(
            check_in=_local(10, 15),
            check_out=None,
            shift=ShiftConfig.default(POLICY),
            policy=POLICY,
        )

        self.assertEqual(decision.credited_hours, 8.0)
        self.assertIn("policy default", decision.reason)

    def test_checkout_before_checkin_is_treated_as_missing(self) -> None:
        with self.assertLogs("attendance_engine.overtime_cap", level="WARNING"):
            decision = apply_overtime_cap(check_in=_local(9), check_out=_local(8), shift=DAY_SHIFT, policy=POLICY)

        self.assertEqual(decision.credited_hours, 8.0)
        self.assertFalse(decision.measured)

    def test_shift_allowance_overrides_policy_default(self) -> None:
        generous = replace(DAY_SHIFT, max_auto_overtime_hours=6.0)

        decision = apply_overtime_cap(check_in=_local(9), check_out=_local(23), shift=generous, policy=POLICY)

        self.assertEqual(decision.credited_hours, 14.0)
        self.assertFalse(decision.capped)
        self.assertEqual(credit_ceiling_hours(generous, POLICY), 14.0)

    def test_thresholds_are_injectable(self) -> None:
        tight_policy = replace(POLICY, max_auto_overtime_hours=1.0)

        decision = apply_overtime_cap(
            check_in=_local(9),
            check_out=_local(23),
            shift=ShiftConfig.default(tight_policy),
            policy=tight_policy,
        )

        self.assertEqual(decision.credited_hours, 9.0)

    def test_clamp_credited_hours_respects_ceiling(self) -> None:
        self.assertEqual(clamp_credited_hours(15.0, shift=DAY_SHIFT, policy=POLICY), 12.0)
        self.assertEqual(clamp_credited_hours(-2.0, shift=DAY_SHIFT, policy=POLICY), 0.0)
        self.assertEqual(clamp_credited_hours(9.25, shift=DAY_SHIFT, policy=POLICY), 9.25)


class OvertimeCapPropertyTests(unittest.TestCase):
    def test_credited_hours_never_exceed_ceiling(self) -> None:
        rng = random.Random(20260310)
        for _ in range(2000):
            start_minutes = rng.randrange(0, 24 * 60, 15)
            length_minutes = rng.randrange(60, 14 * 60 + 1, 15)
            end_minutes = (start_minutes + length_minutes) % (24 * 60)
            shift = ShiftConfig(
                name="Random",
                start_time=time(start_minutes // 60, start_minutes % 60),
                end_time=time(end_minutes // 60, end_minutes % 60),
                grace_period_minutes=rng.choice([0, 5, 15, 30]),
                departure_tolerance_minutes=30,
                max_auto_overtime_hours=rng.choice([0.0, 1.0, 2.5, 3.0, 6.0]),
                is_assigned=rng.random() > 0.2,
            )
            check_in = datetime(2026, 1, 1, tzinfo=KHI) + timedelta(minutes=rng.randrange(0, 60 * 24 * 60))
            check_out = None
            if rng.random() > 0.25:
                check_out = check_in + timedelta(minutes=rng.randrange(-60, 30 * 60))

            decision = apply_overtime_cap(check_in=check_in, check_out=check_out, shift=shift, policy=POLICY)

            ceiling = max(shift.duration_hours(POLICY) + shift.max_auto_overtime_hours, POLICY.max_session_hours)
            self.assertLessEqual(decision.credited_hours, round(ceiling, 2) + 1e-9)
            self.assertGreaterEqual(decision.credited_hours, 0.0)
            self.assertGreaterEqual(decision.overtime_hours, 0.0)
            if decision.measured and check_out is not None:
                raw_hours = (check_out - check_in).total_seconds() / 3600
                self.assertLessEqual(decision.credited_hours, raw_hours + 0.01)
            else:
                self.assertEqual(decision.credited_hours, round(shift.duration_hours(POLICY), 2))


if __name__ == "__main__":
    unittest.main()
