from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta

from attendance_engine.services.policy_config import PolicyConfig, ShiftConfig
from attendance_engine.services.timing import normalize_ts

logger = logging.getLogger("attendance_engine.overtime_cap")

HOURS_PRECISION = 2


@dataclass(frozen=True)
class CapDecision:
    credited_hours: float
    overtime_hours: float
    shift_duration_hours: float
    shift_end: datetime
    effective_checkout: datetime
    ceiling_a: datetime
    ceiling_b: datetime
    measured: bool
    capped: bool
    reason: str

    @property
    def effective_ceiling(self) -> datetime:
        return max(self.ceiling_a, self.ceiling_b)


def _hours_between(later: datetime, earlier: datetime) -> float:
    return (later - earlier).total_seconds() / 3600


def credit_ceiling_hours(shift: ShiftConfig, policy: PolicyConfig) -> float:
    """Upper bound on credited hours for any session on this shift."""
    return max(shift.duration_hours(policy) + _allowance(shift, policy), policy.max_session_hours)


def _allowance(shift: ShiftConfig, policy: PolicyConfig) -> float:
    if shift.max_auto_overtime_hours is None:
        return policy.max_auto_overtime_hours
    return shift.max_auto_overtime_hours


def apply_overtime_cap(
    *,
    check_in: datetime,
    check_out: datetime | None,
    shift: ShiftConfig,
    policy: PolicyConfig,
) -> CapDecision:
    check_in = normalize_ts(check_in)
    shift_duration = shift.duration_hours(policy)
    allowance = _allowance(shift, policy)
    shift_end = check_in + timedelta(hours=shift_duration)
    ceiling_a = shift_end + timedelta(hours=allowance)
    ceiling_b = check_in + timedelta(hours=policy.max_session_hours)

    if check_out is not None:
        check_out = normalize_ts(check_out)
        if check_out <= check_in:
            logger.warning(
                "overtime_cap_checkout_before_checkin",
                extra={"check_in": check_in, "check_out": check_out},
            )
            check_out = None

    if check_out is None:
        if shift.is_assigned:
            reason = f"No punch-out: credited arrival to shift end ({shift.name}: {shift_duration:g}h)"
        else:
            reason = f"No punch-out and no shift assigned: policy default {shift_duration:g}h applied"
        decision = CapDecision(
            credited_hours=round(shift_duration, HOURS_PRECISION),
            overtime_hours=0.0,
            shift_duration_hours=shift_duration,
            shift_end=shift_end,
            effective_checkout=shift_end,
            ceiling_a=ceiling_a,
            ceiling_b=ceiling_b,
            measured=False,
            capped=False,
            reason=reason,
        )
        return enforce_credit_ceiling(decision, shift=shift, policy=policy)

    raw_hours = _hours_between(check_out, check_in)
    if check_out <= ceiling_a:
        credited = raw_hours
        effective_checkout = check_out
        capped = False
        reason = f"Actual punch-out within overtime allowance ({allowance:g}h past shift end)"
    else:
        credited = _hours_between(ceiling_a, check_in)
        effective_checkout = ceiling_a
        capped = True
        reason = (
            f"Punch-out {raw_hours:.2f}h after arrival exceeds shift end + {allowance:g}h; "
            f"capped at {credited:.2f}h"
        )

    decision = CapDecision(
        credited_hours=round(credited, HOURS_PRECISION),
        overtime_hours=round(max(0.0, credited - shift_duration), HOURS_PRECISION),
        shift_duration_hours=shift_duration,
        shift_end=shift_end,
        effective_checkout=effective_checkout,
        ceiling_a=ceiling_a,
        ceiling_b=ceiling_b,
        measured=True,
        capped=capped,
        reason=reason,
    )
    return enforce_credit_ceiling(decision, shift=shift, policy=policy)


def enforce_credit_ceiling(decision: CapDecision, *, shift: ShiftConfig, policy: PolicyConfig) -> CapDecision:
    ceiling = round(credit_ceiling_hours(shift, policy), HOURS_PRECISION)
    if decision.credited_hours <= ceiling:
        return decision

    logger.warning(
        "overtime_cap_ceiling_enforced",
        extra={"credited_hours": decision.credited_hours, "ceiling_hours": ceiling},
    )
    return replace(
        decision,
        credited_hours=ceiling,
        overtime_hours=round(max(0.0, ceiling - decision.shift_duration_hours), HOURS_PRECISION),
        capped=True,
        reason=f"{decision.reason}; hard ceiling {ceiling:g}h enforced",
    )


def clamp_credited_hours(hours: float, *, shift: ShiftConfig, policy: PolicyConfig) -> float:
    return round(min(max(0.0, hours), credit_ceiling_hours(shift, policy)), HOURS_PRECISION)
