from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from attendance_engine.models import PunchOutSource
from attendance_engine.services.policy_config import PolicyConfig
from attendance_engine.services.timing import normalize_ts

NOTE_TAGS = ("PAIRING", "DEFAULT", "TIMING", "CAP", "OVERTIME", "SCORE", "APPROVAL")


@dataclass(frozen=True)
class ScoreDecision:
    source: PunchOutSource
    score_deduction: int
    mobile_activity_score: int
    hours_overtime: float
    hours_worked: float
    details: str


def score_punch_out(
    *,
    check_in: datetime,
    check_out: datetime,
    shift_end: datetime,
    source: PunchOutSource,
    policy: PolicyConfig,
) -> ScoreDecision | None:
    """Advisory score for system, mobile or admin punch-outs; terminal punch-outs are not scored."""
    if source.is_conventional:
        return None

    check_in = normalize_ts(check_in)
    check_out = normalize_ts(check_out)
    shift_end = normalize_ts(shift_end)

    hours_overtime = max(0.0, (check_out - shift_end).total_seconds() / 3600)
    score_deduction = round(hours_overtime * policy.score_deduction_per_hour)

    hours_worked = max(0.0, (check_out - check_in).total_seconds() / 3600)
    if policy.mobile_activity_rate_per_hour > 0:
        activity_hours = min(hours_worked, policy.max_mobile_activity_score / policy.mobile_activity_rate_per_hour)
    else:
        activity_hours = 0.0
    mobile_activity_score = min(
        round(activity_hours * policy.mobile_activity_rate_per_hour),
        int(policy.max_mobile_activity_score),
    )

    details = (
        f"{source.value.replace('_', ' ')} punch-out: {hours_overtime:.2f}h past shift end "
        f"-> deduction {score_deduction} pts ({policy.score_deduction_per_hour:g} pts/h); "
        f"{hours_worked:.2f}h worked -> mobile activity {mobile_activity_score} pts "
        f"({policy.mobile_activity_rate_per_hour:g} pts/h, max {policy.max_mobile_activity_score:g})"
    )
    return ScoreDecision(
        source=source,
        score_deduction=score_deduction,
        mobile_activity_score=mobile_activity_score,
        hours_overtime=round(hours_overtime, 2),
        hours_worked=round(hours_worked, 2),
        details=details,
    )


@dataclass
class AuditTrail:
    """Append-only session note. Earlier versions' lines are carried forward untouched."""

    previous: str = ""
    lines: list[str] = field(default_factory=list)

    def add(self, tag: str, message: str) -> None:
        if tag not in NOTE_TAGS:
            raise ValueError(f"Unknown audit tag: {tag}")
        self.lines.append(f"[{tag}] {message}")

    def render(self, *, version: int, processed_at: datetime) -> str:
        header = f"[VERSION {version}] processed {normalize_ts(processed_at).isoformat()}"
        block = "\n".join([header, *self.lines])
        if not self.previous:
            return block
        return f"{self.previous}\n{block}"
