"""Initial reconciliation schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-18 00:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

punch_state = postgresql.ENUM("IN", "OUT", "UNKNOWN", name="punch_state", create_type=False)
punch_out_source = postgresql.ENUM(
    "terminal",
    "system_auto",
    "mobile_self",
    "admin_manual",
    name="punch_out_source",
    create_type=False,
)
arrival_status = postgresql.ENUM("early", "on_time", "grace", "late", name="arrival_status", create_type=False)
departure_status = postgresql.ENUM(
    "early",
    "on_time",
    "late",
    "incomplete",
    name="departure_status",
    create_type=False,
)
overtime_approval_state = postgresql.ENUM(
    "none",
    "auto_approved",
    "pending_approval",
    "approved",
    "rejected",
    name="overtime_approval_state",
    create_type=False,
)
overtime_confidence = postgresql.ENUM("high", "medium", "low", name="overtime_confidence", create_type=False)
sync_status = postgresql.ENUM(
    "idle",
    "running",
    "completed",
    "halted",
    "failed",
    name="sync_status",
    create_type=False,
)
audit_actor_type = postgresql.ENUM("ADMIN", "SYSTEM", name="audit_actor_type", create_type=False)

_ENUMS = (
    punch_state,
    punch_out_source,
    arrival_status,
    departure_status,
    overtime_approval_state,
    overtime_confidence,
    sync_status,
    audit_actor_type,
)


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in _ENUMS:
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "shifts",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("start_time_local", sa.Time(), nullable=False),
        sa.Column("end_time_local", sa.Time(), nullable=False),
        sa.Column("grace_period_minutes", sa.Integer(), nullable=False, server_default=sa.text("30")),
        sa.Column("departure_tolerance_minutes", sa.Integer(), nullable=True),
        sa.Column("max_auto_overtime_hours", sa.Float(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
    )

    op.create_table(
        "employees",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_code", sa.String(length=50), nullable=False),
        sa.Column("full_name", sa.String(length=255), nullable=True),
        sa.Column("department", sa.String(length=255), nullable=True),
        sa.Column("is_field_department", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("shift_id", sa.Integer(), nullable=True),
        sa.Column("timezone", sa.String(length=64), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.ForeignKeyConstraint(["shift_id"], ["shifts.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("employee_code", name="uq_employees_employee_code"),
    )
    op.create_index("ix_employees_employee_code", "employees", ["employee_code"])

    op.create_table(
        "raw_punches",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("external_id", sa.String(length=128), nullable=False),
        sa.Column("employee_code", sa.String(length=50), nullable=False),
        sa.Column("punch_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("terminal_id", sa.String(length=128), nullable=True),
        sa.Column("punch_state", punch_state, nullable=False),
        sa.Column("source", punch_out_source, nullable=False, server_default="terminal"),
        sa.Column(
            "payload",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("pulled_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint("external_id", name="uq_raw_punches_external_id"),
    )
    op.create_index("ix_raw_punches_employee_time", "raw_punches", ["employee_code", "punch_time"])

    op.create_table(
        "attendance_sessions",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_code", sa.String(length=50), nullable=False),
        sa.Column("work_date", sa.Date(), nullable=False),
        sa.Column("session_sequence", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("processing_version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("is_current", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("check_in", sa.DateTime(timezone=True), nullable=False),
        sa.Column("check_out", sa.DateTime(timezone=True), nullable=True),
        sa.Column("punch_out_source", punch_out_source, nullable=False, server_default="terminal"),
        sa.Column("arrival_status", arrival_status, nullable=False),
        sa.Column("departure_status", departure_status, nullable=False),
        sa.Column("early_minutes", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("late_minutes", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("grace_minutes", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("early_departure_minutes", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("late_departure_minutes", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("credited_hours", sa.Float(), nullable=False),
        sa.Column("overtime_hours", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("overtime_approval_state", overtime_approval_state, nullable=False, server_default="none"),
        sa.Column("suggested_hours", sa.Float(), nullable=True),
        sa.Column("overtime_confidence", overtime_confidence, nullable=True),
        sa.Column("score_deduction", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("mobile_activity_score", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column(
            "interim_punches",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column("notes", sa.Text(), nullable=False, server_default=""),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint(
            "employee_code",
            "work_date",
            "session_sequence",
            "processing_version",
            name="uq_attendance_sessions_key_version",
        ),
    )
    op.create_index(
        "ix_attendance_sessions_current",
        "attendance_sessions",
        ["employee_code", "work_date", "is_current"],
    )
    op.create_index(
        "uq_attendance_sessions_one_current",
        "attendance_sessions",
        ["employee_code", "work_date", "session_sequence"],
        unique=True,
        postgresql_where=sa.text("is_current"),
    )

    op.create_table(
        "sync_checkpoints",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("feed_name", sa.String(length=64), nullable=False),
        sa.Column("status", sync_status, nullable=False, server_default="idle"),
        sa.Column("window_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("window_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_page", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("last_external_id", sa.String(length=128), nullable=True),
        sa.Column("records_processed", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("records_total", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint("feed_name", name="uq_sync_checkpoints_feed_name"),
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("ts_utc", sa.DateTime(timezone=True), nullable=False),
        sa.Column("actor_type", audit_actor_type, nullable=False),
        sa.Column("actor_id", sa.String(length=255), nullable=False),
        sa.Column("action", sa.String(length=255), nullable=False),
        sa.Column("entity_type", sa.String(length=100), nullable=True),
        sa.Column("entity_id", sa.String(length=100), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column(
            "details",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
    )
    op.create_index("ix_audit_logs_ts_utc", "audit_logs", ["ts_utc"])


def downgrade() -> None:
    op.drop_index("ix_audit_logs_ts_utc", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_table("sync_checkpoints")
    op.drop_index("uq_attendance_sessions_one_current", table_name="attendance_sessions")
    op.drop_index("ix_attendance_sessions_current", table_name="attendance_sessions")
    op.drop_table("attendance_sessions")
    op.drop_index("ix_raw_punches_employee_time", table_name="raw_punches")
    op.drop_table("raw_punches")
    op.drop_index("ix_employees_employee_code", table_name="employees")
    op.drop_table("employees")
    op.drop_table("shifts")

    bind = op.get_bind()
    for enum_type in reversed(_ENUMS):
        enum_type.drop(bind, checkfirst=True)
