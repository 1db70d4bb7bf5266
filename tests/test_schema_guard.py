from __future__ import annotations

import unittest
from unittest.mock import patch

from attendance_engine.services.schema_guard import verify_runtime_schema


class _FakeResult:
    def __init__(self, value):
        self._value = value

    def scalar(self):  # type: ignore[no-untyped-def]
        return self._value


class _FakeConnection:
    def __init__(self, version_value):
        self._version_value = version_value

    def __enter__(self):  # type: ignore[no-untyped-def]
        return self

    def __exit__(self, exc_type, exc, tb):  # type: ignore[no-untyped-def]
        return False

    def execute(self, _statement):  # type: ignore[no-untyped-def]
        return _FakeResult(self._version_value)


class _FakeEngine:
    def __init__(self, version_value):
        self._version_value = version_value

    def connect(self):  # type: ignore[no-untyped-def]
        return _FakeConnection(self._version_value)


class _FakeInspector:
    def __init__(self, *, columns_by_table: dict[str, set[str]], enums: list[dict[str, object]]):
        self._columns_by_table = columns_by_table
        self._enums = enums

    def get_columns(self, table_name: str):  # type: ignore[no-untyped-def]
        columns = self._columns_by_table[table_name]
        return [{"name": item} for item in columns]

    def get_enums(self):  # type: ignore[no-untyped-def]
        return self._enums


class _SqliteInspector:
    def __init__(self, columns_by_table: dict[str, set[str]]):
        self._columns_by_table = columns_by_table

    def get_columns(self, table_name: str):  # type: ignore[no-untyped-def]
        return [{"name": item} for item in self._columns_by_table[table_name]]


FULL_COLUMNS = {
    "raw_punches": {"id", "external_id", "punch_time", "punch_state", "terminal_id"},
    "attendance_sessions": {
        "id",
        "processing_version",
        "is_current",
        "credited_hours",
        "overtime_approval_state",
        "notes",
    },
    "sync_checkpoints": {"id", "feed_name", "current_page", "status"},
    "alembic_version": {"version_num"},
}
FULL_ENUMS = [
    {
        "name": "overtime_approval_state",
        "labels": ["none", "auto_approved", "pending_approval", "approved", "rejected"],
    },
    {"name": "punch_out_source", "labels": ["terminal", "system_auto", "mobile_self", "admin_manual"]},
]


class SchemaGuardTests(unittest.TestCase):
    def test_verify_runtime_schema_ok_when_required_columns_exist(self) -> None:
        fake_inspector = _FakeInspector(columns_by_table=FULL_COLUMNS, enums=FULL_ENUMS)
        fake_engine = _FakeEngine("0001_initial")

        with patch("attendance_engine.services.schema_guard.inspect", return_value=fake_inspector):
            result = verify_runtime_schema(fake_engine)  # type: ignore[arg-type]

        self.assertTrue(result.ok)
        self.assertEqual(result.issues, [])
        self.assertEqual(result.warnings, [])
        self.assertEqual(result.to_dict()["issue_count"], 0)

    def test_verify_runtime_schema_reports_missing_columns(self) -> None:
        fake_inspector = _FakeInspector(
            columns_by_table={
                "raw_punches": {"id", "punch_time", "punch_state"},
                "attendance_sessions": {"id", "credited_hours", "overtime_approval_state"},
                "sync_checkpoints": {"id", "feed_name", "current_page", "status"},
                "alembic_version": {"version_num"},
            },
            enums=[
                {"name": "overtime_approval_state", "labels": ["none", "auto_approved", "approved", "rejected"]},
            ],
        )
        fake_engine = _FakeEngine("")

        with patch("attendance_engine.services.schema_guard.inspect", return_value=fake_inspector):
            result = verify_runtime_schema(fake_engine)  # type: ignore[arg-type]

        self.assertFalse(result.ok)
        self.assertIn("MISSING_COLUMNS:raw_punches:external_id", result.issues)
        self.assertIn("MISSING_COLUMNS:attendance_sessions:is_current,processing_version", result.issues)
        self.assertIn("MISSING_ENUM_VALUES:overtime_approval_state:pending_approval", result.issues)
        self.assertIn("ENUM_NOT_FOUND:punch_out_source", result.warnings)
        self.assertIn("ALEMBIC_VERSION_EMPTY", result.issues)

    def test_dialect_without_enum_inspection_only_warns(self) -> None:
        fake_engine = _FakeEngine("0001_initial")

        with patch(
            "attendance_engine.services.schema_guard.inspect",
            return_value=_SqliteInspector(FULL_COLUMNS),
        ):
            result = verify_runtime_schema(fake_engine)  # type: ignore[arg-type]

        self.assertTrue(result.ok)
        self.assertEqual(result.warnings, ["ENUM_INSPECTION_UNSUPPORTED"])


if __name__ == "__main__":
    unittest.main()
