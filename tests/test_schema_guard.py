from __future__ import annotations

import unittest
from unittest.mock import patch

from sqlalchemy import text

from markme.services.schema_guard import verify_runtime_schema
from sqlite_support import make_sqlite_session_factory

FULL_COLUMNS: dict[str, set[str]] = {
    "users": {"id", "email", "role", "timezone"},
    "attendance_sessions": {
        "id",
        "user_id",
        "local_date",
        "day_start_utc",
        "timezone",
        "signed_in_at",
        "signed_out_at",
        "worked_hours",
        "is_absence",
    },
    "audit_logs": {"id", "action", "details"},
    "alembic_version": {"version_num"},
}


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
    def __init__(
        self,
        *,
        columns_by_table: dict[str, set[str]],
        unique_indexes: list[str],
        enums: list[dict[str, object]],
    ):
        self._columns_by_table = columns_by_table
        self._unique_indexes = unique_indexes
        self._enums = enums

    def get_columns(self, table_name: str):  # type: ignore[no-untyped-def]
        columns = self._columns_by_table[table_name]
        return [{"name": item} for item in columns]

    def get_indexes(self, _table_name: str):  # type: ignore[no-untyped-def]
        return [{"name": name, "unique": True} for name in self._unique_indexes]

    def get_enums(self):  # type: ignore[no-untyped-def]
        return self._enums


class SchemaGuardTests(unittest.TestCase):
    def test_verify_runtime_schema_ok_when_required_objects_exist(self) -> None:
        fake_inspector = _FakeInspector(
            columns_by_table=FULL_COLUMNS,
            unique_indexes=["uq_attendance_sessions_absence_day"],
            enums=[{"name": "user_role", "labels": ["ADMIN", "STAFF"]}],
        )

        with patch("markme.services.schema_guard.inspect", return_value=fake_inspector):
            result = verify_runtime_schema(_FakeEngine("0001_initial"))  # type: ignore[arg-type]

        self.assertTrue(result.ok)
        self.assertEqual(result.issues, [])
        self.assertEqual(result.warnings, [])

    def test_verify_runtime_schema_reports_missing_objects(self) -> None:
        columns = {name: set(values) for name, values in FULL_COLUMNS.items()}
        columns["attendance_sessions"] -= {"day_start_utc", "is_absence"}
        fake_inspector = _FakeInspector(
            columns_by_table=columns,
            unique_indexes=[],
            enums=[{"name": "user_role", "labels": ["STAFF"]}],
        )

        with patch("markme.services.schema_guard.inspect", return_value=fake_inspector):
            result = verify_runtime_schema(_FakeEngine(""))  # type: ignore[arg-type]

        self.assertFalse(result.ok)
        self.assertIn("MISSING_COLUMNS:attendance_sessions:day_start_utc,is_absence", result.issues)
        self.assertIn("MISSING_UNIQUE_INDEXES:attendance_sessions:uq_attendance_sessions_absence_day", result.issues)
        self.assertIn("MISSING_ENUM_VALUES:user_role:ADMIN", result.issues)
        self.assertIn("ALEMBIC_VERSION_EMPTY", result.issues)

    def test_metadata_schema_passes_on_sqlite_with_version_row(self) -> None:
        engine, _ = make_sqlite_session_factory()
        with engine.begin() as connection:
            connection.execute(text("CREATE TABLE alembic_version (version_num VARCHAR(32) NOT NULL)"))
            connection.execute(text("INSERT INTO alembic_version (version_num) VALUES ('0001_initial')"))

        result = verify_runtime_schema(engine)
        engine.dispose()

        self.assertTrue(result.ok, result.issues)
        self.assertIn("ENUM_NOT_FOUND:user_role", result.warnings)


if __name__ == "__main__":
    unittest.main()
