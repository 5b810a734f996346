from __future__ import annotations

import os
import unittest
from collections.abc import Generator
from datetime import datetime, timezone
from unittest.mock import patch

from fastapi.testclient import TestClient

from markme.db import get_db
from markme.main import app
from markme.models import User, UserRole
from markme.security import create_access_token, hash_password, require_admin
from markme.services.timezones import TimezoneResolver, get_timezone_resolver
from markme.settings import get_settings
from sqlite_support import add_user, make_sqlite_session_factory


def _override_get_db(session_factory):  # type: ignore[no-untyped-def]
    def _override() -> Generator[object, None, None]:
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    return _override


class AdminEndpointTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine, self.session_factory = make_sqlite_session_factory()
        with self.session_factory() as db:
            self.staff_id = add_user(db, name="Hina Raza", email="hina@example.com").id

        resolver = TimezoneResolver(now_fn=lambda: datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc))
        app.dependency_overrides[get_db] = _override_get_db(self.session_factory)
        app.dependency_overrides[require_admin] = lambda: {"sub": "admin", "role": "admin", "email": "admin@example.com"}
        app.dependency_overrides[get_timezone_resolver] = lambda: resolver
        self.client = TestClient(app)

    def tearDown(self) -> None:
        app.dependency_overrides.clear()
        self.engine.dispose()
        get_settings.cache_clear()

    def _mark(self, action: str, at: str):  # type: ignore[no-untyped-def]
        return self.client.post(
            "/api/admin/attendance/mark",
            json={"user_id": self.staff_id, "action": action, "at": at},
        )

    def test_create_list_and_delete_user(self) -> None:
        created = self.client.post(
            "/api/admin/users",
            json={
                "name": "Imran Ali",
                "email": "Imran@Example.com",
                "password": "secret123",
                "timezone": "Asia/Karachi",
            },
        )
        self.assertEqual(created.status_code, 201)
        body = created.json()
        self.assertEqual(body["email"], "imran@example.com")
        self.assertEqual(body["role"], "STAFF")
        self.assertEqual(body["working_hours"], "09:00")
        self.assertNotIn("password_hash", body)

        duplicate = self.client.post(
            "/api/admin/users",
            json={"name": "Imran Again", "email": "imran@example.com", "password": "secret123"},
        )
        self.assertEqual(duplicate.status_code, 409)
        self.assertEqual(duplicate.json()["error"]["code"], "EMAIL_ALREADY_EXISTS")

        listed = self.client.get("/api/admin/users")
        self.assertEqual([item["email"] for item in listed.json()], ["hina@example.com", "imran@example.com"])

        deleted = self.client.delete(f"/api/admin/users/{body['id']}")
        self.assertEqual(deleted.json(), {"ok": True, "id": body["id"]})
        self.assertEqual(self.client.delete(f"/api/admin/users/{body['id']}").status_code, 404)

    def test_update_user_rejects_unknown_timezone(self) -> None:
        response = self.client.patch(f"/api/admin/users/{self.staff_id}", json={"timezone": "Nowhere/Land"})
        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.json()["error"]["code"], "INVALID_TIMEZONE")

    def test_working_hours_must_be_hh_mm(self) -> None:
        ok = self.client.put(f"/api/admin/users/{self.staff_id}/working-hours", json={"working_hours": "08:30"})
        self.assertEqual(ok.status_code, 200)
        self.assertEqual(ok.json()["working_hours"], "08:30")

        bad = self.client.put(f"/api/admin/users/{self.staff_id}/working-hours", json={"working_hours": "25:99"})
        self.assertEqual(bad.status_code, 422)
        self.assertEqual(bad.json()["error"]["code"], "INVALID_WORKING_HOURS")

    def test_mark_sign_in_and_sign_out_then_list(self) -> None:
        signed_in = self._mark("signin", "2024-03-01T09:00:00Z")
        self.assertEqual(signed_in.status_code, 200)
        session_id = signed_in.json()["id"]

        signed_out = self._mark("signout", "2024-03-01T17:00:00Z")
        self.assertEqual(signed_out.status_code, 200)
        self.assertEqual(signed_out.json()["id"], session_id)
        self.assertEqual(signed_out.json()["worked_hours"], 8.0)

        listed = self.client.get("/api/admin/attendance", params={"range": "today", "name": "hina"})
        self.assertEqual(listed.status_code, 200)
        rows = listed.json()
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]["user_name"], "Hina Raza")
        self.assertEqual(rows[0]["user_email"], "hina@example.com")

        by_date = self.client.get("/api/admin/attendance", params={"date": "2024-02-29"})
        self.assertEqual(by_date.json(), [])

        per_user = self.client.get(f"/api/admin/users/{self.staff_id}/attendance")
        self.assertEqual([item["id"] for item in per_user.json()], [session_id])

    def test_edit_session_recomputes_hours_and_rejects_inverted_times(self) -> None:
        session_id = self._mark("signin", "2024-03-01T09:00:00Z").json()["id"]
        self._mark("signout", "2024-03-01T17:00:00Z")

        edited = self.client.patch(
            f"/api/admin/attendance/{session_id}",
            json={"signed_in_at": "2024-03-01T08:00:00Z"},
        )
        self.assertEqual(edited.status_code, 200)
        self.assertEqual(edited.json()["worked_hours"], 9.0)

        inverted = self.client.patch(
            f"/api/admin/attendance/{session_id}",
            json={"signed_out_at": "2024-03-01T07:00:00Z"},
        )
        self.assertEqual(inverted.status_code, 409)
        self.assertEqual(inverted.json()["error"]["code"], "SIGN_OUT_BEFORE_SIGN_IN")

        removed = self.client.delete(f"/api/admin/attendance/{session_id}")
        self.assertEqual(removed.json(), {"ok": True, "id": session_id})
        missing = self.client.patch(f"/api/admin/attendance/{session_id}", json={})
        self.assertEqual(missing.status_code, 404)

    def test_mark_sign_out_without_open_session_creates_partial_row(self) -> None:
        response = self._mark("signout", "2024-03-01T17:00:00Z")

        self.assertEqual(response.status_code, 200)
        self.assertIsNone(response.json()["signed_in_at"])
        self.assertIsNone(response.json()["worked_hours"])

        completed = self._mark("signin", "2024-03-01T09:00:00Z")
        self.assertEqual(completed.json()["id"], response.json()["id"])
        self.assertEqual(completed.json()["worked_hours"], 8.0)

    def test_manual_absence_sweep_and_audit_trail(self) -> None:
        with self.session_factory() as db:
            add_user(db, name="Tariq Aziz", email="tariq@example.com", timezone_name="UTC")
            db.get(User, self.staff_id).timezone = "UTC"
            db.commit()

        response = self.client.post(
            "/api/admin/absence-sweep/run",
            json={"reference_utc": "2024-02-29T12:00:00Z"},
        )
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["users_checked"], 2)
        self.assertEqual(body["marked_absent"], 2)

        again = self.client.post(
            "/api/admin/absence-sweep/run",
            json={"reference_utc": "2024-02-29T18:00:00Z"},
        )
        self.assertEqual(again.json()["marked_absent"], 0)
        self.assertEqual(again.json()["already_marked"], 2)

        audit = self.client.get("/api/admin/audit-logs", params={"action": "ABSENCE_SWEEP_RUN"})
        self.assertEqual(audit.status_code, 200)
        self.assertEqual(len(audit.json()), 2)


class AdminAuthTests(unittest.TestCase):
    def setUp(self) -> None:
        get_settings.cache_clear()
        self.engine, self.session_factory = make_sqlite_session_factory()
        with self.session_factory() as db:
            admin = add_user(db, name="Db Admin", email="dbadmin@example.com", role=UserRole.ADMIN)
            admin.password_hash = hash_password("admin-pass")
            add_user(db, name="Staff", email="staff@example.com")
            db.commit()
        app.dependency_overrides[get_db] = _override_get_db(self.session_factory)
        self.client = TestClient(app)
        self.env = patch.dict(
            os.environ,
            {
                "JWT_SECRET": "test-secret",
                "ADMIN_EMAIL": "root@example.com",
                "ADMIN_PASS_HASH": hash_password("root-pass"),
            },
            clear=False,
        )
        self.env.start()
        get_settings.cache_clear()

    def tearDown(self) -> None:
        self.env.stop()
        app.dependency_overrides.clear()
        self.engine.dispose()
        get_settings.cache_clear()

    def test_env_admin_login_grants_admin_access(self) -> None:
        response = self.client.post(
            "/api/admin/auth/login",
            json={"email": "root@example.com", "password": "root-pass"},
        )
        self.assertEqual(response.status_code, 200)
        token = response.json()["access_token"]

        users = self.client.get("/api/admin/users", headers={"Authorization": f"Bearer {token}"})
        self.assertEqual(users.status_code, 200)
        self.assertEqual(len(users.json()), 2)

    def test_database_admin_can_log_in(self) -> None:
        response = self.client.post(
            "/api/admin/auth/login",
            json={"email": "dbadmin@example.com", "password": "admin-pass"},
        )
        self.assertEqual(response.status_code, 200)

    def test_staff_credentials_cannot_log_in_as_admin(self) -> None:
        response = self.client.post(
            "/api/admin/auth/login",
            json={"email": "staff@example.com", "password": "not-a-real-hash"},
        )
        self.assertEqual(response.status_code, 401)

    def test_staff_token_is_forbidden_on_admin_routes(self) -> None:
        token, _, _ = create_access_token(sub="2", role="staff")
        response = self.client.get("/api/admin/users", headers={"Authorization": f"Bearer {token}"})
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["error"]["code"], "FORBIDDEN")

    def test_admin_route_without_token_is_unauthorized(self) -> None:
        response = self.client.get("/api/admin/users")
        self.assertEqual(response.status_code, 401)


if __name__ == "__main__":
    unittest.main()
