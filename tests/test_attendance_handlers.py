from __future__ import annotations

import unittest
from datetime import date, datetime, timedelta, timezone
from unittest.mock import patch

from markme.errors import NoActiveSessionError, PersistenceError
from markme.models import User
from markme.services.attendance import (
    list_today_sessions,
    list_user_history,
    list_week_sessions,
    sign_in,
    sign_out,
)
from markme.services.timezones import TimezoneResolver
from sqlite_support import add_user, make_sqlite_session_factory


class _MutableClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:  # type: ignore[no-untyped-def]
        self.now = self.now + timedelta(**kwargs)


class SignInSignOutTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine, self.session_factory = make_sqlite_session_factory()
        self.db = self.session_factory()
        self.clock = _MutableClock(datetime(2024, 3, 1, 23, 30, tzinfo=timezone.utc))
        self.resolver = TimezoneResolver(now_fn=self.clock)
        self.user = add_user(self.db, name="Bilal Ahmed", email="bilal@example.com")

    def tearDown(self) -> None:
        self.db.close()
        self.engine.dispose()

    def test_sign_in_uses_local_day_of_requested_timezone(self) -> None:
        session = sign_in(self.db, user_id=self.user.id, timezone_name="Asia/Karachi", resolver=self.resolver)

        self.assertEqual(session.local_date, date(2024, 3, 2))
        self.assertEqual(session.day_start_utc, datetime(2024, 3, 1, 19, 0, tzinfo=timezone.utc))
        self.assertEqual(session.timezone, "Asia/Karachi")
        self.assertEqual(session.signed_in_at, self.clock.now)
        self.assertTrue(session.is_open)
        self.assertEqual(self.db.get(User, self.user.id).timezone, "Asia/Karachi")

    def test_sign_out_closes_session_and_computes_hours(self) -> None:
        self.clock.now = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)
        opened = sign_in(self.db, user_id=self.user.id, timezone_name="UTC", resolver=self.resolver)
        self.clock.advance(hours=8, minutes=30)

        closed = sign_out(self.db, user_id=self.user.id, resolver=self.resolver)

        self.assertEqual(closed.id, opened.id)
        self.assertEqual(closed.worked_hours, 8.5)
        self.assertEqual(closed.signed_out_at, datetime(2024, 3, 1, 17, 30, tzinfo=timezone.utc))

    def test_second_sign_in_opens_another_session_and_sign_out_closes_newest(self) -> None:
        self.clock.now = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)
        first = sign_in(self.db, user_id=self.user.id, timezone_name="UTC", resolver=self.resolver)
        self.clock.advance(hours=1)
        second = sign_in(self.db, user_id=self.user.id, timezone_name="UTC", resolver=self.resolver)
        self.assertNotEqual(first.id, second.id)

        self.clock.advance(hours=2)
        closed = sign_out(self.db, user_id=self.user.id, resolver=self.resolver)
        self.assertEqual(closed.id, second.id)
        self.assertEqual(closed.worked_hours, 2.0)

        today = {item.id: item for item in list_today_sessions(self.db, user_id=self.user.id, resolver=self.resolver)}
        self.assertTrue(today[first.id].is_open)
        self.assertFalse(today[second.id].is_open)

    def test_sign_out_without_open_session_raises(self) -> None:
        with self.assertRaises(NoActiveSessionError) as ctx:
            sign_out(self.db, user_id=self.user.id, timezone_name="UTC", resolver=self.resolver)
        self.assertEqual(ctx.exception.status_code, 400)
        self.assertEqual(ctx.exception.message, "No active session to sign out")

    def test_sign_out_after_local_midnight_does_not_close_previous_day(self) -> None:
        self.clock.now = datetime(2024, 3, 1, 18, 0, tzinfo=timezone.utc)
        sign_in(self.db, user_id=self.user.id, timezone_name="Asia/Karachi", resolver=self.resolver)
        self.clock.now = datetime(2024, 3, 1, 19, 30, tzinfo=timezone.utc)

        with self.assertRaises(NoActiveSessionError):
            sign_out(self.db, user_id=self.user.id, resolver=self.resolver)

    def test_invalid_requested_timezone_falls_back_to_stored_timezone(self) -> None:
        self.user.timezone = "Asia/Karachi"
        self.db.commit()

        session = sign_in(self.db, user_id=self.user.id, timezone_name="Mars/Olympus_Mons", resolver=self.resolver)

        self.assertEqual(session.timezone, "Asia/Karachi")
        self.assertEqual(session.local_date, date(2024, 3, 2))
        self.assertEqual(self.db.get(User, self.user.id).timezone, "Asia/Karachi")

    def test_missing_timezone_everywhere_uses_default(self) -> None:
        session = sign_in(self.db, user_id=self.user.id, resolver=self.resolver)
        self.assertEqual(session.timezone, "UTC")
        self.assertEqual(session.local_date, date(2024, 3, 1))

    def test_timezone_persist_failure_does_not_block_sign_in(self) -> None:
        with patch(
            "markme.services.attendance.update_user_timezone",
            side_effect=PersistenceError("update_user_timezone"),
        ):
            with self.assertLogs("markme.attendance", level="WARNING") as logs:
                session = sign_in(
                    self.db,
                    user_id=self.user.id,
                    timezone_name="America/New_York",
                    resolver=self.resolver,
                )

        self.assertEqual(session.timezone, "America/New_York")
        self.assertEqual(session.local_date, date(2024, 3, 1))
        self.assertTrue(any("user_timezone_persist_failed" in line for line in logs.output))

    def test_week_lists_sessions_since_monday(self) -> None:
        self.clock.now = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)
        sign_in(self.db, user_id=self.user.id, timezone_name="UTC", resolver=self.resolver)
        self.clock.now = datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc)
        monday = sign_in(self.db, user_id=self.user.id, timezone_name="UTC", resolver=self.resolver)
        self.clock.now = datetime(2024, 3, 6, 9, 0, tzinfo=timezone.utc)
        wednesday = sign_in(self.db, user_id=self.user.id, timezone_name="UTC", resolver=self.resolver)

        week = list_week_sessions(self.db, user_id=self.user.id, resolver=self.resolver)
        history = list_user_history(self.db, user_id=self.user.id)

        self.assertEqual([item.id for item in week], [wednesday.id, monday.id])
        self.assertEqual(len(history), 3)


if __name__ == "__main__":
    unittest.main()
