from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import Any, Literal

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from markme.errors import NotFoundError, PersistenceError, SignOutBeforeSignInError
from markme.models import AttendanceSession, User
from markme.services.attendance_store import (
    AttendanceSessionSnapshot,
    AttendanceSessionStore,
    worked_hours_between,
)
from markme.services.timezones import TimezoneResolver, get_timezone_resolver, normalize_ts
from markme.services.users import get_user
from markme.settings import get_default_timezone_name

logger = logging.getLogger("markme.admin_attendance")

AttendanceRange = Literal["today", "week", "month"]
MarkAction = Literal["signin", "signout"]

_RANGE_LOOKBACK_DAYS: dict[str, int] = {
    "today": 0,
    "week": 7,
    "month": 30,
}


def _get_session_row(db: Session, session_id: int) -> AttendanceSession:
    row = db.get(AttendanceSession, session_id)
    if row is None:
        raise NotFoundError("SESSION_NOT_FOUND", "Attendance session not found.")
    return row


def _commit(db: Session, *, operation: str) -> None:
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("admin_attendance_write_failed", extra={"operation": operation})
        raise PersistenceError(operation) from exc


def list_attendance(
    db: Session,
    *,
    name: str | None = None,
    on_date: date | None = None,
    range_key: AttendanceRange | None = None,
    user_id: int | None = None,
    resolver: TimezoneResolver | None = None,
) -> list[AttendanceSession]:
    resolver = resolver or get_timezone_resolver()
    stmt = select(AttendanceSession).options(selectinload(AttendanceSession.user))

    if user_id is not None:
        stmt = stmt.where(AttendanceSession.user_id == user_id)

    if name and name.strip():
        pattern = f"%{name.strip()}%"
        stmt = stmt.join(User, User.id == AttendanceSession.user_id).where(User.name.ilike(pattern))

    if on_date is not None:
        stmt = stmt.where(AttendanceSession.local_date == on_date)
    elif range_key is not None:
        tz = get_default_timezone_name()
        now_utc = resolver.now_utc()
        _, today_end = resolver.local_day_bounds(tz, now_utc)
        range_start = resolver.day_start_for_date(
            tz,
            resolver.local_date(tz, now_utc) - timedelta(days=_RANGE_LOOKBACK_DAYS[range_key]),
        )
        stmt = stmt.where(
            AttendanceSession.day_start_utc >= range_start,
            AttendanceSession.day_start_utc < today_end,
        )

    stmt = stmt.order_by(AttendanceSession.day_start_utc.desc(), AttendanceSession.id.desc())
    stmt = stmt.execution_options(populate_existing=True)
    return list(db.scalars(stmt).all())


def _apply_session_times(
    row: AttendanceSession,
    *,
    signed_in_at: datetime | None,
    signed_out_at: datetime | None,
    resolver: TimezoneResolver,
) -> None:
    signed_in = normalize_ts(signed_in_at) if signed_in_at is not None else None
    signed_out = normalize_ts(signed_out_at) if signed_out_at is not None else None
    if signed_in is not None and signed_out is not None and signed_out < signed_in:
        raise SignOutBeforeSignInError(row.id)

    if signed_in is not None:
        day_start_utc, _ = resolver.local_day_bounds(row.timezone, signed_in)
        row.local_date = resolver.local_date(row.timezone, signed_in)
        row.day_start_utc = day_start_utc
        row.is_absence = False

    row.signed_in_at = signed_in
    row.signed_out_at = signed_out
    if signed_in is not None and signed_out is not None:
        row.worked_hours = worked_hours_between(signed_in, signed_out)
    elif row.is_absence:
        row.worked_hours = 0.0
    else:
        row.worked_hours = None


def update_session(
    db: Session,
    session_id: int,
    *,
    changes: dict[str, Any],
    resolver: TimezoneResolver | None = None,
) -> AttendanceSessionSnapshot:
    """Administrative override of a session's instants.

    ``changes`` holds only the fields the admin actually sent, so an explicit
    ``None`` clears a value while an absent key keeps it.
    """
    resolver = resolver or get_timezone_resolver()
    row = _get_session_row(db, session_id)
    before = AttendanceSessionSnapshot.from_row(row)

    signed_in_at = changes.get("signed_in_at", before.signed_in_at)
    signed_out_at = changes.get("signed_out_at", before.signed_out_at)
    _apply_session_times(row, signed_in_at=signed_in_at, signed_out_at=signed_out_at, resolver=resolver)

    _commit(db, operation="update_session")
    return AttendanceSessionSnapshot.from_row(row)


def delete_session(db: Session, session_id: int) -> AttendanceSessionSnapshot:
    row = _get_session_row(db, session_id)
    snapshot = AttendanceSessionSnapshot.from_row(row)
    db.delete(row)
    _commit(db, operation="delete_session")
    return snapshot


def mark_attendance(
    db: Session,
    *,
    user_id: int,
    action: MarkAction,
    at: datetime,
    resolver: TimezoneResolver | None = None,
) -> AttendanceSessionSnapshot:
    """Record a sign-in or sign-out on a user's behalf.

    A session of the same local day missing the chosen side is completed;
    otherwise a new session is created.
    """
    resolver = resolver or get_timezone_resolver()
    user = get_user(db, user_id)
    tz = resolver.effective_timezone(user.timezone, default=get_default_timezone_name())
    instant = normalize_ts(at)
    local_date = resolver.local_date(tz, instant)
    day_start_utc, _ = resolver.local_day_bounds(tz, instant)
    store = AttendanceSessionStore(db)

    if action == "signout":
        open_session = store.find_latest_open_session(user_id, local_date)
        if open_session is not None:
            return store.close_session(open_session.id, instant)
        row = AttendanceSession(
            user_id=user_id,
            local_date=local_date,
            day_start_utc=day_start_utc,
            timezone=tz,
            signed_in_at=None,
            signed_out_at=instant,
            worked_hours=None,
            is_absence=False,
        )
        db.add(row)
        _commit(db, operation="mark_attendance")
        return AttendanceSessionSnapshot.from_row(row)

    missing_sign_in = db.scalar(
        select(AttendanceSession)
        .where(
            AttendanceSession.user_id == user_id,
            AttendanceSession.local_date == local_date,
            AttendanceSession.signed_in_at.is_(None),
        )
        .order_by(AttendanceSession.id.desc())
        .limit(1)
    )
    if missing_sign_in is None:
        return store.create_session(
            user_id,
            local_date,
            instant,
            timezone_name=tz,
            day_start_utc=day_start_utc,
        )

    _apply_session_times(
        missing_sign_in,
        signed_in_at=instant,
        signed_out_at=missing_sign_in.signed_out_at,
        resolver=resolver,
    )
    _commit(db, operation="mark_attendance")
    return AttendanceSessionSnapshot.from_row(missing_sign_in)
