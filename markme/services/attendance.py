from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from markme.errors import NoActiveSessionError, PersistenceError
from markme.models import User
from markme.services.attendance_store import AttendanceSessionSnapshot, AttendanceSessionStore
from markme.services.timezones import TimezoneResolver, get_timezone_resolver
from markme.services.users import get_user, update_user_timezone
from markme.settings import get_default_timezone_name

logger = logging.getLogger("markme.attendance")


def _resolve_effective_timezone(
    resolver: TimezoneResolver,
    *,
    user: User,
    requested_timezone: str | None,
) -> str:
    return resolver.effective_timezone(
        requested_timezone,
        user.timezone,
        default=get_default_timezone_name(),
    )


def _persist_user_timezone(db: Session, *, user_id: int, timezone_name: str) -> None:
    try:
        update_user_timezone(db, user_id, timezone_name)
    except (PersistenceError, SQLAlchemyError):
        logger.warning(
            "user_timezone_persist_failed",
            extra={"user_id": user_id, "timezone": timezone_name},
            exc_info=True,
        )


def sign_in(
    db: Session,
    *,
    user_id: int,
    timezone_name: str | None = None,
    resolver: TimezoneResolver | None = None,
) -> AttendanceSessionSnapshot:
    resolver = resolver or get_timezone_resolver()
    user = get_user(db, user_id)
    stored_timezone = user.timezone
    tz = _resolve_effective_timezone(resolver, user=user, requested_timezone=timezone_name)

    now_utc = resolver.now_utc()
    day_start_utc, _ = resolver.local_day_bounds(tz, now_utc)
    local_date = resolver.local_date(tz, now_utc)

    if stored_timezone != tz:
        _persist_user_timezone(db, user_id=user_id, timezone_name=tz)

    # Signing in while a session is open starts a second session on purpose.
    session = AttendanceSessionStore(db).create_session(
        user_id,
        local_date,
        now_utc,
        timezone_name=tz,
        day_start_utc=day_start_utc,
    )
    logger.info(
        "sign_in_completed",
        extra={
            "user_id": user_id,
            "session_id": session.id,
            "timezone": tz,
            "local_date": local_date.isoformat(),
        },
    )
    return session


def sign_out(
    db: Session,
    *,
    user_id: int,
    timezone_name: str | None = None,
    resolver: TimezoneResolver | None = None,
) -> AttendanceSessionSnapshot:
    resolver = resolver or get_timezone_resolver()
    user = get_user(db, user_id)
    tz = _resolve_effective_timezone(resolver, user=user, requested_timezone=timezone_name)

    now_utc = resolver.now_utc()
    local_date = resolver.local_date(tz, now_utc)

    store = AttendanceSessionStore(db)
    open_session = store.find_latest_open_session(user_id, local_date)
    if open_session is None:
        logger.info(
            "sign_out_rejected_no_active_session",
            extra={"user_id": user_id, "timezone": tz, "local_date": local_date.isoformat()},
        )
        raise NoActiveSessionError()

    closed = store.close_session(open_session.id, now_utc)
    logger.info(
        "sign_out_completed",
        extra={
            "user_id": user_id,
            "session_id": closed.id,
            "timezone": tz,
            "worked_hours": closed.worked_hours,
        },
    )
    return closed


def list_today_sessions(
    db: Session,
    *,
    user_id: int,
    timezone_name: str | None = None,
    resolver: TimezoneResolver | None = None,
) -> list[AttendanceSessionSnapshot]:
    resolver = resolver or get_timezone_resolver()
    user = get_user(db, user_id)
    tz = _resolve_effective_timezone(resolver, user=user, requested_timezone=timezone_name)
    day_start_utc, day_end_utc = resolver.local_day_bounds(tz, resolver.now_utc())
    return AttendanceSessionStore(db).list_sessions_between(user_id, day_start_utc, day_end_utc)


def list_week_sessions(
    db: Session,
    *,
    user_id: int,
    timezone_name: str | None = None,
    resolver: TimezoneResolver | None = None,
) -> list[AttendanceSessionSnapshot]:
    resolver = resolver or get_timezone_resolver()
    user = get_user(db, user_id)
    tz = _resolve_effective_timezone(resolver, user=user, requested_timezone=timezone_name)
    now_utc = resolver.now_utc()
    week_start_utc = resolver.week_start(tz, now_utc)
    _, today_end_utc = resolver.local_day_bounds(tz, now_utc)
    return AttendanceSessionStore(db).list_sessions_between(user_id, week_start_utc, today_end_utc)


def list_user_history(db: Session, *, user_id: int) -> list[AttendanceSessionSnapshot]:
    get_user(db, user_id)
    return AttendanceSessionStore(db).list_user_sessions(user_id)
