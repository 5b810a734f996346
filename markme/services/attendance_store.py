from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import date, datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from markme.errors import (
    NotFoundError,
    PersistenceError,
    SessionAlreadyClosedError,
    SignOutBeforeSignInError,
)
from markme.models import AttendanceSession
from markme.services.timezones import normalize_ts

logger = logging.getLogger("markme.attendance_store")

SECONDS_PER_HOUR = 3600.0


@dataclass(frozen=True, slots=True)
class AttendanceSessionSnapshot:
    id: int
    user_id: int
    local_date: date
    day_start_utc: datetime
    timezone: str
    signed_in_at: datetime | None
    signed_out_at: datetime | None
    worked_hours: float | None
    is_absence: bool

    @property
    def is_open(self) -> bool:
        return self.signed_in_at is not None and self.signed_out_at is None

    @classmethod
    def from_row(cls, row: AttendanceSession) -> AttendanceSessionSnapshot:
        return cls(
            id=row.id,
            user_id=row.user_id,
            local_date=row.local_date,
            day_start_utc=normalize_ts(row.day_start_utc),
            timezone=row.timezone,
            signed_in_at=normalize_ts(row.signed_in_at) if row.signed_in_at is not None else None,
            signed_out_at=normalize_ts(row.signed_out_at) if row.signed_out_at is not None else None,
            worked_hours=row.worked_hours,
            is_absence=bool(row.is_absence),
        )


def worked_hours_between(signed_in_at: datetime, signed_out_at: datetime) -> float:
    return (normalize_ts(signed_out_at) - normalize_ts(signed_in_at)).total_seconds() / SECONDS_PER_HOUR


class AttendanceSessionStore:
    def __init__(self, db: Session) -> None:
        self._db = db

    def _commit(self, *, operation: str, user_id: int | None = None, session_id: int | None = None) -> None:
        try:
            self._db.commit()
        except SQLAlchemyError as exc:
            self._db.rollback()
            logger.exception(
                "attendance_store_write_failed",
                extra={"operation": operation, "user_id": user_id, "session_id": session_id},
            )
            raise PersistenceError(operation) from exc

    def create_session(
        self,
        user_id: int,
        local_date: date,
        signed_in_at: datetime,
        *,
        timezone_name: str,
        day_start_utc: datetime,
    ) -> AttendanceSessionSnapshot:
        row = AttendanceSession(
            user_id=user_id,
            local_date=local_date,
            day_start_utc=normalize_ts(day_start_utc),
            timezone=timezone_name,
            signed_in_at=normalize_ts(signed_in_at),
            signed_out_at=None,
            worked_hours=None,
            is_absence=False,
        )
        self._db.add(row)
        self._commit(operation="create_session", user_id=user_id)
        return AttendanceSessionSnapshot.from_row(row)

    def find_latest_open_session(self, user_id: int, local_date: date) -> AttendanceSessionSnapshot | None:
        try:
            row = self._db.scalar(
                select(AttendanceSession)
                .where(
                    AttendanceSession.user_id == user_id,
                    AttendanceSession.local_date == local_date,
                    AttendanceSession.is_absence.is_(False),
                    AttendanceSession.signed_in_at.is_not(None),
                    AttendanceSession.signed_out_at.is_(None),
                )
                .order_by(AttendanceSession.signed_in_at.desc(), AttendanceSession.id.desc())
                .limit(1)
                .execution_options(populate_existing=True)
            )
        except SQLAlchemyError as exc:
            logger.exception("attendance_store_read_failed", extra={"operation": "find_latest_open_session"})
            raise PersistenceError("find_latest_open_session") from exc
        if row is None:
            return None
        return AttendanceSessionSnapshot.from_row(row)

    def get_session(self, session_id: int) -> AttendanceSessionSnapshot | None:
        row = self._db.get(AttendanceSession, session_id, populate_existing=True)
        if row is None:
            return None
        return AttendanceSessionSnapshot.from_row(row)

    def close_session(self, session_id: int, signed_out_at: datetime) -> AttendanceSessionSnapshot:
        signed_out = normalize_ts(signed_out_at)
        current = self.get_session(session_id)
        if current is None:
            raise NotFoundError("SESSION_NOT_FOUND", "Attendance session not found.")
        if current.signed_out_at is not None:
            raise SessionAlreadyClosedError(session_id)

        worked_hours = current.worked_hours
        if current.signed_in_at is not None:
            if signed_out < current.signed_in_at:
                raise SignOutBeforeSignInError(session_id)
            worked_hours = worked_hours_between(current.signed_in_at, signed_out)

        # Compare-and-set: only an open row may be closed.
        try:
            result = self._db.execute(
                update(AttendanceSession)
                .where(
                    AttendanceSession.id == session_id,
                    AttendanceSession.signed_out_at.is_(None),
                )
                .values(
                    signed_out_at=signed_out,
                    worked_hours=worked_hours,
                    updated_at=datetime.now(timezone.utc),
                )
                .execution_options(synchronize_session=False)
            )
        except SQLAlchemyError as exc:
            self._db.rollback()
            logger.exception(
                "attendance_store_write_failed",
                extra={"operation": "close_session", "session_id": session_id},
            )
            raise PersistenceError("close_session") from exc

        if result.rowcount == 0:
            self._db.rollback()
            raise SessionAlreadyClosedError(session_id)

        self._commit(operation="close_session", user_id=current.user_id, session_id=session_id)
        return replace(current, signed_out_at=signed_out, worked_hours=worked_hours)

    def has_any_signed_in_session(self, user_id: int, day_start: datetime, day_end: datetime) -> bool:
        session_id = self._db.scalar(
            select(AttendanceSession.id)
            .where(
                AttendanceSession.user_id == user_id,
                AttendanceSession.day_start_utc >= normalize_ts(day_start),
                AttendanceSession.day_start_utc < normalize_ts(day_end),
                AttendanceSession.signed_in_at.is_not(None),
            )
            .limit(1)
        )
        return session_id is not None

    def create_absence_placeholder(
        self,
        user_id: int,
        local_date: date,
        *,
        timezone_name: str,
        day_start_utc: datetime,
    ) -> AttendanceSessionSnapshot | None:
        row = AttendanceSession(
            user_id=user_id,
            local_date=local_date,
            day_start_utc=normalize_ts(day_start_utc),
            timezone=timezone_name,
            signed_in_at=None,
            signed_out_at=None,
            worked_hours=0.0,
            is_absence=True,
        )
        self._db.add(row)
        try:
            self._db.commit()
        except IntegrityError:
            self._db.rollback()
            logger.info(
                "absence_placeholder_exists",
                extra={"user_id": user_id, "local_date": local_date.isoformat()},
            )
            return None
        except SQLAlchemyError as exc:
            self._db.rollback()
            logger.exception(
                "attendance_store_write_failed",
                extra={"operation": "create_absence_placeholder", "user_id": user_id},
            )
            raise PersistenceError("create_absence_placeholder") from exc
        return AttendanceSessionSnapshot.from_row(row)

    def list_sessions_between(
        self,
        user_id: int,
        start: datetime,
        end: datetime | None = None,
    ) -> list[AttendanceSessionSnapshot]:
        stmt = select(AttendanceSession).where(
            AttendanceSession.user_id == user_id,
            AttendanceSession.day_start_utc >= normalize_ts(start),
        )
        if end is not None:
            stmt = stmt.where(AttendanceSession.day_start_utc < normalize_ts(end))
        stmt = stmt.order_by(AttendanceSession.day_start_utc.desc(), AttendanceSession.id.desc())
        stmt = stmt.execution_options(populate_existing=True)
        return [AttendanceSessionSnapshot.from_row(row) for row in self._db.scalars(stmt).all()]

    def list_user_sessions(self, user_id: int) -> list[AttendanceSessionSnapshot]:
        rows = self._db.scalars(
            select(AttendanceSession)
            .where(AttendanceSession.user_id == user_id)
            .order_by(AttendanceSession.day_start_utc.desc(), AttendanceSession.id.desc())
            .execution_options(populate_existing=True)
        ).all()
        return [AttendanceSessionSnapshot.from_row(row) for row in rows]
