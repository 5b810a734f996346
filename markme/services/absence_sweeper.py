"""Daily absence sweep.

For every user the sweep looks at one local day (the day containing the
reference instant, in that user's timezone) and records an absence placeholder
when the user never signed in on it. The schedule helpers turn a wall-clock
trigger such as ``00:05`` into concrete UTC instants for the background worker.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from typing import Any

from sqlalchemy.orm import Session

from markme.db import SessionLocal
from markme.services.attendance_store import AttendanceSessionStore
from markme.services.timezones import TimezoneResolver, get_timezone_resolver, normalize_ts, resolve_zone
from markme.services.users import list_users
from markme.settings import get_default_timezone_name, get_settings

logger = logging.getLogger("markme.absence_sweeper")

SWEEP_TARGET_PREVIOUS_DAY = "previous_day"
SWEEP_TARGET_CURRENT_DAY = "current_day"


@dataclass(slots=True)
class AbsenceSweepResult:
    reference_utc: datetime
    users_checked: int = 0
    marked_absent: int = 0
    already_present: int = 0
    already_marked: int = 0
    skipped_no_timezone: int = 0
    failed: int = 0
    marked_user_ids: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "reference_utc": self.reference_utc.isoformat(),
            "users_checked": self.users_checked,
            "marked_absent": self.marked_absent,
            "already_present": self.already_present,
            "already_marked": self.already_marked,
            "skipped_no_timezone": self.skipped_no_timezone,
            "failed": self.failed,
            "marked_user_ids": list(self.marked_user_ids),
        }


def _sweep_user(
    store: AttendanceSessionStore,
    resolver: TimezoneResolver,
    *,
    user_id: int,
    timezone_name: str,
    reference_utc: datetime,
) -> str:
    day_start_utc, day_end_utc = resolver.local_day_bounds(timezone_name, reference_utc)
    if store.has_any_signed_in_session(user_id, day_start_utc, day_end_utc):
        return "present"

    local_date = resolver.local_date(timezone_name, reference_utc)
    placeholder = store.create_absence_placeholder(
        user_id,
        local_date,
        timezone_name=timezone_name,
        day_start_utc=day_start_utc,
    )
    if placeholder is None:
        return "already_marked"
    return "marked"


def run_absence_sweep(
    reference_utc: datetime,
    db: Session | None = None,
    *,
    resolver: TimezoneResolver | None = None,
) -> AbsenceSweepResult:
    if db is None:
        with SessionLocal() as managed_db:
            return run_absence_sweep(reference_utc, db=managed_db, resolver=resolver)

    resolver = resolver or get_timezone_resolver()
    settings = get_settings()
    reference = normalize_ts(reference_utc)
    store = AttendanceSessionStore(db)
    result = AbsenceSweepResult(reference_utc=reference)

    users = [(user.id, user.name, user.timezone) for user in list_users(db)]
    for user_id, user_name, stored_timezone in users:
        result.users_checked += 1
        timezone_name = (stored_timezone or "").strip()
        if not timezone_name:
            if not settings.absence_sweep_use_default_timezone:
                result.skipped_no_timezone += 1
                logger.info(
                    "absence_sweep_user_skipped",
                    extra={"user_id": user_id, "user_name": user_name, "reason": "NO_TIMEZONE"},
                )
                continue
            timezone_name = get_default_timezone_name()

        try:
            outcome = _sweep_user(
                store,
                resolver,
                user_id=user_id,
                timezone_name=timezone_name,
                reference_utc=reference,
            )
        except Exception:
            db.rollback()
            result.failed += 1
            logger.exception(
                "absence_sweep_user_failed",
                extra={"user_id": user_id, "user_name": user_name, "timezone": timezone_name},
            )
            continue

        if outcome == "marked":
            result.marked_absent += 1
            result.marked_user_ids.append(user_id)
            logger.info(
                "absence_marked",
                extra={"user_id": user_id, "user_name": user_name, "timezone": timezone_name},
            )
        elif outcome == "already_marked":
            result.already_marked += 1
        else:
            result.already_present += 1

    logger.info("absence_sweep_completed", extra=result.to_dict())
    return result


def _parse_hhmm(value: str) -> time:
    hour_str, minute_str = value.strip().split(":")
    hour = int(hour_str)
    minute = int(minute_str)
    if hour < 0 or hour > 23 or minute < 0 or minute > 59:
        raise ValueError(f"Invalid HH:MM value: {value!r}")
    return time(hour=hour, minute=minute)


def next_absence_sweep_run_utc(now_utc: datetime, run_at_local: str, schedule_timezone: str) -> datetime:
    tz = resolve_zone(schedule_timezone)
    run_at = _parse_hhmm(run_at_local)
    local_now = normalize_ts(now_utc).astimezone(tz)
    candidate = datetime.combine(local_now.date(), run_at, tzinfo=tz)
    if candidate <= local_now:
        candidate = datetime.combine(local_now.date() + timedelta(days=1), run_at, tzinfo=tz)
    return candidate.astimezone(timezone.utc)


def absence_sweep_reference_utc(run_utc: datetime, target: str = SWEEP_TARGET_PREVIOUS_DAY) -> datetime:
    run = normalize_ts(run_utc)
    if target == SWEEP_TARGET_CURRENT_DAY:
        return run
    if target == SWEEP_TARGET_PREVIOUS_DAY:
        return run - timedelta(days=1)
    raise ValueError(f"Unknown absence sweep target: {target!r}")
