"""Local-day arithmetic for attendance accounting.

Every attendance "day" is a calendar day measured in the user's own timezone,
never the server's. All instants handed out by this module are UTC-aware.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import date, datetime, time, timedelta, timezone
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from markme.errors import InvalidTimezoneError
from markme.settings import get_default_timezone_name

logger = logging.getLogger("markme.timezones")

LOCAL_DISPLAY_FORMAT = "%Y-%m-%d %H:%M:%S"


def normalize_ts(ts_utc: datetime | None) -> datetime:
    if ts_utc is None:
        return datetime.now(timezone.utc)

    if ts_utc.tzinfo is None:
        return ts_utc.replace(tzinfo=timezone.utc)

    return ts_utc.astimezone(timezone.utc)


@lru_cache(maxsize=256)
def _load_zone(name: str) -> ZoneInfo:
    return ZoneInfo(name)


def resolve_zone(name: str | None) -> ZoneInfo:
    normalized = (name or "").strip() if isinstance(name, str) else ""
    if not normalized:
        raise InvalidTimezoneError(name)
    try:
        return _load_zone(normalized)
    except (ZoneInfoNotFoundError, ValueError, OSError) as exc:
        raise InvalidTimezoneError(name) from exc


def is_valid_timezone(name: str | None) -> bool:
    try:
        resolve_zone(name)
    except InvalidTimezoneError:
        return False
    return True


def format_local(instant: datetime | None, timezone_name: str) -> str | None:
    if instant is None:
        return None
    return normalize_ts(instant).astimezone(resolve_zone(timezone_name)).strftime(LOCAL_DISPLAY_FORMAT)


class TimezoneResolver:
    """Clock plus timezone math. Pass ``now_fn`` to pin "now" in tests."""

    def __init__(self, now_fn: Callable[[], datetime] | None = None) -> None:
        self._now_fn = now_fn or (lambda: datetime.now(timezone.utc))

    def now_utc(self) -> datetime:
        return normalize_ts(self._now_fn())

    def now_in_zone(self, timezone_name: str) -> datetime:
        return self.now_utc().astimezone(resolve_zone(timezone_name))

    def local_date(self, timezone_name: str, instant: datetime) -> date:
        return normalize_ts(instant).astimezone(resolve_zone(timezone_name)).date()

    def local_day_bounds(self, timezone_name: str, instant: datetime) -> tuple[datetime, datetime]:
        """Return ``[start, end)`` of the local day containing ``instant``, in UTC."""
        tz = resolve_zone(timezone_name)
        local_day = normalize_ts(instant).astimezone(tz).date()
        local_start = datetime.combine(local_day, time.min, tzinfo=tz)
        local_end = datetime.combine(local_day + timedelta(days=1), time.min, tzinfo=tz)
        return local_start.astimezone(timezone.utc), local_end.astimezone(timezone.utc)

    def day_start_for_date(self, timezone_name: str, local_day: date) -> datetime:
        tz = resolve_zone(timezone_name)
        return datetime.combine(local_day, time.min, tzinfo=tz).astimezone(timezone.utc)

    def week_start(self, timezone_name: str, instant: datetime) -> datetime:
        # Weeks start on Monday.
        local_day = self.local_date(timezone_name, instant)
        monday = local_day - timedelta(days=local_day.weekday())
        return self.day_start_for_date(timezone_name, monday)

    def format_local(self, instant: datetime | None, timezone_name: str) -> str | None:
        return format_local(instant, timezone_name)

    def effective_timezone(self, *candidates: str | None, default: str | None = None) -> str:
        for candidate in candidates:
            if candidate is None or not str(candidate).strip():
                continue
            if is_valid_timezone(candidate):
                return str(candidate).strip()
            logger.warning("timezone_candidate_rejected", extra={"timezone": candidate})

        fallback = default or get_default_timezone_name()
        resolve_zone(fallback)
        return fallback


_default_resolver = TimezoneResolver()


def get_timezone_resolver() -> TimezoneResolver:
    return _default_resolver
