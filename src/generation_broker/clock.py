"""Day bucketing shared by token pools, allocations and jobs."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, date, datetime, tzinfo
from zoneinfo import ZoneInfo

from generation_broker.storage.common import utc_now


def resolve_timezone(name: str) -> tzinfo:
    """Resolve a timezone name, accepting ``UTC`` without tzdata."""

    if name.strip().upper() in {"", "UTC", "Z"}:
        return UTC
    return ZoneInfo(name)


def day_key_for(moment: datetime, tz: tzinfo = UTC) -> str:
    """Return the ISO calendar date of ``moment`` in ``tz``.

    Naive datetimes are treated as UTC so keys never depend on host settings.
    """

    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.astimezone(tz).date().isoformat()


def parse_day_key(value: str) -> date:
    """Validate a day key and return the date it names."""

    try:
        return date.fromisoformat(value)
    except ValueError as error:
        raise ValueError(f"Invalid day key {value!r}, expected YYYY-MM-DD.") from error


class DayClock:
    """Wall clock with a fixed day-boundary timezone."""

    def __init__(
        self,
        *,
        timezone_name: str = "UTC",
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self.timezone_name = timezone_name
        self.tz = resolve_timezone(timezone_name)
        self._now = now

    def now(self) -> datetime:
        return self._now()

    def day_key(self, moment: datetime | None = None) -> str:
        return day_key_for(moment if moment is not None else self._now(), self.tz)
