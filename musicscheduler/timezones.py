"""Conversion between stored instants and a church's local wall-clock time.

Instants are stored as naive UTC datetimes. Offsets are minutes *east* of
UTC (UTC-6 is ``-360``) as they stand at the moment of conversion. There is
no DST table: a church that observes DST sends the offset that applies to
the wall-clock time being converted, and round trips are exact for any
fixed offset.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta
from typing import NamedTuple

from .errors import InvalidTimeInput

MIN_OFFSET_MINUTES = -12 * 60
MAX_OFFSET_MINUTES = 14 * 60


class LocalWallClock(NamedTuple):
    date: date
    time: time

    @property
    def date_str(self) -> str:
        return self.date.isoformat()

    @property
    def time_str(self) -> str:
        if self.time.second or self.time.microsecond:
            return self.time.isoformat()
        return self.time.strftime("%H:%M")


def validate_offset(offset_minutes: int | str | None) -> int:
    if offset_minutes is None or isinstance(offset_minutes, bool):
        raise InvalidTimeInput("Timezone offset is required", field="timezone_offset_minutes")
    try:
        offset = int(offset_minutes)
    except (TypeError, ValueError) as exc:
        raise InvalidTimeInput(
            f"Invalid timezone offset {offset_minutes!r}", field="timezone_offset_minutes"
        ) from exc
    if not MIN_OFFSET_MINUTES <= offset <= MAX_OFFSET_MINUTES:
        raise InvalidTimeInput(
            f"Timezone offset {offset} is outside -720..840 minutes",
            field="timezone_offset_minutes",
        )
    return offset


def parse_local_date(raw: date | str) -> date:
    if isinstance(raw, datetime):
        raise InvalidTimeInput("Expected a date without a time", field="date")
    if isinstance(raw, date):
        return raw
    try:
        return date.fromisoformat((raw or "").strip())
    except (TypeError, ValueError) as exc:
        raise InvalidTimeInput(f"Invalid date {raw!r}; use YYYY-MM-DD", field="date") from exc


def parse_local_time(raw: time | str) -> time:
    if isinstance(raw, time):
        parsed = raw
    else:
        try:
            parsed = time.fromisoformat((raw or "").strip())
        except (TypeError, ValueError) as exc:
            raise InvalidTimeInput(f"Invalid time {raw!r}; use HH:MM", field="time") from exc
    if parsed.tzinfo is not None:
        raise InvalidTimeInput("Local times must not carry a UTC offset", field="time")
    return parsed


def _shift(value: datetime, minutes: int) -> datetime:
    try:
        return value + timedelta(minutes=minutes)
    except OverflowError as exc:
        raise InvalidTimeInput("Date is out of range", field="date") from exc


def to_storage_instant(
    local_date: date | str, local_time: time | str, offset_minutes: int
) -> datetime:
    """Convert a church-local date and time to the stored UTC instant."""
    wall_clock = datetime.combine(parse_local_date(local_date), parse_local_time(local_time))
    return _shift(wall_clock, -validate_offset(offset_minutes))


def to_display(instant: datetime, offset_minutes: int) -> LocalWallClock:
    """Convert a stored UTC instant back to the church's wall clock."""
    if instant.tzinfo is not None:
        raise InvalidTimeInput("Stored instants are naive UTC datetimes", field="instant")
    local = _shift(instant, validate_offset(offset_minutes))
    return LocalWallClock(local.date(), local.time())


def to_local(instant: datetime, offset_minutes: int) -> datetime:
    return _shift(instant, validate_offset(offset_minutes))


def from_local(local: datetime, offset_minutes: int) -> datetime:
    return _shift(local, -validate_offset(offset_minutes))


def local_date_of(instant: datetime, offset_minutes: int) -> date:
    return to_local(instant, offset_minutes).date()
