from datetime import date, datetime, time, timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import TypeAdapter, ValidationError

from labslots.core.timeslots.errors import InvalidDateError

DEFAULT_REFERENCE_TIMEZONE = "UTC"

_DATETIME_ADAPTER = TypeAdapter(datetime)
_DATE_ADAPTER = TypeAdapter(date)
_TIME_ADAPTER = TypeAdapter(time)


class DateNormalizer:
    """Converts wire date-times into UTC storage instants and derives day keys.

    Naive inputs are read in the reference zone. Every instant leaving this class is
    timezone-aware UTC, and ``day_key_of`` always evaluates in the reference zone, so a
    slot's ``day_key`` can be recomputed from its ``start_at`` at any time.
    """

    def __init__(self, *, timezone_name: str = DEFAULT_REFERENCE_TIMEZONE) -> None:
        try:
            self._zone = ZoneInfo(timezone_name)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"UNKNOWN_TIMEZONE:{timezone_name}") from exc
        self._timezone_name = timezone_name

    @property
    def timezone_name(self) -> str:
        return self._timezone_name

    def to_storage_instant(self, wire_value: Any) -> datetime:
        if wire_value is None or isinstance(wire_value, bool):
            raise InvalidDateError(f"INVALID_DATE: {wire_value!r}")
        if isinstance(wire_value, str) and not wire_value.strip():
            raise InvalidDateError("INVALID_DATE: empty value")
        try:
            parsed = _DATETIME_ADAPTER.validate_python(wire_value)
        except ValidationError as exc:
            raise InvalidDateError(f"INVALID_DATE: {wire_value!r}") from exc
        return self._to_utc(parsed)

    def to_wire(self, instant: datetime) -> str:
        return self._to_utc(instant).isoformat().replace("+00:00", "Z")

    def day_key_of(self, instant: datetime) -> str:
        return self._to_utc(instant).astimezone(self._zone).date().isoformat()

    def validate_range(self, start: datetime, end: datetime) -> bool:
        return self._to_utc(start) < self._to_utc(end)

    def spans_single_day(self, start: datetime, end: datetime) -> bool:
        local_start = self._to_utc(start).astimezone(self._zone)
        next_midnight = datetime.combine(
            local_start.date() + timedelta(days=1), time(0), tzinfo=self._zone
        )
        return self._to_utc(end) <= next_midnight.astimezone(timezone.utc)

    def compose(self, day: Any, clock_time: Any) -> datetime:
        try:
            parsed_day = _DATE_ADAPTER.validate_python(day)
            parsed_time = _TIME_ADAPTER.validate_python(clock_time)
        except ValidationError as exc:
            raise InvalidDateError(f"INVALID_DATE: {day!r} {clock_time!r}") from exc
        if parsed_time.tzinfo is not None:
            return datetime.combine(parsed_day, parsed_time).astimezone(timezone.utc)
        local = datetime.combine(parsed_day, parsed_time, tzinfo=self._zone)
        return local.astimezone(timezone.utc)

    def is_before_today(self, day_key: str, *, now: datetime) -> bool:
        return day_key < self.day_key_of(now)

    def _to_utc(self, value: datetime) -> datetime:
        if value.tzinfo is None:
            value = value.replace(tzinfo=self._zone)
        return value.astimezone(timezone.utc)
