from datetime import datetime, timezone

import pytest

from labslots.core.timeslots import DateNormalizer, InvalidDateError
from tests.factories import FIXED_NOW


def test_naive_wire_values_are_read_in_reference_zone():
    normalizer = DateNormalizer(timezone_name="Europe/Paris")

    instant = normalizer.to_storage_instant("2026-03-02T09:00:00")

    assert instant == datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)
    assert instant.tzinfo == timezone.utc


def test_offset_wire_values_keep_their_instant():
    normalizer = DateNormalizer(timezone_name="Europe/Paris")

    instant = normalizer.to_storage_instant("2026-03-02T09:00:00+02:00")

    assert instant == datetime(2026, 3, 2, 7, 0, tzinfo=timezone.utc)


def test_day_key_is_evaluated_in_reference_zone():
    late_evening_utc = datetime(2026, 3, 2, 23, 30, tzinfo=timezone.utc)

    assert DateNormalizer().day_key_of(late_evening_utc) == "2026-03-02"
    assert DateNormalizer(timezone_name="Europe/Paris").day_key_of(late_evening_utc) == "2026-03-03"


@pytest.mark.parametrize(
    "value",
    [None, "", "   ", "not-a-date", True, "2026-13-40T00:00:00"],
)
def test_unparsable_values_raise_invalid_date(value):
    with pytest.raises(InvalidDateError):
        DateNormalizer().to_storage_instant(value)


def test_wire_format_is_utc_with_z_suffix():
    normalizer = DateNormalizer(timezone_name="Europe/Paris")

    assert normalizer.to_wire(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)) == (
        "2026-03-02T09:00:00Z"
    )


def test_range_validation_is_strict():
    normalizer = DateNormalizer()
    start = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    assert normalizer.validate_range(start, datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc))
    assert not normalizer.validate_range(start, start)


def test_single_day_allows_ending_at_midnight_but_not_after():
    normalizer = DateNormalizer()
    start = datetime(2026, 3, 2, 23, 0, tzinfo=timezone.utc)

    assert normalizer.spans_single_day(start, datetime(2026, 3, 3, 0, 0, tzinfo=timezone.utc))
    assert not normalizer.spans_single_day(start, datetime(2026, 3, 3, 0, 30, tzinfo=timezone.utc))


def test_compose_builds_instant_from_local_day_and_clock_time():
    normalizer = DateNormalizer(timezone_name="Europe/Paris")

    assert normalizer.compose("2026-03-04", "09:00") == datetime(
        2026, 3, 4, 8, 0, tzinfo=timezone.utc
    )


@pytest.mark.parametrize(("day", "clock"), [("2026-02-30", "09:00"), ("2026-03-04", "25:00")])
def test_compose_rejects_invalid_parts(day, clock):
    with pytest.raises(InvalidDateError):
        DateNormalizer().compose(day, clock)


def test_past_day_detection_uses_reference_zone_today():
    normalizer = DateNormalizer()

    assert normalizer.is_before_today("2026-02-28", now=FIXED_NOW)
    assert not normalizer.is_before_today("2026-03-01", now=FIXED_NOW)


def test_unknown_timezone_is_rejected():
    with pytest.raises(ValueError, match="UNKNOWN_TIMEZONE"):
        DateNormalizer(timezone_name="Mars/Olympus_Mons")
