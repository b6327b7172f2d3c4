from datetime import datetime, timedelta, timezone

from datetime_utils import ensure_utc, format_elapsed, parse_rfc3339, to_rfc3339_utc


def test_parse_rfc3339_variants():
    assert parse_rfc3339("2024-05-01T10:00:00Z") == datetime(2024, 5, 1, 10, tzinfo=timezone.utc)
    assert parse_rfc3339("2024-05-01T12:00:00.5+02:00") == datetime(
        2024, 5, 1, 10, 0, 0, 500000, tzinfo=timezone.utc
    )
    assert parse_rfc3339("2024-05-01T10:00:00.1234567Z").microsecond == 123456
    assert parse_rfc3339("") is None
    assert parse_rfc3339("not a date") is None


def test_to_rfc3339_keeps_microseconds():
    value = datetime(2024, 5, 1, 10, 0, 0, 250, tzinfo=timezone.utc)
    text = to_rfc3339_utc(value)
    assert text == "2024-05-01T10:00:00.000250Z"
    assert parse_rfc3339(text) == value


def test_ensure_utc_assumes_naive_is_utc():
    naive = datetime(2024, 1, 1, 8, 0)
    assert ensure_utc(naive).tzinfo is timezone.utc
    assert ensure_utc(None) is None


def test_format_elapsed():
    assert format_elapsed(timedelta(seconds=20)) == "less than a minute"
    assert format_elapsed(timedelta(minutes=1)) == "1 minute"
    assert format_elapsed(timedelta(minutes=45)) == "45 minutes"
    assert format_elapsed(timedelta(hours=3, minutes=10)) == "3 hours"
    assert format_elapsed(timedelta(days=2, hours=1)) == "2 days"
    assert format_elapsed(timedelta(seconds=-5)) == "less than a minute"
