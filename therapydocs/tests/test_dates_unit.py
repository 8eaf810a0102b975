from datetime import datetime, timezone

from therapydocs.utils.dates import days_between, format_saved_at, hours_since, parse_day, today_iso

NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


def test_format_saved_at_labels() -> None:
    assert format_saved_at("", NOW) == ""
    assert format_saved_at("not a timestamp", NOW) == ""
    assert format_saved_at("2025-03-10T11:59:55+00:00", NOW) == "just now"
    assert format_saved_at("2025-03-10T11:59:30+00:00", NOW) == "30 seconds ago"
    assert format_saved_at("2025-03-10T11:59:00+00:00", NOW) == "1 minute ago"
    assert format_saved_at("2025-03-10T09:00:00Z", NOW) == "3 hours ago"
    assert format_saved_at("2025-03-08T12:00:00+00:00", NOW) == "2 days ago"


def test_day_helpers() -> None:
    assert parse_day("2025-03-10T23:59:00+00:00").isoformat() == "2025-03-10"
    assert days_between("2025-03-10", "2025-03-03") == 7
    assert hours_since("2025-03-09T12:00:00", NOW) == 24.0
    assert today_iso(NOW) == "2025-03-10"


def test_unparsable_dates_yield_none() -> None:
    assert parse_day("2025-03") is None
    assert parse_day("") is None
    assert days_between("2025-03", "2025-03-10") is None
    assert days_between("2025-03-10", "not a date") is None
    assert hours_since("yesterday", NOW) is None
