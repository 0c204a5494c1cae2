from datetime import datetime, timedelta, timezone

from lapi_mirror.core.timeutil import duration_to_ms, format_duration, parse_duration, parse_timestamp, to_iso


def test_parse_duration_accepts_any_component_subset() -> None:
    assert parse_duration("2h0m0s") == timedelta(hours=2)
    assert parse_duration("4h") == timedelta(hours=4)
    assert parse_duration("30m") == timedelta(minutes=30)
    assert parse_duration("45s") == timedelta(seconds=45)
    assert parse_duration("1h30s") == timedelta(hours=1, seconds=30)
    assert parse_duration("3h59m58.5s") == timedelta(hours=3, minutes=59, seconds=58.5)
    assert parse_duration("7d") == timedelta(days=7)


def test_parse_duration_honours_sign() -> None:
    assert parse_duration("-12m3s") == -timedelta(minutes=12, seconds=3)
    assert parse_duration("+5m") == timedelta(minutes=5)


def test_parse_duration_rejects_garbage() -> None:
    assert parse_duration(None) is None
    assert parse_duration("") is None
    assert parse_duration("-") is None
    assert parse_duration("soon") is None
    assert parse_duration("5h30") is None


def test_format_duration_matches_upstream_style() -> None:
    assert format_duration(timedelta(hours=1)) == "1h0m0s"
    assert format_duration(125) == "2m5s"
    assert format_duration(9.9) == "9s"
    assert format_duration(0) == "0s"
    assert format_duration(-10) == "0s"


def test_timestamps_are_fixed_width_utc() -> None:
    parsed = parse_timestamp("2026-03-02T12:00:00.123456789Z")
    assert parsed == datetime(2026, 3, 2, 12, 0, 0, 123456, tzinfo=timezone.utc)
    assert to_iso(parsed) == "2026-03-02T12:00:00.123456Z"
    assert parse_timestamp("2026-03-02T14:00:00+02:00") == datetime(2026, 3, 2, 12, tzinfo=timezone.utc)
    assert parse_timestamp("not a date") is None
    assert to_iso(datetime(2026, 3, 2, 12)) == "2026-03-02T12:00:00.000000Z"


def test_duration_to_ms_treats_manual_as_zero() -> None:
    assert duration_to_ms("manual") == 0
    assert duration_to_ms("30s") == 30_000
    assert duration_to_ms("5m") == 300_000
    assert duration_to_ms("bogus", default_ms=1234) == 1234
