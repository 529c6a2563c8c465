from __future__ import annotations

from datetime import datetime, timedelta, timezone

from campusconnect.utils import format_timestamp, new_id, parse_timestamp, unique


def test_parse_timestamp_normalizes_to_naive_utc():
    aware = datetime(2026, 3, 1, 14, 0, tzinfo=timezone(timedelta(hours=2)))
    assert parse_timestamp(aware) == datetime(2026, 3, 1, 12, 0)
    assert parse_timestamp("2026-03-01T12:00:00+00:00") == datetime(2026, 3, 1, 12, 0)
    assert parse_timestamp("2026-03-01T12:00:00") == datetime(2026, 3, 1, 12, 0)


def test_parse_timestamp_rejects_garbage():
    assert parse_timestamp(None) is None
    assert parse_timestamp("") is None
    assert parse_timestamp("next tuesday") is None
    assert parse_timestamp(1700000000) is None


def test_format_timestamp():
    assert format_timestamp(datetime(2026, 3, 1, 12, 0)) == "2026-03-01T12:00:00"
    assert format_timestamp(None) is None


def test_unique_keeps_first_seen_order_and_drops_non_strings():
    assert unique(["b", "a", "b", None, "c", "a"]) == ("b", "a", "c")
    assert unique(None) == ()


def test_new_id_is_unique():
    assert len({new_id() for _ in range(50)}) == 50
