"""Tests for timestamp helpers."""

from datetime import datetime, timezone

from grainmem.utils.timestamp_utils import parse_iso_timestamp, utc_now_iso, within_range


def test_parse_accepts_z_suffix():
    assert parse_iso_timestamp('2024-05-01T12:00:00Z') == datetime(2024, 5, 1, 12, tzinfo=timezone.utc)


def test_parse_treats_naive_values_as_utc():
    assert parse_iso_timestamp('2024-05-01') == datetime(2024, 5, 1, tzinfo=timezone.utc)


def test_parse_converts_offsets_to_utc():
    assert parse_iso_timestamp('2024-05-01T12:00:00+02:00') == datetime(2024, 5, 1, 10, tzinfo=timezone.utc)


def test_parse_rejects_garbage():
    assert parse_iso_timestamp('yesterday') is None
    assert parse_iso_timestamp('') is None
    assert parse_iso_timestamp(None) is None


def test_within_range_is_inclusive():
    start = parse_iso_timestamp('2024-05-01')
    end = parse_iso_timestamp('2024-05-03')

    assert within_range('2024-05-01T00:00:00Z', start, end)
    assert within_range('2024-05-03', start, end)
    assert not within_range('2024-05-03T00:00:01Z', start, end)
    assert not within_range('2024-04-30T23:59:59Z', start, end)


def test_within_range_open_bounds():
    assert within_range('2030-01-01', parse_iso_timestamp('2024-01-01'), None)
    assert within_range('not a date', None, None)
    assert not within_range('not a date', parse_iso_timestamp('2024-01-01'), None)


def test_utc_now_iso_is_aware():
    assert parse_iso_timestamp(utc_now_iso()).tzinfo is not None
