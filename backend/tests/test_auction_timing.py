from datetime import datetime, timedelta, timezone

import pytest

from pricedrop.services.auction.errors import AuctionValidationError
from pricedrop.services.auction.timing import (
    MAX_SCHEDULE_STEPS,
    MAX_INTERVAL_MINUTES,
    build_schedule,
    check_schedule_horizon,
    clamp_discount,
    ensure_utc,
    format_countdown,
    format_in_timezone,
    intervals_passed,
    is_step_due,
    milliseconds_until,
    next_discount,
    next_update_time,
    parse_scheduled_time,
)


START = datetime(2026, 1, 10, 12, 0, tzinfo=timezone.utc)


def test_intervals_passed_is_floor_of_elapsed_intervals():
    assert intervals_passed(START, START, 15) == 0
    assert intervals_passed(START, START + timedelta(minutes=14, seconds=59), 15) == 0
    assert intervals_passed(START, START + timedelta(minutes=15), 15) == 1
    assert intervals_passed(START, START + timedelta(minutes=47), 15) == 3
    assert intervals_passed(START, START - timedelta(minutes=1), 15) == -1


def test_step_due_only_from_its_grid_time():
    assert next_update_time(START, 15, 0) == START + timedelta(minutes=15)
    assert next_update_time(START, 15, 2) == START + timedelta(minutes=45)

    assert is_step_due(START, 15, 0, START + timedelta(minutes=14, seconds=59)) is False
    assert is_step_due(START, 15, 0, START + timedelta(minutes=15)) is True
    assert is_step_due(START, 15, 1, START + timedelta(minutes=29)) is False


def test_naive_datetimes_are_treated_as_utc():
    naive = datetime(2026, 1, 10, 12, 0)
    assert ensure_utc(naive) == START
    assert ensure_utc(None) is None
    assert is_step_due(naive, 10, 0, START + timedelta(minutes=10)) is True


def test_discount_progression_is_clamped_at_100():
    assert next_discount(0, 5) == 5
    assert next_discount(0.1 + 0.2, 0.1) == 0.4
    assert next_discount(95, 10) == 100
    assert clamp_discount(-3) == 0
    assert clamp_discount(250) == 100


def test_build_schedule_stops_at_cap():
    schedule = build_schedule(
        current_discount=70,
        increment=12,
        started_at=START,
        interval_minutes=30,
        last_fired_interval=2,
    )

    assert [s["discountPercent"] for s in schedule] == [82.0, 94.0, 100.0]
    assert [s["step"] for s in schedule] == [3, 4, 5]
    assert schedule[0]["at"] == (START + timedelta(minutes=90)).isoformat()


def test_build_schedule_is_bounded():
    schedule = build_schedule(
        current_discount=0,
        increment=0.01,
        started_at=START,
        interval_minutes=1,
        last_fired_interval=0,
    )
    assert len(schedule) == MAX_SCHEDULE_STEPS


def test_build_schedule_empty_when_already_at_cap():
    assert build_schedule(
        current_discount=100, increment=5, started_at=START, interval_minutes=5, last_fired_interval=20
    ) == []


@pytest.mark.parametrize(
    "value,tz_name,expected",
    [
        ("2026-07-01T10:30", "Europe/Berlin", datetime(2026, 7, 1, 8, 30, tzinfo=timezone.utc)),
        ("2026-01-15T10:30", "Europe/Berlin", datetime(2026, 1, 15, 9, 30, tzinfo=timezone.utc)),
        ("2026-01-15 10:30:45", "America/New_York", datetime(2026, 1, 15, 15, 30, 45, tzinfo=timezone.utc)),
        ("2026-01-15T10:30:00+02:00", "America/New_York", datetime(2026, 1, 15, 8, 30, tzinfo=timezone.utc)),
        ("2026-01-15T10:30:00Z", "CET", datetime(2026, 1, 15, 10, 30, tzinfo=timezone.utc)),
    ],
)
def test_parse_scheduled_time_localizes_to_timezone(value, tz_name, expected):
    assert parse_scheduled_time(value, tz_name) == expected


@pytest.mark.parametrize(
    "value,tz_name",
    [
        ("", "CET"),
        (None, "CET"),
        ("15/01/2026 10:30", "CET"),
        ("2026-01-15T10:30", "Not/A_Zone"),
        ("2026-01-15T10:30", ""),
    ],
)
def test_parse_scheduled_time_rejects_bad_input(value, tz_name):
    with pytest.raises(AuctionValidationError):
        parse_scheduled_time(value, tz_name)


def test_format_in_timezone():
    assert format_in_timezone(START, "Europe/Berlin") == "2026-01-10 13:00:00"
    assert format_in_timezone(START, None) == "2026-01-10 12:00:00"
    assert format_in_timezone(None, "CET") is None


def test_countdown_text():
    assert milliseconds_until(START + timedelta(minutes=2, seconds=5), START) == 125000
    assert milliseconds_until(START - timedelta(seconds=1), START) == 0
    assert format_countdown(125000) == "2m 5s"
    assert format_countdown(999) == "0m 0s"
    assert format_countdown(0) == "Started or pending"


def test_schedule_horizon_covers_every_previewed_step():
    horizon = check_schedule_horizon(START, 60)
    assert horizon == START + timedelta(hours=MAX_SCHEDULE_STEPS + 1)

    check_schedule_horizon(START, MAX_INTERVAL_MINUTES)
    with pytest.raises(AuctionValidationError):
        check_schedule_horizon(datetime(9990, 1, 1, tzinfo=timezone.utc), MAX_INTERVAL_MINUTES)
