"""
Tests de la géométrie de planification: frise, créneaux, fenêtres de service et récurrence.
"""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta

import pytest

from flightops.domain.entities import BusinessHours, MinutesWindow, TimelineConfig
from flightops.domain.scheduling import (
    build_time_slots,
    build_timeline_config,
    clamp_end_to_roster,
    expand_recurring_occurrences,
    get_booking_layout,
    is_minutes_within_any_window,
    is_valid_time_range,
    roster_max_end_minutes,
    roster_windows_by_instructor,
    rostered_slots,
    timeline_bounds,
    validate_recurrence,
)
from flightops.domain.timezone import day_of_week, to_utc_iso

TZ = "Pacific/Auckland"
T0 = datetime(2025, 3, 10, 8, 0, tzinfo=UTC)
T1 = datetime(2025, 3, 10, 18, 0, tzinfo=UTC)
ROSTER = {
    "inst-1": [
        MinutesWindow(start_min=540, end_min=720),
        MinutesWindow(start_min=780, end_min=1020),
    ]
}


def test_layout_inside_timeline() -> None:
    layout = get_booking_layout(T0 + timedelta(hours=1), T0 + timedelta(hours=3), T0, T1)
    assert layout.left_pct == pytest.approx(10.0)
    assert layout.width_pct == pytest.approx(20.0)


def test_layout_clipped_at_timeline_end() -> None:
    layout = get_booking_layout(T1 - timedelta(minutes=30), T1 + timedelta(minutes=30), T0, T1)
    assert layout.width_pct == pytest.approx(5.0)
    assert layout.left_pct + layout.width_pct == pytest.approx(100.0)


def test_layout_clipped_at_timeline_start() -> None:
    layout = get_booking_layout(T0 - timedelta(hours=1), T0 + timedelta(hours=1), T0, T1)
    assert layout.left_pct == 0.0
    assert layout.width_pct == pytest.approx(10.0)


def test_layout_outside_or_empty_timeline() -> None:
    assert get_booking_layout(T1, T1 + timedelta(hours=1), T0, T1) is None
    assert get_booking_layout(T0 - timedelta(hours=2), T0, T0, T1) is None
    assert get_booking_layout(T0, T1, T0, T0) is None


def test_time_slots() -> None:
    slots = build_time_slots(T0, T0 + timedelta(hours=2), 30)
    assert slots == [T0 + timedelta(minutes=30 * index) for index in range(4)]
    assert len(build_time_slots(T0, T0 + timedelta(hours=2), 1)) == 24
    assert build_time_slots(T1, T0, 30) == []


@pytest.mark.parametrize(
    ("hours", "expected"),
    [
        (BusinessHours(open_time="08:00", close_time="17:00"), (480, 1020)),
        (BusinessHours(open_time="06:00", close_time="24:00"), (360, 1440)),
        (BusinessHours(is_closed=True), (0, 1440)),
        (BusinessHours(is_24_hours=True), (0, 1440)),
        (BusinessHours(open_time="22:00", close_time="06:00"), (0, 1440)),
        (BusinessHours(open_time="late", close_time="17:00"), (420, 1140)),
    ],
)
def test_timeline_config(hours, expected) -> None:
    config = build_timeline_config(hours)
    assert (config.start_min, config.end_min) == expected
    assert config.interval_minutes == 30


def test_timeline_bounds() -> None:
    config = TimelineConfig(start_min=480, end_min=1020, interval_minutes=30)
    start, end = timeline_bounds("2025-03-10", config, TZ)
    assert to_utc_iso(start) == "2025-03-09T19:00:00.000Z"
    assert to_utc_iso(end) == "2025-03-10T04:00:00.000Z"

    full_day = TimelineConfig(start_min=0, end_min=1440, interval_minutes=30)
    start, end = timeline_bounds("2025-03-10", full_day, TZ)
    assert end - start == timedelta(hours=24)


def test_roster_windows_are_half_open() -> None:
    windows = ROSTER["inst-1"]
    assert is_minutes_within_any_window(719, windows) is True
    assert is_minutes_within_any_window(720, windows) is False
    assert is_minutes_within_any_window(780, windows) is True


def test_roster_max_end_and_clamp() -> None:
    assert roster_max_end_minutes("10:00", "inst-1", ROSTER) == 720
    assert roster_max_end_minutes("12:30", "inst-1", ROSTER) is None
    assert roster_max_end_minutes("10:00", "inst-2", ROSTER) is None
    assert roster_max_end_minutes("10:00", None, ROSTER) is None
    assert clamp_end_to_roster("10:00", "13:00", "inst-1", ROSTER) == "12:00"
    assert clamp_end_to_roster("10:00", "11:00", "inst-1", ROSTER) == "11:00"
    assert clamp_end_to_roster("10:00", "13:00", None, ROSTER) == "13:00"


def test_roster_rules_grouped_by_instructor() -> None:
    rules = [
        {"instructor_id": "inst-1", "start_time": "09:00:00", "end_time": "12:00:00"},
        {"instructor_id": "inst-1", "start_time": "13:00", "end_time": "17:00"},
        {"instructor_id": "inst-2", "start_time": "8:00", "end_time": "bad"},
        {"instructor_id": "inst-3", "start_time": "15:00", "end_time": "14:00"},
        {"instructor_id": None, "start_time": "09:00", "end_time": "10:00"},
    ]
    assert roster_windows_by_instructor(rules) == ROSTER


def test_rostered_slots_follow_local_time() -> None:
    # 2025-03-10 NZDT (UTC+13): 09:00 locale = 20:00Z la veille.
    slots = [datetime(2025, 3, 9, 19, 30, tzinfo=UTC) + timedelta(minutes=30 * i) for i in range(8)]
    kept = rostered_slots(slots, ROSTER["inst-1"], TZ)
    assert [to_utc_iso(slot) for slot in kept] == [
        "2025-03-09T20:00:00.000Z",
        "2025-03-09T20:30:00.000Z",
        "2025-03-09T21:00:00.000Z",
        "2025-03-09T21:30:00.000Z",
        "2025-03-09T22:00:00.000Z",
        "2025-03-09T22:30:00.000Z",
    ]


def test_valid_time_range() -> None:
    assert is_valid_time_range("09:00", "10:00") is True
    assert is_valid_time_range("10:00", "10:00") is False
    assert is_valid_time_range("10:00", "nope") is False


def test_recurrence_across_dst_start() -> None:
    """Dimanches du 21/09 au 05/10/2025: passage à l'heure d'été le 28/09, rien de sauté."""
    occurrences = expand_recurring_occurrences(
        date(2025, 9, 21), [0], "09:00", "10:00", date(2025, 10, 5), TZ
    )
    assert [occ.date for occ in occurrences] == ["2025-09-21", "2025-09-28", "2025-10-05"]
    assert [occ.start_iso for occ in occurrences] == [
        "2025-09-20T21:00:00.000Z",
        "2025-09-27T20:00:00.000Z",
        "2025-10-04T20:00:00.000Z",
    ]
    assert occurrences[1].end_iso == "2025-09-27T21:00:00.000Z"


def test_daily_recurrence_across_dst_end_has_one_per_date() -> None:
    occurrences = expand_recurring_occurrences(
        date(2025, 4, 1), range(7), "08:00", "09:00", date(2025, 4, 10), TZ
    )
    dates = [occ.date for occ in occurrences]
    assert len(dates) == 10
    assert len(set(dates)) == 10
    assert dates[0] == "2025-04-01"
    assert dates[-1] == "2025-04-10"


def test_recurrence_weekday_selection() -> None:
    occurrences = expand_recurring_occurrences(
        date(2025, 3, 10), [1, 3], "09:00", "10:00", date(2025, 3, 23), TZ
    )
    assert [day_of_week(occ.date) for occ in occurrences] == [1, 3, 1, 3]


def test_recurrence_without_until_or_valid_range_is_empty() -> None:
    assert expand_recurring_occurrences(date(2025, 3, 10), [1], "09:00", "10:00", None, TZ) == []
    assert (
        expand_recurring_occurrences(
            date(2025, 3, 10), [1], "10:00", "09:00", date(2025, 3, 30), TZ
        )
        == []
    )
    no_days = expand_recurring_occurrences(
        date(2025, 3, 10), [], "09:00", "10:00", date(2025, 3, 30), TZ
    )
    assert no_days == []


def test_validate_recurrence() -> None:
    start = date(2025, 3, 10)
    assert validate_recurrence(start, [1], date(2025, 3, 31)) == {}
    assert validate_recurrence(start, [], date(2025, 3, 31)) == {
        "recurring_days": "Select at least one day"
    }
    assert validate_recurrence(start, [1], None) == {
        "repeat_until": "Repeat until date is required"
    }
    assert validate_recurrence(start, [1], start) == {
        "repeat_until": "Repeat until date must be after the booking date"
    }
