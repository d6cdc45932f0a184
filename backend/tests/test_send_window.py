from __future__ import annotations

from datetime import datetime, time, timezone

import pytest

from reengage_web.send_window import (
    SendWindowPolicy,
    add_local_days,
    in_window,
    next_window_open,
    parse_send_window,
)


def _paris_weekdays() -> SendWindowPolicy:
    return parse_send_window(timezone_name="Europe/Paris", days=[1, 2, 3, 4, 5], start="09:00", end="18:00")


def test_in_window_boundaries_are_half_open() -> None:
    policy = _paris_weekdays()
    # Wednesday 2025-01-08, Paris is UTC+1 in winter.
    assert in_window(datetime(2025, 1, 8, 7, 59, tzinfo=timezone.utc), policy) is False
    assert in_window(datetime(2025, 1, 8, 8, 0, tzinfo=timezone.utc), policy) is True
    assert in_window(datetime(2025, 1, 8, 12, 30, tzinfo=timezone.utc), policy) is True
    assert in_window(datetime(2025, 1, 8, 16, 59, tzinfo=timezone.utc), policy) is True
    assert in_window(datetime(2025, 1, 8, 17, 0, tzinfo=timezone.utc), policy) is False
    assert in_window(datetime(2025, 1, 8, 17, 1, tzinfo=timezone.utc), policy) is False


def test_in_window_rejects_disallowed_day() -> None:
    policy = _paris_weekdays()
    saturday_noon = datetime(2025, 1, 11, 11, 0, tzinfo=timezone.utc)
    assert in_window(saturday_noon, policy) is False


def test_in_window_without_policy_allows_everything() -> None:
    assert in_window(datetime(2025, 1, 11, 3, 0, tzinfo=timezone.utc), None) is True


def test_in_window_treats_naive_datetimes_as_utc() -> None:
    policy = _paris_weekdays()
    assert in_window(datetime(2025, 1, 8, 8, 0), policy) is True


def test_next_window_open_moves_early_morning_to_opening() -> None:
    policy = _paris_weekdays()
    opened = next_window_open(datetime(2025, 1, 8, 0, 0, tzinfo=timezone.utc), policy)
    assert opened == datetime(2025, 1, 8, 8, 0, tzinfo=timezone.utc)


def test_next_window_open_skips_weekend_after_friday_close() -> None:
    policy = _paris_weekdays()
    friday_evening = datetime(2025, 1, 10, 19, 0, tzinfo=timezone.utc)
    assert next_window_open(friday_evening, policy) == datetime(2025, 1, 13, 8, 0, tzinfo=timezone.utc)


def test_next_window_open_is_identity_inside_window() -> None:
    policy = _paris_weekdays()
    inside = datetime(2025, 1, 8, 10, 15, tzinfo=timezone.utc)
    assert next_window_open(inside, policy) == inside


def test_next_window_open_follows_dst_offset() -> None:
    policy = _paris_weekdays()
    # Paris is UTC+2 in summer, so 09:00 local opens at 07:00 UTC.
    opened = next_window_open(datetime(2025, 7, 2, 1, 0, tzinfo=timezone.utc), policy)
    assert opened == datetime(2025, 7, 2, 7, 0, tzinfo=timezone.utc)


def test_next_window_open_returns_input_when_window_never_opens() -> None:
    policy = SendWindowPolicy(timezone="UTC", days=frozenset(), start=time(9, 0), end=time(18, 0))
    when = datetime(2025, 1, 8, 3, 0, tzinfo=timezone.utc)
    assert next_window_open(when, policy) == when


def test_add_local_days_keeps_wall_clock_across_dst() -> None:
    policy = _paris_weekdays()
    # 10:00 Paris on the Friday before the March 2025 DST switch.
    reference = datetime(2025, 3, 28, 9, 0, tzinfo=timezone.utc)
    shifted = add_local_days(reference, 3, policy)
    assert shifted == datetime(2025, 3, 31, 8, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    ("kwargs", "message"),
    [
        ({"timezone_name": "Mars/Olympus", "days": [1], "start": "09:00", "end": "18:00"}, "invalid timezone"),
        ({"timezone_name": "UTC", "days": [0, 8], "start": "09:00", "end": "18:00"}, "ISO weekdays"),
        ({"timezone_name": "UTC", "days": [1], "start": "nine", "end": "18:00"}, "invalid time of day"),
    ],
)
def test_parse_send_window_rejects_bad_input(kwargs: dict, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        parse_send_window(**kwargs)
