"""Tests for timeline slice generation."""

import datetime

import pytest

from smokemap.services import time_windows

NOW = datetime.datetime(2025, 8, 1, 12, 0, tzinfo=datetime.UTC)


def test_default_timeline() -> None:
    """Test the 48 one-hour slices starting twelve hours back."""
    slices = time_windows.generate(-12, 48, 1, NOW)

    assert len(slices) == 48
    assert slices[0].relative_offset == -12
    assert slices[0].is_past
    assert slices[0].start == NOW - datetime.timedelta(hours=12)
    assert slices[12].is_now
    assert slices[12].start == NOW
    assert slices[13].is_future
    assert slices[-1].relative_offset == 35
    assert [s.index for s in slices] == list(range(48))


def test_slices_are_contiguous() -> None:
    """Test that each slice ends where the next one starts."""
    slices = time_windows.generate(-6, 24, 3, NOW)

    assert len(slices) == 8
    for current, following in zip(slices, slices[1:]):
        assert current.end == following.start
        assert following.relative_offset - current.relative_offset == 3
    assert slices[0].end - slices[0].start == datetime.timedelta(hours=3)


def test_partial_step_is_dropped() -> None:
    """Test that a duration not divisible by the step is floored."""
    assert len(time_windows.generate(0, 5, 2, NOW)) == 2


def test_zero_duration() -> None:
    """Test that a zero duration yields no slices."""
    assert time_windows.generate(0, 0, 1, NOW) == []


@pytest.mark.parametrize(("duration", "step"), [(24, 0), (24, -1), (-1, 1)])
def test_invalid_arguments(duration: int, step: int) -> None:
    """Test that non-positive steps and negative durations are rejected."""
    with pytest.raises(ValueError):
        time_windows.generate(0, duration, step, NOW)


def test_generation_is_deterministic() -> None:
    """Test that the same reference time gives equal slices."""
    assert time_windows.generate(-12, 48, 1, NOW) == time_windows.generate(
        -12, 48, 1, NOW
    )


def test_naive_reference_time_is_utc() -> None:
    """Test that a naive datetime is interpreted as UTC."""
    naive = NOW.replace(tzinfo=None)
    assert time_windows.generate(0, 1, 1, naive) == time_windows.generate(
        0, 1, 1, NOW
    )


def test_to_dict() -> None:
    """Test the serialized slice."""
    time_slice = time_windows.generate(0, 1, 1, NOW)[0]

    assert time_slice.to_dict() == {
        "index": 0,
        "start": 1754049600000,
        "end": 1754053200000,
        "datetime": "2025-08-01T12:00:00+00:00",
        "relative_hour": 0,
        "is_past": False,
        "is_future": False,
        "is_now": True,
    }
