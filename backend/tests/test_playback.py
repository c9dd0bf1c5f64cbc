"""Tests for the playback scheduler."""

from __future__ import annotations

import asyncio

import pytest

from smokemap.services import playback


class StepSleep:
    """Lets the timer run ``steps`` ticks, then blocks until cancelled."""

    def __init__(self, steps: int) -> None:
        self.remaining = steps
        self.delays: list[float] = []
        self.exhausted = asyncio.Event()

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self.remaining == 0:
            self.exhausted.set()
            await asyncio.Event().wait()
        self.remaining -= 1
        await asyncio.sleep(0)


def _scheduler(
    available: set[int],
    count: int = 5,
    **kwargs,
) -> playback.PlaybackScheduler:
    return playback.PlaybackScheduler(count, available.__contains__, **kwargs)


def test_next_index_skips_unavailable_and_wraps() -> None:
    """Test stepping over a failed slice and wrapping to the start."""
    scheduler = _scheduler({0, 1, 2, 4})
    scheduler.seek(2)

    assert scheduler.tick() == 4
    assert scheduler.tick() == 0
    assert scheduler.tick() == 1


def test_unavailable_current_jumps_to_first_available() -> None:
    """Test that an unloaded position moves to the earliest loaded slice."""
    scheduler = _scheduler({3, 4})
    assert scheduler.seek(1) is False
    assert scheduler.state.current_index == 1
    assert scheduler.next_index() == 3


def test_seek_out_of_range() -> None:
    """Test that seeking outside the timeline raises IndexError."""
    scheduler = _scheduler({0})
    with pytest.raises(IndexError):
        scheduler.seek(5)
    with pytest.raises(IndexError):
        scheduler.seek(-1)


def test_speed_must_be_positive() -> None:
    """Test speed validation at construction and on change."""
    with pytest.raises(ValueError):
        _scheduler({0}, speed_ms=0)
    scheduler = _scheduler({0})
    with pytest.raises(ValueError):
        scheduler.set_speed(-10)
    assert scheduler.state.speed_ms == 1000


@pytest.mark.asyncio
async def test_timer_advances_through_available_slices() -> None:
    """Test that the running timer shows only loaded slices."""
    sleep = StepSleep(steps=2)
    shown: list[int] = []
    scheduler = _scheduler({0, 1, 2, 4}, on_index=shown.append, sleep=sleep)
    scheduler.seek(2)

    assert scheduler.play() is True
    await sleep.exhausted.wait()
    await scheduler.aclose()

    assert shown == [2, 4, 0]
    assert sleep.delays == [1.0, 1.0, 1.0]
    assert scheduler.state.is_playing is False


@pytest.mark.asyncio
async def test_playback_stops_when_nothing_is_available() -> None:
    """Test that a tick with no loaded slices pauses playback."""
    scheduler = _scheduler(set(), sleep=StepSleep(steps=0))
    scheduler.play()

    assert scheduler.tick() is None
    assert scheduler.state.is_playing is False
    await scheduler.aclose()


@pytest.mark.asyncio
async def test_hidden_layer_refuses_playback() -> None:
    """Test that playback cannot start, and stops, while hidden."""
    scheduler = _scheduler({0, 1}, sleep=StepSleep(steps=0))
    scheduler.set_layer_visible(False)
    assert scheduler.play() is False
    assert scheduler.state.is_playing is False

    scheduler.set_layer_visible(True)
    assert scheduler.play() is True
    scheduler.set_layer_visible(False)
    assert scheduler.state.is_playing is False
    await scheduler.aclose()


@pytest.mark.asyncio
async def test_set_speed_keeps_position_while_playing() -> None:
    """Test that changing speed restarts the timer in place."""
    sleep = StepSleep(steps=0)
    scheduler = _scheduler({0, 1, 2}, sleep=sleep)
    scheduler.seek(1)
    scheduler.play()

    scheduler.set_speed(250)
    await sleep.exhausted.wait()

    assert scheduler.state.to_dict() == {
        "current_index": 1,
        "is_playing": True,
        "speed_ms": 250,
    }
    assert sleep.delays[-1] == 0.25
    await scheduler.aclose()
