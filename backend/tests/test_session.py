"""Tests for the timeline session wiring loader and playback together."""

from __future__ import annotations

import datetime

import pytest

from smokemap.core import config, errors
from smokemap.services import geometry, loader, session, time_windows

NOW = datetime.datetime(2025, 8, 1, 12, tzinfo=datetime.UTC)
FEATURE = geometry.Feature(geometry.Point(-121.3, 44.0), {})


async def no_sleep(delay: float) -> None:
    return None


def _source(failing: set[int]):
    async def fetch(time_slice: time_windows.TimeSlice) -> list[geometry.Feature]:
        if time_slice.index in failing:
            raise errors.UpstreamError("no data service")
        return [FEATURE]

    return fetch


def _session(failing: set[int] | None = None) -> session.TimelineSession:
    return session.TimelineSession(
        time_windows.generate(-2, 6, 1, NOW),
        _source(failing or set()),
        autoplay_min_loaded=3,
        loader_options={"max_attempts": 1, "sleep": no_sleep},
    )


@pytest.mark.asyncio
async def test_first_loaded_slice_is_shown_and_autoplay_starts() -> None:
    """Test moving to the first loaded slice and autoplay at three slices."""
    timeline = _session(failing={0})
    progress: list[float] = []
    loaded: list[int] = []
    reported: list[str] = []
    timeline.on_progress = progress.append
    timeline.on_slice_loaded = loaded.append
    timeline.on_error = reported.append

    results = await timeline.load()

    assert results[0].status is loader.SliceStatus.FAILED
    assert loaded == [1, 2, 3, 4, 5]
    assert timeline.state.current_index == 1
    assert timeline.state.is_playing is True
    assert progress[-1] == 100
    assert reported == ["Hour 1 (-2h): no data service"]
    assert timeline.error_summary() == reported
    await timeline.aclose()
    assert timeline.state.is_playing is False


@pytest.mark.asyncio
async def test_pause_during_loading_is_kept() -> None:
    """Test that autoplay starts once and does not undo a later pause."""
    timeline = _session()

    def pause_after_autoplay(index: int) -> None:
        if index == 3:
            timeline.pause()

    timeline.on_slice_loaded = pause_after_autoplay
    await timeline.load()

    assert timeline.loader.loaded_indices == [0, 1, 2, 3, 4, 5]
    assert timeline.state.is_playing is False
    await timeline.aclose()


@pytest.mark.asyncio
async def test_no_autoplay_below_threshold() -> None:
    """Test that playback waits for enough loaded slices."""
    timeline = _session(failing={1, 2, 3, 4})
    await timeline.load()

    assert timeline.loader.loaded_indices == [0, 5]
    assert timeline.state.current_index == 0
    assert timeline.state.is_playing is False
    await timeline.aclose()


@pytest.mark.asyncio
async def test_skip_remaining_keeps_partial_data() -> None:
    """Test that skipping stops loading after the current slice."""
    timeline = _session()
    timeline.on_slice_loaded = lambda index: timeline.skip_remaining()

    await timeline.load()

    assert timeline.loader.state is loader.LoaderState.CANCELLED
    assert timeline.loader.loaded_indices == [0]
    assert timeline.seek(0) is True
    assert timeline.seek(1) is False
    await timeline.aclose()


@pytest.mark.asyncio
async def test_hidden_layer_blocks_autoplay() -> None:
    """Test that a hidden layer suppresses autoplay."""
    timeline = _session()
    timeline.set_layer_visible(False)

    await timeline.load()

    assert timeline.state.is_playing is False
    assert timeline.play() is False
    timeline.set_layer_visible(True)
    assert timeline.play() is True
    timeline.set_speed(500)
    assert timeline.state.speed_ms == 500
    timeline.pause()
    assert timeline.state.is_playing is False
    await timeline.aclose()


def test_from_settings() -> None:
    """Test that timeline and tuning come from settings."""
    settings = config.Settings(
        timeline_start_offset_hours=-3,
        timeline_duration_hours=6,
        timeline_step_hours=2,
        slice_max_attempts=4,
        retry_backoff_ms=500,
        playback_speed_ms=750,
        autoplay_min_loaded=2,
    )
    timeline = session.TimelineSession.from_settings(
        settings,
        _source(set()),
        reference_time=NOW,
    )

    assert [s.relative_offset for s in timeline.slices] == [-3, -1, 1]
    assert timeline.loader.max_attempts == 4
    assert timeline.loader.retry_backoff == 0.5
    assert timeline.state.speed_ms == 750
    assert timeline.autoplay_min_loaded == 2
