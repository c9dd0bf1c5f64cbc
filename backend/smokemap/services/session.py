"""Timeline session tying slice generation, loading and playback together.

A host (a map page, a notebook, a test) creates one session per timeline,
starts loading, and drives playback through ``play``/``pause``/
``set_speed``/``seek``. The session moves to the first slice that loads and
starts playing on its own once ``autoplay_min_loaded`` slices are
available.

Example:
    >>> session = TimelineSession.from_settings(settings, service.fetch_slice)
    >>> session.on_progress = lambda pct: print(f"{pct:.0f}%")
    >>> await session.load()
    >>> session.error_summary()
    []
"""

from __future__ import annotations

import datetime
import logging
from typing import TYPE_CHECKING, Any

from smokemap.services import loader as slice_loader
from smokemap.services import playback, time_windows

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from smokemap.core import config

logger = logging.getLogger(__name__)


class TimelineSession:
    """One scrubbable, animatable timeline."""

    def __init__(
        self,
        slices: Sequence[time_windows.TimeSlice],
        fetch_slice: slice_loader.SliceSource,
        *,
        autoplay_min_loaded: int = 3,
        speed_ms: int = 1000,
        loader_options: dict[str, Any] | None = None,
    ) -> None:
        self.slices = list(slices)
        self.autoplay_min_loaded = autoplay_min_loaded
        self.on_progress: Callable[[float], None] | None = None
        self.on_slice_loaded: Callable[[int], None] | None = None
        self.on_error: Callable[[str], None] | None = None

        self.loader = slice_loader.ProgressiveLoader(
            self.slices,
            fetch_slice,
            on_progress=self._progress,
            on_slice_loaded=self._slice_loaded,
            on_error=self._error,
            **(loader_options or {}),
        )
        self.scheduler = playback.PlaybackScheduler(
            len(self.slices),
            self.loader.is_available,
            speed_ms=speed_ms,
        )
        self._shown_first = False
        self._autoplay_started = False

    @classmethod
    def from_settings(
        cls,
        settings: config.Settings,
        fetch_slice: slice_loader.SliceSource,
        *,
        reference_time: datetime.datetime | None = None,
    ) -> TimelineSession:
        """Build a session with the configured timeline and tuning."""
        slices = time_windows.generate(
            settings.timeline_start_offset_hours,
            settings.timeline_duration_hours,
            settings.timeline_step_hours,
            reference_time or datetime.datetime.now(datetime.UTC),
        )
        return cls(
            slices,
            fetch_slice,
            autoplay_min_loaded=settings.autoplay_min_loaded,
            speed_ms=settings.playback_speed_ms,
            loader_options={
                "max_attempts": settings.slice_max_attempts,
                "attempt_timeout": settings.slice_attempt_timeout_seconds,
                "retry_backoff": settings.retry_backoff_ms / 1000,
                "inter_slice_delay": settings.inter_slice_delay_ms / 1000,
                "error_log_size": settings.error_log_size,
            },
        )

    @property
    def state(self) -> playback.PlaybackState:
        return self.scheduler.state

    def _progress(self, percent: float) -> None:
        if self.on_progress is not None:
            self.on_progress(percent)

    def _slice_loaded(self, index: int) -> None:
        if not self._shown_first:
            self._shown_first = True
            self.scheduler.seek(index)
        # Autoplay fires once; a later pause by the host is respected.
        if (
            not self._autoplay_started
            and len(self.loader.loaded_indices) >= self.autoplay_min_loaded
        ):
            self._autoplay_started = True
            if self.scheduler.play():
                logger.info("Autoplay started with %d slices", self.autoplay_min_loaded)
        if self.on_slice_loaded is not None:
            self.on_slice_loaded(index)

    def _error(self, message: str) -> None:
        if self.on_error is not None:
            self.on_error(message)

    async def load(self) -> list[slice_loader.LoadedSlice]:
        """Run the loader to completion or cancellation."""
        return await self.loader.run()

    def play(self) -> bool:
        return self.scheduler.play()

    def pause(self) -> None:
        self.scheduler.pause()

    def set_speed(self, speed_ms: int) -> None:
        self.scheduler.set_speed(speed_ms)

    def seek(self, index: int) -> bool:
        return self.scheduler.seek(index)

    def skip_remaining(self) -> None:
        """Stop loading further slices and keep what has loaded."""
        self.loader.cancel()

    def set_layer_visible(self, visible: bool) -> None:
        self.scheduler.set_layer_visible(visible)

    def error_summary(self) -> list[str]:
        """Most recent loader error messages, oldest first."""
        return list(self.loader.errors)

    async def aclose(self) -> None:
        self.loader.cancel()
        await self.scheduler.aclose()
