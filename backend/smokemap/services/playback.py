"""Timer-driven playback across the loaded timeline slices.

The scheduler only ever shows slices that are available. Each tick moves
to the next available index after the current one, wraps to the first
available index at the end, and jumps to the first available index when
the current one is not available. When nothing is available the timer
stops itself.

The timer is an asyncio task independent of the loader: it never waits for
loading and picks up newly loaded slices on its next tick.
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class PlaybackState:
    """Playback position and mode.

    Attributes:
        current_index: Slice currently shown.
        is_playing: Whether the timer is running.
        speed_ms: Interval between ticks in milliseconds.
    """

    current_index: int = 0
    is_playing: bool = False
    speed_ms: int = 1000

    def to_dict(self) -> dict:
        return dataclasses.asdict(self)


class PlaybackScheduler:
    """Play/pause/seek state machine with an asyncio timer."""

    def __init__(
        self,
        slice_count: int,
        is_available: Callable[[int], bool],
        *,
        speed_ms: int = 1000,
        on_index: Callable[[int], None] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the scheduler.

        Args:
            slice_count: Number of slices on the timeline.
            is_available: Tells whether a slice index has data to show.
            speed_ms: Initial tick interval in milliseconds.
            on_index: Called with each index the scheduler moves to.
            sleep: Awaitable sleep, replaceable in tests.

        Raises:
            ValueError: If ``speed_ms`` is not positive.
        """
        if speed_ms <= 0:
            raise ValueError("speed_ms must be positive")
        self.slice_count = slice_count
        self.is_available = is_available
        self.state = PlaybackState(speed_ms=speed_ms)
        self.layer_visible = True
        self.on_index = on_index
        self._sleep = sleep
        self._task: asyncio.Task | None = None

    def available_indices(self) -> list[int]:
        return [i for i in range(self.slice_count) if self.is_available(i)]

    def next_index(self) -> int | None:
        """Index the next tick moves to, or None if nothing is available."""
        available = self.available_indices()
        if not available:
            return None
        current = self.state.current_index
        if current not in available:
            return available[0]
        position = available.index(current)
        return available[(position + 1) % len(available)]

    def _show(self, index: int) -> None:
        self.state.current_index = index
        if self.on_index is not None:
            self.on_index(index)

    def tick(self) -> int | None:
        """Advance one step; stop playback when nothing is available."""
        index = self.next_index()
        if index is None:
            logger.info("No loaded slices left, stopping playback")
            self.pause()
            return None
        self._show(index)
        return index

    async def _run(self) -> None:
        while self.state.is_playing:
            await self._sleep(self.state.speed_ms / 1000)
            if not self.state.is_playing:
                break
            self.tick()

    def _start_timer(self) -> None:
        self._task = asyncio.get_running_loop().create_task(self._run())

    def _stop_timer(self) -> None:
        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def play(self) -> bool:
        """Start the timer.

        Must be called from a running event loop.

        Returns:
            True if playback is running afterwards; False when the data
            layer is hidden.
        """
        if self.state.is_playing:
            return True
        if not self.layer_visible:
            logger.debug("Cannot start playback: layer is hidden")
            return False
        self.state.is_playing = True
        self._start_timer()
        return True

    def pause(self) -> None:
        if not self.state.is_playing:
            return
        self.state.is_playing = False
        self._stop_timer()

    def set_speed(self, speed_ms: int) -> None:
        """Change the interval, restarting a running timer in place.

        Raises:
            ValueError: If ``speed_ms`` is not positive.
        """
        if speed_ms <= 0:
            raise ValueError("speed_ms must be positive")
        self.state.speed_ms = speed_ms
        if self.state.is_playing:
            self._stop_timer()
            self._start_timer()

    def seek(self, index: int) -> bool:
        """Move to ``index``.

        Returns:
            True if the slice has data. The position moves either way so a
            slider can point at an hour that has not loaded yet.

        Raises:
            IndexError: If ``index`` is outside the timeline.
        """
        if not 0 <= index < self.slice_count:
            raise IndexError(f"Slice index {index} out of range")
        self._show(index)
        return self.is_available(index)

    def set_layer_visible(self, visible: bool) -> None:
        """Show or hide the data layer; hiding stops playback."""
        self.layer_visible = visible
        if not visible:
            self.pause()

    async def aclose(self) -> None:
        """Stop the timer and wait for it to finish."""
        task = self._task
        self.pause()
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await task
