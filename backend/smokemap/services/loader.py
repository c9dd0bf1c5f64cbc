"""Sequential, retrying acquisition of timeline slices.

The loader walks the slices strictly in index order so that playback can
start on the earliest data while later slices are still arriving. Each
slice gets up to ``max_attempts`` attempts, every attempt bounded by
``attempt_timeout``, with a linear backoff of ``attempt * retry_backoff``
seconds between attempts. A slice that exhausts its attempts is marked
failed and loading moves on; one bad hour never aborts the session.

A short pause separates consecutive slices to keep the upstream service
from being hammered. ``cancel()`` sets a flag that is checked before every
attempt; work already in flight is allowed to finish.

Example:
    >>> loader = ProgressiveLoader(slices, smoke_service.fetch_slice)
    >>> results = await loader.run()
    >>> [r.status for r in results][:3]
    [<SliceStatus.LOADED: 'loaded'>, <SliceStatus.EMPTY: 'empty'>, ...]
"""

from __future__ import annotations

import asyncio
import collections
import dataclasses
import enum
import logging
from typing import TYPE_CHECKING

from smokemap.core import errors

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Sequence

    from smokemap.services import geometry, time_windows

    SliceSource = Callable[
        [time_windows.TimeSlice],
        Awaitable[Sequence[geometry.Feature]],
    ]

logger = logging.getLogger(__name__)


class SliceStatus(enum.Enum):
    """Load status of a single slice."""

    PENDING = "pending"
    LOADED = "loaded"
    EMPTY = "empty"
    FAILED = "failed"


class LoaderState(enum.Enum):
    """Lifecycle of a loader run."""

    IDLE = "idle"
    LOADING = "loading"
    COMPLETE = "complete"
    CANCELLED = "cancelled"


@dataclasses.dataclass
class LoadedSlice:
    """A time slice and the data acquired for it.

    Attributes:
        slice: The time slice.
        features: Canonical features, empty unless loaded.
        status: Current status; leaves PENDING at most once.
        error: Last error message when the slice failed.
        attempts: Number of attempts made.
    """

    slice: time_windows.TimeSlice
    features: tuple[geometry.Feature, ...] = ()
    status: SliceStatus = SliceStatus.PENDING
    error: str | None = None
    attempts: int = 0

    @property
    def is_available(self) -> bool:
        return self.status is SliceStatus.LOADED

    def resolve(
        self,
        status: SliceStatus,
        features: Sequence[geometry.Feature] = (),
        error: str | None = None,
    ) -> None:
        """Record the outcome of the slice.

        Raises:
            RuntimeError: If the slice was already resolved, or ``status``
                is PENDING.
        """
        if self.status is not SliceStatus.PENDING:
            raise RuntimeError(
                f"Slice {self.slice.index} already resolved as "
                f"{self.status.value}"
            )
        if status is SliceStatus.PENDING:
            raise RuntimeError("A slice cannot be resolved back to pending")
        self.status = status
        self.features = tuple(features)
        self.error = error

    def to_dict(self) -> dict:
        return {
            **self.slice.to_dict(),
            "status": self.status.value,
            "feature_count": len(self.features),
            "error": self.error,
            "attempts": self.attempts,
        }


def _label(time_slice: time_windows.TimeSlice) -> str:
    return f"Hour {time_slice.index + 1} ({time_slice.relative_offset:+d}h)"


class ProgressiveLoader:
    """Loads every slice in order, tolerating per-slice failure."""

    def __init__(
        self,
        slices: Sequence[time_windows.TimeSlice],
        fetch_slice: SliceSource,
        *,
        max_attempts: int = 2,
        attempt_timeout: float = 30.0,
        retry_backoff: float = 1.0,
        inter_slice_delay: float = 0.15,
        error_log_size: int = 10,
        on_progress: Callable[[float], None] | None = None,
        on_slice_loaded: Callable[[int], None] | None = None,
        on_error: Callable[[str], None] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the loader.

        Args:
            slices: Slices to load, in timeline order.
            fetch_slice: Coroutine function returning a slice's features.
            max_attempts: Total attempts per slice, at least 1.
            attempt_timeout: Seconds allowed for one attempt.
            retry_backoff: Backoff unit in seconds; attempt ``n`` waits
                ``n * retry_backoff`` before the next one.
            inter_slice_delay: Seconds to pause between slices.
            error_log_size: Number of recent error messages kept.
            on_progress: Called with a 0-100 percentage after each slice.
            on_slice_loaded: Called with the index of each LOADED slice.
            on_error: Called with the message of each FAILED slice.
            sleep: Awaitable sleep, replaceable in tests.

        Raises:
            ValueError: If ``max_attempts`` is less than 1.
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.results = [LoadedSlice(s) for s in slices]
        self.fetch_slice = fetch_slice
        self.max_attempts = max_attempts
        self.attempt_timeout = attempt_timeout
        self.retry_backoff = retry_backoff
        self.inter_slice_delay = inter_slice_delay
        self.errors: collections.deque[str] = collections.deque(
            maxlen=error_log_size
        )
        self.on_progress = on_progress
        self.on_slice_loaded = on_slice_loaded
        self.on_error = on_error
        self._sleep = sleep
        self._cancelled = False
        self.state = LoaderState.IDLE

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def loaded_indices(self) -> list[int]:
        return [r.slice.index for r in self.results if r.is_available]

    @property
    def progress(self) -> float:
        """Percentage of slices that are no longer pending."""
        if not self.results:
            return 100.0
        done = sum(r.status is not SliceStatus.PENDING for r in self.results)
        return 100.0 * done / len(self.results)

    def cancel(self) -> None:
        """Stop before the next attempt; keep whatever has loaded."""
        if not self._cancelled:
            logger.info("Loading cancelled, continuing with partial data")
        self._cancelled = True

    def is_available(self, index: int) -> bool:
        return 0 <= index < len(self.results) and self.results[index].is_available

    async def load_slice(self, index: int) -> LoadedSlice:
        """Acquire one slice with retry, resolving it unless cancelled."""
        entry = self.results[index]
        label = _label(entry.slice)
        last_error: BaseException | None = None

        for attempt in range(1, self.max_attempts + 1):
            if self._cancelled:
                return entry

            entry.attempts = attempt
            try:
                features = await asyncio.wait_for(
                    self.fetch_slice(entry.slice),
                    timeout=self.attempt_timeout,
                )
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "Attempt %d/%d failed for %s: %s",
                    attempt,
                    self.max_attempts,
                    label,
                    exc or type(exc).__name__,
                )
                if attempt < self.max_attempts:
                    await self._sleep(self.retry_backoff * attempt)
                continue

            if features:
                entry.resolve(SliceStatus.LOADED, features)
                logger.debug("%s loaded with %d features", label, len(features))
                if self.on_slice_loaded is not None:
                    self.on_slice_loaded(index)
            else:
                entry.resolve(SliceStatus.EMPTY)
                logger.debug("%s has no data", label)
            return entry

        if isinstance(last_error, TimeoutError):
            reason = f"timed out after {self.attempt_timeout:g}s"
        elif isinstance(last_error, errors.SmokeMapError):
            reason = str(last_error)
        else:
            reason = f"{type(last_error).__name__}: {last_error}"
        message = f"{label}: {reason}"
        entry.resolve(SliceStatus.FAILED, error=message)
        self.errors.append(message)
        if self.on_error is not None:
            self.on_error(message)
        return entry

    async def run(self) -> list[LoadedSlice]:
        """Load every slice in order until done or cancelled.

        Returns:
            The per-slice results, in timeline order.
        """
        self.state = LoaderState.LOADING
        last = len(self.results) - 1
        finished = False
        try:
            for index in range(len(self.results)):
                if self._cancelled:
                    break
                await self.load_slice(index)
                if self.on_progress is not None:
                    self.on_progress(self.progress)
                if index < last and not self._cancelled:
                    await self._sleep(self.inter_slice_delay)
            finished = True
        finally:
            # A task cancelled mid-slice still leaves the LOADING state.
            self.state = (
                LoaderState.COMPLETE
                if finished and not self._cancelled
                else LoaderState.CANCELLED
            )
        logger.info(
            "Loading finished: %d loaded, %d failed of %d slices",
            len(self.loaded_indices),
            sum(r.status is SliceStatus.FAILED for r in self.results),
            len(self.results),
        )
        return self.results
