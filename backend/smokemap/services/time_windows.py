"""Time slice generation for the forecast timeline.

A timeline is a run of equal-width slices anchored at a reference "now".
Slice ``i`` starts ``offset_start_hours + i * step_hours`` hours from the
reference time, so a start offset of -12 with 48 one-hour steps covers the
last half day and the next day and a half.

Example:
    >>> import datetime
    >>> from smokemap.services import time_windows
    >>> now = datetime.datetime(2025, 8, 1, 12, tzinfo=datetime.UTC)
    >>> slices = time_windows.generate(-12, 48, 1, now)
    >>> len(slices), slices[12].is_now
    (48, True)
"""

from __future__ import annotations

import dataclasses
import datetime
from typing import Any


@dataclasses.dataclass(frozen=True)
class TimeSlice:
    """One step of the timeline.

    Attributes:
        index: Position in the timeline, starting at 0.
        start: Inclusive start as an aware datetime.
        end: Exclusive end as an aware datetime.
        relative_offset: Signed whole hours between the reference time and
            ``start``.
    """

    index: int
    start: datetime.datetime
    end: datetime.datetime
    relative_offset: int

    @property
    def is_past(self) -> bool:
        return self.relative_offset < 0

    @property
    def is_future(self) -> bool:
        return self.relative_offset > 0

    @property
    def is_now(self) -> bool:
        return self.relative_offset == 0

    @property
    def start_ms(self) -> int:
        """Start as epoch milliseconds, the unit map services query with."""
        return int(self.start.timestamp() * 1000)

    @property
    def end_ms(self) -> int:
        return int(self.end.timestamp() * 1000)

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "start": self.start_ms,
            "end": self.end_ms,
            "datetime": self.start.isoformat(),
            "relative_hour": self.relative_offset,
            "is_past": self.is_past,
            "is_future": self.is_future,
            "is_now": self.is_now,
        }


def generate(
    offset_start_hours: int,
    duration_hours: int,
    step_hours: int,
    reference_time: datetime.datetime,
) -> list[TimeSlice]:
    """Build the ordered slices for a timeline.

    The result depends only on the arguments, so calling it twice with the
    same reference time yields equal slices.

    Args:
        offset_start_hours: Hours from ``reference_time`` to the first slice.
        duration_hours: Total span covered; must be non-negative.
        step_hours: Width of each slice; must be positive.
        reference_time: The "now" that offsets are measured from. Naive
            datetimes are taken as UTC.

    Returns:
        ``duration_hours // step_hours`` slices in ascending time order.

    Raises:
        ValueError: If ``step_hours`` is not positive or ``duration_hours``
            is negative.
    """
    if step_hours <= 0:
        raise ValueError(f"step_hours must be positive, got {step_hours}")
    if duration_hours < 0:
        raise ValueError(
            f"duration_hours must not be negative, got {duration_hours}"
        )

    if reference_time.tzinfo is None:
        reference_time = reference_time.replace(tzinfo=datetime.UTC)

    step = datetime.timedelta(hours=step_hours)
    first = reference_time + datetime.timedelta(hours=offset_start_hours)

    return [
        TimeSlice(
            index=i,
            start=first + i * step,
            end=first + (i + 1) * step,
            relative_offset=offset_start_hours + i * step_hours,
        )
        for i in range(duration_hours // step_hours)
    ]
