"""Timeline endpoint listing the time slices a client should load."""

import datetime
from typing import Any

import fastapi

from smokemap.core import config
from smokemap.services import time_windows

router = fastapi.APIRouter(prefix="/api/timeline", tags=["timeline"])

MAX_DURATION_HOURS = 24 * 14


@router.get("")
async def get_timeline(
    start_offset_hours: int | None = None,
    duration_hours: int | None = fastapi.Query(
        None,
        ge=0,
        le=MAX_DURATION_HOURS,
    ),
    step_hours: int | None = fastapi.Query(None, gt=0),
    reference_time: datetime.datetime | None = None,
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
) -> dict[str, Any]:
    """Generate the slices for a timeline.

    Unset parameters fall back to the configured timeline. Without a
    ``reference_time`` the slices are anchored at the current time.

    Returns:
        Dictionary with the reference time, slice count and the
        serialized slices in order.
    """
    reference = reference_time or datetime.datetime.now(datetime.UTC)
    slices = time_windows.generate(
        settings.timeline_start_offset_hours
        if start_offset_hours is None
        else start_offset_hours,
        settings.timeline_duration_hours
        if duration_hours is None
        else duration_hours,
        step_hours or settings.timeline_step_hours,
        reference,
    )
    return {
        "reference_time": reference.isoformat(),
        "count": len(slices),
        "slices": [s.to_dict() for s in slices],
    }
