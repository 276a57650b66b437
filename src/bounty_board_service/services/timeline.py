"""Timeline normalization for task estimates."""

from __future__ import annotations

import math

from bounty_board_service.models import TimelineType

DAYS_PER_WEEK = 7


def normalize_timeline(
    timeline: float | None,
    timeline_type: TimelineType | None,
) -> tuple[float | None, TimelineType | None]:
    """
    Fold long day estimates into weeks.

    A DAY estimate above 6 becomes ``weeks + leftover_days / 10`` in WEEK
    units, so 10 days is stored as 1.3 weeks. Anything else is returned
    unchanged.
    """
    if timeline is None or timeline_type != TimelineType.DAY or timeline <= DAYS_PER_WEEK - 1:
        return timeline, timeline_type

    weeks = math.floor(timeline / DAYS_PER_WEEK)
    leftover_days = timeline % DAYS_PER_WEEK
    return weeks + leftover_days / 10, TimelineType.WEEK
