"""
MedPlan Planner — Time-Window Partitioner

Spreads a number of daily doses across a time-of-day window. Windows whose
end is not after their start wrap past midnight ("22:00" -> "06:00").
"""
import datetime
from typing import List, Optional

from ..errors import InvalidCount, InvalidWindow
from .models import MINUTES_PER_DAY, TimeOfDay, to_minutes, minutes_to_time, format_time

MIN_DOSE_SPACING_MINUTES = 120


def window_minutes(window_start: TimeOfDay, window_end: TimeOfDay) -> tuple:
    """Return (start, end) in minutes since midnight, with end pushed past midnight when the window wraps."""
    start = to_minutes(window_start)
    end = to_minutes(window_end)
    if end <= start:
        end += MINUTES_PER_DAY
    return start, end


def _check_count(count) -> int:
    if isinstance(count, bool) or not isinstance(count, int) or count <= 0:
        raise InvalidCount(f"Dose count must be a positive integer, got {count!r}")
    return count


def check_window_fits(window_start: TimeOfDay, window_end: TimeOfDay, count: int):
    """Raise InvalidWindow when the window has fewer minutes than gaps between ``count`` doses."""
    start, end = window_minutes(window_start, window_end)
    count = _check_count(count)
    if count > 1 and end - start < count - 1:
        raise InvalidWindow(
            f"Window {format_time(start)}-{format_time(end)} is too narrow for {count} doses"
        )
    return start, end


def partition_minutes(window_start: TimeOfDay, window_end: TimeOfDay, count: int) -> List[int]:
    """
    Dose offsets in minutes since the start day's midnight, rounded to the minute.

    Values may exceed 24h for wrapping windows; partition() folds them back.
    A single dose sits at the window midpoint, otherwise the first and last
    doses land exactly on the window bounds. Doses are at least a minute
    apart, so the rounded values stay strictly increasing.
    """
    start, end = check_window_fits(window_start, window_end, count)

    if count == 1:
        return [int(round(start + (end - start) / 2))]

    interval = (end - start) / (count - 1)
    return [int(round(start + i * interval)) for i in range(count)]


def partition(window_start: TimeOfDay, window_end: TimeOfDay, count: int) -> List[datetime.time]:
    """Ordered times of day for ``count`` doses inside the window."""
    return [minutes_to_time(m) for m in partition_minutes(window_start, window_end, count)]


def generate_schedule(
    window_start: TimeOfDay,
    window_end: TimeOfDay,
    count: int,
    delay_minutes: Optional[float] = None,
    min_spacing: int = MIN_DOSE_SPACING_MINUTES,
) -> List[str]:
    """
    Daily schedule as ``"HH:MM"`` strings.

    Without a delay this is partition(). With ``delay_minutes`` the first dose
    is taken late at ``window_start + delay`` and the remaining doses are
    spread over what is left of the window, never closer than ``min_spacing``
    minutes apart; the window end moves forward when it has to.
    """
    start, end = window_minutes(window_start, window_end)
    _check_count(count)

    if not delay_minutes:
        return [format_time(m) for m in partition_minutes(window_start, window_end, count)]

    if delay_minutes < 0:
        raise ValueError(f"delay_minutes must not be negative, got {delay_minutes!r}")

    current = start + delay_minutes
    schedule = [format_time(current)]
    if count == 1:
        return schedule

    remaining = count - 1
    available = max(end - current, 0)
    interval = max(min_spacing, available / remaining)

    for i in range(1, remaining + 1):
        schedule.append(format_time(current + i * interval))
    return schedule
