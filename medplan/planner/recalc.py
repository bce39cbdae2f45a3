"""
MedPlan Planner — Delay-Aware Recalculator

When a dose is taken late, the rest of that day's doses are pushed so that
they still fit before the window closes, but never closer together than the
minimum spacing. Only the affected schedule day is revised.
"""
import datetime
import logging
from typing import List

from .materialize import base_schedule
from .models import MINUTES_PER_DAY, DoseInstant, MedicationRule, to_minutes
from .partition import MIN_DOSE_SPACING_MINUTES

logger = logging.getLogger(__name__)


def _window_end_at(rule: MedicationRule, day: datetime.date, tz) -> datetime.datetime:
    start = to_minutes(rule.window_start)
    end = to_minutes(rule.window_end)
    if end <= start:
        end += MINUTES_PER_DAY
    midnight = datetime.datetime.combine(day, datetime.time(0, 0), tzinfo=tz)
    return midnight + datetime.timedelta(minutes=end)


def recalculate(
    rule: MedicationRule,
    missed_dose: DoseInstant,
    now: datetime.datetime,
    min_spacing: int = MIN_DOSE_SPACING_MINUTES,
) -> List[DoseInstant]:
    """
    Revised remainder of the missed dose's day.

    The first entry is the missed dose itself, taken at ``now``. The ``k``
    doses that followed it in the base schedule are spaced
    ``max(min_spacing, (window_end - now) / k)`` apart from ``now``, which
    may run past the configured window end and into the next calendar day.

    Returns an empty list when ``missed_dose`` is not part of the base
    schedule of its day.
    """
    tz = now.tzinfo
    todays = base_schedule(rule, missed_dose.date, tz)
    keys = [(d.date, d.time_of_day) for d in todays]
    try:
        index = keys.index((missed_dose.date, missed_dose.time_of_day))
    except ValueError:
        logger.info(
            f"[Planner] Dose {missed_dose.time_of_day} on {missed_dose.date} "
            f"is not in the base schedule of rule {rule.id}; nothing to recalculate"
        )
        return []

    revised = [_revised(rule, missed_dose.date, now)]

    remaining = len(todays) - index - 1
    if remaining <= 0:
        return revised

    available = (_window_end_at(rule, missed_dose.date, tz) - now).total_seconds()
    floor = min_spacing * 60
    interval = datetime.timedelta(seconds=max(floor, max(available, 0) / remaining))

    for i in range(1, remaining + 1):
        revised.append(_revised(rule, missed_dose.date, now + interval * i))
    return revised


def _revised(rule: MedicationRule, day: datetime.date, at: datetime.datetime) -> DoseInstant:
    return DoseInstant(
        rule_id=rule.id,
        date=day,
        time_of_day=at.time().replace(microsecond=0, tzinfo=None),
        scheduled_at=at,
        name=rule.name,
        dosage=rule.dosage,
        revised=True,
    )
