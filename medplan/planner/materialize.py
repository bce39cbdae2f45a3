"""
MedPlan Planner — Dose Materializer

Turns a medication rule into the concrete dose instants of one calendar day.
Recalculation after a late dose is never applied here; every day starts
from the undisturbed rule.
"""
import datetime
from typing import List, Iterable

from .models import MINUTES_PER_DAY, DoseInstant, MedicationRule, minutes_to_time
from .partition import partition_minutes


def base_schedule(rule: MedicationRule, day: datetime.date, tz=None) -> List[DoseInstant]:
    """Partition the rule's window for ``day`` without checking active dates."""
    doses = []
    for offset in partition_minutes(rule.window_start, rule.window_end, rule.doses_per_day):
        days, minutes = divmod(offset, MINUTES_PER_DAY)
        scheduled_at = datetime.datetime.combine(
            day + datetime.timedelta(days=days), minutes_to_time(minutes), tzinfo=tz
        )
        doses.append(DoseInstant(
            rule_id=rule.id,
            date=day,
            time_of_day=minutes_to_time(offset),
            scheduled_at=scheduled_at,
            name=rule.name,
            dosage=rule.dosage,
        ))
    return sorted(doses, key=lambda d: d.scheduled_at)


def materialize(rule: MedicationRule, day: datetime.date, tz=None) -> List[DoseInstant]:
    """Dose instants of ``rule`` for ``day``; empty when the rule is not active that day."""
    if not rule.is_active_on(day):
        return []
    return base_schedule(rule, day, tz)


def materialize_rules(rules: Iterable[MedicationRule], day: datetime.date, tz=None) -> List[DoseInstant]:
    """Combined timeline of every rule for ``day``, ordered by instant."""
    doses = []
    for rule in rules:
        doses.extend(materialize(rule, day, tz))
    return sorted(doses, key=lambda d: (d.scheduled_at, d.rule_id))
