"""
MedPlan Planner
Dose-time generation: window partitioning, per-day materialization and
late-dose recalculation.
"""
from .models import MedicationRule, DoseInstant, to_minutes, format_time
from .partition import partition, partition_minutes, generate_schedule, MIN_DOSE_SPACING_MINUTES
from .materialize import materialize, materialize_rules, base_schedule
from .recalc import recalculate

__all__ = [
    "MedicationRule",
    "DoseInstant",
    "to_minutes",
    "format_time",
    "partition",
    "partition_minutes",
    "generate_schedule",
    "MIN_DOSE_SPACING_MINUTES",
    "materialize",
    "materialize_rules",
    "base_schedule",
    "recalculate",
]
