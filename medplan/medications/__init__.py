"""
MedPlan Medications Module
Medication rules, dose intake and adherence.
"""
from .models import (
    get_rules, get_rule, create_rule, update_rule, delete_rule,
    log_intake, get_intakes, adherence_rate, adherence_summary,
)

__all__ = [
    "get_rules",
    "get_rule",
    "create_rule",
    "update_rule",
    "delete_rule",
    "log_intake",
    "get_intakes",
    "adherence_rate",
    "adherence_summary",
]
