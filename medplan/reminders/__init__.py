"""
MedPlan Reminders Module
Pending reminders, one-shot delivery timers, the reconciliation sweep and
alert interactions.
"""
from .routes import register_reminder_routes
from .scheduler_jobs import init_reminder_scheduler, shutdown_reminder_scheduler, get_engine
from .engine import ReminderEngine
from .models import PendingReminder, ReminderState, ReminderStore, SqliteReminderStore

__all__ = [
    "register_reminder_routes",
    "init_reminder_scheduler",
    "shutdown_reminder_scheduler",
    "get_engine",
    "ReminderEngine",
    "PendingReminder",
    "ReminderState",
    "ReminderStore",
    "SqliteReminderStore",
]
