"""
MedPlan Reminders — Scheduler Jobs

One AsyncIOScheduler runs on the application's event loop: per-reminder
one-shot timers (armed by the engine), the reconciliation sweep and the
daily admission job.
"""
import logging
from typing import Optional

from apscheduler.events import EVENT_JOB_ERROR
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from ..alerts import get_alert_surface
from ..config import get_config, get_timezone
from ..medications.models import get_rules, log_intake
from .engine import ReminderEngine
from .models import SqliteReminderStore, PendingReminder

logger = logging.getLogger(__name__)

_scheduler: Optional[AsyncIOScheduler] = None
_engine: Optional[ReminderEngine] = None


def get_reminder_scheduler() -> AsyncIOScheduler:
    """Get or create the singleton reminder scheduler."""
    global _scheduler
    if _scheduler is None:
        _scheduler = AsyncIOScheduler(
            timezone=get_timezone(),
            job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": 120},
        )
        _scheduler.add_listener(_on_job_error, EVENT_JOB_ERROR)
    return _scheduler


def _on_job_error(event):
    logger.error(f"[Reminders] Job {event.job_id} failed: {event.exception}")


def _record_taken(reminder: PendingReminder):
    log_intake(reminder.rule_id, reminder.schedule_date, reminder.time_of_day, source="alert")


def get_engine() -> ReminderEngine:
    """Get or create the process-wide reminder engine."""
    global _engine
    if _engine is None:
        _engine = ReminderEngine(
            store=SqliteReminderStore(),
            surface=get_alert_surface(),
            scheduler=get_reminder_scheduler(),
            list_active_rules=lambda: get_rules(active_only=True),
            on_dose_taken=_record_taken,
        )
    return _engine


def reset_engine():
    """Drop the singletons; the next get_engine() builds fresh ones."""
    global _engine, _scheduler
    if _scheduler is not None and _scheduler.running:
        _scheduler.shutdown(wait=False)
    _engine = None
    _scheduler = None


async def _sweep_job():
    await get_engine().sweep()


async def _daily_admission_job():
    get_engine().sync_rules()


def init_reminder_scheduler() -> ReminderEngine:
    """Restore the engine and register/start the scheduler jobs. Must run inside the event loop."""
    engine = get_engine()
    scheduler = get_reminder_scheduler()

    if scheduler.running:
        return engine

    engine.start()

    # Reconciliation sweep: survives lost timers
    scheduler.add_job(
        _sweep_job,
        "interval",
        seconds=get_config("sweep_interval_seconds", 60),
        id="reminder_sweep",
        replace_existing=True,
    )

    # Admit the new day's doses shortly after midnight
    scheduler.add_job(
        _daily_admission_job,
        "cron",
        hour=0,
        minute=5,
        id="reminder_daily_admission",
        replace_existing=True,
    )

    scheduler.start()
    logger.info(f"[Reminders] Scheduler started with sweep, daily admission and {len(engine.pending())} pending reminder(s)")
    return engine


def shutdown_reminder_scheduler():
    if _engine is not None:
        _engine.shutdown()
    if _scheduler is not None and _scheduler.running:
        _scheduler.shutdown(wait=False)
        logger.info("[Reminders] Scheduler stopped")
