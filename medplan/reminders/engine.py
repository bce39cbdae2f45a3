"""
MedPlan Reminders — Delivery Engine

Turns dose instants into alerts delivered exactly once.

Two triggers race for every reminder: a one-shot APScheduler job armed at
the target time, and the periodic reconciliation sweep that survives lost
timers across restarts. Both run on the same event loop and both go through
deliver(), which only acts on reminders still in the ``scheduled`` state
and not already on their way to the alert surface, so whichever trigger
comes first wins and the other is a no-op.

Reminder rows are kept in a ReminderStore. When the store fails the engine
keeps working from its in-memory copy, warns once, and writes everything
back on the next admission.
"""
import datetime
import logging
from typing import Callable, Dict, Iterable, List, Optional, Set

from apscheduler.jobstores.base import JobLookupError
from apscheduler.triggers.date import DateTrigger

from ..alerts.base import AlertSurface, DeliveryResult
from ..config import get_config, get_local_now, get_timezone
from ..errors import AlertSurfaceDenied, PersistenceUnavailable, ReminderNotFound
from ..planner import DoseInstant, MedicationRule, materialize, base_schedule, recalculate
from ..planner.partition import MIN_DOSE_SPACING_MINUTES
from .models import PendingReminder, ReminderState, ReminderStore

logger = logging.getLogger(__name__)

INTERACTION_ACTIONS = ("taken", "snooze", "dismiss")


class ReminderEngine:
    """
    Owns every armed timer and every in-session reminder.

    All mutation goes through the public methods below; they are meant to be
    called from a single event loop (request handlers and scheduler jobs).
    """

    def __init__(
        self,
        store: ReminderStore,
        surface: AlertSurface,
        scheduler=None,
        clock: Callable[[], datetime.datetime] = None,
        list_active_rules: Callable[[], List[MedicationRule]] = None,
        on_dose_taken: Callable[[PendingReminder], None] = None,
        tolerance_seconds: int = None,
        staleness_seconds: int = None,
        horizon_days: int = None,
        snooze_minutes: int = None,
        min_spacing_minutes: int = None,
    ):
        self.store = store
        self.surface = surface
        self.scheduler = scheduler
        self.clock = clock or get_local_now
        self.list_active_rules = list_active_rules
        self.on_dose_taken = on_dose_taken

        self.tolerance = datetime.timedelta(
            seconds=tolerance_seconds if tolerance_seconds is not None else get_config("tolerance_seconds", 30))
        self.staleness = datetime.timedelta(
            seconds=staleness_seconds if staleness_seconds is not None else get_config("staleness_seconds", 3600))
        self.horizon_days = horizon_days if horizon_days is not None else get_config("horizon_days", 1)
        self.snooze = datetime.timedelta(
            minutes=snooze_minutes if snooze_minutes is not None else get_config("snooze_minutes", 10))
        self.min_spacing = (min_spacing_minutes if min_spacing_minutes is not None
                            else get_config("min_dose_spacing_minutes", MIN_DOSE_SPACING_MINUTES))

        # reminder_id -> reminder, the session's authoritative view
        self._reminders: Dict[str, PendingReminder] = {}
        # reminder_id -> APScheduler job id
        self._timers: Dict[str, str] = {}
        # reminder_id -> target_at of rows removed this session; the store must not resurrect them
        self._removed: Dict[str, datetime.datetime] = {}
        # ids whose alert is on its way to the surface
        self._in_flight: Set[str] = set()
        self._degraded = False
        self._permission: Optional[bool] = None
        self._denied_logged = False
        self._denied_notice_pending = False

    # ------------------------------------------------------------------
    # Clock / permission
    # ------------------------------------------------------------------

    def _now(self) -> datetime.datetime:
        return self.clock()

    @property
    def tz(self):
        now = self._now()
        return now.tzinfo or get_timezone()

    def refresh_permission(self) -> bool:
        """Ask the alert surface whether alerts may be shown."""
        try:
            granted = bool(self.surface.request_permission())
        except Exception as e:
            logger.error(f"[Reminders] Permission check failed: {e}", exc_info=True)
            granted = False
        self.set_permission(granted)
        return granted

    def set_permission(self, granted: bool):
        """Inbound permission event from the alert surface."""
        previous = self._permission
        self._permission = bool(granted)
        if self._permission:
            self._denied_logged = False
            self._denied_notice_pending = False
            if previous is False:
                logger.info("[Reminders] Alert permission granted, scheduling resumed")
        elif previous is not False:
            self._denied_notice_pending = True

    @property
    def permission_granted(self) -> bool:
        if self._permission is None:
            self.refresh_permission()
        return bool(self._permission)

    def _require_permission(self):
        if not self.permission_granted:
            raise AlertSurfaceDenied("Alert permission has not been granted")

    def _log_denied(self, e: AlertSurfaceDenied):
        if not self._denied_logged:
            logger.warning(f"[Reminders] {e}; reminders are paused until permission is granted")
            self._denied_logged = True

    def consume_denied_notice(self) -> bool:
        """True exactly once after permission is found denied, so callers tell the user once per session."""
        if self._denied_notice_pending and self._permission is False:
            self._denied_notice_pending = False
            return True
        return False

    # ------------------------------------------------------------------
    # Persistence (write-through, degrade to memory)
    # ------------------------------------------------------------------

    @property
    def degraded(self) -> bool:
        return self._degraded

    def _mark_degraded(self, e: PersistenceUnavailable):
        if not self._degraded:
            logger.warning(f"[Reminders] Reminder store unavailable, continuing in memory only (degraded durability): {e}")
        self._degraded = True

    def _persist(self, reminder: PendingReminder):
        try:
            self.store.put(reminder)
        except PersistenceUnavailable as e:
            self._mark_degraded(e)

    def _audit(self, reminder: PendingReminder, event: str, details: str = None):
        try:
            self.store.log_event(reminder, event, details, timestamp=self._now())
        except PersistenceUnavailable as e:
            logger.warning(f"[Reminders] Could not record {event} for {reminder.id}: {e}")

    def _flush(self):
        """Write the in-memory view back after a store outage."""
        try:
            for reminder in list(self._reminders.values()):
                self.store.put(reminder)
            for reminder_id in list(self._removed):
                self.store.delete(reminder_id)
        except PersistenceUnavailable as e:
            logger.debug(f"[Reminders] Store still unavailable: {e}")
            return
        self._degraded = False
        logger.info(f"[Reminders] Reminder store available again, flushed {len(self._reminders)} reminder(s)")

    def _lookup(self, reminder_id: str) -> Optional[PendingReminder]:
        reminder = self._reminders.get(reminder_id)
        if reminder is not None or reminder_id in self._removed:
            return reminder
        try:
            reminder = self.store.get(reminder_id)
        except PersistenceUnavailable as e:
            self._mark_degraded(e)
            return None
        if reminder is not None:
            self._reminders[reminder.id] = reminder
        return reminder

    def _snapshot(self) -> List[PendingReminder]:
        """In-memory reminders merged with whatever the store holds."""
        try:
            stored = self.store.get_all()
        except PersistenceUnavailable as e:
            self._mark_degraded(e)
            stored = []
        for reminder in stored:
            if reminder.id not in self._reminders and reminder.id not in self._removed:
                self._reminders[reminder.id] = reminder
        return sorted(self._reminders.values(), key=lambda r: r.target_at)

    def get(self, reminder_id: str) -> Optional[PendingReminder]:
        return self._lookup(reminder_id)

    def pending(self) -> List[PendingReminder]:
        """Reminders still waiting to be delivered."""
        return [r for r in self._snapshot() if r.is_scheduled]

    def all_reminders(self) -> List[PendingReminder]:
        return self._snapshot()

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def horizon_end(self) -> datetime.datetime:
        """Midnight after the last day of the scheduling horizon."""
        now = self._now()
        last_day = now.date() + datetime.timedelta(days=self.horizon_days + 1)
        return datetime.datetime.combine(last_day, datetime.time(0, 0), tzinfo=now.tzinfo)

    def admit(self, instant: DoseInstant) -> Optional[PendingReminder]:
        """
        Create the reminder for one dose instant if it falls inside the horizon.

        Re-admitting an instant returns the existing reminder untouched.
        """
        return self._admit(instant)[0]

    def _admit(self, instant: DoseInstant) -> tuple:
        try:
            self._require_permission()
        except AlertSurfaceDenied as e:
            self._log_denied(e)
            return None, False

        if self._degraded:
            self._flush()

        now = self._now()
        target = instant.scheduled_at
        if target >= self.horizon_end():
            return None, False
        if now - target > self.staleness:
            return None, False

        existing = self._lookup(instant.reminder_id)
        if existing is not None:
            return existing, False

        reminder = PendingReminder.from_instant(instant, now)
        return self._add(reminder), True

    def _add(self, reminder: PendingReminder) -> PendingReminder:
        self._removed.pop(reminder.id, None)
        self._reminders[reminder.id] = reminder
        self._persist(reminder)
        self.arm(reminder)
        logger.debug(f"[Reminders] Admitted {reminder.id} for {reminder.target_at.isoformat()}")
        return reminder

    def schedule_reminders(self, instants: Iterable[DoseInstant]) -> int:
        """Admit every instant; returns how many new reminders were created."""
        created = 0
        for instant in instants:
            if self._admit(instant)[1]:
                created += 1
        return created

    def sync_rules(self, rules: Optional[List[MedicationRule]] = None) -> int:
        """Materialize yesterday through the end of the horizon for every active rule and admit."""
        if rules is None:
            if self.list_active_rules is None:
                return 0
            rules = self.list_active_rules()

        today = self._now().date()
        instants = []
        for rule in rules:
            for offset in range(-1, self.horizon_days + 1):
                instants.extend(materialize(rule, today + datetime.timedelta(days=offset), self.tz))

        created = self.schedule_reminders(instants)
        logger.info(f"[Reminders] Synced {len(rules)} rule(s), {created} new reminder(s)")
        return created

    # ------------------------------------------------------------------
    # Arming
    # ------------------------------------------------------------------

    def arm(self, reminder: PendingReminder):
        """Arm a one-shot timer at the target time, or right away if it already passed."""
        if self.scheduler is None or not reminder.is_scheduled:
            return

        self._disarm(reminder.id)
        run_at = max(reminder.target_at, self._now())
        job_id = f"reminder:{reminder.id}"
        self.scheduler.add_job(
            self._fire_job,
            trigger=DateTrigger(run_date=run_at),
            id=job_id,
            args=[reminder.id],
            replace_existing=True,
            misfire_grace_time=None,
        )
        self._timers[reminder.id] = job_id

    def _disarm(self, reminder_id: str):
        job_id = self._timers.pop(reminder_id, None)
        if job_id is None or self.scheduler is None:
            return
        try:
            self.scheduler.remove_job(job_id)
        except JobLookupError:
            pass  # already fired

    def is_armed(self, reminder_id: str) -> bool:
        return reminder_id in self._timers

    async def _fire_job(self, reminder_id: str):
        await self.fire(reminder_id)

    async def fire(self, reminder_id: str) -> bool:
        """Timer callback."""
        self._timers.pop(reminder_id, None)
        return await self.deliver(reminder_id, trigger="timer")

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def deliver(self, reminder_id: str, trigger: str = "manual") -> bool:
        """
        Show the reminder if it is still scheduled.

        Returns True only when this call displayed the alert. A second
        trigger arriving while the first is still awaiting the surface is a
        no-op.
        """
        try:
            reminder = self._lookup(reminder_id)
            if reminder is None:
                raise ReminderNotFound(reminder_id)
        except ReminderNotFound:
            logger.debug(f"[Reminders] {trigger}: reminder {reminder_id} no longer exists")
            return False

        if not reminder.is_scheduled:
            logger.debug(f"[Reminders] {trigger}: reminder {reminder_id} already {reminder.state.value}")
            return False
        if reminder_id in self._in_flight:
            logger.debug(f"[Reminders] {trigger}: reminder {reminder_id} already being delivered")
            return False

        try:
            self._require_permission()
        except AlertSurfaceDenied as e:
            self._log_denied(e)
            return False

        self._in_flight.add(reminder_id)
        try:
            result = await self.surface.display(reminder.payload)
        except Exception as e:
            logger.error(f"[Reminders] Alert surface raised for {reminder_id}: {e}", exc_info=True)
            result = DeliveryResult(success=False, surface=self.surface.surface_name, tag=reminder.payload.tag, error=str(e))
        finally:
            self._in_flight.discard(reminder_id)

        if not reminder.is_scheduled or self._reminders.get(reminder_id) is not reminder:
            logger.info(f"[Reminders] {reminder_id} was {reminder.state.value} while its alert was in flight")
            return False

        if not result.success:
            reminder.attempts += 1
            self._persist(reminder)
            logger.warning(
                f"[Reminders] Delivery of {reminder_id} failed ({trigger}, attempt {reminder.attempts}): {result.error}"
            )
            return False

        reminder.state = ReminderState.DELIVERED
        reminder.delivered_at = self._now()
        self._disarm(reminder_id)
        self._persist(reminder)
        self._audit(reminder, "delivered", trigger)
        logger.info(f"[Reminders] Delivered {reminder_id} via {result.surface} ({trigger})")
        return True

    # ------------------------------------------------------------------
    # Reconciliation sweep
    # ------------------------------------------------------------------

    async def sweep(self) -> Dict[str, int]:
        """
        Reconcile the reminder table against the clock.

        Due reminders (within the tolerance window, or retried after a failed
        attempt) are delivered; reminders past the staleness threshold are
        expired and purged; retired rows are purged once stale.
        """
        now = self._now()
        stats = {"delivered": 0, "expired": 0, "purged": 0}

        for reminder in self._snapshot():
            late = now - reminder.target_at

            if reminder.is_scheduled:
                if late > self.staleness:
                    self._expire(reminder)
                    stats["expired"] += 1
                    stats["purged"] += 1
                elif abs(late) <= self.tolerance or (reminder.attempts and late >= datetime.timedelta(0)):
                    if await self.deliver(reminder.id, trigger="sweep"):
                        stats["delivered"] += 1
            elif late > self.staleness:
                self._purge(reminder)
                stats["purged"] += 1

        self._prune_removed(now)

        if any(stats.values()):
            logger.info(
                f"[Reminders] Sweep: {stats['delivered']} delivered, "
                f"{stats['expired']} expired, {stats['purged']} purged"
            )
        return stats

    def _expire(self, reminder: PendingReminder):
        reminder.state = ReminderState.EXPIRED
        self._disarm(reminder.id)
        self._audit(reminder, "expired")
        self._purge(reminder)
        logger.info(f"[Reminders] Expired {reminder.id} (target {reminder.target_at.isoformat()})")

    def _purge(self, reminder: PendingReminder):
        self._reminders.pop(reminder.id, None)
        self._removed[reminder.id] = reminder.target_at
        try:
            self.store.delete(reminder.id)
        except PersistenceUnavailable as e:
            self._mark_degraded(e)

    def _prune_removed(self, now: datetime.datetime):
        """Forget removed ids that admission would refuse anyway."""
        if self._degraded:
            # deletions not yet written back
            return
        for reminder_id, target_at in list(self._removed.items()):
            if now - target_at > self.staleness:
                del self._removed[reminder_id]

    # ------------------------------------------------------------------
    # Restoration
    # ------------------------------------------------------------------

    def restore(self) -> int:
        """
        Reload stored reminders after a restart and re-arm future ones.

        Reminders already past their target are left to the next sweep.
        """
        try:
            stored = self.store.get_all()
        except PersistenceUnavailable as e:
            self._mark_degraded(e)
            return 0

        now = self._now()
        armed = 0
        for reminder in stored:
            if reminder.id in self._removed:
                continue
            self._reminders.setdefault(reminder.id, reminder)
            if reminder.is_scheduled and reminder.target_at > now:
                self.arm(reminder)
                armed += 1

        logger.info(f"[Reminders] Restored {len(stored)} reminder(s), {armed} timer(s) re-armed")
        return armed

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel_reminder(self, reminder_id: str) -> bool:
        """
        Disarm one reminder and keep it as ``cancelled``.

        The retired row stays until the sweep purges it as stale, so a later
        sync cannot admit the same dose again. Unknown or already retired ids
        are a no-op.
        """
        reminder = self._lookup(reminder_id)
        if reminder is None or not reminder.is_scheduled:
            self._disarm(reminder_id)
            logger.debug(f"[Reminders] Cancel: no scheduled reminder {reminder_id}")
            return False

        self._retire(reminder, "manual")
        logger.info(f"[Reminders] Cancelled {reminder_id}")
        return True

    def cancel_reminders(self, rule_id: str) -> int:
        """Disarm and remove every reminder derived from a rule."""
        found = {r.id: r for r in self._reminders.values() if r.rule_id == rule_id}
        try:
            for reminder in self.store.get_by_rule(rule_id):
                found.setdefault(reminder.id, reminder)
        except PersistenceUnavailable as e:
            self._mark_degraded(e)

        for reminder_id, reminder in found.items():
            self._disarm(reminder_id)
            self._reminders.pop(reminder_id, None)
            self._removed[reminder_id] = reminder.target_at
            if reminder.is_scheduled:
                reminder.state = ReminderState.CANCELLED
                self._audit(reminder, "cancelled", "rule")

        try:
            self.store.delete_by_rule(rule_id)
        except PersistenceUnavailable as e:
            self._mark_degraded(e)

        logger.info(f"[Reminders] Cancelled {len(found)} reminder(s) for rule {rule_id}")
        return len(found)

    # ------------------------------------------------------------------
    # Rule events
    # ------------------------------------------------------------------

    def on_rule_activated(self, rule: MedicationRule) -> int:
        return self.sync_rules([rule])

    def on_rule_deactivated(self, rule_id: str) -> int:
        return self.cancel_reminders(rule_id)

    def on_rule_deleted(self, rule_id: str) -> int:
        return self.cancel_reminders(rule_id)

    def on_rule_changed(self, rule: MedicationRule) -> int:
        """Window, dose count or dates changed: drop the old reminders and admit the new schedule."""
        self.cancel_reminders(rule.id)
        if not rule.active:
            return 0
        return self.sync_rules([rule])

    # ------------------------------------------------------------------
    # Late dose
    # ------------------------------------------------------------------

    def apply_recalculation(self, rule: MedicationRule, missed: DoseInstant,
                            now: Optional[datetime.datetime] = None) -> List[DoseInstant]:
        """
        A dose was taken late: supersede the rest of that day and schedule the revised doses.

        The superseded reminders stay in the table as ``cancelled`` so the
        daily sync cannot re-admit them.
        """
        now = now or self._now()
        revised = recalculate(rule, missed, now, min_spacing=self.min_spacing)
        if not revised:
            return []

        base = base_schedule(rule, missed.date, now.tzinfo)
        index = next(i for i, d in enumerate(base) if d.time_of_day == missed.time_of_day)
        for instant in base[index:]:
            self._supersede(instant, now)

        # An earlier recalculation of the same day is replaced by this one.
        day = missed.date.isoformat()
        keep = {d.reminder_id for d in revised}
        for reminder in list(self._reminders.values()):
            if (reminder.rule_id == rule.id and reminder.schedule_date == day and reminder.is_scheduled
                    and reminder.id.endswith(f"r-{day}") and reminder.id not in keep):
                self._retire(reminder, "superseded")

        self.schedule_reminders(revised[1:])
        logger.info(
            f"[Reminders] Rule {rule.id} dose {missed.time_of_day} taken late at "
            f"{now.strftime('%H:%M')}; {len(revised) - 1} dose(s) rescheduled"
        )
        return revised

    def _supersede(self, instant: DoseInstant, now: datetime.datetime):
        reminder = self._lookup(instant.reminder_id)
        if reminder is None:
            reminder = PendingReminder.from_instant(instant, now)
            reminder.state = ReminderState.CANCELLED
            self._removed.pop(reminder.id, None)
            self._reminders[reminder.id] = reminder
            self._persist(reminder)
        elif reminder.is_scheduled:
            self._retire(reminder, "superseded")

    def _retire(self, reminder: PendingReminder, details: str):
        reminder.state = ReminderState.CANCELLED
        self._disarm(reminder.id)
        self._persist(reminder)
        self._audit(reminder, "cancelled", details)

    # ------------------------------------------------------------------
    # User interaction
    # ------------------------------------------------------------------

    def _find_by_ref(self, ref: str) -> Optional[PendingReminder]:
        reminder = self._lookup(ref)
        if reminder is not None:
            return reminder
        tagged = [r for r in self._snapshot() if r.payload.tag == ref]
        if not tagged:
            return None
        delivered = [r for r in tagged if r.state is ReminderState.DELIVERED]
        return (delivered or tagged)[-1]

    def handle_interaction(self, ref: str, action: str) -> Optional[PendingReminder]:
        """
        The user acted on a delivered alert; ``ref`` is a reminder id or a dedup tag.

        ``taken`` acknowledges and reports the dose, ``snooze`` re-alerts
        after the snooze delay under the same tag, ``dismiss`` acknowledges.
        Returns the reminder acted on, or None when it no longer exists.
        """
        if action not in INTERACTION_ACTIONS:
            raise ValueError(f"Unknown alert action {action!r}")

        reminder = self._find_by_ref(ref)
        if reminder is None:
            logger.debug(f"[Reminders] Interaction {action} for unknown reminder {ref}")
            return None

        now = self._now()
        if reminder.is_scheduled:
            # Acted on before the alert fired; nothing left to deliver.
            reminder.state = ReminderState.DELIVERED
            reminder.delivered_at = now
            self._disarm(reminder.id)

        reminder.acknowledged_at = now
        reminder.action = action
        self._persist(reminder)
        self._audit(reminder, action)

        if action == "snooze":
            self._snooze(reminder, now)
        elif action == "taken" and self.on_dose_taken is not None:
            try:
                self.on_dose_taken(reminder)
            except Exception as e:
                logger.error(f"[Reminders] on_dose_taken failed for {reminder.id}: {e}", exc_info=True)

        return reminder

    def _snooze(self, reminder: PendingReminder, now: datetime.datetime) -> PendingReminder:
        base_id = reminder.id.split("~", 1)[0]
        count = sum(1 for r in self._snapshot() if r.id.startswith(f"{base_id}~s")) + 1
        snoozed = PendingReminder(
            id=f"{base_id}~s{count}",
            rule_id=reminder.rule_id,
            schedule_date=reminder.schedule_date,
            time_of_day=reminder.time_of_day,
            target_at=now + self.snooze,
            payload=reminder.payload,
            created_at=now,
        )
        logger.info(f"[Reminders] Snoozed {reminder.id} until {snoozed.target_at.strftime('%H:%M')}")
        return self._add(snoozed)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> int:
        """Startup path: permission, restore timers, then admit today's doses."""
        self.refresh_permission()
        armed = self.restore()
        self.sync_rules()
        return armed

    def shutdown(self):
        for reminder_id in list(self._timers):
            self._disarm(reminder_id)
