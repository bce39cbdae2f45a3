"""
MedPlan Medications — API Routes
"""
import datetime
import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..config import get_config, get_local_now, get_timezone
from ..errors import InvalidCount, InvalidWindow
from ..planner import DoseInstant, base_schedule, generate_schedule, materialize, materialize_rules
from ..planner.models import format_time_of_day
from ..reminders.scheduler_jobs import get_engine
from .models import (
    get_rules, get_rule, create_rule, update_rule, delete_rule,
    log_intake, get_intakes, adherence_summary,
)

logger = logging.getLogger(__name__)

SCHEDULE_FIELDS = ("doses_per_day", "window_start", "window_end", "start_date", "end_date")


def _bad_request(error) -> JSONResponse:
    return JSONResponse({"ok": False, "error": str(error)}, status_code=400)


def _not_found(what: str) -> JSONResponse:
    return JSONResponse({"ok": False, "error": f"{what} not found"}, status_code=404)


def _parse_day(value: Optional[str]) -> datetime.date:
    if not value:
        return get_local_now().date()
    return datetime.date.fromisoformat(value)


def register_medication_routes(app: FastAPI):
    """Register medication and schedule endpoints."""

    @app.get("/api/medications")
    async def api_get_medications(request: Request, active_only: bool = False):
        rules = get_rules(active_only=active_only)
        return {"ok": True, "medications": [r.to_dict() for r in rules]}

    @app.post("/api/medications")
    async def api_create_medication(request: Request):
        data = await request.json()
        try:
            rule = create_rule(
                name=data.get("name", "Untitled"),
                dosage=data.get("dosage", ""),
                doses_per_day=data.get("doses_per_day", 1),
                window_start=data.get("window_start", "08:00"),
                window_end=data.get("window_end", "20:00"),
                start_date=data.get("start_date") or get_local_now().date(),
                end_date=data.get("end_date"),
                active=data.get("active", True),
                notes=data.get("notes"),
            )
        except (InvalidCount, InvalidWindow, ValueError) as e:
            return _bad_request(e)

        notice = None
        if rule.active:
            get_engine().on_rule_activated(rule)
            notice = _denied_notice()
        return {"ok": True, "medication": rule.to_dict(), "notice": notice}

    @app.get("/api/medications/{rule_id}")
    async def api_get_medication(rule_id: str):
        rule = get_rule(rule_id)
        if not rule:
            return _not_found("Medication")
        return {"ok": True, "medication": rule.to_dict()}

    @app.put("/api/medications/{rule_id}")
    async def api_update_medication(rule_id: str, request: Request):
        before = get_rule(rule_id)
        if not before:
            return _not_found("Medication")

        data = await request.json()
        try:
            rule = update_rule(rule_id, **data)
        except (InvalidCount, InvalidWindow, ValueError) as e:
            return _bad_request(e)

        engine = get_engine()
        if before.active and not rule.active:
            engine.on_rule_deactivated(rule_id)
        elif rule.active and not before.active:
            engine.on_rule_activated(rule)
        elif rule.active and any(k in data for k in SCHEDULE_FIELDS + ("name", "dosage")):
            engine.on_rule_changed(rule)
        return {"ok": True, "medication": rule.to_dict(), "notice": _denied_notice()}

    @app.delete("/api/medications/{rule_id}")
    async def api_delete_medication(rule_id: str):
        if not delete_rule(rule_id):
            return _not_found("Medication")
        cancelled = get_engine().on_rule_deleted(rule_id)
        return {"ok": True, "cancelled": cancelled}

    @app.get("/api/medications/{rule_id}/schedule")
    async def api_medication_schedule(rule_id: str, date: Optional[str] = None):
        rule = get_rule(rule_id)
        if not rule:
            return _not_found("Medication")
        try:
            day = _parse_day(date)
        except ValueError as e:
            return _bad_request(e)
        doses = materialize(rule, day, get_timezone())
        return {"ok": True, "date": day.isoformat(), "doses": [d.to_dict() for d in doses]}

    @app.post("/api/medications/{rule_id}/late")
    async def api_dose_taken_late(rule_id: str, request: Request):
        """A dose was taken late: revise the rest of that day."""
        rule = get_rule(rule_id)
        if not rule:
            return _not_found("Medication")

        data = await request.json()
        try:
            day = _parse_day(data.get("date"))
            missed_time = datetime.time.fromisoformat(data["time"])
            taken_at = (datetime.datetime.fromisoformat(data["taken_at"])
                        if data.get("taken_at") else get_local_now())
        except (KeyError, ValueError) as e:
            return _bad_request(e)
        if taken_at.tzinfo is None:
            taken_at = taken_at.replace(tzinfo=get_timezone())

        missed = next((d for d in base_schedule(rule, day, taken_at.tzinfo)
                       if d.time_of_day == missed_time), None)
        if missed is None:
            missed = DoseInstant(rule.id, day, missed_time, scheduled_at=taken_at)

        revised = get_engine().apply_recalculation(rule, missed, taken_at)
        if revised:
            log_intake(rule.id, day.isoformat(), format_time_of_day(missed_time), taken_at, source="late")
        return {"ok": True, "doses": [d.to_dict() for d in revised]}

    @app.post("/api/medications/{rule_id}/taken")
    async def api_dose_taken(rule_id: str, request: Request):
        rule = get_rule(rule_id)
        if not rule:
            return _not_found("Medication")
        data = await request.json()
        try:
            day = _parse_day(data.get("date"))
            time_of_day = format_time_of_day(datetime.time.fromisoformat(data["time"]))
        except (KeyError, ValueError) as e:
            return _bad_request(e)
        intake_id = log_intake(rule.id, day.isoformat(), time_of_day, get_local_now())
        return {"ok": True, "intake_id": intake_id}

    @app.get("/api/medications/{rule_id}/adherence")
    async def api_medication_adherence(rule_id: str, days: int = 7):
        rule = get_rule(rule_id)
        if not rule:
            return _not_found("Medication")
        if days <= 0:
            return _bad_request("days must be positive")
        summary = adherence_summary(rule, days=days, today=get_local_now().date())
        return {"ok": True, "adherence": summary}

    # --- Schedule generation ---

    @app.get("/api/schedule/generate")
    async def api_generate_schedule(start: str, end: str, count: int, delay: Optional[float] = None):
        try:
            schedule = generate_schedule(
                start, end, count, delay,
                min_spacing=get_config("min_dose_spacing_minutes", 120),
            )
        except (InvalidCount, InvalidWindow, ValueError) as e:
            return _bad_request(e)
        return {"ok": True, "schedule": schedule}

    @app.get("/api/schedule/day")
    async def api_day_timeline(date: Optional[str] = None):
        """Timeline of every active medication for one day."""
        try:
            day = _parse_day(date)
        except ValueError as e:
            return _bad_request(e)

        now = get_local_now()
        rules = get_rules(active_only=True)
        taken = set()
        for rule in rules:
            for intake in get_intakes(rule.id, day):
                if intake["schedule_date"] == day.isoformat():
                    taken.add((rule.id, intake["time_of_day"]))

        timeline = []
        for dose in materialize_rules(rules, day, get_timezone()):
            entry = dose.to_dict()
            if (dose.rule_id, entry["time"]) in taken:
                entry["status"] = "taken"
            elif dose.scheduled_at < now:
                entry["status"] = "missed"
            else:
                entry["status"] = "upcoming"
            timeline.append(entry)
        return {"ok": True, "date": day.isoformat(), "doses": timeline}


def _denied_notice() -> Optional[str]:
    if get_engine().consume_denied_notice():
        return "Notifications are blocked; reminders will not be shown until they are allowed."
    return None
