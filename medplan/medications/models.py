"""
MedPlan Medications — Database Models & Query Helpers
"""
import datetime
import uuid
from typing import Optional, List, Dict

from ..db import get_db
from ..errors import InvalidCount
from ..planner.models import MedicationRule, to_minutes
from ..planner.partition import check_window_fits

MAX_DOSES_PER_DAY = 10


def _ts() -> str:
    return datetime.datetime.now().strftime("%Y-%m-%d %H:%M:%S")


def _date_str(value) -> Optional[str]:
    if value is None or value == "":
        return None
    if isinstance(value, (datetime.date, datetime.datetime)):
        return value.isoformat()[:10]
    return datetime.date.fromisoformat(str(value)[:10]).isoformat()


def validate_rule_fields(doses_per_day=None, window_start=None, window_end=None):
    """Raise InvalidCount / InvalidWindow for out-of-range rule fields."""
    if doses_per_day is not None:
        if isinstance(doses_per_day, bool) or not isinstance(doses_per_day, int) \
                or not 1 <= doses_per_day <= MAX_DOSES_PER_DAY:
            raise InvalidCount(f"doses_per_day must be between 1 and {MAX_DOSES_PER_DAY}, got {doses_per_day!r}")
    if window_start is not None:
        to_minutes(window_start)
    if window_end is not None:
        to_minutes(window_end)
    if None not in (doses_per_day, window_start, window_end):
        check_window_fits(window_start, window_end, doses_per_day)


# --- CRUD for rules ---

def get_rules(active_only: bool = False) -> List[MedicationRule]:
    conn = get_db()
    sql = "SELECT * FROM medications"
    if active_only:
        sql += " WHERE active = 1"
    sql += " ORDER BY created_at, id"
    rows = conn.execute(sql).fetchall()
    conn.close()
    return [MedicationRule.from_row(r) for r in rows]


def get_rule(rule_id: str) -> Optional[MedicationRule]:
    conn = get_db()
    row = conn.execute("SELECT * FROM medications WHERE id = ?", (rule_id,)).fetchone()
    conn.close()
    return MedicationRule.from_row(row) if row else None


def create_rule(name: str, doses_per_day: int, window_start: str, window_end: str,
                start_date, end_date=None, dosage: str = "", active: bool = True,
                notes: str = None) -> MedicationRule:
    validate_rule_fields(doses_per_day, window_start, window_end)
    rule_id = uuid.uuid4().hex[:12]
    ts = _ts()
    conn = get_db()
    conn.execute("""
        INSERT INTO medications
        (id, name, dosage, doses_per_day, window_start, window_end, start_date, end_date,
         active, notes, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    """, (rule_id, name, dosage or "", doses_per_day, window_start, window_end,
          _date_str(start_date), _date_str(end_date), 1 if active else 0, notes, ts, ts))
    conn.commit()
    conn.close()
    return get_rule(rule_id)


def update_rule(rule_id: str, **kwargs) -> Optional[MedicationRule]:
    validate_rule_fields(kwargs.get("doses_per_day"), kwargs.get("window_start"), kwargs.get("window_end"))
    current = get_rule(rule_id)
    if current is not None:
        # a partial update must still leave room for every dose
        validate_rule_fields(
            kwargs.get("doses_per_day", current.doses_per_day),
            kwargs.get("window_start", current.window_start),
            kwargs.get("window_end", current.window_end),
        )

    sets = []
    params = []
    for key in ("name", "dosage", "doses_per_day", "window_start", "window_end", "notes"):
        if key in kwargs:
            sets.append(f"{key} = ?")
            params.append(kwargs[key])
    for key in ("start_date", "end_date"):
        if key in kwargs:
            sets.append(f"{key} = ?")
            params.append(_date_str(kwargs[key]))
    if "active" in kwargs:
        sets.append("active = ?")
        params.append(1 if kwargs["active"] else 0)
    sets.append("updated_at = ?")
    params.append(_ts())
    params.append(rule_id)

    conn = get_db()
    conn.execute(f"UPDATE medications SET {', '.join(sets)} WHERE id = ?", params)
    conn.commit()
    conn.close()
    return get_rule(rule_id)


def delete_rule(rule_id: str) -> bool:
    conn = get_db()
    cur = conn.execute("DELETE FROM medications WHERE id = ?", (rule_id,))
    conn.commit()
    conn.close()
    return cur.rowcount > 0


# --- Dose intake ---

def log_intake(rule_id: str, schedule_date: str, time_of_day: str,
               taken_at: datetime.datetime = None, source: str = "manual") -> int:
    taken_at = taken_at or datetime.datetime.now()
    conn = get_db()
    cur = conn.execute("""
        INSERT INTO dose_intake (rule_id, schedule_date, time_of_day, taken_at, source)
        VALUES (?, ?, ?, ?, ?)
    """, (rule_id, _date_str(schedule_date), time_of_day, taken_at.isoformat(timespec="seconds"), source))
    intake_id = cur.lastrowid
    conn.commit()
    conn.close()
    return intake_id


def get_intakes(rule_id: str, since: datetime.date = None) -> List[Dict]:
    conn = get_db()
    sql = "SELECT * FROM dose_intake WHERE rule_id = ?"
    params = [rule_id]
    if since is not None:
        sql += " AND schedule_date >= ?"
        params.append(_date_str(since))
    sql += " ORDER BY schedule_date, time_of_day"
    rows = conn.execute(sql, params).fetchall()
    conn.close()
    return [dict(r) for r in rows]


def adherence_rate(scheduled: int, taken: int) -> int:
    """Percentage of scheduled doses that were taken, rounded; 0 when nothing was scheduled."""
    if scheduled <= 0:
        return 0
    return round(min(taken, scheduled) / scheduled * 100)


def adherence_summary(rule: MedicationRule, days: int = 7, today: datetime.date = None) -> Dict:
    """Scheduled vs. taken doses over the last ``days`` days, today included."""
    today = today or datetime.date.today()
    since = today - datetime.timedelta(days=days - 1)

    scheduled = 0
    for offset in range(days):
        if rule.is_active_on(since + datetime.timedelta(days=offset)):
            scheduled += rule.doses_per_day

    taken = len({(i["schedule_date"], i["time_of_day"]) for i in get_intakes(rule.id, since)
                 if i["schedule_date"] <= today.isoformat()})
    return {
        "rule_id": rule.id,
        "since": since.isoformat(),
        "scheduled": scheduled,
        "taken": taken,
        "adherence_pct": adherence_rate(scheduled, taken),
    }
