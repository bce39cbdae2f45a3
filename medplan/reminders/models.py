"""
MedPlan Reminders — Pending Reminder Model & Store
"""
import sqlite3
import json
import datetime
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional, List, Dict

from ..alerts.base import AlertPayload
from ..db import get_db
from ..errors import PersistenceUnavailable
from ..planner.models import DoseInstant, format_time_of_day

logger = logging.getLogger(__name__)


class ReminderState(str, Enum):
    SCHEDULED = "scheduled"
    DELIVERED = "delivered"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


def _iso(dt: Optional[datetime.datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def _from_iso(value: Optional[str]) -> Optional[datetime.datetime]:
    return datetime.datetime.fromisoformat(value) if value else None


def build_payload(instant: DoseInstant, tag: Optional[str] = None) -> AlertPayload:
    name = instant.name or "your medication"
    when = format_time_of_day(instant.time_of_day)
    body = f"{name} - {instant.dosage}" if instant.dosage else name
    return AlertPayload(
        title="Time to take your medication",
        body=f"{body}\nScheduled for {when}.",
        tag=tag or instant.reminder_id,
        medication_name=instant.name or None,
        dosage=instant.dosage or None,
        scheduled_time=when,
    )


@dataclass
class PendingReminder:
    id: str
    rule_id: str
    schedule_date: str
    time_of_day: str
    target_at: datetime.datetime
    payload: AlertPayload
    state: ReminderState = ReminderState.SCHEDULED
    attempts: int = 0
    created_at: Optional[datetime.datetime] = None
    delivered_at: Optional[datetime.datetime] = None
    acknowledged_at: Optional[datetime.datetime] = None
    action: Optional[str] = None

    @property
    def is_scheduled(self) -> bool:
        return self.state is ReminderState.SCHEDULED

    @classmethod
    def from_instant(cls, instant: DoseInstant, now: datetime.datetime) -> "PendingReminder":
        return cls(
            id=instant.reminder_id,
            rule_id=instant.rule_id,
            schedule_date=instant.date.isoformat(),
            time_of_day=format_time_of_day(instant.time_of_day),
            target_at=instant.scheduled_at,
            payload=build_payload(instant),
            created_at=now,
        )

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "rule_id": self.rule_id,
            "schedule_date": self.schedule_date,
            "time_of_day": self.time_of_day,
            "target_at": _iso(self.target_at),
            "payload": self.payload.to_dict(),
            "state": self.state.value,
            "attempts": self.attempts,
            "created_at": _iso(self.created_at),
            "delivered_at": _iso(self.delivered_at),
            "acknowledged_at": _iso(self.acknowledged_at),
            "action": self.action,
        }

    def to_row(self) -> tuple:
        return (
            self.id, self.rule_id, self.schedule_date, self.time_of_day,
            _iso(self.target_at), json.dumps(self.payload.to_dict()), self.state.value,
            self.attempts, _iso(self.created_at), _iso(self.delivered_at),
            _iso(self.acknowledged_at), self.action,
        )

    @classmethod
    def from_row(cls, row) -> "PendingReminder":
        return cls(
            id=row["id"],
            rule_id=row["rule_id"],
            schedule_date=row["schedule_date"],
            time_of_day=row["time_of_day"],
            target_at=_from_iso(row["target_at"]),
            payload=AlertPayload.from_dict(json.loads(row["payload_json"])),
            state=ReminderState(row["state"]),
            attempts=row["attempts"] or 0,
            created_at=_from_iso(row["created_at"]),
            delivered_at=_from_iso(row["delivered_at"]),
            acknowledged_at=_from_iso(row["acknowledged_at"]),
            action=row["action"],
        )


class ReminderStore(ABC):
    """Durable key-value table of reminders, indexed by rule id."""

    @abstractmethod
    def put(self, reminder: PendingReminder) -> None:
        pass

    @abstractmethod
    def get(self, reminder_id: str) -> Optional[PendingReminder]:
        pass

    @abstractmethod
    def get_all(self) -> List[PendingReminder]:
        pass

    @abstractmethod
    def delete(self, reminder_id: str) -> bool:
        pass

    @abstractmethod
    def delete_by_rule(self, rule_id: str) -> int:
        pass

    @abstractmethod
    def get_by_rule(self, rule_id: str) -> List[PendingReminder]:
        pass

    def log_event(self, reminder: PendingReminder, event: str, details: str = None,
                  timestamp: Optional[datetime.datetime] = None) -> None:
        """Append to the audit trail. Stores without one ignore it."""
        return None


class SqliteReminderStore(ReminderStore):
    """
    ReminderStore on the ``pending_reminders`` table.

    Every sqlite failure surfaces as PersistenceUnavailable so the engine can
    fall back to memory.
    """

    def __init__(self, db_path=None):
        self.db_path = db_path

    def _conn(self) -> sqlite3.Connection:
        try:
            return get_db(self.db_path)
        except sqlite3.Error as e:
            raise PersistenceUnavailable(f"Cannot open reminder store: {e}") from e

    def _query(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        conn = self._conn()
        try:
            return conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise PersistenceUnavailable(f"Reminder store read failed: {e}") from e
        finally:
            conn.close()

    def _execute(self, sql: str, params: tuple = ()) -> int:
        conn = self._conn()
        try:
            cur = conn.execute(sql, params)
            conn.commit()
            return cur.rowcount
        except sqlite3.Error as e:
            raise PersistenceUnavailable(f"Reminder store write failed: {e}") from e
        finally:
            conn.close()

    def put(self, reminder: PendingReminder) -> None:
        self._execute("""
            INSERT OR REPLACE INTO pending_reminders
            (id, rule_id, schedule_date, time_of_day, target_at, payload_json, state,
             attempts, created_at, delivered_at, acknowledged_at, action)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, reminder.to_row())

    def get(self, reminder_id: str) -> Optional[PendingReminder]:
        rows = self._query("SELECT * FROM pending_reminders WHERE id = ?", (reminder_id,))
        return PendingReminder.from_row(rows[0]) if rows else None

    def get_all(self) -> List[PendingReminder]:
        rows = self._query("SELECT * FROM pending_reminders ORDER BY target_at")
        return [PendingReminder.from_row(r) for r in rows]

    def delete(self, reminder_id: str) -> bool:
        return self._execute("DELETE FROM pending_reminders WHERE id = ?", (reminder_id,)) > 0

    def delete_by_rule(self, rule_id: str) -> int:
        return self._execute("DELETE FROM pending_reminders WHERE rule_id = ?", (rule_id,))

    def get_by_rule(self, rule_id: str) -> List[PendingReminder]:
        rows = self._query(
            "SELECT * FROM pending_reminders WHERE rule_id = ? ORDER BY target_at", (rule_id,)
        )
        return [PendingReminder.from_row(r) for r in rows]

    def log_event(self, reminder: PendingReminder, event: str, details: str = None,
                  timestamp: Optional[datetime.datetime] = None) -> None:
        stamp = (timestamp or datetime.datetime.now()).isoformat(timespec="seconds")
        self._execute("""
            INSERT INTO reminder_log (reminder_id, rule_id, timestamp, event, details)
            VALUES (?, ?, ?, ?, ?)
        """, (reminder.id, reminder.rule_id, stamp, event, details))

    def get_history(self, rule_id: Optional[str] = None, limit: int = 100) -> List[Dict]:
        sql = "SELECT * FROM reminder_log"
        params: tuple = ()
        if rule_id:
            sql += " WHERE rule_id = ?"
            params = (rule_id,)
        sql += " ORDER BY id DESC LIMIT ?"
        rows = self._query(sql, params + (limit,))
        return [dict(r) for r in rows]
