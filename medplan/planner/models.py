"""
MedPlan Planner — Rule & Dose Data Classes, Time-of-Day Helpers
"""
import datetime
from dataclasses import dataclass, field, asdict
from typing import Optional, Union, Dict

from ..errors import InvalidWindow

MINUTES_PER_DAY = 24 * 60

TimeOfDay = Union[datetime.time, str, int]


def to_minutes(value: TimeOfDay) -> int:
    """
    Convert a time of day to minutes since midnight.

    Accepts ``datetime.time``, ``"HH:MM"`` strings and integer hours.
    Anything outside [00:00, 24:00) raises InvalidWindow.
    """
    if isinstance(value, datetime.time):
        return value.hour * 60 + value.minute

    if isinstance(value, bool):
        raise InvalidWindow(f"Invalid time of day: {value!r}")

    if isinstance(value, int):
        hour, minute = value, 0
    elif isinstance(value, str):
        parts = value.strip().split(":")
        if len(parts) not in (1, 2, 3):
            raise InvalidWindow(f"Invalid time of day: {value!r}")
        try:
            hour = int(parts[0])
            minute = int(parts[1]) if len(parts) > 1 else 0
        except ValueError:
            raise InvalidWindow(f"Invalid time of day: {value!r}")
    else:
        raise InvalidWindow(f"Invalid time of day: {value!r}")

    if not (0 <= hour < 24) or not (0 <= minute < 60):
        raise InvalidWindow(f"Time of day out of range: {value!r}")
    return hour * 60 + minute


def minutes_to_time(minutes: int) -> datetime.time:
    """Minutes since midnight (any value) -> time of day, wrapped into one day."""
    minutes = int(minutes) % MINUTES_PER_DAY
    return datetime.time(minutes // 60, minutes % 60)


def format_time(minutes: float) -> str:
    """Format minutes as HH:MM, rounding to the nearest minute and wrapping past midnight."""
    total = int(round(minutes)) % MINUTES_PER_DAY
    return f"{total // 60:02d}:{total % 60:02d}"


def format_time_of_day(t: datetime.time) -> str:
    if t.second:
        return t.strftime("%H:%M:%S")
    return t.strftime("%H:%M")


def _parse_date(value) -> Optional[datetime.date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    return datetime.date.fromisoformat(str(value)[:10])


@dataclass
class MedicationRule:
    """A recurring dosing rule owned by the medication side."""
    id: str
    name: str
    doses_per_day: int
    window_start: str
    window_end: str
    start_date: datetime.date
    end_date: Optional[datetime.date] = None
    dosage: str = ""
    active: bool = True
    notes: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def __post_init__(self):
        self.start_date = _parse_date(self.start_date)
        self.end_date = _parse_date(self.end_date)
        self.active = bool(self.active)

    @property
    def wraps_midnight(self) -> bool:
        return to_minutes(self.window_end) <= to_minutes(self.window_start)

    def is_active_on(self, day: datetime.date) -> bool:
        if not self.active:
            return False
        if self.start_date and day < self.start_date:
            return False
        if self.end_date and day > self.end_date:
            return False
        return True

    def to_dict(self) -> Dict:
        d = asdict(self)
        d["start_date"] = self.start_date.isoformat() if self.start_date else None
        d["end_date"] = self.end_date.isoformat() if self.end_date else None
        return d

    @classmethod
    def from_row(cls, row):
        return cls(**dict(row))


@dataclass(frozen=True)
class DoseInstant:
    """
    One concrete dose of one rule.

    ``date`` is the schedule day (the day the rule's window opens), so the
    post-midnight doses of a wrapping window keep the evening's date while
    ``scheduled_at`` carries the real calendar instant.
    """
    rule_id: str
    date: datetime.date
    time_of_day: datetime.time
    scheduled_at: datetime.datetime = field(compare=False)
    name: str = field(default="", compare=False)
    dosage: str = field(default="", compare=False)
    revised: bool = False

    @property
    def reminder_id(self) -> str:
        """Stable id of the reminder for this dose; re-deriving it never changes."""
        time_part = format_time_of_day(self.time_of_day)
        marker = "r" if self.revised else ""
        return f"{self.rule_id}-{time_part}{marker}-{self.date.isoformat()}"

    def to_dict(self) -> Dict:
        return {
            "rule_id": self.rule_id,
            "date": self.date.isoformat(),
            "time": format_time_of_day(self.time_of_day),
            "scheduled_at": self.scheduled_at.isoformat(),
            "name": self.name,
            "dosage": self.dosage,
            "revised": self.revised,
            "reminder_id": self.reminder_id,
        }
