# ============================================================================
# MedPlan - Base Alert Surface
# ============================================================================

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, Dict, Tuple


@dataclass
class AlertPayload:
    """What the user sees for one reminder. ``tag`` dedups: a new alert with the same tag replaces the old one."""
    title: str
    body: str
    tag: str
    medication_name: Optional[str] = None
    dosage: Optional[str] = None
    scheduled_time: Optional[str] = None
    actions: Tuple[str, ...] = ("taken", "snooze")
    require_interaction: bool = True

    def to_dict(self) -> Dict:
        return {
            "title": self.title,
            "body": self.body,
            "tag": self.tag,
            "medication_name": self.medication_name,
            "dosage": self.dosage,
            "scheduled_time": self.scheduled_time,
            "actions": list(self.actions),
            "require_interaction": self.require_interaction,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "AlertPayload":
        return cls(
            title=data.get("title", ""),
            body=data.get("body", ""),
            tag=data.get("tag", ""),
            medication_name=data.get("medication_name"),
            dosage=data.get("dosage"),
            scheduled_time=data.get("scheduled_time"),
            actions=tuple(data.get("actions") or ()),
            require_interaction=bool(data.get("require_interaction", True)),
        )


@dataclass
class DeliveryResult:
    """Result of a display attempt."""
    success: bool
    surface: str
    tag: Optional[str] = None
    error: Optional[str] = None
    response_data: Optional[Dict] = field(default=None, repr=False)

    def to_dict(self) -> Dict:
        return {
            "success": self.success,
            "surface": self.surface,
            "tag": self.tag,
            "error": self.error,
        }


class AlertSurface(ABC):
    """Abstract base class for places an alert can be shown."""

    surface_name: str = "base"

    @abstractmethod
    def request_permission(self) -> bool:
        """Whether alerts may currently be displayed."""
        pass

    @abstractmethod
    async def display(self, payload: AlertPayload) -> DeliveryResult:
        """
        Show an alert, replacing any earlier alert with the same tag.

        Runs on the event loop; blocking I/O belongs in a worker thread.
        """
        pass

    @abstractmethod
    def is_configured(self) -> bool:
        """Check if the surface is configured."""
        pass
