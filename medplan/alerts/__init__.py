# ============================================================================
# MedPlan - Alert Surfaces
# ============================================================================
# Where reminders are shown: WebSocket push to open clients, or a webhook.
# ============================================================================

from .base import AlertSurface, AlertPayload, DeliveryResult
from .websocket import WebSocketAlertSurface, AlertBroadcaster, get_broadcaster
from .webhook import WebhookAlertSurface
from ..config import get_config


def get_alert_surface(name: str = None) -> AlertSurface:
    """Build the alert surface named by config ``alert_surface``."""
    name = name or get_config("alert_surface", "websocket")
    if name == "webhook":
        return WebhookAlertSurface()
    return WebSocketAlertSurface()


__all__ = [
    "AlertSurface",
    "AlertPayload",
    "DeliveryResult",
    "WebSocketAlertSurface",
    "AlertBroadcaster",
    "get_broadcaster",
    "WebhookAlertSurface",
    "get_alert_surface",
]
