# ============================================================================
# MedPlan Alerts — WebSocket Surface
# ============================================================================
# Pushes reminder alerts to connected clients. Clients render them as
# notifications keyed by tag, so a second push with the same tag replaces
# the first instead of stacking.
# ============================================================================

from fastapi import WebSocket
from typing import Dict, Set, Optional
import asyncio
import logging
from datetime import datetime

from .base import AlertSurface, AlertPayload, DeliveryResult
from ..config import get_config

logger = logging.getLogger(__name__)


class AlertBroadcaster:
    """
    Tracks WebSocket connections that receive reminder alerts.

    All methods run on the event loop; connections are keyed by client id so
    one device reconnecting does not receive duplicates.
    """

    def __init__(self):
        self._connections: Dict[str, Set[WebSocket]] = {}
        self._ws_to_client: Dict[WebSocket, str] = {}
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, client_id: str):
        """Register a new WebSocket connection for a client."""
        await websocket.accept()

        async with self._lock:
            self._connections.setdefault(client_id, set()).add(websocket)
            self._ws_to_client[websocket] = client_id

        logger.info(f"[WS] Client {client_id} connected. Total connections: {self.connection_count()}")

        await self._send_to_websocket(websocket, {
            "type": "connected",
            "client_id": client_id,
            "timestamp": datetime.now().isoformat(),
            "permission": get_config("alert_permission", "default"),
        })

    async def disconnect(self, websocket: WebSocket):
        """Remove a WebSocket connection."""
        async with self._lock:
            client_id = self._ws_to_client.pop(websocket, None)
            if client_id and client_id in self._connections:
                self._connections[client_id].discard(websocket)
                if not self._connections[client_id]:
                    del self._connections[client_id]

        logger.info(f"[WS] Client {client_id} disconnected. Total connections: {self.connection_count()}")

    def connection_count(self) -> int:
        return sum(len(conns) for conns in self._connections.values())

    async def _send_to_websocket(self, ws: WebSocket, data: Dict) -> bool:
        try:
            await ws.send_json(data)
            return True
        except Exception as e:
            logger.warning(f"[WS] Send failed: {e}")
            return False

    async def broadcast(self, event_type: str, data: Dict) -> int:
        """Send an event to every connection. Returns the number of successful sends."""
        message = {"type": event_type, "data": data, "timestamp": datetime.now().isoformat()}
        sent = 0
        for conns in list(self._connections.values()):
            for ws in list(conns):
                if await self._send_to_websocket(ws, message):
                    sent += 1
        return sent


_broadcaster: Optional[AlertBroadcaster] = None


def get_broadcaster() -> AlertBroadcaster:
    """Get or create the process-wide broadcaster."""
    global _broadcaster
    if _broadcaster is None:
        _broadcaster = AlertBroadcaster()
    return _broadcaster


class WebSocketAlertSurface(AlertSurface):
    """Alert surface backed by the connected WebSocket clients."""

    surface_name = "websocket"

    def __init__(self, broadcaster: AlertBroadcaster = None):
        self.broadcaster = broadcaster or get_broadcaster()

    def is_configured(self) -> bool:
        return True

    def request_permission(self) -> bool:
        """The permission last reported by a client; browsers remember it across reloads."""
        return get_config("alert_permission", "default") == "granted"

    async def display(self, payload: AlertPayload) -> DeliveryResult:
        if self.broadcaster.connection_count() == 0:
            return DeliveryResult(
                success=False,
                surface=self.surface_name,
                tag=payload.tag,
                error="No connected clients",
            )

        sent = await self.broadcaster.broadcast("reminder", payload.to_dict())
        if sent == 0:
            return DeliveryResult(
                success=False,
                surface=self.surface_name,
                tag=payload.tag,
                error="Send failed on every connection",
            )

        logger.info(f"[WS] Reminder {payload.tag} pushed to {sent} connection(s)")
        return DeliveryResult(success=True, surface=self.surface_name, tag=payload.tag)
