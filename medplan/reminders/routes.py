"""
MedPlan Reminders — API Routes
"""
import logging
from typing import Optional

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from ..alerts import AlertPayload, get_broadcaster
from ..config import set_config
from .engine import INTERACTION_ACTIONS
from .scheduler_jobs import get_engine

logger = logging.getLogger(__name__)


def _set_permission(granted: bool) -> bool:
    set_config("alert_permission", "granted" if granted else "denied", user="client")
    engine = get_engine()
    engine.set_permission(granted)
    if granted:
        engine.sync_rules()
    return engine.permission_granted


def register_reminder_routes(app: FastAPI):
    """Register all reminder endpoints."""

    @app.get("/api/reminders")
    async def api_pending_reminders(include_retired: bool = False):
        engine = get_engine()
        reminders = engine.all_reminders() if include_retired else engine.pending()
        return {
            "ok": True,
            "reminders": [r.to_dict() for r in reminders],
            "degraded": engine.degraded,
            "permission": engine.permission_granted,
        }

    @app.get("/api/reminders/history")
    async def api_reminder_history(rule_id: Optional[str] = None, limit: int = 100):
        store = get_engine().store
        history = store.get_history(rule_id=rule_id, limit=limit) if hasattr(store, "get_history") else []
        return {"ok": True, "history": history}

    @app.post("/api/reminders/sync")
    async def api_sync_reminders():
        engine = get_engine()
        created = engine.sync_rules()
        notice = None
        if engine.consume_denied_notice():
            notice = "Notifications are blocked; reminders will not be shown until they are allowed."
        return {"ok": True, "created": created, "notice": notice}

    @app.post("/api/reminders/sweep")
    async def api_sweep_reminders():
        stats = await get_engine().sweep()
        return {"ok": True, "stats": stats}

    @app.delete("/api/reminders/rule/{rule_id}")
    async def api_cancel_rule_reminders(rule_id: str):
        cancelled = get_engine().cancel_reminders(rule_id)
        return {"ok": True, "cancelled": cancelled}

    @app.delete("/api/reminders/{reminder_id}")
    async def api_cancel_reminder(reminder_id: str):
        cancelled = get_engine().cancel_reminder(reminder_id)
        return {"ok": True, "cancelled": cancelled}

    @app.post("/api/reminders/{reminder_id}/interaction")
    async def api_reminder_interaction(reminder_id: str, request: Request):
        data = await request.json()
        action = data.get("action", "")
        if action not in INTERACTION_ACTIONS:
            return JSONResponse({"ok": False, "error": f"Unknown action {action!r}"}, status_code=400)
        reminder = get_engine().handle_interaction(reminder_id, action)
        if reminder is None:
            return JSONResponse({"ok": False, "error": "Reminder not found"}, status_code=404)
        return {"ok": True, "reminder": reminder.to_dict()}

    # --- Alert surface ---

    @app.post("/api/alerts/permission")
    async def api_alert_permission(request: Request):
        data = await request.json()
        granted = _set_permission(bool(data.get("granted")))
        return {"ok": True, "permission": granted}

    @app.post("/api/alerts/test")
    async def api_test_alert():
        engine = get_engine()
        if not engine.permission_granted:
            return JSONResponse({"ok": False, "error": "Alert permission not granted"}, status_code=409)
        result = await engine.surface.display(AlertPayload(
            title="MedPlan test",
            body="Notifications are working.",
            tag="test-notification",
            actions=(),
            require_interaction=False,
        ))
        return {"ok": result.success, "result": result.to_dict()}

    @app.websocket("/ws/alerts")
    async def ws_alerts(websocket: WebSocket, client_id: str = "default"):
        broadcaster = get_broadcaster()
        await broadcaster.connect(websocket, client_id)
        try:
            while True:
                message = await websocket.receive_json()
                kind = message.get("type")
                if kind == "permission":
                    granted = _set_permission(bool(message.get("granted")))
                    await websocket.send_json({"type": "permission", "granted": granted})
                elif kind == "interaction":
                    action = message.get("action")
                    if action not in INTERACTION_ACTIONS:
                        action = "dismiss"
                    ref = message.get("tag") or message.get("reminder_id", "")
                    reminder = get_engine().handle_interaction(ref, action)
                    await websocket.send_json({
                        "type": "interaction",
                        "ok": reminder is not None,
                        "reminder_id": reminder.id if reminder else None,
                    })
                else:
                    logger.debug(f"[WS] Unhandled message type {kind!r} from {client_id}")
        except WebSocketDisconnect:
            pass
        finally:
            await broadcaster.disconnect(websocket)
