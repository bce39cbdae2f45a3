# ================================================================
# MedPlan — Backend
# Medication rules + dose schedule + reminder delivery
# ================================================================

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from medplan import __version__
from medplan.config import DEFAULT_CONFIG, Settings, format_time_for_display, get_all_config, get_config, set_config
from medplan.medications.routes import register_medication_routes
from medplan.reminders import (
    get_engine,
    init_reminder_scheduler,
    register_reminder_routes,
    shutdown_reminder_scheduler,
)

logger = logging.getLogger("medplan")

# ================================================================
# FASTAPI APP
# ================================================================

app = FastAPI(title="MedPlan", version=__version__)


@app.on_event("startup")
async def _startup():
    Settings.init_defaults()
    if get_config("scheduler_enabled", True):
        init_reminder_scheduler()
    else:
        logger.info("[MedPlan] Reminder scheduler disabled by config")
    logger.info(f"[MedPlan] Backend {__version__} started")


@app.on_event("shutdown")
async def _shutdown():
    shutdown_reminder_scheduler()


@app.get("/")
async def root_view():
    engine = get_engine()
    return {
        "ok": True,
        "service": "medplan",
        "version": __version__,
        "time": format_time_for_display(),
        "pending_reminders": len(engine.pending()),
        "degraded": engine.degraded,
    }


@app.get("/api/settings")
async def api_get_settings():
    return {"ok": True, "settings": get_all_config()}


@app.post("/api/settings")
async def api_update_settings(request: Request):
    data = await request.json()
    unknown = [k for k in data if k not in DEFAULT_CONFIG]
    if unknown:
        return JSONResponse({"ok": False, "error": f"Unknown setting(s): {', '.join(unknown)}"}, status_code=400)
    for key, value in data.items():
        set_config(key, value, user="api")
    return {"ok": True, "settings": get_all_config()}


# ================================================================
# ROUTES
# ================================================================

register_medication_routes(app)
register_reminder_routes(app)


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(app, host="0.0.0.0", port=8000)
