# ============================================================================
# MedPlan - Configuration Management
# ============================================================================
# Database-backed configuration with type casting and defaults.
# Times are computed in the configured timezone (UTC unless changed).
# ============================================================================

import json
import logging
import sqlite3
from datetime import datetime, timezone
from typing import Any, Dict
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .db import get_db

logger = logging.getLogger(__name__)

# key -> (default, value_type, category)
DEFAULT_CONFIG = {
    # General
    "timezone": ("UTC", "string", "general"),

    # Scheduler
    "scheduler_enabled": (True, "bool", "scheduler"),
    "sweep_interval_seconds": (60, "int", "scheduler"),

    # Reminder engine
    "tolerance_seconds": (30, "int", "engine"),
    "staleness_seconds": (3600, "int", "engine"),
    "horizon_days": (1, "int", "engine"),
    "snooze_minutes": (10, "int", "engine"),

    # Planner
    "min_dose_spacing_minutes": (120, "int", "planner"),

    # Alerts
    "alert_surface": ("websocket", "string", "alerts"),
    "webhook_url": ("", "string", "alerts"),
    "alert_permission": ("default", "string", "alerts"),
}


class Settings:
    """
    Database-backed configuration manager.

    Values live in the ``settings`` table and are cached in memory after the
    first read. Unknown keys fall back to the caller's default.
    """

    _cache: Dict[str, Any] = {}
    _cache_loaded: bool = False

    @classmethod
    def _load_cache(cls):
        """Load all config into memory cache."""
        if cls._cache_loaded:
            return

        for key, (default, vtype, category) in DEFAULT_CONFIG.items():
            cls._cache[key] = default

        try:
            conn = get_db()
            rows = conn.execute("SELECT key, value, value_type FROM settings").fetchall()
            conn.close()
        except sqlite3.Error as e:
            logger.warning(f"[Config] Could not read settings, using defaults: {e}")
            rows = []

        for row in rows:
            cls._cache[row["key"]] = cls._cast_value(row["value"], row["value_type"])

        cls._cache_loaded = True

    @classmethod
    def _cast_value(cls, value: str, value_type: str) -> Any:
        """Cast string value to appropriate type."""
        if value is None:
            return None
        if value_type == "bool":
            return value.lower() in ("true", "1", "yes", "on")
        if value_type == "int":
            try:
                return int(value)
            except ValueError:
                return 0
        if value_type == "json":
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                return {}
        return value

    @classmethod
    def _serialize_value(cls, value: Any, value_type: str) -> str:
        """Serialize value to string for storage."""
        if value is None:
            return ""
        if value_type == "bool":
            return "true" if value else "false"
        if value_type == "int":
            return str(int(value))
        if value_type == "json":
            return json.dumps(value)
        return str(value)

    @classmethod
    def get(cls, key: str, default: Any = None) -> Any:
        """Get a configuration value."""
        cls._load_cache()
        return cls._cache.get(key, default)

    @classmethod
    def set(cls, key: str, value: Any, value_type: str = None, category: str = "general", user: str = None) -> bool:
        """Set a configuration value."""
        cls._load_cache()

        if value_type is None:
            if key in DEFAULT_CONFIG:
                _, value_type, category = DEFAULT_CONFIG[key]
            elif isinstance(value, bool):
                value_type = "bool"
            elif isinstance(value, int):
                value_type = "int"
            elif isinstance(value, dict):
                value_type = "json"
            else:
                value_type = "string"

        old_value = cls._cache.get(key)
        serialized = cls._serialize_value(value, value_type)

        conn = get_db()
        conn.execute(
            """INSERT INTO settings (key, value, value_type, category, updated_by)
               VALUES (?, ?, ?, ?, ?)
               ON CONFLICT(key) DO UPDATE SET
               value = excluded.value,
               value_type = excluded.value_type,
               category = excluded.category,
               updated_at = CURRENT_TIMESTAMP,
               updated_by = excluded.updated_by""",
            (key, serialized, value_type, category, user),
        )
        conn.commit()
        conn.close()

        cls._cache[key] = cls._cast_value(serialized, value_type)

        if old_value != cls._cache[key]:
            logger.info(f"[Config] {key} changed from {old_value!r} to {cls._cache[key]!r} by {user or 'system'}")

        return True

    @classmethod
    def get_all(cls, category: str = None) -> Dict[str, Any]:
        """Get all configuration values, optionally filtered by category."""
        cls._load_cache()

        if category is None:
            return dict(cls._cache)

        result = {}
        for key, (default, vtype, cat) in DEFAULT_CONFIG.items():
            if cat == category:
                result[key] = cls._cache.get(key, default)
        return result

    @classmethod
    def reset_cache(cls):
        """Reset the configuration cache."""
        cls._cache = {}
        cls._cache_loaded = False

    @classmethod
    def init_defaults(cls):
        """Initialize default configuration values in database if not present."""
        conn = get_db()

        for key, (default, value_type, category) in DEFAULT_CONFIG.items():
            conn.execute(
                """INSERT OR IGNORE INTO settings (key, value, value_type, category)
                   VALUES (?, ?, ?, ?)""",
                (key, cls._serialize_value(default, value_type), value_type, category),
            )

        conn.commit()
        conn.close()
        cls.reset_cache()


# Convenience functions
def get_config(key: str, default: Any = None) -> Any:
    """Get a configuration value."""
    return Settings.get(key, default)


def set_config(key: str, value: Any, user: str = None) -> bool:
    """Set a configuration value."""
    return Settings.set(key, value, user=user)


def get_all_config() -> Dict[str, Any]:
    """Get all configuration values."""
    return Settings.get_all()


# ============================================================================
# Timezone Helpers
# ============================================================================

def get_timezone():
    """Get the configured timezone object."""
    tz_name = get_config("timezone", "UTC")
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"[Config] Unknown timezone {tz_name!r}, falling back to UTC")
        return timezone.utc


def get_local_now() -> datetime:
    """Get current time in configured timezone."""
    return datetime.now(get_timezone())


def format_time_for_display(dt: datetime = None) -> str:
    """Format a datetime for display in local timezone."""
    if dt is None:
        dt = get_local_now()
    elif dt.tzinfo is None:
        dt = dt.replace(tzinfo=get_timezone())
    else:
        dt = dt.astimezone(get_timezone())
    return dt.strftime("%Y-%m-%d %H:%M:%S %Z")
