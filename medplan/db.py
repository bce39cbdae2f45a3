# ============================================================================
# MedPlan - Database Connection & Schema
# ============================================================================
# Single sqlite file shared by settings, medications, intake log and the
# pending reminder table. Schema is additive and created on first use.
# ============================================================================

import os
import sqlite3
from pathlib import Path

DB_PATH = Path(os.environ.get("MEDPLAN_DB", "medplan.db"))

_SCHEMA_INIT_DONE = False

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS settings (
    id INTEGER PRIMARY KEY,
    key TEXT UNIQUE NOT NULL,
    value TEXT,
    value_type TEXT DEFAULT 'string',
    category TEXT DEFAULT 'general',
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_by TEXT
);

CREATE TABLE IF NOT EXISTS medications (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    dosage TEXT DEFAULT '',
    doses_per_day INTEGER NOT NULL,
    window_start TEXT NOT NULL,
    window_end TEXT NOT NULL,
    start_date TEXT NOT NULL,
    end_date TEXT,
    active INTEGER DEFAULT 1,
    notes TEXT,
    created_at TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS dose_intake (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    rule_id TEXT NOT NULL,
    schedule_date TEXT NOT NULL,
    time_of_day TEXT NOT NULL,
    taken_at TEXT NOT NULL,
    source TEXT DEFAULT 'manual'
);
CREATE INDEX IF NOT EXISTS idx_dose_intake_rule ON dose_intake(rule_id, schedule_date);

CREATE TABLE IF NOT EXISTS pending_reminders (
    id TEXT PRIMARY KEY,
    rule_id TEXT NOT NULL,
    schedule_date TEXT NOT NULL,
    time_of_day TEXT NOT NULL,
    target_at TEXT NOT NULL,
    payload_json TEXT NOT NULL,
    state TEXT NOT NULL DEFAULT 'scheduled',
    attempts INTEGER DEFAULT 0,
    created_at TEXT,
    delivered_at TEXT,
    acknowledged_at TEXT,
    action TEXT
);
CREATE INDEX IF NOT EXISTS idx_pending_reminders_rule ON pending_reminders(rule_id);
CREATE INDEX IF NOT EXISTS idx_pending_reminders_state ON pending_reminders(state, target_at);

CREATE TABLE IF NOT EXISTS reminder_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    reminder_id TEXT NOT NULL,
    rule_id TEXT,
    timestamp TEXT NOT NULL,
    event TEXT NOT NULL,
    details TEXT
);
"""


def get_db(path=None) -> sqlite3.Connection:
    """Open a connection, creating the schema the first time."""
    conn = sqlite3.connect(str(path or DB_PATH), timeout=30, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    if path is None:
        ensure_schema(conn)
    else:
        conn.executescript(SCHEMA_SQL)
    return conn


def ensure_schema(conn: sqlite3.Connection = None):
    """Create missing tables in-place without destroying data."""
    global _SCHEMA_INIT_DONE
    if _SCHEMA_INIT_DONE:
        return

    own = conn is None
    if own:
        conn = sqlite3.connect(str(DB_PATH), timeout=30, check_same_thread=False)
    conn.executescript(SCHEMA_SQL)
    conn.commit()
    if own:
        conn.close()
    _SCHEMA_INIT_DONE = True
