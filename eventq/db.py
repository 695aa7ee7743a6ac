import sqlite3
from typing import Optional

from .config import DB_FILE, DEFAULT_CONFIG

SCHEMA = """
PRAGMA journal_mode=WAL;
CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    queue TEXT NOT NULL,
    type TEXT NOT NULL,
    data TEXT NOT NULL,
    state TEXT NOT NULL,
    attempts_made INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL,
    backoff_type TEXT NOT NULL,
    backoff_delay_ms INTEGER NOT NULL,
    timeout_ms INTEGER,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    processed_at TEXT,
    finished_at TEXT,
    next_run_at TEXT,
    failed_reason TEXT,
    result TEXT,
    picked_by TEXT,
    heartbeat_at TEXT,
    stalled_count INTEGER NOT NULL DEFAULT 0,
    remove_on_complete TEXT,
    remove_on_fail TEXT
);

CREATE INDEX IF NOT EXISTS idx_jobs_queue_state_next ON jobs(queue, state, next_run_at);
CREATE INDEX IF NOT EXISTS idx_jobs_queue_finished ON jobs(queue, state, finished_at);

CREATE TABLE IF NOT EXISTS queues (
    name TEXT PRIMARY KEY,
    paused INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS repeatables (
    key TEXT PRIMARY KEY,
    queue TEXT NOT NULL,
    type TEXT NOT NULL,
    data TEXT NOT NULL,
    schedule TEXT NOT NULL,
    next_run_at TEXT NOT NULL,
    last_run_at TEXT
);

CREATE TABLE IF NOT EXISTS config (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


def connect_db(path: Optional[str] = None):
    conn = sqlite3.connect(path or DB_FILE, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.executescript(SCHEMA)
    return conn


def init_db(path: Optional[str] = None):
    conn = connect_db(path)
    with conn:
        # seed defaults
        for k, v in DEFAULT_CONFIG.items():
            conn.execute(
                "INSERT OR IGNORE INTO config(key, value) VALUES(?,?)", (k, v)
            )
    conn.close()
