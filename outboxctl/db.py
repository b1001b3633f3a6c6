import logging
import sqlite3
from typing import Optional

from .config import DEFAULT_CONFIG, DEFAULT_DB_FILE

log = logging.getLogger(__name__)

SCHEMA = """
PRAGMA journal_mode=WAL;
CREATE TABLE IF NOT EXISTS workspaces (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    sender_email TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS leads (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    email TEXT NOT NULL,
    name TEXT,
    status TEXT NOT NULL DEFAULT 'new',
    last_contact_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_leads_status_created ON leads(status, created_at);

CREATE TABLE IF NOT EXISTS campaigns (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'idle',
    niche TEXT NOT NULL DEFAULT '',
    daily_limit INTEGER NOT NULL DEFAULT 50,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    lead_id TEXT,
    recipient TEXT NOT NULL,
    subject TEXT NOT NULL,
    body TEXT NOT NULL,
    in_reply_to TEXT,
    attachments TEXT,
    provider_message_id TEXT,
    sent_at TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS send_jobs (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    message_id TEXT NOT NULL,
    lead_id TEXT,
    campaign_id TEXT,
    state TEXT NOT NULL,
    attempt_count INTEGER NOT NULL DEFAULT 0,
    scheduled_at TEXT NOT NULL,
    last_attempt_at TEXT,
    error_detail TEXT,
    provider_message_id TEXT,
    dedupe_key TEXT NOT NULL,
    picked_by TEXT,
    sent_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
-- cancelled and skipped jobs do not block the same email from being queued again
CREATE UNIQUE INDEX IF NOT EXISTS uq_send_jobs_live_dedupe
    ON send_jobs(tenant_id, dedupe_key) WHERE state IN ('queued', 'leased', 'sent');
CREATE INDEX IF NOT EXISTS idx_send_jobs_state_scheduled ON send_jobs(state, scheduled_at);
CREATE INDEX IF NOT EXISTS idx_send_jobs_tenant_state ON send_jobs(tenant_id, state);

CREATE TABLE IF NOT EXISTS action_log (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    lead_id TEXT,
    action_type TEXT NOT NULL,
    details TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS config (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


class Store:
    """
    Explicitly owned handle on the job database.

    One Store per thread: sqlite3 connections are not shared across threads,
    and all coordination between workers happens through conditional UPDATEs.
    """

    def __init__(self, path: Optional[str] = None, *, busy_timeout: float = 30.0):
        self.path = path or DEFAULT_DB_FILE
        self.busy_timeout = busy_timeout
        self._conn: Optional[sqlite3.Connection] = None

    def open(self) -> "Store":
        if self._conn is None:
            self._conn = sqlite3.connect(self.path, timeout=self.busy_timeout)
            self._conn.row_factory = sqlite3.Row
            self._conn.executescript(SCHEMA)
        return self

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Store is not open")
        return self._conn

    def __enter__(self) -> "Store":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def connect_db(path: Optional[str] = None) -> Store:
    return Store(path).open()


def init_db(path: Optional[str] = None) -> None:
    store = connect_db(path)
    conn = store.conn
    try:
        with conn:
            # seed defaults
            for k, v in DEFAULT_CONFIG.items():
                conn.execute(
                    "INSERT OR IGNORE INTO config(key, value) VALUES(?,?)", (k, v)
                )
    finally:
        store.close()
    log.debug("database ready at %s", store.path)
