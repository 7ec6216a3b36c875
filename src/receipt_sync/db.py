"""Database connection helper and schema."""

from __future__ import annotations

from typing import Any

import psycopg
from psycopg.rows import dict_row

from receipt_sync.config import get_database_url

SCHEMA = """
CREATE TABLE IF NOT EXISTS mail_accounts (
    id SERIAL PRIMARY KEY,
    user_id INTEGER NOT NULL,
    provider_type TEXT NOT NULL,
    email_address TEXT NOT NULL,
    credentials JSONB NOT NULL,
    last_sync_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    UNIQUE (user_id, provider_type, email_address)
);

CREATE TABLE IF NOT EXISTS sync_jobs (
    id SERIAL PRIMARY KEY,
    account_id INTEGER NOT NULL
        REFERENCES mail_accounts (id) ON DELETE CASCADE,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'processing', 'completed', 'failed')),
    messages_found INTEGER NOT NULL DEFAULT 0 CHECK (messages_found >= 0),
    messages_processed INTEGER NOT NULL DEFAULT 0
        CHECK (messages_processed >= 0),
    receipts_found INTEGER NOT NULL DEFAULT 0 CHECK (receipts_found >= 0),
    error_message TEXT,
    started_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    completed_at TIMESTAMPTZ,
    CHECK (messages_processed <= messages_found)
);

CREATE INDEX IF NOT EXISTS sync_jobs_account_idx
    ON sync_jobs (account_id, started_at DESC);

CREATE TABLE IF NOT EXISTS receipts (
    id SERIAL PRIMARY KEY,
    user_id INTEGER NOT NULL,
    account_id INTEGER REFERENCES mail_accounts (id) ON DELETE SET NULL,
    merchant TEXT NOT NULL,
    date DATE NOT NULL,
    total NUMERIC(14, 2) NOT NULL CHECK (total >= 0),
    currency CHAR(3) NOT NULL DEFAULT 'USD',
    currency_confidence REAL NOT NULL DEFAULT 0,
    currency_evidence TEXT NOT NULL DEFAULT '',
    items JSONB NOT NULL DEFAULT '[]',
    category TEXT NOT NULL DEFAULT 'Others',
    source TEXT NOT NULL,
    source_id TEXT,
    source_provider TEXT,
    confidence REAL NOT NULL DEFAULT 0,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE INDEX IF NOT EXISTS receipts_source_idx
    ON receipts (account_id, source_id);
"""


def get_connection() -> psycopg.Connection[dict[str, Any]]:
    """Create and return a new autocommit database connection."""
    return psycopg.connect(get_database_url(), row_factory=dict_row, autocommit=True)


def init_schema(conn: psycopg.Connection[dict[str, Any]] | None = None) -> None:
    """Create the tables the sync pipeline reads and writes, if missing."""
    if conn is None:
        with get_connection() as owned:
            owned.execute(SCHEMA)
        return
    conn.execute(SCHEMA)
