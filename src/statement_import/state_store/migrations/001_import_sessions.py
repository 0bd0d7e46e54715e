"""
Migration 001: Import session tables.

Creates the durable session layout:
- import_sessions: one row per (user, file) in flight
- import_batches: per-stage batch status, retry count and last error
- staged_transactions: extracted candidates with their categorization
- failed_batches: batches that exhausted retries (user-visible)

Only one non-cancelled session may exist per (user_id, file_fingerprint).
"""

import sqlite3

VERSION = 1
NAME = "import_sessions"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create the session tables."""
    cursor = conn.cursor()

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS import_sessions (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            file_name TEXT NOT NULL,
            file_fingerprint TEXT NOT NULL,

            -- idle, uploading, extracting, paused, categorizing,
            -- completed, cancelled, error
            status TEXT NOT NULL,
            resume_stage TEXT,

            total_rows_in_file INTEGER NOT NULL DEFAULT 0,
            batch_size INTEGER NOT NULL DEFAULT 0,
            error_message TEXT,

            -- Optimistic concurrency: bumped on every write
            version INTEGER NOT NULL DEFAULT 0,

            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """)

    cursor.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS idx_import_sessions_active_file
        ON import_sessions (user_id, file_fingerprint)
        WHERE status != 'cancelled'
    """)

    cursor.execute("""
        CREATE INDEX IF NOT EXISTS idx_import_sessions_user_status
        ON import_sessions (user_id, status)
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS import_batches (
            session_id TEXT NOT NULL,
            stage TEXT NOT NULL,
            batch_index INTEGER NOT NULL,
            row_start INTEGER NOT NULL,
            row_end INTEGER NOT NULL,

            -- pending, in_flight, succeeded, failed
            status TEXT NOT NULL DEFAULT 'pending',
            retry_count INTEGER NOT NULL DEFAULT 0,
            last_error TEXT,
            terminal INTEGER NOT NULL DEFAULT 0,
            updated_at TEXT NOT NULL,

            PRIMARY KEY (session_id, stage, batch_index),
            FOREIGN KEY (session_id) REFERENCES import_sessions(id) ON DELETE CASCADE
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS staged_transactions (
            session_id TEXT NOT NULL,
            id TEXT NOT NULL,
            -- Extraction order
            position INTEGER NOT NULL,
            row_start INTEGER NOT NULL,
            row_end INTEGER NOT NULL,
            row_number INTEGER NOT NULL,
            raw_json TEXT NOT NULL,

            category TEXT,
            category_type TEXT,
            ai_confidence REAL NOT NULL DEFAULT 0,
            ai_reasoning TEXT,
            ai_counterparty TEXT,
            affects_pnl INTEGER,
            balance_impact TEXT,
            needs_review INTEGER NOT NULL DEFAULT 0,

            user_category TEXT,
            reviewed INTEGER NOT NULL DEFAULT 0,
            reviewed_at TEXT,

            PRIMARY KEY (session_id, id),
            FOREIGN KEY (session_id) REFERENCES import_sessions(id) ON DELETE CASCADE
        )
    """)

    cursor.execute("""
        CREATE INDEX IF NOT EXISTS idx_staged_transactions_position
        ON staged_transactions (session_id, position)
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS failed_batches (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            session_id TEXT NOT NULL,
            stage TEXT NOT NULL,
            batch_index INTEGER NOT NULL,
            row_start INTEGER NOT NULL,
            row_end INTEGER NOT NULL,
            error TEXT NOT NULL,
            retry_count INTEGER NOT NULL,
            created_at TEXT NOT NULL,

            UNIQUE (session_id, stage, batch_index),
            FOREIGN KEY (session_id) REFERENCES import_sessions(id) ON DELETE CASCADE
        )
    """)

    conn.commit()


def downgrade(conn: sqlite3.Connection) -> None:
    """Drop the session tables."""
    cursor = conn.cursor()
    cursor.execute("DROP TABLE IF EXISTS failed_batches")
    cursor.execute("DROP TABLE IF EXISTS staged_transactions")
    cursor.execute("DROP TABLE IF EXISTS import_batches")
    cursor.execute("DROP INDEX IF EXISTS idx_import_sessions_user_status")
    cursor.execute("DROP INDEX IF EXISTS idx_import_sessions_active_file")
    cursor.execute("DROP TABLE IF EXISTS import_sessions")
    conn.commit()
