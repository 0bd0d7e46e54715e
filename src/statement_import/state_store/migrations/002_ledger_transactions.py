"""
Migration 002: Local permanent ledger.

Creates the ledger_transactions table used by the sqlite ledger backend.
external_id is UNIQUE so a retried transfer can never duplicate a row.
"""

import sqlite3

VERSION = 2
NAME = "ledger_transactions"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create the ledger_transactions table."""
    cursor = conn.cursor()

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS ledger_transactions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            external_id TEXT NOT NULL UNIQUE,
            user_id TEXT NOT NULL,
            source_file TEXT,
            row_number INTEGER NOT NULL,

            transaction_date TEXT,
            raw_date TEXT,
            description TEXT NOT NULL,
            raw_amount TEXT,
            amount TEXT NOT NULL,
            balance TEXT,
            counterparty TEXT,
            reference_no TEXT,

            category_code TEXT NOT NULL,
            category_type TEXT,
            ai_suggested_category TEXT,
            ai_confidence REAL NOT NULL DEFAULT 0,

            is_income INTEGER NOT NULL,
            is_excluded INTEGER NOT NULL DEFAULT 0,
            is_manually_categorized INTEGER NOT NULL DEFAULT 0,
            is_commercial INTEGER NOT NULL DEFAULT 1,
            net_amount TEXT NOT NULL,
            vat_amount TEXT NOT NULL,
            vat_rate INTEGER NOT NULL,

            created_at TEXT NOT NULL
        )
    """)

    cursor.execute("""
        CREATE INDEX IF NOT EXISTS idx_ledger_transactions_user_date
        ON ledger_transactions (user_id, transaction_date)
    """)

    conn.commit()


def downgrade(conn: sqlite3.Connection) -> None:
    """Drop the ledger_transactions table."""
    cursor = conn.cursor()
    cursor.execute("DROP INDEX IF EXISTS idx_ledger_transactions_user_date")
    cursor.execute("DROP TABLE IF EXISTS ledger_transactions")
    conn.commit()
