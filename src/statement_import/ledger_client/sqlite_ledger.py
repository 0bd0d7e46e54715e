"""
Ledger table in the session database.

Entries and the session deletion are written in one SQLite transaction:
either every entry is stored and the session is gone, or nothing changed.
"""

import logging
import sqlite3
from typing import Any

from ..schemas.session import utc_now
from ..state_store.sqlite_store import SessionStore, SessionStoreError
from .base import LedgerError
from .entries import LedgerEntry

logger = logging.getLogger(__name__)


class SqliteLedger:
    """Permanent store backed by the ledger_transactions table."""

    closes_session = True

    def __init__(self, store: SessionStore):
        self.store = store

    def exists(self, external_id: str) -> bool:
        conn = self.store._get_connection()
        try:
            row = conn.execute(
                "SELECT 1 FROM ledger_transactions WHERE external_id = ?", (external_id,)
            ).fetchone()
            return row is not None
        finally:
            conn.close()

    def _insert_entry(self, conn: sqlite3.Connection, entry: LedgerEntry) -> bool:
        cursor = conn.execute(
            """
            INSERT OR IGNORE INTO ledger_transactions
            (external_id, user_id, source_file, row_number, transaction_date, raw_date,
             description, raw_amount, amount, balance, counterparty, reference_no,
             category_code, category_type, ai_suggested_category, ai_confidence,
             is_income, is_excluded, is_manually_categorized, is_commercial,
             net_amount, vat_amount, vat_rate, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
            (
                entry.external_id,
                entry.user_id,
                entry.source_file,
                entry.row_number,
                entry.transaction_date,
                entry.raw_date,
                entry.description,
                entry.raw_amount,
                str(entry.amount),
                entry.balance,
                entry.counterparty,
                entry.reference_no,
                entry.category_code,
                entry.category_type,
                entry.ai_suggested_category,
                entry.ai_confidence,
                int(entry.is_income),
                int(entry.is_excluded),
                int(entry.is_manually_categorized),
                int(entry.is_commercial),
                str(entry.net_amount),
                str(entry.vat_amount),
                entry.vat_rate,
                utc_now(),
            ),
        )
        return cursor.rowcount > 0

    def record_many(self, entries: list[LedgerEntry], session_id: str) -> list[str]:
        """
        Insert entries and delete the session atomically.

        Raises:
            LedgerError: The write failed; nothing was stored.
        """
        inserted: list[str] = []
        try:
            with self.store._transaction() as conn:
                for entry in entries:
                    if self._insert_entry(conn, entry):
                        inserted.append(entry.external_id)
                self.store.delete_in(conn, session_id)
        except SessionStoreError as e:
            raise LedgerError(f"Ledger transfer failed: {e}") from e

        skipped = len(entries) - len(inserted)
        logger.info(
            "Stored %d ledger transactions (%d already present) from session %s",
            len(inserted),
            skipped,
            session_id,
        )
        return inserted

    def list_entries(self, user_id: str) -> list[dict[str, Any]]:
        """Stored entries of a user in date order."""
        conn = self.store._get_connection()
        try:
            rows = conn.execute(
                """
                SELECT * FROM ledger_transactions
                WHERE user_id = ?
                ORDER BY transaction_date, row_number
            """,
                (user_id,),
            ).fetchall()
            return [dict(row) for row in rows]
        finally:
            conn.close()
