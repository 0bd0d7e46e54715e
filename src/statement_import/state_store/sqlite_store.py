"""
SQLite-based session store implementation.

Tables (see migrations/001_import_sessions.py):
- import_sessions: Session identity, status and optimistic version
- import_batches: Per-stage batch status, retry count and last error
- staged_transactions: Extracted candidates and their categorization
- failed_batches: Batches that exhausted retries

Every write bumps the session's ``version``. ``save()`` is the only
whole-session write and rejects a stale version; the granular checkpoint
methods return the new version so the owning orchestrator stays in sync.
"""

import json
import logging
import sqlite3
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from ..schemas.session import (
    BatchRecord,
    BatchStatus,
    FailedBatchRecord,
    ImportSession,
    RowRange,
    SessionStatus,
    Stage,
    StagedTransaction,
    utc_now,
)

logger = logging.getLogger(__name__)


class SessionStoreError(Exception):
    """Base error for session storage failures."""

    def __init__(self, message: str, session_id: str | None = None):
        super().__init__(message)
        self.session_id = session_id


class SessionNotFoundError(SessionStoreError):
    """The session does not exist (never created, approved or cancelled)."""

    def __init__(self, session_id: str):
        super().__init__(f"Import session not found: {session_id}", session_id)


class SessionConflictError(SessionStoreError):
    """The stored session was written by someone else since it was loaded."""

    def __init__(self, session_id: str, expected: int, actual: int):
        super().__init__(
            f"Import session {session_id} was modified concurrently "
            f"(expected version {expected}, found {actual})",
            session_id,
        )
        self.expected = expected
        self.actual = actual


class DuplicateSessionError(SessionStoreError):
    """An active session already exists for the same user and file."""

    def __init__(self, user_id: str, file_fingerprint: str, existing_id: str | None):
        super().__init__(
            f"An active import session already exists for this file "
            f"({file_fingerprint[:12]}...): {existing_id}",
            existing_id,
        )
        self.user_id = user_id
        self.file_fingerprint = file_fingerprint
        self.existing_id = existing_id


def _batch_from_row(row: sqlite3.Row) -> BatchRecord:
    status = BatchStatus(row["status"])
    # A batch that was in flight when the process died never reported back
    if status == BatchStatus.IN_FLIGHT:
        status = BatchStatus.PENDING
    return BatchRecord(
        index=row["batch_index"],
        row_range=RowRange(row["row_start"], row["row_end"]),
        stage=Stage(row["stage"]),
        status=status,
        retry_count=row["retry_count"],
        last_error=row["last_error"],
        terminal=bool(row["terminal"]),
    )


def _staged_from_row(row: sqlite3.Row) -> StagedTransaction:
    affects_pnl = row["affects_pnl"]
    return StagedTransaction(
        id=row["id"],
        source_row_range=RowRange(row["row_start"], row["row_end"]),
        row_number=row["row_number"],
        raw_fields=json.loads(row["raw_json"]),
        category=row["category"],
        category_type=row["category_type"],
        ai_confidence=row["ai_confidence"],
        ai_reasoning=row["ai_reasoning"],
        ai_counterparty=row["ai_counterparty"],
        affects_pnl=None if affects_pnl is None else bool(affects_pnl),
        balance_impact=row["balance_impact"],
        needs_review=bool(row["needs_review"]),
        user_category=row["user_category"],
        reviewed=bool(row["reviewed"]),
    )


def _failed_from_row(row: sqlite3.Row) -> FailedBatchRecord:
    return FailedBatchRecord(
        batch_index=row["batch_index"],
        row_range=RowRange(row["row_start"], row["row_end"]),
        stage=Stage(row["stage"]),
        error=row["error"],
        retry_count=row["retry_count"],
    )


def _bool_or_none(value: bool | None) -> int | None:
    return None if value is None else int(value)


class SessionStore:
    """
    SQLite-based store for import sessions.

    Provides durable tracking of:
    - Session identity and lifecycle status
    - Batch boundaries and per-batch status for both stages
    - Staged transactions accumulated so far
    - Failed-batch diagnostics

    Every method opens its own connection and commits before returning, so an
    acknowledged write survives a process restart. Single writer per session.
    """

    def __init__(self, db_path: Path | str, run_migrations: bool = True):
        """
        Initialize session store.

        Args:
            db_path: Path to SQLite database file
            run_migrations: Whether to run pending migrations (default True)
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        if run_migrations:
            self._run_migrations()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with row factory."""
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database transactions."""
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise SessionStoreError(f"Session store write failed: {e}") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _run_migrations(self) -> None:
        """Run pending database migrations."""
        from .migrations import MigrationRunner

        conn = self._get_connection()
        try:
            runner = MigrationRunner(conn)
            runner.run_pending()
        finally:
            conn.close()

    def _bump_version(self, conn: sqlite3.Connection, session_id: str) -> int:
        """Increment the session version. Raises SessionNotFoundError."""
        cursor = conn.execute(
            """
            UPDATE import_sessions
            SET version = version + 1, updated_at = ?
            WHERE id = ?
        """,
            (utc_now(), session_id),
        )
        if cursor.rowcount == 0:
            raise SessionNotFoundError(session_id)
        row = conn.execute(
            "SELECT version FROM import_sessions WHERE id = ?", (session_id,)
        ).fetchone()
        return int(row["version"])

    # Session methods

    def create(self, session: ImportSession) -> ImportSession:
        """
        Insert a new session with its batches.

        Raises:
            DuplicateSessionError: An active session exists for the same file.
        """
        try:
            with self._transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO import_sessions
                    (id, user_id, file_name, file_fingerprint, status, resume_stage,
                     total_rows_in_file, batch_size, error_message, version,
                     created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?)
                """,
                    (
                        session.id,
                        session.user_id,
                        session.file_name,
                        session.file_fingerprint,
                        session.status.value,
                        session.resume_stage.value if session.resume_stage else None,
                        session.total_rows_in_file,
                        session.batch_size,
                        session.error_message,
                        session.created_at,
                        session.updated_at,
                    ),
                )
                self._write_batches(conn, session.id, session.batches)
        except SessionStoreError as e:
            if isinstance(e.__cause__, sqlite3.IntegrityError):
                existing = self.find_active(session.user_id, session.file_fingerprint)
                raise DuplicateSessionError(
                    session.user_id,
                    session.file_fingerprint,
                    existing.id if existing else None,
                ) from e
            raise

        session.version = 0
        logger.debug("Created import session %s for %s", session.id, session.file_name)
        return session

    def load(self, session_id: str) -> ImportSession | None:
        """Load a full session, or None if it does not exist.

        Batches that were ``in_flight`` when last written come back ``pending``.
        """
        conn = self._get_connection()
        try:
            row = conn.execute(
                "SELECT * FROM import_sessions WHERE id = ?", (session_id,)
            ).fetchone()
            if not row:
                return None
            return self._session_from_row(conn, row)
        finally:
            conn.close()

    def _session_from_row(self, conn: sqlite3.Connection, row: sqlite3.Row) -> ImportSession:
        session_id = row["id"]
        batches = [
            _batch_from_row(b)
            for b in conn.execute(
                """
                SELECT * FROM import_batches
                WHERE session_id = ?
                ORDER BY stage, batch_index
            """,
                (session_id,),
            ).fetchall()
        ]
        staged = {
            t["id"]: _staged_from_row(t)
            for t in conn.execute(
                """
                SELECT * FROM staged_transactions
                WHERE session_id = ?
                ORDER BY position
            """,
                (session_id,),
            ).fetchall()
        }
        failed = [
            _failed_from_row(f)
            for f in conn.execute(
                "SELECT * FROM failed_batches WHERE session_id = ? ORDER BY id",
                (session_id,),
            ).fetchall()
        ]
        return ImportSession(
            id=session_id,
            user_id=row["user_id"],
            file_name=row["file_name"],
            file_fingerprint=row["file_fingerprint"],
            status=SessionStatus(row["status"]),
            total_rows_in_file=row["total_rows_in_file"],
            batch_size=row["batch_size"],
            batches=batches,
            staged_transactions=staged,
            failed_batches=failed,
            resume_stage=Stage(row["resume_stage"]) if row["resume_stage"] else None,
            error_message=row["error_message"],
            version=row["version"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def save(self, session: ImportSession) -> ImportSession:
        """
        Idempotent upsert of the whole session.

        Raises:
            SessionConflictError: The stored version differs from session.version.
        """
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT version FROM import_sessions WHERE id = ?", (session.id,)
            ).fetchone()
            if row is None:
                conn.execute(
                    """
                    INSERT INTO import_sessions
                    (id, user_id, file_name, file_fingerprint, status, created_at,
                     updated_at, version)
                    VALUES (?, ?, ?, ?, ?, ?, ?, 0)
                """,
                    (
                        session.id,
                        session.user_id,
                        session.file_name,
                        session.file_fingerprint,
                        session.status.value,
                        session.created_at,
                        session.updated_at,
                    ),
                )
            elif row["version"] != session.version:
                raise SessionConflictError(session.id, session.version, row["version"])

            conn.execute(
                """
                UPDATE import_sessions
                SET file_name = ?, status = ?, resume_stage = ?, total_rows_in_file = ?,
                    batch_size = ?, error_message = ?
                WHERE id = ?
            """,
                (
                    session.file_name,
                    session.status.value,
                    session.resume_stage.value if session.resume_stage else None,
                    session.total_rows_in_file,
                    session.batch_size,
                    session.error_message,
                    session.id,
                ),
            )

            conn.execute("DELETE FROM import_batches WHERE session_id = ?", (session.id,))
            self._write_batches(conn, session.id, session.batches)

            conn.execute("DELETE FROM staged_transactions WHERE session_id = ?", (session.id,))
            self._write_staged(conn, session.id, session.staged_transactions.values(), 0)

            conn.execute("DELETE FROM failed_batches WHERE session_id = ?", (session.id,))
            for failed in session.failed_batches:
                self._write_failed(conn, session.id, failed)

            session.version = self._bump_version(conn, session.id)
        return session

    def delete(self, session_id: str) -> bool:
        """Delete a session and everything staged in it. Returns True if it existed."""
        with self._transaction() as conn:
            return self.delete_in(conn, session_id)

    def delete_in(self, conn: sqlite3.Connection, session_id: str) -> bool:
        """Delete a session inside a caller-owned transaction."""
        cursor = conn.execute("DELETE FROM import_sessions WHERE id = ?", (session_id,))
        if cursor.rowcount:
            logger.debug("Deleted import session %s", session_id)
        return cursor.rowcount > 0

    def find_active(
        self, user_id: str, file_fingerprint: str | None = None
    ) -> ImportSession | None:
        """Most recent active session of a user, optionally for one file."""
        query = "SELECT * FROM import_sessions WHERE user_id = ? AND status != ?"
        params: list[Any] = [user_id, SessionStatus.CANCELLED.value]
        if file_fingerprint is not None:
            query += " AND file_fingerprint = ?"
            params.append(file_fingerprint)
        query += " ORDER BY created_at DESC LIMIT 1"

        conn = self._get_connection()
        try:
            row = conn.execute(query, params).fetchone()
            return self._session_from_row(conn, row) if row else None
        finally:
            conn.close()

    def list_sessions(self, user_id: str) -> list[dict[str, Any]]:
        """Lightweight listing of a user's sessions for the status command."""
        conn = self._get_connection()
        try:
            rows = conn.execute(
                """
                SELECT s.id, s.file_name, s.status, s.resume_stage, s.total_rows_in_file,
                       s.created_at, s.updated_at,
                       (SELECT COUNT(*) FROM staged_transactions t
                        WHERE t.session_id = s.id) AS staged_count,
                       (SELECT COUNT(*) FROM failed_batches f
                        WHERE f.session_id = s.id) AS failed_count
                FROM import_sessions s
                WHERE s.user_id = ?
                ORDER BY s.created_at DESC
            """,
                (user_id,),
            ).fetchall()
            return [dict(row) for row in rows]
        finally:
            conn.close()

    # Checkpoint methods

    def update_status(
        self,
        session_id: str,
        status: SessionStatus,
        resume_stage: Stage | None = None,
        error_message: str | None = None,
    ) -> int:
        """Write the session status. Returns the new version."""
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE import_sessions
                SET status = ?, resume_stage = ?, error_message = ?
                WHERE id = ?
            """,
                (
                    status.value,
                    resume_stage.value if resume_stage else None,
                    error_message,
                    session_id,
                ),
            )
            return self._bump_version(conn, session_id)

    def set_total_rows(self, session_id: str, total_rows: int, batch_size: int) -> int:
        """Record the parsed row count and the batch size used to split it."""
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE import_sessions
                SET total_rows_in_file = ?, batch_size = ?
                WHERE id = ?
            """,
                (total_rows, batch_size, session_id),
            )
            return self._bump_version(conn, session_id)

    def add_batches(self, session_id: str, batches: Iterable[BatchRecord]) -> int:
        """Insert batch records that do not exist yet. Returns the new version."""
        with self._transaction() as conn:
            self._write_batches(conn, session_id, batches, ignore_existing=True)
            return self._bump_version(conn, session_id)

    def _update_batch(
        self,
        conn: sqlite3.Connection,
        session_id: str,
        stage: Stage,
        batch_index: int,
        status: BatchStatus,
        error: str | None,
        retry_count: int | None,
        terminal: bool | None,
    ) -> None:
        cursor = conn.execute(
            """
            UPDATE import_batches
            SET status = ?,
                last_error = ?,
                retry_count = COALESCE(?, retry_count),
                terminal = COALESCE(?, terminal),
                updated_at = ?
            WHERE session_id = ? AND stage = ? AND batch_index = ?
        """,
            (
                status.value,
                error,
                retry_count,
                _bool_or_none(terminal),
                utc_now(),
                session_id,
                stage.value,
                batch_index,
            ),
        )
        if cursor.rowcount == 0:
            raise SessionStoreError(
                f"No {stage.value} batch {batch_index} in session {session_id}", session_id
            )

    def _write_batch_state(
        self, conn: sqlite3.Connection, session_id: str, batch: BatchRecord
    ) -> None:
        self._update_batch(
            conn,
            session_id,
            batch.stage,
            batch.index,
            batch.status,
            batch.last_error,
            batch.retry_count,
            batch.terminal,
        )

    def mark_batch(
        self,
        session_id: str,
        stage: Stage,
        batch_index: int,
        status: BatchStatus,
        error: str | None = None,
        retry_count: int | None = None,
        terminal: bool | None = None,
        failed: FailedBatchRecord | None = None,
    ) -> int:
        """
        Update one batch's status.

        retry_count and terminal are left unchanged when not given. When
        ``failed`` is given the failed-batch entry is written in the same
        transaction. Returns the new session version.
        """
        with self._transaction() as conn:
            self._update_batch(
                conn, session_id, stage, batch_index, status, error, retry_count, terminal
            )
            if failed is not None:
                self._write_failed(conn, session_id, failed)
            return self._bump_version(conn, session_id)

    def append_staged_transactions(
        self,
        session_id: str,
        items: Iterable[StagedTransaction],
        completed_batch: BatchRecord | None = None,
    ) -> int:
        """
        Append staged transactions after the existing ones.

        Ids already present are ignored, so a replayed batch cannot duplicate.
        ``completed_batch`` is written in the same transaction, so the batch
        is never seen as succeeded without its transactions or the other
        way round. Returns the new session version.
        """
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT COALESCE(MAX(position), -1) AS last FROM staged_transactions "
                "WHERE session_id = ?",
                (session_id,),
            ).fetchone()
            self._write_staged(conn, session_id, items, row["last"] + 1)
            if completed_batch is not None:
                self._write_batch_state(conn, session_id, completed_batch)
            return self._bump_version(conn, session_id)

    def apply_categorized_updates(
        self,
        session_id: str,
        transactions: Iterable[StagedTransaction],
        completed_batch: BatchRecord | None = None,
    ) -> int:
        """Persist the AI categorization fields of already staged transactions."""
        with self._transaction() as conn:
            for tx in transactions:
                conn.execute(
                    """
                    UPDATE staged_transactions
                    SET category = ?, category_type = ?, ai_confidence = ?,
                        ai_reasoning = ?, ai_counterparty = ?, affects_pnl = ?,
                        balance_impact = ?, needs_review = ?
                    WHERE session_id = ? AND id = ?
                """,
                    (
                        tx.category,
                        tx.category_type,
                        tx.ai_confidence,
                        tx.ai_reasoning,
                        tx.ai_counterparty,
                        _bool_or_none(tx.affects_pnl),
                        tx.balance_impact,
                        int(tx.needs_review),
                        session_id,
                        tx.id,
                    ),
                )
            if completed_batch is not None:
                self._write_batch_state(conn, session_id, completed_batch)
            return self._bump_version(conn, session_id)

    def set_user_category(self, session_id: str, transaction_id: str, category_code: str) -> int:
        """
        Record a user's category choice and mark the transaction reviewed.

        Raises:
            SessionStoreError: The transaction is not staged in this session.
        """
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE staged_transactions
                SET user_category = ?, reviewed = 1, needs_review = 0, reviewed_at = ?
                WHERE session_id = ? AND id = ?
            """,
                (category_code, utc_now(), session_id, transaction_id),
            )
            if cursor.rowcount == 0:
                raise SessionStoreError(
                    f"Transaction {transaction_id} is not staged in session {session_id}",
                    session_id,
                )
            return self._bump_version(conn, session_id)

    def reset_failed_batches(self, session_id: str, stage: Stage) -> int:
        """
        Put the terminally failed batches of a stage back to pending.

        Retry counts and errors are cleared and the stage's failed-batch
        entries are removed. Returns the new session version.
        """
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE import_batches
                SET status = ?, retry_count = 0, last_error = NULL, terminal = 0,
                    updated_at = ?
                WHERE session_id = ? AND stage = ? AND status = ?
            """,
                (
                    BatchStatus.PENDING.value,
                    utc_now(),
                    session_id,
                    stage.value,
                    BatchStatus.FAILED.value,
                ),
            )
            conn.execute(
                "DELETE FROM failed_batches WHERE session_id = ? AND stage = ?",
                (session_id, stage.value),
            )
            logger.info(
                "Reset %d failed %s batches of session %s",
                cursor.rowcount,
                stage.value,
                session_id,
            )
            return self._bump_version(conn, session_id)

    # Row writers

    def _write_batches(
        self,
        conn: sqlite3.Connection,
        session_id: str,
        batches: Iterable[BatchRecord],
        ignore_existing: bool = False,
    ) -> None:
        verb = "INSERT OR IGNORE" if ignore_existing else "INSERT"
        now = utc_now()
        conn.executemany(
            f"""
            {verb} INTO import_batches
            (session_id, stage, batch_index, row_start, row_end, status,
             retry_count, last_error, terminal, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
            [
                (
                    session_id,
                    b.stage.value,
                    b.index,
                    b.row_range.start,
                    b.row_range.end,
                    b.status.value,
                    b.retry_count,
                    b.last_error,
                    int(b.terminal),
                    now,
                )
                for b in batches
            ],
        )

    def _write_staged(
        self,
        conn: sqlite3.Connection,
        session_id: str,
        items: Iterable[StagedTransaction],
        first_position: int,
    ) -> None:
        for position, tx in enumerate(items, start=first_position):
            conn.execute(
                """
                INSERT OR IGNORE INTO staged_transactions
                (session_id, id, position, row_start, row_end, row_number, raw_json,
                 category, category_type, ai_confidence, ai_reasoning, ai_counterparty,
                 affects_pnl, balance_impact, needs_review, user_category, reviewed)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    session_id,
                    tx.id,
                    position,
                    tx.source_row_range.start,
                    tx.source_row_range.end,
                    tx.row_number,
                    json.dumps(tx.raw_fields),
                    tx.category,
                    tx.category_type,
                    tx.ai_confidence,
                    tx.ai_reasoning,
                    tx.ai_counterparty,
                    _bool_or_none(tx.affects_pnl),
                    tx.balance_impact,
                    int(tx.needs_review),
                    tx.user_category,
                    int(tx.reviewed),
                ),
            )

    def _write_failed(
        self, conn: sqlite3.Connection, session_id: str, failed: FailedBatchRecord
    ) -> None:
        conn.execute(
            """
            INSERT INTO failed_batches
            (session_id, stage, batch_index, row_start, row_end, error, retry_count,
             created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (session_id, stage, batch_index)
            DO UPDATE SET error = excluded.error, retry_count = excluded.retry_count
        """,
            (
                session_id,
                failed.stage.value,
                failed.batch_index,
                failed.row_range.start,
                failed.row_range.end,
                failed.error,
                failed.retry_count,
                utc_now(),
            ),
        )
