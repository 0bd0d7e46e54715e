"""
Finalizer.

Moves the categorized staged transactions of a session into the permanent
ledger exactly once, then removes the session. Cancel discards a session
without touching the ledger.
"""

import logging
from dataclasses import dataclass

from ..config import VatConfig
from ..ledger_client.base import LedgerError, TransactionLedger
from ..ledger_client.entries import build_ledger_entry
from ..schemas.categories import CategoryTaxonomy
from ..schemas.session import ImportSession, SessionStatus, Stage
from ..state_store.sqlite_store import SessionNotFoundError, SessionStore

logger = logging.getLogger(__name__)


class FinalizationError(Exception):
    """Approve preconditions not met, or the transfer failed.

    The session is left untouched in both cases.
    """

    def __init__(self, message: str, session_id: str):
        super().__init__(message)
        self.session_id = session_id


@dataclass
class TransferResult:
    """Outcome of an approve."""

    session_id: str
    transferred: int
    already_present: int
    discarded_uncategorized: int
    external_ids: list[str]

    @property
    def total(self) -> int:
        return self.transferred + self.already_present


def can_approve(session: ImportSession) -> bool:
    """Completed, or paused with at least one categorized batch."""
    if session.status == SessionStatus.COMPLETED:
        return True
    return (
        session.status == SessionStatus.PAUSED
        and session.succeeded_count(Stage.CATEGORIZATION) > 0
    )


class Finalizer:
    """Approve and cancel for import sessions."""

    def __init__(
        self,
        store: SessionStore,
        ledger: TransactionLedger,
        vat_config: VatConfig | None = None,
        taxonomy: CategoryTaxonomy | None = None,
    ):
        self.store = store
        self.ledger = ledger
        self.vat_config = vat_config or VatConfig()
        self.taxonomy = taxonomy or CategoryTaxonomy()

    def _load(self, session_id: str) -> ImportSession:
        session = self.store.load(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def approve(self, session_id: str) -> TransferResult:
        """
        Transfer every categorized staged transaction, then delete the session.

        Uncategorized transactions are discarded with the session. On any
        transfer failure the session stays loadable and approve can be
        retried; entries stored by the failed attempt are not duplicated.

        Raises:
            FinalizationError: Preconditions not met or transfer failed.
        """
        session = self._load(session_id)
        if not can_approve(session):
            raise FinalizationError(
                f"Session {session_id} cannot be approved in status '{session.status.value}'",
                session_id,
            )

        categorized = [t for t in session.staged_transactions.values() if t.is_categorized]
        if not categorized:
            raise FinalizationError(
                f"Session {session_id} has no categorized transactions", session_id
            )
        discarded = len(session.staged_transactions) - len(categorized)

        entries = [
            build_ledger_entry(
                tx, session.user_id, session.file_name, self.vat_config, self.taxonomy
            )
            for tx in categorized
        ]

        logger.info(
            "Approving session %s: %d transactions (%d uncategorized discarded)",
            session_id,
            len(entries),
            discarded,
        )

        try:
            inserted = self.ledger.record_many(entries, session_id)
            if not self.ledger.closes_session:
                self.store.delete(session_id)
        except LedgerError as e:
            logger.error("Transfer of session %s failed: %s", session_id, e)
            raise FinalizationError(f"Transfer failed: {e}", session_id) from e

        return TransferResult(
            session_id=session_id,
            transferred=len(inserted),
            already_present=len(entries) - len(inserted),
            discarded_uncategorized=discarded,
            external_ids=[e.external_id for e in entries],
        )

    def cancel(self, session_id: str) -> bool:
        """Discard the session and everything staged in it.

        Returns False if the session did not exist.
        """
        deleted = self.store.delete(session_id)
        if deleted:
            logger.info("Cancelled import session %s", session_id)
        return deleted
