"""
Permanent transaction store interface and errors.
"""

from typing import Protocol

from .entries import LedgerEntry


class LedgerError(Exception):
    """Base exception for permanent store errors."""

    pass


class LedgerAPIError(LedgerError):
    """Ledger service returned an error response."""

    def __init__(
        self,
        status_code: int,
        message: str,
        response_body: str | None = None,
        errors: dict | None = None,
    ):
        self.status_code = status_code
        self.message = message
        self.response_body = response_body
        self.errors = errors or {}

        error_details = []
        for field, msgs in self.errors.items():
            if isinstance(msgs, list):
                error_details.extend([f"{field}: {m}" for m in msgs])
            else:
                error_details.append(f"{field}: {msgs}")

        detail_str = "; ".join(error_details) if error_details else message
        super().__init__(f"Ledger API error {status_code}: {detail_str}")


class LedgerConnectionError(LedgerError):
    """Failed to reach the ledger service."""

    pass


class TransactionLedger(Protocol):
    """Where approved transactions end up.

    ``record_many`` must be idempotent by ``external_id``: entries that are
    already stored are skipped, so a retried transfer never duplicates.
    Ledgers with ``closes_session = True`` delete the import session in the
    same atomic write as the entries.
    """

    closes_session: bool

    def exists(self, external_id: str) -> bool:
        ...

    def record_many(self, entries: list[LedgerEntry], session_id: str) -> list[str]:
        """Store entries; returns the external ids actually inserted."""
        ...
