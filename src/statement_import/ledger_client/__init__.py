"""
Permanent transaction store.

Backends:
- SqliteLedger: ledger table in the session database (atomic with session removal)
- LedgerClient: REST ledger service, idempotent by external_id
"""

from .base import LedgerAPIError, LedgerConnectionError, LedgerError, TransactionLedger
from .client import LedgerClient
from .entries import LedgerEntry, build_ledger_entry, is_commercial, split_vat
from .sqlite_ledger import SqliteLedger

__all__ = [
    "TransactionLedger",
    "LedgerEntry",
    "LedgerError",
    "LedgerAPIError",
    "LedgerConnectionError",
    "LedgerClient",
    "SqliteLedger",
    "build_ledger_entry",
    "is_commercial",
    "split_vat",
]
