"""
Identity and dedupe keys (CRITICAL).

This module defines THE deterministic identifiers of the import pipeline:

1. File fingerprint: SHA256 of the uploaded file bytes. Used to detect a
   resumable session and to block duplicate sessions for the same file.

2. Transaction id: {hash[:16]}:r{row}
   - hash = SHA256(fingerprint|row|amount|date|description)
   - row = 1-based spreadsheet row number
   This id is also the external_id written to the permanent ledger, so an
   approve that is retried after a partial transfer can never insert the
   same transaction twice.

Identifiers must be:
- Stable: same inputs always produce the same output (resume reproduces them)
- Collision-resistant: two rows of the same file never share an id
"""

import hashlib
from decimal import Decimal

# Length of the hash prefix to use
HASH_PREFIX_LENGTH = 16

# Marker between hash and row number
ROW_MARKER = "r"


def _normalize_amount(amount: Decimal | str | float) -> str:
    """
    Normalize amount to a consistent format for hashing.

    Args:
        amount: Amount in various formats

    Returns:
        Normalized amount string with 2 decimal places
    """
    if isinstance(amount, str):
        amount = Decimal(amount.replace(",", "."))
    elif isinstance(amount, float):
        amount = Decimal(str(amount))
    elif not isinstance(amount, Decimal):
        raise ValueError(f"amount must be Decimal, str, or float, got: {type(amount)}")

    return f"{amount:.2f}"


def _normalize_string(value: str | None) -> str:
    """Normalize a string for hashing (lowercase, collapse whitespace)."""
    if not value:
        return ""
    return " ".join(value.split()).lower()


def compute_file_hash(file_bytes: bytes) -> str:
    """
    Compute SHA256 hash of file bytes.

    Args:
        file_bytes: Raw file content

    Returns:
        64-character lowercase hex string
    """
    return hashlib.sha256(file_bytes).hexdigest()


def generate_transaction_id(
    file_fingerprint: str,
    row_number: int,
    amount: Decimal | str | float,
    date: str | None,
    description: str | None,
) -> str:
    """
    Generate the staged transaction id (also the ledger external_id).

    Args:
        file_fingerprint: Fingerprint of the source file
        row_number: 0-based row index in the file
        amount: Transaction amount
        date: Transaction date (YYYY-MM-DD) or None if the model gave none
        description: Transaction description

    Returns:
        Transaction id string, e.g. "3f2a9c0d1e4b5a67:r1" for the first row
    """
    if row_number < 0:
        raise ValueError(f"row_number must be >= 0, got: {row_number}")

    hash_input = "|".join(
        [
            file_fingerprint,
            str(row_number),
            _normalize_amount(amount),
            date or "",
            _normalize_string(description),
        ]
    )
    full_hash = hashlib.sha256(hash_input.encode("utf-8")).hexdigest()
    return f"{full_hash[:HASH_PREFIX_LENGTH]}:{ROW_MARKER}{row_number + 1}"


def parse_row_number(transaction_id: str) -> int | None:
    """
    Extract the 0-based row number from a transaction id.

    Returns None if the id does not have the expected format.
    """
    _, sep, row_part = transaction_id.rpartition(f":{ROW_MARKER}")
    if not sep:
        return None
    try:
        row = int(row_part)
    except ValueError:
        return None
    return row - 1 if row > 0 else None
