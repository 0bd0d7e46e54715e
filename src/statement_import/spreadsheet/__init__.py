"""Upload boundary: statement files to rows."""

from .reader import SpreadsheetError, compute_file_fingerprint, read_rows

__all__ = ["SpreadsheetError", "compute_file_fingerprint", "read_rows"]
