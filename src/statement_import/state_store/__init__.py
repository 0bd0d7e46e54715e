"""
State store module for durable import sessions.

SQLite-based persistence for:
- Import sessions and their lifecycle status
- Per-stage batch status, retries and errors
- Staged (not yet approved) transactions
- Failed-batch diagnostics
"""

from .sqlite_store import (
    DuplicateSessionError,
    SessionConflictError,
    SessionNotFoundError,
    SessionStore,
    SessionStoreError,
)

__all__ = [
    "SessionStore",
    "SessionStoreError",
    "SessionNotFoundError",
    "SessionConflictError",
    "DuplicateSessionError",
]
