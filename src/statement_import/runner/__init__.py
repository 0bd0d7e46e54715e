"""
CLI runner module.

Provides commands:
- import: Start or continue importing a statement file
- resume / categorize-paused: Continue a paused session
- status / failed / review: Inspect a session and fix categories
- retry-failed: Reset failed batches
- approve / cancel: Finish a session
"""

from .main import create_cli, main

__all__ = [
    "create_cli",
    "main",
]
