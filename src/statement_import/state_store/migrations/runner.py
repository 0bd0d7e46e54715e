"""
Schema migrations for the state database.

Migration modules live next to this file as ``NNN_<name>.py`` and define
``VERSION``, ``NAME``, ``upgrade(conn)`` and optionally ``downgrade(conn)``.
Versions must run 1, 2, 3, ... without gaps; the applied versions are
recorded in the ``schema_migrations`` table.
"""

import importlib
import logging
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from ...schemas.session import utc_now

logger = logging.getLogger(__name__)

MIGRATION_GLOB = "[0-9][0-9][0-9]_*.py"


class MigrationError(Exception):
    """The migration set is inconsistent or a migration failed."""

    pass


@dataclass(frozen=True)
class Migration:
    version: int
    name: str
    upgrade: Callable[[sqlite3.Connection], None]
    downgrade: Callable[[sqlite3.Connection], None] | None = None


def get_all_migrations() -> list[Migration]:
    """
    Migrations shipped with the package, in version order.

    Raises:
        MigrationError: Duplicate or missing versions
    """
    found: dict[int, Migration] = {}
    for path in Path(__file__).parent.glob(MIGRATION_GLOB):
        module = importlib.import_module(f"{__package__}.{path.stem}")
        migration = Migration(
            version=module.VERSION,
            name=module.NAME,
            upgrade=module.upgrade,
            downgrade=getattr(module, "downgrade", None),
        )
        if migration.version in found:
            raise MigrationError(
                f"Migration version {migration.version} defined twice "
                f"({found[migration.version].name}, {migration.name})"
            )
        found[migration.version] = migration

    versions = sorted(found)
    if versions != list(range(1, len(versions) + 1)):
        raise MigrationError(f"Migration versions are not contiguous: {versions}")
    return [found[v] for v in versions]


class MigrationRunner:
    """Brings a state database to a schema version, up or down."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                applied_at TEXT NOT NULL
            )
        """
        )
        self.conn.commit()

    def get_current_version(self) -> int:
        """Highest applied version, 0 for a fresh database."""
        row = self.conn.execute("SELECT MAX(version) FROM schema_migrations").fetchone()
        return row[0] or 0

    def _step(self, migration: Migration, up: bool) -> None:
        direction = "upgrade" if up else "downgrade"
        func = migration.upgrade if up else migration.downgrade
        if func is None:
            raise MigrationError(f"Migration {migration.version:03d} cannot be downgraded")

        logger.info("Schema %s %03d: %s", direction, migration.version, migration.name)
        try:
            func(self.conn)
            if up:
                self.conn.execute(
                    "INSERT INTO schema_migrations (version, name, applied_at) VALUES (?, ?, ?)",
                    (migration.version, migration.name, utc_now()),
                )
            else:
                self.conn.execute(
                    "DELETE FROM schema_migrations WHERE version = ?", (migration.version,)
                )
            self.conn.commit()
        except sqlite3.Error as e:
            self.conn.rollback()
            raise MigrationError(
                f"Schema {direction} {migration.version:03d} failed: {e}"
            ) from e

    def migrate_to(self, target: int | None = None) -> list[int]:
        """
        Upgrade or downgrade to ``target`` (default: latest).

        Returns the versions that were applied or reverted, in the order
        they ran.
        """
        migrations = get_all_migrations()
        latest = migrations[-1].version if migrations else 0
        target = latest if target is None else target
        if not 0 <= target <= latest:
            raise MigrationError(f"Unknown schema version {target} (latest is {latest})")

        current = self.get_current_version()
        if target >= current:
            steps = [m for m in migrations if current < m.version <= target]
            for migration in steps:
                self._step(migration, up=True)
        else:
            steps = [m for m in reversed(migrations) if target < m.version <= current]
            for migration in steps:
                self._step(migration, up=False)

        if steps:
            logger.info("State database schema now at version %d", target)
        return [m.version for m in steps]

    def run_pending(self) -> list[int]:
        """Apply every migration newer than the current version."""
        return self.migrate_to(None)
