"""
Versioned schema migrations for the state database.

Migration modules live next to this file and are named {version}_{name}.py,
e.g. 001_rule_applications.py. Each defines VERSION, NAME and
upgrade(conn); downgrade(conn) is optional.
"""

import importlib
import logging
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass
class Migration:
    """A single schema migration."""

    version: int
    name: str
    upgrade: Callable[[sqlite3.Connection], None]
    downgrade: Callable[[sqlite3.Connection], None] | None


def get_all_migrations() -> list[Migration]:
    """Load migration modules from this package, ordered by version."""
    migrations = []
    for py_file in sorted(Path(__file__).parent.glob("[0-9][0-9][0-9]_*.py")):
        module = importlib.import_module(f"{__package__}.{py_file.stem}")
        migrations.append(
            Migration(
                version=module.VERSION,
                name=module.NAME,
                upgrade=module.upgrade,
                downgrade=getattr(module, "downgrade", None),
            )
        )
    return sorted(migrations, key=lambda m: m.version)


class MigrationRunner:
    """
    Applies pending migrations in version order.

    Applied versions are tracked in the `migrations` table.
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS migrations (
                version INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                applied_at TEXT NOT NULL
            )
        """
        )
        self.conn.commit()

    def get_applied_versions(self) -> set[int]:
        cursor = self.conn.execute("SELECT version FROM migrations")
        return {row[0] for row in cursor.fetchall()}

    def get_current_version(self) -> int:
        """Highest applied version (0 when none)."""
        result = self.conn.execute("SELECT MAX(version) FROM migrations").fetchone()[0]
        return result or 0

    def apply_migration(self, migration: Migration) -> None:
        """Apply one migration and record it; rolls back on failure."""
        logger.info("Applying migration %03d: %s", migration.version, migration.name)
        try:
            migration.upgrade(self.conn)
            self.conn.execute(
                "INSERT INTO migrations (version, name, applied_at) VALUES (?, ?, ?)",
                (
                    migration.version,
                    migration.name,
                    datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
                ),
            )
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            logger.exception("Migration %03d failed", migration.version)
            raise

    def run_pending(self) -> list[int]:
        """Apply every migration not yet recorded. Returns applied versions."""
        applied = self.get_applied_versions()
        applied_now = []
        for migration in get_all_migrations():
            if migration.version in applied:
                continue
            self.apply_migration(migration)
            applied_now.append(migration.version)

        if applied_now:
            logger.info("Applied %d migrations: %s", len(applied_now), applied_now)
        return applied_now
