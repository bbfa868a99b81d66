"""
Migration 004: Make rule applications unique per (document, rule, line item).

Redelivered jobs and reprocessing re-record the same application; with the
unique key the store updates the existing row instead of adding another.
Duplicates written before this migration are collapsed onto the oldest row.
"""

import sqlite3

VERSION = 4
NAME = "rule_application_key"


def upgrade(conn: sqlite3.Connection) -> None:
    """Collapse duplicate applications and add the unique index."""
    conn.execute(
        """
        UPDATE rule_applications
        SET was_overridden = 1
        WHERE id IN (
            SELECT MIN(id) FROM rule_applications
            GROUP BY document_id, rule_id, line_item_index
            HAVING MAX(was_overridden) = 1
        )
    """
    )
    conn.execute(
        """
        DELETE FROM rule_applications
        WHERE id NOT IN (
            SELECT MIN(id) FROM rule_applications
            GROUP BY document_id, rule_id, line_item_index
        )
    """
    )
    conn.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_rule_applications_key "
        "ON rule_applications(document_id, rule_id, line_item_index)"
    )


def downgrade(conn: sqlite3.Connection) -> None:
    """Drop the unique index."""
    conn.execute("DROP INDEX IF EXISTS idx_rule_applications_key")
