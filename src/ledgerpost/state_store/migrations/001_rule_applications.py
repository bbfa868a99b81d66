"""
Migration 001: Add rule_applications table.

One row per (document, rule, line item) application of a GL rule.
was_overridden is flipped when a human later replaces the applied code.
"""

import sqlite3

VERSION = 1
NAME = "rule_applications"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create rule_applications table."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS rule_applications (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            document_id TEXT NOT NULL,
            rule_id TEXT NOT NULL,
            line_item_index INTEGER NOT NULL,
            applied_gl_code TEXT NOT NULL,
            confidence_score REAL NOT NULL,
            was_overridden INTEGER NOT NULL DEFAULT 0,
            applied_at TEXT NOT NULL,
            FOREIGN KEY (rule_id) REFERENCES gl_rules(id)
        )
    """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_rule_applications_rule ON rule_applications(rule_id)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_rule_applications_document "
        "ON rule_applications(document_id)"
    )


def downgrade(conn: sqlite3.Connection) -> None:
    """Remove rule_applications table."""
    conn.execute("DROP TABLE IF EXISTS rule_applications")
