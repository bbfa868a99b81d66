"""
Migration 002: Add audit_log table.

Append-only record of field decisions. Rows are never updated or deleted.
"""

import sqlite3

VERSION = 2
NAME = "audit_log"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create audit_log table."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS audit_log (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            document_id TEXT NOT NULL,
            field_name TEXT NOT NULL,
            input_value TEXT,
            output_value TEXT,
            confidence_score REAL NOT NULL DEFAULT 0,
            reasoning TEXT NOT NULL DEFAULT '',
            -- manual_edit, field_reprocess, full_reprocess, initial_mapping
            mapping_source TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
    """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_log_document ON audit_log(document_id)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_log_field ON audit_log(field_name)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_log_created ON audit_log(created_at)")


def downgrade(conn: sqlite3.Connection) -> None:
    """Remove audit_log table."""
    conn.execute("DROP TABLE IF EXISTS audit_log")
