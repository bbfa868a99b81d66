"""
Migration 003: Add job_queue table.

Document processing jobs. At most one PENDING/PROCESSING job per document
(enforced in the application layer). A job that fails is returned to
PENDING until attempts reach max_attempts, then parked as FAILED.
"""

import sqlite3

VERSION = 3
NAME = "job_queue"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create the job_queue table."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS job_queue (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            document_id TEXT NOT NULL,
            owner_id TEXT NOT NULL,
            file_reference TEXT NOT NULL,
            filename TEXT NOT NULL,

            -- PENDING, PROCESSING, COMPLETED, FAILED
            status TEXT NOT NULL DEFAULT 'PENDING',

            attempts INTEGER NOT NULL DEFAULT 0,
            max_attempts INTEGER NOT NULL DEFAULT 3,
            error_message TEXT,

            enqueued_at TEXT NOT NULL,
            started_at TEXT,
            completed_at TEXT
        )
    """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_job_queue_pending ON job_queue (status, id)"
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_job_queue_active_doc
        ON job_queue (document_id, status)
        WHERE status IN ('PENDING', 'PROCESSING')
    """
    )


def downgrade(conn: sqlite3.Connection) -> None:
    """Drop the job_queue table."""
    conn.execute("DROP TABLE IF EXISTS job_queue")
