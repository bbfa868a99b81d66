"""
SQLite-based state store implementation.

Tables:
- documents: Uploaded documents, extraction blob and accounting fields
- gl_rules: User-defined GL rules
- rule_applications: Rules applied to document line items (migration 001)
- audit_log: Append-only field decision log (migration 002)
- job_queue: Document processing jobs (migration 003)

All document writes are full overwrites keyed by document id, so a job that
is delivered twice converges on the same row.
"""

import json
import sqlite3
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from ..schemas.documents import (
    ACCOUNTING_FIELDS,
    AccountingStatus,
    AuditEntry,
    Document,
    DocumentStatus,
    Job,
    MappingSource,
)
from ..schemas.rules import (
    Rule,
    RuleActions,
    RuleApplication,
    RuleConditions,
)


class StateStoreError(Exception):
    """Base exception for state store errors."""

    pass


class DocumentNotFoundError(StateStoreError):
    """Document id does not exist."""

    def __init__(self, document_id: str):
        self.document_id = document_id
        super().__init__(f"Document {document_id} not found")


# Columns the pipeline and reprocess flows may overwrite on a document.
DOCUMENT_UPDATABLE_COLUMNS: frozenset[str] = frozenset(
    {
        "status",
        "extracted_data",
        "extraction_method",
        "extraction_cost",
        "mapping_confidence",
        "requires_review",
        "accounting_status",
        *ACCOUNTING_FIELDS,
    }
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _to_column(value: Any) -> Any:
    """Convert a Python value into something sqlite3 can bind."""
    if isinstance(value, (DocumentStatus, AccountingStatus, MappingSource)):
        return value.value
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return value


def _document_from_row(row: sqlite3.Row) -> Document:
    return Document(
        id=row["id"],
        owner_id=row["owner_id"],
        file_reference=row["file_reference"],
        filename=row["filename"],
        status=DocumentStatus(row["status"]),
        extracted_data=json.loads(row["extracted_data"]) if row["extracted_data"] else None,
        extraction_method=row["extraction_method"],
        extraction_cost=row["extraction_cost"],
        accounting={name: row[name] for name in ACCOUNTING_FIELDS},
        mapping_confidence=row["mapping_confidence"],
        requires_review=bool(row["requires_review"]),
        accounting_status=AccountingStatus(row["accounting_status"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _rule_from_row(row: sqlite3.Row) -> Rule:
    return Rule(
        id=row["id"],
        owner_id=row["owner_id"],
        name=row["name"],
        priority=row["priority"],
        is_active=bool(row["is_active"]),
        conditions=RuleConditions.from_dict(json.loads(row["conditions"])),
        actions=RuleActions.from_dict(json.loads(row["actions"])),
        created_at=row["created_at"],
    )


def _application_from_row(row: sqlite3.Row) -> RuleApplication:
    return RuleApplication(
        id=row["id"],
        document_id=row["document_id"],
        rule_id=row["rule_id"],
        line_item_index=row["line_item_index"],
        applied_gl_code=row["applied_gl_code"],
        confidence_score=row["confidence_score"],
        was_overridden=bool(row["was_overridden"]),
        applied_at=row["applied_at"],
    )


def _audit_from_row(row: sqlite3.Row) -> AuditEntry:
    return AuditEntry(
        document_id=row["document_id"],
        field_name=row["field_name"],
        input_value=row["input_value"],
        output_value=row["output_value"],
        confidence_score=row["confidence_score"],
        reasoning=row["reasoning"],
        mapping_source=MappingSource(row["mapping_source"]),
        created_at=row["created_at"],
    )


def _job_from_row(row: sqlite3.Row) -> Job:
    return Job(
        id=row["id"],
        document_id=row["document_id"],
        owner_id=row["owner_id"],
        file_reference=row["file_reference"],
        filename=row["filename"],
        attempts=row["attempts"],
        max_attempts=row["max_attempts"],
    )


class StateStore:
    """
    SQLite-based state store for the pipeline.

    Acts as the document store, rule store, audit sink and job queue
    backend. Each call opens its own connection, so one instance can be
    shared by every worker thread.
    """

    SCHEMA_VERSION = 1

    def __init__(self, db_path: Path | str, run_migrations: bool = True):
        """
        Initialize state store.

        Args:
            db_path: Path to SQLite database file
            run_migrations: Whether to run pending migrations (default True)
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()
        if run_migrations:
            self._run_migrations()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with row factory."""
        conn = sqlite3.connect(str(self.db_path), timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _transaction(self, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        """Context manager for database transactions.

        immediate=True takes the write lock up front, for read-then-write
        sequences that must not interleave (job claiming).
        """
        conn = self._get_connection()
        try:
            if immediate:
                conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize core schema (later tables come from migrations)."""
        accounting_columns = ",\n".join(
            f"{name} {'REAL' if name.endswith('_amount') else 'TEXT'}"
            for name in ACCOUNTING_FIELDS
        )
        with self._transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY
                )
            """
            )

            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS documents (
                    id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    file_reference TEXT NOT NULL,
                    filename TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    extracted_data TEXT,  -- JSON, opaque to the pipeline
                    extraction_method TEXT,
                    extraction_cost REAL,
                    {accounting_columns},
                    mapping_confidence REAL,
                    requires_review INTEGER NOT NULL DEFAULT 0,
                    accounting_status TEXT NOT NULL DEFAULT 'needs_mapping',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_documents_status ON documents(status)")

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS gl_rules (
                    id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    priority INTEGER NOT NULL DEFAULT 0,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    conditions TEXT NOT NULL,  -- JSON
                    actions TEXT NOT NULL,  -- JSON
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_gl_rules_owner ON gl_rules(owner_id, is_active)"
            )

            conn.execute(
                "INSERT OR IGNORE INTO schema_version (version) VALUES (?)",
                (self.SCHEMA_VERSION,),
            )

    def _run_migrations(self) -> None:
        """Run pending database migrations."""
        from .migrations import MigrationRunner

        conn = self._get_connection()
        try:
            MigrationRunner(conn).run_pending()
        finally:
            conn.close()

    def test_connection(self) -> bool:
        """Check the database answers a trivial query."""
        try:
            with self._transaction() as conn:
                conn.execute("SELECT 1 FROM gl_rules LIMIT 1").fetchall()
            return True
        except sqlite3.Error:
            return False

    # === Document methods ===

    def create_document(
        self,
        document_id: str,
        owner_id: str,
        file_reference: str,
        filename: str,
    ) -> Document:
        """Register an uploaded document in PENDING status."""
        now = _now()
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO documents
                (id, owner_id, file_reference, filename, status, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    document_id,
                    owner_id,
                    file_reference,
                    filename,
                    DocumentStatus.PENDING.value,
                    now,
                    now,
                ),
            )
        return self.get_document(document_id)

    def get_document(self, document_id: str) -> Document | None:
        """Get a document by ID."""
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM documents WHERE id = ?", (document_id,)).fetchone()
            return _document_from_row(row) if row else None

    def list_documents(
        self,
        status: DocumentStatus | None = None,
        owner_id: str | None = None,
        limit: int = 100,
    ) -> list[Document]:
        """List documents, newest first."""
        query = "SELECT * FROM documents WHERE 1=1"
        params: list[Any] = []
        if status is not None:
            query += " AND status = ?"
            params.append(DocumentStatus(status).value)
        if owner_id is not None:
            query += " AND owner_id = ?"
            params.append(owner_id)
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)

        with self._transaction() as conn:
            return [_document_from_row(row) for row in conn.execute(query, params).fetchall()]

    def update_document_status(self, document_id: str, status: DocumentStatus) -> None:
        """Overwrite a document's lifecycle status."""
        self.update_document_fields(document_id, {"status": DocumentStatus(status)})

    def update_document_fields(self, document_id: str, fields: dict[str, Any]) -> None:
        """Overwrite the given columns in a single statement.

        Raises:
            ValueError: If a field is not an updatable document column
            DocumentNotFoundError: If the document does not exist
        """
        unknown = set(fields) - DOCUMENT_UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Unknown document fields: {sorted(unknown)}")
        if not fields:
            return

        columns = sorted(fields)
        assignments = ", ".join(f"{column} = ?" for column in columns)
        values = [_to_column(fields[column]) for column in columns]

        with self._transaction() as conn:
            cursor = conn.execute(
                f"UPDATE documents SET {assignments}, updated_at = ? WHERE id = ?",
                (*values, _now(), document_id),
            )
            if cursor.rowcount == 0:
                raise DocumentNotFoundError(document_id)

    def get_document_stats(self) -> dict[str, int]:
        """Document counts by lifecycle status."""
        stats = {status.value: 0 for status in DocumentStatus}
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) AS count FROM documents GROUP BY status"
            ).fetchall()
        for row in rows:
            stats[row["status"]] = row["count"]
        stats["total"] = sum(stats.values())
        return stats

    # === GL rule methods ===

    def save_rule(self, rule: Rule) -> None:
        """Insert or update a rule, keeping its original created_at."""
        now = _now()
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO gl_rules
                (id, owner_id, name, priority, is_active, conditions, actions, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    owner_id = excluded.owner_id,
                    name = excluded.name,
                    priority = excluded.priority,
                    is_active = excluded.is_active,
                    conditions = excluded.conditions,
                    actions = excluded.actions,
                    updated_at = excluded.updated_at
            """,
                (
                    rule.id,
                    rule.owner_id,
                    rule.name,
                    rule.priority,
                    int(rule.is_active),
                    json.dumps(rule.conditions.to_dict()),
                    json.dumps(rule.actions.to_dict()),
                    rule.created_at,
                    now,
                ),
            )

    def get_rule(self, rule_id: str) -> Rule | None:
        """Get a rule by ID."""
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM gl_rules WHERE id = ?", (rule_id,)).fetchone()
            return _rule_from_row(row) if row else None

    def get_active_rules(self, owner_id: str) -> list[Rule]:
        """Active rules for an owner, priority desc then creation asc."""
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM gl_rules
                WHERE owner_id = ? AND is_active = 1
                ORDER BY priority DESC, created_at ASC, rowid ASC
            """,
                (owner_id,),
            ).fetchall()
            return [_rule_from_row(row) for row in rows]

    def list_rules(self, owner_id: str) -> list[Rule]:
        """All rules for an owner, active or not."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM gl_rules WHERE owner_id = ? ORDER BY priority DESC, created_at ASC",
                (owner_id,),
            ).fetchall()
            return [_rule_from_row(row) for row in rows]

    def set_rule_active(self, rule_id: str, is_active: bool) -> bool:
        """Enable or disable a rule. Returns False if it does not exist."""
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE gl_rules SET is_active = ?, updated_at = ? WHERE id = ?",
                (int(is_active), _now(), rule_id),
            )
            return cursor.rowcount > 0

    # === Rule application methods ===

    def insert_rule_application(
        self,
        document_id: str,
        rule_id: str,
        line_item_index: int,
        applied_gl_code: str,
        confidence_score: float,
    ) -> RuleApplication:
        """Record a rule application, updating the existing row for the same
        (document, rule, line item). Returns the stored row.

        was_overridden is kept on update.
        """
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO rule_applications
                (document_id, rule_id, line_item_index, applied_gl_code,
                 confidence_score, was_overridden, applied_at)
                VALUES (?, ?, ?, ?, ?, 0, ?)
                ON CONFLICT(document_id, rule_id, line_item_index) DO UPDATE SET
                    applied_gl_code = excluded.applied_gl_code,
                    confidence_score = excluded.confidence_score,
                    applied_at = excluded.applied_at
            """,
                (document_id, rule_id, line_item_index, applied_gl_code, confidence_score, _now()),
            )
            row = conn.execute(
                """
                SELECT * FROM rule_applications
                WHERE document_id = ? AND rule_id = ? AND line_item_index = ?
            """,
                (document_id, rule_id, line_item_index),
            ).fetchone()
            return _application_from_row(row)

    def mark_rule_application_overridden(self, application_id: int) -> bool:
        """Flip was_overridden. Returns False if the application does not exist."""
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE rule_applications SET was_overridden = 1 WHERE id = ?",
                (application_id,),
            )
            return cursor.rowcount > 0

    def get_rule_applications(
        self,
        rule_id: str | None = None,
        document_id: str | None = None,
    ) -> list[RuleApplication]:
        """Rule applications filtered by rule and/or document, oldest first."""
        query = "SELECT * FROM rule_applications WHERE 1=1"
        params: list[Any] = []
        if rule_id is not None:
            query += " AND rule_id = ?"
            params.append(rule_id)
        if document_id is not None:
            query += " AND document_id = ?"
            params.append(document_id)
        query += " ORDER BY id ASC"

        with self._transaction() as conn:
            return [_application_from_row(row) for row in conn.execute(query, params).fetchall()]

    # === Audit log methods ===

    def insert_audit_entries(self, entries: Iterable[AuditEntry]) -> int:
        """Append audit entries in one transaction. Returns rows written."""
        rows = [
            (
                entry.document_id,
                entry.field_name,
                entry.input_value,
                entry.output_value,
                entry.confidence_score,
                entry.reasoning,
                MappingSource(entry.mapping_source).value,
                entry.created_at,
            )
            for entry in entries
        ]
        if not rows:
            return 0
        with self._transaction() as conn:
            conn.executemany(
                """
                INSERT INTO audit_log
                (document_id, field_name, input_value, output_value,
                 confidence_score, reasoning, mapping_source, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
                rows,
            )
        return len(rows)

    def get_audit_entries(
        self,
        document_id: str | None = None,
        field_name: str | None = None,
        start: str | None = None,
        end: str | None = None,
        limit: int | None = None,
    ) -> list[AuditEntry]:
        """Audit entries, newest first."""
        query = "SELECT * FROM audit_log WHERE 1=1"
        params: list[Any] = []
        if document_id is not None:
            query += " AND document_id = ?"
            params.append(document_id)
        if field_name is not None:
            query += " AND field_name = ?"
            params.append(field_name)
        if start is not None:
            query += " AND created_at >= ?"
            params.append(start)
        if end is not None:
            query += " AND created_at <= ?"
            params.append(end)
        query += " ORDER BY created_at DESC, id DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        with self._transaction() as conn:
            return [_audit_from_row(row) for row in conn.execute(query, params).fetchall()]

    # === Job queue methods ===

    def enqueue_job(self, job: Job) -> int | None:
        """
        Add a job for a document.

        Returns:
            Job ID, or None if the document already has a PENDING or
            PROCESSING job
        """
        with self._transaction(immediate=True) as conn:
            active = conn.execute(
                """
                SELECT id FROM job_queue
                WHERE document_id = ? AND status IN ('PENDING', 'PROCESSING')
            """,
                (job.document_id,),
            ).fetchone()
            if active:
                return None

            cursor = conn.execute(
                """
                INSERT INTO job_queue
                (document_id, owner_id, file_reference, filename, status,
                 attempts, max_attempts, enqueued_at)
                VALUES (?, ?, ?, ?, 'PENDING', 0, ?, ?)
            """,
                (
                    job.document_id,
                    job.owner_id,
                    job.file_reference,
                    job.filename,
                    job.max_attempts,
                    _now(),
                ),
            )
            return cursor.lastrowid

    def claim_next_job(self) -> Job | None:
        """Atomically move the oldest PENDING job to PROCESSING and return it."""
        with self._transaction(immediate=True) as conn:
            row = conn.execute(
                "SELECT id FROM job_queue WHERE status = 'PENDING' ORDER BY id ASC LIMIT 1"
            ).fetchone()
            if row is None:
                return None
            conn.execute(
                """
                UPDATE job_queue
                SET status = 'PROCESSING', attempts = attempts + 1,
                    started_at = ?, completed_at = NULL
                WHERE id = ?
            """,
                (_now(), row["id"]),
            )
            claimed = conn.execute("SELECT * FROM job_queue WHERE id = ?", (row["id"],)).fetchone()
            return _job_from_row(claimed)

    def complete_job(self, job_id: int) -> bool:
        """Mark a PROCESSING job COMPLETED."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE job_queue
                SET status = 'COMPLETED', completed_at = ?, error_message = NULL
                WHERE id = ? AND status = 'PROCESSING'
            """,
                (_now(), job_id),
            )
            return cursor.rowcount > 0

    def fail_job(self, job_id: int, error_message: str) -> str | None:
        """
        Record a failed attempt.

        Returns:
            New status: 'PENDING' (will be redelivered) or 'FAILED'
            (attempts exhausted), None if the job is not PROCESSING
        """
        with self._transaction(immediate=True) as conn:
            row = conn.execute(
                "SELECT attempts, max_attempts FROM job_queue WHERE id = ? AND status = 'PROCESSING'",
                (job_id,),
            ).fetchone()
            if row is None:
                return None

            status = "PENDING" if row["attempts"] < row["max_attempts"] else "FAILED"
            conn.execute(
                """
                UPDATE job_queue
                SET status = ?, error_message = ?, completed_at = ?
                WHERE id = ?
            """,
                (status, error_message, _now() if status == "FAILED" else None, job_id),
            )
            return status

    def get_job(self, job_id: int) -> dict[str, Any] | None:
        """Raw job row as a dict."""
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM job_queue WHERE id = ?", (job_id,)).fetchone()
            return dict(row) if row else None

    def get_jobs_for_document(self, document_id: str) -> list[dict[str, Any]]:
        """All jobs ever enqueued for a document, oldest first."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM job_queue WHERE document_id = ? ORDER BY id ASC", (document_id,)
            ).fetchall()
            return [dict(row) for row in rows]

    def get_queue_stats(self) -> dict[str, int]:
        """Job counts by queue status."""
        stats = {"PENDING": 0, "PROCESSING": 0, "COMPLETED": 0, "FAILED": 0}
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) AS count FROM job_queue GROUP BY status"
            ).fetchall()
        for row in rows:
            stats[row["status"]] = row["count"]
        stats["total"] = sum(stats.values())
        return stats

    def cleanup_old_jobs(self, days: int = 30) -> int:
        """Delete COMPLETED/FAILED jobs finished more than `days` ago."""
        cutoff = (datetime.now(timezone.utc) - timedelta(days=days)).isoformat().replace(
            "+00:00", "Z"
        )
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                DELETE FROM job_queue
                WHERE status IN ('COMPLETED', 'FAILED') AND completed_at < ?
            """,
                (cutoff,),
            )
            return cursor.rowcount
