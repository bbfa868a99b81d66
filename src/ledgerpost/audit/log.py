"""
Append-only audit trail of accounting field decisions.

Writes are best-effort: a failing audit write is logged and reported
through the return value but never interrupts document processing.
"""

import json
import logging
from collections import Counter
from typing import Any

from ..schemas.documents import AuditEntry, MappingSource
from ..state_store import StateStore

logger = logging.getLogger(__name__)


def value_to_string(value: Any) -> str | None:
    """Render a field value for storage. None stays None."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return str(value)


def make_entry(
    document_id: str,
    field_name: str,
    input_value: Any,
    output_value: Any,
    confidence: float,
    reasoning: str,
    source: MappingSource,
) -> AuditEntry:
    """Build an AuditEntry with values rendered as strings."""
    return AuditEntry(
        document_id=document_id,
        field_name=field_name,
        input_value=value_to_string(input_value),
        output_value=value_to_string(output_value),
        confidence_score=confidence,
        reasoning=reasoning,
        mapping_source=MappingSource(source),
    )


class AuditLog:
    """Audit log service backed by the state store."""

    def __init__(self, state_store: StateStore):
        self.store = state_store

    def log_field_change(self, entry: AuditEntry) -> bool:
        """Append a single entry. Returns False if the write failed."""
        return self.log_batch(entry.document_id, [entry])

    def log_batch(self, document_id: str, entries: list[AuditEntry]) -> bool:
        """
        Append entries for one document in a single transaction.

        Entries are stamped with document_id. Never raises.

        Returns:
            True if written (or nothing to write), False on failure
        """
        if not entries:
            return True
        try:
            for entry in entries:
                entry.document_id = document_id
            written = self.store.insert_audit_entries(entries)
        except Exception:
            logger.exception(
                "Failed to write %d audit entries for document %s", len(entries), document_id
            )
            return False
        logger.debug("Wrote %d audit entries for document %s", written, document_id)
        return True

    def get_document_trail(self, document_id: str) -> list[AuditEntry]:
        """All entries for a document, newest first."""
        try:
            return self.store.get_audit_entries(document_id=document_id)
        except Exception:
            logger.exception("Failed to read audit trail for document %s", document_id)
            return []

    def get_field_trail(self, field_name: str, limit: int = 100) -> list[AuditEntry]:
        """Recent entries for one field across all documents."""
        try:
            return self.store.get_audit_entries(field_name=field_name, limit=limit)
        except Exception:
            logger.exception("Failed to read audit trail for field %s", field_name)
            return []

    def get_stats(self, start: str | None = None, end: str | None = None) -> dict[str, Any]:
        """
        Summary of changes in an optional [start, end] window.

        Returns:
            Dict with total_changes, changes_by_source, changes_by_field
            and average_confidence
        """
        try:
            entries = self.store.get_audit_entries(start=start, end=end)
        except Exception:
            logger.exception("Failed to read audit statistics")
            entries = []

        by_source = Counter(entry.mapping_source.value for entry in entries)
        by_field = Counter(entry.field_name for entry in entries)
        average = (
            sum(entry.confidence_score for entry in entries) / len(entries) if entries else 0.0
        )
        return {
            "total_changes": len(entries),
            "changes_by_source": dict(by_source),
            "changes_by_field": dict(by_field),
            "average_confidence": average,
        }
