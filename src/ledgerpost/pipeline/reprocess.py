"""
Reprocess, manual edit and retry flows for stored documents.

Full and single-field reprocessing rerun mapping on the stored extraction
blob (no new extraction). Manual edits overwrite named fields. Retry puts a
failed document back on the queue.

These flows must not run concurrently with a worker job for the same
document; serializing them is the caller's concern.
"""

import logging
from typing import Any

from ..audit import AuditLog, make_entry
from ..mapping import BaseMapper
from ..rules import RuleEngine
from ..schemas.documents import (
    ACCOUNTING_FIELDS,
    NUMERIC_ACCOUNTING_FIELDS,
    Document,
    DocumentStatus,
    MappingField,
    MappingResult,
    MappingSource,
)
from ..services.job_queue import JobQueueService
from ..state_store import StateStore
from .processor import READY_FOR_EXPORT_THRESHOLD, document_update_from

logger = logging.getLogger(__name__)

MANUAL_EDIT_CONFIDENCE = 1.0


class ReprocessError(Exception):
    """Document is missing or not in a state that allows the operation."""

    pass


class ReprocessService:
    """Operations that revisit a document after its initial processing."""

    def __init__(
        self,
        store: StateStore,
        mapper: BaseMapper,
        audit_log: AuditLog,
        queue: JobQueueService,
        rule_engine: RuleEngine | None = None,
        ready_for_export_threshold: float = READY_FOR_EXPORT_THRESHOLD,
    ):
        self.store = store
        self.mapper = mapper
        self.audit_log = audit_log
        self.queue = queue
        self.rule_engine = rule_engine
        self.ready_threshold = ready_for_export_threshold

    def _get_document(self, document_id: str) -> Document:
        document = self.store.get_document(document_id)
        if document is None:
            raise ReprocessError(f"Document {document_id} not found")
        return document

    def _get_reprocessable(self, document_id: str) -> Document:
        document = self._get_document(document_id)
        if document.status != DocumentStatus.COMPLETED:
            raise ReprocessError("Only completed documents can be reprocessed")
        if not document.extracted_data:
            raise ReprocessError("Document has no extracted data to reprocess")
        return document

    def reprocess_document(self, document_id: str) -> MappingResult:
        """
        Rerun mapping for a completed document and overwrite all fields.

        Accounting status is re-derived exactly as the worker derives it.
        """
        document = self._get_reprocessable(document_id)
        result = self.mapper.map(document.extracted_data, document.owner_id, document.id)

        self.store.update_document_fields(
            document.id, document_update_from(result, self.ready_threshold)
        )

        entries = [
            make_entry(
                document_id=document.id,
                field_name=name,
                input_value=document.accounting.get(name),
                output_value=mapped.value,
                confidence=mapped.confidence,
                reasoning=f"Full reprocess: {mapped.reasoning}",
                source=MappingSource.FULL_REPROCESS,
            )
            for name, mapped in result.fields.items()
        ]
        self.audit_log.log_batch(document.id, entries)

        logger.info(
            "Reprocessed document %s: confidence %.2f, review=%s",
            document.id,
            result.overall_confidence,
            result.requires_review,
        )
        return result

    def reprocess_field(self, document_id: str, field_name: str) -> MappingField:
        """Rerun mapping and overwrite a single accounting field."""
        if field_name not in ACCOUNTING_FIELDS:
            raise ReprocessError(f"Unknown accounting field: {field_name}")

        document = self._get_reprocessable(document_id)
        result = self.mapper.map(document.extracted_data, document.owner_id, document.id)
        mapped = result.fields.get(field_name) or MappingField(
            value=None, confidence=0.0, source="default", reasoning="No value produced"
        )

        previous = document.accounting.get(field_name)
        self.store.update_document_fields(document.id, {field_name: mapped.value})

        self.audit_log.log_field_change(
            make_entry(
                document_id=document.id,
                field_name=field_name,
                input_value=previous,
                output_value=mapped.value,
                confidence=mapped.confidence,
                reasoning=f"Field reprocessed: {mapped.reasoning}",
                source=MappingSource.FIELD_REPROCESS,
            )
        )
        logger.info("Reprocessed field %s of document %s", field_name, document.id)
        return mapped

    def apply_manual_edit(self, document_id: str, changes: dict[str, Any]) -> list[str]:
        """
        Overwrite accounting fields with user-supplied values.

        Returns:
            Names of fields whose value actually changed
        """
        unknown = sorted(set(changes) - set(ACCOUNTING_FIELDS))
        if unknown:
            raise ReprocessError(f"Unknown accounting fields: {', '.join(unknown)}")

        document = self._get_document(document_id)
        normalized = {name: self._normalize(name, value) for name, value in changes.items()}
        changed = {
            name: value
            for name, value in normalized.items()
            if document.accounting.get(name) != value
        }
        if not changed:
            return []

        self.store.update_document_fields(document.id, changed)

        entries = [
            make_entry(
                document_id=document.id,
                field_name=name,
                input_value=document.accounting.get(name),
                output_value=value,
                confidence=MANUAL_EDIT_CONFIDENCE,
                reasoning="Manual edit",
                source=MappingSource.MANUAL_EDIT,
            )
            for name, value in changed.items()
        ]
        self.audit_log.log_batch(document.id, entries)

        if "gl_account" in changed:
            self._mark_gl_overrides(document.id, changed["gl_account"])

        logger.info("Manual edit of document %s: %s", document.id, ", ".join(sorted(changed)))
        return sorted(changed)

    def _normalize(self, field_name: str, value: Any) -> Any:
        if value == "":
            return None
        if field_name in NUMERIC_ACCOUNTING_FIELDS and value is not None:
            try:
                return float(value)
            except (TypeError, ValueError):
                raise ReprocessError(f"{field_name} must be numeric, got {value!r}")
        return value

    def _mark_gl_overrides(self, document_id: str, new_gl_code: Any) -> None:
        """Flag rule applications on this document that the edit replaced."""
        if self.rule_engine is None:
            return
        for application in self.store.get_rule_applications(document_id=document_id):
            if not application.was_overridden and application.applied_gl_code != new_gl_code:
                self.rule_engine.mark_overridden(application.id)

    def retry_document(self, document_id: str) -> int:
        """
        Reset a failed document to pending and enqueue a new job.

        Returns:
            New job ID
        """
        document = self._get_document(document_id)
        if document.status != DocumentStatus.FAILED:
            raise ReprocessError("Only failed documents can be retried")

        self.store.update_document_status(document.id, DocumentStatus.PENDING)
        try:
            job_id = self.queue.enqueue_document(document)
        except Exception as e:
            self.store.update_document_status(document.id, DocumentStatus.FAILED)
            raise ReprocessError(f"Failed to queue document for retry: {e}") from e

        if job_id is None:
            self.store.update_document_status(document.id, DocumentStatus.FAILED)
            raise ReprocessError("Document already has an active job")

        logger.info("Document %s queued for retry as job %d", document.id, job_id)
        return job_id
