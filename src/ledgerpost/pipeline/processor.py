"""
Document processing pipeline.

A job runs through a fixed, ordered list of stages over a shared context.
Each stage reports a progress checkpoint when it finishes. Any failure after
the document is marked processing leaves it marked failed, and the original
error is re-raised wrapped in JobProcessingError.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Optional

from ..audit import AuditLog
from ..extractors import BaseExtractor
from ..mapping import BaseMapper
from ..schemas.documents import (
    AccountingStatus,
    DocumentStatus,
    ExtractionResult,
    Job,
    MappingResult,
    MappingSource,
)
from ..state_store import StateStore

logger = logging.getLogger(__name__)

READY_FOR_EXPORT_THRESHOLD = 0.80

ProgressCallback = Callable[[int], None]


class JobProcessingError(Exception):
    """A pipeline stage failed. The original error is chained as __cause__."""

    def __init__(self, document_id: str, stage: str, message: str):
        self.document_id = document_id
        self.stage = stage
        super().__init__(f"Document {document_id} failed at stage '{stage}': {message}")


def derive_accounting_status(
    mapping_result: MappingResult,
    threshold: float = READY_FOR_EXPORT_THRESHOLD,
) -> AccountingStatus:
    """ready_for_export iff overall_confidence >= threshold and no review is required."""
    if mapping_result.overall_confidence >= threshold and not mapping_result.requires_review:
        return AccountingStatus.READY_FOR_EXPORT
    return AccountingStatus.NEEDS_MAPPING


def document_update_from(
    mapping_result: MappingResult,
    threshold: float = READY_FOR_EXPORT_THRESHOLD,
) -> dict[str, Any]:
    """Full overwrite of every accounting field plus mapping metadata."""
    update: dict[str, Any] = dict(mapping_result.field_values())
    update["mapping_confidence"] = mapping_result.overall_confidence
    update["requires_review"] = mapping_result.requires_review
    update["accounting_status"] = derive_accounting_status(mapping_result, threshold)
    return update


@dataclass
class PipelineContext:
    """State shared by the stages of one job."""

    job: Job
    extraction: Optional[ExtractionResult] = None
    mapping: Optional[MappingResult] = None
    audit_written: bool = False
    notes: list[str] = field(default_factory=list)


@dataclass
class Stage:
    """One pipeline step. progress (if set) is reported after func returns.

    A failure in a non-fatal stage is logged and the job still succeeds.
    """

    name: str
    progress: Optional[int]
    func: Callable[[PipelineContext], None]
    fatal: bool = True


@dataclass
class JobResult:
    """Outcome of a successful job."""

    document_id: str
    extraction_method: str
    total_cost: float
    overall_confidence: float
    requires_review: bool
    accounting_status: AccountingStatus
    audit_written: bool
    processing_time_ms: int

    def to_dict(self) -> dict:
        return {
            "document_id": self.document_id,
            "extraction_method": self.extraction_method,
            "total_cost": self.total_cost,
            "overall_confidence": self.overall_confidence,
            "requires_review": self.requires_review,
            "accounting_status": self.accounting_status.value,
            "audit_written": self.audit_written,
            "processing_time_ms": self.processing_time_ms,
        }


class DocumentProcessor:
    """
    Drives one document through extraction, mapping and persistence.

    The processor never retries; redelivery is the queue's decision.
    """

    def __init__(
        self,
        document_store: StateStore,
        extractor: BaseExtractor,
        mapper: BaseMapper,
        audit_log: AuditLog,
        ready_for_export_threshold: float = READY_FOR_EXPORT_THRESHOLD,
    ):
        self.store = document_store
        self.extractor = extractor
        self.mapper = mapper
        self.audit_log = audit_log
        self.ready_threshold = ready_for_export_threshold

        self.stages: list[Stage] = [
            Stage("mark_processing", 25, self._mark_processing),
            Stage("prepare_extractor", 35, self._prepare_extractor),
            Stage("extract", 60, self._extract),
            Stage("map", 80, self._map),
            Stage("persist", 90, self._persist),
            Stage("mark_completed", 100, self._mark_completed),
            Stage("audit", None, self._audit, fatal=False),
        ]

    def process(self, job: Job, progress: ProgressCallback | None = None) -> JobResult:
        """
        Run all stages for a job.

        Args:
            job: Job to process
            progress: Optional callback receiving checkpoints 0..100

        Returns:
            JobResult

        Raises:
            JobProcessingError: If any stage fails
        """
        report = progress or (lambda value: None)
        context = PipelineContext(job=job)
        started = time.monotonic()
        status_written = False

        logger.info("Processing document %s (%s)", job.document_id, job.filename)
        report(0)

        for stage in self.stages:
            try:
                stage.func(context)
            except Exception as e:
                if not stage.fatal:
                    logger.exception(
                        "Document %s: non-fatal stage %s failed", job.document_id, stage.name
                    )
                    continue
                logger.error(
                    "Document %s failed at stage %s: %s", job.document_id, stage.name, e
                )
                if status_written:
                    self._mark_failed(job.document_id)
                raise JobProcessingError(job.document_id, stage.name, str(e)) from e

            if stage.name == "mark_processing":
                status_written = True
            if stage.progress is not None:
                report(stage.progress)

        elapsed_ms = int((time.monotonic() - started) * 1000)
        logger.info("Document %s processed in %dms", job.document_id, elapsed_ms)

        return JobResult(
            document_id=job.document_id,
            extraction_method=context.extraction.extraction_method,
            total_cost=context.extraction.total_cost,
            overall_confidence=context.mapping.overall_confidence,
            requires_review=context.mapping.requires_review,
            accounting_status=derive_accounting_status(context.mapping, self.ready_threshold),
            audit_written=context.audit_written,
            processing_time_ms=elapsed_ms,
        )

    def _mark_failed(self, document_id: str) -> None:
        """Best-effort terminal write. Never raises."""
        try:
            self.store.update_document_status(document_id, DocumentStatus.FAILED)
        except Exception:
            logger.critical(
                "Could not mark document %s as failed; it may remain in processing",
                document_id,
                exc_info=True,
            )

    # === Stages ===

    def _mark_processing(self, context: PipelineContext) -> None:
        self.store.update_document_status(context.job.document_id, DocumentStatus.PROCESSING)

    def _prepare_extractor(self, context: PipelineContext) -> None:
        logger.debug(
            "Using extractor %s for %s", self.extractor.name, context.job.file_reference
        )

    def _extract(self, context: PipelineContext) -> None:
        context.extraction = self.extractor.extract(context.job.file_reference)
        logger.debug(
            "Extracted document %s via %s (cost %.4f)",
            context.job.document_id,
            context.extraction.extraction_method,
            context.extraction.total_cost,
        )

    def _map(self, context: PipelineContext) -> None:
        context.mapping = self.mapper.map(
            context.extraction.extracted_data,
            context.job.owner_id,
            context.job.document_id,
        )

    def _persist(self, context: PipelineContext) -> None:
        update = document_update_from(context.mapping, self.ready_threshold)
        update["extracted_data"] = context.extraction.extracted_data
        update["extraction_method"] = context.extraction.extraction_method
        update["extraction_cost"] = context.extraction.total_cost
        self.store.update_document_fields(context.job.document_id, update)

    def _mark_completed(self, context: PipelineContext) -> None:
        self.store.update_document_status(context.job.document_id, DocumentStatus.COMPLETED)

    def _audit(self, context: PipelineContext) -> None:
        entries = list(context.mapping.audit_trail)
        for entry in entries:
            entry.mapping_source = MappingSource.INITIAL_MAPPING
        context.audit_written = self.audit_log.log_batch(context.job.document_id, entries)
