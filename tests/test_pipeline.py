"""
Tests for the document processing pipeline and worker pool.
"""

import logging
import time
from pathlib import Path
from unittest.mock import Mock

import pytest

from ledgerpost.audit import AuditLog
from ledgerpost.mapping import BaseMapper, RuleBasedMapper
from ledgerpost.pipeline import (
    DocumentProcessor,
    JobProcessingError,
    WorkerPool,
    derive_accounting_status,
)
from ledgerpost.rules import RuleEngine
from ledgerpost.schemas.documents import (
    ACCOUNTING_FIELDS,
    AccountingStatus,
    DocumentStatus,
    Job,
    MappingField,
    MappingResult,
    MappingSource,
)
from ledgerpost.services.job_queue import JobQueueService
from ledgerpost.state_store import StateStore

from conftest import OWNER, StaticExtractor


class FailingMapper(BaseMapper):
    def map(self, extracted_data, owner_id, document_id):
        raise RuntimeError("mapping backend unavailable")


def make_job(store: StateStore, document_id: str = "doc-1") -> Job:
    store.create_document(document_id, OWNER, f"s3://bucket/{document_id}.pdf", f"{document_id}.pdf")
    return Job(
        document_id=document_id,
        owner_id=OWNER,
        file_reference=f"s3://bucket/{document_id}.pdf",
        filename=f"{document_id}.pdf",
    )


def mapping_result(confidence: float, requires_review: bool) -> MappingResult:
    return MappingResult(
        fields={"gl_account": MappingField(value="6000", confidence=confidence)},
        overall_confidence=confidence,
        requires_review=requires_review,
    )


class TestDeriveAccountingStatus:
    """ready_for_export iff confidence >= 0.8 and no review required."""

    @pytest.mark.parametrize(
        "confidence,requires_review,expected",
        [
            (0.8, False, AccountingStatus.READY_FOR_EXPORT),
            (0.95, False, AccountingStatus.READY_FOR_EXPORT),
            (1.0, False, AccountingStatus.READY_FOR_EXPORT),
            (0.79, False, AccountingStatus.NEEDS_MAPPING),
            (0.0, False, AccountingStatus.NEEDS_MAPPING),
            (0.8, True, AccountingStatus.NEEDS_MAPPING),
            (0.99, True, AccountingStatus.NEEDS_MAPPING),
            (0.5, True, AccountingStatus.NEEDS_MAPPING),
        ],
    )
    def test_derivation(self, confidence, requires_review, expected):
        assert derive_accounting_status(mapping_result(confidence, requires_review)) == expected

    def test_custom_threshold(self):
        result = mapping_result(0.7, False)
        assert derive_accounting_status(result, threshold=0.7) == AccountingStatus.READY_FOR_EXPORT


class TestDocumentProcessor:
    """Staged processing of one job."""

    @pytest.fixture
    def processor(self, store, mapper, audit_log) -> DocumentProcessor:
        return DocumentProcessor(store, StaticExtractor(), mapper, audit_log)

    def test_successful_job(self, store, processor, adobe_rule):
        store.save_rule(adobe_rule)
        job = make_job(store)
        progress: list[int] = []

        result = processor.process(job, progress.append)

        assert progress == [0, 25, 35, 60, 80, 90, 100]
        document = store.get_document(job.document_id)
        assert document.status == DocumentStatus.COMPLETED
        assert document.extraction_method == "static"
        assert document.extraction_cost == pytest.approx(0.02)
        assert document.extracted_data["invoice_number"]["value"] == "INV-2024-0042"
        assert document.accounting["gl_account"] == "6420"
        assert document.accounting["invoicing_party"] == "Adobe Systems Inc"
        assert document.accounting["invoice_gross_amount"] == pytest.approx(59.99)
        assert document.accounting["document_currency"] == "USD"
        assert document.requires_review is False
        assert document.mapping_confidence == pytest.approx(result.overall_confidence)
        assert document.accounting_status == AccountingStatus.READY_FOR_EXPORT
        assert result.accounting_status == AccountingStatus.READY_FOR_EXPORT
        assert result.audit_written is True

    def test_initial_mapping_audit_batch(self, store, processor, audit_log, adobe_rule):
        store.save_rule(adobe_rule)
        job = make_job(store)

        processor.process(job)

        trail = audit_log.get_document_trail(job.document_id)
        assert trail
        assert {entry.mapping_source for entry in trail} == {MappingSource.INITIAL_MAPPING}
        gl_entries = [entry for entry in trail if entry.field_name == "gl_account"]
        assert gl_entries[0].output_value == "6420"

    def test_auto_applied_rule_is_recorded(self, store, processor, adobe_rule):
        store.save_rule(adobe_rule)
        job = make_job(store)

        processor.process(job)

        applications = store.get_rule_applications(document_id=job.document_id)
        assert len(applications) == 1
        assert applications[0].rule_id == adobe_rule.id
        assert applications[0].line_item_index == 0

    def test_mapping_failure_marks_document_failed(self, store, audit_log):
        processor = DocumentProcessor(store, StaticExtractor(), FailingMapper(), audit_log)
        job = make_job(store)
        progress: list[int] = []

        with pytest.raises(JobProcessingError) as exc_info:
            processor.process(job, progress.append)

        assert exc_info.value.stage == "map"
        assert exc_info.value.document_id == job.document_id
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert "mapping backend unavailable" in str(exc_info.value)
        assert progress == [0, 25, 35, 60]
        assert store.get_document(job.document_id).status == DocumentStatus.FAILED

    def test_extraction_failure_marks_document_failed(self, store, mapper, audit_log):
        extractor = Mock(spec=StaticExtractor)
        extractor.name = "mock"
        extractor.extract.side_effect = ConnectionError("extraction service down")
        processor = DocumentProcessor(store, extractor, mapper, audit_log)
        job = make_job(store)

        with pytest.raises(JobProcessingError) as exc_info:
            processor.process(job)

        assert exc_info.value.stage == "extract"
        assert store.get_document(job.document_id).status == DocumentStatus.FAILED

    def test_failed_status_write_does_not_mask_error(self, mapper, caplog):
        store = Mock(spec=StateStore)

        def update_status(document_id, status):
            if status == DocumentStatus.FAILED:
                raise RuntimeError("database is locked")

        store.update_document_status.side_effect = update_status
        processor = DocumentProcessor(store, StaticExtractor(), FailingMapper(), Mock(spec=AuditLog))
        job = Job(document_id="doc-x", owner_id=OWNER, file_reference="ref", filename="x.pdf")

        with caplog.at_level(logging.CRITICAL):
            with pytest.raises(JobProcessingError) as exc_info:
                processor.process(job)

        assert exc_info.value.stage == "map"
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert "mapping backend unavailable" in str(exc_info.value.__cause__)
        assert any(record.levelno == logging.CRITICAL for record in caplog.records)

    def test_failure_before_processing_write_does_not_mark_failed(self, mapper, audit_log):
        store = Mock(spec=StateStore)
        store.update_document_status.side_effect = RuntimeError("database is locked")
        processor = DocumentProcessor(store, StaticExtractor(), mapper, audit_log)
        job = Job(document_id="doc-x", owner_id=OWNER, file_reference="ref", filename="x.pdf")

        with pytest.raises(JobProcessingError) as exc_info:
            processor.process(job)

        assert exc_info.value.stage == "mark_processing"
        store.update_document_status.assert_called_once_with("doc-x", DocumentStatus.PROCESSING)

    def test_audit_failure_does_not_fail_job(self, store, mapper):
        broken_store = Mock(spec=StateStore)
        broken_store.insert_audit_entries.side_effect = RuntimeError("audit table missing")
        processor = DocumentProcessor(store, StaticExtractor(), mapper, AuditLog(broken_store))
        job = make_job(store)

        result = processor.process(job)

        assert result.audit_written is False
        assert store.get_document(job.document_id).status == DocumentStatus.COMPLETED

    def test_raising_audit_log_keeps_document_completed(self, store, mapper, caplog):
        audit_log = Mock(spec=AuditLog)
        audit_log.log_batch.side_effect = RuntimeError("audit sink down")
        processor = DocumentProcessor(store, StaticExtractor(), mapper, audit_log)
        job = make_job(store)
        progress: list[int] = []

        with caplog.at_level(logging.ERROR):
            result = processor.process(job, progress.append)

        assert result.audit_written is False
        assert progress == [0, 25, 35, 60, 80, 90, 100]
        assert store.get_document(job.document_id).status == DocumentStatus.COMPLETED
        assert "non-fatal stage audit failed" in caplog.text
        assert "failed at stage audit" not in caplog.text

    def test_rerun_is_idempotent(self, store, processor, adobe_rule):
        store.save_rule(adobe_rule)
        job = make_job(store)

        processor.process(job)
        first = store.get_document(job.document_id)
        assert first.status == DocumentStatus.COMPLETED

        processor.process(job)
        second = store.get_document(job.document_id)

        assert second.status == DocumentStatus.COMPLETED
        for name in ACCOUNTING_FIELDS:
            assert second.accounting.get(name) == first.accounting.get(name)
        assert second.mapping_confidence == first.mapping_confidence
        assert second.requires_review == first.requires_review
        assert second.accounting_status == first.accounting_status
        assert second.extracted_data == first.extracted_data

        applications = store.get_rule_applications(document_id=job.document_id)
        assert [(a.rule_id, a.line_item_index) for a in applications] == [(adobe_rule.id, 0)]
        assert RuleEngine(store).get_rule_stats(adobe_rule.id).total_applications == 1

    def test_unmapped_gl_account_needs_mapping(self, store, processor):
        job = make_job(store)

        processor.process(job)

        document = store.get_document(job.document_id)
        assert document.status == DocumentStatus.COMPLETED
        assert document.accounting["gl_account"] is None
        assert document.requires_review is True
        assert document.accounting_status == AccountingStatus.NEEDS_MAPPING

    def test_rerun_clears_fields_no_longer_mapped(self, store, mapper, audit_log, adobe_rule):
        store.save_rule(adobe_rule)
        job = make_job(store)
        DocumentProcessor(store, StaticExtractor(), mapper, audit_log).process(job)
        assert store.get_document(job.document_id).accounting["gl_account"] == "6420"

        store.set_rule_active(adobe_rule.id, False)
        DocumentProcessor(store, StaticExtractor(), mapper, audit_log).process(job)

        assert store.get_document(job.document_id).accounting["gl_account"] is None


class TestWorkerPool:
    """Queue consumption and acknowledgement."""

    @pytest.fixture
    def processor(self, store, mapper, audit_log) -> DocumentProcessor:
        return DocumentProcessor(store, StaticExtractor(), mapper, audit_log)

    def _enqueue(self, store: StateStore, queue: JobQueueService, count: int) -> list[str]:
        ids = []
        for index in range(count):
            job = make_job(store, f"doc-{index}")
            assert queue.enqueue(job) is not None
            ids.append(job.document_id)
        return ids

    def test_run_until_empty(self, store, queue, processor):
        ids = self._enqueue(store, queue, 3)
        pool = WorkerPool(queue, processor, concurrency=1, poll_interval=0.01)

        handled = pool.run_until_empty()

        assert handled == 3
        assert pool.processed == 3
        assert queue.get_queue_stats()["COMPLETED"] == 3
        for document_id in ids:
            assert store.get_document(document_id).status == DocumentStatus.COMPLETED

    def test_failed_job_is_retried_then_dead_lettered(self, store, queue, audit_log):
        processor = DocumentProcessor(store, StaticExtractor(), FailingMapper(), audit_log)
        job = make_job(store)
        job_id = queue.enqueue(job)
        pool = WorkerPool(queue, processor, concurrency=1)

        handled = pool.run_until_empty()

        assert handled == 3
        assert pool.failed == 3
        stored = queue.get_job(job_id)
        assert stored["status"] == "FAILED"
        assert stored["attempts"] == 3
        assert "map" in stored["error_message"]
        assert store.get_document(job.document_id).status == DocumentStatus.FAILED

    def test_threads_drain_queue_and_stop(self, store, queue, processor):
        self._enqueue(store, queue, 8)
        pool = WorkerPool(queue, processor, concurrency=4, poll_interval=0.01)

        pool.start()
        deadline = time.monotonic() + 10
        while queue.get_queue_stats()["COMPLETED"] < 8 and time.monotonic() < deadline:
            time.sleep(0.05)
        pool.stop()
        pool.join(timeout=5)

        assert queue.get_queue_stats()["COMPLETED"] == 8
        assert pool.processed == 8
        assert not pool.running

    def test_stop_lets_in_flight_job_finish(self, store, queue):
        started = []

        processor = Mock(spec=DocumentProcessor)

        def slow_process(job, progress=None):
            started.append(job.document_id)
            time.sleep(0.3)

        processor.process.side_effect = slow_process
        self._enqueue(store, queue, 3)
        pool = WorkerPool(queue, processor, concurrency=1, poll_interval=0.01)

        pool.start()
        deadline = time.monotonic() + 5
        while not started and time.monotonic() < deadline:
            time.sleep(0.01)
        pool.stop()
        pool.join(timeout=5)

        assert len(started) == 1
        stats = queue.get_queue_stats()
        assert stats["COMPLETED"] == 1
        assert stats["PENDING"] == 2

    def test_invalid_concurrency(self, queue, processor):
        with pytest.raises(ValueError):
            WorkerPool(queue, processor, concurrency=0)
