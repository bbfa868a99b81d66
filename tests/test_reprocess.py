"""
Tests for reprocess, manual edit and retry flows.
"""

from unittest.mock import Mock

import pytest

from ledgerpost.pipeline import DocumentProcessor, ReprocessError, ReprocessService
from ledgerpost.schemas.documents import AccountingStatus, DocumentStatus, Job, MappingSource
from ledgerpost.services.job_queue import JobQueueService

from conftest import OWNER, StaticExtractor


@pytest.fixture
def service(store, mapper, audit_log, queue, engine) -> ReprocessService:
    return ReprocessService(store, mapper, audit_log, queue, rule_engine=engine)


@pytest.fixture
def completed_document(store, mapper, audit_log, adobe_rule) -> str:
    """A document processed with the Adobe rule active."""
    store.save_rule(adobe_rule)
    store.create_document("doc-1", OWNER, "s3://bucket/doc-1.pdf", "doc-1.pdf")
    job = Job(document_id="doc-1", owner_id=OWNER, file_reference="s3://bucket/doc-1.pdf", filename="doc-1.pdf")
    DocumentProcessor(store, StaticExtractor(), mapper, audit_log).process(job)
    return "doc-1"


class TestReprocessDocument:
    def test_reprocess_updates_existing_rule_application(
        self, store, service, completed_document, adobe_rule
    ):
        adobe_rule.actions.gl_code = "6499"
        store.save_rule(adobe_rule)

        service.reprocess_document(completed_document)
        service.reprocess_document(completed_document)

        applications = store.get_rule_applications(document_id=completed_document)
        assert len(applications) == 1
        assert applications[0].applied_gl_code == "6499"

    def test_full_reprocess_overwrites_and_audits(self, store, service, audit_log, completed_document, adobe_rule):
        adobe_rule.actions.gl_code = "6499"
        store.save_rule(adobe_rule)

        result = service.reprocess_document(completed_document)

        document = store.get_document(completed_document)
        assert document.accounting["gl_account"] == "6499"
        assert document.mapping_confidence == pytest.approx(result.overall_confidence)
        assert document.accounting_status == AccountingStatus.READY_FOR_EXPORT

        entries = [
            e for e in audit_log.get_document_trail(completed_document)
            if e.mapping_source == MappingSource.FULL_REPROCESS
        ]
        assert len(entries) == len(result.fields)
        assert all(e.reasoning.startswith("Full reprocess: ") for e in entries)
        gl_entry = next(e for e in entries if e.field_name == "gl_account")
        assert gl_entry.input_value == "6420"
        assert gl_entry.output_value == "6499"

    def test_reprocess_rederives_accounting_status(self, store, service, completed_document, adobe_rule):
        store.set_rule_active(adobe_rule.id, False)

        service.reprocess_document(completed_document)

        document = store.get_document(completed_document)
        assert document.accounting["gl_account"] is None
        assert document.requires_review is True
        assert document.accounting_status == AccountingStatus.NEEDS_MAPPING

    def test_only_completed_documents(self, store, service):
        store.create_document("doc-2", OWNER, "ref", "b.pdf")
        with pytest.raises(ReprocessError, match="Only completed"):
            service.reprocess_document("doc-2")

    def test_requires_extracted_data(self, store, service):
        store.create_document("doc-2", OWNER, "ref", "b.pdf")
        store.update_document_status("doc-2", DocumentStatus.COMPLETED)
        with pytest.raises(ReprocessError, match="no extracted data"):
            service.reprocess_document("doc-2")

    def test_missing_document(self, service):
        with pytest.raises(ReprocessError, match="not found"):
            service.reprocess_document("ghost")


class TestReprocessField:
    def test_single_field(self, store, service, audit_log, completed_document, adobe_rule):
        adobe_rule.actions.gl_code = "6499"
        store.save_rule(adobe_rule)
        before = store.get_document(completed_document)

        mapped = service.reprocess_field(completed_document, "gl_account")

        after = store.get_document(completed_document)
        assert mapped.value == "6499"
        assert after.accounting["gl_account"] == "6499"
        assert after.accounting["invoicing_party"] == before.accounting["invoicing_party"]

        entry = audit_log.get_field_trail("gl_account", limit=1)[0]
        assert entry.mapping_source == MappingSource.FIELD_REPROCESS
        assert entry.input_value == "6420"
        assert entry.reasoning.startswith("Field reprocessed: ")

    def test_unknown_field(self, service, completed_document):
        with pytest.raises(ReprocessError, match="Unknown accounting field"):
            service.reprocess_field(completed_document, "owner_id")


class TestManualEdit:
    def test_edit_audits_changed_fields(self, store, service, audit_log, completed_document):
        changed = service.apply_manual_edit(
            completed_document,
            {"cost_center": "CC-100", "invoicing_party": "Adobe Systems Inc"},
        )

        assert changed == ["cost_center"]
        assert store.get_document(completed_document).accounting["cost_center"] == "CC-100"

        manual = [
            e for e in audit_log.get_document_trail(completed_document)
            if e.mapping_source == MappingSource.MANUAL_EDIT
        ]
        assert len(manual) == 1
        assert manual[0].field_name == "cost_center"
        assert manual[0].input_value is None
        assert manual[0].output_value == "CC-100"
        assert manual[0].confidence_score == 1.0

    def test_gl_edit_marks_rule_application_overridden(self, store, service, completed_document):
        service.apply_manual_edit(completed_document, {"gl_account": "6100"})

        applications = store.get_rule_applications(document_id=completed_document)
        assert applications
        assert all(a.was_overridden for a in applications)

    def test_numeric_fields_are_coerced(self, store, service, completed_document):
        service.apply_manual_edit(completed_document, {"invoice_gross_amount": "60.5"})
        assert store.get_document(completed_document).accounting["invoice_gross_amount"] == pytest.approx(60.5)

        with pytest.raises(ReprocessError, match="numeric"):
            service.apply_manual_edit(completed_document, {"invoice_gross_amount": "sixty"})

    def test_unknown_fields_rejected(self, service, completed_document):
        with pytest.raises(ReprocessError, match="Unknown accounting fields"):
            service.apply_manual_edit(completed_document, {"status": "completed"})

    def test_no_changes(self, service, audit_log, completed_document):
        before = len(audit_log.get_document_trail(completed_document))
        assert service.apply_manual_edit(completed_document, {"gl_account": "6420"}) == []
        assert len(audit_log.get_document_trail(completed_document)) == before


class TestRetry:
    def test_retry_failed_document(self, store, service, queue):
        store.create_document("doc-2", OWNER, "ref", "b.pdf")
        store.update_document_status("doc-2", DocumentStatus.FAILED)

        job_id = service.retry_document("doc-2")

        assert store.get_document("doc-2").status == DocumentStatus.PENDING
        job = queue.dequeue()
        assert job.id == job_id
        assert job.document_id == "doc-2"

    def test_only_failed_documents(self, service, completed_document):
        with pytest.raises(ReprocessError, match="Only failed"):
            service.retry_document(completed_document)

    def test_enqueue_failure_reverts_status(self, store, mapper, audit_log):
        queue = Mock(spec=JobQueueService)
        queue.enqueue_document.side_effect = RuntimeError("queue offline")
        service = ReprocessService(store, mapper, audit_log, queue)
        store.create_document("doc-2", OWNER, "ref", "b.pdf")
        store.update_document_status("doc-2", DocumentStatus.FAILED)

        with pytest.raises(ReprocessError, match="queue offline"):
            service.retry_document("doc-2")

        assert store.get_document("doc-2").status == DocumentStatus.FAILED

    def test_active_job_reverts_status(self, store, service, queue):
        document = store.create_document("doc-2", OWNER, "ref", "b.pdf")
        queue.enqueue_document(document)
        store.update_document_status("doc-2", DocumentStatus.FAILED)

        with pytest.raises(ReprocessError, match="active job"):
            service.retry_document("doc-2")

        assert store.get_document("doc-2").status == DocumentStatus.FAILED
