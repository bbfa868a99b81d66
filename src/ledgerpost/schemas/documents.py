"""
Document, job, mapping and audit records (SSOT).

The pipeline treats extracted data as an opaque blob. Mapping results carry
one MappingField per named accounting field; only the field names and the
{value, confidence, source, reasoning} shape matter here.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class DocumentStatus(str, Enum):
    """Lifecycle status of a document.

    PENDING is set at enqueue time, PROCESSING by the worker as its first
    action, and exactly one terminal status as its last.
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (DocumentStatus.COMPLETED, DocumentStatus.FAILED)


class AccountingStatus(str, Enum):
    """Posting readiness of a document's accounting fields."""

    NEEDS_MAPPING = "needs_mapping"
    READY_FOR_EXPORT = "ready_for_export"
    EXPORTED = "exported"


class MappingSource(str, Enum):
    """Why an audit entry was written."""

    MANUAL_EDIT = "manual_edit"
    FIELD_REPROCESS = "field_reprocess"
    FULL_REPROCESS = "full_reprocess"
    INITIAL_MAPPING = "initial_mapping"


# The named accounting fields persisted onto a document, in export order.
ACCOUNTING_FIELDS: tuple[str, ...] = (
    "company_code",
    "supplier_invoice_transaction_type",
    "invoicing_party",
    "supplier_invoice_id_by_invcg_party",
    "document_date",
    "posting_date",
    "accounting_document_type",
    "accounting_document_header_text",
    "document_currency",
    "invoice_gross_amount",
    "gl_account",
    "supplier_invoice_item_text",
    "debit_credit_code",
    "supplier_invoice_item_amount",
    "tax_code",
    "tax_jurisdiction",
    "assignment_reference",
    "cost_center",
    "profit_center",
    "internal_order",
    "wbs_element",
)

NUMERIC_ACCOUNTING_FIELDS: frozenset[str] = frozenset(
    {"invoice_gross_amount", "supplier_invoice_item_amount"}
)


def utc_now() -> str:
    """ISO timestamp in UTC with Z suffix."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class Job:
    """Queue envelope for one document processing attempt."""

    document_id: str
    owner_id: str
    file_reference: str
    filename: str
    # Queue bookkeeping (None until enqueued)
    id: Optional[int] = None
    attempts: int = 0
    max_attempts: int = 3

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "document_id": self.document_id,
            "owner_id": self.owner_id,
            "file_reference": self.file_reference,
            "filename": self.filename,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
        }


@dataclass
class ExtractionResult:
    """Output of the extraction collaborator."""

    extracted_data: dict[str, Any]
    extraction_method: str
    total_cost: float = 0.0


@dataclass
class MappingField:
    """One mapped accounting field."""

    value: Any = None
    confidence: float = 0.0
    source: str = "default"
    reasoning: str = ""

    def to_dict(self) -> dict:
        return {
            "value": self.value,
            "confidence": self.confidence,
            "source": self.source,
            "reasoning": self.reasoning,
        }


@dataclass
class AuditEntry:
    """Immutable record of a single field decision."""

    document_id: str
    field_name: str
    input_value: Optional[str]
    output_value: Optional[str]
    confidence_score: float
    reasoning: str
    mapping_source: MappingSource
    created_at: str = field(default_factory=utc_now)

    def to_dict(self) -> dict:
        return {
            "document_id": self.document_id,
            "field_name": self.field_name,
            "input_value": self.input_value,
            "output_value": self.output_value,
            "confidence_score": self.confidence_score,
            "reasoning": self.reasoning,
            "mapping_source": self.mapping_source.value,
            "created_at": self.created_at,
        }


@dataclass
class MappingResult:
    """Aggregate output of the mapping collaborator."""

    fields: dict[str, MappingField]
    overall_confidence: float
    requires_review: bool
    processing_notes: list[str] = field(default_factory=list)
    audit_trail: list[AuditEntry] = field(default_factory=list)

    def field_values(self) -> dict[str, Any]:
        """Value of every named accounting field (None when unmapped)."""
        return {
            name: (self.fields[name].value if name in self.fields else None)
            for name in ACCOUNTING_FIELDS
        }


@dataclass
class Document:
    """Unit of work. Never deleted by the pipeline."""

    id: str
    owner_id: str
    file_reference: str
    filename: str
    status: DocumentStatus = DocumentStatus.PENDING
    extracted_data: Optional[dict[str, Any]] = None
    extraction_method: Optional[str] = None
    extraction_cost: Optional[float] = None
    accounting: dict[str, Any] = field(default_factory=dict)
    mapping_confidence: Optional[float] = None
    requires_review: bool = False
    accounting_status: AccountingStatus = AccountingStatus.NEEDS_MAPPING
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "owner_id": self.owner_id,
            "file_reference": self.file_reference,
            "filename": self.filename,
            "status": self.status.value,
            "extracted_data": self.extracted_data,
            "extraction_method": self.extraction_method,
            "extraction_cost": self.extraction_cost,
            "mapping_confidence": self.mapping_confidence,
            "requires_review": self.requires_review,
            "accounting_status": self.accounting_status.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
        for name in ACCOUNTING_FIELDS:
            data[name] = self.accounting.get(name)
        return data
