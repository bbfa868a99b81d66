"""
Rule-based accounting field mapper.

Header fields come from common extraction keys, falling back to
configured defaults. The GL account is resolved per line item through the
rule engine; the first line item drives the header gl_account.

Extraction values may be plain or wrapped as {"value": ..., "confidence": ...}.
"""

import logging
from datetime import date
from typing import Any

from ..audit import make_entry
from ..config import MappingConfig
from ..rules import RuleEngine
from ..schemas.documents import (
    ACCOUNTING_FIELDS,
    MappingField,
    MappingResult,
    MappingSource,
)
from ..schemas.rules import AISuggestion, EvaluationResult, LineItemData, SuggestionSource
from .base import BaseMapper

logger = logging.getLogger(__name__)

# Fields that must be populated for a document to skip review
REQUIRED_FIELDS = (
    "invoicing_party",
    "document_date",
    "document_currency",
    "invoice_gross_amount",
    "gl_account",
)

EXTRACTED_CONFIDENCE = 0.95
DEFAULT_CONFIDENCE = 0.85
GENERATED_CONFIDENCE = 0.80

# accounting field -> extraction keys tried in order
DIRECT_FIELDS: dict[str, tuple[str, ...]] = {
    "invoicing_party": ("supplier_name", "vendor_name", "invoicing_party"),
    "supplier_invoice_id_by_invcg_party": ("invoice_number", "invoice_id"),
    "document_date": ("invoice_date", "document_date", "date"),
    "invoice_gross_amount": ("total_amount", "gross_amount", "amount"),
    "cost_center": ("cost_center",),
    "profit_center": ("profit_center",),
    "internal_order": ("internal_order",),
    "wbs_element": ("wbs_element",),
    "tax_jurisdiction": ("tax_jurisdiction",),
}


def _unwrap(raw: Any, default_confidence: float = EXTRACTED_CONFIDENCE) -> tuple[Any, float]:
    """Split an extraction value into (value, confidence)."""
    if isinstance(raw, dict) and "value" in raw:
        confidence = raw.get("confidence")
        return raw["value"], float(confidence) if confidence is not None else default_confidence
    return raw, default_confidence


def _lookup(data: dict[str, Any], keys: tuple[str, ...]) -> tuple[Any, float, str | None]:
    """First non-empty value among keys. Returns (value, confidence, key)."""
    for key in keys:
        if key in data:
            value, confidence = _unwrap(data[key])
            if value not in (None, ""):
                return value, confidence, key
    return None, 0.0, None


def _to_amount(value: Any) -> float | None:
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).replace(",", "").strip())
    except ValueError:
        return None


def is_populated(value: Any) -> bool:
    return value is not None and value != ""


def line_items_from(extracted_data: dict[str, Any]) -> list[LineItemData]:
    """Normalize extracted line items for rule evaluation."""
    vendor, _, _ = _lookup(extracted_data, DIRECT_FIELDS["invoicing_party"])
    doc_date, _, _ = _lookup(extracted_data, DIRECT_FIELDS["document_date"])

    items = []
    for raw in extracted_data.get("line_items") or []:
        if isinstance(raw, dict):
            description, _ = _unwrap(raw.get("description", raw.get("value", "")))
            amount, _ = _unwrap(raw.get("amount", 0.0))
            category, _ = _unwrap(raw.get("category"))
            items.append(
                LineItemData(
                    description=str(description or ""),
                    amount=_to_amount(amount) or 0.0,
                    vendor_name=raw.get("vendor_name") or vendor,
                    date=raw.get("date") or doc_date,
                    category=category,
                )
            )
        else:
            items.append(
                LineItemData(description=str(raw), vendor_name=vendor, date=doc_date)
            )
    return items


class RuleBasedMapper(BaseMapper):
    """Maps extracted data to accounting fields using GL rules and defaults."""

    def __init__(self, rule_engine: RuleEngine, config: MappingConfig | None = None):
        self.engine = rule_engine
        self.config = config or MappingConfig()

    def map(self, extracted_data: dict[str, Any], owner_id: str, document_id: str) -> MappingResult:
        fields: dict[str, MappingField] = {}
        inputs: dict[str, Any] = {}
        notes: list[str] = []

        for name, keys in DIRECT_FIELDS.items():
            value, confidence, key = _lookup(extracted_data, keys)
            if key is None:
                continue
            if name == "invoice_gross_amount":
                value = _to_amount(value)
                if value is None:
                    notes.append(f"Could not parse {key} as an amount")
                    continue
            fields[name] = MappingField(
                value=value,
                confidence=confidence,
                source="extracted",
                reasoning=f"Direct mapping from extracted {key}",
            )
            inputs[name] = value

        self._map_currency(extracted_data, fields, inputs)
        self._map_defaults(fields, inputs)
        approval_needed = self._map_gl_account(
            extracted_data, owner_id, document_id, fields, inputs, notes
        )

        return self._build_result(document_id, fields, inputs, notes, approval_needed)

    def _map_currency(self, data: dict, fields: dict, inputs: dict) -> None:
        value, confidence, key = _lookup(data, ("currency", "document_currency"))
        if key is not None:
            fields["document_currency"] = MappingField(
                value=str(value).upper(),
                confidence=confidence,
                source="extracted",
                reasoning=f"Direct mapping from extracted {key}",
            )
            inputs["document_currency"] = value
        elif self.config.default_currency:
            fields["document_currency"] = MappingField(
                value=self.config.default_currency,
                confidence=DEFAULT_CONFIDENCE,
                source="default",
                reasoning=f"Default {self.config.default_currency} currency applied",
            )
            inputs["document_currency"] = None

    def _map_defaults(self, fields: dict, inputs: dict) -> None:
        def default(name: str, value: Any, confidence: float, reasoning: str, raw: Any = None):
            fields[name] = MappingField(
                value=value, confidence=confidence, source="default", reasoning=reasoning
            )
            inputs[name] = raw

        default("supplier_invoice_transaction_type", "INVOICE", DEFAULT_CONFIDENCE,
                "Standard invoice transaction type applied")
        default("accounting_document_type", "RE", DEFAULT_CONFIDENCE,
                "Standard vendor invoice document type applied")
        default("debit_credit_code", "H", DEFAULT_CONFIDENCE,
                "Standard credit code for vendor invoices")
        default("posting_date", date.today().isoformat(), DEFAULT_CONFIDENCE,
                "Current date applied as posting date")

        supplier = fields.get("invoicing_party")
        invoice = fields.get("supplier_invoice_id_by_invcg_party")
        if supplier or invoice:
            supplier_name = supplier.value if supplier else ""
            invoice_number = invoice.value if invoice else ""
            default(
                "accounting_document_header_text",
                f"Invoice from {supplier_name} - {invoice_number}".strip(" -"),
                GENERATED_CONFIDENCE,
                "Generated header text from supplier and invoice number",
            )
        if invoice:
            default("assignment_reference", invoice.value, GENERATED_CONFIDENCE,
                    "Invoice number used as assignment reference", invoice.value)

        if self.config.default_company_code:
            default("company_code", self.config.default_company_code, DEFAULT_CONFIDENCE,
                    "Configured default company code applied")
        if self.config.default_tax_code:
            default("tax_code", self.config.default_tax_code, GENERATED_CONFIDENCE,
                    "Configured default tax code applied")

        if "invoice_gross_amount" in fields:
            amount = fields["invoice_gross_amount"]
            fields["supplier_invoice_item_amount"] = MappingField(
                value=amount.value,
                confidence=amount.confidence,
                source=amount.source,
                reasoning="Item amount taken from invoice gross amount",
            )
            inputs["supplier_invoice_item_amount"] = amount.value

    def _map_gl_account(
        self,
        data: dict,
        owner_id: str,
        document_id: str,
        fields: dict,
        inputs: dict,
        notes: list[str],
    ) -> bool:
        """Resolve gl_account. Returns True if the applied rule requires approval."""
        items = line_items_from(data)
        if items:
            fields["supplier_invoice_item_text"] = MappingField(
                value="; ".join(item.description for item in items if item.description),
                confidence=0.90,
                source="extracted",
                reasoning="Direct mapping from extracted line items",
            )
            inputs["supplier_invoice_item_text"] = fields["supplier_invoice_item_text"].value
        else:
            # Whole invoice as a single pseudo line item
            amount = fields.get("invoice_gross_amount")
            items = [
                LineItemData(
                    description="",
                    amount=amount.value if amount else 0.0,
                    vendor_name=fields["invoicing_party"].value if "invoicing_party" in fields else None,
                    date=fields["document_date"].value if "document_date" in fields else None,
                )
            ]

        ai_value, ai_confidence, ai_key = _lookup(data, ("gl_account_suggestion", "gl_account"))
        ai_suggestion = (
            AISuggestion(gl_code=str(ai_value), confidence=ai_confidence) if ai_key else None
        )

        header: EvaluationResult | None = None
        for index, item in enumerate(items):
            result = self.engine.evaluate_line_item(owner_id, item, ai_suggestion)
            final = result.final_suggestion
            if final.auto_applied and result.best_match is not None:
                self.engine.record_application(document_id, index, result.best_match)
            if index == 0:
                header = result
            elif final.gl_code:
                notes.append(f"Line item {index}: GL {final.gl_code} ({final.source.value})")

        final = header.final_suggestion
        if final.source == SuggestionSource.MANUAL:
            notes.append("No GL rule or suggestion matched; gl_account needs manual entry")
            return False

        approval_needed = False
        if final.source == SuggestionSource.RULE:
            match = header.best_match
            reasoning = f'Rule "{match.rule.name}" matched on {", ".join(match.matched_conditions)}'
            approval_needed = match.requires_approval
            if approval_needed:
                notes.append(f'Rule "{match.rule.name}" requires approval')
        else:
            reasoning = "Suggested by extraction service"

        fields["gl_account"] = MappingField(
            value=final.gl_code,
            confidence=final.confidence,
            source=final.source.value,
            reasoning=reasoning,
        )
        inputs["gl_account"] = items[0].description or None
        return approval_needed

    def _build_result(
        self,
        document_id: str,
        fields: dict[str, MappingField],
        inputs: dict[str, Any],
        notes: list[str],
        approval_needed: bool = False,
    ) -> MappingResult:
        populated = {
            name: mapped for name, mapped in fields.items()
            if name in ACCOUNTING_FIELDS and is_populated(mapped.value)
        }

        overall = (
            sum(mapped.confidence for mapped in populated.values()) / len(populated)
            if populated
            else 0.0
        )

        missing = [name for name in REQUIRED_FIELDS if name not in populated]
        low = [
            name for name, mapped in populated.items()
            if mapped.confidence < self.config.review_threshold
        ]
        requires_review = bool(missing or low or approval_needed)

        if missing:
            notes.append(f"Missing required fields: {', '.join(missing)}")
        if low:
            notes.append(f"Low confidence fields: {', '.join(sorted(low))}")

        audit_trail = [
            make_entry(
                document_id=document_id,
                field_name=name,
                input_value=inputs.get(name),
                output_value=mapped.value,
                confidence=mapped.confidence,
                reasoning=mapped.reasoning,
                source=MappingSource.INITIAL_MAPPING,
            )
            for name, mapped in populated.items()
        ]

        logger.debug(
            "Mapped document %s: %d fields, confidence %.2f, review=%s",
            document_id,
            len(populated),
            overall,
            requires_review,
        )

        return MappingResult(
            fields=dict(populated),
            overall_confidence=overall,
            requires_review=requires_review,
            processing_notes=notes,
            audit_trail=audit_trail,
        )
