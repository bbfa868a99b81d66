"""
Tests for the rule-based accounting field mapper.
"""

import pytest

from ledgerpost.config import MappingConfig
from ledgerpost.mapping import REQUIRED_FIELDS, RuleBasedMapper
from ledgerpost.schemas.documents import ACCOUNTING_FIELDS, MappingSource
from ledgerpost.schemas.rules import Rule, RuleActions, RuleConditions

from conftest import OWNER


class TestRuleBasedMapper:
    def test_direct_fields(self, mapper: RuleBasedMapper, extracted_data: dict):
        result = mapper.map(extracted_data, OWNER, "doc-1")

        fields = result.fields
        assert fields["invoicing_party"].value == "Adobe Systems Inc"
        assert fields["invoicing_party"].confidence == pytest.approx(0.97)
        assert fields["supplier_invoice_id_by_invcg_party"].value == "INV-2024-0042"
        assert fields["document_date"].value == "2024-03-15"
        assert fields["invoice_gross_amount"].value == pytest.approx(59.99)
        assert fields["supplier_invoice_item_amount"].value == pytest.approx(59.99)
        assert fields["document_currency"].value == "USD"
        assert fields["assignment_reference"].value == "INV-2024-0042"
        assert fields["supplier_invoice_item_text"].value == "Creative Cloud subscription"
        assert fields["accounting_document_header_text"].value == (
            "Invoice from Adobe Systems Inc - INV-2024-0042"
        )
        assert set(fields) <= set(ACCOUNTING_FIELDS)

    def test_plain_values_are_accepted(self, mapper: RuleBasedMapper):
        result = mapper.map(
            {"supplier_name": "ACME", "total_amount": "1,234.50", "invoice_date": "2024-01-05"},
            OWNER,
            "doc-1",
        )
        assert result.fields["invoicing_party"].value == "ACME"
        assert result.fields["invoice_gross_amount"].value == pytest.approx(1234.5)

    def test_unparseable_amount_is_skipped(self, mapper: RuleBasedMapper):
        result = mapper.map({"supplier_name": "ACME", "total_amount": "n/a"}, OWNER, "doc-1")
        assert "invoice_gross_amount" not in result.fields
        assert any("total_amount" in note for note in result.processing_notes)

    def test_default_currency(self, engine):
        mapper = RuleBasedMapper(engine, MappingConfig(default_currency="EUR"))
        result = mapper.map({"supplier_name": "ACME"}, OWNER, "doc-1")
        assert result.fields["document_currency"].value == "EUR"
        assert result.fields["document_currency"].source == "default"

    def test_configured_defaults(self, engine, extracted_data):
        mapper = RuleBasedMapper(
            engine, MappingConfig(default_company_code="1000", default_tax_code="V1")
        )
        result = mapper.map(extracted_data, OWNER, "doc-1")
        assert result.fields["company_code"].value == "1000"
        assert result.fields["tax_code"].value == "V1"

    def test_rule_drives_gl_account(self, store, mapper, extracted_data, adobe_rule):
        store.save_rule(adobe_rule)

        result = mapper.map(extracted_data, OWNER, "doc-1")

        gl = result.fields["gl_account"]
        assert gl.value == "6420"
        assert gl.source == "rule"
        assert gl.confidence == pytest.approx(0.85)
        assert "Adobe subscriptions" in gl.reasoning
        assert result.requires_review is False
        assert result.overall_confidence >= 0.8

        applications = store.get_rule_applications(document_id="doc-1")
        assert [a.line_item_index for a in applications] == [0]

    def test_suggested_rule_is_not_recorded(self, store, mapper, extracted_data):
        store.save_rule(
            Rule(
                id="vendor-only",
                owner_id=OWNER,
                name="Adobe vendor",
                conditions=RuleConditions(vendor_patterns=["adobe"]),
                actions=RuleActions(gl_code="6400", auto_assign=True),
            )
        )

        result = mapper.map(extracted_data, OWNER, "doc-1")

        assert result.fields["gl_account"].value == "6400"
        assert result.fields["gl_account"].confidence == pytest.approx(0.3)
        # 0.3 is below the review threshold
        assert result.requires_review is True
        assert store.get_rule_applications(document_id="doc-1") == []

    def test_extraction_gl_suggestion(self, mapper, extracted_data):
        extracted_data["gl_account_suggestion"] = {"value": "6999", "confidence": 0.75}

        result = mapper.map(extracted_data, OWNER, "doc-1")

        assert result.fields["gl_account"].value == "6999"
        assert result.fields["gl_account"].source == "ai"

    def test_missing_gl_account_requires_review(self, mapper, extracted_data):
        result = mapper.map(extracted_data, OWNER, "doc-1")

        assert "gl_account" not in result.fields
        assert result.requires_review is True
        assert any("gl_account" in note for note in result.processing_notes)

    def test_approval_rule_requires_review(self, store, mapper, extracted_data, adobe_rule):
        adobe_rule.actions.requires_approval = True
        store.save_rule(adobe_rule)

        result = mapper.map(extracted_data, OWNER, "doc-1")

        assert result.fields["gl_account"].value == "6420"
        assert result.requires_review is True

    def test_review_follows_approval_flag_not_rule_name(
        self, store, mapper, extracted_data, adobe_rule
    ):
        adobe_rule.name = "Adobe (requires approval above 500)"
        store.save_rule(adobe_rule)

        result = mapper.map(extracted_data, OWNER, "doc-1")

        assert result.fields["gl_account"].value == "6420"
        assert result.requires_review is False

    def test_overall_confidence_is_mean_of_populated(self, store, mapper, extracted_data, adobe_rule):
        store.save_rule(adobe_rule)

        result = mapper.map(extracted_data, OWNER, "doc-1")

        confidences = [field.confidence for field in result.fields.values()]
        assert result.overall_confidence == pytest.approx(sum(confidences) / len(confidences))

    def test_empty_extraction(self, mapper):
        result = mapper.map({}, OWNER, "doc-1")
        assert result.requires_review is True
        for name in REQUIRED_FIELDS:
            if name != "document_currency":
                assert name not in result.fields

    def test_audit_trail_one_entry_per_field(self, store, mapper, extracted_data, adobe_rule):
        store.save_rule(adobe_rule)

        result = mapper.map(extracted_data, OWNER, "doc-1")

        assert sorted(e.field_name for e in result.audit_trail) == sorted(result.fields)
        assert all(e.mapping_source == MappingSource.INITIAL_MAPPING for e in result.audit_trail)
        gl_entry = next(e for e in result.audit_trail if e.field_name == "gl_account")
        assert gl_entry.input_value == "Creative Cloud subscription"
        assert gl_entry.output_value == "6420"

    def test_every_line_item_is_evaluated(self, store, mapper, extracted_data, adobe_rule):
        store.save_rule(adobe_rule)
        extracted_data["line_items"] = [
            {"description": "Creative Cloud subscription", "amount": 59.99},
            {"description": "Creative Cloud subscription", "amount": 20.00},
        ]

        mapper.map(extracted_data, OWNER, "doc-1")

        applications = store.get_rule_applications(document_id="doc-1")
        assert [a.line_item_index for a in applications] == [0, 1]
