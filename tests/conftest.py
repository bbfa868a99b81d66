"""Test fixtures and utilities."""

from pathlib import Path

import pytest

from ledgerpost.audit import AuditLog
from ledgerpost.config import MappingConfig, RuleEngineConfig
from ledgerpost.extractors import BaseExtractor
from ledgerpost.mapping import RuleBasedMapper
from ledgerpost.rules import RuleEngine
from ledgerpost.schemas.documents import ExtractionResult
from ledgerpost.schemas.rules import AmountRange, Rule, RuleActions, RuleConditions
from ledgerpost.services.job_queue import JobQueueService
from ledgerpost.state_store import StateStore

OWNER = "owner-1"

# Extraction payload for a single-line software invoice
SAMPLE_EXTRACTED_DATA = {
    "supplier_name": {"value": "Adobe Systems Inc", "confidence": 0.97},
    "invoice_number": {"value": "INV-2024-0042", "confidence": 0.96},
    "invoice_date": {"value": "2024-03-15", "confidence": 0.95},
    "total_amount": {"value": 59.99, "confidence": 0.98},
    "currency": {"value": "usd", "confidence": 0.93},
    "line_items": [
        {"description": "Creative Cloud subscription", "amount": 59.99},
    ],
}


class StaticExtractor(BaseExtractor):
    """Extractor returning a fixed payload and counting calls."""

    def __init__(self, extracted_data: dict | None = None, cost: float = 0.02):
        self.extracted_data = extracted_data if extracted_data is not None else SAMPLE_EXTRACTED_DATA
        self.cost = cost
        self.calls: list[str] = []

    @property
    def name(self) -> str:
        return "static"

    def extract(self, file_reference: str) -> ExtractionResult:
        self.calls.append(file_reference)
        return ExtractionResult(
            extracted_data=self.extracted_data,
            extraction_method="static",
            total_cost=self.cost,
        )


@pytest.fixture
def store(tmp_path: Path) -> StateStore:
    """Create a fresh state store for each test."""
    return StateStore(tmp_path / "test_state.db", run_migrations=True)


@pytest.fixture
def engine(store: StateStore) -> RuleEngine:
    return RuleEngine(store, RuleEngineConfig())


@pytest.fixture
def audit_log(store: StateStore) -> AuditLog:
    return AuditLog(store)


@pytest.fixture
def mapper(engine: RuleEngine) -> RuleBasedMapper:
    return RuleBasedMapper(engine, MappingConfig())


@pytest.fixture
def queue(store: StateStore) -> JobQueueService:
    return JobQueueService(store, max_attempts=3)


@pytest.fixture
def extracted_data() -> dict:
    return {
        key: (dict(value) if isinstance(value, dict) else list(value) if isinstance(value, list) else value)
        for key, value in SAMPLE_EXTRACTED_DATA.items()
    }


@pytest.fixture
def adobe_rule() -> Rule:
    """Auto-assigning rule that scores 0.85 against the sample invoice."""
    return Rule(
        id="rule-adobe",
        owner_id=OWNER,
        name="Adobe subscriptions",
        priority=10,
        conditions=RuleConditions(
            vendor_patterns=["adobe"],
            exact_descriptions=["Creative Cloud subscription"],
            amount_range=AmountRange(min=10),
        ),
        actions=RuleActions(gl_code="6420", auto_assign=True),
    )
