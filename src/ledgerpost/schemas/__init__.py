"""
Canonical records for documents, jobs, mapping results, audit entries and
GL rules.
"""

from .documents import (
    ACCOUNTING_FIELDS,
    NUMERIC_ACCOUNTING_FIELDS,
    AccountingStatus,
    AuditEntry,
    Document,
    DocumentStatus,
    ExtractionResult,
    Job,
    MappingField,
    MappingResult,
    MappingSource,
)
from .rules import (
    AISuggestion,
    AmountRange,
    ConditionKind,
    DateRange,
    EvaluationResult,
    FinalSuggestion,
    LineItemData,
    Rule,
    RuleActions,
    RuleApplication,
    RuleConditions,
    RuleMatch,
    RuleStats,
    RuleTestResult,
    SuggestionSource,
)

__all__ = [
    "ACCOUNTING_FIELDS",
    "NUMERIC_ACCOUNTING_FIELDS",
    "AISuggestion",
    "AccountingStatus",
    "AmountRange",
    "AuditEntry",
    "ConditionKind",
    "DateRange",
    "Document",
    "DocumentStatus",
    "EvaluationResult",
    "ExtractionResult",
    "FinalSuggestion",
    "Job",
    "LineItemData",
    "MappingField",
    "MappingResult",
    "MappingSource",
    "Rule",
    "RuleActions",
    "RuleApplication",
    "RuleConditions",
    "RuleMatch",
    "RuleStats",
    "RuleTestResult",
    "SuggestionSource",
]
