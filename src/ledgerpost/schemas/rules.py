"""
GL rule records (SSOT).

Rules are user-authored conditional directives that map line-item
characteristics to a GL code. Conditions are a typed optional-field record,
not a generic dict: the scoring algorithm depends on knowing exactly which
condition categories a rule configures.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class ConditionKind(str, Enum):
    """Condition categories that can contribute to a rule score."""

    VENDOR_PATTERNS = "vendor_patterns"
    AMOUNT_RANGE = "amount_range"
    EXACT_DESCRIPTIONS = "exact_descriptions"
    KEYWORDS = "keywords"
    DATE_RANGE = "date_range"
    LINE_ITEM_CATEGORY = "line_item_category"


class SuggestionSource(str, Enum):
    """Where a final GL suggestion came from."""

    RULE = "rule"
    AI = "ai"
    MANUAL = "manual"


@dataclass
class AmountRange:
    """Inclusive amount bounds, compared against abs(amount)."""

    min: Optional[float] = None
    max: Optional[float] = None

    @property
    def is_empty(self) -> bool:
        return self.min is None and self.max is None


@dataclass
class DateRange:
    """Inclusive ISO date bounds (YYYY-MM-DD)."""

    start: Optional[str] = None
    end: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.start and not self.end


@dataclass
class RuleConditions:
    """Conjunction of optional criteria.

    An empty list / None means the category is not configured.
    exclude_keywords disqualify the rule entirely when any is present.
    """

    vendor_patterns: list[str] = field(default_factory=list)
    amount_range: Optional[AmountRange] = None
    exact_descriptions: list[str] = field(default_factory=list)
    keywords: list[str] = field(default_factory=list)
    exclude_keywords: list[str] = field(default_factory=list)
    date_range: Optional[DateRange] = None
    line_item_category: list[str] = field(default_factory=list)

    @property
    def has_amount_range(self) -> bool:
        return self.amount_range is not None and not self.amount_range.is_empty

    @property
    def has_date_range(self) -> bool:
        return self.date_range is not None and not self.date_range.is_empty

    def configured_kinds(self) -> list[ConditionKind]:
        """Condition categories this rule actually configures."""
        kinds = []
        if self.vendor_patterns:
            kinds.append(ConditionKind.VENDOR_PATTERNS)
        if self.has_amount_range:
            kinds.append(ConditionKind.AMOUNT_RANGE)
        if self.exact_descriptions:
            kinds.append(ConditionKind.EXACT_DESCRIPTIONS)
        if self.keywords:
            kinds.append(ConditionKind.KEYWORDS)
        if self.has_date_range:
            kinds.append(ConditionKind.DATE_RANGE)
        if self.line_item_category:
            kinds.append(ConditionKind.LINE_ITEM_CATEGORY)
        return kinds

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "vendor_patterns": list(self.vendor_patterns),
            "amount_range": (
                {"min": self.amount_range.min, "max": self.amount_range.max}
                if self.amount_range
                else None
            ),
            "exact_descriptions": list(self.exact_descriptions),
            "keywords": list(self.keywords),
            "exclude_keywords": list(self.exclude_keywords),
            "date_range": (
                {"start": self.date_range.start, "end": self.date_range.end}
                if self.date_range
                else None
            ),
            "line_item_category": list(self.line_item_category),
        }

    @classmethod
    def from_dict(cls, data: dict | None) -> "RuleConditions":
        """Create from dictionary (JSON/YAML rule definitions)."""
        data = data or {}
        amount = data.get("amount_range")
        dates = data.get("date_range")
        return cls(
            vendor_patterns=list(data.get("vendor_patterns") or []),
            amount_range=(
                AmountRange(
                    min=float(amount["min"]) if amount.get("min") is not None else None,
                    max=float(amount["max"]) if amount.get("max") is not None else None,
                )
                if amount
                else None
            ),
            exact_descriptions=list(data.get("exact_descriptions") or []),
            keywords=list(data.get("keywords") or []),
            exclude_keywords=list(data.get("exclude_keywords") or []),
            date_range=(
                DateRange(start=dates.get("start"), end=dates.get("end")) if dates else None
            ),
            line_item_category=list(data.get("line_item_category") or []),
        )


@dataclass
class RuleActions:
    """What a matching rule assigns."""

    gl_code: str
    auto_assign: bool = False
    requires_approval: bool = False
    override_ai: bool = False

    def to_dict(self) -> dict:
        return {
            "gl_code": self.gl_code,
            "auto_assign": self.auto_assign,
            "requires_approval": self.requires_approval,
            "override_ai": self.override_ai,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RuleActions":
        return cls(
            gl_code=str(data["gl_code"]),
            auto_assign=bool(data.get("auto_assign", False)),
            requires_approval=bool(data.get("requires_approval", False)),
            override_ai=bool(data.get("override_ai", False)),
        )


@dataclass
class Rule:
    """A user-defined GL rule. Read-only during evaluation."""

    id: str
    owner_id: str
    name: str
    conditions: RuleConditions
    actions: RuleActions
    priority: int = 0
    is_active: bool = True
    created_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "name": self.name,
            "priority": self.priority,
            "is_active": self.is_active,
            "conditions": self.conditions.to_dict(),
            "actions": self.actions.to_dict(),
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Rule":
        kwargs: dict[str, Any] = {}
        if data.get("created_at"):
            kwargs["created_at"] = data["created_at"]
        return cls(
            id=str(data["id"]),
            owner_id=str(data["owner_id"]),
            name=data.get("name") or data.get("rule_name") or str(data["id"]),
            priority=int(data.get("priority", 0)),
            is_active=bool(data.get("is_active", True)),
            conditions=RuleConditions.from_dict(data.get("conditions")),
            actions=RuleActions.from_dict(data["actions"]),
            **kwargs,
        )


@dataclass
class LineItemData:
    """The subject being matched. Amount sign is ignored by matching."""

    description: str
    amount: float = 0.0
    vendor_name: Optional[str] = None
    date: Optional[str] = None  # YYYY-MM-DD
    category: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "LineItemData":
        return cls(
            description=data.get("description") or "",
            amount=float(data.get("amount") or 0.0),
            vendor_name=data.get("vendor_name"),
            date=data.get("date"),
            category=data.get("category") or data.get("line_item_category"),
        )


@dataclass
class RuleMatch:
    """Evaluation output for one rule against one line item. Never persisted."""

    rule: Rule
    score: float
    matched_conditions: list[str]
    confidence: float
    should_auto_apply: bool
    requires_approval: bool

    def to_dict(self) -> dict:
        return {
            "rule_id": self.rule.id,
            "rule_name": self.rule.name,
            "priority": self.rule.priority,
            "gl_code": self.rule.actions.gl_code,
            "score": self.score,
            "matched_conditions": list(self.matched_conditions),
            "confidence": self.confidence,
            "should_auto_apply": self.should_auto_apply,
            "requires_approval": self.requires_approval,
        }


@dataclass
class RuleApplication:
    """Persisted record of a rule applied to a document line item."""

    id: int
    document_id: str
    rule_id: str
    line_item_index: int
    applied_gl_code: str
    confidence_score: float
    was_overridden: bool
    applied_at: str

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "document_id": self.document_id,
            "rule_id": self.rule_id,
            "line_item_index": self.line_item_index,
            "applied_gl_code": self.applied_gl_code,
            "confidence_score": self.confidence_score,
            "was_overridden": self.was_overridden,
            "applied_at": self.applied_at,
        }


@dataclass
class AISuggestion:
    """An externally produced GL suggestion (never auto-applied)."""

    gl_code: str
    confidence: float


@dataclass
class FinalSuggestion:
    """The single GL code the caller should use (or route to a human)."""

    gl_code: str
    source: SuggestionSource
    confidence: float
    auto_applied: bool

    @classmethod
    def manual(cls) -> "FinalSuggestion":
        return cls(gl_code="", source=SuggestionSource.MANUAL, confidence=0.0, auto_applied=False)

    def to_dict(self) -> dict:
        return {
            "gl_code": self.gl_code,
            "source": self.source.value,
            "confidence": self.confidence,
            "auto_applied": self.auto_applied,
        }


@dataclass
class EvaluationResult:
    """Ranked candidates plus the derived final suggestion."""

    matches: list[RuleMatch]
    final_suggestion: FinalSuggestion
    best_match: Optional[RuleMatch] = None
    ai_suggestion: Optional[AISuggestion] = None

    def to_dict(self) -> dict:
        return {
            "matches": [m.to_dict() for m in self.matches],
            "best_match": self.best_match.to_dict() if self.best_match else None,
            "ai_suggestion": (
                {"gl_code": self.ai_suggestion.gl_code, "confidence": self.ai_suggestion.confidence}
                if self.ai_suggestion
                else None
            ),
            "final_suggestion": self.final_suggestion.to_dict(),
        }


@dataclass
class RuleTestResult:
    """Preview of how a set of conditions scores against sample data."""

    matched: bool
    score: float
    matched_conditions: list[str]
    explanation: str
    confidence: float = 0.0

    def to_dict(self) -> dict:
        return {
            "matched": self.matched,
            "score": self.score,
            "confidence": self.confidence,
            "matched_conditions": list(self.matched_conditions),
            "explanation": self.explanation,
        }


@dataclass
class RuleStats:
    """Application statistics for a rule."""

    total_applications: int = 0
    successful_applications: int = 0
    override_rate: float = 0.0
    last_applied_at: Optional[str] = None
