"""GL rule engine for scoring user-defined rules against line items.

Each rule is scored additively across independent condition categories
(vendor, amount, exact description or keywords, date, category bonus) and
normalized into a confidence. Matches are ranked priority-first so that
administrators can pin authoritative rules above noisier ones.
"""

from __future__ import annotations

import logging
import re
from datetime import date, datetime
from typing import TYPE_CHECKING

from ..config import RuleEngineConfig
from ..schemas.rules import (
    AISuggestion,
    ConditionKind,
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

if TYPE_CHECKING:
    from ..state_store import StateStore

logger = logging.getLogger(__name__)

TEST_RULE_GL_CODE = "TEST-001"


def _compile_pattern(pattern: str) -> re.Pattern | None:
    """Compile a vendor pattern case-insensitively, None if it is not a valid regex."""
    try:
        return re.compile(pattern, re.IGNORECASE)
    except re.error:
        return None


def pattern_matches(pattern: str, text: str) -> bool:
    """Regex search, falling back to a case-insensitive substring test."""
    compiled = _compile_pattern(pattern)
    if compiled is not None and compiled.search(text):
        return True
    return pattern.lower() in text.lower()


def _parse_date(value: str | date | None) -> date | None:
    """Parse an ISO date (a datetime prefix is accepted). None if unparseable."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


class RuleEngine:
    """Engine for evaluating GL rules against line items.

    Scoring weights (defaults, see RuleEngineConfig):
    - Vendor pattern: 30 (first matching pattern only)
    - Amount range: 20 (inclusive, on abs(amount))
    - Exact description: 35 (checked before keywords)
    - Keywords: 25, pro-rated by keywords found; skipped after an exact match
    - Date range: 10 (inclusive, only when the item has a date)
    - Category: 5 bonus

    Exclusion keywords disqualify a rule before anything is scored.
    Rule evaluation is pure; only record_application/mark_overridden write.
    """

    def __init__(
        self,
        rule_store: StateStore,
        config: RuleEngineConfig | None = None,
    ) -> None:
        """Initialize the rule engine.

        Args:
            rule_store: Store providing active rules and recording applications.
            config: Weights and thresholds. Defaults to RuleEngineConfig().
        """
        self.store = rule_store
        self.config = config or RuleEngineConfig()

    def evaluate_rule(self, rule: Rule, line_item: LineItemData) -> RuleMatch | None:
        """Score one rule against one line item.

        Args:
            rule: Rule to evaluate.
            line_item: Line item being classified.

        Returns:
            RuleMatch, or None if the rule is disqualified or nothing matched.
        """
        conditions = rule.conditions
        description = (line_item.description or "").lower()

        for keyword in conditions.exclude_keywords:
            if keyword and keyword.lower() in description:
                return None

        score = 0.0
        matched: list[str] = []

        if conditions.vendor_patterns and line_item.vendor_name:
            for pattern in conditions.vendor_patterns:
                if pattern and pattern_matches(pattern, line_item.vendor_name):
                    score += self.config.weight_vendor_patterns
                    matched.append(ConditionKind.VENDOR_PATTERNS.value)
                    break

        if conditions.has_amount_range:
            amount = abs(line_item.amount)
            bounds = conditions.amount_range
            if (bounds.min is None or amount >= bounds.min) and (
                bounds.max is None or amount <= bounds.max
            ):
                score += self.config.weight_amount_range
                matched.append(ConditionKind.AMOUNT_RANGE.value)

        if conditions.exact_descriptions:
            for exact in conditions.exact_descriptions:
                if description == exact.lower():
                    score += self.config.weight_exact_descriptions
                    matched.append(ConditionKind.EXACT_DESCRIPTIONS.value)
                    break

        # Keywords never stack on top of an exact description match
        if conditions.keywords and ConditionKind.EXACT_DESCRIPTIONS.value not in matched:
            found = sum(1 for keyword in conditions.keywords if keyword.lower() in description)
            if found:
                score += found / len(conditions.keywords) * self.config.weight_keywords
                matched.append(ConditionKind.KEYWORDS.value)

        if conditions.has_date_range and line_item.date:
            if self._date_in_range(line_item.date, conditions):
                score += self.config.weight_date_range
                matched.append(ConditionKind.DATE_RANGE.value)

        if conditions.line_item_category and line_item.category:
            if line_item.category in conditions.line_item_category:
                score += self.config.weight_category_bonus
                matched.append(ConditionKind.LINE_ITEM_CATEGORY.value)

        if not matched:
            return None

        confidence = max(0.0, min(score / self._max_score(conditions), 1.0))

        return RuleMatch(
            rule=rule,
            score=score,
            matched_conditions=matched,
            confidence=confidence,
            should_auto_apply=(
                rule.actions.auto_assign and confidence >= self.config.auto_apply_threshold
            ),
            requires_approval=rule.actions.requires_approval,
        )

    def _date_in_range(self, value: str, conditions: RuleConditions) -> bool:
        item_date = _parse_date(value)
        if item_date is None:
            return False
        start = _parse_date(conditions.date_range.start)
        end = _parse_date(conditions.date_range.end)
        if conditions.date_range.start and start is None:
            return False
        if conditions.date_range.end and end is None:
            return False
        if start is not None and item_date < start:
            return False
        if end is not None and item_date > end:
            return False
        return True

    def _max_score(self, conditions: RuleConditions) -> float:
        """Sum of weights for configured categories, floored at max_score."""
        total = 0.0
        if conditions.vendor_patterns:
            total += self.config.weight_vendor_patterns
        if conditions.has_amount_range:
            total += self.config.weight_amount_range
        if conditions.exact_descriptions:
            total += self.config.weight_exact_descriptions
        elif conditions.keywords:
            total += self.config.weight_keywords
        if conditions.has_date_range:
            total += self.config.weight_date_range
        if conditions.line_item_category:
            total += self.config.weight_category_bonus
        return max(total, self.config.max_score)

    def evaluate_line_item(
        self,
        owner_id: str,
        line_item: LineItemData,
        ai_suggestion: AISuggestion | None = None,
    ) -> EvaluationResult:
        """Evaluate all active rules for an owner and derive a final suggestion.

        Args:
            owner_id: Tenant whose rules apply.
            line_item: Line item being classified.
            ai_suggestion: Optional externally produced suggestion.

        Returns:
            EvaluationResult with ranked matches and the final suggestion.
        """
        rules = self.store.get_active_rules(owner_id)

        matches: list[RuleMatch] = []
        for rule in rules:
            match = self.evaluate_rule(rule, line_item)
            if match and match.confidence >= self.config.suggest_threshold:
                matches.append(match)

        # Stable sort keeps store order (priority, creation) for full ties
        matches.sort(key=lambda m: (-m.rule.priority, -m.confidence))
        best_match = matches[0] if matches else None

        if best_match and (best_match.rule.actions.override_ai or ai_suggestion is None):
            final = FinalSuggestion(
                gl_code=best_match.rule.actions.gl_code,
                source=SuggestionSource.RULE,
                confidence=best_match.confidence,
                auto_applied=best_match.should_auto_apply,
            )
        elif ai_suggestion is not None:
            final = FinalSuggestion(
                gl_code=ai_suggestion.gl_code,
                source=SuggestionSource.AI,
                confidence=ai_suggestion.confidence,
                auto_applied=False,
            )
        else:
            final = FinalSuggestion.manual()

        logger.debug(
            "Evaluated %d rules for owner %s: %d candidates, final=%s (%s, %.2f)",
            len(rules),
            owner_id,
            len(matches),
            final.gl_code or "-",
            final.source.value,
            final.confidence,
        )

        return EvaluationResult(
            matches=matches,
            best_match=best_match,
            ai_suggestion=ai_suggestion,
            final_suggestion=final,
        )

    def test_rule(self, conditions: RuleConditions, sample: LineItemData) -> RuleTestResult:
        """Preview how conditions score against sample data.

        Uses the production evaluate_rule path with a placeholder action.
        """
        rule = Rule(
            id="test",
            owner_id="test",
            name="Test Rule",
            priority=0,
            conditions=conditions,
            actions=RuleActions(gl_code=TEST_RULE_GL_CODE),
        )
        match = self.evaluate_rule(rule, sample)
        if match is None:
            return RuleTestResult(
                matched=False,
                score=0.0,
                matched_conditions=[],
                explanation="Rule did not match the test data",
            )

        return RuleTestResult(
            matched=True,
            score=match.score,
            confidence=match.confidence,
            matched_conditions=list(match.matched_conditions),
            explanation=self.explain_match(match, sample),
        )

    def explain_match(self, match: RuleMatch, line_item: LineItemData) -> str:
        """Human-readable explanation, one clause per matched condition kind."""
        clauses = {
            ConditionKind.VENDOR_PATTERNS.value: f'Vendor "{line_item.vendor_name}" matches pattern',
            ConditionKind.AMOUNT_RANGE.value: f"Amount {abs(line_item.amount):.2f} falls within range",
            ConditionKind.EXACT_DESCRIPTIONS.value: "Description matches exactly",
            ConditionKind.KEYWORDS.value: "Description contains required keywords",
            ConditionKind.DATE_RANGE.value: "Date falls within specified range",
            ConditionKind.LINE_ITEM_CATEGORY.value: f'Category "{line_item.category}" is allowed',
        }
        explanations = [clauses[kind] for kind in match.matched_conditions if kind in clauses]
        return (
            f"Rule matched with score {match.score:.1f} "
            f"({match.confidence:.0%} confidence): {', '.join(explanations)}"
        )

    def record_application(
        self,
        document_id: str,
        line_item_index: int,
        match: RuleMatch,
    ) -> RuleApplication:
        """Persist an applied rule match. The rule itself is not modified."""
        application = self.store.insert_rule_application(
            document_id=document_id,
            rule_id=match.rule.id,
            line_item_index=line_item_index,
            applied_gl_code=match.rule.actions.gl_code,
            confidence_score=match.confidence,
        )
        logger.info(
            "Recorded rule application %d: rule %s -> doc %s item %d (%s, %.2f)",
            application.id,
            match.rule.id,
            document_id,
            line_item_index,
            application.applied_gl_code,
            match.confidence,
        )
        return application

    def mark_overridden(self, application_id: int) -> None:
        """Flag that a human replaced a rule-applied value.

        Raises:
            LookupError: If the application does not exist.
        """
        if not self.store.mark_rule_application_overridden(application_id):
            raise LookupError(f"Rule application {application_id} not found")
        logger.info("Rule application %d marked as overridden", application_id)

    def get_rule_stats(self, rule_id: str) -> RuleStats:
        """Application and override statistics for a rule."""
        applications = self.store.get_rule_applications(rule_id=rule_id)
        if not applications:
            return RuleStats()

        overridden = sum(1 for app in applications if app.was_overridden)
        return RuleStats(
            total_applications=len(applications),
            successful_applications=len(applications) - overridden,
            override_rate=overridden / len(applications),
            last_applied_at=max(app.applied_at for app in applications),
        )

    def get_health_status(self) -> dict[str, str]:
        """Engine and rule store status for health checks."""
        return {
            "engine": "active",
            "database": "connected" if self.store.test_connection() else "disconnected",
        }
