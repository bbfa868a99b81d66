"""GL rule engine for suggesting accounting codes for line items."""

from .engine import RuleEngine, pattern_matches

__all__ = ["RuleEngine", "pattern_matches"]
