"""Accounting field mappers."""

from .base import BaseMapper
from .rule_mapper import REQUIRED_FIELDS, RuleBasedMapper

__all__ = ["BaseMapper", "REQUIRED_FIELDS", "RuleBasedMapper"]
