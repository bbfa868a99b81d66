"""Field-level audit trail for accounting decisions."""

from .log import AuditLog, make_entry, value_to_string

__all__ = ["AuditLog", "make_entry", "value_to_string"]
