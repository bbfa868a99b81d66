"""
State Store (SQLite-based).

Lightweight persistent DB backing the pipeline's collaborators:
- Documents (status, extraction blob, accounting fields)
- GL rules and rule applications
- Append-only audit log
- Document processing job queue
"""

from .sqlite_store import (
    DOCUMENT_UPDATABLE_COLUMNS,
    DocumentNotFoundError,
    StateStore,
    StateStoreError,
)

__all__ = [
    "DOCUMENT_UPDATABLE_COLUMNS",
    "DocumentNotFoundError",
    "StateStore",
    "StateStoreError",
]
