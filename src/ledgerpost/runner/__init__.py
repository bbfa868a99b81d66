"""
CLI runner module.

Provides commands:
- enqueue: Register a document and queue it
- worker: Process queued documents
- status: Document and queue counts
- rules: Import, test and evaluate GL rules
- reprocess / retry: Revisit processed or failed documents
- audit: Field decision history
"""

from .main import create_cli, main

__all__ = [
    "create_cli",
    "main",
]
