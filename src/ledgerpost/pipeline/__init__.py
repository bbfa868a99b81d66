"""
Document processing pipeline.

Provides:
- DocumentProcessor: staged extraction -> mapping -> persistence
- WorkerPool: fixed-size queue consumer with graceful drain
- Reprocess flows for completed and failed documents
"""

from .processor import (
    DocumentProcessor,
    JobProcessingError,
    JobResult,
    PipelineContext,
    Stage,
    derive_accounting_status,
)
from .reprocess import ReprocessError, ReprocessService
from .worker import WorkerPool

__all__ = [
    "DocumentProcessor",
    "JobProcessingError",
    "JobResult",
    "PipelineContext",
    "ReprocessError",
    "ReprocessService",
    "Stage",
    "WorkerPool",
    "derive_accounting_status",
]
