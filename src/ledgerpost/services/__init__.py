"""Application services."""

from .job_queue import JobQueueService

__all__ = ["JobQueueService"]
