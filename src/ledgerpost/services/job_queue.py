"""
Document Job Queue Service.

SQLite-backed queue for document processing jobs.

Features:
- One active (PENDING/PROCESSING) job per document
- Atomic claim, oldest job first
- At-least-once delivery: failed attempts return to PENDING until
  max_attempts is reached, then the job is dead-lettered as FAILED
"""

import logging
from typing import Any

from ..schemas.documents import Document, Job
from ..state_store.sqlite_store import StateStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3


class JobQueueService:
    """
    Service for managing the document job queue.

    The worker acknowledges each delivered job with complete_job or
    fail_job; the queue decides between redelivery and dead-lettering.
    """

    def __init__(self, state_store: StateStore, max_attempts: int = DEFAULT_MAX_ATTEMPTS):
        """
        Initialize the job queue service.

        Args:
            state_store: State store for job persistence
            max_attempts: Delivery attempts before a job is dead-lettered
        """
        self.store = state_store
        self.max_attempts = max_attempts

    def enqueue(self, job: Job) -> int | None:
        """
        Add a job to the queue.

        Returns:
            Job ID if queued, None if the document already has an active job
        """
        job.max_attempts = self.max_attempts
        job_id = self.store.enqueue_job(job)
        if job_id is None:
            logger.info("Document %s already has an active job", job.document_id)
            return None
        job.id = job_id
        logger.info("Enqueued job %d for document %s", job_id, job.document_id)
        return job_id

    def enqueue_document(self, document: Document) -> int | None:
        """Enqueue a processing job for a stored document."""
        return self.enqueue(
            Job(
                document_id=document.id,
                owner_id=document.owner_id,
                file_reference=document.file_reference,
                filename=document.filename,
            )
        )

    def dequeue(self) -> Job | None:
        """Claim the oldest pending job, or None if the queue is empty."""
        job = self.store.claim_next_job()
        if job is not None:
            logger.debug(
                "Claimed job %d for document %s (attempt %d/%d)",
                job.id,
                job.document_id,
                job.attempts,
                job.max_attempts,
            )
        return job

    def complete_job(self, job_id: int) -> bool:
        """Acknowledge a successful job."""
        return self.store.complete_job(job_id)

    def fail_job(self, job_id: int, error: str) -> str | None:
        """
        Acknowledge a failed attempt.

        Returns:
            'PENDING' if the job will be redelivered, 'FAILED' if it was
            dead-lettered, None if the job was not in flight
        """
        status = self.store.fail_job(job_id, error)
        if status == "FAILED":
            logger.warning("Job %d exhausted its attempts: %s", job_id, error)
        elif status == "PENDING":
            logger.info("Job %d will be retried: %s", job_id, error)
        return status

    def get_job(self, job_id: int) -> dict[str, Any] | None:
        return self.store.get_job(job_id)

    def get_jobs_for_document(self, document_id: str) -> list[dict[str, Any]]:
        return self.store.get_jobs_for_document(document_id)

    def get_queue_stats(self) -> dict[str, int]:
        """Get queue statistics."""
        return self.store.get_queue_stats()

    def cleanup_old_jobs(self, days: int = 30) -> int:
        """Remove old completed/failed jobs."""
        count = self.store.cleanup_old_jobs(days)
        if count:
            logger.info("Cleaned up %d old jobs", count)
        return count
