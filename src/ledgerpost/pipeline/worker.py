"""
Fixed-size worker pool consuming the document job queue.

Each slot is a thread that claims one job, runs it to completion and
acknowledges it before claiming the next. stop() lets in-flight jobs finish.
"""

import logging
import threading

from ..services.job_queue import JobQueueService
from .processor import DocumentProcessor, JobProcessingError

logger = logging.getLogger(__name__)


class WorkerPool:
    """Bounded pool of queue consumers."""

    def __init__(
        self,
        queue: JobQueueService,
        processor: DocumentProcessor,
        concurrency: int = 5,
        poll_interval: float = 2.0,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.queue = queue
        self.processor = processor
        self.concurrency = concurrency
        self.poll_interval = poll_interval

        self._shutdown = threading.Event()
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()
        self.processed = 0
        self.failed = 0

    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def start(self) -> None:
        """Start all worker threads."""
        if self.running:
            return
        self._shutdown.clear()
        self._threads = [
            threading.Thread(target=self._run, name=f"ledgerpost-worker-{slot}", daemon=True)
            for slot in range(self.concurrency)
        ]
        for thread in self._threads:
            thread.start()
        logger.info("Started %d workers", self.concurrency)

    def stop(self) -> None:
        """Stop claiming new jobs. In-flight jobs run to completion."""
        self._shutdown.set()

    def join(self, timeout: float | None = None) -> None:
        for thread in self._threads:
            thread.join(timeout)

    def run_until_empty(self) -> int:
        """Process jobs in the calling thread until the queue is empty.

        Returns:
            Number of jobs handled
        """
        handled = 0
        while not self._shutdown.is_set() and self.run_once():
            handled += 1
        return handled

    def run_once(self) -> bool:
        """Claim and process a single job. Returns False if the queue was empty."""
        job = self.queue.dequeue()
        if job is None:
            return False

        try:
            self.processor.process(job)
        except JobProcessingError as e:
            self.queue.fail_job(job.id, str(e))
            with self._lock:
                self.failed += 1
        else:
            self.queue.complete_job(job.id)
            with self._lock:
                self.processed += 1
        return True

    def _run(self) -> None:
        name = threading.current_thread().name
        logger.debug("%s waiting for jobs", name)
        while not self._shutdown.is_set():
            try:
                claimed = self.run_once()
            except Exception:
                logger.exception("%s hit an unexpected error", name)
                claimed = False
            if not claimed:
                self._shutdown.wait(self.poll_interval)
        logger.debug("%s stopped", name)
