"""Durable email job queue on top of the store.

Jobs live in the store so they survive restarts. Successful jobs are deleted,
retries are rescheduled with exponential backoff, and jobs that exhaust their
attempt budget stay behind in ``failed`` state for inspection.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional

from authmail.logging import get_logger
from authmail.storage.models import EmailJob, EmailJobState, utcnow

if TYPE_CHECKING:
    from authmail.storage.memory import MemoryStore
    from authmail.storage.postgres import PostgresStore

logger = get_logger(__name__)

DEFAULT_ATTEMPTS = 3
DEFAULT_BACKOFF_BASE_SECONDS = 5.0
MAX_BACKOFF_SECONDS = 300


class MailQueue:
    def __init__(
        self,
        store: "PostgresStore | MemoryStore",
        *,
        default_attempts: int = DEFAULT_ATTEMPTS,
        backoff_base_seconds: float = DEFAULT_BACKOFF_BASE_SECONDS,
    ) -> None:
        self.store = store
        self.default_attempts = default_attempts
        self.backoff_base_seconds = backoff_base_seconds

    def backoff_seconds(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        return min(self.backoff_base_seconds * (2 ** (max(1, attempt) - 1)), MAX_BACKOFF_SECONDS)

    def _prepare(
        self,
        job: EmailJob,
        priority: Optional[int],
        delay: Optional[float],
        attempts: Optional[int],
    ) -> EmailJob:
        now = utcnow()
        if priority is not None:
            job.priority = int(priority)
        if attempts is None:
            attempts = job.max_attempts or self.default_attempts
        job.max_attempts = max(1, int(attempts))
        job.attempts_made = 0
        job.state = EmailJobState.WAITING
        job.run_at = now + timedelta(seconds=max(0.0, float(delay or 0)))
        job.updated_at = now
        return job

    def enqueue(
        self,
        job: EmailJob,
        priority: Optional[int] = None,
        delay: Optional[float] = None,
        attempts: Optional[int] = None,
    ) -> EmailJob:
        prepared = self._prepare(job, priority, delay, attempts)
        (stored,) = self.store.enqueue_email_jobs([prepared])
        logger.info(
            "mail_job_enqueued",
            job_id=stored.id,
            template=stored.template,
            priority=stored.priority,
            max_attempts=stored.max_attempts,
        )
        return stored

    def enqueue_bulk(
        self,
        jobs: Iterable[EmailJob],
        priority: Optional[int] = None,
        delay: Optional[float] = None,
        attempts: Optional[int] = None,
    ) -> List[EmailJob]:
        """Insert every job or none of them."""
        prepared = [self._prepare(job, priority, delay, attempts) for job in jobs]
        if not prepared:
            return []
        stored = self.store.enqueue_email_jobs(prepared)
        logger.info("mail_jobs_enqueued", count=len(stored))
        return stored

    def lease(self, now: Optional[datetime] = None) -> Optional[EmailJob]:
        return self.store.lease_email_job(now or utcnow())

    def ack(self, job: EmailJob) -> None:
        self.store.complete_email_job(job.id)

    def retry(self, job: EmailJob, error: str) -> Optional[EmailJob]:
        """Record a failed attempt; reschedule under budget, otherwise fail."""
        attempt = job.attempts_made + 1
        if attempt < job.max_attempts:
            delay = self.backoff_seconds(attempt)
            updated = self.store.reschedule_email_job(
                job.id, error=error, run_at=utcnow() + timedelta(seconds=delay)
            )
            logger.warning(
                "mail_job_retry_scheduled",
                job_id=job.id,
                attempt=attempt,
                max_attempts=job.max_attempts,
                retry_in_seconds=delay,
                error=error,
            )
            return updated
        return self.fail(job, error)

    def fail(self, job: EmailJob, error: str) -> Optional[EmailJob]:
        """Mark ``job`` failed without further retries; the row is kept."""
        failed = self.store.fail_email_job(job.id, error=error)
        logger.error(
            "mail_job_failed",
            job_id=job.id,
            attempts=job.attempts_made + 1,
            template=job.template,
            error=error,
        )
        return failed

    def list_failed(self, limit: Optional[int] = None) -> List[EmailJob]:
        return self.store.list_email_jobs(EmailJobState.FAILED.value, limit=limit)

    def get(self, job_id: str) -> Optional[EmailJob]:
        return self.store.get_email_job(job_id)

    def counts(self) -> Dict[str, int]:
        return self.store.count_email_jobs()

    def recover_stalled(self) -> int:
        recovered = self.store.requeue_stalled_email_jobs()
        if recovered:
            logger.info("mail_jobs_recovered", count=recovered)
        return recovered
