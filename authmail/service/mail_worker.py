"""Background worker that drains the email queue.

One worker task per process handles one job at a time. Sends are throttled
by a sliding-window limiter and the blocking SMTP exchange runs in a thread
so the event loop keeps serving requests.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from typing import TYPE_CHECKING, Callable, Deque, Optional

from authmail.logging import get_logger
from authmail.service.errors import TemplateNotFound
from authmail.storage.models import EmailJob

if TYPE_CHECKING:
    from authmail.service.email import EmailService
    from authmail.service.mail_queue import MailQueue

logger = get_logger(__name__)

# Worker configuration
DEFAULT_POLL_INTERVAL_SECONDS = 1.0
DEFAULT_RATE_LIMIT_MAX = 1
DEFAULT_RATE_LIMIT_WINDOW_MS = 1000
MAX_LOOP_BACKOFF_SECONDS = 300


class SendRateLimiter:
    """Allow at most ``max_sends`` sends per ``window_ms`` milliseconds."""

    def __init__(
        self,
        max_sends: int = DEFAULT_RATE_LIMIT_MAX,
        window_ms: int = DEFAULT_RATE_LIMIT_WINDOW_MS,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_sends = max(1, max_sends)
        self.window = max(0, window_ms) / 1000.0
        self._clock = clock
        self._sent: Deque[float] = deque()

    def _prune(self, now: float) -> None:
        while self._sent and now - self._sent[0] >= self.window:
            self._sent.popleft()

    def delay(self) -> float:
        """Seconds until another send is allowed; 0 when a slot is free."""
        now = self._clock()
        self._prune(now)
        if len(self._sent) < self.max_sends:
            return 0.0
        return max(0.0, self._sent[0] + self.window - now)

    async def wait(self) -> None:
        delay = self.delay()
        while delay > 0:
            await asyncio.sleep(delay)
            delay = self.delay()

    def record(self) -> None:
        self._sent.append(self._clock())


class MailWorker:
    """Background worker for delivering queued email jobs.

    The worker leases one due job at a time, hands it to the email service
    and acks, retries or fails it depending on the outcome.
    """

    def __init__(
        self,
        queue: "MailQueue",
        email_service: "EmailService",
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        rate_limit_max: int = DEFAULT_RATE_LIMIT_MAX,
        rate_limit_window_ms: int = DEFAULT_RATE_LIMIT_WINDOW_MS,
    ) -> None:
        self.queue = queue
        self.email = email_service
        self.poll_interval = poll_interval
        self.limiter = SendRateLimiter(rate_limit_max, rate_limit_window_ms)
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the background worker."""
        if self._running:
            logger.warning("mail_worker_already_running")
            return

        recovered = self.queue.recover_stalled()
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            "mail_worker_started",
            poll_interval=self.poll_interval,
            rate_limit_max=self.limiter.max_sends,
            recovered=recovered,
        )

    async def stop(self) -> None:
        """Stop the background worker."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("mail_worker_stopped")

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while self._running:
            processed: Optional[EmailJob] = None
            try:
                processed = await self.run_once()
                consecutive_errors = 0
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "mail_worker_loop_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
                if consecutive_errors > 3:
                    backoff = min(
                        MAX_LOOP_BACKOFF_SECONDS,
                        self.poll_interval * (2 ** (consecutive_errors - 3)),
                    )
                    logger.warning(
                        "mail_worker_backoff",
                        backoff_seconds=backoff,
                        consecutive_errors=consecutive_errors,
                    )
                    await asyncio.sleep(backoff)
                    continue

            if processed is None:
                await asyncio.sleep(self.poll_interval)

    async def run_once(self) -> Optional[EmailJob]:
        """Deliver at most one due job. Returns the job handled, if any."""
        await self.limiter.wait()
        job = self.queue.lease()
        if not job:
            return None

        self.limiter.record()
        logger.info(
            "mail_job_starting",
            job_id=job.id,
            template=job.template,
            attempt=job.attempts_made + 1,
        )
        try:
            await asyncio.to_thread(self.email.send, job)
        except TemplateNotFound as exc:
            self.queue.fail(job, exc.message)
            return job
        except Exception as exc:
            error = str(exc) or type(exc).__name__
            logger.warning(
                "mail_job_attempt_failed",
                job_id=job.id,
                attempt=job.attempts_made + 1,
                max_attempts=job.max_attempts,
                error_type=type(exc).__name__,
                error=error,
            )
            self.queue.retry(job, error)
            return job

        self.queue.ack(job)
        logger.info("mail_job_completed", job_id=job.id, template=job.template)
        return job

    async def drain(self, limit: int = 100) -> int:
        """Run due jobs until none remain or ``limit`` is reached."""
        handled = 0
        while handled < limit:
            if await self.run_once() is None:
                break
            handled += 1
        return handled
