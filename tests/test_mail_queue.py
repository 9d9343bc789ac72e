"""Tests for the durable mail queue, the mail worker and SMTP delivery."""

import asyncio
import smtplib
from datetime import timedelta

import pytest

from authmail.service.email import EmailService
from authmail.service.errors import DeliveryError, TemplateNotFound
from authmail.service.mail_queue import MAX_BACKOFF_SECONDS, MailQueue
from authmail.service.mail_worker import MailWorker, SendRateLimiter
from authmail.storage.errors import ConstraintViolation
from authmail.storage.memory import MemoryStore
from authmail.storage.models import EmailJob, EmailJobState, utcnow


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def queue(store):
    return MailQueue(store)


def _job(to="user@example.com", template="welcome", **kwargs):
    return EmailJob.new(to, "Subject", template, {"first_name": "Ada"}, **kwargs)


class FlakyEmail:
    """Fails the first ``failures`` sends, then succeeds."""

    def __init__(self, failures):
        self.failures = failures
        self.sent = []

    def send(self, job):
        if self.failures > 0:
            self.failures -= 1
            raise DeliveryError("smtp transport unavailable")
        self.sent.append(job.id)


class MissingTemplateEmail:
    def send(self, job):
        raise TemplateNotFound(f"unknown email template {job.template!r}")


def _worker(queue, email_service):
    return MailWorker(queue, email_service, poll_interval=0.01, rate_limit_window_ms=0)


class TestQueueOrdering:
    def test_lower_priority_value_first_then_fifo(self, queue):
        low = queue.enqueue(_job(), priority=5)
        first = queue.enqueue(_job(), priority=1)
        second = queue.enqueue(_job(), priority=1)

        order = [queue.lease().id for _ in range(3)]

        assert order == [first.id, second.id, low.id]
        assert queue.lease() is None

    def test_delayed_job_not_leased_early(self, queue):
        delayed = queue.enqueue(_job(), delay=60)

        assert queue.lease() is None
        leased = queue.lease(utcnow() + timedelta(seconds=61))
        assert leased.id == delayed.id
        assert leased.state == EmailJobState.ACTIVE

    def test_enqueue_applies_defaults(self, store):
        queue = MailQueue(store, default_attempts=4)
        job = _job()
        job.max_attempts = 0

        stored = queue.enqueue(job)

        assert stored.max_attempts == 4
        assert stored.attempts_made == 0
        assert stored.state == EmailJobState.WAITING

    def test_enqueue_attempts_override(self, queue):
        assert queue.enqueue(_job(), attempts=7).max_attempts == 7


class TestBackoff:
    def test_backoff_doubles_and_caps(self, queue):
        delays = [queue.backoff_seconds(n) for n in range(1, 9)]

        assert delays[:4] == [5, 10, 20, 40]
        assert max(delays) == MAX_BACKOFF_SECONDS
        assert queue.backoff_seconds(20) == MAX_BACKOFF_SECONDS


class TestRetryAndFailure:
    def test_retry_reschedules_with_backoff(self, queue):
        job = queue.enqueue(_job())
        leased = queue.lease()

        updated = queue.retry(leased, "boom")

        assert updated.id == job.id
        assert updated.state == EmailJobState.WAITING
        assert updated.attempts_made == 1
        assert updated.last_error == "boom"
        wait = (updated.run_at - utcnow()).total_seconds()
        assert 3 < wait <= 5
        assert queue.lease() is None

    def test_exhausted_job_failed_and_retained(self, store):
        queue = MailQueue(store, backoff_base_seconds=0)
        job = queue.enqueue(_job(), attempts=2)

        queue.retry(queue.lease(), "first")
        final = queue.retry(queue.lease(), "second")

        assert final.state == EmailJobState.FAILED
        assert final.attempts_made == 2
        assert final.failed_at is not None
        assert [j.id for j in queue.list_failed()] == [job.id]
        assert queue.counts() == {"waiting": 0, "active": 0, "failed": 1}
        assert queue.lease() is None

    def test_ack_deletes_job(self, queue):
        job = queue.enqueue(_job())

        queue.ack(queue.lease())

        assert queue.get(job.id) is None
        assert queue.counts() == {"waiting": 0, "active": 0, "failed": 0}

    def test_recover_stalled_jobs(self, queue):
        queue.enqueue(_job())
        queue.lease()

        assert queue.recover_stalled() == 1
        assert queue.lease() is not None


class TestBulkEnqueue:
    def test_bulk_inserts_all(self, queue):
        stored = queue.enqueue_bulk([_job(to=f"u{i}@example.com") for i in range(3)], priority=2)

        assert len(stored) == 3
        assert {j.priority for j in stored} == {2}
        assert queue.counts()["waiting"] == 3

    def test_bulk_with_duplicate_ids_inserts_nothing(self, queue):
        first = _job()
        clone = _job()
        clone.id = first.id

        with pytest.raises(ConstraintViolation):
            queue.enqueue_bulk([_job(), first, clone])

        assert queue.counts()["waiting"] == 0

    def test_bulk_empty(self, queue):
        assert queue.enqueue_bulk([]) == []


class TestMailWorker:
    @pytest.mark.asyncio
    async def test_transient_failure_then_success(self, store):
        queue = MailQueue(store, backoff_base_seconds=0)
        email = FlakyEmail(failures=1)
        worker = _worker(queue, email)
        job = queue.enqueue(_job())

        await worker.run_once()
        assert queue.get(job.id).attempts_made == 1
        await worker.run_once()

        assert email.sent == [job.id]
        assert queue.get(job.id) is None

    @pytest.mark.asyncio
    async def test_each_job_sent_once_in_priority_order(self, queue):
        email = FlakyEmail(failures=0)
        worker = _worker(queue, email)
        normal = [queue.enqueue(_job(to=f"n{i}@example.com")) for i in range(3)]
        urgent = [queue.enqueue(_job(to=f"u{i}@example.com"), priority=-1) for i in range(2)]
        background = queue.enqueue(_job(to="bg@example.com"), priority=10)

        handled = await worker.drain()

        expected = [j.id for j in urgent] + [j.id for j in normal] + [background.id]
        assert handled == len(expected)
        assert email.sent == expected
        assert await worker.run_once() is None
        counts = queue.counts()
        assert counts["waiting"] == 0
        assert counts["active"] == 0

    @pytest.mark.asyncio
    async def test_competing_workers_never_send_twice(self, queue):
        first, second = FlakyEmail(failures=0), FlakyEmail(failures=0)
        jobs = [queue.enqueue(_job(to=f"user{i}@example.com")) for i in range(8)]

        await asyncio.gather(_worker(queue, first).drain(), _worker(queue, second).drain())

        sent = first.sent + second.sent
        assert sorted(sent) == sorted(j.id for j in jobs)
        assert len(set(sent)) == len(sent)

    @pytest.mark.asyncio
    async def test_persistent_failure_exhausts_attempts(self, store):
        queue = MailQueue(store, backoff_base_seconds=0)
        worker = _worker(queue, FlakyEmail(failures=10))
        job = queue.enqueue(_job(), attempts=3)

        handled = await worker.drain()

        assert handled == 3
        failed = queue.get(job.id)
        assert failed.state == EmailJobState.FAILED
        assert failed.attempts_made == 3
        assert failed.last_error == "smtp transport unavailable"

    @pytest.mark.asyncio
    async def test_unknown_template_fails_without_retry(self, queue):
        worker = _worker(queue, MissingTemplateEmail())
        job = queue.enqueue(_job(template="no-such-template"), attempts=5)

        await worker.run_once()

        failed = queue.get(job.id)
        assert failed.state == EmailJobState.FAILED
        assert failed.attempts_made == 1

    @pytest.mark.asyncio
    async def test_unconfigured_transport_simulates_send(self, queue):
        worker = _worker(queue, EmailService())
        job = queue.enqueue(_job(template="verification-code"))

        assert (await worker.run_once()).id == job.id
        assert queue.get(job.id) is None

    @pytest.mark.asyncio
    async def test_idle_worker_returns_none(self, queue):
        assert await _worker(queue, EmailService()).run_once() is None

    @pytest.mark.asyncio
    async def test_start_processes_queue_and_stop(self, queue):
        worker = _worker(queue, EmailService())
        job = queue.enqueue(_job())

        await worker.start()
        assert worker.running
        for _ in range(100):
            if queue.get(job.id) is None:
                break
            await asyncio.sleep(0.01)
        await worker.stop()

        assert not worker.running
        assert queue.get(job.id) is None

    @pytest.mark.asyncio
    async def test_start_recovers_stalled_jobs(self, queue):
        worker = _worker(queue, EmailService())
        queue.enqueue(_job())
        queue.lease()

        await worker.start()
        await worker.stop()

        assert queue.counts()["active"] == 0


class TestSendRateLimiter:
    def test_one_send_per_window(self):
        now = [100.0]
        limiter = SendRateLimiter(1, 1000, clock=lambda: now[0])

        assert limiter.delay() == 0
        limiter.record()
        assert limiter.delay() == pytest.approx(1.0)
        now[0] += 0.5
        assert limiter.delay() == pytest.approx(0.5)
        now[0] += 0.5
        assert limiter.delay() == 0

    def test_zero_window_never_limits(self):
        limiter = SendRateLimiter(1, 0)
        limiter.record()
        limiter.record()

        assert limiter.delay() == 0


class TestEmailService:
    def test_render_escapes_html_but_not_text(self):
        service = EmailService()

        rendered = service.render(
            "verification-code",
            {"first_name": "<b>Ada</b>", "code": "123456", "expires_minutes": 15, "app_name": "AuthMail"},
        )

        assert rendered.subject == "Verify your AuthMail email"
        assert "&lt;b&gt;Ada&lt;/b&gt;" in rendered.html
        assert "<b>Ada</b>" not in rendered.html
        assert "Hi <b>Ada</b>" in rendered.text
        assert "123456" in rendered.text

    def test_missing_placeholders_render_blank(self):
        rendered = EmailService().render("welcome", {})

        assert rendered.subject == "Welcome to "

    def test_unknown_template(self):
        with pytest.raises(TemplateNotFound):
            EmailService().render("no-such-template", {})

    def test_is_configured_requires_host_and_sender(self):
        assert not EmailService().is_configured
        assert not EmailService(smtp_host="smtp.example.com").is_configured
        assert EmailService(smtp_host="smtp.example.com", from_email="noreply@example.com").is_configured


class FakeSMTP:
    instances = []

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port
        self.sent = []
        self.logged_in = None
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        pass

    def login(self, user, password):
        self.logged_in = (user, password)

    def sendmail(self, sender, recipients, message):
        self.sent.append((sender, recipients, message))


class RefusingSMTP(FakeSMTP):
    def sendmail(self, sender, recipients, message):
        raise smtplib.SMTPRecipientsRefused({recipients[0]: (550, b"no such user")})


class TestSmtpDelivery:
    def _service(self):
        return EmailService(
            smtp_host="smtp.example.com",
            smtp_port=587,
            smtp_user="mailer",
            smtp_password="secret",
            from_email="noreply@example.com",
        )

    def test_send_includes_cc_and_bcc(self, monkeypatch):
        FakeSMTP.instances = []
        monkeypatch.setattr("authmail.service.email.smtplib.SMTP", FakeSMTP)
        job = _job(cc=["cc@example.com"], bcc=["bcc@example.com"])

        self._service().send(job)

        (server,) = FakeSMTP.instances
        assert server.logged_in == ("mailer", "secret")
        ((sender, recipients, message),) = server.sent
        assert sender == "noreply@example.com"
        assert recipients == ["user@example.com", "cc@example.com", "bcc@example.com"]
        assert "Cc: cc@example.com" in message
        assert "bcc@example.com" not in message

    def test_refused_recipient_raises_delivery_error(self, monkeypatch):
        monkeypatch.setattr("authmail.service.email.smtplib.SMTP", RefusingSMTP)

        with pytest.raises(DeliveryError):
            self._service().send(_job())

    def test_connection_failure_raises_delivery_error(self, monkeypatch):
        def refuse(*args, **kwargs):
            raise ConnectionRefusedError("connection refused")

        monkeypatch.setattr("authmail.service.email.smtplib.SMTP", refuse)

        with pytest.raises(DeliveryError):
            self._service().send(_job())
