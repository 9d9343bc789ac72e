"""Tests for the notification dispatcher."""

import pytest

from authmail.service.email import EmailService
from authmail.service.errors import TemplateNotFound
from authmail.service.mail_queue import MailQueue
from authmail.service.notifications import NotificationDispatcher
from authmail.storage.memory import MemoryStore


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def dispatcher(store, settings):
    return NotificationDispatcher(MailQueue(store), EmailService(), settings)


class BrokenQueue:
    def enqueue(self, job, **kwargs):
        raise RuntimeError("queue unavailable")

    def enqueue_bulk(self, jobs, **kwargs):
        raise RuntimeError("queue unavailable")


def test_queue_email_reports_queued(dispatcher, store, settings):
    result = dispatcher.queue_email(
        "user@example.com",
        "Hello",
        "welcome",
        {"first_name": "Ada"},
        cc="cc@example.com",
        bcc=["bcc@example.com"],
    )

    assert result == {"queued": True}
    (job,) = store.list_email_jobs()
    assert job.to == ["user@example.com"]
    assert job.cc == ["cc@example.com"]
    assert job.bcc == ["bcc@example.com"]
    assert job.max_attempts == settings.mail_default_attempts


def test_queue_email_options(dispatcher, store):
    dispatcher.queue_email("user@example.com", "Hello", "welcome", priority=3, attempts=6, delay=30)

    (job,) = store.list_email_jobs()
    assert job.priority == 3
    assert job.max_attempts == 6
    assert store.lease_email_job() is None


def test_queue_failure_reported_not_raised(settings):
    dispatcher = NotificationDispatcher(BrokenQueue(), EmailService(), settings)

    assert dispatcher.queue_email("user@example.com", "Hello", "welcome") == {"queued": False}


def test_templated_email_merges_base_context(dispatcher, store, settings):
    result = dispatcher.send_templated_email(
        "user@example.com", "verification-code", {"code": "123456", "first_name": "Ada"}
    )

    assert result == {"queued": True}
    (job,) = store.list_email_jobs()
    assert job.subject == f"Verify your {settings.app_name} email"
    assert job.template == "verification-code"
    assert job.context["code"] == "123456"
    assert job.context["app_name"] == settings.app_name
    assert job.context["frontend_url"] == settings.frontend_url
    assert job.context["lang"] == "en"
    assert "current_year" in job.context


def test_params_override_base_context(dispatcher, store):
    dispatcher.send_templated_email("user@example.com", "welcome", {"app_name": "Custom"})

    (job,) = store.list_email_jobs()
    assert job.subject == "Welcome to Custom"


def test_unknown_template_raises(dispatcher, store):
    with pytest.raises(TemplateNotFound):
        dispatcher.send_templated_email("user@example.com", "no-such-template")

    assert store.list_email_jobs() == []


def test_bulk_email(dispatcher, store):
    result = dispatcher.send_bulk_email(
        ["a@example.com", "b@example.com"], "News", "welcome", {"first_name": "there"}
    )

    assert result == {"queued": True, "count": 2}
    assert sorted(j.to[0] for j in store.list_email_jobs()) == ["a@example.com", "b@example.com"]


def test_bulk_email_failure(settings):
    dispatcher = NotificationDispatcher(BrokenQueue(), EmailService(), settings)

    assert dispatcher.send_bulk_email(["a@example.com"], "News", "welcome") == {
        "queued": False,
        "count": 0,
    }
