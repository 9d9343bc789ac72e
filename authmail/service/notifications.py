from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from authmail.config import Settings
from authmail.logging import get_logger
from authmail.service.email import EmailService
from authmail.service.mail_queue import MailQueue
from authmail.storage.models import EmailJob, utcnow

logger = get_logger(__name__)

Recipients = Union[str, Sequence[str]]


def _as_list(value: Optional[Recipients]) -> List[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [value]
    return list(value)


class NotificationDispatcher:
    """Turns notification requests into queued email jobs.

    Enqueue failures are logged and reported as ``{"queued": False}`` so a
    broken mail queue never fails the request that triggered the email.
    """

    def __init__(self, queue: MailQueue, email_service: EmailService, settings: Settings) -> None:
        self.queue = queue
        self.email = email_service
        self.settings = settings

    def base_context(self, lang: str = "en") -> Dict[str, Any]:
        return {
            "app_name": self.settings.app_name,
            "frontend_url": self.settings.frontend_url,
            "support_email": self.settings.email_from_address or "support@example.com",
            "current_year": utcnow().year,
            "lang": lang,
        }

    def queue_email(
        self,
        to: Recipients,
        subject: str,
        template: str,
        context: Optional[Dict[str, Any]] = None,
        cc: Optional[Recipients] = None,
        bcc: Optional[Recipients] = None,
        attachments: Optional[List[Dict[str, Any]]] = None,
        priority: Optional[int] = None,
        delay: Optional[float] = None,
        attempts: Optional[int] = None,
    ) -> Dict[str, bool]:
        job = EmailJob.new(
            _as_list(to),
            subject,
            template,
            context,
            cc=_as_list(cc),
            bcc=_as_list(bcc),
            attachments=attachments,
        )
        try:
            self.queue.enqueue(
                job,
                priority=priority,
                delay=delay,
                attempts=attempts if attempts is not None else self.settings.mail_default_attempts,
            )
        except Exception as exc:
            logger.error(
                "mail_enqueue_failed",
                template=template,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return {"queued": False}
        return {"queued": True}

    def send_templated_email(
        self,
        to: Recipients,
        template_key: str,
        params: Optional[Dict[str, Any]] = None,
        lang: str = "en",
        **options: Any,
    ) -> Dict[str, bool]:
        """Queue a registered template with the base context merged in.

        ``options`` accepts the same keyword arguments as ``queue_email``
        (``cc``, ``bcc``, ``attachments``, ``priority``, ``delay``,
        ``attempts``). Raises TemplateNotFound for unregistered keys.
        """
        template = self.email.get_template(template_key)
        context = {**self.base_context(lang), **(params or {})}
        subject = template.subject.format_map(_SubjectContext(context))
        return self.queue_email(to, subject, template_key, context, **options)

    def send_bulk_email(
        self,
        recipients: Iterable[str],
        subject: str,
        template: str,
        context: Optional[Dict[str, Any]] = None,
        priority: Optional[int] = None,
        attempts: Optional[int] = None,
    ) -> Dict[str, Any]:
        jobs = [EmailJob.new(r, subject, template, context) for r in recipients]
        try:
            stored = self.queue.enqueue_bulk(
                jobs,
                priority=priority,
                attempts=attempts if attempts is not None else self.settings.mail_default_attempts,
            )
        except Exception as exc:
            logger.error(
                "mail_bulk_enqueue_failed",
                template=template,
                count=len(jobs),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return {"queued": False, "count": 0}
        return {"queued": bool(stored), "count": len(stored)}


class _SubjectContext(dict):
    def __missing__(self, key: str) -> str:
        return ""
