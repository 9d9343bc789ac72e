from __future__ import annotations

import html
import smtplib
import ssl
from collections import defaultdict
from dataclasses import dataclass
from email.mime.application import MIMEApplication
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, Iterable, Optional

from authmail.logging import get_logger
from authmail.service.errors import DeliveryError, TemplateNotFound
from authmail.storage.models import EmailJob

logger = get_logger(__name__)


@dataclass(frozen=True)
class EmailTemplate:
    subject: str
    heading: str
    text: str


@dataclass(frozen=True)
class RenderedEmail:
    subject: str
    html: str
    text: str


TEMPLATES: Dict[str, EmailTemplate] = {
    "verification-code": EmailTemplate(
        subject="Verify your {app_name} email",
        heading="Verify your email",
        text=(
            "Hi {first_name},\n\n"
            "Thanks for signing up! Your verification code is:\n\n"
            "    {code}\n\n"
            "This code will expire in {expires_minutes} minutes.\n"
        ),
    ),
    "welcome": EmailTemplate(
        subject="Welcome to {app_name}",
        heading="Welcome aboard",
        text=(
            "Hi {first_name},\n\n"
            "Your email is verified and your account is ready.\n\n"
            "Sign in at {frontend_url}/login\n"
        ),
    ),
    "reset-password": EmailTemplate(
        subject="Reset your {app_name} password",
        heading="Reset your password",
        text=(
            "Hi {first_name},\n\n"
            "We received a request to reset your password. Your reset code is:\n\n"
            "    {code}\n\n"
            "This code will expire in {expires_minutes} minutes.\n\n"
            "If you didn't request this, you can safely ignore this email.\n"
        ),
    ),
    "password-changed": EmailTemplate(
        subject="Your {app_name} password was changed",
        heading="Password changed",
        text=(
            "Hi {first_name},\n\n"
            "The password for your account was just changed and every other "
            "session was signed out.\n\n"
            "If you didn't make this change, contact {support_email} immediately.\n"
        ),
    ),
}

_HTML_SHELL = """<!DOCTYPE html>
<html lang="{lang}">
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{heading}</h1>
        {paragraphs}
        <div class="footer">
            <p>{app_name} &copy; {current_year}</p>
        </div>
    </div>
</body>
</html>
"""


def _blank_context(context: Dict[str, Any]) -> defaultdict:
    # unknown placeholders render empty rather than raising KeyError
    filled: defaultdict = defaultdict(str)
    filled.update({k: "" if v is None else v for k, v in context.items()})
    return filled


class EmailService:
    """Renders registered templates and delivers them over SMTP.

    When no SMTP host is configured the message is logged instead of sent
    and delivery counts as successful (dev mode).
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "AuthMail",
        templates: Optional[Dict[str, EmailTemplate]] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.templates = dict(templates if templates is not None else TEMPLATES)

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _redact_all(self, recipients: Iterable[str]) -> list[str]:
        return [self._redact_email(r) for r in recipients]

    def get_template(self, key: str) -> EmailTemplate:
        template = self.templates.get(key)
        if not template:
            raise TemplateNotFound(f"unknown email template {key!r}", detail={"template": key})
        return template

    def render(self, template_key: str, context: Dict[str, Any]) -> RenderedEmail:
        template = self.get_template(template_key)
        plain = _blank_context(context)
        escaped = _blank_context(
            {k: html.escape(str(v)) for k, v in context.items() if v is not None}
        )
        text_body = template.text.format_map(plain)
        paragraphs = "\n        ".join(
            f"<p>{block.strip().replace(chr(10), '<br>')}</p>"
            for block in template.text.format_map(escaped).split("\n\n")
            if block.strip()
        )
        shell_context = _blank_context(
            {
                **{k: v for k, v in escaped.items()},
                "heading": html.escape(template.heading),
                "paragraphs": paragraphs,
                "lang": escaped.get("lang") or "en",
            }
        )
        return RenderedEmail(
            subject=template.subject.format_map(plain),
            html=_HTML_SHELL.format_map(shell_context),
            text=text_body,
        )

    def _build_message(self, job: EmailJob, rendered: RenderedEmail) -> MIMEMultipart:
        msg = MIMEMultipart("mixed")
        msg["Subject"] = job.subject or rendered.subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = ", ".join(job.to)
        if job.cc:
            msg["Cc"] = ", ".join(job.cc)

        body = MIMEMultipart("alternative")
        body.attach(MIMEText(rendered.text, "plain"))
        body.attach(MIMEText(rendered.html, "html"))
        msg.attach(body)

        for attachment in job.attachments:
            content = attachment.get("content", "")
            payload = content.encode() if isinstance(content, str) else bytes(content)
            part = MIMEApplication(payload, Name=attachment.get("filename", "attachment"))
            part["Content-Disposition"] = (
                f'attachment; filename="{attachment.get("filename", "attachment")}"'
            )
            msg.attach(part)
        return msg

    def send(self, job: EmailJob) -> None:
        """Render and deliver ``job``. Blocking; raises DeliveryError on failure.

        TemplateNotFound propagates unchanged.
        """
        rendered = self.render(job.template, job.context)
        if not self.is_configured:
            # Dev mode: log the email instead of sending
            logger.info(
                "email_dev_mode",
                job_id=job.id,
                to=self._redact_all(job.to),
                subject=job.subject or rendered.subject,
                template=job.template,
                body_preview=rendered.text[:200],
            )
            return

        msg = self._build_message(job, rendered)
        recipients = [*job.to, *job.cc, *job.bcc]
        redacted = self._redact_all(job.to)
        context = ssl.create_default_context()
        logger.debug(
            "email_connecting",
            host=self.smtp_host,
            port=self.smtp_port,
            use_tls=self.smtp_use_tls,
            job_id=job.id,
        )
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, recipients, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, recipients, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                job_id=job.id,
                host=self.smtp_host,
                error=str(e),
                error_code=getattr(e, "smtp_code", None),
            )
            raise DeliveryError("smtp authentication failed") from e
        except smtplib.SMTPConnectError as e:
            logger.error(
                "email_connect_failed",
                job_id=job.id,
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            raise DeliveryError("smtp connect failed") from e
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                job_id=job.id,
                to=redacted,
                refused=self._redact_all(getattr(e, "recipients", {}).keys()),
            )
            raise DeliveryError("recipients refused") from e
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                job_id=job.id,
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise DeliveryError(f"smtp error: {type(e).__name__}") from e
        except ssl.SSLError as e:
            logger.error(
                "email_ssl_error", job_id=job.id, host=self.smtp_host, error=str(e)
            )
            raise DeliveryError("smtp tls error") from e
        except (TimeoutError, OSError) as e:
            logger.error(
                "email_transport_failed",
                job_id=job.id,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise DeliveryError("smtp transport unavailable") from e

        logger.info("email_sent", job_id=job.id, to=redacted, template=job.template)
