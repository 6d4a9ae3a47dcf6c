"""
mail/mailer.py -- Template rendering and fire-and-forget delivery.

Two sender backends:
  - LogMailSender  (development / testing) -- logs the message instead of sending
  - SmtpMailSender (production)            -- delivers via aiosmtplib

Set EMAIL_BACKEND=smtp and the SMTP_* settings for production.

The workflow talks to Mailer, never to a sender:
  mailer.dispatch(to, kind, variables)

dispatch() renders nothing and awaits nothing on the request path. It schedules
an asyncio task that renders the Jinja2 templates for `kind` and hands the
result to the sender. A failed send is logged from the task's done-callback and
never reaches the request that triggered it -- workflow state written before
dispatch() is authoritative, the email is best-effort.

Task references are held in a set until completion so pending sends are not
garbage collected mid-flight, and aclose() drains them at shutdown.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from email.message import EmailMessage
from pathlib import Path
from typing import Protocol

from jinja2 import Environment, FileSystemLoader, StrictUndefined, select_autoescape

from core.config import Settings

logger = logging.getLogger("oni.mail")

_TEMPLATE_DIR = Path(__file__).parent / "templates"

# Template kind -> subject line. Each kind has <kind>.txt and <kind>.html.
SUBJECTS: dict[str, str] = {
    "registration_confirm": "Confirm your registration - Onboarding",
    "registration_pending": "Thank you for signing up! - Onboarding",
    "registration_request_admin": "New User Registration Request - Onboarding",
    "registration_complete": "Registration complete - Onboarding",
    "reset_password": "Reset your password - Onboarding",
}


@dataclass(frozen=True)
class RenderedMail:
    to: str
    subject: str
    text: str
    html: str


class MailSender(Protocol):
    async def send(self, mail: RenderedMail) -> None: ...


class LogMailSender:
    """Development sender -- logs the text part instead of sending."""

    async def send(self, mail: RenderedMail) -> None:
        logger.info("EMAIL to=%s subject=%s\n%s", mail.to, mail.subject, mail.text)


class SmtpMailSender:
    """Production sender -- sends a multipart/alternative message via SMTP."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    async def send(self, mail: RenderedMail) -> None:
        import aiosmtplib

        msg = EmailMessage()
        msg["From"] = self._settings.mail_from
        msg["To"] = mail.to
        msg["Subject"] = mail.subject
        msg.set_content(mail.text)
        msg.add_alternative(mail.html, subtype="html")

        await aiosmtplib.send(
            msg,
            hostname=self._settings.smtp_host,
            port=self._settings.smtp_port,
            username=self._settings.smtp_username or None,
            password=self._settings.smtp_password or None,
            use_tls=self._settings.smtp_use_tls,
        )


def get_mail_sender(settings: Settings) -> MailSender:
    if settings.email_backend == "smtp":
        return SmtpMailSender(settings)
    return LogMailSender()


class Mailer:
    """Renders templates by kind and delivers them in the background.

    defaults are merged under every kind's variables (support address,
    frontend URL) so callers pass only what is specific to one message.
    """

    def __init__(self, sender: MailSender, defaults: dict | None = None) -> None:
        self._sender = sender
        self._defaults = dict(defaults or {})
        self._env = Environment(
            loader=FileSystemLoader(str(_TEMPLATE_DIR)),
            autoescape=select_autoescape(["html"]),
            undefined=StrictUndefined,
        )
        self._tasks: set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, settings: Settings, sender: MailSender | None = None) -> Mailer:
        return cls(
            sender or get_mail_sender(settings),
            defaults={
                "support_email": settings.mail_from,
                "frontend_url": settings.frontend_url,
                "login_url": f"{settings.frontend_url}/login",
            },
        )

    def render(self, to: str, kind: str, variables: dict) -> RenderedMail:
        context = {**self._defaults, **variables}
        return RenderedMail(
            to=to,
            subject=SUBJECTS[kind],
            text=self._env.get_template(f"{kind}.txt").render(context),
            html=self._env.get_template(f"{kind}.html").render(context),
        )

    async def send(self, to: str, kind: str, variables: dict) -> None:
        """Render and deliver one message, raising on failure."""
        await self._sender.send(self.render(to, kind, variables))
        logger.info("Email %s sent to %s", kind, to)

    def dispatch(self, to: str, kind: str, variables: dict) -> None:
        """Schedule send() without waiting for it. Never raises for delivery errors.

        An unknown kind is a programming error and raises KeyError immediately.
        """
        if kind not in SUBJECTS:
            raise KeyError(f"Unknown mail kind: {kind!r}")
        task = asyncio.create_task(self.send(to, kind, variables), name=f"mail:{kind}")
        self._tasks.add(task)
        task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("Email task %s cancelled", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Email task %s failed", task.get_name(), exc_info=exc)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every in-flight send. Failures are already logged by _on_done."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        await self.drain()
