"""Mail transport collaborator used by the dispatcher."""

from __future__ import annotations

import asyncio
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Optional, Protocol

import aiosmtplib

from .logger import get_logger
from .smtp_pool import SMTPPool, SmtpSettings


class MailTransportError(RuntimeError):
    """Raised when the relay rejects a message or cannot be reached in time."""

    def __init__(self, message: str, smtp_code: Optional[int] = None):
        super().__init__(message)
        self.smtp_code = smtp_code
        self.code = "transport_failure"


class MailTransport(Protocol):
    """Anything able to send one HTML mail and return a delivery id."""

    async def send(self, to: str, subject: str, html_body: str) -> str:
        ...


def describe_smtp_error(exc: BaseException) -> tuple[str, Optional[int]]:
    """Return a readable error text and the SMTP reply code, when there is one."""
    smtp_code = None
    if isinstance(exc, aiosmtplib.SMTPException):
        smtp_code = getattr(exc, "smtp_code", None) or getattr(exc, "code", None)
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        text = str(exc) or "SMTP send timed out"
    else:
        text = str(exc) or exc.__class__.__name__
    if smtp_code:
        text = f"{text} (SMTP {smtp_code})"
    return text, smtp_code


class SmtpMailTransport:
    """Send mail through a pooled SMTP relay with a bounded send time."""

    def __init__(
        self,
        settings: SmtpSettings,
        *,
        sender: str,
        timeout: float = 30.0,
        pool: SMTPPool | None = None,
        logger=None,
    ):
        self.settings = settings
        self.sender = sender
        self.timeout = timeout
        self.logger = logger or get_logger()
        self.pool = pool or SMTPPool(logger=self.logger)

    def build_message(self, to: str, subject: str, html_body: str) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = to
        msg["Subject"] = subject
        msg["Message-ID"] = make_msgid()
        msg.set_content(html_body or "", subtype="html")
        return msg

    async def send(self, to: str, subject: str, html_body: str) -> str:
        """Deliver the message and return its ``Message-ID``.

        Any failure, a timeout included, is raised as :class:`MailTransportError`.
        """
        msg = self.build_message(to, subject, html_body)
        try:
            smtp = await self.pool.get_connection(self.settings)
            async with asyncio.timeout(self.timeout):
                await smtp.send_message(msg, sender=self.sender)
        except Exception as exc:
            await self.pool.discard()
            text, smtp_code = describe_smtp_error(exc)
            raise MailTransportError(text, smtp_code) from exc
        return msg["Message-ID"]

    async def release(self) -> None:
        """Close the connection held for the calling task."""
        await self.pool.discard()

    async def cleanup(self) -> None:
        await self.pool.cleanup()
