from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Callable, Optional, Protocol

from loguru import logger

from lra.common.config import SmtpSettings
from lra.common.errors import NotificationError


class Notifier(Protocol):
    def send(self, to: str, subject: str, body: str) -> None: ...


class SmtpEmailSender:
    """
    Sends the HTML report over SMTP.

    Nothing connects at construction; each send opens and closes its own
    session. Failures raise NotificationError and are not retried.
    """

    def __init__(self, settings: SmtpSettings, smtp_factory: Optional[Callable[..., smtplib.SMTP]] = None):
        self.settings = settings
        self._smtp_factory = smtp_factory

    def _connect(self) -> smtplib.SMTP:
        s = self.settings
        if self._smtp_factory is not None:
            return self._smtp_factory(s.host, s.port)
        if s.secure:
            return smtplib.SMTP_SSL(s.host, s.port, context=ssl.create_default_context(), timeout=30)
        return smtplib.SMTP(s.host, s.port, timeout=30)

    def build_message(self, to: str, subject: str, body: str) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = self.settings.sender
        msg["To"] = to
        msg.attach(MIMEText(body, "html", "utf-8"))
        return msg

    def send(self, to: str, subject: str, body: str) -> None:
        msg = self.build_message(to, subject, body)
        try:
            with self._connect() as server:
                if not self.settings.secure:
                    server.starttls(context=ssl.create_default_context())
                if self.settings.user and self.settings.password:
                    server.login(self.settings.user, self.settings.password)
                server.sendmail(self.settings.sender, [to], msg.as_string())
        except (smtplib.SMTPException, OSError) as e:
            raise NotificationError(f"Failed to send report email to {to}: {e}", recipient=to)

        logger.info(f"Report email sent to {to}")
