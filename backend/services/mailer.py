"""Outbound email transports.

A single mailer is built at process start (see ``backend.main``) and handed to
the outbox relay. ``SmtpMailer`` talks to a real SMTP server; ``LoggingMailer``
is used when no SMTP host is configured so local development never blocks on
email delivery.
"""

import logging
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from backend.core import config

logger = logging.getLogger(__name__)


class MailerError(Exception):
    """Raised when a message could not be handed to the transport."""


class SmtpMailer:
    def __init__(
        self,
        host: str,
        port: int,
        username: str,
        password: str,
        from_address: str,
        use_tls: bool = True,
        timeout: int = 10,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.from_address = from_address
        self.use_tls = use_tls
        self.timeout = timeout

    def build_message(self, to: str, subject: str, html_body: str) -> MIMEMultipart:
        message = MIMEMultipart("alternative")
        message["Subject"] = subject
        message["From"] = self.from_address
        message["To"] = to
        message.attach(MIMEText(html_body, "html"))
        return message

    def send(self, to: str, subject: str, html_body: str) -> None:
        message = self.build_message(to, subject, html_body)
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                if self.use_tls:
                    server.starttls(context=ssl.create_default_context())
                if self.username:
                    server.login(self.username, self.password)
                server.sendmail(self.from_address, [to], message.as_string())
        except (smtplib.SMTPException, OSError) as exc:
            raise MailerError(f"SMTP delivery to {to} failed: {exc}") from exc
        logger.info("Sent email %r to %s", subject, to)


class LoggingMailer:
    def __init__(self, from_address: str):
        self.from_address = from_address

    def send(self, to: str, subject: str, html_body: str) -> None:
        logger.info("SMTP not configured; email %r to %s logged only", subject, to)
        logger.debug("Email body for %s:\n%s", to, html_body)


def build_mailer() -> SmtpMailer | LoggingMailer:
    from_address = f"{config.FROM_NAME} <{config.FROM_EMAIL}>"
    if not config.SMTP_HOST:
        return LoggingMailer(from_address)
    return SmtpMailer(
        host=config.SMTP_HOST,
        port=config.SMTP_PORT,
        username=config.SMTP_USER,
        password=config.SMTP_PASSWORD,
        from_address=from_address,
        use_tls=config.SMTP_USE_TLS,
        timeout=config.SMTP_TIMEOUT_SECONDS,
    )
