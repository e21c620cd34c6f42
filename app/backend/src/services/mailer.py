"""SMTP mail transport for invoice dispatch."""

from __future__ import annotations

import smtplib
import ssl
from dataclasses import dataclass, field
from email.header import Header
from email.mime.application import MIMEApplication
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, formatdate, make_msgid
from pathlib import Path
from typing import Any, Protocol

import structlog
from jinja2 import Environment, FileSystemLoader, select_autoescape

from app.backend.src.core.config import Settings, get_settings
from app.backend.src.core.errors import (
    MailConfigurationError,
    MailTransportError,
    RecipientRejectedError,
)

LOGGER = structlog.get_logger(__name__)

TEMPLATE_DIR = Path(__file__).parent / "templates"

_TEMPLATES = Environment(
    loader=FileSystemLoader(str(TEMPLATE_DIR)),
    autoescape=select_autoescape(["html", "html.j2"]),
    keep_trailing_newline=True,
)


@dataclass(frozen=True, slots=True)
class Attachment:
    filename: str
    content: bytes
    media_type: str = "application/pdf"


@dataclass(frozen=True, slots=True)
class OutgoingMessage:
    recipient: str
    subject: str
    text_body: str
    html_body: str | None = None
    attachments: tuple[Attachment, ...] = ()


@dataclass(frozen=True, slots=True)
class MailReport:
    """What the SMTP server said about a submitted message."""

    message_id: str
    accepted: list[str] = field(default_factory=list)
    rejected: list[str] = field(default_factory=list)
    response_code: int | None = None
    response: str | None = None

    @property
    def temporary_failure(self) -> bool:
        """True when nothing was accepted and the server answered with a 4xx."""

        return (
            not self.accepted
            and self.response_code is not None
            and 400 <= self.response_code < 500
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "message_id": self.message_id,
            "accepted": list(self.accepted),
            "rejected": list(self.rejected),
            "response_code": self.response_code,
            "response": self.response,
        }


class Mailer(Protocol):
    def verify(self) -> None: ...

    def send(self, message: OutgoingMessage) -> MailReport: ...


def render_email_bodies(context: dict[str, Any]) -> tuple[str, str]:
    """Render the plain text and HTML bodies of an invoice email."""

    text = _TEMPLATES.get_template("invoice_email.txt.j2").render(**context)
    html = _TEMPLATES.get_template("invoice_email.html.j2").render(**context)
    return text, html


def _decode(response: bytes | str | None) -> str | None:
    if isinstance(response, bytes):
        return response.decode("utf-8", errors="replace")
    return response


def _is_ascii(address: str | None) -> bool:
    return address is None or address.isascii()


class SmtpMailer:
    """Submits messages to the configured SMTP server."""

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()

    def _require_configuration(self) -> None:
        missing = [
            name
            for name, value in (
                ("SMTP_HOST", self.settings.smtp_host),
                ("SMTP_USERNAME", self.settings.smtp_username),
                ("SMTP_PASSWORD", self.settings.smtp_password),
            )
            if not value
        ]
        if missing:
            raise MailConfigurationError(
                "SMTP is not configured: missing " + ", ".join(missing),
                details={"missing": missing},
            )

    def _connect(self) -> smtplib.SMTP:
        self._require_configuration()
        settings = self.settings
        context = ssl.create_default_context()
        server: smtplib.SMTP | None = None
        try:
            if settings.smtp_use_ssl:
                server = smtplib.SMTP_SSL(
                    settings.smtp_host,
                    settings.smtp_port,
                    timeout=settings.smtp_timeout_seconds,
                    context=context,
                )
            else:
                server = smtplib.SMTP(
                    settings.smtp_host,
                    settings.smtp_port,
                    timeout=settings.smtp_timeout_seconds,
                )
                if settings.smtp_use_tls:
                    server.starttls(context=context)
            server.login(settings.smtp_username, settings.smtp_password)
            return server
        except smtplib.SMTPAuthenticationError as exc:
            self._close(server)
            raise MailConfigurationError(
                "SMTP server rejected the configured credentials",
                details={"host": settings.smtp_host, "smtp_code": exc.smtp_code},
            ) from exc
        except smtplib.SMTPNotSupportedError as exc:
            self._close(server)
            raise MailConfigurationError(
                f"SMTP server does not support the configured security: {exc}",
                details={"host": settings.smtp_host},
            ) from exc
        except (smtplib.SMTPException, OSError) as exc:
            self._close(server)
            LOGGER.warning(
                "smtp_connect_failed",
                host=settings.smtp_host,
                port=settings.smtp_port,
                error=str(exc),
            )
            raise MailTransportError(
                f"Could not reach SMTP server {settings.smtp_host}:{settings.smtp_port}: {exc}",
                details={"host": settings.smtp_host, "port": settings.smtp_port},
            ) from exc

    @staticmethod
    def _close(server: smtplib.SMTP | None) -> None:
        if server is None:
            return
        try:
            server.quit()
        except (smtplib.SMTPException, OSError):
            server.close()

    def verify(self) -> None:
        """Connect and authenticate without sending anything."""

        server = self._connect()
        try:
            server.noop()
        except (smtplib.SMTPException, OSError) as exc:
            raise MailTransportError(f"SMTP verification failed: {exc}") from exc
        finally:
            self._close(server)
        LOGGER.info("smtp_verified", host=self.settings.smtp_host)

    def build_mime(self, message: OutgoingMessage, message_id: str) -> MIMEMultipart:
        sender = self.settings.smtp_sender
        mime = MIMEMultipart("mixed")
        mime["Subject"] = Header(message.subject, "utf-8")
        mime["From"] = formataddr((self.settings.smtp_from_name or "", sender))
        mime["To"] = message.recipient
        mime["Date"] = formatdate(localtime=False, usegmt=True)
        mime["Message-ID"] = message_id

        body = MIMEMultipart("alternative")
        body.attach(MIMEText(message.text_body, "plain", "utf-8"))
        if message.html_body:
            body.attach(MIMEText(message.html_body, "html", "utf-8"))
        mime.attach(body)

        for attachment in message.attachments:
            _, _, subtype = attachment.media_type.partition("/")
            part = MIMEApplication(attachment.content, _subtype=subtype or "octet-stream")
            part.add_header("Content-Disposition", "attachment", filename=attachment.filename)
            mime.attach(part)
        return mime

    def send(self, message: OutgoingMessage) -> MailReport:
        """Submit ``message`` and report which recipients the server accepted.

        A recipient refused at ``RCPT TO`` is reported as rejected rather
        than raised, with the server's reply code and text; a 4xx reply
        marks the report as a temporary failure. Internationalized
        addresses need a server that offers ``SMTPUTF8``, otherwise
        :class:`RecipientRejectedError` is raised. Transport failures raise
        :class:`MailTransportError`.
        """

        sender = self.settings.smtp_sender
        domain = sender.rpartition("@")[2] if sender and "@" in sender else None
        message_id = make_msgid(domain=domain)
        mime = self.build_mime(message, message_id)
        international = not (_is_ascii(sender) and _is_ascii(message.recipient))

        server = self._connect()
        try:
            server.ehlo_or_helo_if_needed()
            mail_options: list[str] = []
            if international:
                if not server.has_extn("smtputf8"):
                    raise RecipientRejectedError(
                        f"Mail server cannot deliver to internationalized address "
                        f"{message.recipient}: SMTPUTF8 is not supported",
                        details={"recipient": message.recipient, "smtputf8": False},
                    )
                mail_options.append("SMTPUTF8")
            code, response = server.mail(sender, mail_options)
            if code != 250:
                raise smtplib.SMTPSenderRefused(code, response, sender)

            rcpt_code, rcpt_response = server.rcpt(message.recipient)
            accepted = [message.recipient] if rcpt_code in (250, 251) else []
            rejected = [] if accepted else [message.recipient]

            if not accepted:
                server.rset()
                report = MailReport(
                    message_id=message_id,
                    rejected=rejected,
                    response_code=rcpt_code,
                    response=_decode(rcpt_response),
                )
            else:
                code, response = server.data(mime.as_string())
                if code != 250:
                    raise smtplib.SMTPDataError(code, response)
                report = MailReport(
                    message_id=message_id,
                    accepted=accepted,
                    rejected=rejected,
                    response_code=code,
                    response=_decode(response),
                )
        except UnicodeError as exc:
            LOGGER.warning(
                "smtp_address_not_encodable",
                recipient=message.recipient,
                message_id=message_id,
                error=str(exc),
            )
            raise RecipientRejectedError(
                f"Address {message.recipient} cannot be encoded for the mail server: {exc}",
                details={"recipient": message.recipient},
            ) from exc
        except (smtplib.SMTPException, OSError) as exc:
            LOGGER.warning(
                "smtp_send_failed",
                recipient=message.recipient,
                message_id=message_id,
                error=str(exc),
            )
            raise MailTransportError(
                f"Failed to send mail to {message.recipient}: {exc}",
                details={"recipient": message.recipient},
            ) from exc
        finally:
            self._close(server)

        LOGGER.info(
            "smtp_message_submitted",
            recipient=message.recipient,
            message_id=message_id,
            accepted=report.accepted,
            rejected=report.rejected,
        )
        return report


def get_mailer() -> Mailer:
    """FastAPI dependency returning the configured mailer."""

    return SmtpMailer(get_settings())


__all__ = [
    "Attachment",
    "MailReport",
    "Mailer",
    "OutgoingMessage",
    "SmtpMailer",
    "get_mailer",
    "render_email_bodies",
]
