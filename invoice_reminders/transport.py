"""
Outbound Email Transport

Builds MIME reminder messages (plain text + HTML alternative + PDF
attachment) and hands them to one of two transports:

    SMTPTransport    - STARTTLS relay with login (production)
    OutboxTransport  - writes .eml files to a directory for manual
                       sending or local testing

Both expose ``validate()`` (raises ConfigurationError before a batch
starts) and ``send(email) -> SendReceipt`` (raises TransportError on a
per-message failure).
"""

from __future__ import annotations

import logging
import re
import smtplib
import ssl
from dataclasses import dataclass, field
from email.mime.application import MIMEApplication
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, formatdate, make_msgid
from pathlib import Path
from typing import Protocol

from .config import ConfigurationError, ReminderConfig, SMTPSettings, validate_smtp

smtp_logger = logging.getLogger("invoice_reminders.smtp")


class TransportError(Exception):
    """The transport rejected or failed to deliver one message."""


# ---------------------------------------------------------------------------
# Message
# ---------------------------------------------------------------------------

@dataclass
class Attachment:
    filename: str
    content: bytes
    mime_subtype: str = "pdf"

    @property
    def size(self) -> int:
        return len(self.content)


@dataclass
class OutgoingEmail:
    """A fully rendered reminder ready for a transport."""
    from_email: str
    to: str
    subject: str
    text: str
    from_name: str = ""
    html: str = ""
    reply_to: str = ""
    attachments: list[Attachment] = field(default_factory=list)

    @property
    def from_header(self) -> str:
        """'Sender Name <from@example.com>' or the bare address."""
        if self.from_name:
            return formataddr((self.from_name, self.from_email))
        return self.from_email


@dataclass(frozen=True)
class SendReceipt:
    message_id: str


def build_mime_message(email: OutgoingEmail) -> MIMEMultipart:
    """Assemble the multipart/mixed message sent by every transport."""
    msg = MIMEMultipart("mixed")
    msg["Subject"] = email.subject
    msg["From"] = email.from_header
    msg["To"] = email.to
    if email.reply_to:
        msg["Reply-To"] = email.reply_to
    msg["Date"] = formatdate(localtime=True)
    domain = email.from_email.rpartition("@")[2] or None
    msg["Message-ID"] = make_msgid(domain=domain)

    body_part = MIMEMultipart("alternative")
    body_part.attach(MIMEText(email.text, "plain", "utf-8"))
    if email.html:
        body_part.attach(MIMEText(email.html, "html", "utf-8"))
    msg.attach(body_part)

    for attachment in email.attachments:
        part = MIMEApplication(attachment.content, _subtype=attachment.mime_subtype, Name=attachment.filename)
        part["Content-Disposition"] = f'attachment; filename="{attachment.filename}"'
        msg.attach(part)

    return msg


# ---------------------------------------------------------------------------
# Transports
# ---------------------------------------------------------------------------

class EmailTransport(Protocol):
    def validate(self) -> None:
        ...

    def send(self, email: OutgoingEmail) -> SendReceipt:
        ...


class SMTPTransport:
    """Send through an SMTP relay with STARTTLS and login."""

    def __init__(self, settings: SMTPSettings, config: ReminderConfig | None = None) -> None:
        self.settings = settings
        self._config = config

    def validate(self) -> None:
        if self._config is not None:
            validate_smtp(self._config)
        elif not (self.settings.host and self.settings.username and self.settings.password):
            raise ConfigurationError("SMTP host and credentials are required")

    def send(self, email: OutgoingEmail) -> SendReceipt:
        if not email.to:
            raise TransportError("No recipient email address")

        msg = build_mime_message(email)
        try:
            with smtplib.SMTP(self.settings.host, self.settings.port, timeout=self.settings.timeout) as server:
                if self.settings.use_tls:
                    server.starttls(context=ssl.create_default_context())
                server.login(self.settings.username, self.settings.password)
                server.sendmail(email.from_email, [email.to], msg.as_string())
        except smtplib.SMTPAuthenticationError as exc:
            raise TransportError("SMTP authentication failed; check SMTP_USERNAME/SMTP_PASSWORD") from exc
        except smtplib.SMTPRecipientsRefused as exc:
            raise TransportError(f"Recipient refused: {email.to}") from exc
        except (smtplib.SMTPException, OSError) as exc:
            smtp_logger.error("SMTP error sending to %s: %s", email.to, exc)
            raise TransportError(f"Send failed: {exc}") from exc

        smtp_logger.info("Sent reminder to %s (%s)", email.to, msg["Message-ID"])
        return SendReceipt(message_id=msg["Message-ID"])


_UNSAFE_FILENAME = re.compile(r"[^A-Za-z0-9._-]+")


class OutboxTransport:
    """Write each message to ``<outbox_dir>/<message-id>.eml``."""

    def __init__(self, outbox_dir: str | Path) -> None:
        self.outbox_dir = Path(outbox_dir)

    def validate(self) -> None:
        try:
            self.outbox_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ConfigurationError(f"Outbox directory is not writable: {self.outbox_dir}") from exc

    def send(self, email: OutgoingEmail) -> SendReceipt:
        if not email.to:
            raise TransportError("No recipient email address")
        msg = build_mime_message(email)
        message_id = msg["Message-ID"]
        filename = _UNSAFE_FILENAME.sub("_", message_id.strip("<>")) + ".eml"
        try:
            (self.outbox_dir / filename).write_text(msg.as_string(), encoding="utf-8")
        except OSError as exc:
            raise TransportError(f"Could not write {filename}: {exc}") from exc
        smtp_logger.info("Wrote reminder for %s to %s", email.to, filename)
        return SendReceipt(message_id=message_id)


def build_transport(cfg: ReminderConfig) -> EmailTransport:
    """Transport selected by ``dispatch.transport`` in the config."""
    kind = cfg.dispatch.transport
    if kind == "smtp":
        return SMTPTransport(cfg.smtp, cfg)
    if kind == "outbox":
        return OutboxTransport(cfg.storage.resolve(cfg.storage.outbox_dir))
    raise ConfigurationError(f"Unknown transport: {kind!r} (expected 'smtp' or 'outbox')")
