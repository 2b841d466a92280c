"""Mail transport collaborators: the shared IMAP inbox and the SMTP relay.

The core only sees the ``MailFetcher``/``MailSender`` protocols. The IMAP and
SMTP adapters below are blocking stdlib clients run in a worker thread.
"""

from __future__ import annotations

import asyncio
import contextlib
import email
import imaplib
import smtplib
import ssl
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.message import EmailMessage, Message
from email.policy import default as default_policy
from email.utils import getaddresses, make_msgid, parsedate_to_datetime
from typing import Optional, Protocol

import structlog

from .config import MailSettings
from .errors import TransportError

_logger = structlog.get_logger(__name__)


def _utcnow_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass(slots=True, frozen=True)
class InboundMessage:
    """A message from one fetch of the shared mailbox. Never persisted."""

    id: str
    sender: str
    to: str
    subject: str
    body: str
    received_at: datetime
    recipients: tuple[str, ...] = field(default_factory=tuple)
    html: Optional[str] = None

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "from": self.sender,
            "to": self.to,
            "subject": self.subject,
            "body": self.body,
            "received_at": self.received_at.replace(tzinfo=timezone.utc).isoformat().replace("+00:00", "Z"),
        }


@dataclass(slots=True, frozen=True)
class SentMail:
    provider_message_id: str
    from_address: str
    to: str
    subject: str


class MailFetcher(Protocol):
    async def fetch(self, mailbox_address: str, max_count: int) -> list[InboundMessage]:
        """Return up to ``max_count`` recent messages of the shared mailbox, newest first."""
        ...


class MailSender(Protocol):
    async def send(
        self,
        from_address: str,
        to: str,
        subject: str,
        body: str,
        html: Optional[str] = None,
    ) -> SentMail: ...


def _text_parts(msg: Message) -> tuple[str, Optional[str]]:
    plain: Optional[str] = None
    html: Optional[str] = None
    parts = msg.walk() if msg.is_multipart() else [msg]
    for part in parts:
        if part.get_content_maintype() == "multipart" or part.get_filename():
            continue
        ctype = part.get_content_type()
        if ctype not in ("text/plain", "text/html"):
            continue
        payload = part.get_payload(decode=True) or b""
        charset = part.get_content_charset() or "utf-8"
        try:
            text = payload.decode(charset, errors="replace")
        except LookupError:
            text = payload.decode("utf-8", errors="replace")
        if ctype == "text/plain" and plain is None:
            plain = text
        elif ctype == "text/html" and html is None:
            html = text
    return plain or html or "", html


def _header_date(msg: Message) -> Optional[datetime]:
    date_header = msg.get("Date")
    if not date_header:
        return None
    try:
        parsed = parsedate_to_datetime(str(date_header))
    except (TypeError, ValueError):
        return None
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).replace(tzinfo=None)


def _internal_date(response: bytes) -> Optional[datetime]:
    """Server arrival time from an IMAP ``INTERNALDATE`` response line, naive UTC."""
    parsed = imaplib.Internaldate2tuple(response)
    if parsed is None:
        return None
    return datetime.fromtimestamp(time.mktime(parsed), timezone.utc).replace(tzinfo=None)


def parse_message(raw: bytes, *, fallback_id: str, received_at: Optional[datetime] = None) -> InboundMessage:
    """Parse an RFC 822 message into an ``InboundMessage``.

    ``received_at`` is the server arrival time when the caller knows it; otherwise
    the ``Date`` header is used. Missing headers degrade to safe defaults and
    timestamps are naive UTC. Only ``To`` recipients route a message.
    """
    msg = email.message_from_bytes(raw, policy=default_policy)
    to_header = str(msg.get("To", "") or "")
    recipients = tuple(addr for _, addr in getaddresses([to_header]) if addr)
    body, html = _text_parts(msg)
    return InboundMessage(
        id=str(msg.get("Message-ID", "") or "").strip() or fallback_id,
        sender=str(msg.get("From", "") or "unknown"),
        to=to_header,
        subject=str(msg.get("Subject", "") or "(no subject)"),
        body=body,
        html=html,
        received_at=received_at or _header_date(msg) or _utcnow_naive(),
        recipients=recipients,
    )


class ImapMailFetcher:
    """Fetches the most recent messages of the shared IMAP folder."""

    def __init__(self, settings: MailSettings):
        self.settings = settings

    def _connect(self) -> imaplib.IMAP4_SSL:
        context = ssl.create_default_context()
        conn = imaplib.IMAP4_SSL(
            self.settings.imap_host,
            self.settings.imap_port,
            ssl_context=context,
            timeout=self.settings.transport_timeout_seconds,
        )
        conn.login(self.settings.user, self.settings.password)
        return conn

    def _fetch_sync(self, max_count: int) -> list[InboundMessage]:
        conn = self._connect()
        try:
            status, _ = conn.select(self.settings.imap_folder, readonly=True)
            if status != "OK":
                raise TransportError(f"Failed to select folder {self.settings.imap_folder}")
            status, data = conn.search(None, "ALL")
            if status != "OK":
                raise TransportError("IMAP search failed")
            seqnos = data[0].split() if data and data[0] else []
            window = seqnos[-max_count:] if max_count > 0 else []
            messages: list[InboundMessage] = []
            for seqno in window:
                status, msg_data = conn.fetch(seqno, "(INTERNALDATE RFC822)")
                if status != "OK" or not msg_data or not isinstance(msg_data[0], tuple):
                    continue
                label = seqno.decode() if isinstance(seqno, bytes) else str(seqno)
                try:
                    messages.append(
                        parse_message(
                            msg_data[0][1],
                            fallback_id=f"msg-{label}",
                            received_at=_internal_date(msg_data[0][0]),
                        )
                    )
                except Exception as exc:
                    _logger.warning("imap.parse_failed", seqno=label, error=str(exc))
            messages.sort(key=lambda m: m.received_at, reverse=True)
            return messages
        finally:
            with contextlib.suppress(imaplib.IMAP4.error, OSError):
                conn.logout()

    async def fetch(self, mailbox_address: str, max_count: int) -> list[InboundMessage]:
        # The whole folder is shared; address filtering happens in the core.
        try:
            return await asyncio.to_thread(self._fetch_sync, max_count)
        except TransportError:
            raise
        except (imaplib.IMAP4.error, OSError) as exc:
            raise TransportError(f"IMAP fetch failed: {exc}") from exc


class SmtpMailSender:
    """Sends from an agent's subaddress through the shared SMTP account."""

    def __init__(self, settings: MailSettings):
        self.settings = settings

    def _send_sync(self, message: EmailMessage) -> None:
        with smtplib.SMTP(
            self.settings.smtp_host,
            self.settings.smtp_port,
            timeout=self.settings.transport_timeout_seconds,
        ) as conn:
            conn.ehlo()
            if self.settings.smtp_starttls:
                conn.starttls(context=ssl.create_default_context())
                conn.ehlo()
            if self.settings.password:
                conn.login(self.settings.user, self.settings.password)
            conn.send_message(message)

    async def send(
        self,
        from_address: str,
        to: str,
        subject: str,
        body: str,
        html: Optional[str] = None,
    ) -> SentMail:
        message = EmailMessage()
        message["From"] = from_address
        message["To"] = to
        message["Subject"] = subject
        message["Message-ID"] = make_msgid(domain=self.settings.domain)
        message.set_content(body)
        if html:
            message.add_alternative(html, subtype="html")
        try:
            await asyncio.to_thread(self._send_sync, message)
        except (smtplib.SMTPException, OSError) as exc:
            raise TransportError(f"SMTP send failed: {exc}") from exc
        return SentMail(
            provider_message_id=str(message["Message-ID"]),
            from_address=from_address,
            to=to,
            subject=subject,
        )
