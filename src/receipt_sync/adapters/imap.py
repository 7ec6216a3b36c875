"""IMAP source adapter."""

from __future__ import annotations

import imaplib
import logging
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta
from email import message_from_bytes
from email.header import decode_header
from email.utils import parsedate_to_datetime
from typing import TYPE_CHECKING, cast

from receipt_sync.adapters.base import RECEIPT_SENDER_TERMS, RECEIPT_SUBJECT_TERMS
from receipt_sync.config import SyncSettings
from receipt_sync.errors import AuthenticationError, ProviderAPIError
from receipt_sync.models import AttachmentDescriptor, CandidateMessage, OAuthCredentials

if TYPE_CHECKING:
    from collections.abc import Iterator
    from email.message import Message

logger = logging.getLogger(__name__)

DEFAULT_PORT = 993
DEFAULT_FOLDER = "INBOX"


class ImapAdapter:
    """Access a password-authenticated mailbox over IMAP4_SSL.

    The credential bundle carries the password (or app password) as
    ``access_token`` and ``host``, ``username``, ``port`` and ``folder`` in
    ``extra``. Message ids are IMAP UIDs; attachment ids are MIME part
    indexes within the message.
    """

    provider_type = "imap"

    def __init__(self, settings: SyncSettings | None = None) -> None:
        self.settings = settings or SyncSettings()

    def get_auth_url(self, user_id: int) -> str:
        msg = "IMAP mailboxes are linked with a password, not an OAuth redirect"
        raise AuthenticationError(msg)

    def handle_callback(self, code: str) -> tuple[OAuthCredentials, str]:
        msg = "IMAP mailboxes are linked with a password, not an OAuth redirect"
        raise AuthenticationError(msg)

    def verify_tokens(self, credentials: OAuthCredentials) -> OAuthCredentials:
        """Check that the password still logs in; passwords never refresh."""
        with self._connect(credentials):
            pass
        return credentials

    def search_emails(
        self, credentials: OAuthCredentials, query: str | None = None
    ) -> list[CandidateMessage]:
        """Return UIDs matching an IMAP SEARCH query (or the receipt query)."""
        criteria = query or self.default_query()
        with self._connect(credentials) as conn:
            self._select(conn, credentials)
            status, data = conn.uid("SEARCH", None, criteria)
            if status != "OK":
                msg = f"IMAP search failed: {status}"
                raise ProviderAPIError(msg)

        raw = data[0] if data else None
        if not raw:
            return []
        uids = cast("bytes", raw).split()
        # Newest first, bounded like the other providers.
        uids = list(reversed(uids))[: self.settings.max_results]
        return [CandidateMessage(id=uid.decode()) for uid in uids]

    def default_query(self, *, today: datetime | None = None) -> str:
        """Receipt-biased SEARCH criteria bounded to the lookback window."""
        since = (today or datetime.now(tz=UTC)) - timedelta(
            days=self.settings.lookback_days
        )
        terms = [f'SUBJECT "{term}"' for term in RECEIPT_SUBJECT_TERMS]
        terms += [f'FROM "{term}"' for term in RECEIPT_SENDER_TERMS]
        # OR is a binary prefix operator: OR OR a b c == (a OR b) OR c
        alternatives = "OR " * (len(terms) - 1) + " ".join(terms)
        return f"SINCE {since.strftime('%d-%b-%Y')} {alternatives}"

    def get_message(
        self, credentials: OAuthCredentials, message_id: str
    ) -> CandidateMessage:
        """Fetch a message by UID and decode its MIME tree."""
        msg = self._fetch(credentials, message_id)
        return self._parse_message(msg, message_id)

    def get_attachment(
        self, credentials: OAuthCredentials, message_id: str, attachment_id: str
    ) -> bytes:
        """Return the decoded payload of MIME part ``attachment_id``."""
        msg = self._fetch(credentials, message_id)
        for index, part in enumerate(msg.walk()):
            if str(index) != attachment_id:
                continue
            payload = part.get_payload(decode=True)
            if payload is None:
                break
            return cast("bytes", payload)
        error = f"Attachment {attachment_id} not found in message {message_id}"
        raise ProviderAPIError(error)

    @contextmanager
    def _connect(self, credentials: OAuthCredentials) -> Iterator[imaplib.IMAP4_SSL]:
        """Open an authenticated IMAP4_SSL connection, logging out afterwards."""
        host = credentials.extra.get("host")
        username = credentials.extra.get("username")
        if not host or not username:
            msg = "IMAP credentials need 'host' and 'username'"
            raise AuthenticationError(msg)
        port = int(credentials.extra.get("port", DEFAULT_PORT))

        try:
            conn = imaplib.IMAP4_SSL(host, port)
        except OSError as exc:
            msg = f"Could not connect to IMAP server {host}:{port}: {exc}"
            raise ProviderAPIError(msg) from exc

        try:
            try:
                conn.login(username, credentials.access_token)
            except imaplib.IMAP4.error as exc:
                msg = f"IMAP login failed for {username}: {exc}"
                raise AuthenticationError(msg) from exc
            try:
                yield conn
            except (imaplib.IMAP4.error, OSError) as exc:
                msg = f"IMAP error: {exc}"
                raise ProviderAPIError(msg) from exc
        finally:
            try:
                conn.logout()
            except Exception:
                logger.debug("Error during IMAP logout", exc_info=True)

    @staticmethod
    def _select(conn: imaplib.IMAP4_SSL, credentials: OAuthCredentials) -> None:
        folder = credentials.extra.get("folder", DEFAULT_FOLDER)
        status, _data = conn.select(folder, readonly=True)
        if status != "OK":
            msg = f"Could not select IMAP folder {folder!r}"
            raise ProviderAPIError(msg)

    def _fetch(self, credentials: OAuthCredentials, message_id: str) -> Message:
        with self._connect(credentials) as conn:
            self._select(conn, credentials)
            _status, data = conn.uid("FETCH", message_id, "(RFC822)")

        for part in data or []:
            if isinstance(part, tuple):
                return message_from_bytes(part[1])
        msg = f"IMAP message {message_id} not found"
        raise ProviderAPIError(msg)

    def _parse_message(self, msg: Message, message_id: str) -> CandidateMessage:
        """Convert an email Message to a CandidateMessage."""
        html_body, text_body, attachments = self._extract_body_and_attachments(msg)
        return CandidateMessage(
            id=message_id,
            subject=self._decode_header_value(msg.get("Subject", "")),
            sender=self._decode_header_value(msg.get("From", "")),
            date=_parse_date(msg.get("Date")),
            text_body=text_body,
            html_body=html_body,
            attachments=attachments,
        )

    @staticmethod
    def _decode_header_value(value: str | None) -> str:
        """Decode an RFC 2047 header into text, tolerating bad charsets."""
        if not value:
            return ""
        chunks: list[str] = []
        for data, charset in decode_header(value):
            if isinstance(data, str):
                chunks.append(data)
                continue
            chunks.append(_decode_bytes(data, charset))
        return "".join(chunks)

    @staticmethod
    def _extract_body_and_attachments(
        msg: Message,
    ) -> tuple[str | None, str | None, list[AttachmentDescriptor]]:
        """Collect the first HTML and plain bodies plus every binary part.

        Leaf parts are numbered in ``Message.walk()`` order and that number is
        the attachment id handed back to ``get_attachment``.
        """
        bodies: dict[str, str] = {}
        attachments: list[AttachmentDescriptor] = []

        for index, part in enumerate(msg.walk()):
            if part.is_multipart():
                continue
            raw_payload = part.get_payload(decode=True)
            if raw_payload is None:
                continue
            payload = cast("bytes", raw_payload)
            content_type = part.get_content_type()
            filename = part.get_filename()
            is_attachment = (
                filename is not None
                or part.get_content_disposition() == "attachment"
            )

            if not is_attachment and content_type in ("text/html", "text/plain"):
                text = _decode_bytes(payload, part.get_content_charset())
                bodies.setdefault(content_type, text)
                continue
            if not is_attachment and not content_type.startswith("image/"):
                continue
            if not is_attachment:
                filename = str(part.get("Content-ID", "")).strip("<>") or "inline"
            attachments.append(
                AttachmentDescriptor(
                    id=str(index),
                    filename=filename or "unnamed",
                    content_type=content_type,
                    size=len(payload),
                )
            )

        return bodies.get("text/html"), bodies.get("text/plain"), attachments


def _parse_date(header: str | None) -> datetime | None:
    if not header:
        return None
    try:
        return parsedate_to_datetime(header)
    except (TypeError, ValueError):
        logger.debug("Unparseable Date header %r", header)
        return None


def _decode_bytes(data: bytes, charset: str | None) -> str:
    """Decode with the declared charset, or utf-8 when it is unknown."""
    try:
        return data.decode(charset or "utf-8", errors="replace")
    except LookupError:
        return data.decode("utf-8", errors="replace")
