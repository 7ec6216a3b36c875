"""Gmail source adapter."""

from __future__ import annotations

import base64
import logging
import re
from datetime import UTC, datetime, timedelta
from email.utils import parsedate_to_datetime
from typing import TYPE_CHECKING, Any

from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from receipt_sync.adapters.base import RECEIPT_SENDER_TERMS, RECEIPT_SUBJECT_TERMS
from receipt_sync.adapters.state import encode_state
from receipt_sync.config import SyncSettings
from receipt_sync.errors import AuthenticationError, ProviderAPIError
from receipt_sync.models import AttachmentDescriptor, CandidateMessage, OAuthCredentials

if TYPE_CHECKING:
    from receipt_sync.config import GoogleOAuthConfig

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/gmail.readonly"]
AUTH_URI = "https://accounts.google.com/o/oauth2/auth"
TOKEN_URI = "https://oauth2.googleapis.com/token"  # noqa: S105
# Refresh slightly early so a token does not expire mid-request.
EXPIRY_SKEW = timedelta(seconds=60)
_PAGE_SIZE_LIMIT = 500
_CHARSET = re.compile(r'charset="?([\w.:-]+)"?', re.IGNORECASE)


class GmailAdapter:
    """Access a Gmail mailbox through the Gmail REST API."""

    provider_type = "gmail"

    def __init__(
        self,
        config: GoogleOAuthConfig,
        state_secret: str,
        settings: SyncSettings | None = None,
    ) -> None:
        self.config = config
        self.state_secret = state_secret
        self.settings = settings or SyncSettings()

    def get_auth_url(self, user_id: int) -> str:
        """Build the consent-screen URL with a signed state for ``user_id``."""
        flow = self._flow()
        url, _state = flow.authorization_url(
            access_type="offline",
            # Always show consent so Google issues a refresh token.
            prompt="consent",
            state=encode_state(user_id, self.state_secret),
        )
        return str(url)

    def handle_callback(self, code: str) -> tuple[OAuthCredentials, str]:
        """Exchange an authorization code and resolve the mailbox address."""
        flow = self._flow()
        try:
            flow.fetch_token(code=code)
        except Exception as exc:
            msg = f"Failed to exchange Gmail authorization code: {exc}"
            raise AuthenticationError(msg) from exc

        credentials = _bundle_from_google(flow.credentials)
        service = self._service(credentials)
        profile = _execute(service.users().getProfile(userId="me"), "get profile")
        return credentials, str(profile.get("emailAddress", ""))

    def verify_tokens(self, credentials: OAuthCredentials) -> OAuthCredentials:
        """Return ``credentials`` unchanged if valid, else a refreshed bundle."""
        if not _is_expired(credentials):
            return credentials

        if not credentials.refresh_token:
            msg = "Gmail access token expired and no refresh token is available"
            raise AuthenticationError(msg)

        google_creds = self._google_credentials(credentials)
        try:
            google_creds.refresh(Request())
        except RefreshError as exc:
            msg = f"Failed to refresh Gmail access token: {exc}"
            raise AuthenticationError(msg) from exc

        logger.info("Refreshed Gmail access token")
        refreshed = _bundle_from_google(google_creds)
        if refreshed.refresh_token is None:
            refreshed = refreshed.model_copy(
                update={"refresh_token": credentials.refresh_token}
            )
        return refreshed

    def search_emails(
        self, credentials: OAuthCredentials, query: str | None = None
    ) -> list[CandidateMessage]:
        """List message summaries matching ``query`` (or the receipt query)."""
        service = self._service(credentials)
        search_query = query or self.default_query()
        limit = self.settings.max_results

        messages: list[CandidateMessage] = []
        page_token: str | None = None
        while len(messages) < limit:
            request = service.users().messages().list(
                userId="me",
                q=search_query,
                maxResults=min(_PAGE_SIZE_LIMIT, limit - len(messages)),
                pageToken=page_token,
            )
            response = _execute(request, "search messages")
            for item in response.get("messages", []):
                messages.append(
                    CandidateMessage(id=item["id"], thread_id=item.get("threadId"))
                )
            page_token = response.get("nextPageToken")
            if not page_token:
                break

        logger.debug("Gmail search matched %d messages", len(messages))
        return messages[:limit]

    def default_query(self) -> str:
        """Receipt-biased Gmail query bounded to the lookback window."""
        subjects = " OR ".join(RECEIPT_SUBJECT_TERMS)
        senders = " OR ".join(RECEIPT_SENDER_TERMS)
        return (
            f"(subject:({subjects}) OR from:({senders})) "
            f"newer_than:{self.settings.lookback_days}d"
        )

    def get_message(
        self, credentials: OAuthCredentials, message_id: str
    ) -> CandidateMessage:
        """Fetch a full message and decode its MIME tree."""
        service = self._service(credentials)
        request = service.users().messages().get(
            userId="me", id=message_id, format="full"
        )
        resource = _execute(request, f"get message {message_id}")
        return _parse_message(resource)

    def get_attachment(
        self, credentials: OAuthCredentials, message_id: str, attachment_id: str
    ) -> bytes:
        """Download and decode one attachment."""
        service = self._service(credentials)
        request = (
            service.users()
            .messages()
            .attachments()
            .get(userId="me", messageId=message_id, id=attachment_id)
        )
        resource = _execute(request, f"get attachment {attachment_id}")
        data = resource.get("data")
        if not data:
            msg = f"Attachment {attachment_id} of message {message_id} has no data"
            raise ProviderAPIError(msg)
        return _b64decode(data)

    def _flow(self) -> Flow:
        client_config = {
            "web": {
                "client_id": self.config.client_id,
                "client_secret": self.config.client_secret,
                "auth_uri": AUTH_URI,
                "token_uri": TOKEN_URI,
                "redirect_uris": [self.config.redirect_uri],
            }
        }
        # The callback builds a fresh Flow, so no PKCE verifier can be carried
        # over from get_auth_url.
        return Flow.from_client_config(
            client_config,
            scopes=SCOPES,
            redirect_uri=self.config.redirect_uri,
            autogenerate_code_verifier=False,
        )

    def _google_credentials(self, credentials: OAuthCredentials) -> Credentials:
        expiry = credentials.expires_at
        if expiry is not None:
            # google-auth compares against naive UTC datetimes.
            expiry = expiry.astimezone(UTC).replace(tzinfo=None)
        return Credentials(
            token=credentials.access_token,
            refresh_token=credentials.refresh_token,
            token_uri=TOKEN_URI,
            client_id=self.config.client_id,
            client_secret=self.config.client_secret,
            scopes=list(credentials.scopes) or SCOPES,
            expiry=expiry,
        )

    def _service(self, credentials: OAuthCredentials) -> Any:
        return build(
            "gmail",
            "v1",
            credentials=self._google_credentials(credentials),
            cache_discovery=False,
        )


def _execute(request: Any, action: str) -> dict[str, Any]:
    """Run a Gmail API request, translating failures into typed errors."""
    try:
        return request.execute()  # type: ignore[no-any-return]
    except HttpError as exc:
        status = getattr(exc.resp, "status", None)
        if status == 401:
            msg = f"Gmail rejected credentials during {action}"
            raise AuthenticationError(msg) from exc
        msg = f"Gmail API error during {action} (status {status})"
        raise ProviderAPIError(msg) from exc
    except RefreshError as exc:
        msg = f"Gmail credentials could not be refreshed during {action}"
        raise AuthenticationError(msg) from exc
    except OSError as exc:
        msg = f"Network error during Gmail {action}: {exc}"
        raise ProviderAPIError(msg) from exc


def _is_expired(credentials: OAuthCredentials) -> bool:
    if credentials.expires_at is None:
        return False
    return credentials.expires_at <= datetime.now(tz=UTC) + EXPIRY_SKEW


def _bundle_from_google(creds: Credentials) -> OAuthCredentials:
    expiry = creds.expiry
    if expiry is not None and expiry.tzinfo is None:
        expiry = expiry.replace(tzinfo=UTC)
    return OAuthCredentials(
        access_token=creds.token or "",
        refresh_token=creds.refresh_token,
        expires_at=expiry,
        scopes=tuple(creds.scopes or SCOPES),
    )


def _parse_message(resource: dict[str, Any]) -> CandidateMessage:
    """Convert a Gmail ``format=full`` message resource to a CandidateMessage."""
    payload = resource.get("payload", {})
    headers = _headers(payload)

    message = CandidateMessage(
        id=resource["id"],
        thread_id=resource.get("threadId"),
        subject=headers.get("subject", ""),
        sender=headers.get("from", ""),
        date=_message_date(headers.get("date"), resource.get("internalDate")),
    )
    _walk_parts(payload, message)
    return message


def _walk_parts(part: dict[str, Any], message: CandidateMessage) -> None:
    """Recursively collect body text and attachment descriptors."""
    mime_type = str(part.get("mimeType", "")).lower()
    body = part.get("body", {})
    filename = part.get("filename") or ""

    if body.get("attachmentId"):
        message.attachments.append(
            AttachmentDescriptor(
                id=body["attachmentId"],
                filename=filename or "unnamed",
                content_type=mime_type,
                size=int(body.get("size", 0)),
            )
        )
    elif not filename and body.get("data"):
        if mime_type == "text/plain" and message.text_body is None:
            message.text_body = _decode_text(body["data"], _headers(part))
        elif mime_type == "text/html" and message.html_body is None:
            message.html_body = _decode_text(body["data"], _headers(part))

    for subpart in part.get("parts", []) or []:
        _walk_parts(subpart, message)


def _headers(part: dict[str, Any]) -> dict[str, str]:
    return {
        str(h.get("name", "")).lower(): str(h.get("value", ""))
        for h in part.get("headers", []) or []
    }


def _decode_text(data: str, headers: dict[str, str]) -> str:
    match = _CHARSET.search(headers.get("content-type", ""))
    charset = match.group(1) if match else "utf-8"
    raw = _b64decode(data)
    try:
        return raw.decode(charset, errors="replace")
    except LookupError:
        return raw.decode("utf-8", errors="replace")


def _message_date(header: str | None, internal_date: str | None) -> datetime | None:
    if header:
        try:
            return parsedate_to_datetime(header)
        except (TypeError, ValueError):
            logger.debug("Unparseable Date header %r", header)
    if internal_date:
        return datetime.fromtimestamp(int(internal_date) / 1000, tz=UTC)
    return None


def _b64decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)
