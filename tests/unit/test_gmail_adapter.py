"""Tests for receipt_sync.adapters.gmail."""

from __future__ import annotations

import base64
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from google.auth.exceptions import RefreshError
from google.oauth2.credentials import Credentials
from googleapiclient.errors import HttpError

from receipt_sync.adapters.base import MailProviderAdapter
from receipt_sync.adapters.gmail import GmailAdapter
from receipt_sync.adapters.state import decode_state
from receipt_sync.config import GoogleOAuthConfig, SyncSettings
from receipt_sync.errors import AuthenticationError, ProviderAPIError
from receipt_sync.models import OAuthCredentials

STATE_SECRET = "state-secret"  # pragma: allowlist secret


def _b64(text: str | bytes) -> str:
    data = text.encode() if isinstance(text, str) else text
    return base64.urlsafe_b64encode(data).decode().rstrip("=")


def _http_error(status: int) -> HttpError:
    return HttpError(MagicMock(status=status, reason="error"), b"")


def _messages_api(mock_build: MagicMock) -> MagicMock:
    return mock_build.return_value.users.return_value.messages.return_value


@pytest.fixture
def adapter(google_config: GoogleOAuthConfig) -> GmailAdapter:
    """Provide a Gmail adapter with a small result cap."""
    return GmailAdapter(google_config, STATE_SECRET, SyncSettings(max_results=3))


class TestProtocol:
    """GmailAdapter satisfies the adapter protocol."""

    def test_is_mail_provider_adapter(self, adapter: GmailAdapter) -> None:
        assert isinstance(adapter, MailProviderAdapter)
        assert adapter.provider_type == "gmail"


class TestGetAuthUrl:
    """Tests for get_auth_url()."""

    @patch("receipt_sync.adapters.gmail.Flow")
    def test_requests_offline_consent_with_signed_state(
        self, mock_flow: MagicMock, adapter: GmailAdapter
    ) -> None:
        flow = mock_flow.from_client_config.return_value
        flow.authorization_url.return_value = ("https://accounts.example/auth", "s")

        url = adapter.get_auth_url(42)

        assert url == "https://accounts.example/auth"
        kwargs = flow.authorization_url.call_args.kwargs
        assert kwargs["access_type"] == "offline"
        assert kwargs["prompt"] == "consent"
        assert decode_state(kwargs["state"], STATE_SECRET) == 42

    @patch("receipt_sync.adapters.gmail.Flow")
    def test_flow_uses_client_config(
        self, mock_flow: MagicMock, adapter: GmailAdapter
    ) -> None:
        flow = mock_flow.from_client_config.return_value
        flow.authorization_url.return_value = ("u", "s")

        adapter.get_auth_url(1)

        client_config = mock_flow.from_client_config.call_args.args[0]
        assert client_config["web"]["client_id"] == (
            "client-id.apps.googleusercontent.com"
        )
        kwargs = mock_flow.from_client_config.call_args.kwargs
        assert kwargs["scopes"] == [
            "https://www.googleapis.com/auth/gmail.readonly"
        ]
        assert kwargs["redirect_uri"].endswith("/api/email/callback/gmail")


class TestHandleCallback:
    """Tests for handle_callback()."""

    @patch("receipt_sync.adapters.gmail.build")
    @patch("receipt_sync.adapters.gmail.Flow")
    def test_exchanges_code_and_reads_profile(
        self, mock_flow: MagicMock, mock_build: MagicMock, adapter: GmailAdapter
    ) -> None:
        flow = mock_flow.from_client_config.return_value
        flow.credentials = MagicMock(
            token="access",
            refresh_token="refresh",  # pragma: allowlist secret
            expiry=datetime(2030, 1, 1, 12, 0),
            scopes=["https://www.googleapis.com/auth/gmail.readonly"],
        )
        profile = mock_build.return_value.users.return_value.getProfile.return_value
        profile.execute.return_value = {"emailAddress": "me@gmail.com"}

        credentials, email_address = adapter.handle_callback("auth-code")

        flow.fetch_token.assert_called_once_with(code="auth-code")
        assert email_address == "me@gmail.com"
        assert credentials.access_token == "access"
        assert credentials.refresh_token == "refresh"  # pragma: allowlist secret
        assert credentials.expires_at == datetime(2030, 1, 1, 12, 0, tzinfo=UTC)

    @patch("receipt_sync.adapters.gmail.Flow")
    def test_bad_code_is_authentication_error(
        self, mock_flow: MagicMock, adapter: GmailAdapter
    ) -> None:
        flow = mock_flow.from_client_config.return_value
        flow.fetch_token.side_effect = ValueError("invalid_grant")

        with pytest.raises(AuthenticationError, match="invalid_grant"):
            adapter.handle_callback("bad")


class TestVerifyTokens:
    """Tests for verify_tokens()."""

    def test_unexpired_returned_unchanged(
        self, adapter: GmailAdapter, gmail_credentials: OAuthCredentials
    ) -> None:
        assert adapter.verify_tokens(gmail_credentials) is gmail_credentials

    def test_no_expiry_treated_as_valid(self, adapter: GmailAdapter) -> None:
        credentials = OAuthCredentials(access_token="a")
        assert adapter.verify_tokens(credentials) is credentials

    def test_expired_without_refresh_token(self, adapter: GmailAdapter) -> None:
        credentials = OAuthCredentials(
            access_token="a", expires_at=datetime.now(tz=UTC) - timedelta(minutes=5)
        )
        with pytest.raises(AuthenticationError, match="no refresh token"):
            adapter.verify_tokens(credentials)

    def test_expired_is_refreshed(
        self, adapter: GmailAdapter, gmail_credentials: OAuthCredentials
    ) -> None:
        expired = gmail_credentials.model_copy(
            update={"expires_at": datetime.now(tz=UTC) - timedelta(minutes=5)}
        )

        def fake_refresh(creds: Credentials, _request: Any) -> None:
            creds.token = "new-access"
            creds.expiry = datetime(2030, 1, 1)

        with patch.object(
            Credentials, "refresh", autospec=True, side_effect=fake_refresh
        ):
            refreshed = adapter.verify_tokens(expired)

        assert refreshed.access_token == "new-access"
        assert refreshed.refresh_token == gmail_credentials.refresh_token
        assert refreshed.expires_at == datetime(2030, 1, 1, tzinfo=UTC)

    def test_refresh_failure_is_authentication_error(
        self, adapter: GmailAdapter, gmail_credentials: OAuthCredentials
    ) -> None:
        expired = gmail_credentials.model_copy(
            update={"expires_at": datetime.now(tz=UTC) - timedelta(minutes=5)}
        )
        with (
            patch.object(
                Credentials,
                "refresh",
                autospec=True,
                side_effect=RefreshError("invalid_grant"),
            ),
            pytest.raises(AuthenticationError, match="refresh"),
        ):
            adapter.verify_tokens(expired)


class TestSearchEmails:
    """Tests for search_emails()."""

    @patch("receipt_sync.adapters.gmail.build")
    def test_paginates_up_to_max_results(
        self,
        mock_build: MagicMock,
        adapter: GmailAdapter,
        gmail_credentials: OAuthCredentials,
    ) -> None:
        messages = _messages_api(mock_build)
        first_page = {
            "messages": [{"id": "a", "threadId": "t1"}, {"id": "b"}],
            "nextPageToken": "p2",
        }
        second_page = {"messages": [{"id": "c"}, {"id": "d"}], "nextPageToken": "p3"}
        messages.list.return_value.execute.side_effect = [first_page, second_page]

        results = adapter.search_emails(gmail_credentials)

        assert [m.id for m in results] == ["a", "b", "c"]
        assert results[0].thread_id == "t1"
        second = messages.list.call_args_list[-1].kwargs
        assert second["pageToken"] == "p2"
        assert second["maxResults"] == 1

    @patch("receipt_sync.adapters.gmail.build")
    def test_stops_without_next_page(
        self,
        mock_build: MagicMock,
        adapter: GmailAdapter,
        gmail_credentials: OAuthCredentials,
    ) -> None:
        messages = _messages_api(mock_build)
        messages.list.return_value.execute.return_value = {"messages": [{"id": "a"}]}

        results = adapter.search_emails(gmail_credentials, "from:shop")

        assert [m.id for m in results] == ["a"]
        assert messages.list.call_args.kwargs["q"] == "from:shop"

    @patch("receipt_sync.adapters.gmail.build")
    def test_rejected_credentials(
        self,
        mock_build: MagicMock,
        adapter: GmailAdapter,
        gmail_credentials: OAuthCredentials,
    ) -> None:
        messages = _messages_api(mock_build)
        messages.list.return_value.execute.side_effect = _http_error(401)

        with pytest.raises(AuthenticationError):
            adapter.search_emails(gmail_credentials)

    @patch("receipt_sync.adapters.gmail.build")
    def test_server_error(
        self,
        mock_build: MagicMock,
        adapter: GmailAdapter,
        gmail_credentials: OAuthCredentials,
    ) -> None:
        messages = _messages_api(mock_build)
        messages.list.return_value.execute.side_effect = _http_error(500)

        with pytest.raises(ProviderAPIError, match="status 500"):
            adapter.search_emails(gmail_credentials)

    def test_default_query(self, google_config: GoogleOAuthConfig) -> None:
        adapter = GmailAdapter(google_config, STATE_SECRET, SyncSettings())
        query = adapter.default_query()
        assert query.startswith("(subject:(receipt OR ")
        assert "from:(amazon OR " in query
        assert query.endswith("newer_than:30d")


class TestGetMessage:
    """Tests for get_message() and get_attachment()."""

    @patch("receipt_sync.adapters.gmail.build")
    def test_decodes_nested_parts(
        self,
        mock_build: MagicMock,
        adapter: GmailAdapter,
        gmail_credentials: OAuthCredentials,
    ) -> None:
        resource = {
            "id": "m1",
            "threadId": "t1",
            "payload": {
                "mimeType": "multipart/mixed",
                "headers": [
                    {"name": "Subject", "value": "Your receipt"},
                    {"name": "From", "value": "Shop <orders@shop.example>"},
                    {"name": "Date", "value": "Sun, 15 Jun 2025 10:30:00 +0000"},
                ],
                "parts": [
                    {
                        "mimeType": "multipart/alternative",
                        "parts": [
                            {
                                "mimeType": "text/plain",
                                "body": {"data": _b64("Total: $5.00")},
                            },
                            {
                                "mimeType": "text/html",
                                "body": {"data": _b64("<p>Total: $5.00</p>")},
                            },
                        ],
                    },
                    {
                        "mimeType": "application/pdf",
                        "filename": "receipt.pdf",
                        "body": {"attachmentId": "att-1", "size": 1234},
                    },
                ],
            },
        }
        _messages_api(mock_build).get.return_value.execute.return_value = resource

        message = adapter.get_message(gmail_credentials, "m1")

        assert message.subject == "Your receipt"
        assert message.sender == "Shop <orders@shop.example>"
        assert message.date == datetime(2025, 6, 15, 10, 30, tzinfo=UTC)
        assert message.text_body == "Total: $5.00"
        assert message.html_body == "<p>Total: $5.00</p>"
        [attachment] = message.attachments
        assert attachment.id == "att-1"
        assert attachment.content_type == "application/pdf"
        assert attachment.size == 1234

    @patch("receipt_sync.adapters.gmail.build")
    def test_falls_back_to_internal_date(
        self,
        mock_build: MagicMock,
        adapter: GmailAdapter,
        gmail_credentials: OAuthCredentials,
    ) -> None:
        _messages_api(mock_build).get.return_value.execute.return_value = {
            "id": "m2",
            "internalDate": "1750000000000",
            "payload": {"mimeType": "text/plain", "body": {"data": _b64("hi")}},
        }

        message = adapter.get_message(gmail_credentials, "m2")

        assert message.date == datetime.fromtimestamp(1750000000, tz=UTC)
        assert message.text_body == "hi"

    @patch("receipt_sync.adapters.gmail.build")
    def test_get_attachment_decodes(
        self,
        mock_build: MagicMock,
        adapter: GmailAdapter,
        gmail_credentials: OAuthCredentials,
    ) -> None:
        attachments = _messages_api(mock_build).attachments.return_value
        attachments.get.return_value.execute.return_value = {
            "data": _b64(b"%PDF-1.4")
        }

        assert adapter.get_attachment(gmail_credentials, "m1", "att-1") == b"%PDF-1.4"

    @patch("receipt_sync.adapters.gmail.build")
    def test_get_attachment_without_data(
        self,
        mock_build: MagicMock,
        adapter: GmailAdapter,
        gmail_credentials: OAuthCredentials,
    ) -> None:
        attachments = _messages_api(mock_build).attachments.return_value
        attachments.get.return_value.execute.return_value = {}

        with pytest.raises(ProviderAPIError, match="no data"):
            adapter.get_attachment(gmail_credentials, "m1", "att-1")
