"""Shared test fixtures."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from receipt_sync.config import GoogleOAuthConfig, SyncSettings
from receipt_sync.models import CandidateMessage, OAuthCredentials
from receipt_sync.store import MemorySyncStore


@pytest.fixture
def imap_credentials() -> OAuthCredentials:
    """Provide a credential bundle for an IMAP mailbox."""
    return OAuthCredentials(
        access_token="secret",  # pragma: allowlist secret
        token_type="password",
        extra={
            "host": "imap.example.com",
            "username": "test@example.com",
            "port": "993",
            "folder": "INBOX",
        },
    )


@pytest.fixture
def gmail_credentials() -> OAuthCredentials:
    """Provide an unexpired Gmail OAuth bundle."""
    return OAuthCredentials(
        access_token="ya29.access",  # pragma: allowlist secret
        refresh_token="1//refresh",  # pragma: allowlist secret
        expires_at=datetime.now(tz=UTC) + timedelta(hours=1),
        scopes=("https://www.googleapis.com/auth/gmail.readonly",),
    )


@pytest.fixture
def google_config() -> GoogleOAuthConfig:
    """Provide a test Google OAuth client configuration."""
    return GoogleOAuthConfig(
        client_id="client-id.apps.googleusercontent.com",
        client_secret="client-secret",  # pragma: allowlist secret
        redirect_uri="http://localhost:5000/api/email/callback/gmail",
    )


@pytest.fixture
def sync_settings() -> SyncSettings:
    """Provide small sync settings so progress writes happen in tests."""
    return SyncSettings(workers=2, progress_interval=2, max_results=50)


@pytest.fixture
def memory_store() -> MemorySyncStore:
    """Provide an empty in-memory store."""
    return MemorySyncStore()


@pytest.fixture
def sample_message() -> CandidateMessage:
    """Provide a receipt-like message with a plain-text body."""
    return CandidateMessage(
        id="msg-1",
        thread_id="thread-1",
        subject="Your Amazon.com order confirmation",
        sender="Amazon.com <auto-confirm@amazon.com>",
        date=datetime(2025, 6, 15, 10, 30, 0, tzinfo=UTC),
        text_body=(
            "Python Cookbook  $39.99\n"
            "USB Cable  $3.00\n"
            "Subtotal: $42.99\n"
            "Order Total: $42.99\n"
        ),
    )
