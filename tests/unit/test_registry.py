"""Tests for receipt_sync.registry."""

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import MagicMock

import pytest

from receipt_sync.adapters.gmail import GmailAdapter
from receipt_sync.adapters.imap import ImapAdapter
from receipt_sync.config import SyncSettings
from receipt_sync.errors import UnsupportedProviderError
from receipt_sync.models import MailProviderAccount, OAuthCredentials
from receipt_sync.registry import ProviderRegistry, build_default_registry


class TestProviderRegistry:
    """Tests for ProviderRegistry."""

    def test_create_calls_factory_each_time(self) -> None:
        factory = MagicMock(side_effect=[object(), object()])
        registry = ProviderRegistry()
        registry.register("fake", factory)

        first = registry.create("fake")
        second = registry.create("fake")

        assert first is not second
        assert factory.call_count == 2

    def test_unknown_provider(self) -> None:
        with pytest.raises(UnsupportedProviderError, match="outlook"):
            ProviderRegistry().create("outlook")

    def test_register_replaces(self) -> None:
        registry = ProviderRegistry()
        old, new = MagicMock(), MagicMock()
        registry.register("fake", lambda: old)
        registry.register("fake", lambda: new)
        assert registry.create("fake") is new

    def test_for_account(self) -> None:
        adapter = MagicMock()
        registry = ProviderRegistry()
        registry.register("fake", lambda: adapter)
        account = MailProviderAccount(
            id=1,
            user_id=1,
            provider_type="fake",
            email_address="me@example.com",
            credentials=OAuthCredentials(access_token="t"),
            created_at=datetime(2025, 1, 1, tzinfo=UTC),
        )
        assert registry.for_account(account) is adapter


class TestBuildDefaultRegistry:
    """Tests for build_default_registry()."""

    def test_builtin_providers(self, sync_settings: SyncSettings) -> None:
        registry = build_default_registry(sync_settings)
        assert registry.provider_types() == ["gmail", "imap"]
        assert isinstance(registry.create("imap"), ImapAdapter)

    def test_gmail_reads_configuration_lazily(
        self, monkeypatch: pytest.MonkeyPatch, sync_settings: SyncSettings
    ) -> None:
        monkeypatch.delenv("GOOGLE_CLIENT_ID", raising=False)
        monkeypatch.delenv("GOOGLE_CLIENT_SECRET", raising=False)
        registry = build_default_registry(sync_settings)

        with pytest.raises(ValueError, match="GOOGLE_CLIENT_ID"):
            registry.create("gmail")

        monkeypatch.setenv("GOOGLE_CLIENT_ID", "id")
        monkeypatch.setenv("GOOGLE_CLIENT_SECRET", "secret")  # pragma: allowlist secret
        monkeypatch.setenv("OAUTH_STATE_SECRET", "state")  # pragma: allowlist secret
        assert isinstance(registry.create("gmail"), GmailAdapter)
