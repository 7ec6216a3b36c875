"""Provider registry: maps a provider-type tag to its adapter."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from receipt_sync.errors import UnsupportedProviderError

if TYPE_CHECKING:
    from collections.abc import Callable

    from receipt_sync.adapters.base import MailProviderAdapter
    from receipt_sync.config import SyncSettings
    from receipt_sync.models import MailProviderAccount

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Lookup from provider-type tag to adapter factory.

    Factories are called on every lookup so configuration is read lazily and
    a missing setting only matters for the provider that needs it.
    """

    def __init__(self) -> None:
        self._factories: dict[str, Callable[[], MailProviderAdapter]] = {}

    def register(
        self, provider_type: str, factory: Callable[[], MailProviderAdapter]
    ) -> None:
        """Register (or replace) the factory for ``provider_type``."""
        if provider_type in self._factories:
            logger.debug("Replacing adapter factory for %s", provider_type)
        self._factories[provider_type] = factory

    def create(self, provider_type: str) -> MailProviderAdapter:
        """Build the adapter registered for ``provider_type``."""
        factory = self._factories.get(provider_type)
        if factory is None:
            msg = f"Unsupported email provider: {provider_type}"
            raise UnsupportedProviderError(msg)
        return factory()

    def for_account(self, account: MailProviderAccount) -> MailProviderAdapter:
        """Build the adapter for a persisted account."""
        return self.create(account.provider_type)

    def provider_types(self) -> list[str]:
        return sorted(self._factories)


def build_default_registry(settings: SyncSettings | None = None) -> ProviderRegistry:
    """Registry with the built-in Gmail and IMAP adapters."""
    from receipt_sync.adapters.gmail import GmailAdapter
    from receipt_sync.adapters.imap import ImapAdapter
    from receipt_sync.config import (
        get_google_oauth_config,
        get_oauth_state_secret,
        get_sync_settings,
    )

    sync_settings = settings or get_sync_settings()

    registry = ProviderRegistry()
    registry.register(
        GmailAdapter.provider_type,
        lambda: GmailAdapter(
            get_google_oauth_config(), get_oauth_state_secret(), sync_settings
        ),
    )
    registry.register(ImapAdapter.provider_type, lambda: ImapAdapter(sync_settings))
    return registry
