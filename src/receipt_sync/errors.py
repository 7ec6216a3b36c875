"""Exception hierarchy for receipt sync."""

from __future__ import annotations


class ReceiptSyncError(Exception):
    """Base class for all receipt-sync errors."""


class AuthenticationError(ReceiptSyncError):
    """Credentials are missing, invalid, expired or cannot be refreshed."""


class ProviderAPIError(ReceiptSyncError):
    """A mail provider call failed (network, rate limit, bad response)."""


class UnsupportedProviderError(ReceiptSyncError):
    """No adapter is registered for a provider type."""


class AccountNotFoundError(ReceiptSyncError):
    """The requested mail account does not exist."""


class SyncAlreadyActiveError(ReceiptSyncError):
    """A pending or processing sync job already exists for the account."""


class ExtractionError(ReceiptSyncError):
    """Receipt content could not be turned into structured data."""
