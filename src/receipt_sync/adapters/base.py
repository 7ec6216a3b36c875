"""Mail provider adapter protocol."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from receipt_sync.models import CandidateMessage, OAuthCredentials

RECEIPT_SUBJECT_TERMS = (
    "receipt",
    "order",
    "purchase",
    "invoice",
    "confirmation",
    "payment",
    "transaction",
)
RECEIPT_SENDER_TERMS = (
    "amazon",
    "walmart",
    "target",
    "bestbuy",
    "ebay",
    "doordash",
    "uber",
)


@runtime_checkable
class MailProviderAdapter(Protocol):
    """Protocol for mailbox access, one implementation per provider type.

    Adapters raise ``AuthenticationError`` or ``ProviderAPIError`` and never
    swallow failures; isolating them is the caller's job.
    """

    provider_type: str

    def get_auth_url(self, user_id: int) -> str: ...

    def handle_callback(self, code: str) -> tuple[OAuthCredentials, str]: ...

    def verify_tokens(self, credentials: OAuthCredentials) -> OAuthCredentials: ...

    def search_emails(
        self, credentials: OAuthCredentials, query: str | None = None
    ) -> list[CandidateMessage]: ...

    def get_message(
        self, credentials: OAuthCredentials, message_id: str
    ) -> CandidateMessage: ...

    def get_attachment(
        self, credentials: OAuthCredentials, message_id: str, attachment_id: str
    ) -> bytes: ...
