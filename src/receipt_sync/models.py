"""Domain models for mailbox sync and receipt extraction."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from receipt_sync.markup import strip_html_tags

BASELINE_CURRENCY = "USD"


@dataclass(frozen=True)
class CurrencyGuess:
    """A currency decision with its confidence and the evidence behind it."""

    code: str
    confidence: float
    evidence: str


@dataclass
class AttachmentDescriptor:
    """Reference to an attachment that can be downloaded from the provider."""

    id: str
    filename: str
    content_type: str
    size: int = 0


@dataclass
class CandidateMessage:
    """A mailbox message that may contain a receipt.

    Search results only populate ``id`` (and ``thread_id`` where the
    provider has one); ``get_message`` fills in the rest.
    """

    id: str
    thread_id: str | None = None
    subject: str = ""
    sender: str = ""
    date: datetime | None = None
    text_body: str | None = None
    html_body: str | None = None
    attachments: list[AttachmentDescriptor] = field(default_factory=list)

    @property
    def plain_text(self) -> str:
        """Body as plain text, preferring the text part over stripped HTML."""
        if self.text_body:
            return self.text_body
        if self.html_body:
            return strip_html_tags(self.html_body)
        return ""


@dataclass(frozen=True)
class ClassificationResult:
    """Outcome of the receipt classifier for one message."""

    is_receipt: bool
    confidence: float
    reason: str


class SyncStatus(StrEnum):
    """Lifecycle states of a sync job."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_active(self) -> bool:
        return self in (SyncStatus.PENDING, SyncStatus.PROCESSING)


class OAuthCredentials(BaseModel):
    """Credential bundle for a linked mailbox."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    token_type: str = "Bearer"
    scopes: tuple[str, ...] = ()
    extra: dict[str, str] = Field(default_factory=dict)


class MailProviderAccount(BaseModel):
    """A linked mailbox owned by a user."""

    id: int
    user_id: int
    provider_type: str
    email_address: str
    credentials: OAuthCredentials
    last_sync_at: datetime | None = None
    created_at: datetime


class SyncJob(BaseModel):
    """One sync run for one account."""

    id: int
    account_id: int
    status: SyncStatus = SyncStatus.PENDING
    messages_found: int = Field(default=0, ge=0)
    messages_processed: int = Field(default=0, ge=0)
    receipts_found: int = Field(default=0, ge=0)
    error_message: str | None = None
    started_at: datetime
    completed_at: datetime | None = None

    @model_validator(mode="after")
    def _processed_within_found(self) -> SyncJob:
        if self.messages_processed > self.messages_found:
            msg = (
                f"messages_processed ({self.messages_processed}) exceeds "
                f"messages_found ({self.messages_found})"
            )
            raise ValueError(msg)
        return self


class LineItem(BaseModel):
    """A single purchased item."""

    name: str
    price: Decimal
    quantity: int = Field(default=1, ge=1)
    raw_price: str | None = None

    @property
    def price_text(self) -> str:
        """The price as written, or a plain rendering of the numeric value."""
        if self.raw_price:
            return self.raw_price
        return format_amount(self.price)


class ImageExtraction(BaseModel):
    """Structured receipt data returned by the vision extractor."""

    merchant: str | None = None
    purchase_date: date | None = None
    total: Decimal | None = None
    items: list[LineItem] = Field(default_factory=list)
    currency: str | None = None
    currency_evidence: str | None = None
    category: str | None = None
    notes: str | None = None


class ExtractedReceipt(BaseModel):
    """A structured receipt ready for persistence."""

    merchant: str = Field(min_length=1)
    date: date
    total: Decimal = Field(ge=0)
    currency: str = Field(default=BASELINE_CURRENCY, pattern=r"^[A-Z]{3}$")
    currency_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    currency_evidence: str = ""
    items: list[LineItem] = Field(default_factory=list)
    category: str = "Others"
    source: Literal["email", "image"] = "email"
    source_id: str
    source_provider: str
    account_id: int | None = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


@dataclass
class ExtractionResult:
    """Outcome of classifying and extracting a single message."""

    is_receipt: bool
    confidence: float
    reason: str
    receipt: ExtractedReceipt | None = None
    message: str = ""


def format_amount(value: Decimal | float | int | str) -> str:
    """Render a numeric amount the way it would be written on a receipt.

    Integral values drop the fractional part ("1200", not "1200.0").
    """
    if isinstance(value, str):
        return value
    number = Decimal(str(value))
    if number == number.to_integral_value():
        return str(number.quantize(Decimal(1)))
    return str(number)
