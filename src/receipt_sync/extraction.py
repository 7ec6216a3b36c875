"""Structured receipt extraction from classified mailbox messages."""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from datetime import UTC, date, datetime
from decimal import Decimal, InvalidOperation
from email.utils import parseaddr

from receipt_sync.classifier import classify_message
from receipt_sync.currency import detect_currency, detect_currency_for_fields
from receipt_sync.currency.symbols import normalize_currency_code
from receipt_sync.errors import ExtractionError
from receipt_sync.markup import looks_like_html, table_rows
from receipt_sync.models import (
    AttachmentDescriptor,
    CandidateMessage,
    CurrencyGuess,
    ExtractedReceipt,
    ExtractionResult,
    LineItem,
)
from receipt_sync.vision import ImageExtractor

logger = logging.getLogger(__name__)

AttachmentLoader = Callable[[str], bytes]

RECEIPT_ATTACHMENT_MARKERS = ("pdf", "image", "jpeg", "png")
UNKNOWN_MERCHANT = "Unknown Merchant"
NOTES_LIMIT = 2000

_SYMBOL = r"(?P<symbol>[$€£¥₹₩])?"
_AMOUNT = r"(?P<amount>\d{1,3}(?:,\d{3})+\.\d{2}|\d+\.\d{2})(?!\d)"

# Tried in order; the first match is the total.
TOTAL_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(rf"(?<!sub)total\D*?{_SYMBOL}\s*{_AMOUNT}", re.IGNORECASE),
    re.compile(rf"amount\D*?{_SYMBOL}\s*{_AMOUNT}", re.IGNORECASE),
    re.compile(rf"payment\D*?{_SYMBOL}\s*{_AMOUNT}", re.IGNORECASE),
    re.compile(rf"(?P<symbol>[$€£¥₹₩])\s*{_AMOUNT}"),
)

_LINE_ITEM = re.compile(
    r"^[ \t]*(?P<name>[^\n\r$€£¥₹₩.:]+?)[ \t:]+[$€£¥₹₩]?[ \t]*"
    r"(?P<price>\d+[.,]\d{2})(?!\d)",
    re.MULTILINE,
)
_CELL_PRICE = re.compile(r"[$€£¥₹₩]?\s*(?P<price>\d+[.,]\d{2})(?!\d)")
_SUMMARY_LABEL = re.compile(
    r"\b(?:sub)?total\b|\btax\b|\bvat\b|\bshipping\b|\bdiscount\b|\bamount\b",
    re.IGNORECASE,
)
_MAIL_SUBDOMAINS = frozenset({"email", "mail", "e", "em", "info", "news", "mailer"})


class ReceiptExtractor:
    """Turn receipt-like messages into ExtractedReceipt records.

    Attachments (PDF or image) go to the vision capability when one is
    configured; otherwise, or when that yields nothing usable, the message
    body is mined with patterns. Either way the currency is decided by the
    fusion engine.
    """

    def __init__(self, image_extractor: ImageExtractor | None = None) -> None:
        self.image_extractor = image_extractor

    def process_message(
        self,
        message: CandidateMessage,
        load_attachment: AttachmentLoader,
        *,
        source_provider: str,
        account_id: int | None = None,
    ) -> ExtractionResult:
        """Classify a fetched message and extract it if it is a receipt."""
        classification = classify_message(message)
        if not classification.is_receipt:
            return ExtractionResult(
                is_receipt=False,
                confidence=classification.confidence,
                reason=classification.reason,
                message="Email does not appear to be a receipt",
            )

        try:
            receipt = self.extract(
                message,
                load_attachment,
                source_provider=source_provider,
                account_id=account_id,
                confidence=classification.confidence,
            )
        except ExtractionError as exc:
            logger.info("Could not extract receipt from %s: %s", message.id, exc)
            return ExtractionResult(
                is_receipt=False,
                confidence=0.2,
                reason="Extraction failed",
                message=str(exc),
            )

        if receipt is None:
            return ExtractionResult(
                is_receipt=False,
                confidence=0.2,
                reason="No receipt data found",
                message="Could not extract receipt data from email",
            )

        return ExtractionResult(
            is_receipt=True,
            confidence=classification.confidence,
            reason=classification.reason,
            receipt=receipt,
        )

    def extract(
        self,
        message: CandidateMessage,
        load_attachment: AttachmentLoader,
        *,
        source_provider: str,
        account_id: int | None = None,
        confidence: float = 0.0,
    ) -> ExtractedReceipt | None:
        """Extract a receipt, or None when no merchant and total can be found."""
        receipt = self._from_attachment(message, load_attachment)
        if receipt is None:
            receipt = self._from_body(message)
        if receipt is None:
            return None

        return receipt.model_copy(
            update={
                "source_id": message.id,
                "source_provider": source_provider,
                "account_id": account_id,
                "confidence": confidence,
            }
        )

    def _from_attachment(
        self, message: CandidateMessage, load_attachment: AttachmentLoader
    ) -> ExtractedReceipt | None:
        if self.image_extractor is None:
            return None
        attachment = find_receipt_attachment(message.attachments)
        if attachment is None:
            return None

        data = load_attachment(attachment.id)
        try:
            fields = self.image_extractor.extract_receipt(
                data, attachment.content_type
            )
        except ExtractionError:
            logger.warning(
                "Vision extraction failed for %s of message %s; using body",
                attachment.filename,
                message.id,
                exc_info=True,
            )
            return None

        if not fields.merchant or fields.total is None or fields.total <= 0:
            logger.info(
                "Attachment %s of message %s lacks merchant or total; using body",
                attachment.filename,
                message.id,
            )
            return None

        guess = detect_currency_for_fields(fields)
        return _build_receipt(
            merchant=fields.merchant,
            receipt_date=fields.purchase_date or _message_date(message),
            total=fields.total,
            items=fields.items,
            guess=guess,
            category=fields.category or "Others",
            source="image",
        )

    def _from_body(self, message: CandidateMessage) -> ExtractedReceipt | None:
        text = message.plain_text
        merchant = extract_merchant_name(message)
        total_match = extract_total(text)
        if not merchant or total_match is None:
            return None

        total, symbol = total_match
        if total <= 0:
            return None

        items = extract_line_items(message)
        prior = None
        if symbol:
            prior = CurrencyGuess(
                normalize_currency_code(symbol),
                0.0,
                f"Currency symbol '{symbol}' printed next to the total",
            )
        guess = detect_currency(
            prices=[item.price_text for item in items],
            # str keeps the printed decimals ("1200.00" is not a yen total)
            total=str(total),
            merchant=merchant,
            notes=f"{message.subject}\n{text[:NOTES_LIMIT]}",
            prior=prior,
        )
        return _build_receipt(
            merchant=merchant,
            receipt_date=_message_date(message),
            total=total,
            items=items,
            guess=guess,
            category="Others",
            source="email",
        )


def find_receipt_attachment(
    attachments: list[AttachmentDescriptor],
) -> AttachmentDescriptor | None:
    """Return the first attachment that can hold a receipt (PDF or image)."""
    for attachment in attachments:
        content_type = attachment.content_type.lower()
        if any(marker in content_type for marker in RECEIPT_ATTACHMENT_MARKERS):
            return attachment
    return None


def extract_merchant_name(message: CandidateMessage) -> str:
    """Merchant from sender display name, sender domain, or subject prefix."""
    name, address = parseaddr(message.sender)
    name = name.strip().strip('"').strip()
    if name:
        return name

    if "@" in address:
        labels = [label for label in address.split("@", 1)[1].split(".") if label]
        while len(labels) > 2 and labels[0].lower() in _MAIL_SUBDOMAINS:
            labels.pop(0)
        if labels:
            return labels[0].capitalize()

    parts = re.split(r"[:-]", message.subject)
    if len(parts) > 1 and parts[0].strip():
        return parts[0].strip()

    return UNKNOWN_MERCHANT


def extract_total(text: str) -> tuple[Decimal, str | None] | None:
    """Find the receipt total and the currency symbol printed with it."""
    for pattern in TOTAL_PATTERNS:
        match = pattern.search(text)
        if match is None:
            continue
        amount = _parse_amount(match.group("amount"))
        if amount is not None:
            return amount, match.group("symbol")
    return None


def extract_line_items(message: CandidateMessage) -> list[LineItem]:
    """Line items from HTML table rows, or ``name  price`` lines in text."""
    html = message.html_body
    if html and looks_like_html(html):
        items = _items_from_tables(html)
        if items:
            return items
    return _items_from_text(message.plain_text)


def _items_from_tables(html: str) -> list[LineItem]:
    items: list[LineItem] = []
    for cells in table_rows(html):
        if len(cells) < 2:
            continue
        name = cells[0].strip()
        match = _CELL_PRICE.search(cells[-1])
        if not name or match is None or _is_summary_label(name):
            continue
        item = _line_item(name, match.group("price"))
        if item is not None:
            items.append(item)
    return items


def _items_from_text(text: str) -> list[LineItem]:
    items: list[LineItem] = []
    for match in _LINE_ITEM.finditer(text):
        name = match.group("name").strip()
        if not name or _is_summary_label(name):
            continue
        item = _line_item(name, match.group("price"))
        if item is not None:
            items.append(item)
    return items


def _line_item(name: str, raw_price: str) -> LineItem | None:
    price = _parse_amount(raw_price.replace(",", "."))
    if price is None:
        return None
    return LineItem(name=name, price=price, raw_price=raw_price)


def _is_summary_label(name: str) -> bool:
    return _SUMMARY_LABEL.search(name) is not None


def _parse_amount(text: str) -> Decimal | None:
    try:
        return Decimal(text.replace(",", ""))
    except InvalidOperation:
        return None


def _message_date(message: CandidateMessage) -> date:
    if message.date is not None:
        return message.date.date()
    return datetime.now(tz=UTC).date()


def _build_receipt(
    *,
    merchant: str,
    receipt_date: date,
    total: Decimal,
    items: list[LineItem],
    guess: CurrencyGuess,
    category: str,
    source: str,
) -> ExtractedReceipt:
    return ExtractedReceipt(
        merchant=merchant,
        date=receipt_date,
        total=total,
        currency=guess.code,
        currency_confidence=guess.confidence,
        currency_evidence=guess.evidence,
        items=items,
        category=category,
        source=source,  # type: ignore[arg-type]
        # Provenance is filled in by ReceiptExtractor.extract.
        source_id="",
        source_provider="",
    )
