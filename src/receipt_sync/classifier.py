"""Rule-based receipt classification for mailbox messages."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from receipt_sync.models import CandidateMessage, ClassificationResult

SUBJECT_KEYWORDS = (
    "receipt",
    "purchase",
    "order",
    "confirmation",
    "invoice",
    "payment",
    "transaction",
)
COMMERCE_SENDERS = (
    "amazon",
    "walmart",
    "target",
    "bestbuy",
    "ebay",
    "doordash",
    "uber",
    "ubereats",
    "grubhub",
    "postmates",
    "instacart",
    "shopping",
    "store",
    "shop",
    "market",
    "pay",
    "invoice",
)
CONTENT_KEYWORDS = (
    "total",
    "subtotal",
    "tax",
    "item",
    "quantity",
    "price",
    "amount",
    "paid",
    "transaction",
    "thank you for your purchase",
)
MIN_CONTENT_MATCHES = 3
CONTENT_BASE_CONFIDENCE = 0.6
CONTENT_STEP = 0.05
CONTENT_CEILING = 0.95

NOT_A_RECEIPT = ClassificationResult(
    False, 0.2, "No indication that this is a receipt"
)


@dataclass(frozen=True)
class ClassificationRule:
    """One step of the classifier: returns a result or None to defer."""

    name: str
    evaluate: Callable[[CandidateMessage], ClassificationResult | None]


def _subject_rule(message: CandidateMessage) -> ClassificationResult | None:
    subject = message.subject.lower()
    if any(keyword in subject for keyword in SUBJECT_KEYWORDS):
        return ClassificationResult(True, 0.8, "Subject suggests receipt")
    return None


def _sender_rule(message: CandidateMessage) -> ClassificationResult | None:
    sender = message.sender.lower()
    if any(term in sender for term in COMMERCE_SENDERS):
        return ClassificationResult(True, 0.7, "Sender suggests merchant")
    return None


def _content_rule(message: CandidateMessage) -> ClassificationResult | None:
    body = message.plain_text.lower()
    matches = sum(1 for keyword in CONTENT_KEYWORDS if keyword in body)
    if matches < MIN_CONTENT_MATCHES:
        return None
    confidence = min(CONTENT_CEILING, CONTENT_BASE_CONFIDENCE + CONTENT_STEP * matches)
    return ClassificationResult(
        True, round(confidence, 4), f"Content suggests receipt ({matches} keywords)"
    )


RULES: tuple[ClassificationRule, ...] = (
    ClassificationRule("subject", _subject_rule),
    ClassificationRule("sender", _sender_rule),
    ClassificationRule("content", _content_rule),
)


def classify_message(
    message: CandidateMessage,
    rules: tuple[ClassificationRule, ...] = RULES,
) -> ClassificationResult:
    """Decide whether a message is plausibly a receipt.

    Rules run in order and the first one that fires decides, so the most
    reliable signals (subject, then sender) are checked before body text.
    """
    for rule in rules:
        result = rule.evaluate(message)
        if result is not None:
            return result
    return NOT_A_RECEIPT
