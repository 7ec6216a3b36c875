"""Tests for receipt_sync.classifier."""

from __future__ import annotations

from receipt_sync.classifier import (
    NOT_A_RECEIPT,
    RULES,
    ClassificationRule,
    classify_message,
)
from receipt_sync.models import CandidateMessage, ClassificationResult


def _message(
    subject: str = "Lunch on Friday?",
    sender: str = "Alice <alice@example.com>",
    text: str | None = "See you then",
    html: str | None = None,
) -> CandidateMessage:
    return CandidateMessage(
        id="m1", subject=subject, sender=sender, text_body=text, html_body=html
    )


class TestClassifyMessage:
    """Tests for classify_message()."""

    def test_subject_keyword(self) -> None:
        result = classify_message(_message(subject="Your ORDER has shipped"))
        assert result == ClassificationResult(True, 0.8, "Subject suggests receipt")

    def test_subject_beats_sender(self) -> None:
        result = classify_message(
            _message(subject="Payment received", sender="billing@shop.example")
        )
        assert result.confidence == 0.8

    def test_commerce_sender(self) -> None:
        result = classify_message(
            _message(subject="Thanks for riding", sender="Uber <noreply@uber.com>")
        )
        assert result.is_receipt
        assert result.confidence == 0.7
        assert result.reason == "Sender suggests merchant"

    def test_content_keywords(self) -> None:
        result = classify_message(
            _message(text="Subtotal 10.00\nTax 0.80\nTotal 10.80")
        )
        assert result.is_receipt
        assert result.confidence == 0.75
        assert result.reason == "Content suggests receipt (3 keywords)"

    def test_content_confidence_ceiling(self) -> None:
        text = (
            "Thank you for your purchase. Item: mug, quantity 1, price 9.00. "
            "Subtotal 9.00, tax 0.72, total 9.72. Amount paid. Transaction 42."
        )
        result = classify_message(_message(text=text))
        assert result.confidence == 0.95

    def test_content_read_from_html(self) -> None:
        html = "<html><body><p>Subtotal</p><p>Tax</p><p>Total</p></body></html>"
        result = classify_message(_message(text=None, html=html))
        assert result.is_receipt

    def test_two_keywords_are_not_enough(self) -> None:
        result = classify_message(_message(text="The total tax bill"))
        assert result is NOT_A_RECEIPT

    def test_not_a_receipt(self) -> None:
        result = classify_message(_message())
        assert not result.is_receipt
        assert result.confidence == 0.2

    def test_custom_rules(self) -> None:
        always = ClassificationRule(
            "always", lambda message: ClassificationResult(True, 0.5, "always")
        )
        result = classify_message(_message(), rules=(always, *RULES))
        assert result.reason == "always"

    def test_rule_order(self) -> None:
        assert [rule.name for rule in RULES] == ["subject", "sender", "content"]
