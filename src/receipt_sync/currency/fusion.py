"""Fuse currency signals into one decision."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from decimal import Decimal

from receipt_sync.currency.merchant import infer_from_merchant
from receipt_sync.currency.price_format import infer_from_price_format
from receipt_sync.currency.symbols import normalize_currency_code
from receipt_sync.models import BASELINE_CURRENCY, CurrencyGuess, ImageExtraction

logger = logging.getLogger(__name__)

TRUSTED_PRIOR_CONFIDENCE = 0.85
DECISIVE_CONFIDENCE = 0.7
FALLBACK_CONFIDENCE = 0.6
AGREEMENT_BONUS = 0.1
STRONG_EVIDENCE_WORDS = ("symbol", "explicit")


def detect_currency(
    *,
    prices: Sequence[str | Decimal | float | int] | None = None,
    total: Decimal | float | int | str | None = None,
    merchant: str | None = None,
    notes: str | None = None,
    prior: CurrencyGuess | None = None,
) -> CurrencyGuess:
    """Decide a receipt's currency from every available signal.

    ``prior`` is a guess from an upstream extractor. It is trusted as-is
    unless it only restates the baseline currency without citing
    on-document evidence, in which case the heuristics get a say.
    Otherwise price formatting and merchant hints are combined:
    a decisive non-baseline guess wins, two independent detectors that
    agree beat either alone, and a moderately confident non-baseline
    guess beats the baseline.
    """
    if prior is not None and prior.evidence:
        trusted = _trusted_prior(prior)
        if trusted is not None:
            return trusted

    price_guess = infer_from_price_format(prices, total)
    merchant_guess = infer_from_merchant(merchant, notes)
    logger.debug(
        "Currency signals: price=%s merchant=%s", price_guess, merchant_guess
    )

    best = CurrencyGuess(BASELINE_CURRENCY, 0.0, "Default fallback")
    for guess in (price_guess, merchant_guess):
        if guess.confidence > best.confidence:
            best = guess

    if best.code != BASELINE_CURRENCY and best.confidence > DECISIVE_CONFIDENCE:
        return best

    if price_guess.code == merchant_guess.code != BASELINE_CURRENCY:
        confidence = max(price_guess.confidence, merchant_guess.confidence)
        return CurrencyGuess(
            price_guess.code,
            min(1.0, round(confidence + AGREEMENT_BONUS, 4)),
            f"Multiple sources of evidence: {price_guess.evidence} "
            f"AND {merchant_guess.evidence}",
        )

    for guess in (price_guess, merchant_guess):
        if guess.code != BASELINE_CURRENCY and guess.confidence > FALLBACK_CONFIDENCE:
            return guess

    return best


def detect_currency_for_fields(fields: ImageExtraction) -> CurrencyGuess:
    """Decide the currency for a receipt read from an image.

    The extractor's own currency, when it gave evidence for it, is the
    prior; its merchant, notes, items and total feed the heuristics.
    """
    prior = None
    if fields.currency and fields.currency_evidence:
        prior = CurrencyGuess(fields.currency, 0.0, fields.currency_evidence)
    return detect_currency(
        prices=[item.price_text for item in fields.items],
        total=fields.total,
        merchant=fields.merchant,
        notes=fields.notes,
        prior=prior,
    )


def _trusted_prior(prior: CurrencyGuess) -> CurrencyGuess | None:
    code = normalize_currency_code(prior.code)
    evidence = prior.evidence.lower()
    weak = code == BASELINE_CURRENCY and not any(
        word in evidence for word in STRONG_EVIDENCE_WORDS
    )
    if weak:
        return None
    return CurrencyGuess(code, TRUSTED_PRIOR_CONFIDENCE, prior.evidence)
