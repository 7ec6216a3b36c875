"""Currency inference from merchant names and location hints."""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import cached_property

from receipt_sync.models import BASELINE_CURRENCY, CurrencyGuess


@dataclass(frozen=True)
class HintRule:
    """A group of text patterns that point at one currency."""

    currency: str
    confidence: float
    patterns: tuple[str, ...]
    word_boundary: bool = True

    def find(self, text: str) -> str | None:
        """Return the first pattern present in ``text``, or None."""
        for pattern, regex in zip(self.patterns, self._regexes, strict=True):
            if regex is None:
                if pattern in text:
                    return pattern
            elif regex.search(text):
                return pattern
        return None

    @cached_property
    def _regexes(self) -> tuple[re.Pattern[str] | None, ...]:
        # Symbol-bearing patterns ("us $", "€") are matched as substrings;
        # word boundaries only make sense around letters.
        return tuple(
            re.compile(rf"\b{re.escape(p.strip())}\b")
            if self.word_boundary and p.strip().replace(" ", "").isalpha()
            else None
            for p in self.patterns
        )


CURRENCY_MENTIONS: tuple[HintRule, ...] = (
    HintRule("USD", 0.9, ("usd", "us dollar", "us $", "u.s. dollar")),
    HintRule("EUR", 0.9, ("eur", "euro", "€")),
    HintRule("GBP", 0.9, ("gbp", "pound sterling", "british pound", "£")),
    HintRule("JPY", 0.9, ("jpy", "yen", "¥")),
    HintRule("CNY", 0.9, ("cny", "rmb", "yuan", "chinese yuan")),
    HintRule("CAD", 0.9, ("cad", "canadian dollar", "can$")),
    HintRule("AUD", 0.9, ("aud", "australian dollar", "a$")),
    HintRule("INR", 0.9, ("inr", "rupee", "₹")),
    HintRule("KRW", 0.9, ("krw", "won", "₩")),
)

LOCATIONS: tuple[HintRule, ...] = (
    HintRule(
        "USD",
        0.8,
        (
            "usa", "united states", "america", "us", "new york", "california",
            "texas", "chicago", "los angeles", "san francisco", "las vegas",
            "miami", "washington",
        ),
    ),
    HintRule(
        "CAD", 0.8, ("canada", "toronto", "montreal", "vancouver", "calgary", "ottawa")
    ),
    HintRule(
        "GBP",
        0.8,
        (
            "uk", "united kingdom", "britain", "england", "london", "manchester",
            "liverpool", "glasgow", "edinburgh",
        ),
    ),
    HintRule("JPY", 0.8, ("japan", "tokyo", "osaka", "kyoto", "yokohama", "sapporo")),
    HintRule("CNY", 0.8, ("china", "beijing", "shanghai", "shenzhen", "guangzhou")),
    HintRule(
        "EUR",
        0.8,
        (
            "euro", "germany", "france", "italy", "spain", "berlin", "paris",
            "rome", "madrid", "amsterdam", "brussels",
        ),
    ),
    HintRule(
        "INR", 0.8, ("india", "mumbai", "delhi", "bangalore", "hyderabad", "chennai")
    ),
    HintRule("KRW", 0.8, ("korea", "south korea", "seoul", "busan")),
    HintRule("AUD", 0.8, ("australia", "sydney", "melbourne", "brisbane", "perth")),
    HintRule("BRL", 0.8, ("brazil", "rio", "são paulo", "brasilia")),
    HintRule("MXN", 0.7, ("mexico", "mexico city", "cancun", "guadalajara")),
    HintRule("THB", 0.7, ("thailand", "bangkok", "phuket", "chiang mai")),
    HintRule("SGD", 0.8, ("singapore",)),
    HintRule("HKD", 0.8, ("hong kong",)),
    HintRule("CHF", 0.8, ("switzerland", "zurich", "geneva")),
    HintRule("RUB", 0.7, ("russia", "moscow", "st petersburg")),
)  # fmt: skip

MERCHANT_CHAINS: tuple[HintRule, ...] = (
    HintRule(
        "USD",
        0.75,
        (
            "walmart", "target", "costco", "kroger", "walgreens", "cvs",
            "home depot", "lowe's", "best buy", "macy's", "dollar ", "tj maxx",
            "marshalls", "staples", "office depot",
        ),
        word_boundary=False,
    ),
    HintRule(
        "GBP",
        0.75,
        (
            "tesco", "sainsbury", "asda", "boots", "marks & spencer", "waitrose",
            "co-op", "greggs", "primark",
        ),
        word_boundary=False,
    ),
    HintRule(
        "EUR",
        0.7,
        (
            "carrefour", "auchan", "lidl", "aldi", "mediamarkt", "monoprix",
            "fnac", "leclerc",
        ),
        word_boundary=False,
    ),
    HintRule(
        "JPY",
        0.75,
        (
            "lawson", "family mart", "seven eleven japan", "7-eleven japan",
            "uniqlo", "daiso", "don quijote",
        ),
        word_boundary=False,
    ),
    HintRule(
        "CAD",
        0.75,
        ("loblaws", "shoppers drug mart", "canadian tire", "tim hortons", "dollarama"),
        word_boundary=False,
    ),
)  # fmt: skip

NO_EVIDENCE = CurrencyGuess(
    BASELINE_CURRENCY,
    0.2,
    "No location-specific evidence found in merchant name or notes",
)


def infer_from_merchant(
    merchant: str | None, notes: str | None = None
) -> CurrencyGuess:
    """Guess a currency from what the merchant name and notes mention.

    Explicit currency mentions beat place names, which beat chain-store
    names. Within each group the first matching pattern wins.
    """
    if not merchant and not notes:
        return CurrencyGuess(BASELINE_CURRENCY, 0.0, "No merchant or notes to analyse")

    text = f"{merchant or ''} {notes or ''}".lower()

    for rule in CURRENCY_MENTIONS:
        pattern = rule.find(text)
        if pattern is not None:
            return CurrencyGuess(
                rule.currency,
                rule.confidence,
                f"Text contains explicit currency reference: '{pattern}'",
            )

    for rule in LOCATIONS:
        pattern = rule.find(text)
        if pattern is not None:
            return CurrencyGuess(
                rule.currency,
                rule.confidence,
                f"Text contains location reference: '{pattern}'",
            )

    for rule in MERCHANT_CHAINS:
        pattern = rule.find(text)
        if pattern is not None:
            return CurrencyGuess(
                rule.currency,
                rule.confidence,
                "Merchant appears to be a chain store typically found in "
                f"{rule.currency} regions: '{pattern}'",
            )

    return NO_EVIDENCE
