"""Currency inference from the way prices are written."""

from __future__ import annotations

import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from decimal import Decimal

from receipt_sync.models import BASELINE_CURRENCY, CurrencyGuess, format_amount

_COMMA_DECIMAL = re.compile(r"\d+,\d{2}$")
_PERIOD_DECIMAL = re.compile(r"\d+\.\d{2}$")
_NO_DECIMAL = re.compile(r"^\d+$")
_LEADING_NUMBER = re.compile(r"\s*([+-]?(?:\d+\.?\d*|\.\d+))")

HIGH_VALUE = 500
LOW_VALUE = 10


@dataclass(frozen=True)
class PriceTally:
    """Counts of price formats seen across a receipt's line items."""

    total: int
    comma_decimals: int = 0
    period_decimals: int = 0
    no_decimals: int = 0
    high_values: int = 0
    low_values: int = 0

    @property
    def any_decimals(self) -> bool:
        return self.comma_decimals > 0 or self.period_decimals > 0


@dataclass(frozen=True)
class PriceFormatRule:
    """One step of the price-format decision chain."""

    name: str
    applies: Callable[[PriceTally], bool]
    decide: Callable[[PriceTally], CurrencyGuess]


def _comma_dominant(t: PriceTally) -> CurrencyGuess:
    return CurrencyGuess(
        "EUR",
        0.8,
        f"{t.comma_decimals} prices use comma as decimal separator "
        "(e.g., European format)",
    )


def _period_dominant(t: PriceTally) -> CurrencyGuess:
    return CurrencyGuess(
        "USD",
        0.7,
        f"{t.period_decimals} prices use period as decimal separator "
        "(e.g., US/UK format)",
    )


def _no_decimals(t: PriceTally) -> CurrencyGuess:
    return CurrencyGuess(
        "JPY", 0.8, f"{t.no_decimals} prices appear to have no decimal places"
    )


def _high_values(t: PriceTally) -> CurrencyGuess:
    return CurrencyGuess(
        "JPY", 0.7, f"{t.high_values} prices have relatively high numeric values"
    )


def _low_values(t: PriceTally) -> CurrencyGuess:
    code = "GBP" if t.period_decimals > t.comma_decimals else "EUR"
    return CurrencyGuess(code, 0.5, "Most prices are low values with decimal places")


PRICE_FORMAT_RULES: tuple[PriceFormatRule, ...] = (
    PriceFormatRule(
        "comma-decimal",
        lambda t: t.comma_decimals > t.period_decimals and t.comma_decimals > 0,
        _comma_dominant,
    ),
    PriceFormatRule(
        "period-decimal",
        lambda t: t.period_decimals > t.comma_decimals and t.period_decimals > 0,
        _period_dominant,
    ),
    PriceFormatRule(
        "no-decimal",
        lambda t: t.no_decimals > 3 or 0 < t.no_decimals == t.total,
        _no_decimals,
    ),
    PriceFormatRule(
        "high-value",
        lambda t: t.high_values > t.total / 2 and t.high_values > 2,
        _high_values,
    ),
    PriceFormatRule(
        "low-value",
        lambda t: t.low_values > t.total / 2 and t.any_decimals,
        _low_values,
    ),
)

INCONCLUSIVE = CurrencyGuess(
    BASELINE_CURRENCY, 0.3, "Inconclusive price formatting patterns"
)


def infer_from_price_format(
    prices: Sequence[str | Decimal | float | int] | None,
    total: Decimal | float | int | str | None = None,
) -> CurrencyGuess:
    """Guess a currency family from decimal separators and magnitudes.

    Prices should be passed as written on the receipt so that separators
    survive. Formats are shared by many currencies; the guess names one
    representative of the family (EUR for comma-decimal, USD for
    period-decimal, JPY for no-decimal).
    """
    if not prices:
        return _infer_from_total(total)

    tally = tally_prices([format_amount(p) for p in prices])
    for rule in PRICE_FORMAT_RULES:
        if rule.applies(tally):
            return rule.decide(tally)
    return INCONCLUSIVE


def tally_prices(prices: Sequence[str]) -> PriceTally:
    """Classify each written price and count the formats seen."""
    comma = period = no_decimal = high = low = 0
    for price in prices:
        if _COMMA_DECIMAL.search(price):
            comma += 1
        if _PERIOD_DECIMAL.search(price):
            period += 1
        if _NO_DECIMAL.match(price) and len(price) > 2:
            no_decimal += 1

        value = _leading_number(price.replace(",", ".", 1))
        if value is None:
            continue
        if value > HIGH_VALUE:
            high += 1
        if value < LOW_VALUE:
            low += 1

    return PriceTally(
        total=len(prices),
        comma_decimals=comma,
        period_decimals=period,
        no_decimals=no_decimal,
        high_values=high,
        low_values=low,
    )


def _infer_from_total(total: Decimal | float | int | str | None) -> CurrencyGuess:
    if total is None:
        return CurrencyGuess(BASELINE_CURRENCY, 0.0, "No prices to analyse")

    written = format_amount(total)
    value = _leading_number(written)
    if value is not None and value > 1000 and "." not in written:
        return CurrencyGuess(
            "JPY",
            0.7,
            f"Total amount {written} appears to be in a currency without decimals",
        )
    return CurrencyGuess(BASELINE_CURRENCY, 0.0, "No line-item prices to analyse")


def _leading_number(text: str) -> float | None:
    match = _LEADING_NUMBER.match(text)
    if match is None:
        return None
    return float(match.group(1))
