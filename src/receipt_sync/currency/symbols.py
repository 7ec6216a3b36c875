"""Currency symbol and code normalization."""

from __future__ import annotations

import re

from receipt_sync.models import BASELINE_CURRENCY

_CURRENCY_SYMBOLS = "$€£¥₹₽₩฿₫₴₸₺₼₾"
_NOISE = re.compile(rf"[^A-Za-z{re.escape(_CURRENCY_SYMBOLS)}]")

CURRENCY_ALIASES: dict[str, str] = {
    "$": "USD",
    "USD": "USD",
    "DOLLAR": "USD",
    "DOLLARS": "USD",
    "US": "USD",
    "USDOLLAR": "USD",
    "USDOLLARS": "USD",
    "CAD": "CAD",
    "CANADIANDOLLAR": "CAD",
    "CANADIANDOLLARS": "CAD",
    "AUD": "AUD",
    "AUSTRALIANDOLLAR": "AUD",
    "AUSTRALIANDOLLARS": "AUD",
    "€": "EUR",
    "EUR": "EUR",
    "EURO": "EUR",
    "EUROS": "EUR",
    "£": "GBP",
    "GBP": "GBP",
    "POUND": "GBP",
    "POUNDS": "GBP",
    "POUNDSTERLING": "GBP",
    "¥": "JPY",
    "JPY": "JPY",
    "YEN": "JPY",
    "CNY": "CNY",
    "YUAN": "CNY",
    "RMB": "CNY",
    "₹": "INR",
    "INR": "INR",
    "RUPEE": "INR",
    "RUPEES": "INR",
    "₩": "KRW",
    "KRW": "KRW",
    "WON": "KRW",
    "CHF": "CHF",
    "FRANC": "CHF",
    "FRANCS": "CHF",
    "BRL": "BRL",
    "REAL": "BRL",
    "REAIS": "BRL",
    "R$": "BRL",
    "MXN": "MXN",
    "PESO": "MXN",
    "PESOS": "MXN",
    "SGD": "SGD",
    "฿": "THB",
    "THB": "THB",
    "BAHT": "THB",
    "₽": "RUB",
    "RUB": "RUB",
    "RUBLE": "RUB",
    "RUBLES": "RUB",
}

# Checked in order; the first symbol found inside the token wins.
EMBEDDED_SYMBOLS: tuple[tuple[str, str], ...] = (
    ("$", "USD"),
    ("€", "EUR"),
    ("£", "GBP"),
    ("¥", "JPY"),
    ("₹", "INR"),
    ("₩", "KRW"),
    ("฿", "THB"),
    ("₽", "RUB"),
)

KNOWN_CODES = frozenset(
    {
        "USD", "EUR", "GBP", "JPY", "CAD", "AUD", "CHF", "CNY", "INR",
        "KRW", "BRL", "MXN", "SGD", "THB", "RUB", "ZAR", "HKD", "SEK",
        "NOK", "DKK", "PLN", "TRY", "NZD", "AED", "SAR", "ILS",
    }
)  # fmt: skip


def normalize_currency_code(raw: object) -> str:
    """Map a free-form currency token to a three-letter code.

    Accepts symbols ("€"), words ("pounds"), codes ("chf") or noisy
    strings ("US $"). Anything unrecognized, including ``None`` and
    non-string input, maps to the baseline currency.
    """
    if not isinstance(raw, str):
        return BASELINE_CURRENCY

    cleaned = _NOISE.sub("", raw.strip()).upper()
    if not cleaned:
        return BASELINE_CURRENCY

    code = CURRENCY_ALIASES.get(cleaned)
    if code is not None:
        return code

    for symbol, symbol_code in EMBEDDED_SYMBOLS:
        if symbol in cleaned:
            return symbol_code

    if len(cleaned) == 3 and cleaned in KNOWN_CODES:
        return cleaned

    return BASELINE_CURRENCY
