"""Currency inference: detectors and the fusion engine."""

from receipt_sync.currency.fusion import detect_currency, detect_currency_for_fields
from receipt_sync.currency.merchant import infer_from_merchant
from receipt_sync.currency.price_format import infer_from_price_format
from receipt_sync.currency.symbols import normalize_currency_code

__all__ = [
    "detect_currency",
    "detect_currency_for_fields",
    "infer_from_merchant",
    "infer_from_price_format",
    "normalize_currency_code",
]
