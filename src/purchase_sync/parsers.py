"""Deterministic extractors for high-volume merchant templates."""

from __future__ import annotations

import logging
import re
from decimal import Decimal, InvalidOperation
from types import MappingProxyType
from typing import TYPE_CHECKING

from purchase_sync.models import ExtractionResult
from purchase_sync.normalizer import to_minor_units, with_missing_fields
from purchase_sync.tracking import detect_tracking_numbers

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

_CURRENCY_SYMBOLS = {
    "US$": "USD",
    "CA$": "CAD",
    "C$": "CAD",
    "$": "USD",
    "£": "GBP",
    "€": "EUR",
}

_TOTAL = re.compile(
    r"\b(?:order total|grand total|total charged|total)\s*(?:\([^)]*\))?\s*:?\s*"
    r"(US\$|CA\$|C\$|\$|£|€)\s?([\d,]+(?:\.\d{1,2})?)",
    re.IGNORECASE,
)
_LABELLED_ORDER = re.compile(
    r"\border\s*(?:#|number|no\.?|id)\s*:?\s*(?=[A-Z0-9-]*\d)([A-Z0-9][A-Z0-9-]{4,})",
    re.IGNORECASE,
)
_AMAZON_ORDER = re.compile(r"\b(\d{3}-\d{7}-\d{7})\b")
_SHEIN_ORDER = re.compile(
    r"\border\s*(?:number|no\.?|#)\s*:?\s*([A-Z]{2,6}\d{6,})", re.IGNORECASE
)
_AMAZON_ITEM = re.compile(r"\bOrdered:\s*\"?([^\"\n]+)", re.IGNORECASE)
_ITEMS = re.compile(r"\bItems?\s*:\s*([^\n]+)", re.IGNORECASE)

MAX_SUMMARY_LEN = 200


def parse_total(text: str) -> tuple[int | None, str | None]:
    """Return (minor units, ISO currency) of the first order total found."""
    match = _TOTAL.search(text)
    if not match:
        return None, None
    symbol, amount = match.groups()
    try:
        value = Decimal(amount.replace(",", ""))
    except InvalidOperation:
        return None, None
    return to_minor_units(value), _CURRENCY_SYMBOLS.get(symbol.upper())


def _items_summary(text: str, *patterns: re.Pattern[str]) -> str | None:
    for pattern in patterns:
        match = pattern.search(text)
        if match:
            summary = match.group(1).strip().rstrip(".")
            if summary:
                return summary[:MAX_SUMMARY_LEN]
    return None


def _build(
    text: str,
    *,
    merchant: str,
    store_name: str,
    order_numbers: list[str],
    items_summary: str | None,
) -> ExtractionResult:
    value, currency = parse_total(text)
    tracking = detect_tracking_numbers(text)
    order_number = ",".join(dict.fromkeys(n.upper() for n in order_numbers)) or None
    complete = order_number is not None and (value is not None or bool(tracking))
    result = ExtractionResult(
        merchant=merchant,
        store_name=store_name,
        order_number=order_number,
        items_summary=items_summary,
        value_usd=value,
        currency=currency,
        original_value=value,
        tracking_numbers=tracking,
        invoice_present="invoice" in text.lower(),
        confidence=0.9 if complete else 0.75,
    )
    return with_missing_fields(result)


def parse_amazon(text: str) -> ExtractionResult:
    """Amazon order, shipment and delivery notifications."""
    orders = _AMAZON_ORDER.findall(text)
    if not orders:
        orders = _LABELLED_ORDER.findall(text)[:1]
    return _build(
        text,
        merchant="amazon",
        store_name="Amazon",
        order_numbers=orders,
        items_summary=_items_summary(text, _AMAZON_ITEM, _ITEMS),
    )


def parse_shein(text: str) -> ExtractionResult:
    """SHEIN order confirmations and shipping updates."""
    orders = _SHEIN_ORDER.findall(text)[:1]
    return _build(
        text,
        merchant="shein",
        store_name="SHEIN",
        order_numbers=orders,
        items_summary=_items_summary(text, _ITEMS),
    )


PARSERS: MappingProxyType[str, Callable[[str], ExtractionResult]] = MappingProxyType(
    {"amazon": parse_amazon, "shein": parse_shein}
)


def extract_deterministic(merchant: str | None, text: str) -> ExtractionResult | None:
    """Run the merchant's template parser.

    Returns None when no parser exists or when the parse found neither an
    order number nor a tracking number; the caller then falls back to the
    LLM extractor.
    """
    parser = PARSERS.get(merchant or "")
    if parser is None:
        return None
    result = parser(text)
    if not result.has_core_fields:
        logger.debug("Deterministic %s parse insufficient", merchant)
        return None
    return result
