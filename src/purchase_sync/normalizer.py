"""Reconcile detector and model output into one ExtractionResult."""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING

from purchase_sync.merchants import MERCHANTS
from purchase_sync.models import (
    UNKNOWN_MERCHANT,
    ExtractionResult,
    TrackingNumber,
    compute_missing_fields,
    split_order_numbers,
)
from purchase_sync.tracking import detect_tracking_numbers

if TYPE_CHECKING:
    from purchase_sync.models import LlmPurchaseData

DEFAULT_CONFIDENCE = 0.5
UNKNOWN_STORE = "Unknown Store"


def to_minor_units(value: Decimal | None) -> int | None:
    """Convert a decimal amount to integer cents, rounding half up."""
    if value is None:
        return None
    return int((value * 100).to_integral_value(rounding=ROUND_HALF_UP))


def clamp_confidence(value: float | None) -> float:
    """Clamp a model confidence into [0, 1], defaulting when absent."""
    if value is None:
        return DEFAULT_CONFIDENCE
    return max(0.0, min(1.0, value))


def merge_tracking(
    detected: list[TrackingNumber],
    model_numbers: list[str],
    model_carrier: str | None = None,
) -> list[TrackingNumber]:
    """Union detector and model tracking numbers.

    Detector entries come first and are never dropped. A model carrier
    only fills in where the detector could not infer one.
    """
    merged: dict[str, TrackingNumber] = {}
    carrier_hint = model_carrier.strip().lower() if model_carrier else None
    for entry in detected:
        merged.setdefault(entry.number, entry)
    for raw in model_numbers:
        number = raw.strip().upper()
        if not number:
            continue
        existing = merged.get(number)
        if existing is None:
            merged[number] = TrackingNumber(number=number, carrier=carrier_hint)
        elif existing.carrier is None and carrier_hint:
            merged[number] = TrackingNumber(number=number, carrier=carrier_hint)
    return list(merged.values())


def with_missing_fields(result: ExtractionResult) -> ExtractionResult:
    """Recompute ``missing_fields`` from the result's own facts."""
    result.missing_fields = compute_missing_fields(
        order_numbers=split_order_numbers(result.order_number),
        value_usd=result.value_usd,
        items_summary=result.items_summary,
        has_tracking=bool(result.tracking_numbers),
    )
    return result


def _store_name(data: LlmPurchaseData, merchant: str) -> str:
    if data.store_name:
        return data.store_name
    config = MERCHANTS.get(merchant)
    if config is not None:
        return config.display_name
    return data.merchant or UNKNOWN_STORE


def normalize_llm_output(
    data: LlmPurchaseData,
    source_text: str,
    *,
    merchant_hint: str | None = None,
) -> ExtractionResult:
    """Build the canonical result from a model reply and the text it read."""
    merchant = (data.merchant or merchant_hint or UNKNOWN_MERCHANT).lower()
    value_usd = to_minor_units(data.value_total)
    tracking = merge_tracking(
        detect_tracking_numbers(source_text), data.tracking_numbers, data.carrier
    )
    order_numbers = split_order_numbers(data.order_number)
    result = ExtractionResult(
        merchant=merchant,
        store_name=_store_name(data, merchant),
        order_number=",".join(order_numbers) or None,
        items_summary=data.items_summary,
        value_usd=value_usd,
        currency=data.currency.upper() if data.currency else None,
        # No FX conversion: the original amount mirrors the USD field.
        original_value=value_usd,
        tracking_numbers=tracking,
        invoice_present=data.invoice_present,
        confidence=clamp_confidence(data.confidence),
    )
    return with_missing_fields(result)
