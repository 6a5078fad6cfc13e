"""Domain, transport and extraction models for purchase sync."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Literal
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

Channel = Literal["gmail", "whatsapp", "manual"]
EvidenceStatus = Literal["pending", "extracted", "failed", "duplicate"]
DraftStatus = Literal["draft", "confirmed", "rejected"]
PreAlertStatus = Literal["draft", "confirmed", "submitted", "rejected"]
AccountStatus = Literal["active", "disconnected"]

REDACTED_SNIPPET = "[redacted]"
UNKNOWN_MERCHANT = "unknown"

# Order matters: missing_fields is always reported in this sequence.
MISSING_FIELD_ORDER = ("orderNumber", "valueUsd", "trackingNumbers", "itemsSummary")


@dataclass
class InboundMessage:
    """A fetched message with decoded bodies, as delivered by a source adapter."""

    message_id: str
    headers: list[tuple[str, str]]
    received_at: datetime
    snippet: str = ""
    text_body: str | None = None
    html_body: str | None = None

    def header(self, name: str) -> str | None:
        """Return the first header value matching ``name`` case-insensitively."""
        wanted = name.lower()
        for key, value in self.headers:
            if key.lower() == wanted:
                return value
        return None

    @property
    def subject(self) -> str:
        return self.header("Subject") or ""


@dataclass(frozen=True)
class TrackingNumber:
    """A shipment tracking number and the carrier it belongs to, if known."""

    number: str
    carrier: str | None = None


@dataclass
class ExtractionResult:
    """Canonical purchase facts pulled from a single message."""

    merchant: str
    store_name: str | None = None
    order_number: str | None = None
    items_summary: str | None = None
    value_usd: int | None = None
    currency: str | None = None
    original_value: int | None = None
    tracking_numbers: list[TrackingNumber] = field(default_factory=list)
    invoice_present: bool = False
    confidence: float = 0.5
    missing_fields: list[str] = field(default_factory=list)

    @property
    def has_core_fields(self) -> bool:
        """True when the result names an order or at least one shipment."""
        return bool(self.order_number) or bool(self.tracking_numbers)


def split_order_numbers(value: str | None) -> list[str]:
    """Split a comma-joined order number string into upper-cased parts."""
    if not value:
        return []
    parts = (part.strip().upper() for part in value.split(","))
    return list(dict.fromkeys(part for part in parts if part))


def union_order_numbers(*groups: list[str]) -> list[str]:
    """Order-preserving union of order number lists."""
    merged: dict[str, None] = {}
    for group in groups:
        for number in group:
            merged.setdefault(number.strip().upper(), None)
    merged.pop("", None)
    return list(merged)


def compute_missing_fields(
    *,
    order_numbers: list[str],
    value_usd: int | None,
    items_summary: str | None,
    has_tracking: bool,
) -> list[str]:
    """Canonical fields a draft still lacks, in reporting order."""
    present = {
        "orderNumber": bool(order_numbers),
        "valueUsd": value_usd is not None,
        "trackingNumbers": has_tracking,
        "itemsSummary": bool(items_summary),
    }
    return [name for name in MISSING_FIELD_ORDER if not present[name]]


class LlmPurchaseData(BaseModel):
    """JSON payload returned by the extraction models.

    Validation is lenient: malformed values become ``None`` so the
    normalizer can apply its defaults instead of rejecting the reply.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    merchant: str | None = None
    store_name: str | None = Field(default=None, alias="storeName")
    order_number: str | None = Field(default=None, alias="orderNumber")
    items_summary: str | None = Field(default=None, alias="itemsSummary")
    value_total: Decimal | None = Field(default=None, alias="valueTotal")
    currency: str | None = None
    tracking_numbers: list[str] = Field(default_factory=list, alias="trackingNumbers")
    carrier: str | None = None
    invoice_present: bool = Field(default=False, alias="invoicePresent")
    confidence: float | None = None

    @field_validator(
        "merchant",
        "store_name",
        "items_summary",
        "currency",
        "carrier",
        mode="before",
    )
    @classmethod
    def _blank_to_none(cls, value: Any) -> str | None:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    @field_validator("order_number", mode="before")
    @classmethod
    def _join_order_numbers(cls, value: Any) -> str | None:
        if isinstance(value, list):
            value = ",".join(str(v) for v in value if v)
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    @field_validator("value_total", mode="before")
    @classmethod
    def _parse_value(cls, value: Any) -> Decimal | None:
        if value is None or isinstance(value, bool):
            return None
        try:
            parsed = Decimal(str(value).replace(",", "").strip())
        except InvalidOperation:
            return None
        return parsed if parsed.is_finite() else None

    @field_validator("tracking_numbers", mode="before")
    @classmethod
    def _listify_tracking(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, list):
            return []
        return [str(v) for v in value if v]

    @field_validator("invoice_present", mode="before")
    @classmethod
    def _truthy(cls, value: Any) -> bool:
        return bool(value)

    @field_validator("confidence", mode="before")
    @classmethod
    def _numeric_confidence(cls, value: Any) -> float | None:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        return float(value) if math.isfinite(value) else None


class Evidence(BaseModel):
    """Durable record of one inbound message attempted for extraction."""

    id: UUID = Field(default_factory=uuid4)
    user_id: str
    source: Channel
    source_message_id: str
    merchant: str | None = None
    raw_text_snippet: str
    received_at: datetime
    processed_at: datetime
    status: EvidenceStatus = "pending"
    extraction_error: str | None = None


class PurchaseDraft(BaseModel):
    """Canonical, mergeable record of one purchase."""

    id: UUID = Field(default_factory=uuid4)
    user_id: str
    evidence_id: UUID
    merchant: str = UNKNOWN_MERCHANT
    store_name: str | None = None
    order_numbers: list[str] = Field(default_factory=list)
    items_summary: str | None = None
    value_usd: int | None = None
    currency: str | None = None
    original_value: int | None = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    missing_fields: list[str] = Field(default_factory=list)
    invoice_present: bool = False
    status: DraftStatus = "draft"

    @property
    def order_number(self) -> str | None:
        """Order numbers in their comma-joined display form."""
        return ",".join(self.order_numbers) or None


class PackagePreAlert(BaseModel):
    """A tracking number attached to a purchase draft."""

    id: UUID = Field(default_factory=uuid4)
    user_id: str
    purchase_draft_id: UUID
    tracking_number: str
    carrier: str | None = None
    status: PreAlertStatus = "draft"


class MailAccount(BaseModel):
    """A connected mailbox and its incremental sync cursor."""

    id: UUID = Field(default_factory=uuid4)
    user_id: str
    email: str
    cursor: str | None = None
    last_sync_at: datetime | None = None
    status: AccountStatus = "active"


class UserPreferences(BaseModel):
    """Per-user switches for the ingestion pipeline.

    Only ``mail_sync_enabled`` gates ingestion. ``auto_create_pre_alerts``
    is stored for the review front end; the pipeline always attaches
    tracking numbers to drafts as ``draft`` pre-alerts.
    """

    user_id: str
    mail_sync_enabled: bool = True
    auto_create_pre_alerts: bool = False


def _is_empty(value: object) -> bool:
    return value is None or value == "" or value == 0


def _first_non_empty(current: Any, incoming: Any) -> Any:
    return incoming if _is_empty(current) and not _is_empty(incoming) else current


def _known_merchant(current: str, incoming: str | None) -> str:
    if current and current != UNKNOWN_MERCHANT:
        return current
    if incoming and incoming != UNKNOWN_MERCHANT:
        return incoming
    return current or UNKNOWN_MERCHANT


class DraftUpdate(BaseModel):
    """Sparse set of facts to fold into an existing draft.

    Every field is optional; ``apply_to`` owns the precedence rules so
    callers never decide field by field what may be overwritten.
    """

    merchant: str | None = None
    store_name: str | None = None
    order_numbers: list[str] = Field(default_factory=list)
    items_summary: str | None = None
    value_usd: int | None = None
    currency: str | None = None
    original_value: int | None = None
    invoice_present: bool | None = None
    confidence: float | None = None

    @classmethod
    def from_extraction(cls, result: ExtractionResult) -> DraftUpdate:
        return cls(
            merchant=result.merchant,
            store_name=result.store_name,
            order_numbers=split_order_numbers(result.order_number),
            items_summary=result.items_summary,
            value_usd=result.value_usd,
            currency=result.currency,
            original_value=result.original_value,
            invoice_present=result.invoice_present,
            confidence=result.confidence,
        )

    @classmethod
    def from_draft(cls, draft: PurchaseDraft) -> DraftUpdate:
        return cls(
            merchant=draft.merchant,
            store_name=draft.store_name,
            order_numbers=list(draft.order_numbers),
            items_summary=draft.items_summary,
            value_usd=draft.value_usd,
            currency=draft.currency,
            original_value=draft.original_value,
            invoice_present=draft.invoice_present,
            confidence=draft.confidence,
        )

    def apply_to(self, draft: PurchaseDraft, *, has_tracking: bool) -> PurchaseDraft:
        """Return ``draft`` with this update folded in.

        Scalars are first-non-empty-wins, order numbers are unioned,
        invoice presence is OR-ed and confidence takes the maximum.
        """
        order_numbers = union_order_numbers(draft.order_numbers, self.order_numbers)
        items_summary = _first_non_empty(draft.items_summary, self.items_summary)
        value_usd = _first_non_empty(draft.value_usd, self.value_usd)
        return draft.model_copy(
            update={
                "merchant": _known_merchant(draft.merchant, self.merchant),
                "store_name": _first_non_empty(draft.store_name, self.store_name),
                "order_numbers": order_numbers,
                "items_summary": items_summary,
                "value_usd": value_usd,
                "currency": _first_non_empty(draft.currency, self.currency),
                "original_value": _first_non_empty(
                    draft.original_value, self.original_value
                ),
                "invoice_present": draft.invoice_present or bool(self.invoice_present),
                "confidence": max(draft.confidence, self.confidence or 0.0),
                "missing_fields": compute_missing_fields(
                    order_numbers=order_numbers,
                    value_usd=value_usd,
                    items_summary=items_summary,
                    has_tracking=has_tracking,
                ),
            }
        )
