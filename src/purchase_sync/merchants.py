"""Merchant identity and intent configuration.

Pure data, loaded once at import. Iteration order of ``MERCHANTS`` is the
classifier's priority order.
"""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType


@dataclass(frozen=True)
class MerchantConfig:
    """Sender domains and keyword lists that identify one merchant's receipts."""

    key: str
    display_name: str
    dkim_allow: tuple[str, ...]
    subject_include: tuple[str, ...]
    subject_exclude: tuple[str, ...]
    required_body_markers: tuple[str, ...]
    dkim_deny: tuple[str, ...] = ()
    # Falls back to dkim_allow when empty.
    from_allow: tuple[str, ...] = ()

    @property
    def sender_domains(self) -> tuple[str, ...]:
        """Domains accepted in From/Reply-To, falling back to the DKIM list."""
        return self.from_allow or self.dkim_allow


_PROMO_EXCLUDES = (
    "% off",
    "sale",
    "deal",
    "coupon",
    "save ",
    "recommended",
    "wishlist",
    "new arrivals",
    "flash",
)

_MERCHANT_LIST = (
    MerchantConfig(
        key="amazon",
        display_name="Amazon",
        dkim_allow=("amazon.com", "amazonses.com", "amazon.co.uk", "amazon.ca"),
        dkim_deny=("amazonaws.com",),
        from_allow=("amazon.com", "amazon.co.uk", "amazon.ca"),
        subject_include=(
            "order",
            "ordered",
            "shipped",
            "delivered",
            "dispatched",
            "out for delivery",
            "arriving",
        ),
        subject_exclude=(*_PROMO_EXCLUDES, "review", "rate your", "prime video"),
        required_body_markers=(
            "order #",
            "order number",
            "order total",
            "track package",
            "tracking",
            "shipment",
        ),
    ),
    MerchantConfig(
        key="shein",
        display_name="SHEIN",
        dkim_allow=("shein.com", "sheinemail.com"),
        subject_include=("order", "shipped", "delivered", "package", "confirmation"),
        subject_exclude=_PROMO_EXCLUDES,
        required_body_markers=(
            "order number",
            "order no",
            "tracking number",
            "order total",
        ),
    ),
    MerchantConfig(
        key="temu",
        display_name="Temu",
        dkim_allow=("temu.com", "temuemail.com"),
        subject_include=("order", "shipped", "delivered", "package", "confirmed"),
        subject_exclude=(*_PROMO_EXCLUDES, "free gift", "lightning"),
        required_body_markers=("order id", "order number", "tracking number", "po-"),
    ),
    MerchantConfig(
        key="ebay",
        display_name="eBay",
        dkim_allow=("ebay.com", "ebay.co.uk"),
        subject_include=("order", "shipped", "delivered", "purchase", "paid"),
        subject_exclude=(*_PROMO_EXCLUDES, "watched item", "bid", "offer"),
        required_body_markers=(
            "order number",
            "item number",
            "tracking number",
            "order total",
        ),
    ),
    MerchantConfig(
        key="aliexpress",
        display_name="AliExpress",
        dkim_allow=("aliexpress.com",),
        from_allow=("aliexpress.com", "aliexpress.us"),
        subject_include=("order", "shipped", "delivered", "package", "payment"),
        subject_exclude=(*_PROMO_EXCLUDES, "coins", "choice day"),
        required_body_markers=("order id", "order number", "tracking number"),
    ),
)

MERCHANTS: MappingProxyType[str, MerchantConfig] = MappingProxyType(
    {merchant.key: merchant for merchant in _MERCHANT_LIST}
)

# Subject keywords for the generic backstop search.
BACKSTOP_SUBJECT_KEYWORDS = (
    "order",
    "shipped",
    "delivered",
    "tracking",
    "confirmation",
    "dispatch",
)
