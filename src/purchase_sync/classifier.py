"""Merchant identity and intent classification for inbound messages.

A message matches a merchant when its sender identity (DKIM signing
domain, else From/Reply-To domain) is on the merchant's allow list and
its subject and body read like a transactional receipt rather than
marketing.

Root domains are derived by keeping the last two DNS labels. This is
wrong for multi-label public suffixes (``shop.example.co.uk`` becomes
``co.uk``) and is kept as a known limitation.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

from purchase_sync.merchants import MERCHANTS
from purchase_sync.text import strip_html_to_text

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from purchase_sync.merchants import MerchantConfig
    from purchase_sync.models import InboundMessage

logger = logging.getLogger(__name__)

NO_MATCH_REASON = "no_merchant_match"
MATCH_REASON = "merchant_match"

_HEADER_D = re.compile(r"header\.d=([^;\s]+)", re.IGNORECASE)
_BARE_D = re.compile(r"\bd=([^;\s]+)", re.IGNORECASE)
_ADDRESS_DOMAIN = re.compile(r"@([^>\s]+)")


@dataclass(frozen=True)
class ClassificationResult:
    """Outcome of classifying one message."""

    matched: bool
    reason: str
    merchant: str | None = None


def root_domain(host: str) -> str:
    """Reduce a hostname to its last two labels."""
    normalized = host.strip().lower().strip(".")
    parts = [part for part in normalized.split(".") if part]
    if len(parts) <= 2:
        return normalized
    return ".".join(parts[-2:])


def address_domain(value: str) -> str | None:
    """Root domain of the address in ``"Name <user@host>"`` or ``user@host``."""
    match = _ADDRESS_DOMAIN.search(value.strip())
    if not match:
        return None
    return root_domain(match.group(1))


def dkim_domains_from_auth_results(auth_results: str) -> list[str]:
    """Signing root domains from an authentication-results header.

    Only headers reporting ``dkim=pass`` are trusted.
    """
    if "dkim=pass" not in auth_results.lower():
        return []
    domains: dict[str, None] = {}
    for pattern in (_HEADER_D, _BARE_D):
        for match in pattern.finditer(auth_results):
            domain = root_domain(match.group(1))
            if domain:
                domains.setdefault(domain, None)
    return list(domains)


def dkim_domains(message: InboundMessage) -> list[str]:
    """Verified DKIM domains, falling back to the ARC header."""
    auth = message.header("Authentication-Results")
    domains = dkim_domains_from_auth_results(auth) if auth else []
    if domains:
        return domains
    arc = message.header("ARC-Authentication-Results")
    return dkim_domains_from_auth_results(arc) if arc else []


def _includes_any(haystack: str, needles: Iterable[str]) -> bool:
    lowered = haystack.lower()
    return any(needle.lower() in lowered for needle in needles)


def _body_text(text_body: str | None, html_body: str | None) -> str:
    # Plain text wins; HTML is only stripped when there is no usable text.
    if text_body and text_body.strip():
        return text_body
    return strip_html_to_text(html_body) if html_body else ""


def classify_message(
    message: InboundMessage,
    *,
    merchants: Mapping[str, MerchantConfig] = MERCHANTS,
) -> ClassificationResult:
    """Return the first merchant whose identity and intent rules match."""
    subject = message.subject
    signing = dkim_domains(message)
    sender_domains: list[str] = []
    for header in ("From", "Reply-To"):
        value = message.header(header)
        domain = address_domain(value) if value else None
        if domain:
            sender_domains.append(domain)
    body = _body_text(message.text_body, message.html_body)
    combined = f"{subject}\n{message.snippet}\n{body}".strip()

    for merchant in merchants.values():
        allow = {root_domain(d) for d in merchant.dkim_allow}
        deny = {root_domain(d) for d in merchant.dkim_deny}

        if any(domain in deny for domain in signing):
            logger.debug("DKIM deny for %s on %s", merchant.key, message.message_id)
            continue

        if signing:
            identity_ok = any(domain in allow for domain in signing)
        else:
            sender_allow = {root_domain(d) for d in merchant.sender_domains}
            identity_ok = any(domain in sender_allow for domain in sender_domains)
        if not identity_ok:
            continue

        if _includes_any(subject, merchant.subject_exclude):
            continue
        if not (
            _includes_any(subject, merchant.subject_include)
            or _includes_any(combined, merchant.subject_include)
        ):
            continue
        if not _includes_any(combined, merchant.required_body_markers):
            continue

        return ClassificationResult(
            matched=True, reason=MATCH_REASON, merchant=merchant.key
        )

    return ClassificationResult(matched=False, reason=NO_MATCH_REASON)
