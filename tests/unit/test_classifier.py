"""Tests for purchase_sync.classifier."""

from __future__ import annotations

from collections.abc import Callable

from purchase_sync.classifier import (
    MATCH_REASON,
    NO_MATCH_REASON,
    address_domain,
    classify_message,
    dkim_domains,
    dkim_domains_from_auth_results,
    root_domain,
)
from purchase_sync.models import InboundMessage

MakeMessage = Callable[..., InboundMessage]


class TestDomains:
    """Tests for the domain helpers."""

    def test_root_domain_keeps_last_two_labels(self) -> None:
        assert root_domain("shipment-tracking.Amazon.com.") == "amazon.com"
        assert root_domain("shein.com") == "shein.com"

    def test_root_domain_multi_label_suffix_limitation(self) -> None:
        assert root_domain("shop.example.co.uk") == "co.uk"

    def test_address_domain(self) -> None:
        assert address_domain("Amazon <auto-confirm@mail.amazon.com>") == "amazon.com"
        assert address_domain("no address here") is None

    def test_dkim_requires_pass(self) -> None:
        assert dkim_domains_from_auth_results("dkim=fail header.d=amazon.com") == []

    def test_dkim_header_d_then_bare_d(self) -> None:
        header = "dkim=pass header.d=amazonses.com; dkim=pass d=amazon.com"
        assert dkim_domains_from_auth_results(header) == ["amazonses.com", "amazon.com"]

    def test_arc_fallback(self, make_message: MakeMessage) -> None:
        message = make_message(
            auth_results="spf=pass",
            extra_headers=[
                ("ARC-Authentication-Results", "i=1; dkim=pass header.d=amazon.com")
            ],
        )
        assert dkim_domains(message) == ["amazon.com"]

    def test_arc_ignored_when_primary_has_domains(
        self, make_message: MakeMessage
    ) -> None:
        message = make_message(
            extra_headers=[
                ("ARC-Authentication-Results", "i=1; dkim=pass header.d=shein.com")
            ],
        )
        assert dkim_domains(message) == ["amazon.com"]


class TestClassifyMessage:
    """Tests for classify_message()."""

    def test_amazon_receipt_matches(self, make_message: MakeMessage) -> None:
        result = classify_message(make_message())
        assert result.matched
        assert result.merchant == "amazon"
        assert result.reason == MATCH_REASON

    def test_unrecognized_sender_promo(self, make_message: MakeMessage) -> None:
        message = make_message(
            subject="50% off sale",
            sender="Deals <news@randomshop.example>",
            auth_results="dkim=pass header.d=randomshop.example",
        )
        result = classify_message(message)
        assert not result.matched
        assert result.merchant is None
        assert result.reason == NO_MATCH_REASON

    def test_denied_dkim_domain(self, make_message: MakeMessage) -> None:
        message = make_message(
            auth_results="dkim=pass header.d=amazonaws.com; dkim=pass d=amazon.com"
        )
        assert not classify_message(message).matched

    def test_dkim_must_be_allowed_even_if_from_matches(
        self, make_message: MakeMessage
    ) -> None:
        message = make_message(auth_results="dkim=pass header.d=phish.example")
        assert not classify_message(message).matched

    def test_from_domain_used_without_dkim(self, make_message: MakeMessage) -> None:
        message = make_message(auth_results=None)
        assert classify_message(message).merchant == "amazon"

    def test_reply_to_domain_used_without_dkim(
        self, make_message: MakeMessage
    ) -> None:
        message = make_message(
            auth_results=None,
            sender="Forwarder <me@personal.example>",
            extra_headers=[("Reply-To", "orders@amazon.com")],
        )
        assert classify_message(message).matched

    def test_excluded_subject(self, make_message: MakeMessage) -> None:
        message = make_message(subject="Rate your order")
        assert not classify_message(message).matched

    def test_include_keyword_from_body(self, make_message: MakeMessage) -> None:
        message = make_message(subject="Update", text_body="Your shipment: order #1")
        assert classify_message(message).matched

    def test_missing_body_marker(self, make_message: MakeMessage) -> None:
        message = make_message(text_body="Thanks for shopping with us")
        assert not classify_message(message).matched

    def test_html_used_when_text_empty(self, make_message: MakeMessage) -> None:
        message = make_message(
            text_body="  ",
            html_body="<p>Order number <b>112-3456789-1234567</b></p>",
        )
        assert classify_message(message).matched

    def test_case_insensitive(self, make_message: MakeMessage) -> None:
        message = make_message(subject="ORDER SHIPPED", text_body="ORDER TOTAL: $5")
        assert classify_message(message).matched

    def test_second_merchant(self, make_message: MakeMessage) -> None:
        message = make_message(
            subject="Your SHEIN order confirmation",
            sender="SHEIN <noreply@sheinemail.com>",
            auth_results="dkim=pass header.d=sheinemail.com",
            text_body="Order Number: GSUNJ12345678",
        )
        assert classify_message(message).merchant == "shein"
