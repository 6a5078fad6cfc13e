"""Shared test fixtures."""

from __future__ import annotations

import json
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any
from unittest.mock import MagicMock

import pytest

from purchase_sync.models import InboundMessage
from purchase_sync.repository import InMemoryRepository

AMAZON_AUTH = (
    "mx.google.com; dkim=pass header.i=@amazon.com header.s=rjb header.d=amazon.com;"
    " spf=pass smtp.mailfrom=amazon.com"
)


def _mock_agent(output: Any = None, *, error: Exception | None = None) -> MagicMock:
    agent = MagicMock()
    if error is not None:
        agent.run_sync.side_effect = error
    else:
        result = MagicMock()
        result.output = output if isinstance(output, str) else json.dumps(output)
        agent.run_sync.return_value = result
    return agent


@pytest.fixture
def make_agent() -> Callable[..., MagicMock]:
    """Build MagicMock agents whose run_sync returns ``output`` as JSON text."""
    return _mock_agent


@pytest.fixture
def repo() -> InMemoryRepository:
    """Provide an empty in-memory repository."""
    return InMemoryRepository()


@pytest.fixture
def make_message() -> Callable[..., InboundMessage]:
    """Build an InboundMessage signed by Amazon unless told otherwise."""

    def _make(
        *,
        message_id: str = "msg-1",
        subject: str = "Your Amazon.com order has shipped",
        sender: str = "Amazon.com <shipment-tracking@amazon.com>",
        auth_results: str | None = AMAZON_AUTH,
        text_body: str | None = "Order # 112-3456789-1234567\nTrack package",
        html_body: str | None = None,
        snippet: str = "",
        extra_headers: list[tuple[str, str]] | None = None,
    ) -> InboundMessage:
        headers = [("From", sender), ("Subject", subject)]
        if auth_results is not None:
            headers.append(("Authentication-Results", auth_results))
        headers.extend(extra_headers or [])
        return InboundMessage(
            message_id=message_id,
            headers=headers,
            received_at=datetime(2025, 6, 15, 10, 30, 0, tzinfo=UTC),
            snippet=snippet,
            text_body=text_body,
            html_body=html_body,
        )

    return _make
