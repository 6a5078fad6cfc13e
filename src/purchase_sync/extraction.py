"""Purchase data extraction: template parsers first, LLM models as fallback."""

from __future__ import annotations

import json
import logging
import re
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError
from pydantic_ai import Agent, ImageUrl
from pydantic_ai.models.openai import OpenAIChatModel
from pydantic_ai.providers.openrouter import OpenRouterProvider

from purchase_sync.config import (
    get_image_models,
    get_openrouter_api_key,
    get_text_models,
)
from purchase_sync.models import LlmPurchaseData
from purchase_sync.normalizer import normalize_llm_output
from purchase_sync.parsers import extract_deterministic
from purchase_sync.text import build_focused_snippet

if TYPE_CHECKING:
    from collections.abc import Sequence

    from purchase_sync.config import ModelPair
    from purchase_sync.models import Channel, ExtractionResult

logger = logging.getLogger(__name__)

MAX_PROMPT_CHARS = 4000

_SYSTEM_PROMPT = """\
You are a purchase-data extraction engine. Given the text of an e-commerce \
email or message, extract these fields as JSON:

{
  "merchant": "string (amazon, shein, ebay, temu, or other store name)",
  "storeName": "string (display name of the store)",
  "orderNumber": "string or null",
  "itemsSummary": "string (brief summary of items purchased) or null",
  "valueTotal": "number (total value in the original currency, as a decimal \
like 49.99) or null",
  "currency": "string (ISO 4217 code like USD, GBP, JMD) or null",
  "trackingNumbers": ["string array of tracking numbers found"],
  "carrier": "string (ups, usps, fedex, dhl, amazon) or null",
  "invoicePresent": "boolean (true if message contains or references an \
invoice/receipt)",
  "confidence": "number 0-1 (your confidence in the extraction accuracy)"
}

Rules:
- Only extract data explicitly present in the text
- If a field is not found, use null; never guess
- For trackingNumbers, extract ALL tracking numbers found
- confidence should reflect how complete and certain the data is
- Return ONLY valid JSON, no markdown fences or explanation\
"""

_IMAGE_INSTRUCTION = "Extract purchase data from this image:"
_FENCE = re.compile(r"```(?:json)?\s*", re.IGNORECASE)


class ExtractionError(RuntimeError):
    """Raised when every configured model failed to return usable JSON."""


def create_extraction_agent(model_name: str, *, api_key: str) -> Agent[None, str]:
    """Create a pydantic-ai Agent for one OpenRouter model."""
    model = OpenAIChatModel(model_name, provider=OpenRouterProvider(api_key=api_key))
    return Agent(
        model,
        output_type=str,
        system_prompt=_SYSTEM_PROMPT,
        model_settings={"temperature": 0.1, "max_tokens": 1024},
    )


def _agents_for(pair: ModelPair, api_key: str) -> list[tuple[str, Agent[None, str]]]:
    return [
        (name, create_extraction_agent(name, api_key=api_key))
        for name in pair.in_order()
    ]


def parse_model_json(content: str) -> LlmPurchaseData:
    """Parse a model reply, tolerating markdown code fences around the JSON."""
    cleaned = _FENCE.sub("", content).strip()
    data = json.loads(cleaned)
    if not isinstance(data, dict):
        msg = f"Expected a JSON object, got {type(data).__name__}"
        raise ValueError(msg)
    return LlmPurchaseData.model_validate(data)


def _run_models(
    agents: Sequence[tuple[str, Agent[None, str]]], prompt: Any
) -> LlmPurchaseData:
    """Try each model in order and return the first parseable reply."""
    for name, agent in agents:
        try:
            result: Any = agent.run_sync(prompt)
        except Exception:
            logger.warning("Extraction model %s failed", name, exc_info=True)
            continue

        content = result.output
        if not content or not str(content).strip():
            logger.warning("Extraction model %s returned empty content", name)
            continue
        try:
            return parse_model_json(str(content))
        except (ValueError, ValidationError):
            logger.warning("Extraction model %s returned invalid JSON", name)
            continue

    msg = "All extraction models failed"
    raise ExtractionError(msg)


class PurchaseExtractor:
    """Two-tier extractor: deterministic merchant parsers, then LLM models.

    Agents are injected as ``(model name, agent)`` pairs in priority
    order, which keeps tests free of network access.
    """

    def __init__(
        self,
        text_agents: Sequence[tuple[str, Agent[None, str]]],
        image_agents: Sequence[tuple[str, Agent[None, str]]] = (),
    ) -> None:
        self.text_agents = list(text_agents)
        self.image_agents = list(image_agents)

    @classmethod
    def from_config(cls) -> PurchaseExtractor:
        """Build agents from the environment, failing fast without an API key."""
        api_key = get_openrouter_api_key()
        return cls(
            text_agents=_agents_for(get_text_models(), api_key),
            image_agents=_agents_for(get_image_models(), api_key),
        )

    def extract(
        self,
        text: str,
        *,
        channel: Channel = "gmail",
        merchant: str | None = None,
    ) -> ExtractionResult:
        """Extract from message text, using the template parser when it suffices."""
        result = extract_deterministic(merchant, text)
        if result is not None:
            logger.debug("Deterministic extraction accepted for %s", merchant)
            return result
        return self.extract_text(text, channel=channel, merchant_hint=merchant)

    def extract_text(
        self,
        text: str,
        *,
        channel: Channel = "gmail",
        merchant_hint: str | None = None,
    ) -> ExtractionResult:
        focused = build_focused_snippet(text, max_len=MAX_PROMPT_CHARS)
        header = f"Source: {channel}"
        if merchant_hint:
            header += f"\nMerchant hint: {merchant_hint}"
        data = _run_models(self.text_agents, f"{header}\n\n{focused}")
        return normalize_llm_output(data, focused, merchant_hint=merchant_hint)

    def extract_image(self, image_url: str) -> ExtractionResult:
        """Extract from a screenshot or receipt photo."""
        data = _run_models(
            self.image_agents, [_IMAGE_INSTRUCTION, ImageUrl(url=image_url)]
        )
        return normalize_llm_output(data, "")
