"""Configuration via environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()

DEFAULT_TEXT_PRIMARY_MODEL = "google/gemini-2.0-flash-001"
DEFAULT_TEXT_FALLBACK_MODEL = "mistralai/mistral-small-latest"


@dataclass(frozen=True)
class ModelPair:
    """Primary and fallback model identifiers for one input modality."""

    primary: str
    fallback: str

    def in_order(self) -> tuple[str, str]:
        return (self.primary, self.fallback)


def get_database_url() -> str:
    """Return the DATABASE_URL from the environment."""
    url = os.environ.get("DATABASE_URL")
    if not url:
        msg = "DATABASE_URL environment variable is required"
        raise ValueError(msg)
    return url


def get_openrouter_api_key() -> str:
    """Return the OPENROUTER_API_KEY from the environment."""
    key = os.environ.get("OPENROUTER_API_KEY")
    if not key:
        msg = "OPENROUTER_API_KEY environment variable is required"
        raise ValueError(msg)
    return key


def get_gmail_access_token() -> str:
    """Return the Gmail bearer token supplied by the external token manager."""
    token = os.environ.get("GMAIL_ACCESS_TOKEN")
    if not token:
        msg = "GMAIL_ACCESS_TOKEN environment variable is required"
        raise ValueError(msg)
    return token


def get_text_models() -> ModelPair:
    """Return the model pair used for text extraction.

    Defaults to Gemini Flash with Mistral Small as fallback.
    """
    return ModelPair(
        primary=os.environ.get("LLM_TEXT_PRIMARY_MODEL", DEFAULT_TEXT_PRIMARY_MODEL),
        fallback=os.environ.get(
            "LLM_TEXT_FALLBACK_MODEL", DEFAULT_TEXT_FALLBACK_MODEL
        ),
    )


def get_image_models() -> ModelPair:
    """Return the model pair used for image extraction.

    Images go to the OCR-oriented model first, so the defaults are the
    text pair in reverse order.
    """
    text = get_text_models()
    return ModelPair(
        primary=os.environ.get("LLM_IMAGE_PRIMARY_MODEL", text.fallback),
        fallback=os.environ.get("LLM_IMAGE_FALLBACK_MODEL", text.primary),
    )
