"""Carrier tracking number detection over free text."""

from __future__ import annotations

import re

from purchase_sync.models import TrackingNumber

# (carrier, pattern) for numbers whose shape alone identifies the carrier.
CARRIER_PATTERNS: tuple[tuple[str | None, re.Pattern[str]], ...] = (
    ("ups", re.compile(r"\b1Z[0-9A-Z]{16}\b", re.IGNORECASE)),
    ("usps", re.compile(r"\b9[1-5]\d{20}\b")),
    ("amazon", re.compile(r"\bTBA\d{12}\b", re.IGNORECASE)),
    ("yunexpress", re.compile(r"\bYT\d{16}\b", re.IGNORECASE)),
    ("dhl", re.compile(r"\bGM\d{16,18}\b", re.IGNORECASE)),
    # UPU S10 international postal items, e.g. LX123456789CN
    (None, re.compile(r"\b[A-Z]{2}\d{9}[A-Z]{2}\b")),
)

# "Tracking number: X" where X carries at least one digit.
_LABELLED = re.compile(
    r"\btrack(?:ing)?\s*(?:number|no\.?|#|id)?\s*(?:is\s+)?[:#]?\s*"
    r"(?=[A-Z0-9]*\d)([A-Z0-9]{8,34})\b",
    re.IGNORECASE,
)

_DIGITS_ONLY = re.compile(r"\d+")


def infer_carrier(number: str) -> str | None:
    """Guess the carrier from the shape of a tracking number."""
    candidate = number.strip().upper()
    for carrier, pattern in CARRIER_PATTERNS:
        if pattern.fullmatch(candidate):
            if carrier is None and candidate.endswith("US"):
                return "usps"
            return carrier
    if _DIGITS_ONLY.fullmatch(candidate):
        if len(candidate) in (12, 15):
            return "fedex"
        if len(candidate) == 10:
            return "dhl"
    return None


def detect_tracking_numbers(text: str) -> list[TrackingNumber]:
    """Return tracking numbers found in ``text``, in order of appearance.

    Numbers are trimmed, upper-cased and deduplicated.
    """
    if not text:
        return []

    hits: list[tuple[int, str, str | None]] = []
    for carrier, pattern in CARRIER_PATTERNS:
        for match in pattern.finditer(text):
            number = match.group(0).strip().upper()
            if carrier is None:
                hits.append((match.start(), number, infer_carrier(number)))
            else:
                hits.append((match.start(), number, carrier))
    for match in _LABELLED.finditer(text):
        number = match.group(1).strip().upper()
        hits.append((match.start(1), number, infer_carrier(number)))

    found: dict[str, TrackingNumber] = {}
    for _start, number, carrier in sorted(hits, key=lambda hit: hit[0]):
        if number not in found:
            found[number] = TrackingNumber(number=number, carrier=carrier)
    return list(found.values())
