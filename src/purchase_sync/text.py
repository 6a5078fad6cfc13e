"""Plain-text helpers shared by classification and extraction."""

from __future__ import annotations

import re
from html import unescape
from html.parser import HTMLParser

_SKIPPED_TAGS = frozenset({"style", "script", "head", "title"})
_BLOCK_TAGS = frozenset(
    {"br", "p", "div", "tr", "td", "th", "li", "h1", "h2", "h3", "h4", "h5", "h6"}
)
_WHITESPACE = re.compile(r"[ \t\r\f\v]+")
_BLANK_LINES = re.compile(r"\n\s*\n+")

FOCUS_KEYWORDS = (
    "order",
    "tracking",
    "shipment",
    "shipped",
    "total",
    "invoice",
)


def strip_html_to_text(html: str) -> str:
    """Remove markup, returning readable text with one block per line."""
    stripper = _HTMLTextStripper()
    stripper.feed(html)
    stripper.close()
    return stripper.get_text()


class _HTMLTextStripper(HTMLParser):
    """HTMLParser subclass that keeps text and drops style/script content."""

    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self._parts: list[str] = []
        self._skip_depth = 0

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if tag in _SKIPPED_TAGS:
            self._skip_depth += 1
        elif tag == "br":
            self._parts.append("\n")

    def handle_endtag(self, tag: str) -> None:
        if tag in _SKIPPED_TAGS:
            self._skip_depth = max(0, self._skip_depth - 1)
        elif tag in _BLOCK_TAGS:
            self._parts.append("\n")

    def handle_data(self, data: str) -> None:
        if not self._skip_depth:
            self._parts.append(data)

    def get_text(self) -> str:
        text = unescape("".join(self._parts)).replace("\xa0", " ")
        lines = (_WHITESPACE.sub(" ", line).strip() for line in text.split("\n"))
        return _BLANK_LINES.sub("\n", "\n".join(lines)).strip()


def build_focused_snippet(text: str, *, max_len: int = 4000) -> str:
    """Trim ``text`` to ``max_len`` characters.

    Long texts are windowed so that the first order/tracking keyword sits
    near the start of the window, which keeps marketing headers and
    footers out of the snippet.
    """
    text = text.strip()
    if len(text) <= max_len:
        return text

    lowered = text.lower()
    hits = [lowered.find(kw) for kw in FOCUS_KEYWORDS if kw in lowered]
    if not hits:
        return text[:max_len]

    start = max(0, min(hits) - max_len // 4)
    start = min(start, len(text) - max_len)
    return text[start : start + max_len]


def combine_message_text(
    text_body: str | None, html_body: str | None, snippet: str = ""
) -> str:
    """Join text body, stripped HTML body and snippet into one blob."""
    parts = [
        text_body or "",
        strip_html_to_text(html_body) if html_body else "",
        snippet,
    ]
    return "\n".join(part for part in parts if part)
