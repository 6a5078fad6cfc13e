"""Gmail REST API source adapter."""

from __future__ import annotations

import base64
import binascii
import json
import logging
from datetime import UTC, datetime, timedelta
from email import message_from_bytes
from email.header import decode_header
from typing import TYPE_CHECKING, Any, cast

import httpx

from purchase_sync.config import get_gmail_access_token
from purchase_sync.models import InboundMessage

if TYPE_CHECKING:
    from email.message import Message

logger = logging.getLogger(__name__)

GMAIL_API_URL = "https://gmail.googleapis.com/gmail/v1/users/me"


def _b64url_decode(data: str) -> bytes:
    """Decode base64url, tolerating stripped padding."""
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


def parse_push_payload(payload: dict[str, Any]) -> tuple[str, str]:
    """Return ``(account email, new cursor)`` from a webhook payload.

    Accepts either the direct form ``{"accountIdentifier", "newCursor"}``
    or a Pub/Sub push envelope whose ``message.data`` is base64 JSON
    carrying ``emailAddress`` and ``historyId``.
    """
    if "accountIdentifier" in payload:
        account, cursor = payload.get("accountIdentifier"), payload.get("newCursor")
    else:
        message = payload.get("message")
        if not isinstance(message, dict) or not message.get("data"):
            msg = "Push payload has neither accountIdentifier nor message.data"
            raise ValueError(msg)
        try:
            decoded = json.loads(_b64url_decode(str(message["data"])))
        except (binascii.Error, ValueError) as exc:
            msg = "Push payload message.data is not base64 JSON"
            raise ValueError(msg) from exc
        if not isinstance(decoded, dict):
            msg = "Push payload message.data is not a JSON object"
            raise ValueError(msg)
        account, cursor = decoded.get("emailAddress"), decoded.get("historyId")

    if not account or cursor is None or cursor == "":
        msg = "Push payload is missing the account or the cursor"
        raise ValueError(msg)
    return str(account), str(cursor)


class GmailAdapter:
    """Read messages from one Gmail mailbox over the REST API.

    The bearer token is supplied by the caller; token refresh happens
    elsewhere. Pass ``client`` to inject a preconfigured ``httpx.Client``;
    an injected client is left open by ``close()``.
    """

    def __init__(
        self,
        access_token: str,
        *,
        client: httpx.Client | None = None,
        base_url: str = GMAIL_API_URL,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self.client = client or httpx.Client()
        self.headers = {"Authorization": f"Bearer {access_token}"}

    @classmethod
    def from_config(cls) -> GmailAdapter:
        """Build an adapter from ``GMAIL_ACCESS_TOKEN``."""
        return cls(get_gmail_access_token())

    def close(self) -> None:
        """Release the HTTP connection pool if this adapter created it."""
        if self._owns_client:
            self.client.close()

    def __enter__(self) -> GmailAdapter:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _get(self, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        response = self.client.get(
            f"{self.base_url}{path}", params=params, headers=self.headers
        )
        response.raise_for_status()
        return cast("dict[str, Any]", response.json())

    def list_message_ids(
        self,
        days_back: int,
        query: str | None = None,
        page_token: str | None = None,
        max_results: int = 100,
    ) -> tuple[list[str], str | None]:
        """List one page of message ids received within ``days_back`` days."""
        since = datetime.now(tz=UTC) - timedelta(days=days_back)
        q = f"after:{since.year}/{since.month}/{since.day}"
        if query:
            q = f"{q} {query}"
        params: dict[str, Any] = {"q": q, "maxResults": max_results}
        if page_token:
            params["pageToken"] = page_token

        data = self._get("/messages", params)
        ids = [m["id"] for m in data.get("messages", []) if m.get("id")]
        return ids, data.get("nextPageToken")

    def list_added_message_ids(self, cursor: str) -> list[str]:
        """Ids of messages added since history id ``cursor``, in history order."""
        ids: dict[str, None] = {}
        page_token: str | None = None
        while True:
            params: dict[str, Any] = {
                "startHistoryId": cursor,
                "historyTypes": "messageAdded",
            }
            if page_token:
                params["pageToken"] = page_token
            data = self._get("/history", params)
            for record in data.get("history", []):
                for added in record.get("messagesAdded", []):
                    message_id = added.get("message", {}).get("id")
                    if message_id:
                        ids.setdefault(message_id, None)
            page_token = data.get("nextPageToken")
            if not page_token:
                break
        logger.debug("History since %s added %d messages", cursor, len(ids))
        return list(ids)

    def get_message(self, message_id: str) -> InboundMessage:
        """Fetch one message in raw form and decode its text parts."""
        data = self._get(f"/messages/{message_id}", {"format": "raw"})
        msg = message_from_bytes(_b64url_decode(data.get("raw", "")))

        headers = [
            (key, self._decode_header_value(value)) for key, value in msg.items()
        ]
        html_body, text_body = self._extract_bodies(msg)

        internal_date = data.get("internalDate")
        received_at = (
            datetime.fromtimestamp(int(internal_date) / 1000, tz=UTC)
            if internal_date
            else datetime.now(tz=UTC)
        )

        return InboundMessage(
            message_id=data.get("id", message_id),
            headers=headers,
            received_at=received_at,
            snippet=data.get("snippet", ""),
            text_body=text_body,
            html_body=html_body,
        )

    @staticmethod
    def _decode_header_value(value: str | None) -> str:
        """Decode an RFC 2047 encoded header value."""
        if not value:
            return ""
        decoded_parts: list[str] = []
        for data, charset in decode_header(str(value)):
            if isinstance(data, bytes):
                decoded_parts.append(data.decode(charset or "utf-8", errors="replace"))
            else:
                decoded_parts.append(data)
        return "".join(decoded_parts)

    @staticmethod
    def _extract_bodies(msg: Message) -> tuple[str | None, str | None]:
        """Return the first inline html and text bodies; attachments are skipped."""
        html_body: str | None = None
        text_body: str | None = None

        for part in msg.walk():
            if part.get_content_maintype() == "multipart":
                continue
            disposition = str(part.get("Content-Disposition", "")).lower()
            if part.get_filename() or "attachment" in disposition:
                continue

            content_type = part.get_content_type()
            if content_type not in ("text/html", "text/plain"):
                continue
            raw_payload = part.get_payload(decode=True)
            if raw_payload is None:
                continue
            text = cast("bytes", raw_payload).decode(
                part.get_content_charset() or "utf-8", errors="replace"
            )
            if content_type == "text/html" and html_body is None:
                html_body = text
            elif content_type == "text/plain" and text_body is None:
                text_body = text

        return html_body, text_body
