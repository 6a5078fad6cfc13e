"""Message source protocol."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from purchase_sync.models import InboundMessage


@runtime_checkable
class MessageSource(Protocol):
    """Protocol for mailbox adapters feeding the sync pipeline."""

    def list_message_ids(
        self,
        days_back: int,
        query: str | None = None,
        page_token: str | None = None,
        max_results: int = 100,
    ) -> tuple[list[str], str | None]: ...

    def get_message(self, message_id: str) -> InboundMessage: ...

    def list_added_message_ids(self, cursor: str) -> list[str]: ...

    def close(self) -> None: ...
