"""Match extraction results to purchase drafts and consolidate duplicates."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from purchase_sync.models import (
    DraftUpdate,
    PurchaseDraft,
    compute_missing_fields,
    split_order_numbers,
)

if TYPE_CHECKING:
    from uuid import UUID

    from purchase_sync.models import ExtractionResult
    from purchase_sync.repository import PurchaseRepository

logger = logging.getLogger(__name__)


@dataclass
class MergeOutcome:
    """What the merger did with one extraction."""

    draft: PurchaseDraft
    created: bool
    absorbed: list[UUID] = field(default_factory=list)


class _DisjointSet:
    """Union-find over draft ids."""

    def __init__(self) -> None:
        self.parent: dict[UUID, UUID] = {}

    def add(self, item: UUID) -> None:
        self.parent.setdefault(item, item)

    def find(self, item: UUID) -> UUID:
        root = item
        while self.parent[root] != root:
            root = self.parent[root]
        while self.parent[item] != root:
            self.parent[item], item = root, self.parent[item]
        return root

    def union(self, a: UUID, b: UUID) -> None:
        self.parent[self.find(b)] = self.find(a)


class DraftMerger:
    """Attach extraction results to the right draft for a user."""

    def __init__(self, repo: PurchaseRepository) -> None:
        self.repo = repo

    def find_existing(
        self, user_id: str, order_numbers: list[str], result: ExtractionResult
    ) -> PurchaseDraft | None:
        """Order numbers first, then tracking numbers; first hit wins."""
        for number in order_numbers:
            draft = self.repo.find_draft_by_order_number(user_id, number)
            if draft is not None:
                return draft
        for tracking in result.tracking_numbers:
            draft = self.repo.find_draft_by_tracking_number(user_id, tracking.number)
            if draft is not None:
                return draft
        return None

    def apply_extraction(
        self, user_id: str, evidence_id: UUID, result: ExtractionResult
    ) -> MergeOutcome:
        order_numbers = split_order_numbers(result.order_number)
        existing = self.find_existing(user_id, order_numbers, result)

        if existing is None:
            draft = self.repo.create_draft(
                PurchaseDraft(
                    user_id=user_id,
                    evidence_id=evidence_id,
                    merchant=result.merchant,
                    store_name=result.store_name,
                    order_numbers=order_numbers,
                    items_summary=result.items_summary,
                    value_usd=result.value_usd,
                    currency=result.currency,
                    original_value=result.original_value,
                    confidence=result.confidence,
                    invoice_present=result.invoice_present,
                    missing_fields=compute_missing_fields(
                        order_numbers=order_numbers,
                        value_usd=result.value_usd,
                        items_summary=result.items_summary,
                        has_tracking=bool(result.tracking_numbers),
                    ),
                )
            )
            created = True
            logger.info("Created draft %s for user %s", draft.id, user_id)
        else:
            draft = self.repo.update_draft(
                existing.id,
                DraftUpdate.from_extraction(result),
                incoming_tracking=bool(result.tracking_numbers),
            )
            created = False
            logger.info("Merged extraction into draft %s", draft.id)

        for tracking in result.tracking_numbers:
            self.repo.upsert_pre_alert(user_id, draft.id, tracking)

        absorbed = self.consolidate(draft)
        if absorbed:
            draft = self.repo.get_draft(draft.id) or draft
        return MergeOutcome(draft=draft, created=created, absorbed=absorbed)

    def related_drafts(self, primary: PurchaseDraft) -> list[PurchaseDraft]:
        """Drafts connected to ``primary`` through shared order numbers.

        Expands transitively: a draft found through one order number
        contributes its own order numbers to the next lookup round.
        """
        groups = _DisjointSet()
        groups.add(primary.id)
        members: dict[UUID, PurchaseDraft] = {primary.id: primary}
        searched: set[str] = set()
        frontier = set(primary.order_numbers)

        while frontier:
            searched |= frontier
            found = self.repo.find_drafts_by_order_numbers(
                primary.user_id, sorted(frontier)
            )
            frontier = set()
            for draft in found:
                groups.add(draft.id)
                shared = set(draft.order_numbers) & searched
                for other in members.values():
                    if shared & set(other.order_numbers):
                        groups.union(other.id, draft.id)
                if draft.id not in members:
                    members[draft.id] = draft
                    frontier |= set(draft.order_numbers) - searched

        root = groups.find(primary.id)
        return [
            draft
            for draft_id, draft in members.items()
            if draft_id != primary.id and groups.find(draft_id) == root
        ]

    def consolidate(self, primary: PurchaseDraft) -> list[UUID]:
        """Fold every draft sharing an order number into ``primary``."""
        absorbed: list[UUID] = []
        for duplicate in self.related_drafts(primary):
            self.repo.absorb_draft(primary.id, duplicate.id)
            absorbed.append(duplicate.id)
            logger.info("Absorbed draft %s into %s", duplicate.id, primary.id)
        return absorbed
