"""Ingestion orchestration: mailbox candidate selection and per-message pipeline."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from purchase_sync.classifier import classify_message
from purchase_sync.drafts import DraftMerger
from purchase_sync.merchants import BACKSTOP_SUBJECT_KEYWORDS, MERCHANTS
from purchase_sync.models import Evidence
from purchase_sync.text import build_focused_snippet, combine_message_text

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from purchase_sync.adapters.base import MessageSource
    from purchase_sync.extraction import PurchaseExtractor
    from purchase_sync.models import Channel, ExtractionResult, MailAccount
    from purchase_sync.repository import PurchaseRepository

logger = logging.getLogger(__name__)

DEFAULT_DAYS_BACK = 7
DEFAULT_MAX_MESSAGES = 500
MAX_MESSAGES_LIMIT = 2000
MAX_PAGES = 5
PAGE_SIZE = 100
SNIPPET_MAX_LEN = 4000
MIN_TEXT_LENGTH = 10
IMAGE_PLACEHOLDER = "[Image]"
CATCHUP_INTERVAL = timedelta(minutes=25)
CATCHUP_DAYS_BACK = 1

INSUFFICIENT_CORE_FIELDS = "insufficient_core_fields"


@dataclass
class SyncStats:
    """Counters for one sync run."""

    scanned: int = 0
    processed: int = 0
    drafts_created: int = 0
    drafts_updated: int = 0
    failed: int = 0

    def add(self, other: SyncStats) -> None:
        self.scanned += other.scanned
        self.processed += other.processed
        self.drafts_created += other.drafts_created
        self.drafts_updated += other.drafts_updated
        self.failed += other.failed


def merchant_queries() -> list[str]:
    """One domain-targeted search per configured merchant."""
    queries = []
    for merchant in MERCHANTS.values():
        domains = dict.fromkeys((*merchant.dkim_allow, *merchant.from_allow))
        if not domains:
            continue
        from_query = " OR ".join(f"from:{domain}" for domain in domains)
        queries.append(f"({from_query}) OR subject:{merchant.display_name}")
    return queries


def backstop_query() -> str:
    """Subject-keyword search catching receipts from unlisted senders."""
    return f"subject:({' OR '.join(BACKSTOP_SUBJECT_KEYWORDS)})"


class SyncService:
    """Run mailbox syncs and single-message ingestion against a repository.

    ``source_factory`` returns the message source for a user id; building
    it is where missing credentials surface, before any message is read.
    """

    def __init__(
        self,
        repo: PurchaseRepository,
        extractor: PurchaseExtractor,
        source_factory: Callable[[str], MessageSource],
    ) -> None:
        self.repo = repo
        self.extractor = extractor
        self.source_factory = source_factory
        self.merger = DraftMerger(repo)

    def _sync_enabled(self, user_id: str) -> bool:
        prefs = self.repo.get_preferences(user_id)
        return prefs is None or prefs.mail_sync_enabled

    # Candidate selection

    def _list_pages(
        self,
        source: MessageSource,
        days_back: int,
        query: str | None,
        seen: dict[str, None],
        limit: int | None = None,
        max_pages: int = MAX_PAGES,
    ) -> None:
        page_token: str | None = None
        for _page in range(max_pages):
            if limit is not None and len(seen) >= limit:
                return
            ids, page_token = source.list_message_ids(
                days_back, query=query, page_token=page_token, max_results=PAGE_SIZE
            )
            for message_id in ids:
                seen.setdefault(message_id, None)
            if not page_token:
                return

    def collect_candidates(
        self,
        source: MessageSource,
        *,
        days_back: int = DEFAULT_DAYS_BACK,
        query: str | None = None,
        max_messages: int = DEFAULT_MAX_MESSAGES,
    ) -> list[str]:
        """Deduplicated candidate ids in discovery order.

        ``max_messages`` bounds the paginated listing; the per-merchant and
        keyword searches always add their first page on top of it.
        """
        limit = min(max(max_messages, 1), MAX_MESSAGES_LIMIT)
        seen: dict[str, None] = {}
        if query:
            self._list_pages(source, days_back, query, seen, limit)
        else:
            self._list_pages(source, days_back, None, seen, limit)
            for targeted in (*merchant_queries(), backstop_query()):
                self._list_pages(source, days_back, targeted, seen, max_pages=1)
        return list(seen)

    # Per-message pipeline

    def process_message(
        self, user_id: str, source: MessageSource, message_id: str, stats: SyncStats
    ) -> None:
        """Run one candidate through classify, extract and merge.

        Failures are recorded on the message's Evidence; they never
        propagate to the caller.
        """
        if self.repo.get_evidence("gmail", message_id) is not None:
            logger.debug("Skipping already-processed message %s", message_id)
            return

        evidence: Evidence | None = None
        try:
            message = source.get_message(message_id)
            classification = classify_message(message)
            if not classification.matched:
                logger.debug("Message %s: %s", message_id, classification.reason)
                return

            text = combine_message_text(
                message.text_body, message.html_body, message.snippet
            )
            snippet = build_focused_snippet(text, max_len=SNIPPET_MAX_LEN)
            evidence = self.repo.create_evidence(
                Evidence(
                    user_id=user_id,
                    source="gmail",
                    source_message_id=message_id,
                    merchant=classification.merchant,
                    raw_text_snippet=snippet,
                    received_at=message.received_at,
                    processed_at=datetime.now(tz=UTC),
                )
            )
            if evidence is None:
                # Another run claimed this message between the check and the insert.
                logger.debug("Evidence for %s already exists", message_id)
                return

            result = self.extractor.extract(
                text, channel="gmail", merchant=classification.merchant
            )
            self._record_extraction(user_id, evidence, result, stats)
        except Exception as exc:
            stats.failed += 1
            logger.warning("Failed to process message %s", message_id, exc_info=True)
            if evidence is not None:
                self.repo.complete_evidence(evidence.id, "failed", error=str(exc))

    def _record_extraction(
        self,
        user_id: str,
        evidence: Evidence,
        result: ExtractionResult,
        stats: SyncStats,
    ) -> None:
        """Merge an extraction into drafts and close out its Evidence."""
        if not result.has_core_fields:
            self.repo.complete_evidence(
                evidence.id, "failed", error=INSUFFICIENT_CORE_FIELDS
            )
            stats.processed += 1
            return

        outcome = self.merger.apply_extraction(user_id, evidence.id, result)
        self.repo.complete_evidence(evidence.id, "extracted")
        stats.processed += 1
        if outcome.created:
            stats.drafts_created += 1
        else:
            stats.drafts_updated += 1

    def process_messages(
        self, user_id: str, source: MessageSource, message_ids: Iterable[str]
    ) -> SyncStats:
        stats = SyncStats()
        for message_id in message_ids:
            stats.scanned += 1
            self.process_message(user_id, source, message_id, stats)
        return stats

    def ingest_message(
        self,
        user_id: str,
        channel: Channel,
        source_message_id: str,
        *,
        text: str | None = None,
        image_url: str | None = None,
        received_at: datetime | None = None,
    ) -> SyncStats:
        """Ingest one chat or manually submitted message.

        Text runs through the same two-tier extractor as email. With
        ``image_url`` the vision models read the image and ``text`` is kept
        only as its caption. Text-only messages shorter than
        ``MIN_TEXT_LENGTH`` characters are ignored.
        """
        stats = SyncStats(scanned=1)
        if self.repo.get_evidence(channel, source_message_id) is not None:
            logger.debug("Skipping already-processed %s message", channel)
            return stats

        body = (text or "").strip()
        if image_url is None and len(body) < MIN_TEXT_LENGTH:
            logger.debug("Ignoring short %s message %s", channel, source_message_id)
            return stats

        now = datetime.now(tz=UTC)
        snippet = body[:SNIPPET_MAX_LEN]
        if image_url is not None:
            snippet = snippet or IMAGE_PLACEHOLDER
        evidence = self.repo.create_evidence(
            Evidence(
                user_id=user_id,
                source=channel,
                source_message_id=source_message_id,
                raw_text_snippet=snippet,
                received_at=received_at or now,
                processed_at=now,
            )
        )
        if evidence is None:
            return stats

        try:
            if image_url is not None:
                result = self.extractor.extract_image(image_url)
            else:
                result = self.extractor.extract(snippet, channel=channel)
            self._record_extraction(user_id, evidence, result, stats)
        except Exception as exc:
            stats.failed += 1
            logger.warning(
                "Failed to ingest %s message %s",
                channel,
                source_message_id,
                exc_info=True,
            )
            self.repo.complete_evidence(evidence.id, "failed", error=str(exc))
        return stats

    # Entry points

    def sync_full(
        self,
        user_id: str,
        *,
        days_back: int = DEFAULT_DAYS_BACK,
        query: str | None = None,
        max_messages: int = DEFAULT_MAX_MESSAGES,
    ) -> SyncStats:
        """Scan the recent mailbox window for a user."""
        if not self._sync_enabled(user_id):
            logger.info("Mail sync disabled for user %s", user_id)
            return SyncStats()

        source = self.source_factory(user_id)
        try:
            candidates = self.collect_candidates(
                source, days_back=days_back, query=query, max_messages=max_messages
            )
            stats = self.process_messages(user_id, source, candidates)
        finally:
            source.close()

        account = self.repo.get_account_by_user(user_id)
        if account is not None:
            self.repo.mark_account_synced(account.id, datetime.now(tz=UTC))
        logger.info(
            "Full sync for %s: %d scanned, %d processed, %d created, %d updated",
            user_id,
            stats.scanned,
            stats.processed,
            stats.drafts_created,
            stats.drafts_updated,
        )
        return stats

    def sync_incremental(self, email: str, new_cursor: str) -> SyncStats:
        """Process messages added since the account's stored cursor."""
        account = self.repo.get_account_by_email(email)
        if account is None or account.status != "active":
            logger.info("No active mail account for %s", email)
            return SyncStats()
        if not self._sync_enabled(account.user_id):
            logger.info("Mail sync disabled for user %s", account.user_id)
            return SyncStats()

        if not account.cursor:
            stats = self.sync_full(account.user_id, days_back=DEFAULT_DAYS_BACK)
            self.repo.set_account_cursor(account.id, new_cursor)
            return stats

        source = self.source_factory(account.user_id)
        try:
            message_ids = source.list_added_message_ids(account.cursor)
            self.repo.set_account_cursor(account.id, new_cursor)
            stats = self.process_messages(account.user_id, source, message_ids)
        finally:
            source.close()
        self.repo.mark_account_synced(account.id, datetime.now(tz=UTC))
        logger.info(
            "Incremental sync for %s: %d checked, %d created, %d updated",
            email,
            stats.scanned,
            stats.drafts_created,
            stats.drafts_updated,
        )
        return stats

    def _catchup_due(self, account: MailAccount, now: datetime) -> bool:
        if account.last_sync_at is None:
            return True
        return now - account.last_sync_at >= CATCHUP_INTERVAL

    def catchup(self, now: datetime | None = None) -> SyncStats:
        """One-day sync for every active account not synced recently.

        A failing account is logged and skipped. ``ValueError`` signals
        missing configuration shared by every account and aborts the run.
        """
        now = now or datetime.now(tz=UTC)
        total = SyncStats()
        for account in self.repo.list_active_accounts():
            if not self._catchup_due(account, now):
                continue
            try:
                total.add(self.sync_full(account.user_id, days_back=CATCHUP_DAYS_BACK))
            except ValueError:
                raise
            except Exception:
                logger.error(
                    "Catch-up sync failed for user %s", account.user_id, exc_info=True
                )
        return total
