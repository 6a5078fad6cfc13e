"""Persistence port for evidence, drafts, pre-alerts and mail accounts.

Two implementations: ``InMemoryRepository`` for tests and dry runs, and
``PostgresRepository`` on psycopg. Draft precedence rules live in
``DraftUpdate.apply_to``; both implementations apply it inside their
update operations so callers cannot bypass them.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Protocol

from purchase_sync.models import (
    REDACTED_SNIPPET,
    DraftUpdate,
    Evidence,
    MailAccount,
    PackagePreAlert,
    PurchaseDraft,
    UserPreferences,
)

if TYPE_CHECKING:
    from uuid import UUID

    import psycopg

    from purchase_sync.models import Channel, EvidenceStatus, TrackingNumber


class PurchaseRepository(Protocol):
    """Storage operations the ingestion pipeline relies on."""

    def get_evidence(
        self, source: Channel, source_message_id: str
    ) -> Evidence | None: ...

    def create_evidence(self, evidence: Evidence) -> Evidence | None: ...

    def complete_evidence(
        self, evidence_id: UUID, status: EvidenceStatus, error: str | None = None
    ) -> None: ...

    def get_draft(self, draft_id: UUID) -> PurchaseDraft | None: ...

    def find_draft_by_order_number(
        self, user_id: str, order_number: str
    ) -> PurchaseDraft | None: ...

    def find_drafts_by_order_numbers(
        self, user_id: str, order_numbers: list[str]
    ) -> list[PurchaseDraft]: ...

    def find_draft_by_tracking_number(
        self, user_id: str, tracking_number: str
    ) -> PurchaseDraft | None: ...

    def has_pre_alerts(self, draft_id: UUID) -> bool: ...

    def list_pre_alerts(self, draft_id: UUID) -> list[PackagePreAlert]: ...

    def create_draft(self, draft: PurchaseDraft) -> PurchaseDraft: ...

    def update_draft(
        self, draft_id: UUID, update: DraftUpdate, *, incoming_tracking: bool = False
    ) -> PurchaseDraft: ...

    def absorb_draft(self, primary_id: UUID, duplicate_id: UUID) -> PurchaseDraft: ...

    def confirm_draft(self, draft_id: UUID) -> PurchaseDraft: ...

    def reject_draft(self, draft_id: UUID) -> PurchaseDraft: ...

    def upsert_pre_alert(
        self, user_id: str, draft_id: UUID, tracking: TrackingNumber
    ) -> PackagePreAlert: ...

    def get_account_by_user(self, user_id: str) -> MailAccount | None: ...

    def get_account_by_email(self, email: str) -> MailAccount | None: ...

    def list_active_accounts(self) -> list[MailAccount]: ...

    def set_account_cursor(self, account_id: UUID, cursor: str) -> None: ...

    def mark_account_synced(self, account_id: UUID, synced_at: datetime) -> None: ...

    def get_preferences(self, user_id: str) -> UserPreferences | None: ...


def _now() -> datetime:
    return datetime.now(tz=UTC)


class InMemoryRepository:
    """Dictionary-backed repository."""

    def __init__(self) -> None:
        self.evidence: dict[UUID, Evidence] = {}
        self.drafts: dict[UUID, PurchaseDraft] = {}
        self.pre_alerts: dict[UUID, PackagePreAlert] = {}
        self.accounts: dict[UUID, MailAccount] = {}
        self.preferences: dict[str, UserPreferences] = {}

    # Evidence

    def get_evidence(self, source: Channel, source_message_id: str) -> Evidence | None:
        for evidence in self.evidence.values():
            if (
                evidence.source == source
                and evidence.source_message_id == source_message_id
            ):
                return evidence
        return None

    def create_evidence(self, evidence: Evidence) -> Evidence | None:
        if self.get_evidence(evidence.source, evidence.source_message_id):
            return None
        self.evidence[evidence.id] = evidence
        return evidence

    def complete_evidence(
        self, evidence_id: UUID, status: EvidenceStatus, error: str | None = None
    ) -> None:
        current = self.evidence[evidence_id]
        self.evidence[evidence_id] = current.model_copy(
            update={
                "status": status,
                "extraction_error": error,
                "raw_text_snippet": REDACTED_SNIPPET,
                "processed_at": _now(),
            }
        )

    # Drafts

    def get_draft(self, draft_id: UUID) -> PurchaseDraft | None:
        return self.drafts.get(draft_id)

    def find_draft_by_order_number(
        self, user_id: str, order_number: str
    ) -> PurchaseDraft | None:
        matches = self.find_drafts_by_order_numbers(user_id, [order_number])
        return matches[0] if matches else None

    def find_drafts_by_order_numbers(
        self, user_id: str, order_numbers: list[str]
    ) -> list[PurchaseDraft]:
        needles = {n.strip().upper() for n in order_numbers if n.strip()}
        if not needles:
            return []
        return [
            draft
            for draft in self.drafts.values()
            if draft.user_id == user_id and needles.intersection(draft.order_numbers)
        ]

    def find_draft_by_tracking_number(
        self, user_id: str, tracking_number: str
    ) -> PurchaseDraft | None:
        needle = tracking_number.strip().upper()
        for pre_alert in self.pre_alerts.values():
            if pre_alert.user_id == user_id and pre_alert.tracking_number == needle:
                return self.drafts.get(pre_alert.purchase_draft_id)
        return None

    def has_pre_alerts(self, draft_id: UUID) -> bool:
        return any(pa.purchase_draft_id == draft_id for pa in self.pre_alerts.values())

    def list_pre_alerts(self, draft_id: UUID) -> list[PackagePreAlert]:
        return [
            pa for pa in self.pre_alerts.values() if pa.purchase_draft_id == draft_id
        ]

    def create_draft(self, draft: PurchaseDraft) -> PurchaseDraft:
        self.drafts[draft.id] = draft
        return draft

    def update_draft(
        self, draft_id: UUID, update: DraftUpdate, *, incoming_tracking: bool = False
    ) -> PurchaseDraft:
        current = self.drafts[draft_id]
        has_tracking = incoming_tracking or self.has_pre_alerts(draft_id)
        updated = update.apply_to(current, has_tracking=has_tracking)
        self.drafts[draft_id] = updated
        return updated

    def absorb_draft(self, primary_id: UUID, duplicate_id: UUID) -> PurchaseDraft:
        # Everything is computed before the first mutation.
        primary = self.drafts[primary_id]
        duplicate = self.drafts[duplicate_id]
        has_tracking = self.has_pre_alerts(primary_id) or self.has_pre_alerts(
            duplicate_id
        )
        merged = DraftUpdate.from_draft(duplicate).apply_to(
            primary, has_tracking=has_tracking
        )
        moved = {
            pa.id: pa.model_copy(update={"purchase_draft_id": primary_id})
            for pa in self.list_pre_alerts(duplicate_id)
        }

        self.drafts[primary_id] = merged
        self.pre_alerts.update(moved)
        del self.drafts[duplicate_id]
        return merged

    def confirm_draft(self, draft_id: UUID) -> PurchaseDraft:
        confirmed = self.drafts[draft_id].model_copy(update={"status": "confirmed"})
        self.drafts[draft_id] = confirmed
        for pa_id, pre_alert in self.pre_alerts.items():
            if pre_alert.purchase_draft_id == draft_id and pre_alert.status == "draft":
                self.pre_alerts[pa_id] = pre_alert.model_copy(
                    update={"status": "confirmed"}
                )
        return confirmed

    def reject_draft(self, draft_id: UUID) -> PurchaseDraft:
        rejected = self.drafts[draft_id].model_copy(update={"status": "rejected"})
        self.drafts[draft_id] = rejected
        return rejected

    def upsert_pre_alert(
        self, user_id: str, draft_id: UUID, tracking: TrackingNumber
    ) -> PackagePreAlert:
        number = tracking.number.strip().upper()
        for pa_id, pre_alert in self.pre_alerts.items():
            if pre_alert.user_id == user_id and pre_alert.tracking_number == number:
                updated = pre_alert.model_copy(
                    update={
                        "purchase_draft_id": draft_id,
                        "carrier": pre_alert.carrier or tracking.carrier,
                    }
                )
                self.pre_alerts[pa_id] = updated
                return updated
        created = PackagePreAlert(
            user_id=user_id,
            purchase_draft_id=draft_id,
            tracking_number=number,
            carrier=tracking.carrier,
        )
        self.pre_alerts[created.id] = created
        return created

    # Accounts and preferences

    def add_account(self, account: MailAccount) -> MailAccount:
        self.accounts[account.id] = account
        return account

    def set_preferences(self, preferences: UserPreferences) -> None:
        self.preferences[preferences.user_id] = preferences

    def get_account_by_user(self, user_id: str) -> MailAccount | None:
        for account in self.accounts.values():
            if account.user_id == user_id:
                return account
        return None

    def get_account_by_email(self, email: str) -> MailAccount | None:
        wanted = email.strip().lower()
        for account in self.accounts.values():
            if account.email.lower() == wanted:
                return account
        return None

    def list_active_accounts(self) -> list[MailAccount]:
        return [a for a in self.accounts.values() if a.status == "active"]

    def set_account_cursor(self, account_id: UUID, cursor: str) -> None:
        account = self.accounts[account_id]
        self.accounts[account_id] = account.model_copy(update={"cursor": cursor})

    def mark_account_synced(self, account_id: UUID, synced_at: datetime) -> None:
        account = self.accounts[account_id]
        self.accounts[account_id] = account.model_copy(
            update={"last_sync_at": synced_at}
        )

    def get_preferences(self, user_id: str) -> UserPreferences | None:
        return self.preferences.get(user_id)


_DRAFT_COLUMNS = (
    "merchant",
    "store_name",
    "order_numbers",
    "items_summary",
    "value_usd",
    "currency",
    "original_value",
    "confidence",
    "missing_fields",
    "invoice_present",
)


class PostgresRepository:
    """psycopg implementation; expects an autocommit connection."""

    def __init__(self, conn: psycopg.Connection[dict[str, Any]]) -> None:
        self.conn = conn

    def _one(self, query: str, params: tuple[Any, ...]) -> dict[str, Any] | None:
        return self.conn.execute(query, params).fetchone()  # type: ignore[arg-type]

    def _all(self, query: str, params: tuple[Any, ...]) -> list[dict[str, Any]]:
        return self.conn.execute(query, params).fetchall()  # type: ignore[arg-type]

    # Evidence

    def get_evidence(self, source: Channel, source_message_id: str) -> Evidence | None:
        row = self._one(
            "SELECT * FROM evidence WHERE source = %s AND source_message_id = %s",
            (source, source_message_id),
        )
        return Evidence.model_validate(row) if row else None

    def create_evidence(self, evidence: Evidence) -> Evidence | None:
        row = self._one(
            """
            INSERT INTO evidence (id, user_id, source, source_message_id, merchant,
                raw_text_snippet, received_at, processed_at, status, extraction_error)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (source, source_message_id) DO NOTHING
            RETURNING *
            """,
            (
                evidence.id,
                evidence.user_id,
                evidence.source,
                evidence.source_message_id,
                evidence.merchant,
                evidence.raw_text_snippet,
                evidence.received_at,
                evidence.processed_at,
                evidence.status,
                evidence.extraction_error,
            ),
        )
        return Evidence.model_validate(row) if row else None

    def complete_evidence(
        self, evidence_id: UUID, status: EvidenceStatus, error: str | None = None
    ) -> None:
        self.conn.execute(
            """
            UPDATE evidence
            SET status = %s, extraction_error = %s, raw_text_snippet = %s,
                processed_at = %s
            WHERE id = %s
            """,
            (status, error, REDACTED_SNIPPET, _now(), evidence_id),
        )

    # Drafts

    def get_draft(self, draft_id: UUID) -> PurchaseDraft | None:
        row = self._one("SELECT * FROM purchase_drafts WHERE id = %s", (draft_id,))
        return PurchaseDraft.model_validate(row) if row else None

    def find_draft_by_order_number(
        self, user_id: str, order_number: str
    ) -> PurchaseDraft | None:
        row = self._one(
            """
            SELECT * FROM purchase_drafts
            WHERE user_id = %s AND %s = ANY(order_numbers)
            LIMIT 1
            """,
            (user_id, order_number.strip().upper()),
        )
        return PurchaseDraft.model_validate(row) if row else None

    def find_drafts_by_order_numbers(
        self, user_id: str, order_numbers: list[str]
    ) -> list[PurchaseDraft]:
        needles = [n.strip().upper() for n in order_numbers if n.strip()]
        if not needles:
            return []
        rows = self._all(
            "SELECT * FROM purchase_drafts WHERE user_id = %s AND order_numbers && %s",
            (user_id, needles),
        )
        return [PurchaseDraft.model_validate(row) for row in rows]

    def find_draft_by_tracking_number(
        self, user_id: str, tracking_number: str
    ) -> PurchaseDraft | None:
        row = self._one(
            """
            SELECT d.* FROM purchase_drafts d
            JOIN package_pre_alerts p ON p.purchase_draft_id = d.id
            WHERE p.user_id = %s AND p.tracking_number = %s
            LIMIT 1
            """,
            (user_id, tracking_number.strip().upper()),
        )
        return PurchaseDraft.model_validate(row) if row else None

    def has_pre_alerts(self, draft_id: UUID) -> bool:
        row = self._one(
            "SELECT EXISTS (SELECT 1 FROM package_pre_alerts"
            " WHERE purchase_draft_id = %s) AS present",
            (draft_id,),
        )
        return bool(row and row["present"])

    def list_pre_alerts(self, draft_id: UUID) -> list[PackagePreAlert]:
        rows = self._all(
            "SELECT * FROM package_pre_alerts WHERE purchase_draft_id = %s",
            (draft_id,),
        )
        return [PackagePreAlert.model_validate(row) for row in rows]

    def create_draft(self, draft: PurchaseDraft) -> PurchaseDraft:
        row = self._one(
            """
            INSERT INTO purchase_drafts (id, user_id, evidence_id, merchant,
                store_name, order_numbers, items_summary, value_usd, currency,
                original_value, confidence, missing_fields, invoice_present, status)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (
                draft.id,
                draft.user_id,
                draft.evidence_id,
                draft.merchant,
                draft.store_name,
                draft.order_numbers,
                draft.items_summary,
                draft.value_usd,
                draft.currency,
                draft.original_value,
                draft.confidence,
                draft.missing_fields,
                draft.invoice_present,
                draft.status,
            ),
        )
        return PurchaseDraft.model_validate(row)

    def _lock_draft(self, draft_id: UUID) -> PurchaseDraft:
        row = self._one(
            "SELECT * FROM purchase_drafts WHERE id = %s FOR UPDATE", (draft_id,)
        )
        if row is None:
            msg = f"Purchase draft {draft_id} not found"
            raise LookupError(msg)
        return PurchaseDraft.model_validate(row)

    def _write_draft(self, draft: PurchaseDraft) -> None:
        assignments = ", ".join(f"{column} = %s" for column in _DRAFT_COLUMNS)
        values = tuple(getattr(draft, column) for column in _DRAFT_COLUMNS)
        query = f"UPDATE purchase_drafts SET {assignments} WHERE id = %s"
        self.conn.execute(query, (*values, draft.id))  # type: ignore[arg-type]

    def update_draft(
        self, draft_id: UUID, update: DraftUpdate, *, incoming_tracking: bool = False
    ) -> PurchaseDraft:
        with self.conn.transaction():
            current = self._lock_draft(draft_id)
            has_tracking = incoming_tracking or self.has_pre_alerts(draft_id)
            updated = update.apply_to(current, has_tracking=has_tracking)
            self._write_draft(updated)
        return updated

    def absorb_draft(self, primary_id: UUID, duplicate_id: UUID) -> PurchaseDraft:
        with self.conn.transaction():
            # Lock in id order so concurrent folds cannot deadlock.
            locked = {
                draft_id: self._lock_draft(draft_id)
                for draft_id in sorted((primary_id, duplicate_id), key=str)
            }
            primary, duplicate = locked[primary_id], locked[duplicate_id]
            has_tracking = self.has_pre_alerts(primary_id) or self.has_pre_alerts(
                duplicate_id
            )
            merged = DraftUpdate.from_draft(duplicate).apply_to(
                primary, has_tracking=has_tracking
            )
            self._write_draft(merged)
            self.conn.execute(
                "UPDATE package_pre_alerts SET purchase_draft_id = %s"
                " WHERE purchase_draft_id = %s",
                (primary_id, duplicate_id),
            )
            self.conn.execute(
                "DELETE FROM purchase_drafts WHERE id = %s", (duplicate_id,)
            )
        return merged

    def _set_draft_status(self, draft_id: UUID, status: str) -> PurchaseDraft:
        row = self._one(
            "UPDATE purchase_drafts SET status = %s WHERE id = %s RETURNING *",
            (status, draft_id),
        )
        if row is None:
            msg = f"Purchase draft {draft_id} not found"
            raise LookupError(msg)
        return PurchaseDraft.model_validate(row)

    def confirm_draft(self, draft_id: UUID) -> PurchaseDraft:
        """Confirm a draft together with its still-unreviewed pre-alerts."""
        with self.conn.transaction():
            confirmed = self._set_draft_status(draft_id, "confirmed")
            self.conn.execute(
                "UPDATE package_pre_alerts SET status = %s"
                " WHERE purchase_draft_id = %s AND status = %s",
                ("confirmed", draft_id, "draft"),
            )
        return confirmed

    def reject_draft(self, draft_id: UUID) -> PurchaseDraft:
        return self._set_draft_status(draft_id, "rejected")

    def upsert_pre_alert(
        self, user_id: str, draft_id: UUID, tracking: TrackingNumber
    ) -> PackagePreAlert:
        candidate = PackagePreAlert(
            user_id=user_id,
            purchase_draft_id=draft_id,
            tracking_number=tracking.number.strip().upper(),
            carrier=tracking.carrier,
        )
        row = self._one(
            """
            INSERT INTO package_pre_alerts (id, user_id, purchase_draft_id,
                tracking_number, carrier, status)
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (user_id, tracking_number) DO UPDATE
            SET purchase_draft_id = EXCLUDED.purchase_draft_id,
                carrier = COALESCE(package_pre_alerts.carrier, EXCLUDED.carrier)
            RETURNING *
            """,
            (
                candidate.id,
                candidate.user_id,
                candidate.purchase_draft_id,
                candidate.tracking_number,
                candidate.carrier,
                candidate.status,
            ),
        )
        return PackagePreAlert.model_validate(row)

    # Accounts and preferences

    def get_account_by_user(self, user_id: str) -> MailAccount | None:
        row = self._one("SELECT * FROM mail_accounts WHERE user_id = %s", (user_id,))
        return MailAccount.model_validate(row) if row else None

    def get_account_by_email(self, email: str) -> MailAccount | None:
        row = self._one(
            "SELECT * FROM mail_accounts WHERE lower(email) = %s",
            (email.strip().lower(),),
        )
        return MailAccount.model_validate(row) if row else None

    def list_active_accounts(self) -> list[MailAccount]:
        rows = self._all("SELECT * FROM mail_accounts WHERE status = %s", ("active",))
        return [MailAccount.model_validate(row) for row in rows]

    def set_account_cursor(self, account_id: UUID, cursor: str) -> None:
        self.conn.execute(
            "UPDATE mail_accounts SET cursor = %s WHERE id = %s", (cursor, account_id)
        )

    def mark_account_synced(self, account_id: UUID, synced_at: datetime) -> None:
        self.conn.execute(
            "UPDATE mail_accounts SET last_sync_at = %s WHERE id = %s",
            (synced_at, account_id),
        )

    def get_preferences(self, user_id: str) -> UserPreferences | None:
        row = self._one(
            "SELECT * FROM user_preferences WHERE user_id = %s", (user_id,)
        )
        return UserPreferences.model_validate(row) if row else None
