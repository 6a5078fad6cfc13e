"""Tests for purchase_sync.repository."""

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import MagicMock
from uuid import uuid4

import pytest

from purchase_sync.models import (
    REDACTED_SNIPPET,
    DraftUpdate,
    Evidence,
    MailAccount,
    PurchaseDraft,
    TrackingNumber,
)
from purchase_sync.repository import (
    InMemoryRepository,
    PostgresRepository,
    PurchaseRepository,
)

NOW = datetime(2025, 6, 15, 10, 30, 0, tzinfo=UTC)


def _evidence(message_id: str = "msg-1") -> Evidence:
    return Evidence(
        user_id="user-1",
        source="gmail",
        source_message_id=message_id,
        raw_text_snippet="Order #A1",
        received_at=NOW,
        processed_at=NOW,
    )


def _draft(repo: InMemoryRepository, *orders: str) -> PurchaseDraft:
    return repo.create_draft(
        PurchaseDraft(user_id="user-1", evidence_id=uuid4(), order_numbers=list(orders))
    )


class TestEvidence:
    """Evidence lifecycle."""

    def test_create_is_insert_if_absent(self, repo: InMemoryRepository) -> None:
        assert repo.create_evidence(_evidence()) is not None
        assert repo.create_evidence(_evidence()) is None
        assert len(repo.evidence) == 1

    def test_complete_redacts(self, repo: InMemoryRepository) -> None:
        evidence = repo.create_evidence(_evidence())
        assert evidence is not None

        repo.complete_evidence(evidence.id, "failed", error="boom")

        stored = repo.get_evidence("gmail", "msg-1")
        assert stored is not None
        assert stored.status == "failed"
        assert stored.extraction_error == "boom"
        assert stored.raw_text_snippet == REDACTED_SNIPPET

    def test_satisfies_protocol(self, repo: InMemoryRepository) -> None:
        typed: PurchaseRepository = repo
        assert typed.get_evidence("gmail", "missing") is None


class TestDraftLookup:
    """Draft lookups by order and tracking number."""

    def test_by_order_number_case_insensitive(self, repo: InMemoryRepository) -> None:
        draft = _draft(repo, "A1", "B2")
        found = repo.find_draft_by_order_number("user-1", "b2")
        assert found is not None
        assert found.id == draft.id

    def test_scoped_by_user(self, repo: InMemoryRepository) -> None:
        _draft(repo, "A1")
        assert repo.find_draft_by_order_number("user-2", "A1") is None

    def test_by_tracking_number(self, repo: InMemoryRepository) -> None:
        draft = _draft(repo, "A1")
        repo.upsert_pre_alert(
            "user-1", draft.id, TrackingNumber("1Z999AA10123456784", "ups")
        )
        found = repo.find_draft_by_tracking_number("user-1", "1z999aa10123456784")
        assert found is not None
        assert found.id == draft.id


class TestPreAlerts:
    """Pre-alert upsert semantics."""

    def test_upsert_moves_instead_of_duplicating(
        self, repo: InMemoryRepository
    ) -> None:
        first, second = _draft(repo, "A1"), _draft(repo, "B2")
        tracking = TrackingNumber("TBA123456789012", None)

        repo.upsert_pre_alert("user-1", first.id, tracking)
        moved = repo.upsert_pre_alert(
            "user-1", second.id, TrackingNumber("TBA123456789012", "amazon")
        )

        assert len(repo.pre_alerts) == 1
        assert moved.purchase_draft_id == second.id
        assert moved.carrier == "amazon"
        assert not repo.has_pre_alerts(first.id)


class TestUpdateAndAbsorb:
    """Draft mutation."""

    def test_update_uses_existing_pre_alerts(self, repo: InMemoryRepository) -> None:
        draft = _draft(repo, "A1")
        repo.upsert_pre_alert("user-1", draft.id, TrackingNumber("TBA123456789012"))

        updated = repo.update_draft(draft.id, DraftUpdate(value_usd=100))

        assert "trackingNumbers" not in updated.missing_fields

    def test_absorb_folds_and_deletes(self, repo: InMemoryRepository) -> None:
        primary = _draft(repo, "A1")
        duplicate = repo.create_draft(
            PurchaseDraft(
                user_id="user-1",
                evidence_id=uuid4(),
                order_numbers=["B2"],
                value_usd=2500,
                confidence=0.9,
            )
        )
        repo.upsert_pre_alert(
            "user-1", duplicate.id, TrackingNumber("1Z999AA10123456784", "ups")
        )

        merged = repo.absorb_draft(primary.id, duplicate.id)

        assert merged.order_numbers == ["A1", "B2"]
        assert merged.value_usd == 2500
        assert merged.confidence == 0.9
        assert "trackingNumbers" not in merged.missing_fields
        assert repo.get_draft(duplicate.id) is None
        assert [pa.purchase_draft_id for pa in repo.pre_alerts.values()] == [
            primary.id
        ]

    def test_interrupted_absorb_leaves_state_unchanged(
        self, repo: InMemoryRepository, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        primary = _draft(repo, "A1")
        duplicate = _draft(repo, "B2")
        repo.upsert_pre_alert(
            "user-1", duplicate.id, TrackingNumber("TBA123456789012")
        )
        drafts_before = dict(repo.drafts)
        pre_alerts_before = dict(repo.pre_alerts)

        def interrupted(*args: object, **kwargs: object) -> PurchaseDraft:
            msg = "fold interrupted"
            raise RuntimeError(msg)

        monkeypatch.setattr(DraftUpdate, "apply_to", interrupted)

        with pytest.raises(RuntimeError, match="fold interrupted"):
            repo.absorb_draft(primary.id, duplicate.id)

        assert repo.drafts == drafts_before
        assert repo.pre_alerts == pre_alerts_before


class TestReview:
    """Draft confirmation and rejection."""

    def test_confirm_promotes_draft_pre_alerts(self, repo: InMemoryRepository) -> None:
        draft = _draft(repo, "A1")
        pending = repo.upsert_pre_alert(
            "user-1", draft.id, TrackingNumber("TBA123456789012")
        )
        submitted = repo.upsert_pre_alert(
            "user-1", draft.id, TrackingNumber("1Z999AA10123456784", "ups")
        )
        repo.pre_alerts[submitted.id] = submitted.model_copy(
            update={"status": "submitted"}
        )

        confirmed = repo.confirm_draft(draft.id)

        assert confirmed.status == "confirmed"
        assert repo.drafts[draft.id].status == "confirmed"
        assert repo.pre_alerts[pending.id].status == "confirmed"
        assert repo.pre_alerts[submitted.id].status == "submitted"

    def test_reject_leaves_pre_alerts(self, repo: InMemoryRepository) -> None:
        draft = _draft(repo, "A1")
        pre_alert = repo.upsert_pre_alert(
            "user-1", draft.id, TrackingNumber("TBA123456789012")
        )

        rejected = repo.reject_draft(draft.id)

        assert rejected.status == "rejected"
        assert repo.drafts[draft.id].status == "rejected"
        assert repo.pre_alerts[pre_alert.id].status == "draft"

    def test_unknown_draft_raises(self, repo: InMemoryRepository) -> None:
        with pytest.raises(LookupError):
            repo.confirm_draft(uuid4())


class TestAccounts:
    """Mail accounts and cursors."""

    def test_lookup_and_cursor(self, repo: InMemoryRepository) -> None:
        account = repo.add_account(
            MailAccount(user_id="user-1", email="Me@Example.com")
        )

        repo.set_account_cursor(account.id, "12345")
        repo.mark_account_synced(account.id, NOW)

        stored = repo.get_account_by_email("me@example.com")
        assert stored is not None
        assert stored.cursor == "12345"
        assert stored.last_sync_at == NOW
        assert repo.get_account_by_user("user-1") == stored

    def test_inactive_accounts_not_listed(self, repo: InMemoryRepository) -> None:
        repo.add_account(MailAccount(user_id="u1", email="a@example.com"))
        repo.add_account(
            MailAccount(user_id="u2", email="b@example.com", status="disconnected")
        )
        assert [a.user_id for a in repo.list_active_accounts()] == ["u1"]


def _cursor(row: object) -> MagicMock:
    cursor = MagicMock()
    cursor.fetchone.return_value = row
    return cursor


class TestPostgresRepository:
    """SQL wiring of PostgresRepository against a mocked connection."""

    def test_create_evidence_conflict_returns_none(self) -> None:
        conn = MagicMock()
        conn.execute.return_value = _cursor(None)

        assert PostgresRepository(conn).create_evidence(_evidence()) is None
        assert "ON CONFLICT (source, source_message_id) DO NOTHING" in (
            conn.execute.call_args[0][0]
        )

    def test_empty_order_lookup_skips_query(self) -> None:
        conn = MagicMock()
        assert PostgresRepository(conn).find_drafts_by_order_numbers("u", [" "]) == []
        conn.execute.assert_not_called()

    def test_update_draft_locks_then_writes(self) -> None:
        draft = PurchaseDraft(
            user_id="user-1", evidence_id=uuid4(), order_numbers=["A1"]
        )
        conn = MagicMock()
        conn.execute.side_effect = [
            _cursor(draft.model_dump()),
            _cursor({"present": True}),
            _cursor(None),
        ]

        updated = PostgresRepository(conn).update_draft(
            draft.id, DraftUpdate(value_usd=500)
        )

        statements = [c[0][0] for c in conn.execute.call_args_list]
        assert "FOR UPDATE" in statements[0]
        assert statements[2].startswith("UPDATE purchase_drafts SET")
        assert updated.value_usd == 500
        assert updated.missing_fields == ["itemsSummary"]
        conn.transaction.assert_called_once()

    def test_missing_draft_raises(self) -> None:
        conn = MagicMock()
        conn.execute.return_value = _cursor(None)
        with pytest.raises(LookupError):
            PostgresRepository(conn).update_draft(uuid4(), DraftUpdate())

    def test_confirm_draft_promotes_pre_alerts_in_one_transaction(self) -> None:
        draft = PurchaseDraft(
            user_id="user-1", evidence_id=uuid4(), status="confirmed"
        )
        conn = MagicMock()
        conn.execute.side_effect = [_cursor(draft.model_dump()), _cursor(None)]

        confirmed = PostgresRepository(conn).confirm_draft(draft.id)

        assert confirmed.status == "confirmed"
        (first, second) = conn.execute.call_args_list
        assert first[0][1] == ("confirmed", draft.id)
        assert second[0][0].startswith("UPDATE package_pre_alerts")
        assert second[0][1] == ("confirmed", draft.id, "draft")
        conn.transaction.assert_called_once()

    def test_reject_missing_draft_raises(self) -> None:
        conn = MagicMock()
        conn.execute.return_value = _cursor(None)
        with pytest.raises(LookupError):
            PostgresRepository(conn).reject_draft(uuid4())


def _absorb_connection(
    primary: PurchaseDraft, duplicate: PurchaseDraft, *, fail_on: str | None = None
) -> MagicMock:
    """Mocked connection serving both drafts; only the duplicate has pre-alerts."""
    rows = {primary.id: primary.model_dump(), duplicate.id: duplicate.model_dump()}

    def execute(query: str, params: tuple[object, ...]) -> MagicMock:
        if fail_on is not None and query.startswith(fail_on):
            msg = "connection lost"
            raise RuntimeError(msg)
        if "FOR UPDATE" in query:
            return _cursor(rows[params[0]])  # type: ignore[index]
        if "EXISTS" in query:
            return _cursor({"present": params[0] == duplicate.id})
        return _cursor(None)

    conn = MagicMock()
    conn.execute.side_effect = execute
    return conn


class TestPostgresAbsorb:
    """PostgresRepository.absorb_draft() against a mocked connection."""

    def _drafts(self) -> tuple[PurchaseDraft, PurchaseDraft]:
        primary = PurchaseDraft(
            user_id="user-1", evidence_id=uuid4(), order_numbers=["A1"]
        )
        duplicate = PurchaseDraft(
            user_id="user-1",
            evidence_id=uuid4(),
            order_numbers=["B2"],
            value_usd=2500,
            confidence=0.9,
        )
        return primary, duplicate

    def test_locks_in_id_order_then_folds(self) -> None:
        primary, duplicate = self._drafts()
        conn = _absorb_connection(primary, duplicate)

        merged = PostgresRepository(conn).absorb_draft(primary.id, duplicate.id)

        calls = [(c[0][0], c[0][1]) for c in conn.execute.call_args_list]
        locked = [params[0] for query, params in calls if "FOR UPDATE" in query]
        assert locked == sorted((primary.id, duplicate.id), key=str)

        write, move, delete = calls[-3:]
        assert write[0].startswith("UPDATE purchase_drafts SET")
        assert write[1][-1] == primary.id
        assert move[0].startswith("UPDATE package_pre_alerts")
        assert move[1] == (primary.id, duplicate.id)
        assert delete[0].startswith("DELETE FROM purchase_drafts")
        assert delete[1] == (duplicate.id,)

        assert merged.id == primary.id
        assert merged.order_numbers == ["A1", "B2"]
        assert merged.value_usd == 2500
        assert merged.confidence == 0.9
        assert "trackingNumbers" not in merged.missing_fields
        conn.transaction.assert_called_once()

    def test_failure_rolls_back_transaction(self) -> None:
        primary, duplicate = self._drafts()
        conn = _absorb_connection(primary, duplicate, fail_on="DELETE")

        with pytest.raises(RuntimeError, match="connection lost"):
            PostgresRepository(conn).absorb_draft(primary.id, duplicate.id)

        exit_args = conn.transaction.return_value.__exit__.call_args[0]
        assert exit_args[0] is RuntimeError
