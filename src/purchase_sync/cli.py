"""CLI entry point for purchase-sync."""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from dataclasses import asdict
from typing import TYPE_CHECKING, Any

import click

from purchase_sync.tracking import detect_tracking_numbers

if TYPE_CHECKING:
    from collections.abc import Iterator
    from uuid import UUID

    from purchase_sync.models import PurchaseDraft
    from purchase_sync.repository import PostgresRepository
    from purchase_sync.sync import SyncService, SyncStats


@contextmanager
def _open_repository() -> Iterator[PostgresRepository]:
    """Yield a Postgres repository, closing its connection afterwards."""
    from purchase_sync.db import get_connection
    from purchase_sync.repository import PostgresRepository

    try:
        conn = get_connection()
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    with conn:
        yield PostgresRepository(conn)


@contextmanager
def _open_service() -> Iterator[SyncService]:
    """Wire the Postgres repository, extractor and Gmail adapter together."""
    from purchase_sync.adapters.gmail import GmailAdapter
    from purchase_sync.extraction import PurchaseExtractor
    from purchase_sync.sync import SyncService

    try:
        extractor = PurchaseExtractor.from_config()
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc

    def source_factory(_user_id: str) -> GmailAdapter:
        return GmailAdapter.from_config()

    with _open_repository() as repo:
        yield SyncService(repo, extractor, source_factory)


def _echo_stats(stats: SyncStats) -> None:
    click.echo(json.dumps(asdict(stats)))


def _echo_draft(draft: PurchaseDraft) -> None:
    click.echo(f"{draft.id}\t{draft.status}")


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Purchase sync: turn merchant emails into purchase drafts."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init-db")
def init_db() -> None:
    """Create database tables."""
    from purchase_sync.db import get_connection, init_schema

    try:
        conn = get_connection()
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    with conn:
        init_schema(conn)
    click.echo("Schema ready.")


@cli.command()
@click.option("--user", "user_id", required=True, help="User id to sync for.")
@click.option("--days-back", default=7, show_default=True, type=int)
@click.option("--query", default=None, help="Provider search query.")
@click.option("--max-messages", default=500, show_default=True, type=int)
def sync(user_id: str, days_back: int, query: str | None, max_messages: int) -> None:
    """Run a full mailbox sync for one user."""
    with _open_service() as service:
        try:
            stats = service.sync_full(
                user_id, days_back=days_back, query=query, max_messages=max_messages
            )
        except ValueError as exc:
            raise click.ClickException(str(exc)) from exc
    _echo_stats(stats)


@cli.command()
def catchup() -> None:
    """Sync every active account that has not synced recently."""
    with _open_service() as service:
        try:
            stats = service.catchup()
        except ValueError as exc:
            raise click.ClickException(str(exc)) from exc
    _echo_stats(stats)


@cli.command()
@click.argument("payload", type=click.File("r"), default="-")
def push(payload: Any) -> None:
    """Handle a mailbox change notification read from PAYLOAD (JSON)."""
    from purchase_sync.adapters.gmail import parse_push_payload

    try:
        email, cursor = parse_push_payload(json.load(payload))
    except ValueError as exc:
        raise click.ClickException(f"Invalid push payload: {exc}") from exc

    with _open_service() as service:
        try:
            stats = service.sync_incremental(email, cursor)
        except ValueError as exc:
            raise click.ClickException(str(exc)) from exc
    _echo_stats(stats)


@cli.command()
@click.option("--user", "user_id", required=True, help="User id to ingest for.")
@click.option(
    "--channel",
    type=click.Choice(["whatsapp", "manual"]),
    default="manual",
    show_default=True,
)
@click.option("--message-id", required=True, help="Channel message id.")
@click.option("--text", default=None, help="Message text, or the image caption.")
@click.option("--image-url", default=None, help="Screenshot or receipt photo URL.")
def ingest(
    user_id: str,
    channel: str,
    message_id: str,
    text: str | None,
    image_url: str | None,
) -> None:
    """Extract a purchase from one chat or manually submitted message."""
    if not text and not image_url:
        msg = "Provide --text, --image-url or both."
        raise click.UsageError(msg)

    with _open_service() as service:
        stats = service.ingest_message(
            user_id,
            channel,  # type: ignore[arg-type]
            message_id,
            text=text,
            image_url=image_url,
        )
    _echo_stats(stats)


@cli.command()
@click.argument("draft_id", type=click.UUID)
def confirm(draft_id: UUID) -> None:
    """Confirm a purchase draft and its pending pre-alerts."""
    with _open_repository() as repo:
        try:
            draft = repo.confirm_draft(draft_id)
        except LookupError as exc:
            raise click.ClickException(str(exc)) from exc
    _echo_draft(draft)


@cli.command()
@click.argument("draft_id", type=click.UUID)
def reject(draft_id: UUID) -> None:
    """Reject a purchase draft."""
    with _open_repository() as repo:
        try:
            draft = repo.reject_draft(draft_id)
        except LookupError as exc:
            raise click.ClickException(str(exc)) from exc
    _echo_draft(draft)


@cli.command()
@click.argument("text")
def tracking(text: str) -> None:
    """Detect shipment tracking numbers in TEXT."""
    for found in detect_tracking_numbers(text):
        click.echo(f"{found.number}\t{found.carrier or '-'}")


@cli.command("extract-image")
@click.argument("image_url")
def extract_image(image_url: str) -> None:
    """Extract purchase data from a receipt image URL."""
    from purchase_sync.extraction import ExtractionError, PurchaseExtractor

    try:
        result = PurchaseExtractor.from_config().extract_image(image_url)
    except (ValueError, ExtractionError) as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(asdict(result), indent=2))
