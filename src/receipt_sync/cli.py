"""CLI entry point for receipt-sync."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import TYPE_CHECKING

import click

from receipt_sync.errors import ReceiptSyncError

if TYPE_CHECKING:
    from collections.abc import Iterator

    from receipt_sync.models import ExtractionResult, MailProviderAccount, SyncJob
    from receipt_sync.sync import SyncService


def _build_service() -> SyncService:
    from receipt_sync.config import get_sync_settings
    from receipt_sync.registry import build_default_registry
    from receipt_sync.store import PostgresSyncStore
    from receipt_sync.sync import SyncService

    settings = get_sync_settings()
    return SyncService(
        PostgresSyncStore(), build_default_registry(settings), settings=settings
    )


@contextmanager
def _errors_as_click() -> Iterator[None]:
    try:
        yield
    except (ReceiptSyncError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc


def _format_job(job: SyncJob) -> str:
    line = (
        f"job {job.id} [{job.status}] account={job.account_id} "
        f"found={job.messages_found} processed={job.messages_processed} "
        f"receipts={job.receipts_found}"
    )
    if job.error_message:
        line += f" error={job.error_message!r}"
    return line


def _format_account(account: MailProviderAccount) -> str:
    synced = account.last_sync_at.isoformat() if account.last_sync_at else "never"
    return (
        f"{account.id}\t{account.provider_type}\t{account.email_address}"
        f"\tlast sync: {synced}"
    )


def _echo_result(result: ExtractionResult) -> None:
    verdict = "receipt" if result.is_receipt else "not a receipt"
    click.echo(f"{verdict} ({result.confidence:.2f}): {result.reason}")
    if result.message:
        click.echo(result.message)
    receipt = result.receipt
    if receipt is None:
        return
    click.echo(f"  merchant: {receipt.merchant}")
    click.echo(f"  date:     {receipt.date.isoformat()}")
    click.echo(f"  total:    {receipt.total} {receipt.currency}")
    click.echo(
        f"  currency: {receipt.currency} @ {receipt.currency_confidence:.2f}"
        f" ({receipt.currency_evidence})"
    )
    for item in receipt.items:
        click.echo(f"    - {item.name}: {item.price_text}")


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Receipt Sync: pull receipts out of linked mailboxes."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init-db")
def init_db() -> None:
    """Create the database tables."""
    from receipt_sync.db import init_schema

    with _errors_as_click():
        init_schema()
    click.echo("Schema ready.")


@cli.command("auth-url")
@click.argument("user_id", type=int)
@click.option("--provider", default="gmail", show_default=True)
def auth_url(user_id: int, provider: str) -> None:
    """Print the consent URL that links a mailbox for USER_ID."""
    with _errors_as_click():
        click.echo(_build_service().get_auth_url(user_id, provider))


@cli.command()
@click.argument("provider")
@click.argument("code")
@click.argument("state")
def link(provider: str, code: str, state: str) -> None:
    """Finish an OAuth redirect with its CODE and STATE."""
    with _errors_as_click():
        account = _build_service().link_account(provider, code, state)
    click.echo(f"Linked account {account.id} ({account.email_address})")


@cli.command("link-imap")
@click.argument("user_id", type=int)
@click.argument("email_address")
@click.option("--host", required=True)
@click.option("--port", type=int, default=993, show_default=True)
@click.option("--username", help="Login name (defaults to EMAIL_ADDRESS).")
@click.option("--folder", default="INBOX", show_default=True)
@click.password_option("--password", confirmation_prompt=False)
def link_imap(
    user_id: int,
    email_address: str,
    host: str,
    port: int,
    username: str | None,
    folder: str,
    password: str,
) -> None:
    """Link an IMAP mailbox with a password or app password."""
    from receipt_sync.models import OAuthCredentials

    credentials = OAuthCredentials(
        access_token=password,
        token_type="password",
        extra={
            "host": host,
            "port": str(port),
            "username": username or email_address,
            "folder": folder,
        },
    )
    with _errors_as_click():
        account = _build_service().link_account_with_credentials(
            user_id, "imap", email_address, credentials
        )
    click.echo(f"Linked account {account.id} ({account.email_address})")


@cli.command()
@click.argument("user_id", type=int)
def accounts(user_id: int) -> None:
    """List the mailboxes linked by USER_ID."""
    with _errors_as_click():
        linked = _build_service().list_accounts(user_id)
    if not linked:
        click.echo("No linked accounts.")
    for account in linked:
        click.echo(_format_account(account))


@cli.command()
@click.argument("account_id", type=int)
@click.option(
    "--wait/--no-wait",
    default=True,
    show_default=True,
    help="Print the final job summary (the run finishes either way).",
)
def sync(account_id: int, wait: bool) -> None:
    """Start a receipt sync for ACCOUNT_ID."""
    service = _build_service()
    try:
        with _errors_as_click():
            started = service.start_sync(account_id)
            click.echo(f"Started sync job {started.id}")
            if wait:
                finished = service.wait(started.id)
                if finished is not None:
                    click.echo(_format_job(finished))
    finally:
        service.shutdown()


@cli.command()
@click.argument("account_id", type=int)
def jobs(account_id: int) -> None:
    """List sync jobs for ACCOUNT_ID, newest first."""
    with _errors_as_click():
        found = _build_service().get_account_sync_jobs(account_id)
    if not found:
        click.echo("No sync jobs.")
    for sync_job in found:
        click.echo(_format_job(sync_job))


@cli.command()
@click.argument("job_id", type=int)
def job(job_id: int) -> None:
    """Show one sync job."""
    with _errors_as_click():
        found = _build_service().get_sync_job(job_id)
    if found is None:
        msg = f"Sync job {job_id} not found"
        raise click.ClickException(msg)
    click.echo(_format_job(found))


@cli.command()
@click.argument("account_id", type=int)
@click.argument("message_id")
def process(account_id: int, message_id: str) -> None:
    """Classify and extract one message without saving it."""
    with _errors_as_click():
        result = _build_service().process_single_message(account_id, message_id)
    _echo_result(result)


@cli.command("detect-currency")
@click.option("--merchant")
@click.option("--notes")
@click.option("--price", "prices", multiple=True, help="A price as printed.")
@click.option("--total")
@click.option("--currency", help="Currency reported by another extractor.")
@click.option("--evidence", default="", help="Evidence for --currency.")
def detect_currency_command(
    merchant: str | None,
    notes: str | None,
    prices: tuple[str, ...],
    total: str | None,
    currency: str | None,
    evidence: str,
) -> None:
    """Infer the currency of a receipt from its printed details."""
    from receipt_sync.currency import detect_currency
    from receipt_sync.models import CurrencyGuess

    prior = CurrencyGuess(currency, 0.0, evidence) if currency else None
    guess = detect_currency(
        prices=list(prices),
        total=total,
        merchant=merchant,
        notes=notes,
        prior=prior,
    )
    click.echo(f"{guess.code}\t{guess.confidence:.2f}\t{guess.evidence}")
