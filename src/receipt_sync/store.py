"""Persistence for linked accounts, sync jobs and extracted receipts."""

from __future__ import annotations

import itertools
import threading
from collections.abc import Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Protocol

from psycopg.types.json import Jsonb

from receipt_sync.db import get_connection
from receipt_sync.errors import AccountNotFoundError
from receipt_sync.models import (
    ExtractedReceipt,
    MailProviderAccount,
    OAuthCredentials,
    SyncJob,
    SyncStatus,
)

if TYPE_CHECKING:
    import psycopg

ACTIVE_STATUSES = (SyncStatus.PENDING.value, SyncStatus.PROCESSING.value)


class SyncStore(Protocol):
    """Protocol for the storage the sync pipeline reads and writes."""

    def create_account(
        self,
        user_id: int,
        provider_type: str,
        email_address: str,
        credentials: OAuthCredentials,
    ) -> MailProviderAccount: ...

    def get_account(self, account_id: int) -> MailProviderAccount | None: ...

    def list_accounts(self, user_id: int) -> list[MailProviderAccount]: ...

    def update_account_credentials(
        self, account_id: int, credentials: OAuthCredentials
    ) -> None: ...

    def mark_account_synced(self, account_id: int, when: datetime) -> None: ...

    def delete_account(self, account_id: int) -> bool: ...

    def create_job(self, account_id: int) -> SyncJob: ...

    def get_job(self, job_id: int) -> SyncJob | None: ...

    def list_jobs(self, account_id: int) -> list[SyncJob]: ...

    def get_active_job(self, account_id: int) -> SyncJob | None: ...

    def save_job(self, job: SyncJob) -> None: ...

    def save_receipt(self, user_id: int, receipt: ExtractedReceipt) -> int: ...

    def imported_source_ids(self, account_id: int) -> set[str]: ...


class MemorySyncStore:
    """In-process SyncStore, safe to share between sync worker threads.

    Used for tests and dry runs; nothing survives the process.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self.accounts: dict[int, MailProviderAccount] = {}
        self.jobs: dict[int, SyncJob] = {}
        self.receipts: dict[int, tuple[int, ExtractedReceipt]] = {}

    def create_account(
        self,
        user_id: int,
        provider_type: str,
        email_address: str,
        credentials: OAuthCredentials,
    ) -> MailProviderAccount:
        with self._lock:
            for account in self.accounts.values():
                if (
                    account.user_id == user_id
                    and account.provider_type == provider_type
                    and account.email_address == email_address
                ):
                    relinked = account.model_copy(update={"credentials": credentials})
                    self.accounts[account.id] = relinked
                    return relinked
            account = MailProviderAccount(
                id=next(self._ids),
                user_id=user_id,
                provider_type=provider_type,
                email_address=email_address,
                credentials=credentials,
                created_at=datetime.now(tz=UTC),
            )
            self.accounts[account.id] = account
            return account

    def get_account(self, account_id: int) -> MailProviderAccount | None:
        with self._lock:
            return self.accounts.get(account_id)

    def list_accounts(self, user_id: int) -> list[MailProviderAccount]:
        with self._lock:
            return [a for a in self.accounts.values() if a.user_id == user_id]

    def update_account_credentials(
        self, account_id: int, credentials: OAuthCredentials
    ) -> None:
        with self._lock:
            account = self._account(account_id)
            self.accounts[account_id] = account.model_copy(
                update={"credentials": credentials}
            )

    def mark_account_synced(self, account_id: int, when: datetime) -> None:
        with self._lock:
            account = self._account(account_id)
            self.accounts[account_id] = account.model_copy(
                update={"last_sync_at": when}
            )

    def delete_account(self, account_id: int) -> bool:
        with self._lock:
            if self.accounts.pop(account_id, None) is None:
                return False
            self.jobs = {
                job_id: job
                for job_id, job in self.jobs.items()
                if job.account_id != account_id
            }
            return True

    def create_job(self, account_id: int) -> SyncJob:
        with self._lock:
            self._account(account_id)
            job = SyncJob(
                id=next(self._ids),
                account_id=account_id,
                started_at=datetime.now(tz=UTC),
            )
            self.jobs[job.id] = job
            return job

    def get_job(self, job_id: int) -> SyncJob | None:
        with self._lock:
            return self.jobs.get(job_id)

    def list_jobs(self, account_id: int) -> list[SyncJob]:
        with self._lock:
            jobs = [j for j in self.jobs.values() if j.account_id == account_id]
        return sorted(jobs, key=lambda j: (j.started_at, j.id), reverse=True)

    def get_active_job(self, account_id: int) -> SyncJob | None:
        for job in self.list_jobs(account_id):
            if job.status.is_active:
                return job
        return None

    def save_job(self, job: SyncJob) -> None:
        with self._lock:
            if job.id in self.jobs:
                self.jobs[job.id] = job

    def save_receipt(self, user_id: int, receipt: ExtractedReceipt) -> int:
        with self._lock:
            receipt_id = next(self._ids)
            self.receipts[receipt_id] = (user_id, receipt)
            return receipt_id

    def imported_source_ids(self, account_id: int) -> set[str]:
        with self._lock:
            return {
                receipt.source_id
                for _user_id, receipt in self.receipts.values()
                if receipt.account_id == account_id and receipt.source_id
            }

    def _account(self, account_id: int) -> MailProviderAccount:
        account = self.accounts.get(account_id)
        if account is None:
            msg = f"Mail account {account_id} not found"
            raise AccountNotFoundError(msg)
        return account


class PostgresSyncStore:
    """SyncStore backed by PostgreSQL through psycopg.

    Every call opens its own connection, so one store can be shared by the
    sync worker threads.
    """

    def __init__(
        self,
        connect: Callable[[], psycopg.Connection[dict[str, Any]]] = get_connection,
    ) -> None:
        self._connect = connect

    def create_account(
        self,
        user_id: int,
        provider_type: str,
        email_address: str,
        credentials: OAuthCredentials,
    ) -> MailProviderAccount:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO mail_accounts
                    (user_id, provider_type, email_address, credentials)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (user_id, provider_type, email_address)
                DO UPDATE SET credentials = EXCLUDED.credentials
                RETURNING *
                """,
                (user_id, provider_type, email_address, _credentials_json(credentials)),
            ).fetchone()
        return _account_from_row(_required(row))

    def get_account(self, account_id: int) -> MailProviderAccount | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM mail_accounts WHERE id = %s", (account_id,)
            ).fetchone()
        return _account_from_row(row) if row else None

    def list_accounts(self, user_id: int) -> list[MailProviderAccount]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM mail_accounts WHERE user_id = %s ORDER BY id",
                (user_id,),
            ).fetchall()
        return [_account_from_row(row) for row in rows]

    def update_account_credentials(
        self, account_id: int, credentials: OAuthCredentials
    ) -> None:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE mail_accounts SET credentials = %s WHERE id = %s",
                (_credentials_json(credentials), account_id),
            )
            if cur.rowcount == 0:
                msg = f"Mail account {account_id} not found"
                raise AccountNotFoundError(msg)

    def mark_account_synced(self, account_id: int, when: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE mail_accounts SET last_sync_at = %s WHERE id = %s",
                (when, account_id),
            )

    def delete_account(self, account_id: int) -> bool:
        # sync_jobs rows go with it (ON DELETE CASCADE)
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM mail_accounts WHERE id = %s", (account_id,)
            )
            return cur.rowcount > 0

    def create_job(self, account_id: int) -> SyncJob:
        with self._connect() as conn:
            row = conn.execute(
                "INSERT INTO sync_jobs (account_id) VALUES (%s) RETURNING *",
                (account_id,),
            ).fetchone()
        return SyncJob.model_validate(_required(row))

    def get_job(self, job_id: int) -> SyncJob | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM sync_jobs WHERE id = %s", (job_id,)
            ).fetchone()
        return SyncJob.model_validate(row) if row else None

    def list_jobs(self, account_id: int) -> list[SyncJob]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM sync_jobs WHERE account_id = %s
                ORDER BY started_at DESC, id DESC
                """,
                (account_id,),
            ).fetchall()
        return [SyncJob.model_validate(row) for row in rows]

    def get_active_job(self, account_id: int) -> SyncJob | None:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM sync_jobs
                WHERE account_id = %s AND status = ANY(%s)
                ORDER BY started_at DESC, id DESC
                LIMIT 1
                """,
                (account_id, list(ACTIVE_STATUSES)),
            ).fetchone()
        return SyncJob.model_validate(row) if row else None

    def save_job(self, job: SyncJob) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE sync_jobs SET
                    status = %s,
                    messages_found = %s,
                    messages_processed = %s,
                    receipts_found = %s,
                    error_message = %s,
                    completed_at = %s
                WHERE id = %s
                """,
                (
                    job.status.value,
                    job.messages_found,
                    job.messages_processed,
                    job.receipts_found,
                    job.error_message,
                    job.completed_at,
                    job.id,
                ),
            )

    def save_receipt(self, user_id: int, receipt: ExtractedReceipt) -> int:
        items = [item.model_dump(mode="json") for item in receipt.items]
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO receipts (
                    user_id, account_id, merchant, date, total, currency,
                    currency_confidence, currency_evidence, items, category,
                    source, source_id, source_provider, confidence
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING id
                """,
                (
                    user_id,
                    receipt.account_id,
                    receipt.merchant,
                    receipt.date,
                    receipt.total,
                    receipt.currency,
                    receipt.currency_confidence,
                    receipt.currency_evidence,
                    Jsonb(items),
                    receipt.category,
                    receipt.source,
                    receipt.source_id,
                    receipt.source_provider,
                    receipt.confidence,
                ),
            ).fetchone()
        return int(_required(row)["id"])

    def imported_source_ids(self, account_id: int) -> set[str]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT DISTINCT source_id FROM receipts
                WHERE account_id = %s AND source_id IS NOT NULL
                """,
                (account_id,),
            ).fetchall()
        return {str(row["source_id"]) for row in rows}


def _credentials_json(credentials: OAuthCredentials) -> Jsonb:
    return Jsonb(credentials.model_dump(mode="json"))


def _account_from_row(row: dict[str, Any]) -> MailProviderAccount:
    return MailProviderAccount(
        id=row["id"],
        user_id=row["user_id"],
        provider_type=row["provider_type"],
        email_address=row["email_address"],
        credentials=OAuthCredentials.model_validate(row["credentials"]),
        last_sync_at=row["last_sync_at"],
        created_at=row["created_at"],
    )


def _required(row: dict[str, Any] | None) -> dict[str, Any]:
    if row is None:
        msg = "Expected a row from RETURNING, got none"
        raise RuntimeError(msg)
    return row
