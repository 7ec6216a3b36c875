"""Mailbox sync orchestration: accounts, background jobs and progress."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import UTC, datetime
from functools import partial
from typing import TYPE_CHECKING, Any

from receipt_sync.adapters.state import decode_state
from receipt_sync.config import SyncSettings, get_oauth_state_secret
from receipt_sync.errors import AccountNotFoundError, SyncAlreadyActiveError
from receipt_sync.extraction import ReceiptExtractor
from receipt_sync.models import SyncJob, SyncStatus
from receipt_sync.vision import LlmImageExtractor

if TYPE_CHECKING:
    from collections.abc import Callable

    from receipt_sync.adapters.base import MailProviderAdapter
    from receipt_sync.models import (
        CandidateMessage,
        ExtractionResult,
        MailProviderAccount,
        OAuthCredentials,
    )
    from receipt_sync.registry import ProviderRegistry
    from receipt_sync.store import SyncStore

logger = logging.getLogger(__name__)

# Receipts are only persisted above this classifier confidence.
MIN_PERSIST_CONFIDENCE = 0.7
CANCELLED_MESSAGE = "Cancelled by operator"
INTERRUPTED_MESSAGE = "Interrupted before completion"


class JobProgress:
    """Thread-safe counters for one running job.

    Counters only ever grow. Every ``interval`` processed messages the
    current snapshot is handed to ``save`` while the lock is held, so
    snapshots reach the store in order.
    """

    def __init__(
        self, job: SyncJob, interval: int, save: Callable[[SyncJob], None]
    ) -> None:
        self._lock = threading.Lock()
        self._job = job
        self._interval = interval
        self._save = save

    @property
    def job(self) -> SyncJob:
        with self._lock:
            return self._job

    def record(self, *, receipt_found: bool) -> None:
        with self._lock:
            processed = self._job.messages_processed + 1
            self._job = self._job.model_copy(
                update={
                    "messages_processed": processed,
                    "receipts_found": self._job.receipts_found + int(receipt_found),
                }
            )
            if processed % self._interval == 0:
                self._save(self._job)


class SyncService:
    """Links mail accounts and runs receipt sync jobs in the background.

    ``start_sync`` returns as soon as the job row exists; the run itself is
    queued on a small thread pool and fans each message out to a bounded
    worker pool. A message that fails is logged and counted as processed;
    only failures outside the message loop fail the job.
    """

    def __init__(
        self,
        store: SyncStore,
        registry: ProviderRegistry,
        extractor: ReceiptExtractor | None = None,
        settings: SyncSettings | None = None,
        *,
        job_workers: int = 2,
        state_secret: str | None = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.extractor = extractor or ReceiptExtractor(LlmImageExtractor())
        self.settings = settings or SyncSettings()
        self._state_secret = state_secret
        self._executor = ThreadPoolExecutor(
            max_workers=job_workers, thread_name_prefix="sync-job"
        )
        self._start_lock = threading.Lock()
        self._futures: dict[int, Future[None]] = {}
        self._cancel_events: dict[int, threading.Event] = {}

    # -- accounts ---------------------------------------------------------

    def get_auth_url(self, user_id: int, provider_type: str = "gmail") -> str:
        """Return the consent URL that starts linking a mailbox."""
        return self.registry.create(provider_type).get_auth_url(user_id)

    def link_account(
        self, provider_type: str, code: str, state: str
    ) -> MailProviderAccount:
        """Finish an OAuth handshake and store the linked account."""
        user_id = decode_state(state, self._secret())
        adapter = self.registry.create(provider_type)
        credentials, email_address = adapter.handle_callback(code)
        account = self.store.create_account(
            user_id, provider_type, email_address, credentials
        )
        logger.info(
            "Linked %s account %s for user %d", provider_type, email_address, user_id
        )
        return account

    def link_account_with_credentials(
        self,
        user_id: int,
        provider_type: str,
        email_address: str,
        credentials: OAuthCredentials,
    ) -> MailProviderAccount:
        """Link a mailbox whose credentials were supplied directly (e.g. IMAP)."""
        adapter = self.registry.create(provider_type)
        verified = adapter.verify_tokens(credentials)
        return self.store.create_account(
            user_id, provider_type, email_address, verified
        )

    def list_accounts(self, user_id: int) -> list[MailProviderAccount]:
        return self.store.list_accounts(user_id)

    def delete_account(self, account_id: int) -> bool:
        """Unlink an account; its sync jobs are deleted with it."""
        active = self.store.get_active_job(account_id)
        if active is not None:
            self.cancel_sync(active.id)
        return self.store.delete_account(account_id)

    # -- jobs -------------------------------------------------------------

    def start_sync(self, account_id: int) -> SyncJob:
        """Create a pending job for the account and queue it."""
        with self._start_lock:
            if self.store.get_account(account_id) is None:
                msg = f"Mail account {account_id} not found"
                raise AccountNotFoundError(msg)
            active = self.store.get_active_job(account_id)
            if active is not None and active.id not in self._cancel_events:
                # Left pending or processing by a process that is gone.
                logger.warning(
                    "Marking orphaned sync job %d for account %d as failed",
                    active.id,
                    account_id,
                )
                self._finish(active, SyncStatus.FAILED, INTERRUPTED_MESSAGE)
                active = None
            if active is not None:
                msg = (
                    f"Sync job {active.id} is already {active.status} "
                    f"for account {account_id}"
                )
                raise SyncAlreadyActiveError(msg)

            job = self.store.create_job(account_id)
            self._cancel_events[job.id] = threading.Event()
            future = self._executor.submit(self._run, job.id)
            self._futures[job.id] = future
            future.add_done_callback(partial(self._forget, job.id))

        logger.info("Queued sync job %d for account %d", job.id, account_id)
        return job

    def get_sync_job(self, job_id: int) -> SyncJob | None:
        return self.store.get_job(job_id)

    def get_account_sync_jobs(self, account_id: int) -> list[SyncJob]:
        """All jobs for the account, newest first."""
        return self.store.list_jobs(account_id)

    def cancel_sync(self, job_id: int) -> bool:
        """Ask a queued or running job to stop; returns False if it is not running."""
        event = self._cancel_events.get(job_id)
        if event is None:
            return False
        event.set()
        logger.info("Cancellation requested for sync job %d", job_id)
        return True

    def wait(self, job_id: int, timeout: float | None = None) -> SyncJob | None:
        """Block until a queued job finishes and return its final state."""
        future = self._futures.get(job_id)
        if future is not None:
            future.result(timeout=timeout)
        return self.store.get_job(job_id)

    def shutdown(self, *, wait: bool = True) -> None:
        """Stop the job queue; without ``wait`` running jobs are cancelled."""
        if not wait:
            for event in list(self._cancel_events.values()):
                event.set()
        self._executor.shutdown(wait=wait)

    def process_single_message(
        self, account_id: int, message_id: str
    ) -> ExtractionResult:
        """Classify and extract one message without persisting anything."""
        account = self._account(account_id)
        adapter = self.registry.for_account(account)
        credentials = self._fresh_credentials(adapter, account)
        message = adapter.get_message(credentials, message_id)
        return self.extractor.process_message(
            message,
            partial(adapter.get_attachment, credentials, message.id),
            source_provider=account.provider_type,
            account_id=account.id,
        )

    # -- background run ---------------------------------------------------

    def _run(self, job_id: int) -> None:
        cancel = self._cancel_events[job_id]
        job = self.store.get_job(job_id)
        if job is None:
            logger.warning("Sync job %d vanished before it started", job_id)
            self._cancel_events.pop(job_id, None)
            return

        progress: JobProgress | None = None
        try:
            account = self._account(job.account_id)
            job = job.model_copy(update={"status": SyncStatus.PROCESSING})
            self.store.save_job(job)
            if cancel.is_set():
                self._finish(job, SyncStatus.FAILED, CANCELLED_MESSAGE)
                return

            adapter = self.registry.for_account(account)
            credentials = self._fresh_credentials(adapter, account)

            summaries = adapter.search_emails(credentials)
            imported = self.store.imported_source_ids(account.id)
            pending = [m for m in summaries if m.id not in imported]
            if len(pending) < len(summaries):
                logger.info(
                    "Job %d: skipping %d already imported messages",
                    job_id,
                    len(summaries) - len(pending),
                )

            job = job.model_copy(update={"messages_found": len(pending)})
            self.store.save_job(job)
            logger.info("Job %d: %d messages to process", job_id, len(pending))

            progress = JobProgress(
                job, self.settings.progress_interval, self.store.save_job
            )
            self._process_messages(
                adapter, credentials, account, pending, progress, cancel
            )

            if cancel.is_set():
                self._finish(progress.job, SyncStatus.FAILED, CANCELLED_MESSAGE)
                return

            finished = self._finish(progress.job, SyncStatus.COMPLETED)
            synced_at = finished.completed_at or datetime.now(tz=UTC)
            self.store.mark_account_synced(account.id, synced_at)
            logger.info(
                "Job %d completed: %d processed, %d receipts",
                job_id,
                finished.messages_processed,
                finished.receipts_found,
            )
        except Exception as exc:
            logger.error("Sync job %d failed: %s", job_id, exc, exc_info=True)
            current = progress.job if progress is not None else job
            self._finish(current, SyncStatus.FAILED, str(exc))
        finally:
            self._cancel_events.pop(job_id, None)

    def _process_messages(
        self,
        adapter: MailProviderAdapter,
        credentials: OAuthCredentials,
        account: MailProviderAccount,
        messages: list[CandidateMessage],
        progress: JobProgress,
        cancel: threading.Event,
    ) -> None:
        with ThreadPoolExecutor(
            max_workers=self.settings.workers, thread_name_prefix="sync-message"
        ) as pool:
            futures = [
                pool.submit(
                    self._process_one,
                    adapter,
                    credentials,
                    account,
                    summary.id,
                    progress,
                    cancel,
                )
                for summary in messages
            ]
        # Per-message errors are handled inside _process_one; anything that
        # escapes (e.g. a failed progress write) fails the job.
        for future in futures:
            future.result()

    def _process_one(
        self,
        adapter: MailProviderAdapter,
        credentials: OAuthCredentials,
        account: MailProviderAccount,
        message_id: str,
        progress: JobProgress,
        cancel: threading.Event,
    ) -> None:
        if cancel.is_set():
            return

        receipt_found = False
        try:
            message = adapter.get_message(credentials, message_id)
            result = self.extractor.process_message(
                message,
                partial(adapter.get_attachment, credentials, message.id),
                source_provider=account.provider_type,
                account_id=account.id,
            )
            if (
                result.is_receipt
                and result.receipt is not None
                and result.confidence > MIN_PERSIST_CONFIDENCE
            ):
                self.store.save_receipt(account.user_id, result.receipt)
                receipt_found = True
        except Exception:
            logger.warning(
                "Failed to process message %s for account %d",
                message_id,
                account.id,
                exc_info=True,
            )
        progress.record(receipt_found=receipt_found)

    def _finish(
        self, job: SyncJob, status: SyncStatus, error: str | None = None
    ) -> SyncJob:
        update: dict[str, Any] = {
            "status": status,
            "completed_at": datetime.now(tz=UTC),
        }
        if error is not None:
            update["error_message"] = error
        finished = job.model_copy(update=update)
        self.store.save_job(finished)
        return finished

    def _fresh_credentials(
        self, adapter: MailProviderAdapter, account: MailProviderAccount
    ) -> OAuthCredentials:
        credentials = adapter.verify_tokens(account.credentials)
        if credentials != account.credentials:
            self.store.update_account_credentials(account.id, credentials)
            logger.info("Stored refreshed credentials for account %d", account.id)
        return credentials

    def _account(self, account_id: int) -> MailProviderAccount:
        account = self.store.get_account(account_id)
        if account is None:
            msg = f"Mail account {account_id} not found"
            raise AccountNotFoundError(msg)
        return account

    def _secret(self) -> str:
        if self._state_secret is None:
            self._state_secret = get_oauth_state_secret()
        return self._state_secret

    def _forget(self, job_id: int, _future: Future[None]) -> None:
        self._futures.pop(job_id, None)
