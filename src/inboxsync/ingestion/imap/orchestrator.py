"""Sync orchestrator: one budgeted, resumable sync run for one account.

A run moves through ``idle -> connecting -> resolving -> batch_loop ->
finalizing -> done``. Failing to decrypt credentials, connect, or list the
mailbox ends the run in ``aborted``. Inside the batch loop every failure is
recorded and the loop carries on with the next batch.

The wall-clock budget and the optional cancellation event are checked only
between batches. Work already committed is kept, the rest is deferred to the
next run, and the run still counts as successful.

The account's watermark, running total, error field and last-sync time are
written exactly once, at the end of the run, from what was durably persisted.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Callable, List, Optional

from ...errors import (
    ConnectionFailedError,
    CredentialDecryptionError,
    InboxSyncError,
    MailboxListingError,
    PersistenceError,
)
from ...configuration.settings import SyncSettings
from ...privacy.encryption import CredentialCipher
from .connection import MailConnection, MailConnector
from .email_parser import MessageParser
from .fetch import BatchFetchPipeline
from .models import MailAccount, SyncOptions, SyncOutcome, SyncRunState
from .parse_pool import ParallelParsePool
from .persistence import AccountSyncUpdate, MessageStore, PersistenceBatchWriter
from .watermark import WatermarkResolver

logger = logging.getLogger(__name__)


class _SyncRun:
    """Mutable bookkeeping for a single run."""

    def __init__(self, account: MailAccount, clock: Callable[[], float], budget: float) -> None:
        self.account = account
        self.clock = clock
        self.started = clock()
        self.deadline = self.started + budget
        self.state = SyncRunState.IDLE
        self.errors: List[str] = []
        self.synced = 0
        self.max_uid: Optional[int] = None

    def transition(self, state: SyncRunState) -> None:
        logger.debug(
            f"Sync run {self.state.value} -> {state.value}",
            extra={"account_id": self.account.id},
        )
        self.state = state

    def record_persisted(self, uids: List[int]) -> None:
        if not uids:
            return
        self.synced += len(uids)
        batch_max = max(uids)
        if self.max_uid is None or batch_max > self.max_uid:
            self.max_uid = batch_max

    @property
    def elapsed(self) -> float:
        return self.clock() - self.started


class SyncOrchestrator:
    """Drive one account through a sync run.

    Args:
        connector: Opens mail server sessions
        cipher: Decrypts the stored account password
        store: Durable message store
        settings: Batch size, concurrency, budget and body bounds
        clock: Monotonic clock in seconds, injectable for tests
    """

    def __init__(
        self,
        connector: MailConnector,
        cipher: CredentialCipher,
        store: MessageStore,
        settings: Optional[SyncSettings] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.connector = connector
        self.cipher = cipher
        self.store = store
        self.settings = settings or SyncSettings()
        self.clock = clock
        self.writer = PersistenceBatchWriter(store)
        self.resolver = WatermarkResolver(self.settings.mailbox)

    async def sync(
        self,
        account: MailAccount,
        options: Optional[SyncOptions] = None,
        *,
        cancel: Optional[asyncio.Event] = None,
    ) -> SyncOutcome:
        """Run one sync for ``account``. Never raises for run-level failures."""
        options = self._effective_options(options)
        run = _SyncRun(account, self.clock, self.settings.run_budget_seconds)
        logger.info(
            f"Starting sync for {account.email_address} (limit={options.limit}, "
            f"full_sync={options.full_sync})",
            extra={"account_id": account.id},
        )

        run.transition(SyncRunState.CONNECTING)
        try:
            connection = self._connect(account)
        except InboxSyncError as exc:
            return self._abort(run, exc)

        try:
            with connection.mailbox_lock(self.settings.mailbox) as status:
                run.transition(SyncRunState.RESOLVING)
                logger.debug(
                    f"{status.mailbox}: {status.message_count} message(s), "
                    f"UIDVALIDITY {status.uid_validity}",
                    extra={"account_id": account.id},
                )
                plan = self.resolver.resolve(connection, account.last_sync_uid, options)
                run.transition(SyncRunState.BATCH_LOOP)
                await self._batch_loop(run, connection, plan.uids, account, cancel)
        except MailboxListingError as exc:
            return self._abort(run, exc)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unexpected error during sync", extra={"account_id": account.id})
            return self._abort(run, exc)
        finally:
            connection.close()

        return self._finalize(run)

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _effective_options(self, options: Optional[SyncOptions]) -> SyncOptions:
        if options is None:
            return SyncOptions(limit=self.settings.default_limit)
        if options.limit > self.settings.max_limit:
            return options.model_copy(update={"limit": self.settings.max_limit})
        return options

    def _connect(self, account: MailAccount) -> MailConnection:
        try:
            password = self.cipher.decrypt(account.password_encrypted)
        except CredentialDecryptionError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise CredentialDecryptionError() from exc

        try:
            return self.connector.connect(
                host=account.imap_host,
                port=account.imap_port,
                secure=account.imap_secure,
                username=account.username,
                password=password,
            )
        except ConnectionFailedError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise ConnectionFailedError(f"Could not connect to {account.imap_host}: {exc}") from exc

    async def _batch_loop(
        self,
        run: _SyncRun,
        connection: MailConnection,
        uids: List[int],
        account: MailAccount,
        cancel: Optional[asyncio.Event],
    ) -> None:
        pipeline = BatchFetchPipeline(connection, batch_size=self.settings.batch_size)
        pool = ParallelParsePool(
            MessageParser(
                fallback_domain=account.imap_host,
                max_text_chars=self.settings.max_text_chars,
                max_html_chars=self.settings.max_html_chars,
                max_message_bytes=self.settings.max_message_bytes,
            ),
            max_concurrency=self.settings.parse_concurrency,
        )
        batches = pipeline.batches(uids)

        for index, batch in enumerate(batches):
            stop_note = self._stop_note(run, cancel, index, len(batches))
            if stop_note:
                logger.info(stop_note, extra={"account_id": account.id, "batch": index})
                run.errors.append(stop_note)
                break

            fetched = pipeline.fetch(index, batch)
            run.errors.extend(fetched.notes)
            if not fetched.messages:
                continue

            outcomes = await pool.parse_all(fetched.messages)
            parsed = [outcome.message for outcome in outcomes if outcome.message is not None]
            run.errors.extend(
                outcome.error if outcome.error.startswith("UID ") else f"UID {outcome.uid}: {outcome.error}"
                for outcome in outcomes
                if not outcome.ok
            )
            if not parsed:
                continue

            try:
                written = self.writer.write(account.id, parsed)
            except PersistenceError as exc:
                logger.error(
                    f"Batch {index + 1} not saved: {exc}",
                    extra={"account_id": account.id, "batch": index},
                )
                run.errors.append(f"Batch {index + 1}: {exc.message}")
                continue

            run.record_persisted(written.persisted_uids)
            if written.attachment_error:
                run.errors.append(f"Batch {index + 1}: {written.attachment_error}")
            logger.info(
                f"Batch {index + 1}/{len(batches)}: saved {len(written.refs)} message(s)",
                extra={"account_id": account.id, "batch": index},
            )

    def _stop_note(
        self, run: _SyncRun, cancel: Optional[asyncio.Event], index: int, total: int
    ) -> Optional[str]:
        remaining = total - index
        if cancel is not None and cancel.is_set():
            return f"Sync cancelled after {index} of {total} batch(es); {remaining} deferred"
        if run.clock() >= run.deadline:
            return (
                f"Sync time budget of {self.settings.run_budget_seconds:g}s exhausted after "
                f"{index} of {total} batch(es); {remaining} deferred to the next run"
            )
        return None

    def _finalize(self, run: _SyncRun) -> SyncOutcome:
        run.transition(SyncRunState.FINALIZING)
        update = AccountSyncUpdate(
            last_sync_at=datetime.now(timezone.utc),
            sync_error="; ".join(run.errors) or None,
            last_sync_uid=run.max_uid,
            synced_increment=run.synced,
        )
        try:
            self.store.update_account(run.account.id, update)
        except Exception as exc:  # noqa: BLE001
            # Watermark stays behind, the next run refetches these UIDs
            logger.error(
                f"Failed to record sync state: {exc}",
                extra={"account_id": run.account.id},
            )
            run.errors.append(f"Failed to record sync state: {exc}")
            run.transition(SyncRunState.DONE)
            return self._outcome(run, success=True, watermark=None)

        watermark = self._committed_watermark(run)
        run.transition(SyncRunState.DONE)
        logger.info(
            f"Sync finished: {run.synced} message(s) in {run.elapsed:.1f}s",
            extra={"account_id": run.account.id, "watermark": watermark},
        )
        return self._outcome(run, success=True, watermark=watermark)

    def _abort(self, run: _SyncRun, exc: Exception) -> SyncOutcome:
        message = exc.message if isinstance(exc, InboxSyncError) else str(exc)
        logger.error(
            f"Sync aborted during {run.state.value}: {message}",
            extra={"account_id": run.account.id},
        )
        run.errors.append(message)
        watermark = None
        try:
            self.store.update_account(
                run.account.id,
                AccountSyncUpdate(
                    last_sync_at=datetime.now(timezone.utc),
                    sync_error="; ".join(run.errors),
                    last_sync_uid=run.max_uid,
                    synced_increment=run.synced,
                ),
            )
            watermark = self._committed_watermark(run)
        except Exception as update_exc:  # noqa: BLE001
            logger.error(
                f"Failed to record sync error: {update_exc}",
                extra={"account_id": run.account.id},
            )
        run.transition(SyncRunState.ABORTED)
        return self._outcome(run, success=False, watermark=watermark)

    def _committed_watermark(self, run: _SyncRun) -> Optional[int]:
        """Watermark as stored after the account update, or None if this run persisted nothing."""
        if run.max_uid is None:
            return None
        try:
            stored = self.store.get_account(run.account.id)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                f"Could not re-read committed watermark: {exc}",
                extra={"account_id": run.account.id},
            )
            stored = None
        previous = stored.last_sync_uid if stored is not None else run.account.last_sync_uid
        # The store never lowers the watermark
        return run.max_uid if previous is None else max(previous, run.max_uid)

    def _outcome(self, run: _SyncRun, *, success: bool, watermark: Optional[int]) -> SyncOutcome:
        return SyncOutcome(
            success=success,
            synced=run.synced,
            errors=list(run.errors),
            new_watermark=watermark,
            state=run.state,
            duration_seconds=max(run.elapsed, 0.0),
        )


__all__ = ["SyncOrchestrator"]
