"""Multi-account sync with per-account single-flight.

Two runs for the same account must never overlap: both would resolve the
same watermark and race on the final account update. :class:`SyncRunner`
serializes runs per account id with an ``asyncio.Lock``; a second caller
for a busy account gets a skipped result instead of waiting.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence

from pydantic import BaseModel, Field

from .models import MailAccount, SyncOptions, SyncOutcome
from .orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)


class AccountSyncResult(BaseModel):
    """Per-account entry of a multi-account run."""

    account_id: str
    email_address: str
    outcome: Optional[SyncOutcome] = None
    skipped_reason: Optional[str] = None


class MultiSyncSummary(BaseModel):
    """Aggregated result of :meth:`SyncRunner.sync_accounts`."""

    results: List[AccountSyncResult] = Field(default_factory=list)
    skipped: bool = Field(default=False, description="Every account was synced too recently")

    @property
    def total_synced(self) -> int:
        return sum(result.outcome.synced for result in self.results if result.outcome)

    @property
    def errors(self) -> List[str]:
        return [
            f"{result.email_address}: {error}"
            for result in self.results
            if result.outcome
            for error in result.outcome.errors
        ]

    @property
    def success(self) -> bool:
        return all(result.outcome.success for result in self.results if result.outcome)


class SyncRunner:
    """Run syncs for one or many accounts without overlapping per account."""

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        *,
        min_sync_interval_seconds: float = 30.0,
        total_budget_seconds: float = 55.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.orchestrator = orchestrator
        self.min_sync_interval_seconds = min_sync_interval_seconds
        self.total_budget_seconds = total_budget_seconds
        self.clock = clock
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, account_id: str) -> asyncio.Lock:
        lock = self._locks.get(account_id)
        if lock is None:
            lock = self._locks[account_id] = asyncio.Lock()
        return lock

    async def sync_account(
        self,
        account: MailAccount,
        options: Optional[SyncOptions] = None,
        *,
        cancel: Optional[asyncio.Event] = None,
    ) -> AccountSyncResult:
        lock = self._lock_for(account.id)
        if lock.locked():
            logger.info(
                f"Sync already running for {account.email_address}",
                extra={"account_id": account.id},
            )
            return AccountSyncResult(
                account_id=account.id,
                email_address=account.email_address,
                skipped_reason="sync already in progress",
            )
        try:
            async with lock:
                outcome = await self.orchestrator.sync(account, options, cancel=cancel)
        finally:
            # Busy callers are skipped rather than queued, so a released lock has no waiters
            if not lock.locked() and self._locks.get(account.id) is lock:
                del self._locks[account.id]
        return AccountSyncResult(
            account_id=account.id, email_address=account.email_address, outcome=outcome
        )

    def recently_synced(self, account: MailAccount, now: Optional[datetime] = None) -> bool:
        if account.last_sync_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        last = account.last_sync_at
        if last.tzinfo is None:
            last = last.replace(tzinfo=timezone.utc)
        return (now - last).total_seconds() < self.min_sync_interval_seconds

    async def sync_accounts(
        self,
        accounts: Sequence[MailAccount],
        options: Optional[SyncOptions] = None,
        *,
        cancel: Optional[asyncio.Event] = None,
    ) -> MultiSyncSummary:
        """Sync active accounts one after another.

        When every active account synced within the minimum interval and the
        caller did not ask for a full sync, nothing runs and the summary is
        marked ``skipped``. Accounts not started before the total budget runs
        out are reported as skipped.
        """
        options = options or SyncOptions()
        active = [account for account in accounts if account.is_active]
        summary = MultiSyncSummary()
        if not active:
            return summary

        if not options.full_sync and all(self.recently_synced(account) for account in active):
            logger.info(f"All {len(active)} account(s) synced recently, skipping")
            summary.skipped = True
            return summary

        started = self.clock()
        for account in active:
            if self.clock() - started >= self.total_budget_seconds:
                summary.results.append(
                    AccountSyncResult(
                        account_id=account.id,
                        email_address=account.email_address,
                        skipped_reason="time budget exhausted",
                    )
                )
                continue
            summary.results.append(await self.sync_account(account, options, cancel=cancel))

        logger.info(
            f"Synced {summary.total_synced} message(s) across {len(summary.results)} account(s)"
        )
        return summary


__all__ = ["AccountSyncResult", "MultiSyncSummary", "SyncRunner"]
