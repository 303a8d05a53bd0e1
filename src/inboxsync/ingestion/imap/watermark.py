"""Watermark resolution: which UIDs a run should fetch.

A run is *full* when the caller asks for it, *initial* when the account has
never been synced, and *incremental* otherwise. Full and initial runs take the
``limit`` newest UIDs of the mailbox. Incremental runs only ever consider UIDs
strictly above the watermark; when more than ``limit`` are new, the lowest
``limit`` of them are taken so the remainder stays above the committed
watermark for the next run. Every plan is returned newest first.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from ...errors import InboxSyncError, MailboxListingError
from .connection import MailConnection
from .models import SyncOptions

logger = logging.getLogger(__name__)


class FetchMode(str, Enum):
    FULL = "full"
    INITIAL = "initial"
    INCREMENTAL = "incremental"


class FetchPlan(BaseModel):
    """Ordered UIDs to fetch in one run."""

    uids: List[int] = Field(default_factory=list, description="UIDs, newest first")
    mode: FetchMode
    available: int = Field(default=0, ge=0, description="Candidate UIDs before the limit")
    deferred: int = Field(default=0, ge=0, description="Candidates left for a later run")

    @property
    def is_empty(self) -> bool:
        return not self.uids


class WatermarkResolver:
    """Compute a :class:`FetchPlan` from the mailbox listing and the watermark."""

    def __init__(self, mailbox: str = "INBOX") -> None:
        self.mailbox = mailbox

    def resolve(
        self,
        connection: MailConnection,
        watermark: Optional[int],
        options: SyncOptions,
    ) -> FetchPlan:
        """List the mailbox and choose the UIDs for this run.

        Raises:
            MailboxListingError: If the server listing fails. This is fatal
                for the run.
        """
        incremental = not options.full_sync and watermark is not None
        min_uid = watermark + 1 if incremental else None
        try:
            listed = connection.list_identifiers(self.mailbox, min_uid=min_uid)
        except InboxSyncError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise MailboxListingError(f"Listing {self.mailbox} failed: {exc}") from exc

        if incremental:
            candidates = sorted({uid for uid in listed if uid > watermark})
            selected = candidates[: options.limit]
            mode = FetchMode.INCREMENTAL
        else:
            candidates = sorted(set(listed), reverse=True)
            selected = candidates[: options.limit]
            mode = FetchMode.FULL if options.full_sync else FetchMode.INITIAL

        plan = FetchPlan(
            uids=sorted(selected, reverse=True),
            mode=mode,
            available=len(candidates),
            deferred=len(candidates) - len(selected),
        )
        logger.info(
            f"Resolved {len(plan.uids)} UIDs to fetch ({mode.value}, {plan.deferred} deferred)",
            extra={"mode": mode.value, "watermark": watermark, "available": plan.available},
        )
        return plan


__all__ = ["FetchMode", "FetchPlan", "WatermarkResolver"]
