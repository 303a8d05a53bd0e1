"""Tests for watermark resolution."""

from __future__ import annotations

from unittest.mock import Mock

import pytest

from inboxsync.errors import MailboxListingError
from inboxsync.ingestion.imap.models import SyncOptions
from inboxsync.ingestion.imap.watermark import FetchMode, WatermarkResolver


@pytest.fixture
def resolver() -> WatermarkResolver:
    return WatermarkResolver("INBOX")


def _resolve(resolver, connector, watermark, options):
    connection = connector.connect(
        host="imap.example.com", port=993, secure=True, username="u", password="p"
    )
    with connection.mailbox_lock("INBOX"):
        return resolver.resolve(connection, watermark, options)


# ============================================================================
# Full and initial runs
# ============================================================================


def test_initial_run_takes_newest(resolver, server, connector):
    """Test an account without watermark fetches the newest UIDs first."""
    server.add_range(1, 300)

    plan = _resolve(resolver, connector, None, SyncOptions(limit=100))

    assert plan.mode == FetchMode.INITIAL
    assert plan.uids == list(range(300, 200, -1))
    assert plan.available == 300
    assert plan.deferred == 200
    assert server.search_min_uids == [None]


def test_full_sync_ignores_watermark(resolver, server, connector):
    """Test full sync lists everything even when a watermark exists."""
    server.add_range(1, 50)

    plan = _resolve(resolver, connector, 40, SyncOptions(limit=100, full_sync=True))

    assert plan.mode == FetchMode.FULL
    assert plan.uids == list(range(50, 0, -1))
    assert server.search_min_uids == [None]


def test_empty_mailbox_yields_empty_plan(resolver, server, connector):
    """Test an empty mailbox produces an empty plan."""
    plan = _resolve(resolver, connector, None, SyncOptions(limit=10))

    assert plan.is_empty
    assert plan.available == 0


# ============================================================================
# Incremental runs
# ============================================================================


def test_incremental_lists_above_watermark(resolver, server, connector):
    """Test incremental runs only see UIDs above the watermark."""
    server.add_range(1, 530)

    plan = _resolve(resolver, connector, 500, SyncOptions(limit=100))

    assert plan.mode == FetchMode.INCREMENTAL
    assert plan.uids == list(range(530, 500, -1))
    assert server.search_min_uids == [501]


def test_incremental_filters_star_range_quirk(resolver, server, connector):
    """Test the highest UID returned for an empty N:* range is dropped."""
    server.add_range(1, 500)

    plan = _resolve(resolver, connector, 500, SyncOptions(limit=100))

    assert plan.is_empty


def test_incremental_excess_is_deferred_not_dropped(resolver, server, connector):
    """Test the lowest new UIDs are taken so the rest stay above the watermark."""
    server.add_range(1, 400)

    plan = _resolve(resolver, connector, 100, SyncOptions(limit=100))

    assert plan.uids == list(range(200, 100, -1))
    assert plan.deferred == 200
    assert all(uid > 100 for uid in plan.uids)


def test_plan_never_exceeds_limit(resolver, server, connector):
    """Test the plan size is bounded by the limit."""
    server.add_range(1, 1000)

    plan = _resolve(resolver, connector, None, SyncOptions(limit=7))

    assert len(plan.uids) == 7


# ============================================================================
# Failures
# ============================================================================


def test_listing_failure_is_fatal(resolver, server, connector):
    """Test listing errors propagate as MailboxListingError."""
    server.fail_listing = True

    with pytest.raises(MailboxListingError):
        _resolve(resolver, connector, None, SyncOptions())


def test_unexpected_listing_error_is_wrapped(resolver):
    """Test arbitrary listing exceptions are wrapped."""
    connection = Mock()
    connection.list_identifiers.side_effect = OSError("socket closed")

    with pytest.raises(MailboxListingError, match="socket closed"):
        resolver.resolve(connection, None, SyncOptions())
