"""Tests for the imapclient-backed connection and connector."""

from __future__ import annotations

import socket
import ssl
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from imapclient.exceptions import IMAPClientError, LoginError

from inboxsync.errors import BatchFetchError, ConnectionFailedError, MailboxListingError
from inboxsync.ingestion.imap.connection import (
    FETCH_ITEMS,
    ImapConnector,
    ImapMailConnection,
    RetryStrategy,
    check_connection,
    envelope_from_imap,
)


def _address(mailbox, host, name=None):
    return SimpleNamespace(mailbox=mailbox, host=host, name=name)


@pytest.fixture
def client():
    mock = MagicMock()
    mock.select_folder.return_value = {b"EXISTS": 3, b"UIDNEXT": 4, b"UIDVALIDITY": 77}
    mock.has_capability.return_value = True
    return mock


@pytest.fixture
def connection(client):
    return ImapMailConnection(client=client, host="imap.example.com")


# ============================================================================
# Retry policy
# ============================================================================


def test_retry_strategy_delay_capped():
    """Test backoff grows exponentially up to the cap."""
    strategy = RetryStrategy(base_delay=1.0, max_delay=5.0, jitter=False)

    assert strategy.calculate_delay(0) == 1.0
    assert strategy.calculate_delay(2) == 4.0
    assert strategy.calculate_delay(5) == 5.0


def test_retry_strategy_classifies_errors():
    """Test network errors retry and authentication errors do not."""
    strategy = RetryStrategy(max_retries=2)

    assert strategy.should_retry(0, socket.timeout("timed out"))
    assert strategy.should_retry(1, ConnectionResetError("reset"))
    assert not strategy.should_retry(2, ConnectionResetError("reset"))
    assert not strategy.should_retry(0, LoginError("bad password"))
    assert not strategy.should_retry(0, IMAPClientError("[AUTHENTICATIONFAILED] nope"))
    assert not strategy.should_retry(0, ssl.SSLCertVerificationError("bad cert"))
    assert not strategy.should_retry(0, ValueError("other"))


# ============================================================================
# Envelope conversion
# ============================================================================


def test_envelope_from_imap_converts_fields():
    """Test imapclient envelopes map onto MessageEnvelope."""
    envelope = SimpleNamespace(
        message_id=b"<abc@example.com>",
        subject=b"=?utf-8?q?Caf=C3=A9?=",
        from_=(_address(b"Alice", b"Example.com", b"Alice A"),),
        to=(_address(b"bob", b"example.com"), _address(None, None)),
        cc=None,
        date=datetime(2024, 3, 1, 9, 30),
    )

    converted = envelope_from_imap(envelope)

    assert converted.message_id == "abc@example.com"
    assert converted.subject == "Café"
    assert converted.sender.address == "alice@example.com"
    assert converted.sender.name == "Alice A"
    assert [a.address for a in converted.to] == ["bob@example.com"]
    assert converted.cc == []
    assert converted.date == datetime(2024, 3, 1, 9, 30, tzinfo=timezone.utc)


def test_envelope_from_imap_none():
    """Test a missing envelope gives an empty one."""
    assert envelope_from_imap(None).sender is None


# ============================================================================
# Connection operations
# ============================================================================


def test_mailbox_lock_selects_readonly_and_releases(connection, client):
    """Test the mailbox is selected read-only and unselected afterwards."""
    with connection.mailbox_lock("INBOX") as status:
        assert status.uid_validity == 77
        assert status.message_count == 3

    client.select_folder.assert_called_once_with("INBOX", readonly=True)
    client.unselect_folder.assert_called_once()


def test_mailbox_lock_released_on_error(connection, client):
    """Test the mailbox is released even when the body raises."""
    client.has_capability.return_value = False

    with pytest.raises(RuntimeError):
        with connection.mailbox_lock("INBOX"):
            raise RuntimeError("boom")

    client.close_folder.assert_called_once()


def test_select_failure_is_listing_error(connection, client):
    """Test SELECT failures surface as MailboxListingError."""
    client.select_folder.side_effect = IMAPClientError("no such mailbox")

    with pytest.raises(MailboxListingError):
        with connection.mailbox_lock("INBOX"):
            pass


def test_list_identifiers_requires_lock(connection):
    """Test listing outside the lock is rejected."""
    with pytest.raises(MailboxListingError):
        connection.list_identifiers("INBOX")


def test_list_identifiers_incremental_filters_star(connection, client):
    """Test an incremental search drops UIDs below the requested minimum."""
    client.search.return_value = [500]

    with connection.mailbox_lock("INBOX"):
        uids = connection.list_identifiers("INBOX", min_uid=501)

    client.search.assert_called_once_with(["UID", "501:*"])
    assert uids == []


def test_list_identifiers_all(connection, client):
    """Test a full listing searches ALL."""
    client.search.return_value = [1, 2, 3]

    with connection.mailbox_lock("INBOX"):
        assert connection.list_identifiers("INBOX") == [1, 2, 3]

    client.search.assert_called_once_with(["ALL"])


def test_list_identifiers_search_error(connection, client):
    """Test SEARCH failures become MailboxListingError."""
    client.search.side_effect = IMAPClientError("BAD")

    with connection.mailbox_lock("INBOX"):
        with pytest.raises(MailboxListingError, match="UID SEARCH failed"):
            connection.list_identifiers("INBOX")


def test_fetch_batch_uses_peek(connection, client):
    """Test fetching never sets the seen flag and skips bodiless replies."""
    client.fetch.return_value = {
        7: {b"BODY[]": b"Subject: hi\r\n\r\nbody", b"FLAGS": (b"\\Seen",), b"ENVELOPE": None},
        8: {b"FLAGS": ()},
    }

    messages = connection.fetch_batch([7, 8])

    client.fetch.assert_called_once_with([7, 8], FETCH_ITEMS)
    assert "BODY.PEEK[]" in FETCH_ITEMS
    assert [message.uid for message in messages] == [7]
    assert messages[0].is_read is True


def test_fetch_batch_error(connection, client):
    """Test FETCH failures surface as BatchFetchError."""
    client.fetch.side_effect = OSError("connection reset")

    with pytest.raises(BatchFetchError, match="connection reset"):
        connection.fetch_batch([1, 2])


def test_fetch_batch_empty(connection, client):
    """Test an empty request does not hit the server."""
    assert connection.fetch_batch([]) == []
    client.fetch.assert_not_called()


def test_list_status(connection, client):
    """Test STATUS values are mapped."""
    client.folder_status.return_value = {b"MESSAGES": 12, b"UIDNEXT": 40, b"UIDVALIDITY": 9}

    status = connection.list_status("INBOX")

    assert (status.message_count, status.uid_next, status.uid_validity) == (12, 40, 9)


def test_close_swallows_logout_errors(connection, client):
    """Test logout errors do not escape close."""
    client.logout.side_effect = OSError("gone")

    connection.close()


# ============================================================================
# Connector
# ============================================================================


@patch("inboxsync.ingestion.imap.connection.IMAPClient")
def test_connector_logs_in(mock_client_cls):
    """Test a successful connect logs in with UID mode."""
    connector = ImapConnector(connection_timeout=5)

    connection = connector.connect(
        host="imap.example.com", port=993, secure=True, username="bob", password="pw"
    )

    kwargs = mock_client_cls.call_args.kwargs
    assert kwargs["use_uid"] is True
    assert kwargs["timeout"] == 5
    assert isinstance(kwargs["ssl_context"], ssl.SSLContext)
    mock_client_cls.return_value.login.assert_called_once_with("bob", "pw")
    assert connection.host == "imap.example.com"


@patch("inboxsync.ingestion.imap.connection.IMAPClient")
def test_connector_retries_transient_errors(mock_client_cls):
    """Test transient network failures are retried."""
    sleeps = []
    mock_client_cls.side_effect = [ConnectionResetError("reset"), MagicMock()]
    connector = ImapConnector(retry_strategy=RetryStrategy(jitter=False), sleep=sleeps.append)

    connector.connect(host="h", port=993, secure=False, username="u", password="p")

    assert mock_client_cls.call_count == 2
    assert sleeps == [1.0]


@patch("inboxsync.ingestion.imap.connection.IMAPClient")
def test_connector_does_not_retry_login_failure(mock_client_cls):
    """Test authentication failures fail fast."""
    mock_client_cls.return_value.login.side_effect = LoginError("invalid credentials")
    sleeps = []
    connector = ImapConnector(sleep=sleeps.append)

    with pytest.raises(ConnectionFailedError, match="invalid credentials"):
        connector.connect(host="h", port=993, secure=False, username="u", password="p")

    assert sleeps == []
    mock_client_cls.return_value.shutdown.assert_called_once()


@patch("inboxsync.ingestion.imap.connection.IMAPClient")
def test_connector_gives_up_after_retries(mock_client_cls):
    """Test the connector stops after the configured retries."""
    mock_client_cls.side_effect = socket.timeout("timed out")
    connector = ImapConnector(retry_strategy=RetryStrategy(max_retries=2), sleep=lambda _: None)

    with pytest.raises(ConnectionFailedError):
        connector.connect(host="h", port=993, secure=False, username="u", password="p")

    assert mock_client_cls.call_count == 3


# ============================================================================
# Connection check
# ============================================================================


def test_check_connection_success(connector, server):
    """Test a working server reports success and closes the session."""
    result = check_connection(
        connector, host="imap.example.com", port=993, secure=True, username="u", password="p"
    )

    assert result.success is True
    assert server.connections_closed == 1


def test_check_connection_failure(connector, server):
    """Test failures are reported, not raised."""
    server.fail_connect = ConnectionFailedError("Could not connect to imap.example.com:993: refused")

    result = check_connection(
        connector, host="imap.example.com", port=993, secure=True, username="u", password="p"
    )

    assert result.success is False
    assert "refused" in result.error
