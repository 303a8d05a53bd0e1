"""Shared fixtures for IMAP sync tests.

Provides an in-memory mail server that implements the ``MailConnection`` and
``MailConnector`` contracts, so the sync engine can be exercised end to end
against a real SQLite store without network access.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from email.message import EmailMessage
from email.utils import format_datetime
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Set, Tuple

import pytest

from inboxsync.errors import MailboxListingError
from inboxsync.ingestion.imap.models import (
    EmailAddress,
    MailAccount,
    MailboxStatus,
    MessageEnvelope,
    RawMessage,
)
from inboxsync.ingestion.imap.persistence import SQLiteMessageStore
from inboxsync.privacy.encryption import AesCbcCredentialCipher

ENCRYPTION_KEY = "unit-test-encryption-key"
PASSWORD = "app-password"


def build_message(
    uid: int,
    *,
    subject: Optional[str] = None,
    body: Optional[str] = None,
    html: Optional[str] = None,
    attachments: Sequence[Tuple[str, bytes]] = (),
    sender: str = "Alice Sender <alice@example.com>",
    message_id: Optional[str] = None,
) -> bytes:
    """Build an RFC822 message for tests."""
    msg = EmailMessage()
    msg["From"] = sender
    msg["To"] = "bob@example.com"
    msg["Subject"] = subject if subject is not None else f"Message {uid}"
    msg["Date"] = format_datetime(datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc))
    msg["Message-ID"] = message_id or f"<msg-{uid}@example.com>"
    msg.set_content(body if body is not None else f"Body of message {uid}")
    if html is not None:
        msg.add_alternative(html, subtype="html")
    for filename, payload in attachments:
        msg.add_attachment(
            payload, maintype="application", subtype="octet-stream", filename=filename
        )
    return msg.as_bytes()


class FakeMailServer:
    """In-memory INBOX with failure injection and call recording."""

    def __init__(self) -> None:
        self.messages: Dict[int, bytes] = {}
        self.flags: Dict[int, List[str]] = {}
        self.uid_validity = 1
        self.fail_connect: Optional[Exception] = None
        self.fail_listing = False
        self.fail_fetch_containing: Set[int] = set()
        self.withhold_uids: Set[int] = set()
        self.on_fetch: Optional[Callable[[List[int]], None]] = None

        # Recorded activity
        self.fetch_requests: List[List[int]] = []
        self.search_min_uids: List[Optional[int]] = []
        self.locks_acquired = 0
        self.locks_released = 0
        self.connections_opened = 0
        self.connections_closed = 0
        self.logins: List[Tuple[str, str]] = []

    def add(self, uid: int, raw: Optional[bytes] = None, flags: Sequence[str] = ()) -> None:
        self.messages[uid] = raw if raw is not None else build_message(uid)
        self.flags[uid] = list(flags)

    def add_range(self, first: int, last: int) -> None:
        for uid in range(first, last + 1):
            self.add(uid)

    @property
    def fetched_uids(self) -> List[int]:
        return [uid for request in self.fetch_requests for uid in request]


class FakeConnection:
    """``MailConnection`` backed by a :class:`FakeMailServer`."""

    def __init__(self, server: FakeMailServer) -> None:
        self.server = server
        self.selected: Optional[str] = None
        self.closed = False

    def list_status(self, mailbox: str) -> MailboxStatus:
        return MailboxStatus(
            mailbox=mailbox,
            message_count=len(self.server.messages),
            uid_next=max(self.server.messages, default=0) + 1,
            uid_validity=self.server.uid_validity,
        )

    def list_identifiers(self, mailbox: str, min_uid: Optional[int] = None) -> List[int]:
        assert self.selected == mailbox, "mailbox must be locked before listing"
        self.server.search_min_uids.append(min_uid)
        if self.server.fail_listing:
            raise MailboxListingError("UID SEARCH failed: server unavailable")
        uids = sorted(self.server.messages)
        if min_uid is None:
            return uids
        matching = [uid for uid in uids if uid >= min_uid]
        # Mimic "N:*" returning the highest UID when nothing is above N
        return matching or uids[-1:]

    def fetch_batch(self, uids: Sequence[int]) -> List[RawMessage]:
        assert self.selected is not None, "mailbox must be locked before fetching"
        requested = list(uids)
        self.server.fetch_requests.append(requested)
        if self.server.on_fetch is not None:
            self.server.on_fetch(requested)
        if self.server.fail_fetch_containing.intersection(requested):
            raise OSError("connection reset during FETCH")
        return [
            RawMessage(
                uid=uid,
                envelope=MessageEnvelope(
                    message_id=f"msg-{uid}@example.com",
                    sender=EmailAddress(address="alice@example.com", name="Alice Sender"),
                    to=[EmailAddress(address="bob@example.com")],
                    date=datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc),
                ),
                flags=self.server.flags.get(uid, []),
                source=self.server.messages[uid],
            )
            for uid in requested
            if uid in self.server.messages and uid not in self.server.withhold_uids
        ]

    def fetch_source(self, uid: int) -> Optional[RawMessage]:
        messages = self.fetch_batch([uid])
        return messages[0] if messages else None

    @contextmanager
    def mailbox_lock(self, mailbox: str) -> Iterator[MailboxStatus]:
        self.server.locks_acquired += 1
        self.selected = mailbox
        try:
            yield self.list_status(mailbox)
        finally:
            self.selected = None
            self.server.locks_released += 1

    def close(self) -> None:
        self.closed = True
        self.server.connections_closed += 1


class FakeConnector:
    """``MailConnector`` handing out :class:`FakeConnection` objects."""

    def __init__(self, server: FakeMailServer) -> None:
        self.server = server

    def connect(
        self, *, host: str, port: int, secure: bool, username: str, password: str
    ) -> FakeConnection:
        if self.server.fail_connect is not None:
            raise self.server.fail_connect
        self.server.connections_opened += 1
        self.server.logins.append((username, password))
        return FakeConnection(self.server)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def cipher() -> AesCbcCredentialCipher:
    return AesCbcCredentialCipher(ENCRYPTION_KEY)


@pytest.fixture
def server() -> FakeMailServer:
    return FakeMailServer()


@pytest.fixture
def connector(server: FakeMailServer) -> FakeConnector:
    return FakeConnector(server)


@pytest.fixture
def store(tmp_path: Path) -> Iterator[SQLiteMessageStore]:
    message_store = SQLiteMessageStore(tmp_path / "mail.sqlite3")
    yield message_store
    message_store.close()


@pytest.fixture
def account(store: SQLiteMessageStore, cipher: AesCbcCredentialCipher) -> MailAccount:
    mail_account = MailAccount(
        id="acct-1",
        email_address="bob@example.com",
        imap_host="imap.example.com",
        username="bob@example.com",
        password_encrypted=cipher.encrypt(PASSWORD),
    )
    store.add_account(mail_account)
    return mail_account


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


