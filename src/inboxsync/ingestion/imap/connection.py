"""Mail server connection contract and its imapclient implementation.

The sync engine only talks to :class:`MailConnection` and
:class:`MailConnector`. :class:`ImapConnector` opens TLS connections with
imapclient (certifi CA bundle, TLS 1.2 minimum), retries transient network
errors with exponential backoff, and never retries authentication failures.

All UID operations run with ``use_uid=True``. Fetches use ``BODY.PEEK[]`` so
syncing never marks messages as read on the server.
"""

from __future__ import annotations

import logging
import random
import socket
import ssl
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.header import decode_header, make_header
from typing import Any, Dict, Iterator, List, Optional, Protocol, Sequence

import certifi
from imapclient import IMAPClient
from imapclient.exceptions import IMAPClientError, LoginError
from pydantic import BaseModel

from ...errors import BatchFetchError, ConnectionFailedError, MailboxListingError
from .models import EmailAddress, MailboxStatus, MessageEnvelope, RawMessage

logger = logging.getLogger(__name__)

FETCH_ITEMS = ["UID", "ENVELOPE", "FLAGS", "BODY.PEEK[]"]
SOURCE_KEY = b"BODY[]"


# ---------------------------------------------------------------------------
# Contracts
# ---------------------------------------------------------------------------


class MailConnection(Protocol):
    """An authenticated session against one mail server."""

    def list_status(self, mailbox: str) -> MailboxStatus:
        ...

    def list_identifiers(self, mailbox: str, min_uid: Optional[int] = None) -> List[int]:
        ...

    def fetch_batch(self, uids: Sequence[int]) -> List[RawMessage]:
        ...

    def fetch_source(self, uid: int) -> Optional[RawMessage]:
        ...

    def mailbox_lock(self, mailbox: str) -> Any:
        ...

    def close(self) -> None:
        ...


class MailConnector(Protocol):
    """Opens :class:`MailConnection` sessions."""

    def connect(
        self,
        *,
        host: str,
        port: int,
        secure: bool,
        username: str,
        password: str,
    ) -> MailConnection:
        ...


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------


@dataclass
class RetryStrategy:
    """Exponential backoff retry configuration with jitter."""

    max_retries: int = 2
    base_delay: float = 1.0
    max_delay: float = 10.0
    exponential_base: float = 2.0
    jitter: bool = True

    def calculate_delay(self, retry_count: int) -> float:
        delay = min(self.base_delay * (self.exponential_base**retry_count), self.max_delay)
        if self.jitter:
            delay *= 1 + random.random() * 0.5
        return delay

    def should_retry(self, retry_count: int, exc: Exception) -> bool:
        if retry_count >= self.max_retries:
            return False
        # Authentication errors should not be retried automatically
        if isinstance(exc, LoginError):
            return False
        if isinstance(exc, IMAPClientError) and "AUTHENTICATIONFAILED" in str(exc).upper():
            return False
        if isinstance(exc, (TimeoutError, socket.timeout)):
            return True
        if isinstance(exc, ssl.SSLCertVerificationError):
            return False
        if isinstance(exc, (socket.error, OSError)):
            return True
        return isinstance(exc, IMAPClient.AbortError)


# ---------------------------------------------------------------------------
# imapclient implementation
# ---------------------------------------------------------------------------


def _decode(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    try:
        decoded = str(make_header(decode_header(value)))
    except (ValueError, LookupError, UnicodeDecodeError):
        decoded = value
    return decoded.strip() or None


def _convert_addresses(addresses: Any) -> List[EmailAddress]:
    result: List[EmailAddress] = []
    for address in addresses or ():
        mailbox = _decode(getattr(address, "mailbox", None))
        host = _decode(getattr(address, "host", None))
        if not mailbox or not host:
            # Group syntax markers carry no host
            continue
        result.append(
            EmailAddress(
                address=f"{mailbox}@{host}".lower(),
                name=_decode(getattr(address, "name", None)),
            )
        )
    return result


def envelope_from_imap(envelope: Any) -> MessageEnvelope:
    """Convert an imapclient ``Envelope`` into :class:`MessageEnvelope`."""
    if envelope is None:
        return MessageEnvelope()
    senders = _convert_addresses(getattr(envelope, "from_", None))
    date = getattr(envelope, "date", None)
    if isinstance(date, datetime) and date.tzinfo is None:
        date = date.replace(tzinfo=timezone.utc)
    message_id = _decode(getattr(envelope, "message_id", None))
    return MessageEnvelope(
        message_id=message_id.strip("<>") if message_id else None,
        subject=_decode(getattr(envelope, "subject", None)),
        sender=senders[0] if senders else None,
        to=_convert_addresses(getattr(envelope, "to", None)),
        cc=_convert_addresses(getattr(envelope, "cc", None)),
        date=date if isinstance(date, datetime) else None,
    )


def _decode_flags(flags: Any) -> List[str]:
    return [
        flag.decode("utf-8", errors="replace") if isinstance(flag, bytes) else str(flag)
        for flag in flags or ()
    ]


@dataclass
class ImapMailConnection:
    """imapclient-backed :class:`MailConnection`."""

    client: IMAPClient
    host: str
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)
    _selected: Optional[str] = field(default=None, init=False)

    def list_status(self, mailbox: str) -> MailboxStatus:
        try:
            status: Dict[bytes, Any] = self.client.folder_status(
                mailbox, ["MESSAGES", "UIDNEXT", "UIDVALIDITY"]
            )
        except (IMAPClientError, OSError) as exc:
            raise MailboxListingError(f"STATUS {mailbox} failed: {exc}") from exc
        return MailboxStatus(
            mailbox=mailbox,
            message_count=int(status.get(b"MESSAGES", 0) or 0),
            uid_next=status.get(b"UIDNEXT"),
            uid_validity=status.get(b"UIDVALIDITY"),
        )

    def list_identifiers(self, mailbox: str, min_uid: Optional[int] = None) -> List[int]:
        self._require_selected(mailbox)
        criteria = ["ALL"] if min_uid is None else ["UID", f"{min_uid}:*"]
        try:
            uids = self.client.search(criteria)
        except (IMAPClientError, OSError) as exc:
            raise MailboxListingError(f"UID SEARCH failed: {exc}") from exc
        if min_uid is not None:
            # "N:*" matches the highest UID even when it is below N
            uids = [uid for uid in uids if uid >= min_uid]
        return [int(uid) for uid in uids]

    def fetch_batch(self, uids: Sequence[int]) -> List[RawMessage]:
        if not uids:
            return []
        try:
            response = self.client.fetch(list(uids), FETCH_ITEMS)
        except (IMAPClientError, OSError) as exc:
            raise BatchFetchError(f"UID FETCH failed: {exc}", details={"uids": len(uids)}) from exc
        messages = []
        for uid, data in response.items():
            source = data.get(SOURCE_KEY)
            if source is None:
                logger.warning(f"Server returned no body for UID {uid}", extra={"uid": uid})
                continue
            messages.append(
                RawMessage(
                    uid=int(uid),
                    envelope=envelope_from_imap(data.get(b"ENVELOPE")),
                    flags=_decode_flags(data.get(b"FLAGS")),
                    source=bytes(source),
                )
            )
        return messages

    def fetch_source(self, uid: int) -> Optional[RawMessage]:
        messages = self.fetch_batch([uid])
        return messages[0] if messages else None

    @contextmanager
    def mailbox_lock(self, mailbox: str) -> Iterator[MailboxStatus]:
        """Hold exclusive use of ``mailbox`` on this connection.

        The mailbox is selected read-only on entry and unselected on exit, on
        both the success and the error path.
        """
        with self._lock:
            try:
                info = self.client.select_folder(mailbox, readonly=True)
            except (IMAPClientError, OSError) as exc:
                raise MailboxListingError(f"SELECT {mailbox} failed: {exc}") from exc
            self._selected = mailbox
            try:
                yield MailboxStatus(
                    mailbox=mailbox,
                    message_count=int(info.get(b"EXISTS", 0) or 0),
                    uid_next=info.get(b"UIDNEXT"),
                    uid_validity=info.get(b"UIDVALIDITY"),
                )
            finally:
                self._selected = None
                self._release(mailbox)

    def close(self) -> None:
        try:
            self.client.logout()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Error during logout", exc_info=exc)

    def _require_selected(self, mailbox: str) -> None:
        if self._selected != mailbox:
            raise MailboxListingError(f"Mailbox {mailbox} is not locked on this connection")

    def _release(self, mailbox: str) -> None:
        try:
            if self.client.has_capability("UNSELECT"):
                self.client.unselect_folder()
            else:
                self.client.close_folder()
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"Failed to release mailbox {mailbox}", exc_info=exc)


@dataclass
class ImapConnector:
    """Opens authenticated :class:`ImapMailConnection` sessions."""

    connection_timeout: float = 30.0
    retry_strategy: RetryStrategy = field(default_factory=RetryStrategy)
    sleep: Any = field(default=time.sleep, repr=False)

    def connect(
        self,
        *,
        host: str,
        port: int,
        secure: bool,
        username: str,
        password: str,
    ) -> ImapMailConnection:
        """Connect and log in.

        Raises:
            ConnectionFailedError: When the server is unreachable or rejects
                the credentials after all retries.
        """
        attempt = 0
        while True:
            try:
                return self._connect_once(host, port, secure, username, password)
            except Exception as exc:  # noqa: BLE001
                if not self.retry_strategy.should_retry(attempt, exc):
                    logger.error(
                        f"IMAP connect to {host}:{port} failed: {exc}",
                        extra={"host": host, "attempt": attempt},
                    )
                    raise ConnectionFailedError(
                        f"Could not connect to {host}:{port}: {exc}",
                        details={"host": host, "port": port},
                    ) from exc
                delay = self.retry_strategy.calculate_delay(attempt)
                logger.warning(
                    f"IMAP connect to {host}:{port} failed, retrying in {delay:.1f}s",
                    extra={"host": host, "attempt": attempt},
                )
                attempt += 1
                self.sleep(delay)

    def _connect_once(
        self, host: str, port: int, secure: bool, username: str, password: str
    ) -> ImapMailConnection:
        client = IMAPClient(
            host=host,
            port=port,
            ssl=secure,
            ssl_context=self._create_ssl_context() if secure else None,
            timeout=self.connection_timeout,
            use_uid=True,
        )
        try:
            client.login(username, password)
        except Exception:
            try:
                client.shutdown()
            except OSError:
                logger.debug("Socket already closed after failed login")
            raise
        logger.info(f"Connected to {host}:{port}", extra={"host": host})
        return ImapMailConnection(client=client, host=host)

    def _create_ssl_context(self) -> ssl.SSLContext:
        context = ssl.create_default_context()
        context.load_verify_locations(certifi.where())
        context.minimum_version = ssl.TLSVersion.TLSv1_2
        context.check_hostname = True
        context.verify_mode = ssl.CERT_REQUIRED
        return context


# ---------------------------------------------------------------------------
# Connection check
# ---------------------------------------------------------------------------


class ConnectionCheck(BaseModel):
    """Result of a credentials and connectivity check."""

    success: bool
    error: Optional[str] = None


def check_connection(
    connector: MailConnector,
    *,
    host: str,
    port: int,
    secure: bool,
    username: str,
    password: str,
) -> ConnectionCheck:
    """Connect, log in and log out again without touching any mailbox."""
    try:
        connection = connector.connect(
            host=host, port=port, secure=secure, username=username, password=password
        )
    except ConnectionFailedError as exc:
        return ConnectionCheck(success=False, error=exc.message)
    connection.close()
    return ConnectionCheck(success=True)


__all__ = [
    "ConnectionCheck",
    "ImapConnector",
    "ImapMailConnection",
    "MailConnection",
    "MailConnector",
    "RetryStrategy",
    "check_connection",
    "envelope_from_imap",
]
