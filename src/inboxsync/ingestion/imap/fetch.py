"""Batch fetch pipeline and on-demand body retrieval.

``BatchFetchPipeline`` splits a fetch plan into contiguous chunks and fetches
each chunk with a single server round-trip. A failing chunk never aborts the
run: the failure is returned as data and the orchestrator records it.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence, Tuple

from pydantic import BaseModel, Field

from ...errors import CredentialDecryptionError, InboxSyncError
from ...privacy.encryption import CredentialCipher
from .connection import MailConnection, MailConnector
from .email_parser import MessageParser
from .models import MailAccount, RawMessage

logger = logging.getLogger(__name__)


def chunk_identifiers(uids: Sequence[int], batch_size: int) -> List[List[int]]:
    """Partition ``uids`` into contiguous chunks of at most ``batch_size``."""
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")
    return [list(uids[start : start + batch_size]) for start in range(0, len(uids), batch_size)]


class BatchFetchResult(BaseModel):
    """Outcome of fetching one chunk."""

    index: int = Field(..., ge=0)
    requested: List[int] = Field(default_factory=list)
    messages: List[RawMessage] = Field(default_factory=list)
    missing: List[int] = Field(default_factory=list, description="UIDs the server did not return")
    error: Optional[str] = None

    @property
    def notes(self) -> List[str]:
        notes = []
        if self.error:
            notes.append(f"Batch {self.index + 1}: {self.error}")
        if self.missing:
            preview = ", ".join(str(uid) for uid in self.missing[:10])
            suffix = ", ..." if len(self.missing) > 10 else ""
            notes.append(
                f"Batch {self.index + 1}: {len(self.missing)} message(s) could not be "
                f"retrieved (UIDs {preview}{suffix})"
            )
        return notes


class BatchFetchPipeline:
    """Fetch UID chunks from a locked mailbox."""

    def __init__(self, connection: MailConnection, *, batch_size: int = 50) -> None:
        self.connection = connection
        self.batch_size = batch_size

    def batches(self, uids: Sequence[int]) -> List[List[int]]:
        return chunk_identifiers(uids, self.batch_size)

    def fetch(self, index: int, uids: Sequence[int]) -> BatchFetchResult:
        requested = list(uids)
        try:
            fetched = self.connection.fetch_batch(requested)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                f"Batch {index + 1} fetch failed: {exc}",
                extra={"batch": index, "uids": len(requested)},
            )
            error = exc.message if isinstance(exc, InboxSyncError) else f"fetch failed: {exc}"
            return BatchFetchResult(index=index, requested=requested, error=error)

        wanted = set(requested)
        messages = [message for message in fetched if message.uid in wanted]
        returned = {message.uid for message in messages}
        missing = [uid for uid in requested if uid not in returned]
        if missing:
            logger.warning(
                f"Batch {index + 1}: {len(missing)} UID(s) not returned by server",
                extra={"batch": index, "missing": missing},
            )
        return BatchFetchResult(index=index, requested=requested, messages=messages, missing=missing)


class MessageBodyFetcher:
    """Fetch and parse a single message body on demand.

    Used when a stored message needs its full body refreshed. Opens its own
    connection, so it does not interfere with a running sync.
    """

    def __init__(
        self,
        connector: MailConnector,
        cipher: CredentialCipher,
        *,
        mailbox: str = "INBOX",
        max_text_chars: int = 50_000,
        max_html_chars: int = 100_000,
    ) -> None:
        self.connector = connector
        self.cipher = cipher
        self.mailbox = mailbox
        self.max_text_chars = max_text_chars
        self.max_html_chars = max_html_chars

    def fetch_body(self, account: MailAccount, uid: int) -> Optional[Tuple[str, Optional[str]]]:
        """Return ``(body_text, body_html)`` for ``uid`` or ``None`` if it is gone.

        Raises:
            CredentialDecryptionError: If the stored password cannot be decrypted.
            ConnectionFailedError: If the server cannot be reached.
            MessageParseError: If the message source cannot be parsed.
        """
        try:
            password = self.cipher.decrypt(account.password_encrypted)
        except CredentialDecryptionError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise CredentialDecryptionError() from exc

        connection = self.connector.connect(
            host=account.imap_host,
            port=account.imap_port,
            secure=account.imap_secure,
            username=account.username,
            password=password,
        )
        try:
            with connection.mailbox_lock(self.mailbox):
                raw = connection.fetch_source(uid)
        finally:
            connection.close()

        if raw is None:
            logger.info(f"UID {uid} no longer exists", extra={"account_id": account.id, "uid": uid})
            return None
        parser = MessageParser(
            fallback_domain=account.imap_host,
            max_text_chars=self.max_text_chars,
            max_html_chars=self.max_html_chars,
        )
        parsed = parser.parse(raw)
        return parsed.body_text, parsed.body_html


__all__ = [
    "BatchFetchPipeline",
    "BatchFetchResult",
    "MessageBodyFetcher",
    "chunk_identifiers",
]
