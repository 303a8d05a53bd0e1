"""Message store contract, SQLite implementation and the batch writer.

Messages are keyed by ``(account_id, original_uid)`` and overwritten on
conflict, so re-running a sync over the same UIDs is idempotent. Attachment
rows are keyed by ``(email_id, filename)`` and duplicates are ignored. The
account watermark column only ever moves up.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Sequence

from pydantic import BaseModel, Field

from ...errors import PersistenceError
from .models import MailAccount, ParsedMessage

logger = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS accounts (
    id TEXT PRIMARY KEY,
    email_address TEXT NOT NULL,
    imap_host TEXT NOT NULL,
    imap_port INTEGER NOT NULL,
    imap_secure INTEGER NOT NULL DEFAULT 1,
    username TEXT NOT NULL,
    password_encrypted TEXT NOT NULL,
    provider TEXT,
    is_active INTEGER NOT NULL DEFAULT 1,
    last_sync_uid INTEGER,
    last_sync_at TEXT,
    sync_error TEXT,
    total_emails_synced INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS emails (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id TEXT NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
    original_uid INTEGER NOT NULL,
    message_id TEXT NOT NULL,
    from_address TEXT,
    from_name TEXT,
    to_addresses TEXT NOT NULL DEFAULT '[]',
    cc_addresses TEXT NOT NULL DEFAULT '[]',
    subject TEXT NOT NULL,
    body_text TEXT NOT NULL DEFAULT '',
    body_html TEXT,
    snippet TEXT NOT NULL DEFAULT '',
    received_at TEXT NOT NULL,
    is_read INTEGER NOT NULL DEFAULT 0,
    is_starred INTEGER NOT NULL DEFAULT 0,
    has_attachments INTEGER NOT NULL DEFAULT 0,
    direction TEXT NOT NULL DEFAULT 'inbound',
    updated_at TEXT NOT NULL,
    UNIQUE (account_id, original_uid)
);

CREATE TABLE IF NOT EXISTS attachments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    email_id INTEGER NOT NULL REFERENCES emails(id) ON DELETE CASCADE,
    filename TEXT NOT NULL,
    content_type TEXT NOT NULL,
    size_bytes INTEGER NOT NULL DEFAULT 0,
    content_id TEXT,
    is_inline INTEGER NOT NULL DEFAULT 0,
    UNIQUE (email_id, filename)
);

CREATE INDEX IF NOT EXISTS idx_emails_account_received
    ON emails(account_id, received_at DESC);
"""


# ---------------------------------------------------------------------------
# Store models
# ---------------------------------------------------------------------------


class StoredMessageRef(BaseModel):
    """Row id assigned to a persisted message."""

    row_id: int
    uid: int


class AttachmentRow(BaseModel):
    """Attachment metadata bound to a persisted message row."""

    email_id: int
    filename: str
    content_type: str
    size_bytes: int = 0
    content_id: Optional[str] = None
    is_inline: bool = False


class AccountSyncUpdate(BaseModel):
    """Bookkeeping written to an account once per sync run."""

    last_sync_at: datetime
    sync_error: Optional[str] = Field(default=None, description="None clears the error")
    last_sync_uid: Optional[int] = Field(default=None, description="None leaves the watermark")
    synced_increment: int = Field(default=0, ge=0)


class MessageStore(Protocol):
    """Durable storage for accounts, messages and attachments."""

    def upsert_messages(
        self, account_id: str, messages: Sequence[ParsedMessage]
    ) -> List[StoredMessageRef]:
        ...

    def upsert_attachments(self, rows: Sequence[AttachmentRow]) -> None:
        ...

    def update_account(self, account_id: str, update: AccountSyncUpdate) -> None:
        ...

    def get_account(self, account_id: str) -> Optional[MailAccount]:
        ...


# ---------------------------------------------------------------------------
# SQLite store
# ---------------------------------------------------------------------------


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


class SQLiteMessageStore:
    """SQLite-backed :class:`MessageStore`."""

    def __init__(self, path: Path) -> None:
        """Initialize the store.

        Args:
            path: Path to SQLite database file
        """
        self._path = path
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._path))
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._conn.executescript(SCHEMA)

    def close(self) -> None:
        """Close database connection."""
        self._conn.commit()
        self._conn.close()

    # Accounts -------------------------------------------------------------

    def add_account(self, account: MailAccount) -> None:
        """Insert or replace the connection settings of an account.

        Sync bookkeeping of an existing account is kept.
        """
        with self._conn:
            self._conn.execute(
                """
                INSERT INTO accounts(
                    id, email_address, imap_host, imap_port, imap_secure, username,
                    password_encrypted, provider, is_active, last_sync_uid, last_sync_at,
                    sync_error, total_emails_synced
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    email_address=excluded.email_address,
                    imap_host=excluded.imap_host,
                    imap_port=excluded.imap_port,
                    imap_secure=excluded.imap_secure,
                    username=excluded.username,
                    password_encrypted=excluded.password_encrypted,
                    provider=excluded.provider,
                    is_active=excluded.is_active
                """,
                (
                    account.id,
                    account.email_address,
                    account.imap_host,
                    account.imap_port,
                    int(account.imap_secure),
                    account.username,
                    account.password_encrypted,
                    account.provider,
                    int(account.is_active),
                    account.last_sync_uid,
                    account.last_sync_at.isoformat() if account.last_sync_at else None,
                    account.sync_error,
                    account.total_emails_synced,
                ),
            )

    def get_account(self, account_id: str) -> Optional[MailAccount]:
        cur = self._conn.execute(f"{_ACCOUNT_SELECT} WHERE id = ?", (account_id,))
        row = cur.fetchone()
        return _account_from_row(row) if row else None

    def list_accounts(self, *, active_only: bool = False) -> List[MailAccount]:
        query = _ACCOUNT_SELECT + (" WHERE is_active = 1" if active_only else "") + " ORDER BY id"
        return [_account_from_row(row) for row in self._conn.execute(query)]

    def update_account(self, account_id: str, update: AccountSyncUpdate) -> None:
        try:
            with self._conn:
                cur = self._conn.execute(
                    """
                    UPDATE accounts SET
                        last_sync_at = ?,
                        sync_error = ?,
                        last_sync_uid = CASE
                            WHEN ? IS NULL THEN last_sync_uid
                            ELSE MAX(COALESCE(last_sync_uid, 0), ?)
                        END,
                        total_emails_synced = total_emails_synced + ?
                    WHERE id = ?
                    """,
                    (
                        update.last_sync_at.isoformat(),
                        update.sync_error,
                        update.last_sync_uid,
                        update.last_sync_uid,
                        update.synced_increment,
                        account_id,
                    ),
                )
        except sqlite3.Error as exc:
            raise PersistenceError(f"Updating account {account_id} failed: {exc}") from exc
        if cur.rowcount == 0:
            raise PersistenceError(f"Account {account_id} does not exist")

    # Messages -------------------------------------------------------------

    def upsert_messages(
        self, account_id: str, messages: Sequence[ParsedMessage]
    ) -> List[StoredMessageRef]:
        """Insert or overwrite messages and return their row ids.

        The whole call commits or rolls back as one transaction.
        """
        if not messages:
            return []
        now = _utcnow()
        try:
            with self._conn:
                self._conn.executemany(
                    """
                    INSERT INTO emails(
                        account_id, original_uid, message_id, from_address, from_name,
                        to_addresses, cc_addresses, subject, body_text, body_html, snippet,
                        received_at, is_read, is_starred, has_attachments, direction, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'inbound', ?)
                    ON CONFLICT(account_id, original_uid) DO UPDATE SET
                        message_id=excluded.message_id,
                        from_address=excluded.from_address,
                        from_name=excluded.from_name,
                        to_addresses=excluded.to_addresses,
                        cc_addresses=excluded.cc_addresses,
                        subject=excluded.subject,
                        body_text=excluded.body_text,
                        body_html=excluded.body_html,
                        snippet=excluded.snippet,
                        received_at=excluded.received_at,
                        is_read=excluded.is_read,
                        is_starred=excluded.is_starred,
                        has_attachments=excluded.has_attachments,
                        updated_at=excluded.updated_at
                    """,
                    [
                        (
                            account_id,
                            message.uid,
                            message.message_id,
                            message.from_address,
                            message.from_name,
                            json.dumps(message.to_addresses),
                            json.dumps(message.cc_addresses),
                            message.subject,
                            message.body_text,
                            message.body_html,
                            message.snippet,
                            message.received_at.isoformat(),
                            int(message.is_read),
                            int(message.is_starred),
                            int(bool(message.attachments)),
                            now,
                        )
                        for message in messages
                    ],
                )
                uids = [message.uid for message in messages]
                placeholders = ", ".join("?" for _ in uids)
                rows = self._conn.execute(
                    f"SELECT id, original_uid FROM emails "
                    f"WHERE account_id = ? AND original_uid IN ({placeholders})",
                    (account_id, *uids),
                ).fetchall()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Saving {len(messages)} message(s) failed: {exc}") from exc
        return [StoredMessageRef(row_id=row[0], uid=row[1]) for row in rows]

    def upsert_attachments(self, rows: Sequence[AttachmentRow]) -> None:
        if not rows:
            return
        try:
            with self._conn:
                self._conn.executemany(
                    """
                    INSERT INTO attachments(
                        email_id, filename, content_type, size_bytes, content_id, is_inline
                    )
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(email_id, filename) DO NOTHING
                    """,
                    [
                        (
                            row.email_id,
                            row.filename,
                            row.content_type,
                            row.size_bytes,
                            row.content_id,
                            int(row.is_inline),
                        )
                        for row in rows
                    ],
                )
        except sqlite3.Error as exc:
            raise PersistenceError(f"Saving {len(rows)} attachment(s) failed: {exc}") from exc

    def update_message_body(
        self, account_id: str, uid: int, body_text: str, body_html: Optional[str]
    ) -> bool:
        """Replace the stored body of one message. Returns False if it is unknown."""
        with self._conn:
            cur = self._conn.execute(
                """
                UPDATE emails SET body_text = ?, body_html = ?, updated_at = ?
                WHERE account_id = ? AND original_uid = ?
                """,
                (body_text, body_html, _utcnow(), account_id, uid),
            )
        return cur.rowcount > 0

    def count_messages(self, account_id: str) -> int:
        row = self._conn.execute(
            "SELECT COUNT(*) FROM emails WHERE account_id = ?", (account_id,)
        ).fetchone()
        return int(row[0])

    def list_message_uids(self, account_id: str) -> List[int]:
        cur = self._conn.execute(
            "SELECT original_uid FROM emails WHERE account_id = ? ORDER BY original_uid",
            (account_id,),
        )
        return [row[0] for row in cur]

    def get_message(self, account_id: str, uid: int) -> Optional[Dict[str, object]]:
        self._conn.row_factory = sqlite3.Row
        try:
            row = self._conn.execute(
                "SELECT * FROM emails WHERE account_id = ? AND original_uid = ?",
                (account_id, uid),
            ).fetchone()
        finally:
            self._conn.row_factory = None
        if row is None:
            return None
        message = dict(row)
        message["to_addresses"] = json.loads(message["to_addresses"])
        message["cc_addresses"] = json.loads(message["cc_addresses"])
        return message

    def list_attachments(self, account_id: str, uid: int) -> List[AttachmentRow]:
        cur = self._conn.execute(
            """
            SELECT a.email_id, a.filename, a.content_type, a.size_bytes, a.content_id, a.is_inline
            FROM attachments a JOIN emails e ON e.id = a.email_id
            WHERE e.account_id = ? AND e.original_uid = ?
            ORDER BY a.id
            """,
            (account_id, uid),
        )
        return [
            AttachmentRow(
                email_id=row[0],
                filename=row[1],
                content_type=row[2],
                size_bytes=row[3],
                content_id=row[4],
                is_inline=bool(row[5]),
            )
            for row in cur
        ]

    def find_attachment(
        self, account_id: str, uid: int, name_or_content_id: str
    ) -> Optional[AttachmentRow]:
        """Look up an attachment by filename or Content-ID."""
        for row in self.list_attachments(account_id, uid):
            if name_or_content_id in (row.filename, row.content_id):
                return row
        return None


_ACCOUNT_SELECT = """
    SELECT id, email_address, imap_host, imap_port, imap_secure, username,
           password_encrypted, provider, is_active, last_sync_uid, last_sync_at,
           sync_error, total_emails_synced
    FROM accounts
"""


def _account_from_row(row: tuple) -> MailAccount:
    return MailAccount(
        id=row[0],
        email_address=row[1],
        imap_host=row[2],
        imap_port=row[3],
        imap_secure=bool(row[4]),
        username=row[5],
        password_encrypted=row[6],
        provider=row[7],
        is_active=bool(row[8]),
        last_sync_uid=row[9],
        last_sync_at=datetime.fromisoformat(row[10]) if row[10] else None,
        sync_error=row[11],
        total_emails_synced=row[12],
    )


# ---------------------------------------------------------------------------
# Batch writer
# ---------------------------------------------------------------------------


class BatchWriteResult(BaseModel):
    """What one batch write durably committed."""

    refs: List[StoredMessageRef] = Field(default_factory=list)
    attachments_written: int = 0
    attachment_error: Optional[str] = None

    @property
    def persisted_uids(self) -> List[int]:
        return [ref.uid for ref in self.refs]


class PersistenceBatchWriter:
    """Persist one batch of parsed messages and their attachment metadata."""

    def __init__(self, store: MessageStore) -> None:
        self.store = store

    def write(self, account_id: str, messages: Sequence[ParsedMessage]) -> BatchWriteResult:
        """Upsert messages, then their attachments.

        Raises:
            PersistenceError: If the message upsert fails. Nothing from this
                batch counts as persisted in that case.
        """
        if not messages:
            return BatchWriteResult()
        try:
            refs = self.store.upsert_messages(account_id, messages)
        except PersistenceError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise PersistenceError(f"Saving {len(messages)} message(s) failed: {exc}") from exc

        row_ids = {ref.uid: ref.row_id for ref in refs}
        rows = [
            AttachmentRow(
                email_id=row_ids[message.uid],
                filename=attachment.filename,
                content_type=attachment.content_type,
                size_bytes=attachment.size_bytes,
                content_id=attachment.content_id,
                is_inline=attachment.is_inline,
            )
            for message in messages
            if message.uid in row_ids
            for attachment in message.attachments
        ]
        result = BatchWriteResult(refs=refs)
        if not rows:
            return result
        try:
            self.store.upsert_attachments(rows)
            result.attachments_written = len(rows)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                f"Attachment metadata write failed: {exc}",
                extra={"account_id": account_id, "attachments": len(rows)},
            )
            result.attachment_error = f"attachment metadata not saved: {exc}"
        return result


__all__ = [
    "AccountSyncUpdate",
    "AttachmentRow",
    "BatchWriteResult",
    "MessageStore",
    "PersistenceBatchWriter",
    "SQLiteMessageStore",
    "StoredMessageRef",
]
