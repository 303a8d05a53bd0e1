"""Domain models shared by the IMAP sync components.

The account record carries the resumable watermark (``last_sync_uid``); the
message models describe a message on its way from the server (``RawMessage``)
to the store (``ParsedMessage``); ``SyncOutcome`` is what a caller gets back
from a run and reflects only what was durably committed.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


# ---------------------------------------------------------------------------
# Accounts and options
# ---------------------------------------------------------------------------


class MailAccount(BaseModel):
    """A mailbox the engine synchronizes, with its sync bookkeeping."""

    id: str = Field(..., min_length=1, description="Stable account identifier")
    email_address: str = Field(..., description="Mailbox address")
    imap_host: str = Field(..., min_length=1, description="IMAP server host")
    imap_port: int = Field(default=993, ge=1, le=65535, description="IMAP server port")
    imap_secure: bool = Field(default=True, description="Use implicit TLS")
    username: str = Field(..., description="IMAP login name")
    password_encrypted: str = Field(..., description="Encrypted IMAP password")
    provider: Optional[str] = Field(default=None, description="Provider preset name")
    is_active: bool = Field(default=True, description="Inactive accounts are not synced")

    # Sync bookkeeping
    last_sync_uid: Optional[int] = Field(
        default=None, ge=0, description="Highest UID durably persisted (watermark)"
    )
    last_sync_at: Optional[datetime] = Field(default=None, description="Last run end time")
    sync_error: Optional[str] = Field(default=None, description="Errors of the last run")
    total_emails_synced: int = Field(default=0, ge=0, description="Lifetime synced count")

    @field_validator("email_address")
    @classmethod
    def _validate_email(cls, value: str) -> str:
        if "@" not in value:
            raise ValueError(f"Invalid email address: {value}")
        return value.strip().lower()


class SyncOptions(BaseModel):
    """Per-run options supplied by the caller."""

    limit: int = Field(default=100, ge=1, description="Maximum messages to fetch this run")
    full_sync: bool = Field(default=False, description="Ignore the watermark")


class SyncRunState(str, Enum):
    """States of the sync orchestrator."""

    IDLE = "idle"
    CONNECTING = "connecting"
    RESOLVING = "resolving"
    BATCH_LOOP = "batch_loop"
    FINALIZING = "finalizing"
    DONE = "done"
    ABORTED = "aborted"


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


class MailboxStatus(BaseModel):
    """Mailbox status as reported by the server."""

    mailbox: str
    message_count: int = Field(default=0, ge=0)
    uid_next: Optional[int] = None
    uid_validity: Optional[int] = None


class EmailAddress(BaseModel):
    """Address with optional display name."""

    address: str
    name: Optional[str] = None


class MessageEnvelope(BaseModel):
    """Envelope fields returned alongside a fetched message."""

    message_id: Optional[str] = None
    subject: Optional[str] = None
    sender: Optional[EmailAddress] = None
    to: List[EmailAddress] = Field(default_factory=list)
    cc: List[EmailAddress] = Field(default_factory=list)
    date: Optional[datetime] = None


class RawMessage(BaseModel):
    """Unparsed message as fetched from the server."""

    uid: int = Field(..., ge=1)
    envelope: MessageEnvelope = Field(default_factory=MessageEnvelope)
    flags: List[str] = Field(default_factory=list)
    source: bytes = Field(default=b"", description="Full RFC822 source")

    @property
    def is_read(self) -> bool:
        return "\\Seen" in self.flags

    @property
    def is_starred(self) -> bool:
        return "\\Flagged" in self.flags


class AttachmentMeta(BaseModel):
    """Attachment metadata extracted during parsing (no content)."""

    filename: str = Field(..., min_length=1)
    content_type: str = Field(default="application/octet-stream")
    size_bytes: int = Field(default=0, ge=0)
    content_id: Optional[str] = Field(default=None, description="Content-ID without brackets")
    is_inline: bool = False


class ParsedMessage(BaseModel):
    """Normalized message ready for persistence."""

    uid: int = Field(..., ge=1)
    message_id: str
    from_address: Optional[str] = None
    from_name: Optional[str] = None
    to_addresses: List[str] = Field(default_factory=list)
    cc_addresses: List[str] = Field(default_factory=list)
    subject: str = "(No subject)"
    body_text: str = ""
    body_html: Optional[str] = None
    snippet: str = ""
    received_at: datetime
    is_read: bool = False
    is_starred: bool = False
    attachments: List[AttachmentMeta] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Outcome
# ---------------------------------------------------------------------------


class SyncOutcome(BaseModel):
    """Result of a sync run."""

    success: bool
    synced: int = Field(default=0, ge=0, description="Messages persisted this run")
    errors: List[str] = Field(default_factory=list)
    new_watermark: Optional[int] = Field(
        default=None, description="Highest UID persisted this run, if any"
    )
    state: SyncRunState = SyncRunState.DONE
    duration_seconds: float = 0.0


__all__ = [
    "AttachmentMeta",
    "EmailAddress",
    "MailAccount",
    "MailboxStatus",
    "MessageEnvelope",
    "ParsedMessage",
    "RawMessage",
    "SyncOptions",
    "SyncOutcome",
    "SyncRunState",
]
