"""Centralized error definitions for inboxsync.

Components raise these typed errors; the sync orchestrator converts them into
entries of ``SyncOutcome.errors`` and only the CLI turns them into exit codes.

Usage:
    from inboxsync.errors import InboxSyncError, ConnectionFailedError

    try:
        connection = connector.connect(...)
    except InboxSyncError as e:
        print(e.to_dict())
"""

from __future__ import annotations


# =============================================================================
# Base Error
# =============================================================================


class InboxSyncError(Exception):
    """Base exception for all inboxsync errors.

    Attributes:
        code: Error code for categorization
        recoverable: Whether a sync run may continue after this error
        details: Additional error details for debugging
    """

    code: str = "INBOXSYNC_ERROR"
    default_message: str = "An unexpected error occurred"
    recoverable: bool = True

    def __init__(
        self,
        message: str | None = None,
        *,
        details: dict | None = None,
    ) -> None:
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "code": self.code,
            "message": self.message,
            "recoverable": self.recoverable,
            "details": self.details,
        }


# =============================================================================
# Fatal Run Errors
# =============================================================================


class CredentialDecryptionError(InboxSyncError):
    """Stored mailbox credentials could not be decrypted."""

    code = "CREDENTIAL_DECRYPTION_ERROR"
    default_message = "Failed to decrypt mailbox credentials"
    recoverable = False


class ConnectionFailedError(InboxSyncError):
    """Connecting or authenticating to the mail server failed."""

    code = "CONNECTION_FAILED"
    default_message = "Could not connect to the mail server"
    recoverable = False


class MailboxListingError(InboxSyncError):
    """Listing message identifiers in the mailbox failed."""

    code = "MAILBOX_LISTING_ERROR"
    default_message = "Could not list messages in the mailbox"
    recoverable = False


# =============================================================================
# Recoverable Errors
# =============================================================================


class BatchFetchError(InboxSyncError):
    """A batch of messages could not be fetched."""

    code = "BATCH_FETCH_ERROR"
    default_message = "Fetching a batch of messages failed"


class MessageParseError(InboxSyncError):
    """A raw message could not be parsed."""

    code = "MESSAGE_PARSE_ERROR"
    default_message = "Message could not be parsed"


class PersistenceError(InboxSyncError):
    """Writing a batch to the message store failed."""

    code = "PERSISTENCE_ERROR"
    default_message = "Saving messages failed"


class AccountNotFoundError(InboxSyncError):
    """The requested mail account does not exist in the store."""

    code = "ACCOUNT_NOT_FOUND"
    default_message = "Mail account not found"
    recoverable = False


class ConfigurationError(InboxSyncError):
    """Settings are missing or invalid."""

    code = "CONFIGURATION_ERROR"
    default_message = "Invalid configuration"
    recoverable = False


__all__ = [
    "InboxSyncError",
    "CredentialDecryptionError",
    "ConnectionFailedError",
    "MailboxListingError",
    "BatchFetchError",
    "MessageParseError",
    "PersistenceError",
    "AccountNotFoundError",
    "ConfigurationError",
]
