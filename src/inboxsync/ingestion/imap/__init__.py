"""IMAP mailbox sync: watermark resolution, batched fetch, parallel parse and persistence."""

from .connection import (
    ConnectionCheck,
    ImapConnector,
    ImapMailConnection,
    MailConnection,
    MailConnector,
    RetryStrategy,
    check_connection,
)
from .email_parser import MessageParser
from .fetch import BatchFetchPipeline, BatchFetchResult, MessageBodyFetcher, chunk_identifiers
from .models import (
    AttachmentMeta,
    EmailAddress,
    MailAccount,
    MailboxStatus,
    MessageEnvelope,
    ParsedMessage,
    RawMessage,
    SyncOptions,
    SyncOutcome,
    SyncRunState,
)
from .orchestrator import SyncOrchestrator
from .parse_pool import ParallelParsePool, ParseOutcome
from .persistence import (
    AccountSyncUpdate,
    AttachmentRow,
    BatchWriteResult,
    MessageStore,
    PersistenceBatchWriter,
    SQLiteMessageStore,
    StoredMessageRef,
)
from .providers import EMAIL_PROVIDERS, ProviderPreset, get_provider
from .runner import AccountSyncResult, MultiSyncSummary, SyncRunner
from .watermark import FetchMode, FetchPlan, WatermarkResolver

__all__ = [
    "AccountSyncResult",
    "AccountSyncUpdate",
    "AttachmentMeta",
    "AttachmentRow",
    "BatchFetchPipeline",
    "BatchFetchResult",
    "BatchWriteResult",
    "ConnectionCheck",
    "EMAIL_PROVIDERS",
    "EmailAddress",
    "FetchMode",
    "FetchPlan",
    "ImapConnector",
    "ImapMailConnection",
    "MailAccount",
    "MailConnection",
    "MailConnector",
    "MailboxStatus",
    "MessageBodyFetcher",
    "MessageEnvelope",
    "MessageParser",
    "MessageStore",
    "MultiSyncSummary",
    "ParallelParsePool",
    "ParseOutcome",
    "ParsedMessage",
    "PersistenceBatchWriter",
    "ProviderPreset",
    "RawMessage",
    "RetryStrategy",
    "SQLiteMessageStore",
    "StoredMessageRef",
    "SyncOptions",
    "SyncOrchestrator",
    "SyncOutcome",
    "SyncRunState",
    "SyncRunner",
    "WatermarkResolver",
    "check_connection",
    "chunk_identifiers",
    "get_provider",
]
