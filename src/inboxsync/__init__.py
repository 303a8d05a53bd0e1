"""inboxsync: resumable, budgeted IMAP mailbox synchronization."""

__version__ = "0.1.0"

__all__ = ["__version__"]
