"""Configuration loading utilities for inboxsync."""

from .settings import (
    DEFAULT_CONFIG_PATH,
    SecretStore,
    Settings,
    SyncSettings,
    load_settings,
    resolve_encryption_key,
    save_settings,
)

__all__ = [
    "DEFAULT_CONFIG_PATH",
    "SecretStore",
    "Settings",
    "SyncSettings",
    "load_settings",
    "resolve_encryption_key",
    "save_settings",
]
