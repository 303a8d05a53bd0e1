"""Typed settings management for inboxsync.

This module wraps user configuration in Pydantic models so the CLI and the
sync engine can rely on validated settings. It also provides a keyring-backed
secret store for the credential encryption key, so the key does not have to
live in the config file.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import keyring
from pydantic import BaseModel, Field, SecretStr, ValidationError, model_validator

from ..errors import ConfigurationError


DEFAULT_CONFIG_PATH = Path.home() / ".inboxsync" / "config.json"
DEFAULT_SECRETS_SERVICE = "inboxsync"
ENCRYPTION_KEY_SECRET = "credentials:encryption_key"


class SyncSettings(BaseModel):
    """Tuning knobs for a single sync run."""

    mailbox: str = Field("INBOX", description="Mailbox synchronized by the engine")
    batch_size: int = Field(50, ge=1, le=1000, description="UIDs fetched per server round-trip")
    parse_concurrency: int = Field(20, ge=1, le=256, description="Maximum parses in flight")
    run_budget_seconds: float = Field(120.0, gt=0, description="Wall-clock budget per run")
    default_limit: int = Field(100, ge=1, description="Messages per run when no limit is given")
    max_limit: int = Field(500, ge=1, description="Upper clamp for requested limits")
    max_text_chars: int = Field(50_000, ge=1, description="Plain-text body truncation")
    max_html_chars: int = Field(100_000, ge=1, description="HTML body truncation")
    max_message_bytes: int = Field(
        25 * 1024 * 1024, ge=1, description="Raw messages above this size are rejected"
    )
    connection_timeout: float = Field(30.0, gt=0, description="Socket timeout for IMAP")
    connect_retries: int = Field(2, ge=0, le=10, description="Retries for transient connect errors")
    min_sync_interval_seconds: float = Field(
        30.0, ge=0, description="Multi-account runs skip accounts synced more recently"
    )
    total_budget_seconds: float = Field(
        55.0, gt=0, description="Multi-account runs stop starting accounts after this"
    )

    @model_validator(mode="after")
    def _validate_limits(self) -> "SyncSettings":
        if self.default_limit > self.max_limit:
            raise ValueError("default_limit must not exceed max_limit")
        return self


class StorageSettings(BaseModel):
    """Configuration for the local message store."""

    database_path: Path = Field(
        default=Path.home() / ".inboxsync" / "mail.sqlite3",
        description="SQLite database holding accounts, messages and attachments",
    )
    lock_dir: Path = Field(
        default=Path.home() / ".inboxsync" / "locks",
        description="Directory for per-account sync lock files",
    )


class SecuritySettings(BaseModel):
    """Credential encryption configuration."""

    encryption_key: Optional[SecretStr] = Field(
        default=None, description="Key for stored IMAP passwords; falls back to keyring"
    )


class Settings(BaseModel):
    """Root configuration state."""

    sync: SyncSettings = Field(default_factory=SyncSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    security: SecuritySettings = Field(default_factory=SecuritySettings)


@dataclass
class SecretStore:
    """Keyring abstraction for storing credentials."""

    service_name: str = DEFAULT_SECRETS_SERVICE
    keyring_module: Any = field(default=keyring)

    def set_secret(self, key: str, value: str) -> None:
        if self.keyring_module is None:
            raise RuntimeError("Keyring module not configured")
        self.keyring_module.set_password(self.service_name, key, value)

    def get_secret(self, key: str) -> Optional[str]:
        if self.keyring_module is None:
            return None
        return self.keyring_module.get_password(self.service_name, key)


def load_settings(path: Path = DEFAULT_CONFIG_PATH) -> Settings:
    """Load settings from disk, apply environment overrides and validate.

    A missing file yields the defaults so a fresh install works with only
    environment variables set.
    """

    payload: Dict[str, Any] = {}
    if path.exists():
        try:
            payload = json.loads(path.read_text())
        except json.JSONDecodeError as exc:
            raise ConfigurationError(f"Invalid configuration file {path}: {exc}") from exc
    payload = _apply_env_overrides(payload)
    try:
        return Settings.model_validate(payload)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid configuration: {exc}") from exc


def save_settings(settings: Settings, path: Path = DEFAULT_CONFIG_PATH) -> None:
    """Persist settings to disk with secrets removed."""

    payload = settings.model_dump(mode="json")
    payload = _mask_secret_fields(payload)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2))


def resolve_encryption_key(settings: Settings, secret_store: SecretStore | None = None) -> str:
    """Return the credential encryption key from settings or the keyring.

    Raises:
        ConfigurationError: If no key is configured anywhere.
    """

    if settings.security.encryption_key is not None:
        return settings.security.encryption_key.get_secret_value()
    secret_store = secret_store or SecretStore()
    value = secret_store.get_secret(ENCRYPTION_KEY_SECRET)
    if not value:
        raise ConfigurationError(
            "No credential encryption key configured; set INBOXSYNC_ENCRYPTION_KEY "
            "or store one with `inboxsync imap set-key`"
        )
    return value


def _apply_env_overrides(data: Dict[str, Any]) -> Dict[str, Any]:
    sync = data.setdefault("sync", {})
    _set_env_override(sync, "batch_size", "INBOXSYNC_BATCH_SIZE", cast_int=True)
    _set_env_override(sync, "parse_concurrency", "INBOXSYNC_PARSE_CONCURRENCY", cast_int=True)
    _set_env_override(sync, "run_budget_seconds", "INBOXSYNC_RUN_BUDGET_SECONDS", cast_float=True)
    _set_env_override(sync, "default_limit", "INBOXSYNC_DEFAULT_LIMIT", cast_int=True)
    _set_env_override(sync, "max_limit", "INBOXSYNC_MAX_LIMIT", cast_int=True)
    _set_env_override(sync, "connection_timeout", "INBOXSYNC_CONNECTION_TIMEOUT", cast_float=True)

    storage = data.setdefault("storage", {})
    _set_env_override(storage, "database_path", "INBOXSYNC_DATABASE_PATH")
    _set_env_override(storage, "lock_dir", "INBOXSYNC_LOCK_DIR")

    security = data.setdefault("security", {})
    _set_env_override(security, "encryption_key", "INBOXSYNC_ENCRYPTION_KEY")

    return data


def _set_env_override(
    mapping: Dict[str, Any],
    key: str,
    env_name: str,
    *,
    cast_int: bool = False,
    cast_float: bool = False,
) -> None:
    raw = os.getenv(env_name)
    if raw is None:
        return
    try:
        if cast_int:
            mapping[key] = int(raw)
        elif cast_float:
            mapping[key] = float(raw)
        else:
            mapping[key] = raw
    except ValueError as exc:
        raise ConfigurationError(f"{env_name} must be numeric, got {raw!r}") from exc


def _mask_secret_fields(payload: Dict[str, Any]) -> Dict[str, Any]:
    security = payload.get("security", {})
    if "encryption_key" in security:
        security["encryption_key"] = None
    return payload


__all__ = [
    "DEFAULT_CONFIG_PATH",
    "ENCRYPTION_KEY_SECRET",
    "SecretStore",
    "SecuritySettings",
    "Settings",
    "StorageSettings",
    "SyncSettings",
    "load_settings",
    "resolve_encryption_key",
    "save_settings",
]
