"""Connection presets for common mail providers."""

from __future__ import annotations

from typing import Dict, Optional

from pydantic import BaseModel


class ProviderPreset(BaseModel):
    name: str
    imap_host: str
    imap_port: int = 993
    imap_secure: bool = True
    instructions: Optional[str] = None


EMAIL_PROVIDERS: Dict[str, ProviderPreset] = {
    "gmail": ProviderPreset(
        name="Gmail",
        imap_host="imap.gmail.com",
        instructions="Enable IMAP in Gmail settings and use an App Password "
        "(Google Account > Security > App passwords).",
    ),
    "outlook": ProviderPreset(
        name="Outlook / Hotmail",
        imap_host="outlook.office365.com",
        instructions="Use your Microsoft account password or an App Password "
        "if two-step verification is enabled.",
    ),
    "yahoo": ProviderPreset(
        name="Yahoo Mail",
        imap_host="imap.mail.yahoo.com",
        instructions="Generate an App Password under Account Security.",
    ),
    "custom": ProviderPreset(name="Custom IMAP", imap_host=""),
}


def get_provider(key: str) -> ProviderPreset:
    try:
        return EMAIL_PROVIDERS[key.lower()]
    except KeyError:
        known = ", ".join(sorted(EMAIL_PROVIDERS))
        raise ValueError(f"Unknown provider '{key}' (expected one of: {known})") from None


__all__ = ["EMAIL_PROVIDERS", "ProviderPreset", "get_provider"]
