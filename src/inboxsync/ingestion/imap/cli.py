"""CLI commands for IMAP account management and syncing."""

from __future__ import annotations

import asyncio
import json
import uuid
from pathlib import Path
from typing import NoReturn, Optional

import typer
from filelock import FileLock, Timeout
from rich.console import Console
from rich.table import Table

from inboxsync.configuration.settings import (
    DEFAULT_CONFIG_PATH,
    ENCRYPTION_KEY_SECRET,
    SecretStore,
    Settings,
    load_settings,
    resolve_encryption_key,
)
from inboxsync.errors import AccountNotFoundError, InboxSyncError
from inboxsync.privacy.encryption import AesCbcCredentialCipher

from .connection import ImapConnector, RetryStrategy, check_connection
from .fetch import MessageBodyFetcher
from .models import MailAccount, SyncOptions, SyncOutcome
from .orchestrator import SyncOrchestrator
from .persistence import SQLiteMessageStore
from .providers import EMAIL_PROVIDERS, get_provider
from .runner import MultiSyncSummary, SyncRunner

# Rich console for formatted output
console = Console()
error_console = Console(stderr=True)

imap_app = typer.Typer(help="IMAP account and sync commands")

CONFIG_OPTION = typer.Option(DEFAULT_CONFIG_PATH, "--config", "-c", help="Path to config file")


def _load(config_path: Path) -> Settings:
    try:
        return load_settings(config_path)
    except InboxSyncError as e:
        error_console.print(f"[bold red]Error:[/bold red] {e.message}")
        raise typer.Exit(1)


def _cipher(settings: Settings) -> AesCbcCredentialCipher:
    try:
        return AesCbcCredentialCipher(resolve_encryption_key(settings))
    except InboxSyncError as e:
        error_console.print(f"[bold red]Error:[/bold red] {e.message}")
        raise typer.Exit(1)


def _connector(settings: Settings) -> ImapConnector:
    return ImapConnector(
        connection_timeout=settings.sync.connection_timeout,
        retry_strategy=RetryStrategy(max_retries=settings.sync.connect_retries),
    )


def _fail(message: str, json_output: bool) -> NoReturn:
    if json_output:
        print(json.dumps({"success": False, "error": message}))
    else:
        error_console.print(f"[bold red]✗[/bold red] {message}")
    raise typer.Exit(1)


def _get_account(store: SQLiteMessageStore, account_id: str) -> MailAccount:
    account = store.get_account(account_id)
    if account is None:
        raise AccountNotFoundError(f"No account with id '{account_id}'")
    return account


@imap_app.command("providers")
def list_providers() -> None:
    """Show built-in provider presets."""
    table = Table(title="Mail Providers")
    table.add_column("Key", style="cyan")
    table.add_column("Name", style="green")
    table.add_column("IMAP Host", style="blue")
    table.add_column("Port", style="magenta")
    for key, preset in EMAIL_PROVIDERS.items():
        table.add_row(key, preset.name, preset.imap_host or "-", str(preset.imap_port))
    console.print(table)


@imap_app.command("set-key")
def set_encryption_key(
    key: str = typer.Option(..., prompt=True, hide_input=True, help="Credential encryption key"),
) -> None:
    """Store the credential encryption key in the OS keyring."""
    SecretStore().set_secret(ENCRYPTION_KEY_SECRET, key)
    console.print("[green]Encryption key stored in keyring.[/green]")


@imap_app.command("add")
def add_account(
    email: str = typer.Option(..., "--email", "-e", help="Email address"),
    password: str = typer.Option(..., "--password", prompt=True, hide_input=True, help="IMAP password or App Password"),
    provider: str = typer.Option("custom", "--provider", help="Provider preset: gmail, outlook, yahoo, custom"),
    host: Optional[str] = typer.Option(None, "--host", "-h", help="IMAP hostname (defaults to the preset)"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="IMAP port"),
    username: Optional[str] = typer.Option(None, "--username", "-u", help="Login name (defaults to email)"),
    insecure: bool = typer.Option(False, "--no-tls", help="Connect without implicit TLS"),
    skip_check: bool = typer.Option(False, "--skip-check", help="Do not test the connection first"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
    config_path: Path = CONFIG_OPTION,
) -> None:
    """Register a mailbox account.

    Examples:
        inboxsync imap add --email user@gmail.com --provider gmail
        inboxsync imap add --email me@corp.example --host imap.corp.example
    """
    settings = _load(config_path)
    try:
        preset = get_provider(provider)
    except ValueError as e:
        _fail(str(e), json_output)
    imap_host = host or preset.imap_host
    if not imap_host:
        _fail("IMAP hostname is required for custom providers. Use --host.", json_output)
    imap_port = port or preset.imap_port
    secure = preset.imap_secure and not insecure
    login = username or email

    if not skip_check:
        check = check_connection(
            _connector(settings),
            host=imap_host,
            port=imap_port,
            secure=secure,
            username=login,
            password=password,
        )
        if not check.success:
            _fail(f"Connection failed: {check.error}", json_output)

    account = MailAccount(
        id=str(uuid.uuid4()),
        email_address=email,
        imap_host=imap_host,
        imap_port=imap_port,
        imap_secure=secure,
        username=login,
        password_encrypted=_cipher(settings).encrypt(password),
        provider=provider,
    )
    store = SQLiteMessageStore(settings.storage.database_path)
    try:
        store.add_account(account)
    finally:
        store.close()

    if json_output:
        print(json.dumps({"success": True, "account_id": account.id}))
    else:
        console.print(f"[bold green]✓ Added {email}[/bold green] (id: {account.id})")


@imap_app.command("list")
def list_accounts(
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
    config_path: Path = CONFIG_OPTION,
) -> None:
    """List registered accounts and their sync state."""
    settings = _load(config_path)
    store = SQLiteMessageStore(settings.storage.database_path)
    try:
        accounts = store.list_accounts()
    finally:
        store.close()

    if json_output:
        print(json.dumps([
            account.model_dump(mode="json", exclude={"password_encrypted"})
            for account in accounts
        ]))
        return

    if not accounts:
        console.print("[yellow]No accounts registered.[/yellow]")
        console.print("Add one with: inboxsync imap add --email your@email.com")
        return

    table = Table(title="Mail Accounts")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Email", style="green")
    table.add_column("Host", style="blue")
    table.add_column("Last UID", style="magenta")
    table.add_column("Synced", style="magenta")
    table.add_column("Last Error", style="red")
    for account in accounts:
        table.add_row(
            account.id[:12] + "...",
            account.email_address,
            f"{account.imap_host}:{account.imap_port}",
            str(account.last_sync_uid) if account.last_sync_uid is not None else "-",
            str(account.total_emails_synced),
            (account.sync_error or "")[:60],
        )
    console.print(table)


@imap_app.command("test-connection")
def check_connection_command(
    host: str = typer.Option(..., "--host", "-h", help="IMAP hostname"),
    username: str = typer.Option(..., "--username", "-u", help="Login name"),
    password: str = typer.Option(..., "--password", "-p", prompt=True, hide_input=True, help="Password/App Password"),
    port: int = typer.Option(993, "--port", help="IMAP port"),
    insecure: bool = typer.Option(False, "--no-tls", help="Connect without implicit TLS"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
    config_path: Path = CONFIG_OPTION,
) -> None:
    """Test IMAP credentials without registering an account."""
    settings = _load(config_path)
    if not json_output:
        console.print(f"[bold blue]Testing IMAP connection to {host}...[/bold blue]")
    check = check_connection(
        _connector(settings),
        host=host,
        port=port,
        secure=not insecure,
        username=username,
        password=password,
    )
    if not check.success:
        _fail(f"Connection failed: {check.error}", json_output)
    if json_output:
        print(json.dumps({"success": True, "message": "Connection successful"}))
    else:
        console.print("[bold green]✓ Connection successful![/bold green]")


def _print_outcome(email: str, outcome: SyncOutcome) -> None:
    status = "[green]ok[/green]" if outcome.success else "[red]failed[/red]"
    console.print(
        f"{email}: {status}, {outcome.synced} message(s) synced in "
        f"{outcome.duration_seconds:.1f}s, watermark {outcome.new_watermark or '-'}"
    )
    for error in outcome.errors:
        console.print(f"  [yellow]•[/yellow] {error}")


@imap_app.command("sync")
def sync_account(
    account_id: str = typer.Argument(..., help="Account ID"),
    limit: Optional[int] = typer.Option(None, "--limit", "-l", help="Maximum messages this run"),
    full_sync: bool = typer.Option(False, "--full", help="Ignore the stored watermark"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
    config_path: Path = CONFIG_OPTION,
) -> None:
    """Sync one account's INBOX."""
    settings = _load(config_path)
    store = SQLiteMessageStore(settings.storage.database_path)
    try:
        try:
            account = _get_account(store, account_id)
        except AccountNotFoundError as e:
            _fail(e.message, json_output)
        orchestrator = SyncOrchestrator(_connector(settings), _cipher(settings), store, settings.sync)
        options = SyncOptions(limit=limit or settings.sync.default_limit, full_sync=full_sync)

        settings.storage.lock_dir.mkdir(parents=True, exist_ok=True)
        lock = FileLock(str(settings.storage.lock_dir / f"{account.id}.lock"), timeout=0)
        try:
            with lock:
                outcome = asyncio.run(orchestrator.sync(account, options))
        except Timeout:
            _fail(f"A sync for {account.email_address} is already running", json_output)
    finally:
        store.close()

    if json_output:
        print(outcome.model_dump_json())
    else:
        _print_outcome(account.email_address, outcome)
    if not outcome.success:
        raise typer.Exit(1)


@imap_app.command("sync-all")
def sync_all(
    limit: Optional[int] = typer.Option(None, "--limit", "-l", help="Maximum messages per account"),
    full_sync: bool = typer.Option(False, "--full", help="Ignore watermarks and the resync interval"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
    config_path: Path = CONFIG_OPTION,
) -> None:
    """Sync every active account."""
    settings = _load(config_path)
    store = SQLiteMessageStore(settings.storage.database_path)
    try:
        accounts = store.list_accounts(active_only=True)
        runner = SyncRunner(
            SyncOrchestrator(_connector(settings), _cipher(settings), store, settings.sync),
            min_sync_interval_seconds=settings.sync.min_sync_interval_seconds,
            total_budget_seconds=settings.sync.total_budget_seconds,
        )
        options = SyncOptions(limit=limit or settings.sync.default_limit, full_sync=full_sync)
        summary = asyncio.run(runner.sync_accounts(accounts, options))
    finally:
        store.close()

    if json_output:
        print(json.dumps(_summary_payload(summary)))
    elif summary.skipped:
        console.print("[yellow]All accounts synced recently; nothing to do.[/yellow]")
    else:
        for result in summary.results:
            if result.outcome is not None:
                _print_outcome(result.email_address, result.outcome)
            else:
                console.print(f"{result.email_address}: [yellow]skipped[/yellow] ({result.skipped_reason})")
        console.print(f"[bold]Total synced:[/bold] {summary.total_synced}")
    if not summary.success:
        raise typer.Exit(1)


def _summary_payload(summary: MultiSyncSummary) -> dict:
    return {
        "success": summary.success,
        "skipped": summary.skipped,
        "synced": summary.total_synced,
        "errors": summary.errors,
        "accounts": [result.model_dump(mode="json") for result in summary.results],
    }


@imap_app.command("fetch-body")
def fetch_body(
    account_id: str = typer.Argument(..., help="Account ID"),
    uid: int = typer.Argument(..., help="Message UID"),
    save: bool = typer.Option(True, "--save/--no-save", help="Store the refreshed body"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
    config_path: Path = CONFIG_OPTION,
) -> None:
    """Fetch the full body of one message from the server."""
    settings = _load(config_path)
    store = SQLiteMessageStore(settings.storage.database_path)
    try:
        try:
            account = _get_account(store, account_id)
            fetcher = MessageBodyFetcher(
                _connector(settings),
                _cipher(settings),
                mailbox=settings.sync.mailbox,
                max_text_chars=settings.sync.max_text_chars,
                max_html_chars=settings.sync.max_html_chars,
            )
            body = fetcher.fetch_body(account, uid)
        except InboxSyncError as e:
            _fail(e.message, json_output)
        if body is None:
            _fail(f"UID {uid} not found on the server", json_output)
        body_text, body_html = body
        if save:
            store.update_message_body(account.id, uid, body_text, body_html)
    finally:
        store.close()

    if json_output:
        print(json.dumps({"success": True, "body_text": body_text, "body_html": body_html}))
    else:
        console.print(body_text or "[dim](empty body)[/dim]")


@imap_app.command("show")
def show_message(
    account_id: str = typer.Argument(..., help="Account ID"),
    uid: int = typer.Argument(..., help="Message UID"),
    attachment: Optional[str] = typer.Option(
        None, "--attachment", "-a", help="Show one attachment by filename or Content-ID"
    ),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
    config_path: Path = CONFIG_OPTION,
) -> None:
    """Show a synced message and its attachments from the local store.

    Examples:
        inboxsync imap show <account-id> 42
        inboxsync imap show <account-id> 42 --attachment logo@example.com
    """
    settings = _load(config_path)
    store = SQLiteMessageStore(settings.storage.database_path)
    try:
        try:
            account = _get_account(store, account_id)
        except AccountNotFoundError as e:
            _fail(e.message, json_output)
        message = store.get_message(account.id, uid)
        if message is None:
            _fail(f"UID {uid} has not been synced for {account.email_address}", json_output)
        if attachment is not None:
            found = store.find_attachment(account.id, uid, attachment)
            if found is None:
                _fail(f"UID {uid} has no attachment '{attachment}'", json_output)
            attachments = [found]
        else:
            attachments = store.list_attachments(account.id, uid)
    finally:
        store.close()

    if json_output:
        payload = {"success": True, "attachments": [row.model_dump() for row in attachments]}
        if attachment is None:
            payload["message"] = message
        print(json.dumps(payload))
        return

    if attachment is None:
        console.print(f"[bold]{message['subject']}[/bold]")
        console.print(f"From: {message['from_name'] or ''} <{message['from_address'] or '-'}>")
        console.print(f"To: {', '.join(message['to_addresses']) or '-'}")
        console.print(f"Received: {message['received_at']}")
        console.print()
        console.print(message["body_text"] or "[dim](empty body)[/dim]")

    if attachments:
        table = Table(title="Attachments")
        table.add_column("Filename", style="cyan")
        table.add_column("Type", style="green")
        table.add_column("Size", style="magenta")
        table.add_column("Content-ID", style="blue")
        table.add_column("Inline")
        for row in attachments:
            table.add_row(
                row.filename,
                row.content_type,
                str(row.size_bytes),
                row.content_id or "-",
                "yes" if row.is_inline else "no",
            )
        console.print(table)


if __name__ == "__main__":
    imap_app()
