"""Command line entry points for inboxsync."""

import logging

import typer
from rich.logging import RichHandler

from ..ingestion.imap.cli import imap_app


cli = typer.Typer(help="inboxsync command line tools")
cli.add_typer(imap_app, name="imap")


@cli.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Resumable IMAP mailbox sync."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )


__all__ = ["cli", "imap_app"]
