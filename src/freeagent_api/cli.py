"""
freeagent-api CLI — command-line interface.

Usage:
    freeagent-api auth
    freeagent-api projects
    freeagent-api timeslips --from 2024-04-01 --to 2024-04-30
    freeagent-api invoices --view open --config freeagent.yaml
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, TypeVar

import httpx
import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from freeagent_api import __version__
from freeagent_api.exceptions import FreeAgentError

T = TypeVar("T")

app = typer.Typer(
    name="freeagent-api",
    help="FreeAgent API client",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
console = Console()
err_console = Console(stderr=True)

_state: dict[str, Any] = {"config": None}


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"[bold]freeagent-api[/bold] v{__version__}")
        raise typer.Exit()


def setup_logging(verbose: bool = False) -> None:
    """Send log records to stderr through Rich."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )
    # httpx logs every request at INFO; ours are enough
    logging.getLogger("httpx").setLevel(logging.DEBUG if verbose else logging.WARNING)


@app.callback()
def main(
    version: bool = typer.Option(
        None,
        "--version",
        "-v",
        help="Show version",
        callback=_version_callback,
        is_eager=True,
    ),
    verbose: bool = typer.Option(False, "--verbose", "-V", help="Debug logging"),
    config: str = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to YAML config file",
    ),
) -> None:
    """Talk to the FreeAgent accounting API."""
    setup_logging(verbose)
    _state["config"] = config


def _load_config():  # noqa: ANN202
    from freeagent_api.config import FreeAgentConfig

    return FreeAgentConfig.load(_state["config"])


def _run(fn: Callable[[Any], Awaitable[T]]) -> T:
    """Connect, run ``fn(api)``, and turn client errors into exit code 1."""
    from freeagent_api.api import FreeAgent

    async def runner() -> T:
        async with await FreeAgent.connect(_load_config(), notify=_show_approval_url) as fa:
            return await fn(fa)

    try:
        return asyncio.run(runner())
    except (FreeAgentError, TimeoutError, httpx.HTTPError) as e:
        err_console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e


def _show_approval_url(url: str) -> None:
    err_console.print(f"Go and authorize at [link={url}]{url}[/link], waiting...")


def _parse_date(value: str | None, option: str):  # noqa: ANN202
    if value is None:
        return None
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError as e:
        raise typer.BadParameter(f"{value!r} is not a YYYY-MM-DD date", param_hint=option) from e


@app.command()
def auth() -> None:
    """Authorize with FreeAgent (or refresh the stored token)."""

    async def check(fa):  # noqa: ANN001, ANN202
        return await fa.me()

    user = _run(check)
    config = _load_config()
    console.print(f"[green]✓[/green] Authorized as [bold]{user.full_name}[/bold]")
    console.print(f"Token saved to [bold]{config.token_file}[/bold]")


@app.command()
def logout() -> None:
    """Delete the stored token."""
    from freeagent_api.auth.oauth2 import TokenStore

    config = _load_config()
    if TokenStore(config.token_file, encrypt=config.encrypt_token).delete():
        console.print(f"[green]✓[/green] Deleted {config.token_file}")
    else:
        console.print(f"[dim]No token at {config.token_file}[/dim]")


@app.command()
def company() -> None:
    """Show the company and its first accounting year end."""

    async def fetch(fa):  # noqa: ANN001, ANN202
        return await fa.company()

    info = _run(fetch)
    table = Table(title="Company", show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("Name", info.name)
    table.add_row("Type", info.type or "")
    table.add_row("Currency", info.currency or "")
    table.add_row("First accounting year end", str(info.first_accounting_year_end or ""))
    console.print(table)


@app.command()
def projects(
    view: str = typer.Option(None, "--view", help="active, completed, cancelled, hidden, all"),
) -> None:
    """List projects."""

    async def fetch(fa):  # noqa: ANN001, ANN202
        return await fa.projects(view=view)

    table = Table(title="Projects")
    table.add_column("ID", style="bold cyan")
    table.add_column("Name")
    table.add_column("Status")
    table.add_column("Currency")
    for project in _run(fetch):
        table.add_row(project.id or "", project.name, project.status or "", project.currency or "")
    console.print(table)


@app.command()
def users() -> None:
    """List users."""

    async def fetch(fa):  # noqa: ANN001, ANN202
        return await fa.users()

    table = Table(title="Users")
    table.add_column("ID", style="bold cyan")
    table.add_column("Name")
    table.add_column("Email")
    table.add_column("Role")
    for user in _run(fetch):
        table.add_row(user.id or "", user.full_name, user.email or "", user.role or "")
    console.print(table)


@app.command()
def contacts(
    view: str = typer.Option(None, "--view", help="active, clients, suppliers, all, ..."),
) -> None:
    """List contacts."""

    async def fetch(fa):  # noqa: ANN001, ANN202
        return await fa.contacts(view=view)

    table = Table(title="Contacts")
    table.add_column("ID", style="bold cyan")
    table.add_column("Name")
    table.add_column("Email")
    for contact in _run(fetch):
        table.add_row(contact.id or "", contact.display_name, contact.email or "")
    console.print(table)


@app.command()
def invoices(
    view: str = typer.Option(None, "--view", help="open, overdue, paid, draft, recent_open_or_overdue, ..."),
) -> None:
    """List invoices."""

    async def fetch(fa):  # noqa: ANN001, ANN202
        return await fa.invoices(view=view)

    table = Table(title="Invoices")
    table.add_column("Reference", style="bold cyan")
    table.add_column("Dated")
    table.add_column("Status")
    table.add_column("Total", justify="right")
    table.add_column("Due", justify="right")
    for invoice in _run(fetch):
        table.add_row(
            invoice.reference or invoice.id or "",
            str(invoice.dated_on or ""),
            invoice.status or "",
            f"{invoice.total_value or 0:,.2f} {invoice.currency or ''}".strip(),
            f"{invoice.due_value or 0:,.2f}",
        )
    console.print(table)


@app.command()
def timeslips(
    from_date: str = typer.Option(None, "--from", help="First day, YYYY-MM-DD"),
    to_date: str = typer.Option(None, "--to", help="Last day, YYYY-MM-DD"),
    user: str = typer.Option(None, "--user", help="User URL (defaults to everyone)"),
) -> None:
    """List timeslips with their total hours."""
    start = _parse_date(from_date, "--from")
    end = _parse_date(to_date, "--to")

    async def fetch(fa):  # noqa: ANN001, ANN202
        return await fa.timeslips(user=user, from_date=start, to_date=end)

    slips = _run(fetch)
    table = Table(title="Timeslips")
    table.add_column("Date", style="bold cyan")
    table.add_column("Project")
    table.add_column("Task")
    table.add_column("Hours", justify="right")
    table.add_column("Comment")
    for slip in slips:
        table.add_row(
            str(slip.dated_on or ""),
            (slip.project or "").rsplit("/", 1)[-1],
            (slip.task or "").rsplit("/", 1)[-1],
            f"{slip.hours:.2f}",
            slip.comment or "",
        )
    console.print(table)
    console.print(f"[bold]Total:[/bold] {sum(s.hours for s in slips):.2f} hours")


if __name__ == "__main__":
    app()
