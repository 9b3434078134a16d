"""
qbbroker CLI — command-line interface.

Usage:
    qbbroker auth
    qbbroker companies
    qbbroker token --company "Acme Corp"
    qbbroker disconnect --all
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from qbbroker import __version__
from qbbroker.broker import QuickBooksBroker
from qbbroker.config import BrokerConfig
from qbbroker.errors import BrokerError
from qbbroker.migrate import migrate_legacy_tokens

app = typer.Typer(
    name="qbbroker",
    help="QuickBooks Online OAuth token broker",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
console = Console()


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"[bold]qbbroker[/bold] v{__version__}")
        raise typer.Exit()


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


@app.callback()
def main(
    ctx: typer.Context,
    config: str = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to config file",
    ),
    verbose: bool = typer.Option(False, "--verbose", help="Enable debug logging"),
    version: bool = typer.Option(
        None,
        "--version",
        "-v",
        help="Show version",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """Connect QuickBooks companies and keep their tokens fresh."""
    _setup_logging(verbose)
    ctx.obj = config if config and Path(config).exists() else None


def _broker(ctx: typer.Context) -> QuickBooksBroker:
    return QuickBooksBroker(BrokerConfig.load(ctx.obj))


def _fail(error: BrokerError) -> NoReturn:
    console.print(f"[red]✗[/red] {error.to_user_message()}")
    raise typer.Exit(code=1)


def _run(broker: QuickBooksBroker, coro):  # noqa: ANN001, ANN202
    async def _wrapped():  # noqa: ANN202
        try:
            return await coro
        finally:
            await broker.close()

    return asyncio.run(_wrapped())


@app.command()
def auth(
    ctx: typer.Context,
    force: bool = typer.Option(False, "--force", help="Connect another company"),
) -> None:
    """Connect a QuickBooks company through the browser."""
    broker = _broker(ctx)
    env = broker.config.environment.value

    console.print(Panel.fit(
        f"[bold blue]qbbroker[/bold blue] — QuickBooks authorization ({env})",
        subtitle=f"v{__version__}",
    ))

    try:
        with console.status("[bold green]Waiting for authorization in the browser...[/bold green]"):
            result = _run(broker, broker.authenticate(force=force))
    except BrokerError as e:
        _fail(e)

    marker = "[green]✓[/green]" if result.status == "connected" else "[yellow]•[/yellow]"
    console.print(f"{marker} {result.message}")


@app.command()
def companies(ctx: typer.Context) -> None:
    """List connected companies."""
    broker = _broker(ctx)
    rows = broker.list_companies()
    if not rows:
        console.print("[dim]No QuickBooks companies connected. Run `qbbroker auth`.[/dim]")
        return

    table = Table(title=f"Connected Companies ({broker.config.environment.value})")
    table.add_column("Company", style="bold cyan")
    table.add_column("Realm ID")
    for info in rows:
        table.add_row(info.company_name, info.realm_id)
    console.print(table)


@app.command()
def status(ctx: typer.Context) -> None:
    """Show token status for each connected company."""
    broker = _broker(ctx)
    try:
        rows = broker.status()
    except BrokerError as e:
        _fail(e)

    table = Table(title=f"Token Status ({broker.config.environment.value})", show_lines=True)
    table.add_column("Company", style="bold")
    table.add_column("Realm ID")
    table.add_column("Access Token")
    table.add_column("Expires (UTC)")
    for row in rows:
        valid = "[green]valid[/green]" if row["access_token_valid"] else "[yellow]needs refresh[/yellow]"
        table.add_row(row["company_name"], row["realm_id"], valid, row["expires_at"] or "—")
    console.print(table)


@app.command()
def token(
    ctx: typer.Context,
    company: str = typer.Option(None, "--company", help="Realm ID or company name"),
) -> None:
    """Print a valid access token, refreshing it if needed."""
    broker = _broker(ctx)
    try:
        access_token = _run(broker, broker.get_access_token(company))
    except BrokerError as e:
        _fail(e)
    typer.echo(access_token)


@app.command()
def disconnect(
    ctx: typer.Context,
    company: str = typer.Option(None, "--company", help="Realm ID or company name"),
    all_companies: bool = typer.Option(False, "--all", help="Disconnect every company"),
) -> None:
    """Delete stored credentials for one company, or all with --all."""
    if company is None and not all_companies:
        console.print("[red]✗[/red] Specify --company or --all")
        raise typer.Exit(code=2)

    broker = _broker(ctx)
    try:
        removed = broker.clear_tokens(None if all_companies else company)
    except BrokerError as e:
        _fail(e)

    if removed == 0:
        console.print(f"[yellow]•[/yellow] No stored credentials matched {company!r}")
    else:
        console.print(f"[green]✓[/green] Removed {removed} stored credential(s)")


@app.command("import-token")
def import_token(
    ctx: typer.Context,
    refresh_token: str = typer.Option(..., "--refresh-token", help="Existing refresh token"),
    realm_id: str = typer.Option(..., "--realm-id", help="QuickBooks company realm ID"),
    company: str = typer.Option(None, "--company", help="Company name"),
) -> None:
    """Seed a company from an existing refresh token (headless setups)."""
    broker = _broker(ctx)
    try:
        record = broker.manager.import_refresh_token(refresh_token, realm_id, company)
    except BrokerError as e:
        _fail(e)
    console.print(
        f"[green]✓[/green] Imported [bold]{record.company_name}[/bold] ({record.realm_id}); "
        "the access token will be refreshed on first use"
    )


@app.command()
def migrate(
    ctx: typer.Context,
    paths: list[Path] = typer.Argument(None, help="Legacy token files (default: known locations)"),
    keep: bool = typer.Option(False, "--keep", help="Do not archive migrated files"),
) -> None:
    """Import legacy tokens.json / tokens_sandbox.json files."""
    broker = _broker(ctx)
    migrated, errors = migrate_legacy_tokens(broker.manager.store, paths or None, archive=not keep)

    console.print(f"[green]✓[/green] Migration complete: {migrated} token(s) migrated")
    for error in errors:
        console.print(f"  [red]✗[/red] {error}")
    if errors:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
