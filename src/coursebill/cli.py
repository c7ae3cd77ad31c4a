"""CourseBill CLI - operator commands for the billing service.

Usage:
    coursebill serve                   Start the API server
    coursebill init-db                 Create database tables (and partitions)
    coursebill sync-plans              Push unsynced plans to Stripe
    coursebill config show             Show loaded configuration sources
    coursebill config validate         Validate configuration
    coursebill config init             Write a configuration template
"""

import asyncio
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from coursebill.core import get_logger, settings, setup_logging

logger = get_logger(__name__)
console = Console()

app = typer.Typer(
    name="coursebill",
    help="CourseBill - billing reconciliation for course subscriptions",
    add_completion=False,
)


def run_async(coro):
    """Run an async function to completion."""
    return asyncio.run(coro)


# =============================================================================
# SERVER COMMANDS
# =============================================================================


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", "-h", help="Host to bind to"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Port to bind to"),
    reload: bool = typer.Option(False, "--reload", "-r", help="Enable auto-reload"),
):
    """Start the API server.

    Examples:
        coursebill serve
        coursebill serve --port 8080 --reload
    """
    import uvicorn

    host = host or settings.api_host
    port = port or settings.api_port

    console.print("[bold blue]Starting CourseBill API server[/]")
    console.print(f"  Host: {host}:{port}")
    console.print(f"  Reload: {reload}")
    console.print(f"\n  API docs: http://{host}:{port}/docs\n")

    uvicorn.run(
        "coursebill.api.main:app",
        host=host,
        port=port,
        reload=reload,
        log_level=settings.log_level.lower(),
    )


@app.command("init-db")
def init_db(
    partition_years: int = typer.Option(
        3, "--partition-years", help="Yearly ledger partitions to create ahead (PostgreSQL only)"
    ),
):
    """Create database tables.

    On PostgreSQL the orders and order_items tables are partitioned by year;
    this also creates the yearly partitions and a default partition.
    """

    async def _init_db():
        from coursebill.db import close_db, create_tables

        try:
            await create_tables(partition_years=partition_years)
        finally:
            await close_db()

    setup_logging()
    console.print("[bold blue]Creating database tables...[/]")
    try:
        run_async(_init_db())
    except Exception as e:
        console.print(f"[red]Error: {e}[/]")
        raise typer.Exit(1)
    console.print("[green]Database ready[/]")


@app.command("sync-plans")
def sync_plans():
    """Create Stripe products and prices for every paid plan that has none."""

    async def _sync():
        from coursebill.db import close_db, get_db_session
        from coursebill.services.catalog_service import CatalogService

        try:
            async with get_db_session() as session:
                return await CatalogService(session).sync_all_plans()
        finally:
            await close_db()

    setup_logging()
    results = run_async(_sync())

    if not results:
        console.print("[green]All plans are already synced[/]")
        return

    table = Table(title="Plan sync")
    table.add_column("Plan", style="cyan")
    table.add_column("Status")
    table.add_column("Stripe price / error")

    for result in results:
        if result["status"] == "synced":
            table.add_row(result["name"], "[green]synced[/]", result["stripe_price_id"])
        else:
            table.add_row(result["name"], "[red]failed[/]", result["error"])

    console.print(table)

    failed = sum(1 for result in results if result["status"] == "failed")
    console.print(f"\nSynced: {len(results) - failed}  Failed: {failed}")
    if failed:
        raise typer.Exit(1)


# =============================================================================
# CONFIG COMMANDS
# =============================================================================

config_app = typer.Typer(help="Inspect and validate configuration")
app.add_typer(config_app, name="config")


@config_app.command("show")
def config_show():
    """Show configuration files, COURSEBILL_* environment variables and validation status."""
    from coursebill.config import diagnose_config

    report = diagnose_config()

    table = Table(title="Configuration sources")
    table.add_column("Source", style="cyan")
    table.add_column("Path")
    table.add_column("Exists")
    for name in ("global_config", "local_config"):
        entry = report[name]
        table.add_row(name.replace("_", " "), entry["path"], "yes" if entry["exists"] else "no")
    console.print(table)

    if report["env_vars"]:
        console.print("\n[cyan]Environment:[/]")
        for key, value in sorted(report["env_vars"].items()):
            console.print(f"  {key}={value}")

    if report["validation"]["valid"]:
        console.print("\n[green]Configuration is valid[/]")
    else:
        console.print("\n[yellow]Configuration issues:[/]")
        for error in report["validation"]["errors"]:
            console.print(f"  - {error}")


@config_app.command("validate")
def config_validate():
    """Validate the effective configuration. Exits non-zero on problems."""
    from coursebill.config import load_config, validate_config

    try:
        errors = validate_config(load_config())
    except ValueError as e:
        errors = [str(e)]

    if errors:
        console.print("[red]Configuration is invalid:[/]")
        for error in errors:
            console.print(f"  - {error}")
        raise typer.Exit(1)

    console.print("[green]Configuration is valid[/]")


@config_app.command("init")
def config_init(
    path: Path = typer.Option(Path("coursebill.yaml"), "--path", help="Where to write the template"),
    force: bool = typer.Option(False, "--force", "-f", help="Overwrite an existing file"),
):
    """Write a configuration template without secrets."""
    from coursebill.config import save_config

    if path.exists() and not force:
        console.print(f"[yellow]{path} already exists (use --force to overwrite)[/]")
        raise typer.Exit(1)

    save_config(path, settings, template=True)
    console.print(f"[green]Wrote {path}[/]")


if __name__ == "__main__":
    app()
