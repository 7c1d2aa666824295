"""
memsqlite CLI - Main command-line interface for memsqlite.

Commands for creating the store, syncing session logs once or continuously,
querying it, inspecting locks and running the query API.
"""

import asyncio
import json
import signal
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from memsqlite.logging_config import setup_logging

app = typer.Typer(
    name="memsqlite",
    help="memsqlite - Claude Code conversation history in SQLite",
    no_args_is_help=True,
)

console = Console()


def _collect_files(log_path: Path) -> list[Path]:
    if log_path.is_file():
        return [log_path]
    return sorted(log_path.rglob("*.jsonl"))


@app.command("init-db")
def init_db_command() -> None:
    """Create the database file and schema if they do not exist."""
    from memsqlite.config import settings
    from memsqlite.db.connection import create_db_engine, init_db

    setup_logging(context="cli", config=settings)

    engine = create_db_engine(settings.database_file, settings.busy_timeout_ms)
    try:
        init_db(engine)
    finally:
        engine.dispose()
    console.print(f"[green]✓ Database ready:[/green] {settings.database_file}")


@app.command()
def sync(
    path: str = typer.Argument(..., help="Session log file or directory of logs"),
) -> None:
    """
    Sync Claude Code session logs into the database once.

    Each file is processed in batches; files already synced are re-read
    harmlessly because inserts skip rows that exist.
    """
    from memsqlite.config import settings
    from memsqlite.services import SyncServices

    setup_logging(context="cli", config=settings)

    log_path = Path(path).expanduser()
    if not log_path.exists():
        console.print(f"[bold red]Error:[/bold red] Path not found: {path}")
        raise typer.Exit(1)

    files = _collect_files(log_path)
    if not files:
        console.print("[yellow]No .jsonl files found in directory[/yellow]")
        raise typer.Exit(0)

    console.print(f"[bold blue]Syncing {len(files)} file(s) from:[/bold blue] {log_path}\n")

    async def _run() -> tuple[int, int]:
        successful = failed = 0
        async with SyncServices(settings) as services:
            for log_file in files:
                result = await services.sync_engine.process_file(log_file)
                if result.success:
                    successful += 1
                    console.print(
                        f"  [green]✓[/green] {log_file.name}: "
                        f"{result.execute.inserted} inserted, "
                        f"{result.execute.updated} unchanged, "
                        f"{len(result.line_errors)} bad lines"
                    )
                else:
                    failed += 1
                    console.print(f"  [red]✗[/red] {log_file.name}: {result.failure}")
        return successful, failed

    successful, failed = asyncio.run(_run())

    console.print()
    console.print("[bold]Summary:[/bold]")
    console.print(f"  Successful: {successful}")
    console.print(f"  Failed: {failed}")

    if failed > 0:
        raise typer.Exit(1)


@app.command()
def watch(
    directory: str = typer.Option(None, help="Projects directory (defaults to settings)"),
    workers: int = typer.Option(None, help="Concurrent file passes"),
) -> None:
    """
    Watch the projects directory and sync sessions as they are written.

    Runs until interrupted (Ctrl+C or SIGTERM).
    """
    from memsqlite.config import settings
    from memsqlite.services import SyncServices
    from memsqlite.watch import WatcherDaemon

    setup_logging(context="watch", config=settings)

    config = settings
    if workers:
        config = settings.model_copy(update={"watch_workers": workers})

    watch_dir = Path(directory).expanduser() if directory else config.projects_directory
    if not watch_dir.is_dir():
        console.print(f"[bold red]Error:[/bold red] Not a directory: {watch_dir}")
        raise typer.Exit(1)

    console.print(f"[bold green]Watching:[/bold green] {watch_dir}")
    console.print(f"  Database: {config.database_file}")
    console.print(f"  Workers: {config.watch_workers}")
    console.print("  Press Ctrl+C to stop\n")

    async def _run() -> None:
        async with SyncServices(config) as services:
            daemon = WatcherDaemon(services.sync_engine, config, watch_dir)
            loop = asyncio.get_running_loop()
            for signum in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(signum, daemon.stop)
            await daemon.run()

    asyncio.run(_run())
    console.print("[green]✓ Watch daemon stopped[/green]")


@app.command()
def query(
    sql: str = typer.Argument(..., help="A read-only SELECT statement"),
    limit: int = typer.Option(None, help="Maximum rows to return"),
    as_json: bool = typer.Option(False, "--json", help="Print the raw JSON result"),
) -> None:
    """Run a read-only query against the database."""
    from memsqlite.config import settings
    from memsqlite.exceptions import MemSQLiteError
    from memsqlite.query.service import parse_query_arguments
    from memsqlite.services import QueryServices

    setup_logging(context="cli", config=settings)

    arguments = {"sql": sql}
    if limit is not None:
        arguments["limit"] = limit

    async def _run() -> dict:
        async with QueryServices(settings) as services:
            sql_text, row_limit = parse_query_arguments(arguments, settings.query_max_limit)
            return await services.query_service.execute(sql_text, row_limit, "cli")

    try:
        result = asyncio.run(_run())
    except MemSQLiteError as e:
        console.print(f"[bold red]Error ({e.code}):[/bold red] {e.message}")
        raise typer.Exit(1)

    if as_json:
        console.print_json(json.dumps(result, default=str))
        return

    rows = result["results"]
    if not rows:
        console.print("[yellow]No rows[/yellow]")
        return

    table = Table(show_header=True, header_style="bold")
    for column in rows[0].keys():
        table.add_column(column)
    for row in rows:
        table.add_row(*("" if value is None else str(value) for value in row.values()))
    console.print(table)
    console.print(f"{result['rowCount']} row(s)")


@app.command()
def locks(
    cleanup: bool = typer.Option(False, "--cleanup", help="Remove stale lock files"),
) -> None:
    """Show cross-process lock state, or clean up stale locks."""
    from memsqlite.config import settings
    from memsqlite.db.locks import LockManager

    setup_logging(context="cli", config=settings)

    manager = LockManager(
        settings.lock_directory,
        default_timeout=settings.lock_timeout,
        stale_after=settings.lock_stale_after,
        poll_interval=settings.lock_poll_interval,
    )

    if cleanup:
        removed = manager.cleanup_stale_locks()
        console.print(f"[green]✓ Removed {removed} stale lock(s)[/green]")
        return

    stats = manager.lock_stats()
    console.print(f"[bold]Lock directory:[/bold] {settings.lock_directory}")
    console.print(f"  Held: {stats['total']}  Stale: {stats['stale']}")
    if not stats["locks"]:
        return

    table = Table(show_header=True, header_style="bold")
    for column in ("name", "pid", "hostname", "stale"):
        table.add_column(column)
    for lock in stats["locks"]:
        table.add_row(
            lock["name"],
            str(lock.get("pid", "?")),
            str(lock.get("hostname", "?")),
            "yes" if lock["stale"] else "no",
        )
    console.print(table)


@app.command()
def serve(
    host: str = typer.Option(None, help="Host to bind to (defaults to settings)"),
    port: int = typer.Option(None, help="Port to bind to (defaults to settings)"),
    reload: bool = typer.Option(False, help="Enable auto-reload"),
) -> None:
    """
    Start the FastAPI query server.

    Serves read-only SQL over the conversation database.
    """
    import uvicorn

    from memsqlite.config import settings

    host = host or settings.api_host
    port = port or settings.api_port

    console.print("[bold green]Starting memsqlite API server...[/bold green]")
    console.print(f"  Host: {host}")
    console.print(f"  Port: {port}")
    console.print(f"  Reload: {reload}")
    console.print(f"\n  API docs: http://{host}:{port}/docs")

    uvicorn.run(
        "memsqlite.api.app:app",
        host=host,
        port=port,
        reload=reload,
    )


if __name__ == "__main__":
    app()
