#!/usr/bin/env python3
"""
Operator CLI for AI Catalog.

Usage:
    aicatalog list                      - Sessions, most recently updated first
    aicatalog show SESSION_ID           - Entries of one session
    aicatalog export [-o FILE]          - Whole catalog as JSON
    aicatalog export-session SESSION_ID - Selected entries of one session as JSON
    aicatalog clear                     - Remove every stored session
"""

import asyncio
import json
from datetime import date, datetime
from pathlib import Path
from typing import Optional, Tuple

import click
from loguru import logger
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from ..daemon.config import Config
from ..daemon.main import setup_logging
from ..daemon.store import CatalogStore, JsonFileStore

console = Console()


def format_ts(ts: int, fmt: str = "%m-%d %H:%M") -> str:
    try:
        return datetime.fromtimestamp(ts / 1000).strftime(fmt)
    except (TypeError, ValueError, OverflowError, OSError):
        return "?"


def shorten(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit] + "…"


def load_config(config_path: Optional[str], store_path: Optional[str]) -> Config:
    if config_path:
        config = Config.load(Path(config_path))
    else:
        try:
            config = Config.load()
        except FileNotFoundError:
            logger.debug("No config file found, using defaults")
            config = Config()
    if store_path:
        config = config.model_copy(update={"store_path": Path(store_path).expanduser().resolve()})
    return config


def open_store(ctx: click.Context) -> CatalogStore:
    config: Config = ctx.obj["config"]
    return CatalogStore(JsonFileStore(config.store_path), config.storage_key)


@click.group()
@click.option("--config", "-c", "config_path", type=click.Path(exists=True), help="Config file path")
@click.option("--store", "-s", "store_path", type=click.Path(), help="Override the store file")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[str], store_path: Optional[str], verbose: bool):
    """AI Catalog - captured conversation entries."""
    setup_logging("DEBUG" if verbose else "WARNING")
    ctx.ensure_object(dict)
    ctx.obj["config"] = load_config(config_path, store_path)


@cli.command(name="list")
@click.pass_context
def list_sessions(ctx: click.Context):
    """List sessions, most recently updated first."""
    rows = asyncio.run(open_store(ctx).summaries())

    if not rows:
        console.print("[yellow]No sessions recorded yet[/yellow]")
        return

    table = Table(title=f"Sessions ({len(rows)})")
    table.add_column("Session", style="dim", overflow="fold")
    table.add_column("Title", style="cyan", overflow="fold")
    table.add_column("Entries", justify="right")
    table.add_column("Updated", style="magenta")

    for row in rows:
        table.add_row(
            escape(row["session_id"]),
            escape(shorten(row["title"], 60)),
            str(row["entry_count"]),
            format_ts(row["updated_at"]),
        )

    console.print(table)


@cli.command()
@click.argument("session_id")
@click.pass_context
def show(ctx: click.Context, session_id: str):
    """Show the entries of one session."""
    session = asyncio.run(open_store(ctx).get_session(session_id))
    if session is None:
        console.print(f"[red]Unknown session:[/red] {escape(session_id)}")
        ctx.exit(1)

    console.print(f"[bold]{escape(session.title)}[/bold]  [dim]updated {format_ts(session.updated_at)}[/dim]\n")
    if not session.entries:
        console.print("[yellow]No entries[/yellow]")
        return
    for i, entry in enumerate(session.entries, 1):
        console.print(
            f"{i:>3}. {escape(shorten(entry.text, 100))} "
            f"[dim]{format_ts(entry.timestamp, '%H:%M')} {escape(entry.id)}[/dim]",
            markup=True,
            highlight=False,
        )


@cli.command()
@click.option("--output", "-o", type=click.Path(), help="Output file ('-' for stdout)")
@click.pass_context
def export(ctx: click.Context, output: Optional[str]):
    """Export the whole catalog as JSON."""
    payload = asyncio.run(open_store(ctx).export_json())
    if output == "-":
        click.echo(payload)
        return
    path = Path(output or f"aicatalog_{date.today().isoformat()}.json")
    path.write_text(payload + "\n", encoding="utf-8")
    console.print(f"[green]✓[/green] Exported to {path}")


@cli.command(name="export-session")
@click.argument("session_id")
@click.option("--id", "entry_ids", multiple=True, help="Entry id to include (repeatable; default all)")
@click.pass_context
def export_session(ctx: click.Context, session_id: str, entry_ids: Tuple[str, ...]):
    """Print selected entries of one session as JSON, in stored order."""
    store = open_store(ctx)

    async def collect():
        if entry_ids:
            return await store.selected_entries(session_id, entry_ids)
        session = await store.get_session(session_id)
        return session.entries if session else []

    entries = asyncio.run(collect())
    click.echo(json.dumps([e.to_dict() for e in entries], indent=2, ensure_ascii=False))


@cli.command()
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def clear(ctx: click.Context, yes: bool):
    """Remove every stored session. Cannot be undone."""
    if not yes and not click.confirm("Clear all recorded sessions? This cannot be undone."):
        console.print("[yellow]Aborted[/yellow]")
        return
    if asyncio.run(open_store(ctx).clear()):
        console.print("[green]✓[/green] Catalog cleared")
    else:
        console.print("[red]Store unavailable, nothing cleared[/red]")


def main():
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
