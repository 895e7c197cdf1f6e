"""Patch window admin CLI (pwsync).

Usage:
    pwsync run                      # Run the job once (same as patchwindow)
    pwsync init-db                  # Create the window ledger table
    pwsync windows list             # Show every recorded window
    pwsync windows remove NODE_ID   # Forget the window for a node
    pwsync windows prune            # Drop windows that have ended
"""

from __future__ import annotations

import sys
from datetime import UTC, datetime

import click

from .config import database_url_from_env
from .main import main as run_job
from .store import DatastoreError, WindowStore, create_store_engine

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M"


def open_store(database_url: str) -> WindowStore:
    if not database_url:
        raise click.ClickException(
            "No ledger configured. Set DATABASE_URL (or DB_INSTANCE and DB_NAME)."
        )
    return WindowStore(create_store_engine(database_url))


@click.group()
@click.version_option(package_name="patch-window-sync")
@click.option(
    "--database-url",
    default=database_url_from_env,
    show_default="from DATABASE_URL or DB_INSTANCE/DB_NAME",
    help="SQLAlchemy URL of the window ledger.",
)
@click.pass_context
def cli(ctx: click.Context, database_url: str) -> None:
    """Patch window synchronization tools."""
    ctx.ensure_object(dict)
    ctx.obj["database_url"] = database_url


@cli.command()
@click.pass_context
def run(ctx: click.Context) -> None:
    """Run the reconciliation job once."""
    sys.exit(run_job(database_url=ctx.obj["database_url"]))


@cli.command("init-db")
@click.pass_context
def init_db(ctx: click.Context) -> None:
    """Create the window ledger table if it does not exist."""
    store = open_store(ctx.obj["database_url"])
    try:
        store.create_schema()
    except DatastoreError as e:
        raise click.ClickException(str(e)) from e
    click.echo("Window ledger ready.")


@cli.group()
def windows() -> None:
    """Inspect and edit the window ledger."""
    pass


@windows.command("list")
@click.pass_context
def list_windows(ctx: click.Context) -> None:
    """Show every recorded window."""
    store = open_store(ctx.obj["database_url"])
    try:
        rows = store.select_all()
    except DatastoreError as e:
        raise click.ClickException(str(e)) from e

    if not rows:
        click.echo("No windows recorded.")
        return

    now = datetime.now(UTC)
    click.echo(
        f"{'NODE':<10} {'HOSTNAME':<32} {'GROUP':<24} {'START (UTC)':<17} {'END (UTC)':<17}"
    )
    for w in rows:
        marker = " (expired)" if w.is_expired(now) else ""
        click.echo(
            f"{w.node_id:<10} {w.hostname:<32} {w.group_name:<24} "
            f"{w.start_time.strftime(TIMESTAMP_FORMAT):<17} "
            f"{w.end_time.strftime(TIMESTAMP_FORMAT):<17}{marker}"
        )


@windows.command("remove")
@click.argument("node_id")
@click.pass_context
def remove_window(ctx: click.Context, node_id: str) -> None:
    """Forget the window for NODE_ID so it can be scheduled again."""
    store = open_store(ctx.obj["database_url"])
    try:
        removed = store.delete(node_id)
    except DatastoreError as e:
        raise click.ClickException(str(e)) from e

    if not removed:
        raise click.ClickException(f"No window recorded for node {node_id}")
    click.echo(f"Removed window for node {node_id}.")


@windows.command("prune")
@click.pass_context
def prune_windows(ctx: click.Context) -> None:
    """Drop windows that have already ended."""
    store = open_store(ctx.obj["database_url"])
    try:
        pruned = store.prune(datetime.now(UTC))
    except DatastoreError as e:
        raise click.ClickException(str(e)) from e
    click.echo(f"Pruned {pruned} expired window(s).")


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
