"""Maintenance CLI for the edit-session engine.

Usage:
    python cli.py release-stale-conversations --timeout 5
    python cli.py release-stale-conversations --timeout 5 --running-timeout 30 --cancelling-timeout 2

Runs the same sweep as the background reaper once, against the configured
database, and reports what it did.
"""

import asyncio
from typing import Optional

import typer

from config import settings
from models.database import EditorStore
from services import build_services

app = typer.Typer(
    name="editor-engine",
    help="Maintenance commands for the edit-session engine",
    no_args_is_help=True,
)

_database_path: str | None = None


@app.callback()
def main(
    database: Optional[str] = typer.Option(
        None, "--database", help="SQLite database file (defaults to DATABASE_PATH)"
    ),
):
    """Edit-session engine maintenance."""
    global _database_path
    _database_path = database


async def _release(
    timeout: int,
    running_timeout: int,
    cancelling_timeout: int,
) -> tuple[list[str], int]:
    store = EditorStore(_database_path or settings.database_path)
    await store.init()
    services = build_services(store)

    released = await services.reaper.release_stale_conversations(timeout_minutes=timeout)
    recovered = await services.reaper.recover_stuck_sessions(
        running_timeout_minutes=running_timeout,
        cancelling_timeout_minutes=cancelling_timeout,
    )
    return released, recovered


@app.command("release-stale-conversations")
def release_stale_conversations(
    timeout: int = typer.Option(
        5, "--timeout", min=1, help="Minutes without a heartbeat before release"
    ),
    running_timeout: int = typer.Option(
        30, "--running-timeout", min=1, help="Minutes before a running session is failed"
    ),
    cancelling_timeout: int = typer.Option(
        2, "--cancelling-timeout", min=1, help="Minutes before a cancelling session is closed"
    ),
):
    """Release abandoned workspaces and close stuck sessions."""
    released, recovered = asyncio.run(
        _release(timeout, running_timeout, cancelling_timeout)
    )
    typer.echo(
        f"Released {len(released)} stale workspace(s), "
        f"recovered {recovered} stuck session(s)."
    )
    for workspace_id in released:
        typer.echo(f"  {workspace_id}")


if __name__ == "__main__":
    app()
