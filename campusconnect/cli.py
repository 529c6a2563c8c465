"""Typer CLI for CampusConnect."""

from __future__ import annotations

import json
from pathlib import Path

from sqlalchemy.exc import OperationalError
import typer
import uvicorn

from .config import (
    load_settings,
    settings,
    settings_as_dict,
    update_config_file,
)
from .docstore import DocumentStore
from .storage import init_db, upgrade_database
from .trending import refresh_trending

app = typer.Typer(help="CampusConnect command-line interface")


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Show help when no subcommand is provided."""
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


@app.command("upgrade-db")
def upgrade_db(
    no_backup: bool = typer.Option(
        False,
        "--no-backup",
        help="Skip creating a .bak copy of the database before upgrading",
    ),
) -> None:
    """Upgrade the SQLite database schema if needed."""
    try:
        actions = upgrade_database(make_backup=not no_backup)
    except OperationalError as exc:
        message = str(getattr(exc, "orig", exc)).lower()
        if "readonly" in message or "read-only" in message:
            typer.secho(
                "Unable to upgrade because the database is read-only. "
                f"Ensure write access to {settings.database_path}.",
                err=True,
                fg=typer.colors.RED,
            )
            raise typer.Exit(code=1)
        raise

    typer.echo("Database upgrade complete:")
    for action in actions:
        typer.echo(f"- {action}")


@app.command("refresh-trending")
def refresh_trending_command(
    limit: int | None = typer.Option(
        None, "--limit", min=0, help="Maximum number of events to flag"
    ),
    min_score: int | None = typer.Option(
        None, "--min-score", min=0, help="Minimum trending score to be flagged"
    ),
) -> None:
    """Recompute the trending flag on upcoming public events."""
    init_db()
    stats = refresh_trending(DocumentStore(), limit=limit, min_score=min_score)
    typer.echo(f"Trending refresh complete: {stats}")


@app.command("runserver")
def runserver(
    host: str = typer.Option(settings.app_host, "--host", help="Host to bind"),
    port: int = typer.Option(settings.app_port, "--port", help="Port to bind"),
):
    """Start the FastAPI app; the trending job runs inside it."""
    init_db()
    config = uvicorn.Config(
        "campusconnect.api:app",
        host=host,
        port=port,
        reload=False,
        proxy_headers=True,
        forwarded_allow_ips="*",
    )
    server = uvicorn.Server(config)
    typer.echo(f"Starting CampusConnect on {host}:{port}")
    server.run()


@app.command("config")
def configure(
    show: bool = typer.Option(
        False, "--show", help="Show the current effective configuration"
    ),
    events_per_page: int | None = typer.Option(
        None, "--events-per-page", min=1, help="Feed page size"
    ),
    activity_log_limit: int | None = typer.Option(
        None, "--activity-log-limit", min=1, help="Entries in an event's activity feed"
    ),
    organizer_activity_limit: int | None = typer.Option(
        None,
        "--organizer-activity-limit",
        min=1,
        help="Entries in an organizer's activity feed",
    ),
    comment_max_length: int | None = typer.Option(
        None, "--comment-max-length", min=1, help="Maximum comment length"
    ),
    trending_limit: int | None = typer.Option(
        None, "--trending-limit", min=0, help="Events flagged per trending refresh"
    ),
    trending_min_score: int | None = typer.Option(
        None, "--trending-min-score", min=0, help="Minimum score to be trending"
    ),
    trending_refresh_minutes: int | None = typer.Option(
        None,
        "--trending-refresh-minutes",
        min=1,
        help="Minutes between trending refreshes",
    ),
    enable_scheduler: bool | None = typer.Option(
        None,
        "--enable-scheduler/--disable-scheduler",
        help="Toggle the background trending job",
    ),
    store_timeout_seconds: float | None = typer.Option(
        None, "--store-timeout", min=0.0, help="Database lock timeout in seconds"
    ),
    assistant_model: str | None = typer.Option(
        None, "--assistant-model", help="Model used by the campus assistant"
    ),
    assistant_enabled: bool | None = typer.Option(
        None,
        "--enable-assistant/--disable-assistant",
        help="Toggle the campus assistant",
    ),
    host: str | None = typer.Option(None, "--host", help="Default host for runserver"),
    port: int | None = typer.Option(None, "--port", help="Default port for runserver"),
    config_path: Path | None = typer.Option(
        None,
        "--config-path",
        help="Path to campusconnect.toml (default: ./campusconnect.toml)",
    ),
):
    """View or update the persistent configuration file."""

    updates = {
        "events_per_page": events_per_page,
        "activity_log_limit": activity_log_limit,
        "organizer_activity_limit": organizer_activity_limit,
        "comment_max_length": comment_max_length,
        "trending_limit": trending_limit,
        "trending_min_score": trending_min_score,
        "trending_refresh_minutes": trending_refresh_minutes,
        "enable_scheduler": enable_scheduler,
        "store_timeout_seconds": store_timeout_seconds,
        "assistant_model": assistant_model,
        "assistant_enabled": assistant_enabled,
        "app_host": host,
        "app_port": port,
    }
    clean_updates = {k: v for k, v in updates.items() if v is not None}

    target_path = config_path or settings.config_path
    if clean_updates:
        settings_ref = update_config_file(clean_updates, path=target_path)
        typer.echo(f"Updated configuration in {target_path}")
    else:
        settings_ref = load_settings(target_path)
    if show or not clean_updates:
        effective = settings_as_dict(settings_ref)
        effective["config_path"] = str(target_path)
        typer.echo(json.dumps(effective, indent=2))


if __name__ == "__main__":
    app()
