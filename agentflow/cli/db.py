"""agentflow db: schema management via Alembic."""

import os
from pathlib import Path

import typer
from alembic import command
from alembic.config import Config

from agentflow.db.engine import DATABASE_URL_ENV

db_app = typer.Typer(name="db", help="Database operations: init, status.")

_ALEMBIC_INI = "alembic.ini"


def _alembic_config(database_url: str | None, config_file: str) -> Config:
    url = (database_url or os.environ.get(DATABASE_URL_ENV, "")).strip()
    if not url:
        typer.echo(f"Error: Set {DATABASE_URL_ENV} or pass --database-url.", err=True)
        raise typer.Exit(2)
    if not Path(config_file).exists():
        typer.echo(f"Error: Alembic config not found: {config_file}", err=True)
        raise typer.Exit(2)
    os.environ[DATABASE_URL_ENV] = url
    return Config(config_file)


@db_app.command("init")
def init_command(
    database_url: str = typer.Option("", "--database-url", help=f"Database URL (default: {DATABASE_URL_ENV})."),
    target: str = typer.Option("head", "--target", "-t", help="Revision to upgrade to."),
    config_file: str = typer.Option(_ALEMBIC_INI, "--alembic-config", help="Path to alembic.ini."),
) -> None:
    """Create or upgrade the runtime schema."""
    target = target.strip()
    if not target:
        typer.echo("Error: --target must be a non-empty revision string.", err=True)
        raise typer.Exit(2)
    cfg = _alembic_config(database_url or None, config_file)
    command.upgrade(cfg, target)
    typer.echo(f"Schema upgraded to {target}.")


@db_app.command("status")
def status_command(
    database_url: str = typer.Option("", "--database-url", help=f"Database URL (default: {DATABASE_URL_ENV})."),
    config_file: str = typer.Option(_ALEMBIC_INI, "--alembic-config", help="Path to alembic.ini."),
) -> None:
    """Show the current schema revision."""
    cfg = _alembic_config(database_url or None, config_file)
    command.current(cfg, verbose=False)
