from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv

from src.bookkeeping.config import LedgerConfig, load_ledger_config
from src.bookkeeping.errors import ApplyError, ConfigError

app = typer.Typer(help="Thai bookkeeping ledger CLI")

log = logging.getLogger(__name__)


def _resolve(
    *,
    database_url: Optional[str],
    connection_file: Optional[Path],
    config: Optional[Path],
) -> tuple[LedgerConfig, str]:
    from src.db.session import get_database_url

    cfg, cfg_path = load_ledger_config(config)
    if cfg_path:
        log.info("Loaded config from %s", cfg_path)
    conn_file = connection_file if connection_file is not None else Path(cfg.connection_file)
    url = get_database_url(override=database_url, connection_file=conn_file, config_url=cfg.database_url)
    return cfg, url


@app.command("apply")
def apply_cmd(
    database_url: Optional[str] = typer.Option(None, help="SQLAlchemy URL; overrides every other source"),
    connection_file: Optional[Path] = typer.Option(None, dir_okay=False, help="File whose first line is the URL"),
    config: Optional[Path] = typer.Option(None, dir_okay=False, help="ledger.yaml path"),
    no_seed: bool = typer.Option(False, "--no-seed", help="Skip reference data"),
):
    """Create or upgrade the ledger schema and seed reference data. Safe to re-run."""
    load_dotenv()
    from src.db.apply import apply_schema
    from src.db.session import create_ledger_engine

    try:
        cfg, url = _resolve(database_url=database_url, connection_file=connection_file, config=config)
    except ConfigError as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(code=2)

    seed = cfg.seed.model_copy(update={"enabled": False}) if no_seed else cfg.seed
    engine = create_ledger_engine(url, echo=cfg.echo_sql)
    try:
        result = apply_schema(engine, seed=seed, progress=typer.echo)
    except ApplyError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(code=1)
    finally:
        engine.dispose()
    typer.echo(
        f"{result.statements_executed} executed, {result.statements_skipped} already in place, "
        f"migrations applied: {result.migrations_applied or 'none'}"
    )


@app.command("status")
def status_cmd(
    database_url: Optional[str] = typer.Option(None),
    connection_file: Optional[Path] = typer.Option(None, dir_okay=False),
    config: Optional[Path] = typer.Option(None, dir_okay=False),
):
    """List applied and pending schema migrations."""
    load_dotenv()
    from src.db.apply import applied_versions, pending_migrations
    from src.db.session import create_ledger_engine

    try:
        _, url = _resolve(database_url=database_url, connection_file=connection_file, config=config)
    except ConfigError as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(code=2)

    engine = create_ledger_engine(url)
    try:
        applied = applied_versions(engine)
        pending = pending_migrations(engine)
    finally:
        engine.dispose()
    for version, name, applied_at in applied:
        typer.echo(f"{version:>4}  {name}  applied {applied_at}")
    for m in pending:
        typer.echo(f"{m.version:>4}  {m.name}  pending")
    if not applied and not pending:
        typer.echo("No migrations defined.")


if __name__ == "__main__":
    app()
