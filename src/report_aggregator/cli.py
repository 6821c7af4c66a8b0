"""CLI entry point for the report aggregator."""

from __future__ import annotations

import click


@click.group()
def main() -> None:
    """Idempotent event-to-report aggregator."""


@main.command()
@click.option("--config", default=None, help="Config file path")
@click.option("--subjects", default=None, help="Comma-separated subjects override")
@click.option("--workers", default=None, type=int, help="Consumers per subject")
def run(config: str | None, subjects: str | None, workers: int | None) -> None:
    """Consume events and aggregate them until interrupted."""
    import asyncio

    from .main import run as run_service

    overrides: dict = {}
    if subjects:
        overrides.setdefault("bus", {})["subjects"] = [
            s.strip() for s in subjects.split(",") if s.strip()
        ]
    if workers is not None:
        overrides.setdefault("bus", {})["workers"] = workers

    asyncio.run(run_service(config_path=config, overrides=overrides))


@main.command("init-db")
@click.option("--config", default=None, help="Config file path")
def init_db(config: str | None) -> None:
    """Create database tables."""
    import asyncio

    from .main import init_db as init

    asyncio.run(init(config_path=config))
    click.echo("Tables created.")


@main.command("prune-ledger")
@click.option("--config", default=None, help="Config file path")
@click.option("--days", default=None, type=int, help="Retention window in days")
def prune_ledger(config: str | None, days: int | None) -> None:
    """Delete idempotency entries older than the retention window."""
    import asyncio

    from .main import prune_ledger as prune

    deleted = asyncio.run(prune(config_path=config, retention_days=days))
    click.echo(f"Pruned {deleted} ledger entries.")
