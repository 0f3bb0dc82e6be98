"""CLI for Luach: run the progression daemon and inspect projections."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from datetime import date, datetime
from pathlib import Path

import click

from luach.config import ConfigError, load_config
from luach.core.logging import configure_logging
from luach.projector import (
    ADAR_II,
    DateProjector,
    HebrewDateError,
    ProjectedOccurrence,
    validate_hebrew_date,
)

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path(".")

_config_dir_option = click.option(
    "--config-dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=DEFAULT_CONFIG_DIR,
    show_default=True,
    help="Directory containing luach.toml",
)


@click.group()
@click.version_option(version="0.1.0")
def cli() -> None:
    """Luach: Hebrew-date recurring events synchronized to Google Calendar."""


def _load_or_exit(config_dir: Path):
    try:
        return load_config(config_dir)
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(1)


@cli.command()
@_config_dir_option
def run(config_dir: Path) -> None:
    """Run the year progression daemon until SIGINT/SIGTERM."""
    config = _load_or_exit(config_dir)
    asyncio.run(_run_daemon(config))


async def _run_daemon(config) -> None:
    from luach.daemon import LuachDaemon

    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def _signal_handler() -> None:
        click.echo("\nShutting down...")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    daemon = LuachDaemon(config)
    await daemon.start()
    click.echo("Luach daemon running")
    try:
        await shutdown_event.wait()
    finally:
        await daemon.shutdown()


@cli.command()
@_config_dir_option
def sweep(config_dir: Path) -> None:
    """Run a single progression sweep and print its summary."""
    config = _load_or_exit(config_dir)
    configure_logging(level=config.logging.level, fmt=config.logging.format)
    summary = asyncio.run(_sweep_once(config))
    if summary is None:
        click.echo("Sweep skipped: another sweep is in progress")
        return
    click.echo(
        f"users={summary.users_total} processed={summary.users_processed} "
        f"skipped={summary.users_skipped} failed={summary.users_failed} "
        f"events_updated={summary.events_updated} events_failed={summary.events_failed}"
    )
    for error in summary.errors:
        click.echo(f"  error: {error}")


async def _sweep_once(config):
    from luach.daemon import LuachDaemon

    daemon = LuachDaemon(config)
    await daemon.connect()
    try:
        return await daemon.run_sweep()
    finally:
        await daemon.shutdown()


@cli.command("init-db")
@_config_dir_option
def init_db(config_dir: Path) -> None:
    """Apply database migrations up to the latest revision."""
    config = _load_or_exit(config_dir)
    configure_logging(level=config.logging.level, fmt=config.logging.format)
    asyncio.run(_init_db(config))
    click.echo("Migrations applied")


async def _init_db(config) -> None:
    from luach.daemon import LuachDaemon

    daemon = LuachDaemon(config)
    await daemon.connect()
    await daemon.shutdown()


def _parse_iso_date(ctx: click.Context, param: click.Parameter, value: str | None) -> date | None:
    if value is None:
        return None
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError as exc:
        raise click.BadParameter(f"expected YYYY-MM-DD, got {value!r}") from exc


class _ProjectionTarget:
    """Adapter giving a bare Hebrew date the shape the projector expects."""

    recurrence_rule = "yearly"

    def __init__(self, title: str, day: int, month: int, year: int) -> None:
        self.id = "cli"
        self.title = title
        self.hebrew_day = day
        self.hebrew_month = month
        self.hebrew_year = year


@cli.command()
@click.option("--day", type=click.IntRange(1, 30), required=True, help="Hebrew day")
@click.option(
    "--month",
    type=click.IntRange(1, ADAR_II),
    required=True,
    help="Hebrew month (Nisan=1, Tishrei=7, Adar/Adar I=12, Adar II=13)",
)
@click.option("--year", type=click.IntRange(1, 9999), required=True, help="Origin Hebrew year")
@click.option("--title", default="Event", show_default=True)
@click.option("--from", "range_start", callback=_parse_iso_date, required=True)
@click.option("--to", "range_end", callback=_parse_iso_date, required=True)
def project(
    day: int,
    month: int,
    year: int,
    title: str,
    range_start: date,
    range_end: date,
) -> None:
    """Print the Gregorian occurrences of a Hebrew date within a date range."""
    projector = DateProjector()
    try:
        validate_hebrew_date(day, month, year)
        occurrences: list[ProjectedOccurrence] = projector.generate_occurrences_in_range(
            [_ProjectionTarget(title, day, month, year)], range_start, range_end
        )
    except HebrewDateError as exc:
        raise click.BadParameter(str(exc)) from exc

    if not occurrences:
        click.echo("No occurrences in range")
        return
    for occurrence in occurrences:
        click.echo(
            f"{occurrence.date.isoformat()}  {occurrence.hebrew_year}  {occurrence.title}"
        )


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
