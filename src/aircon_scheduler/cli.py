"""CLI for the aircon scheduler."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path

import click

from aircon_scheduler import __version__
from aircon_scheduler.config import DEFAULT_CONFIG_PATH, AppConfig, ConfigError, load_config
from aircon_scheduler.core.logging import configure_logging

logger = logging.getLogger(__name__)

_config_option = click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    default=DEFAULT_CONFIG_PATH,
    show_default=True,
    help="Path to the scheduler TOML config",
)


def _load_or_exit(config_path: Path) -> AppConfig:
    try:
        return load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Invalid config: {exc}", err=True)
        sys.exit(1)


def _configure_logging(config: AppConfig) -> None:
    log_root = config.scheduler.logging.log_root
    configure_logging(
        level=config.scheduler.logging.level,
        fmt=config.scheduler.logging.format,
        log_root=Path(log_root) if log_root else None,
        service_name=config.scheduler.name,
    )


@click.group()
@click.version_option(version=__version__)
def cli() -> None:
    """Aircon scheduler: power room climate units around calendar bookings."""


@cli.command()
@_config_option
def run(config_path: Path) -> None:
    """Run the scheduler daemon until SIGINT/SIGTERM."""
    config = _load_or_exit(config_path)
    _configure_logging(config)
    click.echo(f"Starting scheduler {config.scheduler.name} from {config_path}")
    asyncio.run(_run_daemon(config))


@cli.command()
@_config_option
def once(config_path: Path) -> None:
    """Dry run: one reconciliation pass per room, printing the outcomes.

    The broker is never contacted and every timer the pass arms is cancelled
    on exit, so no device is switched.
    """
    config = _load_or_exit(config_path)
    _configure_logging(config)
    asyncio.run(_run_once(config))


@cli.command("check-config")
@_config_option
def check_config(config_path: Path) -> None:
    """Validate the config and print the room-to-device table."""
    config = _load_or_exit(config_path)
    click.echo(f"Config OK: {config.scheduler.name} ({config.scheduler.timezone})")
    click.echo(f"{'Room':<30} {'Device':<10} {'Calendar'}")
    click.echo("-" * 72)
    for room in config.rooms:
        device = room.device_id if not room.disabled else f"{room.device_id} (disabled)"
        click.echo(f"{room.name:<30} {device:<10} {room.email}")


async def _run_daemon(config: AppConfig) -> None:
    from aircon_scheduler.daemon import SchedulerDaemon

    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def _signal_handler() -> None:
        click.echo("\nShutting down...")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    daemon = SchedulerDaemon(config)
    await daemon.start()
    click.echo(f"Scheduler {config.scheduler.name} running for {len(daemon.calendars)} room(s)")

    await shutdown_event.wait()
    await daemon.shutdown()


async def _run_once(config: AppConfig) -> None:
    from aircon_scheduler.daemon import SchedulerDaemon

    daemon = SchedulerDaemon(config)
    await daemon.start(poll=False, connect=False)
    try:
        summaries = await daemon.refresh()
    finally:
        await daemon.shutdown()

    for summary in summaries:
        outcomes = ", ".join(f"{k}={v}" for k, v in sorted(summary.outcomes.items()))
        click.echo(f"{summary.calendar}: {summary.entries} entries ({outcomes or 'none'})")
