"""Command-line interface for authwatch.

This module provides Typer CLI commands for running the monitoring daemon,
querying stored statistics, managing the GeoIP database and checking the
configuration.
"""

import json
import logging
from pathlib import Path
from typing import Optional

import typer

from authwatch import __version__
from authwatch.config import Settings, load_settings, resolve_config_path
from authwatch.daemon import Daemon
from authwatch.errors import AuthwatchError
from authwatch.geoip import GeoIPUpdater
from authwatch.notifier import TelegramNotifier
from authwatch.report import ReportGenerator
from authwatch.storage import Storage

# Create Typer app
app = typer.Typer(
    name="authwatch",
    help="SSH login monitor: Telegram alerts, daily reports and login statistics",
    add_completion=False,
)
stats_app = typer.Typer(help="Show login statistics from the event database")
geoip_app = typer.Typer(help="Manage the GeoIP database")
config_app = typer.Typer(help="Inspect the configuration")
app.add_typer(stats_app, name="stats")
app.add_typer(geoip_app, name="geoip")
app.add_typer(config_app, name="config")

ConfigOption = typer.Option(
    None,
    "--config", "-c",
    help="Path to JSON config file (default: $AUTHWATCH_CONFIG or /etc/authwatch/config.json)",
)


def setup_logging(level: str = "INFO", debug: bool = False) -> None:
    """Configure logging.

    Args:
        level: Log level name from the settings.
        debug: Force debug level logging.
    """
    logging.basicConfig(
        level=logging.DEBUG if debug else getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _load(config: Optional[Path]) -> Settings:
    try:
        return load_settings(config)
    except AuthwatchError as e:
        typer.echo(f"Error: {e.message}", err=True)
        raise typer.Exit(1)


@app.command()
def daemon(
    config: Optional[Path] = ConfigOption,
    debug: bool = typer.Option(False, "--debug", help="Enable debug logging"),
) -> None:
    """Run the monitoring daemon in the foreground."""
    settings = _load(config)
    setup_logging(settings.log_level, debug)
    logger = logging.getLogger(__name__)

    try:
        settings.validate_for_daemon()
        logger.info(f"authwatch v{__version__} on {settings.server_name}")
        Daemon(settings).run()
    except AuthwatchError as e:
        logger.error(f"Daemon error: {e.message}")
        raise typer.Exit(1)


@stats_app.command("today")
def stats_today(config: Optional[Path] = ConfigOption) -> None:
    """Show statistics for the last 24 hours."""
    _print_stats(config, days=1)


@stats_app.command("report")
def stats_report(
    config: Optional[Path] = ConfigOption,
    days: int = typer.Option(1, "--days", "-d", min=1, help="Number of days"),
) -> None:
    """Show statistics for the last N days."""
    _print_stats(config, days=days)


@stats_app.command("logins")
def stats_logins(
    config: Optional[Path] = ConfigOption,
    days: int = typer.Option(7, "--days", "-d", min=1, help="Number of days"),
) -> None:
    """List successful logins for the last N days."""
    settings = _load(config)
    storage = _open_storage(settings)
    try:
        typer.echo(ReportGenerator(storage, settings.server_name).generate_logins_report(days), nl=False)
    finally:
        storage.close()


def _print_stats(config: Optional[Path], days: int) -> None:
    settings = _load(config)
    storage = _open_storage(settings)
    try:
        typer.echo(ReportGenerator(storage, settings.server_name).generate_stats(days), nl=False)
    finally:
        storage.close()


def _open_storage(settings: Settings) -> Storage:
    try:
        return Storage(settings.database_path)
    except AuthwatchError as e:
        typer.echo(f"Error: {e.message}", err=True)
        raise typer.Exit(1)


@geoip_app.command("update")
def geoip_update(config: Optional[Path] = ConfigOption) -> None:
    """Download or update the GeoIP database."""
    settings = _load(config)
    setup_logging(settings.log_level)
    try:
        GeoIPUpdater(settings.geoip_database_path).update()
    except AuthwatchError as e:
        typer.echo(f"Error: {e.message}", err=True)
        raise typer.Exit(1)
    typer.echo("GeoIP database updated successfully")


@geoip_app.command("status")
def geoip_status(config: Optional[Path] = ConfigOption) -> None:
    """Show GeoIP database information."""
    settings = _load(config)
    updater = GeoIPUpdater(settings.geoip_database_path)

    if not updater.database_exists():
        typer.echo("GeoIP database: not found")
        typer.echo(f"Path: {settings.geoip_database_path}")
        typer.echo("")
        typer.echo("Run 'authwatch geoip update' to download the database")
        return

    modified, size = updater.database_info()
    year, month = updater.local_version()
    typer.echo("GeoIP database: installed")
    typer.echo(f"Path: {settings.geoip_database_path}")
    typer.echo(f"Version: {year}-{month:02d}")
    typer.echo(f"Size: {size / 1024 / 1024:.1f} MB")
    typer.echo(f"Modified: {modified.strftime('%Y-%m-%d %H:%M:%S')}")


@app.command()
def cleanup(config: Optional[Path] = ConfigOption) -> None:
    """Delete events older than the retention window."""
    settings = _load(config)
    storage = _open_storage(settings)
    try:
        deleted = storage.cleanup(settings.retention_days)
    except AuthwatchError as e:
        typer.echo(f"Error: {e.message}", err=True)
        raise typer.Exit(1)
    finally:
        storage.close()
    typer.echo(f"Deleted {deleted} events older than {settings.retention_days} days")


@config_app.command("validate")
def config_validate(config: Optional[Path] = ConfigOption) -> None:
    """Check that the configuration is complete."""
    settings = _load(config)
    try:
        settings.validate_for_daemon()
    except AuthwatchError as e:
        typer.echo(f"Configuration invalid: {e.message}", err=True)
        raise typer.Exit(1)
    typer.echo(f"Configuration valid: {resolve_config_path(config)}")


@config_app.command("show")
def config_show(config: Optional[Path] = ConfigOption) -> None:
    """Print the active configuration with secrets masked."""
    settings = _load(config)
    typer.echo(json.dumps(settings.redacted(), indent=2))


@app.command("send-test")
def send_test(config: Optional[Path] = ConfigOption) -> None:
    """Send a test Telegram message."""
    settings = _load(config)
    try:
        settings.validate_for_daemon()
        TelegramNotifier(
            settings.telegram_bot_token,
            settings.telegram_chat_id,
            settings.server_name,
        ).send_test_message()
    except AuthwatchError as e:
        typer.echo(f"Error: {e.message}", err=True)
        raise typer.Exit(1)
    typer.echo("Test message sent successfully")


@app.command()
def version() -> None:
    """Show version information."""
    typer.echo(f"authwatch v{__version__}")


if __name__ == "__main__":
    app()
