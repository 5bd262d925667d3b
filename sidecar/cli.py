"""
Command line interface.

    backup-sidecar backup               Run a backup now
    backup-sidecar list                 List stored backups
    backup-sidecar restore TIMESTAMP    Restore a backup
    backup-sidecar run                  Container entrypoint (scheduler)
"""

import signal
import sys

import click

from sidecar import configure_logging
from sidecar.backup.compression import parse_artifact_timestamp, TIMESTAMP_FORMAT
from sidecar.backup.executor import run_backup
from sidecar.backup.restore import run_restore
from sidecar.backup.storage import Destinations, StorageError
from sidecar.config import Config, ConfigurationError


def _load_config() -> Config:
    try:
        config = Config.from_env()
    except ConfigurationError as e:
        configure_logging()
        raise click.ClickException(str(e))

    configure_logging(debug=config.debug, log_file=config.log_file)
    return config


@click.group()
@click.version_option(package_name='backup-sidecar')
@click.pass_context
def cli(ctx):
    """Back up, list and restore container data."""
    ctx.obj = _load_config()


@cli.command()
@click.pass_obj
def backup(config: Config):
    """Run a backup now."""
    result = run_backup(config)
    if not result.succeeded:
        sys.exit(1)


@cli.command(name='list')
@click.pass_obj
def list_backups(config: Config):
    """List stored backups, newest first."""
    try:
        config.validate()
        destinations = Destinations.from_config(config)
        listing = destinations.listing(f"{config.name}/")
    except (ConfigurationError, StorageError) as e:
        raise click.ClickException(str(e))

    click.echo(f"Backups for {config.name}:")

    for label, artifacts in listing.items():
        location = destinations.local.base_path / config.name if label == 'local' \
            else f"s3://{destinations.s3.bucket_name}/{config.name}/"
        click.echo("")
        click.echo(f"{label} ({location}):")

        rows = []
        for artifact in artifacts:
            timestamp = parse_artifact_timestamp(artifact.filename, config.name)
            if timestamp is not None:
                rows.append((timestamp, artifact))

        if not rows:
            click.echo("  No backups found")
            continue

        for timestamp, artifact in sorted(rows, key=lambda row: row[0], reverse=True):
            size = f"{artifact.size / 1024 / 1024:.2f} MB" if artifact.size is not None else '-'
            click.echo(f"  {timestamp.strftime(TIMESTAMP_FORMAT)}  {size:>12}  {artifact.filename}")


@cli.command()
@click.argument('timestamp')
@click.pass_obj
def restore(config: Config, timestamp: str):
    """Restore the backup taken at TIMESTAMP (YYYY-MM-DD-HHMMSS)."""
    result = run_restore(config, timestamp)
    if not result.succeeded:
        sys.exit(1)


@cli.command()
@click.pass_obj
def run(config: Config):
    """Run scheduled backups (BACKUP_SCHEDULE) or wait for manual commands."""
    from sidecar.scheduler import run_scheduler

    try:
        run_scheduler(config)
    except ConfigurationError as e:
        raise click.ClickException(str(e))


def _terminate(signum, frame):
    raise SystemExit(128 + signum)


def install_signal_handlers():
    """
    Turn SIGTERM into SystemExit so cleanup and service restarts run
    when the container is stopped mid-run.
    """
    signal.signal(signal.SIGTERM, _terminate)


def main():
    install_signal_handlers()
    cli()


if __name__ == '__main__':
    main()
