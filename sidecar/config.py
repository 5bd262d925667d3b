"""
Configuration for the backup sidecar.

All settings come from environment variables and are parsed exactly once into
an immutable Config instance which is then handed to every component.
"""

import os
import re
from dataclasses import dataclass, field
from typing import Mapping, Optional, Tuple

from sidecar.models import BackupUnit, DirectoryUnit, FileUnit, MongoUnit, PostgresUnit


DEFAULT_S3_ENDPOINT = 'https://s3.amazonaws.com'


class ConfigurationError(Exception):
    """Raised when the sidecar configuration is missing or invalid."""
    pass


@dataclass(frozen=True)
class RetentionPolicy:
    """Grandfather-father-son tier counts. Zero disables a tier."""
    recent: int = 14
    daily: int = 7
    weekly: int = 4
    monthly: int = 0
    yearly: int = 0


@dataclass(frozen=True)
class S3Config:
    """Connection settings for an S3-compatible bucket."""
    bucket: str
    endpoint: Optional[str] = None
    region: str = 'us-east-1'
    access_key: Optional[str] = None
    secret_key: Optional[str] = None


@dataclass(frozen=True)
class Config:
    """Immutable sidecar configuration."""

    name: Optional[str] = None
    units: Tuple[BackupUnit, ...] = ()

    # Destinations
    local_path: Optional[str] = None
    s3: Optional[S3Config] = None

    # Encryption
    encryption_key: Optional[str] = field(default=None, repr=False)

    # Service lifecycle
    stop_services: Tuple[str, ...] = ()
    stop_wait: int = 2
    start_wait: int = 3
    compose_project: Optional[str] = None

    retention: RetentionPolicy = field(default_factory=RetentionPolicy)

    # Notifications
    success_webhook: Optional[str] = None
    failure_webhook: Optional[str] = None

    # Runtime
    schedule: Optional[str] = None
    timezone: str = 'UTC'
    work_dir: str = '/backups'
    debug: bool = False
    log_file: Optional[str] = None

    @property
    def has_destination(self) -> bool:
        return bool(self.local_path) or self.s3 is not None

    def validate(self):
        """
        Check the preconditions every backup, restore and listing needs.

        Raises:
            ConfigurationError: If the backup name or every destination is missing
        """
        if not self.name:
            raise ConfigurationError(
                "BACKUP_NAME environment variable is required "
                "(e.g. BACKUP_NAME=myapp-prod)"
            )

        if '/' in self.name:
            raise ConfigurationError(f"BACKUP_NAME must not contain '/': {self.name}")

        if not self.has_destination:
            raise ConfigurationError(
                "No backup destination configured. Set BACKUP_LOCAL_PATH or BACKUP_S3_BUCKET"
            )

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'Config':
        """
        Build a Config from environment variables.

        Args:
            environ: Mapping to read from (default: os.environ)

        Returns:
            Parsed Config

        Raises:
            ConfigurationError: If a numeric setting is malformed
        """
        env = os.environ if environ is None else environ

        def get(key: str) -> Optional[str]:
            value = env.get(key, '').strip()
            return value or None

        units = (
            tuple(PostgresUnit(uri) for uri in _parse_lines(env.get('BACKUP_POSTGRES', '')))
            + tuple(MongoUnit(uri) for uri in _parse_lines(env.get('BACKUP_MONGODB', '')))
            + tuple(DirectoryUnit(path, name) for path, name in _parse_pairs(env.get('BACKUP_DIRS', '')))
            + tuple(FileUnit(path, name) for path, name in _parse_pairs(env.get('BACKUP_FILES', '')))
        )

        s3 = None
        if get('BACKUP_S3_BUCKET'):
            endpoint = get('BACKUP_S3_ENDPOINT')
            if endpoint == DEFAULT_S3_ENDPOINT:
                endpoint = None
            s3 = S3Config(
                bucket=get('BACKUP_S3_BUCKET'),
                endpoint=endpoint,
                region=get('BACKUP_S3_REGION') or 'us-east-1',
                access_key=get('BACKUP_S3_ACCESS_KEY'),
                secret_key=get('BACKUP_S3_SECRET_KEY'),
            )

        retention = RetentionPolicy(
            recent=_parse_count(env, 'BACKUP_RETENTION_RECENT', 14),
            daily=_parse_count(env, 'BACKUP_RETENTION_DAILY', 7),
            weekly=_parse_count(env, 'BACKUP_RETENTION_WEEKLY', 4),
            monthly=_parse_count(env, 'BACKUP_RETENTION_MONTHLY', 0),
            yearly=_parse_count(env, 'BACKUP_RETENTION_YEARLY', 0),
        )

        return cls(
            name=get('BACKUP_NAME'),
            units=units,
            local_path=get('BACKUP_LOCAL_PATH'),
            s3=s3,
            encryption_key=env.get('BACKUP_ENCRYPTION_KEY') or None,
            stop_services=tuple(s for s in re.split(r'[,\s]+', env.get('BACKUP_STOP_SERVICES', '')) if s),
            stop_wait=_parse_count(env, 'BACKUP_STOP_WAIT', 2),
            start_wait=_parse_count(env, 'BACKUP_START_WAIT', 3),
            compose_project=get('COMPOSE_PROJECT_NAME'),
            retention=retention,
            success_webhook=get('BACKUP_SUCCESS_WEBHOOK'),
            failure_webhook=get('BACKUP_FAILURE_WEBHOOK'),
            schedule=get('BACKUP_SCHEDULE'),
            timezone=get('BACKUP_TIMEZONE') or 'UTC',
            work_dir=get('BACKUP_WORK_DIR') or '/backups',
            debug=(get('BACKUP_DEBUG') or 'false').lower() == 'true',
            log_file=get('BACKUP_LOG_FILE'),
        )


def _parse_lines(value: str) -> Tuple[str, ...]:
    """Split a newline-separated setting, skipping blank lines and comments."""
    entries = []
    for line in value.splitlines():
        line = line.strip()
        if not line or line.startswith('#'):
            continue
        entries.append(line)
    return tuple(entries)


def _parse_pairs(value: str) -> Tuple[Tuple[str, str], ...]:
    """
    Parse a comma-separated list of path:name pairs.

    The name is everything after the first colon; it defaults to the
    basename of the path when omitted.
    """
    pairs = []
    for entry in value.replace('\n', ',').split(','):
        entry = entry.strip()
        if not entry or entry.startswith('#'):
            continue

        path, _, name = entry.partition(':')
        path = path.strip()
        name = name.strip() or os.path.basename(path.rstrip('/'))

        if not path or not name:
            raise ConfigurationError(f"Invalid path:name entry: {entry}")

        pairs.append((path, name))
    return tuple(pairs)


def _parse_count(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key, '').strip()
    if not raw:
        return default

    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be an integer, got: {raw!r}")

    if value < 0:
        raise ConfigurationError(f"{key} must not be negative, got: {value}")

    return value
