"""
Source handlers for backup and restore operations.

Supports:
- PostgresSource: pg_dump / pg_restore with a version-matched client
- MongoSource: mongodump / mongorestore
- DirectorySource: directory captured as <name>.tar.gz
- FileSource: single file copied as <name>

Each handler writes its artifact into the collection directory on
`acquire` and reads it back from an extracted backup on `restore`.
"""

import logging
import os
import shutil
import subprocess
from typing import List

from sidecar.models import BackupUnit, DirectoryUnit, FileUnit, MongoUnit, PostgresUnit
from .compression import CompressionError, create_archive, extract_archive
from .pgversion import client_binary


logger = logging.getLogger(__name__)

MONGO_DUMP_DIR = 'mongodb-dump'


class CollectionError(Exception):
    """Raised when a configured source cannot be captured."""
    pass


class RestoreError(Exception):
    """Raised when a captured unit cannot be restored."""
    pass


def _run(command: List[str], error_message: str, error_class=CollectionError):
    """
    Run an external client, translating failures into error_class.

    The command line is never included in the error since it carries
    connection URIs with credentials.
    """
    try:
        subprocess.run(command, check=True, capture_output=True, text=True)
    except FileNotFoundError:
        raise error_class(f"{error_message}: client {command[0]} not found")
    except subprocess.CalledProcessError as e:
        detail = (e.stderr or '').strip().splitlines()
        reason = detail[-1] if detail else f"exit status {e.returncode}"
        raise error_class(f"{error_message}: {reason}")


class PostgresSource:
    """
    Handler for a PostgreSQL database.
    """

    def __init__(self, unit: PostgresUnit):
        self.unit = unit

    @property
    def dump_name(self) -> str:
        return f"postgres-{self.unit.database}.dump"

    @property
    def description(self) -> str:
        return f"PostgreSQL database {self.unit.database}"

    def acquire(self, temp_dir: str) -> List[str]:
        """
        Dump the database in custom format.

        Raises:
            CollectionError: If pg_dump fails
        """
        logger.info(f"Backing up PostgreSQL database: {self.unit.database}")
        dump_path = os.path.join(temp_dir, self.dump_name)

        _run(
            [
                client_binary('pg_dump', self.unit.uri), self.unit.uri,
                '--format=custom',
                f'--file={dump_path}'
            ],
            f"PostgreSQL backup failed for {self.unit.database}"
        )
        return [dump_path]

    def restore(self, source_dir: str) -> bool:
        """
        Restore the database from its dump, replacing existing objects.

        Returns:
            False if the backup holds no dump for this database

        Raises:
            RestoreError: If pg_restore fails
        """
        dump_path = os.path.join(source_dir, self.dump_name)

        if not os.path.isfile(dump_path):
            logger.warning(f"PostgreSQL dump not found for {self.unit.database}, skipping")
            return False

        logger.info(f"Restoring PostgreSQL database: {self.unit.database}")
        _run(
            [
                client_binary('pg_restore', self.unit.uri),
                f'--dbname={self.unit.uri}',
                '--clean',
                '--if-exists',
                dump_path
            ],
            f"PostgreSQL restore failed for {self.unit.database}",
            RestoreError
        )
        return True


class MongoSource:
    """
    Handler for a MongoDB deployment. All MongoDB URIs share one dump
    directory, as mongodump lays databases out by name underneath it.
    """

    def __init__(self, unit: MongoUnit):
        self.unit = unit

    @property
    def description(self) -> str:
        return f"MongoDB {self.unit.database}"

    def acquire(self, temp_dir: str) -> List[str]:
        logger.info(f"Backing up MongoDB: {self.unit.database}")
        dump_dir = os.path.join(temp_dir, MONGO_DUMP_DIR)

        _run(
            ['mongodump', f'--uri={self.unit.uri}', f'--out={dump_dir}'],
            "MongoDB backup failed"
        )
        return [dump_dir]

    def restore(self, source_dir: str) -> bool:
        dump_dir = os.path.join(source_dir, MONGO_DUMP_DIR)

        if not os.path.isdir(dump_dir):
            logger.warning("MongoDB dump directory not found, skipping")
            return False

        logger.info(f"Restoring MongoDB: {self.unit.database}")
        _run(
            ['mongorestore', f'--uri={self.unit.uri}', '--drop', dump_dir],
            "MongoDB restore failed",
            RestoreError
        )
        return True


class DirectorySource:
    """
    Handler for a directory, captured as a tar.gz whose top level entry is
    the directory's own basename.
    """

    def __init__(self, unit: DirectoryUnit):
        self.unit = unit

    @property
    def archive_name(self) -> str:
        return f"{self.unit.name}.tar.gz"

    @property
    def description(self) -> str:
        return f"directory {self.unit.path}"

    def acquire(self, temp_dir: str) -> List[str]:
        """
        Raises:
            CollectionError: If the directory exists but cannot be archived
        """
        path = self.unit.path.rstrip('/') or '/'

        if not os.path.isdir(path):
            logger.warning(f"Directory not found, skipping: {path}")
            return []

        logger.info(f"Backing up directory: {path} as {self.unit.name}")
        archive_path = os.path.join(temp_dir, self.archive_name)

        try:
            create_archive([path], archive_path)
        except CompressionError as e:
            raise CollectionError(f"Directory backup failed for {path}: {e}")

        return [archive_path]

    def restore(self, source_dir: str) -> bool:
        archive_path = os.path.join(source_dir, self.archive_name)

        if not os.path.isfile(archive_path):
            logger.warning(f"Tar file not found for {self.unit.name}, skipping: {archive_path}")
            return False

        path = self.unit.path.rstrip('/') or '/'
        logger.info(f"Restoring directory: {path} from {self.unit.name}")

        try:
            extract_archive(archive_path, os.path.dirname(path) or '.')
        except CompressionError as e:
            raise RestoreError(f"Directory restore failed for {path}: {e}")
        return True


class FileSource:
    """
    Handler for a single file, copied into the backup as <name>.
    """

    def __init__(self, unit: FileUnit):
        self.unit = unit

    @property
    def description(self) -> str:
        return f"file {self.unit.path}"

    def acquire(self, temp_dir: str) -> List[str]:
        if not os.path.isfile(self.unit.path):
            logger.warning(f"File not found, skipping: {self.unit.path}")
            return []

        logger.info(f"Backing up file: {self.unit.path} as {self.unit.name}")
        dest_path = os.path.join(temp_dir, self.unit.name)

        try:
            shutil.copy2(self.unit.path, dest_path)
        except PermissionError as e:
            raise CollectionError(f"Permission denied accessing {self.unit.path}: {e}")
        except OSError as e:
            raise CollectionError(f"File backup failed for {self.unit.path}: {e}")

        return [dest_path]

    def restore(self, source_dir: str) -> bool:
        backup_file = os.path.join(source_dir, self.unit.name)

        if not os.path.isfile(backup_file):
            logger.warning(f"Backup file not found for {self.unit.name}, skipping")
            return False

        logger.info(f"Restoring file: {self.unit.path} from {self.unit.name}")

        try:
            parent = os.path.dirname(self.unit.path)
            if parent:
                os.makedirs(parent, exist_ok=True)
            shutil.copy2(backup_file, self.unit.path)
        except OSError as e:
            raise RestoreError(f"File restore failed for {self.unit.path}: {e}")
        return True


_SOURCE_TYPES = {
    PostgresUnit: PostgresSource,
    MongoUnit: MongoSource,
    DirectoryUnit: DirectorySource,
    FileUnit: FileSource,
}


def create_source(unit: BackupUnit):
    """
    Factory function to create the handler for a backup unit.

    Raises:
        ValueError: If the unit type is unknown
    """
    try:
        source_class = _SOURCE_TYPES[type(unit)]
    except KeyError:
        raise ValueError(f"Invalid backup unit type: {type(unit).__name__}")
    return source_class(unit)
