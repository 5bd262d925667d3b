"""
Archive handling and artifact naming.

Every artifact is a gzip compressed tar named:
    {backup_name}-{YYYY-MM-DD-HHMMSS}.tar.gz[.gpg]

The timestamp is fixed width and zero padded so that lexical order is
chronological order; retention and restore both rely on this.
"""

import os
import re
import tarfile
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from sidecar.utils.crypto import SEALED_SUFFIX


TIMESTAMP_FORMAT = '%Y-%m-%d-%H%M%S'
TIMESTAMP_PATTERN = r'\d{4}-\d{2}-\d{2}-\d{6}'
ARCHIVE_EXTENSION = '.tar.gz'


class CompressionError(Exception):
    """Raised when archive creation or extraction fails."""
    pass


def create_archive(source_paths: List[str], archive_path: str) -> str:
    """
    Create a gzip compressed tar from source paths.

    Each path is stored under its basename, so a directory keeps its own
    name as the top level entry.

    Args:
        source_paths: List of file/directory paths to include in archive
        archive_path: Path of the archive to create

    Returns:
        Path to the created archive file

    Raises:
        CompressionError: If archive creation fails
    """
    if not source_paths:
        raise CompressionError("No source paths provided")

    try:
        with tarfile.open(archive_path, 'w:gz') as tar:
            for source_path in source_paths:
                source = Path(source_path)

                if not source.exists():
                    raise CompressionError(f"Path does not exist: {source_path}")

                tar.add(source, arcname=source.name, recursive=True)

        return archive_path

    except Exception as e:
        # Clean up partial archive on failure
        if os.path.exists(archive_path):
            os.remove(archive_path)
        if isinstance(e, CompressionError):
            raise
        raise CompressionError(f"Failed to create archive: {e}")


def archive_directory_contents(directory: str, archive_path: str) -> str:
    """
    Archive every entry of a directory (the collection directory) into one tar.

    Raises:
        CompressionError: If the directory is empty or archiving fails
    """
    entries = sorted(os.path.join(directory, entry) for entry in os.listdir(directory))
    return create_archive(entries, archive_path)


def extract_archive(archive_path: str, dest_dir: str):
    """
    Extract a gzip compressed tar into dest_dir.

    Raises:
        CompressionError: If the archive is missing or corrupt
    """
    if not os.path.exists(archive_path):
        raise CompressionError(f"Archive not found: {archive_path}")

    try:
        os.makedirs(dest_dir, exist_ok=True)
        with tarfile.open(archive_path, 'r:gz') as tar:
            tar.extractall(dest_dir, filter='data')
    except (tarfile.TarError, OSError) as e:
        raise CompressionError(f"Failed to extract {os.path.basename(archive_path)}: {e}")


def generate_timestamp(now: Optional[datetime] = None) -> str:
    """Format the run timestamp used in artifact names."""
    return (now or datetime.now()).strftime(TIMESTAMP_FORMAT)


def is_valid_timestamp(timestamp: str) -> bool:
    if not re.fullmatch(TIMESTAMP_PATTERN, timestamp):
        return False
    try:
        datetime.strptime(timestamp, TIMESTAMP_FORMAT)
    except ValueError:
        return False
    return True


def generate_archive_filename(backup_name: str, timestamp: str) -> str:
    """
    Generate the archive filename for a run.

    Format: {backup_name}-{YYYY-MM-DD-HHMMSS}.tar.gz
    """
    return f"{backup_name}-{timestamp}{ARCHIVE_EXTENSION}"


def artifact_filename_pattern(backup_name: str):
    """Compiled regex matching artifact filenames of one backup name."""
    return re.compile(
        rf'^{re.escape(backup_name)}-(?P<timestamp>{TIMESTAMP_PATTERN})'
        rf'{re.escape(ARCHIVE_EXTENSION)}(?:{re.escape(SEALED_SUFFIX)})?$'
    )


def parse_artifact_timestamp(filename: str, backup_name: str) -> Optional[datetime]:
    """
    Extract the timestamp embedded in an artifact filename.

    Returns:
        The parsed datetime, or None if the filename is not an artifact of
        this backup name
    """
    match = artifact_filename_pattern(backup_name).match(filename)
    if not match:
        return None

    try:
        return datetime.strptime(match.group('timestamp'), TIMESTAMP_FORMAT)
    except ValueError:
        return None


def get_archive_size(archive_path: str) -> int:
    """
    Get the size of an archive file in bytes.

    Raises:
        CompressionError: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(archive_path)
    except FileNotFoundError:
        raise CompressionError(f"Archive not found: {archive_path}")
    except OSError as e:
        raise CompressionError(f"Failed to get archive size: {e}")
