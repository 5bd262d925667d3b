"""
Backup module for the backup sidecar.

This module handles the core backup functionality including:
- Unit collection and restore (PostgreSQL, MongoDB, directories, files)
- Archiving
- Storage (local directory and S3)
- Backup and restore orchestration
- Grandfather-father-son retention
"""

from .executor import BackupExecutor, run_backup
from .restore import RestoreExecutor, run_restore
from .sources import create_source, CollectionError, RestoreError
from .compression import create_archive, extract_archive, CompressionError
from .storage import S3Storage, LocalStorage, Destinations, StorageError, BackupNotFoundError
from .retention import RetentionManager, classify_artifacts

__all__ = [
    'BackupExecutor',
    'run_backup',
    'RestoreExecutor',
    'run_restore',
    'create_source',
    'CollectionError',
    'RestoreError',
    'create_archive',
    'extract_archive',
    'CompressionError',
    'S3Storage',
    'LocalStorage',
    'Destinations',
    'StorageError',
    'BackupNotFoundError',
    'RetentionManager',
    'classify_artifacts'
]
