"""
Backup executor - orchestrates the complete backup workflow.

Workflow:
1. Validate configuration (name and at least one destination)
2. Stop configured services
3. Collect every backup unit into a per-run collection directory
4. Start services again (on every exit path of step 3)
5. Archive the collection directory
6. Encrypt the archive (skipped with a warning without a passphrase)
7. Store the artifact on the configured destination(s)
8. Apply the retention policy on each destination
9. Notify success or failure
"""

import logging
import os
import shutil
import tempfile
from datetime import datetime
from typing import Optional

from sidecar.config import Config
from sidecar.models import BackupResult, BackupState
from sidecar.notify import Notifier, report_failure
from sidecar.services import ServiceController
from sidecar.utils.crypto import seal_file
from .compression import (
    archive_directory_contents,
    generate_archive_filename,
    generate_timestamp,
    get_archive_size,
)
from .retention import RetentionManager
from .sources import CollectionError, create_source
from .storage import Destinations


logger = logging.getLogger(__name__)


class BackupExecutor:
    """
    Orchestrates one backup run.
    """

    def __init__(self, config: Config, destinations: Optional[Destinations] = None,
                 services: Optional[ServiceController] = None,
                 notifier: Optional[Notifier] = None):
        """
        Args:
            config: Parsed configuration
            destinations: Storage destinations (built from config when omitted)
            services: Service controller (built from config when omitted)
            notifier: Webhook notifier (built from config when omitted)
        """
        self.config = config
        self.destinations = destinations
        self.services = services or ServiceController.from_config(config)
        self.notifier = notifier or Notifier.from_config(config)
        self.result = None
        self.temp_dir = None
        self.archive_path = None

    def execute(self) -> BackupResult:
        """
        Execute the backup.

        Never raises for backup failures: they are reported through the
        failure webhook and recorded on the returned result.
        """
        self.result = BackupResult(name=self.config.name)
        self._log(f"Starting backup for {self.config.name or '<unnamed>'}")

        try:
            self._execute_workflow()

            self._transition(BackupState.NOTIFY)
            self.result.status = 'success'
            self.result.completed_at = datetime.now()
            self.notifier.success(f"{self.config.name} backup completed: {self.result.timestamp}")
            self._transition(BackupState.DONE)

        except Exception as e:
            self.result.status = 'failed'
            self.result.failed_state = self.result.state
            self.result.completed_at = datetime.now()
            self.result.error_message = str(e)
            self._log(f"Backup failed during {self.result.state.value}: {e}", logging.ERROR)
            self.result.state = BackupState.FAILED
            subject = f"{self.config.name} backup" if self.config.name else "Backup"
            report_failure(self.notifier, f"{subject} failed: {e}")

        finally:
            self._cleanup()

        return self.result

    def _execute_workflow(self):
        """Execute the main backup workflow steps."""
        self._transition(BackupState.VALIDATE)
        self.config.validate()
        if self.destinations is None:
            self.destinations = Destinations.from_config(self.config)

        name = self.config.name
        self.result.timestamp = generate_timestamp()

        # Collection directory, scoped to this run
        os.makedirs(self.config.work_dir, exist_ok=True)
        self.temp_dir = tempfile.mkdtemp(prefix=f'{self.result.timestamp}-', dir=self.config.work_dir)
        collection_dir = os.path.join(self.temp_dir, 'collect')
        os.mkdir(collection_dir)
        self._log(f"Collection directory: {collection_dir}", logging.DEBUG)

        self._transition(BackupState.STOP_SERVICES)
        with self.services.stopped(self.config.stop_services):
            self._transition(BackupState.COLLECT)
            self._collect(collection_dir)
            self._transition(BackupState.START_SERVICES)

        self._transition(BackupState.ARCHIVE)
        filename = generate_archive_filename(name, self.result.timestamp)
        self.archive_path = archive_directory_contents(
            collection_dir, os.path.join(self.temp_dir, filename)
        )
        self._log(f"Archive created: {filename}")

        self._transition(BackupState.ENCRYPT)
        if self.config.encryption_key:
            self._log("Encrypting backup...")
            self.archive_path = seal_file(self.archive_path, self.config.encryption_key)
            self.result.encrypted = True
        else:
            self._log("BACKUP_ENCRYPTION_KEY not set, skipping encryption", logging.WARNING)

        self.result.artifact = os.path.basename(self.archive_path)
        self.result.file_size_bytes = get_archive_size(self.archive_path)
        self._log(
            f"Backup file ready: {self.result.artifact} "
            f"({self.result.file_size_bytes / 1024 / 1024:.2f} MB)"
        )

        self._transition(BackupState.STORE)
        key = f"{name}/{self.result.artifact}"
        self.destinations.save(self.archive_path, key)
        self.result.key = key
        self._log(f"Stored: {key}")

        self._transition(BackupState.RETAIN)
        retention = RetentionManager(self.config.retention)
        summary = retention.enforce(self.destinations, name)
        self.result.logs.extend(retention.logs)
        for label, counts in summary.items():
            self._log(f"Retention {label}: {counts['deleted']} deleted", logging.DEBUG)

    def _collect(self, collection_dir: str):
        """
        Capture every configured unit.

        Raises:
            CollectionError: If a unit fails or nothing was captured
        """
        self._log("Processing backup configuration...")

        for unit in self.config.units:
            source = create_source(unit)
            acquired = source.acquire(collection_dir)
            if acquired:
                self._log(f"Captured {source.description}")

        if not os.listdir(collection_dir):
            raise CollectionError("No backup data generated - check your backup configuration")

    def _transition(self, state: BackupState):
        self.result.state = state
        logger.debug(f"Backup state: {state.value}")

    def _cleanup(self):
        """Remove the run's working directory."""
        if self.temp_dir and os.path.exists(self.temp_dir):
            self._log("Cleaning up temporary files...")
            shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp.
        """
        timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
        self.result.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)


def run_backup(config: Config) -> BackupResult:
    """
    Run a backup with the given configuration.
    """
    return BackupExecutor(config).execute()
