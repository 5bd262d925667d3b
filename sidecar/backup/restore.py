"""
Restore executor - brings a stored backup back into place.

Workflow:
1. Validate configuration and the requested timestamp
2. Load the artifact from the first destination that has it
3. Decrypt it (sealed artifacts only)
4. Extract the archive
5. Wait 10 seconds so an operator can still cancel
6. Stop services, restore every unit, start services again

Unit restores are best effort: a unit missing from the backup is skipped
with a warning and a failing unit does not prevent the others from being
restored. The run is reported as failed if any unit failed.
"""

import logging
import os
import shutil
import tempfile
import time
from datetime import datetime
from typing import Optional

from sidecar.config import Config, ConfigurationError
from sidecar.models import RestoreResult, RestoreState
from sidecar.notify import Notifier, report_failure
from sidecar.services import ServiceController
from sidecar.utils.crypto import SEALED_SUFFIX, open_file
from .compression import extract_archive, generate_archive_filename, is_valid_timestamp
from .sources import RestoreError, create_source
from .storage import BackupNotFoundError, Destinations


logger = logging.getLogger(__name__)

CONFIRM_DELAY = 10


class RestoreExecutor:
    """
    Orchestrates one restore run.
    """

    def __init__(self, config: Config, destinations: Optional[Destinations] = None,
                 services: Optional[ServiceController] = None,
                 notifier: Optional[Notifier] = None):
        self.config = config
        self.destinations = destinations
        self.services = services or ServiceController.from_config(config)
        self.notifier = notifier or Notifier.from_config(config)
        self.result = None
        self.temp_dir = None

    def execute(self, timestamp: str) -> RestoreResult:
        """
        Restore the backup taken at timestamp (YYYY-MM-DD-HHMMSS).

        Never raises for restore failures: they are reported through the
        failure webhook and recorded on the returned result.
        """
        self.result = RestoreResult(name=self.config.name, timestamp=timestamp)
        self._log(f"Starting restore for {self.config.name or '<unnamed>'} from backup: {timestamp}")

        try:
            self._execute_workflow(timestamp)

            self.result.status = 'success'
            self.result.completed_at = datetime.now()
            self.result.state = RestoreState.DONE
            self._log("Restore completed successfully!")
            self._log("Please verify the application is working correctly")

        except Exception as e:
            self.result.status = 'failed'
            self.result.failed_state = self.result.state
            self.result.completed_at = datetime.now()
            self.result.error_message = str(e)
            self._log(f"Restore failed during {self.result.state.value}: {e}", logging.ERROR)
            self.result.state = RestoreState.FAILED
            subject = f"{self.config.name} restore" if self.config.name else "Restore"
            report_failure(self.notifier, f"{subject} failed: {e}")

        finally:
            self._cleanup()

        return self.result

    def _execute_workflow(self, timestamp: str):
        self._transition(RestoreState.VALIDATE)
        self.config.validate()
        if not is_valid_timestamp(timestamp):
            raise ConfigurationError(
                f"Invalid backup timestamp: {timestamp} (expected YYYY-MM-DD-HHMMSS)"
            )
        if self.destinations is None:
            self.destinations = Destinations.from_config(self.config)

        self._transition(RestoreState.LOAD)
        key = self._find_key(timestamp)
        self.result.key = key

        os.makedirs(self.config.work_dir, exist_ok=True)
        self.temp_dir = tempfile.mkdtemp(prefix=f'restore-{timestamp}-', dir=self.config.work_dir)
        artifact_path = os.path.join(self.temp_dir, os.path.basename(key))
        self.destinations.load(key, artifact_path)

        self._transition(RestoreState.DECRYPT)
        if artifact_path.endswith(SEALED_SUFFIX):
            self._log("Decrypting backup...")
            archive_path = open_file(artifact_path, self.config.encryption_key)
            os.remove(artifact_path)
        else:
            archive_path = artifact_path

        self._transition(RestoreState.EXTRACT)
        self._log("Extracting backup archive...")
        extract_dir = os.path.join(self.temp_dir, 'extract')
        extract_archive(archive_path, extract_dir)
        os.remove(archive_path)

        self._transition(RestoreState.CONFIRM)
        self._log("WARNING: This will overwrite existing data!", logging.WARNING)
        self._log(f"Press Ctrl+C within {CONFIRM_DELAY} seconds to cancel...")
        time.sleep(CONFIRM_DELAY)

        self._transition(RestoreState.STOP_ALL_SERVICES)
        with self.services.stopped(self.config.stop_services):
            self._transition(RestoreState.RESTORE_UNITS)
            self._restore_units(extract_dir)
            if self.result.failed:
                raise RestoreError(f"Failed to restore: {', '.join(self.result.failed)}")
            self._transition(RestoreState.START_ALL_SERVICES)

    def _find_key(self, timestamp: str) -> str:
        """
        Storage key of the artifact for timestamp, sealed or not.

        Raises:
            BackupNotFoundError: If no destination holds the artifact
        """
        filename = generate_archive_filename(self.config.name, timestamp)
        candidates = [
            f"{self.config.name}/{filename}{SEALED_SUFFIX}",
            f"{self.config.name}/{filename}",
        ]

        for key in candidates:
            if self.destinations.exists(key):
                return key

        raise BackupNotFoundError(f"Backup not found: {filename}[{SEALED_SUFFIX}]")

    def _restore_units(self, extract_dir: str):
        self._log("Processing restore configuration...")

        for unit in self.config.units:
            source = create_source(unit)
            try:
                if source.restore(extract_dir):
                    self.result.restored.append(source.description)
                else:
                    self.result.skipped.append(source.description)
            except RestoreError as e:
                self._log(str(e), logging.ERROR)
                self.result.failed.append(source.description)

    def _transition(self, state: RestoreState):
        self.result.state = state
        logger.debug(f"Restore state: {state.value}")

    def _cleanup(self):
        if self.temp_dir and os.path.exists(self.temp_dir):
            self._log("Cleaning up temporary files...")
            shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _log(self, message: str, level: int = logging.INFO):
        timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
        self.result.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)


def run_restore(config: Config, timestamp: str) -> RestoreResult:
    """
    Restore the backup taken at timestamp.
    """
    return RestoreExecutor(config).execute(timestamp)
