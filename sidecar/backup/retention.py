"""
Retention policy enforcement for backups.

Implements grandfather-father-son rotation. Given the artifact filenames of
one backup name, keep:
- the `recent` newest artifacts unconditionally
- one artifact per calendar day for the last `daily` days
- one artifact per ISO week for the last `weekly` weeks
- one artifact per calendar month for the last `monthly` months
- one artifact per calendar year for the last `yearly` years

Ages are measured in fixed units (1, 7, 30 and 365 days). Within a period
the newest artifact wins.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from sidecar.config import RetentionPolicy
from .compression import parse_artifact_timestamp
from .storage import Destinations, StorageError


logger = logging.getLogger(__name__)

DAY_SECONDS = 86400
WEEK_SECONDS = 7 * DAY_SECONDS
MONTH_SECONDS = 30 * DAY_SECONDS
YEAR_SECONDS = 365 * DAY_SECONDS

# (tier name, policy attribute, unit length in seconds, period key)
_PERIOD_TIERS: List[Tuple[str, str, int, Callable[[datetime], Any]]] = [
    ('daily', 'daily', DAY_SECONDS, lambda ts: ts.date()),
    ('weekly', 'weekly', WEEK_SECONDS, lambda ts: ts.isocalendar()[:2]),
    ('monthly', 'monthly', MONTH_SECONDS, lambda ts: (ts.year, ts.month)),
    ('yearly', 'yearly', YEAR_SECONDS, lambda ts: ts.year),
]


def classify_artifacts(
    filenames: Iterable[str],
    backup_name: str,
    policy: RetentionPolicy,
    now: Optional[datetime] = None
) -> Set[str]:
    """
    Select the artifacts to retain.

    Args:
        filenames: Artifact filenames (not keys) of one backup name
        backup_name: The backup name prefix
        policy: Tier counts
        now: Reference time for ages (default: current local time)

    Returns:
        The subset of filenames to keep. Filenames that do not carry a
        valid timestamp are never part of the result.
    """
    now = now or datetime.now()

    parsed = []
    for filename in set(filenames):
        timestamp = parse_artifact_timestamp(filename, backup_name)
        if timestamp is None:
            logger.warning(f"Ignoring file with unexpected name: {filename}")
            continue
        parsed.append((timestamp, filename))

    # Newest first
    parsed.sort(reverse=True)

    keep = set()

    if policy.recent > 0:
        keep.update(filename for _, filename in parsed[:policy.recent])

    for tier, attribute, unit_seconds, period_key in _PERIOD_TIERS:
        window = getattr(policy, attribute)
        if window <= 0:
            continue

        seen_periods = set()
        for timestamp, filename in parsed:
            age = int((now - timestamp).total_seconds() // unit_seconds)
            if age > window:
                continue

            key = period_key(timestamp)
            if key in seen_periods:
                continue

            seen_periods.add(key)
            keep.add(filename)
            logger.debug(f"Keeping {filename} ({tier})")

    return keep


def select_for_deletion(
    filenames: Iterable[str],
    backup_name: str,
    policy: RetentionPolicy,
    now: Optional[datetime] = None
) -> List[str]:
    """
    Recognised artifacts that fall outside every retention tier, oldest first.
    """
    filenames = set(filenames)
    keep = classify_artifacts(filenames, backup_name, policy, now=now)

    candidates = [
        filename for filename in filenames
        if filename not in keep and parse_artifact_timestamp(filename, backup_name) is not None
    ]
    return sorted(candidates)


class RetentionManager:
    """
    Applies a retention policy to every configured destination independently.
    """

    def __init__(self, policy: RetentionPolicy):
        self.policy = policy
        self.logs = []

    def enforce(self, destinations: Destinations, backup_name: str,
                now: Optional[datetime] = None) -> Dict[str, Dict[str, Any]]:
        """
        Delete artifacts outside the retention policy.

        Args:
            destinations: Configured destinations
            backup_name: Backup name whose artifacts are rotated
            now: Reference time for ages

        Returns:
            Per destination label:
            {
                'kept': int,
                'deleted': int,
                'errors': List[str]
            }

        Raises:
            StorageError: If listing fails on a destination whose failure is fatal
        """
        now = now or datetime.now()
        p = self.policy
        self._log(
            f"Applying retention for {backup_name}: recent={p.recent}, daily={p.daily}, "
            f"weekly={p.weekly}, monthly={p.monthly}, yearly={p.yearly}"
        )

        summary = {}

        for backend in destinations.backends:
            try:
                summary[backend.label] = self._enforce_backend(backend, backup_name, now)
            except StorageError as e:
                if destinations.is_required(backend):
                    raise
                self._log(f"Retention skipped on {backend.label}: {e}", logging.WARNING)
                summary[backend.label] = {'kept': 0, 'deleted': 0, 'errors': [str(e)]}

        return summary

    def _enforce_backend(self, backend, backup_name: str, now: datetime) -> Dict[str, Any]:
        prefix = f"{backup_name}/"
        objects = backend.list_objects(prefix)
        keys_by_filename = {obj.filename: obj.key for obj in objects}

        to_delete = select_for_deletion(keys_by_filename, backup_name, self.policy, now=now)

        result = {
            'kept': len(keys_by_filename) - len(to_delete),
            'deleted': 0,
            'errors': []
        }

        for filename in to_delete:
            key = keys_by_filename[filename]
            try:
                backend.delete(key)
                result['deleted'] += 1
                self._log(f"Deleted old {backend.label} backup: {filename}")
            except StorageError as e:
                error_msg = f"Failed to delete {backend.label} backup {filename}: {e}"
                self._log(error_msg, logging.WARNING)
                result['errors'].append(error_msg)

        self._log(
            f"Retention on {backend.label}: kept {result['kept']}, deleted {result['deleted']}"
        )
        return result

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp.
        """
        timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)
