"""
Unit tests for retention policy (sidecar/backup/retention.py).

Tests grandfather-father-son classification and its enforcement on
storage destinations.
"""

from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest
from freezegun import freeze_time

from sidecar.backup.compression import generate_archive_filename, generate_timestamp
from sidecar.backup.retention import RetentionManager, classify_artifacts, select_for_deletion
from sidecar.backup.storage import Destinations, LocalStorage, StorageError
from sidecar.config import RetentionPolicy
from sidecar.models import Artifact


NAME = 'myapp'


def artifact_name(ts: datetime, sealed: bool = True) -> str:
    filename = generate_archive_filename(NAME, generate_timestamp(ts))
    return f"{filename}.gpg" if sealed else filename


def only(**tiers) -> RetentionPolicy:
    values = dict(recent=0, daily=0, weekly=0, monthly=0, yearly=0)
    values.update(tiers)
    return RetentionPolicy(**values)


class TestClassifyArtifacts:
    """Test classify_artifacts tier selection."""

    def test_recent_keeps_newest(self):
        now = datetime(2024, 1, 15, 12, 0, 0)
        names = [artifact_name(now - timedelta(hours=h)) for h in range(1, 6)]

        keep = classify_artifacts(names, NAME, only(recent=2), now=now)

        assert keep == {names[0], names[1]}

    def test_daily_keeps_newest_per_day(self):
        now = datetime(2024, 1, 15, 3, 0, 0)
        nightly = [artifact_name(datetime(2024, 1, day, 2, 0, 0)) for day in range(1, 16)]
        extra = artifact_name(datetime(2024, 1, 15, 1, 0, 0))

        keep = classify_artifacts(nightly + [extra], NAME, only(daily=7), now=now)

        # Ages 0 through 7 days, newest of each day
        assert keep == {artifact_name(datetime(2024, 1, day, 2, 0, 0)) for day in range(8, 16)}

    def test_weekly_keeps_one_per_iso_week(self):
        now = datetime(2024, 2, 1, 12, 0, 0)
        names = [artifact_name(now - timedelta(days=d)) for d in range(0, 60)]

        keep = classify_artifacts(names, NAME, only(weekly=4), now=now)

        weeks = [
            datetime.strptime(n[len(NAME) + 1:len(NAME) + 18], '%Y-%m-%d-%H%M%S').isocalendar()[:2]
            for n in keep
        ]
        assert len(weeks) == len(set(weeks))
        assert min(keep) >= artifact_name(now - timedelta(weeks=5))

    def test_monthly_and_yearly(self):
        now = datetime(2024, 6, 15, 12, 0, 0)
        names = [artifact_name(datetime(year, month, 1)) for year in (2022, 2023, 2024) for month in range(1, 13)
                 if datetime(year, month, 1) <= now]

        keep = classify_artifacts(names, NAME, only(monthly=3, yearly=1), now=now)

        assert artifact_name(datetime(2024, 6, 1)) in keep
        assert artifact_name(datetime(2024, 3, 1)) in keep
        assert artifact_name(datetime(2024, 2, 1)) not in keep
        # Newest artifact of each year less than two years old
        assert artifact_name(datetime(2023, 12, 1)) in keep
        assert artifact_name(datetime(2023, 11, 1)) not in keep
        assert artifact_name(datetime(2022, 12, 1)) in keep
        assert artifact_name(datetime(2022, 11, 1)) not in keep

    def test_disabled_tiers_keep_nothing(self):
        now = datetime(2024, 1, 15)
        names = [artifact_name(now - timedelta(days=d)) for d in range(5)]

        assert classify_artifacts(names, NAME, only(), now=now) == set()

    def test_unrecognised_filenames_ignored(self, caplog):
        now = datetime(2024, 1, 15)
        names = ['notes.txt', 'myapp-latest.tar.gz', artifact_name(now)]

        keep = classify_artifacts(names, NAME, only(recent=10), now=now)

        assert keep == {artifact_name(now)}
        assert "Ignoring file with unexpected name: notes.txt" in caplog.text

    def test_sealed_and_plain_artifacts_both_recognised(self):
        now = datetime(2024, 1, 15)
        names = [artifact_name(now, sealed=True), artifact_name(now - timedelta(hours=1), sealed=False)]

        assert classify_artifacts(names, NAME, only(recent=5), now=now) == set(names)

    @pytest.mark.parametrize("policy", [
        RetentionPolicy(),
        RetentionPolicy(recent=2, daily=3, weekly=2, monthly=2, yearly=1),
        only(daily=7),
    ])
    def test_keep_is_subset_and_idempotent(self, policy):
        now = datetime(2024, 3, 1, 12, 0, 0)
        names = {artifact_name(now - timedelta(hours=7 * i)) for i in range(400)}

        keep = classify_artifacts(names, NAME, policy, now=now)

        assert keep <= names
        assert classify_artifacts(keep, NAME, policy, now=now) == keep


class TestSelectForDeletion:

    def test_never_selects_unrecognised_files(self):
        now = datetime(2024, 1, 15)
        names = ['notes.txt', artifact_name(now), artifact_name(now - timedelta(days=1))]

        assert select_for_deletion(names, NAME, only(recent=1), now=now) == [
            artifact_name(now - timedelta(days=1))
        ]


class TestRetentionManager:
    """Test RetentionManager enforcement on destinations."""

    @freeze_time("2024-01-15 03:00:00")
    def test_enforce_local(self, tmp_path):
        store = tmp_path / 'store'
        (store / NAME).mkdir(parents=True)
        for day in range(1, 16):
            (store / NAME / artifact_name(datetime(2024, 1, day, 2, 0, 0))).write_bytes(b'x')
        (store / NAME / 'README').write_text('keep me')

        manager = RetentionManager(only(recent=2, daily=3))
        summary = manager.enforce(Destinations(local=LocalStorage(str(store))), NAME)

        remaining = sorted(p.name for p in (store / NAME).iterdir())
        assert remaining == ['README'] + [
            artifact_name(datetime(2024, 1, day, 2, 0, 0)) for day in range(12, 16)
        ]
        assert summary['local']['deleted'] == 11
        assert summary['local']['errors'] == []
        assert any("Deleted old local backup" in line for line in manager.logs)

    def test_enforce_s3_listing_failure_in_dual_is_warning(self, tmp_path):
        s3 = MagicMock(label='s3')
        s3.list_objects.side_effect = StorageError("S3 list failed (AccessDenied)")
        destinations = Destinations(local=LocalStorage(str(tmp_path / 'store')), s3=s3)

        summary = RetentionManager(RetentionPolicy()).enforce(destinations, NAME)

        assert summary['s3']['errors'] == ["S3 list failed (AccessDenied)"]
        assert summary['local']['deleted'] == 0

    def test_enforce_single_destination_listing_failure_is_fatal(self):
        s3 = MagicMock(label='s3')
        s3.list_objects.side_effect = StorageError("S3 list failed")

        with pytest.raises(StorageError):
            RetentionManager(RetentionPolicy()).enforce(Destinations(s3=s3), NAME)

    def test_delete_failure_recorded(self):
        now = datetime(2024, 1, 15)
        old = artifact_name(now - timedelta(days=1))
        backend = MagicMock(label='s3')
        backend.list_objects.return_value = [
            Artifact(key=f"{NAME}/{artifact_name(now)}"),
            Artifact(key=f"{NAME}/{old}"),
        ]
        backend.delete.side_effect = StorageError("denied")

        summary = RetentionManager(only(recent=1)).enforce(Destinations(s3=backend), NAME, now=now)

        backend.delete.assert_called_once_with(f"{NAME}/{old}")
        assert summary['s3']['deleted'] == 0
        assert len(summary['s3']['errors']) == 1
