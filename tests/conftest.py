"""
Shared pytest fixtures for backup sidecar tests.

This module provides fixtures for:
- Configuration with local and S3 destinations
- Mock fixtures for external services (S3, Docker, webhooks)
- Temporary file fixtures
"""

import shutil
import tarfile
from dataclasses import replace
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from sidecar.config import Config, RetentionPolicy, S3Config
from sidecar.models import DirectoryUnit, FileUnit
from sidecar.notify import Notifier
from sidecar.services import ServiceController


@pytest.fixture
def app_data(tmp_path):
    """
    Application data a backup is taken of.

    Creates:
    - data/file1.txt
    - data/nested/file2.txt
    - config.yml
    """
    data_dir = tmp_path / 'app' / 'data'
    (data_dir / 'nested').mkdir(parents=True)
    (data_dir / 'file1.txt').write_text('Content 1')
    (data_dir / 'nested' / 'file2.txt').write_text('Content 2')

    config_file = tmp_path / 'app' / 'config.yml'
    config_file.write_text('setting: true\n')

    return tmp_path / 'app'


@pytest.fixture
def config(tmp_path, app_data):
    """
    Configuration backing up one directory and one file to a local destination.
    """
    return Config(
        name='myapp',
        units=(
            DirectoryUnit(str(app_data / 'data'), 'app'),
            FileUnit(str(app_data / 'config.yml'), 'config.yml'),
        ),
        local_path=str(tmp_path / 'store'),
        stop_services=('web', 'worker'),
        retention=RetentionPolicy(recent=14, daily=7, weekly=4),
        work_dir=str(tmp_path / 'work'),
    )


@pytest.fixture
def gpg():
    """Skip when the gpg binary sealing relies on is not installed."""
    if shutil.which('gpg') is None:
        pytest.skip("gpg is not installed")


@pytest.fixture
def sealed_config(config, gpg):
    """Configuration that encrypts artifacts with 'test-passphrase'."""
    return replace(config, encryption_key='test-passphrase')


@pytest.fixture
def s3_config(config):
    """Configuration storing to both the local directory and 'test-bucket'."""
    return replace(config, s3=S3Config(
        bucket='test-bucket',
        access_key='testing',
        secret_key='testing',
    ))


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')

        yield s3


@pytest.fixture
def services():
    """
    Service controller whose stop/start calls are recorded instead of
    reaching Docker.
    """
    controller = ServiceController(stop_wait=0, start_wait=0, client=MagicMock())
    controller.stop = MagicMock(return_value=0)
    controller.start = MagicMock(return_value=0)
    return controller


@pytest.fixture
def notifier():
    """Notifier with its webhook calls mocked."""
    notifier = Notifier()
    notifier.success = MagicMock()
    notifier.failure = MagicMock()
    return notifier


@pytest.fixture
def no_sleep():
    """Skip the restore confirmation delay."""
    with patch('sidecar.backup.restore.time.sleep') as mock_sleep:
        yield mock_sleep


@pytest.fixture
def sample_archive(tmp_path):
    """
    Create a sample archive file for testing.
    """
    test_dir = tmp_path / 'test_data'
    test_dir.mkdir()
    (test_dir / 'file1.txt').write_text('Content 1')
    (test_dir / 'file2.txt').write_text('Content 2')

    archive_path = tmp_path / 'test_archive.tar.gz'
    with tarfile.open(archive_path, 'w:gz') as tar:
        tar.add(test_dir, arcname='test_data')

    return archive_path


