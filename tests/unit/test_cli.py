"""
Unit tests for the command line interface (sidecar/cli.py).
"""

import os
import signal
import subprocess
import sys
import time
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from click.testing import CliRunner

from sidecar.cli import _terminate, cli, main


PROJECT_ROOT = Path(__file__).resolve().parents[2]


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture(autouse=True)
def no_logging_setup():
    with patch('sidecar.cli.configure_logging'):
        yield


@pytest.fixture
def env(tmp_path):
    return {
        'BACKUP_NAME': 'myapp',
        'BACKUP_LOCAL_PATH': str(tmp_path / 'store'),
        'BACKUP_WORK_DIR': str(tmp_path / 'work'),
    }


class TestBackupCommand:

    @patch('sidecar.cli.run_backup')
    def test_success(self, mock_run_backup, runner, env):
        mock_run_backup.return_value = MagicMock(succeeded=True)

        result = runner.invoke(cli, ['backup'], env=env)

        assert result.exit_code == 0
        config = mock_run_backup.call_args[0][0]
        assert config.name == 'myapp'

    @patch('sidecar.cli.run_backup')
    def test_failure_exit_status(self, mock_run_backup, runner, env):
        mock_run_backup.return_value = MagicMock(succeeded=False)

        result = runner.invoke(cli, ['backup'], env=env)

        assert result.exit_code == 1

    def test_invalid_configuration(self, runner, env):
        env['BACKUP_RETENTION_DAILY'] = 'seven'

        result = runner.invoke(cli, ['backup'], env=env)

        assert result.exit_code == 1
        assert 'BACKUP_RETENTION_DAILY must be an integer' in result.output


class TestRestoreCommand:

    @patch('sidecar.cli.run_restore')
    def test_passes_timestamp(self, mock_run_restore, runner, env):
        mock_run_restore.return_value = MagicMock(succeeded=True)

        result = runner.invoke(cli, ['restore', '2024-01-15-020000'], env=env)

        assert result.exit_code == 0
        assert mock_run_restore.call_args[0][1] == '2024-01-15-020000'

    @patch('sidecar.cli.run_restore')
    def test_failure_exit_status(self, mock_run_restore, runner, env):
        mock_run_restore.return_value = MagicMock(succeeded=False)

        result = runner.invoke(cli, ['restore', '2024-01-15-020000'], env=env)

        assert result.exit_code == 1

    def test_timestamp_required(self, runner, env):
        result = runner.invoke(cli, ['restore'], env=env)

        assert result.exit_code == 2


class TestListCommand:

    def test_lists_newest_first(self, runner, env, tmp_path):
        store = tmp_path / 'store' / 'myapp'
        store.mkdir(parents=True)
        (store / 'myapp-2024-01-14-020000.tar.gz.gpg').write_bytes(b'x' * 2048)
        (store / 'myapp-2024-01-15-020000.tar.gz.gpg').write_bytes(b'x' * 1024)
        (store / 'notes.txt').write_text('not a backup')

        result = runner.invoke(cli, ['list'], env=env)

        assert result.exit_code == 0
        assert 'Backups for myapp:' in result.output
        assert 'notes.txt' not in result.output
        newer = result.output.index('2024-01-15-020000')
        older = result.output.index('2024-01-14-020000')
        assert newer < older

    def test_empty(self, runner, env):
        result = runner.invoke(cli, ['list'], env=env)

        assert result.exit_code == 0
        assert 'No backups found' in result.output

    def test_requires_name(self, runner, env):
        result = runner.invoke(cli, ['list'], env={**env, 'BACKUP_NAME': ''})

        assert result.exit_code == 1
        assert 'BACKUP_NAME' in result.output


class TestRunCommand:

    @patch('sidecar.scheduler.run_scheduler')
    def test_starts_scheduler(self, mock_run_scheduler, runner, env):
        result = runner.invoke(cli, ['run'], env={**env, 'BACKUP_SCHEDULE': '0 2 * * *'})

        assert result.exit_code == 0
        assert mock_run_scheduler.call_args[0][0].schedule == '0 2 * * *'


def _script(path, body):
    path.write_text(f"#!/bin/sh\n{body}\n")
    path.chmod(0o755)


@pytest.mark.skipif(sys.platform == 'win32', reason="POSIX signals only")
class TestTermination:

    def test_sigterm_becomes_system_exit(self):
        with pytest.raises(SystemExit) as exc_info:
            _terminate(signal.SIGTERM, None)

        assert exc_info.value.code == 143

    def test_main_installs_sigterm_handler(self):
        with patch('sidecar.cli.signal.signal') as mock_signal, patch('sidecar.cli.cli') as mock_cli:
            main()

        mock_signal.assert_called_once_with(signal.SIGTERM, _terminate)
        mock_cli.assert_called_once_with()

    def test_sigterm_during_collection_cleans_work_dir(self, tmp_path):
        bin_dir = tmp_path / 'bin'
        bin_dir.mkdir()
        started = tmp_path / 'dump-started'
        # Server version unknown, so pg_dump16 is used; it writes a dump and hangs
        _script(bin_dir / 'psql16', 'exit 1')
        _script(bin_dir / 'pg_dump16', '\n'.join([
            'for arg in "$@"; do',
            '  case "$arg" in --file=*) echo "plaintext rows" > "${arg#--file=}";; esac',
            'done',
            'touch "$DUMP_STARTED"',
            'exec sleep 60',
        ]))

        work = tmp_path / 'work'
        env = {
            key: value for key, value in os.environ.items() if not key.startswith('BACKUP_')
        }
        env.update({
            'PATH': f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}",
            'BACKUP_NAME': 'myapp',
            'BACKUP_POSTGRES': 'postgresql://user:pass@db:5432/app',
            'BACKUP_LOCAL_PATH': str(tmp_path / 'store'),
            'BACKUP_WORK_DIR': str(work),
            'DUMP_STARTED': str(started),
        })

        process = subprocess.Popen(
            [sys.executable, '-m', 'sidecar', 'backup'],
            cwd=PROJECT_ROOT,
            env=env,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
        )
        try:
            deadline = time.monotonic() + 30
            while not started.exists():
                assert process.poll() is None, process.stdout.read()
                assert time.monotonic() < deadline, "pg_dump was never started"
                time.sleep(0.1)

            run_dirs = os.listdir(work)
            assert len(run_dirs) == 1
            assert any(files for _, _, files in os.walk(work / run_dirs[0]))

            process.send_signal(signal.SIGTERM)
            output, _ = process.communicate(timeout=30)
        finally:
            if process.poll() is None:
                process.kill()
                process.wait()

        assert process.returncode == 143, output
        assert os.listdir(work) == []
        assert not (tmp_path / 'store' / 'myapp').exists()
