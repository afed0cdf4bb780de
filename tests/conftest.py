"""
Shared pytest fixtures for statevault tests.

This module provides fixtures for:
- Flask app and test client
- Backup settings pointing at temporary directories
- Local storage providers and pre-populated backup directories
- Mock fixtures for external services (S3, scheduler)
- Temporary file fixtures
"""

import json
import os
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from statevault import create_app
from statevault.config import BackupSettings
from statevault.backup.storage import LocalStorage


TEST_HOSTNAME = 'test-host'


def make_manifest(key, encrypted=False, files=None, hostname=TEST_HOSTNAME, **extra):
    """Build a sidecar manifest dict whose timestamp matches `key`."""
    date, time = key.split('T')
    timestamp = f"{date}T{time.replace('-', ':')}.000000+00:00"
    files = files if files is not None else [
        {'path': 'appstate/config.json', 'sha256': '0' * 64, 'size': 100, 'modified': timestamp}
    ]
    manifest = {
        'schemaVersion': 1,
        'toolVersion': '1.0.0',
        'hostname': hostname,
        'timestamp': timestamp,
        'encrypted': encrypted,
        'fileCount': len(files),
        'files': files
    }
    manifest.update(extra)
    return manifest


def write_backup(base_dir, key, host=TEST_HOSTNAME, encrypted=False, manifest=None):
    """
    Write a fake archive + sidecar into a local storage directory.

    Pass host=None for the legacy flat layout.
    """
    directory = os.path.join(str(base_dir), host) if host else str(base_dir)
    os.makedirs(directory, exist_ok=True)

    suffix = '.tar.gz.age' if encrypted else '.tar.gz'
    with open(os.path.join(directory, f"{key}{suffix}"), 'wb') as f:
        f.write(b'archive-bytes')

    with open(os.path.join(directory, f"{key}.manifest.json"), 'w') as f:
        json.dump(manifest or make_manifest(key, encrypted=encrypted), f)


@pytest.fixture
def source_dir(tmp_path):
    """
    Create an application state directory to back up.

    Creates:
    - appstate/config.json
    - appstate/data/db.sqlite
    - appstate/cache/tmp.bin (excluded in tests)
    """
    root = tmp_path / 'home' / 'appstate'
    (root / 'data').mkdir(parents=True)
    (root / 'cache').mkdir()

    (root / 'config.json').write_text('{"setting": true}')
    (root / 'data' / 'db.sqlite').write_bytes(b'sqlite data' * 50)
    (root / 'cache' / 'tmp.bin').write_bytes(b'cache')

    return root


@pytest.fixture
def backup_dir(tmp_path):
    """Directory used by the local destination."""
    path = tmp_path / 'backups'
    path.mkdir()
    return path


@pytest.fixture
def state_dir(tmp_path):
    path = tmp_path / 'state'
    path.mkdir()
    return path


@pytest.fixture
def settings(state_dir, source_dir, backup_dir, tmp_path):
    """Backup settings for an unencrypted backup to one local destination."""
    temp_dir = tmp_path / 'temp'
    temp_dir.mkdir()
    return BackupSettings(
        state_dir=str(state_dir),
        sources=[str(source_dir)],
        exclude=['cache'],
        destinations={'local': {'path': str(backup_dir)}},
        hostname=TEST_HOSTNAME,
        temp_dir=str(temp_dir),
        app_version='2.1.0',
        skip_disk_check=True
    )


@pytest.fixture
def local_provider(backup_dir):
    """LocalStorage over the backup directory."""
    return LocalStorage(str(backup_dir), hostname=TEST_HOSTNAME, name='local')


@pytest.fixture(scope='function')
def app(state_dir, source_dir, backup_dir, tmp_path):
    """
    Create Flask app with test configuration.

    Backs up `source_dir` to a local destination under `backup_dir`.
    """
    app = create_app('testing', overrides={
        'STATE_DIR': str(state_dir),
        'TEMP_DIR': str(tmp_path / 'temp'),
        'BACKUP_SOURCES': [str(source_dir)],
        'BACKUP_EXCLUDE': ['cache'],
        'BACKUP_DESTINATIONS': {'local': {'path': str(backup_dir)}},
        'HOSTNAME': TEST_HOSTNAME,
        'RETENTION_COUNT': 5
    })

    yield app


@pytest.fixture(scope='function')
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


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
def age_key_file(tmp_path):
    """Write an age key file in the format age-keygen produces."""
    key_path = tmp_path / 'key.txt'
    key_path.write_text(
        '# created: 2024-01-15T12:00:00Z\n'
        '# public key: age1ql3z7hjy54pw3hyww5ayyfg7zqgvc7w3j2elw8zmrj2kg5sfn9aqmcac8p\n'
        'AGE-SECRET-KEY-1QQQQQQQQQQQQQQQQQQQQQQQQQQQQQQQQQQQQQQQQQQQQQQQQQQQQQQQQQQ\n'
    )
    return key_path


@pytest.fixture(scope='function')
def mock_scheduler():
    """
    Mock APScheduler for testing scheduler functionality.
    """
    with patch('statevault.scheduler.BackgroundScheduler') as mock_sched:
        scheduler_instance = MagicMock()
        mock_sched.return_value = scheduler_instance

        scheduler_instance.running = False
        scheduler_instance.state = 0
        scheduler_instance.get_jobs.return_value = []

        yield scheduler_instance
