"""
Unit tests for restore (statevault/backup/restore.py).
"""

import os
import stat
from pathlib import Path
from unittest.mock import patch

import pytest
from freezegun import freeze_time

from conftest import make_manifest, write_backup
from statevault.backup.collector import collect_files
from statevault.backup.compression import create_archive
from statevault.backup.executor import run_backup
from statevault.backup.manifest import generate_manifest
from statevault.backup.providers import UnknownDestinationError
from statevault.backup.restore import (
    BackupNotFoundError,
    RestoreError,
    RestoreExecutor,
    find_decryption_key,
    run_restore
)
from statevault.backup.encryption import get_key_id

OTHER_PUBLIC_KEY = 'age1zvkyg2lqzraa2lnjvqej32nkuu0ues2s82hzrye869xeexvn73equnujwj'


@pytest.fixture
def backed_up(settings):
    """Run one real (unencrypted) backup and return its result."""
    with freeze_time('2024-01-15 12:30:45'):
        return run_backup(settings)


def write_key(path, public_key):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f"# created: now\n# public key: {public_key}\nAGE-SECRET-KEY-1X\n")
    return path


class TestRestoreExecutor:
    """Test the restore workflow with a local destination."""

    def test_restore_latest_overwrites_changed_files(self, settings, source_dir, backed_up):
        """Test files are restored to the parent of their include root."""
        (source_dir / 'config.json').write_text('{"setting": false}')
        (source_dir / 'data' / 'db.sqlite').unlink()

        result = RestoreExecutor(settings).execute('local', skip_pre_backup=True)

        assert result['timestamp'] == '2024-01-15T12:30:45+00:00'
        assert result['fileCount'] == 2
        assert result['errors'] == []
        assert result['preBackupCreated'] is False
        assert result['dryRun'] is False
        assert (source_dir / 'config.json').read_text() == '{"setting": true}'
        assert (source_dir / 'data' / 'db.sqlite').read_bytes() == b'sqlite data' * 50

    def test_restored_files_are_owner_only(self, settings, source_dir, backed_up):
        """Test restored files drop group and other permissions."""
        RestoreExecutor(settings).execute('local', skip_pre_backup=True)

        mode = stat.S_IMODE(os.stat(source_dir / 'config.json').st_mode)
        assert mode & 0o077 == 0

    def test_restore_by_timestamp(self, settings, source_dir, backed_up):
        """Test a key fragment selects the backup."""
        (source_dir / 'config.json').write_text('changed')

        result = RestoreExecutor(settings).execute('local', timestamp='2024-01-15T12-30', skip_pre_backup=True)

        assert result['timestamp'] == '2024-01-15T12:30:45+00:00'
        assert (source_dir / 'config.json').read_text() == '{"setting": true}'

    def test_timestamp_ignores_host_directory(self, settings, backup_dir, backed_up):
        """Test a fragment is matched against file names, not the host directory."""
        write_backup(backup_dir, '2025-03-01T00-00-00', host='box-2024-01-15')

        result = RestoreExecutor(settings).execute('local', timestamp='2024-01-15', dry_run=True)

        assert result['timestamp'] == '2024-01-15T12:30:45+00:00'

    def test_restore_into_restore_root(self, settings, tmp_path, backed_up):
        """Test RESTORE_ROOT redirects restored files."""
        settings.restore_root = str(tmp_path / 'restored')

        RestoreExecutor(settings).execute('local', skip_pre_backup=True)

        assert (tmp_path / 'restored' / 'appstate' / 'config.json').read_text() == '{"setting": true}'

    def test_dry_run_touches_nothing(self, settings, source_dir, backed_up):
        """Test a dry run validates without writing."""
        (source_dir / 'config.json').write_text('changed')

        with patch('statevault.backup.restore.run_backup') as mock_backup:
            result = RestoreExecutor(settings).execute('local', dry_run=True)

        assert result['dryRun'] is True
        assert result['fileCount'] == 2
        assert (source_dir / 'config.json').read_text() == 'changed'
        mock_backup.assert_not_called()

    def test_pre_backup_runs_first(self, settings, backed_up):
        """Test a safety backup is taken to the same destination."""
        with patch('statevault.backup.restore.run_backup') as mock_backup:
            result = RestoreExecutor(settings).execute('local')

        mock_backup.assert_called_once_with(settings, destination='local')
        assert result['preBackupCreated'] is True

    def test_version_mismatch_does_not_block(self, settings, source_dir, backed_up):
        """Test a different major version warns and still restores."""
        settings.app_version = '3.0.0'
        (source_dir / 'config.json').write_text('changed')

        result = RestoreExecutor(settings).execute('local', skip_pre_backup=True)

        assert result['versionCheck']['level'] == 'warn'
        assert (source_dir / 'config.json').read_text() == '{"setting": true}'

    def test_unknown_source(self, settings):
        """Test an unknown destination raises UnknownDestinationError."""
        with pytest.raises(UnknownDestinationError, match='Available: local'):
            RestoreExecutor(settings).execute('nowhere')

    def test_no_backups(self, settings):
        """Test restoring from an empty destination raises BackupNotFoundError."""
        with pytest.raises(BackupNotFoundError):
            RestoreExecutor(settings).execute('local')

    def test_unknown_timestamp(self, settings, backed_up):
        """Test a timestamp with no matching archive raises BackupNotFoundError."""
        with pytest.raises(BackupNotFoundError, match='1999'):
            RestoreExecutor(settings).execute('local', timestamp='1999-01-01')

    def test_tampered_archive_aborts(self, settings, source_dir, backup_dir):
        """Test a checksum mismatch aborts before any file is written."""
        files = collect_files(settings.sources, settings.exclude)
        manifest = generate_manifest(files, encrypted=False, hostname='test-host')
        manifest['files'][0]['sha256'] = 'f' * 64
        host_dir = backup_dir / 'test-host'
        host_dir.mkdir()
        create_archive(files, manifest, str(host_dir / '2024-01-15T12-30-45.tar.gz'))
        (source_dir / 'config.json').write_text('local edit')

        with pytest.raises(RestoreError, match='integrity check failed'):
            RestoreExecutor(settings).execute('local', timestamp='2024-01-15', skip_pre_backup=True)

        assert (source_dir / 'config.json').read_text() == 'local edit'

    def test_temp_dir_cleaned(self, settings, backed_up):
        """Test the private temp directory is removed after restoring."""
        RestoreExecutor(settings).execute('local', dry_run=True)

        assert os.listdir(settings.temp_dir) == []

    def test_run_restore(self, settings, backed_up):
        """Test the run_restore entry point."""
        result = run_restore(settings, 'local', dry_run=True)

        assert result['dryRun'] is True


class TestEncryptedRestore:
    """Test key lookup and decryption for encrypted backups."""

    def test_missing_key_raises(self, settings, backup_dir):
        """Test an encrypted backup without a matching key aborts."""
        write_backup(backup_dir, '2024-01-15T12-30-45', encrypted=True,
                     manifest=make_manifest('2024-01-15T12-30-45', encrypted=True, keyId='0123456789abcdef'))

        with pytest.raises(RestoreError, match='No decryption key found for keyId "0123456789abcdef"'):
            RestoreExecutor(settings).execute('local', skip_pre_backup=True)

    def test_decrypts_with_matching_key(self, settings, backup_dir, age_key_file):
        """Test the sidecar keyId selects the key passed to age."""
        settings.key_path = str(age_key_file)
        key_id = get_key_id(str(age_key_file))
        write_backup(backup_dir, '2024-01-15T12-30-45', encrypted=True,
                     manifest=make_manifest('2024-01-15T12-30-45', encrypted=True, keyId=key_id))

        with patch('statevault.backup.restore.decrypt_file', side_effect=RestoreError('stop')) as mock_decrypt:
            with pytest.raises(RestoreError, match='stop'):
                RestoreExecutor(settings).execute('local', skip_pre_backup=True)

        input_path, output_path, key_path = mock_decrypt.call_args[0]
        assert input_path.endswith('2024-01-15T12-30-45.tar.gz.age')
        assert output_path == input_path[:-len('.age')]
        assert key_path == str(age_key_file)


class TestFindDecryptionKey:
    """Test current and retired key lookup."""

    def test_current_key(self, settings, age_key_file):
        """Test the current key is returned when its id matches."""
        settings.key_path = str(age_key_file)

        assert find_decryption_key(get_key_id(str(age_key_file)), settings) == str(age_key_file)

    def test_retired_key_by_name(self, settings, age_key_file):
        """Test a retired key named {keyId}.age is found."""
        settings.key_path = str(age_key_file)
        retired = write_key(Path(settings.retired_keys_dir) / 'placeholder.age', OTHER_PUBLIC_KEY)
        key_id = get_key_id(str(retired))
        named = retired.rename(retired.parent / f"{key_id}.age")

        assert find_decryption_key(key_id, settings) == str(named)

    def test_retired_key_by_scan(self, settings):
        """Test retired keys with other names are scanned."""
        retired = write_key(Path(settings.retired_keys_dir) / 'old-key.txt', OTHER_PUBLIC_KEY)

        assert find_decryption_key(get_key_id(str(retired)), settings) == str(retired)

    def test_no_match(self, settings, age_key_file):
        """Test None when no key matches."""
        settings.key_path = str(age_key_file)

        assert find_decryption_key('ffffffffffffffff', settings) is None
