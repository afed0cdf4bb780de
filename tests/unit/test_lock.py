"""
Unit tests for the backup lock (statevault/backup/lock.py).
"""

import json
import re
import os
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from statevault.backup.lock import (
    LOCK_FILENAME,
    LockContention,
    LockIOError,
    acquire_lock,
    get_lock_path,
    is_lock_stale,
    is_process_alive
)

# Far above any real pid_max
DEAD_PID = 2 ** 30


def write_record(lock_path, pid, started_at):
    with open(lock_path, 'w') as f:
        json.dump({'pid': pid, 'startedAt': started_at.isoformat()}, f)


class TestAcquireLock:
    """Test acquire_lock when no lock exists."""

    def test_acquire_creates_record_with_own_pid(self, tmp_path):
        """Test acquiring writes a LockRecord with our pid."""
        lock_path = get_lock_path(str(tmp_path))

        handle = acquire_lock(lock_path)

        with open(lock_path) as f:
            record = json.load(f)
        assert record['pid'] == os.getpid()
        assert datetime.fromisoformat(record['startedAt'])
        assert os.path.basename(lock_path) == LOCK_FILENAME

        handle.release()
        assert not os.path.exists(lock_path)

    def test_no_temp_files_left_behind(self, tmp_path):
        """Test the temp file used for atomic creation is removed."""
        lock_path = get_lock_path(str(tmp_path))

        with acquire_lock(lock_path):
            assert os.listdir(str(tmp_path)) == [LOCK_FILENAME]

    def test_context_manager_releases_on_error(self, tmp_path):
        """Test the lock is released when the body raises."""
        lock_path = get_lock_path(str(tmp_path))

        with pytest.raises(RuntimeError):
            with acquire_lock(lock_path):
                raise RuntimeError('backup failed')

        assert not os.path.exists(lock_path)

    def test_release_never_raises(self, tmp_path):
        """Test releasing twice or after removal is harmless."""
        lock_path = get_lock_path(str(tmp_path))
        handle = acquire_lock(lock_path)
        os.unlink(lock_path)

        handle.release()
        handle.release()

    def test_creates_state_directory(self, tmp_path):
        """Test the lock directory is created if missing."""
        lock_path = get_lock_path(str(tmp_path / 'nested' / 'state'))

        with acquire_lock(lock_path):
            assert os.path.exists(lock_path)

    def test_unwritable_directory_raises_lock_io_error(self, tmp_path):
        """Test creation failures other than 'exists' raise LockIOError."""
        lock_path = get_lock_path(str(tmp_path))

        with patch('statevault.backup.lock._create_lock_file', side_effect=PermissionError('denied')):
            with pytest.raises(LockIOError, match=re.escape(str(tmp_path))):
                acquire_lock(lock_path)


class TestLockContention:
    """Test behavior when a lock file already exists."""

    def test_live_lock_is_never_reclaimed(self, tmp_path):
        """Test a lock held by a live pid raises LockContention naming the path."""
        lock_path = get_lock_path(str(tmp_path))
        write_record(lock_path, os.getpid(), datetime.now(timezone.utc) - timedelta(hours=2))

        with pytest.raises(LockContention) as exc_info:
            acquire_lock(lock_path)

        assert lock_path in str(exc_info.value)
        assert os.path.exists(lock_path)

    def test_dead_but_young_lock_is_kept(self, tmp_path):
        """Test a dead pid younger than 30 minutes still blocks."""
        lock_path = get_lock_path(str(tmp_path))
        write_record(lock_path, DEAD_PID, datetime.now(timezone.utc) - timedelta(minutes=5))

        with pytest.raises(LockContention):
            acquire_lock(lock_path)

    def test_dead_and_old_lock_is_reclaimed(self, tmp_path):
        """Test a dead pid older than 30 minutes is reclaimed."""
        lock_path = get_lock_path(str(tmp_path))
        write_record(lock_path, DEAD_PID, datetime.now(timezone.utc) - timedelta(minutes=31))

        with acquire_lock(lock_path) as handle:
            with open(lock_path) as f:
                assert json.load(f)['pid'] == os.getpid()
            assert handle.pid == os.getpid()

    def test_corrupt_lock_is_reclaimed(self, tmp_path):
        """Test an unparsable lock file is treated as stale."""
        lock_path = get_lock_path(str(tmp_path))
        with open(lock_path, 'w') as f:
            f.write('not json{')

        with acquire_lock(lock_path):
            with open(lock_path) as f:
                assert json.load(f)['pid'] == os.getpid()

    def test_lost_reclaim_race_raises_contention(self, tmp_path):
        """Test that if another process wins the reclaim, we get LockContention after two attempts."""
        lock_path = get_lock_path(str(tmp_path))
        write_record(lock_path, DEAD_PID, datetime.now(timezone.utc) - timedelta(hours=1))

        with patch('statevault.backup.lock._create_lock_file', side_effect=FileExistsError) as mock_create:
            with pytest.raises(LockContention, match='Another backup is already running'):
                acquire_lock(lock_path)

        assert mock_create.call_count == 2

    def test_reclaim_keeps_lock_taken_after_stale_check(self, tmp_path):
        """Test a lock reclaimed by someone else between our stale check and removal survives."""
        lock_path = get_lock_path(str(tmp_path))
        write_record(lock_path, DEAD_PID, datetime.now(timezone.utc) - timedelta(hours=1))
        handles = {}

        def stale_then_other_reclaims(path, now=None):
            stale = is_lock_stale(path, now)
            if 'other' not in handles:
                handles['other'] = None
                handles['other'] = acquire_lock(path)
            return stale

        with patch('statevault.backup.lock.is_lock_stale', side_effect=stale_then_other_reclaims):
            with pytest.raises(LockContention):
                acquire_lock(lock_path)

        assert handles['other'] is not None
        with open(lock_path) as f:
            record = json.load(f)
        assert record['pid'] == os.getpid()
        assert datetime.now(timezone.utc) - datetime.fromisoformat(record['startedAt']) < timedelta(minutes=1)
        assert os.listdir(str(tmp_path)) == [LOCK_FILENAME]

        handles['other'].release()
        assert not os.path.exists(lock_path)


class TestStaleness:
    """Test liveness and staleness helpers."""

    def test_own_process_is_alive(self):
        """Test our own pid is alive."""
        assert is_process_alive(os.getpid()) is True

    def test_permission_error_counts_as_alive(self):
        """Test a pid owned by another user counts as alive."""
        with patch('statevault.backup.lock.os.kill', side_effect=PermissionError):
            assert is_process_alive(1234) is True

    def test_process_lookup_error_means_dead(self):
        """Test only 'no such process' means dead."""
        with patch('statevault.backup.lock.os.kill', side_effect=ProcessLookupError):
            assert is_process_alive(1234) is False

    def test_stale_threshold_is_inclusive(self, tmp_path):
        """Test a dead lock exactly 30 minutes old is stale."""
        lock_path = get_lock_path(str(tmp_path))
        started = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)
        write_record(lock_path, DEAD_PID, started)

        assert is_lock_stale(lock_path, now=started + timedelta(minutes=30)) is True
        assert is_lock_stale(lock_path, now=started + timedelta(minutes=29)) is False


class TestDefaultLockPath:
    """Test the lock location when no path is given."""

    def test_default_path_uses_configured_state_dir(self, tmp_path):
        """Test acquire_lock() without a path locks Config.STATE_DIR."""
        with patch('statevault.config.Config.STATE_DIR', str(tmp_path)):
            with acquire_lock() as handle:
                assert handle.lock_path == str(tmp_path / LOCK_FILENAME)
                assert os.path.exists(handle.lock_path)
