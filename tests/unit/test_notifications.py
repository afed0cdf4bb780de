"""
Unit tests for backup outcome notifications (statevault/backup/notifications.py).
"""

import json
import os
import stat

import pytest
from freezegun import freeze_time

from statevault.backup.notifications import (
    clear_alerts,
    get_consecutive_failures,
    get_notification_paths,
    notify_backup_failure,
    notify_backup_success,
    read_alerts,
    read_last_result
)

BACKUP_RESULT = {
    'timestamp': '2024-01-15T12:00:00+00:00',
    'key': '2024-01-15T12-00-00',
    'archiveSize': 1024,
    'fileCount': 2,
    'encrypted': False,
    'destinations': ['local'],
    'dryRun': False,
    'logs': ['[2024-01-15 12:00:00 UTC] Backup completed successfully']
}


@pytest.fixture
def paths(settings):
    return get_notification_paths(settings.state_dir)


class TestNotifySuccess:
    """Test recording successful runs."""

    def test_writes_last_result(self, settings, paths):
        """Test the result is recorded without its logs, owner-only."""
        notify_backup_success(settings, BACKUP_RESULT)

        last = read_last_result(paths['last_result'])
        assert last['type'] == 'success'
        assert last['timestamp'] == BACKUP_RESULT['timestamp']
        assert last['hostname'] == 'test-host'
        assert last['consecutiveFailures'] == 0
        assert last['details']['key'] == BACKUP_RESULT['key']
        assert 'logs' not in last['details']
        assert stat.S_IMODE(os.stat(paths['last_result']).st_mode) == 0o600

    def test_resets_failure_streak(self, settings, paths):
        """Test a success after failures resets the count."""
        notify_backup_failure(settings, RuntimeError('boom'))
        notify_backup_failure(settings, RuntimeError('boom'))

        notify_backup_success(settings, BACKUP_RESULT)

        assert get_consecutive_failures(paths['last_result']) == 0


class TestNotifyFailure:
    """Test recording failed runs and alerting."""

    @freeze_time('2024-01-15 12:00:00')
    def test_writes_failure(self, settings, paths):
        """Test a failure records the error message."""
        notification = notify_backup_failure(settings, RuntimeError('disk full'))

        assert notification == {
            'type': 'failure',
            'timestamp': '2024-01-15T12:00:00+00:00',
            'hostname': 'test-host',
            'consecutiveFailures': 1,
            'details': {'error': 'disk full'}
        }
        assert read_last_result(paths['last_result']) == notification

    def test_alerts_from_threshold_on(self, settings, paths):
        """Test alerts start at the threshold and continue after it."""
        settings.alert_after_failures = 2

        notify_backup_failure(settings, RuntimeError('first'))
        assert read_alerts(paths['alerts']) == []

        notify_backup_failure(settings, RuntimeError('second'))
        notify_backup_failure(settings, RuntimeError('third'))

        alerts = read_alerts(paths['alerts'])
        assert [a['consecutiveFailures'] for a in alerts] == [2, 3]
        assert alerts[-1]['details'] == {'error': 'third'}

    def test_default_threshold_is_three(self, settings, paths):
        """Test two failures do not alert by default."""
        for _ in range(2):
            notify_backup_failure(settings, RuntimeError('boom'))
        assert read_alerts(paths['alerts']) == []

        notify_backup_failure(settings, RuntimeError('boom'))
        assert len(read_alerts(paths['alerts'])) == 1


class TestReading:
    """Test reading and clearing notification files."""

    def test_missing_files(self, paths):
        """Test absent files read as empty."""
        assert read_last_result(paths['last_result']) is None
        assert read_alerts(paths['alerts']) == []
        assert get_consecutive_failures(paths['last_result']) == 0

    def test_malformed_last_result(self, paths):
        """Test a corrupt or wrongly shaped last result is ignored."""
        with open(paths['last_result'], 'w') as f:
            f.write('{not json')
        assert read_last_result(paths['last_result']) is None

        with open(paths['last_result'], 'w') as f:
            json.dump({'type': 'maybe'}, f)
        assert read_last_result(paths['last_result']) is None

    def test_malformed_alert_lines_skipped(self, settings, paths):
        """Test only valid alert lines are returned."""
        settings.alert_after_failures = 1
        notify_backup_failure(settings, RuntimeError('boom'))
        with open(paths['alerts'], 'a') as f:
            f.write('garbage\n\n{"type": "failure"}\n')

        assert len(read_alerts(paths['alerts'])) == 1

    def test_clear_alerts(self, settings, paths):
        """Test clearing removes the file and tolerates a missing one."""
        settings.alert_after_failures = 1
        notify_backup_failure(settings, RuntimeError('boom'))

        clear_alerts(paths['alerts'])
        assert not os.path.exists(paths['alerts'])

        clear_alerts(paths['alerts'])
