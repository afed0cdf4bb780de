"""
Backup outcome notifications.

Two files in the state directory:
- backup-last-result.json: the latest outcome, always overwritten
- backup-alerts.jsonl: append-only log of failures once the consecutive
  failure count reaches the configured threshold

Health checks read the last result; operators consume and clear the alerts.
"""

import json
import logging
import os
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional

from statevault.config import BackupSettings

logger = logging.getLogger(__name__)

LAST_RESULT_FILENAME = 'backup-last-result.json'
ALERTS_FILENAME = 'backup-alerts.jsonl'

NOTIFICATION_FILE_PERMISSIONS = 0o600


def get_notification_paths(state_dir: str) -> Dict[str, str]:
    return {
        'last_result': os.path.join(state_dir, LAST_RESULT_FILENAME),
        'alerts': os.path.join(state_dir, ALERTS_FILENAME)
    }


def _is_notification(value: Any) -> bool:
    return (
        isinstance(value, dict)
        and value.get('type') in ('success', 'failure')
        and isinstance(value.get('timestamp'), str)
        and isinstance(value.get('hostname'), str)
        and isinstance(value.get('consecutiveFailures'), int)
        and isinstance(value.get('details'), dict)
    )


def read_last_result(last_result_path: str) -> Optional[Dict[str, Any]]:
    """
    Read the last backup outcome.

    Returns:
        The notification, or None if absent or malformed
    """
    try:
        with open(last_result_path, 'r') as f:
            raw = json.load(f)
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as e:
        logger.warning(f"Failed to read last backup result {last_result_path}: {e}")
        return None

    return raw if _is_notification(raw) else None


def read_alerts(alerts_path: str) -> List[Dict[str, Any]]:
    """Read every alert, skipping malformed lines."""
    try:
        with open(alerts_path, 'r') as f:
            lines = f.readlines()
    except FileNotFoundError:
        return []

    alerts = []
    for line in lines:
        line = line.strip()
        if not line:
            continue
        try:
            raw = json.loads(line)
        except ValueError:
            continue
        if _is_notification(raw):
            alerts.append(raw)
    return alerts


def clear_alerts(alerts_path: str):
    """Delete the alerts file. A missing file counts as success."""
    try:
        os.unlink(alerts_path)
    except FileNotFoundError:
        pass


def get_consecutive_failures(last_result_path: str) -> int:
    """Return the failure streak, 0 if the last run succeeded or none is recorded."""
    last = read_last_result(last_result_path)
    if last is None or last['type'] != 'failure':
        return 0
    return last['consecutiveFailures']


def _write_private(path: str, content: str, append: bool = False):
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)

    flags = os.O_WRONLY | os.O_CREAT | (os.O_APPEND if append else os.O_TRUNC)
    fd = os.open(path, flags, NOTIFICATION_FILE_PERMISSIONS)
    with os.fdopen(fd, 'w') as f:
        f.write(content)


def notify_backup_success(settings: BackupSettings, result: Dict[str, Any]) -> Dict[str, Any]:
    """
    Record a successful backup and reset the failure streak.

    Returns:
        The written notification
    """
    paths = get_notification_paths(settings.state_dir)
    notification = {
        'type': 'success',
        'timestamp': result['timestamp'],
        'hostname': settings.hostname,
        'consecutiveFailures': 0,
        'details': {k: v for k, v in result.items() if k != 'logs'}
    }
    _write_private(paths['last_result'], json.dumps(notification, indent=2))
    return notification


def notify_backup_failure(settings: BackupSettings, error: BaseException) -> Dict[str, Any]:
    """
    Record a failed backup.

    Once the failure streak reaches settings.alert_after_failures, every
    further failure is also appended to the alerts file.

    Returns:
        The written notification
    """
    paths = get_notification_paths(settings.state_dir)
    consecutive_failures = get_consecutive_failures(paths['last_result']) + 1

    notification = {
        'type': 'failure',
        'timestamp': datetime.now(timezone.utc).isoformat(),
        'hostname': settings.hostname,
        'consecutiveFailures': consecutive_failures,
        'details': {'error': str(error)}
    }
    _write_private(paths['last_result'], json.dumps(notification, indent=2))

    if consecutive_failures >= settings.alert_after_failures:
        logger.error(f"Backup has failed {consecutive_failures} times in a row: {error}")
        _write_private(paths['alerts'], json.dumps(notification) + '\n', append=True)

    return notification
