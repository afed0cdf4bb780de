import json
import os
import socket
from typing import Dict, Any, List, Mapping, Optional

DEFAULT_RETENTION_COUNT = 168
MIN_RETENTION_COUNT = 1
MAX_RETENTION_COUNT = 1000
DEFAULT_ALERT_AFTER_FAILURES = 3


def _split_list(value: Optional[str]) -> List[str]:
    """Split a comma-separated environment value into a list."""
    if not value:
        return []
    return [item.strip() for item in value.split(',') if item.strip()]


def _parse_destinations(value: Optional[str]) -> Dict[str, Dict[str, Any]]:
    if not value:
        return {}
    destinations = json.loads(value)
    if not isinstance(destinations, dict):
        raise ValueError('STATEVAULT_DESTINATIONS must be a JSON object mapping names to destinations')
    return destinations


class Config:
    """Base configuration"""

    # State directory holding the lock, index cache, key and logs
    STATE_DIR = os.environ.get('STATEVAULT_STATE_DIR') or os.path.expanduser('~/.statevault')

    # What to back up
    BACKUP_SOURCES = _split_list(os.environ.get('STATEVAULT_SOURCES'))
    BACKUP_EXCLUDE = _split_list(os.environ.get('STATEVAULT_EXCLUDE'))

    # Encryption
    BACKUP_ENCRYPT = os.environ.get('STATEVAULT_ENCRYPT', 'false').lower() == 'true'
    BACKUP_KEY_PATH = os.environ.get('STATEVAULT_KEY_PATH')

    # Retention
    RETENTION_COUNT = int(os.environ.get('STATEVAULT_RETENTION_COUNT', DEFAULT_RETENTION_COUNT))

    # Pre-flight free space check on TEMP_DIR (disable for unreliable network mounts)
    SKIP_DISK_CHECK = os.environ.get('STATEVAULT_SKIP_DISK_CHECK', 'false').lower() == 'true'

    # Consecutive scheduled failures before an alert is recorded
    ALERT_AFTER_FAILURES = int(os.environ.get('STATEVAULT_ALERT_AFTER_FAILURES', DEFAULT_ALERT_AFTER_FAILURES))

    # Destinations, e.g. {"local": {"path": "/mnt/backups"}, "gdrive": {"remote": "gdrive:statevault/"}}
    BACKUP_DESTINATIONS = _parse_destinations(os.environ.get('STATEVAULT_DESTINATIONS'))

    HOSTNAME = os.environ.get('STATEVAULT_HOSTNAME') or socket.gethostname()

    # Version of the application whose state is backed up
    APP_VERSION = os.environ.get('APP_VERSION')

    # Where restored files are written (default: parent of each include root)
    RESTORE_ROOT = os.environ.get('RESTORE_ROOT')

    # Upload/Temp
    TEMP_DIR = os.environ.get('TEMP_DIR') or None

    # Scheduler
    BACKUP_SCHEDULE = os.environ.get('BACKUP_SCHEDULE')
    SCHEDULER_TIMEZONE = 'UTC'


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    STATE_DIR = os.path.join(DATA_DIR, 'state')
    TEMP_DIR = os.path.join(DATA_DIR, 'temp')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


class TestingConfig(Config):
    """Testing configuration"""
    TESTING = True
    DEBUG = False
    BACKUP_SOURCES = []
    BACKUP_EXCLUDE = []
    BACKUP_ENCRYPT = False
    BACKUP_DESTINATIONS = {}
    BACKUP_SCHEDULE = None
    HOSTNAME = 'test-host'
    APP_VERSION = None
    SKIP_DISK_CHECK = True


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}


class BackupSettings:
    """
    Validated backup settings consumed by the executors.

    Built from a Flask config (or any mapping with the Config keys) so the
    backup code never reads app globals.
    """

    def __init__(
        self,
        state_dir: str,
        sources: List[str],
        destinations: Dict[str, Dict[str, Any]],
        exclude: Optional[List[str]] = None,
        encrypt: bool = False,
        key_path: Optional[str] = None,
        retention_count: int = DEFAULT_RETENTION_COUNT,
        hostname: Optional[str] = None,
        temp_dir: Optional[str] = None,
        app_version: Optional[str] = None,
        restore_root: Optional[str] = None,
        skip_disk_check: bool = False,
        alert_after_failures: int = DEFAULT_ALERT_AFTER_FAILURES
    ):
        """
        Initialize backup settings.

        Raises:
            ValueError: If a value is out of range or malformed
        """
        if not isinstance(destinations, dict):
            raise ValueError('Destinations must be a mapping of name to destination config')
        for name, dest in destinations.items():
            if not isinstance(dest, dict):
                raise ValueError(f'Destination "{name}" must be an object')

        if not isinstance(retention_count, int) or isinstance(retention_count, bool):
            raise ValueError(f'Retention count must be an integer, got {retention_count!r}')
        if not MIN_RETENTION_COUNT <= retention_count <= MAX_RETENTION_COUNT:
            raise ValueError(
                f'Retention count must be between {MIN_RETENTION_COUNT} and {MAX_RETENTION_COUNT}, got {retention_count}'
            )
        if not isinstance(alert_after_failures, int) or isinstance(alert_after_failures, bool) or alert_after_failures < 1:
            raise ValueError(f'Alert threshold must be a positive integer, got {alert_after_failures!r}')

        self.state_dir = os.path.abspath(os.path.expanduser(state_dir))
        self.sources = list(sources)
        self.exclude = list(exclude or [])
        self.destinations = destinations
        self.encrypt = encrypt
        self.key_path = os.path.expanduser(key_path) if key_path else os.path.join(self.state_dir, 'key.txt')
        self.retention_count = retention_count
        self.hostname = hostname or socket.gethostname()
        self.temp_dir = temp_dir
        self.app_version = app_version
        self.restore_root = restore_root
        self.skip_disk_check = skip_disk_check
        self.alert_after_failures = alert_after_failures

    @property
    def lock_path(self) -> str:
        return os.path.join(self.state_dir, '.backup.lock')

    @property
    def index_path(self) -> str:
        return os.path.join(self.state_dir, 'backup-index.json')

    @property
    def retired_keys_dir(self) -> str:
        """Directory holding previous age keys, consulted when restoring old backups."""
        return os.path.join(self.state_dir, 'keys', 'retired')

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> 'BackupSettings':
        """
        Build settings from a Flask config.

        Args:
            mapping: app.config or a dict with the same keys

        Returns:
            BackupSettings instance
        """
        return cls(
            state_dir=mapping['STATE_DIR'],
            sources=mapping.get('BACKUP_SOURCES') or [],
            destinations=mapping.get('BACKUP_DESTINATIONS') or {},
            exclude=mapping.get('BACKUP_EXCLUDE') or [],
            encrypt=bool(mapping.get('BACKUP_ENCRYPT', False)),
            key_path=mapping.get('BACKUP_KEY_PATH'),
            retention_count=mapping.get('RETENTION_COUNT', DEFAULT_RETENTION_COUNT),
            hostname=mapping.get('HOSTNAME'),
            temp_dir=mapping.get('TEMP_DIR'),
            app_version=mapping.get('APP_VERSION'),
            restore_root=mapping.get('RESTORE_ROOT'),
            skip_disk_check=bool(mapping.get('SKIP_DISK_CHECK', False)),
            alert_after_failures=mapping.get('ALERT_AFTER_FAILURES', DEFAULT_ALERT_AFTER_FAILURES)
        )
