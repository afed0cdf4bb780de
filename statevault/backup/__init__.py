"""
Backup module for statevault.

This module handles the core backup functionality including:
- Locking against concurrent runs
- File collection, manifests and archives
- age encryption and key rotation
- Disk space pre-flight checks and outcome notifications
- Storage providers (local, rclone, S3)
- Index cache, retention pruning and restore
"""

from .executor import BackupExecutor, BackupError, run_backup
from .index import IndexManager
from .lock import acquire_lock, LockContention
from .providers import create_storage_providers
from .restore import run_restore, RestoreError
from .retention import PruneManager, prune_backups
from .rotation import rotate_key
from .storage import LocalStorage, S3Storage, StorageProvider
from .rclone import RcloneStorage

__all__ = [
    'BackupExecutor',
    'BackupError',
    'run_backup',
    'IndexManager',
    'acquire_lock',
    'LockContention',
    'create_storage_providers',
    'run_restore',
    'RestoreError',
    'PruneManager',
    'prune_backups',
    'rotate_key',
    'LocalStorage',
    'S3Storage',
    'StorageProvider',
    'RcloneStorage'
]
