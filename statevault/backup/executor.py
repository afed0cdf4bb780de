"""
Backup executor - orchestrates the complete backup workflow.

Workflow:
1. Check prerequisites (age, rclone) and generate a key if needed
2. Collect source files and check free space in the temp directory
3. Acquire the backup lock
4. Build the manifest and archive (encrypted on the fly if enabled)
5. Push archive + sidecar to every destination
6. Invalidate the index cache
7. Cleanup temporary files and release the lock
"""

import logging
import os
import shutil
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any

from statevault.config import BackupSettings
from statevault.utils import map_with_concurrency, make_tmp_dir
from .collector import collect_files
from .compression import create_archive, write_archive
from .disk_check import verify_disk_space
from .encryption import check_age_installed, encrypt_to_file, generate_key, get_key_id
from .index import IndexManager
from .lock import acquire_lock
from .manifest import (
    build_archive_name,
    build_manifest_name,
    format_backup_key,
    generate_manifest,
    serialize_manifest
)
from .providers import create_storage_providers
from .rclone import RcloneStorage, check_rclone_installed
from .storage import StorageProvider

logger = logging.getLogger(__name__)

# Destinations pushed in parallel
PUSH_CONCURRENCY = 4


class BackupError(Exception):
    """Raised when a backup run fails."""
    pass


def check_prerequisites(settings: BackupSettings, providers: List[StorageProvider]) -> List[Dict[str, Any]]:
    """
    Check the external tools a backup run needs.

    Returns:
        List of prerequisite check dicts (see check_age_installed)
    """
    checks = []
    if settings.encrypt:
        checks.append(check_age_installed())
    if any(isinstance(p, RcloneStorage) for p in providers):
        checks.append(check_rclone_installed())
    return checks


def format_prerequisite_errors(checks: List[Dict[str, Any]]) -> str:
    """Format failed checks into one message, empty if all passed."""
    lines = []
    for check in checks:
        if check['available']:
            continue
        line = f"{check['name']} is not available: {check.get('error', 'unknown error')}"
        if check.get('install_hint'):
            line += f" (install with: {check['install_hint']})"
        lines.append(line)
    return '\n'.join(lines)


class BackupExecutor:
    """
    Orchestrates one backup run.
    """

    def __init__(self, settings: BackupSettings):
        """
        Initialize backup executor.

        Args:
            settings: Validated backup settings
        """
        self.settings = settings
        self.index_manager = IndexManager(settings.index_path)
        self.temp_dir = None
        self.logs = []

    def execute(self, destination: Optional[str] = None, dry_run: bool = False) -> Dict[str, Any]:
        """
        Execute the backup.

        Args:
            destination: Only push to this destination (default: all)
            dry_run: Collect files and report without writing anything

        Returns:
            Dict with timestamp, key, archiveSize, fileCount, encrypted,
            destinations, dryRun and logs

        Raises:
            UnknownDestinationError: If `destination` is not configured
            BackupError: If prerequisites are missing, nothing is collected or a push fails
            DiskSpaceError: If the temp directory is too small for the archive
            LockContention: If another backup is running
        """
        providers = create_storage_providers(self.settings.destinations, self.settings.hostname, destination)
        if not providers:
            raise BackupError("No backup destinations configured")

        self._log(f"Starting backup to {', '.join(p.name for p in providers)}")

        errors = format_prerequisite_errors(check_prerequisites(self.settings, providers))
        if errors:
            raise BackupError(f"Missing prerequisites:\n{errors}")

        if self.settings.encrypt:
            self._ensure_key_exists()

        files = collect_files(self.settings.sources, self.settings.exclude)
        if not files:
            raise BackupError(f"No files found to back up in: {', '.join(self.settings.sources) or '(no sources)'}")

        total_size = sum(f['size'] for f in files)
        self._log(f"Collected {len(files)} files ({total_size} bytes)")

        if dry_run:
            for f in files:
                self._log(f"  {f['relative_path']} ({f['size']} bytes)")
            return {
                'timestamp': datetime.now(timezone.utc).isoformat(),
                'key': None,
                'archiveSize': 0,
                'fileCount': len(files),
                'totalSize': total_size,
                'encrypted': self.settings.encrypt,
                'destinations': [],
                'dryRun': True,
                'logs': self.logs
            }

        verify_disk_space(files, self.settings.temp_dir, skip=self.settings.skip_disk_check)

        with acquire_lock(self.settings.lock_path):
            self.temp_dir = make_tmp_dir('statevault-backup-', self.settings.temp_dir)
            try:
                return self._execute_workflow(files, providers)
            finally:
                self._cleanup()

    def _execute_workflow(self, files: List[Dict[str, Any]], providers: List[StorageProvider]) -> Dict[str, Any]:
        """Execute the main backup workflow steps."""
        key_id = get_key_id(self.settings.key_path) if self.settings.encrypt else None

        manifest = generate_manifest(
            files,
            encrypted=self.settings.encrypt,
            key_id=key_id,
            app_version=self.settings.app_version,
            hostname=self.settings.hostname
        )
        key = format_backup_key(manifest['timestamp'])

        archive_name = build_archive_name(key, self.settings.encrypt)
        archive_path = os.path.join(self.temp_dir, archive_name)
        self._create_archive(files, manifest, archive_path)

        archive_size = os.path.getsize(archive_path)
        self._log(f"Archive created: {archive_name} ({archive_size / 1024 / 1024:.2f} MB)")

        manifest_name = build_manifest_name(key)
        manifest_path = os.path.join(self.temp_dir, manifest_name)
        with open(manifest_path, 'w') as f:
            f.write(serialize_manifest(manifest))

        try:
            push_errors = map_with_concurrency(
                providers,
                PUSH_CONCURRENCY,
                lambda provider: self._push(provider, archive_path, archive_name, manifest_path, manifest_name)
            )
        finally:
            self.index_manager.invalidate_cache()

        push_errors = [error for error in push_errors if error]
        if push_errors:
            raise BackupError(f"Backup push failed: {'; '.join(push_errors)}")

        self._log("Backup completed successfully")

        return {
            'timestamp': manifest['timestamp'],
            'key': key,
            'archiveSize': archive_size,
            'fileCount': len(files),
            'encrypted': self.settings.encrypt,
            'destinations': [p.name for p in providers],
            'dryRun': False,
            'logs': self.logs
        }

    def _create_archive(self, files: List[Dict[str, Any]], manifest: Dict[str, Any], archive_path: str):
        """
        Write the archive, streaming it through age when encryption is on.

        Raises:
            CompressionError: If archive creation fails
            EncryptionError: If encryption fails
        """
        if self.settings.encrypt:
            self._log("Creating encrypted archive")
            encrypt_to_file(
                self.settings.key_path,
                archive_path,
                lambda stdin: write_archive(files, manifest, stdin)
            )
        else:
            self._log("Creating archive")
            create_archive(files, manifest, archive_path)

    def _push(
        self,
        provider: StorageProvider,
        archive_path: str,
        archive_name: str,
        manifest_path: str,
        manifest_name: str
    ) -> Optional[str]:
        """
        Push archive then sidecar to one provider.

        The sidecar goes last so the index never lists a backup whose
        archive is missing.

        Returns:
            Error message, or None on success
        """
        host = self.settings.hostname
        try:
            provider.push(archive_path, f"{host}/{archive_name}")
            provider.push(manifest_path, f"{host}/{manifest_name}")
        except Exception as e:
            self._log(f"Push to {provider.name} failed: {e}")
            return f"{provider.name}: {e}"

        self._log(f"Pushed to {provider.name}: {host}/{archive_name}")
        return None

    def _ensure_key_exists(self):
        if os.path.exists(self.settings.key_path):
            return
        public_key = generate_key(self.settings.key_path)
        self._log(
            f"Generated new age key at {self.settings.key_path} (public key: {public_key}). "
            f"Back up this key file: encrypted backups cannot be restored without it."
        )

    def _cleanup(self):
        """Remove temporary directory and files."""
        if self.temp_dir and os.path.exists(self.temp_dir):
            try:
                shutil.rmtree(self.temp_dir)
                self._log("Cleaned up temporary directory")
            except OSError as e:
                self._log(f"Warning: Failed to cleanup temp directory: {e}")

    def _log(self, message: str):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.info(message)


def run_backup(settings: BackupSettings, destination: Optional[str] = None, dry_run: bool = False) -> Dict[str, Any]:
    """
    Run a backup.

    Args:
        settings: Validated backup settings
        destination: Only push to this destination (default: all)
        dry_run: Report what would be backed up without writing anything

    Returns:
        Result dict from BackupExecutor.execute()
    """
    executor = BackupExecutor(settings)
    return executor.execute(destination=destination, dry_run=dry_run)
