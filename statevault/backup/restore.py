"""
Restore a backup from a storage destination.

All pulling, decryption, extraction and validation happen in a private temp
directory before any real file is touched. Copy errors are collected rather
than aborting, so a partial restore is preferred over no restore.
"""

import logging
import os
import shutil
from typing import Optional, Dict, Any, List

from statevault.config import BackupSettings
from statevault.utils import make_tmp_dir, safe_path
from .compression import extract_archive
from .encryption import decrypt_file, get_key_id, EncryptionError
from .executor import run_backup
from .index import IndexManager
from .manifest import (
    ARCHIVE_SUFFIX,
    ENCRYPTED_ARCHIVE_SUFFIX,
    MANIFEST_FILENAME,
    deserialize_manifest,
    get_sidecar_name,
    validate_manifest
)
from .providers import UnknownDestinationError, create_storage_providers
from .storage import StorageProvider
from .version_check import check_version_compatibility

logger = logging.getLogger(__name__)


class RestoreError(Exception):
    """Raised when a restore cannot proceed."""
    pass


class BackupNotFoundError(RestoreError):
    """Raised when no backup matches the request."""
    pass


def _resolve_by_timestamp(provider: StorageProvider, timestamp: str) -> Dict[str, Any]:
    """Find an archive whose file name contains `timestamp`, searching every layout."""
    names = provider.list_all()

    for name in names:
        if name.endswith(ENCRYPTED_ARCHIVE_SUFFIX) and timestamp in name.rsplit('/', 1)[-1]:
            return {'filename': name, 'encrypted': True}
    for name in names:
        if name.endswith(ARCHIVE_SUFFIX) and timestamp in name.rsplit('/', 1)[-1]:
            return {'filename': name, 'encrypted': False}

    raise BackupNotFoundError(f'No archive found for timestamp "{timestamp}" on provider "{provider.name}"')


def _resolve_latest(provider: StorageProvider, providers: List[StorageProvider], index_manager: IndexManager) -> Dict[str, Any]:
    index = index_manager.get_index(providers)
    for entry in index['entries']:
        location = entry.get('locations', {}).get(provider.name)
        if location is None:
            continue
        host_prefix = location.rsplit('/', 1)[0] + '/' if '/' in location else ''
        return {'filename': f"{host_prefix}{entry['filename']}", 'encrypted': entry['encrypted']}

    raise BackupNotFoundError(f'No backups found on provider "{provider.name}"')


def find_decryption_key(key_id: str, settings: BackupSettings) -> Optional[str]:
    """
    Find the key file matching `key_id`.

    Checks the current key first, then retired keys. Retired keys are
    normally named `{key_id}.age`, so that name is tried before scanning.

    Returns:
        Path to the matching key file, or None
    """
    try:
        if get_key_id(settings.key_path) == key_id:
            return settings.key_path
    except EncryptionError:
        pass

    retired_dir = settings.retired_keys_dir
    candidate = safe_path(retired_dir, f"{key_id}.age")
    try:
        if get_key_id(candidate) == key_id:
            return candidate
    except EncryptionError:
        pass

    try:
        filenames = sorted(os.listdir(retired_dir))
    except OSError:
        return None

    for filename in filenames:
        key_path = os.path.join(retired_dir, filename)
        if key_path == candidate:
            continue
        try:
            if get_key_id(key_path) == key_id:
                return key_path
        except EncryptionError:
            continue

    return None


def _verify_sidecar_consistency(sidecar: Dict[str, Any], embedded: Dict[str, Any]):
    """A sidecar that disagrees with the embedded manifest may have been substituted."""
    if sidecar['timestamp'] != embedded['timestamp'] or sidecar['hostname'] != embedded['hostname']:
        raise RestoreError(
            f"Sidecar manifest does not match embedded manifest, archive may be tampered with. "
            f"sidecar.timestamp={sidecar['timestamp']}, embedded.timestamp={embedded['timestamp']}"
        )


def _restore_targets(settings: BackupSettings) -> Dict[str, str]:
    """Map each include root's name to the directory it is restored into."""
    targets = {}
    for source in settings.sources:
        root = os.path.abspath(os.path.expanduser(source))
        targets[os.path.basename(root)] = os.path.dirname(root)
    return targets


class RestoreExecutor:
    """
    Orchestrates one restore run.
    """

    def __init__(self, settings: BackupSettings):
        self.settings = settings
        self.index_manager = IndexManager(settings.index_path)
        self.temp_dir = None

    def execute(
        self,
        source: str,
        timestamp: Optional[str] = None,
        dry_run: bool = False,
        skip_pre_backup: bool = False
    ) -> Dict[str, Any]:
        """
        Restore a backup.

        Args:
            source: Destination name to restore from
            timestamp: Backup key or timestamp fragment (default: latest)
            dry_run: Validate and report without restoring
            skip_pre_backup: Skip the safety backup taken before restoring

        Returns:
            Dict with timestamp, fileCount, dryRun, preBackupCreated, errors
            and versionCheck

        Raises:
            UnknownDestinationError: If `source` is not configured
            BackupNotFoundError: If no matching backup exists
            RestoreError: If decryption, extraction or validation fails
        """
        providers = create_storage_providers(self.settings.destinations, self.settings.hostname)
        provider = next((p for p in providers if p.name == source), None)
        if provider is None:
            available = ', '.join(p.name for p in providers) or '(none)'
            raise UnknownDestinationError(f'Destination "{source}" not found in config. Available: {available}')

        if timestamp:
            ref = _resolve_by_timestamp(provider, timestamp)
        else:
            ref = _resolve_latest(provider, providers, self.index_manager)

        logger.info(f"Restoring {ref['filename']} from {provider.name}")

        self.temp_dir = make_tmp_dir('statevault-restore-', self.settings.temp_dir)
        try:
            return self._execute_workflow(provider, ref, dry_run, skip_pre_backup)
        finally:
            shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _execute_workflow(self, provider: StorageProvider, ref: Dict[str, Any], dry_run: bool, skip_pre_backup: bool) -> Dict[str, Any]:
        archive_path, sidecar = self._pull_and_decrypt(provider, ref)

        extracted_dir = os.path.join(self.temp_dir, 'extracted')
        extract_archive(archive_path, extracted_dir)

        try:
            with open(os.path.join(extracted_dir, MANIFEST_FILENAME), 'r') as f:
                manifest = deserialize_manifest(f.read())
        except FileNotFoundError:
            raise RestoreError(f"Archive {ref['filename']} does not contain {MANIFEST_FILENAME}")

        if sidecar is not None:
            _verify_sidecar_consistency(sidecar, manifest)

        version_check = check_version_compatibility(manifest.get('appVersion'), self.settings.app_version)
        if version_check['level'] == 'warn':
            logger.warning(version_check['message'])
        elif version_check['level'] == 'info':
            logger.info(version_check['message'])

        validation = validate_manifest(manifest, extracted_dir)
        if not validation['valid']:
            details = '\n  '.join(validation['errors'])
            raise RestoreError(f"Restore aborted: archive integrity check failed:\n  {details}")

        result = {
            'timestamp': manifest['timestamp'],
            'fileCount': len(manifest['files']),
            'dryRun': dry_run,
            'preBackupCreated': False,
            'errors': [],
            'versionCheck': version_check
        }

        if dry_run:
            total_size = sum(f['size'] for f in manifest['files'])
            logger.info(f"Dry run: {len(manifest['files'])} files, {total_size} bytes from {manifest['hostname']}")
            return result

        if not skip_pre_backup:
            run_backup(self.settings, destination=provider.name)
            result['preBackupCreated'] = True

        result['errors'] = self._restore_files(manifest, extracted_dir)
        return result

    def _pull_and_decrypt(self, provider: StorageProvider, ref: Dict[str, Any]):
        """
        Pull the archive (and for encrypted backups its sidecar) and decrypt.

        Returns:
            Tuple of (plaintext archive path, sidecar manifest or None)
        """
        archive_path = os.path.join(self.temp_dir, os.path.basename(ref['filename']))
        provider.pull(ref['filename'], archive_path)

        if not ref['encrypted']:
            return archive_path, None

        sidecar_name = get_sidecar_name(ref['filename'])
        sidecar_path = os.path.join(self.temp_dir, os.path.basename(sidecar_name))
        provider.pull(sidecar_name, sidecar_path)
        with open(sidecar_path, 'r') as f:
            sidecar = deserialize_manifest(f.read())

        key_id = sidecar.get('keyId', '')
        key_path = find_decryption_key(key_id, self.settings)
        if key_path is None:
            raise RestoreError(
                f'No decryption key found for keyId "{key_id}". '
                f'Check {self.settings.key_path} or {self.settings.retired_keys_dir}'
            )

        decrypted_path = archive_path[:-len('.age')]
        decrypt_file(archive_path, decrypted_path, key_path)
        return decrypted_path, sidecar

    def _restore_files(self, manifest: Dict[str, Any], extracted_dir: str) -> List[str]:
        """
        Copy extracted files to their destinations.

        Returns:
            Per-file error messages
        """
        errors = []
        targets = _restore_targets(self.settings)

        for entry in manifest['files']:
            try:
                src_path = safe_path(extracted_dir, entry['path'])
                dest_path = self._destination_for(entry['path'], targets)
                os.makedirs(os.path.dirname(dest_path), exist_ok=True)
                shutil.copyfile(src_path, dest_path)
                # Owner-only permissions on restored files
                os.chmod(dest_path, os.stat(src_path).st_mode & 0o700)
            except (OSError, ValueError) as e:
                message = f"Failed to restore {entry['path']}: {e}"
                logger.error(message)
                errors.append(message)

        return errors

    def _destination_for(self, relative_path: str, targets: Dict[str, str]) -> str:
        if self.settings.restore_root:
            return safe_path(self.settings.restore_root, relative_path)

        root_name = relative_path.split('/', 1)[0]
        if root_name not in targets:
            raise ValueError(f'no configured source matches "{root_name}"; set RESTORE_ROOT to restore it')
        return safe_path(targets[root_name], relative_path)


def run_restore(
    settings: BackupSettings,
    source: str,
    timestamp: Optional[str] = None,
    dry_run: bool = False,
    skip_pre_backup: bool = False
) -> Dict[str, Any]:
    """
    Restore a backup.

    Returns:
        Result dict from RestoreExecutor.execute()
    """
    executor = RestoreExecutor(settings)
    return executor.execute(source, timestamp=timestamp, dry_run=dry_run, skip_pre_backup=skip_pre_backup)
