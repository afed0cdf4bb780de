"""
age key rotation.

A new key is generated next to the current one, the current key is copied
to the retired keys directory as `{keyId}.age`, and the new key is moved
into place with an atomic rename. The key slot is never empty, and backups
made with the old key stay restorable through the retired copy.

Optionally every encrypted backup is re-encrypted with the new key.
"""

import logging
import os
import shutil
from typing import Dict, Any, List, Optional

from statevault.config import BackupSettings
from statevault.utils import make_tmp_dir, safe_path
from .encryption import KEY_FILE_PERMISSIONS, decrypt_file, encrypt_to_file, generate_key, get_key_id
from .index import IndexManager
from .lock import acquire_lock
from .manifest import ENCRYPTED_ARCHIVE_SUFFIX, MANIFEST_SUFFIX, deserialize_manifest, serialize_manifest
from .providers import create_storage_providers
from .restore import find_decryption_key
from .storage import StorageProvider

logger = logging.getLogger(__name__)


def _replace_key(settings: BackupSettings) -> Dict[str, str]:
    old_key_id = get_key_id(settings.key_path)

    os.makedirs(settings.retired_keys_dir, exist_ok=True)
    retired_path = safe_path(settings.retired_keys_dir, f"{old_key_id}.age")

    tmp_key_path = f"{settings.key_path}.tmp"
    if os.path.exists(tmp_key_path):
        # Left over from an interrupted rotation
        os.unlink(tmp_key_path)

    generate_key(tmp_key_path)
    new_key_id = get_key_id(tmp_key_path)

    shutil.copyfile(settings.key_path, retired_path)
    os.chmod(retired_path, KEY_FILE_PERMISSIONS)
    os.replace(tmp_key_path, settings.key_path)

    logger.info(f"Rotated age key {old_key_id} -> {new_key_id}; old key kept at {retired_path}")
    return {'old_key_id': old_key_id, 'new_key_id': new_key_id}


def _copy_into(path: str):
    def write_plaintext(stdin):
        with open(path, 'rb') as f:
            shutil.copyfileobj(f, stdin)
    return write_plaintext


def _reencrypt_on_provider(
    settings: BackupSettings,
    provider: StorageProvider,
    sidecar_name: str,
    new_key_id: str,
    work_dir: str
) -> bool:
    """
    Re-encrypt one backup on one provider.

    Returns:
        False if the backup already uses the new key
    """
    staged = f"{provider.name}-{sidecar_name.replace('/', '__')}"
    sidecar_path = safe_path(work_dir, staged)
    provider.pull(sidecar_name, sidecar_path)
    with open(sidecar_path, 'r') as f:
        manifest = deserialize_manifest(f.read())

    key_id = manifest.get('keyId', '')
    if key_id == new_key_id:
        return False

    key_path = find_decryption_key(key_id, settings)
    if key_path is None:
        raise ValueError(f'no decryption key found for keyId "{key_id}"')

    archive_name = f"{sidecar_name[:-len(MANIFEST_SUFFIX)]}{ENCRYPTED_ARCHIVE_SUFFIX}"
    archive_path = f"{sidecar_path[:-len(MANIFEST_SUFFIX)]}{ENCRYPTED_ARCHIVE_SUFFIX}"
    plaintext_path = archive_path[:-len('.age')]

    provider.pull(archive_name, archive_path)
    decrypt_file(archive_path, plaintext_path, key_path)
    os.unlink(archive_path)
    encrypt_to_file(settings.key_path, archive_path, _copy_into(plaintext_path))
    os.unlink(plaintext_path)

    # Archive first, so a sidecar never names a key its archive does not use
    provider.push(archive_path, archive_name)
    manifest['keyId'] = new_key_id
    with open(sidecar_path, 'w') as f:
        f.write(serialize_manifest(manifest))
    provider.push(sidecar_path, sidecar_name)
    return True


def _reencrypt_all(settings: BackupSettings, new_key_id: str, source: Optional[str]) -> Dict[str, Any]:
    providers = create_storage_providers(settings.destinations, settings.hostname, source)
    by_name = {p.name: p for p in providers}
    index = IndexManager(settings.index_path).refresh_index(providers)

    reencrypted = 0
    errors: List[str] = []
    work_dir = make_tmp_dir('statevault-reencrypt-', settings.temp_dir)
    try:
        for entry in index['entries']:
            if not entry['encrypted']:
                continue
            for provider_name, sidecar_name in entry.get('locations', {}).items():
                provider = by_name.get(provider_name)
                if provider is None:
                    continue
                try:
                    if _reencrypt_on_provider(settings, provider, sidecar_name, new_key_id, work_dir):
                        reencrypted += 1
                except Exception as e:
                    message = f"Failed to re-encrypt {entry['filename']} on {provider_name}: {e}"
                    logger.error(message)
                    errors.append(message)
    finally:
        shutil.rmtree(work_dir, ignore_errors=True)

    return {'reencrypted': reencrypted, 'errors': errors}


def rotate_key(settings: BackupSettings, reencrypt: bool = False, source: Optional[str] = None) -> Dict[str, Any]:
    """
    Rotate the age key, holding the backup lock throughout.

    Args:
        settings: Validated backup settings
        reencrypt: Also re-encrypt every encrypted backup with the new key
        source: Only re-encrypt on this destination (default: all)

    Returns:
        Dict with oldKeyId, newKeyId, reencrypted and errors

    Raises:
        EncryptionError: If the current key is unreadable or key generation fails
        LockContention: If a backup is running
        UnknownDestinationError: If `source` is not configured
    """
    with acquire_lock(settings.lock_path):
        if reencrypt and source is not None:
            # Fail on an unknown destination before touching the key
            create_storage_providers(settings.destinations, settings.hostname, source)

        keys = _replace_key(settings)
        result = {
            'oldKeyId': keys['old_key_id'],
            'newKeyId': keys['new_key_id'],
            'reencrypted': 0,
            'errors': []
        }

        if reencrypt:
            result.update(_reencrypt_all(settings, keys['new_key_id'], source))

    return result
