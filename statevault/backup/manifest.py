"""
Backup manifests.

A manifest lists every file in an archive with its checksum. One copy is
embedded in the archive as manifest.json; a second copy is stored next to the
archive as the `{BackupKey}.manifest.json` sidecar so backups can be listed
without downloading or decrypting archives.
"""

import hashlib
import json
import re
import socket
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional

from statevault import __version__
from statevault.utils.paths import safe_path, PathTraversalError

MANIFEST_SCHEMA_VERSION = 1
MANIFEST_FILENAME = 'manifest.json'
MANIFEST_SUFFIX = '.manifest.json'
ARCHIVE_SUFFIX = '.tar.gz'
ENCRYPTED_ARCHIVE_SUFFIX = '.tar.gz.age'

SUPPORTED_SCHEMA_VERSIONS = {MANIFEST_SCHEMA_VERSION}

_ARCHIVE_SUFFIX_RE = re.compile(r'\.tar\.gz\.age$|\.tar\.gz$')


class ManifestError(Exception):
    """Raised when a manifest is unparsable or malformed."""
    pass


def compute_sha256(file_path: str) -> str:
    digest = hashlib.sha256()
    with open(file_path, 'rb') as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b''):
            digest.update(chunk)
    return digest.hexdigest()


def format_backup_key(timestamp: str) -> str:
    """
    Derive the BackupKey from an ISO-8601 timestamp.

    "2024-01-15T12:30:00.123+00:00" -> "2024-01-15T12-30-00"
    """
    return timestamp[:19].replace(':', '-')


def build_archive_name(key: str, encrypted: bool) -> str:
    return f"{key}{ENCRYPTED_ARCHIVE_SUFFIX}" if encrypted else f"{key}{ARCHIVE_SUFFIX}"


def build_manifest_name(key: str) -> str:
    return f"{key}{MANIFEST_SUFFIX}"


def get_sidecar_name(archive_name: str) -> str:
    """
    Return the sidecar name for an archive name.

    Works for both `.tar.gz` and `.tar.gz.age`, with or without a host prefix.
    """
    return f"{_ARCHIVE_SUFFIX_RE.sub('', archive_name)}{MANIFEST_SUFFIX}"


def backup_key_from_name(remote_name: str) -> Optional[str]:
    """
    Extract the BackupKey from a remote name.

    "myhost/2024-01-15T12-30-00.manifest.json" -> "2024-01-15T12-30-00"

    Returns:
        The key, or None if the name is not a backup file
    """
    basename = remote_name.rsplit('/', 1)[-1]
    for suffix in (MANIFEST_SUFFIX, ENCRYPTED_ARCHIVE_SUFFIX, ARCHIVE_SUFFIX):
        if basename.endswith(suffix):
            key = basename[:-len(suffix)]
            return key or None
    return None


def generate_manifest(
    files: List[Dict[str, Any]],
    encrypted: bool,
    key_id: Optional[str] = None,
    app_version: Optional[str] = None,
    hostname: Optional[str] = None
) -> Dict[str, Any]:
    """
    Build a manifest for collected files.

    Args:
        files: Collected file dicts (absolute_path, relative_path, size, modified)
        encrypted: Whether the archive will be encrypted
        key_id: Id of the age key used for encryption
        app_version: Version of the application whose state is backed up
        hostname: Host name recorded in the manifest (default: this host)

    Returns:
        Manifest dict
    """
    manifest_files = [
        {
            'path': f['relative_path'],
            'sha256': compute_sha256(f['absolute_path']),
            'size': f['size'],
            'modified': f['modified']
        }
        for f in files
    ]

    manifest = {
        'schemaVersion': MANIFEST_SCHEMA_VERSION,
        'toolVersion': __version__,
        'hostname': hostname or socket.gethostname(),
        'timestamp': datetime.now(timezone.utc).isoformat(),
        'encrypted': encrypted,
        'fileCount': len(manifest_files),
        'files': manifest_files
    }

    if key_id is not None:
        manifest['keyId'] = key_id
    if app_version is not None:
        manifest['appVersion'] = app_version

    return manifest


def serialize_manifest(manifest: Dict[str, Any]) -> str:
    return json.dumps(manifest, indent=2)


def _is_valid_file_entry(entry: Any) -> bool:
    return (
        isinstance(entry, dict)
        and isinstance(entry.get('path'), str)
        and isinstance(entry.get('sha256'), str)
        and isinstance(entry.get('size'), int)
        and isinstance(entry.get('modified'), str)
    )


def deserialize_manifest(content: str) -> Dict[str, Any]:
    """
    Parse and shape-check a full manifest.

    Raises:
        ManifestError: If the JSON is invalid or required fields are missing
    """
    try:
        manifest = json.loads(content)
    except ValueError as e:
        raise ManifestError(f"Failed to parse manifest JSON: {e}")

    if not isinstance(manifest, dict):
        raise ManifestError("Invalid manifest: expected a JSON object")

    required = (
        ('schemaVersion', int),
        ('hostname', str),
        ('timestamp', str),
        ('encrypted', bool),
        ('files', list)
    )
    for field, expected_type in required:
        if not isinstance(manifest.get(field), expected_type):
            raise ManifestError(f"Invalid manifest: missing or malformed field '{field}'")

    if not all(_is_valid_file_entry(entry) for entry in manifest['files']):
        raise ManifestError("Invalid manifest: malformed file entry")

    return manifest


def parse_manifest_metadata(raw: Any) -> Optional[Dict[str, Any]]:
    """
    Extract index metadata from a parsed sidecar.

    Only timestamp, encrypted and files are required, so sidecars written by
    older versions still index.

    Returns:
        Dict with timestamp, encrypted, fileCount, size and appVersion, or
        None if the sidecar carries no usable metadata
    """
    if not isinstance(raw, dict):
        return None

    timestamp = raw.get('timestamp')
    encrypted = raw.get('encrypted')
    files = raw.get('files')
    if not isinstance(timestamp, str) or not isinstance(encrypted, bool) or not isinstance(files, list):
        return None

    total_size = sum(
        f['size'] for f in files
        if isinstance(f, dict) and isinstance(f.get('size'), int)
    )

    return {
        'timestamp': timestamp,
        'encrypted': encrypted,
        'fileCount': len(files),
        'size': total_size,
        'appVersion': raw.get('appVersion')
    }


def validate_manifest(manifest: Dict[str, Any], extracted_dir: str) -> Dict[str, Any]:
    """
    Verify extracted files against the manifest checksums.

    Returns:
        Dict with 'valid' (bool) and 'errors' (list of messages)
    """
    errors = []

    if manifest.get('schemaVersion') not in SUPPORTED_SCHEMA_VERSIONS:
        errors.append(f"Unsupported schema version: {manifest.get('schemaVersion')}")
        return {'valid': False, 'errors': errors}

    for entry in manifest['files']:
        try:
            full_path = safe_path(extracted_dir, entry['path'])
        except PathTraversalError:
            errors.append(f"Rejected unsafe path for {entry['path']}: path traversal detected")
            continue

        try:
            computed = compute_sha256(full_path)
        except OSError as e:
            errors.append(f"Cannot read {entry['path']}: {e}")
            continue

        if computed != entry['sha256']:
            errors.append(f"Checksum mismatch for {entry['path']}: expected {entry['sha256']}, got {computed}")

    return {'valid': not errors, 'errors': errors}
