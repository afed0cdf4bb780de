"""
Archive handling for backups.

Archives are gzip-compressed tarballs containing the collected files at their
relative paths plus the manifest as manifest.json. Writing is streamed so the
tarball can go straight into an encryption pipe without touching disk.
"""

import io
import os
import tarfile
from typing import List, Dict, Any, IO

from statevault.utils.paths import safe_path, PathTraversalError
from .manifest import MANIFEST_FILENAME, serialize_manifest


class CompressionError(Exception):
    """Raised when archive creation or extraction fails."""
    pass


def write_archive(files: List[Dict[str, Any]], manifest: Dict[str, Any], fileobj: IO[bytes]):
    """
    Stream a tar.gz archive into a writable byte stream.

    The stream is not closed; the caller owns it.

    Args:
        files: Collected file dicts (absolute_path, relative_path)
        manifest: Manifest embedded as manifest.json
        fileobj: Writable binary stream
    """
    with tarfile.open(fileobj=fileobj, mode='w|gz', dereference=True) as tar:
        for f in files:
            tar.add(f['absolute_path'], arcname=f['relative_path'], recursive=False)

        data = serialize_manifest(manifest).encode('utf-8')
        info = tarfile.TarInfo(MANIFEST_FILENAME)
        info.size = len(data)
        info.mode = 0o600
        tar.addfile(info, io.BytesIO(data))


def create_archive(files: List[Dict[str, Any]], manifest: Dict[str, Any], output_path: str) -> str:
    """
    Create a tar.gz archive on disk.

    Returns:
        Path to the created archive

    Raises:
        CompressionError: If archive creation fails (partial output is removed)
    """
    try:
        with open(output_path, 'wb') as out:
            write_archive(files, manifest, out)
        return output_path
    except (OSError, tarfile.TarError) as e:
        if os.path.exists(output_path):
            os.remove(output_path)
        raise CompressionError(f"Failed to create archive at {output_path}: {e}")


def _checked_members(tar: tarfile.TarFile, output_dir: str):
    for member in tar:
        try:
            safe_path(output_dir, member.name)
            if member.issym() or member.islnk():
                link_base = os.path.dirname(safe_path(output_dir, member.name)) if member.issym() else output_dir
                safe_path(output_dir, os.path.relpath(os.path.join(link_base, member.linkname), output_dir))
        except PathTraversalError:
            raise CompressionError(f"Path traversal detected in archive entry: {member.name}")
        if member.isdev():
            raise CompressionError(f"Refusing to extract device entry: {member.name}")
        yield member


def extract_archive(archive_path: str, output_dir: str):
    """
    Extract a tar.gz archive, rejecting entries that escape output_dir.

    Raises:
        CompressionError: If the archive is unreadable or contains an unsafe entry
    """
    os.makedirs(output_dir, exist_ok=True)

    try:
        with tarfile.open(archive_path, 'r:gz') as tar:
            for member in _checked_members(tar, output_dir):
                tar.extract(member, output_dir, set_attrs=False)
    except (OSError, tarfile.TarError) as e:
        raise CompressionError(f"Failed to extract archive {archive_path}: {e}")

