"""
Pre-flight free space check for backup runs.
"""

import shutil
import tempfile
from typing import Dict, Any, List, Optional

# Headroom on top of the estimated archive size
DISK_BUFFER_BYTES = 100 * 1024 * 1024


class DiskSpaceError(Exception):
    """Raised when the temp directory cannot hold the backup archive."""
    pass


def check_disk_space(required_bytes: int, directory: Optional[str] = None) -> Dict[str, Any]:
    """
    Check free space on the filesystem holding `directory`.

    Uses the space available to unprivileged processes.

    Args:
        required_bytes: Bytes needed
        directory: Directory to check (default: the system temp dir)

    Returns:
        Dict with 'available' (bytes) and 'sufficient' (bool)
    """
    usage = shutil.disk_usage(directory or tempfile.gettempdir())
    return {'available': usage.free, 'sufficient': usage.free >= required_bytes}


def estimate_required_space(files: List[Dict[str, Any]]) -> int:
    """Twice the collected size (tarball plus encrypted copy) plus DISK_BUFFER_BYTES."""
    return sum(f['size'] for f in files) * 2 + DISK_BUFFER_BYTES


def verify_disk_space(files: List[Dict[str, Any]], temp_dir: Optional[str] = None, skip: bool = False):
    """
    Make sure the temp directory can hold a backup of `files`.

    Raises:
        DiskSpaceError: If the available space is below the estimate
    """
    if skip:
        return

    needed = estimate_required_space(files)
    check_dir = temp_dir or tempfile.gettempdir()
    result = check_disk_space(needed, check_dir)
    if result['sufficient']:
        return

    needed_mb = -(-needed // (1024 * 1024))
    available_mb = result['available'] // (1024 * 1024)
    raise DiskSpaceError(
        f"Insufficient disk space for backup. Need ~{needed_mb}MB, have {available_mb}MB on {check_dir}. "
        f"Free up space or change TEMP_DIR."
    )
