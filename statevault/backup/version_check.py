"""
Version compatibility check run before a restore.

Different major versions of the application may use incompatible state
formats. Neither 'info' nor 'warn' blocks the restore.
"""

import re
from typing import Dict, Optional

_MAJOR_RE = re.compile(r'^(\d+)')


def _parse_major(version: str) -> Optional[int]:
    match = _MAJOR_RE.match(version)
    if not match:
        return None
    return int(match.group(1))


def check_version_compatibility(manifest_version: Optional[str], current_version: Optional[str]) -> Dict[str, str]:
    """
    Compare the version recorded in a backup with the running version.

    Returns:
        Dict with 'level' ('ok', 'info' or 'warn') and 'message' (empty for 'ok')
    """
    if manifest_version is None:
        return {
            'level': 'info',
            'message': 'This backup predates version tracking; compatibility cannot be verified. Proceeding.'
        }

    if current_version is None:
        return {'level': 'ok', 'message': ''}

    manifest_major = _parse_major(manifest_version)
    current_major = _parse_major(current_version)

    # Malformed version strings never block a restore
    if manifest_major is None or current_major is None:
        return {'level': 'ok', 'message': ''}

    if manifest_major != current_major:
        return {
            'level': 'warn',
            'message': (
                f"WARNING: Version mismatch. This backup was created with v{manifest_version} "
                f"but the current version is v{current_version}. Different major versions may not be "
                f"fully compatible. Proceeding anyway - verify restored files carefully."
            )
        }

    return {'level': 'ok', 'message': ''}
