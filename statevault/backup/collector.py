"""
File collection for backups.

Walks the configured include paths and returns a flat list of files to
archive, applying exclude patterns along the way.
"""

import logging
import os
from datetime import datetime, timezone
from fnmatch import fnmatch
from pathlib import Path
from typing import List, Dict, Any, Set

logger = logging.getLogger(__name__)


class SourceError(Exception):
    """Raised when source collection fails."""
    pass


def should_exclude(path: Path, exclude_patterns: List[str]) -> bool:
    """
    Check if a path matches any exclude pattern.

    Patterns are matched three ways:
    - glob patterns (containing `*`) against the file name, e.g. "*.pyc"
    - patterns containing a separator against the full path, e.g. "/home/u/.app/logs"
    - bare names against the file name, e.g. "node_modules"
    """
    path_str = str(path)
    path_name = path.name

    for pattern in exclude_patterns:
        if '*' in pattern or '?' in pattern:
            if fnmatch(path_name, pattern):
                return True
        elif os.sep in pattern or '/' in pattern:
            expanded = os.path.expanduser(pattern).rstrip('/')
            if path_str == expanded or path_str.startswith(expanded + os.sep):
                return True
        elif path_name == pattern:
            return True

    return False


def _file_entry(path: Path, root_parent: Path, stat: os.stat_result) -> Dict[str, Any]:
    return {
        'absolute_path': str(path),
        'relative_path': path.relative_to(root_parent).as_posix(),
        'size': stat.st_size,
        'modified': datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc).isoformat()
    }


def _walk(directory: Path, root_parent: Path, exclude_patterns: List[str], visited: Set[str], results: List[Dict[str, Any]]):
    real_dir = os.path.realpath(directory)
    if real_dir in visited:
        return
    visited.add(real_dir)

    try:
        entries = sorted(os.scandir(directory), key=lambda e: e.name)
    except PermissionError:
        logger.warning(f"Skipping {directory} (permission denied)")
        return
    except FileNotFoundError:
        return
    except OSError as e:
        raise SourceError(f"Failed to read directory {directory}: {e}")

    for entry in entries:
        path = Path(entry.path)
        if should_exclude(path, exclude_patterns):
            continue

        try:
            if entry.is_dir(follow_symlinks=True):
                _walk(path, root_parent, exclude_patterns, visited, results)
            elif entry.is_file(follow_symlinks=True):
                results.append(_file_entry(path, root_parent, entry.stat(follow_symlinks=True)))
            elif entry.is_symlink():
                logger.warning(f"Skipping {path} (broken symlink)")
        except PermissionError:
            logger.warning(f"Skipping {path} (permission denied)")


def collect_files(include: List[str], exclude: List[str] = None) -> List[Dict[str, Any]]:
    """
    Collect files under the include paths.

    Paths inside the archive are relative to each include root's parent, so
    including "~/.myapp" yields entries like ".myapp/config.json".

    Args:
        include: Files or directories to back up
        exclude: Exclude patterns (see should_exclude)

    Returns:
        List of dicts with 'absolute_path', 'relative_path', 'size' and 'modified'

    Raises:
        SourceError: If a directory cannot be read for a reason other than permissions
    """
    exclude_patterns = exclude or []
    results = []
    visited = set()

    for root in include:
        root_path = Path(root).expanduser().absolute()

        if not root_path.exists():
            logger.warning(f"Include path does not exist, skipping: {root}")
            continue

        if root_path.is_file():
            if not should_exclude(root_path, exclude_patterns):
                results.append(_file_entry(root_path, root_path.parent, root_path.stat()))
        else:
            _walk(root_path, root_path.parent, exclude_patterns, visited, results)

    return results
